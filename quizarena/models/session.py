"""Game session models: requests, participant views, results, payouts."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from quizarena.config import settings


class SessionKind(str, Enum):
    QUIZ = "quiz"
    FACT_CHECK = "fact_check"


class SourceKind(str, Enum):
    PROMPT = "prompt"
    PDF = "pdf"
    URL = "url"
    VIDEO = "video"


class ContentSource(BaseModel):
    """Where the items of a new session come from."""

    kind: SourceKind
    text: str = ""  # prompt text or topic
    url: str = ""  # web page or video URL
    data: bytes = b""  # PDF bytes


class SessionCreate(BaseModel):
    """Fields shared by every creation route."""

    kind: SessionKind = SessionKind.QUIZ
    creator_address: str = Field(min_length=1, max_length=128)
    creator_name: str = Field(default="", max_length=128)
    capacity: int = Field(ge=1, le=1000)
    reward_rate: Decimal = Field(ge=0)
    item_count: int = Field(default=10, ge=1, le=settings.max_items)
    total_cost: Decimal | None = Field(default=None, ge=0)
    title: str = Field(default="", max_length=256)
    difficulty: Literal["easy", "medium", "hard"] = "medium"


class PromptSessionCreate(SessionCreate):
    prompt: str = Field(min_length=1, max_length=settings.max_source_chars)


class UrlSessionCreate(SessionCreate):
    url: str = Field(min_length=1, max_length=2048)


class VideoSessionCreate(SessionCreate):
    video_url: str = Field(min_length=1, max_length=2048)


class SessionCreated(BaseModel):
    session_code: str
    kind: SessionKind
    item_count: int


class SessionSummary(BaseModel):
    """Public header of a session, shared by the view and the leaderboard."""

    session_code: str
    kind: SessionKind
    title: str = ""
    description: str = ""
    creator_name: str = ""
    creator_address: str = ""
    item_count: int = 0
    capacity: int = 1
    participant_count: int = 0
    reward_rate: Decimal = Decimal(0)
    is_public: bool = False
    is_finished: bool = False
    ledger_game_id: int | None = None
    created_at: datetime | None = None


class SessionView(SessionSummary):
    """What a participant sees before playing; correct answers stripped."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    already_joined: bool = False
    item_seconds: float = settings.item_seconds


class OpenSessionsResponse(BaseModel):
    sessions: list[SessionSummary]


class CreatorRequest(BaseModel):
    """Body of creator-only flag changes."""

    address: str = Field(min_length=1, max_length=128)


class LedgerBindRequest(CreatorRequest):
    """``ledger_game_id`` as int, decimal string, ``0x`` hex or ``{"hex": ...}``."""

    ledger_game_id: int | str | dict[str, Any]


class JoinRequest(BaseModel):
    address: str = Field(min_length=1, max_length=128)
    display_name: str = Field(min_length=1, max_length=128)


class ParticipantState(BaseModel):
    address: str
    display_name: str
    score: int = 0
    is_completed: bool = False
    reward: Decimal | None = None
    joined_at: datetime | None = None


class AnswerRequest(BaseModel):
    address: str = Field(min_length=1, max_length=128)
    item_id: str = Field(min_length=1, max_length=32)
    answer: bool | int | str


class AnswerResult(BaseModel):
    is_correct: bool
    score: int
    correct_answer: str | bool
    already_answered: bool = False


class CompleteRequest(BaseModel):
    address: str = Field(min_length=1, max_length=128)


class CompletionResult(BaseModel):
    score: int
    reward: Decimal
    already_completed: bool = False


class PayoutResponse(BaseModel):
    """Same-length, same-order lists for the external ledger's payout call."""

    ledger_game_id: int | None = None
    participants: list[str] = Field(default_factory=list)
    rewards: list[str] = Field(default_factory=list)
    scores: list[int] = Field(default_factory=list)


class Leaderboard(BaseModel):
    session: SessionSummary
    participants: list[ParticipantState] = Field(default_factory=list)


class HistoryEntry(SessionSummary):
    """A session an address created or joined; score and reward only for joined ones."""

    is_creator: bool = False
    score: int | None = None
    reward: Decimal | None = None


class HistoryResponse(BaseModel):
    address: str
    sessions: list[HistoryEntry] = Field(default_factory=list)
