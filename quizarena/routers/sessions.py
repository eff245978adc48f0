"""Game session routes: create, open/close, join, answer, complete, leaderboard."""

from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from quizarena.config import settings
from quizarena.database import get_db
from quizarena.errors import ValidationFailed
from quizarena.models.session import (
    AnswerRequest,
    AnswerResult,
    CompleteRequest,
    CompletionResult,
    ContentSource,
    CreatorRequest,
    HistoryResponse,
    JoinRequest,
    Leaderboard,
    LedgerBindRequest,
    OpenSessionsResponse,
    ParticipantState,
    PayoutResponse,
    PromptSessionCreate,
    SessionCreate,
    SessionCreated,
    SessionKind,
    SessionSummary,
    SessionView,
    SourceKind,
    UrlSessionCreate,
    VideoSessionCreate,
)
from quizarena.services.identity import IdentityCheck, get_identity, normalize_address
from quizarena.services.session_engine import SessionEngine, get_engine

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

DB = Annotated[Session, Depends(get_db)]
Engine = Annotated[SessionEngine, Depends(get_engine)]
Identity = Annotated[IdentityCheck, Depends(get_identity)]


def _created(summary: SessionSummary) -> SessionCreated:
    return SessionCreated(session_code=summary.session_code, kind=summary.kind, item_count=summary.item_count)


# ── Creation ─────────────────────────────────────────────────────────────


@router.post("/create/prompt", response_model=SessionCreated, status_code=status.HTTP_201_CREATED)
async def create_from_prompt(body: PromptSessionCreate, db: DB, engine: Engine, identity: Identity):
    """Create a draft session from a free-text topic."""
    identity.require(body.creator_address)
    source = ContentSource(kind=SourceKind.PROMPT, text=body.prompt)
    return _created(await engine.create_session(db, body, source))


@router.post("/create/url", response_model=SessionCreated, status_code=status.HTTP_201_CREATED)
async def create_from_url(body: UrlSessionCreate, db: DB, engine: Engine, identity: Identity):
    """Create a draft session from a scraped web page."""
    identity.require(body.creator_address)
    source = ContentSource(kind=SourceKind.URL, url=body.url)
    return _created(await engine.create_session(db, body, source))


@router.post("/create/video", response_model=SessionCreated, status_code=status.HTTP_201_CREATED)
async def create_from_video(body: VideoSessionCreate, db: DB, engine: Engine, identity: Identity):
    """Create a draft session from a YouTube video transcript."""
    identity.require(body.creator_address)
    source = ContentSource(kind=SourceKind.VIDEO, url=body.video_url)
    return _created(await engine.create_session(db, body, source))


@router.post("/create/pdf", response_model=SessionCreated, status_code=status.HTTP_201_CREATED)
async def create_from_pdf(
    db: DB,
    engine: Engine,
    identity: Identity,
    file: UploadFile = File(...),
    creator_address: str = Form(...),
    capacity: int = Form(...),
    reward_rate: Decimal = Form(...),
    creator_name: str = Form(""),
    kind: SessionKind = Form(SessionKind.QUIZ),
    item_count: int = Form(10),
    title: str = Form(""),
    difficulty: str = Form("medium"),
):
    """Create a draft session from an uploaded PDF (multipart form)."""
    try:
        request = SessionCreate(
            kind=kind,
            creator_address=creator_address,
            creator_name=creator_name,
            capacity=capacity,
            reward_rate=reward_rate,
            item_count=item_count,
            title=title or (file.filename or ""),
            difficulty=difficulty,
        )
    except ValidationError as exc:
        first = exc.errors()[0]
        raise ValidationFailed(f"{'.'.join(str(p) for p in first['loc'])}: {first['msg']}") from exc
    identity.require(request.creator_address)

    # Oversize uploads are detected from the first max + 1 bytes.
    data = await file.read(settings.max_pdf_bytes + 1)
    source = ContentSource(kind=SourceKind.PDF, data=data)
    return _created(await engine.create_session(db, request, source))


# ── Reads ────────────────────────────────────────────────────────────────


@router.get("/", response_model=OpenSessionsResponse)
def list_open_sessions(db: DB, engine: Engine, kind: SessionKind | None = None):
    """Open, unfinished sessions, newest first."""
    return OpenSessionsResponse(sessions=engine.list_open_sessions(db, kind))


@router.get("/history/{address}", response_model=HistoryResponse)
def get_history(address: str, db: DB, engine: Engine):
    """Sessions the address created or joined, newest first."""
    return HistoryResponse(address=normalize_address(address), sessions=engine.list_history(db, address))


@router.get("/{code}", response_model=SessionView)
def get_session(code: str, db: DB, engine: Engine, address: str | None = None):
    """Participant view of a session; correct answers are never included."""
    return engine.get_session_view(db, code, address)


@router.get("/{code}/leaderboard", response_model=Leaderboard)
def get_leaderboard(
    code: str,
    db: DB,
    engine: Engine,
    order: Annotated[Literal["score", "name"], Query()] = "score",
):
    return engine.get_leaderboard(db, code, order)


# ── Creator actions ──────────────────────────────────────────────────────


@router.post("/{code}/open", response_model=SessionSummary)
def open_session(code: str, body: CreatorRequest, db: DB, engine: Engine, identity: Identity):
    identity.require(body.address)
    return engine.open_session(db, code, body.address)


@router.post("/{code}/close", response_model=PayoutResponse)
def close_session(code: str, body: CreatorRequest, db: DB, engine: Engine, identity: Identity):
    """Finish the session and return the lists for the ledger payout call."""
    identity.require(body.address)
    return engine.close_session(db, code, body.address)


@router.put("/{code}/ledger", response_model=SessionSummary)
def bind_ledger(code: str, body: LedgerBindRequest, db: DB, engine: Engine, identity: Identity):
    identity.require(body.address)
    return engine.bind_ledger_reference(db, code, body.address, body.ledger_game_id)


# ── Participant actions ──────────────────────────────────────────────────


@router.post("/{code}/join", response_model=ParticipantState, status_code=status.HTTP_201_CREATED)
def join_session(code: str, body: JoinRequest, db: DB, engine: Engine, identity: Identity):
    identity.require(body.address)
    return engine.join_session(db, code, body.address, body.display_name)


@router.post("/{code}/answers", response_model=AnswerResult)
def submit_answer(code: str, body: AnswerRequest, db: DB, engine: Engine, identity: Identity):
    """Score one answer. Repeats for the same item return the first evaluation."""
    identity.require(body.address)
    return engine.submit_answer(db, code, body.address, body.item_id, body.answer)


@router.post("/{code}/complete", response_model=CompletionResult)
def complete_session(code: str, body: CompleteRequest, db: DB, engine: Engine, identity: Identity):
    identity.require(body.address)
    return engine.complete_session(db, code, body.address)
