"""Session lifecycle engine.

Drives a session through draft → open → finished and each participant
through join → answer → complete. Admission, score increments and
completion are single guarded writes (``UPDATE ... WHERE <precondition>``
or ``INSERT ... SELECT ... WHERE <precondition>``) inside one
transaction, so concurrent requests can never admit more than
``capacity`` participants, score an item twice, or pay a reward twice.
When a guarded write matches nothing, the current state is read back to
report the precise reason.

Every method takes the caller's SQLAlchemy ``Session`` and runs its own
transaction; results are returned as pydantic models built before the
transaction ends.
"""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import Boolean, DateTime, String, exists, insert, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quizarena.config import settings
from quizarena.database import AnswerRecord, ParticipantRecord, SessionRecord
from quizarena.errors import (
    AlreadyCompleted,
    AlreadyFinished,
    AlreadyJoined,
    ArenaError,
    CapacityReached,
    Conflict,
    ItemNotFound,
    NotAMember,
    NotCreator,
    SessionNotFound,
    SessionNotOpen,
)
from quizarena.models.items import NO_ANSWER, Item, dump_items, encode_answer, find_item, parse_items
from quizarena.models.session import (
    AnswerResult,
    CompletionResult,
    ContentSource,
    HistoryEntry,
    Leaderboard,
    ParticipantState,
    PayoutResponse,
    SessionCreate,
    SessionKind,
    SessionSummary,
    SessionView,
    SourceKind,
)
from quizarena.services.cache import SessionCache, session_cache
from quizarena.services.content_generator import ContentGenerator
from quizarena.services.identity import normalize_address
from quizarena.services.settlement import build_payout, compute_reward, parse_ledger_game_id

logger = logging.getLogger(__name__)

_CODE_ALPHABET = string.digits + string.ascii_lowercase


def generate_session_code() -> str:
    """Random 5–10 character base-36 code from 40 bits of OS entropy."""
    value = int.from_bytes(secrets.token_bytes(5), "big")
    digits = ""
    while value:
        value, rem = divmod(value, 36)
        digits = _CODE_ALPHABET[rem] + digits
    return digits.rjust(5, "0")[:10]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _default_title(source: ContentSource) -> str:
    if source.kind is SourceKind.PROMPT:
        text = source.text.strip()
        return text[:50] + ("..." if len(text) > 50 else "")
    if source.kind is SourceKind.PDF:
        return "PDF quiz"
    return source.url[:50]


class SessionEngine:
    def __init__(
        self,
        cache: SessionCache | None = None,
        generator: ContentGenerator | None = None,
        *,
        code_factory: Callable[[], str] = generate_session_code,
    ) -> None:
        self.cache = cache or session_cache
        self.generator = generator or ContentGenerator()
        self._new_code = code_factory

    # ── Creation ─────────────────────────────────────────────────────────

    async def create_session(self, db: Session, request: SessionCreate, source: ContentSource) -> SessionSummary:
        """Generate items, then persist a draft session under a fresh code.

        Generation failures propagate before anything is written. Code
        collisions are retried up to ``session_code_attempts`` times.
        """
        items = await self.generator.generate(source, request.kind, request.item_count, request.difficulty)
        return await run_in_threadpool(
            self.store_session,
            db,
            request,
            items,
            title=request.title or _default_title(source),
            description=source.text or source.url,
        )

    def store_session(
        self,
        db: Session,
        request: SessionCreate,
        items: list[Item],
        *,
        title: str = "",
        description: str = "",
    ) -> SessionSummary:
        items_json = dump_items(items)
        creator = normalize_address(request.creator_address)

        for attempt in range(1, settings.session_code_attempts + 1):
            code = self._new_code()
            try:
                with db.begin():
                    record = SessionRecord(
                        code=code,
                        kind=request.kind.value,
                        title=title,
                        description=description[: settings.max_source_chars],
                        items_json=items_json,
                        capacity=request.capacity,
                        reward_rate=request.reward_rate,
                        total_cost=request.total_cost,
                        difficulty=request.difficulty if request.kind is SessionKind.FACT_CHECK else None,
                        creator_address=creator,
                        creator_name=request.creator_name or "Unnamed Creator",
                        is_public=False,
                        is_finished=False,
                        participant_count=0,
                    )
                    db.add(record)
                    db.flush()
                    summary = self._summary(record)
            except IntegrityError:
                logger.warning("Session code collision on attempt %d/%d", attempt, settings.session_code_attempts)
                continue
            logger.info("Created %s session %s with %d items", request.kind.value, code, len(items))
            return summary

        raise Conflict("Could not allocate a unique session code. Please try again.")

    # ── Creator transitions ──────────────────────────────────────────────

    def open_session(self, db: Session, code: str, caller: str) -> SessionSummary:
        caller = normalize_address(caller)
        with db.begin():
            result = db.execute(
                update(SessionRecord)
                .where(
                    SessionRecord.code == code,
                    SessionRecord.creator_address == caller,
                    SessionRecord.is_finished.is_(False),
                )
                .values(is_public=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                record = self._load(db, code)
                if record.creator_address != caller:
                    raise NotCreator()
                raise AlreadyFinished("This session has already ended and cannot be reopened.")
            summary = self._summary(self._load(db, code))
        self.cache.invalidate_session(code)
        logger.info("Session %s opened", code)
        return summary

    def close_session(self, db: Session, code: str, caller: str) -> PayoutResponse:
        """Finish the session and return the payout lists for the ledger.

        Closing an already finished session returns the same payout again.
        """
        caller = normalize_address(caller)
        with db.begin():
            record = self._load(db, code)
            if record.creator_address != caller:
                raise NotCreator()
            if not record.is_finished:
                db.execute(
                    update(SessionRecord)
                    .where(SessionRecord.code == code, SessionRecord.is_finished.is_(False))
                    .values(is_public=False, is_finished=True)
                    .execution_options(synchronize_session=False)
                )
            participants = db.scalars(
                select(ParticipantRecord)
                .where(ParticipantRecord.session_code == code)
                .order_by(ParticipantRecord.joined_at, ParticipantRecord.id)
                .execution_options(populate_existing=True)
            ).all()
            payout = build_payout(participants, record.reward_rate, record.ledger_game_id)
        self.cache.invalidate_session(code)
        logger.info("Session %s closed with %d participants", code, len(payout.participants))
        return payout

    def bind_ledger_reference(self, db: Session, code: str, caller: str, raw_game_id: Any) -> SessionSummary:
        """Store the on-chain game id; binding is write-once."""
        caller = normalize_address(caller)
        game_id = parse_ledger_game_id(raw_game_id)
        with db.begin():
            result = db.execute(
                update(SessionRecord)
                .where(
                    SessionRecord.code == code,
                    SessionRecord.creator_address == caller,
                    or_(SessionRecord.ledger_game_id.is_(None), SessionRecord.ledger_game_id == game_id),
                )
                .values(ledger_game_id=game_id)
                .execution_options(synchronize_session=False)
            )
            record = self._load(db, code)
            if result.rowcount == 0:
                if record.creator_address != caller:
                    raise NotCreator()
                raise Conflict(f"This session is already bound to ledger game {record.ledger_game_id}.")
            summary = self._summary(record)
        self.cache.invalidate_session(code)
        logger.info("Session %s bound to ledger game %d", code, game_id)
        return summary

    # ── Participation ────────────────────────────────────────────────────

    def join_session(self, db: Session, code: str, address: str, display_name: str) -> ParticipantState:
        """Admit *address* if the session is open, unfinished, not full and not already joined."""
        address = normalize_address(address)
        already_joined = exists().where(
            ParticipantRecord.session_code == code,
            ParticipantRecord.address == address,
        )
        try:
            with db.begin():
                result = db.execute(
                    update(SessionRecord)
                    .where(
                        SessionRecord.code == code,
                        SessionRecord.is_public.is_(True),
                        SessionRecord.is_finished.is_(False),
                        SessionRecord.participant_count < SessionRecord.capacity,
                        ~already_joined,
                    )
                    .values(participant_count=SessionRecord.participant_count + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise self._join_failure(db, code, address)

                participant = ParticipantRecord(
                    session_code=code,
                    address=address,
                    display_name=display_name.strip() or "Unnamed Participant",
                    score=0,
                    is_completed=False,
                    joined_at=_utcnow(),
                )
                db.add(participant)
                db.flush()
                state = self._participant_state(participant)
        except IntegrityError as exc:
            logger.info("Join race lost for %s in session %s", address, code)
            raise AlreadyJoined() from exc

        self.cache.invalidate_session(code)
        logger.info("%s joined session %s", address, code)
        return state

    def _join_failure(self, db: Session, code: str, address: str) -> ArenaError:
        record = db.scalar(select(SessionRecord).where(SessionRecord.code == code))
        if record is None:
            return SessionNotFound()
        if record.is_finished:
            return AlreadyFinished()
        if not record.is_public:
            return SessionNotOpen()
        if self._participant(db, code, address) is not None:
            return AlreadyJoined()
        if record.participant_count >= record.capacity:
            return CapacityReached()
        logger.error("Join of %s to %s matched nothing but no precondition failed", address, code)
        return Conflict("Failed to join the session due to an unexpected state. Please retry.")

    def submit_answer(self, db: Session, code: str, address: str, item_id: str, answer: Any) -> AnswerResult:
        """Score one answer; each (participant, item) pair scores at most once.

        A repeated submission for an item is a no-op returning the first
        evaluation. ``no_answer`` is always wrong and is not recorded.
        """
        address = normalize_address(address)
        with db.begin():
            record = self._load(db, code)
            if record.is_finished:
                raise AlreadyFinished()
            item = find_item(parse_items(record.items_data), item_id)
            if item is None:
                raise ItemNotFound()

            participant = self._active_member(db, code, address)
            if isinstance(answer, str) and answer == NO_ANSWER:
                return AnswerResult(is_correct=False, score=participant.score, correct_answer=item.correct_answer)

            normalized = item.normalize(answer)
            is_correct = normalized == item.correct_answer
            precondition = (
                select(
                    literal(code, String),
                    literal(address, String),
                    literal(item_id, String),
                    literal(encode_answer(normalized), String),
                    literal(is_correct, Boolean),
                    literal(_utcnow(), DateTime),
                )
                .where(
                    exists().where(
                        ParticipantRecord.session_code == code,
                        ParticipantRecord.address == address,
                        ParticipantRecord.is_completed.is_(False),
                    ),
                    exists().where(SessionRecord.code == code, SessionRecord.is_finished.is_(False)),
                )
            )
            try:
                with db.begin_nested():
                    inserted = db.execute(
                        insert(AnswerRecord).from_select(
                            ["session_code", "address", "item_id", "answer", "is_correct", "answered_at"],
                            precondition,
                        )
                    )
            except IntegrityError:
                return self._repeat_answer(db, code, address, item_id, item)

            if inserted.rowcount == 0:
                self._active_member(db, code, address)
                raise AlreadyFinished()

            if is_correct:
                db.execute(
                    update(ParticipantRecord)
                    .where(
                        ParticipantRecord.session_code == code,
                        ParticipantRecord.address == address,
                        ParticipantRecord.is_completed.is_(False),
                    )
                    .values(score=ParticipantRecord.score + 1)
                    .execution_options(synchronize_session=False)
                )
            score = db.scalar(
                select(ParticipantRecord.score).where(
                    ParticipantRecord.session_code == code,
                    ParticipantRecord.address == address,
                )
            )
            outcome = AnswerResult(is_correct=is_correct, score=score, correct_answer=item.correct_answer)

        self.cache.invalidate_session(code)
        return outcome

    def _repeat_answer(self, db: Session, code: str, address: str, item_id: str, item: Item) -> AnswerResult:
        previous = db.scalar(
            select(AnswerRecord.is_correct).where(
                AnswerRecord.session_code == code,
                AnswerRecord.address == address,
                AnswerRecord.item_id == item_id,
            )
        )
        score = db.scalar(
            select(ParticipantRecord.score).where(
                ParticipantRecord.session_code == code,
                ParticipantRecord.address == address,
            )
        )
        logger.info("Ignoring repeated answer by %s for item %s in %s", address, item_id, code)
        return AnswerResult(
            is_correct=bool(previous),
            score=score or 0,
            correct_answer=item.correct_answer,
            already_answered=True,
        )

    def complete_session(self, db: Session, code: str, address: str) -> CompletionResult:
        """Mark the participant complete and fix its reward at score × rate.

        Retries return the stored result. The reward is written with a
        compare-and-set on the observed score, so an answer landing
        concurrently forces a re-read instead of a stale reward.
        """
        address = normalize_address(address)
        for attempt in range(1, settings.completion_attempts + 1):
            with db.begin():
                record = self._load(db, code)
                participant = self._participant(db, code, address)
                if participant is None:
                    raise NotAMember()
                if participant.is_completed:
                    return CompletionResult(
                        score=participant.score,
                        reward=participant.reward if participant.reward is not None else Decimal(0),
                        already_completed=True,
                    )
                if record.is_finished:
                    raise AlreadyFinished()

                observed = participant.score
                reward = compute_reward(observed, record.reward_rate)
                result = db.execute(
                    update(ParticipantRecord)
                    .where(
                        ParticipantRecord.id == participant.id,
                        ParticipantRecord.is_completed.is_(False),
                        ParticipantRecord.score == observed,
                    )
                    .values(is_completed=True, reward=reward, completed_at=_utcnow())
                    .execution_options(synchronize_session=False)
                )
                done = result.rowcount == 1

            if done:
                self.cache.invalidate_session(code)
                logger.info("%s completed session %s with score %d", address, code, observed)
                return CompletionResult(score=observed, reward=reward)
            logger.info("Completion of %s in %s raced an answer (attempt %d)", address, code, attempt)

        raise Conflict("Your score changed while submitting. Please try again.")

    # ── Reads ────────────────────────────────────────────────────────────

    def get_session_view(self, db: Session, code: str, caller: str | None = None) -> SessionView:
        """Participant-facing view; cached without caller-specific fields."""
        view = self.cache.get_session(code)
        if view is None:
            with db.begin():
                view = self._view(self._load(db, code))
            self.cache.put_session(code, view)

        caller = normalize_address(caller) if caller else None
        if view.is_finished:
            raise AlreadyFinished()
        is_creator = caller is not None and caller == view.creator_address
        if not view.is_public and not is_creator:
            raise SessionNotOpen("This session has not started yet or is private.")

        joined = False
        if caller is not None:
            with db.begin():
                joined = self._participant(db, code, caller) is not None
        if not joined and not is_creator and view.participant_count >= view.capacity:
            raise CapacityReached()
        return view.model_copy(update={"already_joined": joined})

    def get_leaderboard(self, db: Session, code: str, order: str = "score") -> Leaderboard:
        """Participants by descending score; ``order="name"`` breaks ties by name."""
        board = self.cache.get_leaderboard(code)
        if board is None:
            with db.begin():
                record = self._load(db, code)
                participants = db.scalars(
                    select(ParticipantRecord)
                    .where(ParticipantRecord.session_code == code)
                    .order_by(ParticipantRecord.score.desc(), ParticipantRecord.joined_at, ParticipantRecord.id)
                    .execution_options(populate_existing=True)
                ).all()
                board = Leaderboard(
                    session=self._summary(record),
                    participants=[self._participant_state(p) for p in participants],
                )
            self.cache.put_leaderboard(code, board)

        if order == "name":
            ranked = sorted(board.participants, key=lambda p: (-p.score, p.display_name.lower()))
            return board.model_copy(update={"participants": ranked})
        return board

    def list_open_sessions(self, db: Session, kind: SessionKind | None = None, limit: int = 50) -> list[SessionSummary]:
        with db.begin():
            query = select(SessionRecord).where(
                SessionRecord.is_public.is_(True),
                SessionRecord.is_finished.is_(False),
            )
            if kind is not None:
                query = query.where(SessionRecord.kind == kind.value)
            query = query.order_by(SessionRecord.created_at.desc(), SessionRecord.id.desc()).limit(limit)
            records = db.scalars(query.execution_options(populate_existing=True)).all()
            return [self._summary(r) for r in records]

    def list_history(self, db: Session, address: str) -> list[HistoryEntry]:
        """Sessions *address* created or joined, newest first, one entry per session.

        A session the address both created and joined is listed once, as created.
        """
        address = normalize_address(address)
        with db.begin():
            created = db.scalars(
                select(SessionRecord)
                .where(SessionRecord.creator_address == address)
                .execution_options(populate_existing=True)
            ).all()
            joined = db.execute(
                select(SessionRecord, ParticipantRecord)
                .join(ParticipantRecord, ParticipantRecord.session_code == SessionRecord.code)
                .where(ParticipantRecord.address == address)
                .execution_options(populate_existing=True)
            ).all()

            entries: dict[str, tuple[SessionRecord, HistoryEntry]] = {}
            for record in created:
                entries[record.code] = (record, HistoryEntry(**self._summary(record).model_dump(), is_creator=True))
            for record, participant in joined:
                if record.code in entries:
                    continue
                entries[record.code] = (
                    record,
                    HistoryEntry(
                        **self._summary(record).model_dump(),
                        score=participant.score,
                        reward=participant.reward,
                    ),
                )

        ordered = sorted(entries.values(), key=lambda pair: (pair[0].created_at, pair[0].id), reverse=True)
        return [entry for _, entry in ordered]

    # ── Helpers ──────────────────────────────────────────────────────────

    def _load(self, db: Session, code: str) -> SessionRecord:
        record = db.scalar(
            select(SessionRecord).where(SessionRecord.code == code).execution_options(populate_existing=True)
        )
        if record is None:
            raise SessionNotFound()
        return record

    def _participant(self, db: Session, code: str, address: str) -> ParticipantRecord | None:
        return db.scalar(
            select(ParticipantRecord)
            .where(ParticipantRecord.session_code == code, ParticipantRecord.address == address)
            .execution_options(populate_existing=True)
        )

    def _active_member(self, db: Session, code: str, address: str) -> ParticipantRecord:
        participant = self._participant(db, code, address)
        if participant is None:
            raise NotAMember()
        if participant.is_completed:
            raise AlreadyCompleted()
        return participant

    @staticmethod
    def _summary(record: SessionRecord) -> SessionSummary:
        return SessionSummary(
            session_code=record.code,
            kind=SessionKind(record.kind),
            title=record.title or "",
            description=record.description or "",
            creator_name=record.creator_name or "",
            creator_address=record.creator_address,
            item_count=len(record.items_data),
            capacity=record.capacity,
            participant_count=record.participant_count,
            reward_rate=record.reward_rate,
            is_public=record.is_public,
            is_finished=record.is_finished,
            ledger_game_id=record.ledger_game_id,
            created_at=record.created_at,
        )

    def _view(self, record: SessionRecord) -> SessionView:
        items = parse_items(record.items_data)
        return SessionView(
            **self._summary(record).model_dump(),
            items=[item.public_view() for item in items],
        )

    @staticmethod
    def _participant_state(participant: ParticipantRecord) -> ParticipantState:
        return ParticipantState(
            address=participant.address,
            display_name=participant.display_name,
            score=participant.score,
            is_completed=participant.is_completed,
            reward=participant.reward,
            joined_at=participant.joined_at,
        )


session_engine = SessionEngine()


def get_engine() -> SessionEngine:
    """FastAPI dependency returning the process-wide engine."""
    return session_engine
