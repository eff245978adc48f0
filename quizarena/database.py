"""Database engine, table definitions and session helpers.

Uses SQLAlchemy 2.x with the synchronous driver. Every lifecycle write
is a single guarded statement inside one transaction, so on SQLite each
transaction is opened with ``BEGIN IMMEDIATE`` and concurrent writers
queue on the database lock instead of failing mid-upgrade.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.types import TypeDecorator

from quizarena.config import settings


class DecimalString(TypeDecorator):
    """Exact decimal stored as text.

    Reward amounts are token base units and overflow 64-bit integers, so
    they never go through a float or a native integer column.
    """

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> str | None:
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value: Any, dialect: Any) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRecord(Base):
    """One quiz or fact-check game instance."""

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(16), nullable=False, unique=True, index=True)
    kind = Column(String(16), nullable=False)  # quiz | fact_check
    title = Column(String(256), nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    items_json = Column(Text, nullable=False, default="[]")
    capacity = Column(Integer, nullable=False)
    reward_rate = Column(DecimalString, nullable=False, default=Decimal(0))
    total_cost = Column(DecimalString, nullable=True)
    difficulty = Column(String(16), nullable=True)
    creator_address = Column(String(128), nullable=False, index=True)
    creator_name = Column(String(128), nullable=False, default="")
    is_public = Column(Boolean, nullable=False, default=False)
    is_finished = Column(Boolean, nullable=False, default=False)
    participant_count = Column(Integer, nullable=False, default=0)
    ledger_game_id = Column(Integer, nullable=True, index=True)
    created_at = Column(DateTime, default=_utcnow, index=True)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (Index("ix_sessions_public_finished", "is_public", "is_finished"),)

    @property
    def items_data(self) -> list[dict[str, Any]]:
        return json.loads(self.items_json) if self.items_json else []


class ParticipantRecord(Base):
    """One address's membership and progress within one session."""

    __tablename__ = "participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_code = Column(
        String(16),
        ForeignKey("sessions.code", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    address = Column(String(128), nullable=False, index=True)
    display_name = Column(String(128), nullable=False, default="")
    score = Column(Integer, nullable=False, default=0)
    is_completed = Column(Boolean, nullable=False, default=False)
    reward = Column(DecimalString, nullable=True)
    joined_at = Column(DateTime, default=_utcnow)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (UniqueConstraint("session_code", "address", name="uq_participant_membership"),)


class AnswerRecord(Base):
    """A scored submission; at most one per participant and item."""

    __tablename__ = "answers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_code = Column(
        String(16),
        ForeignKey("sessions.code", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    address = Column(String(128), nullable=False)
    item_id = Column(String(32), nullable=False)
    answer = Column(String(16), nullable=False)
    is_correct = Column(Boolean, nullable=False, default=False)
    answered_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("session_code", "address", "item_id", name="uq_answer_once_per_item"),
    )


def _serialise_sqlite_writers(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite's deferred BEGIN.
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_engine(url: str, *, echo: bool = False) -> Engine:
    """Build an engine for *url*; SQLite gets a data directory and writer serialisation."""
    if url.startswith("sqlite"):
        db_path = url.replace("sqlite:///", "")
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _serialise_sqlite_writers(engine)
        return engine
    return create_engine(url, echo=echo, pool_pre_ping=True)


engine = create_db_engine(settings.database_url, echo=settings.debug)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)


def init_db(bind: Engine | None = None) -> None:
    """Create all tables if they do not exist."""
    Base.metadata.create_all(bind=bind or engine)


def get_db() -> Session:  # type: ignore[type-arg]
    """FastAPI dependency that yields a DB session."""
    db = SessionLocal()
    try:
        yield db  # type: ignore[misc]
    finally:
        db.close()
