from __future__ import annotations

import os

# Tests never talk to Mistral and never touch the on-disk database.
os.environ["MISTRAL_API_KEY"] = ""
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

from collections.abc import Iterator
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from quizarena.database import Base, create_db_engine
from quizarena.models.items import Item, MultipleChoiceItem, TrueFalseItem
from quizarena.models.session import ContentSource, SessionCreate, SessionKind
from quizarena.services.cache import SessionCache
from quizarena.services.session_engine import SessionEngine

CREATOR = "0xcreator"


class StaticGenerator:
    """Stands in for ``ContentGenerator``; returns a fixed item list."""

    def __init__(self, items: list[Item]) -> None:
        self.items = items
        self.calls: list[tuple[ContentSource, SessionKind, int]] = []

    async def generate(
        self, source: ContentSource, kind: SessionKind, count: int, difficulty: str = "medium"
    ) -> list[Item]:
        self.calls.append((source, kind, count))
        return self.items[:count]


@pytest.fixture
def db_engine(tmp_path: Path) -> Iterator[Engine]:
    engine = create_db_engine(f"sqlite:///{tmp_path / 'arena.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def cache() -> Iterator[SessionCache]:
    cache = SessionCache()
    yield cache
    cache.backend.clear()


@pytest.fixture
def quiz_items() -> list[Item]:
    return [
        MultipleChoiceItem(id="q1", question="Capital of France?", options=["Paris", "Rome", "Oslo", "Bern"], correct_label="A"),
        MultipleChoiceItem(id="q2", question="2 + 2?", options=["3", "4", "5", "6"], correct_label="B"),
        MultipleChoiceItem(id="q3", question="Largest planet?", options=["Mars", "Venus", "Jupiter", "Earth"], correct_label="C"),
    ]


@pytest.fixture
def fact_items() -> list[Item]:
    return [
        TrueFalseItem(id="f1", statement="Water boils at 100 °C at sea level.", correct_value=True),
        TrueFalseItem(id="f2", statement="The Moon is larger than the Earth.", correct_value=False),
    ]


@pytest.fixture
def generator(quiz_items: list[Item]) -> StaticGenerator:
    return StaticGenerator(quiz_items)


@pytest.fixture
def arena(cache: SessionCache, generator: StaticGenerator) -> SessionEngine:
    return SessionEngine(cache=cache, generator=generator)  # type: ignore[arg-type]


@pytest.fixture
def new_session(arena: SessionEngine, db: Session, quiz_items: list[Item]):
    """Factory storing a session and optionally opening it; returns its code."""

    def _create(
        *,
        capacity: int = 2,
        rate: str = "10",
        items: list[Item] | None = None,
        kind: SessionKind = SessionKind.QUIZ,
        open_: bool = True,
        **fields: Any,
    ) -> str:
        request = SessionCreate(
            kind=kind,
            creator_address=CREATOR,
            creator_name="Host",
            capacity=capacity,
            reward_rate=Decimal(rate),
            item_count=len(items or quiz_items),
            **fields,
        )
        summary = arena.store_session(db, request, items or quiz_items, title="Test session")
        if open_:
            arena.open_session(db, summary.session_code, CREATOR)
        return summary.session_code

    return _create
