"""Tests for the API client and the timer-driven playthrough."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import httpx
import pytest

from quizarena.client import ApiError, SessionApiClient, TimedPlaythrough
from quizarena.database import get_db
from quizarena.main import app
from quizarena.models.items import NO_ANSWER
from quizarena.models.session import SessionCreate
from quizarena.services.session_engine import get_engine
from tests.conftest import CREATOR

ITEMS = [{"id": "i1"}, {"id": "i2"}, {"id": "i3"}]


class FakeApi:
    """Records submissions; optionally blocks them until released."""

    def __init__(self, fail_on: str | None = None) -> None:
        self.submitted: list[tuple[str, Any]] = []
        self.completed = 0
        self.fail_on = fail_on
        self.gate: asyncio.Event | None = None

    async def submit_answer(self, code: str, address: str, item_id: str, answer: Any) -> dict[str, Any]:
        if self.gate is not None:
            await self.gate.wait()
        if item_id == self.fail_on:
            raise ApiError(410, "This session has already ended.", "AlreadyFinished")
        self.submitted.append((item_id, answer))
        return {"is_correct": answer == "A", "score": 0, "correct_answer": "A", "already_answered": False}

    async def complete(self, code: str, address: str) -> dict[str, Any]:
        self.completed += 1
        return {"score": 0, "reward": "0", "already_completed": False}


class TestTimedPlaythrough:
    @pytest.mark.asyncio
    async def test_expiry_submits_no_answer_and_completes(self) -> None:
        api = FakeApi()
        play = TimedPlaythrough(api, "abc12", "0xa", ITEMS, item_seconds=0.01)  # type: ignore[arg-type]

        result = await asyncio.wait_for(play.run(), timeout=5)

        assert api.submitted == [("i1", NO_ANSWER), ("i2", NO_ANSWER), ("i3", NO_ANSWER)]
        assert api.completed == 1
        assert result["already_completed"] is False
        assert play.finished

    @pytest.mark.asyncio
    async def test_expiry_submits_last_selection(self) -> None:
        api = FakeApi()
        play = TimedPlaythrough(api, "abc12", "0xa", ITEMS, item_seconds=0.01)  # type: ignore[arg-type]
        play.select("C")
        play.select("A")

        await asyncio.wait_for(play.run(), timeout=5)

        assert api.submitted[0] == ("i1", "A")
        assert api.submitted[1] == ("i2", NO_ANSWER)

    @pytest.mark.asyncio
    async def test_manual_advance_and_expiry_submit_once(self) -> None:
        api = FakeApi()
        api.gate = asyncio.Event()
        play = TimedPlaythrough(api, "abc12", "0xa", ITEMS, item_seconds=60)  # type: ignore[arg-type]
        runner = asyncio.create_task(play.run())
        await asyncio.sleep(0)

        play.select("B")
        manual = asyncio.create_task(play.next_item())
        await asyncio.sleep(0)
        play._on_expired(0)
        await asyncio.sleep(0)
        api.gate.set()
        await manual

        assert api.submitted == [("i1", "B")]
        assert play.index == 1

        await play.next_item()
        await play.next_item()
        await asyncio.wait_for(runner, timeout=5)
        assert [item_id for item_id, _ in api.submitted] == ["i1", "i2", "i3"]
        assert api.completed == 1

    @pytest.mark.asyncio
    async def test_api_error_stops_the_run(self) -> None:
        api = FakeApi(fail_on="i2")
        play = TimedPlaythrough(api, "abc12", "0xa", ITEMS, item_seconds=0.01)  # type: ignore[arg-type]

        with pytest.raises(ApiError) as excinfo:
            await asyncio.wait_for(play.run(), timeout=5)

        assert excinfo.value.kind == "AlreadyFinished"
        assert api.submitted == [("i1", NO_ANSWER)]
        assert api.completed == 0

    @pytest.mark.asyncio
    async def test_unreadable_reply_stops_the_run(self) -> None:
        api = FakeApi()

        async def garbled(*args: Any) -> dict[str, Any]:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")

        api.submit_answer = garbled  # type: ignore[method-assign]
        play = TimedPlaythrough(api, "abc12", "0xa", ITEMS, item_seconds=0.01)  # type: ignore[arg-type]

        with pytest.raises(ValueError):
            await asyncio.wait_for(play.run(), timeout=5)
        assert play.finished
        assert api.completed == 0

    @pytest.mark.asyncio
    async def test_failing_result_callback_stops_the_run(self) -> None:
        api = FakeApi()

        def on_result(index: int, result: dict[str, Any]) -> None:
            raise RuntimeError("render failed")

        play = TimedPlaythrough(
            api, "abc12", "0xa", ITEMS, item_seconds=0.01, on_result=on_result  # type: ignore[arg-type]
        )

        with pytest.raises(RuntimeError, match="render failed"):
            await asyncio.wait_for(play.run(), timeout=5)
        assert api.submitted == [("i1", NO_ANSWER)]
        assert play.finished

    @pytest.mark.asyncio
    async def test_unreadable_completion_reply_stops_the_run(self) -> None:
        api = FakeApi()

        async def garbled(*args: Any) -> dict[str, Any]:
            raise ValueError("Expecting value")

        api.complete = garbled  # type: ignore[method-assign]
        play = TimedPlaythrough(api, "abc12", "0xa", ITEMS[:1], item_seconds=0.01)  # type: ignore[arg-type]

        with pytest.raises(ValueError):
            await asyncio.wait_for(play.run(), timeout=5)
        assert play.completion is None

    @pytest.mark.asyncio
    async def test_no_items_completes_immediately(self) -> None:
        api = FakeApi()
        result = await TimedPlaythrough(api, "abc12", "0xa", []).run()  # type: ignore[arg-type]
        assert result["score"] == 0
        assert api.completed == 1


class TestSessionApiClient:
    @pytest.mark.asyncio
    async def test_error_reply_becomes_api_error(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(403, json={"error": "Session is full", "kind": "CapacityReached"})
        )
        async with SessionApiClient("http://arena", client=httpx.AsyncClient(transport=transport)) as api:
            with pytest.raises(ApiError) as excinfo:
                await api.join("abc12", "0xa", "Alice")
        assert excinfo.value.status_code == 403
        assert excinfo.value.kind == "CapacityReached"

    @pytest.mark.asyncio
    async def test_sends_bearer_token(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"score": 1, "reward": "5", "already_completed": True})

        api = SessionApiClient("http://arena/", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), token="tok")
        await api.complete("abc12", "0xa")

        assert seen[0].url.path == "/api/sessions/abc12/complete"
        assert seen[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_playthrough_against_the_app(self, arena, db, session_factory, quiz_items) -> None:
        request = SessionCreate(creator_address=CREATOR, capacity=1, reward_rate=Decimal(3), item_count=3)
        code = arena.store_session(db, request, quiz_items).session_code
        arena.open_session(db, code, CREATOR)

        def override_db():
            session = session_factory()
            try:
                yield session
            finally:
                session.close()

        app.dependency_overrides[get_db] = override_db
        app.dependency_overrides[get_engine] = lambda: arena
        try:
            http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
            async with SessionApiClient("http://arena", client=http) as api:
                await api.join(code, "0xplayer", "Player")
                view = await api.get_session(code, "0xplayer")

                answers = {"q1": "A", "q2": "D"}
                play = TimedPlaythrough(api, code, "0xplayer", view["items"], item_seconds=0.01)
                play.on_result = lambda index, result: play.select(answers.get(f"q{index + 2}"))
                play.select(answers["q1"])
                result = await asyncio.wait_for(play.run(), timeout=10)

                board = await api.leaderboard(code)
            await http.aclose()
        finally:
            app.dependency_overrides.clear()

        assert [r["is_correct"] for r in play.results] == [True, False, False]
        assert result == {"score": 1, "reward": "3", "already_completed": False}
        assert board["participants"][0]["is_completed"] is True
