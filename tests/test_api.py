"""End-to-end tests of the HTTP surface through FastAPI's TestClient."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from quizarena.config import settings
from quizarena.database import get_db
from quizarena.main import app
from quizarena.services.cache import SessionCache
from quizarena.services.circuit_breaker import BreakerRegistry
from quizarena.services.content_generator import ContentGenerator
from quizarena.services.identity import issue_identity_token
from quizarena.services.session_engine import SessionEngine, get_engine

HOST = "0xhost"


@pytest.fixture
def client(session_factory, cache: SessionCache) -> Iterator[TestClient]:
    arena = SessionEngine(cache=cache, generator=ContentGenerator(registry=BreakerRegistry()))

    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_engine] = lambda: arena
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create(client: TestClient, **overrides) -> str:
    payload = {"creator_address": HOST, "capacity": 2, "reward_rate": "10", "item_count": 3, "prompt": "Volcanoes"}
    payload.update(overrides)
    response = client.post("/api/sessions/create/prompt", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["session_code"]


class TestSessionFlow:
    def test_full_game(self, client: TestClient) -> None:
        code = _create(client)

        hidden = client.get(f"/api/sessions/{code}", params={"address": "0xguest"})
        assert hidden.status_code == 403
        assert hidden.json()["kind"] == "SessionNotOpen"

        assert client.post(f"/api/sessions/{code}/open", json={"address": HOST}).json()["is_public"] is True

        joined = client.post(f"/api/sessions/{code}/join", json={"address": "0xguest", "display_name": "Guest"})
        assert joined.status_code == 201
        assert joined.json()["score"] == 0

        view = client.get(f"/api/sessions/{code}", params={"address": "0xguest"}).json()
        assert view["already_joined"] is True
        assert view["item_seconds"] == settings.item_seconds
        item_ids = [item["id"] for item in view["items"]]
        assert len(item_ids) == 3
        assert all("correct_label" not in item for item in view["items"])

        def answer(item_id: str, value) -> dict:
            payload = {"address": "0xguest", "item_id": item_id, "answer": value}
            return client.post(f"/api/sessions/{code}/answers", json=payload).json()

        assert answer(item_ids[0], "A") == {"is_correct": True, "score": 1, "correct_answer": "A", "already_answered": False}
        assert answer(item_ids[1], 0)["is_correct"] is False
        assert answer(item_ids[1], "B")["already_answered"] is True
        assert answer(item_ids[2], "no_answer")["is_correct"] is False

        done = client.post(f"/api/sessions/{code}/complete", json={"address": "0xguest"}).json()
        assert done == {"score": 1, "reward": "10", "already_completed": False}

        board = client.get(f"/api/sessions/{code}/leaderboard").json()
        assert [(p["address"], p["score"]) for p in board["participants"]] == [("0xguest", 1)]

        assert client.put(f"/api/sessions/{code}/ledger", json={"address": HOST, "ledger_game_id": "0x07"}).status_code == 200

        payout = client.post(f"/api/sessions/{code}/close", json={"address": HOST}).json()
        assert payout == {"ledger_game_id": 7, "participants": ["0xguest"], "rewards": ["10"], "scores": [1]}

        late = client.post(f"/api/sessions/{code}/join", json={"address": "0xlate", "display_name": "Late"})
        assert late.status_code == 410
        assert late.json() == {"error": "This session has already ended.", "kind": "AlreadyFinished"}

    def test_open_sessions_listing(self, client: TestClient) -> None:
        quiz = _create(client)
        facts = _create(client, kind="fact_check", difficulty="hard")
        for code in (quiz, facts):
            client.post(f"/api/sessions/{code}/open", json={"address": HOST})

        listed = client.get("/api/sessions/").json()["sessions"]
        assert [s["session_code"] for s in listed] == [facts, quiz]
        only_facts = client.get("/api/sessions/", params={"kind": "fact_check"}).json()["sessions"]
        assert [s["session_code"] for s in only_facts] == [facts]

    def test_history(self, client: TestClient) -> None:
        code = _create(client)
        client.post(f"/api/sessions/{code}/open", json={"address": HOST})
        client.post(f"/api/sessions/{code}/join", json={"address": "0xguest", "display_name": "Guest"})
        client.post(f"/api/sessions/{code}/complete", json={"address": "0xguest"})

        guest = client.get("/api/sessions/history/0xGUEST").json()
        assert guest["address"] == "0xguest"
        assert [(s["session_code"], s["is_creator"], s["score"], s["reward"]) for s in guest["sessions"]] == [
            (code, False, 0, "0")
        ]
        host = client.get(f"/api/sessions/history/{HOST}").json()["sessions"]
        assert [(s["session_code"], s["is_creator"]) for s in host] == [(code, True)]


class TestErrors:
    def test_unknown_session(self, client: TestClient) -> None:
        response = client.get("/api/sessions/zzzzz")
        assert response.status_code == 404
        assert response.json() == {"error": "Session not found", "kind": "SessionNotFound"}

    def test_not_creator(self, client: TestClient) -> None:
        code = _create(client)
        response = client.post(f"/api/sessions/{code}/open", json={"address": "0xsomeoneelse"})
        assert response.status_code == 403
        assert response.json()["kind"] == "NotCreator"

    def test_schema_validation(self, client: TestClient) -> None:
        response = client.post(
            "/api/sessions/create/prompt",
            json={"creator_address": HOST, "capacity": 0, "reward_rate": "1", "prompt": "x"},
        )
        assert response.status_code == 422

    def test_invalid_answer(self, client: TestClient) -> None:
        code = _create(client)
        client.post(f"/api/sessions/{code}/open", json={"address": HOST})
        client.post(f"/api/sessions/{code}/join", json={"address": "0xg", "display_name": "G"})
        item_id = client.get(f"/api/sessions/{code}", params={"address": "0xg"}).json()["items"][0]["id"]

        response = client.post(f"/api/sessions/{code}/answers", json={"address": "0xg", "item_id": item_id, "answer": "Z"})
        assert response.status_code == 400
        assert response.json()["kind"] == "ValidationFailed"

    def test_pdf_upload_checks(self, client: TestClient) -> None:
        form = {"creator_address": HOST, "capacity": "3", "reward_rate": "1"}
        not_pdf = client.post(
            "/api/sessions/create/pdf", data=form, files={"file": ("notes.txt", b"plain text", "text/plain")}
        )
        assert not_pdf.status_code == 400

        unconfigured = client.post(
            "/api/sessions/create/pdf", data=form, files={"file": ("notes.pdf", b"%PDF-1.7\n...", "application/pdf")}
        )
        assert unconfigured.status_code == 503
        assert unconfigured.json()["kind"] == "GenerationUnavailable"

        bad_form = client.post(
            "/api/sessions/create/pdf",
            data={**form, "capacity": "0"},
            files={"file": ("notes.pdf", b"%PDF-1.7", "application/pdf")},
        )
        assert bad_form.status_code == 400


class TestIdentity:
    @pytest.fixture(autouse=True)
    def _require_tokens(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "require_identity_token", True)
        monkeypatch.setattr(settings, "identity_secret", "test-secret-with-enough-length-for-hs256")

    def _open_session(self, client: TestClient) -> str:
        host_auth = {"Authorization": f"Bearer {issue_identity_token(HOST)}"}
        payload = {"creator_address": HOST, "capacity": 2, "reward_rate": "1", "item_count": 2, "prompt": "Bees"}
        code = client.post("/api/sessions/create/prompt", json=payload, headers=host_auth).json()["session_code"]
        client.post(f"/api/sessions/{code}/open", json={"address": HOST}, headers=host_auth)
        return code

    def test_missing_token(self, client: TestClient) -> None:
        code = self._open_session(client)
        response = client.post(f"/api/sessions/{code}/join", json={"address": "0xg", "display_name": "G"})
        assert response.status_code == 401
        assert response.json()["kind"] == "IdentityRejected"

    def test_token_for_other_address(self, client: TestClient) -> None:
        code = self._open_session(client)
        response = client.post(
            f"/api/sessions/{code}/join",
            json={"address": "0xg", "display_name": "G"},
            headers={"Authorization": f"Bearer {issue_identity_token('0xother')}"},
        )
        assert response.status_code == 401

    def test_matching_token(self, client: TestClient) -> None:
        code = self._open_session(client)
        response = client.post(
            f"/api/sessions/{code}/join",
            json={"address": "0xG", "display_name": "G"},
            headers={"Authorization": f"Bearer {issue_identity_token('0xg')}"},
        )
        assert response.status_code == 201

    def test_reads_need_no_token(self, client: TestClient) -> None:
        code = self._open_session(client)
        assert client.get(f"/api/sessions/{code}/leaderboard").status_code == 200


class TestServiceEndpoints:
    def test_health(self, client: TestClient) -> None:
        assert client.get("/api/health").json() == {"status": "ok", "api_key_configured": False}

    def test_stats(self, client: TestClient) -> None:
        body = client.get("/api/stats").json()
        assert {b["name"] for b in body["breakers"]} == set(BreakerRegistry.COLLABORATORS)
        assert "size" in body["cache"]
