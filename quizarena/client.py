"""Async HTTP client for the session API and a timed playthrough driver.

``TimedPlaythrough`` plays one participant through a session the way the
browser does: every item gets a countdown, and when it runs out the last
selection (or ``no_answer``) is submitted and the next item starts. After
the last item the participant completes the session.
"""

from __future__ import annotations

import asyncio
import logging
import types
from typing import Any, Callable

import httpx

from quizarena.models.items import NO_ANSWER

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """A non-2xx reply from the session API."""

    def __init__(self, status_code: int, message: str, kind: str = "") -> None:
        super().__init__(f"{status_code} {kind or 'Error'}: {message}")
        self.status_code = status_code
        self.message = message
        self.kind = kind


class SessionApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        client: httpx.AsyncClient | None = None,
        token: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Server root, e.g. ``http://localhost:8000``.
            client: Optional httpx client to use. If not provided, one will be created.
            token: Identity bearer token sent with every request.
        """
        self._base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._token = token
        self._timeout = timeout

    async def __aenter__(self) -> SessionApiClient:
        self._get_client()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: types.TracebackType | None,
    ) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        response = await self._get_client().request(
            method, f"{self._base_url}/api/sessions{path}", headers=headers, **kwargs
        )
        if response.is_error:
            try:
                body = response.json()
            except ValueError:
                body = {}
            raise ApiError(response.status_code, body.get("error") or response.text, body.get("kind", ""))
        return response.json()

    async def get_session(self, code: str, address: str | None = None) -> dict[str, Any]:
        params = {"address": address} if address else None
        return await self._request("GET", f"/{code}", params=params)

    async def join(self, code: str, address: str, display_name: str) -> dict[str, Any]:
        return await self._request("POST", f"/{code}/join", json={"address": address, "display_name": display_name})

    async def submit_answer(self, code: str, address: str, item_id: str, answer: Any) -> dict[str, Any]:
        payload = {"address": address, "item_id": item_id, "answer": answer}
        return await self._request("POST", f"/{code}/answers", json=payload)

    async def complete(self, code: str, address: str) -> dict[str, Any]:
        return await self._request("POST", f"/{code}/complete", json={"address": address})

    async def leaderboard(self, code: str, order: str = "score") -> dict[str, Any]:
        return await self._request("GET", f"/{code}/leaderboard", params={"order": order})


class TimedPlaythrough:
    """Per-item countdown driver for one participant.

    A manual ``next_item()`` and a timer expiry for the same item can fire
    together; the ``_processing`` flag and the item-index check let only
    the first of them submit. The server's once-per-item rule still holds
    if both slip through.
    """

    def __init__(
        self,
        api: SessionApiClient,
        code: str,
        address: str,
        items: list[dict[str, Any]],
        *,
        item_seconds: float = 30.0,
        on_result: Callable[[int, dict[str, Any]], None] | None = None,
    ) -> None:
        self.api = api
        self.code = code
        self.address = address
        self.items = items
        self.item_seconds = item_seconds
        self.on_result = on_result

        self.index = 0
        self.selection: Any = None
        self.results: list[dict[str, Any]] = []
        self.completion: dict[str, Any] | None = None
        self.error: Exception | None = None

        self._processing = False
        self._timer: asyncio.TimerHandle | None = None
        self._done = asyncio.Event()
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    @property
    def current_item(self) -> dict[str, Any] | None:
        return self.items[self.index] if self.index < len(self.items) else None

    def select(self, answer: Any) -> None:
        """Record the participant's current choice for the active item."""
        self.selection = answer

    async def run(self) -> dict[str, Any]:
        """Play every item and return the completion result."""
        if not self.items:
            await self._complete()
        else:
            self._arm()
        await self._done.wait()
        if self.error is not None:
            raise self.error
        if self.completion is None:
            raise RuntimeError(f"Playthrough of {self.code} was cancelled")
        return self.completion

    async def next_item(self) -> None:
        """Submit the current selection now instead of waiting for the timer."""
        await self._advance(self.index)

    def cancel(self) -> None:
        self._disarm()
        for task in self._pending:
            task.cancel()
        self._done.set()

    # ── Internals ────────────────────────────────────────────────────────

    def _arm(self) -> None:
        self._disarm()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.item_seconds, self._on_expired, self.index)

    def _disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_expired(self, index: int) -> None:
        logger.debug("Timer expired on item %d of %s", index, self.code)
        task = asyncio.ensure_future(self._advance(index))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _advance(self, index: int) -> None:
        if self._processing or index != self.index or self._done.is_set():
            return
        self._processing = True
        self._disarm()
        try:
            item = self.items[index]
            answer = self.selection if self.selection is not None else NO_ANSWER
            result = await self.api.submit_answer(self.code, self.address, item["id"], answer)
            self.results.append(result)
            if self.on_result is not None:
                self.on_result(index, result)

            self.index += 1
            self.selection = None
            if self.index >= len(self.items):
                await self._complete()
            else:
                self._arm()
        except (ApiError, httpx.HTTPError) as exc:
            logger.warning("Playthrough of %s stopped on item %d: %s", self.code, index, exc)
            self._stop(exc)
        except Exception as exc:
            logger.exception("Playthrough of %s failed on item %d", self.code, index)
            self._stop(exc)
        finally:
            self._processing = False

    async def _complete(self) -> None:
        try:
            self.completion = await self.api.complete(self.code, self.address)
        except (ApiError, httpx.HTTPError) as exc:
            logger.warning("Completing %s failed: %s", self.code, exc)
            self.error = exc
        except Exception as exc:
            logger.exception("Completing %s failed", self.code)
            self.error = exc
        self._done.set()

    def _stop(self, exc: Exception) -> None:
        self._disarm()
        self.error = exc
        self._done.set()
