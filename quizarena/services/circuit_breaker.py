"""Circuit breakers around third-party collaborators.

Each external dependency (the content generator, document reader, page
scraper, transcript fetcher and video-metadata lookup) gets its own
breaker:

- CLOSED: calls run under a timeout; ``failure_threshold`` consecutive
  failures open the circuit for ``cooldown`` seconds.
- OPEN: calls fail immediately with ``CircuitOpenError``.
- HALF_OPEN: after the cooldown exactly one probe call goes through;
  success closes the circuit, failure re-opens it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, TypeVar

from quizarena.config import BreakerSettings, settings
from quizarena.errors import ArenaError, GenerationUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(Exception):
    """Raised without calling the collaborator while its circuit is open."""

    def __init__(self, name: str, retry_in: float) -> None:
        self.name = name
        self.retry_in = retry_in
        super().__init__(f"Circuit breaker is OPEN for {name}. Try again in {retry_in:.0f}s.")


class CallTimeoutError(Exception):
    """The wrapped call exceeded the breaker's call timeout."""


@dataclass
class BreakerStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    timeouts: int = 0
    rejected_requests: int = 0
    circuit_opened: int = 0


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 3,
        call_timeout: float = 30.0,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.call_timeout = call_timeout
        self.cooldown = cooldown
        self._clock = clock

        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.next_attempt_at: float | None = None
        self._probe_in_flight = False
        self.stats = BreakerStats()

    @classmethod
    def from_settings(cls, name: str, config: BreakerSettings, **kwargs: Any) -> CircuitBreaker:
        return cls(
            name,
            failure_threshold=config.failure_threshold,
            call_timeout=config.call_timeout,
            cooldown=config.cooldown,
            **kwargs,
        )

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn(*args, **kwargs)`` under this breaker."""
        self.stats.total_requests += 1
        self._before_call()

        try:
            result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.call_timeout)
        except asyncio.TimeoutError as exc:
            self.stats.timeouts += 1
            self._on_failure()
            raise CallTimeoutError(f"Request timeout for {self.name}") from exc
        except asyncio.CancelledError:
            self._probe_in_flight = False
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _before_call(self) -> None:
        if self.state is BreakerState.HALF_OPEN and self._probe_in_flight:
            self.stats.rejected_requests += 1
            raise CircuitOpenError(self.name, 0.0)

        if self.state is BreakerState.OPEN:
            now = self._clock()
            next_attempt_at = self.next_attempt_at or 0.0
            if now < next_attempt_at:
                self.stats.rejected_requests += 1
                raise CircuitOpenError(self.name, next_attempt_at - now)
            self.state = BreakerState.HALF_OPEN
            logger.info("Circuit breaker %s transitioning to HALF_OPEN", self.name)

        if self.state is BreakerState.HALF_OPEN:
            self._probe_in_flight = True

    def _on_success(self) -> None:
        self.stats.successful_requests += 1
        self.failure_count = 0
        self._probe_in_flight = False
        if self.state is BreakerState.HALF_OPEN:
            self.state = BreakerState.CLOSED
            self.next_attempt_at = None
            logger.info("Circuit breaker %s closed after successful probe", self.name)

    def _on_failure(self) -> None:
        self.stats.failed_requests += 1
        self.failure_count += 1
        probe_failed = self.state is BreakerState.HALF_OPEN
        self._probe_in_flight = False
        if probe_failed or self.failure_count >= self.failure_threshold:
            self.state = BreakerState.OPEN
            self.next_attempt_at = self._clock() + self.cooldown
            self.stats.circuit_opened += 1
            logger.error("Circuit breaker %s opened after %d failures", self.name, self.failure_count)

    def reset(self) -> None:
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.next_attempt_at = None
        self._probe_in_flight = False
        logger.info("Circuit breaker %s manually reset", self.name)

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "stats": asdict(self.stats),
        }


async def guarded_call(
    breaker: CircuitBreaker,
    unavailable_message: str,
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Call through *breaker*, surfacing any collaborator failure as ``GenerationUnavailable``."""
    try:
        return await breaker.call(fn, *args, **kwargs)
    except ArenaError:
        raise
    except Exception as exc:
        logger.error("%s call failed: %s", breaker.name, exc)
        raise GenerationUnavailable(unavailable_message) from exc


class BreakerRegistry:
    """One breaker per collaborator, shared by the whole process."""

    COLLABORATORS = ("generator", "document_reader", "scraper", "transcript", "video_metadata")

    def __init__(self, breakers: dict[str, CircuitBreaker] | None = None) -> None:
        self._breakers = breakers if breakers is not None else self._from_settings()

    @classmethod
    def _from_settings(cls) -> dict[str, CircuitBreaker]:
        return {
            name: CircuitBreaker.from_settings(name, getattr(settings, f"{name}_breaker"))
            for name in cls.COLLABORATORS
        }

    def __getitem__(self, name: str) -> CircuitBreaker:
        return self._breakers[name]

    def stats(self) -> list[dict[str, Any]]:
        return [breaker.snapshot() for breaker in self._breakers.values()]

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
        logger.info("All circuit breakers reset")


breakers = BreakerRegistry()
