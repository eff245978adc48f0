"""Error taxonomy for the session engine.

Every failure a caller can see is an ``ArenaError`` subclass carrying the
HTTP status the API layer renders it with.
"""

from __future__ import annotations


class ArenaError(Exception):
    """Base class for expected, user-visible failures."""

    status_code: int = 400
    default_message: str = "Request failed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


# ── Not found (404) ──────────────────────────────────────────────────────


class NotFound(ArenaError):
    status_code = 404
    default_message = "Not found"


class SessionNotFound(NotFound):
    default_message = "Session not found"


class ItemNotFound(NotFound):
    default_message = "Question not found in this session"


# ── Forbidden (401 / 403) ────────────────────────────────────────────────


class Forbidden(ArenaError):
    status_code = 403
    default_message = "Forbidden"


class SessionNotOpen(Forbidden):
    default_message = "This session is not active or is private."


class NotAMember(Forbidden):
    default_message = "You have not joined this session."


class NotCreator(Forbidden):
    default_message = "Only the session creator can do that."


class CapacityReached(Forbidden):
    default_message = "The maximum number of participants for this session has been reached."


class IdentityRejected(Forbidden):
    status_code = 401
    default_message = "Authentication failed: identity token missing or invalid."


# ── Gone (410) ───────────────────────────────────────────────────────────


class AlreadyFinished(ArenaError):
    status_code = 410
    default_message = "This session has already ended."


# ── Conflict (409) ───────────────────────────────────────────────────────


class Conflict(ArenaError):
    status_code = 409
    default_message = "The request conflicts with the current state."


class AlreadyJoined(Conflict):
    default_message = "You have already joined this session."


class AlreadyCompleted(Conflict):
    default_message = "You have already completed this session."


# ── Validation (400) ─────────────────────────────────────────────────────


class ValidationFailed(ArenaError):
    status_code = 400
    default_message = "Invalid request"


class ContentUnusable(ValidationFailed):
    default_message = "Failed to generate questions from the provided content. Please try a different source."


# ── Collaborators (503) ──────────────────────────────────────────────────


class GenerationUnavailable(ArenaError):
    status_code = 503
    default_message = "Content generation is temporarily unavailable. Please try again later."


# ── Internal (500) ───────────────────────────────────────────────────────


class InvalidRosterState(ArenaError):
    status_code = 500
    default_message = "Session roster is inconsistent; payout cannot be computed."
