"""Identity verification for state-changing calls.

The wallet provider is external; after a wallet login the caller holds a
bearer token whose subject is its address. When
``require_identity_token`` is on, every mutating route checks that the
address in the request body is the token's subject. When it is off the
self-reported address is trusted, which is only suitable for local
development.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from quizarena.config import settings
from quizarena.errors import IdentityRejected

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


def normalize_address(address: str) -> str:
    return address.strip().lower()


def issue_identity_token(address: str, *, hours: int | None = None) -> str:
    """Mint a token binding *address*; used by the wallet login flow and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": normalize_address(address),
        "iat": now,
        "exp": now + timedelta(hours=hours or settings.identity_token_hours),
    }
    return jwt.encode(payload, settings.identity_secret, algorithm=settings.identity_algorithm)


def token_subject(token: str) -> str:
    try:
        payload = jwt.decode(token, settings.identity_secret, algorithms=[settings.identity_algorithm])
    except jwt.ExpiredSignatureError as exc:
        raise IdentityRejected("Authentication expired: identity token too old.") from exc
    except jwt.InvalidTokenError as exc:
        raise IdentityRejected() from exc
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise IdentityRejected()
    return subject


class IdentityCheck:
    """Verifies that a request acts on behalf of the address it names."""

    def __init__(self, credentials: HTTPAuthorizationCredentials | None) -> None:
        self._credentials = credentials

    def require(self, address: str) -> str:
        if not settings.require_identity_token:
            return address
        if self._credentials is None:
            raise IdentityRejected()
        if token_subject(self._credentials.credentials) != normalize_address(address):
            logger.warning("Identity token subject does not match claimed address %s", address)
            raise IdentityRejected("Authentication failed: token does not belong to this address.")
        return address


def get_identity(credentials: HTTPAuthorizationCredentials | None = Depends(_bearer)) -> IdentityCheck:
    """FastAPI dependency returning the request's identity check."""
    return IdentityCheck(credentials)
