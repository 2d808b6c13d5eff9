from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)

USER_TOKEN_ENV = "TILEFETCH_USER_TOKEN"
USER_TOKEN_EXPIRES_ENV = "TILEFETCH_USER_TOKEN_EXPIRES"
ANONYMOUS_TOKEN_ENV = "TILEFETCH_ANONYMOUS_TOKEN"
ANONYMOUS_TOKEN_EXPIRES_ENV = "TILEFETCH_ANONYMOUS_TOKEN_EXPIRES"


class CredentialKind(str, Enum):
    USER = "user"
    ANONYMOUS = "anonymous"
    NONE = "none"


@dataclass(frozen=True)
class Credential:
    """Token attached to one remote request."""

    kind: CredentialKind
    token: str | None = None
    expires_at: datetime | None = None

    def headers(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}


NO_CREDENTIAL = Credential(kind=CredentialKind.NONE)


@dataclass(frozen=True)
class UserSession:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class AuthState:
    """Snapshot of the session's authentication state, shared read-only by fetches."""

    user: UserSession | None = None
    anonymous_token: str | None = None
    anonymous_expires_at: datetime | None = None


def select_credential(state: AuthState, now: datetime | None = None) -> Credential:
    """Return the user token while it is valid, otherwise the anonymous token.

    Without either token requests go out unauthenticated and rely on the
    remote service's public-data access.
    """

    now = now or _utcnow()
    user = state.user
    if user is not None and user.token and _as_aware(user.expires_at) > _as_aware(now):
        return Credential(kind=CredentialKind.USER, token=user.token, expires_at=user.expires_at)
    return _anonymous_or_none(state, now)


def fallback_credential(
    state: AuthState, failed: Credential, now: datetime | None = None
) -> Credential | None:
    """Return the next credential to try after ``failed`` was rejected, if any."""

    now = now or _utcnow()
    if failed.kind is CredentialKind.USER:
        return _anonymous_or_none(state, now)
    if failed.kind is CredentialKind.ANONYMOUS:
        return NO_CREDENTIAL
    return None


def auth_state_from_env() -> AuthState:
    user_token = os.getenv(USER_TOKEN_ENV, "").strip()
    user: UserSession | None = None
    if user_token:
        expires_at = _parse_timestamp(os.getenv(USER_TOKEN_EXPIRES_ENV, ""))
        if expires_at is None:
            logger.warning(
                "%s is set without a valid %s; treating the user token as expired.",
                USER_TOKEN_ENV,
                USER_TOKEN_EXPIRES_ENV,
            )
            expires_at = datetime.fromtimestamp(0, tz=timezone.utc)
        user = UserSession(token=user_token, expires_at=expires_at)

    anonymous_token = os.getenv(ANONYMOUS_TOKEN_ENV, "").strip() or None
    anonymous_expires_at = _parse_timestamp(os.getenv(ANONYMOUS_TOKEN_EXPIRES_ENV, ""))
    return AuthState(
        user=user,
        anonymous_token=anonymous_token,
        anonymous_expires_at=anonymous_expires_at,
    )


def _anonymous_or_none(state: AuthState, now: datetime) -> Credential:
    if state.anonymous_token:
        expires_at = state.anonymous_expires_at
        if expires_at is None or _as_aware(expires_at) > _as_aware(now):
            return Credential(
                kind=CredentialKind.ANONYMOUS,
                token=state.anonymous_token,
                expires_at=expires_at,
            )
    return NO_CREDENTIAL


def _parse_timestamp(raw_value: str | None) -> datetime | None:
    token = (raw_value or "").strip()
    if not token:
        return None
    try:
        return datetime.fromtimestamp(float(token), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        pass
    try:
        return _as_aware(datetime.fromisoformat(token.replace("Z", "+00:00")))
    except ValueError:
        return None


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
