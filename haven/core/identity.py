"""
Principal identity resolution for Haven.

Exactly one principal is active at a time:
- AUTHENTICATED: the session provider has a session (stable server user id)
- ANONYMOUS: no session, but device storage holds a locally generated
  16-character anonymous id

Resolution order is authenticated session -> persisted anonymous id ->
None. An authenticated session always wins over a coexisting anonymous id.

The session provider (the hosted auth backend) is external; the
SessionProvider protocol describes the subset Haven uses and
InMemorySessionProvider implements it for tests and local development.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Protocol

from haven.lib.device_storage import ANONYMOUS_ID_KEY, DeviceStorage
from haven.lib.security import hash_principal

logger = logging.getLogger(__name__)


class PrincipalKind(StrEnum):
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"


@dataclass(frozen=True)
class Identity:
    """
    The resolved active principal.

    Knows which scoping column its id belongs in. Role-prefixed columns
    (sender_, seeker_, supporter_, reviewer_) are supported through the
    `prefix` argument.
    """

    kind: PrincipalKind
    id: str

    @property
    def is_anonymous(self) -> bool:
        return self.kind == PrincipalKind.ANONYMOUS

    @property
    def log_id(self) -> str:
        return hash_principal(self.id)

    def column(self, prefix: str = "") -> str:
        """Scoping column this identity's id lives in, e.g. `sender_anonymous_id`."""
        suffix = "anonymous_id" if self.is_anonymous else "user_id"
        return f"{prefix}{suffix}"

    def scope(self, prefix: str = "") -> dict[str, Any]:
        """Filter values selecting rows owned by this identity."""
        return {self.column(prefix): self.id}

    def owner_values(self, prefix: str = "") -> dict[str, Any]:
        """Insert values for the scoping pair: own column set, the other None."""
        if self.is_anonymous:
            return {f"{prefix}user_id": None, f"{prefix}anonymous_id": self.id}
        return {f"{prefix}user_id": self.id, f"{prefix}anonymous_id": None}

    def owns(self, row: dict[str, Any], prefix: str = "") -> bool:
        return row.get(self.column(prefix)) == self.id

    @classmethod
    def authenticated(cls, user_id: str) -> Identity:
        return cls(PrincipalKind.AUTHENTICATED, user_id)

    @classmethod
    def anonymous(cls, anonymous_id: str) -> Identity:
        return cls(PrincipalKind.ANONYMOUS, anonymous_id)


# =============================================================================
# Session provider
# =============================================================================


class SessionEvent(StrEnum):
    SIGNED_IN = "SIGNED_IN"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    SIGNED_OUT = "SIGNED_OUT"


@dataclass(frozen=True)
class AuthSession:
    """An authenticated session handed out by the provider. repr hides the token."""

    user_id: str
    access_token: str = field(repr=False)
    expires_at: datetime | None = None


SessionListener = Callable[[SessionEvent, AuthSession | None], Awaitable[None]]


class SessionProvider(Protocol):
    async def get_session(self) -> AuthSession | None: ...

    async def sign_out(self) -> None: ...

    async def delete_user(self, user_id: str) -> None: ...

    def on_change(self, listener: SessionListener) -> Callable[[], None]: ...


class InMemorySessionProvider:
    """
    Process-local session provider.

    sign_in()/refresh()/sign_out()/delete_user() change the held session and notify
    listeners in registration order.
    """

    def __init__(self, session: AuthSession | None = None) -> None:
        self._session = session
        self._listeners: list[SessionListener] = []
        self.deleted_user_ids: list[str] = []

    async def get_session(self) -> AuthSession | None:
        return self._session

    def on_change(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def _emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            await listener(event, self._session)

    async def sign_in(self, session: AuthSession) -> None:
        self._session = session
        await self._emit(SessionEvent.SIGNED_IN)

    async def refresh(self, access_token: str) -> None:
        if self._session is None:
            return
        self._session = AuthSession(
            user_id=self._session.user_id,
            access_token=access_token,
            expires_at=self._session.expires_at,
        )
        await self._emit(SessionEvent.TOKEN_REFRESHED)

    async def sign_out(self) -> None:
        if self._session is None:
            return
        self._session = None
        await self._emit(SessionEvent.SIGNED_OUT)

    async def delete_user(self, user_id: str) -> None:
        """Forget the account; a held session for it ends with SIGNED_OUT."""
        self.deleted_user_ids.append(user_id)
        if self._session is not None and self._session.user_id == user_id:
            await self.sign_out()


# =============================================================================
# Resolver
# =============================================================================


class IdentityResolver:
    """Resolves the active principal from the session provider and device storage."""

    def __init__(self, provider: SessionProvider, storage: DeviceStorage) -> None:
        self._provider = provider
        self._storage = storage

    async def current_session(self) -> AuthSession | None:
        return await self._provider.get_session()

    async def current_identity(self) -> Identity | None:
        session = await self._provider.get_session()
        if session is not None:
            return Identity.authenticated(session.user_id)
        anonymous_id = self._storage.get(ANONYMOUS_ID_KEY)
        if anonymous_id:
            return Identity.anonymous(anonymous_id)
        return None


__all__ = [
    "AuthSession",
    "Identity",
    "IdentityResolver",
    "InMemorySessionProvider",
    "PrincipalKind",
    "SessionEvent",
    "SessionListener",
    "SessionProvider",
]
