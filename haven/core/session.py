"""
Session lifecycle for Haven.

One SessionManager owns the principal lifecycle of the application and is
the only place that establishes or tears down a PrincipalContext.

States:
    UNINITIALIZED --initialize()--> AUTHENTICATED | ANONYMOUS | SIGNED_OUT
    SIGNED_OUT    --start_anonymous()--> ANONYMOUS
    SIGNED_OUT    --sign_in()--> AUTHENTICATED
    ANONYMOUS     --sign_in() / upgrade_to_authenticated()--> AUTHENTICATED
    AUTHENTICATED --TOKEN_REFRESHED--> AUTHENTICATED (key re-derived)
    AUTHENTICATED | ANONYMOUS --sign_out()--> SIGNED_OUT

Each establishment builds a fresh PrincipalContext (identity + key +
cipher). Sign-out closes it; a service call made with a closed context
fails with KEY_NOT_INITIALIZED. Sign-out never re-resolves to an anonymous
identity within the same transition.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Protocol

from haven.config.settings import Settings, SignOutPolicy, get_settings
from haven.core.identity import (
    AuthSession,
    Identity,
    IdentityResolver,
    SessionEvent,
    SessionProvider,
)
from haven.lib.device_storage import ANONYMOUS_ID_KEY, DeviceStorage
from haven.lib.encryption import FieldCipher, KeyDerivation, get_or_create_anonymous_id
from haven.lib.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class PrincipalContext:
    """
    Lifecycle-scoped principal: resolved identity plus its key and cipher.

    Passed as the first argument to every domain service operation.
    """

    def __init__(self, identity: Identity, keys: KeyDerivation) -> None:
        self.identity = identity
        self.keys = keys
        self.cipher = FieldCipher(keys)
        self._closed = False

    @property
    def is_active(self) -> bool:
        return not self._closed

    def close(self) -> None:
        self.keys.clear()
        self._closed = True

    def __repr__(self) -> str:
        state = "active" if self.is_active else "closed"
        return f"<PrincipalContext({self.identity.kind.value}, {self.identity.log_id}, {state})>"


class SessionState(StrEnum):
    UNINITIALIZED = "uninitialized"
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"
    SIGNED_OUT = "signed_out"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.UNINITIALIZED: frozenset(
        {SessionState.AUTHENTICATED, SessionState.ANONYMOUS, SessionState.SIGNED_OUT}
    ),
    SessionState.SIGNED_OUT: frozenset({SessionState.AUTHENTICATED, SessionState.ANONYMOUS}),
    SessionState.ANONYMOUS: frozenset({SessionState.AUTHENTICATED, SessionState.SIGNED_OUT}),
    SessionState.AUTHENTICATED: frozenset({SessionState.AUTHENTICATED, SessionState.SIGNED_OUT}),
}


class DataMigrator(Protocol):
    async def migrate(self, old: PrincipalContext, new: PrincipalContext) -> Any: ...


class SessionManager:
    """
    Single authoritative session state machine.

    Args:
        provider: Session provider (hosted auth backend)
        storage: Device storage holding the anonymous id and device key
        settings: Resolved settings (sign-out policy, key salt)
        migrator: Used by upgrade_to_authenticated() to move anonymous records
    """

    def __init__(
        self,
        provider: SessionProvider,
        storage: DeviceStorage,
        settings: Settings | None = None,
        migrator: DataMigrator | None = None,
    ) -> None:
        self._provider = provider
        self._storage = storage
        self._settings = settings or get_settings()
        self._migrator = migrator
        self._resolver = IdentityResolver(provider, storage)
        self._state = SessionState.UNINITIALIZED
        self._context: PrincipalContext | None = None
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def context(self) -> PrincipalContext | None:
        return self._context

    @property
    def resolver(self) -> IdentityResolver:
        return self._resolver

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _check_transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise InvalidTransition(f"Cannot move from {self._state.value} to {target.value}")

    def _transition(self, target: SessionState) -> None:
        self._check_transition(target)
        logger.info("session_state_changed", extra={"from": self._state.value, "to": target.value})
        self._state = target

    def _new_keys(self) -> KeyDerivation:
        return KeyDerivation(self._storage, salt=self._settings.session_key_salt)

    def _establish_authenticated(self, session: AuthSession, close_previous: bool = True) -> PrincipalContext:
        # Key first: a token that cannot key a context leaves state and context untouched
        self._check_transition(SessionState.AUTHENTICATED)
        keys = self._new_keys()
        keys.derive_from_session(session.access_token)
        ctx = PrincipalContext(Identity.authenticated(session.user_id), keys)
        self._transition(SessionState.AUTHENTICATED)
        if close_previous and self._context is not None:
            self._context.close()
        self._context = ctx
        return ctx

    def _establish_anonymous(self) -> PrincipalContext:
        self._transition(SessionState.ANONYMOUS)
        anonymous_id = get_or_create_anonymous_id(self._storage)
        keys = self._new_keys()
        keys.device_key()
        self._context = PrincipalContext(Identity.anonymous(anonymous_id), keys)
        return self._context

    def _teardown(self) -> None:
        self._transition(SessionState.SIGNED_OUT)
        if self._context is not None:
            self._context.close()
        self._context = None
        if self._settings.sign_out_policy == SignOutPolicy.EXIT_ANONYMOUS:
            self._storage.remove(ANONYMOUS_ID_KEY)

    async def initialize(self) -> PrincipalContext | None:
        """Resolve the startup principal and start listening to the provider."""
        if self._state != SessionState.UNINITIALIZED:
            return self._context
        if self._unsubscribe is None:
            self._unsubscribe = self._provider.on_change(self._on_provider_event)

        session = await self._resolver.current_session()
        if session is not None:
            return self._establish_authenticated(session)
        identity = await self._resolver.current_identity()
        if identity is not None and identity.is_anonymous:
            return self._establish_anonymous()
        self._transition(SessionState.SIGNED_OUT)
        return None

    async def start_anonymous(self) -> PrincipalContext:
        """Enter anonymous mode, creating the anonymous id and device key if absent."""
        if self._state == SessionState.ANONYMOUS and self._context is not None:
            return self._context
        if self._state == SessionState.UNINITIALIZED and self._unsubscribe is None:
            self._unsubscribe = self._provider.on_change(self._on_provider_event)
        return self._establish_anonymous()

    async def sign_in(self, session: AuthSession) -> PrincipalContext:
        """
        Establish an authenticated context for `session`.

        Signing in from anonymous mode forgets the anonymous id (its records
        stay behind unless upgrade_to_authenticated() is used instead).
        """
        was_anonymous = self._state == SessionState.ANONYMOUS
        ctx = self._establish_authenticated(session)
        if was_anonymous:
            self._storage.remove(ANONYMOUS_ID_KEY)
        return ctx

    async def upgrade_to_authenticated(
        self,
        session: AuthSession,
        migrate: bool = True,
    ) -> Any:
        """
        One-way anonymous -> authenticated upgrade.

        Re-keys and re-points the anonymous principal's records to the new
        user when `migrate` is set and a migrator is configured. Returns the
        migrator's report, or None.

        Raises:
            InvalidTransition: If the current state is not ANONYMOUS
        """
        if self._state != SessionState.ANONYMOUS or self._context is None:
            raise InvalidTransition("Only an anonymous session can be upgraded")
        old_ctx = self._context
        new_ctx = self._establish_authenticated(session, close_previous=False)
        report = None
        try:
            if migrate and self._migrator is not None:
                report = await self._migrator.migrate(old_ctx, new_ctx)
        finally:
            old_ctx.close()
            self._storage.remove(ANONYMOUS_ID_KEY)
        logger.info(
            "anonymous_upgraded",
            extra={"from": old_ctx.identity.log_id, "to": new_ctx.identity.log_id, "migrated": report is not None},
        )
        return report

    async def sign_out(self) -> None:
        """Tear down the active context. Ends the provider session when authenticated."""
        if self._state not in (SessionState.AUTHENTICATED, SessionState.ANONYMOUS):
            raise InvalidTransition(f"Cannot sign out from {self._state.value}")
        was_authenticated = self._state == SessionState.AUTHENTICATED
        self._teardown()
        if was_authenticated:
            await self._provider.sign_out()

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    # -------------------------------------------------------------------------
    # Provider events
    # -------------------------------------------------------------------------

    async def _on_provider_event(self, event: SessionEvent, session: AuthSession | None) -> None:
        if event == SessionEvent.SIGNED_IN and session is not None:
            current = self._context
            if (
                self._state == SessionState.AUTHENTICATED
                and current is not None
                and current.identity.id == session.user_id
            ):
                current.keys.derive_from_session(session.access_token)
                return
            await self.sign_in(session)
        elif event == SessionEvent.TOKEN_REFRESHED and session is not None:
            if self._state == SessionState.AUTHENTICATED and self._context is not None:
                # The key is bound to the token: rows written under the old token stop decrypting
                self._context.keys.derive_from_session(session.access_token)
                logger.warning("session_key_rotated", extra={"principal": self._context.identity.log_id})
        elif event == SessionEvent.SIGNED_OUT:
            if self._state in (SessionState.AUTHENTICATED, SessionState.ANONYMOUS):
                self._teardown()


__all__ = ["DataMigrator", "PrincipalContext", "SessionManager", "SessionState"]
