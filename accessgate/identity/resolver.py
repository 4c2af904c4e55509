"""
Identity Resolver.

Tracks the current principal and re-broadcasts provider events. Once
primed, `current()` answers without a network round trip.

States:
    AUTHENTICATING   not primed yet
    AUTHENTICATED    a principal is signed in
    UNAUTHENTICATED  signed out, or the provider could not be reached
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict

from accessgate.identity.providers import AuthEvent, IdentityProvider
from accessgate.tenancy.models import Principal

logger = logging.getLogger(__name__)


class IdentityStatus(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


class IdentityState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: IdentityStatus = IdentityStatus.AUTHENTICATING
    principal: Optional[Principal] = None

    @classmethod
    def authenticated(cls, principal: Principal) -> IdentityState:
        return cls(status=IdentityStatus.AUTHENTICATED, principal=principal)

    @classmethod
    def unauthenticated(cls) -> IdentityState:
        return cls(status=IdentityStatus.UNAUTHENTICATED)

    @property
    def is_authenticated(self) -> bool:
        return self.status == IdentityStatus.AUTHENTICATED


IdentityListener = Callable[[IdentityState, IdentityState, AuthEvent], None]


class IdentityResolver:
    """Session-scoped view of the identity provider."""

    def __init__(self, provider: IdentityProvider):
        self.provider = provider
        self._state = IdentityState()
        self._listeners: list[IdentityListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    def current(self) -> IdentityState:
        return self._state

    @property
    def principal(self) -> Optional[Principal]:
        return self._state.principal

    def start(self) -> None:
        """Subscribe to provider events. Idempotent."""
        if self._unsubscribe is None:
            self._unsubscribe = self.provider.subscribe(self.handle_event)

    async def prime(self) -> IdentityState:
        """
        Ask the provider for the current session.

        Any provider failure reads as signed out; consumers only
        distinguish authenticated from not.
        """
        try:
            principal = await self.provider.get_session()
        except Exception as e:
            logger.warning("identity_lookup_failed", extra={"error": str(e)})
            principal = None

        event = AuthEvent.INITIAL_SESSION
        self._transition(self._state_for(principal), event)
        return self._state

    def handle_event(self, event: AuthEvent, principal: Optional[Principal]) -> None:
        if event == AuthEvent.SIGNED_OUT:
            new_state = IdentityState.unauthenticated()
        else:
            new_state = self._state_for(principal)
        self._transition(new_state, event)

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Listen for state changes. Listeners receive (old, new, event)."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()

    @staticmethod
    def _state_for(principal: Optional[Principal]) -> IdentityState:
        if principal is None:
            return IdentityState.unauthenticated()
        return IdentityState.authenticated(principal)

    def _transition(self, new_state: IdentityState, event: AuthEvent) -> None:
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info(
                "identity_changed",
                extra={
                    "event": event.value,
                    "outcome": new_state.status.value,
                    "principal_id": new_state.principal.id if new_state.principal else None,
                },
            )
        for listener in list(self._listeners):
            try:
                listener(old_state, new_state, event)
            except Exception as e:
                logger.error(f"Identity listener failed on {event.value}: {e}")
