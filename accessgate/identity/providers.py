"""
Identity provider adapters.

A provider answers "who is signed in right now" and pushes change
notifications (sign-in, sign-out, token refresh). Credential handling
stays entirely on the provider's side.

    InMemoryIdentityProvider  — driven by hand; tests and the CLI
    SupabaseIdentityProvider  — wraps a supabase-py client's auth API
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from accessgate.exceptions import IdentityTransportError
from accessgate.tenancy.models import Principal

logger = logging.getLogger(__name__)


class AuthEvent(str, Enum):
    """Session lifecycle events, named as the auth service emits them."""
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


AuthCallback = Callable[[AuthEvent, Optional[Principal]], None]


class IdentityProvider(Protocol):
    async def get_session(self) -> Optional[Principal]:
        """Current principal, None when signed out. Raises IdentityTransportError."""
        ...

    def subscribe(self, callback: AuthCallback) -> Callable[[], None]:
        """Register for auth events. Returns an unsubscribe callable."""
        ...


class InMemoryIdentityProvider:
    """Provider whose session is set directly by the caller."""

    def __init__(self, principal: Optional[Principal] = None):
        self._principal = principal
        self._callbacks: list[AuthCallback] = []
        self.fail_with: Optional[Exception] = None

    async def get_session(self) -> Optional[Principal]:
        if self.fail_with is not None:
            raise IdentityTransportError(str(self.fail_with), provider="memory")
        return self._principal

    def subscribe(self, callback: AuthCallback) -> Callable[[], None]:
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    def emit(self, event: AuthEvent, principal: Optional[Principal]) -> None:
        for callback in list(self._callbacks):
            callback(event, principal)

    def sign_in(self, principal: Principal) -> None:
        self._principal = principal
        self.emit(AuthEvent.SIGNED_IN, principal)

    def sign_out(self) -> None:
        self._principal = None
        self.emit(AuthEvent.SIGNED_OUT, None)

    def refresh_token(self) -> None:
        self.emit(AuthEvent.TOKEN_REFRESHED, self._principal)


def principal_from_session(session: Any) -> Optional[Principal]:
    """Map a supabase Session (or None) to a Principal."""
    user = getattr(session, "user", None) if session is not None else None
    if user is None or not getattr(user, "id", None):
        return None
    return Principal(id=str(user.id), email=getattr(user, "email", None) or "")


def parse_auth_event(raw: Any) -> Optional[AuthEvent]:
    value = getattr(raw, "value", raw)
    try:
        return AuthEvent(str(value))
    except ValueError:
        return None


class SupabaseIdentityProvider:
    """
    Identity provider over `client.auth` of a supabase-py client.

    Usage:
        from supabase import create_client
        provider = SupabaseIdentityProvider(create_client(url, anon_key))
    """

    def __init__(self, client: Any):
        self.client = client

    async def get_session(self) -> Optional[Principal]:
        try:
            session = await asyncio.to_thread(self.client.auth.get_session)
        except Exception as e:
            raise IdentityTransportError(
                f"Session lookup failed: {e}", provider="supabase"
            ) from e
        return principal_from_session(session)

    def subscribe(self, callback: AuthCallback) -> Callable[[], None]:
        def _on_change(raw_event: Any, session: Any) -> None:
            event = parse_auth_event(raw_event)
            if event is None:
                logger.debug("auth_event_ignored", extra={"raw_event": str(raw_event)})
                return
            callback(event, principal_from_session(session))

        subscription = self.client.auth.on_auth_state_change(_on_change)

        def _unsubscribe() -> None:
            unsubscribe = getattr(subscription, "unsubscribe", None)
            if callable(unsubscribe):
                unsubscribe()

        return _unsubscribe
