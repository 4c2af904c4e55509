"""
Tests for identity provider adapters.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from accessgate.exceptions import IdentityTransportError
from accessgate.identity.providers import (
    AuthEvent,
    InMemoryIdentityProvider,
    SupabaseIdentityProvider,
    parse_auth_event,
    principal_from_session,
)
from accessgate.tenancy.models import Principal


def _session(user_id="u1", email="u1@example.com"):
    return SimpleNamespace(user=SimpleNamespace(id=user_id, email=email))


class TestInMemoryIdentityProvider:

    @pytest.mark.asyncio
    async def test_session_follows_sign_in_and_out(self):
        provider = InMemoryIdentityProvider()
        assert await provider.get_session() is None

        provider.sign_in(Principal(id="u1"))
        assert (await provider.get_session()).id == "u1"

        provider.sign_out()
        assert await provider.get_session() is None

    def test_events_reach_subscribers(self):
        provider = InMemoryIdentityProvider(Principal(id="u1"))
        seen = []
        provider.subscribe(lambda event, principal: seen.append((event, principal)))

        provider.refresh_token()
        provider.sign_out()

        assert seen == [
            (AuthEvent.TOKEN_REFRESHED, Principal(id="u1")),
            (AuthEvent.SIGNED_OUT, None),
        ]

    def test_unsubscribe(self):
        provider = InMemoryIdentityProvider()
        unsubscribe = provider.subscribe(lambda e, p: None)
        assert provider.subscriber_count == 1
        unsubscribe()
        unsubscribe()
        assert provider.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_fail_with(self):
        provider = InMemoryIdentityProvider(Principal(id="u1"))
        provider.fail_with = ConnectionError("offline")
        with pytest.raises(IdentityTransportError) as exc:
            await provider.get_session()
        assert exc.value.provider == "memory"


class TestSessionMapping:

    def test_principal_from_session(self):
        principal = principal_from_session(_session())
        assert principal == Principal(id="u1", email="u1@example.com")

    def test_missing_email(self):
        assert principal_from_session(_session(email=None)).email == ""

    def test_no_session(self):
        assert principal_from_session(None) is None
        assert principal_from_session(SimpleNamespace(user=None)) is None

    def test_parse_auth_event(self):
        assert parse_auth_event("SIGNED_IN") == AuthEvent.SIGNED_IN
        assert parse_auth_event(SimpleNamespace(value="SIGNED_OUT")) == AuthEvent.SIGNED_OUT
        assert parse_auth_event("PASSWORD_RECOVERY") is None


class TestSupabaseIdentityProvider:

    @pytest.mark.asyncio
    async def test_get_session(self):
        client = MagicMock()
        client.auth.get_session.return_value = _session("u9", "u9@example.com")

        principal = await SupabaseIdentityProvider(client).get_session()

        assert principal.id == "u9"
        assert principal.email == "u9@example.com"

    @pytest.mark.asyncio
    async def test_signed_out_session(self):
        client = MagicMock()
        client.auth.get_session.return_value = None
        assert await SupabaseIdentityProvider(client).get_session() is None

    @pytest.mark.asyncio
    async def test_transport_error(self):
        client = MagicMock()
        client.auth.get_session.side_effect = ConnectionError("timeout")

        with pytest.raises(IdentityTransportError) as exc:
            await SupabaseIdentityProvider(client).get_session()

        assert exc.value.provider == "supabase"

    def test_subscribe_translates_events(self):
        client = MagicMock()
        provider = SupabaseIdentityProvider(client)
        seen = []

        unsubscribe = provider.subscribe(lambda event, principal: seen.append((event, principal)))
        handler = client.auth.on_auth_state_change.call_args[0][0]
        handler("SIGNED_IN", _session())
        handler("MFA_CHALLENGE_VERIFIED", _session())
        handler("SIGNED_OUT", None)

        assert [e for e, _ in seen] == [AuthEvent.SIGNED_IN, AuthEvent.SIGNED_OUT]
        assert seen[0][1].id == "u1"
        assert seen[1][1] is None

        unsubscribe()
        client.auth.on_auth_state_change.return_value.unsubscribe.assert_called_once()

    def test_unsubscribe_without_handle(self):
        client = MagicMock()
        client.auth.on_auth_state_change.return_value = None
        unsubscribe = SupabaseIdentityProvider(client).subscribe(lambda e, p: None)
        unsubscribe()
