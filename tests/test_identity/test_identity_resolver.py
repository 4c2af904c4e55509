"""
Tests for the Identity Resolver.
"""

from __future__ import annotations

import pytest

from accessgate.identity.providers import AuthEvent, InMemoryIdentityProvider
from accessgate.identity.resolver import IdentityResolver, IdentityState, IdentityStatus
from accessgate.tenancy.models import Principal

ALICE = Principal(id="alice")
BOB = Principal(id="bob")


@pytest.fixture
def provider():
    return InMemoryIdentityProvider()


@pytest.fixture
def resolver(provider):
    r = IdentityResolver(provider)
    r.start()
    return r


class TestPrime:

    def test_authenticating_before_prime(self, resolver):
        assert resolver.current().status == IdentityStatus.AUTHENTICATING
        assert resolver.principal is None

    @pytest.mark.asyncio
    async def test_prime_signed_in(self, provider):
        provider._principal = ALICE
        resolver = IdentityResolver(provider)

        state = await resolver.prime()

        assert state.is_authenticated
        assert resolver.principal == ALICE

    @pytest.mark.asyncio
    async def test_prime_signed_out(self, resolver):
        state = await resolver.prime()
        assert state.status == IdentityStatus.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_provider_failure_reads_as_signed_out(self, provider, resolver):
        provider._principal = ALICE
        provider.fail_with = ConnectionError("offline")

        state = await resolver.prime()

        assert state.status == IdentityStatus.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_prime_notifies_with_initial_session(self, provider, resolver):
        provider._principal = ALICE
        seen = []
        resolver.subscribe(lambda old, new, event: seen.append((old.status, new.status, event)))

        await resolver.prime()

        assert seen == [
            (IdentityStatus.AUTHENTICATING, IdentityStatus.AUTHENTICATED, AuthEvent.INITIAL_SESSION),
        ]


class TestEvents:

    @pytest.mark.asyncio
    async def test_sign_in_and_out(self, provider, resolver):
        await resolver.prime()

        provider.sign_in(ALICE)
        assert resolver.current() == IdentityState.authenticated(ALICE)

        provider.sign_out()
        assert resolver.current() == IdentityState.unauthenticated()

    @pytest.mark.asyncio
    async def test_listeners_see_principal_change(self, provider, resolver):
        provider.sign_in(ALICE)
        seen = []
        resolver.subscribe(lambda old, new, event: seen.append((old.principal, new.principal, event)))

        provider.sign_in(BOB)

        assert seen == [(ALICE, BOB, AuthEvent.SIGNED_IN)]

    def test_token_refresh_keeps_state(self, provider, resolver):
        provider.sign_in(ALICE)
        before = resolver.current()
        provider.refresh_token()
        assert resolver.current() == before

    def test_signed_out_event_ignores_payload(self, resolver):
        resolver.handle_event(AuthEvent.SIGNED_IN, ALICE)
        resolver.handle_event(AuthEvent.SIGNED_OUT, ALICE)
        assert resolver.current().status == IdentityStatus.UNAUTHENTICATED

    def test_failing_listener_isolated(self, provider, resolver):
        seen = []

        def boom(old, new, event):
            raise RuntimeError("bug")

        resolver.subscribe(boom)
        resolver.subscribe(lambda old, new, event: seen.append(event))
        provider.sign_in(ALICE)

        assert seen == [AuthEvent.SIGNED_IN]
        assert resolver.principal == ALICE

    def test_remove_listener(self, provider, resolver):
        seen = []
        remove = resolver.subscribe(lambda old, new, event: seen.append(event))
        remove()
        provider.sign_in(ALICE)
        assert seen == []


class TestLifecycle:

    def test_start_is_idempotent(self, provider, resolver):
        resolver.start()
        assert provider.subscriber_count == 1

    def test_close_unsubscribes(self, provider, resolver):
        resolver.close()
        assert provider.subscriber_count == 0
        provider.sign_in(ALICE)
        assert resolver.principal is None
