"""
AccessGate — the session-scoped facade the UI layer talks to.

Wires one IdentityResolver, one TenantResolver, one EntitlementEngine and
one RouteGuard together for a single client session and exposes:

    guard(module?, action)      → GuardOutcome
    guard_operator()            → GuardOutcome
    guard_authenticated()       → GuardOutcome
    can_access(module, action)  → Decision
    visible_menu(manifest?)     → NavigationManifest
    switch_tenant(tenant_id)    → TenantSnapshot
    refresh()                   → TenantResolution

Session lifecycle:
- sign-out cancels polling, drops the snapshot, clears the last-tenant
  preference and every cached entitlement
- sign-in as a different principal resets the same state but keeps the
  preference (it is re-validated against the new membership set)
- every snapshot swap drops the cache entries of the previous snapshot

Usage:
    async with AccessGate(SupabaseIdentityProvider(client),
                          SupabaseTenantSource(client)) as gate:
        outcome = await gate.guard("payroll")
        if outcome.is_redirect:
            return redirect(outcome.target)
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

from accessgate.access.entitlements import Decision, EntitlementEngine, EntitlementResult
from accessgate.access.guard import GuardOutcome, RouteGuard
from accessgate.access.menu import NavigationManifest, load_manifest, visible_menu
from accessgate.config.schema import GateSettings
from accessgate.identity.providers import AuthEvent, IdentityProvider, SupabaseIdentityProvider
from accessgate.identity.resolver import IdentityResolver, IdentityState
from accessgate.observability.logging_config import clear_session_id, set_session_id
from accessgate.tenancy.models import (
    Action,
    Capability,
    ModuleCode,
    Principal,
    TenantMembership,
    TenantSnapshot,
)
from accessgate.tenancy.resolver import TenantResolution, TenantResolver
from accessgate.tenancy.sources import (
    SupabaseTenantSource,
    TenantDataSource,
    create_supabase_client,
)
from accessgate.tenancy.storage import (
    GracePeriodMarker,
    InMemoryStorage,
    LastTenantPreference,
    SessionStorage,
)

logger = logging.getLogger(__name__)


class AccessGate:
    """Access decisions for one client session."""

    def __init__(
        self,
        identity_provider: IdentityProvider,
        source: TenantDataSource,
        *,
        settings: Optional[GateSettings] = None,
        storage: Optional[SessionStorage] = None,
        manifest: Optional[NavigationManifest] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        wall_clock: Callable[[], float] = time.time,
        session_id: Optional[str] = None,
    ):
        self.settings = settings or GateSettings()
        self.storage = storage or InMemoryStorage()
        self.session_id = session_id or uuid.uuid4().hex[:12]

        self.preference = LastTenantPreference(self.storage)
        self.marker = GracePeriodMarker(
            self.storage,
            ttl_ms=self.settings.grace_period_ttl_ms,
            clock=wall_clock,
        )
        self.identity = IdentityResolver(identity_provider)
        self.tenants = TenantResolver(
            source,
            self.preference,
            self.marker,
            self.settings,
            clock=clock,
            sleep=sleep,
        )
        self.engine = EntitlementEngine()
        self.router = RouteGuard(self.identity, self.tenants, self.engine, self.settings)

        self._manifest = manifest
        self._unsubscribers: list[Callable[[], None]] = []
        self._started = False

    @classmethod
    def from_supabase(cls, client: Optional[Any] = None, **kwargs: Any) -> AccessGate:
        """
        Build a gate reading identity and tenant data from Supabase.

        Without `client`, one is created from SUPABASE_URL / SUPABASE_ANON_KEY.
        Remaining keyword arguments go to the constructor.
        """
        client = client or create_supabase_client()
        return cls(
            SupabaseIdentityProvider(client),
            SupabaseTenantSource(client),
            **kwargs,
        )

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> AccessGate:
        """Subscribe to identity events and prime the current session."""
        set_session_id(self.session_id)
        if not self._started:
            self._unsubscribers.append(self.identity.subscribe(self._on_identity_change))
            self._unsubscribers.append(self.tenants.add_snapshot_listener(self._on_snapshot_change))
            self.identity.start()
            self._started = True
        state = await self.identity.prime()
        logger.info(
            "gate_session_started",
            extra={
                "outcome": state.status.value,
                "principal_id": state.principal.id if state.principal else None,
            },
        )
        return self

    async def close(self) -> None:
        """Cancel polling and drop every subscription."""
        self.tenants.close()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.identity.close()
        self._started = False
        logger.info("gate_session_closed")
        clear_session_id()

    async def __aenter__(self) -> AccessGate:
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ── State ────────────────────────────────────────────────

    @property
    def principal(self) -> Optional[Principal]:
        return self.identity.principal

    @property
    def snapshot(self) -> Optional[TenantSnapshot]:
        return self.tenants.snapshot

    @property
    def resolution(self) -> TenantResolution:
        return self.tenants.current()

    @property
    def operator_flag(self) -> bool:
        return self.tenants.current().operator

    @property
    def memberships(self) -> tuple[TenantMembership, ...]:
        return self.tenants.memberships

    @property
    def manifest(self) -> NavigationManifest:
        if self._manifest is None:
            self._manifest = load_manifest(self.settings.navigation_manifest)
        return self._manifest

    # ── Guards ───────────────────────────────────────────────

    async def guard(
        self,
        module: Optional[ModuleCode | str] = None,
        action: Action | str = Action.VIEW,
    ) -> GuardOutcome:
        """Guard a tenant-scoped surface; with `module`, also the capability."""
        set_session_id(self.session_id)
        capability = (
            Capability(module=ModuleCode(module), action=Action(action))
            if module is not None
            else None
        )
        return await self.router.guard(capability)

    async def guard_operator(self) -> GuardOutcome:
        set_session_id(self.session_id)
        return await self.router.guard_operator()

    async def guard_authenticated(self) -> GuardOutcome:
        set_session_id(self.session_id)
        return await self.router.guard_authenticated()

    # ── Decisions ────────────────────────────────────────────

    def explain(self, module: ModuleCode | str, action: Action | str = Action.VIEW) -> EntitlementResult:
        """Decision plus the rule that produced it, for the current snapshot."""
        capability = Capability(module=ModuleCode(module), action=Action(action))
        principal = self.principal
        if principal is None:
            raise ValueError("No authenticated principal")
        return self.engine.check(principal, self.operator_flag, self.snapshot, capability)

    def can_access(self, module: ModuleCode | str, action: Action | str = Action.VIEW) -> Decision:
        """Allow/Deny against the current snapshot. Deny when signed out."""
        if self.principal is None:
            return Decision.DENY
        return self.explain(module, action).decision

    def visible_menu(self, manifest: Optional[NavigationManifest] = None) -> NavigationManifest:
        return visible_menu(
            manifest or self.manifest,
            self.principal,
            self.operator_flag,
            self.snapshot,
            self.engine,
        )

    # ── Tenant ───────────────────────────────────────────────

    def switch_tenant(self, tenant_id: str) -> TenantSnapshot:
        return self.tenants.switch_tenant(tenant_id)

    async def refresh(self) -> TenantResolution:
        """Re-read memberships, e.g. when the membership table changed."""
        set_session_id(self.session_id)
        return await self.tenants.refresh()

    async def wait_until_settled(self) -> TenantResolution:
        return await self.tenants.wait_until_settled()

    def mark_provisioned(self) -> None:
        """Set the grace marker. Called by the provisioning flow before hand-off."""
        self.marker.mark()

    # ── Listeners ────────────────────────────────────────────

    def _on_identity_change(
        self, old: IdentityState, new: IdentityState, event: AuthEvent
    ) -> None:
        if event == AuthEvent.SIGNED_OUT:
            self.tenants.reset(clear_preference=True)
            self.engine.invalidate()
            logger.info(
                "gate_session_signed_out",
                extra={"principal_id": old.principal.id if old.principal else None},
            )
        elif old.principal is not None and new.principal != old.principal:
            self.tenants.reset(clear_preference=False)
            self.engine.invalidate()
            logger.info(
                "gate_principal_changed",
                extra={"principal_id": new.principal.id if new.principal else None},
            )

    def _on_snapshot_change(
        self, old: Optional[TenantSnapshot], new: Optional[TenantSnapshot]
    ) -> None:
        if old is not None:
            self.engine.invalidate(old.generation)
