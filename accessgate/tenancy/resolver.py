"""
Tenant Resolver.

Given an authenticated principal, decides which tenant the session works
in. Outcomes:

    LOADING        resolution in progress (possibly polling)
    RESOLVED       a tenant snapshot is active
    NO_TENANT      no membership surfaced within the wait window
    OPERATOR_AREA  platform operator without a tenant-admin membership

Algorithm:
1. Operator principals never poll. A single membership lookup decides
   whether they are also admin of some tenant (then they work inside it)
   or are sent to the operator area.
2. Otherwise one immediate fetch runs. A non-empty membership set
   resolves at once, preferring the persisted last tenant.
3. An empty set (or a failed fetch) drops any previous snapshot and
   enters the bounded polling loop:
   every poll interval the membership set is re-fetched until it turns
   non-empty (RESOLVED, grace marker cleared) or the wait window ends
   (NO_TENANT). The window is the grace window when the provisioning
   flow left a fresh marker, the default window otherwise. It opens when
   resolution begins, so the immediate fetch counts toward it.

Every data-source call is bounded by the fetch timeout; a stalled lookup
is treated like a failed one.

The active tenant lives in one immutable TenantSnapshot that is replaced
wholesale, never mutated. Snapshot listeners hear every swap so caches
keyed to the previous tenant can be dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict

from accessgate.config.schema import GateSettings
from accessgate.exceptions import TenantAccessError
from accessgate.tenancy.models import (
    MembershipBundle,
    Principal,
    TenantMembership,
    TenantSnapshot,
)
from accessgate.tenancy.polling import BoundedPoller, PollResult, PollState
from accessgate.tenancy.sources import TenantDataSource, load_membership_bundle
from accessgate.tenancy.storage import GracePeriodMarker, LastTenantPreference

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[Optional[TenantSnapshot], Optional[TenantSnapshot]], None]


class ResolutionStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    RESOLVED = "resolved"
    NO_TENANT = "no_tenant"
    OPERATOR_AREA = "operator_area"


class TenantResolution(BaseModel):
    """Point-in-time view of the resolver, safe to hand to any consumer."""

    model_config = ConfigDict(frozen=True)

    status: ResolutionStatus = ResolutionStatus.IDLE
    principal_id: Optional[str] = None
    snapshot: Optional[TenantSnapshot] = None
    operator: bool = False

    @property
    def is_loading(self) -> bool:
        return self.status in (ResolutionStatus.IDLE, ResolutionStatus.LOADING)


class TenantResolver:
    """
    Session-scoped tenant selection.

    One instance per client session. Holds the membership set, the
    active snapshot and at most one polling loop.
    """

    def __init__(
        self,
        source: TenantDataSource,
        preference: LastTenantPreference,
        marker: GracePeriodMarker,
        settings: Optional[GateSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.source = source
        self.preference = preference
        self.marker = marker
        self.settings = settings or GateSettings()
        self._clock = clock

        self._principal: Optional[Principal] = None
        self._operator: Optional[bool] = None
        self._bundle: Optional[MembershipBundle] = None
        self._resolution = TenantResolution()
        self._generation = 0
        self._attempt = 0
        self._listeners: list[SnapshotListener] = []

        self._poller: BoundedPoller[MembershipBundle] = BoundedPoller(
            self._poll_fetch,
            interval_ms=self.settings.poll_interval_ms,
            fetch_timeout_ms=self.settings.effective_fetch_timeout_ms,
            clock=clock,
            sleep=sleep,
            name="tenant-resolution",
        )

    # ── Introspection ────────────────────────────────────────

    def current(self) -> TenantResolution:
        return self._resolution

    @property
    def snapshot(self) -> Optional[TenantSnapshot]:
        return self._resolution.snapshot

    @property
    def memberships(self) -> tuple[TenantMembership, ...]:
        return self._bundle.memberships if self._bundle else ()

    @property
    def poller(self) -> BoundedPoller[MembershipBundle]:
        return self._poller

    def add_snapshot_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a callback for snapshot swaps. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # ── Operator flag ────────────────────────────────────────

    async def operator_flag(self, principal: Principal) -> bool:
        """
        Whether the principal is a platform operator.

        Cached per principal. A failed or timed-out lookup counts as "not
        an operator" and is not cached, so the next call retries.
        """
        if self._principal == principal and self._operator is not None:
            return self._operator
        try:
            flag = bool(await asyncio.wait_for(
                self.source.is_operator(principal.id), timeout=self._fetch_timeout_s
            ))
        except Exception as e:
            logger.warning(
                "operator_lookup_failed",
                extra={"principal_id": principal.id, "error": str(e) or type(e).__name__},
            )
            return False
        if self._principal == principal:
            self._operator = flag
        return flag

    # ── Resolution ───────────────────────────────────────────

    async def resolve(self, principal: Principal) -> TenantResolution:
        """
        Return the tenant resolution for `principal`, starting one if needed.

        Never blocks on polling: while the loop runs this returns LOADING.
        RESOLVED and OPERATOR_AREA are sticky for the principal. NO_TENANT
        is sticky too, unless a fresh grace marker shows that provisioning
        just handed off again.
        """
        if self._principal != principal:
            self._reset_state(clear_preference=False)
            self._principal = principal

        status = self._resolution.status
        if status in (ResolutionStatus.RESOLVED, ResolutionStatus.OPERATOR_AREA):
            return self._resolution
        if status == ResolutionStatus.LOADING:
            return self._resolution
        if status == ResolutionStatus.NO_TENANT and not self.marker.is_active():
            return self._resolution

        return await self._begin(principal)

    async def refresh(self) -> TenantResolution:
        """
        Re-read the membership set, e.g. after the membership table changed.

        Cancels any running loop first. The persisted preference keeps
        the current tenant selected when it is still a membership.
        """
        if self._principal is None:
            return self._resolution
        self._poller.cancel()
        self._bundle = None
        return await self._begin(self._principal)

    async def wait_until_settled(self) -> TenantResolution:
        """Wait for a running polling loop to finish and return the outcome."""
        if self._resolution.status == ResolutionStatus.LOADING and self._poller.is_active:
            await self._poller.wait()
        return self._resolution

    @property
    def _fetch_timeout_s(self) -> float:
        return self.settings.effective_fetch_timeout_ms / 1000

    async def _begin(self, principal: Principal) -> TenantResolution:
        self._attempt += 1
        attempt = self._attempt
        began = self._clock()
        self._set_resolution(ResolutionStatus.LOADING, snapshot=self.snapshot)

        operator = await self.operator_flag(principal)
        if attempt != self._attempt:
            return self._resolution

        if operator:
            return await self._resolve_operator(principal, attempt)

        bundle = await self._fetch_once(principal)
        if attempt != self._attempt:
            return self._resolution

        if bundle is not None and not bundle.is_empty:
            self._bundle = bundle
            self._apply(bundle, self._select(bundle))
            return self._resolution

        # The previous tenant is no longer confirmed by the membership set.
        self._set_resolution(ResolutionStatus.LOADING, snapshot=None)

        # The window opened when resolution began, so the first fetch counts toward it.
        max_wait_ms = self._max_wait_ms()
        self._poller.start(
            max_wait_ms=max_wait_ms, on_finish=self._on_poll_finished, started=began
        )
        logger.info(
            "tenant_polling_started",
            extra={"principal_id": principal.id, "max_wait_ms": max_wait_ms},
        )
        return self._resolution

    async def _resolve_operator(self, principal: Principal, attempt: int) -> TenantResolution:
        bundle = self._bundle
        if bundle is None:
            bundle = await self._fetch_once(principal)
            if attempt != self._attempt:
                return self._resolution
            if bundle is not None:
                self._bundle = bundle

        admin_memberships = bundle.admin_memberships() if bundle else []
        if bundle is not None and admin_memberships:
            preferred = self.preference.get()
            chosen = next(
                (m for m in admin_memberships if m.tenant_id == preferred),
                admin_memberships[0],
            )
            self._apply(bundle, chosen)
            return self._resolution

        self._set_resolution(ResolutionStatus.OPERATOR_AREA, snapshot=None)
        logger.info("operator_routed", extra={"principal_id": principal.id})
        return self._resolution

    async def _fetch_once(self, principal: Principal) -> Optional[MembershipBundle]:
        try:
            return await asyncio.wait_for(
                load_membership_bundle(self.source, principal.id),
                timeout=self._fetch_timeout_s,
            )
        except Exception as e:
            logger.warning(
                "membership_fetch_failed",
                extra={"principal_id": principal.id, "error": str(e) or type(e).__name__},
            )
            return None

    async def _poll_fetch(self) -> Optional[MembershipBundle]:
        principal = self._principal
        if principal is None:
            return None
        bundle = await load_membership_bundle(self.source, principal.id)
        return None if bundle.is_empty else bundle

    def _on_poll_finished(self, result: PollResult[MembershipBundle]) -> None:
        principal_id = self._principal.id if self._principal else None
        if result.state == PollState.RESOLVED and result.value is not None:
            self._bundle = result.value
            self._apply(result.value, self._select(result.value))
            logger.info(
                "tenant_resolved_after_polling",
                extra={
                    "principal_id": principal_id,
                    "attempts": result.attempts,
                    "elapsed_ms": result.elapsed_ms,
                },
            )
        elif result.state == PollState.TIMED_OUT:
            self._set_resolution(ResolutionStatus.NO_TENANT, snapshot=None)
            logger.warning(
                "tenant_poll_timeout",
                extra={
                    "principal_id": principal_id,
                    "attempts": result.attempts,
                    "failures": result.failures,
                    "elapsed_ms": result.elapsed_ms,
                },
            )

    def _max_wait_ms(self) -> int:
        if self.marker.is_active():
            return self.settings.grace_max_wait_ms
        return self.settings.default_max_wait_ms

    # ── Selection ────────────────────────────────────────────

    def _select(self, bundle: MembershipBundle) -> TenantMembership:
        preferred = self.preference.get()
        membership = bundle.find(preferred)
        if preferred and membership is None:
            # Saved tenant no longer belongs to this principal.
            logger.info("stale_tenant_preference_cleared", extra={"tenant_id": preferred})
            self.preference.clear()
        return membership or bundle.memberships[0]

    def _apply(self, bundle: MembershipBundle, membership: TenantMembership) -> TenantSnapshot:
        self._generation += 1
        snapshot = bundle.snapshot_for(membership, self._generation)
        self.preference.set(membership.tenant_id)
        self.marker.clear()
        self._set_resolution(ResolutionStatus.RESOLVED, snapshot=snapshot)
        logger.info(
            "tenant_resolved",
            extra={
                "principal_id": self._principal.id if self._principal else None,
                "tenant_id": membership.tenant_id,
                "role": membership.role.value,
                "generation": snapshot.generation,
            },
        )
        return snapshot

    def switch_tenant(self, tenant_id: str) -> TenantSnapshot:
        """
        Make another already-known membership the active tenant.

        Synchronous: no fetch and no polling. Switching to the tenant
        that is already active changes nothing.

        Raises:
            TenantAccessError: Memberships are not loaded yet, the
                principal holds no membership for `tenant_id`, or the
                principal is an operator without an admin role there.
        """
        current = self.snapshot
        if current is not None and current.tenant_id == tenant_id:
            return current

        if self._bundle is None:
            raise TenantAccessError(
                "Memberships are not loaded; cannot switch tenant",
                tenant_id=tenant_id,
            )

        membership = self._bundle.find(tenant_id)
        if membership is None:
            self.preference.clear()
            raise TenantAccessError(
                f"No membership for tenant '{tenant_id}'",
                tenant_id=tenant_id,
            )

        if self._operator and not membership.role.is_tenant_admin:
            # Operators work inside a tenant only as its admin.
            raise TenantAccessError(
                f"Operator is not an admin of tenant '{tenant_id}'",
                tenant_id=tenant_id,
            )

        self._poller.cancel()
        self._attempt += 1
        snapshot = self._apply(self._bundle, membership)
        logger.info(
            "tenant_switched",
            extra={
                "principal_id": self._principal.id if self._principal else None,
                "tenant_id": tenant_id,
                "previous_tenant_id": current.tenant_id if current else None,
            },
        )
        return snapshot

    # ── Lifecycle ────────────────────────────────────────────

    def reset(self, clear_preference: bool = False) -> None:
        """Forget the principal and everything resolved for it."""
        self._reset_state(clear_preference=clear_preference)

    def close(self) -> None:
        """Stop any running loop. Call when the owning view is torn down."""
        self._attempt += 1
        self._poller.cancel()

    def _reset_state(self, clear_preference: bool) -> None:
        self._attempt += 1
        self._poller.cancel()
        self._principal = None
        self._operator = None
        self._bundle = None
        if clear_preference:
            self.preference.clear()
        self._set_resolution(ResolutionStatus.IDLE, snapshot=None)

    def _set_resolution(
        self, status: ResolutionStatus, snapshot: Optional[TenantSnapshot]
    ) -> None:
        previous = self._resolution.snapshot
        self._resolution = TenantResolution(
            status=status,
            principal_id=self._principal.id if self._principal else None,
            snapshot=snapshot,
            operator=bool(self._operator),
        )
        if previous is not snapshot:
            for listener in list(self._listeners):
                try:
                    listener(previous, snapshot)
                except Exception as e:
                    logger.error(f"Snapshot listener failed: {e}")
