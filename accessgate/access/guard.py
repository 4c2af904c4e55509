"""
Route Guard Composer.

Reduces identity, tenant and entitlement state to one outcome per request:

    RENDER              show the protected surface
    REDIRECT(target)    send the user elsewhere, with a reason
    LOADING             not decided yet; ask again when state changes

Pipeline for tenant-scoped surfaces (first non-render outcome wins):

    identity   AUTHENTICATING → LOADING, UNAUTHENTICATED → login
    tenant     LOADING → LOADING, NO_TENANT → provisioning,
               OPERATOR_AREA → operator area
    capability DENY → capability-denied surface

Operator surfaces run the identity step, then check the operator flag
directly; tenant state is never consulted. Auth-only surfaces (the
provisioning screen) run the identity step alone.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from accessgate.access.entitlements import EntitlementEngine, EntitlementResult
from accessgate.config.schema import GateSettings
from accessgate.identity.resolver import IdentityResolver, IdentityStatus
from accessgate.tenancy.models import Capability, Principal
from accessgate.tenancy.resolver import ResolutionStatus, TenantResolver

logger = logging.getLogger(__name__)


class GuardKind(str, Enum):
    RENDER = "render"
    REDIRECT = "redirect"
    LOADING = "loading"


class RedirectReason(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    TENANT_TIMEOUT = "tenant_timeout"
    OPERATOR_AREA = "operator_area"
    CAPABILITY_DENIED = "capability_denied"
    NOT_OPERATOR = "not_operator"


class GuardOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: GuardKind
    target: Optional[str] = None
    reason: Optional[RedirectReason] = None
    tenant_id: Optional[str] = None
    entitlement: Optional[EntitlementResult] = None

    @classmethod
    def render(
        cls,
        tenant_id: Optional[str] = None,
        entitlement: Optional[EntitlementResult] = None,
    ) -> GuardOutcome:
        return cls(kind=GuardKind.RENDER, tenant_id=tenant_id, entitlement=entitlement)

    @classmethod
    def loading(cls) -> GuardOutcome:
        return cls(kind=GuardKind.LOADING)

    @classmethod
    def redirect(
        cls,
        target: str,
        reason: RedirectReason,
        entitlement: Optional[EntitlementResult] = None,
    ) -> GuardOutcome:
        return cls(kind=GuardKind.REDIRECT, target=target, reason=reason, entitlement=entitlement)

    @property
    def is_render(self) -> bool:
        return self.kind == GuardKind.RENDER

    @property
    def is_redirect(self) -> bool:
        return self.kind == GuardKind.REDIRECT

    @property
    def is_loading(self) -> bool:
        return self.kind == GuardKind.LOADING


class RouteGuard:
    """Composes the resolvers and the engine into guard decisions."""

    def __init__(
        self,
        identity: IdentityResolver,
        tenants: TenantResolver,
        engine: EntitlementEngine,
        settings: Optional[GateSettings] = None,
    ):
        self.identity = identity
        self.tenants = tenants
        self.engine = engine
        self.settings = settings or GateSettings()

    def _identity_step(self) -> Union[GuardOutcome, Principal]:
        """The signed-in principal, or the outcome that ends the pipeline."""
        state = self.identity.current()
        if state.status == IdentityStatus.AUTHENTICATING:
            return GuardOutcome.loading()
        if state.status == IdentityStatus.UNAUTHENTICATED or state.principal is None:
            return GuardOutcome.redirect(self.settings.login_path, RedirectReason.UNAUTHENTICATED)
        return state.principal

    async def guard(self, capability: Optional[Capability] = None) -> GuardOutcome:
        """Guard a tenant-scoped surface, optionally requiring a capability."""
        principal = self._identity_step()
        if isinstance(principal, GuardOutcome):
            return principal

        resolution = await self.tenants.resolve(principal)
        if resolution.is_loading:
            return GuardOutcome.loading()
        if resolution.status == ResolutionStatus.NO_TENANT:
            return GuardOutcome.redirect(
                self.settings.provisioning_path, RedirectReason.TENANT_TIMEOUT
            )
        if resolution.status == ResolutionStatus.OPERATOR_AREA:
            return GuardOutcome.redirect(
                self.settings.operator_area_path, RedirectReason.OPERATOR_AREA
            )

        snapshot = resolution.snapshot
        tenant_id = snapshot.tenant_id if snapshot else None
        if capability is None:
            return GuardOutcome.render(tenant_id=tenant_id)

        result = self.engine.check(principal, resolution.operator, snapshot, capability)
        if not result.allowed:
            return GuardOutcome.redirect(
                self.settings.capability_denied_path,
                RedirectReason.CAPABILITY_DENIED,
                entitlement=result,
            )
        return GuardOutcome.render(tenant_id=tenant_id, entitlement=result)

    async def guard_operator(self) -> GuardOutcome:
        """Guard an operator-only surface. Reachable with zero memberships."""
        principal = self._identity_step()
        if isinstance(principal, GuardOutcome):
            return principal

        if await self.tenants.operator_flag(principal):
            return GuardOutcome.render()
        logger.info("operator_surface_denied", extra={"principal_id": principal.id})
        return GuardOutcome.redirect(self.settings.home_path, RedirectReason.NOT_OPERATOR)

    async def guard_authenticated(self) -> GuardOutcome:
        """Guard a surface that needs a signed-in principal and nothing else."""
        step = self._identity_step()
        return step if isinstance(step, GuardOutcome) else GuardOutcome.render()
