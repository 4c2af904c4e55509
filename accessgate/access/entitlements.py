"""
Entitlement Engine.

Decides whether a principal may perform an action on a module inside the
active tenant. Evaluation order, first match wins:

    1. tenant admin of the active tenant       → ALLOW (tenant_admin)
    2. platform operator                       → ALLOW (operator)
    3. role permission missing                 → DENY  (no_role_grant)
    4. module is a base module                 → ALLOW (base_module)
    5. module active for the tenant            → ALLOW (module_active)
    6. otherwise                               → DENY  (module_inactive)

`evaluate` is pure. `EntitlementEngine` adds a cache keyed by the
snapshot generation, so a tenant switch can never serve a result computed
for the previous tenant.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from accessgate.tenancy.models import (
    BASE_MODULES,
    Action,
    Capability,
    ModuleCode,
    PermissionMatrix,
    Principal,
    Role,
    Tenant,
    TenantSnapshot,
)

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    ALLOW = "allow"
    DENY = "deny"

    @property
    def allowed(self) -> bool:
        return self is Decision.ALLOW


class DecisionReason(str, Enum):
    """Which rule decided."""
    TENANT_ADMIN = "tenant_admin"
    OPERATOR = "operator"
    NO_ROLE_GRANT = "no_role_grant"
    BASE_MODULE = "base_module"
    MODULE_ACTIVE = "module_active"
    MODULE_INACTIVE = "module_inactive"


class EntitlementResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    decision: Decision
    reason: DecisionReason

    @property
    def allowed(self) -> bool:
        return self.decision.allowed


def evaluate(
    *,
    role: Optional[Role],
    operator_flag: bool,
    module: ModuleCode | str,
    action: Action | str = Action.VIEW,
    active_modules: frozenset[ModuleCode] = frozenset(),
    permissions: Optional[PermissionMatrix] = None,
) -> EntitlementResult:
    """
    Apply the ordered rules to one request.

    `role` is None when no tenant is active; only the operator override
    can allow in that case. Raises ValueError for an unknown module code
    or action.
    """
    module = ModuleCode(module)
    action = Action(action)

    if role is not None and role.is_tenant_admin:
        return EntitlementResult(decision=Decision.ALLOW, reason=DecisionReason.TENANT_ADMIN)
    if operator_flag:
        return EntitlementResult(decision=Decision.ALLOW, reason=DecisionReason.OPERATOR)
    if role is None or permissions is None or not permissions.grants_action(role, module, action):
        return EntitlementResult(decision=Decision.DENY, reason=DecisionReason.NO_ROLE_GRANT)
    if module in BASE_MODULES:
        return EntitlementResult(decision=Decision.ALLOW, reason=DecisionReason.BASE_MODULE)
    if module in active_modules:
        return EntitlementResult(decision=Decision.ALLOW, reason=DecisionReason.MODULE_ACTIVE)
    return EntitlementResult(decision=Decision.DENY, reason=DecisionReason.MODULE_INACTIVE)


def can_access(
    principal: Optional[Principal],
    operator_flag: bool,
    tenant: Optional[Tenant],
    role: Optional[Role],
    module: ModuleCode | str,
    action: Action | str = Action.VIEW,
    permissions: Optional[PermissionMatrix] = None,
) -> Decision:
    """Allow/Deny for one request. No principal means Deny."""
    if principal is None:
        return Decision.DENY
    return evaluate(
        role=role if tenant is not None else None,
        operator_flag=operator_flag,
        module=module,
        action=action,
        active_modules=tenant.active_modules if tenant is not None else frozenset(),
        permissions=permissions,
    ).decision


_CacheKey = tuple[str, int, Optional[str], bool, ModuleCode, Action]


class EntitlementEngine:
    """
    Cached evaluation against the active tenant snapshot.

    Reads only the immutable snapshot handed in, so checks that started
    before a tenant switch finish against the old snapshot while new
    checks see the new one.
    """

    def __init__(self) -> None:
        self._cache: dict[_CacheKey, EntitlementResult] = {}
        self.hits = 0
        self.misses = 0

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def check(
        self,
        principal: Principal,
        operator_flag: bool,
        snapshot: Optional[TenantSnapshot],
        capability: Capability,
    ) -> EntitlementResult:
        key: _CacheKey = (
            principal.id,
            snapshot.generation if snapshot else -1,
            snapshot.tenant_id if snapshot else None,
            operator_flag,
            capability.module,
            capability.action,
        )
        cached = self._cache.get(key)
        if cached is not None:
            self.hits += 1
            return cached

        self.misses += 1
        result = evaluate(
            role=snapshot.role if snapshot else None,
            operator_flag=operator_flag,
            module=capability.module,
            action=capability.action,
            active_modules=snapshot.active_modules if snapshot else frozenset(),
            permissions=snapshot.permissions if snapshot else None,
        )
        self._cache[key] = result

        if not result.allowed:
            logger.info(
                "capability_denied",
                extra={
                    "principal_id": principal.id,
                    "tenant_id": snapshot.tenant_id if snapshot else None,
                    "role": snapshot.role.value if snapshot else None,
                    "module_code": capability.module.value,
                    "action": capability.action.value,
                    "reason": result.reason.value,
                },
            )
        return result

    def can_access(
        self,
        principal: Principal,
        operator_flag: bool,
        snapshot: Optional[TenantSnapshot],
        module: ModuleCode | str,
        action: Action | str = Action.VIEW,
    ) -> Decision:
        capability = Capability(module=ModuleCode(module), action=Action(action))
        return self.check(principal, operator_flag, snapshot, capability).decision

    def invalidate(self, generation: Optional[int] = None) -> int:
        """
        Drop cached results. With a generation, only that snapshot's entries.

        Returns:
            Number of entries removed.
        """
        if generation is None:
            removed = len(self._cache)
            self._cache.clear()
            return removed
        stale = [k for k in self._cache if k[1] == generation]
        for k in stale:
            del self._cache[k]
        return len(stale)
