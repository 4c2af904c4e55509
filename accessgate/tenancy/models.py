"""
Tenancy Data Models.

Pydantic models and closed enumerations for principals, tenants,
memberships, role permissions and the immutable per-tenant snapshot
the entitlement engine reads.

Roles, actions and module codes are closed enumerations so that a typo
fails loudly at construction time instead of silently defaulting to a
denial.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Enums ────────────────────────────────────────────────────


class Role(str, Enum):
    """Tenant member roles. One role per membership."""
    ADMIN = "admin"
    MANAGER = "manager"
    ACCOUNTANT = "accountant"
    EMPLOYEE = "employee"
    CASHIER = "cashier"
    VIEWER = "viewer"
    WAREHOUSE = "warehouse"
    TECHNICIAN = "technician"
    AUDITOR = "auditor"

    @property
    def is_tenant_admin(self) -> bool:
        return self is Role.ADMIN


class Action(str, Enum):
    """Actions a role permission can grant on a module."""
    VIEW = "view"
    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    EXPORT = "export"


class ModuleCode(str, Enum):
    """Feature areas of the application."""
    DASHBOARD = "dashboard"
    POS = "pos"
    PRODUCTS = "products"
    SALES = "sales"
    CUSTOMERS = "customers"
    SETTINGS = "settings"
    REPORTS = "reports"
    SUPPLIERS = "suppliers"
    PURCHASES = "purchases"
    EMPLOYEES = "employees"
    PAYROLL = "payroll"
    CASH_REGISTER = "cash_register"
    TECHNICAL_SERVICES = "technical_services"
    QUOTATIONS = "quotations"
    DELIVERY_NOTES = "delivery_notes"
    INVENTORY = "inventory"
    WAREHOUSES = "warehouses"
    FINANCE = "finance"
    EXPENSES = "expenses"
    CHECKS = "checks"
    COMMISSIONS = "commissions"
    PROMOTIONS = "promotions"
    RETURNS = "returns"
    RESERVATIONS = "reservations"
    ACCOUNTANT_REPORTS = "accountant_reports"
    AUDIT_LOGS = "audit_logs"
    INTEGRATIONS = "integrations"
    AI_ASSISTANT = "ai_assistant"
    NOTIFICATIONS = "notifications"
    CRM = "crm"

    @property
    def is_base_module(self) -> bool:
        return self in BASE_MODULES

    @classmethod
    def parse_many(cls, codes: Iterable[str]) -> tuple[frozenset[ModuleCode], list[str]]:
        """
        Split raw codes into known module codes and unknown leftovers.

        Returns:
            Tuple of (known codes, unknown raw strings).
        """
        known: set[ModuleCode] = set()
        unknown: list[str] = []
        for code in codes:
            try:
                known.add(cls(code))
            except ValueError:
                unknown.append(code)
        return frozenset(known), unknown


# Reachable by role permission alone, regardless of tenant activation.
BASE_MODULES: frozenset[ModuleCode] = frozenset({
    ModuleCode.DASHBOARD,
    ModuleCode.POS,
    ModuleCode.PRODUCTS,
    ModuleCode.SALES,
    ModuleCode.CUSTOMERS,
    ModuleCode.SETTINGS,
    ModuleCode.REPORTS,
})


# ── Identity ─────────────────────────────────────────────────


class Principal(BaseModel):
    """An authenticated identity. Immutable for the life of a session."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str = ""

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Principal id cannot be empty")
        return v


class Capability(BaseModel):
    """A (module, action) pair, the unit of permission checking."""

    model_config = ConfigDict(frozen=True)

    module: ModuleCode
    action: Action = Action.VIEW

    def __str__(self) -> str:
        return f"{self.module.value}:{self.action.value}"


# ── Tenant ───────────────────────────────────────────────────


class Tenant(BaseModel):
    """A customer organization (a "company"). The unit of data isolation."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    active_modules: frozenset[ModuleCode] = Field(default_factory=frozenset)
    # UI simplification only; never consulted by authorization.
    is_sole_membership: bool = False


class TenantMembership(BaseModel):
    """The (principal, tenant, role) relation granting tenant access."""

    model_config = ConfigDict(frozen=True)

    principal_id: str
    tenant: Tenant
    role: Role = Role.VIEWER

    @property
    def tenant_id(self) -> str:
        return self.tenant.id


# ── Role Permissions ─────────────────────────────────────────


class RolePermission(BaseModel):
    """
    One row of a tenant's role permission matrix.

    Mirrors the `role_permissions` table layout: one boolean column
    per action.
    """

    role: Role
    module: ModuleCode
    can_view: bool = False
    can_create: bool = False
    can_edit: bool = False
    can_delete: bool = False
    can_export: bool = False

    def granted_actions(self) -> frozenset[Action]:
        flags = {
            Action.VIEW: self.can_view,
            Action.CREATE: self.can_create,
            Action.EDIT: self.can_edit,
            Action.DELETE: self.can_delete,
            Action.EXPORT: self.can_export,
        }
        return frozenset(action for action, granted in flags.items() if granted)


class PermissionMatrix(BaseModel):
    """
    Dense role → module → action matrix for one tenant.

    Missing entries are treated as not granted.
    """

    model_config = ConfigDict(frozen=True)

    grants: dict[Role, dict[ModuleCode, frozenset[Action]]] = Field(default_factory=dict)

    @classmethod
    def from_rows(cls, rows: Iterable[RolePermission]) -> PermissionMatrix:
        grants: dict[Role, dict[ModuleCode, set[Action]]] = {}
        for row in rows:
            actions = grants.setdefault(row.role, {}).setdefault(row.module, set())
            actions.update(row.granted_actions())
        return cls(grants={
            role: {module: frozenset(actions) for module, actions in modules.items()}
            for role, modules in grants.items()
        })

    @classmethod
    def from_mapping(cls, data: dict[str, dict[str, Iterable[str]]]) -> PermissionMatrix:
        """
        Build from a plain mapping such as a YAML fixture:

            {"cashier": {"pos": ["view", "create"], "payroll": ["view"]}}
        """
        grants: dict[Role, dict[ModuleCode, frozenset[Action]]] = {}
        for role, modules in (data or {}).items():
            grants[Role(role)] = {
                ModuleCode(module): frozenset(Action(a) for a in actions)
                for module, actions in (modules or {}).items()
            }
        return cls(grants=grants)

    def grants_action(self, role: Role, module: ModuleCode, action: Action) -> bool:
        return action in self.grants.get(role, {}).get(module, frozenset())

    def to_mapping(self) -> dict[str, dict[str, list[str]]]:
        return {
            role.value: {
                module.value: sorted(a.value for a in actions)
                for module, actions in modules.items()
            }
            for role, modules in self.grants.items()
        }


# ── Snapshot ─────────────────────────────────────────────────


class TenantSnapshot(BaseModel):
    """
    Everything the entitlement engine reads for the active tenant.

    Immutable: switching tenant replaces the whole snapshot, so a check
    never sees a mix of old and new tenant data. `generation` increases
    by one on every swap and keys the entitlement cache.
    """

    model_config = ConfigDict(frozen=True)

    tenant: Tenant
    role: Role
    permissions: PermissionMatrix = Field(default_factory=PermissionMatrix)
    generation: int = 0

    @property
    def tenant_id(self) -> str:
        return self.tenant.id

    @property
    def active_modules(self) -> frozenset[ModuleCode]:
        return self.tenant.active_modules

    def summary(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant.id,
            "tenant_name": self.tenant.name,
            "role": self.role.value,
            "active_modules": sorted(m.value for m in self.tenant.active_modules),
            "is_sole_membership": self.tenant.is_sole_membership,
            "generation": self.generation,
        }


class MembershipBundle(BaseModel):
    """
    The membership set of one principal together with each tenant's
    permission matrix, as loaded by one fetch.

    Holding every matrix up front keeps switch_tenant synchronous.
    """

    model_config = ConfigDict(frozen=True)

    principal_id: str
    memberships: tuple[TenantMembership, ...] = ()
    matrices: dict[str, PermissionMatrix] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.memberships

    def tenant_ids(self) -> list[str]:
        return [m.tenant_id for m in self.memberships]

    def find(self, tenant_id: Optional[str]) -> Optional[TenantMembership]:
        if tenant_id is None:
            return None
        for membership in self.memberships:
            if membership.tenant_id == tenant_id:
                return membership
        return None

    def admin_memberships(self) -> list[TenantMembership]:
        return [m for m in self.memberships if m.role.is_tenant_admin]

    def snapshot_for(self, membership: TenantMembership, generation: int) -> TenantSnapshot:
        tenant = membership.tenant
        if tenant.is_sole_membership != (len(self.memberships) == 1):
            tenant = tenant.model_copy(
                update={"is_sole_membership": len(self.memberships) == 1}
            )
        return TenantSnapshot(
            tenant=tenant,
            role=membership.role,
            permissions=self.matrices.get(membership.tenant_id, PermissionMatrix()),
            generation=generation,
        )
