"""
Tenant-membership data sources.

The gate only reads from these. A source answers three questions:

- which tenants does principal X belong to, with which role
  (each membership carries the tenant's active modules)
- what is tenant Y's role permission matrix
- is principal X a platform operator

Two implementations:

    InMemoryTenantSource  — dict-backed; tests, the CLI, and YAML fixtures
    SupabaseTenantSource  — reads company_users, company_modules,
                            role_permissions and platform_admins

Usage:
    source = SupabaseTenantSource(create_supabase_client())
    bundle = await load_membership_bundle(source, "user-123")
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

from supabase import Client, create_client

from accessgate.config.loader import read_yaml
from accessgate.exceptions import GateConfigurationError, TransientFetchError
from accessgate.tenancy.models import (
    MembershipBundle,
    ModuleCode,
    PermissionMatrix,
    Role,
    RolePermission,
    Tenant,
    TenantMembership,
)

logger = logging.getLogger(__name__)


class TenantDataSource(Protocol):
    """Read-only access to memberships, module activation and permissions."""

    async def list_memberships(self, principal_id: str) -> list[TenantMembership]: ...

    async def fetch_permission_matrix(self, tenant_id: str) -> PermissionMatrix: ...

    async def is_operator(self, principal_id: str) -> bool: ...


async def load_membership_bundle(
    source: TenantDataSource, principal_id: str
) -> MembershipBundle:
    """
    Fetch a principal's memberships and every member tenant's matrix.

    Raises whatever the source raises; callers decide whether that is
    transient.
    """
    memberships = await source.list_memberships(principal_id)
    tenant_ids = list(dict.fromkeys(m.tenant_id for m in memberships))
    matrices = await asyncio.gather(
        *(source.fetch_permission_matrix(tid) for tid in tenant_ids)
    )
    return MembershipBundle(
        principal_id=principal_id,
        memberships=tuple(memberships),
        matrices=dict(zip(tenant_ids, matrices)),
    )


# ── In-memory source ─────────────────────────────────────────


class InMemoryTenantSource:
    """
    Dict-backed data source.

    Mutations take effect on the next read, which lets tests simulate
    a membership appearing mid-poll.
    """

    def __init__(self) -> None:
        self._tenants: dict[str, Tenant] = {}
        self._memberships: dict[str, dict[str, Role]] = {}
        self._matrices: dict[str, PermissionMatrix] = {}
        self._operators: set[str] = set()
        self.calls: dict[str, int] = {
            "list_memberships": 0,
            "fetch_permission_matrix": 0,
            "is_operator": 0,
        }

    # ── Mutation ─────────────────────────────────────────────

    def add_tenant(
        self,
        tenant_id: str,
        name: str = "",
        active_modules: Iterable[ModuleCode | str] = (),
        permissions: Optional[PermissionMatrix] = None,
    ) -> Tenant:
        tenant = Tenant(
            id=tenant_id,
            name=name or tenant_id,
            active_modules=frozenset(ModuleCode(m) for m in active_modules),
        )
        self._tenants[tenant_id] = tenant
        self._matrices[tenant_id] = permissions or PermissionMatrix()
        return tenant

    def set_active_modules(self, tenant_id: str, modules: Iterable[ModuleCode | str]) -> None:
        tenant = self._tenants[tenant_id]
        self._tenants[tenant_id] = tenant.model_copy(
            update={"active_modules": frozenset(ModuleCode(m) for m in modules)}
        )

    def set_permissions(self, tenant_id: str, permissions: PermissionMatrix) -> None:
        self._matrices[tenant_id] = permissions

    def add_membership(self, principal_id: str, tenant_id: str, role: Role | str) -> None:
        if tenant_id not in self._tenants:
            raise KeyError(f"Unknown tenant: {tenant_id}")
        self._memberships.setdefault(principal_id, {})[tenant_id] = Role(role)

    def remove_membership(self, principal_id: str, tenant_id: str) -> None:
        self._memberships.get(principal_id, {}).pop(tenant_id, None)

    def set_operator(self, principal_id: str, is_operator: bool = True) -> None:
        if is_operator:
            self._operators.add(principal_id)
        else:
            self._operators.discard(principal_id)

    # ── TenantDataSource ─────────────────────────────────────

    async def list_memberships(self, principal_id: str) -> list[TenantMembership]:
        self.calls["list_memberships"] += 1
        return [
            TenantMembership(
                principal_id=principal_id,
                tenant=self._tenants[tenant_id],
                role=role,
            )
            for tenant_id, role in self._memberships.get(principal_id, {}).items()
        ]

    async def fetch_permission_matrix(self, tenant_id: str) -> PermissionMatrix:
        self.calls["fetch_permission_matrix"] += 1
        return self._matrices.get(tenant_id, PermissionMatrix())

    async def is_operator(self, principal_id: str) -> bool:
        self.calls["is_operator"] += 1
        return principal_id in self._operators

    # ── Fixtures ─────────────────────────────────────────────

    @classmethod
    def from_fixture(cls, data: dict[str, Any]) -> InMemoryTenantSource:
        """
        Build a source from a fixture mapping:

            tenants:
              acme:
                name: Acme
                active_modules: [payroll]
                permissions:
                  cashier: {pos: [view, create]}
            memberships:
              - {principal: user-1, tenant: acme, role: cashier}
            operators: [ops-1]
        """
        source = cls()
        try:
            for tenant_id, spec in (data.get("tenants") or {}).items():
                spec = spec or {}
                source.add_tenant(
                    str(tenant_id),
                    name=spec.get("name", ""),
                    active_modules=spec.get("active_modules") or (),
                    permissions=PermissionMatrix.from_mapping(spec.get("permissions") or {}),
                )
            for row in data.get("memberships") or []:
                source.add_membership(str(row["principal"]), str(row["tenant"]), row["role"])
            for principal_id in data.get("operators") or []:
                source.set_operator(str(principal_id))
        except (KeyError, ValueError, TypeError) as e:
            raise GateConfigurationError(f"Invalid tenant fixture: {e}") from e
        return source

    @classmethod
    def from_yaml(cls, path: str | Path) -> InMemoryTenantSource:
        return cls.from_fixture(read_yaml(path))


# ── Supabase source ──────────────────────────────────────────


def create_supabase_client(url: Optional[str] = None, key: Optional[str] = None) -> Client:
    """
    Create a supabase-py client from arguments or SUPABASE_URL / SUPABASE_ANON_KEY.

    Raises:
        GateConfigurationError: If either value is missing.
    """
    url = url or os.environ.get("SUPABASE_URL", "")
    key = key or os.environ.get("SUPABASE_ANON_KEY", "")
    if not url or not key:
        raise GateConfigurationError("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
    return create_client(url, key)


class SupabaseTenantSource:
    """
    Data source backed by the application's Supabase tables.

    The supabase-py client is synchronous; each query runs in a worker
    thread so the polling loop stays responsive. Any client error is
    re-raised as TransientFetchError.
    """

    def __init__(self, client: Any):
        self.client = client

    async def _run(self, operation: str, query: Any) -> list[dict]:
        try:
            result = await asyncio.to_thread(query)
        except Exception as e:
            raise TransientFetchError(
                f"Supabase {operation} failed: {e}",
                service="supabase",
                operation=operation,
            ) from e
        return result.data or []

    async def list_memberships(self, principal_id: str) -> list[TenantMembership]:
        rows = await self._run(
            "list_memberships",
            lambda: (
                self.client.table("company_users")
                .select("company_id, user_id, role, active, companies(id, name)")
                .eq("user_id", str(principal_id))
                .eq("active", True)
                .order("created_at")
                .execute()
            ),
        )
        if not rows:
            return []

        company_ids = [str(r["company_id"]) for r in rows]
        module_rows = await self._run(
            "list_active_modules",
            lambda: (
                self.client.table("company_modules")
                .select("company_id, active, platform_modules(code)")
                .in_("company_id", company_ids)
                .eq("active", True)
                .execute()
            ),
        )
        codes_by_company: dict[str, list[str]] = {}
        for row in module_rows:
            code = (row.get("platform_modules") or {}).get("code")
            if code:
                codes_by_company.setdefault(str(row["company_id"]), []).append(code)

        memberships = []
        for row in rows:
            company_id = str(row["company_id"])
            try:
                role = Role(row.get("role"))
            except ValueError:
                logger.warning(
                    "membership_role_unknown",
                    extra={"tenant_id": company_id, "raw_role": row.get("role")},
                )
                continue

            modules, unknown = ModuleCode.parse_many(codes_by_company.get(company_id, []))
            if unknown:
                logger.warning(
                    "module_codes_unknown",
                    extra={"tenant_id": company_id, "codes": unknown},
                )

            company = row.get("companies") or {}
            memberships.append(TenantMembership(
                principal_id=str(principal_id),
                tenant=Tenant(
                    id=company_id,
                    name=company.get("name", ""),
                    active_modules=modules,
                ),
                role=role,
            ))
        return memberships

    async def fetch_permission_matrix(self, tenant_id: str) -> PermissionMatrix:
        rows = await self._run(
            "fetch_permission_matrix",
            lambda: (
                self.client.table("role_permissions")
                .select("*")
                .eq("company_id", str(tenant_id))
                .execute()
            ),
        )
        parsed = []
        for row in rows:
            try:
                parsed.append(RolePermission(
                    role=row.get("role"),
                    module=row.get("module"),
                    can_view=bool(row.get("can_view")),
                    can_create=bool(row.get("can_create")),
                    can_edit=bool(row.get("can_edit")),
                    can_delete=bool(row.get("can_delete")),
                    can_export=bool(row.get("can_export")),
                ))
            except ValueError:
                logger.warning(
                    "role_permission_row_skipped",
                    extra={
                        "tenant_id": str(tenant_id),
                        "raw_role": row.get("role"),
                        "raw_module": row.get("module"),
                    },
                )
        return PermissionMatrix.from_rows(parsed)

    async def is_operator(self, principal_id: str) -> bool:
        rows = await self._run(
            "is_operator",
            lambda: (
                self.client.table("platform_admins")
                .select("active")
                .eq("user_id", str(principal_id))
                .eq("active", True)
                .limit(1)
                .execute()
            ),
        )
        return bool(rows)
