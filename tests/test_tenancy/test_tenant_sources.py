"""
Tests for tenant-membership data sources: the in-memory source, YAML
fixtures, and the Supabase adapter against a mock client.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from accessgate.exceptions import GateConfigurationError, TransientFetchError
from accessgate.tenancy.models import Action, ModuleCode, PermissionMatrix, Role
from accessgate.tenancy.sources import (
    InMemoryTenantSource,
    SupabaseTenantSource,
    create_supabase_client,
    load_membership_bundle,
)


# ── Mock Supabase ────────────────────────────────────────────


class MockTable:
    """Mock for Supabase table operations."""

    def __init__(self, data: list[dict] = None):
        self._data = data or []
        self._filters: dict[str, Any] = {}
        self._in_filters: dict[str, list] = {}
        self._limit_val = None
        self.selected = "*"

    def select(self, cols="*"):
        self.selected = cols
        return self

    def eq(self, col, val):
        self._filters[col] = val
        return self

    def in_(self, col, values):
        self._in_filters[col] = list(values)
        return self

    def order(self, col, desc=False):
        return self

    def limit(self, n):
        self._limit_val = n
        return self

    def execute(self):
        result = MagicMock()
        filtered = self._data
        for col, val in self._filters.items():
            filtered = [r for r in filtered if r.get(col) == val]
        for col, values in self._in_filters.items():
            filtered = [r for r in filtered if r.get(col) in values]
        if self._limit_val and len(filtered) > self._limit_val:
            filtered = filtered[:self._limit_val]
        result.data = filtered
        return result


class MockClient:
    """Mock supabase-py client exposing only table()."""

    def __init__(self, tables: dict[str, list[dict]] = None):
        self._tables = tables or {}
        self.queried: list[str] = []

    def table(self, name: str):
        self.queried.append(name)
        return MockTable(self._tables.get(name, []))


class FailingClient:
    def table(self, name: str):
        raise ConnectionError("supabase unreachable")


@pytest.fixture
def supabase_tables():
    return {
        "company_users": [
            {"company_id": "c1", "user_id": "u1", "role": "cashier", "active": True,
             "companies": {"id": "c1", "name": "Acme"}},
            {"company_id": "c2", "user_id": "u1", "role": "admin", "active": True,
             "companies": {"id": "c2", "name": "Globex"}},
            {"company_id": "c3", "user_id": "u1", "role": "owner", "active": True,
             "companies": {"id": "c3", "name": "Legacy"}},
            {"company_id": "c4", "user_id": "u1", "role": "viewer", "active": False,
             "companies": {"id": "c4", "name": "Former"}},
        ],
        "company_modules": [
            {"company_id": "c1", "active": True, "platform_modules": {"code": "payroll"}},
            {"company_id": "c1", "active": True, "platform_modules": {"code": "hr"}},
            {"company_id": "c1", "active": False, "platform_modules": {"code": "crm"}},
            {"company_id": "c2", "active": True, "platform_modules": {"code": "inventory"}},
        ],
        "role_permissions": [
            {"company_id": "c1", "role": "cashier", "module": "pos", "can_view": True, "can_create": True},
            {"company_id": "c1", "role": "cashier", "module": "payroll", "can_view": True},
            {"company_id": "c1", "role": "cashier", "module": "bogus", "can_view": True},
            {"company_id": "c2", "role": "viewer", "module": "reports", "can_view": True},
        ],
        "platform_admins": [
            {"user_id": "ops-1", "active": True},
            {"user_id": "ops-2", "active": False},
        ],
    }


# ── In-memory source ─────────────────────────────────────────


class TestInMemoryTenantSource:

    @pytest.mark.asyncio
    async def test_memberships_reflect_mutations(self):
        source = InMemoryTenantSource()
        source.add_tenant("acme", name="Acme", active_modules=["payroll"])
        assert await source.list_memberships("u1") == []

        source.add_membership("u1", "acme", "cashier")
        memberships = await source.list_memberships("u1")

        assert [(m.tenant_id, m.role) for m in memberships] == [("acme", Role.CASHIER)]
        assert memberships[0].tenant.active_modules == {ModuleCode.PAYROLL}
        assert source.calls["list_memberships"] == 2

    def test_membership_for_unknown_tenant(self):
        with pytest.raises(KeyError):
            InMemoryTenantSource().add_membership("u1", "nope", "admin")

    @pytest.mark.asyncio
    async def test_remove_membership_and_operator(self):
        source = InMemoryTenantSource()
        source.add_tenant("acme")
        source.add_membership("u1", "acme", "viewer")
        source.remove_membership("u1", "acme")
        source.set_operator("u1")
        assert await source.list_memberships("u1") == []
        assert await source.is_operator("u1") is True
        source.set_operator("u1", False)
        assert await source.is_operator("u1") is False

    @pytest.mark.asyncio
    async def test_set_active_modules(self):
        source = InMemoryTenantSource()
        source.add_tenant("acme")
        source.add_membership("u1", "acme", "viewer")
        source.set_active_modules("acme", ["crm"])
        memberships = await source.list_memberships("u1")
        assert memberships[0].tenant.active_modules == {ModuleCode.CRM}


class TestFixtures:

    @pytest.mark.asyncio
    async def test_from_fixture(self):
        source = InMemoryTenantSource.from_fixture({
            "tenants": {
                "acme": {
                    "name": "Acme",
                    "active_modules": ["payroll"],
                    "permissions": {"cashier": {"payroll": ["view"]}},
                },
            },
            "memberships": [{"principal": "u1", "tenant": "acme", "role": "cashier"}],
            "operators": ["ops-1"],
        })
        matrix = await source.fetch_permission_matrix("acme")
        assert matrix.grants_action(Role.CASHIER, ModuleCode.PAYROLL, Action.VIEW)
        assert await source.is_operator("ops-1")
        assert len(await source.list_memberships("u1")) == 1

    def test_invalid_fixture_raises_configuration_error(self):
        with pytest.raises(GateConfigurationError):
            InMemoryTenantSource.from_fixture({
                "tenants": {"acme": {"active_modules": ["payrol"]}},
            })

    def test_membership_missing_keys(self):
        with pytest.raises(GateConfigurationError):
            InMemoryTenantSource.from_fixture({
                "tenants": {"acme": {}},
                "memberships": [{"principal": "u1"}],
            })

    def test_demo_fixture_loads(self):
        path = Path(__file__).resolve().parents[2] / "fixtures" / "demo_tenants.yaml"
        source = InMemoryTenantSource.from_yaml(path)
        assert source.calls["list_memberships"] == 0


class TestLoadMembershipBundle:

    @pytest.mark.asyncio
    async def test_loads_matrix_per_tenant(self):
        source = InMemoryTenantSource()
        source.add_tenant("acme", permissions=PermissionMatrix.from_mapping({"viewer": {"reports": ["view"]}}))
        source.add_tenant("globex")
        source.add_membership("u1", "acme", "viewer")
        source.add_membership("u1", "globex", "admin")

        bundle = await load_membership_bundle(source, "u1")

        assert bundle.tenant_ids() == ["acme", "globex"]
        assert set(bundle.matrices) == {"acme", "globex"}
        assert source.calls["fetch_permission_matrix"] == 2

    @pytest.mark.asyncio
    async def test_empty(self):
        bundle = await load_membership_bundle(InMemoryTenantSource(), "u1")
        assert bundle.is_empty
        assert bundle.matrices == {}


# ── Supabase source ──────────────────────────────────────────


class TestSupabaseTenantSource:

    @pytest.mark.asyncio
    async def test_list_memberships(self, supabase_tables):
        source = SupabaseTenantSource(MockClient(supabase_tables))

        memberships = await source.list_memberships("u1")

        # Unknown role "owner" and the inactive membership are skipped.
        assert [(m.tenant_id, m.role) for m in memberships] == [
            ("c1", Role.CASHIER),
            ("c2", Role.ADMIN),
        ]
        acme = memberships[0].tenant
        assert acme.name == "Acme"
        # Unknown code "hr" dropped, inactive "crm" filtered out.
        assert acme.active_modules == {ModuleCode.PAYROLL}
        assert memberships[1].tenant.active_modules == {ModuleCode.INVENTORY}

    @pytest.mark.asyncio
    async def test_no_memberships_skips_module_query(self, supabase_tables):
        client = MockClient(supabase_tables)
        assert await SupabaseTenantSource(client).list_memberships("nobody") == []
        assert client.queried == ["company_users"]

    @pytest.mark.asyncio
    async def test_permission_matrix(self, supabase_tables):
        source = SupabaseTenantSource(MockClient(supabase_tables))

        matrix = await source.fetch_permission_matrix("c1")

        assert matrix.grants_action(Role.CASHIER, ModuleCode.POS, Action.CREATE)
        assert matrix.grants_action(Role.CASHIER, ModuleCode.PAYROLL, Action.VIEW)
        assert not matrix.grants_action(Role.CASHIER, ModuleCode.PAYROLL, Action.EDIT)
        assert Role.VIEWER not in matrix.grants

    @pytest.mark.asyncio
    async def test_is_operator(self, supabase_tables):
        source = SupabaseTenantSource(MockClient(supabase_tables))
        assert await source.is_operator("ops-1") is True
        assert await source.is_operator("ops-2") is False
        assert await source.is_operator("u1") is False

    @pytest.mark.asyncio
    async def test_client_errors_become_transient(self):
        source = SupabaseTenantSource(FailingClient())
        with pytest.raises(TransientFetchError) as exc:
            await source.list_memberships("u1")
        assert exc.value.service == "supabase"
        assert exc.value.operation == "list_memberships"


class TestCreateSupabaseClient:

    def test_requires_url_and_key(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(GateConfigurationError):
                create_supabase_client()

    def test_uses_environment(self):
        env = {"SUPABASE_URL": "https://x.supabase.co", "SUPABASE_ANON_KEY": "anon"}
        with patch.dict("os.environ", env, clear=True), \
                patch("accessgate.tenancy.sources.create_client") as create:
            client = create_supabase_client()
        create.assert_called_once_with("https://x.supabase.co", "anon")
        assert client is create.return_value
