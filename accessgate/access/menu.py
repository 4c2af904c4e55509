"""
Menu Visibility Filter.

Given the static navigation manifest, keeps the items whose module the
session may `view` and drops groups left empty. Items flagged
`admin_only` also need a tenant admin or an operator.

The manifest ships as accessgate/config/navigation.yaml; a deployment
can point `navigation_manifest` in its settings at its own file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from accessgate.access.entitlements import EntitlementEngine
from accessgate.config.loader import read_yaml
from accessgate.exceptions import GateConfigurationError
from accessgate.tenancy.models import Action, Capability, ModuleCode, Principal, TenantSnapshot

DEFAULT_MANIFEST_PATH = Path(__file__).resolve().parent.parent / "config" / "navigation.yaml"


class NavItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    module: ModuleCode
    href: Optional[str] = None
    admin_only: bool = False


class NavGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    items: tuple[NavItem, ...] = ()


class NavigationManifest(BaseModel):
    model_config = ConfigDict(frozen=True)

    groups: tuple[NavGroup, ...] = Field(default_factory=tuple)

    @field_validator("groups")
    @classmethod
    def validate_unique_titles(cls, v: tuple[NavGroup, ...]) -> tuple[NavGroup, ...]:
        titles = [g.title for g in v]
        duplicates = sorted({t for t in titles if titles.count(t) > 1})
        if duplicates:
            raise ValueError(f"Duplicate navigation group titles: {duplicates}")
        return v

    @property
    def item_count(self) -> int:
        return sum(len(g.items) for g in self.groups)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


def load_manifest(path: Optional[str | Path] = None) -> NavigationManifest:
    """
    Load and validate a navigation manifest.

    Raises:
        GateConfigurationError: If the file is unreadable or invalid.
    """
    path = Path(path) if path else DEFAULT_MANIFEST_PATH
    raw = read_yaml(path)
    try:
        return NavigationManifest(**raw)
    except ValidationError as e:
        raise GateConfigurationError(
            f"Invalid navigation manifest {path}:\n{e}", config_path=str(path)
        ) from e


def visible_menu(
    manifest: NavigationManifest,
    principal: Optional[Principal],
    operator_flag: bool,
    snapshot: Optional[TenantSnapshot],
    engine: Optional[EntitlementEngine] = None,
) -> NavigationManifest:
    """Return the subset of `manifest` this session may see."""
    if principal is None:
        return NavigationManifest()

    engine = engine or EntitlementEngine()
    is_admin = operator_flag or (snapshot is not None and snapshot.role.is_tenant_admin)

    groups = []
    for group in manifest.groups:
        items = tuple(
            item for item in group.items
            if (is_admin or not item.admin_only)
            and engine.check(
                principal,
                operator_flag,
                snapshot,
                Capability(module=item.module, action=Action.VIEW),
            ).allowed
        )
        if items:
            groups.append(NavGroup(title=group.title, items=items))
    return NavigationManifest(groups=tuple(groups))
