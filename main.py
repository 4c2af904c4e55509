"""
Access Gate - Command Line

Evaluates gate decisions offline against a YAML fixture of tenants,
memberships, permission matrices and operators. Useful for checking a
permission matrix before rolling it out.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import NoReturn, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from accessgate.access.guard import GuardOutcome
from accessgate.access.menu import load_manifest
from accessgate.access.session import AccessGate
from accessgate.config.loader import load_settings
from accessgate.exceptions import AccessGateError
from accessgate.identity.providers import InMemoryIdentityProvider
from accessgate.observability.logging_config import configure_logging
from accessgate.tenancy.models import Action, ModuleCode, Principal
from accessgate.tenancy.resolver import ResolutionStatus
from accessgate.tenancy.sources import InMemoryTenantSource
from accessgate.tenancy.storage import JsonFileStorage

load_dotenv()

app = typer.Typer(
    name="accessgate",
    help="Access Gate - inspect access decisions for a multi-tenant app",
)
console = Console()

DEFAULT_FIXTURE = Path(__file__).parent / "fixtures" / "demo_tenants.yaml"

FixtureOption = typer.Option(DEFAULT_FIXTURE, "--fixture", "-f", help="Tenant fixture YAML")
ConfigOption = typer.Option(None, "--config", "-c", help="Gate settings YAML")
StorageOption = typer.Option(
    None, "--storage", help="JSON file persisting the last tenant between runs"
)
TenantOption = typer.Option(None, "--tenant", "-t", help="Switch to this tenant first")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    configure_logging(level=logging.DEBUG if verbose else logging.WARNING)


def _fail(error: Exception) -> NoReturn:
    console.print(Panel(
        f"[red]{error}[/]",
        title="⚠ Access Gate Error",
        border_style="red",
    ))
    raise typer.Exit(code=2)


async def _open_gate(
    principal_id: str,
    fixture: Path,
    config: Optional[Path],
    storage: Optional[Path],
) -> AccessGate:
    settings = load_settings(config)
    source = InMemoryTenantSource.from_yaml(fixture)
    gate = AccessGate(
        InMemoryIdentityProvider(Principal(id=principal_id)),
        source,
        settings=settings,
        storage=JsonFileStorage(storage) if storage else None,
    )
    return await gate.start()


async def _settle(
    gate: AccessGate,
    module: Optional[ModuleCode] = None,
    action: Action = Action.VIEW,
    tenant: Optional[str] = None,
) -> GuardOutcome:
    """Guard, waiting out any polling, then optionally switch tenant and guard again."""
    outcome = await gate.guard(module, action)
    if outcome.is_loading:
        with console.status("[cyan]Resolving tenant...[/]"):
            await gate.wait_until_settled()
        outcome = await gate.guard(module, action)
    if tenant and gate.resolution.status == ResolutionStatus.RESOLVED:
        gate.switch_tenant(tenant)
        outcome = await gate.guard(module, action)
    return outcome


def _print_outcome(outcome: GuardOutcome) -> None:
    colour = {"render": "green", "redirect": "yellow", "loading": "cyan"}[outcome.kind.value]
    lines = [f"Outcome: [{colour}]{outcome.kind.value.upper()}[/]"]
    if outcome.target:
        lines.append(f"Target:  {outcome.target}")
    if outcome.reason:
        lines.append(f"Reason:  {outcome.reason.value}")
    if outcome.entitlement:
        lines.append(f"Rule:    {outcome.entitlement.reason.value}")
    if outcome.tenant_id:
        lines.append(f"Tenant:  {outcome.tenant_id}")
    console.print(Panel("\n".join(lines), title="Guard"))


@app.command()
def check(
    principal: str = typer.Argument(..., help="Principal id"),
    module: ModuleCode = typer.Argument(..., help="Module code"),
    action: Action = typer.Option(Action.VIEW, "--action", "-a", help="Action"),
    tenant: Optional[str] = TenantOption,
    fixture: Path = FixtureOption,
    config: Optional[Path] = ConfigOption,
    storage: Optional[Path] = StorageOption,
):
    """Allow/Deny for one capability. Exits 1 on Deny."""

    async def _run() -> bool:
        gate = await _open_gate(principal, fixture, config, storage)
        try:
            await _settle(gate, tenant=tenant)
            result = gate.explain(module, action)
            snapshot = gate.snapshot

            table = Table(title=f"{principal} → {module.value}:{action.value}")
            table.add_column("Field", style="cyan")
            table.add_column("Value", style="white")
            table.add_row("Tenant", snapshot.tenant_id if snapshot else "-")
            table.add_row("Role", snapshot.role.value if snapshot else "-")
            table.add_row("Operator", "yes" if gate.operator_flag else "no")
            table.add_row(
                "Decision",
                "[green]ALLOW[/]" if result.allowed else "[red]DENY[/]",
            )
            table.add_row("Rule", result.reason.value)
            console.print(table)
            return result.allowed
        finally:
            await gate.close()

    try:
        allowed = asyncio.run(_run())
    except AccessGateError as e:
        _fail(e)
    if not allowed:
        raise typer.Exit(code=1)


@app.command()
def guard(
    principal: str = typer.Argument(..., help="Principal id"),
    module: Optional[ModuleCode] = typer.Option(None, "--module", "-m", help="Required module"),
    action: Action = typer.Option(Action.VIEW, "--action", "-a", help="Required action"),
    operator: bool = typer.Option(False, "--operator", help="Guard an operator surface"),
    tenant: Optional[str] = TenantOption,
    fixture: Path = FixtureOption,
    config: Optional[Path] = ConfigOption,
    storage: Optional[Path] = StorageOption,
):
    """Run the route guard for a principal and show the outcome."""

    async def _run() -> GuardOutcome:
        gate = await _open_gate(principal, fixture, config, storage)
        try:
            if operator:
                return await gate.guard_operator()
            return await _settle(gate, module, action, tenant)
        finally:
            await gate.close()

    try:
        outcome = asyncio.run(_run())
    except AccessGateError as e:
        _fail(e)
    _print_outcome(outcome)


@app.command()
def menu(
    principal: str = typer.Argument(..., help="Principal id"),
    manifest: Optional[Path] = typer.Option(None, "--manifest", help="Navigation manifest YAML"),
    tenant: Optional[str] = TenantOption,
    fixture: Path = FixtureOption,
    config: Optional[Path] = ConfigOption,
    storage: Optional[Path] = StorageOption,
):
    """Show the navigation items visible to a principal."""

    async def _run():
        gate = await _open_gate(principal, fixture, config, storage)
        try:
            await _settle(gate, tenant=tenant)
            return gate.visible_menu(load_manifest(manifest) if manifest else None)
        finally:
            await gate.close()

    try:
        visible = asyncio.run(_run())
    except AccessGateError as e:
        _fail(e)

    if not visible.groups:
        console.print("[yellow]No navigation items visible.[/]")
        return

    table = Table(title=f"Menu for {principal}")
    table.add_column("Group", style="cyan")
    table.add_column("Item", style="white")
    table.add_column("Module", style="green")
    table.add_column("Link", style="dim")
    for group in visible.groups:
        for i, item in enumerate(group.items):
            table.add_row(
                group.title if i == 0 else "",
                item.label,
                item.module.value,
                item.href or "",
            )
    console.print(table)


@app.command()
def tenants(
    principal: str = typer.Argument(..., help="Principal id"),
    fixture: Path = FixtureOption,
    config: Optional[Path] = ConfigOption,
    storage: Optional[Path] = StorageOption,
):
    """List a principal's memberships and the tenant the gate selects."""

    async def _run():
        gate = await _open_gate(principal, fixture, config, storage)
        try:
            await _settle(gate)
            return gate.resolution, gate.memberships
        finally:
            await gate.close()

    try:
        resolution, memberships = asyncio.run(_run())
    except AccessGateError as e:
        _fail(e)

    active = resolution.snapshot.tenant_id if resolution.snapshot else None
    table = Table(title=f"Memberships: {principal} ({resolution.status.value})")
    table.add_column("", style="green")
    table.add_column("Tenant", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Role", style="yellow")
    for m in memberships:
        table.add_row("●" if m.tenant_id == active else "", m.tenant_id, m.tenant.name, m.role.value)
    console.print(table)


if __name__ == "__main__":
    app()
