"""
FastAPI dependencies enforcing gate decisions server-side.

Architecture:
    Request → resolve AccessGate for the session → guard → Route Handler

Guard outcomes map to HTTP:
    RENDER    → handler runs; request.state.access_snapshot is set
    REDIRECT  → 307 with Location set to the redirect target
    LOADING   → 503 with Retry-After (seconds until the next poll tick)

How a request finds its AccessGate is up to the application: pass a
callable taking the Request and returning (or awaiting) the gate.

Usage:
    from accessgate.access.gateway import require_capability

    payroll_dep = require_capability(get_gate, "payroll", "view")

    @app.get("/payroll")
    async def payroll(outcome: GuardOutcome = Depends(payroll_dep)):
        ...
"""

from __future__ import annotations

import inspect
import logging
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from fastapi import HTTPException, Request

from accessgate import __version__
from accessgate.access.guard import GuardOutcome
from accessgate.access.session import AccessGate
from accessgate.tenancy.models import Action, ModuleCode

logger = logging.getLogger(__name__)

GateGetter = Callable[[Request], Union[AccessGate, Awaitable[AccessGate]]]


async def resolve_gate(get_gate: GateGetter, request: Request) -> AccessGate:
    gate = get_gate(request)
    if inspect.isawaitable(gate):
        gate = await gate
    return gate


def raise_for_outcome(outcome: GuardOutcome, retry_after_ms: int = 1000) -> None:
    """Raise the HTTPException matching a non-render outcome."""
    if outcome.is_loading:
        raise HTTPException(
            status_code=503,
            detail={
                "error": "loading",
                "message": "Access decision pending",
            },
            headers={"Retry-After": str(max(1, math.ceil(retry_after_ms / 1000)))},
        )
    if outcome.is_redirect:
        detail: dict[str, Any] = {
            "error": outcome.reason.value if outcome.reason else "redirect",
            "message": f"Redirect to {outcome.target}",
            "target": outcome.target,
        }
        if outcome.entitlement is not None:
            detail["decision_reason"] = outcome.entitlement.reason.value
        raise HTTPException(
            status_code=307,
            detail=detail,
            headers={"Location": outcome.target or "/"},
        )


def require_capability(
    get_gate: GateGetter,
    module: Optional[ModuleCode | str] = None,
    action: Action | str = Action.VIEW,
) -> Callable:
    """
    Create a FastAPI dependency guarding a tenant-scoped route.

    With `module`, the capability (module, action) is also required.
    Unknown module codes or actions fail here, at route definition time.
    """
    module_code = ModuleCode(module) if module is not None else None
    required_action = Action(action)

    async def check_capability(request: Request) -> GuardOutcome:
        gate = await resolve_gate(get_gate, request)
        outcome = await gate.guard(module_code, required_action)
        if not outcome.is_render:
            logger.info(
                "api_request_blocked",
                extra={
                    "path": request.url.path,
                    "outcome": outcome.kind.value,
                    "reason": outcome.reason.value if outcome.reason else None,
                    "module_code": module_code.value if module_code else None,
                    "action": required_action.value,
                },
            )
        raise_for_outcome(outcome, gate.settings.poll_interval_ms)

        request.state.access_snapshot = gate.snapshot
        return outcome

    return check_capability


def require_operator(get_gate: GateGetter) -> Callable:
    """Create a FastAPI dependency guarding an operator-only route."""

    async def check_operator(request: Request) -> GuardOutcome:
        gate = await resolve_gate(get_gate, request)
        outcome = await gate.guard_operator()
        raise_for_outcome(outcome, gate.settings.poll_interval_ms)
        return outcome

    return check_operator


def require_authenticated(get_gate: GateGetter) -> Callable:
    """Create a FastAPI dependency requiring only a signed-in principal."""

    async def check_authenticated(request: Request) -> GuardOutcome:
        gate = await resolve_gate(get_gate, request)
        outcome = await gate.guard_authenticated()
        raise_for_outcome(outcome, gate.settings.poll_interval_ms)
        return outcome

    return check_authenticated


def get_health_response() -> dict[str, Any]:
    """Generate a health check response (no auth required)."""
    return {
        "status": "healthy",
        "service": "accessgate",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    }
