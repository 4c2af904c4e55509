"""
Access Gate API Server.

FastAPI application exposing the gate's outward interface over HTTP, for
UI layers that are not written in Python.

Usage:
    from accessgate.access.api_server import create_gate_app

    app = create_gate_app(get_gate=lookup_session_gate)
    uvicorn.run(app, host="0.0.0.0", port=8000)

Endpoints:
    GET  /api/v1/health                — Health check
    GET  /api/v1/access/guard          — Guard a tenant-scoped surface
    GET  /api/v1/access/operator-guard — Guard an operator surface
    GET  /api/v1/access/check          — Allow/Deny for one capability
    GET  /api/v1/access/menu           — Visible navigation
    GET  /api/v1/access/tenant         — Active tenant and memberships
    POST /api/v1/access/tenant         — Switch the active tenant
    POST /api/v1/access/refresh        — Re-read memberships
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from accessgate import __version__
from accessgate.access.gateway import (
    GateGetter,
    get_health_response,
    raise_for_outcome,
    require_authenticated,
    resolve_gate,
)
from accessgate.access.guard import GuardOutcome, RedirectReason
from accessgate.access.session import AccessGate
from accessgate.exceptions import TenantAccessError
from accessgate.tenancy.models import Action, ModuleCode


# ── Request/Response Models ──────────────────────────────────


class SwitchTenantRequest(BaseModel):
    """Request body for switching the active tenant."""
    tenant_id: str = Field(min_length=1)


class APIResponse(BaseModel):
    """Standard API response envelope."""
    ok: bool = True
    data: Any = None
    error: Optional[str] = None
    meta: dict[str, Any] = Field(default_factory=dict)


def _tenant_payload(gate: AccessGate) -> dict[str, Any]:
    snapshot = gate.snapshot
    return {
        "status": gate.resolution.status.value,
        "active": snapshot.summary() if snapshot else None,
        "memberships": [
            {
                "tenant_id": m.tenant_id,
                "tenant_name": m.tenant.name,
                "role": m.role.value,
            }
            for m in gate.memberships
        ],
    }


# ── App Factory ──────────────────────────────────────────────


def create_gate_app(
    get_gate: GateGetter,
    cors_origins: Optional[list[str]] = None,
) -> FastAPI:
    """
    Create the FastAPI application exposing the gate.

    Args:
        get_gate: Returns (or awaits) the AccessGate for a request's session.
        cors_origins: Allowed CORS origins (default: all).

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Access Gate API",
        description="Access decisions for the multi-tenant application.",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    auth_dep = require_authenticated(get_gate)

    async def gate_dep(request: Request) -> AccessGate:
        return await resolve_gate(get_gate, request)

    async def resolved_gate_dep(request: Request) -> AccessGate:
        # Starts (or joins) tenant resolution. Until a tenant is settled there
        # is nothing definitive to report: pending is 503, no tenant is 307.
        gate = await resolve_gate(get_gate, request)
        outcome = await gate.guard()
        if outcome.reason != RedirectReason.OPERATOR_AREA:
            raise_for_outcome(outcome, gate.settings.poll_interval_ms)
        return gate

    # ── Health ───────────────────────────────────────────

    @app.get("/api/v1/health", tags=["Health"])
    async def health_check():
        """Health check endpoint (no authentication required)."""
        return get_health_response()

    # ── Guards ───────────────────────────────────────────

    @app.get("/api/v1/access/guard", tags=["Access"])
    async def guard(
        module: Optional[ModuleCode] = None,
        action: Action = Action.VIEW,
        gate: AccessGate = Depends(gate_dep),
    ):
        """Guard outcome for a tenant-scoped surface. Never raises on deny."""
        outcome: GuardOutcome = await gate.guard(module, action)
        return APIResponse(
            data=outcome.model_dump(mode="json"),
            meta={"session_id": gate.session_id},
        )

    @app.get("/api/v1/access/operator-guard", tags=["Access"])
    async def operator_guard(gate: AccessGate = Depends(gate_dep)):
        outcome = await gate.guard_operator()
        return APIResponse(data=outcome.model_dump(mode="json"))

    # ── Decisions ────────────────────────────────────────

    @app.get("/api/v1/access/check", tags=["Access"])
    async def check(
        module: ModuleCode = Query(...),
        action: Action = Action.VIEW,
        gate: AccessGate = Depends(resolved_gate_dep),
        _auth: GuardOutcome = Depends(auth_dep),
    ):
        """Allow/Deny for one capability against the active tenant."""
        result = gate.explain(module, action)
        return APIResponse(
            data={
                "module": module.value,
                "action": action.value,
                "decision": result.decision.value,
                "reason": result.reason.value,
            },
            meta={"tenant_id": gate.snapshot.tenant_id if gate.snapshot else None},
        )

    @app.get("/api/v1/access/menu", tags=["Access"])
    async def menu(
        gate: AccessGate = Depends(resolved_gate_dep),
        _auth: GuardOutcome = Depends(auth_dep),
    ):
        visible = gate.visible_menu()
        return APIResponse(
            data=visible.to_dict(),
            meta={"item_count": visible.item_count},
        )

    # ── Tenant ───────────────────────────────────────────

    @app.get("/api/v1/access/tenant", tags=["Tenant"])
    async def get_tenant(
        gate: AccessGate = Depends(resolved_gate_dep),
        _auth: GuardOutcome = Depends(auth_dep),
    ):
        return APIResponse(data=_tenant_payload(gate))

    @app.post("/api/v1/access/tenant", tags=["Tenant"])
    async def switch_tenant(
        body: SwitchTenantRequest,
        gate: AccessGate = Depends(resolved_gate_dep),
        _auth: GuardOutcome = Depends(auth_dep),
    ):
        """Switch the active tenant among the known memberships."""
        try:
            gate.switch_tenant(body.tenant_id)
        except TenantAccessError as e:
            raise HTTPException(
                status_code=403,
                detail={
                    "error": "tenant_forbidden",
                    "message": str(e),
                    "tenant_id": body.tenant_id,
                },
            )
        return APIResponse(data=_tenant_payload(gate))

    @app.post("/api/v1/access/refresh", tags=["Tenant"])
    async def refresh(
        gate: AccessGate = Depends(gate_dep),
        _auth: GuardOutcome = Depends(auth_dep),
    ):
        await gate.refresh()
        return APIResponse(data=_tenant_payload(gate))

    return app
