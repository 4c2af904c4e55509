"""
Custom exception hierarchy for the access gate.

Structured error handling with clear categories:
- Configuration errors (caught at startup)
- Identity transport failures (converted to Unauthenticated)
- Transient data-source failures (swallowed and retried while polling)
- Tenant access violations (switching into a foreign tenant)

Decision outcomes such as "capability denied" or "no tenant" are NOT
exceptions; they are values returned by the guard (see RedirectReason).

Usage:
    from accessgate.exceptions import TransientFetchError

    try:
        rows = client.table("company_users").select("*").execute()
    except Exception as e:
        raise TransientFetchError("membership fetch failed", service="supabase") from e
"""

from __future__ import annotations

from typing import Optional


class AccessGateError(Exception):
    """
    Base exception for all access gate errors.

    All custom exceptions inherit from this, so you can catch
    `AccessGateError` to handle any gate-specific error.
    """

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


# ── Configuration Errors ──────────────────────────────────────────


class GateConfigurationError(AccessGateError):
    """
    Raised when gate settings or the navigation manifest are invalid.

    Examples:
    - Unknown module code in navigation.yaml
    - Non-positive poll interval
    - Malformed YAML
    """

    def __init__(
        self,
        message: str,
        *,
        config_path: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.config_path = config_path


# ── Identity Errors ───────────────────────────────────────────────


class IdentityTransportError(AccessGateError):
    """
    Raised by identity providers when the session query cannot reach
    the identity service.

    The Identity Resolver converts this to the Unauthenticated state;
    it never reaches the UI layer.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.provider = provider


# ── Data Source Errors ────────────────────────────────────────────


class TransientFetchError(AccessGateError):
    """
    Raised when the tenant-membership data source is unavailable or
    returns an unexpected response.

    The polling loop swallows these and retries on the next tick.
    """

    def __init__(
        self,
        message: str,
        *,
        service: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.service = service
        self.operation = operation


# ── Tenant Errors ─────────────────────────────────────────────────


class TenantAccessError(AccessGateError):
    """
    Raised when a principal tries to switch into a tenant it holds no
    membership for, or before memberships have been loaded.
    """

    def __init__(
        self,
        message: str,
        *,
        tenant_id: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.tenant_id = tenant_id
