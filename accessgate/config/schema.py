"""
Pydantic configuration schema for the access gate.

Timing constants for tenant resolution and the redirect targets the
route guard emits. Defaults match the production application; a YAML
file or ACCESSGATE_* environment variables can override any field.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class GateSettings(BaseModel):
    """Settings for one deployment of the gate."""

    # ── Tenant resolution timing ─────────────────────────────
    poll_interval_ms: int = Field(default=1000, gt=0)
    default_max_wait_ms: int = Field(default=8000, gt=0)
    grace_max_wait_ms: int = Field(default=15000, gt=0)
    grace_period_ttl_ms: int = Field(default=15000, gt=0)
    fetch_timeout_ms: Optional[int] = Field(default=None, gt=0)

    # ── Redirect targets ─────────────────────────────────────
    login_path: str = "/auth"
    provisioning_path: str = "/company-setup"
    operator_area_path: str = "/platform-admin"
    capability_denied_path: str = "/module-not-available"
    home_path: str = "/"

    # ── Navigation ───────────────────────────────────────────
    navigation_manifest: Optional[str] = None

    @field_validator(
        "login_path",
        "provisioning_path",
        "operator_area_path",
        "capability_denied_path",
        "home_path",
    )
    @classmethod
    def validate_path(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith("/"):
            raise ValueError("Redirect targets must be absolute paths starting with '/'")
        return v

    @model_validator(mode="after")
    def validate_windows(self) -> GateSettings:
        if self.grace_max_wait_ms < self.default_max_wait_ms:
            raise ValueError(
                "grace_max_wait_ms must not be shorter than default_max_wait_ms"
            )
        return self

    @property
    def effective_fetch_timeout_ms(self) -> int:
        """A fetch slower than one interval counts as a failed tick."""
        return self.fetch_timeout_ms or self.poll_interval_ms
