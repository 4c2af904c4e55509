"""
Configuration loader for the access gate.

Loads an optional gate.yaml, overlays ACCESSGATE_* environment
variables, and validates the result against GateSettings.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from accessgate.config.schema import GateSettings
from accessgate.exceptions import GateConfigurationError

ENV_PREFIX = "ACCESSGATE_"


def read_yaml(path: str | Path) -> dict[str, Any]:
    """
    Read a YAML mapping from disk.

    Raises:
        GateConfigurationError: If the file is missing, empty or not a mapping.
    """
    path = Path(path)
    if not path.exists():
        raise GateConfigurationError(f"Config not found: {path}", config_path=str(path))

    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise GateConfigurationError(
            f"Invalid YAML in {path}: {e}", config_path=str(path)
        ) from e

    if raw is None:
        raise GateConfigurationError(f"Config file is empty: {path}", config_path=str(path))
    if not isinstance(raw, dict):
        raise GateConfigurationError(
            f"Config file must contain a mapping: {path}", config_path=str(path)
        )
    return raw


def env_overrides(environ: Optional[dict[str, str]] = None) -> dict[str, str]:
    """Collect ACCESSGATE_<FIELD> variables that name a GateSettings field."""
    environ = os.environ if environ is None else environ
    overrides: dict[str, str] = {}
    for field_name in GateSettings.model_fields:
        value = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
        if value is not None and value.strip() != "":
            overrides[field_name] = value.strip()
    return overrides


def load_settings(
    config_path: Optional[str | Path] = None,
    environ: Optional[dict[str, str]] = None,
) -> GateSettings:
    """
    Load and validate gate settings.

    Args:
        config_path: Optional path to a gate.yaml. Falls back to the
                     ACCESSGATE_CONFIG variable; with neither, defaults apply.
        environ: Environment mapping (defaults to os.environ).

    Returns:
        Validated GateSettings instance.

    Raises:
        GateConfigurationError: If the file or the resulting values are invalid.
    """
    environ = os.environ if environ is None else environ
    config_path = config_path or environ.get(f"{ENV_PREFIX}CONFIG") or None

    raw: dict[str, Any] = {}
    if config_path:
        raw = read_yaml(config_path)

    raw.update(env_overrides(environ))

    try:
        return GateSettings(**raw)
    except ValidationError as e:
        raise GateConfigurationError(
            f"Invalid gate settings:\n{e}",
            config_path=str(config_path) if config_path else None,
        ) from e
