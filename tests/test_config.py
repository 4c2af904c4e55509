"""
Tests for gate settings and the YAML/env configuration loader.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from accessgate.config.loader import env_overrides, load_settings, read_yaml
from accessgate.config.schema import GateSettings
from accessgate.exceptions import GateConfigurationError


class TestGateSettings:

    def test_defaults(self):
        s = GateSettings()
        assert s.poll_interval_ms == 1000
        assert s.default_max_wait_ms == 8000
        assert s.grace_max_wait_ms == 15000
        assert s.grace_period_ttl_ms == 15000
        assert s.login_path == "/auth"
        assert s.provisioning_path == "/company-setup"
        assert s.operator_area_path == "/platform-admin"
        assert s.capability_denied_path == "/module-not-available"
        assert s.home_path == "/"

    def test_fetch_timeout_defaults_to_interval(self):
        assert GateSettings(poll_interval_ms=500).effective_fetch_timeout_ms == 500
        assert GateSettings(fetch_timeout_ms=250).effective_fetch_timeout_ms == 250

    def test_rejects_non_positive_interval(self):
        with pytest.raises(ValidationError):
            GateSettings(poll_interval_ms=0)

    def test_rejects_relative_path(self):
        with pytest.raises(ValidationError):
            GateSettings(login_path="auth")

    def test_strips_paths(self):
        assert GateSettings(login_path="  /login ").login_path == "/login"

    def test_grace_window_not_shorter_than_default(self):
        with pytest.raises(ValidationError):
            GateSettings(default_max_wait_ms=10000, grace_max_wait_ms=5000)


class TestReadYaml:

    def test_missing_file(self, tmp_path):
        with pytest.raises(GateConfigurationError) as exc:
            read_yaml(tmp_path / "nope.yaml")
        assert exc.value.config_path.endswith("nope.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        with pytest.raises(GateConfigurationError):
            read_yaml(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("a: [unclosed")
        with pytest.raises(GateConfigurationError):
            read_yaml(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(GateConfigurationError):
            read_yaml(path)


class TestLoadSettings:

    def test_defaults_without_file(self):
        assert load_settings(environ={}) == GateSettings()

    def test_reads_yaml(self, tmp_path):
        path = tmp_path / "gate.yaml"
        path.write_text("poll_interval_ms: 500\nlogin_path: /signin\n")
        s = load_settings(path, environ={})
        assert s.poll_interval_ms == 500
        assert s.login_path == "/signin"

    def test_config_path_from_env(self, tmp_path):
        path = tmp_path / "gate.yaml"
        path.write_text("home_path: /home\n")
        s = load_settings(environ={"ACCESSGATE_CONFIG": str(path)})
        assert s.home_path == "/home"

    def test_env_overrides_yaml(self, tmp_path):
        path = tmp_path / "gate.yaml"
        path.write_text("default_max_wait_ms: 6000\n")
        s = load_settings(path, environ={"ACCESSGATE_DEFAULT_MAX_WAIT_MS": "4000"})
        assert s.default_max_wait_ms == 4000

    def test_invalid_values_raise_configuration_error(self, tmp_path):
        path = tmp_path / "gate.yaml"
        path.write_text("poll_interval_ms: -5\n")
        with pytest.raises(GateConfigurationError) as exc:
            load_settings(path, environ={})
        assert "poll_interval_ms" in str(exc.value)


class TestEnvOverrides:

    def test_ignores_unknown_and_blank(self):
        overrides = env_overrides({
            "ACCESSGATE_LOGIN_PATH": "/in",
            "ACCESSGATE_HOME_PATH": "   ",
            "ACCESSGATE_UNKNOWN": "x",
        })
        assert overrides == {"login_path": "/in"}
