"""
Tests for the structured logging configuration.

Validates:
- JSONFormatter produces valid JSON with required fields
- DevFormatter produces human-readable colored text
- ContextFilter injects session_id from the active context
- configure_logging() switches mode based on ACCESSGATE_ENV
"""

from __future__ import annotations

import json
import logging
import os
import sys
from io import StringIO
from unittest.mock import patch

import pytest

from accessgate.observability.logging_config import (
    ContextFilter,
    DevFormatter,
    JSONFormatter,
    clear_session_id,
    configure_logging,
    get_session_id,
    set_session_id,
)


# ─── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _cleanup_session_id():
    clear_session_id()
    yield
    clear_session_id()


@pytest.fixture(autouse=True)
def _cleanup_root_handlers():
    yield
    root = logging.getLogger()
    for h in root.handlers[:]:
        root.removeHandler(h)


def _make_record(
    msg: str = "test message",
    level: int = logging.INFO,
    name: str = "test.logger",
    extra: dict | None = None,
) -> logging.LogRecord:
    record = logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=42,
        msg=msg,
        args=(),
        exc_info=None,
    )
    if extra:
        for key, value in extra.items():
            setattr(record, key, value)
    return record


# ─── JSONFormatter Tests ──────────────────────────────────────────────


class TestJSONFormatter:

    def test_produces_valid_json(self):
        output = JSONFormatter().format(_make_record())
        assert json.loads(output)["message"] == "test message"

    def test_includes_required_fields(self):
        parsed = json.loads(JSONFormatter().format(_make_record(level=logging.WARNING)))
        assert parsed["level"] == "WARNING"
        assert parsed["logger"] == "test.logger"
        assert "timestamp" in parsed

    def test_includes_extra_fields(self):
        record = _make_record(
            "tenant_resolved",
            extra={"principal_id": "u1", "tenant_id": "acme", "role": "cashier"},
        )
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["principal_id"] == "u1"
        assert parsed["tenant_id"] == "acme"
        assert parsed["role"] == "cashier"

    def test_includes_session_id(self):
        record = _make_record(extra={"session_id": "sess-1"})
        parsed = json.loads(JSONFormatter().format(record))
        assert parsed["session_id"] == "sess-1"

    def test_non_serializable_extra_becomes_string(self):
        record = _make_record(extra={"codes": {1, 2}})
        parsed = json.loads(JSONFormatter().format(record))
        assert isinstance(parsed["codes"], str)

    def test_handles_exception_info(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = _make_record()
            record.exc_info = sys.exc_info()
        parsed = json.loads(JSONFormatter().format(record))
        assert "ValueError" in parsed["exception"]


# ─── DevFormatter Tests ───────────────────────────────────────────────


class TestDevFormatter:

    def test_includes_message_and_level(self):
        output = DevFormatter().format(_make_record("capability_denied"))
        assert "capability_denied" in output
        assert "INFO" in output

    def test_includes_known_extras_inline(self):
        record = _make_record(extra={"module_code": "payroll", "reason": "module_inactive"})
        output = DevFormatter().format(record)
        assert "module_code=payroll" in output
        assert "reason=module_inactive" in output

    def test_skips_unknown_extras(self):
        output = DevFormatter().format(_make_record(extra={"raw_role": "boss"}))
        assert "raw_role" not in output

    def test_color_codes_present_for_error(self):
        output = DevFormatter().format(_make_record(level=logging.ERROR))
        assert "\033[31m" in output


# ─── ContextFilter Tests ──────────────────────────────────────────────


class TestContextFilter:

    def test_injects_session_id_when_set(self):
        set_session_id("sess-42")
        record = _make_record()
        assert ContextFilter().filter(record) is True
        assert record.session_id == "sess-42"

    def test_no_session_id_when_not_set(self):
        record = _make_record()
        ContextFilter().filter(record)
        assert not hasattr(record, "session_id")

    def test_explicit_session_id_wins(self):
        set_session_id("ambient")
        record = _make_record(extra={"session_id": "explicit"})
        ContextFilter().filter(record)
        assert record.session_id == "explicit"


class TestSessionContext:

    def test_set_get_clear(self):
        assert get_session_id() is None
        set_session_id("abc")
        assert get_session_id() == "abc"
        clear_session_id()
        assert get_session_id() is None


# ─── configure_logging Tests ──────────────────────────────────────────


class TestConfigureLogging:

    def test_production_uses_json_formatter(self):
        configure_logging(env="production")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, JSONFormatter)

    def test_development_uses_dev_formatter(self):
        configure_logging(env="development")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, DevFormatter)

    def test_reads_env_var(self):
        with patch.dict(os.environ, {"ACCESSGATE_ENV": "production"}):
            configure_logging()
        assert isinstance(logging.getLogger().handlers[0].formatter, JSONFormatter)

    def test_defaults_to_development(self):
        with patch.dict(os.environ, {}, clear=True):
            configure_logging()
        assert isinstance(logging.getLogger().handlers[0].formatter, DevFormatter)

    def test_removes_existing_handlers(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())
        configure_logging(env="development")
        assert len(root.handlers) == 1

    def test_context_filter_attached(self):
        configure_logging(env="development")
        handler = logging.getLogger().handlers[0]
        assert ContextFilter in [type(f) for f in handler.filters]

    def test_json_output_end_to_end(self):
        configure_logging(env="production")
        stream = StringIO()
        logging.getLogger().handlers[0].stream = stream
        set_session_id("sess-e2e")

        logging.getLogger("test.e2e").info(
            "tenant_switched",
            extra={"tenant_id": "globex", "principal_id": "u1"},
        )

        parsed = json.loads(stream.getvalue().strip())
        assert parsed["message"] == "tenant_switched"
        assert parsed["tenant_id"] == "globex"
        assert parsed["session_id"] == "sess-e2e"
