"""Tests for hindsight.core.logging module."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from hindsight.core.config import LogConfig
from hindsight.core.logging import (
    SENSITIVE_PATTERNS,
    HindsightLogger,
    SessionContext,
    _add_context,
    _sanitize_event_dict,
    configure_from_config,
    configure_logging,
    get_current_context,
    get_logger,
    with_context,
)


def _flush_root_handlers() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


class TestSanitizing:
    """Tests for sensitive field redaction."""

    def test_known_sensitive_patterns(self):
        """Common secret field names are covered."""
        assert "api_key" in SENSITIVE_PATTERNS
        assert "token" in SENSITIVE_PATTERNS
        assert "password" in SENSITIVE_PATTERNS

    def test_redacts_top_level_and_nested(self):
        """Sensitive keys are redacted at the top level and one level down."""
        event_dict = {
            "event": "sync.started",
            "auth_token": "abc",
            "settings": {"API_KEY": "sk-1", "endpoint": "local"},
            "tool": "Grep",
        }

        result = _sanitize_event_dict(None, "info", event_dict)

        assert result["auth_token"] == "[REDACTED]"
        assert result["settings"]["API_KEY"] == "[REDACTED]"
        assert result["settings"]["endpoint"] == "local"
        assert result["tool"] == "Grep"


class TestSessionContext:
    """Tests for context propagation."""

    def test_no_context_by_default(self):
        """Outside with_context() there is no active context."""
        assert get_current_context() is None

    def test_with_context_sets_and_restores(self):
        """The context is active inside the block only."""
        ctx = SessionContext(session_id="sess-1")
        with with_context(ctx) as active:
            assert active is ctx
            assert get_current_context() is ctx
        assert get_current_context() is None

    def test_to_dict_omits_unset_fields(self):
        """Only populated fields are emitted."""
        ctx = SessionContext(session_id="sess-1")
        fields = ctx.to_dict()
        assert fields["session_id"] == "sess-1"
        assert "component" not in fields
        assert len(fields["run_id"]) == 12

    def test_with_component_keeps_ids(self):
        """Scoping to a component keeps the correlation ids."""
        ctx = SessionContext(session_id="sess-1")
        scoped = ctx.with_component("transfer")
        assert scoped.run_id == ctx.run_id
        assert scoped.component == "transfer"

    def test_add_context_does_not_override_bound_fields(self):
        """Explicit fields win over context fields."""
        with with_context(SessionContext(session_id="sess-ctx")):
            result = _add_context(None, "info", {"event": "x", "session_id": "explicit"})
        assert result["session_id"] == "explicit"
        assert "run_id" in result


class TestHindsightLogger:
    """Tests for the component logger wrapper."""

    def test_get_logger_returns_component_logger(self):
        """get_logger binds the component name."""
        logger = get_logger("memory")
        assert isinstance(logger, HindsightLogger)
        assert logger.component == "memory"

    def test_bind_returns_new_logger(self):
        """bind() leaves the original logger untouched."""
        logger = get_logger("grpo")
        bound = logger.bind(task_id="t-1")
        assert bound is not logger
        assert bound._context["task_id"] == "t-1"
        assert "task_id" not in logger._context


class TestConfigureLogging:
    """Tests for configure_logging and configure_from_config."""

    def test_both_requires_file_path(self):
        """format='both' without a file is rejected."""
        with pytest.raises(ValueError, match="file_path"):
            configure_logging(format="both")

    def test_json_to_file(self, tmp_path: Path):
        """JSON lines land in the log file with context and redaction applied."""
        log_file = tmp_path / "logs" / "hindsight.log"
        configure_logging(level="DEBUG", format="json", file_path=log_file)

        with with_context(SessionContext(session_id="sess-42")):
            get_logger("tool_learner").info("tool_learner.usage_recorded", tool="Grep", token="t")
        _flush_root_handlers()

        lines = log_file.read_text(encoding="utf-8").strip().splitlines()
        entry = json.loads(lines[-1])
        assert entry["event"] == "tool_learner.usage_recorded"
        assert entry["component"] == "tool_learner"
        assert entry["session_id"] == "sess-42"
        assert entry["token"] == "[REDACTED]"
        assert entry["level"] == "info"
        assert "timestamp" in entry

    def test_level_filters_events(self, tmp_path: Path):
        """Events below the configured level are dropped."""
        log_file = tmp_path / "hindsight.log"
        configure_logging(level="WARNING", format="json", file_path=log_file)

        logger = get_logger("memory")
        logger.info("memory.saved")
        logger.warning("memory.store_corrupt")
        _flush_root_handlers()

        content = log_file.read_text(encoding="utf-8")
        assert "memory.saved" not in content
        assert "memory.store_corrupt" in content

    def test_configure_from_config(self, tmp_path: Path):
        """A LogConfig section is applied as-is."""
        log_file = tmp_path / "hindsight.log"
        configure_from_config(LogConfig(level="ERROR", format="json", file_path=log_file))
        assert logging.getLogger().level == logging.ERROR
