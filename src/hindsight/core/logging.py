"""Structured logging for hindsight.

Wraps structlog so every learning component logs dotted snake_case events
with key/value fields, e.g. ``transfer.promoted pattern_key=tool::grep``.
Session correlation fields (session_id, run_id) are attached automatically
inside a ``with_context()`` block.

Example usage:
    from hindsight.core.logging import SessionContext, configure_logging, get_logger, with_context

    configure_logging(level="DEBUG", format="console")
    logger = get_logger("tool_learner")

    with with_context(SessionContext(session_id="sess-42")):
        logger.info("tool_learner.usage_recorded", tool="grep")
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from hindsight.utils.time import utc_now

if TYPE_CHECKING:
    from hindsight.core.config import LogConfig

# Field name fragments whose values are never written to a log
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
})

REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class SessionContext:
    """Correlation identifiers merged into every log entry of a scope.

    Attributes:
        session_id: Assistant session the learning work belongs to.
        run_id: Unique id of one learning pass (init, shutdown or cycle).
        component: Component doing the work, if narrower than the logger's.
    """

    session_id: str | None = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    component: str | None = None

    def with_component(self, component: str) -> SessionContext:
        """Return a copy of this context scoped to another component."""
        return replace(self, component=component)

    def to_dict(self) -> dict[str, Any]:
        """Context fields for logging, without the unset ones."""
        result: dict[str, Any] = {"run_id": self.run_id}
        if self.session_id is not None:
            result["session_id"] = self.session_id
        if self.component is not None:
            result["component"] = self.component
        return result


_current_context: ContextVar[SessionContext | None] = ContextVar(
    "hindsight_context", default=None
)


def get_current_context() -> SessionContext | None:
    """Return the active SessionContext, if any."""
    return _current_context.get()


@contextmanager
def with_context(ctx: SessionContext) -> Iterator[SessionContext]:
    """Make ``ctx`` the active SessionContext for the duration of a block.

    Args:
        ctx: Context whose fields should decorate log entries.

    Yields:
        The context that was activated.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _redact(key: str, value: Any) -> Any:
    key_lower = key.lower()
    if any(pattern in key_lower for pattern in SENSITIVE_PATTERNS):
        return REDACTED
    return value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that redacts sensitive fields, one level deep."""
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _redact(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _redact(key, value)
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = utc_now().isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Structlog processor that merges the active SessionContext.

    Explicitly bound fields take precedence over context fields.
    """
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class HindsightLogger:
    """Component logger over structlog.

    The underlying structlog logger is fetched on every call, so loggers
    created at import time still follow a later ``configure_logging()``.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    @property
    def component(self) -> str:
        return self._component

    def bind(self, **context: Any) -> HindsightLogger:
        """Return a new logger with extra bound fields."""
        bound = HindsightLogger(self._component)
        bound._context = {**self._context, **context}
        return bound

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log an error with the active exception's traceback.

        Must be called from inside an ``except`` block.
        """
        self._get_logger().exception(event, **kw)


def _build_processors(
    renderer: Processor,
    include_timestamps: bool,
    include_context: bool,
) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
    ]
    if include_context:
        processors.append(_add_context)
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console", "both"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 10,
    backup_count: int = 3,
    include_timestamps: bool = True,
    include_context: bool = True,
) -> None:
    """Configure structured logging for the learning core.

    Hosts call this once at startup; library code only ever calls
    ``get_logger()``.

    Args:
        level: Minimum level to emit.
        format: "console" for human-readable stderr output, "json" for JSON
            lines (to ``file_path`` if given, else stdout), "both" for
            console on stderr plus JSON to ``file_path``.
        file_path: Log file, rotated at ``max_file_size_mb``.
        max_file_size_mb: Size at which the log file rotates.
        backup_count: Rotated files to keep.
        include_timestamps: Add an ISO-8601 UTC timestamp to each entry.
        include_context: Merge the active SessionContext into each entry.

    Raises:
        ValueError: If format is "both" and no file_path is given.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    log_level = getattr(logging, level)
    handlers: list[logging.Handler] = []

    if format in ("console", "both"):
        handlers.append(logging.StreamHandler(sys.stderr))

    if format in ("json", "both"):
        if file_path is not None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                RotatingFileHandler(
                    file_path,
                    maxBytes=max_file_size_mb * 1024 * 1024,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
            )
        else:
            handlers.append(logging.StreamHandler(sys.stdout))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=_build_processors(renderer, include_timestamps, include_context),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def configure_from_config(config: LogConfig) -> None:
    """Apply a LogConfig section."""
    configure_logging(
        level=config.level,
        format=config.format,
        file_path=config.file_path,
        max_file_size_mb=config.max_file_size_mb,
        backup_count=config.backup_count,
        include_timestamps=config.include_timestamps,
        include_context=config.include_context,
    )


def get_logger(component: str, **initial_context: Any) -> HindsightLogger:
    """Return a logger bound to ``component``.

    Args:
        component: Component name, e.g. "grpo" or "knowledge_transfer".
        **initial_context: Extra fields bound to every entry.
    """
    return HindsightLogger(component, **initial_context)


__all__ = [
    "HindsightLogger",
    "SENSITIVE_PATTERNS",
    "SessionContext",
    "configure_from_config",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "with_context",
]
