"""structlog configuration and task-scoped logging context.

Provides session ID generation, a task-level logging context manager,
and structured log configuration for console and JSON output with
optional file logging.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

    from video_digest.config import LoggingSettings
    from video_digest.models import VideoIdentity


def generate_session_id() -> str:
    """Return a fresh UUID4 string identifying one CLI invocation."""
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# structlog configuration
# ---------------------------------------------------------------------------


_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_FORMATS = {"console", "json"}

# httpx and httpcore log every request at INFO; they would interleave with
# the streamed narrative on the console.
_HTTP_LOGGERS = ("httpx", "httpcore")

_SHARED_PROCESSORS: tuple[structlog.types.Processor, ...] = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
)


def _resolve_level(level: str) -> int:
    level_upper = level.upper()
    if level_upper not in _VALID_LEVELS:
        msg = f"Invalid log level: {level!r}. Must be one of {sorted(_VALID_LEVELS)}"
        raise ValueError(msg)
    return getattr(logging, level_upper)


def _build_renderer(fmt: str) -> structlog.types.Processor:
    if fmt not in _VALID_FORMATS:
        msg = f"Invalid log format: {fmt!r}. Must be one of {sorted(_VALID_FORMATS)}"
        raise ValueError(msg)
    if fmt == "json":
        # Subtitles and ad titles are mostly CJK text.
        return structlog.processors.JSONRenderer(ensure_ascii=False)
    return structlog.dev.ConsoleRenderer()


def _install_handlers(
    numeric_level: int,
    log_file: str | Path | None,
    formatter: logging.Formatter,
) -> None:
    """Replace the root handlers with stderr plus an optional file handler."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(str(log_file), encoding="utf-8"))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for old in root_logger.handlers:
        old.close()
    root_logger.handlers.clear()
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    http_level = max(numeric_level, logging.WARNING)
    if numeric_level <= logging.DEBUG:
        http_level = numeric_level
    for name in _HTTP_LOGGERS:
        logging.getLogger(name).setLevel(http_level)


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: str | Path | None = None,
    session_id: str | None = None,
) -> None:
    """Configure structlog for the application.

    Events are rendered by a stdlib ``ProcessorFormatter`` so that level
    filtering and the optional file handler apply to every module. The
    httpx transport loggers are held at WARNING unless ``level`` is DEBUG.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        fmt: ``"console"`` for human-readable or ``"json"`` for
            machine-parseable output.
        log_file: Optional file path for log output (in addition to stderr).
        session_id: Optional session ID to bind to all log entries.

    Raises:
        ValueError: If ``level`` or ``fmt`` is not recognized.
    """
    numeric_level = _resolve_level(level)
    renderer = _build_renderer(fmt)

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    _install_handlers(numeric_level, log_file, formatter)

    if session_id:
        structlog.contextvars.bind_contextvars(session_id=session_id)


def configure_from_settings(
    settings: LoggingSettings,
    *,
    verbose: bool = False,
    session_id: str | None = None,
) -> None:
    """Apply a :class:`~video_digest.config.LoggingSettings` block.

    ``verbose`` forces DEBUG regardless of the configured level.
    """
    configure_logging(
        level="DEBUG" if verbose else settings.level,
        fmt=settings.format,
        log_file=settings.file,
        session_id=session_id,
    )


# ---------------------------------------------------------------------------
# Task logging context manager
# ---------------------------------------------------------------------------


@contextmanager
def task_logging_context(
    task_id: str,
    identity: VideoIdentity,
    kind: str,
    **extra: Any,
) -> Iterator[structlog.stdlib.BoundLogger]:
    """Bind task-level metadata to structlog for the duration of a task.

    Logs task start and end, and binds the task ID, video key and task
    kind to every log entry emitted inside the context. Because the
    binding lives in contextvars, each asyncio task keeps its own copy.

    Args:
        task_id: Coordinator-assigned task identifier.
        identity: The video the task works on.
        kind: Task kind (e.g. ``"ai_summary"``).
        **extra: Additional key-value pairs to bind.

    Yields:
        A bound structlog logger with task context.

    Example::

        with task_logging_context(task.id, task.identity, "ai_summary") as log:
            log.info("requests_dispatched")
    """
    structlog.contextvars.bind_contextvars(
        task_id=task_id,
        video_key=identity.key,
        task_kind=kind,
        **extra,
    )

    log: structlog.stdlib.BoundLogger = structlog.get_logger("video_digest.task")
    log.info("task_start")

    try:
        yield log
    except Exception:
        log.warning("task_error", exc_info=True)
        raise
    finally:
        log.info("task_end")
        structlog.contextvars.unbind_contextvars(
            "task_id", "video_key", "task_kind", *extra.keys()
        )
