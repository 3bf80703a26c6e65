"""
Structured logging for worker and reaper processes.

Queue modules log through plain ``logging.getLogger(__name__)`` loggers and
attach job fields with ``extra=``. setup_logging() routes those records
through structlog so each line carries the fields as keys, together with:

- ``component``: queue, reaper, worker, handlers or db
- ``job_id``/``queue``/``kind``/``attempt`` of the job being executed,
  bound by job_log_context() around a handler run
- ``trace_id``/``span_id`` of the active queue span
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import IO, Any

import structlog
from opentelemetry import trace

from jobqueue.config import Settings, get_settings

LOG_FORMATS = ("json", "console")

# Libraries that log every statement or connection at INFO
_QUIET_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncpg")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach ids of the current span, if one is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def add_component(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Name the queue component a record came from.

    jobqueue.worker.main -> worker, jobqueue.db.connection -> db. Records
    from other packages are left alone.
    """
    record = event_dict.get("_record")
    name = record.name if record is not None else ""
    parts = name.split(".")
    if parts[0] == "jobqueue" and len(parts) > 1:
        event_dict.setdefault("component", parts[1])
    return event_dict


def drop_none_fields(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Remove extra fields that were passed as None (e.g. queue of an unknown job)."""
    return {key: value for key, value in event_dict.items() if value is not None}


def configure_logging(
    level: str = "INFO",
    log_format: str = "json",
    stream: IO[str] | None = None,
) -> None:
    """
    Install the structlog formatter on the root logger.

    Args:
        level: Level name; unknown names mean INFO.
        log_format: "json" for one JSON object per line, "console" for
            coloured human-readable output.
        stream: Output stream. Defaults to stdout.
    """
    if log_format not in LOG_FORMATS:
        raise ValueError(f"log_format must be one of {LOG_FORMATS}, got {log_format!r}")

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.ExtraAdder(),
        add_component,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        drop_none_fields,
    ]

    if log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.getLevelNamesMapping().get(level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(settings: Settings | None = None) -> None:
    """Configure logging from LOG_LEVEL and LOG_FORMAT."""
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)


def bind_context(**kwargs: Any) -> None:
    """Bind fields to every later record in this context (e.g. worker_id)."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def job_log_context(job_id: int, queue: str, kind: str, attempt: int) -> Iterator[None]:
    """
    Tag every record logged while a job runs, including handler logs.

    The fields are removed again on exit, so the worker's idle polling is
    not attributed to the last job.
    """
    with structlog.contextvars.bound_contextvars(
        job_id=job_id,
        queue=queue,
        kind=kind,
        attempt=attempt,
    ):
        yield
