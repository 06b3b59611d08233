"""
docgen-orchestrator - structured logging

File: src/docgen_orchestrator/observability/logging.py
Last updated: 2026-10-19

Purpose
- One JSON-lines sink per generation run, fed through a bounded queue so backend
  calls never block on disk I/O.

What should be included in this file
- ``setup_structured_logging`` / ``setup_logging`` and the matching shutdown.
- Request correlation (``request_id``, ``document_id``, ``backend``) bound through
  ``correlation_scope`` and copied onto every record.
- structlog configured to hand its events to the same stdlib logger tree.

Functional requirements
- Secrets are redacted before a line is written.
- Prompt, context and reply payloads are never written, even when redaction is off.
- A full queue drops records and counts them instead of blocking the caller.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

from docgen_orchestrator.security.redaction import REDACTED_VALUE, redact_structure

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

ROOT_LOGGER_NAME: Final[str] = "docgen_orchestrator"
RUN_LOG_FILENAME: Final[str] = "orchestrator.jsonl"

# Promoted to top-level keys of each JSON line instead of nesting under "fields".
_CORRELATION_FIELDS: Final[frozenset[str]] = frozenset(
    {"run_id", "request_id", "document_id", "backend"}
)

# Payload-bearing keys: masked wholesale, whatever the redaction setting.
_PAYLOAD_KEY_MARKERS: Final[tuple[str, ...]] = (
    "messages",
    "prompt_text",
    "context_text",
    "response_text",
)

_BUILTIN_RECORD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.makeLogRecord({}))
) | {"message", "asctime", "taskName", "correlation"}

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "docgen_correlation", default=()
)


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings for one run's log sink."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = ROOT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = RUN_LOG_FILENAME
    log_to_stdout: bool = False
    redactor: LogRedactor | None = None


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Stamps correlation on the producing task, then enqueues without blocking."""

    def __init__(self, log_queue: queue.Queue[object]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread runs outside the caller's context.
        bound = get_correlation_context()
        if bound:
            record.correlation = bound
        prepared: logging.LogRecord = super().prepare(record)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class _JsonLinesFormatter(logging.Formatter):
    def __init__(self, redactor: LogRedactor, run_id: str) -> None:
        super().__init__()
        self._redactor = redactor
        self._run_id = run_id

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, JSONValue] = {
            "timestamp": _utc_timestamp(record.created),
            "level": record.levelname,
            "logger": record.name,
            "message": _as_text(self._redactor(record.getMessage())),
        }
        line.update(sorted(_correlation_for(record, self._run_id).items()))

        extras = {
            name: _to_json_safe(value)
            for name, value in vars(record).items()
            if name not in _BUILTIN_RECORD_ATTRS
            and name not in _CORRELATION_FIELDS
            and not name.startswith("_")
        }
        if extras:
            line["fields"] = self._redactor(extras)
        if record.exc_info:
            line["exception"] = _as_text(self._redactor(self.formatException(record.exc_info)))
        return json.dumps(line, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


@dataclass(eq=False, slots=True)
class StructuredLoggingHandle:
    """Live sink for one run; ``shutdown`` drains the queue and closes files."""

    logger: logging.Logger
    run_id: str
    log_path: Path
    _queue: queue.Queue[object]
    _queue_handler: _CorrelatingQueueHandler
    _sinks: tuple[logging.Handler, ...]
    _listener: logging.handlers.QueueListener
    _closed: bool = False
    _close_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        give_up_at = time.monotonic() + max(0.0, timeout_seconds)
        while self._queue.unfinished_tasks and time.monotonic() < give_up_at:
            time.sleep(0.005)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            # stop() drains whatever is still queued before joining the thread.
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


class _ActiveHandle:
    """Process-wide slot for the current handle; installing a new one closes the old."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: StructuredLoggingHandle | None = None
        self._atexit_hooked = False

    def get(self) -> StructuredLoggingHandle | None:
        with self._lock:
            return self._handle

    def install(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            self._handle = handle
            if not self._atexit_hooked:
                atexit.register(shutdown_logging)
                self._atexit_hooked = True

    def take(self) -> StructuredLoggingHandle | None:
        with self._lock:
            handle, self._handle = self._handle, None
            return handle

    def clear(self, handle: StructuredLoggingHandle) -> None:
        with self._lock:
            if self._handle is handle:
                self._handle = None


_active = _ActiveHandle()


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Open ``<base_log_dir>/<run_id>/<log_filename>`` and route ``logger_name`` into it."""

    previous = _active.take()
    if previous is not None:
        previous.shutdown()

    run_id = _required_text(config.run_id, "run_id")
    logger_name = _required_text(config.logger_name, "logger_name")
    filename = _required_text(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must be a bare file name")
    if config.queue_size < 1:
        raise ValueError("queue_size must be > 0")
    level = _resolve_level(config.level)

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = _JsonLinesFormatter(config.redactor or default_log_redactor, run_id)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for stale in tuple(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[object] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _CorrelatingQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    logger.addHandler(queue_handler)
    listener.start()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        _queue=log_queue,
        _queue_handler=queue_handler,
        _sinks=tuple(sinks),
        _listener=listener,
    )
    _active.install(handle)
    return handle


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = ROOT_LOGGER_NAME,
) -> logging.Logger:
    """Configure logging from an ``[observability]`` section and return the logger.

    ``log_dir`` overrides the section's ``log_dir``; ``redact_secrets = false``
    keeps values readable but still masks prompt and context payloads.
    """

    section = observability_config or {}
    level = section.get("log_level", "INFO")
    base_dir = log_dir if log_dir is not None else section.get("log_dir", "logs")
    redact = section.get("redact_secrets", True) is not False

    handle = setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_dir if isinstance(base_dir, (str, Path)) else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=section.get("log_to_stdout", False) is True,
            redactor=None if redact else _mask_payloads_only,
        )
    )
    return handle.logger


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    target = handle if handle is not None else _active.get()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    _active.clear(target)


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    return _active.get()


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


def set_correlation_fields(
    **fields: str | None,
) -> contextvars.Token[tuple[tuple[str, str], ...]]:
    """Bind (or with ``None``, unbind) correlation fields; returns a reset token."""

    bound = get_correlation_context()
    for name, value in fields.items():
        if value is None:
            bound.pop(name, None)
        else:
            bound[name] = _required_text(value, f"correlation field {name!r}")
    return _correlation.set(tuple(bound.items()))


def reset_correlation_fields(token: contextvars.Token[tuple[tuple[str, str], ...]]) -> None:
    _correlation.reset(token)


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    token = set_correlation_fields(**fields)
    try:
        yield
    finally:
        reset_correlation_fields(token)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask payload keys, then secret-looking keys and token patterns."""

    masked = redact_structure(_mask_payloads_only(value))
    return masked  # type: ignore[return-value]


def _mask_payloads_only(value: JSONValue) -> JSONValue:
    value = _to_json_safe(value)
    if isinstance(value, dict):
        return {
            key: REDACTED_VALUE
            if any(marker in key.lower() for marker in _PAYLOAD_KEY_MARKERS)
            else _mask_payloads_only(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_mask_payloads_only(item) for item in value]
    return value


def _correlation_for(record: logging.LogRecord, run_id: str) -> dict[str, str]:
    merged = {"run_id": run_id}
    for name in _CORRELATION_FIELDS:
        value = getattr(record, name, None)
        if isinstance(value, str) and value.strip():
            merged[name] = value.strip()
    bound = getattr(record, "correlation", None)
    if isinstance(bound, Mapping):
        merged.update(
            (str(name), value) for name, value in bound.items() if isinstance(value, str)
        )
    return merged


def _to_json_safe(value: object) -> JSONValue:
    if isinstance(value, (str, bool, int)) or value is None:
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, Mapping):
        return {str(key): _to_json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json_safe(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json_safe(item) for item in value), key=repr)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return _utc_timestamp(aware.timestamp())
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Path):
        return value.as_posix()
    return repr(value)


def _as_text(value: JSONValue) -> str:
    if isinstance(value, str):
        return value
    return "" if value is None else json.dumps(value, sort_keys=True, ensure_ascii=False)


def _utc_timestamp(epoch_seconds: float) -> str:
    stamp = datetime.fromtimestamp(epoch_seconds, tz=UTC).isoformat(timespec="milliseconds")
    return stamp.removesuffix("+00:00") + "Z"


def _required_text(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _resolve_level(level: int | str) -> int:
    if isinstance(level, bool):
        raise ValueError("log level must be a name or a number")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {level!r}")
    return resolved


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "ROOT_LOGGER_NAME",
    "RUN_LOG_FILENAME",
    "StructuredLoggingHandle",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "reset_correlation_fields",
    "set_correlation_fields",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
