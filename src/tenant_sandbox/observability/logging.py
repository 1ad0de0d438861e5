"""Structured JSON-lines logging for the sandbox host.

Library modules log through ``logging.getLogger(__name__)``. Records propagate to the
``tenant_sandbox`` logger, whose only handler is a non-blocking queue; a listener thread
drains that queue into a JSON-lines file (and optionally stdout). Invocation metadata is
bound with :func:`correlation_scope` and stamped onto every record emitted inside it,
including records from tasks spawned within the scope.
"""

from __future__ import annotations

import atexit
import contextvars
import json
import logging
import logging.handlers
import math
import queue
import re
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from tenant_sandbox.config.loader import RuntimeSettings

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
PACKAGE_LOGGER: Final[str] = "tenant_sandbox"

_CORRELATION_FIELDS: Final[tuple[str, ...]] = (
    "run_id",
    "invocation_id",
    "tenant",
    "group_folder",
    "chat_jid",
)

# Substrings of a field name whose value is always masked.
_SECRET_KEY_HINTS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)

# Applied in order; bearer tokens go first so "Authorization: Bearer x" loses the token too.
_TEXT_RULES: Final[tuple[tuple[re.Pattern[str], str], ...]] = (
    (re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*"), f"Bearer {REDACTED}"),
    (
        re.compile(
            r"(?i)\b([A-Z0-9_]*(?:api[_-]?key|token|password|secret|authorization))\b"
            r"\s*([:=])\s*[^\s,;]+"
        ),
        rf"\1\2{REDACTED}",
    ),
    (re.compile(r"\bsk-ant-[A-Za-z0-9_-]{12,}\b"), REDACTED),
    (re.compile(r"\bsk-[A-Za-z0-9]{12,}\b"), REDACTED),
)

_RECORD_ATTRS: Final[frozenset[str]] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
    "correlation",
}

_correlation: contextvars.ContextVar[tuple[tuple[str, str], ...]] = contextvars.ContextVar(
    "tenant_sandbox_correlation", default=()
)

_active_lock = threading.Lock()
_active: LoggingHandle | None = None
_atexit_hooked = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Where and how one host process writes its structured log."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = PACKAGE_LOGGER
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = "sandbox.jsonl"
    log_to_stdout: bool = True
    rotate_bytes: int | None = None
    rotate_backups: int = 5
    redactor: LogRedactor | None = None


def setup_logging(settings: RuntimeSettings, *, run_id: str) -> LoggingHandle:
    """Configure the package logger from resolved runtime settings."""

    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=settings.log_dir,
            level=settings.log_level,
            log_to_stdout=settings.log_to_stdout,
            rotate_bytes=10_000_000,
            redactor=None if settings.redact_secrets else _passthrough,
        )
    )


def redact_text(text: str) -> str:
    """Mask secret-looking assignments, bearer tokens, and API keys inside free text."""
    for pattern, replacement in _TEXT_RULES:
        text = pattern.sub(replacement, text)
    return text


def redact_fields(value: JSONValue, *, key: str | None = None) -> JSONValue:
    """Deep redaction: secret-named keys are masked wholesale, strings are scrubbed."""
    if key is not None and any(hint in key.lower() for hint in _SECRET_KEY_HINTS):
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, list):
        return [redact_fields(item) for item in value]
    if isinstance(value, dict):
        return {name: redact_fields(item, key=name) for name, item in value.items()}
    return value


class _CorrelatingQueueHandler(logging.handlers.QueueHandler):
    """Queue handler that snapshots correlation on the emitting thread and never blocks."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._drop_lock = threading.Lock()
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        bound = get_correlation_context()
        if bound:
            record.correlation = bound
        prepared: logging.LogRecord = super().prepare(record)
        return prepared

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._drop_lock:
                self.dropped += 1


class _JsonLineFormatter(logging.Formatter):
    def __init__(self, *, run_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._run_id = run_id
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": _utc_iso(datetime.fromtimestamp(record.created, tz=UTC), "milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._scrub(record.getMessage()),
        }
        event.update(sorted(self._correlation_for(record).items()))

        extras = {
            name: value
            for name, value in vars(record).items()
            if name not in _RECORD_ATTRS
            and name not in _CORRELATION_FIELDS
            and not name.startswith("_")
        }
        if extras:
            event["fields"] = self._redactor(_to_json(extras))
        if record.exc_info:
            event["exception"] = self._scrub(self.formatException(record.exc_info))
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _scrub(self, text: str) -> str:
        cleaned = self._redactor(text)
        if isinstance(cleaned, str):
            return cleaned
        return json.dumps(cleaned, sort_keys=True, ensure_ascii=False)

    def _correlation_for(self, record: logging.LogRecord) -> dict[str, str]:
        merged = {"run_id": self._run_id}
        bound = getattr(record, "correlation", None)
        if isinstance(bound, Mapping):
            merged.update(
                (str(name), value) for name, value in bound.items() if isinstance(value, str)
            )
        # Explicit extra= fields win over the ambient scope.
        for name in _CORRELATION_FIELDS:
            value = getattr(record, name, None)
            if isinstance(value, str) and value.strip():
                merged[name] = value.strip()
        return merged


class LoggingHandle:
    """An active logging setup: the queue, its listener thread, and the sinks it feeds."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        queue_handler: _CorrelatingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._close_lock = threading.Lock()
        self.closed = False

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        pending = self._queue_handler.queue
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while pending.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def close(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self.closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self.closed = True


def setup_structured_logging(config: LoggingConfig) -> LoggingHandle:
    """Route ``config.logger_name`` through a queue into ``<base>/<run_id>/<log_filename>``."""
    global _active, _atexit_hooked

    shutdown_logging()

    run_id = _non_empty(config.run_id, "run_id")
    log_filename = _non_empty(config.log_filename, "log_filename")
    if Path(log_filename).name != log_filename:
        raise ValueError("log_filename must be a bare file name")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level(config.level)

    log_dir = Path(config.base_log_dir) / run_id
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / log_filename

    redactor = redact_fields if config.redactor is None else _normalizing(config.redactor)
    formatter = _JsonLineFormatter(run_id=run_id, redactor=redactor)

    sinks: list[logging.Handler] = []
    if config.rotate_bytes:
        sinks.append(
            logging.handlers.RotatingFileHandler(
                log_path,
                maxBytes=config.rotate_bytes,
                backupCount=max(1, config.rotate_backups),
                encoding="utf-8",
            )
        )
    else:
        sinks.append(logging.FileHandler(log_path, encoding="utf-8"))
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(_non_empty(config.logger_name, "logger_name"))
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    queue_handler = _CorrelatingQueueHandler(queue.Queue(maxsize=config.queue_size))
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)

    handle = LoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _active_lock:
        _active = handle
        if not _atexit_hooked:
            atexit.register(shutdown_logging)
            _atexit_hooked = True
    return handle


def get_active_logging_handle() -> LoggingHandle | None:
    with _active_lock:
        return _active


def flush_logging(handle: LoggingHandle | None = None, *, timeout_seconds: float = 2.0) -> None:
    target = handle or get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(handle: LoggingHandle | None = None, *, timeout_seconds: float = 2.0) -> None:
    """Stop the listener and close every sink; a no-op when nothing is active."""
    global _active

    target = handle or get_active_logging_handle()
    if target is None:
        return
    target.close(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def get_correlation_context() -> dict[str, str]:
    return dict(_correlation.get())


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for records logged in this context; ``None`` unbinds a field."""
    bound = get_correlation_context()
    for name, value in fields.items():
        if value is None:
            bound.pop(name, None)
        else:
            bound[_non_empty(name, "correlation field")] = _non_empty(value, name)
    token = _correlation.set(tuple(bound.items()))
    try:
        yield
    finally:
        _correlation.reset(token)


def _non_empty(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{label} must be a non-empty string")
    return value.strip()


def _level(value: int | str) -> int:
    if isinstance(value, int):
        return value
    resolved = logging.getLevelName(value.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return resolved


def _utc_iso(moment: datetime, timespec: str) -> str:
    return moment.isoformat(timespec=timespec).replace("+00:00", "Z")


def _to_json(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else repr(value)
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return _utc_iso(aware.astimezone(UTC), "microseconds")
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(name): _to_json(item) for name, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_to_json(item) for item in value), key=repr)
    return repr(value)


def _normalizing(redactor: LogRedactor) -> LogRedactor:
    return lambda value: _to_json(redactor(value))


def _passthrough(value: JSONValue) -> JSONValue:
    return value


__all__ = [
    "JSONScalar",
    "JSONValue",
    "LogRedactor",
    "LoggingConfig",
    "LoggingHandle",
    "REDACTED",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "redact_fields",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
