"""
Logging for the market making bot.

Every interesting thing the bot does is logged through ``log_event`` as a
single JSON object (``{"event": ..., **fields}``). Handlers decide how that
object is shown: a rich console for operators, or flat JSON lines for files
and log shippers.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import queue
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from rich.logging import RichHandler

# Events that can fire on every block or every retry
NOISY_EVENTS = frozenset({"execution_skipped", "error_report_dropped", "stream_retry"})


def event_payload(record: logging.LogRecord) -> Optional[Dict[str, Any]]:
    """Decode a record written by ``log_event``; None for free-form messages."""
    cached = getattr(record, "_event_payload", None)
    if cached is not None:
        return cached
    try:
        data = json.loads(record.getMessage())
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or "event" not in data:
        return None
    record._event_payload = data
    return data


class JsonFormatter(logging.Formatter):
    """One flat JSON object per line; event fields sit next to the envelope."""

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
        }
        data = event_payload(record)
        if data is None:
            line["msg"] = record.getMessage()
        else:
            for field, value in data.items():
                line.setdefault(field, value)
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, separators=(",", ":"), default=str)


class BackgroundFileHandler(logging.handlers.QueueHandler):
    """
    Hands records to a listener thread that owns the file handler, so a slow
    disk never stalls the event loop. When the queue is full the record is
    dropped and counted.
    """

    def __init__(self, target: logging.Handler, capacity: int = 10_000):
        super().__init__(queue.Queue(maxsize=capacity))
        self.target = target
        self.dropped = 0
        self._listener = logging.handlers.QueueListener(self.queue, target, respect_handler_level=True)
        self._listener.start()
        atexit.register(self.close)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1

    def close(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
            self.target.close()
            if self.dropped:
                sys.stderr.write(f"[logging] {self.dropped} records dropped, log queue full\n")
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets one record per key through every ``cooldown_sec``. The key is the
    event name plus ``key_fields`` taken from the event, so a busy permit on
    timer wakes does not hide one on stream wakes.
    """

    def __init__(
        self,
        cooldown_sec: float = 30.0,
        events: Iterable[str] = NOISY_EVENTS,
        key_fields: Tuple[str, ...] = ("strategy", "wake"),
    ):
        super().__init__()
        self.cooldown_sec = cooldown_sec
        self.events = frozenset(events)
        self.key_fields = key_fields
        self._next_allowed: Dict[Tuple[Any, ...], float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        data = event_payload(record)
        if data is None or data["event"] not in self.events:
            return True
        key = (data["event"],) + tuple(data.get(f) for f in self.key_fields)
        now = time.monotonic()
        if now < self._next_allowed.get(key, float("-inf")):
            return False
        self._next_allowed[key] = now + self.cooldown_sec
        return True


def _console_handler(kind: str) -> logging.Handler:
    if kind == "json":
        handler: logging.Handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        return handler
    if kind != "rich":
        raise ValueError(f"unknown console kind: {kind!r}")
    handler = RichHandler(show_path=False, markup=False, rich_tracebacks=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def build_logger(
    name: str = "perpl_mm",
    level: int = logging.INFO,
    file_path: Optional[str] = None,
    console: str = "rich",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Configure ``name`` once and return it.

    A second call only adjusts the level, so modules can call this freely.
    ``file_path`` adds a JSON lines file, written off-thread when
    ``async_file`` is set. Throttling applies to the console only; the file
    keeps every record.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    stream = _console_handler(console)
    if throttle_warnings:
        stream.addFilter(ThrottledFilter())
    handlers = [stream]

    if file_path:
        to_file: logging.Handler = logging.FileHandler(file_path, encoding="utf-8")
        to_file.setFormatter(JsonFormatter())
        handlers.append(BackgroundFileHandler(to_file) if async_file else to_file)

    for handler in handlers:
        handler.setLevel(level)
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data: Any) -> None:
    """Log ``event`` with ``data`` as one JSON message; Decimals become strings."""
    if logger.isEnabledFor(level):
        logger.log(level, json.dumps({"event": event, **data}, default=str))
