"""
Logging setup for relayci.

Modules log through `logging.getLogger(__name__)`. The scheduler wraps every
job in `log_context(run_id=..., job_id=...)`, and both formatters pick those
fields up from thread-local storage:

    with log_context(run_id="3f2a9c", job_id="test[os=linux]"):
        logger.info("step 'pytest' done")
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Union


@dataclass(frozen=True)
class LogContext:
    run_id: Optional[str] = None
    job_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


_local = threading.local()


def _stack() -> list:
    if not hasattr(_local, "stack"):
        _local.stack = []
    return _local.stack


def current_context() -> LogContext:
    stack = _stack()
    return stack[-1] if stack else LogContext()


@contextmanager
def log_context(**kwargs: Optional[str]) -> Iterator[LogContext]:
    """Push run/job fields for log records emitted on this thread."""
    parent = current_context()
    ctx = LogContext(
        run_id=kwargs.get("run_id", parent.run_id),
        job_id=kwargs.get("job_id", parent.job_id),
    )
    stack = _stack()
    stack.append(ctx)
    try:
        yield ctx
    finally:
        stack.pop()


def _timestamp() -> datetime:
    return datetime.now(timezone.utc)


class JsonFormatter(logging.Formatter):
    """One JSON object per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        data: Dict[str, Any] = {
            "timestamp": _timestamp().isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        ctx = current_context().to_dict()
        if ctx:
            data["context"] = ctx
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


class HumanFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = _timestamp().strftime("%Y-%m-%d %H:%M:%S")
        ctx = current_context()
        parts = []
        if ctx.run_id:
            parts.append(f"run={ctx.run_id}")
        if ctx.job_id:
            parts.append(f"job={ctx.job_id}")
        where = f" [{', '.join(parts)}]" if parts else ""
        line = f"{ts} {record.levelname.ljust(8)} {record.name}{where}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: Union[str, int] = "WARNING", json_output: bool = False) -> None:
    """
    Install a single stderr handler on the `relayci` logger.

    stdout stays reserved for console output.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.WARNING)

    log = logging.getLogger("relayci")
    log.setLevel(level)
    for handler in log.handlers[:]:
        log.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if json_output else HumanFormatter())
    log.addHandler(handler)
    log.propagate = False


__all__ = [
    "LogContext",
    "JsonFormatter",
    "HumanFormatter",
    "configure_logging",
    "log_context",
    "current_context",
]
