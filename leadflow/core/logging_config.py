"""
Logging setup for Leadflow

One line per event, JSON in workers and production, plain text locally.
Lines emitted while a run is stepping are stamped with the run, workflow and
lead they belong to; lines emitted while serving an HTTP request carry the
request id. Both come from context variables, so they follow the code across
awaits without being passed around.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

# Context fields stamped on every record, in output order
CONTEXT_FIELDS = ("request_id", "run_id", "workflow_id", "lead_id")

_context_vars: Dict[str, ContextVar] = {
    name: ContextVar(name, default=None) for name in CONTEXT_FIELDS
}

# Libraries that log every query / connection at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "httpcore", "celery.worker.strategy")

_STANDARD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class RunContextFilter(logging.Filter):
    """Copies the current run / request context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, _context_vars[name].get())
        return True


def _context_of(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """
    {"timestamp", "level", "logger", "message", "run_id", ..., "extra": {...}}

    Fields passed with `extra={...}` that are not context fields are grouped
    under "extra".
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.utcfromtimestamp(record.created).isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(_context_of(record))

        extra = {
            key: value for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and key not in CONTEXT_FIELDS
        }
        if extra:
            entry["extra"] = extra

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=True, default=str)


class StandardFormatter(logging.Formatter):
    """[2026-01-15 12:00:00] INFO     leadflow.core.engine: message [run_id=7 lead_id=lead_1]"""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.utcfromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{timestamp}] {record.levelname:8s} {record.name}: {record.getMessage()}"

        context = _context_of(record)
        if context:
            line += " [" + " ".join(f"{key}={value}" for key, value in context.items()) + "]"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    json_logs: bool = False,
    log_file: Optional[str] = None
) -> None:
    """
    Configure the root logger. Safe to call more than once (handlers are replaced).

    Environment variables win over the arguments:
        LOG_LEVEL     DEBUG / INFO / WARNING / ERROR
        JSON_LOGS     "true" for JSON lines
        LOG_FILE      also write to this file
        LOG_LEVEL_SQL level for SQLAlchemy/httpx/celery chatter (default WARNING)
    """
    level = os.getenv("LOG_LEVEL", level).upper()
    json_logs = os.getenv("JSON_LOGS", str(json_logs)).lower() == "true"
    log_file = os.getenv("LOG_FILE", log_file)
    numeric_level = getattr(logging, level, logging.INFO)

    formatter = JSONFormatter() if json_logs else StandardFormatter()
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler.addFilter(RunContextFilter())
        root.addHandler(handler)

    library_level = getattr(logging, os.getenv("LOG_LEVEL_SQL", "WARNING").upper(), logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logging.getLogger(__name__).debug(
        f"Logging configured: level={level}, json={json_logs}, file={log_file or '-'}"
    )


@contextmanager
def run_context(
    run_id: Optional[int],
    workflow_id: Optional[int] = None,
    lead_id: Optional[str] = None,
) -> Iterator[None]:
    """
    Stamp run_id / workflow_id / lead_id on every line logged inside the block.

    Usage:
        with run_context(run.id, run.workflow_id, run.lead_id):
            await self._drive(...)
    """
    values = {"run_id": run_id, "workflow_id": workflow_id, "lead_id": lead_id}
    tokens = {name: _context_vars[name].set(value) for name, value in values.items()}
    try:
        yield
    finally:
        for name, token in tokens.items():
            _context_vars[name].reset(token)


def get_run_id() -> Optional[int]:
    return _context_vars["run_id"].get()


def set_request_id(request_id: str) -> None:
    """Called by the API middleware at the start of each request."""
    _context_vars["request_id"].set(request_id)


def clear_request_id() -> None:
    _context_vars["request_id"].set(None)
