"""
AppForge - Logging

Plain text in development, one JSON object per line in production. Every
record carries the request, project and run it belongs to, so the three
concurrent branches of a fan-out can be told apart in a shared log.
"""

import json
import logging
import sys
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from appforge.core.config import settings


request_id_var: ContextVar[str] = ContextVar('request_id', default='')
project_id_var: ContextVar[str] = ContextVar('project_id', default='')
run_id_var: ContextVar[str] = ContextVar('run_id', default='')

_CONTEXT_VARS = {
    'request_id': request_id_var,
    'project_id': project_id_var,
    'run_id': run_id_var,
}


def get_request_id() -> str:
    return request_id_var.get()


def set_request_id(request_id: str) -> None:
    request_id_var.set(request_id or '')


def get_project_id() -> str:
    return project_id_var.get()


def set_project_id(project_id: Optional[str]) -> None:
    project_id_var.set(str(project_id) if project_id else '')


def get_run_id() -> str:
    return run_id_var.get()


def set_run_id(run_id: Optional[str]) -> None:
    run_id_var.set(run_id or '')


def generate_request_id() -> str:
    return uuid.uuid4().hex[:8]


def current_context() -> Dict[str, str]:
    """Non-empty tracing ids of the current task"""
    return {name: var.get() for name, var in _CONTEXT_VARS.items() if var.get()}


# LogRecord attributes that are not user supplied `extra` fields
_RECORD_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime', *_CONTEXT_VARS}


class RunContextFilter(logging.Filter):
    """Stamps request/project/run ids onto every record ('-' when unset)"""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT_VARS.items():
            setattr(record, name, var.get() or '-')
        return True


class JSONFormatter(logging.Formatter):
    """Structured output for log aggregation"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(
            (name, getattr(record, name)) for name in _CONTEXT_VARS
            if getattr(record, name, '-') != '-'
        )

        if record.exc_info and record.exc_info[0]:
            exc_type, exc, tb = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": traceback.format_exception(exc_type, exc, tb),
            }

        entry.update(
            (key, value) for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and not key.startswith('_')
        )
        return json.dumps(entry, default=str)


class AppForgeLogger(logging.Logger):
    """Logger with helpers for the structured events of a generation"""

    def log_step(self, step_name: str, status: str, **fields) -> None:
        """A pipeline step boundary (provision, classify, fan-out, assemble...)"""
        self.info(
            f"Step {step_name}: {status}",
            extra={"event_type": "step", "step_name": step_name, "step_status": status, **fields},
        )

    def log_agent_event(self, agent_name: str, event: str, iteration: int = 0, **fields) -> None:
        suffix = f" (iteration {iteration})" if iteration else ""
        self.info(
            f"Agent {agent_name}: {event}{suffix}",
            extra={"event_type": "agent", "agent_name": agent_name, "agent_event": event,
                   "iteration": iteration, **fields},
        )

    def log_error_with_context(self, error: Exception, context: str, **fields) -> None:
        self.error(
            f"Error in {context}: {type(error).__name__}: {error}",
            exc_info=error,
            extra={"event_type": "error", "error_type": type(error).__name__,
                   "error_context": context, **fields},
        )


def _file_handler(formatter: logging.Formatter, backup_count: int) -> RotatingFileHandler:
    log_file = Path(settings.LOG_FILE)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=backup_count)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def setup_logging() -> AppForgeLogger:
    logging.setLoggerClass(AppForgeLogger)
    logger = logging.getLogger("appforge")
    logger.__class__ = AppForgeLogger
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    logger.handlers.clear()
    logger.filters.clear()
    logger.addFilter(RunContextFilter())

    json_logging = settings.ENVIRONMENT == "production"
    if json_logging:
        console_formatter = file_formatter = JSONFormatter()
        backup_count = 10
    else:
        console_formatter = logging.Formatter("%(levelname)-8s | %(message)s")
        file_formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | [%(project_id)s] [%(run_id)s] | "
            "%(funcName)s:%(lineno)d | %(message)s"
        )
        backup_count = 5

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if settings.LOG_FILE:
        logger.addHandler(_file_handler(file_formatter, backup_count))

    for noisy in ("httpx", "httpcore", "anthropic", "docker", "urllib3", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info(
        "Logging initialized",
        extra={"environment": settings.ENVIRONMENT, "log_level": settings.LOG_LEVEL,
               "json_logging": json_logging},
    )
    return logger


logger: AppForgeLogger = setup_logging()


__all__ = [
    'logger',
    'setup_logging',
    'current_context',
    'get_request_id',
    'set_request_id',
    'get_project_id',
    'set_project_id',
    'get_run_id',
    'set_run_id',
    'generate_request_id',
    'AppForgeLogger',
]
