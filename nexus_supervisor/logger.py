"""
Structured logging for the worker supervisor.

Every module logs through ``get_logger(__name__)``. Output goes to stderr
(stdout may itself be a pipe owned by another supervisor) as JSON lines by
default or as colored console text, optionally mirrored to a rotating file:

    NEXUS_LOG_LEVEL    DEBUG | INFO | WARNING | ERROR   (default INFO)
    NEXUS_LOG_FORMAT   json | console                  (default json)
    NEXUS_LOG_FILE     path of an additional rotating log file

Event names for the worker lifecycle and command traffic are collected in
``LogEvent`` so they stay greppable across modules.
"""

import json
import logging
import os
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import structlog
from structlog.processors import CallsiteParameter

_CONFIGURED = False

# Worker lines can be up to the protocol limit (1 MiB); keep log records small
MAX_LOGGED_FIELD_LENGTH = 2000

SENSITIVE_KEY_PARTS = ("password", "api_key", "secret", "credential", "private_key", "auth_token")

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5


class LogEvent(str, Enum):
    """Event names emitted by the supervisor."""

    # Build step
    BUILD_STARTED = "build.started"
    BUILD_SUCCEEDED = "build.succeeded"
    BUILD_FAILED = "build.failed"

    # Worker process
    WORKER_SPAWNED = "worker.spawned"
    WORKER_READY = "worker.ready"
    WORKER_EXITED = "worker.exited"
    WORKER_CRASHED = "worker.crashed"
    WORKER_RESTARTED = "worker.restarted"
    WORKER_STDOUT = "worker.stdout"
    WORKER_STDERR = "worker.stderr"

    # Command traffic
    COMMAND_SENT = "command.sent"
    COMMAND_RESOLVED = "command.resolved"
    COMMAND_TIMEOUT = "command.timeout"
    COMMAND_FAILED = "command.failed"
    REPLY_UNMATCHED = "reply.unmatched"

    # Classified worker status
    TRADE_EXECUTED = "status.trade_executed"
    ARTIFACT_DEPLOYED = "status.artifact_deployed"
    STRATEGY_ACTIVATED = "status.strategy_activated"
    ENGINE_READY = "status.engine_ready"

    # Supervisor
    STATE_CHANGED = "supervisor.state_changed"
    SHUTDOWN_STARTED = "supervisor.shutdown_started"
    SHUTDOWN_ESCALATED = "supervisor.shutdown_escalated"
    SHUTDOWN_COMPLETE = "supervisor.shutdown_complete"
    METRICS_SYNCED = "supervisor.metrics_synced"


def add_process_info(logger, method_name, event_dict):
    """Tag entries with the host and the supervisor's own pid."""
    event_dict.setdefault("hostname", socket.gethostname())
    event_dict.setdefault("supervisor_pid", os.getpid())
    return event_dict


def add_environment(logger, method_name, event_dict):
    event_dict["environment"] = os.getenv("ENVIRONMENT", "dev")
    return event_dict


def censor_sensitive(logger, method_name, event_dict):
    """Redact credential-like fields. Correlation ``token`` fields are kept."""
    for key in list(event_dict):
        lowered = key.lower()
        if any(part in lowered for part in SENSITIVE_KEY_PARTS):
            event_dict[key] = "***REDACTED***"
    return event_dict


def truncate_long_fields(logger, method_name, event_dict):
    """Shorten oversized string fields such as raw worker output lines."""
    for key, value in event_dict.items():
        if isinstance(value, str) and len(value) > MAX_LOGGED_FIELD_LENGTH:
            dropped = len(value) - MAX_LOGGED_FIELD_LENGTH
            event_dict[key] = f"{value[:MAX_LOGGED_FIELD_LENGTH]}... [{dropped} chars truncated]"
    return event_dict


class StdlibJsonFormatter(logging.Formatter):
    """JSON formatter for records that did not come through structlog."""

    def format(self, record):
        message = record.getMessage()
        # structlog records arrive already rendered as JSON
        if message.startswith("{"):
            return message

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": message,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(
    level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """
    Configure stdlib handlers and structlog.

    Arguments left as None fall back to the NEXUS_LOG_* environment
    variables. Safe to call again (the CLI does so after loading its
    configuration); handlers are replaced, not duplicated.
    """
    global _CONFIGURED

    level_name = (level or os.getenv("NEXUS_LOG_LEVEL", "INFO")).upper()
    log_format = (log_format or os.getenv("NEXUS_LOG_FORMAT", "json")).lower()
    log_file = log_file or os.getenv("NEXUS_LOG_FILE")

    if log_format == "json":
        formatter: logging.Formatter = StdlibJsonFormatter()
    else:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s")

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_process_info,
            add_environment,
            censor_sensitive,
            truncate_long_fields,
            structlog.processors.CallsiteParameterAdder(
                parameters=[
                    CallsiteParameter.MODULE,
                    CallsiteParameter.FUNC_NAME,
                    CallsiteParameter.LINENO,
                ]
            ),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger, configuring logging from the environment on first use."""
    if not _CONFIGURED:
        configure_logging()
    return structlog.get_logger(name)


def log_system_event(
    logger: structlog.stdlib.BoundLogger, event: LogEvent, message: str, **kwargs
) -> None:
    """
    Log a lifecycle event under its standard name.

    Args:
        logger: Logger instance
        event: Event name
        message: Human readable description
        **kwargs: Additional context
    """
    logger.info(event.value, message=message, **kwargs)


def log_state_change(
    logger: structlog.stdlib.BoundLogger, old_state: str, new_state: str, **kwargs
) -> None:
    """Log a supervisor state machine transition."""
    logger.info(LogEvent.STATE_CHANGED.value, old_state=old_state, new_state=new_state, **kwargs)


__all__ = [
    "LogEvent",
    "configure_logging",
    "get_logger",
    "log_state_change",
    "log_system_event",
]
