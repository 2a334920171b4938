"""
structlog setup for the web process and the nudge worker.

Every record goes out as one JSON line: structlog renders the event dict,
the stdlib handlers only route it to stdout and, when LOG_FILE is set, to a
rotating file.
"""
import logging
import logging.config
import sys
import uuid
from typing import Any, Dict, Optional

import structlog

from everly.datetime_utils import utcnow

# Third-party loggers that drown the worker's own lines at INFO
QUIET_LOGGERS = ("apscheduler", "urllib3", "werkzeug")


def build_logging_config(log_level: str = "INFO", log_file: Optional[str] = None) -> Dict[str, Any]:
    """dictConfig for the stdlib side; handlers get already-rendered JSON."""
    handlers: Dict[str, Any] = {
        "stdout": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": "rendered",
            "stream": sys.stdout,
        }
    }
    if log_file:
        handlers["rotating_file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "rendered",
            "filename": log_file,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5,
        }

    loggers: Dict[str, Any] = {
        "": {"level": log_level, "handlers": list(handlers), "propagate": False},
        "everly": {"level": log_level, "handlers": list(handlers), "propagate": False},
    }
    for name in QUIET_LOGGERS:
        loggers[name] = {"level": "WARNING"}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"rendered": {"format": "%(message)s"}},
        "handlers": handlers,
        "loggers": loggers,
    }


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path. If None, logs to stdout only.
    """
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
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.config.dictConfig(build_logging_config(log_level, log_file))

    logger = structlog.get_logger("everly")
    logger.info("Logging configured", level=log_level, file=log_file)
    return logger


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class WorkerContext:
    """Context manager for a single worker run with a correlation ID."""

    def __init__(self, worker_id: Optional[str] = None, batch_size: Optional[int] = None):
        self.worker_id = worker_id or str(uuid.uuid4())
        self.run_id = self.worker_id[:8]
        self.batch_size = batch_size
        self.logger = get_logger("everly.nudges.worker")
        self.start_time = None

    def __enter__(self):
        self.start_time = utcnow()
        self.logger.info(
            "Worker run started",
            worker_id=self.worker_id,
            run_id=self.run_id,
            batch_size=self.batch_size,
            start_time=self.start_time.isoformat()
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = (utcnow() - self.start_time).total_seconds()

        if exc_type is None:
            self.logger.info(
                "Worker run completed",
                worker_id=self.worker_id,
                run_id=self.run_id,
                duration_seconds=duration,
                status="success"
            )
        else:
            self.logger.error(
                "Worker run failed",
                worker_id=self.worker_id,
                run_id=self.run_id,
                duration_seconds=duration,
                status="error",
                error_type=exc_type.__name__,
                error_message=str(exc_val)
            )

        return False  # Don't suppress exceptions
