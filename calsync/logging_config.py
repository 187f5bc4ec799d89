import logging
import logging.config
import structlog
from datetime import datetime
import uuid
from typing import Optional
import sys


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional log file path. If None, logs to stdout only.
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "detailed": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            },
            "json": {
                "()": "structlog.stdlib.ProcessorFormatter",
                "processor": structlog.processors.JSONRenderer()
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": "detailed",
                "stream": sys.stdout
            }
        },
        "loggers": {
            "": {  # Root logger
                "level": log_level,
                "handlers": ["console"],
                "propagate": False
            },
            "calsync": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False
            },
            # APScheduler logs every job run at INFO
            "apscheduler": {
                "level": "WARNING",
                "handlers": ["console"],
                "propagate": False
            }
        }
    }

    if log_file:
        log_config["handlers"]["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "json",
            "filename": log_file,
            "maxBytes": 10485760,  # 10MB
            "backupCount": 5
        }
        log_config["loggers"][""]["handlers"].append("file")
        log_config["loggers"]["calsync"]["handlers"].append("file")

    logging.config.dictConfig(log_config)

    logger = structlog.get_logger("calsync")
    logger.info("Logging configured", level=log_level, file=log_file)

    return logger


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class OutboxCycleContext:
    """
    Context manager for one worker polling cycle with a correlation ID.

    The cycle id and worker name are bound into structlog's contextvars, so
    every log line emitted during the cycle carries them.
    """

    def __init__(self, worker_name: str, cycle_id: Optional[str] = None):
        self.worker_name = worker_name
        self.cycle_id = cycle_id or str(uuid.uuid4())[:8]
        self.logger = get_logger("calsync.worker")
        self.start_time = None

    def __enter__(self):
        self.start_time = datetime.now()
        structlog.contextvars.bind_contextvars(cycle_id=self.cycle_id, worker=self.worker_name)
        self.logger.debug(
            "Outbox cycle started",
            start_time=self.start_time.isoformat()
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = (datetime.now() - self.start_time).total_seconds()

        try:
            self._log_exit(exc_type, exc_val, duration)
        finally:
            structlog.contextvars.unbind_contextvars("cycle_id", "worker")

        return False  # Don't suppress exceptions

    def _log_exit(self, exc_type, exc_val, duration):
        if exc_type is None:
            self.logger.debug(
                "Outbox cycle completed",
                duration_seconds=duration,
                status="success"
            )
        else:
            self.logger.error(
                "Outbox cycle failed",
                duration_seconds=duration,
                status="error",
                error_type=exc_type.__name__,
                error_message=str(exc_val)
            )

