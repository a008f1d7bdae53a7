import contextvars
import json
import logging
import logging.config
import os
from datetime import datetime, timezone
from typing import Optional

import yaml

from . import config as app_config

# Context variables carried into every log line
trace_id_var = contextvars.ContextVar('trace_id', default=None)
job_id_var = contextvars.ContextVar('job_id', default=None)

_RESERVED = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename', 'module',
    'lineno', 'funcName', 'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'taskName', 'getMessage', 'exc_info', 'exc_text',
    'stack_info', 'component', 'job_id', 'trace_id', 'message',
}


def get_trace_id() -> Optional[str]:
    """Get the current trace ID from context"""
    return trace_id_var.get()


def get_job_id() -> Optional[str]:
    """Get the job the current task is working for"""
    return job_id_var.get()


class JsonFormatter(logging.Formatter):
    """JSON formatter with structured fields"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "trace_id": getattr(record, 'trace_id', None) or get_trace_id(),
            "job_id": getattr(record, 'job_id', None) or get_job_id(),
            "component": getattr(record, 'component', 'api'),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def _default_config(log_level: str, log_format: str) -> dict:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JsonFormatter},
            "text": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": log_level,
                "formatter": log_format,
                "stream": "ext://sys.stdout",
            },
        },
        "loggers": {
            "jobengine": {"level": log_level, "handlers": ["console"], "propagate": False},
            "uvicorn": {"level": log_level, "handlers": ["console"], "propagate": False},
            "uvicorn.error": {"level": log_level, "handlers": ["console"], "propagate": False},
            "uvicorn.access": {"level": log_level, "handlers": ["console"], "propagate": False},
        },
        "root": {"level": log_level, "handlers": ["console"]},
    }


def setup_logging(path: str = "LOGGING.yaml"):
    """Setup logging configuration from YAML file or environment"""
    log_format = os.getenv("LOG_FORMAT", app_config.LOG_FORMAT)
    if log_format not in ("json", "text"):
        log_format = "text"
    log_level = os.getenv("LOG_LEVEL", app_config.LOG_LEVEL).upper()

    config = None
    if os.path.exists(path):
        try:
            with open(path, 'r') as f:
                config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logging.getLogger("jobengine").warning(f"Could not load {path}: {e}")

    if not config:
        config = _default_config(log_level, log_format)
    else:
        # only an explicitly set LOG_FORMAT / LOG_LEVEL wins over the file
        if os.getenv("LOG_FORMAT"):
            for handler in config.get("handlers", {}).values():
                if "formatter" in handler:
                    handler["formatter"] = log_format
        if os.getenv("LOG_LEVEL"):
            for logger in config.get("loggers", {}).values():
                logger["level"] = log_level
            if "root" in config:
                config["root"]["level"] = log_level

    logging.config.dictConfig(config)
    return config
