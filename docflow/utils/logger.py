"""
Logging Utility Module

structlog over the standard library. Events are key/value pairs; while a
worker runs a job, ``job_log_context`` binds the queue name and job id so
every line the job body writes can be traced back to its job without
threading those fields through each call.
"""

import logging
import os
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog

from docflow.core.config import get_settings

LOG_FILE_NAME = "docflow.log"


def _add_process(logger: Any, method_name: str, event_dict: dict) -> dict:
    event_dict.setdefault("pid", os.getpid())
    return event_dict


def configure_logging() -> None:
    """Set up structlog processors plus stdout and optional file output."""
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        _add_process,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        # Console gets the readable renderer, log shippers get JSON.
        structlog.dev.ConsoleRenderer() if settings.enable_console_logging
        else structlog.processors.JSONRenderer(),
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if settings.enable_file_logging:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(settings.log_dir / LOG_FILE_NAME)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(handler)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def job_log_context(queue: str, job_id: str, **extra: Any) -> Iterator[None]:
    """Bind ``queue`` and ``job_id`` to every log line written inside the block."""
    with structlog.contextvars.bound_contextvars(queue=queue, job_id=job_id, **extra):
        yield


configure_logging()
