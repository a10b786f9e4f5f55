"""
Structured logging for the outreach pipeline.

JSON lines on stdout. Worker runs bind job_name, run_key and dry_run through
contextvars so every line a job emits can be grouped by run.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_service,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("psycopg.pool").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


SERVICE_NAME = "outreach-pipeline"


def _add_service(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def bind_job_context(job_name: str, run_key: str, dry_run: bool) -> None:
    """Bind job identifiers to every log line emitted during a run."""
    structlog.contextvars.bind_contextvars(job_name=job_name, run_key=run_key, dry_run=dry_run)


def clear_job_context() -> None:
    structlog.contextvars.clear_contextvars()


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_job_completed(job_name: str, metrics: dict[str, Any]) -> None:
    """Log job counters with consistent fields."""
    logger = get_logger("jobs")

    log_data = {
        "job_name": job_name,
        "event_type": "job_completed",
        **metrics,
    }

    if metrics.get("errors"):
        logger.warning("Job completed with errors", **log_data)
    else:
        logger.info("Job completed", **log_data)


def log_request(method: str, path: str, status_code: int, duration_ms: float) -> None:
    """Log HTTP requests with consistent fields."""
    logger = get_logger("http")

    log_data = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
    }

    if status_code >= 400:
        logger.warning("HTTP request failed", **log_data)
    else:
        logger.info("HTTP request completed", **log_data)
