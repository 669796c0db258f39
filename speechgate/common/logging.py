"""Centralized logging utilities for the speech gateway."""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import IO, Any

import structlog


_LEVELS: dict[str, int] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

UNKNOWN_REQUEST_ID = "unknown"


def _numeric_level(level: str) -> int:
    name = (level or "").upper()
    return _LEVELS.get(name, logging.INFO)


Processor = Callable[[Any, str, dict[str, Any]], dict[str, Any]]


def _add_service(service_name: str | None) -> Processor:
    def processor(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        if service_name and "service" not in event_dict:
            event_dict["service"] = service_name
        return event_dict

    return processor


def configure_logging(
    level: str = "INFO",
    *,
    json_logs: bool = True,
    service_name: str | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Configure structlog + stdlib logging for the process.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_logs: Whether to output JSON formatted logs (True) or console format (False)
        service_name: Optional service name to include in all log messages
        stream: Optional output stream for logs (defaults to sys.stdout).
                Useful for testing to capture log output to StringIO.

    Example:
        # Production usage
        configure_logging(level="INFO", json_logs=True, service_name="speechgate")

        # Test usage
        from io import StringIO
        output = StringIO()
        configure_logging(level="INFO", json_logs=True, stream=output)
    """

    numeric_level = _numeric_level(level)
    output_stream = stream if stream is not None else sys.stdout

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", key="timestamp"),
        _add_service(service_name),
        structlog.processors.dict_tracebacks,
    ]
    if json_logs:
        formatter_processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ]
    else:
        formatter_processors = [
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(),
        ]

    handler = logging.StreamHandler(output_stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=formatter_processors,
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(numeric_level)
    logging.captureWarnings(True)

    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(
    name: str,
    *,
    service_name: str | None = None,
) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger bound with standard metadata."""

    logger = structlog.stdlib.get_logger(name)
    if service_name:
        logger = logger.bind(service=service_name)
    return logger


def current_request_id() -> str:
    """Return the request ID bound to the current context, or ``"unknown"``."""
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    if not request_id or not str(request_id).strip():
        return UNKNOWN_REQUEST_ID
    return str(request_id)


@contextmanager
def request_context(
    request_id: str | None,
) -> Generator[structlog.stdlib.BoundLogger, None, None]:
    """Bind a request ID to the logging context for the duration of a block.

    The previous value (if any) is restored on exit, so nested contexts and
    concurrent tasks each see their own ID.

    Example:
        with request_context("req-123") as logger:
            logger.info("tts.request_received")
    """
    previous_request_id = None
    if request_id:
        previous_request_id = structlog.contextvars.get_contextvars().get(
            "request_id"
        )
        structlog.contextvars.bind_contextvars(request_id=request_id)

    logger = structlog.stdlib.get_logger()

    try:
        yield logger
    finally:
        if request_id:
            if previous_request_id is not None:
                structlog.contextvars.bind_contextvars(request_id=previous_request_id)
            else:
                structlog.contextvars.unbind_contextvars("request_id")


__all__ = [
    "UNKNOWN_REQUEST_ID",
    "configure_logging",
    "get_logger",
    "current_request_id",
    "request_context",
]
