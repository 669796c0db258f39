"""Shared building blocks: errors, logging, configuration and HTTP helpers."""

from .errors import (
    AuthError,
    BackendUnavailable,
    ConfigError,
    ConversionFailed,
    GatewayError,
    InvalidInput,
    PayloadError,
    TemporaryError,
    UpstreamError,
    sanitize_detail,
)
from .logging import configure_logging, current_request_id, get_logger, request_context

__all__ = [
    "AuthError",
    "BackendUnavailable",
    "ConfigError",
    "ConversionFailed",
    "GatewayError",
    "InvalidInput",
    "PayloadError",
    "TemporaryError",
    "UpstreamError",
    "sanitize_detail",
    "configure_logging",
    "current_request_id",
    "get_logger",
    "request_context",
]
