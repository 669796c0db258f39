"""Error taxonomy shared by the credential, upstream and audio layers.

Every failure that leaves the core is a :class:`GatewayError`. The HTTP layer
in front of the gateway turns ``to_dict()`` into an OpenAI-shaped error
envelope and uses ``status_code`` as the response status.
"""

from __future__ import annotations

import re
from typing import Any

MAX_DETAIL_LENGTH = 240

_WHITESPACE = re.compile(r"\s+")


def sanitize_detail(value: str | None, limit: int = MAX_DETAIL_LENGTH) -> str:
    """Collapse whitespace and truncate untrusted diagnostic text."""
    if value is None:
        return ""
    single_line = _WHITESPACE.sub(" ", value.strip())
    return single_line[:limit]


class GatewayError(Exception):
    """Base class for all classified gateway failures."""

    status_code: int = 502
    error_type: str = "server_error"
    code: str = "upstream_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str | None = None,
        code: str | None = None,
        param: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type
        if code is not None:
            self.code = code
        self.param = param

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "type": self.error_type,
            "param": self.param,
            "code": self.code,
        }

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(status_code={self.status_code}, "
            f"code={self.code!r}, message={self.message!r})"
        )


class ConfigError(GatewayError):
    """Credentials are missing, malformed or rejected as invalid."""

    status_code = 502
    code = "upstream_auth_config_error"


class TemporaryError(GatewayError):
    """The IAM endpoint is unreachable or answered with a retryable status."""

    status_code = 503
    code = "upstream_auth_temporary_error"

    def __init__(self, message: str = "Temporarily unable to obtain IAM token", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class AuthError(GatewayError):
    """The speech upstream rejected the credential after all auth retries."""

    status_code = 401
    error_type = "authentication_error"
    code = "auth_error"


class UpstreamError(GatewayError):
    """Non-2xx or transport failure from the synthesis/recognition upstream."""


class PayloadError(GatewayError):
    """Well-formed HTTP response carrying a semantically invalid body."""

    code = "upstream_error"


class InvalidInput(GatewayError):
    """Caller-supplied input is rejected before reaching the upstream."""

    status_code = 400
    error_type = "invalid_request_error"
    code = "validation_error"


class ConversionFailed(GatewayError):
    """Audio could not be converted or is in an unsupported encoding."""

    status_code = 400
    error_type = "invalid_request_error"
    code = "unsupported_media_type"

    @classmethod
    def with_detail(cls, prefix: str, detail: str | None) -> ConversionFailed:
        """Build an error whose message ends with sanitized diagnostic text."""
        suffix = sanitize_detail(detail)
        message = f"{prefix}: {suffix}" if suffix else prefix
        return cls(message, param="file")


class BackendUnavailable(GatewayError):
    """The external conversion executable cannot be located."""

    status_code = 502
    code = "upstream_unavailable"


__all__ = [
    "MAX_DETAIL_LENGTH",
    "sanitize_detail",
    "GatewayError",
    "ConfigError",
    "TemporaryError",
    "AuthError",
    "UpstreamError",
    "PayloadError",
    "InvalidInput",
    "ConversionFailed",
    "BackendUnavailable",
]
