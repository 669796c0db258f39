"""Shared HTTP helpers for async upstream clients."""

from __future__ import annotations

from collections.abc import Mapping

import httpx

from .logging import UNKNOWN_REQUEST_ID, current_request_id

REQUEST_ID_HEADER = "X-Request-ID"


def create_http_client(
    base_url: str = "",
    *,
    connect_timeout: float = 5.0,
    read_timeout: float = 30.0,
    max_connections: int = 20,
    max_keepalive_connections: int = 10,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create an ``httpx.AsyncClient`` with separate connect/read timeouts.

    Args:
        base_url: Base URL prepended to relative request paths
        connect_timeout: Seconds allowed to establish a connection
        read_timeout: Seconds allowed between response bytes
        max_connections: Connection pool size
        max_keepalive_connections: Idle connections kept open
        transport: Optional transport override (tests pass ``httpx.MockTransport``)
    """
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max_keepalive_connections,
    )
    timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
    return httpx.AsyncClient(
        base_url=base_url.rstrip("/"),
        timeout=timeout,
        limits=limits,
        transport=transport,
    )


def inject_request_id(headers: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy ``headers`` and add ``X-Request-ID`` from the logging context.

    An explicit header is left untouched; nothing is added when no request ID
    is bound.
    """
    result = dict(headers or {})
    if REQUEST_ID_HEADER in result:
        return result

    request_id = current_request_id()
    if request_id != UNKNOWN_REQUEST_ID:
        result[REQUEST_ID_HEADER] = request_id
    return result


__all__ = ["REQUEST_ID_HEADER", "create_http_client", "inject_request_id"]
