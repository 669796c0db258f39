"""Credential sources: where a fresh access token comes from.

Exactly one source is active per process. It is chosen once, when the provider
is built, by :func:`resolve_credential_source`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from speechgate.common.config import IamConfig
from speechgate.common.errors import ConfigError, TemporaryError
from speechgate.common.logging import get_logger

from .keys import ServiceAccountKey, create_exchange_jwt, load_private_key, load_service_account_key
from .parsing import snapshot_from_response
from .types import FAR_FUTURE, Clock, TokenSnapshot, utc_now

logger = get_logger(__name__)

METADATA_FLAVOR_HEADER = "Metadata-Flavor"
METADATA_FLAVOR = "Google"

_TEMPORARY_STATUSES = frozenset({408, 429})


def is_temporary_status(status_code: int) -> bool:
    """Return True for token endpoint statuses worth retrying."""
    return status_code >= 500 or status_code in _TEMPORARY_STATUSES


async def request_token(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    now: Clock,
    **kwargs: Any,
) -> TokenSnapshot:
    """Call a token endpoint and parse the JSON answer into a snapshot.

    Raises:
        TemporaryError: On transport failure, a retryable status or an
            unusable body.
        ConfigError: On any other non-2xx status.
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TransportError as exc:
        logger.warning("iam.transport_error", url=url, error_type=type(exc).__name__)
        raise TemporaryError() from exc

    status = response.status_code
    if not 200 <= status < 300:
        logger.warning("iam.token_request_rejected", url=url, status_code=status)
        if is_temporary_status(status):
            raise TemporaryError()
        raise ConfigError("IAM authentication is misconfigured or rejected")

    try:
        payload = response.json()
    except ValueError as exc:
        raise TemporaryError() from exc
    return snapshot_from_response(payload, now())


class CredentialSource(ABC):
    """One way of obtaining an access token."""

    kind: str = "unknown"
    refreshable: bool = True

    @abstractmethod
    async def acquire(self) -> TokenSnapshot:
        """Fetch a brand-new token snapshot."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class StaticTokenSource(CredentialSource):
    """A token supplied verbatim through configuration."""

    kind = "static"
    refreshable = False

    def __init__(self, value: str) -> None:
        self._value = value

    async def acquire(self) -> TokenSnapshot:
        if not self._value or not self._value.strip():
            raise ConfigError("static IAM token is not set")
        return TokenSnapshot(value=self._value, expires_at=FAR_FUTURE)


class ServiceAccountSource(CredentialSource):
    """Exchange a signed service-account JWT for a token."""

    kind = "service_account"

    def __init__(
        self,
        key: ServiceAccountKey,
        token_url: str,
        http_client: httpx.AsyncClient,
        clock: Clock = utc_now,
    ) -> None:
        self._key = key
        self._token_url = token_url
        self._http_client = http_client
        self._clock = clock
        self._private_key = None

    @property
    def key_id(self) -> str:
        return self._key.id

    @property
    def issuer(self) -> str:
        return self._key.service_account_id

    async def acquire(self) -> TokenSnapshot:
        if self._private_key is None:
            self._private_key = load_private_key(self._key.private_key)
        signed = create_exchange_jwt(
            self._key,
            audience=self._token_url,
            now=self._clock(),
            private_key=self._private_key,
        )
        return await request_token(
            self._http_client,
            "POST",
            self._token_url,
            self._clock,
            json={"jwt": signed},
        )

    def __repr__(self) -> str:
        return f"ServiceAccountSource(key_id={self.key_id!r}, issuer={self.issuer!r})"


class InstanceMetadataSource(CredentialSource):
    """Read the token of the VM's attached service account."""

    kind = "metadata"

    def __init__(
        self,
        endpoint: str,
        http_client: httpx.AsyncClient,
        clock: Clock = utc_now,
    ) -> None:
        self.endpoint = endpoint
        self._http_client = http_client
        self._clock = clock

    async def acquire(self) -> TokenSnapshot:
        return await request_token(
            self._http_client,
            "GET",
            self.endpoint,
            self._clock,
            headers={METADATA_FLAVOR_HEADER: METADATA_FLAVOR},
        )

    def __repr__(self) -> str:
        return f"InstanceMetadataSource(endpoint={self.endpoint!r})"


class UnconfiguredSource(CredentialSource):
    """No credentials configured; every acquisition fails."""

    kind = "none"

    async def acquire(self) -> TokenSnapshot:
        raise ConfigError("IAM token source is not configured")


def resolve_credential_source(
    config: IamConfig,
    http_client: httpx.AsyncClient,
    clock: Clock = utc_now,
) -> CredentialSource:
    """Pick the credential source from configuration.

    Precedence: service-account key file or inline JSON, then a static token,
    then the instance metadata service.

    Raises:
        ConfigError: If a service-account key is configured but unusable.
    """
    if _present(config.sa_key_file) or _present(config.sa_key_json):
        key = load_service_account_key(config.sa_key_file, config.sa_key_json)
        source: CredentialSource = ServiceAccountSource(
            key, config.iam_token_url, http_client, clock
        )
    elif _present(config.iam_token):
        source = StaticTokenSource(config.iam_token)
    elif config.metadata_enabled:
        source = InstanceMetadataSource(config.metadata_url, http_client, clock)
    else:
        source = UnconfiguredSource()

    logger.info("iam.source_resolved", source=source.kind)
    return source


def _present(value: str | None) -> bool:
    return bool(value and value.strip())


__all__ = [
    "METADATA_FLAVOR_HEADER",
    "METADATA_FLAVOR",
    "is_temporary_status",
    "request_token",
    "CredentialSource",
    "StaticTokenSource",
    "ServiceAccountSource",
    "InstanceMetadataSource",
    "UnconfiguredSource",
    "resolve_credential_source",
]
