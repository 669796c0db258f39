"""Access tokens for the speech upstream."""

from .keys import ServiceAccountKey, create_exchange_jwt, load_private_key, load_service_account_key
from .provider import CredentialProvider, backoff_delay_ms
from .sources import (
    CredentialSource,
    InstanceMetadataSource,
    ServiceAccountSource,
    StaticTokenSource,
    UnconfiguredSource,
    resolve_credential_source,
)
from .types import TokenSnapshot, utc_now

__all__ = [
    "ServiceAccountKey",
    "create_exchange_jwt",
    "load_private_key",
    "load_service_account_key",
    "CredentialProvider",
    "backoff_delay_ms",
    "CredentialSource",
    "InstanceMetadataSource",
    "ServiceAccountSource",
    "StaticTokenSource",
    "UnconfiguredSource",
    "resolve_credential_source",
    "TokenSnapshot",
    "utc_now",
]
