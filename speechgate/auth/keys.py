"""Service-account authorized keys and the signed JWT exchanged for a token."""

from __future__ import annotations

import base64
import binascii
import re
import uuid
from datetime import datetime
from pathlib import Path

import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from speechgate.common.errors import ConfigError

JWT_LIFETIME_SECONDS = 360
JWT_ALGORITHM = "PS256"

_PEM_BLOCK = re.compile(
    r"-----BEGIN ([A-Z0-9 ]+)-----(.*?)-----END \1-----",
    re.DOTALL,
)
_WHITESPACE = re.compile(r"\s+")


class ServiceAccountKey(BaseModel):
    """Authorized key JSON as issued for a cloud service account."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, frozen=True)

    id: str = Field(min_length=1)
    service_account_id: str = Field(min_length=1)
    private_key: str = Field(min_length=1, repr=False)


def parse_service_account_key(raw_json: str) -> ServiceAccountKey:
    """Validate authorized key JSON.

    Raises:
        ConfigError: If the text is not JSON or lacks a required field.
    """
    try:
        return ServiceAccountKey.model_validate_json(raw_json)
    except PydanticValidationError as exc:
        if any(error["type"] == "json_invalid" for error in exc.errors()):
            raise ConfigError("Service account key JSON is invalid") from None
        raise ConfigError("Service account key JSON is missing required fields") from None


def load_service_account_key(
    key_file: str | None = None,
    key_json: str | None = None,
) -> ServiceAccountKey:
    """Load the authorized key from a file (preferred) or inline JSON."""
    key_file = (key_file or "").strip()
    if key_file:
        try:
            raw_json = Path(key_file).read_text(encoding="utf-8")
        except OSError:
            raise ConfigError("Unable to read service account key file") from None
        return parse_service_account_key(raw_json)

    key_json = (key_json or "").strip()
    if key_json:
        return parse_service_account_key(key_json)
    raise ConfigError("Service account key is not configured")


def load_private_key(pem: str) -> RSAPrivateKey:
    """Decode an RSA private key from PEM text.

    Accepts PKCS#8 (``BEGIN PRIVATE KEY``) and PKCS#1 (``BEGIN RSA PRIVATE
    KEY``) armor. Text around the armored block, such as the warning line some
    key files carry, is ignored.

    Raises:
        ConfigError: If the body is not base64 or does not hold an RSA key.
    """
    match = _PEM_BLOCK.search(pem)
    body = match.group(2) if match else pem
    try:
        der = base64.b64decode(_WHITESPACE.sub("", body), validate=True)
    except (binascii.Error, ValueError):
        raise ConfigError("Service account private_key is invalid (not base64 PEM)") from None
    if not der:
        raise ConfigError("Service account private_key is invalid (not base64 PEM)")

    try:
        # load_der_private_key understands both PKCS#8 and traditional PKCS#1
        key = serialization.load_der_private_key(der, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm):
        raise ConfigError("Service account private_key could not be decoded") from None
    if not isinstance(key, RSAPrivateKey):
        raise ConfigError("Service account private_key is not an RSA key")
    return key


def create_exchange_jwt(
    key: ServiceAccountKey,
    audience: str,
    now: datetime,
    private_key: RSAPrivateKey | None = None,
) -> str:
    """Sign the JWT presented to the IAM token endpoint.

    PS256 is RSASSA-PSS with SHA-256, MGF1-SHA-256 and a 32-byte salt.
    """
    signing_key = private_key or load_private_key(key.private_key)
    issued_at = int(now.timestamp())
    claims = {
        "aud": audience,
        "iss": key.service_account_id,
        "iat": issued_at,
        "exp": issued_at + JWT_LIFETIME_SECONDS,
        "jti": str(uuid.uuid4()),
    }
    try:
        return jwt.encode(
            claims,
            signing_key,
            algorithm=JWT_ALGORITHM,
            headers={"kid": key.id, "typ": "JWT"},
        )
    except (jwt.PyJWTError, ValueError, TypeError):
        raise ConfigError("Failed to sign IAM exchange JWT") from None


__all__ = [
    "JWT_LIFETIME_SECONDS",
    "JWT_ALGORITHM",
    "ServiceAccountKey",
    "parse_service_account_key",
    "load_service_account_key",
    "load_private_key",
    "create_exchange_jwt",
]
