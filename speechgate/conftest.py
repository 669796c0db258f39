"""Shared fixtures for speechgate tests."""

from __future__ import annotations

import json
import os
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

import pytest
import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from speechgate.auth.sources import CredentialSource
from speechgate.auth.types import TokenSnapshot

GATEWAY_ENV_PREFIXES = ("SPEECHKIT_", "ASR_NORMALIZE_", "LOG_")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedSource(CredentialSource):
    """Credential source returning queued outcomes and counting calls."""

    kind = "scripted"

    def __init__(self, clock: Callable[[], datetime], ttl_seconds: int = 3600) -> None:
        self._clock = clock
        self.ttl_seconds = ttl_seconds
        self.outcomes: list[Exception | str] = []
        self.calls = 0

    async def acquire(self) -> TokenSnapshot:
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else f"token-{self.calls}"
        if isinstance(outcome, Exception):
            raise outcome
        return TokenSnapshot(
            value=outcome,
            expires_at=self._clock() + timedelta(seconds=self.ttl_seconds),
        )


@pytest.fixture(autouse=True)
def clean_gateway_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's environment out of config-driven tests."""
    for name in list(os.environ):
        if name.startswith(GATEWAY_ENV_PREFIXES):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def isolated_structlog() -> Generator[None, None, None]:
    """Reset structlog configuration between tests."""
    original_config = structlog.get_config()
    yield
    structlog.configure(**original_config)
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scripted_source(fake_clock: FakeClock) -> ScriptedSource:
    return ScriptedSource(fake_clock)


@pytest.fixture
def recorded_sleeps() -> tuple[list[float], Callable[[float], object]]:
    """Sleep replacement that records requested delays and returns at once."""
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    return delays, _sleep


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def pkcs8_pem(rsa_private_key: rsa.RSAPrivateKey) -> str:
    return rsa_private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture(scope="session")
def pkcs1_pem(rsa_private_key: rsa.RSAPrivateKey) -> str:
    return rsa_private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
def service_account_key_json(pkcs8_pem: str) -> str:
    return json.dumps(
        {
            "id": "ajekey123",
            "service_account_id": "ajesa456",
            "created_at": "2024-01-01T00:00:00Z",
            "key_algorithm": "RSA_2048",
            "public_key": "ignored",
            "private_key": "PLEASE DO NOT REMOVE THIS LINE! Yandex.Cloud SA Key ID <ajekey123>\n"
            + pkcs8_pem,
        }
    )
