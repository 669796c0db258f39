"""Cached access token with singleflight refresh."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from speechgate.common.config import IamConfig
from speechgate.common.errors import GatewayError, TemporaryError
from speechgate.common.logging import get_logger

from .sources import CredentialSource, resolve_credential_source
from .types import Clock, TokenSnapshot, utc_now

Sleep = Callable[[float], Awaitable[Any]]


def backoff_delay_ms(
    attempt: int,
    base_ms: int,
    max_ms: int,
    rng: random.Random | None = None,
) -> float:
    """Delay before retry ``attempt`` (1-based): capped exponential with jitter.

    The jittered value is capped again so it never exceeds ``max_ms``.
    """
    exponent = min(max(attempt - 1, 0), 30)
    delay = min(float(max_ms), base_ms * float(2**exponent))
    factor = (rng or random).uniform(0.5, 1.5)
    return min(float(max_ms), delay * factor)


class CredentialProvider:
    """Hand out a valid access token, refreshing it at most once at a time.

    The current :class:`TokenSnapshot` is replaced wholesale, so readers that
    find it fresh never take the lock. A stale read enters :meth:`_refresh`,
    where one coroutine performs the exchange and every coroutine that queued
    behind it reuses that result, success or failure.
    """

    def __init__(
        self,
        source: CredentialSource,
        *,
        skew_seconds: int = 60,
        min_ttl_seconds: int = 120,
        retry_attempts: int = 3,
        retry_base_ms: int = 200,
        retry_max_ms: int = 3000,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self._source = source
        self._skew_seconds = skew_seconds
        self._min_ttl_seconds = min_ttl_seconds
        self._retry_attempts = retry_attempts
        self._retry_base_ms = retry_base_ms
        self._retry_max_ms = retry_max_ms
        self._clock = clock
        self._sleep = sleep
        self._rng = rng

        self._snapshot: TokenSnapshot | None = None
        self._refresh_lock = asyncio.Lock()
        self._refresh_generation = 0
        self._last_failure: GatewayError | None = None
        self._logger = get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        config: IamConfig,
        http_client: httpx.AsyncClient,
        *,
        clock: Clock = utc_now,
        sleep: Sleep = asyncio.sleep,
    ) -> CredentialProvider:
        """Resolve the credential source and apply the cache tuning from config."""
        source = resolve_credential_source(config, http_client, clock)
        return cls(
            source,
            skew_seconds=config.token_skew_seconds,
            min_ttl_seconds=config.token_min_ttl_seconds,
            retry_attempts=config.refresh_retry_attempts,
            retry_base_ms=config.refresh_retry_base_ms,
            retry_max_ms=config.refresh_retry_max_ms,
            clock=clock,
            sleep=sleep,
        )

    @property
    def source(self) -> CredentialSource:
        return self._source

    @property
    def snapshot(self) -> TokenSnapshot | None:
        return self._snapshot

    async def get_token(self) -> str:
        """Return a token that stays valid for at least the configured margin.

        Raises:
            ConfigError: Credentials are missing, malformed or rejected.
            TemporaryError: The token endpoint stayed unavailable.
        """
        if not self._source.refreshable:
            snapshot = await self._source.acquire()
            return snapshot.value

        snapshot = self._snapshot
        if snapshot is not None and not self.is_stale(snapshot):
            return snapshot.value
        snapshot = await self._refresh(force=False)
        return snapshot.value

    async def force_refresh(self) -> None:
        """Replace the cached token even if it still looks valid."""
        if not self._source.refreshable:
            return
        await self._refresh(force=True)

    def is_stale(self, snapshot: TokenSnapshot) -> bool:
        ttl = snapshot.ttl_seconds(self._clock())
        return ttl <= self._skew_seconds or ttl < self._min_ttl_seconds

    async def _refresh(self, *, force: bool) -> TokenSnapshot:
        observed_generation = self._refresh_generation
        async with self._refresh_lock:
            if self._refresh_generation != observed_generation:
                # Someone refreshed while we were queued; share their outcome
                if self._last_failure is not None:
                    raise self._last_failure
                if self._snapshot is not None:
                    return self._snapshot

            current = self._snapshot
            if not force and current is not None and not self.is_stale(current):
                return current

            try:
                snapshot = await self._acquire_with_retry()
            except GatewayError as exc:
                self._last_failure = exc
                self._refresh_generation += 1
                self._logger.warning(
                    "iam.refresh_failed",
                    source=self._source.kind,
                    code=exc.code,
                    forced=force,
                )
                raise

            self._last_failure = None
            self._refresh_generation += 1
            self._snapshot = snapshot
            self._logger.info(
                "iam.token_refreshed",
                source=self._source.kind,
                expires_at=snapshot.expires_at.isoformat(),
                ttl_seconds=int(snapshot.ttl_seconds(self._clock())),
                forced=force,
            )
            return snapshot

    async def _acquire_with_retry(self) -> TokenSnapshot:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(TemporaryError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await self._source.acquire()
        raise AssertionError("unreachable")

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        delay_ms = backoff_delay_ms(
            retry_state.attempt_number,
            self._retry_base_ms,
            self._retry_max_ms,
            self._rng,
        )
        return delay_ms / 1000.0

    def _log_retry(self, retry_state: RetryCallState) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        self._logger.warning(
            "iam.refresh_retry",
            source=self._source.kind,
            attempt=retry_state.attempt_number,
            max_attempts=self._retry_attempts,
            delay_ms=int(delay * 1000),
        )


__all__ = ["CredentialProvider", "backoff_delay_ms"]
