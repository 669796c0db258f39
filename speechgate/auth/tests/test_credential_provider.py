"""Tests for token caching, singleflight refresh and retry."""

import asyncio
import random

import httpx
import pytest

from speechgate.auth.provider import CredentialProvider, backoff_delay_ms
from speechgate.auth.sources import StaticTokenSource
from speechgate.auth.types import TokenSnapshot
from speechgate.common.config import IamConfig
from speechgate.common.errors import ConfigError, TemporaryError


def make_provider(source, clock, sleep=None, **kwargs) -> CredentialProvider:
    if sleep is not None:
        kwargs["sleep"] = sleep
    return CredentialProvider(source, clock=clock, rng=random.Random(7), **kwargs)


class TestCaching:
    """Staleness rules."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fresh_token_is_reused(self, scripted_source, fake_clock):
        provider = make_provider(scripted_source, fake_clock)

        assert await provider.get_token() == "token-1"
        fake_clock.advance(1000)
        assert await provider.get_token() == "token-1"
        assert scripted_source.calls == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refreshes_within_skew(self, scripted_source, fake_clock):
        provider = make_provider(scripted_source, fake_clock, skew_seconds=60, min_ttl_seconds=0)

        await provider.get_token()
        fake_clock.advance(3600 - 60)

        assert await provider.get_token() == "token-2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refreshes_below_min_ttl(self, scripted_source, fake_clock):
        provider = make_provider(scripted_source, fake_clock, skew_seconds=60, min_ttl_seconds=120)

        await provider.get_token()
        fake_clock.advance(3600 - 119)

        assert await provider.get_token() == "token-2"
        assert scripted_source.calls == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_still_fresh_just_above_thresholds(self, scripted_source, fake_clock):
        provider = make_provider(scripted_source, fake_clock, skew_seconds=60, min_ttl_seconds=120)

        await provider.get_token()
        fake_clock.advance(3600 - 121)

        assert await provider.get_token() == "token-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_force_refresh_replaces_valid_token(self, scripted_source, fake_clock):
        provider = make_provider(scripted_source, fake_clock)

        await provider.get_token()
        await provider.force_refresh()

        assert await provider.get_token() == "token-2"
        assert isinstance(provider.snapshot, TokenSnapshot)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_static_source_is_never_refreshed(self, fake_clock):
        provider = make_provider(StaticTokenSource("t1.static"), fake_clock)

        await provider.force_refresh()

        assert await provider.get_token() == "t1.static"
        assert provider.snapshot is None


class TestSingleflight:
    """Concurrent refresh coalescing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_exchange(self, scripted_source, fake_clock):
        release = asyncio.Event()
        original_acquire = scripted_source.acquire

        async def slow_acquire():
            await release.wait()
            return await original_acquire()

        scripted_source.acquire = slow_acquire
        provider = make_provider(scripted_source, fake_clock)

        callers = [asyncio.create_task(provider.get_token()) for _ in range(25)]
        await asyncio.sleep(0)
        release.set()
        tokens = await asyncio.gather(*callers)

        assert tokens == ["token-1"] * 25
        assert scripted_source.calls == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_waiters_observe_the_same_failure(self, scripted_source, fake_clock):
        release = asyncio.Event()
        original_acquire = scripted_source.acquire

        async def slow_acquire():
            await release.wait()
            return await original_acquire()

        scripted_source.acquire = slow_acquire
        scripted_source.outcomes = [ConfigError("IAM authentication is misconfigured or rejected")]
        provider = make_provider(scripted_source, fake_clock)

        callers = [asyncio.create_task(provider.get_token()) for _ in range(10)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*callers, return_exceptions=True)

        assert all(isinstance(result, ConfigError) for result in results)
        assert scripted_source.calls == 1

        # The next caller after the failure tries again
        assert await provider.get_token() == "token-2"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_forced_refreshes_coalesce(self, scripted_source, fake_clock):
        provider = make_provider(scripted_source, fake_clock)
        await provider.get_token()

        release = asyncio.Event()
        original_acquire = scripted_source.acquire

        async def slow_acquire():
            await release.wait()
            return await original_acquire()

        scripted_source.acquire = slow_acquire
        refreshes = [asyncio.create_task(provider.force_refresh()) for _ in range(5)]
        await asyncio.sleep(0)
        release.set()
        await asyncio.gather(*refreshes)

        assert scripted_source.calls == 2
        assert await provider.get_token() == "token-2"


class TestRefreshRetry:
    """Backoff on temporary failures."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_temporary_errors(self, scripted_source, fake_clock, recorded_sleeps):
        delays, sleep = recorded_sleeps
        scripted_source.outcomes = [TemporaryError(), TemporaryError(), "t1.recovered"]
        provider = make_provider(
            scripted_source, fake_clock, sleep, retry_attempts=3, retry_base_ms=200, retry_max_ms=3000
        )

        assert await provider.get_token() == "t1.recovered"
        assert scripted_source.calls == 3
        assert len(delays) == 2
        assert 0.1 <= delays[0] <= 0.3
        assert 0.2 <= delays[1] <= 0.6

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_temporary_error(
        self, scripted_source, fake_clock, recorded_sleeps
    ):
        delays, sleep = recorded_sleeps
        last = TemporaryError("third")
        scripted_source.outcomes = [TemporaryError("first"), TemporaryError("second"), last]
        provider = make_provider(scripted_source, fake_clock, sleep, retry_attempts=3)

        with pytest.raises(TemporaryError) as exc_info:
            await provider.get_token()

        assert exc_info.value is last
        assert len(delays) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_config_error_is_not_retried(self, scripted_source, fake_clock, recorded_sleeps):
        delays, sleep = recorded_sleeps
        scripted_source.outcomes = [ConfigError("rejected")]
        provider = make_provider(scripted_source, fake_clock, sleep, retry_attempts=5)

        with pytest.raises(ConfigError):
            await provider.get_token()

        assert scripted_source.calls == 1
        assert delays == []

    @pytest.mark.unit
    def test_attempts_must_be_positive(self, scripted_source, fake_clock):
        with pytest.raises(ValueError):
            make_provider(scripted_source, fake_clock, retry_attempts=0)


class TestBackoffDelay:
    """Delay formula."""

    @pytest.mark.unit
    @pytest.mark.parametrize(("attempt", "nominal"), [(1, 200), (2, 400), (3, 800), (4, 1600)])
    def test_jitter_bounds(self, attempt, nominal):
        rng = random.Random(1)
        for _ in range(200):
            delay = backoff_delay_ms(attempt, 200, 3000, rng)
            assert nominal * 0.5 <= delay <= min(3000, nominal * 1.5)

    @pytest.mark.unit
    def test_capped_at_max(self):
        rng = random.Random(2)

        assert all(backoff_delay_ms(12, 200, 3000, rng) <= 3000 for _ in range(200))


class TestFromConfig:
    """Wiring from configuration."""

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_metadata_provider_end_to_end(self, fake_clock):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"access_token": "t1.meta", "expires_in": 3600})

        config = IamConfig(metadata_enabled=True)
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = CredentialProvider.from_config(config, client, clock=fake_clock)
            tokens = await asyncio.gather(*(provider.get_token() for _ in range(20)))

        assert set(tokens) == {"t1.meta"}
        assert len(requests) == 1
        assert provider.source.kind == "metadata"
