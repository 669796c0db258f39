"""Tests for the SpeechKit client against a mocked transport."""

import json

import httpx
import pytest

from speechgate.auth.provider import CredentialProvider
from speechgate.auth.sources import StaticTokenSource
from speechgate.common.config import SpeechKitConfig
from speechgate.common.errors import AuthError, ConfigError, PayloadError, UpstreamError
from speechgate.common.logging import request_context
from speechgate.speechkit.client import (
    STT_RECOGNIZE_PATH,
    TTS_SYNTHESIS_PATH,
    SpeechKitClient,
    build_synthesis_body,
    map_upstream_status,
)
from speechgate.speechkit.formats import AudioFormat

TTS_BASE = "https://tts.example.test"
STT_BASE = "https://stt.example.test"
ID3_RESPONSE = {"result": {"audioChunk": {"data": "SUQzBA"}}}


class RecordingTransport:
    """Mock transport that replays queued responses and records requests."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.responses.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def client(self, base_url: str) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(self))


def make_client(
    credentials: CredentialProvider,
    tts: RecordingTransport | None = None,
    stt: RecordingTransport | None = None,
    **config_overrides,
) -> SpeechKitClient:
    config = SpeechKitConfig(folder_id="b1gfolder", **config_overrides)
    return SpeechKitClient(
        config,
        credentials,
        tts_http_client=(tts or RecordingTransport()).client(TTS_BASE),
        stt_http_client=(stt or RecordingTransport()).client(STT_BASE),
    )


@pytest.fixture
def provider(scripted_source, fake_clock) -> CredentialProvider:
    return CredentialProvider(scripted_source, clock=fake_clock)


class TestSynthesisRequest:
    """Request shaping."""

    @pytest.mark.unit
    def test_body_with_all_hints(self):
        body = build_synthesis_body(
            "Привет",
            "alena",
            AudioFormat.MP3.descriptor,
            48000,
            speed=1.2,
            role="good",
            pitch=-50.0,
        )

        assert body == {
            "text": "Привет",
            "hints": [{"voice": "alena"}, {"speed": 1.2}, {"role": "good"}, {"pitchShift": -50.0}],
            "outputAudioSpec": {"containerAudio": {"containerAudioType": "MP3"}},
        }

    @pytest.mark.unit
    def test_body_voice_only_raw_audio(self):
        body = build_synthesis_body("hi", "filipp", AudioFormat.PCM.descriptor, 16000)

        assert body["hints"] == [{"voice": "filipp"}]
        assert body["outputAudioSpec"] == {
            "rawAudio": {"audioEncoding": "LINEAR16_PCM", "sampleRateHertz": 16000}
        }

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_headers_and_decoding(self, provider, isolated_structlog):
        tts = RecordingTransport(httpx.Response(200, json=ID3_RESPONSE))

        async with make_client(provider, tts=tts) as client:
            with request_context("req-synth"):
                audio = await client.synthesize(
                    "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
                )

        assert audio == b"ID3\x04"
        request = tts.requests[0]
        assert request.url.path == TTS_SYNTHESIS_PATH
        assert request.headers["Authorization"] == "Bearer token-1"
        assert request.headers["x-folder-id"] == "b1gfolder"
        assert request.headers["X-Request-ID"] == "req-synth"
        assert json.loads(request.content)["hints"] == [{"voice": "alena"}]


class TestAuthRetry:
    """Forced refresh after 401/403."""

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_one_refresh_then_success(self, provider, scripted_source):
        tts = RecordingTransport(
            httpx.Response(401, json={"message": "expired"}),
            httpx.Response(200, json=ID3_RESPONSE),
        )

        async with make_client(provider, tts=tts) as client:
            audio = await client.synthesize(
                "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
            )

        assert audio == b"ID3\x04"
        assert [r.headers["Authorization"] for r in tts.requests] == [
            "Bearer token-1",
            "Bearer token-2",
        ]
        assert scripted_source.calls == 2

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_second_rejection_is_auth_error(self, provider):
        tts = RecordingTransport(httpx.Response(403), httpx.Response(403), httpx.Response(200))

        async with make_client(provider, tts=tts) as client:
            with pytest.raises(AuthError) as exc_info:
                await client.synthesize(
                    "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
                )

        assert exc_info.value.status_code == 403
        assert exc_info.value.code == "auth_error"
        assert len(tts.requests) == 2

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_zero_budget_does_not_retry(self, provider):
        tts = RecordingTransport(httpx.Response(401))

        async with make_client(provider, tts=tts, max_retry_on_auth_error=0) as client:
            with pytest.raises(AuthError):
                await client.synthesize(
                    "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
                )

        assert len(tts.requests) == 1

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_credential_failure_passes_through(self, scripted_source, fake_clock):
        scripted_source.outcomes = [ConfigError("IAM token source is not configured")]
        provider = CredentialProvider(scripted_source, clock=fake_clock)
        tts = RecordingTransport()

        async with make_client(provider, tts=tts) as client:
            with pytest.raises(ConfigError):
                await client.synthesize(
                    "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
                )

        assert tts.requests == []


class TestErrorMapping:
    """Status and transport classification."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("status_code", "expected_status", "code"),
        [
            (401, 401, "auth_error"),
            (403, 403, "auth_error"),
            (413, 413, "file_too_large"),
            (415, 415, "unsupported_media_type"),
            (429, 429, "rate_limit_exceeded"),
            (500, 502, "upstream_error"),
            (503, 502, "upstream_error"),
            (400, 400, "upstream_bad_request"),
            (404, 400, "upstream_bad_request"),
            (499, 502, "upstream_error"),
        ],
    )
    def test_status_mapping(self, status_code, expected_status, code):
        error = map_upstream_status(status_code, "tts")

        assert error.status_code == expected_status
        assert error.code == code
        assert error.param == "tts"

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_timeout(self, provider):
        tts = RecordingTransport(httpx.ReadTimeout("slow"))

        async with make_client(provider, tts=tts) as client:
            with pytest.raises(UpstreamError) as exc_info:
                await client.synthesize(
                    "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
                )

        assert exc_info.value.status_code == 504
        assert exc_info.value.code == "upstream_timeout"

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_connection_error(self, provider):
        tts = RecordingTransport(httpx.ConnectError("refused"))

        async with make_client(provider, tts=tts) as client:
            with pytest.raises(UpstreamError, match="Upstream connection error") as exc_info:
                await client.synthesize(
                    "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
                )

        assert exc_info.value.status_code == 502

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_unexpected_exception(self, provider):
        tts = RecordingTransport(RuntimeError("boom"))

        async with make_client(provider, tts=tts) as client:
            with pytest.raises(UpstreamError, match="Upstream service error"):
                await client.synthesize(
                    "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
                )


class TestSynthesisPayload:
    """Response body problems."""

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_non_json_body(self, provider):
        tts = RecordingTransport(httpx.Response(200, text="<html>oops</html>"))

        async with make_client(provider, tts=tts) as client:
            with pytest.raises(PayloadError, match="unexpected payload"):
                await client.synthesize(
                    "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
                )

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_decode_failure_dumps_raw_body_when_debugging(
        self, provider, tmp_path, isolated_structlog
    ):
        tts = RecordingTransport(httpx.Response(200, json={"result": {"audioChunk": {"data": "%%%"}}}))

        async with make_client(
            provider, tts=tts, debug_log_tts_payload=True, payload_dump_dir=str(tmp_path)
        ) as client:
            with request_context("req/42"):
                with pytest.raises(PayloadError, match="invalid audio payload"):
                    await client.synthesize(
                        "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
                    )

        dump = tmp_path / "tts-upstream-req_42.json"
        assert dump.exists()
        assert '"data":"%%%"' in dump.read_text(encoding="utf-8").replace(" ", "")

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_no_dump_without_debug(self, provider, tmp_path):
        tts = RecordingTransport(httpx.Response(200, json={"audioChunk": {"data": "%%%"}}))

        async with make_client(provider, tts=tts, payload_dump_dir=str(tmp_path)) as client:
            with pytest.raises(PayloadError):
                await client.synthesize(
                    "hello", "alena", "ru-RU", audio_format=AudioFormat.MP3.descriptor
                )

        assert list(tmp_path.iterdir()) == []


class TestRecognition:
    """Recognition requests."""

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_raw_body_and_query(self, provider):
        stt = RecordingTransport(httpx.Response(200, json={"result": "привет мир"}))

        async with make_client(provider, stt=stt) as client:
            text = await client.recognize(b"OggS...", "note.ogg", "ru-RU", "oggopus")

        assert text == "привет мир"
        request = stt.requests[0]
        assert request.url.path == STT_RECOGNIZE_PATH
        assert request.content == b"OggS..."
        assert request.headers["Content-Type"] == "application/octet-stream"
        assert request.headers["Authorization"] == "Bearer token-1"
        assert dict(request.url.params) == {
            "folderId": "b1gfolder",
            "lang": "ru-RU",
            "format": "oggopus",
        }

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_sample_rate_hint(self, provider):
        stt = RecordingTransport(httpx.Response(200, json={"result": "ok"}))

        async with make_client(provider, stt=stt) as client:
            await client.recognize(b"\x00\x00", "a.wav", "en-US", "lpcm", 16000)

        assert stt.requests[0].url.params["sampleRateHertz"] == "16000"

    @pytest.mark.component
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"result": None}])
    async def test_missing_result_is_empty(self, provider, body):
        stt = RecordingTransport(httpx.Response(200, json=body))

        async with make_client(provider, stt=stt) as client:
            assert await client.recognize(b"x", None, "ru-RU") == ""

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_api_key_mode_skips_iam_and_auth_retry(self, scripted_source, fake_clock):
        provider = CredentialProvider(scripted_source, clock=fake_clock)
        stt = RecordingTransport(httpx.Response(401))

        async with make_client(provider, stt=stt, auth_mode="API_KEY", api_key="AQVN-key") as client:
            with pytest.raises(AuthError):
                await client.recognize(b"x", "a.mp3", "ru-RU", "mp3")

        assert len(stt.requests) == 1
        assert stt.requests[0].headers["Authorization"] == "Api-Key AQVN-key"
        assert scripted_source.calls == 0

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_api_key_mode_without_key_uses_iam(self):
        provider = CredentialProvider(StaticTokenSource("t1.static"))
        stt = RecordingTransport(httpx.Response(200, json={"result": "ok"}))

        async with make_client(provider, stt=stt, auth_mode="API_KEY") as client:
            await client.recognize(b"x", "a.mp3", "ru-RU", "mp3")

        assert stt.requests[0].headers["Authorization"] == "Bearer t1.static"

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_too_large(self, provider):
        stt = RecordingTransport(httpx.Response(413))

        async with make_client(provider, stt=stt) as client:
            with pytest.raises(UpstreamError) as exc_info:
                await client.recognize(b"x", "a.mp3", "ru-RU", "mp3")

        assert exc_info.value.code == "file_too_large"
        assert exc_info.value.param == "transcription"
