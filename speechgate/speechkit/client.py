"""Async client for the SpeechKit synthesis and recognition endpoints."""

from __future__ import annotations

import re
import time
from collections.abc import Awaitable, Callable
from http import HTTPStatus
from pathlib import Path
from typing import Any

import httpx

from speechgate.auth.provider import CredentialProvider
from speechgate.common.config import SpeechKitConfig
from speechgate.common.errors import AuthError, GatewayError, UpstreamError
from speechgate.common.http_client import create_http_client, inject_request_id
from speechgate.common.logging import UNKNOWN_REQUEST_ID, current_request_id, get_logger

from .formats import AudioFormatDescriptor
from .payload import PayloadStats, decode_audio_base64, extract_audio_data, unexpected_payload

TTS_SYNTHESIS_PATH = "/tts/v3/utteranceSynthesis"
STT_RECOGNIZE_PATH = "/speech/v1/stt:recognize"
FOLDER_ID_HEADER = "x-folder-id"

_AUTH_FAILURE_STATUSES = frozenset({401, 403})
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")

SendRequest = Callable[[], Awaitable[httpx.Response]]


def map_upstream_status(status_code: int, param: str | None = None) -> GatewayError:
    """Classify a non-2xx upstream status."""
    try:
        status = HTTPStatus(status_code)
    except ValueError:
        return UpstreamError("Unexpected upstream status", param=param)

    if status_code in _AUTH_FAILURE_STATUSES:
        return AuthError("SpeechKit authentication failed", status_code=status_code, param=param)
    if status is HTTPStatus.REQUEST_ENTITY_TOO_LARGE:
        return UpstreamError(
            "Audio file too large",
            status_code=413,
            error_type="invalid_request_error",
            code="file_too_large",
            param=param,
        )
    if status is HTTPStatus.UNSUPPORTED_MEDIA_TYPE:
        return UpstreamError(
            "Unsupported media type",
            status_code=415,
            error_type="invalid_request_error",
            code="unsupported_media_type",
            param=param,
        )
    if status is HTTPStatus.TOO_MANY_REQUESTS:
        return UpstreamError(
            "Rate limit exceeded",
            status_code=429,
            error_type="rate_limit_error",
            code="rate_limit_exceeded",
            param=param,
        )
    if status_code >= 500:
        return UpstreamError("Upstream service error", param=param)
    return UpstreamError(
        "Upstream rejected request",
        status_code=400,
        error_type="invalid_request_error",
        code="upstream_bad_request",
        param=param,
    )


def build_synthesis_body(
    text: str,
    voice: str,
    audio_format: AudioFormatDescriptor,
    default_sample_rate: int,
    *,
    speed: float | None = None,
    role: str | None = None,
    pitch: float | None = None,
) -> dict[str, Any]:
    """Assemble the ``utteranceSynthesis`` request body."""
    hints: list[dict[str, Any]] = [{"voice": voice}]
    if speed is not None:
        hints.append({"speed": speed})
    if role:
        hints.append({"role": role})
    if pitch is not None:
        hints.append({"pitchShift": pitch})
    return {
        "text": text,
        "hints": hints,
        "outputAudioSpec": audio_format.output_audio_spec(default_sample_rate),
    }


class SpeechKitClient:
    """Authenticated calls to SpeechKit with one auth retry after a refresh.

    Every failure leaves as a :class:`GatewayError`; ``httpx`` and decoding
    exceptions are classified here.
    """

    def __init__(
        self,
        config: SpeechKitConfig,
        credentials: CredentialProvider,
        *,
        tts_http_client: httpx.AsyncClient | None = None,
        stt_http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._owned_clients: list[httpx.AsyncClient] = []
        self._tts = tts_http_client or self._create_client(config.base_url)
        self._stt = stt_http_client or self._create_client(config.stt_base_url)
        self._logger = get_logger(__name__)

    def _create_client(self, base_url: str) -> httpx.AsyncClient:
        client = create_http_client(
            base_url,
            connect_timeout=self._config.connect_timeout_seconds,
            read_timeout=self._config.read_timeout_seconds,
        )
        self._owned_clients.append(client)
        return client

    async def aclose(self) -> None:
        """Close the HTTP clients this instance created."""
        for client in self._owned_clients:
            await client.aclose()
        self._owned_clients.clear()

    async def __aenter__(self) -> SpeechKitClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def uses_api_key_for_recognition(self) -> bool:
        api_key = self._config.api_key
        return self._config.auth_mode == "API_KEY" and bool(api_key and api_key.strip())

    async def synthesize(
        self,
        text: str,
        voice: str,
        language: str | None,
        *,
        speed: float | None = None,
        role: str | None = None,
        pitch: float | None = None,
        audio_format: AudioFormatDescriptor,
    ) -> bytes:
        """Synthesize ``text`` and return the decoded audio bytes.

        ``language`` is informational: v3 synthesis derives it from the voice.

        Raises:
            AuthError: Credentials were rejected after the auth retries.
            UpstreamError: Non-2xx status or transport failure.
            PayloadError: The response carried no decodable audio.
        """
        request_id = current_request_id()
        body = build_synthesis_body(
            text,
            voice,
            audio_format,
            self._config.sample_rate_hertz,
            speed=speed,
            role=role,
            pitch=pitch,
        )
        self._logger.info(
            "speechkit.tts_request",
            endpoint=TTS_SYNTHESIS_PATH,
            output_audio_spec=next(iter(body["outputAudioSpec"])),
            codec=audio_format.codec.value,
            voice=voice,
            language=language,
            text_length=len(text),
        )

        async def send() -> httpx.Response:
            headers = {
                "Authorization": f"Bearer {await self._credentials.get_token()}",
                FOLDER_ID_HEADER: self._config.folder_id,
            }
            return await self._tts.post(
                TTS_SYNTHESIS_PATH,
                json=body,
                headers=inject_request_id(headers),
            )

        start = time.perf_counter()
        response = await self._call("tts", send, use_iam=True)
        content_type = response.headers.get("content-type")
        self._logger.info(
            "speechkit.tts_response",
            endpoint=TTS_SYNTHESIS_PATH,
            status_code=response.status_code,
            content_type=content_type,
            body_length=len(response.content),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return self._decode_synthesis(response, request_id, content_type)

    async def recognize(
        self,
        audio: bytes,
        filename: str | None,
        language: str,
        format_hint: str | None = None,
        sample_rate_hint: int | None = None,
    ) -> str:
        """Recognize ``audio`` and return the transcript (empty when none).

        Raises:
            AuthError: Credentials were rejected after the auth retries.
            UpstreamError: Non-2xx status or transport failure.
        """
        params: dict[str, Any] = {"folderId": self._config.folder_id, "lang": language}
        if format_hint:
            params["format"] = format_hint
        if sample_rate_hint:
            params["sampleRateHertz"] = sample_rate_hint

        use_iam = not self.uses_api_key_for_recognition
        self._logger.info(
            "speechkit.stt_request",
            endpoint=STT_RECOGNIZE_PATH,
            filename=filename or "audio",
            audio_bytes=len(audio),
            language=language,
            format=format_hint,
            sample_rate_hertz=sample_rate_hint,
            auth="iam" if use_iam else "api_key",
        )

        async def send() -> httpx.Response:
            if use_iam:
                authorization = f"Bearer {await self._credentials.get_token()}"
            else:
                authorization = f"Api-Key {self._config.api_key}"
            headers = {
                "Authorization": authorization,
                "Content-Type": "application/octet-stream",
            }
            return await self._stt.post(
                STT_RECOGNIZE_PATH,
                params=params,
                content=audio,
                headers=inject_request_id(headers),
            )

        response = await self._call("transcription", send, use_iam=use_iam)
        if not response.content.strip():
            return ""
        try:
            payload = response.json()
        except ValueError:
            raise unexpected_payload("transcription") from None
        result = payload.get("result") if isinstance(payload, dict) else None
        return "" if result is None else str(result)

    async def _call(self, param: str, send: SendRequest, *, use_iam: bool) -> httpx.Response:
        """Send with auth retry and classify every failure."""
        try:
            response = await self._send_with_auth_retry(send, use_iam=use_iam)
        except GatewayError:
            raise
        except httpx.TimeoutException as exc:
            self._logger.warning("speechkit.upstream_timeout", param=param)
            raise UpstreamError(
                "Upstream timeout", status_code=504, code="upstream_timeout"
            ) from exc
        except httpx.TransportError as exc:
            self._logger.warning(
                "speechkit.upstream_connection_error",
                param=param,
                error_type=type(exc).__name__,
            )
            raise UpstreamError("Upstream connection error") from exc
        except Exception as exc:
            self._logger.error(
                "speechkit.upstream_unexpected_error",
                param=param,
                error_type=type(exc).__name__,
            )
            raise UpstreamError("Upstream service error", param=param) from exc

        if not response.is_success:
            error = map_upstream_status(response.status_code, param)
            self._logger.warning(
                "speechkit.upstream_rejected",
                param=param,
                status_code=response.status_code,
                code=error.code,
            )
            raise error
        return response

    async def _send_with_auth_retry(self, send: SendRequest, *, use_iam: bool) -> httpx.Response:
        retries = max(0, self._config.max_retry_on_auth_error)
        attempt = 0
        while True:
            response = await send()
            if use_iam and response.status_code in _AUTH_FAILURE_STATUSES and attempt < retries:
                attempt += 1
                self._logger.info(
                    "speechkit.auth_retry",
                    status_code=response.status_code,
                    attempt=attempt,
                    max_retries=retries,
                )
                await self._credentials.force_refresh()
                continue
            return response

    def _decode_synthesis(
        self,
        response: httpx.Response,
        request_id: str,
        content_type: str | None,
    ) -> bytes:
        debug_payload = self._config.debug_log_tts_payload
        try:
            payload = response.json() if response.content.strip() else None
        except ValueError:
            self._logger.warning(
                "speechkit.tts_payload_not_json",
                endpoint=TTS_SYNTHESIS_PATH,
                content_type=content_type,
            )
            raise unexpected_payload() from None

        stats = PayloadStats.from_response(payload)
        self._log_payload_stats("speechkit.tts_payload", stats, content_type)
        data = extract_audio_data(payload)
        try:
            return decode_audio_base64(data)
        except GatewayError:
            self._log_payload_stats("speechkit.tts_payload_decode_failed", stats, content_type)
            if debug_payload:
                self._dump_raw_payload(response.text, request_id)
            raise

    def _log_payload_stats(self, event: str, stats: PayloadStats, content_type: str | None) -> None:
        self._logger.debug(
            event,
            endpoint=TTS_SYNTHESIS_PATH,
            content_type=content_type,
            **stats.as_log_fields(),
        )
        if self._config.debug_log_tts_payload and stats.has_data:
            self._logger.debug(
                "speechkit.tts_payload_preview",
                endpoint=TTS_SYNTHESIS_PATH,
                data_preview=stats.masked_preview,
            )

    def _dump_raw_payload(self, raw_body: str, request_id: str) -> Path | None:
        safe_id = UNKNOWN_REQUEST_ID
        if request_id and request_id.strip():
            safe_id = _UNSAFE_FILENAME_CHARS.sub("_", request_id)
        path = Path(self._config.payload_dump_dir) / f"tts-upstream-{safe_id}.json"
        try:
            path.write_text(raw_body or "", encoding="utf-8")
        except OSError as exc:
            self._logger.warning("speechkit.tts_payload_dump_failed", path=str(path), error=str(exc))
            return None
        self._logger.warning("speechkit.tts_payload_dumped", path=str(path))
        return path


__all__ = [
    "TTS_SYNTHESIS_PATH",
    "STT_RECOGNIZE_PATH",
    "FOLDER_ID_HEADER",
    "map_upstream_status",
    "build_synthesis_body",
    "SpeechKitClient",
]
