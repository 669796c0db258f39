"""Transcription: upload checks, optional normalization and recognition."""

from __future__ import annotations

from speechgate.audio.detection import detect_format
from speechgate.audio.normalizer import AudioNormalizer
from speechgate.common.config import GatewayConfig
from speechgate.common.errors import InvalidInput
from speechgate.common.logging import get_logger
from speechgate.speechkit.client import SpeechKitClient

logger = get_logger(__name__)


class SpeechRecognitionService:
    """Turn an uploaded audio file into a transcript."""

    def __init__(
        self,
        client: SpeechKitClient,
        config: GatewayConfig,
        normalizer: AudioNormalizer | None = None,
    ) -> None:
        self._client = client
        self._language = config.speechkit.default_language
        self._sample_rate_hertz = config.speechkit.sample_rate_hertz
        self._require_known_format = config.speechkit.require_known_asr_format
        if normalizer is None and config.normalize.enabled:
            normalizer = AudioNormalizer(config.normalize)
        self._normalizer = normalizer

    @property
    def normalization_enabled(self) -> bool:
        return self._normalizer is not None

    async def transcribe(
        self,
        audio: bytes,
        filename: str | None,
        content_type: str | None,
        language: str | None = None,
    ) -> str:
        """Recognize ``audio``; a blank ``language`` means the default.

        Raises:
            InvalidInput: Empty upload, oversized input for normalization or an
                unknown format when known formats are required.
            ConversionFailed: Non-PCM16 WAV or a failed conversion.
            GatewayError: Any credential or upstream failure.
        """
        if not audio:
            raise InvalidInput("file must not be empty", param="file")
        lang = language if language and language.strip() else self._language

        if self._normalizer is not None:
            normalized = await self._normalizer.normalize(audio)
            logger.info(
                "asr.transcribe_normalized",
                input_bytes=len(audio),
                output_bytes=len(normalized),
                language=lang,
            )
            return await self._client.recognize(
                normalized,
                filename,
                lang,
                "lpcm",
                self._normalizer.target_sample_rate_hertz,
            )

        detected = detect_format(
            filename,
            content_type,
            audio,
            default_sample_rate=self._sample_rate_hertz,
            require_known=self._require_known_format,
        )
        logger.info(
            "asr.transcribe_detected",
            input_bytes=len(audio),
            format=detected.format,
            sample_rate_hertz=detected.sample_rate_hertz,
            language=lang,
        )
        return await self._client.recognize(
            audio,
            filename,
            lang,
            detected.format,
            detected.sample_rate_hertz,
        )


__all__ = ["SpeechRecognitionService"]
