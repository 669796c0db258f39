"""Speech generation: voice resolution, synthesis and WAV wrapping."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from speechgate.audio.wav import encode_pcm16_wav
from speechgate.common.config import GatewayConfig, ValidationError
from speechgate.common.logging import get_logger
from speechgate.speechkit.client import SpeechKitClient
from speechgate.speechkit.formats import AudioFormat

logger = get_logger(__name__)


class VoiceSettings(BaseModel):
    """Per-voice hint defaults."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    speed: float | None = None
    role: str | None = None
    pitch: float | None = None


def parse_voice_settings(raw: Mapping[str, Any] | None) -> dict[str, VoiceSettings]:
    """Validate the ``voice_settings`` config mapping.

    Raises:
        ValidationError: If an entry is not an object of speed/role/pitch.
    """
    settings: dict[str, VoiceSettings] = {}
    for voice, value in (raw or {}).items():
        try:
            settings[voice] = VoiceSettings.model_validate(value)
        except PydanticValidationError as exc:
            raise ValidationError(
                "voice_settings",
                value,
                f"invalid settings for voice {voice!r} ({exc.error_count()} error(s))",
            ) from exc
    return settings


@dataclass(frozen=True, slots=True)
class SynthesisResult:
    audio: bytes
    audio_format: AudioFormat

    @property
    def media_type(self) -> str:
        return self.audio_format.media_type


class TextToSpeechService:
    """Turn OpenAI-style speech requests into SpeechKit synthesis calls."""

    def __init__(self, client: SpeechKitClient, config: GatewayConfig) -> None:
        self._client = client
        self._default_voice = config.tts.default_voice
        self._voice_mapping: dict[str, str] = dict(config.tts.voice_mapping or {})
        self._voice_settings = parse_voice_settings(config.tts.voice_settings)
        self._language = config.speechkit.default_language
        self._sample_rate_hertz = config.speechkit.sample_rate_hertz

    def map_voice(self, requested: str | None) -> str:
        """Translate a caller voice name; blank means the default voice."""
        if requested is None or not requested.strip():
            return self._default_voice
        return self._voice_mapping.get(requested, requested)

    def voice_settings(self, voice: str) -> VoiceSettings:
        return self._voice_settings.get(voice, VoiceSettings())

    async def synthesize(
        self,
        input_text: str,
        voice: str | None = None,
        response_format: str | None = None,
        speed: float | None = None,
    ) -> SynthesisResult:
        """Synthesize ``input_text``; an explicit ``speed`` beats the voice default.

        Raises:
            InvalidInput: Unknown ``response_format``.
            GatewayError: Any credential or upstream failure.
        """
        audio_format = AudioFormat.from_openai(response_format)
        descriptor = audio_format.descriptor
        mapped_voice = self.map_voice(voice)
        settings = self.voice_settings(mapped_voice)
        effective_speed = speed if speed is not None else settings.speed

        logger.info(
            "tts.synthesis_prepared",
            requested_voice=voice,
            mapped_voice=mapped_voice,
            audio_format=audio_format.value,
            wav_wrap=descriptor.container_wrap,
        )
        audio = await self._client.synthesize(
            input_text,
            mapped_voice,
            self._language,
            speed=effective_speed,
            role=settings.role,
            pitch=settings.pitch,
            audio_format=descriptor,
        )
        if descriptor.container_wrap:
            audio = encode_pcm16_wav(audio, self._sample_rate_hertz, channels=1)
        return SynthesisResult(audio=audio, audio_format=audio_format)


__all__ = ["VoiceSettings", "parse_voice_settings", "SynthesisResult", "TextToSpeechService"]
