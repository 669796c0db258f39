"""Audio formats on both sides of the gateway."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from speechgate.common.errors import InvalidInput


class AudioCodec(str, Enum):
    """Encodings the synthesis upstream can produce."""

    MP3 = "MP3"
    OGG_OPUS = "OGG_OPUS"
    PCM = "PCM"


@dataclass(frozen=True, slots=True)
class AudioFormatDescriptor:
    """What to ask the upstream for, and whether to wrap the result in WAV."""

    codec: AudioCodec
    sample_rate_hertz: int | None = None
    container_wrap: bool = False

    def output_audio_spec(self, default_sample_rate: int) -> dict[str, object]:
        """Render the ``outputAudioSpec`` object of a synthesis request."""
        if self.codec is AudioCodec.PCM:
            return {
                "rawAudio": {
                    "audioEncoding": "LINEAR16_PCM",
                    "sampleRateHertz": self.sample_rate_hertz or default_sample_rate,
                }
            }
        return {"containerAudio": {"containerAudioType": self.codec.value}}


class AudioFormat(str, Enum):
    """``response_format`` values accepted from OpenAI-style callers."""

    MP3 = "mp3"
    OGG = "ogg"
    OPUS = "opus"
    PCM = "pcm"
    WAV = "wav"

    @classmethod
    def from_openai(cls, value: str | None) -> AudioFormat:
        """Parse a caller-supplied format name; empty means MP3.

        Raises:
            InvalidInput: If the name is not supported.
        """
        if value is None or not value.strip():
            return cls.MP3
        normalized = value.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise InvalidInput(
            f"Unsupported response_format: {value.strip()}",
            param="response_format",
        )

    @property
    def descriptor(self) -> AudioFormatDescriptor:
        return _DESCRIPTORS[self]

    @property
    def media_type(self) -> str:
        return _MEDIA_TYPES[self]

    @property
    def extension(self) -> str:
        return "ogg" if self is AudioFormat.OPUS else self.value


_DESCRIPTORS = {
    AudioFormat.MP3: AudioFormatDescriptor(AudioCodec.MP3),
    AudioFormat.OGG: AudioFormatDescriptor(AudioCodec.OGG_OPUS),
    AudioFormat.OPUS: AudioFormatDescriptor(AudioCodec.OGG_OPUS),
    AudioFormat.PCM: AudioFormatDescriptor(AudioCodec.PCM),
    AudioFormat.WAV: AudioFormatDescriptor(AudioCodec.PCM, container_wrap=True),
}

_MEDIA_TYPES = {
    AudioFormat.MP3: "audio/mpeg",
    AudioFormat.OGG: "audio/ogg",
    AudioFormat.OPUS: "audio/ogg",
    AudioFormat.PCM: "audio/L16",
    AudioFormat.WAV: "audio/wav",
}


__all__ = ["AudioCodec", "AudioFormatDescriptor", "AudioFormat"]
