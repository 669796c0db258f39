"""RIFF/WAVE header inspection and minimal PCM16 WAV encoding."""

from __future__ import annotations

import io
import struct
import wave
from dataclasses import dataclass

from speechgate.common.errors import ConversionFailed

WAVE_FORMAT_PCM = 1
MIN_SAMPLE_RATE_HERTZ = 8000
WAV_HEADER_BYTES = 44

PCM16_REMEDIATION = (
    "WAV must be 16-bit PCM for ASR. Convert with ffmpeg: "
    "ffmpeg -i input.wav -ac 1 -ar 48000 -sample_fmt s16 output.wav"
)

_CHUNK_HEADER = struct.Struct("<4sI")
_FMT_FIELDS = struct.Struct("<HHIIHH")


@dataclass(frozen=True, slots=True)
class WavHeaderInfo:
    """Fields of the first ``fmt `` chunk."""

    audio_format_code: int
    bits_per_sample: int
    sample_rate_hertz: int

    @property
    def is_pcm16(self) -> bool:
        return self.audio_format_code == WAVE_FORMAT_PCM and self.bits_per_sample == 16


def inspect_wav(data: bytes) -> WavHeaderInfo | None:
    """Parse the ``fmt `` chunk of a RIFF/WAVE buffer.

    Returns ``None`` when the bytes are not a well-formed WAV: wrong magic, a
    chunk that runs past the buffer, a short ``fmt `` chunk, or a sample rate
    below 8000 Hz.
    """
    if len(data) < 20 or data[0:4] != b"RIFF" or data[8:12] != b"WAVE":
        return None

    offset = 12
    while offset + _CHUNK_HEADER.size <= len(data):
        tag, size = _CHUNK_HEADER.unpack_from(data, offset)
        payload_offset = offset + _CHUNK_HEADER.size
        next_offset = payload_offset + size + (size % 2)
        if next_offset > len(data):
            return None

        if tag == b"fmt ":
            if size < 16:
                return None
            audio_format, _channels, sample_rate, _byte_rate, _align, bits = _FMT_FIELDS.unpack_from(
                data, payload_offset
            )
            if sample_rate < MIN_SAMPLE_RATE_HERTZ:
                return None
            return WavHeaderInfo(
                audio_format_code=audio_format,
                bits_per_sample=bits,
                sample_rate_hertz=sample_rate,
            )
        offset = next_offset

    return None


def require_pcm16(info: WavHeaderInfo) -> None:
    """Reject WAV input that is not 16-bit integer PCM."""
    if not info.is_pcm16:
        raise ConversionFailed(PCM16_REMEDIATION, param="file")


def encode_pcm16_wav(pcm: bytes, sample_rate: int, channels: int = 1) -> bytes:
    """Wrap raw little-endian PCM16 samples in a 44-byte WAV header."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(pcm)
    return buffer.getvalue()


__all__ = [
    "WAVE_FORMAT_PCM",
    "MIN_SAMPLE_RATE_HERTZ",
    "WAV_HEADER_BYTES",
    "PCM16_REMEDIATION",
    "WavHeaderInfo",
    "inspect_wav",
    "require_pcm16",
    "encode_pcm16_wav",
]
