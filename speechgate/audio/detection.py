"""Recognition format hints derived from an upload's name and content type."""

from __future__ import annotations

from dataclasses import dataclass

from speechgate.common.errors import InvalidInput

from .wav import inspect_wav, require_pcm16

WAV_CONTENT_TYPES = frozenset({"audio/wav", "audio/x-wav", "audio/wave"})
OGG_CONTENT_TYPES = frozenset({"audio/ogg", "application/ogg"})
MP3_CONTENT_TYPES = frozenset({"audio/mpeg"})

UNKNOWN_FORMAT_MESSAGE = "Unknown audio format. Supported file extensions: .wav, .ogg, .mp3"


@dataclass(frozen=True, slots=True)
class DetectedFormat:
    """``format`` / ``sampleRateHertz`` query hints; ``None`` means omit."""

    format: str | None = None
    sample_rate_hertz: int | None = None


def file_extension(filename: str | None) -> str:
    """Lower-cased extension of the last path component, or ``""``."""
    if not filename or not filename.strip():
        return ""
    base_name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    _, dot, extension = base_name.rpartition(".")
    if not dot or not extension:
        return ""
    return extension.lower()


def normalize_content_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def detect_format(
    filename: str | None,
    content_type: str | None,
    data: bytes,
    *,
    default_sample_rate: int,
    require_known: bool = False,
) -> DetectedFormat:
    """Pick recognition hints for an upload.

    WAV uploads are inspected; a parseable header must describe 16-bit PCM and
    supplies the sample rate. An unparseable WAV header falls back to
    ``default_sample_rate``.

    Raises:
        ConversionFailed: WAV that is not 16-bit PCM.
        InvalidInput: Unknown format while ``require_known`` is set.
    """
    extension = file_extension(filename)
    media_type = normalize_content_type(content_type)

    if extension == "wav" or media_type in WAV_CONTENT_TYPES:
        info = inspect_wav(data)
        if info is None:
            return DetectedFormat("lpcm", default_sample_rate)
        require_pcm16(info)
        return DetectedFormat("lpcm", info.sample_rate_hertz)

    if extension == "ogg" or media_type in OGG_CONTENT_TYPES:
        return DetectedFormat("oggopus")

    if extension == "mp3" or media_type in MP3_CONTENT_TYPES:
        return DetectedFormat("mp3")

    if require_known:
        raise InvalidInput(
            UNKNOWN_FORMAT_MESSAGE,
            code="unsupported_media_type",
            param="file",
        )
    return DetectedFormat()


__all__ = [
    "UNKNOWN_FORMAT_MESSAGE",
    "DetectedFormat",
    "file_extension",
    "normalize_content_type",
    "detect_format",
]
