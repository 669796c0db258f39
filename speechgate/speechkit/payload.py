"""Decoding of the base64 audio envelope returned by synthesis."""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from speechgate.common.errors import PayloadError

_WHITESPACE = re.compile(r"\s+")
_URLSAFE_TO_STANDARD = str.maketrans("-_", "+/")

PREVIEW_EDGE_CHARS = 16


def unexpected_payload(param: str = "tts") -> PayloadError:
    return PayloadError("Upstream returned unexpected payload", param=param)


def _envelope_root(response: Any) -> tuple[Mapping[str, Any] | None, bool]:
    if not isinstance(response, Mapping):
        return None, False
    result = response.get("result")
    if isinstance(result, Mapping):
        return result, True
    return response, False


def extract_audio_data(response: Any) -> str:
    """Return the base64 text at ``result.audioChunk.data`` or ``audioChunk.data``.

    Raises:
        PayloadError: If the envelope is missing or the data is empty.
    """
    root, _ = _envelope_root(response)
    if root is None:
        raise unexpected_payload()
    chunk = root.get("audioChunk")
    if not isinstance(chunk, Mapping):
        raise unexpected_payload()
    data = chunk.get("data")
    if data is None or not str(data).strip():
        raise PayloadError("Upstream returned empty audio payload", param="tts")
    return str(data)


def decode_audio_base64(data: str) -> bytes:
    """Decode base64 that may be unpadded or use the URL-safe alphabet.

    Raises:
        PayloadError: If the text is still not valid base64.
    """
    normalized = _WHITESPACE.sub("", data).translate(_URLSAFE_TO_STANDARD)
    remainder = len(normalized) % 4
    if remainder:
        normalized += "=" * (4 - remainder)
    try:
        return base64.b64decode(normalized, validate=True)
    except (binascii.Error, ValueError):
        raise PayloadError("Upstream returned invalid audio payload", param="tts") from None


def mask_payload_edges(value: str, edge: int = PREVIEW_EDGE_CHARS) -> str:
    """Keep at most ``edge`` characters from each end, never the whole value."""
    if not value:
        return ""
    if len(value) == 1:
        return "*"
    start_length = min(edge, len(value) - 1)
    end_length = min(edge, max(0, len(value) - start_length - 1))
    end = value[len(value) - end_length :] if end_length else ""
    return f"{value[:start_length]}...{end}"


@dataclass(frozen=True, slots=True)
class PayloadStats:
    """Shape of a synthesis response, safe to log."""

    has_result: bool = False
    has_audio_chunk: bool = False
    has_data: bool = False
    data_length: int = 0
    data_mod4: int = 0
    dash_count: int = 0
    underscore_count: int = 0
    has_whitespace: bool = False
    masked_preview: str = ""

    @classmethod
    def from_response(cls, response: Any) -> PayloadStats:
        root, has_result = _envelope_root(response)
        if root is None:
            return cls(has_result=has_result)
        chunk = root.get("audioChunk")
        if not isinstance(chunk, Mapping):
            return cls(has_result=has_result)
        value = chunk.get("data")
        if value is None:
            return cls(has_result=has_result, has_audio_chunk=True)

        raw = str(value)
        return cls(
            has_result=has_result,
            has_audio_chunk=True,
            has_data=True,
            data_length=len(raw),
            data_mod4=len(_WHITESPACE.sub("", raw)) % 4,
            dash_count=raw.count("-"),
            underscore_count=raw.count("_"),
            has_whitespace=bool(_WHITESPACE.search(raw)),
            masked_preview=mask_payload_edges(raw),
        )

    def as_log_fields(self) -> dict[str, Any]:
        """Diagnostic fields without the preview."""
        return {
            "has_result": self.has_result,
            "has_audio_chunk": self.has_audio_chunk,
            "has_data": self.has_data,
            "data_length": self.data_length,
            "data_mod4": self.data_mod4,
            "dash_count": self.dash_count,
            "underscore_count": self.underscore_count,
            "has_whitespace": self.has_whitespace,
        }


__all__ = [
    "PREVIEW_EDGE_CHARS",
    "extract_audio_data",
    "decode_audio_base64",
    "mask_payload_edges",
    "PayloadStats",
]
