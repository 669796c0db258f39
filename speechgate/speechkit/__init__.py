"""SpeechKit upstream client and the audio formats it speaks."""

from .client import SpeechKitClient, build_synthesis_body, map_upstream_status
from .formats import AudioCodec, AudioFormat, AudioFormatDescriptor
from .payload import PayloadStats, decode_audio_base64, extract_audio_data, mask_payload_edges

__all__ = [
    "SpeechKitClient",
    "build_synthesis_body",
    "map_upstream_status",
    "AudioCodec",
    "AudioFormat",
    "AudioFormatDescriptor",
    "PayloadStats",
    "decode_audio_base64",
    "extract_audio_data",
    "mask_payload_edges",
]
