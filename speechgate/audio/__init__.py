"""Audio helpers: WAV inspection, upload format detection and ffmpeg normalization."""

from .detection import DetectedFormat, detect_format
from .normalizer import AudioNormalizer, build_ffmpeg_args
from .wav import PCM16_REMEDIATION, WavHeaderInfo, encode_pcm16_wav, inspect_wav, require_pcm16

__all__ = [
    "DetectedFormat",
    "detect_format",
    "AudioNormalizer",
    "build_ffmpeg_args",
    "PCM16_REMEDIATION",
    "WavHeaderInfo",
    "encode_pcm16_wav",
    "inspect_wav",
    "require_pcm16",
]
