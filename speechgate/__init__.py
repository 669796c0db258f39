"""OpenAI-compatible speech gateway core backed by Yandex SpeechKit."""

from .asr_service import SpeechRecognitionService
from .tts_service import SynthesisResult, TextToSpeechService

__version__ = "0.1.0"

__all__ = ["SpeechRecognitionService", "SynthesisResult", "TextToSpeechService", "__version__"]
