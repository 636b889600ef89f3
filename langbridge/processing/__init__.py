"""Speech and audio backends used by lesson generation."""

from .audio import AudioProcessingError, AudioToolkit, FFmpegToolkit
from .speech import (
    EdgeSpeechSynthesizer,
    GoogleCloudSpeechSynthesizer,
    SpeechConfigurationError,
    SpeechError,
    SpeechSynthesisError,
    SpeechSynthesizer,
    build_speech_synthesizer,
    resolve_voice_locale,
)

__all__ = [
    "AudioProcessingError",
    "AudioToolkit",
    "EdgeSpeechSynthesizer",
    "FFmpegToolkit",
    "GoogleCloudSpeechSynthesizer",
    "SpeechConfigurationError",
    "SpeechError",
    "SpeechSynthesisError",
    "SpeechSynthesizer",
    "build_speech_synthesizer",
    "resolve_voice_locale",
]
