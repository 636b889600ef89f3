"""Text-to-speech backends used to synthesise sentence clips."""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Protocol

from ..config import LessonSettings


LOGGER = logging.getLogger(__name__)

CREDENTIALS_ENV_VAR = "GOOGLE_CREDENTIALS_BASE64"

LANGUAGE_LOCALES: Dict[str, str] = {
    "es": "es-ES",
    "en": "en-US",
    "fr": "fr-FR",
    "de": "de-DE",
    "it": "it-IT",
    "pt": "pt-PT",
    "ja": "ja-JP",
    "ko": "ko-KR",
    "zh": "zh-CN",
}

EDGE_VOICES: Dict[str, str] = {
    "es-ES": "es-ES-ElviraNeural",
    "en-US": "en-US-AriaNeural",
    "fr-FR": "fr-FR-DeniseNeural",
    "de-DE": "de-DE-KatjaNeural",
    "it-IT": "it-IT-ElsaNeural",
    "pt-PT": "pt-PT-RaquelNeural",
    "ja-JP": "ja-JP-NanamiNeural",
    "ko-KR": "ko-KR-SunHiNeural",
    "zh-CN": "zh-CN-XiaoxiaoNeural",
}


class SpeechError(RuntimeError):
    """Base class for speech synthesis failures."""


class SpeechConfigurationError(SpeechError):
    """Raised when a backend is missing credentials or its client library."""


class SpeechSynthesisError(SpeechError):
    """Raised when the remote service rejects or fails a request."""


class SpeechSynthesizer(Protocol):
    """Interface implemented by text-to-speech backends."""

    def synthesize(self, text: str, voice_locale: str) -> bytes:
        """Return MP3 audio for *text* spoken in *voice_locale*."""


def resolve_voice_locale(language: str) -> str:
    """Map a short language code to a full locale; unknown codes pass through."""

    code = (language or "").strip()
    return LANGUAGE_LOCALES.get(code.lower(), code)


def load_service_account_info(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Decode the base64 service-account JSON from the environment."""

    environ = os.environ if environ is None else environ
    encoded = (environ.get(CREDENTIALS_ENV_VAR) or "").strip()
    if not encoded:
        raise SpeechConfigurationError(
            f"Google Cloud credentials are not configured. Set {CREDENTIALS_ENV_VAR}."
        )
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
        info = json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, ValueError) as error:
        raise SpeechConfigurationError(
            f"{CREDENTIALS_ENV_VAR} does not contain base64-encoded service account JSON."
        ) from error
    if not isinstance(info, dict):
        raise SpeechConfigurationError(f"{CREDENTIALS_ENV_VAR} must encode a JSON object.")
    return info


class GoogleCloudSpeechSynthesizer:
    """Google Cloud Text-to-Speech with a neutral voice and a fixed rate."""

    def __init__(
        self,
        *,
        speaking_rate: float = 0.8,
        client: Any = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._speaking_rate = speaking_rate
        self._client = client
        self._environ = environ

    def _texttospeech(self):
        try:
            from google.cloud import texttospeech
        except ImportError as exc:  # pragma: no cover - exercised in runtime, not tests
            raise SpeechConfigurationError("google-cloud-texttospeech is not installed") from exc
        return texttospeech

    def _get_client(self):
        if self._client is not None:
            return self._client
        info = load_service_account_info(self._environ)
        texttospeech = self._texttospeech()
        try:
            from google.oauth2 import service_account
        except ImportError as exc:  # pragma: no cover - exercised in runtime, not tests
            raise SpeechConfigurationError("google-auth is not installed") from exc
        try:
            credentials = service_account.Credentials.from_service_account_info(info)
        except ValueError as error:
            raise SpeechConfigurationError(f"Invalid service account credentials: {error}") from error
        self._client = texttospeech.TextToSpeechClient(credentials=credentials)
        LOGGER.debug("Created Google Cloud TTS client for %s", info.get("client_email", "<unknown>"))
        return self._client

    def synthesize(self, text: str, voice_locale: str) -> bytes:
        if not text.strip():
            raise ValueError("Cannot synthesise empty text")
        client = self._get_client()
        texttospeech = self._texttospeech()
        try:
            response = client.synthesize_speech(
                input=texttospeech.SynthesisInput(text=text),
                voice=texttospeech.VoiceSelectionParams(
                    language_code=voice_locale,
                    ssml_gender=texttospeech.SsmlVoiceGender.NEUTRAL,
                ),
                audio_config=texttospeech.AudioConfig(
                    audio_encoding=texttospeech.AudioEncoding.MP3,
                    speaking_rate=self._speaking_rate,
                ),
            )
        except Exception as error:
            raise SpeechSynthesisError(str(error) or error.__class__.__name__) from error
        audio = bytes(response.audio_content or b"")
        if not audio:
            raise SpeechSynthesisError(f"Text-to-speech returned no audio for locale {voice_locale}")
        LOGGER.debug("Synthesised %d bytes for %d characters (%s)", len(audio), len(text), voice_locale)
        return audio


def _import_edge_tts():
    try:
        import edge_tts
    except ImportError as exc:  # pragma: no cover - exercised in runtime, not tests
        raise SpeechConfigurationError("edge-tts is not installed") from exc
    return edge_tts


def _edge_rate(speaking_rate: float) -> str:
    percent = int(round((speaking_rate - 1.0) * 100))
    return f"{percent:+d}%"


class EdgeSpeechSynthesizer:
    """Microsoft Edge online voices through :mod:`edge_tts`; no credentials needed."""

    def __init__(self, *, speaking_rate: float = 0.8, voices: Optional[Mapping[str, str]] = None) -> None:
        self._rate = _edge_rate(speaking_rate)
        self._voices = dict(EDGE_VOICES if voices is None else voices)

    def voice_for(self, voice_locale: str) -> str:
        """Return the configured voice, or the first catalogue voice for *voice_locale*."""

        voice = self._voices.get(voice_locale)
        if voice is not None:
            return voice
        try:
            candidates = asyncio.run(self._find_voices(voice_locale))
        except SpeechError:
            raise
        except Exception as error:
            raise SpeechSynthesisError(
                f"Could not load the edge voice list: {str(error) or error.__class__.__name__}"
            ) from error
        if not candidates:
            raise SpeechSynthesisError(f"No edge voice available for locale '{voice_locale}'")
        voice = candidates[0]["ShortName"]
        self._voices[voice_locale] = voice
        LOGGER.debug("Using edge voice %s for %s", voice, voice_locale)
        return voice

    async def _find_voices(self, voice_locale: str) -> List[Dict[str, Any]]:
        edge_tts = _import_edge_tts()
        manager = await edge_tts.VoicesManager.create()
        return list(manager.find(Locale=voice_locale))

    async def _collect(self, text: str, voice: str) -> bytes:
        edge_tts = _import_edge_tts()
        communicate = edge_tts.Communicate(text, voice, rate=self._rate)
        chunks = []
        async for chunk in communicate.stream():
            if chunk.get("type") == "audio":
                chunks.append(chunk["data"])
        return b"".join(chunks)

    def synthesize(self, text: str, voice_locale: str) -> bytes:
        if not text.strip():
            raise ValueError("Cannot synthesise empty text")
        voice = self.voice_for(voice_locale)
        try:
            audio = asyncio.run(self._collect(text, voice))
        except SpeechError:
            raise
        except Exception as error:
            raise SpeechSynthesisError(str(error) or error.__class__.__name__) from error
        if not audio:
            raise SpeechSynthesisError(f"Text-to-speech returned no audio for voice {voice}")
        LOGGER.debug("Synthesised %d bytes with %s", len(audio), voice)
        return audio


def build_speech_synthesizer(settings: LessonSettings) -> SpeechSynthesizer:
    """Return the backend selected by ``settings.speech_backend``."""

    if settings.speech_backend == "edge":
        return EdgeSpeechSynthesizer(speaking_rate=settings.speaking_rate)
    return GoogleCloudSpeechSynthesizer(speaking_rate=settings.speaking_rate)


__all__ = [
    "CREDENTIALS_ENV_VAR",
    "EdgeSpeechSynthesizer",
    "GoogleCloudSpeechSynthesizer",
    "LANGUAGE_LOCALES",
    "SpeechConfigurationError",
    "SpeechError",
    "SpeechSynthesisError",
    "SpeechSynthesizer",
    "build_speech_synthesizer",
    "load_service_account_info",
    "resolve_voice_locale",
]
