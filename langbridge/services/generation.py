"""Lesson generation: from sentence pairs to a timed, stitched audio track.

Generation is strictly sequential. Each sentence is synthesised, normalised,
wrapped in the repeat pattern and measured before the next one starts, and
the timeline offsets are accumulated from those measurements. A lesson is
either persisted in full or not at all; the scratch directory is removed on
every exit path.
"""

from __future__ import annotations

import logging
import shutil
import sqlite3
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple

from ..config import AppConfig
from ..processing.audio import AudioProcessingError, AudioToolkit
from ..processing.speech import (
    SpeechConfigurationError,
    SpeechSynthesisError,
    SpeechSynthesizer,
    resolve_voice_locale,
)
from .events import emit_file_event, emit_task_event
from .naming import slugify, unique_path
from .progress import build_sentence_progress_message, format_progress_message, generation_total_steps
from .storage import LessonRecord, LessonRepository
from .timeline import SentencePair, TimedSentence, TimelineBuilder, TimelineError, validate_generated_timeline


LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], None]

PATTERN_REPETITIONS = 3


class LessonInputError(ValueError):
    """Raised when uploaded lesson text cannot produce a lesson."""


class LessonGenerationError(RuntimeError):
    """Raised when an external capability fails while generating a lesson."""


@dataclass(frozen=True)
class SentenceAudio:
    """A stored single-sentence clip."""

    audio_path: str
    duration: float
    voice_locale: str


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------


def parse_sentence_pairs(source_text: str) -> List[SentencePair]:
    """Pair consecutive non-blank lines as (original, translation).

    A trailing line without a translation is dropped.
    """

    lines = [line.strip() for line in (source_text or "").splitlines()]
    lines = [line for line in lines if line]
    pairs = [
        SentencePair(text=lines[index], translation=lines[index + 1])
        for index in range(0, len(lines) - 1, 2)
    ]
    if len(lines) % 2:
        LOGGER.debug("Ignoring unpaired trailing line: %s", lines[-1][:60])
    if not pairs:
        raise LessonInputError("The lesson file does not contain any sentence pairs.")
    return pairs


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------


class ClipSynthesizer:
    """Write one speech clip per sentence using a :class:`SpeechSynthesizer`."""

    def __init__(self, synthesizer: SpeechSynthesizer) -> None:
        self._synthesizer = synthesizer

    def synthesize_clip(self, text: str, language: str, output_path: Path) -> Path:
        if not text.strip():
            raise LessonInputError("Sentence text must not be empty.")
        voice_locale = resolve_voice_locale(language)
        audio = self._synthesizer.synthesize(text, voice_locale)
        if not audio:
            raise SpeechSynthesisError(f"Text-to-speech returned no audio for '{text[:40]}'")
        output_path.write_bytes(audio)
        LOGGER.debug("Wrote %d bytes of speech to %s", len(audio), output_path)
        return output_path


def build_repeat_pattern(clip: Path, short_silence: Path) -> List[Path]:
    """Return the drill sequence: silence, then the clip three times, each followed by silence."""

    pattern = [short_silence]
    for _ in range(PATTERN_REPETITIONS):
        pattern.extend((clip, short_silence))
    return pattern


class LessonAssembler:
    """Render silences, per-sentence repeated clips and the final track in *work_dir*."""

    def __init__(
        self,
        toolkit: AudioToolkit,
        work_dir: Path,
        *,
        short_silence_seconds: float,
        long_silence_seconds: float,
    ) -> None:
        self._toolkit = toolkit
        self._work_dir = work_dir
        self._short_silence_seconds = short_silence_seconds
        self._long_silence_seconds = long_silence_seconds
        self._short_silence: Optional[Path] = None
        self._long_silence: Optional[Path] = None
        self._long_silence_ms: Optional[float] = None

    @property
    def long_silence_ms(self) -> float:
        if self._long_silence_ms is None:
            raise RuntimeError("prepare_silences() has not been called")
        return self._long_silence_ms

    def prepare_silences(self) -> float:
        """Render both silences once and return the measured long-silence duration."""

        self._short_silence = self._toolkit.make_silence(
            self._short_silence_seconds, self._work_dir / "silence_short.mp3"
        )
        self._long_silence = self._toolkit.make_silence(
            self._long_silence_seconds, self._work_dir / "silence_long.mp3"
        )
        self._long_silence_ms = self._toolkit.probe_duration_ms(self._long_silence)
        LOGGER.debug("Long silence measured at %.1fms", self._long_silence_ms)
        return self._long_silence_ms

    def assemble_sentence(self, index: int, raw_clip: Path) -> Tuple[Path, float]:
        """Return the repeated-clip file for sentence *index* and its measured duration."""

        if self._short_silence is None:
            raise RuntimeError("prepare_silences() has not been called")
        clip = self._toolkit.normalize(raw_clip, self._work_dir / f"clip_{index:04d}.mp3")
        pattern = build_repeat_pattern(clip, self._short_silence)
        repeated = self._toolkit.concat(pattern, self._work_dir / f"repeated_{index:04d}.mp3")
        duration_ms = self._toolkit.probe_duration_ms(repeated)
        return repeated, duration_ms

    def assemble_lesson(self, repeated_clips: Sequence[Path], output_path: Path) -> Path:
        """Join the repeated clips in order with the long silence between them."""

        if self._long_silence is None:
            raise RuntimeError("prepare_silences() has not been called")
        ordered: List[Path] = []
        for index, clip in enumerate(repeated_clips):
            if index:
                ordered.append(self._long_silence)
            ordered.append(clip)
        return self._toolkit.concat(ordered, output_path)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def _log_cleanup_failure(func, path, exc_info) -> None:
    _, error, _ = exc_info
    LOGGER.warning("Could not remove work file %s: %s", path, error)


def _remove_work_dir(work_dir: Path) -> None:
    shutil.rmtree(work_dir, onerror=_log_cleanup_failure)
    if work_dir.exists():
        LOGGER.warning("Work directory %s was left behind", work_dir)
    else:
        LOGGER.debug("Removed work directory %s", work_dir)


def _relative_to_storage(config: AppConfig, path: Path) -> str:
    return path.resolve().relative_to(config.storage_root.resolve()).as_posix()


class LessonGenerator:
    """Generate lessons end to end and persist them through :class:`LessonRepository`."""

    def __init__(
        self,
        config: AppConfig,
        repository: LessonRepository,
        *,
        synthesizer: SpeechSynthesizer,
        toolkit: AudioToolkit,
    ) -> None:
        self._config = config
        self._repository = repository
        self._clips = ClipSynthesizer(synthesizer)
        self._toolkit = toolkit

    @property
    def config(self) -> AppConfig:
        return self._config

    def _language(self, language: Optional[str]) -> str:
        return (language or "").strip() or self._config.lesson.default_language

    def generate(
        self,
        *,
        title: str,
        source_text: str,
        language: Optional[str] = None,
        category: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> LessonRecord:
        """Parse *source_text* into sentence pairs and generate a lesson from them."""

        pairs = parse_sentence_pairs(source_text)
        return self.generate_from_pairs(
            title=title,
            pairs=pairs,
            language=language,
            category=category,
            progress_callback=progress_callback,
        )

    def generate_from_pairs(
        self,
        *,
        title: str,
        pairs: Sequence[SentencePair],
        language: Optional[str] = None,
        category: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> LessonRecord:
        title = (title or "").strip()
        if not title:
            raise LessonInputError("A lesson title is required.")
        if not pairs:
            raise LessonInputError("The lesson file does not contain any sentence pairs.")
        for index, pair in enumerate(pairs):
            if not pair.text.strip():
                raise LessonInputError(f"Sentence {index + 1} has no text.")

        language = self._language(language)
        total_steps = generation_total_steps(len(pairs))
        started = time.perf_counter()
        emit_task_event(
            "generation_started",
            f"Generating lesson '{title}'",
            payload={"title": title, "language": language, "sentences": len(pairs)},
        )

        self._config.work_root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="lesson-", dir=self._config.work_root))
        try:
            audio_file, timeline = self._render(
                pairs, language, work_dir, total_steps, progress_callback
            )
            final_path = unique_path(self._config.lessons_root, slugify(title), extension=".mp3")
            final_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(audio_file), str(final_path))
            emit_file_event("lesson_audio_stored", payload={"path": final_path})
        except SpeechConfigurationError:
            emit_task_event("generation_failed", payload={"title": title, "reason": "configuration"})
            raise
        except (SpeechSynthesisError, AudioProcessingError, TimelineError, OSError) as error:
            emit_task_event(
                "generation_failed",
                payload={"title": title, "error": str(error)},
                level=logging.WARNING,
            )
            raise LessonGenerationError(f"Lesson generation failed: {error}") from error
        finally:
            _remove_work_dir(work_dir)

        try:
            lesson_id = self._repository.add_lesson(
                title=title,
                language=language,
                category=(category or "").strip() or None,
                audio_path=_relative_to_storage(self._config, final_path),
                timeline=timeline,
            )
        except sqlite3.Error as error:
            final_path.unlink(missing_ok=True)
            emit_task_event(
                "generation_failed",
                payload={"title": title, "error": str(error)},
                level=logging.WARNING,
            )
            raise LessonGenerationError(f"Lesson generation failed: {error}") from error

        record = self._repository.get_lesson(lesson_id)
        assert record is not None  # nosec - inserted above
        if progress_callback is not None:
            progress_callback(
                total_steps,
                total_steps,
                format_progress_message("====> Lesson ready", total_steps, total_steps),
            )
        emit_task_event(
            "generation_finished",
            f"Lesson '{title}' ready",
            payload={"lesson_id": lesson_id, "sentences": len(timeline), "duration": record.duration},
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )
        return record

    def _render(
        self,
        pairs: Sequence[SentencePair],
        language: str,
        work_dir: Path,
        total_steps: int,
        progress_callback: Optional[ProgressCallback],
    ) -> Tuple[Path, List[TimedSentence]]:
        settings = self._config.lesson
        assembler = LessonAssembler(
            self._toolkit,
            work_dir,
            short_silence_seconds=settings.short_silence_seconds,
            long_silence_seconds=settings.long_silence_seconds,
        )
        builder = TimelineBuilder(assembler.prepare_silences())
        repeated_clips: List[Path] = []

        for index, pair in enumerate(pairs):
            raw_clip = self._clips.synthesize_clip(
                pair.text, language, work_dir / f"raw_{index:04d}.mp3"
            )
            repeated, duration_ms = assembler.assemble_sentence(index, raw_clip)
            repeated_clips.append(repeated)
            builder.add(pair, duration_ms)
            emit_task_event(
                "sentence_synthesized",
                payload={"index": index, "duration_ms": duration_ms},
                level=logging.DEBUG,
            )
            if progress_callback is not None:
                progress_callback(
                    index + 1,
                    total_steps,
                    build_sentence_progress_message(index, len(pairs), pair.text),
                )

        timeline = builder.build()
        validate_generated_timeline(timeline)
        audio_file = assembler.assemble_lesson(repeated_clips, work_dir / "lesson.mp3")
        return audio_file, timeline

    def generate_sentence_audio(self, text: str, language: Optional[str] = None) -> SentenceAudio:
        """Synthesise and store a single normalised clip under ``sentences_root``."""

        text = (text or "").strip()
        if not text:
            raise LessonInputError("Sentence text must not be empty.")
        language = self._language(language)
        voice_locale = resolve_voice_locale(language)

        self._config.work_root.mkdir(parents=True, exist_ok=True)
        self._config.sentences_root.mkdir(parents=True, exist_ok=True)
        work_dir = Path(tempfile.mkdtemp(prefix="sentence-", dir=self._config.work_root))
        target: Optional[Path] = None
        try:
            raw_clip = self._clips.synthesize_clip(text, language, work_dir / "raw.mp3")
            target = unique_path(self._config.sentences_root, slugify(text)[:40].rstrip("-"), extension=".mp3")
            self._toolkit.normalize(raw_clip, target)
            duration_ms = self._toolkit.probe_duration_ms(target)
        except SpeechConfigurationError:
            raise
        except (SpeechSynthesisError, AudioProcessingError, OSError) as error:
            if target is not None:
                target.unlink(missing_ok=True)
            raise LessonGenerationError(f"Lesson generation failed: {error}") from error
        finally:
            _remove_work_dir(work_dir)

        emit_file_event("sentence_audio_stored", payload={"path": target, "duration_ms": duration_ms})
        return SentenceAudio(
            audio_path=_relative_to_storage(self._config, target),
            duration=round(duration_ms / 1000.0, 3),
            voice_locale=voice_locale,
        )


__all__ = [
    "ClipSynthesizer",
    "LessonAssembler",
    "LessonGenerationError",
    "LessonGenerator",
    "LessonInputError",
    "PATTERN_REPETITIONS",
    "ProgressCallback",
    "SentenceAudio",
    "build_repeat_pattern",
    "parse_sentence_pairs",
]
