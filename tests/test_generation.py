from __future__ import annotations

import logging
import os
import sqlite3
from pathlib import Path

import pytest

import langbridge.services.generation as generation_module
from conftest import FakeSynthesizer, FakeToolkit
from langbridge.bootstrap import Bootstrapper
from langbridge.config import AppConfig
from langbridge.processing.speech import SpeechConfigurationError, SpeechSynthesisError
from langbridge.services.generation import (
    LessonAssembler,
    LessonGenerationError,
    LessonGenerator,
    LessonInputError,
    build_repeat_pattern,
    parse_sentence_pairs,
)
from langbridge.services.storage import LessonRepository
from langbridge.services.timeline import SentencePair


LESSON_TEXT = "Hola\n안녕\n\n  Adiós  \n잘가\n"


def _generator(config: AppConfig, repository: LessonRepository, **kwargs) -> LessonGenerator:
    synthesizer = kwargs.pop("synthesizer", FakeSynthesizer())
    toolkit = kwargs.pop("toolkit", FakeToolkit({"Hola": 600, "Adiós": 800}))
    return LessonGenerator(config, repository, synthesizer=synthesizer, toolkit=toolkit)


def test_parse_sentence_pairs_skips_blank_lines_and_unpaired_tail() -> None:
    pairs = parse_sentence_pairs(LESSON_TEXT + "solo\n")

    assert pairs == [SentencePair("Hola", "안녕"), SentencePair("Adiós", "잘가")]


@pytest.mark.parametrize("text", ["", "   \n\n", "only one line"])
def test_parse_sentence_pairs_rejects_inputs_without_pairs(text: str) -> None:
    with pytest.raises(LessonInputError):
        parse_sentence_pairs(text)


def test_repeat_pattern_has_seven_alternating_segments(tmp_path: Path) -> None:
    clip = tmp_path / "clip.mp3"
    silence = tmp_path / "short.mp3"

    pattern = build_repeat_pattern(clip, silence)

    assert pattern == [silence, clip, silence, clip, silence, clip, silence]


def test_assembler_measures_long_silence_once(tmp_path: Path) -> None:
    toolkit = FakeToolkit()
    assembler = LessonAssembler(
        toolkit, tmp_path, short_silence_seconds=1.0, long_silence_seconds=2.0
    )

    assert assembler.prepare_silences() == 2000.0
    assert [call for call in toolkit.calls if call[0] == "make_silence"] == [
        ("make_silence", 1.0),
        ("make_silence", 2.0),
    ]


def test_assembler_requires_prepared_silences(tmp_path: Path) -> None:
    assembler = LessonAssembler(
        FakeToolkit(), tmp_path, short_silence_seconds=1.0, long_silence_seconds=2.0
    )
    with pytest.raises(RuntimeError):
        assembler.assemble_sentence(0, tmp_path / "raw.mp3")


def test_generate_builds_timeline_from_measured_durations(
    temp_config: AppConfig, repository: LessonRepository
) -> None:
    synthesizer = FakeSynthesizer()
    toolkit = FakeToolkit({"Hola": 600, "Adiós": 800})
    generator = _generator(temp_config, repository, synthesizer=synthesizer, toolkit=toolkit)

    lesson = generator.generate(title="Saludos básicos", source_text=LESSON_TEXT)

    assert [(entry.start, entry.end) for entry in lesson.timeline] == [
        (0.0, pytest.approx(5.8)),
        (pytest.approx(7.8), pytest.approx(14.2)),
    ]
    assert synthesizer.calls == [("Hola", "es-ES"), ("Adiós", "es-ES")]
    assert lesson.language == "es"
    assert lesson.original_text == "Hola\nAdiós"
    assert lesson.translated_text == "안녕\n잘가"

    # The final join keeps sentence order with one long silence in between.
    final_join = [path.name for path in toolkit.concat_calls[-1]]
    assert final_join == ["repeated_0000.mp3", "silence_long.mp3", "repeated_0001.mp3"]
    for sentence_join in toolkit.concat_calls[:-1]:
        names = [path.name for path in sentence_join]
        assert len(names) == 7
        assert names[0::2] == ["silence_short.mp3"] * 4

    audio_file = temp_config.storage_root / lesson.audio_path
    assert audio_file.exists()
    assert audio_file.parent == temp_config.lessons_root
    assert audio_file.name.startswith("saludos-basicos-")
    assert list(temp_config.work_root.iterdir()) == []


def test_generate_reports_progress_per_sentence(
    temp_config: AppConfig, repository: LessonRepository
) -> None:
    updates = []
    generator = _generator(temp_config, repository)

    generator.generate(
        title="Progress",
        source_text=LESSON_TEXT,
        language="ko",
        progress_callback=lambda done, total, message: updates.append((done, total, message)),
    )

    assert [(done, total) for done, total, _ in updates] == [(1, 3), (2, 3), (3, 3)]
    assert updates[0][2].startswith("====> Sentence 1/2: Hola")
    assert updates[-1][2].endswith("(100%)")


def test_generate_rejects_bad_input_before_external_calls(
    temp_config: AppConfig, repository: LessonRepository
) -> None:
    synthesizer = FakeSynthesizer()
    toolkit = FakeToolkit()
    generator = _generator(temp_config, repository, synthesizer=synthesizer, toolkit=toolkit)

    with pytest.raises(LessonInputError):
        generator.generate(title="Empty", source_text="\n\n")
    with pytest.raises(LessonInputError):
        generator.generate(title="   ", source_text=LESSON_TEXT)

    assert synthesizer.calls == []
    assert toolkit.calls == []


def test_synthesis_failure_aborts_without_partial_lesson(
    temp_config: AppConfig, repository: LessonRepository
) -> None:
    synthesizer = FakeSynthesizer(fail_on="Adiós", error=SpeechSynthesisError("quota exceeded"))
    generator = _generator(temp_config, repository, synthesizer=synthesizer)

    with pytest.raises(LessonGenerationError) as excinfo:
        generator.generate(title="Broken", source_text=LESSON_TEXT)

    assert str(excinfo.value) == "Lesson generation failed: quota exceeded"
    assert isinstance(excinfo.value.__cause__, SpeechSynthesisError)
    assert repository.count_lessons() == 0
    assert list(temp_config.lessons_root.iterdir()) == []
    assert list(temp_config.work_root.iterdir()) == []


def test_configuration_errors_are_raised_verbatim(
    temp_config: AppConfig, repository: LessonRepository
) -> None:
    error = SpeechConfigurationError("Google Cloud credentials are not configured.")
    generator = _generator(temp_config, repository, synthesizer=FakeSynthesizer(error=error))

    with pytest.raises(SpeechConfigurationError) as excinfo:
        generator.generate(title="No creds", source_text=LESSON_TEXT)

    assert excinfo.value is error
    assert list(temp_config.work_root.iterdir()) == []


def test_audio_tool_failure_is_wrapped(temp_config: AppConfig, repository: LessonRepository) -> None:
    generator = _generator(temp_config, repository, toolkit=FakeToolkit(fail_on="concat"))

    with pytest.raises(LessonGenerationError, match="simulated error"):
        generator.generate(title="Concat", source_text=LESSON_TEXT)

    assert repository.count_lessons() == 0
    assert list(temp_config.work_root.iterdir()) == []


def test_database_failure_removes_stored_audio(
    temp_config: AppConfig, repository: LessonRepository, monkeypatch
) -> None:
    def failing_add_lesson(**_kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(repository, "add_lesson", failing_add_lesson)
    generator = _generator(temp_config, repository)

    with pytest.raises(LessonGenerationError, match="database is locked"):
        generator.generate(title="Locked", source_text=LESSON_TEXT)

    assert list(temp_config.lessons_root.iterdir()) == []


def test_generate_sentence_audio_stores_normalised_clip(
    temp_config: AppConfig, repository: LessonRepository
) -> None:
    synthesizer = FakeSynthesizer()
    generator = _generator(temp_config, repository, synthesizer=synthesizer, toolkit=FakeToolkit({"Bonjour": 750}))

    clip = generator.generate_sentence_audio("Bonjour", "fr")

    assert clip.duration == 0.75
    assert clip.voice_locale == "fr-FR"
    assert clip.audio_path.startswith("sentences/bonjour-")
    assert (temp_config.storage_root / clip.audio_path).exists()
    assert synthesizer.calls == [("Bonjour", "fr-FR")]
    assert list(temp_config.work_root.iterdir()) == []


def test_generate_sentence_audio_rejects_blank_text(
    temp_config: AppConfig, repository: LessonRepository
) -> None:
    with pytest.raises(LessonInputError):
        _generator(temp_config, repository).generate_sentence_audio("   ")


def test_sentence_audio_name_has_no_dangling_separator(
    temp_config: AppConfig, repository: LessonRepository
) -> None:
    text = "a" * 39 + " bonjour"
    generator = _generator(temp_config, repository)

    clip = generator.generate_sentence_audio(text, "fr")

    name = Path(clip.audio_path).name
    assert name.startswith("a" * 39 + "-")
    assert "--" not in name


class BootstrappingToolkit(FakeToolkit):
    """Toolkit that re-runs startup bootstrap in the middle of a generation."""

    def __init__(self, config: AppConfig, **kwargs) -> None:
        super().__init__(**kwargs)
        self._config = config

    def normalize(self, source: Path, output_path: Path) -> Path:
        Bootstrapper(self._config).initialize()
        return super().normalize(source, output_path)


def test_concurrent_bootstrap_leaves_running_generation_intact(
    temp_config: AppConfig, repository: LessonRepository
) -> None:
    toolkit = BootstrappingToolkit(temp_config, clip_durations_ms={"Hola": 600, "Adiós": 800})
    generator = _generator(temp_config, repository, toolkit=toolkit)

    lesson = generator.generate(title="Busy", source_text=LESSON_TEXT)

    assert lesson.sentence_count == 2
    assert repository.count_lessons() == 1


def test_work_dir_cleanup_failures_are_logged(tmp_path: Path, monkeypatch, caplog) -> None:
    work_dir = tmp_path / "lesson-stuck"
    work_dir.mkdir()
    (work_dir / "clip_0000.mp3").write_bytes(b"clip")

    def refuse_unlink(path, *args, **kwargs):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(os, "unlink", refuse_unlink)

    with caplog.at_level(logging.WARNING, logger=generation_module.__name__):
        generation_module._remove_work_dir(work_dir)

    messages = [record.getMessage() for record in caplog.records]
    assert any("clip_0000.mp3" in message for message in messages)
    assert any("left behind" in message for message in messages)
