"""Plain-text listing of stored lessons."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, List

from ..services.storage import LessonRecord, LessonRepository


@dataclass
class ConsoleSection:
    title: str
    entries: Iterable[str]


def format_clock(seconds: float) -> str:
    minutes, remainder = divmod(max(seconds, 0.0), 60)
    return f"{int(minutes):02d}:{remainder:06.3f}"


class ConsoleUI:
    """Print every lesson with its sentence timeline."""

    def __init__(self, repository: LessonRepository, *, writer: Callable[[str], None] = print) -> None:
        self._repository = repository
        self._write = writer

    def run(self) -> None:
        self._write("LangBridge – Lessons")
        self._write("=" * 40)
        lessons = self._repository.list_lessons()
        if not lessons:
            self._write("(no lessons yet)")
            return
        for section in self._build_sections(lessons):
            self._write(section.title)
            self._write("-" * len(section.title))
            for entry in section.entries:
                self._write(entry)
            self._write("")

    def _build_sections(self, lessons: List[LessonRecord]) -> Iterable[ConsoleSection]:
        for lesson in lessons:
            title = f"#{lesson.id} {lesson.title} [{lesson.language}]"
            if lesson.category:
                title += f" – {lesson.category}"
            yield ConsoleSection(title=title, entries=self._format_timeline(lesson))

    @staticmethod
    def _format_timeline(lesson: LessonRecord) -> Iterable[str]:
        yield f"  {lesson.sentence_count} sentences, {format_clock(lesson.duration)} ({lesson.audio_path})"
        for index, entry in enumerate(lesson.timeline, start=1):
            yield (
                f"  {index:>3}. {format_clock(entry.start)}–{format_clock(entry.end)}  "
                f"{entry.text} / {entry.translation}"
            )


__all__ = ["ConsoleUI", "format_clock"]
