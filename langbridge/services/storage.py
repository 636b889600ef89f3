"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .events import emit_structured_event
from .timeline import TimedSentence, timeline_duration, timeline_from_payload, timeline_to_payload


@dataclass
class LessonRecord:
    id: int
    title: str
    language: str
    category: Optional[str]
    original_text: str
    translated_text: str
    audio_path: str
    created_at: str
    timeline: List[TimedSentence] = field(default_factory=list)

    @property
    def sentence_count(self) -> int:
        return len(self.timeline)

    @property
    def duration(self) -> float:
        return timeline_duration(self.timeline)


LOGGER = logging.getLogger(__name__)

_LESSON_COLUMNS = (
    "id, title, language, category, original_text, translated_text, "
    "timeline, audio_path, created_at"
)


class LessonRepository:
    """Store generated lessons together with their sentence timelines."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = emit_structured_event,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting ``DB_QUERY`` events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        """Emit a structured event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        try:
            yield event_payload
        except Exception as exc:
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            event_payload.setdefault("status", "ok")
            filtered = {key: value for key, value in event_payload.items() if value is not None}
            self._event_emitter(
                "DB_QUERY",
                action,
                payload=filtered,
                duration_ms=(time.perf_counter() - start) * 1000.0,
                level=logging.DEBUG,
            )

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] = (),
        *,
        action: str,
    ) -> sqlite3.Cursor:
        params = tuple(parameters)
        with self._track_db_event(action, table="lessons", parameter_count=len(params)) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount >= 0:
                event["rowcount"] = int(cursor.rowcount)
            return cursor

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection that commits on success and is always closed."""

        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> LessonRecord:
        payload = json.loads(row["timeline"] or "[]")
        return LessonRecord(
            id=int(row["id"]),
            title=row["title"],
            language=row["language"],
            category=row["category"],
            original_text=row["original_text"],
            translated_text=row["translated_text"],
            audio_path=row["audio_path"],
            created_at=row["created_at"],
            timeline=timeline_from_payload(payload),
        )

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    def add_lesson(
        self,
        *,
        title: str,
        language: str,
        audio_path: str,
        timeline: Sequence[TimedSentence],
        category: Optional[str] = None,
        original_text: Optional[str] = None,
        translated_text: Optional[str] = None,
    ) -> int:
        """Insert a lesson and return its id.

        ``original_text`` and ``translated_text`` default to the newline-joined
        sentences of *timeline*.
        """

        if original_text is None:
            original_text = "\n".join(entry.text for entry in timeline)
        if translated_text is None:
            translated_text = "\n".join(entry.translation for entry in timeline)
        created_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
        LOGGER.debug("Adding lesson '%s' (%d sentences)", title, len(timeline))
        with self._track_db_event(
            "add_lesson", title=title, language=language, sentences=len(timeline)
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    """
                    INSERT INTO lessons(
                        title,
                        language,
                        category,
                        original_text,
                        translated_text,
                        timeline,
                        audio_path,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        title,
                        language,
                        category,
                        original_text,
                        translated_text,
                        json.dumps(timeline_to_payload(timeline), ensure_ascii=False),
                        audio_path,
                        created_at,
                    ),
                    action="lessons.insert",
                )
                lesson_id = int(cursor.lastrowid)
            event["lesson_id"] = lesson_id
        LOGGER.info("Stored lesson '%s' as id=%s", title, lesson_id)
        return lesson_id

    def get_lesson(self, lesson_id: int) -> Optional[LessonRecord]:
        LOGGER.debug("Fetching lesson id=%s", lesson_id)
        with self._track_db_event("get_lesson", lesson_id=lesson_id) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    f"SELECT {_LESSON_COLUMNS} FROM lessons WHERE id = ?",
                    (lesson_id,),
                    action="lessons.get",
                )
                row = cursor.fetchone()
            event["found"] = row is not None
        return self._row_to_record(row) if row else None

    def list_lessons(self, *, language: Optional[str] = None) -> List[LessonRecord]:
        """Return lessons newest first, optionally filtered by *language*."""

        statement = f"SELECT {_LESSON_COLUMNS} FROM lessons"
        params: List[Any] = []
        if language:
            statement += " WHERE language = ?"
            params.append(language)
        statement += " ORDER BY created_at DESC, id DESC"
        with self._track_db_event("list_lessons", language=language) as event:
            with self._connect() as connection:
                rows = self._execute(
                    connection, statement, params, action="lessons.list"
                ).fetchall()
            event["count"] = len(rows)
        return [self._row_to_record(row) for row in rows]

    def count_lessons(self) -> int:
        with self._connect() as connection:
            row = self._execute(
                connection, "SELECT COUNT(*) FROM lessons", action="lessons.count"
            ).fetchone()
        return int(row[0]) if row else 0

    def remove_lesson(self, lesson_id: int) -> bool:
        """Delete the lesson row; return ``False`` when it did not exist."""

        LOGGER.debug("Removing lesson id=%s", lesson_id)
        with self._track_db_event("remove_lesson", lesson_id=lesson_id) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "DELETE FROM lessons WHERE id = ?",
                    (lesson_id,),
                    action="lessons.delete",
                )
                removed = cursor.rowcount > 0
            event["result"] = "deleted" if removed else "missing"
        return removed


__all__ = ["LessonRecord", "LessonRepository"]
