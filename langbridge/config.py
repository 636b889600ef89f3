"""Configuration loading utilities for the LangBridge lesson tools."""

from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".langbridge_write_check"

SPEECH_BACKENDS: Tuple[str, ...] = ("google", "edge")


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. The returned flag tells whether a
    fallback was used. When nothing can be prepared ``preferred`` is returned
    unchanged and the caller is left to fail on first use.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


@dataclass(frozen=True)
class LessonSettings:
    """Fixed parameters of the timed audio lesson pipeline."""

    short_silence_seconds: float = 1.0
    long_silence_seconds: float = 2.0
    default_language: str = "es"
    speaking_rate: float = 0.8
    sample_rate: int = 44_100
    speech_backend: str = "google"

    def __post_init__(self) -> None:
        if self.short_silence_seconds <= 0 or self.long_silence_seconds <= 0:
            raise ValueError("Silence durations must be positive")
        if self.speaking_rate <= 0:
            raise ValueError("Speaking rate must be positive")
        if self.sample_rate <= 0:
            raise ValueError("Sample rate must be positive")
        if self.speech_backend not in SPEECH_BACKENDS:
            raise ValueError(
                f"Unknown speech backend '{self.speech_backend}'. "
                f"Expected one of: {', '.join(SPEECH_BACKENDS)}"
            )

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any] | None) -> "LessonSettings":
        if not mapping:
            return cls()
        defaults = cls()
        return cls(
            short_silence_seconds=float(
                mapping.get("short_silence_seconds", defaults.short_silence_seconds)
            ),
            long_silence_seconds=float(
                mapping.get("long_silence_seconds", defaults.long_silence_seconds)
            ),
            default_language=str(mapping.get("default_language", defaults.default_language)),
            speaking_rate=float(mapping.get("speaking_rate", defaults.speaking_rate)),
            sample_rate=int(mapping.get("sample_rate", defaults.sample_rate)),
            speech_backend=str(mapping.get("speech_backend", defaults.speech_backend)).lower(),
        )


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and lesson settings for the application."""

    storage_root: Path
    database_file: Path
    lesson: LessonSettings = field(default_factory=LessonSettings)

    @property
    def lessons_root(self) -> Path:
        """Location of generated lesson tracks."""

        return (self.storage_root / "lessons").resolve()

    @property
    def sentences_root(self) -> Path:
        """Location of single-sentence clips."""

        return (self.storage_root / "sentences").resolve()

    @property
    def work_root(self) -> Path:
        """Scratch space for temporary generation directories."""

        return (self.storage_root / "_work").resolve()

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".langbridge" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()
        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        lesson = LessonSettings.from_mapping(mapping.get("lesson"))
        return cls(storage_root=storage_root, database_file=database_file, lesson=lesson)


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "LessonSettings", "SPEECH_BACKENDS", "load_config"]
