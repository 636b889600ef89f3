"""Naming helpers for stored lesson and sentence audio."""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from pathlib import Path
from typing import Optional

__all__ = [
    "slugify",
    "build_timestamped_name",
    "unique_path",
]


def slugify(value: str) -> str:
    """Return an ASCII, filesystem-friendly representation of *value*."""

    normalized = unicodedata.normalize("NFKD", value or "")
    ascii_value = normalized.encode("ascii", "ignore").decode("ascii")
    ascii_value = ascii_value.strip().lower()
    ascii_value = re.sub(r"[^a-z0-9]+", "-", ascii_value)
    ascii_value = re.sub(r"-+", "-", ascii_value).strip("-")
    return ascii_value[:60].rstrip("-") or "lesson"


def build_timestamped_name(
    stem: str,
    *,
    timestamp: Optional[str] = None,
    sequence: Optional[int] = None,
    extension: str = "",
) -> str:
    """Return ``<stem>-<timestamp>[-NNN]<extension>``."""

    stamp = timestamp or datetime.now().strftime("%Y%m%d-%H%M%S")
    components = [stem or "lesson", stamp]
    if sequence is not None:
        components.append(f"{sequence:03d}")
    suffix = ""
    if extension:
        suffix = extension if extension.startswith(".") else f".{extension}"
        suffix = suffix.lower()
    return "-".join(components) + suffix


def unique_path(directory: Path, stem: str, *, extension: str, timestamp: Optional[str] = None) -> Path:
    """Return a path in *directory* that does not exist yet."""

    stamp = timestamp or datetime.now().strftime("%Y%m%d-%H%M%S")
    candidate = directory / build_timestamped_name(stem, timestamp=stamp, extension=extension)
    sequence = 1
    while candidate.exists():
        candidate = directory / build_timestamped_name(
            stem, timestamp=stamp, sequence=sequence, extension=extension
        )
        sequence += 1
    return candidate
