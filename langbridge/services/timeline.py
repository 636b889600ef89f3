"""Sentence timing data shared by lesson generation and playback.

A lesson timeline is the ordered list of :class:`TimedSentence` entries that
is stored next to the generated audio track. Generation produces it once with
:class:`TimelineBuilder`; playback reads it any number of times.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence


LOGGER = logging.getLogger(__name__)


class TimelineError(ValueError):
    """Raised when a persisted timeline cannot be used."""


@dataclass(frozen=True)
class SentencePair:
    """One original sentence and its translation, in upload order."""

    text: str
    translation: str


@dataclass(frozen=True)
class TimedSentence:
    """A sentence pair placed on the lesson track, in seconds."""

    text: str
    translation: str
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start

    def contains(self, seconds: float) -> bool:
        """Return ``True`` when *seconds* falls in ``[start, end)``."""

        return self.start <= seconds < self.end


class TimelineBuilder:
    """Accumulate measured per-sentence durations into absolute offsets.

    ``gap_ms`` is the measured length of the silence inserted between two
    sentences. It is added after every sentence except the last, which is
    only known once :meth:`build` is called.
    """

    def __init__(self, gap_ms: float) -> None:
        if gap_ms < 0:
            raise ValueError("gap_ms must not be negative")
        self._gap_ms = float(gap_ms)
        self._entries: List[tuple[SentencePair, float]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, pair: SentencePair, duration_ms: float) -> None:
        """Append the rendered repeated-clip duration for *pair*."""

        if duration_ms <= 0:
            raise ValueError(f"Sentence duration must be positive, got {duration_ms}ms")
        self._entries.append((pair, float(duration_ms)))

    def build(self) -> List[TimedSentence]:
        cursor_ms = 0.0
        timeline: List[TimedSentence] = []
        last_index = len(self._entries) - 1
        for index, (pair, duration_ms) in enumerate(self._entries):
            start = cursor_ms / 1000
            end = (cursor_ms + duration_ms) / 1000
            timeline.append(
                TimedSentence(text=pair.text, translation=pair.translation, start=start, end=end)
            )
            cursor_ms += duration_ms
            if index < last_index:
                cursor_ms += self._gap_ms
        LOGGER.debug(
            "Built timeline with %d sentences spanning %.3fs", len(timeline), cursor_ms / 1000
        )
        return timeline


def build_timeline(
    pairs: Sequence[SentencePair],
    durations_ms: Sequence[float],
    gap_ms: float,
) -> List[TimedSentence]:
    """Functional shortcut around :class:`TimelineBuilder`."""

    if len(pairs) != len(durations_ms):
        raise ValueError(
            f"Expected one duration per sentence ({len(pairs)}), got {len(durations_ms)}"
        )
    builder = TimelineBuilder(gap_ms)
    for pair, duration_ms in zip(pairs, durations_ms):
        builder.add(pair, duration_ms)
    return builder.build()


def validate_generated_timeline(timeline: Sequence[TimedSentence]) -> None:
    """Check the invariants every freshly generated timeline satisfies."""

    previous: Optional[TimedSentence] = None
    for index, entry in enumerate(timeline):
        if not entry.end > entry.start:
            raise TimelineError(
                f"Sentence {index} ends at {entry.end} which is not after its start {entry.start}"
            )
        if previous is not None and entry.start < previous.end:
            raise TimelineError(
                f"Sentence {index} starts at {entry.start} before sentence {index - 1} ends at {previous.end}"
            )
        previous = entry


def timeline_duration(timeline: Sequence[TimedSentence]) -> float:
    return max((entry.end for entry in timeline), default=0.0)


def timeline_to_payload(timeline: Iterable[TimedSentence]) -> List[Dict[str, Any]]:
    """Return the persisted JSON shape, rounded to milliseconds."""

    return [
        {
            "text": entry.text,
            "translation": entry.translation,
            "start": round(entry.start, 3),
            "end": round(entry.end, 3),
        }
        for entry in timeline
    ]


def timeline_from_payload(data: Any) -> List[TimedSentence]:
    """Parse a persisted timeline.

    Overlapping windows are accepted because stored timelines may have been
    edited by hand after generation.
    """

    if not isinstance(data, (list, tuple)):
        raise TimelineError("Timeline must be a list of sentence entries")

    timeline: List[TimedSentence] = []
    for index, raw in enumerate(data):
        if not isinstance(raw, Mapping):
            raise TimelineError(f"Timeline entry {index} is not an object")
        missing = [key for key in ("text", "translation", "start", "end") if key not in raw]
        if missing:
            raise TimelineError(f"Timeline entry {index} is missing {', '.join(missing)}")
        try:
            start = float(raw["start"])
            end = float(raw["end"])
        except (TypeError, ValueError) as error:
            raise TimelineError(f"Timeline entry {index} has non-numeric bounds") from error
        if not end > start:
            raise TimelineError(f"Timeline entry {index} ends at {end}, not after {start}")
        timeline.append(
            TimedSentence(
                text=str(raw["text"]),
                translation=str(raw["translation"]),
                start=start,
                end=end,
            )
        )
    return timeline


__all__ = [
    "SentencePair",
    "TimedSentence",
    "TimelineBuilder",
    "TimelineError",
    "build_timeline",
    "timeline_duration",
    "timeline_from_payload",
    "timeline_to_payload",
    "validate_generated_timeline",
]
