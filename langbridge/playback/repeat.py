"""Repeat modes of the playback engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple, Union

from ..services.timeline import TimedSentence


@dataclass(frozen=True)
class NoRepeat:
    """Free play: the active sentence follows the play-head."""

    def window(self, timeline: Sequence[TimedSentence]) -> None:
        return None


@dataclass(frozen=True)
class SingleRepeat:
    """Loop one sentence."""

    index: int

    def window(self, timeline: Sequence[TimedSentence]) -> Tuple[float, float]:
        entry = timeline[self.index]
        return entry.start, entry.end


@dataclass(frozen=True)
class RangeRepeat:
    """Loop everything between two sentences, in the order they were toggled."""

    first: int
    second: int

    def window(self, timeline: Sequence[TimedSentence]) -> Tuple[float, float]:
        """Return the union window ``[min(start), max(end))`` of both endpoints."""

        a = timeline[self.first]
        b = timeline[self.second]
        return min(a.start, b.start), max(a.end, b.end)


RepeatState = Union[NoRepeat, SingleRepeat, RangeRepeat]

NO_REPEAT = NoRepeat()


def toggle_repeat(state: RepeatState, index: int) -> RepeatState:
    """Apply a "toggle repeat on sentence *index*" action to *state*.

    ==================  =================
    current             next
    ==================  =================
    none                ``Single(k)``
    ``Single(k)``       none
    ``Single(i)``       ``Range(i, k)``
    ``Range(i, j)``     ``Single(k)``
    ==================  =================
    """

    if isinstance(state, NoRepeat):
        return SingleRepeat(index)
    if isinstance(state, SingleRepeat):
        if state.index == index:
            return NO_REPEAT
        return RangeRepeat(state.index, index)
    if isinstance(state, RangeRepeat):
        return SingleRepeat(index)
    raise TypeError(f"Unknown repeat state: {state!r}")


def describe_repeat(state: RepeatState) -> str:
    if isinstance(state, SingleRepeat):
        return f"repeat #{state.index + 1}"
    if isinstance(state, RangeRepeat):
        return f"repeat #{state.first + 1}-#{state.second + 1}"
    return "no repeat"


__all__ = [
    "NO_REPEAT",
    "NoRepeat",
    "RangeRepeat",
    "RepeatState",
    "SingleRepeat",
    "describe_repeat",
    "toggle_repeat",
]
