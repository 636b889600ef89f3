from __future__ import annotations

import pytest

from langbridge.playback.repeat import (
    NO_REPEAT,
    NoRepeat,
    RangeRepeat,
    SingleRepeat,
    describe_repeat,
    toggle_repeat,
)
from langbridge.services.timeline import TimedSentence


@pytest.mark.parametrize("index", [0, 2, 9])
def test_toggle_from_none_starts_single(index: int) -> None:
    assert toggle_repeat(NO_REPEAT, index) == SingleRepeat(index)


@pytest.mark.parametrize("index", [0, 2, 9])
def test_toggle_same_single_clears(index: int) -> None:
    assert toggle_repeat(SingleRepeat(index), index) == NoRepeat()


@pytest.mark.parametrize("first, second", [(2, 5), (5, 2), (0, 9), (9, 0)])
def test_toggle_other_sentence_from_single_makes_range(first: int, second: int) -> None:
    assert toggle_repeat(SingleRepeat(first), second) == RangeRepeat(first, second)


@pytest.mark.parametrize("target", [2, 5, 7, 0])
def test_toggle_from_range_starts_single(target: int) -> None:
    assert toggle_repeat(RangeRepeat(2, 5), target) == SingleRepeat(target)


def test_documented_toggle_sequence() -> None:
    state = toggle_repeat(NO_REPEAT, 2)
    assert state == SingleRepeat(2)
    assert toggle_repeat(state, 2) == NO_REPEAT

    state = toggle_repeat(toggle_repeat(NO_REPEAT, 2), 5)
    assert state == RangeRepeat(2, 5)
    assert toggle_repeat(state, 5) == SingleRepeat(5)


def test_range_window_is_union_regardless_of_order() -> None:
    timeline = [
        TimedSentence("a", "A", 0.0, 2.0),
        TimedSentence("b", "B", 3.0, 5.0),
        TimedSentence("c", "C", 6.0, 9.0),
    ]

    assert RangeRepeat(2, 0).window(timeline) == (0.0, 9.0)
    assert RangeRepeat(0, 2).window(timeline) == (0.0, 9.0)
    assert SingleRepeat(1).window(timeline) == (3.0, 5.0)
    assert NO_REPEAT.window(timeline) is None


def test_describe_repeat_uses_one_based_numbers() -> None:
    assert describe_repeat(NO_REPEAT) == "no repeat"
    assert describe_repeat(SingleRepeat(0)) == "repeat #1"
    assert describe_repeat(RangeRepeat(1, 3)) == "repeat #2-#4"
