"""Playback synchronisation between a lesson timeline and a media player."""

from .clock import ClockPlayer
from .engine import MediaPlayer, PlaybackSyncEngine, PlayerState, TickResult, find_active_index
from .repeat import NO_REPEAT, NoRepeat, RangeRepeat, RepeatState, SingleRepeat, toggle_repeat

__all__ = [
    "ClockPlayer",
    "MediaPlayer",
    "NO_REPEAT",
    "NoRepeat",
    "PlaybackSyncEngine",
    "PlayerState",
    "RangeRepeat",
    "RepeatState",
    "SingleRepeat",
    "TickResult",
    "find_active_index",
    "toggle_repeat",
]
