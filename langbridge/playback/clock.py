"""An in-process media player whose play-head follows a monotonic clock."""

from __future__ import annotations

import threading
import time
from typing import Callable

from .engine import PlayerState


class ClockPlayer:
    """Media player over a track of known *duration* without producing sound.

    Used by the terminal rehearsal view, and by tests with an injected
    ``clock``. Reaching the end of the track reports ``ENDED`` and stops the
    play-head at ``duration``.
    """

    def __init__(self, duration: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if duration <= 0:
            raise ValueError("duration must be positive")
        self._duration = float(duration)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = PlayerState.UNSTARTED
        self._position = 0.0
        self._anchor = 0.0

    @property
    def duration(self) -> float:
        return self._duration

    def _advance(self) -> None:
        if self._state is not PlayerState.PLAYING:
            return
        now = self._clock()
        self._position += now - self._anchor
        self._anchor = now
        if self._position >= self._duration:
            self._position = self._duration
            self._state = PlayerState.ENDED

    def seek_to(self, seconds: float, allow_seek_ahead: bool = True) -> None:
        with self._lock:
            self._advance()
            self._position = min(max(float(seconds), 0.0), self._duration)
            self._anchor = self._clock()
            if self._state is PlayerState.ENDED and self._position < self._duration:
                self._state = PlayerState.PAUSED

    def play(self) -> None:
        with self._lock:
            self._advance()
            if self._state is PlayerState.PLAYING:
                return
            if self._position >= self._duration:
                self._position = 0.0
            self._anchor = self._clock()
            self._state = PlayerState.PLAYING

    def pause(self) -> None:
        with self._lock:
            self._advance()
            if self._state is PlayerState.PLAYING:
                self._state = PlayerState.PAUSED

    def get_current_time(self) -> float:
        with self._lock:
            self._advance()
            return self._position

    def get_player_state(self) -> int:
        with self._lock:
            self._advance()
            return int(self._state)


__all__ = ["ClockPlayer"]
