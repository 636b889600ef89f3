"""Keep the highlighted sentence and the repeat loops in step with a media player.

The engine polls an injected :class:`MediaPlayer` on a fixed interval. Each
tick reads the play-head, enforces the active repeat window while the player
is playing, and resolves which sentence is active. Failures inside a tick are
logged at DEBUG and the tick is skipped; the next poll simply tries again.

While a player is attached the engine is the only caller of its ``seek_to``
and ``play`` methods.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, List, Optional, Protocol, Sequence

from ..services.timeline import TimedSentence
from .repeat import NO_REPEAT, NoRepeat, RangeRepeat, RepeatState, SingleRepeat, toggle_repeat


LOGGER = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.1


class PlayerState(IntEnum):
    UNSTARTED = -1
    ENDED = 0
    PLAYING = 1
    PAUSED = 2
    BUFFERING = 3
    CUED = 5


class MediaPlayer(Protocol):
    """Capability the engine drives: an externally rendered audio or video player."""

    def seek_to(self, seconds: float, allow_seek_ahead: bool = True) -> None:
        ...

    def play(self) -> None:
        ...

    def pause(self) -> None:
        ...

    def get_current_time(self) -> float:
        ...

    def get_player_state(self) -> int:
        ...


@dataclass(frozen=True)
class TickResult:
    """Snapshot produced by one successful poll."""

    current_time: float
    active_index: Optional[int]
    state: PlayerState
    looped: bool = False


def find_active_index(timeline: Sequence[TimedSentence], seconds: float) -> Optional[int]:
    """Return the sentence whose ``[start, end)`` window contains *seconds*.

    Overlapping windows only occur in hand-edited timelines. Among several
    matches the one starting last wins, and among equal starts the higher
    index wins.
    """

    best: Optional[int] = None
    for index, entry in enumerate(timeline):
        if not entry.contains(seconds):
            continue
        if best is None or entry.start >= timeline[best].start:
            best = index
    return best


class PlaybackSyncEngine:
    """Polling state machine over a lesson timeline and an attached media player."""

    def __init__(
        self,
        timeline: Sequence[TimedSentence],
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        on_active_change: Optional[Callable[[Optional[int]], None]] = None,
        poll: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("Polling interval must be positive")
        self._timeline: List[TimedSentence] = list(timeline)
        self._interval = interval
        self._on_active_change = on_active_change
        self._poll_enabled = poll

        # ``_state_lock`` guards player, repeat state and selection. ``_loop_lock``
        # serialises start/stop of the polling thread and is never taken by it.
        self._state_lock = threading.RLock()
        self._loop_lock = threading.Lock()

        self._player: Optional[MediaPlayer] = None
        self._repeat: RepeatState = NO_REPEAT
        self._pending_selection: Optional[int] = None
        self._active_index: Optional[int] = None

        self._poll_thread: Optional[threading.Thread] = None
        self._poll_stop: Optional[threading.Event] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def timeline(self) -> Sequence[TimedSentence]:
        return tuple(self._timeline)

    @property
    def repeat_state(self) -> RepeatState:
        with self._state_lock:
            return self._repeat

    @property
    def active_index(self) -> Optional[int]:
        with self._state_lock:
            return self._active_index

    @property
    def attached(self) -> bool:
        with self._state_lock:
            return self._player is not None

    @property
    def polling(self) -> bool:
        thread = self._poll_thread
        return thread is not None and thread.is_alive()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def attach(self, player: MediaPlayer) -> None:
        """Bind *player*; an earlier player is detached first."""

        with self._loop_lock:
            self._stop_polling()
            with self._state_lock:
                if self._player is not None and self._player is not player:
                    LOGGER.debug("Replacing attached media player")
                self._player = player
                self._pending_selection = None
            self._start_polling()
        LOGGER.debug("Attached media player (%d sentences)", len(self._timeline))

    def detach(self) -> None:
        """Stop polling, then release the player."""

        with self._loop_lock:
            self._stop_polling()
            with self._state_lock:
                self._player = None
        LOGGER.debug("Detached media player")

    def close(self) -> None:
        """Detach and forget all session state."""

        self.detach()
        with self._state_lock:
            self._repeat = NO_REPEAT
            self._pending_selection = None
            self._active_index = None

    def __enter__(self) -> "PlaybackSyncEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------
    def select(self, index: int) -> None:
        """Seek to sentence *index* and play it once, clearing any repeat mode."""

        self._check_index(index)
        with self._loop_lock:
            self._stop_polling()
            try:
                with self._state_lock:
                    player = self._require_player()
                    self._repeat = NO_REPEAT
                    self._pending_selection = index
                    self._seek_and_play(player, self._timeline[index].start)
            finally:
                self._start_polling()
        LOGGER.debug("Selected sentence %d", index)

    def toggle_repeat(self, index: int) -> RepeatState:
        """Apply the repeat toggle for sentence *index* and return the new state.

        Entering a repeat mode seeks to the start of its window and plays. A
        player that rejects the seek leaves the new state in place; the next
        tick enforces the window.
        """

        self._check_index(index)
        with self._loop_lock:
            self._stop_polling()
            try:
                with self._state_lock:
                    self._repeat = toggle_repeat(self._repeat, index)
                    self._pending_selection = None
                    window = self._repeat.window(self._timeline)
                    if window is not None and self._player is not None:
                        self._seek_and_play(self._player, window[0])
                    state = self._repeat
            finally:
                self._start_polling()
        LOGGER.debug("Repeat state is now %r", state)
        return state

    def handle_media_ended(self) -> bool:
        """React to the player's "ended" event; return ``True`` if playback was restarted."""

        with self._state_lock:
            window = self._repeat.window(self._timeline)
            if window is None or self._player is None:
                return False
            try:
                self._player.seek_to(window[0], True)
                self._player.play()
            except Exception as error:
                LOGGER.debug("Could not restart repeat window after media end: %s", error)
                return False
        return True

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    def tick(self) -> Optional[TickResult]:
        """Run one poll; return ``None`` when the player is absent or not ready."""

        with self._state_lock:
            player = self._player
            if player is None:
                return None
            try:
                state = PlayerState(int(player.get_player_state()))
                current = float(player.get_current_time())
                looped = False
                if state is PlayerState.PLAYING:
                    window = self._repeat.window(self._timeline)
                    if window is not None and current >= window[1]:
                        player.seek_to(window[0], True)
                        current = float(player.get_current_time())
                        looped = True
                active = self._resolve_active_index(current)
            except Exception as error:
                LOGGER.debug("Skipping playback tick: %s", error)
                return None
            changed = active != self._active_index
            self._active_index = active

        if changed and self._on_active_change is not None:
            self._on_active_change(active)
        return TickResult(current_time=current, active_index=active, state=state, looped=looped)

    def _resolve_active_index(self, current: float) -> Optional[int]:
        if self._pending_selection is not None:
            index = self._pending_selection
            self._pending_selection = None
            return index
        repeat = self._repeat
        if isinstance(repeat, SingleRepeat):
            return repeat.index
        if isinstance(repeat, RangeRepeat):
            start, end = repeat.window(self._timeline)
            if start <= current < end:
                found = find_active_index(self._timeline, current)
                if found is not None:
                    return found
            return repeat.first
        assert isinstance(repeat, NoRepeat)
        return find_active_index(self._timeline, current)

    def _poll(self, stop: threading.Event) -> None:
        while not stop.wait(self._interval):
            self.tick()

    def _start_polling(self) -> None:
        if not self._poll_enabled or self._player is None:
            return
        stop = threading.Event()
        thread = threading.Thread(
            target=self._poll, args=(stop,), name="playback-sync", daemon=True
        )
        self._poll_stop = stop
        self._poll_thread = thread
        thread.start()

    def _stop_polling(self) -> None:
        stop, thread = self._poll_stop, self._poll_thread
        self._poll_stop = None
        self._poll_thread = None
        if stop is not None:
            stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _seek_and_play(self, player: MediaPlayer, seconds: float) -> None:
        try:
            player.seek_to(seconds, True)
            player.play()
        except Exception as error:
            LOGGER.debug("Player rejected seek to %.3fs: %s", seconds, error)

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._timeline):
            raise IndexError(f"Sentence index {index} is outside the timeline")

    def _require_player(self) -> MediaPlayer:
        if self._player is None:
            raise RuntimeError("No media player is attached")
        return self._player


__all__ = [
    "DEFAULT_POLL_INTERVAL",
    "MediaPlayer",
    "PlaybackSyncEngine",
    "PlayerState",
    "TickResult",
    "find_active_index",
]
