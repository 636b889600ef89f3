"""A Rich live view that rehearses a lesson against a virtual player."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Set

from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..playback.clock import ClockPlayer
from ..playback.engine import DEFAULT_POLL_INTERVAL, PlaybackSyncEngine, PlayerState
from ..playback.repeat import RangeRepeat, RepeatState, SingleRepeat, describe_repeat
from ..services.storage import LessonRecord
from .console import format_clock


LOGGER = logging.getLogger(__name__)


@dataclass
class RehearsalSummary:
    active_index: Optional[int]
    repeat_state: RepeatState
    position: float
    loops: int


def _repeat_endpoints(state: RepeatState) -> Set[int]:
    if isinstance(state, SingleRepeat):
        return {state.index}
    if isinstance(state, RangeRepeat):
        return {state.first, state.second}
    return set()


def render_frame(
    lesson: LessonRecord,
    *,
    position: float,
    active_index: Optional[int],
    repeat_state: RepeatState,
) -> Panel:
    """Build the renderable for one refresh of the rehearsal view."""

    table = Table(box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("", width=2)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Window", style="cyan", no_wrap=True)
    table.add_column("Sentence")
    table.add_column("Translation", style="dim")

    endpoints = _repeat_endpoints(repeat_state)
    for index, entry in enumerate(lesson.timeline):
        marker = "↻" if index in endpoints else ""
        style = "bold black on bright_cyan" if index == active_index else None
        table.add_row(
            marker,
            str(index + 1),
            f"{format_clock(entry.start)}–{format_clock(entry.end)}",
            entry.text,
            entry.translation,
            style=style,
        )

    status = Text()
    status.append(f"{format_clock(position)} / {format_clock(lesson.duration)}", style="bold")
    status.append("  ·  ")
    status.append(describe_repeat(repeat_state), style="magenta")
    return Panel(
        Group(status, table),
        title=f"[bold]{lesson.title}[/bold] [dim]({lesson.language})",
        border_style="cyan",
        box=box.ROUNDED,
    )


class RehearsalView:
    """Drive a :class:`PlaybackSyncEngine` over a :class:`ClockPlayer` and show it live."""

    def __init__(
        self,
        lesson: LessonRecord,
        *,
        console: Optional[Console] = None,
        interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not lesson.timeline:
            raise ValueError(f"Lesson {lesson.id} has no timeline to rehearse")
        self._lesson = lesson
        self._console = console or Console()
        self._interval = interval
        self._clock = clock
        self._sleep = sleep

    def run(
        self,
        *,
        seconds: float,
        repeat: Iterable[int] = (),
        select: Optional[int] = None,
    ) -> RehearsalSummary:
        player = ClockPlayer(self._lesson.duration, clock=self._clock)
        # The view loop is the poller, so the engine runs without its own thread.
        engine = PlaybackSyncEngine(self._lesson.timeline, interval=self._interval, poll=False)
        loops = 0

        player.play()
        engine.attach(player)
        try:
            for index in repeat:
                engine.toggle_repeat(index)
            if select is not None:
                engine.select(select)

            deadline = self._clock() + seconds
            with Live(
                self._frame(engine, player),
                console=self._console,
                refresh_per_second=max(int(1 / self._interval), 1),
            ) as live:
                while self._clock() < deadline:
                    result = engine.tick()
                    if result is not None and result.looped:
                        loops += 1
                    if player.get_player_state() == PlayerState.ENDED:
                        if not engine.handle_media_ended():
                            break
                        loops += 1
                    live.update(self._frame(engine, player))
                    self._sleep(self._interval)
                live.update(self._frame(engine, player))
            summary = RehearsalSummary(
                active_index=engine.active_index,
                repeat_state=engine.repeat_state,
                position=player.get_current_time(),
                loops=loops,
            )
        finally:
            engine.close()
        LOGGER.debug("Rehearsal of lesson %s finished at %.3fs", self._lesson.id, summary.position)
        return summary

    def _frame(self, engine: PlaybackSyncEngine, player: ClockPlayer) -> Panel:
        return render_frame(
            self._lesson,
            position=player.get_current_time(),
            active_index=engine.active_index,
            repeat_state=engine.repeat_state,
        )


__all__ = ["RehearsalSummary", "RehearsalView", "render_frame"]
