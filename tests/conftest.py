from __future__ import annotations

import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from langbridge.bootstrap import Bootstrapper
from langbridge.config import AppConfig
from langbridge.playback.engine import PlayerState
from langbridge.processing.audio import AudioProcessingError
from langbridge.services.storage import LessonRepository


class FakeSynthesizer:
    """In-memory speech backend returning ``speech:<text>`` bytes."""

    def __init__(self, *, fail_on: Optional[str] = None, error: Optional[Exception] = None) -> None:
        self.calls: List[Tuple[str, str]] = []
        self._fail_on = fail_on
        self._error = error

    def synthesize(self, text: str, voice_locale: str) -> bytes:
        self.calls.append((text, voice_locale))
        if self._error is not None and (self._fail_on is None or self._fail_on == text):
            raise self._error
        return f"speech:{text}".encode("utf-8")


class FakeToolkit:
    """Audio toolkit that tracks durations instead of rendering audio.

    Clip durations come from ``clip_durations_ms`` keyed by sentence text;
    concatenations last exactly the sum of their segments.
    """

    def __init__(
        self,
        clip_durations_ms: Optional[Dict[str, float]] = None,
        *,
        default_clip_ms: float = 500.0,
        fail_on: Optional[str] = None,
    ) -> None:
        self.clip_durations_ms = dict(clip_durations_ms or {})
        self.default_clip_ms = default_clip_ms
        self.fail_on = fail_on
        self.durations: Dict[Path, float] = {}
        self.calls: List[Tuple[str, object]] = []
        self.concat_calls: List[List[Path]] = []

    def _check(self, operation: str) -> None:
        if self.fail_on == operation:
            raise AudioProcessingError(f"Audio {operation} failed: simulated error")

    def make_silence(self, duration_seconds: float, output_path: Path) -> Path:
        self.calls.append(("make_silence", duration_seconds))
        self._check("make_silence")
        output_path.write_bytes(b"silence")
        self.durations[output_path] = duration_seconds * 1000.0
        return output_path

    def normalize(self, source: Path, output_path: Path) -> Path:
        self.calls.append(("normalize", source.name))
        self._check("normalize")
        text = source.read_bytes().decode("utf-8").split(":", 1)[1]
        output_path.write_bytes(source.read_bytes())
        self.durations[output_path] = self.clip_durations_ms.get(text, self.default_clip_ms)
        return output_path

    def concat(self, ordered_paths: Sequence[Path], output_path: Path) -> Path:
        self.calls.append(("concat", output_path.name))
        self._check("concat")
        self.concat_calls.append(list(ordered_paths))
        output_path.write_bytes(b"".join(path.read_bytes() for path in ordered_paths))
        self.durations[output_path] = sum(self.durations[path] for path in ordered_paths)
        return output_path

    def probe_duration_ms(self, path: Path) -> float:
        self.calls.append(("probe", path.name))
        self._check("probe")
        if path in self.durations:
            return self.durations[path]
        raise AudioProcessingError(f"Could not read duration of '{path.name}'")


class FakePlayer:
    """Media player with a manually controlled play-head."""

    def __init__(self, *, state: PlayerState = PlayerState.PLAYING, current_time: float = 0.0) -> None:
        self.state = state
        self.current_time = current_time
        self.seeks: List[float] = []
        self.play_calls = 0
        self.fail_reads = False

    def seek_to(self, seconds: float, allow_seek_ahead: bool = True) -> None:
        self.seeks.append(seconds)
        self.current_time = seconds

    def play(self) -> None:
        self.play_calls += 1
        self.state = PlayerState.PLAYING

    def pause(self) -> None:
        self.state = PlayerState.PAUSED

    def get_current_time(self) -> float:
        if self.fail_reads:
            raise RuntimeError("player not ready")
        return self.current_time

    def get_player_state(self) -> int:
        return int(self.state)


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/langbridge.db",
            "lesson": {
                "short_silence_seconds": 1.0,
                "long_silence_seconds": 2.0,
                "default_language": "es",
            },
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> LessonRepository:
    return LessonRepository(temp_config)
