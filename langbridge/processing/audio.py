"""FFmpeg-backed audio operations used to assemble lesson tracks.

Every operation shells out to ``ffmpeg`` or ``ffprobe``. The lesson assembler
relies on all segments sharing one encoding, so silences and normalised
speech clips are rendered with the same codec parameters and joins are plain
stream copies.
"""

from __future__ import annotations

import logging
import math
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Protocol, Sequence


LOGGER = logging.getLogger(__name__)


class AudioProcessingError(RuntimeError):
    """Raised when ffmpeg or ffprobe cannot complete an operation."""


class AudioToolkit(Protocol):
    """Audio operations needed by :class:`~langbridge.services.generation.LessonAssembler`."""

    def make_silence(self, duration_seconds: float, output_path: Path) -> Path:
        ...

    def normalize(self, source: Path, output_path: Path) -> Path:
        ...

    def concat(self, ordered_paths: Sequence[Path], output_path: Path) -> Path:
        ...

    def probe_duration_ms(self, path: Path) -> float:
        ...


def _first_line(completed: subprocess.CompletedProcess, fallback: str) -> str:
    stderr = completed.stderr.decode("utf-8", errors="ignore").strip()
    stdout = completed.stdout.decode("utf-8", errors="ignore").strip()
    details = (stderr or stdout or fallback).splitlines()
    return details[0] if details else fallback


def _escape_concat_entry(path: Path) -> str:
    # concat demuxer syntax: single quotes close, escape, and reopen.
    return "file '" + path.resolve().as_posix().replace("'", "'\\''") + "'"


class FFmpegToolkit:
    """:class:`AudioToolkit` implementation running the ffmpeg command-line tools."""

    def __init__(
        self,
        *,
        sample_rate: int = 44_100,
        quality: int = 2,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
    ) -> None:
        self._sample_rate = int(sample_rate)
        self._quality = int(quality)
        self._ffmpeg_path = ffmpeg_path
        self._ffprobe_path = ffprobe_path

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    def _binary(self, name: str, configured: Optional[str]) -> str:
        path = configured or shutil.which(name)
        if path is None:
            raise AudioProcessingError(
                f"Lesson audio requires {name} to be installed and available on PATH."
            )
        return path

    def _encoding_arguments(self) -> List[str]:
        return [
            "-ar",
            str(self._sample_rate),
            "-ac",
            "1",
            "-c:a",
            "libmp3lame",
            "-q:a",
            str(self._quality),
        ]

    def _run(self, command: List[str], *, operation: str, output_path: Optional[Path] = None) -> subprocess.CompletedProcess:
        LOGGER.debug("Executing %s command: %s", operation, " ".join(command))
        try:
            completed = subprocess.run(
                command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False
            )
        except OSError as error:
            raise AudioProcessingError(f"Unable to start {command[0]}: {error}") from error

        if completed.returncode != 0:
            if output_path is not None:
                output_path.unlink(missing_ok=True)
            message = _first_line(completed, f"{operation} exited with a non-zero status.")
            LOGGER.debug(
                "%s failed (code=%s): %s", operation, completed.returncode, message
            )
            raise AudioProcessingError(f"Audio {operation} failed: {message}")
        return completed

    def _ffmpeg_command(self) -> List[str]:
        return [
            self._binary("ffmpeg", self._ffmpeg_path),
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
        ]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def make_silence(self, duration_seconds: float, output_path: Path) -> Path:
        """Render *duration_seconds* of mono silence to *output_path*."""

        if duration_seconds <= 0:
            raise AudioProcessingError("Silence duration must be positive")
        command = self._ffmpeg_command() + [
            "-f",
            "lavfi",
            "-i",
            f"anullsrc=r={self._sample_rate}:cl=mono",
            "-t",
            f"{duration_seconds:.3f}",
            *self._encoding_arguments(),
            str(output_path),
        ]
        self._run(command, operation="silence", output_path=output_path)
        LOGGER.debug("Rendered %.3fs of silence to %s", duration_seconds, output_path)
        return output_path

    def normalize(self, source: Path, output_path: Path) -> Path:
        """Re-encode *source* with the parameters used for silences."""

        if not source.exists() or source.stat().st_size == 0:
            raise AudioProcessingError(f"Audio segment '{source.name}' is missing or empty")
        command = self._ffmpeg_command() + [
            "-i",
            str(source),
            *self._encoding_arguments(),
            str(output_path),
        ]
        self._run(command, operation="normalisation", output_path=output_path)
        return output_path

    def concat(self, ordered_paths: Sequence[Path], output_path: Path) -> Path:
        """Join *ordered_paths* into *output_path* without re-encoding."""

        if not ordered_paths:
            raise AudioProcessingError("Nothing to concatenate")
        for segment in ordered_paths:
            if not segment.exists():
                raise AudioProcessingError(f"Audio segment '{segment.name}' does not exist")

        list_file = output_path.with_name(output_path.stem + ".concat.txt")
        list_file.write_text(
            "\n".join(_escape_concat_entry(segment) for segment in ordered_paths) + "\n",
            encoding="utf-8",
        )
        command = self._ffmpeg_command() + [
            "-f",
            "concat",
            "-safe",
            "0",
            "-i",
            str(list_file),
            "-c",
            "copy",
            str(output_path),
        ]
        try:
            self._run(command, operation="concatenation", output_path=output_path)
        finally:
            list_file.unlink(missing_ok=True)
        LOGGER.debug("Concatenated %d segments into %s", len(ordered_paths), output_path)
        return output_path

    def probe_duration_ms(self, path: Path) -> float:
        """Return the container duration of *path* in milliseconds."""

        command = [
            self._binary("ffprobe", self._ffprobe_path),
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        completed = self._run(command, operation="probe")
        output = completed.stdout.decode("utf-8", errors="ignore").strip()
        try:
            seconds = float(output.splitlines()[0])
        except (IndexError, ValueError) as error:
            raise AudioProcessingError(
                f"Could not read duration of '{path.name}' from ffprobe output: {output!r}"
            ) from error
        if not math.isfinite(seconds) or seconds <= 0:
            raise AudioProcessingError(f"Audio segment '{path.name}' has no duration")
        duration_ms = seconds * 1000.0
        LOGGER.debug("Probed %s -> %.1fms", path, duration_ms)
        return duration_ms


__all__ = ["AudioProcessingError", "AudioToolkit", "FFmpegToolkit"]
