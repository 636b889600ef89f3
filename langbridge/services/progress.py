"""Utilities for reporting deterministic progress percentages."""

from __future__ import annotations

from typing import Optional


def format_progress_message(
    message: str,
    completed_steps: Optional[float],
    total_steps: Optional[float],
) -> str:
    """Append a percentage indicator to ``message`` when possible.

    ``completed_steps`` is the number of finished stages and ``total_steps``
    the number of stages in the run. Unknown totals (``None`` or zero) leave
    the message unchanged. Percentages are clamped to ``[0, 100]``.
    """

    if completed_steps is None or total_steps in {None, 0}:
        return message

    try:
        ratio = float(completed_steps) / float(total_steps)
    except (TypeError, ValueError):
        return message

    clamped = max(0.0, min(ratio, 1.0))
    percent = int(round(clamped * 100))
    return f"{message} ({percent}%)"


def generation_total_steps(sentence_count: int) -> int:
    """Each sentence is one step; rendering the final track is one more."""

    return max(sentence_count, 0) + 1


def build_sentence_progress_message(index: int, sentence_count: int, text: str) -> str:
    """Return the progress line printed after sentence *index* is assembled."""

    preview = " ".join(text.split())
    if len(preview) > 40:
        preview = preview[:39] + "…"
    message = f"====> Sentence {index + 1}/{sentence_count}: {preview}"
    return format_progress_message(message, index + 1, generation_total_steps(sentence_count))


__all__ = [
    "build_sentence_progress_message",
    "format_progress_message",
    "generation_total_steps",
]
