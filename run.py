"""Entry-point for the LangBridge lesson tools."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn

from langbridge.bootstrap import BootstrapError, initialize_app
from langbridge.config import AppConfig
from langbridge.logging_utils import configure_file_logging
from langbridge.processing.audio import FFmpegToolkit
from langbridge.processing.speech import SpeechConfigurationError, build_speech_synthesizer
from langbridge.services.generation import LessonGenerationError, LessonGenerator, LessonInputError
from langbridge.services.progress import format_progress_message
from langbridge.services.storage import LessonRepository
from langbridge.ui.console import ConsoleUI
from langbridge.ui.rehearsal import RehearsalView
from langbridge.web import create_app


LOGGER = logging.getLogger("langbridge.cli")


cli = typer.Typer(add_completion=False, help="LangBridge lesson commands")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    configure_file_logging(storage_root)


def _initialize() -> AppConfig:
    try:
        config = initialize_app()
    except BootstrapError as error:
        typer.echo(f"Startup failed: {error}", err=True)
        raise typer.Exit(code=1) from error
    _prepare_logging(config.storage_root)
    return config


def _build_generator(config: AppConfig, repository: LessonRepository) -> LessonGenerator:
    return LessonGenerator(
        config,
        repository,
        synthesizer=build_speech_synthesizer(config.lesson),
        toolkit=FFmpegToolkit(sample_rate=config.lesson.sample_rate),
    )


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="LANGBRIDGE_ROOT_PATH",
    ),
) -> None:
    """Run the lesson web API."""

    config = _initialize()
    repository = LessonRepository(config)
    app = create_app(repository, config=config, root_path=root_path or "")

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=app.root_path,
    )
    LOGGER.info("Serving LangBridge on http://%s:%s%s", host, port, app.root_path)
    uvicorn.Server(server_config).run()


@cli.command()
def generate(
    text_file: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="UTF-8 text file with alternating sentence and translation lines.",
    ),
    title: str = typer.Option(..., "--title", "-t", help="Lesson title"),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="Language code, e.g. es"),
    category: Optional[str] = typer.Option(None, help="Optional lesson category"),
) -> None:
    """Generate a timed audio lesson from TEXT_FILE and store it."""

    config = _initialize()
    repository = LessonRepository(config)
    generator = _build_generator(config, repository)

    try:
        source_text = text_file.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as error:
        typer.echo(f"Could not read {text_file}: {error}", err=True)
        raise typer.Exit(code=1) from error

    typer.echo(format_progress_message(f"====> Generating '{title}'…", 0, 1))
    try:
        lesson = generator.generate(
            title=title,
            source_text=source_text,
            language=language,
            category=category,
            progress_callback=lambda _done, _total, message: typer.echo(message),
        )
    except (LessonInputError, SpeechConfigurationError, LessonGenerationError) as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error

    typer.echo(f"Lesson {lesson.id} stored: {lesson.sentence_count} sentences, {lesson.duration:.3f}s")
    typer.echo(f"  Audio: {config.storage_root / lesson.audio_path}")


@cli.command()
def lessons() -> None:
    """List stored lessons and their sentence timelines."""

    config = _initialize()
    ConsoleUI(LessonRepository(config), writer=typer.echo).run()


@cli.command()
def rehearse(
    lesson_id: int = typer.Argument(..., help="Identifier of the lesson to rehearse"),
    repeat: Optional[List[int]] = typer.Option(
        None,
        "--repeat",
        "-r",
        help="1-based sentence number to toggle repeat on; pass twice for a range.",
    ),
    select: Optional[int] = typer.Option(None, "--select", help="1-based sentence number to jump to"),
    seconds: float = typer.Option(10.0, min=0.1, help="How long to run the rehearsal"),
) -> None:
    """Play a lesson timeline against a virtual player and show the active sentence."""

    config = _initialize()
    lesson = LessonRepository(config).get_lesson(lesson_id)
    if lesson is None:
        typer.echo(f"Lesson {lesson_id} not found", err=True)
        raise typer.Exit(code=1)

    count = lesson.sentence_count
    requested = list(repeat or []) + ([select] if select is not None else [])
    for number in requested:
        if not 1 <= number <= count:
            typer.echo(f"Sentence {number} is outside 1..{count}", err=True)
            raise typer.Exit(code=1)

    summary = RehearsalView(lesson).run(
        seconds=seconds,
        repeat=[number - 1 for number in repeat or []],
        select=select - 1 if select is not None else None,
    )
    active = "none" if summary.active_index is None else str(summary.active_index + 1)
    typer.echo(f"Stopped at {summary.position:.3f}s, active sentence: {active}")


@cli.command()
def speak(
    text: str = typer.Argument(..., help="Sentence to synthesise"),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="Language code, e.g. es"),
) -> None:
    """Synthesise a single sentence clip into storage."""

    config = _initialize()
    generator = _build_generator(config, LessonRepository(config))
    try:
        clip = generator.generate_sentence_audio(text, language)
    except (LessonInputError, SpeechConfigurationError, LessonGenerationError) as error:
        typer.echo(str(error), err=True)
        raise typer.Exit(code=1) from error
    typer.echo(f"Saved {clip.duration:.3f}s clip ({clip.voice_locale}) to {config.storage_root / clip.audio_path}")


if __name__ == "__main__":
    cli()
