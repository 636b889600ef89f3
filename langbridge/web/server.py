"""FastAPI application exposing lesson generation and playback data."""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import functools
import logging
import os
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set, TypeVar

from fastapi import FastAPI, File, Form, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..processing.audio import FFmpegToolkit
from ..processing.speech import (
    LANGUAGE_LOCALES,
    SpeechConfigurationError,
    build_speech_synthesizer,
)
from ..services.events import emit_structured_event
from ..services.generation import LessonGenerationError, LessonGenerator, LessonInputError
from ..services.storage import LessonRecord, LessonRepository
from ..services.timeline import timeline_to_payload

T = TypeVar("T")

_DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024
_SERVED_SUFFIXES = frozenset({".mp3"})


def get_max_upload_bytes() -> int:
    """Return the upload size limit in bytes; ``0`` disables the check."""

    raw = (os.environ.get("LANGBRIDGE_MAX_UPLOAD_BYTES") or "").strip()
    if not raw:
        return _DEFAULT_MAX_UPLOAD_BYTES
    try:
        return max(int(raw), 0)
    except ValueError:
        return _DEFAULT_MAX_UPLOAD_BYTES


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "langbridge_request_id",
    default=None,
)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects the request id into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        request_id = _REQUEST_ID_VAR.get()
        if request_id:
            extra.setdefault("request_id", request_id)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("langbridge.events"), {})


class RequestContextMiddleware:
    """Assign a correlation identifier to each HTTP request."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = uuid.uuid4().hex
        token = _REQUEST_ID_VAR.set(request_id)

        async def _send_with_header(message: Dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                headers = list(message.get("headers") or [])
                headers.append((b"x-request-id", request_id.encode("ascii")))
                message["headers"] = headers
            await send(message)

        try:
            await self.app(scope, receive, _send_with_header)
        finally:
            _REQUEST_ID_VAR.reset(token)


class SentenceAudioRequest(BaseModel):
    text: str = Field(..., min_length=1)
    language: Optional[str] = None


def _normalize_root_path(value: Optional[str]) -> str:
    if value is None:
        return ""
    normalized = value.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _resolve_storage_path(storage_root: Path, relative_path: str) -> Path:
    """Return the absolute path for *relative_path*; ``ValueError`` if it escapes storage."""

    root_path = storage_root.resolve()
    candidate = Path(relative_path)
    if not candidate.is_absolute():
        candidate = (root_path / candidate).resolve()
    else:
        candidate = candidate.resolve()
    candidate.relative_to(root_path)
    return candidate


def _summarize_lesson(lesson: LessonRecord) -> Dict[str, Any]:
    return {
        "id": lesson.id,
        "title": lesson.title,
        "language": lesson.language,
        "category": lesson.category,
        "created_at": lesson.created_at,
        "sentence_count": lesson.sentence_count,
        "duration": round(lesson.duration, 3),
    }


def create_app(
    repository: LessonRepository,
    *,
    config: AppConfig,
    generator: Optional[LessonGenerator] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    normalized_root = _normalize_root_path(
        root_path if root_path is not None else os.environ.get("LANGBRIDGE_ROOT_PATH")
    )
    # Lesson generation is long-running and strictly sequential; a single
    # worker serialises concurrent uploads.
    background_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="lesson-generation")

    @contextlib.asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            background_executor.shutdown(wait=True, cancel_futures=True)

    app = FastAPI(
        title="LangBridge",
        description="Timed audio lessons for language practice",
        root_path=normalized_root,
        lifespan=_lifespan,
    )
    app.add_middleware(RequestContextMiddleware)

    repository.configure_event_emitter(
        functools.partial(emit_structured_event, logger=EVENT_LOGGER)
    )

    if generator is None:
        generator = LessonGenerator(
            config,
            repository,
            synthesizer=build_speech_synthesizer(config.lesson),
            toolkit=FFmpegToolkit(sample_rate=config.lesson.sample_rate),
        )
    app.state.generator = generator

    app.state.background_executor = background_executor
    app.state.background_jobs: Set[Future] = set()
    app.state.background_jobs_lock = threading.Lock()

    async def _run_serialized_background_task(
        operation: Callable[[], T],
        *,
        context_label: str,
    ) -> T:
        """Run ``operation`` in the shared worker, queueing if necessary."""

        jobs: Set[Future] = app.state.background_jobs
        jobs_lock: threading.Lock = app.state.background_jobs_lock

        loop = asyncio.get_running_loop()
        parent_context = contextvars.copy_context()
        future = loop.run_in_executor(
            background_executor, functools.partial(parent_context.run, operation)
        )

        with jobs_lock:
            active_jobs = {job for job in jobs if not job.done()}
            jobs.clear()
            jobs.update(active_jobs)
            if active_jobs:
                LOGGER.debug(
                    "Queued %s task behind %s active job(s)", context_label, len(active_jobs)
                )
            jobs.add(future)

        try:
            return await future
        finally:
            with jobs_lock:
                jobs.discard(future)

    def _audio_url(request: Request, relative_path: str) -> str:
        prefix = request.scope.get("root_path") or ""
        return f"{prefix}/storage/{relative_path}"

    def _lesson_payload(request: Request, lesson: LessonRecord) -> Dict[str, Any]:
        payload = _summarize_lesson(lesson)
        payload["audio_path"] = lesson.audio_path
        payload["audio_url"] = _audio_url(request, lesson.audio_path)
        payload["timeline"] = timeline_to_payload(lesson.timeline)
        return payload

    def _require_lesson(lesson_id: int) -> LessonRecord:
        lesson = repository.get_lesson(lesson_id)
        if lesson is None:
            raise HTTPException(status_code=404, detail="Lesson not found")
        return lesson

    def _raise_for_generation_error(error: Exception) -> None:
        if isinstance(error, LessonInputError):
            raise HTTPException(status_code=400, detail=str(error)) from error
        if isinstance(error, SpeechConfigurationError):
            LOGGER.error("Speech backend is not configured: %s", error)
            raise HTTPException(status_code=503, detail=str(error)) from error
        if isinstance(error, LessonGenerationError):
            LOGGER.warning("%s", error)
            raise HTTPException(status_code=502, detail=str(error)) from error
        raise error

    @app.get("/api/languages")
    async def list_languages() -> Dict[str, Any]:
        return {
            "default": config.lesson.default_language,
            "languages": [
                {"code": code, "locale": locale} for code, locale in LANGUAGE_LOCALES.items()
            ],
        }

    @app.get("/api/lessons")
    async def list_lessons(language: Optional[str] = None) -> Dict[str, Any]:
        lessons = repository.list_lessons(language=language)
        return {"lessons": [_summarize_lesson(lesson) for lesson in lessons]}

    @app.post("/api/lessons", status_code=status.HTTP_201_CREATED)
    async def create_lesson(
        request: Request,
        title: str = Form(...),
        file: UploadFile = File(...),
        language: Optional[str] = Form(None),
        category: Optional[str] = Form(None),
    ) -> Dict[str, Any]:
        limit = get_max_upload_bytes()
        content = await file.read()
        if limit and len(content) > limit:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"Lesson file exceeds the {limit} byte upload limit",
            )
        try:
            source_text = content.decode("utf-8-sig")
        except UnicodeDecodeError as error:
            raise HTTPException(status_code=400, detail="Lesson file must be UTF-8 text") from error
        if not source_text.strip():
            raise HTTPException(status_code=400, detail="Lesson file is empty")

        LOGGER.info("Generating lesson '%s' from %s", title, file.filename or "upload")
        try:
            lesson = await _run_serialized_background_task(
                functools.partial(
                    generator.generate,
                    title=title,
                    source_text=source_text,
                    language=language,
                    category=category,
                ),
                context_label="lesson_generation",
            )
        except (LessonInputError, SpeechConfigurationError, LessonGenerationError) as error:
            _raise_for_generation_error(error)
        return _lesson_payload(request, lesson)

    @app.get("/api/lessons/{lesson_id}")
    async def get_lesson(request: Request, lesson_id: int) -> Dict[str, Any]:
        return _lesson_payload(request, _require_lesson(lesson_id))

    @app.delete("/api/lessons/{lesson_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_lesson(lesson_id: int) -> Response:
        lesson = _require_lesson(lesson_id)
        repository.remove_lesson(lesson_id)
        try:
            audio = _resolve_storage_path(config.storage_root, lesson.audio_path)
        except ValueError:
            LOGGER.warning("Lesson %s references audio outside storage: %s", lesson_id, lesson.audio_path)
        else:
            audio.unlink(missing_ok=True)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/sentences/audio", status_code=status.HTTP_201_CREATED)
    async def create_sentence_audio(request: Request, payload: SentenceAudioRequest) -> Dict[str, Any]:
        try:
            clip = await _run_serialized_background_task(
                functools.partial(
                    generator.generate_sentence_audio, payload.text, payload.language
                ),
                context_label="sentence_audio",
            )
        except (LessonInputError, SpeechConfigurationError, LessonGenerationError) as error:
            _raise_for_generation_error(error)
        return {
            "audio_path": clip.audio_path,
            "audio_url": _audio_url(request, clip.audio_path),
            "duration": clip.duration,
            "voice_locale": clip.voice_locale,
        }

    @app.get("/storage/{path:path}")
    async def serve_storage_file(path: str) -> FileResponse:
        try:
            target = _resolve_storage_path(config.storage_root, path)
        except ValueError as error:
            raise HTTPException(status_code=404, detail="File not found") from error
        if not target.is_file() or target.suffix.lower() not in _SERVED_SUFFIXES:
            raise HTTPException(status_code=404, detail="File not found")
        return FileResponse(target)

    return app


__all__ = ["ContextualLoggerAdapter", "create_app", "get_max_upload_bytes"]
