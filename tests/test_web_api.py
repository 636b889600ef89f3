from __future__ import annotations

from pathlib import Path

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from conftest import FakeSynthesizer, FakeToolkit
from langbridge.processing.speech import SpeechConfigurationError
from langbridge.services.generation import LessonGenerator
from langbridge.services.storage import LessonRepository
from langbridge.services.timeline import TimedSentence
from langbridge.web import create_app
from langbridge.web import server as web_server


LESSON_TEXT = "Hola\nHello\nAdiós\nGoodbye\n"


def _client(config, *, synthesizer=None, toolkit=None, root_path=None):
    repository = LessonRepository(config)
    generator = LessonGenerator(
        config,
        repository,
        synthesizer=synthesizer or FakeSynthesizer(),
        toolkit=toolkit or FakeToolkit({"Hola": 600, "Adiós": 800}),
    )
    app = create_app(repository, config=config, generator=generator, root_path=root_path)
    return TestClient(app), repository


def _upload(client, *, title="Greetings", text=LESSON_TEXT, prefix="", **form):
    data = {"title": title}
    data.update(form)
    return client.post(
        f"{prefix}/api/lessons",
        data=data,
        files={"file": ("lesson.txt", text.encode("utf-8"), "text/plain")},
    )


def test_create_lesson_returns_timeline_and_audio_url(temp_config):
    client, repository = _client(temp_config)

    response = _upload(client, language="es", category="Basics")

    assert response.status_code == 201
    payload = response.json()
    assert payload["title"] == "Greetings"
    assert payload["category"] == "Basics"
    assert payload["sentence_count"] == 2
    assert payload["timeline"] == [
        {"text": "Hola", "translation": "Hello", "start": 0.0, "end": 5.8},
        {"text": "Adiós", "translation": "Goodbye", "start": 7.8, "end": 14.2},
    ]
    assert payload["audio_url"] == f"/storage/{payload['audio_path']}"
    assert repository.count_lessons() == 1
    assert response.headers.get("x-request-id")


def test_created_audio_is_served_from_storage(temp_config):
    client, _repository = _client(temp_config)
    payload = _upload(client).json()

    response = client.get(payload["audio_url"])

    assert response.status_code == 200
    assert response.content == (temp_config.storage_root / payload["audio_path"]).read_bytes()


def test_lesson_listing_and_detail(temp_config):
    client, _repository = _client(temp_config)
    spanish = _upload(client, title="ES", language="es").json()
    french = _upload(client, title="FR", language="fr").json()

    listing = client.get("/api/lessons").json()["lessons"]
    assert [lesson["id"] for lesson in listing] == [french["id"], spanish["id"]]
    assert listing[0]["duration"] == 14.2

    filtered = client.get("/api/lessons", params={"language": "es"}).json()["lessons"]
    assert [lesson["title"] for lesson in filtered] == ["ES"]

    detail = client.get(f"/api/lessons/{spanish['id']}")
    assert detail.status_code == 200
    assert detail.json()["timeline"][1]["start"] == 7.8


def test_missing_lesson_returns_404(temp_config):
    client, _repository = _client(temp_config)

    assert client.get("/api/lessons/42").status_code == 404
    assert client.delete("/api/lessons/42").status_code == 404


def test_delete_lesson_removes_audio(temp_config):
    client, repository = _client(temp_config)
    payload = _upload(client).json()
    audio_file = temp_config.storage_root / payload["audio_path"]
    assert audio_file.exists()

    response = client.delete(f"/api/lessons/{payload['id']}")

    assert response.status_code == 204
    assert not audio_file.exists()
    assert repository.get_lesson(payload["id"]) is None


@pytest.mark.parametrize(
    "text, detail",
    [
        ("only one line\n", "sentence pairs"),
        ("   \n", "empty"),
    ],
)
def test_invalid_lesson_text_is_rejected(temp_config, text, detail):
    client, repository = _client(temp_config)

    response = _upload(client, text=text)

    assert response.status_code == 400
    assert detail in response.json()["detail"].lower()
    assert repository.count_lessons() == 0


def test_non_utf8_upload_is_rejected(temp_config):
    client, _repository = _client(temp_config)

    response = client.post(
        "/api/lessons",
        data={"title": "Binary"},
        files={"file": ("lesson.txt", b"\xff\xfe\x00bad", "text/plain")},
    )

    assert response.status_code == 400


def test_upload_limit_is_enforced(temp_config, monkeypatch):
    monkeypatch.setenv("LANGBRIDGE_MAX_UPLOAD_BYTES", "8")
    client, _repository = _client(temp_config)

    response = _upload(client)

    assert response.status_code == 413


def test_missing_credentials_return_503(temp_config):
    error = SpeechConfigurationError("Google Cloud credentials are not configured.")
    client, repository = _client(temp_config, synthesizer=FakeSynthesizer(error=error))

    response = _upload(client)

    assert response.status_code == 503
    assert "credentials" in response.json()["detail"]
    assert repository.count_lessons() == 0


def test_audio_tool_failure_returns_502(temp_config):
    client, repository = _client(temp_config, toolkit=FakeToolkit(fail_on="concat"))

    response = _upload(client)

    assert response.status_code == 502
    assert response.json()["detail"].startswith("Lesson generation failed:")
    assert repository.count_lessons() == 0


def test_sentence_audio_endpoint(temp_config):
    synthesizer = FakeSynthesizer()
    client, _repository = _client(
        temp_config, synthesizer=synthesizer, toolkit=FakeToolkit({"Bonjour": 750})
    )

    response = client.post("/api/sentences/audio", json={"text": "Bonjour", "language": "fr"})

    assert response.status_code == 201
    payload = response.json()
    assert payload["duration"] == 0.75
    assert payload["voice_locale"] == "fr-FR"
    assert payload["audio_url"] == f"/storage/{payload['audio_path']}"
    assert synthesizer.calls == [("Bonjour", "fr-FR")]


def test_sentence_audio_requires_text(temp_config):
    client, _repository = _client(temp_config)

    assert client.post("/api/sentences/audio", json={"text": ""}).status_code == 422
    assert client.post("/api/sentences/audio", json={"text": "   "}).status_code == 400


def test_languages_endpoint_lists_locales(temp_config):
    client, _repository = _client(temp_config)

    payload = client.get("/api/languages").json()

    assert payload["default"] == "es"
    assert {"code": "fr", "locale": "fr-FR"} in payload["languages"]


def test_storage_only_serves_audio_inside_storage(temp_config):
    client, _repository = _client(temp_config)
    (temp_config.storage_root / "notes.txt").write_text("secret", encoding="utf-8")

    assert client.get("/storage/notes.txt").status_code == 404
    assert client.get("/storage/langbridge.db").status_code == 404
    assert client.get("/storage/lessons/missing.mp3").status_code == 404


def test_resolve_storage_path_rejects_escape(tmp_path: Path):
    root = tmp_path / "storage"
    root.mkdir()

    assert web_server._resolve_storage_path(root, "lessons/a.mp3") == root.resolve() / "lessons" / "a.mp3"
    with pytest.raises(ValueError):
        web_server._resolve_storage_path(root, "../outside.mp3")
    with pytest.raises(ValueError):
        web_server._resolve_storage_path(root, str(tmp_path / "outside.mp3"))


def test_api_handles_configured_root_path(temp_config):
    client, repository = _client(temp_config, root_path="/lessons-app")
    lesson_id = repository.add_lesson(
        title="Prefixed",
        language="es",
        audio_path="lessons/prefixed.mp3",
        timeline=[TimedSentence("Hola", "Hello", 0.0, 1.0)],
    )

    response = client.get(f"/lessons-app/api/lessons/{lesson_id}")

    assert response.status_code == 200
    assert response.json()["audio_url"] == "/lessons-app/storage/lessons/prefixed.mp3"


def test_max_upload_bytes_parsing(monkeypatch):
    monkeypatch.delenv("LANGBRIDGE_MAX_UPLOAD_BYTES", raising=False)
    assert web_server.get_max_upload_bytes() == 10 * 1024 * 1024

    monkeypatch.setenv("LANGBRIDGE_MAX_UPLOAD_BYTES", "0")
    assert web_server.get_max_upload_bytes() == 0

    monkeypatch.setenv("LANGBRIDGE_MAX_UPLOAD_BYTES", "lots")
    assert web_server.get_max_upload_bytes() == 10 * 1024 * 1024
