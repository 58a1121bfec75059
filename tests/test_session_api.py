"""Tests for the session-scoped endpoints: /iniciar, /upload, /comprimir."""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from httpx import AsyncClient

from fotozip_backend.config import Settings
from tests.conftest import files_in, read_zip


def _photos(*names: str) -> list[tuple[str, tuple[str, bytes, str]]]:
    return [("fotos", (name, f"contenido de {name}".encode(), "image/jpeg")) for name in names]


@pytest.mark.asyncio
async def test_index(client: AsyncClient) -> None:
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "active"


@pytest.mark.asyncio
async def test_full_session_flow(client: AsyncClient, app: FastAPI) -> None:
    response = await client.post("/iniciar", params={"chatId": "abc"})
    assert response.status_code == 200
    assert response.json()["ok"] is True

    response = await client.post("/upload", params={"chatId": "abc"}, files=_photos("a.jpg", "b.jpg"))
    assert response.status_code == 200
    assert response.json() == {"ok": True, "chatId": "abc", "recibidasAhora": 2, "totalSesion": 2}

    response = await client.get("/comprimir", params={"chatId": "abc"})
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/zip"
    assert response.headers["content-disposition"].startswith("attachment;")
    assert "fotos-abc-" in response.headers["content-disposition"]
    assert response.headers["cache-control"] == "no-store"
    assert read_zip(response.content) == {
        "a.jpg": b"contenido de a.jpg",
        "b.jpg": b"contenido de b.jpg",
    }
    assert "abc" not in app.state.registry

    response = await client.get("/comprimir", params={"chatId": "abc"})
    assert response.status_code == 400
    assert response.json() == {"ok": False, "error": "No hay fotos cargadas para este chatId."}


@pytest.mark.asyncio
async def test_uploads_accumulate_across_requests(client: AsyncClient) -> None:
    await client.post("/upload", params={"chatId": "k"}, files=_photos("1.jpg", "2.jpg"))
    response = await client.post(
        "/upload", params={"chatId": "k"}, files=_photos("3.jpg", "4.jpg", "5.jpg")
    )
    assert response.json()["recibidasAhora"] == 3
    assert response.json()["totalSesion"] == 5

    response = await client.post("/comprimir", json={"chatId": "k"})
    assert response.status_code == 200
    assert list(read_zip(response.content)) == ["1.jpg", "2.jpg", "3.jpg", "4.jpg", "5.jpg"]


@pytest.mark.asyncio
async def test_session_key_from_form_field_beats_query(client: AsyncClient, app: FastAPI) -> None:
    response = await client.post(
        "/upload",
        params={"chatId": "query-key"},
        data={"chatId": "form-key"},
        files=_photos("a.jpg"),
    )
    assert response.json()["chatId"] == "form-key"
    assert app.state.registry.count("form-key") == 1
    assert "query-key" not in app.state.registry


@pytest.mark.asyncio
async def test_default_session_key(client: AsyncClient) -> None:
    response = await client.post("/upload", files=_photos("a.jpg"))
    assert response.json()["chatId"] == "default"
    response = await client.get("/comprimir")
    assert response.status_code == 200
    assert list(read_zip(response.content)) == ["a.jpg"]


@pytest.mark.asyncio
async def test_iniciar_discards_previous_uploads(client: AsyncClient) -> None:
    await client.post("/upload", params={"chatId": "r"}, files=_photos("old.jpg"))
    response = await client.get("/iniciar", params={"chatId": "r"})
    assert response.json()["ok"] is True

    response = await client.get("/comprimir", params={"chatId": "r"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_iniciar_accepts_json_body(client: AsyncClient, app: FastAPI) -> None:
    response = await client.post("/iniciar", json={"chatId": "from-body"})
    assert response.json()["chatId"] == "from-body"
    assert "from-body" in app.state.registry


@pytest.mark.asyncio
async def test_empty_session_build_creates_no_archive(client: AsyncClient, settings: Settings) -> None:
    response = await client.post("/comprimir", params={"chatId": "nobody"})
    assert response.status_code == 400
    assert response.json()["ok"] is False
    assert files_in(settings.output_dir) == []


@pytest.mark.asyncio
async def test_upload_without_photos_is_rejected(client: AsyncClient) -> None:
    response = await client.post("/upload", params={"chatId": "x"}, data={"other": "1"}, files=[])
    assert response.status_code == 400
    assert response.json()["ok"] is False

    response = await client.post("/upload", params={"chatId": "x"}, json={"fotos": []})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_session_upload_accepts_any_type(client: AsyncClient) -> None:
    response = await client.post(
        "/upload",
        params={"chatId": "t"},
        files=[("fotos", ("notes.txt", b"plain text", "text/plain"))],
    )
    assert response.status_code == 200
    assert response.json()["recibidasAhora"] == 1


@pytest.mark.asyncio
async def test_oversized_session_upload_is_rejected(tmp_path) -> None:
    from httpx import ASGITransport

    from fotozip_backend.api import create_app

    settings = Settings(upload_dir=tmp_path / "u", output_dir=tmp_path / "o", max_file_bytes=8)
    app = create_app(settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        response = await ac.post(
            "/upload",
            params={"chatId": "big"},
            files=[
                ("fotos", ("small.jpg", b"1234", "image/jpeg")),
                ("fotos", ("big.jpg", b"123456789", "image/jpeg")),
            ],
        )
    assert response.status_code == 400
    assert response.json()["code"] == "FILE_TOO_LARGE"
    assert app.state.registry.count("big") == 0
    assert files_in(settings.upload_dir) == []


@pytest.mark.asyncio
async def test_uploads_are_deleted_after_successful_build(client: AsyncClient, settings: Settings) -> None:
    await client.post("/upload", params={"chatId": "clean"}, files=_photos("a.jpg"))
    assert len(files_in(settings.upload_dir)) == 1

    response = await client.get("/comprimir", params={"chatId": "clean"})
    assert response.status_code == 200
    assert files_in(settings.upload_dir) == []
    assert len(files_in(settings.output_dir)) == 1


@pytest.mark.asyncio
async def test_failed_build_keeps_session_for_retry(
    client: AsyncClient, app: FastAPI, settings: Settings
) -> None:
    await client.post("/upload", params={"chatId": "retry"}, files=_photos("a.jpg", "b.jpg"))
    missing = app.state.registry.files("retry")[0].path
    content = missing.read_bytes()
    missing.unlink()

    response = await client.get("/comprimir", params={"chatId": "retry"})
    assert response.status_code == 500
    assert response.json()["ok"] is False
    assert app.state.registry.count("retry") == 2
    assert files_in(settings.output_dir) == []

    missing.write_bytes(content)
    response = await client.get("/comprimir", params={"chatId": "retry"})
    assert response.status_code == 200
    assert list(read_zip(response.content)) == ["a.jpg", "b.jpg"]


@pytest.mark.asyncio
async def test_build_while_building_is_busy(client: AsyncClient, app: FastAPI) -> None:
    await client.post("/upload", params={"chatId": "busy"}, files=_photos("a.jpg"))
    with app.state.registry.building("busy"):
        response = await client.get("/comprimir", params={"chatId": "busy"})
    assert response.status_code == 409
    assert response.json()["ok"] is False


@pytest.mark.asyncio
async def test_long_original_name_is_stored_and_zipped(client: AsyncClient) -> None:
    long_name = "a" * 245 + ".jpg"
    response = await client.post("/upload", params={"chatId": "largo"}, files=_photos(long_name))
    assert response.status_code == 200
    assert response.json()["recibidasAhora"] == 1

    response = await client.get("/comprimir", params={"chatId": "largo"})
    assert response.status_code == 200
    assert read_zip(response.content) == {long_name: f"contenido de {long_name}".encode()}


@pytest.mark.asyncio
async def test_long_chat_id_can_be_compressed(client: AsyncClient, settings: Settings) -> None:
    chat_id = "k" * 240
    response = await client.post("/upload", params={"chatId": chat_id}, files=_photos("a.jpg"))
    assert response.status_code == 200

    response = await client.get("/comprimir", params={"chatId": chat_id})
    assert response.status_code == 200
    assert read_zip(response.content) == {"a.jpg": b"contenido de a.jpg"}
    assert all(len(path.name) <= 255 for path in files_in(settings.output_dir))
