from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, Response
from starlette.background import BackgroundTask
from starlette.datastructures import FormData, UploadFile

from .config import (
    SESSION_UPLOAD_FIELD,
    STATELESS_UPLOAD_FIELD,
    Settings,
)
from .errors import ArchiveBuildError, ServiceError, SessionBusy, UploadRejected
from .intake import save_uploads
from .security import resolve_session_key
from .sessions import SessionRegistry
from .whatsapp import MediaFetcher, extract_message, status_update, store_media, verify_subscription
from .workspace import BlobStore, UploadedFile, resolve_archive
from .zip_utils import build_archive_async


logger = logging.getLogger(__name__)

router = APIRouter()


class _ClientGone(Exception):
    pass


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> BlobStore:
    return request.app.state.store


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def get_media_fetcher(request: Request) -> MediaFetcher:
    return request.app.state.media_fetcher


def _is_multipart(request: Request) -> bool:
    return request.headers.get("content-type", "").lower().startswith("multipart/form-data")


def _form_fields(form: FormData) -> dict:
    return {key: value for key, value in form.multi_items() if isinstance(value, str)}


def _form_uploads(form: FormData, field: str) -> List[UploadFile]:
    # Browsers send an empty part with no filename when no file is picked.
    return [
        value
        for value in form.getlist(field)
        if isinstance(value, UploadFile) and (value.filename or getattr(value, "size", None))
    ]


async def _body_fields(request: Request) -> dict:
    """Plain fields of a JSON, urlencoded or multipart body (empty otherwise)."""
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        async with request.form() as form:
            return _form_fields(form)
    return {}


def _archive_members(files: List[UploadedFile]) -> list:
    return [(record.path, record.archive_name) for record in files]


def _cleanup_task(settings: Settings, store: BlobStore, files: List[UploadedFile]) -> Optional[BackgroundTask]:
    if not settings.delete_uploads_after_zip:
        return None
    return BackgroundTask(store.discard, [record.path for record in files])


def _session_error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"ok": False, "error": message}, status_code=status_code)


@router.get("/")
async def index() -> JSONResponse:
    return JSONResponse(
        {
            "status": "active",
            "endpoints": {
                "iniciar": "GET|POST /iniciar?chatId=<id>",
                "upload": f"POST /upload?chatId=<id> (multipart, campo '{SESSION_UPLOAD_FIELD}')",
                "comprimir": "GET|POST /comprimir?chatId=<id> o POST /comprimir "
                f"(multipart, campo '{STATELESS_UPLOAD_FIELD}', máx 10)",
                "descargar": "GET /descargar/<filename>",
                "webhook": "GET|POST /webhook/whatsapp",
            },
        }
    )


@router.api_route("/iniciar", methods=["GET", "POST"])
async def start_session(
    request: Request, registry: SessionRegistry = Depends(get_registry)
) -> JSONResponse:
    """Start (or restart) the session for the resolved chatId."""
    key = resolve_session_key(await _body_fields(request), request.query_params)
    registry.reset(key)
    logger.info("Session %s reset", key)
    return JSONResponse({"ok": True, "chatId": key, "message": f"Sesión iniciada para chatId {key}."})


@router.post("/upload")
async def upload_photos(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
    registry: SessionRegistry = Depends(get_registry),
) -> JSONResponse:
    """Add the request's ``fotos`` parts to the session."""
    if not _is_multipart(request):
        return _session_error("Se esperaba multipart/form-data con el campo 'fotos'.", 400)

    async with request.form() as form:
        key = resolve_session_key(_form_fields(form), request.query_params)
        uploads = _form_uploads(form, SESSION_UPLOAD_FIELD)
        if not uploads:
            return _session_error("No se recibieron fotos.", 400)
        try:
            saved = await save_uploads(uploads, store.session_dir(key), max_bytes=settings.max_file_bytes)
        except UploadRejected as exc:
            logger.warning("Upload rejected for session %s: %s", key, exc.message)
            return JSONResponse(
                {"ok": False, "error": exc.message, "code": exc.code}, status_code=exc.status_code
            )

    total = registry.append(key, saved)
    return JSONResponse({"ok": True, "chatId": key, "recibidasAhora": len(saved), "totalSesion": total})


async def _compress_session(request: Request, key: str) -> Response:
    settings: Settings = request.app.state.settings
    store: BlobStore = request.app.state.store
    registry: SessionRegistry = request.app.state.registry

    try:
        with registry.building(key) as files:
            if not files:
                return _session_error("No hay fotos cargadas para este chatId.", 400)
            output = store.new_archive_path("fotos", key)
            await build_archive_async(output, _archive_members(files))
            if await request.is_disconnected():
                store.discard([output])
                raise _ClientGone()
    except SessionBusy as exc:
        return _session_error(exc.message, exc.status_code)
    except ArchiveBuildError:
        logger.error("Could not build archive for session %s", key)
        return _session_error("No se pudo generar el ZIP.", 500)
    except OSError:
        logger.exception("Filesystem error while building archive for session %s", key)
        return _session_error("No se pudo generar el ZIP.", 500)
    except _ClientGone:
        logger.info("Client left before the archive for session %s was sent", key)
        return Response(status_code=499)

    return FileResponse(
        output,
        media_type="application/zip",
        filename=output.name,
        background=_cleanup_task(settings, store, files),
    )


async def _compress_stateless(request: Request, uploads: List[UploadFile]) -> JSONResponse:
    settings: Settings = request.app.state.settings
    store: BlobStore = request.app.state.store

    saved = await save_uploads(
        uploads,
        store.upload_dir,
        max_bytes=settings.max_file_bytes,
        max_files=settings.max_files,
        enforce_allow_list=True,
        random_names=True,
    )
    output = store.new_archive_path("archivos")
    try:
        await build_archive_async(output, _archive_members(saved))
    except BaseException:
        store.discard([record.path for record in saved])
        raise

    return JSONResponse(
        {
            "success": True,
            "message": "Archivos comprimidos exitosamente",
            "downloadUrl": f"/descargar/{output.name}",
            "filename": output.name,
            "fileCount": len(saved),
        },
        background=_cleanup_task(settings, store, saved),
    )


@router.get("/comprimir")
async def compress_get(request: Request) -> Response:
    return await _compress_session(request, resolve_session_key(None, request.query_params))


@router.post("/comprimir")
async def compress_post(request: Request) -> Response:
    """Stateless when the body carries ``files`` parts, session-scoped otherwise."""
    if _is_multipart(request):
        async with request.form() as form:
            uploads = _form_uploads(form, STATELESS_UPLOAD_FIELD)
            if uploads:
                return await _compress_stateless(request, uploads)
            fields = _form_fields(form)
    else:
        fields = await _body_fields(request)
    return await _compress_session(request, resolve_session_key(fields, request.query_params))


@router.get("/descargar/{filename}", name="download_archive")
async def download_archive(filename: str, store: BlobStore = Depends(get_store)) -> FileResponse:
    path = resolve_archive(store.output_dir, filename)
    try:
        with path.open("rb"):
            pass
    except OSError as exc:
        logger.error("Cannot read archive %s", path, exc_info=True)
        raise ServiceError("Error al descargar el archivo", code="DOWNLOAD_ERROR") from exc
    # FileResponse fills in Content-Length and an attachment Content-Disposition.
    return FileResponse(path, media_type="application/zip", filename=filename)


@router.get("/webhook/whatsapp")
async def whatsapp_verify(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
    settings: Settings = Depends(get_settings),
) -> Response:
    echo = verify_subscription(mode, token, challenge, settings.whatsapp_verify_token)
    if echo is None:
        logger.error("WhatsApp webhook verification failed")
        return PlainTextResponse("Forbidden", status_code=403)
    logger.info("WhatsApp webhook verified")
    return PlainTextResponse(echo)


@router.post("/webhook/whatsapp")
async def whatsapp_message(
    request: Request,
    settings: Settings = Depends(get_settings),
    store: BlobStore = Depends(get_store),
    fetcher: MediaFetcher = Depends(get_media_fetcher),
) -> JSONResponse:
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    logger.debug("WhatsApp webhook payload: %s", json.dumps(payload, ensure_ascii=False))

    status = status_update(payload)
    if status is not None:
        logger.info("WhatsApp status update: %s", status)
        return JSONResponse({"status": "ok"})

    message = extract_message(payload)
    if message is None:
        logger.info("WhatsApp webhook without messages")
        return JSONResponse({"status": "ok"})

    try:
        if message.media_type is not None:
            media = message.media
            if media is None or not media.id:
                logger.error("WhatsApp %s message without media id", message.media_type)
                return JSONResponse(
                    {"success": False, "error": "ID de archivo no encontrado"}, status_code=400
                )
            try:
                uploaded = await store_media(
                    message, store.upload_dir, fetcher, max_bytes=settings.max_file_bytes
                )
            except UploadRejected as exc:
                logger.warning("WhatsApp media rejected: %s", exc.message)
                return JSONResponse(
                    {"success": False, "error": exc.message, "code": exc.code},
                    status_code=exc.status_code,
                )
            output = store.new_archive_path("whatsapp")
            try:
                await build_archive_async(output, _archive_members([uploaded]))
            except BaseException:
                store.discard([uploaded.path])
                raise
            return JSONResponse(
                {
                    "success": True,
                    "message": "Archivo recibido y procesado",
                    "downloadUrl": str(request.url_for("download_archive", filename=output.name)),
                    "filename": output.name,
                    "mediaType": message.media_type,
                    "whatsappMessageId": message.id,
                },
                background=_cleanup_task(settings, store, [uploaded]),
            )

        text = message.text.body if message.text else None
        logger.info("WhatsApp text message received: %s", text)
        return JSONResponse(
            {
                "success": True,
                "type": "text",
                "text": text,
                "message": "Mensaje de texto recibido correctamente",
                "whatsappMessageId": message.id,
            }
        )
    except Exception as exc:
        logger.exception("WhatsApp webhook processing failed")
        body = {"success": False, "error": "Error al procesar el mensaje"}
        if settings.debug:
            body["details"] = str(exc)
        return JSONResponse(body, status_code=500)


async def _cleanup_worker(app: FastAPI) -> None:
    # Periodically apply the retention policy to uploads and archives.
    settings: Settings = app.state.settings
    store: BlobStore = app.state.store
    while True:
        await asyncio.sleep(max(30, settings.cleanup_interval_seconds))
        try:
            deleted = store.cleanup_expired(settings.ttl_seconds)
        except OSError:
            logger.warning("Retention sweep failed", exc_info=True)
            continue
        if deleted:
            logger.info("Retention sweep deleted %d file(s)", deleted)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=logging.INFO)
    settings: Settings = app.state.settings
    store: BlobStore = app.state.store

    store.ensure_dirs()
    deleted = store.cleanup_expired(settings.ttl_seconds)
    if deleted:
        logger.info("Startup sweep deleted %d expired file(s)", deleted)
    logger.info("Uploads in %s, archives in %s", store.upload_dir, store.output_dir)

    task = asyncio.create_task(_cleanup_worker(app))
    try:
        yield
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    else:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    body = {"success": False, "error": exc.message, "code": exc.code}
    if exc.status_code >= 500 and request.app.state.settings.debug and exc.__cause__ is not None:
        body["details"] = str(exc.__cause__)
    return JSONResponse(body, status_code=exc.status_code)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log the traceback, answer with a generic 500."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    body = {"success": False, "error": "Error interno del servidor", "code": "INTERNAL_ERROR"}
    if request.app.state.settings.debug:
        body["details"] = str(exc)
    return JSONResponse(body, status_code=500)


def create_app(
    settings: Optional[Settings] = None, media_fetcher: Optional[MediaFetcher] = None
) -> FastAPI:
    """Build the application with its own registry and blob store."""
    settings = settings or Settings.from_env()
    store = BlobStore(settings.upload_dir, settings.output_dir)
    store.ensure_dirs()

    app = FastAPI(title="FotoZip", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.registry = SessionRegistry()
    app.state.media_fetcher = media_fetcher or MediaFetcher(
        settings.whatsapp_access_token, settings.whatsapp_graph_url
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def _no_store_downloads(request: Request, call_next):
        response = await call_next(request)
        # Archives and session state change between calls; never let clients cache them.
        if request.url.path.startswith(("/comprimir", "/descargar", "/upload", "/iniciar")):
            response.headers["Cache-Control"] = "no-store"
            response.headers["X-Content-Type-Options"] = "nosniff"
        return response

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
    app.include_router(router)
    return app
