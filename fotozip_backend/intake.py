from __future__ import annotations

import logging
import secrets
import time
from pathlib import Path
from typing import List, Optional, Sequence

from starlette.datastructures import UploadFile

from .config import ALLOWED_EXTENSIONS, ALLOWED_MIME_TYPES, CHUNK_SIZE
from .errors import IntakeError, UploadRejected
from .security import MAX_NAME_LENGTH, safe_join, sanitize_filename
from .workspace import UploadedFile


logger = logging.getLogger(__name__)


def _base_content_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def _too_large(filename: Optional[str]) -> UploadRejected:
    label = f" {filename}" if filename else ""
    return UploadRejected(f"El archivo{label} supera el tamaño máximo permitido", code="FILE_TOO_LARGE")


def is_allowed_type(filename: Optional[str], content_type: Optional[str]) -> bool:
    """Both the declared MIME type and the extension must be on the allow-list."""
    ext = Path(filename or "").suffix.lower()
    return ext in ALLOWED_EXTENSIONS and _base_content_type(content_type) in ALLOWED_MIME_TYPES


def session_storage_name(original_name: Optional[str]) -> str:
    """<nanosecond timestamp>-<random hex>-<sanitized original name>, at most 255 chars."""
    prefix = f"{time.time_ns()}-{secrets.token_hex(3)}-"
    return prefix + sanitize_filename(original_name, max_length=MAX_NAME_LENGTH - len(prefix))


def random_storage_name(original_name: Optional[str]) -> str:
    """<millisecond timestamp>-<random integer><original extension>"""
    ext = Path(sanitize_filename(original_name)).suffix.lower()
    return f"{time.time_ns() // 1_000_000}-{secrets.randbelow(10**9)}{ext}"


def validate_uploads(
    files: Sequence[UploadFile],
    *,
    max_bytes: int,
    max_files: Optional[int] = None,
    enforce_allow_list: bool = False,
) -> None:
    """Reject the whole batch before anything touches the disk."""
    if not files:
        raise UploadRejected("No se han subido archivos", code="NO_FILES")
    if max_files is not None and len(files) > max_files:
        raise UploadRejected(
            f"Se permiten como máximo {max_files} archivos por solicitud", code="TOO_MANY_FILES"
        )
    for upload in files:
        if enforce_allow_list and not is_allowed_type(upload.filename, upload.content_type):
            raise UploadRejected(
                "Solo se permiten archivos de imagen, PDF o ZIP", code="INVALID_FILE_TYPE"
            )
        # Starlette spools the part before the handler runs, so the size is usually known.
        size = getattr(upload, "size", None)
        if size is not None and size > max_bytes:
            raise _too_large(upload.filename)


async def _write_upload(upload: UploadFile, dest: Path, max_bytes: int) -> int:
    written = 0
    await upload.seek(0)
    try:
        with dest.open("xb") as out:
            while True:
                chunk = await upload.read(CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise _too_large(upload.filename)
                out.write(chunk)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    return written


async def save_uploads(
    files: Sequence[UploadFile],
    dest_dir: Path,
    *,
    max_bytes: int,
    max_files: Optional[int] = None,
    enforce_allow_list: bool = False,
    random_names: bool = False,
) -> List[UploadedFile]:
    """Validate and store a batch of multipart parts under ``dest_dir``.

    Validation failures raise UploadRejected before any write. If a part fails
    while writing (over the size cap, disk error) the files already written by
    this batch are removed before the error propagates.
    """
    validate_uploads(
        files, max_bytes=max_bytes, max_files=max_files, enforce_allow_list=enforce_allow_list
    )

    saved: List[UploadedFile] = []
    try:
        for upload in files:
            dest_dir.mkdir(parents=True, exist_ok=True)
            original = upload.filename or ""
            name = random_storage_name(original) if random_names else session_storage_name(original)
            dest = safe_join(dest_dir, name)
            size = await _write_upload(upload, dest, max_bytes)
            saved.append(
                UploadedFile(
                    original_name=original or name,
                    storage_name=name,
                    path=dest,
                    size=size,
                    content_type=upload.content_type,
                )
            )
    except BaseException as exc:
        for record in saved:
            record.path.unlink(missing_ok=True)
        if isinstance(exc, OSError):
            logger.exception("Could not store uploads in %s", dest_dir)
            raise IntakeError("Error al guardar los archivos") from exc
        raise

    logger.info("Stored %d upload(s) in %s", len(saved), dest_dir)
    return saved
