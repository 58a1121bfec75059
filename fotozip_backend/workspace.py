from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .errors import ArchiveNotFound
from .security import is_safe_basename, safe_join, sanitize_session_key


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadedFile:
    """One received file as stored in the upload area."""

    original_name: str
    storage_name: str
    path: Path
    size: int
    content_type: Optional[str] = None

    @property
    def archive_name(self) -> str:
        # Entry name inside the ZIP; the client-supplied name wins.
        return Path(self.original_name.replace("\\", "/")).name or self.storage_name


def _now_epoch() -> float:
    return time.time()


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


class BlobStore:
    """Filesystem area for uploads and generated archives.

    Layout:
    - <upload_dir>/                 shared area for stateless/webhook uploads
    - <upload_dir>/<session key>/   per-session uploads
    - <output_dir>/                 generated ZIP archives
    """

    def __init__(self, upload_dir: Path, output_dir: Path) -> None:
        self.upload_dir = Path(upload_dir).resolve()
        self.output_dir = Path(output_dir).resolve()

    def ensure_dirs(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def session_dir(self, session_key: str) -> Path:
        path = safe_join(self.upload_dir, sanitize_session_key(session_key))
        path.mkdir(parents=True, exist_ok=True)
        return path

    def new_archive_path(self, prefix: str, session_key: Optional[str] = None) -> Path:
        """Return a fresh, not yet existing archive location in the output area."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        parts = [prefix]
        if session_key is not None:
            parts.append(sanitize_session_key(session_key))
        while True:
            name = "-".join(parts + [str(_now_millis()), secrets.token_hex(3)]) + ".zip"
            path = safe_join(self.output_dir, name)
            if not path.exists():
                return path

    def discard(self, paths: Iterable[Path]) -> int:
        """Best-effort delete; failures are logged, never raised."""
        removed = 0
        for path in paths:
            try:
                Path(path).unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning("Could not delete %s", path, exc_info=True)
        return removed

    def cleanup_expired(self, ttl_seconds: float, now: Optional[float] = None) -> int:
        """Delete uploads and archives whose mtime is older than ``ttl_seconds``.

        Session subdirectories left empty are removed too. A TTL of 0 disables
        the sweep. Returns the number of deleted files.
        """
        if ttl_seconds <= 0:
            return 0
        now = _now_epoch() if now is None else now
        deleted = 0
        for root in (self.upload_dir, self.output_dir):
            if not root.exists():
                continue
            for path in sorted(root.rglob("*"), reverse=True):
                try:
                    if path.is_file():
                        if now - path.stat().st_mtime > ttl_seconds:
                            path.unlink()
                            deleted += 1
                    elif path.is_dir() and not any(path.iterdir()):
                        path.rmdir()
                except OSError:
                    logger.warning("Cleanup failed for %s", path, exc_info=True)
        return deleted


def resolve_archive(output_dir: Path, name: str) -> Path:
    """Map a download name to an existing archive inside ``output_dir``.

    Only plain ``*.zip`` basenames are accepted; anything with directory parts
    or traversal sequences is reported as not found.
    """
    if not is_safe_basename(name) or not name.lower().endswith(".zip"):
        raise ArchiveNotFound("Archivo no encontrado")
    try:
        path = safe_join(Path(output_dir), name)
    except ValueError:
        raise ArchiveNotFound("Archivo no encontrado")
    if not path.is_file():
        raise ArchiveNotFound("Archivo no encontrado")
    return path
