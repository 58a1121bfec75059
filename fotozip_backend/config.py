from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


# Project root (fotozip_backend/ -> project root).
BASE_DIR = Path(__file__).resolve().parent.parent

# Multipart field names.
SESSION_UPLOAD_FIELD = "fotos"
STATELESS_UPLOAD_FIELD = "files"

# Session key lookup: body field, then query param, then this default.
SESSION_KEY_FIELD = "chatId"
DEFAULT_SESSION_KEY = "default"

# Allow-list for the stateless and webhook paths.
ALLOWED_EXTENSIONS = {".jpeg", ".jpg", ".png", ".gif", ".pdf", ".zip"}
ALLOWED_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "application/pdf",
    "application/zip",
    "application/x-zip-compressed",
}

MAX_FILE_BYTES = 25 * 1024 * 1024  # 25MB
MAX_STATELESS_FILES = 10

# Copy buffer for uploads and archive members.
CHUNK_SIZE = 1024 * 1024


def _env_str(name: str, default: str = "") -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    return int(_env_str(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(_env_str(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    raw = _env_str(name, "")
    if not raw:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _env_path(name: str, default: Path) -> Path:
    raw = _env_str(name, "")
    return (Path(raw) if raw else default).resolve()


@dataclass(frozen=True)
class Settings:
    """Runtime configuration.

    Built from environment variables by ``Settings.from_env()``; tests build
    their own instance pointing at temporary directories.
    """

    upload_dir: Path = field(default_factory=lambda: BASE_DIR / "uploads")
    output_dir: Path = field(default_factory=lambda: BASE_DIR / "paquetes")
    max_file_bytes: int = MAX_FILE_BYTES
    max_files: int = MAX_STATELESS_FILES
    # How long uploads and archives may stay on disk (0 keeps them forever).
    ttl_hours: float = 24.0
    cleanup_interval_seconds: int = 600
    delete_uploads_after_zip: bool = True
    environment: str = "production"
    whatsapp_verify_token: str = "tu_token_de_verificacion"
    whatsapp_access_token: str = ""
    whatsapp_graph_url: str = "https://graph.facebook.com/v19.0"

    @property
    def debug(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def ttl_seconds(self) -> float:
        return max(0.0, self.ttl_hours) * 3600.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            upload_dir=_env_path("FOTOZIP_UPLOAD_DIR", BASE_DIR / "uploads"),
            output_dir=_env_path("FOTOZIP_OUTPUT_DIR", BASE_DIR / "paquetes"),
            max_file_bytes=_env_int("FOTOZIP_MAX_FILE_BYTES", MAX_FILE_BYTES),
            max_files=_env_int("FOTOZIP_MAX_FILES", MAX_STATELESS_FILES),
            ttl_hours=_env_float("FOTOZIP_TTL_HOURS", 24.0),
            cleanup_interval_seconds=_env_int("FOTOZIP_CLEANUP_INTERVAL_SECONDS", 600),
            delete_uploads_after_zip=_env_bool("FOTOZIP_DELETE_UPLOADS_AFTER_ZIP", True),
            environment=_env_str("FOTOZIP_ENV", _env_str("NODE_ENV", "production")),
            whatsapp_verify_token=_env_str("WHATSAPP_VERIFY_TOKEN", "tu_token_de_verificacion"),
            whatsapp_access_token=_env_str("WHATSAPP_ACCESS_TOKEN", ""),
            whatsapp_graph_url=_env_str("WHATSAPP_GRAPH_URL", "https://graph.facebook.com/v19.0"),
        )
