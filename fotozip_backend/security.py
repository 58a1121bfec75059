from __future__ import annotations

import hashlib
import re
from pathlib import Path
from typing import Mapping, Optional

from .config import DEFAULT_SESSION_KEY, SESSION_KEY_FIELD


_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9._-]")

MAX_NAME_LENGTH = 255

# Session keys longer than this are shortened and suffixed with a digest.
MAX_KEY_LENGTH = 64


def sanitize_filename(
    name: Optional[str], fallback: str = "archivo", max_length: int = MAX_NAME_LENGTH
) -> str:
    """Turn an untrusted client filename into a safe storage basename.

    Contract:
    - only the last path component is kept ('/' and '\\' both count as separators)
    - every character outside [A-Za-z0-9._-] becomes '_' (non-ASCII included)
    - leading dots are dropped so the result is never hidden nor '.'/'..'
    - empty results fall back to ``fallback``
    - results are capped at ``max_length`` characters (255 by default), keeping
      the extension when possible

    The output never contains a path separator and can always be joined under
    a directory without escaping it.
    """
    raw = str(name or "")
    raw = raw.replace("\\", "/").rsplit("/", 1)[-1].strip()
    cleaned = _UNSAFE_CHARS_RE.sub("_", raw).lstrip(".")
    if not cleaned:
        return fallback
    if len(cleaned) > max_length:
        stem, dot, ext = cleaned.rpartition(".")
        if dot and stem and len(ext) < 16 and max_length > len(ext) + 1:
            cleaned = stem[: max_length - len(ext) - 1] + "." + ext
        else:
            cleaned = cleaned[:max_length]
    return cleaned


def sanitize_session_key(key: str) -> str:
    """Session key as used in directory and archive names.

    Keys longer than MAX_KEY_LENGTH keep a prefix plus a short digest of the
    whole key, so distinct long keys stay distinct and names stay short.
    """
    cleaned = sanitize_filename(key, fallback=DEFAULT_SESSION_KEY)
    if len(cleaned) <= MAX_KEY_LENGTH:
        return cleaned
    digest = hashlib.sha256(str(key).encode("utf-8")).hexdigest()[:12]
    return f"{cleaned[: MAX_KEY_LENGTH - len(digest) - 1]}-{digest}"


def resolve_session_key(
    body: Optional[Mapping[str, object]],
    query: Optional[Mapping[str, str]],
    default: str = DEFAULT_SESSION_KEY,
) -> str:
    """Pick the session key: body field, then query param, then ``default``."""
    for source in (body, query):
        if not source:
            continue
        value = source.get(SESSION_KEY_FIELD)
        if value is None or not isinstance(value, (str, int)):
            continue
        value = str(value).strip()
        if value:
            return value
    return default


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if name in (".", ".."):
        return False
    if name != Path(name).name:
        return False
    if "/" in name or "\\" in name or "\x00" in name:
        return False
    return True


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir.

    This defends against path traversal when serving user-controlled names.
    """
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    resolved = candidate.resolve()
    if resolved == base_dir:
        return resolved
    if base_dir not in resolved.parents:
        raise ValueError("Path traversal attempt")
    return resolved
