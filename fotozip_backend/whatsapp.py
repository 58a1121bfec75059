"""WhatsApp Cloud API webhook helpers.

Signature verification of the inbound payload is left to the platform in
front of the service; this module only handles the subscription handshake,
message classification and getting media attachments onto disk.
"""
from __future__ import annotations

import json
import logging
import secrets
import time
from pathlib import Path
from typing import Any, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import CHUNK_SIZE, MAX_FILE_BYTES
from .errors import UploadRejected
from .security import safe_join, sanitize_filename
from .workspace import UploadedFile


logger = logging.getLogger(__name__)

MEDIA_TYPES = ("image", "document")


def _too_large() -> UploadRejected:
    return UploadRejected("El archivo supera el tamaño máximo permitido", code="FILE_TOO_LARGE")


class MediaInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    mime_type: Optional[str] = None
    filename: Optional[str] = None
    file_size: Optional[int] = None
    sha256: Optional[str] = None


class TextBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    body: Optional[str] = None


class WebhookMessage(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    timestamp: Optional[Union[str, int]] = None
    type: Optional[str] = None
    text: Optional[TextBody] = None
    image: Optional[MediaInfo] = None
    document: Optional[MediaInfo] = None

    @property
    def media_type(self) -> Optional[str]:
        return self.type if self.type in MEDIA_TYPES else None

    @property
    def media(self) -> Optional[MediaInfo]:
        if self.media_type is None:
            return None
        return getattr(self, self.media_type)

    def media_mime_type(self) -> str:
        media = self.media
        if media is not None and media.mime_type:
            return media.mime_type
        return "image/jpeg" if self.type == "image" else "application/octet-stream"

    def media_extension(self) -> str:
        if self.type == "image":
            return "jpg"
        media = self.media
        if media is not None and media.filename and "." in media.filename:
            ext = media.filename.rsplit(".", 1)[-1]
            return sanitize_filename(ext, fallback="bin", max_length=16)
        return "bin"


def verify_subscription(
    mode: Optional[str], token: Optional[str], challenge: Optional[str], expected_token: str
) -> Optional[str]:
    """Return the challenge to echo back, or None if the handshake must be refused."""
    if mode == "subscribe" and token is not None and token == expected_token:
        return challenge or ""
    return None


def _first_change_value(payload: Any) -> dict:
    try:
        value = payload["entry"][0]["changes"][0]["value"]
    except (KeyError, IndexError, TypeError):
        return {}
    return value if isinstance(value, dict) else {}


def status_update(payload: Any) -> Optional[dict]:
    """The first delivery/read status carried by the payload, if it is a status update."""
    statuses = _first_change_value(payload).get("statuses")
    if not statuses:
        return None
    first = statuses[0] if isinstance(statuses, list) else statuses
    return first if isinstance(first, dict) else {"status": first}


def extract_message(payload: Any) -> Optional[WebhookMessage]:
    """The first inbound message, or None when the payload has none (or is malformed)."""
    messages = _first_change_value(payload).get("messages")
    if not isinstance(messages, list) or not messages:
        return None
    try:
        return WebhookMessage.model_validate(messages[0])
    except ValidationError:
        logger.warning("Ignoring malformed WhatsApp message: %s", messages[0])
        return None


class MediaFetcher:
    """Downloads media bytes from the Graph API.

    Two calls: ``GET /<media id>`` returns a short-lived URL, which is then
    fetched with the same bearer token.
    """

    def __init__(
        self,
        access_token: str,
        graph_url: str = "https://graph.facebook.com/v19.0",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.access_token = access_token
        self.graph_url = graph_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.access_token)

    async def fetch_to(self, media_id: str, dest: Path, max_bytes: int) -> int:
        """Stream the media into ``dest``; returns the number of bytes written.

        Raises UploadRejected (FILE_TOO_LARGE) once more than ``max_bytes``
        arrive; ``dest`` is removed on any failure.
        """
        headers = {"Authorization": f"Bearer {self.access_token}"}
        if self._client is not None:
            return await self._fetch_to(self._client, media_id, headers, dest, max_bytes)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await self._fetch_to(client, media_id, headers, dest, max_bytes)

    async def _fetch_to(
        self, client: httpx.AsyncClient, media_id: str, headers: dict, dest: Path, max_bytes: int
    ) -> int:
        meta = await client.get(f"{self.graph_url}/{media_id}", headers=headers)
        meta.raise_for_status()
        info = meta.json()
        url = info.get("url")
        if not url:
            raise ValueError(f"No download URL for media {media_id}")
        declared = info.get("file_size")
        if isinstance(declared, int) and declared > max_bytes:
            raise _too_large()

        written = 0
        try:
            async with client.stream("GET", url, headers=headers) as response:
                response.raise_for_status()
                with dest.open("xb") as out:
                    async for chunk in response.aiter_bytes(CHUNK_SIZE):
                        written += len(chunk)
                        if written > max_bytes:
                            raise _too_large()
                        out.write(chunk)
        except BaseException:
            dest.unlink(missing_ok=True)
            raise
        return written


def media_descriptor(message: WebhookMessage, storage_name: str) -> dict:
    media = message.media or MediaInfo()
    return {
        "fieldname": "files",
        "originalname": media.filename or storage_name,
        "mimetype": message.media_mime_type(),
        "filename": storage_name,
        "size": media.file_size or 0,
        "whatsappMediaId": media.id,
        "metadata": {
            "from": message.from_,
            "timestamp": message.timestamp,
            "messageId": message.id,
        },
    }


async def store_media(
    message: WebhookMessage,
    upload_dir: Path,
    fetcher: Optional[MediaFetcher] = None,
    max_bytes: int = MAX_FILE_BYTES,
) -> UploadedFile:
    """Put the message's attachment into the upload area as a one-file upload.

    With a configured fetcher the real bytes are downloaded; otherwise a JSON
    descriptor of the attachment stands in for it.
    """
    media = message.media or MediaInfo()
    storage_name = (
        f"whatsapp-{time.time_ns() // 1_000_000}-{secrets.token_hex(3)}.{message.media_extension()}"
    )
    upload_dir.mkdir(parents=True, exist_ok=True)
    path = safe_join(upload_dir, storage_name)

    if fetcher is not None and fetcher.enabled and media.id:
        size = await fetcher.fetch_to(media.id, path, max_bytes)
    else:
        data = json.dumps(media_descriptor(message, storage_name), indent=2).encode("utf-8")
        path.write_bytes(data)
        size = len(data)
    logger.info("Stored WhatsApp %s attachment at %s", message.type, path)

    return UploadedFile(
        original_name=sanitize_filename(media.filename, fallback=storage_name),
        storage_name=storage_name,
        path=path,
        size=size,
        content_type=message.media_mime_type(),
    )
