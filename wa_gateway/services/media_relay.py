"""
Media relay between the WhatsApp Cloud API and tenant storage.

Provider download URLs expire within minutes, so every media item that ends
up in conversation history is copied into durable storage first and only the
storage URL is ever written to a message row.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Literal

import structlog

from wa_gateway.core.errors import InvalidRequest, ProviderError
from wa_gateway.db.tenant_tables import TenantPrefix
from wa_gateway.services.storage import R2Storage
from wa_gateway.services.whatsapp_cloud import WhatsAppCloudClient

log = structlog.get_logger(__name__)

Folder = Literal["incoming", "outgoing"]


@dataclass(frozen=True)
class MediaMetadata:
    media_id: str
    url: str
    mime_type: str
    format: str


def media_format(mime_type: str | None) -> str | None:
    """Map a MIME type onto the message type it can be sent as."""
    if not mime_type:
        return None
    if mime_type.startswith("image/"):
        return "image"
    if mime_type.startswith("video/"):
        return "video"
    if mime_type.startswith("audio/"):
        return "audio"
    if mime_type.startswith(("application/", "text/")):
        return "document"
    return None


def extension_for(content_type: str | None, fallback: str = "bin") -> str:
    if not content_type or "/" not in content_type:
        return fallback
    subtype = content_type.split("/", 1)[1].split(";", 1)[0].strip().lower()
    return subtype or fallback


def storage_key(prefix: str, folder: Folder, filename: str) -> str:
    ext = filename.rsplit(".", 1)[1].lower() if "." in filename else ""
    return f"{TenantPrefix(prefix)}/{folder}/{int(time.time() * 1000)}_{uuid.uuid4()}.{ext or 'bin'}"


class MediaRelay:
    def __init__(self, cloud: WhatsAppCloudClient, storage: R2Storage):
        self.cloud = cloud
        self.storage = storage

    async def fetch_provider_media(self, media_id: str, access_token: str) -> bytes | None:
        try:
            meta = await self.cloud.get_media_metadata(media_id, access_token)
            data, _ = await self.cloud.download(meta["url"], access_token)
        except ProviderError as exc:
            log.error("media_fetch_failed", media_id=media_id, status=exc.status, error=exc.message)
            return None
        return data

    async def persist(
        self,
        prefix: str,
        data: bytes,
        filename: str,
        content_type: str,
        folder: Folder = "incoming",
    ) -> str | None:
        try:
            key = storage_key(prefix, folder, filename)
            url = await self.storage.put(key, data, content_type)
        except Exception as exc:
            log.error("media_persist_failed", prefix=str(prefix), folder=folder, error=str(exc))
            return None
        log.info("media_persisted", key=key, size=len(data))
        return url

    async def relay_incoming(
        self,
        prefix: str,
        media_id: str,
        access_token: str,
        filename: str,
        content_type: str,
    ) -> str | None:
        data = await self.fetch_provider_media(media_id, access_token)
        if not data:
            return None
        return await self.persist(prefix, data, filename, content_type, "incoming")

    async def resolve(self, media_id: str, access_token: str) -> MediaMetadata:
        meta = await self.cloud.get_media_metadata(media_id, access_token)
        mime_type = meta.get("mime_type") or ""
        fmt = media_format(mime_type)
        if fmt is None:
            raise InvalidRequest(f"Unsupported media type: {mime_type or 'unknown'}")
        return MediaMetadata(media_id=media_id, url=meta["url"], mime_type=mime_type, format=fmt)

    async def mirror_outgoing(self, prefix: str, media: MediaMetadata, access_token: str) -> str | None:
        try:
            data, header_type = await self.cloud.download(media.url, access_token)
        except ProviderError as exc:
            log.warning("media_mirror_download_failed", media_id=media.media_id, status=exc.status)
            return None
        content_type = media.mime_type or header_type or "application/octet-stream"
        filename = f"outgoing_{media.media_id}.{extension_for(content_type)}"
        return await self.persist(prefix, data, filename, content_type, "outgoing")

    async def preview(self, media_id: str, access_token: str) -> tuple[bytes, str]:
        meta = await self.cloud.get_media_metadata(media_id, access_token)
        data, header_type = await self.cloud.download(meta["url"], access_token)
        return data, meta.get("mime_type") or header_type or "application/octet-stream"

    async def upload(
        self,
        prefix: str,
        phone_number_id: str,
        access_token: str,
        data: bytes,
        filename: str,
        content_type: str,
    ) -> dict:
        """Upload a file to the provider for later sending and keep a durable copy of it."""
        media_id = await self.cloud.upload_media(phone_number_id, access_token, data, filename, content_type)
        stored_url = await self.persist(prefix, data, filename, content_type, "outgoing")
        log.info("media_uploaded", media_id=media_id, stored=stored_url is not None)
        return {"media_id": media_id, "filename": filename, "mime_type": content_type, "stored_url": stored_url}
