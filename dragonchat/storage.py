"""
Client for the file storage service that owns attachment bytes.

The chat core never stores files. It asks the storage service for a
short-lived signed URL and downloads the object when a provider needs the
bytes inline.
"""

from __future__ import annotations

from typing import Optional, Protocol, Tuple

import httpx

from dragonchat.errors import ProviderError
from dragonchat.logging_config import logger
from dragonchat.settings import settings


class AttachmentError(ProviderError):
    """An attachment could not be resolved; fails the stream like a provider error."""


class StorageGateway(Protocol):
    async def download_url(self, file_id: str, owner_id: str) -> str: ...

    async def fetch(self, file_id: str, owner_id: str) -> Tuple[bytes, Optional[str]]: ...


class HttpStorageGateway:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        base_url: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ) -> None:
        self._client = client
        self._base_url = (base_url if base_url is not None else settings.storage_base_url) or ""
        self._max_bytes = max_bytes if max_bytes is not None else settings.max_attachment_bytes

    async def download_url(self, file_id: str, owner_id: str) -> str:
        if not self._base_url:
            raise AttachmentError("File storage is not configured")
        url = f"{self._base_url.rstrip('/')}/files/{file_id}/download"
        try:
            resp = await self._client.get(url, params={"owner": owner_id})
            resp.raise_for_status()
            signed = resp.json().get("url")
        except httpx.HTTPStatusError as exc:
            raise AttachmentError(
                f"Attachment {file_id} is not available (status {exc.response.status_code})"
            ) from exc
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            raise AttachmentError(f"Failed to resolve attachment {file_id}: {exc}") from exc
        if not isinstance(signed, str) or not signed:
            raise AttachmentError(f"Storage returned no download URL for attachment {file_id}")
        return signed

    async def fetch(self, file_id: str, owner_id: str) -> Tuple[bytes, Optional[str]]:
        url = await self.download_url(file_id, owner_id)
        buf = bytearray()
        try:
            async with self._client.stream("GET", url) as resp:
                resp.raise_for_status()
                declared = resp.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > self._max_bytes:
                    raise AttachmentError(f"Attachment {file_id} exceeds the size limit")
                async for part in resp.aiter_bytes():
                    buf.extend(part)
                    if len(buf) > self._max_bytes:
                        raise AttachmentError(f"Attachment {file_id} exceeds the size limit")
                mime = resp.headers.get("content-type")
        except httpx.HTTPError as exc:
            raise AttachmentError(f"Failed to download attachment {file_id}: {exc}") from exc

        logger.debug("Fetched attachment %s (%d bytes)", file_id, len(buf))
        return bytes(buf), (mime.split(";")[0].strip() if mime else None)


__all__ = ["AttachmentError", "HttpStorageGateway", "StorageGateway"]
