"""Local media storage for downloaded and outbound attachments."""

import logging
import os
import time
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx

from wabridge.infra.config import config
from wabridge.infra.errors import TransientNetworkError, error_from_status

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "video/mp4": ".mp4",
    "video/quicktime": ".mov",
    "audio/mpeg": ".mp3",
    "audio/ogg": ".ogg",
    "audio/wav": ".wav",
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
}

EXTENSION_MIMES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}


def extension_for_mime(mime_type: Optional[str]) -> str:
    # Strip parameters such as "audio/ogg; codecs=opus"
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    return MIME_EXTENSIONS.get(base, ".bin")


def mime_for_name(file_name: str) -> str:
    return EXTENSION_MIMES.get(Path(file_name).suffix.lower(), "application/octet-stream")


def media_kind_for_mime(mime_type: str) -> str:
    """Map a mime type to the network's media kind."""
    if mime_type.startswith("image/"):
        return "image"
    if mime_type.startswith("video/"):
        return "video"
    if mime_type.startswith("audio/"):
        return "audio"
    return "document"


class MediaStore:
    """Files grouped per account under one storage root."""

    def __init__(
        self,
        root: Optional[str] = None,
        public_base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.root = Path(root or config.MEDIA_STORAGE_PATH)
        self.public_base_url = public_base_url if public_base_url is not None else config.MEDIA_PUBLIC_BASE_URL
        self._http_client = http_client

    def save(self, data: bytes, name: str, account_id: str) -> str:
        """
        Write bytes under the account's directory.

        Returns:
            Path of the stored file
        """
        account_dir = self.root / account_id
        account_dir.mkdir(parents=True, exist_ok=True)
        path = account_dir / Path(name).name
        path.write_bytes(data)
        logger.debug("Media saved", extra={"account_id": account_id, "path": str(path)})
        return str(path)

    def save_download(self, data: bytes, message_id: str, mime_type: Optional[str], account_id: str) -> str:
        """Store media downloaded from the network under a generated name."""
        name = f"media_{message_id}_{int(time.time() * 1000)}{extension_for_mime(mime_type)}"
        return self.save(data, name, account_id)

    def read(self, path: str) -> bytes:
        return Path(path).read_bytes()

    def delete(self, path: str) -> None:
        try:
            Path(path).unlink()
            logger.debug("Media deleted", extra={"path": path})
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error("Failed to delete media", extra={"path": path, "error": str(e)})

    def cleanup(self, max_age: Optional[float] = None) -> int:
        """
        Remove files older than max_age seconds.

        Returns:
            Number of files removed
        """
        max_age = config.MEDIA_MAX_AGE_SECONDS if max_age is None else max_age
        if not self.root.is_dir():
            return 0

        cutoff = time.time() - max_age
        removed = 0
        for account_dir in self.root.iterdir():
            if not account_dir.is_dir():
                continue
            for path in account_dir.iterdir():
                if path.is_file() and path.stat().st_mtime < cutoff:
                    self.delete(str(path))
                    removed += 1

        logger.info("Media cleanup completed", extra={"removed": removed})
        return removed

    def public_url(self, path: str) -> Optional[str]:
        """URL under which a stored file is served, if a public base is configured."""
        if not self.public_base_url:
            return None
        relative = os.path.relpath(path, self.root).replace(os.sep, "/")
        return f"{self.public_base_url.rstrip('/')}/{relative}"

    async def fetch_url(self, url: str, account_id: str) -> str:
        """
        Download an attachment by URL into the store.

        Raises:
            TransientNetworkError: Remote unreachable or 5xx
            PermanentRejectError: Remote rejected the download (4xx)
        """
        name = Path(urlparse(url).path).name or f"attachment_{uuid.uuid4().hex[:8]}"
        client = self._http_client or httpx.AsyncClient(timeout=config.PROTOCOL_HTTP_TIMEOUT)
        try:
            response = await client.get(url, follow_redirects=True)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Attachment download failed: {e}") from e
        finally:
            if self._http_client is None:
                await client.aclose()

        if response.status_code >= 400:
            raise error_from_status(response.status_code, "Attachment download rejected")

        if not Path(name).suffix:
            name += extension_for_mime(response.headers.get("content-type"))
        return self.save(response.content, f"{uuid.uuid4().hex[:8]}_{name}", account_id)
