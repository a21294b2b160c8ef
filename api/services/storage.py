"""
Storage Service — blob storage collaborator for uploaded documents.

Only the returned path/URL is persisted by the core, never the bytes.
"""

import asyncio
import logging
import re

import httpx
from config import settings
from services.errors import ConfigurationError, StorageUnavailableError

logger = logging.getLogger(__name__)

_http: httpx.AsyncClient | None = None


async def _get_http() -> httpx.AsyncClient:
    global _http
    if _http is None:
        _http = httpx.AsyncClient(timeout=30.0)
    return _http


def safe_file_name(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", (name or "").strip()).strip("-")
    return cleaned[:120] or "upload"


async def _put(path: str, content: bytes, content_type: str) -> dict:
    client = await _get_http()
    resp = await client.put(
        f"{settings.STORAGE_API_URL.rstrip('/')}/{path.lstrip('/')}",
        content=content,
        headers={
            "Content-Type": content_type,
            "Authorization": f"Bearer {settings.STORAGE_API_KEY}",
        },
    )
    resp.raise_for_status()
    return resp.json() if resp.content else {}


async def save_file(path: str, content: bytes, content_type: str) -> dict:
    """
    Store bytes at path. Returns {"path", "download_url"}.

    One retry after STORAGE_RETRY_DELAY_SEC; a second failure raises
    StorageUnavailableError.
    """
    if not settings.STORAGE_API_URL:
        raise ConfigurationError("Storage API is not configured")

    try:
        data = await _put(path, content, content_type)
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Storing %s failed (%s); retrying once", path, e)
        await asyncio.sleep(settings.STORAGE_RETRY_DELAY_SEC)
        try:
            data = await _put(path, content, content_type)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Storing %s failed after retry: %s", path, e)
            raise StorageUnavailableError(f"Document storage unavailable: {e}")

    download_url = data.get("download_url") or data.get("downloadUrl") or data.get("url")
    logger.info("Stored %s (%d bytes)", path, len(content))
    return {"path": path, "download_url": download_url}
