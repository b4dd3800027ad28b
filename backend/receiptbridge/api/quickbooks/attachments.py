import asyncio
import logging
import mimetypes
import os
from typing import Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx

from receiptbridge.core.config import ATTACHMENT_DOWNLOAD_TIMEOUT
from receiptbridge.utils.r2 import get_file_from_r2
from .client import QuickBooksClient
from .errors import AttachmentFailed

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"


def _guess_content_type(filename: str) -> str:
    content_type, _ = mimetypes.guess_type(filename)
    return content_type or DEFAULT_CONTENT_TYPE


def _ensure_extension(filename: str, content_type: str) -> str:
    if "." in filename:
        return filename
    ext = mimetypes.guess_extension(content_type.split(";")[0].strip()) or ".jpg"
    return f"{filename}{ext}"


def _filename_from_path(file_path: str) -> str:
    parsed = urlparse(file_path)
    path = parsed.path or file_path
    return unquote(os.path.basename(path)) or "receipt"


async def download_receipt_image(
    image_url: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Tuple[bytes, str, str]:
    """Return (content, filename, content_type) for a stored receipt image."""
    if not image_url:
        raise AttachmentFailed("No image reference")

    filename = _filename_from_path(image_url)
    content_type = _guess_content_type(filename)

    if "r2.dev/" in image_url:
        key = urlparse(image_url).path.lstrip("/")
        found = await asyncio.to_thread(get_file_from_r2, key)
        if not found:
            raise AttachmentFailed(f"Receipt image {key} not found in storage")
        content, stored_type = found
        content_type = stored_type or content_type
    else:
        async with httpx.AsyncClient(
            timeout=ATTACHMENT_DOWNLOAD_TIMEOUT, transport=transport, follow_redirects=True
        ) as client:
            resp = await client.get(image_url)
        if resp.status_code >= 400:
            raise AttachmentFailed(f"Failed to download image: {resp.status_code}")
        content = resp.content
        content_type = resp.headers.get("Content-Type") or content_type

    if not content:
        raise AttachmentFailed("Receipt image is empty")

    return content, _ensure_extension(filename, content_type), content_type


async def attach_receipt_image(
    client: QuickBooksClient,
    entity_type: str,
    entity_id: str,
    image_url: Optional[str],
    downloader=download_receipt_image,
) -> bool:
    """Best-effort upload of the receipt image; never raises."""
    if not image_url:
        return False

    try:
        content, filename, content_type = await downloader(image_url)
        await client.upload_attachment(entity_type, entity_id, filename, content, content_type)
    except Exception as e:
        # the transaction already exists; a missing attachment must not fail the publish
        logger.warning(
            "Failed to attach receipt image to %s %s (non-fatal): %s",
            entity_type, entity_id, e,
        )
        return False

    logger.info("Receipt image attached to QuickBooks %s %s", entity_type, entity_id)
    return True
