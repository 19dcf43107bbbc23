from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import re
import uuid
from typing import Optional, Tuple

from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContainerClient, ContentSettings

from .db import settings
from .errors import CollaboratorFailure, NotFound, QuizValidationError

logger = logging.getLogger(__name__)

_CONTENT_ID = re.compile(r"^[0-9a-f]{32}(\.[A-Za-z0-9]{1,8})?$")

_blob_service_client: BlobServiceClient | None = None
_container_initialised = False


def _get_blob_service() -> BlobServiceClient:
    global _blob_service_client
    if _blob_service_client is None:
        if not settings.AZURE_STORAGE_CONNECTION_STRING:
            raise CollaboratorFailure("Media storage is not configured")
        _blob_service_client = BlobServiceClient.from_connection_string(
            settings.AZURE_STORAGE_CONNECTION_STRING
        )
    return _blob_service_client


async def _get_container() -> ContainerClient:
    global _container_initialised
    service = _get_blob_service()
    container_client = service.get_container_client(settings.AZURE_STORAGE_CONTAINER)
    if not _container_initialised:
        try:
            await asyncio.to_thread(container_client.create_container)
        except ResourceExistsError:
            pass
        except AzureError as exc:
            raise CollaboratorFailure("Could not prepare media container") from exc
        _container_initialised = True
    return container_client


async def upload_media(filename: str, content: bytes, content_type: Optional[str]) -> str:
    """Store quiz media and return the content id the quiz should reference."""
    if not content:
        raise QuizValidationError("Uploaded file was empty")

    container_client = await _get_container()

    guessed_type = content_type or mimetypes.guess_type(filename)[0]
    extension = os.path.splitext(filename)[1]
    if not extension and guessed_type:
        extension = mimetypes.guess_extension(guessed_type) or ""

    content_id = f"{uuid.uuid4().hex}{extension.lower()}"
    blob_client = container_client.get_blob_client(content_id)

    settings_kwargs = {}
    if guessed_type:
        settings_kwargs["content_settings"] = ContentSettings(content_type=guessed_type)

    try:
        await asyncio.to_thread(blob_client.upload_blob, content, overwrite=True, **settings_kwargs)
    except AzureError as exc:
        logger.exception("Media upload of %s failed", filename)
        raise CollaboratorFailure("Failed to upload media") from exc

    logger.info("Stored media %s (%d bytes)", content_id, len(content))
    return content_id


async def fetch_media(content_id: str) -> Tuple[bytes, str]:
    if not _CONTENT_ID.match(content_id):
        raise NotFound("Media not found")

    container_client = await _get_container()
    blob_client = container_client.get_blob_client(content_id)
    try:
        downloader = await asyncio.to_thread(blob_client.download_blob)
        data = await asyncio.to_thread(downloader.readall)
    except ResourceNotFoundError as exc:
        raise NotFound("Media not found") from exc
    except AzureError as exc:
        raise CollaboratorFailure("Failed to fetch media") from exc

    content_settings = getattr(downloader.properties, "content_settings", None)
    content_type = getattr(content_settings, "content_type", None) or "application/octet-stream"
    return data, content_type
