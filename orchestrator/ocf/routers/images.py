"""
Image Manager API Router.

Endpoints used by the dashboard to manage connector images:
- POST /install: upload an image archive, or install an existing reference
- DELETE /uninstall: delete a tag (idempotent)
- GET /list: list installed images
- GET /get: get one image by tag
"""

import logging
import os
import uuid
from typing import Optional

import aiofiles
import aiofiles.os
from fastapi import APIRouter, File, Query, Request, UploadFile
from pydantic import BaseModel

from ..config import get_settings
from ..errors import PermanentItemError
from ..services.registry.manager import RegistryManager
from .common import envelope

logger = logging.getLogger(__name__)

router = APIRouter(tags=["images"])

# Read uploads in 1 MiB chunks
UPLOAD_CHUNK_SIZE = 1024 * 1024


class UninstalledImage(BaseModel):
    tag: str
    deleted: bool


def get_manager(request: Request) -> RegistryManager:
    return request.app.state.registry


async def discard_upload(path: str) -> None:
    """Remove a saved upload; a file that was never created is fine."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass


async def save_upload(upload: UploadFile, max_bytes: int, directory: str) -> str:
    """
    Stream an upload to a temporary file, enforcing a size limit.

    Returns:
        Path of the saved archive

    Raises:
        PermanentItemError: If the upload exceeds max_bytes
    """
    path = os.path.join(directory, f"ocf-upload-{uuid.uuid4().hex}.tar")
    written = 0
    try:
        async with aiofiles.open(path, "wb") as f:
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise PermanentItemError(f"upload exceeds {max_bytes} bytes")
                await f.write(chunk)
    except BaseException:
        await discard_upload(path)
        raise

    logger.info(f"[AIM] Received {upload.filename} ({written} bytes)")
    return path


@router.post("/install")
async def install(
    request: Request,
    file: Optional[UploadFile] = File(None, description="Image archive (docker save / OCI tarball)"),
    reference: Optional[str] = Query(None, description="Image reference to install instead of an upload"),
):
    manager = get_manager(request)

    if reference:
        return envelope(await manager.install(reference))
    if file is None:
        raise PermanentItemError("either an image archive or a reference is required")

    settings = get_settings()
    path = await save_upload(file, settings.max_upload_bytes, settings.upload_dir)
    try:
        record = await manager.install_archive(path)
    finally:
        await discard_upload(path)
    return envelope(record)


@router.delete("/uninstall")
async def uninstall(request: Request, tag: str = Query(..., description="Tag or image reference")):
    deleted = await get_manager(request).uninstall(tag)
    return envelope(UninstalledImage(tag=tag, deleted=deleted))


@router.get("/list")
async def list_images(request: Request):
    images = await get_manager(request).list_images()
    return envelope(images, kind="ImageList")


@router.get("/get")
async def get_image(request: Request, tag: str = Query(...)):
    return envelope(await get_manager(request).get_image(tag))
