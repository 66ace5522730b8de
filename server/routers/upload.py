"""Image upload route."""

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from constants import EDIT_TASKS
from core.config import Settings
from core.container import container
from core.logging import get_logger
from models.auth import AppUser
from routers.deps import get_settings, require_permission
from services.storage import FileStorage, StorageError, validate_image

logger = get_logger(__name__)
router = APIRouter(prefix="/api/upload", tags=["upload"])


def get_file_storage() -> FileStorage:
    return container.file_storage()


@router.post("/image")
async def upload_image(
    file: UploadFile = File(...),
    user: AppUser = Depends(require_permission(EDIT_TASKS)),
    storage: FileStorage = Depends(get_file_storage),
    settings: Settings = Depends(get_settings),
):
    data = await file.read()
    content_type = file.content_type or "application/octet-stream"
    try:
        validate_image(data, content_type, settings.max_upload_bytes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        url = await storage.save(data, file.filename or "upload", content_type)
    except StorageError as e:
        logger.error("Image upload failed", filename=file.filename, user_id=user.id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    return {"success": True, "url": url, "backend": storage.name, "size": len(data)}
