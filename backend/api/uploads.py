import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from auth.utils import get_current_user
from config import settings
from db.models import User
from services.blob_service import BlobStorage, get_blob_storage
from utils.image_utils import generate_blob_name, validate_upload_request, normalize_content_type

logger = logging.getLogger(__name__)

router = APIRouter(tags=["uploads"])


class UploadUrlRequest(BaseModel):
    file_name: str = Field(min_length=1, max_length=255)
    file_size: int
    content_type: str


@router.post("/upload-url")
def create_upload_url(
    req: UploadUrlRequest,
    user: User = Depends(get_current_user),
    storage: BlobStorage = Depends(get_blob_storage),
):
    ext = validate_upload_request(req.content_type, req.file_size)
    blob_name = generate_blob_name(user.id, ext)
    expires_in = int(settings.UPLOAD_URL_EXPIRY_SECONDS)
    upload_url = storage.presign_put(blob_name, normalize_content_type(req.content_type), expires_in)
    logger.info(f"Upload URL issued user_id={user.id} blob_name={blob_name} size={req.file_size}")
    return {"upload_url": upload_url, "blob_name": blob_name, "expires_in": expires_in}
