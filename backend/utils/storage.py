from fastapi import HTTPException, status, UploadFile
from config import get_supabase_storage, SUPABASE_STORAGE_BUCKET
from typing import Tuple
import uuid
import os
import logging

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = ["image/jpeg", "image/png", "image/gif", "image/webp"]
MAX_IMAGE_SIZE = 5 * 1024 * 1024


class StorageHelpers:
    """Image uploads to Supabase Storage"""

    def __init__(self):
        self._storage = None

    @property
    def storage(self):
        if self._storage is None:
            self._storage = get_supabase_storage()
        return self._storage

    async def upload_image(self, folder: str, file: UploadFile) -> Tuple[str, str]:
        """
        Upload an image under `folder` and return (public_url, storage_path)
        """
        if file.content_type not in ALLOWED_IMAGE_TYPES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File type {file.content_type} not allowed"
            )

        file_content = await file.read()
        if len(file_content) > MAX_IMAGE_SIZE:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="File size must be less than 5MB"
            )

        file_extension = os.path.splitext(file.filename)[1] if file.filename else ".jpg"
        storage_path = f"{folder}/{uuid.uuid4()}{file_extension}"

        try:
            bucket = self.storage.from_(SUPABASE_STORAGE_BUCKET)
            bucket.upload(
                path=storage_path,
                file=file_content,
                file_options={"content-type": file.content_type}
            )
            public_url = bucket.get_public_url(storage_path)
        except Exception as e:
            logger.error(f"Upload to {storage_path} failed: {str(e)}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to upload image"
            )

        logger.info(f"Uploaded image to {storage_path}")
        return public_url, storage_path

    def delete_file(self, storage_path: str) -> bool:
        """Remove a stored object; failures are logged, not raised"""
        try:
            self.storage.from_(SUPABASE_STORAGE_BUCKET).remove([storage_path])
            return True
        except Exception as e:
            logger.warning(f"Could not delete {storage_path}: {str(e)}")
            return False


storage_helpers = StorageHelpers()
