"""
Listing images, hosted on Cloudinary.

Files are checked here (image MIME type, size, count) and resized by
Cloudinary's incoming transformation to fit an 800x800 box.
"""
import io
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

import cloudinary
import cloudinary.uploader
from fastapi import UploadFile

from errors import ValidationError

logger = logging.getLogger(__name__)

CLOUDINARY_FOLDER = os.getenv("CLOUDINARY_FOLDER", "food-waste-rescue")
MAX_IMAGE_BYTES = 5 * 1024 * 1024
MAX_IMAGES_PER_LISTING = 5
MAX_DIMENSION = 800

cloudinary.config(
    cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME"),
    api_key=os.getenv("CLOUDINARY_API_KEY"),
    api_secret=os.getenv("CLOUDINARY_API_SECRET"),
    secure=True,
)


@dataclass
class ImageUpload:
    filename: str
    content_type: str
    content: bytes


def read_uploads(files: Optional[List[UploadFile]]) -> List[ImageUpload]:
    uploads = []
    for f in files or []:
        if not f.filename:
            continue
        uploads.append(ImageUpload(f.filename, f.content_type or "", f.file.read()))
    return uploads


def validate_images(uploads: List[ImageUpload], existing: int = 0) -> None:
    if existing + len(uploads) > MAX_IMAGES_PER_LISTING:
        raise ValidationError(f"Max {MAX_IMAGES_PER_LISTING} images per listing")
    for upload in uploads:
        if not upload.content_type.startswith("image/"):
            raise ValidationError("Only image files are allowed")
        if len(upload.content) > MAX_IMAGE_BYTES:
            raise ValidationError("Max file size 5MB")


def upload_image(upload: ImageUpload) -> Dict[str, str]:
    result = cloudinary.uploader.upload(
        io.BytesIO(upload.content),
        folder=CLOUDINARY_FOLDER,
        resource_type="image",
        allowed_formats=["jpg", "jpeg", "png", "webp"],
        transformation=[{"width": MAX_DIMENSION, "height": MAX_DIMENSION, "crop": "limit"}],
    )
    return {"url": result["secure_url"], "public_id": result["public_id"]}


def upload_images(uploads: List[ImageUpload]) -> List[Dict[str, str]]:
    """Upload every file; if one fails, the ones already stored are destroyed again."""
    stored = []
    try:
        for upload in uploads:
            stored.append(upload_image(upload))
    except Exception:
        logger.exception("Image upload failed after %d of %d files", len(stored), len(uploads))
        for image in stored:
            destroy_image(image["public_id"])
        raise
    return stored


def destroy_image(public_id: str) -> None:
    try:
        cloudinary.uploader.destroy(public_id)
    except Exception:
        # orphaned media is left for manual cleanup, the record change still goes through
        logger.exception("Could not remove image %s from media host", public_id)
