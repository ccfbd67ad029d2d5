"""Cloudinary uploads for profile images and emergency media."""

import logging

import cloudinary
import cloudinary.uploader
from fastapi import HTTPException, status

from .core import get_settings

logger = logging.getLogger(__name__)


def upload_file(fileobj, folder: str, resource_type: str = "image") -> str:
    """
    Upload a file to Cloudinary and return its secure URL.

    Args:
        fileobj: Readable binary file object.
        folder (str): Cloudinary folder for the asset.
        resource_type (str): ``image``, ``video`` or ``raw``/``auto``.

    Raises:
        HTTPException: If Cloudinary is not configured.
        HTTPException: If the upload returns no URL.

    Returns:
        str: Public HTTPS URL of the uploaded asset.
    """
    settings = get_settings()
    if not settings.CLOUDINARY_URL:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Cloudinary is not configured",
        )
    cloudinary.config(cloudinary_url=settings.CLOUDINARY_URL)

    upload_result = cloudinary.uploader.upload(
        fileobj, folder=folder, resource_type=resource_type
    )
    url = upload_result.get("secure_url")
    if not url:
        logger.error("Cloudinary upload to %s returned no URL", folder)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Failed to upload file",
        )
    return url
