"""Incident photo storage."""

import logging
import secrets
import time
from urllib.parse import urlparse

from .backend import Backend, OperationError
from .models import IncidentImage

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "incident-images"
MAX_IMAGE_BYTES = 10 * 1024 * 1024
CACHE_CONTROL_SECONDS = "3600"


class ImageUploadError(OperationError):
    operation = "upload image"


class ImageDeleteError(OperationError):
    operation = "delete image"


def generate_image_key(filename: str) -> str:
    """Unique object key ``<epoch-ms>-<random>.<ext>`` for an uploaded file."""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "jpg"
    return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}.{ext or 'jpg'}"


def validate_image(image: IncidentImage) -> None:
    """Reject anything that is not an image or is larger than 10 MiB.

    Raises:
        ImageUploadError: When the file is not acceptable
    """
    if not image.content_type.startswith("image/"):
        raise ImageUploadError("File must be an image")
    if image.size > MAX_IMAGE_BYTES:
        raise ImageUploadError("Image size must be less than 10MB")


async def upload_incident_image(
    backend: Backend, image: IncidentImage, bucket: str = DEFAULT_BUCKET
) -> str:
    """Upload an incident photo and return its public URL.

    Raises:
        ImageUploadError: When validation or the upload fails
    """
    validate_image(image)
    key = generate_image_key(image.filename)

    result = await backend.upload(
        bucket,
        key,
        image.content,
        content_type=image.content_type,
        cache_control=CACHE_CONTROL_SECONDS,
        upsert=False,
    )
    if not result.ok:
        logger.error(f"Upload of {key} to {bucket} failed: {result.error}")
        raise ImageUploadError(result.error.message, result.error)
    if not result.data:
        raise ImageUploadError("no public URL returned")

    logger.info(f"Uploaded incident image {key} ({image.size} bytes)")
    return str(result.data)


def image_key_from_url(image_url: str) -> str:
    """Object key of a public image URL (its last path segment)."""
    return urlparse(image_url).path.rstrip("/").split("/")[-1]


async def delete_incident_image(
    backend: Backend, image_url: str, bucket: str = DEFAULT_BUCKET
) -> None:
    """Delete a previously uploaded incident photo.

    Raises:
        ImageDeleteError: When the URL has no key or the delete fails
    """
    key = image_key_from_url(image_url)
    if not key:
        raise ImageDeleteError("Invalid image URL")

    result = await backend.remove(bucket, [key])
    if not result.ok:
        logger.error(f"Delete of {key} from {bucket} failed: {result.error}")
        raise ImageDeleteError(result.error.message, result.error)

    logger.info(f"Deleted incident image {key}")
