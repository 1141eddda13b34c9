"""
Validation of uploaded meal photos.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 10 * 1024 * 1024

# Pillow format name -> (MIME type, file extension)
SUPPORTED_FORMATS = {
  "JPEG": ("image/jpeg", ".jpg"),
  "PNG": ("image/png", ".png"),
  "WEBP": ("image/webp", ".webp"),
  "GIF": ("image/gif", ".gif"),
  "HEIF": ("image/heic", ".heic"),
}


class InvalidImageError(ValueError):
  """Raised when uploaded bytes are not a supported, decodable image."""


@dataclass(frozen=True)
class ImageInfo:
  format: str
  mime_type: str
  extension: str
  width: int
  height: int
  size: int


def inspect_image(data: bytes, *, max_bytes: int = MAX_IMAGE_BYTES) -> ImageInfo:
  """Identify the image format and dimensions without trusting client headers."""
  if not data:
    raise InvalidImageError("Empty file received")
  if len(data) > max_bytes:
    raise InvalidImageError(f"Image is larger than {max_bytes // (1024 * 1024)} MB")

  try:
    with Image.open(io.BytesIO(data)) as image:
      image_format = (image.format or "").upper()
      width, height = image.size
      image.verify()
  except (UnidentifiedImageError, OSError, SyntaxError) as exc:
    logger.info("Rejected upload that is not a valid image: %s", exc)
    raise InvalidImageError("File is not a valid image") from exc

  if image_format not in SUPPORTED_FORMATS:
    raise InvalidImageError(f"Unsupported image format: {image_format or 'unknown'}")

  mime_type, extension = SUPPORTED_FORMATS[image_format]
  return ImageInfo(
    format=image_format,
    mime_type=mime_type,
    extension=extension,
    width=width,
    height=height,
    size=len(data),
  )


__all__ = ["ImageInfo", "InvalidImageError", "inspect_image", "MAX_IMAGE_BYTES"]
