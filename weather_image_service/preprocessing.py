"""
Image decoding and downscaling ahead of compositing.

Large provider photos are shrunk by their bounding box so overlay text is
drawn at a predictable scale and uploads stay small.
"""

from __future__ import annotations

from io import BytesIO
from typing import Tuple

from PIL import Image

from .errors import InvalidImageError


def compute_resize_dims(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Preserve aspect ratio while fitting inside `max_width` x `max_height`."""
    if max_width <= 0 or max_height <= 0:
        return width, height
    if width <= max_width and height <= max_height:
        return width, height
    scale = min(max_width / width, max_height / height)
    new_w = max(1, int(width * scale))
    new_h = max(1, int(height * scale))
    return new_w, new_h


def load_image_from_bytes(image_bytes: bytes) -> Image.Image:
    """
    Decode image bytes into an RGBA image.

    Raises:
        InvalidImageError: when the bytes are empty or not a decodable image.
    """
    if not image_bytes:
        raise InvalidImageError("Empty image data")
    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
    except Exception as exc:  # noqa: BLE001
        raise InvalidImageError("Invalid image data") from exc
    if image.width <= 0 or image.height <= 0:
        raise InvalidImageError("Image has no pixels")
    return image.convert("RGBA")


def downscale(image: Image.Image, max_width: int, max_height: int) -> Image.Image:
    new_w, new_h = compute_resize_dims(image.width, image.height, max_width, max_height)
    if (new_w, new_h) == image.size:
        return image
    return image.resize((new_w, new_h), Image.LANCZOS)
