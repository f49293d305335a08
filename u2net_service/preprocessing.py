"""
Image loading and preprocessing for U2Net.

U2Net takes a fixed square input. Images are letterboxed (scaled to fit,
centered on a black canvas) rather than stretched, and the padding is
recorded so the predicted mask can be mapped back onto the original.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Tuple

import numpy as np
from PIL import Image

from .errors import ImageTooLargeError, InvalidImageError

# ImageNet statistics used when U2Net was trained.
IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


@dataclass(frozen=True)
class LetterboxPadding:
    left: int
    top: int
    scaled_width: int
    scaled_height: int
    scale: float


def decode_image(image_bytes: bytes, max_pixel_count: int) -> Image.Image:
    """
    Decode `image_bytes` into an RGB image.

    The pixel ceiling is checked against the header before pixel data is
    decoded, so oversized images never allocate a full frame.
    """
    try:
        image = Image.open(BytesIO(image_bytes))
    except Image.DecompressionBombError as exc:
        raise ImageTooLargeError(_header_pixel_count(str(exc)), max_pixel_count) from exc
    except Exception as exc:  # noqa: BLE001
        raise InvalidImageError("Invalid image data") from exc

    width, height = image.size
    pixel_count = width * height
    if pixel_count > max_pixel_count:
        raise ImageTooLargeError(pixel_count, max_pixel_count)

    try:
        return image.convert("RGB")
    except Exception as exc:  # noqa: BLE001
        raise InvalidImageError("Invalid image data") from exc


def _header_pixel_count(message: str) -> int:
    # Pillow reports "Image size (N pixels) exceeds limit ..."
    for token in message.replace("(", " ").split():
        if token.isdigit():
            return int(token)
    return 0


def _letterbox_dims(width: int, height: int, target_size: int) -> Tuple[int, int, float]:
    scale = min(target_size / width, target_size / height)
    # Extreme aspect ratios can truncate one side to zero.
    scaled_w = max(1, int(width * scale))
    scaled_h = max(1, int(height * scale))
    return scaled_w, scaled_h, scale


def letterbox(image: Image.Image, target_size: int) -> Tuple[Image.Image, LetterboxPadding]:
    """Fit `image` into a `target_size` square without distortion."""
    scaled_w, scaled_h, scale = _letterbox_dims(image.width, image.height, target_size)
    left = (target_size - scaled_w) // 2
    top = (target_size - scaled_h) // 2

    canvas = Image.new("RGB", (target_size, target_size), (0, 0, 0))
    resized = image.resize((scaled_w, scaled_h), Image.BILINEAR)
    canvas.paste(resized, (left, top))

    padding = LetterboxPadding(
        left=left,
        top=top,
        scaled_width=scaled_w,
        scaled_height=scaled_h,
        scale=scale,
    )
    return canvas, padding


def image_to_tensor(image: Image.Image) -> np.ndarray:
    """Normalize an RGB image into a (1, 3, H, W) float32 array."""
    im_np = np.asarray(image, dtype=np.float32) / 255.0
    im_np = (im_np - IMAGENET_MEAN) / IMAGENET_STD
    im_np = np.transpose(im_np, (2, 0, 1))  # HWC -> CHW
    return np.expand_dims(im_np, axis=0).astype(np.float32)
