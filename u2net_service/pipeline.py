"""
High-level U2Net processing pipeline.

`process_image_bytes` runs one image through a loaded session, strictly in
order: bytes in -> letterbox -> U2Net -> mask -> unletterbox -> (portrait
refinement) -> RGBA PNG bytes out. It is synchronous and CPU-bound;
`service.BackgroundRemover` adds admission control and runs it off the
event loop.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from threading import Event
from typing import Any, Optional

import cv2
import numpy as np

from . import config
from .config import RemovalMode
from .postprocessing import (
    compose_rgba_png,
    crop_from_letterbox,
    mask_from_output,
    portrait_curve,
    refine_portrait_mask,
    select_mask_output,
)
from .preprocessing import decode_image, image_to_tensor, letterbox

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    png_bytes: bytes
    width: int
    height: int


def check_cancelled(cancel_event: Optional[Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise asyncio.CancelledError()


def _run_inference(session: Any, tensor: np.ndarray, input_size: int) -> np.ndarray:
    input_name = session.get_inputs()[0].name
    output_names = [o.name for o in session.get_outputs()]
    outputs = session.run(None, {input_name: tensor})
    return select_mask_output(outputs, output_names, input_size)


def process_image_bytes(
    image_bytes: bytes,
    session: Any,
    mode: RemovalMode = RemovalMode.GENERAL,
    portrait_edge_strength: Optional[int] = None,
    settings: Optional[config.Settings] = None,
    cancel_event: Optional[Event] = None,
) -> PipelineResult:
    """
    Full pipeline from raw bytes to RGBA PNG bytes.

    Raises:
        ImageTooLargeError: when the decoded image exceeds the pixel ceiling.
        InvalidImageError: when the image cannot be decoded or the model
            returns no usable mask.
        asyncio.CancelledError: when `cancel_event` is set before inference.
    """
    settings = settings or config.get_settings()
    size = settings.u2net_input_size

    image = decode_image(image_bytes, settings.max_pixel_count)
    orig_w, orig_h = image.size

    padded, padding = letterbox(image, size)
    tensor = image_to_tensor(padded)

    check_cancelled(cancel_event)
    output = _run_inference(session, tensor, size)

    mask = mask_from_output(output)
    if mask.shape != (size, size):
        # Fallback outputs may come at a different resolution.
        mask = cv2.resize(mask, (size, size), interpolation=cv2.INTER_LINEAR)
    mask = crop_from_letterbox(mask, padding, orig_w, orig_h)

    if mode == RemovalMode.PORTRAIT:
        curve = portrait_curve(portrait_edge_strength, settings=settings)
        logger.debug("portrait refinement low=%d high=%d gamma=%.3f", curve.low, curve.high, curve.gamma)
        mask = refine_portrait_mask(mask, curve)

    png_bytes = compose_rgba_png(image, mask)
    return PipelineResult(png_bytes=png_bytes, width=orig_w, height=orig_h)
