"""Post-processing for U2Net masks: output selection, unletterboxing, portrait cleanup."""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from typing import Optional, Sequence

import cv2
import numpy as np
from PIL import Image

from . import config
from .errors import InvalidImageError
from .preprocessing import LetterboxPadding

logger = logging.getLogger(__name__)

NORMALIZE_MIN_RANGE = 1e-4


@dataclass(frozen=True)
class PortraitCurve:
    low: int
    high: int
    gamma: float


def select_mask_output(
    outputs: Sequence[object],
    names: Sequence[str],
    expected_size: int,
) -> np.ndarray:
    """
    Pick the mask tensor from the model outputs by shape.

    U2Net emits several side outputs; the fused mask is the one shaped
    (1, 1, size, size). Output order is not relied upon.
    """
    expected = (1, 1, expected_size, expected_size)
    for idx, output in enumerate(outputs):
        if isinstance(output, np.ndarray) and output.shape == expected:
            logger.debug("Selected model output '%s' with shape %s", _name_at(names, idx), output.shape)
            return output

    if not outputs or not isinstance(outputs[0], np.ndarray):
        raise InvalidImageError("No valid tensor output from model.")

    first = outputs[0]
    logger.warning(
        "No output matched expected shape %s. Using first output '%s' with shape %s",
        expected,
        _name_at(names, 0),
        first.shape,
    )
    return first


def _name_at(names: Sequence[str], idx: int) -> str:
    return names[idx] if idx < len(names) else f"output_{idx}"


def mask_from_output(output: np.ndarray) -> np.ndarray:
    """
    Convert a raw model output into a uint8 mask.

    Outputs already in [0, 1] are clamped directly; anything else is min-max
    normalized so unexpected output ranges do not saturate the mask.
    """
    values = np.asarray(output, dtype=np.float32)
    if values.ndim == 4:
        values = values[0, 0]
    elif values.ndim == 3:
        values = values[0]
    if values.ndim != 2 or values.size == 0:
        raise InvalidImageError(f"Unexpected mask output shape {np.shape(output)}")

    v_min = float(values.min())
    v_max = float(values.max())
    if v_min >= 0.0 and v_max <= 1.0:
        normalized = np.clip(values, 0.0, 1.0)
    else:
        value_range = v_max - v_min
        if value_range < NORMALIZE_MIN_RANGE:
            value_range = 1.0
        normalized = np.clip((values - v_min) / value_range, 0.0, 1.0)
    return (normalized * 255.0).astype(np.uint8)


def crop_from_letterbox(
    mask: np.ndarray, padding: LetterboxPadding, original_width: int, original_height: int
) -> np.ndarray:
    """Undo the letterbox: crop the padded region and resize to the source size."""
    cropped = mask[
        padding.top : padding.top + padding.scaled_height,
        padding.left : padding.left + padding.scaled_width,
    ]
    return cv2.resize(
        np.ascontiguousarray(cropped),
        (original_width, original_height),
        interpolation=cv2.INTER_LINEAR,
    )


def portrait_curve(strength: Optional[int], settings: Optional[config.Settings] = None) -> PortraitCurve:
    """
    Translate an edge-strength slider (0-100) into thresholds and gamma.

    50 is neutral; higher values cut more faint background residue.
    """
    settings = settings or config.get_settings()
    if strength is None:
        strength = settings.default_portrait_edge_strength
    strength = int(np.clip(strength, 0, 100))
    delta = (strength - 50) / 50.0

    low = int(np.clip(settings.portrait_alpha_base_low + round(delta * settings.portrait_alpha_low_range), 0, 254))
    high = int(
        np.clip(
            settings.portrait_alpha_base_high + round(delta * settings.portrait_alpha_high_range),
            low + 1,
            255,
        )
    )
    gamma = settings.portrait_alpha_gamma_base + delta * settings.portrait_alpha_gamma_range
    return PortraitCurve(low=low, high=high, gamma=float(gamma))


def refine_portrait_mask(mask: np.ndarray, curve: PortraitCurve) -> np.ndarray:
    """
    Suppress faint "ghost" background typical of human-segmentation masks.

    Values at or below `low` become transparent. Between `low` and `high`
    a smoothstep ramp rises to `high`, avoiding banding; above `high` values
    pass through. A mild gamma is applied last. The curve is monotone.
    """
    alpha = mask.astype(np.float32)
    t = np.clip((alpha - curve.low) / float(curve.high - curve.low), 0.0, 1.0)
    smooth = t * t * (3.0 - 2.0 * t) * (curve.high / 255.0)
    normalized = np.where(alpha >= curve.high, alpha / 255.0, smooth)
    normalized = np.where(alpha <= curve.low, 0.0, normalized)
    adjusted = np.power(normalized, curve.gamma)
    return np.clip(adjusted * 255.0, 0.0, 255.0).astype(np.uint8)


def compose_rgba_png(rgb_image: Image.Image, alpha: np.ndarray) -> bytes:
    """Attach `alpha` to the untouched source pixels and encode as PNG."""
    if alpha.shape != (rgb_image.height, rgb_image.width):
        raise InvalidImageError(
            f"Mask shape {alpha.shape} does not match image size {rgb_image.size}"
        )
    out = rgb_image.convert("RGB")
    out.putalpha(Image.fromarray(np.ascontiguousarray(alpha, dtype=np.uint8)))
    buf = BytesIO()
    out.save(buf, format="PNG")
    return buf.getvalue()
