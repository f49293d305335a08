"""
Error taxonomy for background removal.

Callers (the HTTP layer, batch scripts) branch on these types to pick a
user-facing message: configuration and too-large errors get specific
messages, everything else a generic "processing failed".
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class BackgroundRemovalError(Exception):
    """Base class for all pipeline failures."""


class ModelNotInstalledError(BackgroundRemovalError, FileNotFoundError):
    def __init__(self, mode: str, path: Optional[Path] = None):
        self.mode = mode
        self.path = path
        super().__init__(f"U2Net model for mode '{mode}' not found at configured path.")


class ImageTooLargeError(BackgroundRemovalError, ValueError):
    def __init__(self, pixel_count: int, limit: int):
        self.pixel_count = pixel_count
        self.limit = limit
        super().__init__(
            f"Image too large: {pixel_count:,} pixels exceeds maximum of {limit:,} pixels."
        )


class InvalidImageError(BackgroundRemovalError, ValueError):
    """Image could not be decoded, or the model produced no usable mask."""


class ProcessingError(BackgroundRemovalError, RuntimeError):
    """Any other failure during preprocessing, inference or encoding."""
