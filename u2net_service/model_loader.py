"""
Model loading utilities for U2Net.

The registry:
 - resolves the ONNX file for each removal mode from settings,
 - creates one ONNX Runtime session per mode on first access,
 - keeps the sessions shared for the process lifetime,
 - exposes `get_or_load(mode)` for inference callers.
"""

from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

import onnxruntime as ort

from . import config
from .config import RemovalMode
from .errors import ModelNotInstalledError, ProcessingError

logger = logging.getLogger(__name__)

SessionFactory = Callable[[Path], Any]

# Prefer CUDA -> Apple CoreML -> CPU to support both GPU servers and local macOS dev.
_PREFERRED_PROVIDERS = ("CUDAExecutionProvider", "CoreMLExecutionProvider")


def get_providers() -> List[str]:
    """Return the execution providers to use, most preferred first."""
    available = ort.get_available_providers()
    providers = [p for p in _PREFERRED_PROVIDERS if p in available]
    providers.append("CPUExecutionProvider")
    return providers


def create_onnx_session(model_path: Path) -> ort.InferenceSession:
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return ort.InferenceSession(str(model_path), sess_options=options, providers=get_providers())


class ModelRegistry:
    """
    Lazily loaded, cached inference sessions keyed by removal mode.

    Steady-state lookups are plain dict reads; the lock only guards the
    creation path so concurrent first callers load each model once.
    """

    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self._settings = settings or config.get_settings()
        self._session_factory = session_factory or create_onnx_session
        self._sessions: Dict[RemovalMode, Any] = {}
        self._lock = Lock()

    def model_path(self, mode: RemovalMode) -> Path:
        return self._settings.model_path_for(mode)

    def is_installed(self, mode: RemovalMode) -> bool:
        return self.model_path(mode).is_file()

    def is_loaded(self, mode: RemovalMode) -> bool:
        return mode in self._sessions

    def get_or_load(self, mode: RemovalMode) -> Any:
        """
        Return the session for `mode`, loading it on first access.

        Raises:
            ModelNotInstalledError: when the model file for `mode` is missing.
            ProcessingError: when the session cannot be created from the file.
        """
        session = self._sessions.get(mode)
        if session is not None:
            return session

        with self._lock:
            session = self._sessions.get(mode)
            if session is None:
                model_path = self.model_path(mode)
                if not model_path.is_file():
                    raise ModelNotInstalledError(mode.value, model_path)
                logger.info("Loading U2Net model for %s from %s", mode.value, model_path)
                try:
                    session = self._session_factory(model_path)
                except Exception as exc:  # noqa: BLE001
                    raise ProcessingError(f"Failed to load U2Net model for {mode.value}") from exc
                self._sessions[mode] = session
                logger.info("U2Net model loaded for %s", mode.value)
        return session

    def close(self) -> None:
        """Drop all cached sessions; ONNX Runtime frees them on collection."""
        with self._lock:
            self._sessions.clear()
