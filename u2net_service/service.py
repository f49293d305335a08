"""
Async entry point for background removal with bounded concurrency.

Inference is memory and CPU hungry, so at most `max_concurrent_inferences`
images run at once; further callers wait on the semaphore. The CPU-bound
pipeline, and the first session load for each mode, run on worker threads so
the event loop stays responsive.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from functools import partial
import logging
from threading import Event
import time
from typing import Any, Optional, Union

from . import config
from .config import RemovalMode
from .errors import BackgroundRemovalError, ProcessingError
from .model_loader import ModelRegistry
from .pipeline import PipelineResult, check_cancelled, process_image_bytes

logger = logging.getLogger(__name__)


class BackgroundRemover:
    def __init__(
        self,
        settings: Optional[config.Settings] = None,
        registry: Optional[ModelRegistry] = None,
    ):
        self._settings = settings or config.get_settings()
        self._registry = registry or ModelRegistry(self._settings)
        self._max_concurrency = self._settings.max_concurrent_inferences
        self._semaphore = asyncio.Semaphore(self._max_concurrency)
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_concurrency, thread_name_prefix="u2net-infer"
        )
        # Session creation gets its own thread so it never queues behind inference.
        self._loader = ThreadPoolExecutor(max_workers=1, thread_name_prefix="u2net-load")
        # Only touched from the event loop thread.
        self._in_flight = 0
        self._waiting = 0

        logger.info(
            "BackgroundRemover initialized. general=%s portrait=%s max_concurrency=%d",
            self._registry.model_path(RemovalMode.GENERAL),
            self._registry.model_path(RemovalMode.PORTRAIT),
            self._max_concurrency,
        )

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    @property
    def max_concurrency(self) -> int:
        return self._max_concurrency

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def waiting(self) -> int:
        return self._waiting

    @property
    def available_slots(self) -> int:
        return self._max_concurrency - self._in_flight

    async def remove_background(
        self,
        image_bytes: bytes,
        mode: Union[RemovalMode, str] = RemovalMode.GENERAL,
        portrait_edge_strength: Optional[int] = None,
        cancel_event: Optional[Event] = None,
    ) -> bytes:
        """
        Remove the background from `image_bytes` and return RGBA PNG bytes.

        `cancel_event` is honored right after a slot is acquired and again
        before inference; once inference starts it runs to completion.

        Raises:
            ModelNotInstalledError: the model for `mode` is missing.
            ImageTooLargeError: the image exceeds the pixel ceiling.
            InvalidImageError: undecodable image or unusable model output.
            ProcessingError: any other failure.
            asyncio.CancelledError: the call was cancelled.
        """
        mode = RemovalMode(mode)
        session = await self._load_session(mode)
        cancel_event = cancel_event or Event()

        telemetry = self._settings.enable_telemetry
        started = time.perf_counter()
        if telemetry:
            logger.debug(
                "Background removal queued. mode=%s in_flight=%d waiting=%d",
                mode.value,
                self._in_flight,
                self._waiting,
            )

        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1

        self._in_flight += 1
        try:
            check_cancelled(cancel_event)
            result = await self._run_in_worker(
                image_bytes, session, mode, portrait_edge_strength, cancel_event
            )
        finally:
            self._in_flight -= 1
            self._semaphore.release()

        if telemetry:
            logger.info(
                "Background removal complete. mode=%s duration_ms=%.0f input=%dx%d output_bytes=%d",
                mode.value,
                (time.perf_counter() - started) * 1000.0,
                result.width,
                result.height,
                len(result.png_bytes),
            )
        return result.png_bytes

    async def _load_session(self, mode: RemovalMode) -> Any:
        if self._registry.is_loaded(mode):
            return self._registry.get_or_load(mode)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._loader, self._registry.get_or_load, mode)

    async def _run_in_worker(
        self,
        image_bytes: bytes,
        session: Any,
        mode: RemovalMode,
        portrait_edge_strength: Optional[int],
        cancel_event: Event,
    ) -> PipelineResult:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self._executor,
            partial(self._process, image_bytes, session, mode, portrait_edge_strength, cancel_event),
        )
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            cancel_event.set()
            # ONNX Runtime cannot be interrupted; hold the slot until the worker returns,
            # even if the caller cancels again while we wait.
            while not future.done():
                try:
                    await asyncio.shield(future)
                except (asyncio.CancelledError, Exception):  # noqa: BLE001
                    continue
            if not future.cancelled():
                future.exception()
            raise

    def _process(
        self,
        image_bytes: bytes,
        session: Any,
        mode: RemovalMode,
        portrait_edge_strength: Optional[int],
        cancel_event: Event,
    ) -> PipelineResult:
        try:
            return process_image_bytes(
                image_bytes,
                session,
                mode=mode,
                portrait_edge_strength=portrait_edge_strength,
                settings=self._settings,
                cancel_event=cancel_event,
            )
        except BackgroundRemovalError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ProcessingError("Background removal failed") from exc

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self._loader.shutdown(wait=False)
        self._registry.close()
