"""
FastAPI layer exposing U2Net background removal.

Endpoints:
 - GET  /health
 - POST /remove-bg          (multipart upload)
 - POST /remove-bg/url      (JSON with an image URL)
 - GET  /download/{key}
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from io import BytesIO
import logging
from pathlib import Path
import re
from threading import Event
from typing import Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import Response
from PIL import Image
from pydantic import BaseModel, HttpUrl
import requests
from starlette.concurrency import run_in_threadpool

from . import config
from .config import RemovalMode, parse_mode
from .errors import ImageTooLargeError, ModelNotInstalledError
from .service import BackgroundRemover
from .storage import R2ResultStorage, ResultStorage, get_result_storage

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp"}
ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif", "image/bmp"}
_FILENAME_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class ErrorCodes:
    FILE_TOO_LARGE = "FILE_001"
    INVALID_FORMAT = "FILE_002"
    INVALID_IMAGE = "FILE_003"
    IMAGE_TOO_LARGE = "FILE_006"
    FILE_MISSING = "FILE_007"
    PROCESSING_FAILED = "PROC_002"
    SERVER_ERROR = "SRV_001"
    REQUEST_CANCELLED = "REQ_499"


class RemoveBgUrlRequest(BaseModel):
    imageUrl: HttpUrl
    mode: Optional[str] = None
    portraitEdgeStrength: Optional[int] = None


def _error(status_code: int, code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"success": False, "error": message, "errorCode": code},
    )


def _clamp_strength(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    return min(max(value, 0), 100)


def _validate_dimensions(image_bytes: bytes, max_dimension: int) -> None:
    """Read only the image header and reject oversized or unreadable files."""
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            width, height = img.size
    except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to read image dimensions: %s", exc)
        raise _error(400, ErrorCodes.INVALID_IMAGE, "Invalid image file.") from exc
    if width > max_dimension or height > max_dimension:
        raise _error(
            400,
            ErrorCodes.INVALID_IMAGE,
            f"Image dimensions ({width}x{height}) exceed maximum allowed.",
        )


def _download_image(url: str, settings: config.Settings) -> bytes:
    resp = requests.get(url, timeout=(5, settings.request_timeout_seconds), stream=True)
    try:
        resp.raise_for_status()
        chunks = []
        total = 0
        for chunk in resp.iter_content(chunk_size=64 * 1024):
            total += len(chunk)
            if total > settings.max_upload_bytes:
                raise ValueError("Downloaded image exceeds the upload size limit")
            chunks.append(chunk)
        return b"".join(chunks)
    finally:
        resp.close()


async def _watch_disconnect(request: Request, cancel_event: Event, poll_seconds: float = 0.25) -> bool:
    """Set `cancel_event` once the client goes away; returns True if it did."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling background removal")
            cancel_event.set()
            return True
        await asyncio.sleep(poll_seconds)
    return False


async def _cleanup_loop(storage: ResultStorage, interval_seconds: int) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await run_in_threadpool(storage.cleanup_expired)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Temp result cleanup failed: %s", exc)


def create_app(
    settings: Optional[config.Settings] = None,
    remover: Optional[BackgroundRemover] = None,
    storage: Optional[ResultStorage] = None,
) -> FastAPI:
    settings = settings or config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings
        app.state.remover = remover or BackgroundRemover(settings)
        app.state.storage = storage or get_result_storage(settings)
        cleanup_task = asyncio.create_task(
            _cleanup_loop(app.state.storage, settings.cleanup_interval_seconds)
        )
        try:
            yield
        finally:
            cleanup_task.cancel()
            with suppress(asyncio.CancelledError):
                await cleanup_task
            app.state.remover.close()

    app = FastAPI(title="U2Net Background Removal Service", version="0.1.0", lifespan=lifespan)

    async def _remove_and_store(
        request: Request,
        image_bytes: bytes,
        mode: RemovalMode,
        edge_strength: Optional[int],
        original_name: str,
    ) -> dict:
        bg_remover: BackgroundRemover = request.app.state.remover
        result_storage: ResultStorage = request.app.state.storage

        if mode == RemovalMode.PORTRAIT and not bg_remover.registry.is_installed(RemovalMode.PORTRAIT):
            raise _error(503, ErrorCodes.SERVER_ERROR, "Portrait model not installed. Please contact administrator.")

        cancel_event = Event()
        watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
        try:
            png_bytes = await bg_remover.remove_background(
                image_bytes, mode=mode, portrait_edge_strength=edge_strength, cancel_event=cancel_event
            )
        except asyncio.CancelledError:
            if not (watcher.done() and not watcher.cancelled() and watcher.result()):
                raise
            raise _error(499, ErrorCodes.REQUEST_CANCELLED, "Request cancelled by client.")
        except ModelNotInstalledError as exc:
            logger.exception("U2Net model not found: %s", exc)
            raise _error(
                503,
                ErrorCodes.SERVER_ERROR,
                "Background removal model not installed. Please contact administrator.",
            ) from exc
        except ImageTooLargeError as exc:
            logger.warning("Image too large (pixel count): %s", exc)
            raise _error(413, ErrorCodes.IMAGE_TOO_LARGE, str(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Background removal failed: %s", exc)
            raise _error(500, ErrorCodes.PROCESSING_FAILED, "Failed to remove background.") from exc
        finally:
            watcher.cancel()

        try:
            key = await run_in_threadpool(result_storage.store, png_bytes, ".png")
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to store cutout: %s", exc)
            raise _error(500, ErrorCodes.SERVER_ERROR, "Storing the result failed.") from exc

        download_path = request.app.url_path_for("download_result", key=key)
        body = {
            "success": True,
            "downloadKey": key,
            "previewUrl": f"{download_path}?inline=true",
            "downloadUrl": f"{download_path}?filename={original_name}",
            "originalFileName": original_name,
            "mode": mode.value,
        }
        if isinstance(result_storage, R2ResultStorage):
            body["outputUrl"] = await run_in_threadpool(result_storage.public_url, key)
        return body

    @app.get("/health")
    def health(request: Request):
        bg_remover: BackgroundRemover = request.app.state.remover
        return {
            "status": "ok",
            "models": {
                "general": bg_remover.registry.is_installed(RemovalMode.GENERAL),
                "portrait": bg_remover.registry.is_installed(RemovalMode.PORTRAIT),
            },
            "inFlight": bg_remover.in_flight,
            "waiting": bg_remover.waiting,
        }

    @app.post("/remove-bg")
    async def remove_bg(
        request: Request,
        file: Optional[UploadFile] = File(None),
        mode: Optional[str] = Form(None),
        portraitEdgeStrength: Optional[int] = Form(None),
    ):
        image_bytes = await file.read(settings.max_upload_bytes + 1) if file is not None else b""
        if not image_bytes:
            raise _error(400, ErrorCodes.FILE_MISSING, "Please select an image file.")
        if len(image_bytes) > settings.max_upload_bytes:
            raise _error(
                413,
                ErrorCodes.FILE_TOO_LARGE,
                f"File size cannot exceed {settings.max_upload_bytes // (1024 * 1024)}MB.",
            )

        filename = file.filename or ""
        if Path(filename).suffix.lower() not in ALLOWED_EXTENSIONS:
            raise _error(415, ErrorCodes.INVALID_FORMAT, "Invalid file type.")
        if (file.content_type or "").lower() not in ALLOWED_CONTENT_TYPES:
            raise _error(415, ErrorCodes.INVALID_FORMAT, "Invalid content type.")
        _validate_dimensions(image_bytes, settings.max_image_dimension)

        original_name = _FILENAME_UNSAFE.sub("_", Path(filename).stem) or "image"
        return await _remove_and_store(
            request,
            image_bytes,
            parse_mode(mode),
            _clamp_strength(portraitEdgeStrength),
            original_name,
        )

    @app.post("/remove-bg/url")
    async def remove_bg_from_url(request: Request, body: RemoveBgUrlRequest):
        try:
            image_bytes = await run_in_threadpool(_download_image, str(body.imageUrl), settings)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to download image: %s", exc)
            raise _error(400, ErrorCodes.INVALID_IMAGE, "Could not download image") from exc
        if not image_bytes:
            raise _error(400, ErrorCodes.FILE_MISSING, "Downloaded image is empty.")
        _validate_dimensions(image_bytes, settings.max_image_dimension)

        url_stem = Path(body.imageUrl.path or "").stem
        original_name = _FILENAME_UNSAFE.sub("_", url_stem) or "image"
        return await _remove_and_store(
            request,
            image_bytes,
            parse_mode(body.mode),
            _clamp_strength(body.portraitEdgeStrength),
            original_name,
        )

    @app.get("/download/{key}", name="download_result")
    async def download_result(
        request: Request, key: str, inline: bool = False, filename: Optional[str] = None
    ):
        result_storage: ResultStorage = request.app.state.storage
        data = await run_in_threadpool(result_storage.retrieve, key)
        if data is None:
            raise HTTPException(status_code=404, detail="Image not found or expired.")

        headers = {}
        if not inline:
            safe_name = _FILENAME_UNSAFE.sub("_", filename) if filename else ""
            download_name = (
                f"{safe_name}_no_bg.png"
                if safe_name
                else f"background_removed_{datetime.now():%Y%m%d_%H%M%S}.png"
            )
            headers["Content-Disposition"] = f'attachment; filename="{download_name}"'
        return Response(content=data, media_type="image/png", headers=headers)

    return app


app = create_app()
