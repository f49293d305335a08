"""
Temporary storage for processed cutouts.

Results are stored under an opaque key and fetched later by the download
endpoint instead of being returned inline. Two backends:
 - `TempResultStorage`: files in a local directory, expired by TTL,
 - `R2ResultStorage`: Cloudflare R2 (S3-compatible) bucket; expiry is left
   to the bucket's lifecycle rules.
"""

from __future__ import annotations

import logging
from pathlib import Path
import re
import time
from typing import Optional
from urllib.parse import urljoin
import uuid

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import ClientError

from . import config

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"[0-9a-f]{32}")


def is_safe_key(key: Optional[str]) -> bool:
    return bool(key) and _KEY_RE.fullmatch(key) is not None


def new_key() -> str:
    return uuid.uuid4().hex


class ResultStorage:
    def store(self, data: bytes, extension: str = ".png") -> str:
        raise NotImplementedError

    def retrieve(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def cleanup_expired(self) -> int:
        return 0


class TempResultStorage(ResultStorage):
    def __init__(self, base_dir: Path, ttl_seconds: int):
        self.base_dir = Path(base_dir)
        self.ttl_seconds = ttl_seconds
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info("TempResultStorage initialized at %s with ttl=%ss", self.base_dir, ttl_seconds)

    def store(self, data: bytes, extension: str = ".png") -> str:
        key = new_key()
        path = self.base_dir / f"{key}{extension}"
        path.write_bytes(data)
        logger.debug("Stored temp file: %s (%d bytes)", key, len(data))
        return key

    def retrieve(self, key: str) -> Optional[bytes]:
        path = self._find_file(key)
        if path is None:
            return None
        return path.read_bytes()

    def delete(self, key: str) -> None:
        path = self._find_file(key)
        if path is None:
            return
        try:
            path.unlink()
            logger.debug("Deleted temp file: %s", key)
        except OSError as exc:
            logger.warning("Failed to delete temp file %s: %s", key, exc)

    def cleanup_expired(self) -> int:
        if not self.base_dir.exists():
            return 0
        deleted = 0
        for path in self.base_dir.iterdir():
            if not path.is_file() or not self._is_expired(path):
                continue
            try:
                path.unlink()
                deleted += 1
            except OSError as exc:
                logger.warning("Failed to clean up temp file %s: %s", path, exc)
        if deleted:
            logger.info("Cleaned up %d expired temp files", deleted)
        return deleted

    def _is_expired(self, path: Path) -> bool:
        try:
            return path.stat().st_mtime < time.time() - self.ttl_seconds
        except FileNotFoundError:
            return False

    def _find_file(self, key: str) -> Optional[Path]:
        if not is_safe_key(key):
            logger.warning("Invalid key format detected: %r", key)
            return None
        matches = sorted(self.base_dir.glob(f"{key}.*"))
        if not matches:
            return None
        path = matches[0]
        if self._is_expired(path):
            try:
                path.unlink()
            except OSError as exc:
                logger.warning("Failed to delete expired temp file %s: %s", path, exc)
            return None
        return path


class R2ResultStorage(ResultStorage):
    prefix = "bgremoval"

    def __init__(self, settings: config.Settings, client=None):
        self._settings = settings
        self._client = client

    def _get_s3_client(self):
        if self._client is not None:
            return self._client
        settings = self._settings
        required = [
            settings.r2_endpoint,
            settings.r2_access_key_id,
            settings.r2_secret_access_key,
            settings.r2_bucket_name,
        ]
        if any(v is None for v in required):
            raise RuntimeError("R2 configuration is incomplete; check env vars.")
        session = boto3.session.Session()
        self._client = session.client(
            service_name="s3",
            aws_access_key_id=settings.r2_access_key_id,
            aws_secret_access_key=settings.r2_secret_access_key,
            endpoint_url=settings.r2_endpoint,
            config=BotoConfig(signature_version="s3v4"),
        )
        return self._client

    def object_key(self, key: str, extension: str = ".png") -> str:
        return f"{self.prefix}/{key}{extension}"

    def store(self, data: bytes, extension: str = ".png") -> str:
        key = new_key()
        self._get_s3_client().put_object(
            Bucket=self._settings.r2_bucket_name,
            Key=self.object_key(key, extension),
            Body=data,
            ContentType="image/png",
        )
        logger.debug("Uploaded cutout %s to R2 (%d bytes)", key, len(data))
        return key

    def retrieve(self, key: str) -> Optional[bytes]:
        if not is_safe_key(key):
            logger.warning("Invalid key format detected: %r", key)
            return None
        try:
            resp = self._get_s3_client().get_object(
                Bucket=self._settings.r2_bucket_name, Key=self.object_key(key)
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                return None
            raise
        return resp["Body"].read()

    def delete(self, key: str) -> None:
        if not is_safe_key(key):
            return
        self._get_s3_client().delete_object(
            Bucket=self._settings.r2_bucket_name, Key=self.object_key(key)
        )

    def public_url(self, key: str) -> str:
        object_key = self.object_key(key)
        if self._settings.r2_public_base_url:
            return urljoin(self._settings.r2_public_base_url.rstrip("/") + "/", object_key)
        # Fallback: virtual-hosted-style may not be available; presigned URLs are safer
        return self._get_s3_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self._settings.r2_bucket_name, "Key": object_key},
            ExpiresIn=3600,
        )


def get_result_storage(settings: Optional[config.Settings] = None) -> ResultStorage:
    settings = settings or config.get_settings()
    if settings.result_storage == "r2":
        return R2ResultStorage(settings)
    return TempResultStorage(settings.temp_results_dir, settings.temp_results_ttl_seconds)
