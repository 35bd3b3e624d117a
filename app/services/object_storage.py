"""S3-compatible blob store for agent-uploaded attachments.

Inbound attachments stay on the platform CDN; only files an agent uploads
with a reply land here. Objects are served back through
``GET /api/v1/attachments/{id}`` which is the URL handed to the platform
send API.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterator
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import boto3

from app.config import settings
from app.logging import get_logger

logger = get_logger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class ObjectStorageError(Exception):
    """Generic object storage failure."""


class ObjectNotFoundError(ObjectStorageError):
    """Raised when object is missing."""


@dataclass
class StreamResult:
    chunks: Iterator[bytes]
    content_type: str | None
    content_length: int | None


def safe_filename(filename: str | None) -> str:
    name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_FILENAME_CHARS.sub("_", name).strip("._")
    return name[:200] or "file"


def attachment_key(account_id: object, message_id: object, filename: str | None) -> str:
    """Object key for an outbound attachment; the uuid keeps keys unique per upload."""
    return f"attachments/{account_id}/{message_id}/{uuid.uuid4()}-{safe_filename(filename)}"


def attachment_public_url(attachment_id: object) -> str:
    return f"{settings.public_base_url.rstrip('/')}/api/v1/attachments/{attachment_id}"


class S3StorageService:
    """S3/MinIO-backed blob store."""

    def __init__(
        self,
        bucket_name: str,
        endpoint_url: str,
        access_key: str | None,
        secret_key: str | None,
        region: str,
        client: Any | None = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.region = region
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    @staticmethod
    def _error_code(exc: Exception) -> str:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            err = response.get("Error", {})
            if isinstance(err, dict):
                return str(err.get("Code", ""))
        return ""

    def ensure_bucket(self) -> None:
        """Create the bucket if missing (safe to call repeatedly)."""
        try:
            self.client.head_bucket(Bucket=self.bucket_name)
            return
        except Exception as exc:
            if self._error_code(exc) not in {"404", "NoSuchBucket"}:
                raise ObjectStorageError("Unable to check storage bucket") from exc

        kwargs: dict = {"Bucket": self.bucket_name}
        if self.region and self.region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        self.client.create_bucket(**kwargs)
        logger.info("storage_bucket_created bucket=%s", self.bucket_name)

    def upload(self, key: str, data: bytes, content_type: str | None) -> None:
        kwargs: dict = {"Bucket": self.bucket_name, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self.client.put_object(**kwargs)
        except Exception as exc:
            raise ObjectStorageError(f"Failed to upload {key}") from exc
        logger.info("storage_object_uploaded key=%s size=%d", key, len(data))

    def download(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            if self._error_code(exc) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(key) from exc
            raise ObjectStorageError(f"Failed to download {key}") from exc
        return obj["Body"].read()

    def stream(self, key: str) -> StreamResult:
        try:
            obj = self.client.get_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            if self._error_code(exc) in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(key) from exc
            raise ObjectStorageError(f"Failed to stream {key}") from exc

        body = obj["Body"]
        return StreamResult(
            chunks=iter(lambda: body.read(1024 * 1024), b""),
            content_type=obj.get("ContentType"),
            content_length=obj.get("ContentLength"),
        )

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except Exception as exc:
            if self._error_code(exc) in _NOT_FOUND_CODES:
                return False
            raise ObjectStorageError(f"Failed to check {key}") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            raise ObjectStorageError(f"Failed to delete {key}") from exc


@lru_cache(maxsize=1)
def get_s3_storage() -> S3StorageService:
    settings.validate_s3_config()
    return S3StorageService(
        bucket_name=settings.s3_bucket_name,
        endpoint_url=settings.s3_endpoint_url,
        access_key=settings.s3_access_key,
        secret_key=settings.s3_secret_key,
        region=settings.s3_region,
    )
