"""S3-compatible object storage adapter for input and generated images."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from urllib.parse import quote, unquote, urlparse

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import settings
from services.errors import StorageError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_CONTENT_TYPES = ("image/png", "image/jpeg", "image/webp", "image/gif")
_BUCKET_EXISTS_CODES = {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}


def build_object_path(prefix: str, content_type: Optional[str], now: Optional[datetime] = None) -> str:
    """Return ``<prefix>/<timestamp>-<uuid>.<ext>``; unique across concurrent uploads."""
    current = now or datetime.now(timezone.utc)
    extension = (content_type or "").split("/")[-1].split(";")[0].strip() or "png"
    if extension == "jpeg":
        extension = "jpg"
    stamp = current.strftime("%Y%m%dT%H%M%S%fZ")
    return f"{prefix.strip('/')}/{stamp}-{uuid.uuid4()}.{extension}"


def resolve_path_from_public_url(bucket: str, public_url: Optional[str]) -> Optional[str]:
    """Extract the object path that follows ``/<bucket>/`` in a public URL."""
    if not public_url:
        return None
    try:
        segments = urlparse(public_url).path.split("/")
    except ValueError:
        logger.warning("Could not parse storage URL %s", public_url)
        return None
    if bucket not in segments:
        return None
    index = segments.index(bucket)
    path = "/".join(segments[index + 1:])
    return unquote(path) or None


class ObjectStore:
    """Thin async wrapper around a boto3 S3 client."""

    def __init__(
        self,
        client: Any,
        public_base_url: str,
        *,
        allowed_content_types: Iterable[str] = ALLOWED_IMAGE_CONTENT_TYPES,
        max_object_bytes: int = 50 * 1024 * 1024,
    ):
        self.client = client
        self.public_base_url = public_base_url.rstrip("/")
        self.allowed_content_types = tuple(allowed_content_types)
        self.max_object_bytes = max_object_bytes

    async def ensure_buckets(self, buckets: Iterable[str]) -> None:
        """Create each bucket with a public-read policy. Idempotent."""
        for bucket in buckets:
            await asyncio.to_thread(self._ensure_bucket, bucket)

    def _ensure_bucket(self, bucket: str) -> None:
        try:
            self.client.head_bucket(Bucket=bucket)
            return
        except ClientError:
            pass

        try:
            self.client.create_bucket(Bucket=bucket)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code not in _BUCKET_EXISTS_CODES:
                raise StorageError(f"Unable to create bucket {bucket}: {exc}") from exc

        policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": "*",
                    "Action": ["s3:GetObject"],
                    "Resource": [f"arn:aws:s3:::{bucket}/*"],
                }
            ],
        }
        try:
            self.client.put_bucket_policy(Bucket=bucket, Policy=json.dumps(policy))
        except ClientError as exc:
            logger.warning("Could not apply public-read policy to bucket %s: %s", bucket, exc)
        logger.info("Provisioned storage bucket %s", bucket)

    async def put(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        if content_type not in self.allowed_content_types:
            raise StorageError(f"Content type {content_type} is not allowed in {bucket}")
        if len(data) > self.max_object_bytes:
            raise StorageError(f"Object exceeds the {self.max_object_bytes // (1024 * 1024)}MB limit")
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                CacheControl="max-age=3600",
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to upload file to {bucket}: {exc}") from exc
        return path

    def public_url(self, bucket: str, path: str) -> str:
        if not self.public_base_url:
            raise StorageError(f"Unable to resolve public URL for {bucket}/{path}")
        return f"{self.public_base_url}/{bucket}/{quote(path)}"

    async def delete(self, bucket: str, path: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=bucket, Key=path)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to delete file from {bucket}: {exc}") from exc

    async def delete_public_url(self, bucket: str, public_url: Optional[str]) -> bool:
        """Best-effort removal of the object behind ``public_url``."""
        path = resolve_path_from_public_url(bucket, public_url)
        if not path:
            return False
        try:
            await self.delete(bucket, path)
        except StorageError as exc:
            logger.warning("Unable to delete %s/%s: %s", bucket, path, exc)
            return False
        return True


def create_object_store() -> ObjectStore:
    """Build the object store from settings."""
    client = boto3.client(
        "s3",
        endpoint_url=settings.STORAGE_ENDPOINT_URL or None,
        aws_access_key_id=settings.STORAGE_ACCESS_KEY_ID or None,
        aws_secret_access_key=settings.STORAGE_SECRET_ACCESS_KEY or None,
        config=Config(signature_version="s3v4"),
        region_name=settings.STORAGE_REGION,
    )
    return ObjectStore(
        client,
        settings.STORAGE_PUBLIC_BASE_URL,
        max_object_bytes=int(settings.MAX_IMAGE_UPLOAD_BYTES),
    )
