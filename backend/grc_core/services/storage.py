"""
Object storage for evidence files (S3 / MinIO).

The service never streams file bytes: clients PUT and GET objects directly
through presigned URLs, and the API only verifies the uploaded object with a
HEAD request. The adapter is built once at import from settings; when storage
is not configured ``get_storage()`` returns None and callers degrade.
"""
from __future__ import annotations

import logging
from urllib.parse import quote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from starlette.concurrency import run_in_threadpool

from grc_core.config import settings

logger = logging.getLogger(__name__)

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class S3Storage:
    def __init__(
        self,
        *,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        bucket: str,
        region: str = "us-east-1",
        upload_ttl: int = 900,
        download_ttl: int = 3600,
    ):
        self.bucket = bucket
        self.upload_ttl = upload_ttl
        self.download_ttl = download_ttl
        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def generate_upload_url(self, key: str, mime_type: str) -> tuple[str, int]:
        url = self._client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket, "Key": key, "ContentType": mime_type},
            ExpiresIn=self.upload_ttl,
        )
        return url, self.upload_ttl

    def generate_download_url(self, key: str, file_name: str) -> tuple[str, int]:
        url = self._client.generate_presigned_url(
            "get_object",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "ResponseContentDisposition": f"attachment; filename*=UTF-8''{quote(file_name)}",
            },
            ExpiresIn=self.download_ttl,
        )
        return url, self.download_ttl

    async def verify_object_exists(self, key: str) -> int | None:
        """Return the stored object's size, or None when it is not there."""
        try:
            head = await run_in_threadpool(self._client.head_object, Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise
        return int(head.get("ContentLength", 0))


def build_storage() -> S3Storage | None:
    if not settings.storage_configured:
        logger.warning("Object storage not configured; presigned URLs are disabled")
        return None
    logger.info("Object storage: bucket=%s endpoint=%s", settings.S3_BUCKET, settings.S3_ENDPOINT_URL)
    return S3Storage(
        endpoint_url=settings.S3_ENDPOINT_URL,
        access_key=settings.S3_ACCESS_KEY,
        secret_key=settings.S3_SECRET_KEY,
        bucket=settings.S3_BUCKET,
        region=settings.S3_REGION,
        upload_ttl=settings.S3_UPLOAD_TTL_SECONDS,
        download_ttl=settings.S3_DOWNLOAD_TTL_SECONDS,
    )


_storage = build_storage()


def get_storage() -> S3Storage | None:
    return _storage
