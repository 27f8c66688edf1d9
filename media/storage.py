"""
media/storage.py -- Object storage collaborator (S3 / Cloudflare R2).

Zorem never proxies media bytes. Clients PUT and GET directly against the
bucket using short-lived SigV4 presigned URLs; this module only signs them.
Presigning is a local computation in boto3, so no network call happens on the
request path except delete().

STORAGE_TYPE=r2 points the same S3 client at the R2 endpoint. R2 ignores the
region but boto3 requires one; "auto" is what Cloudflare documents.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

import boto3
from botocore.client import BaseClient
from botocore.config import Config

from core.errors import StorageNotConfigured

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("zorem.media")


class ObjectStorage(Protocol):
    def presign_put(self, key: str, content_type: str, ttl: int) -> str: ...

    def presign_get(self, key: str, ttl: int) -> str: ...

    def delete(self, key: str) -> None: ...


def build_s3_client(settings: Settings) -> BaseClient:
    session = boto3.Session(
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        region_name="auto" if settings.storage_type == "r2" else settings.aws_region,
    )
    endpoint = settings.r2_endpoint if settings.storage_type == "r2" else None
    return session.client(
        "s3",
        endpoint_url=endpoint or None,
        config=Config(signature_version="s3v4", connect_timeout=5, read_timeout=10, retries={"max_attempts": 2}),
    )


class S3ObjectStorage:
    def __init__(self, client: BaseClient, bucket: str) -> None:
        self._client = client
        self._bucket = bucket

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3ObjectStorage":
        return cls(build_s3_client(settings), settings.s3_bucket_name)

    def presign_put(self, key: str, content_type: str, ttl: int) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="put_object",
            Params={"Bucket": self._bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=ttl,
            HttpMethod="PUT",
        )

    def presign_get(self, key: str, ttl: int) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=ttl,
            HttpMethod="GET",
        )

    def delete(self, key: str) -> None:
        self._client.delete_object(Bucket=self._bucket, Key=key)


class UnconfiguredStorage:
    """Stand-in used when no bucket credentials are set. Every call is a 503."""

    def presign_put(self, key: str, content_type: str, ttl: int) -> str:
        raise StorageNotConfigured()

    def presign_get(self, key: str, ttl: int) -> str:
        raise StorageNotConfigured()

    def delete(self, key: str) -> None:
        raise StorageNotConfigured()


def build_object_storage(settings: Settings) -> ObjectStorage:
    if not settings.storage_configured:
        logger.warning("Object storage not configured -- upload and story URLs will return 503")
        return UnconfiguredStorage()
    logger.info("Object storage: %s bucket=%s", settings.storage_type, settings.s3_bucket_name)
    return S3ObjectStorage.from_settings(settings)
