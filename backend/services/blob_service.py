"""Object storage for meal photos (S3-compatible, plus an in-memory double)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class BlobStorageError(Exception):
    pass


class BlobStorage(Protocol):
    def presign_put(self, blob_name: str, content_type: str, expires_in: int) -> str:
        ...

    def presign_get(self, blob_name: str, expires_in: int) -> str:
        ...

    def object_url(self, blob_name: str) -> str:
        ...

    def delete(self, blob_name: str) -> bool:
        ...


@dataclass
class InMemoryBlobStorage:
    """Local double: hands out fake signed URLs and tracks deletes."""

    base_url: str = "https://storage.example.test/meal-images"
    deleted: list[str] = field(default_factory=list)
    fail_deletes: bool = False

    def presign_put(self, blob_name: str, content_type: str, expires_in: int) -> str:
        return f"{self.base_url}/{quote(blob_name)}?op=put&ct={quote(content_type)}&expires={expires_in}"

    def presign_get(self, blob_name: str, expires_in: int) -> str:
        return f"{self.base_url}/{quote(blob_name)}?op=get&expires={expires_in}"

    def object_url(self, blob_name: str) -> str:
        return f"{self.base_url}/{quote(blob_name)}"

    def delete(self, blob_name: str) -> bool:
        if self.fail_deletes:
            raise BlobStorageError(f"delete failed for {blob_name}")
        self.deleted.append(blob_name)
        return True


@dataclass
class S3BlobStorage:
    bucket: str
    region: str
    endpoint: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None

    def __post_init__(self):
        config = Config(signature_version="s3v4")
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def presign_put(self, blob_name: str, content_type: str, expires_in: int) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="put_object",
            Params={"Bucket": self.bucket, "Key": blob_name, "ContentType": content_type},
            ExpiresIn=int(expires_in),
        )

    def presign_get(self, blob_name: str, expires_in: int) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": blob_name},
            ExpiresIn=int(expires_in),
        )

    def object_url(self, blob_name: str) -> str:
        if self.endpoint:
            return f"{self.endpoint.rstrip('/')}/{self.bucket}/{quote(blob_name)}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(blob_name)}"

    def delete(self, blob_name: str) -> bool:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=blob_name)
        except (BotoCoreError, ClientError) as exc:
            raise BlobStorageError(f"delete failed for {blob_name}: {exc}") from exc
        return True


_STORAGE: BlobStorage | None = None


def build_blob_storage(settings) -> BlobStorage:
    if settings.STORAGE_BUCKET:
        return S3BlobStorage(
            bucket=settings.STORAGE_BUCKET,
            region=settings.STORAGE_REGION,
            endpoint=settings.STORAGE_ENDPOINT,
            access_key_id=settings.STORAGE_ACCESS_KEY_ID,
            secret_access_key=settings.STORAGE_SECRET_ACCESS_KEY,
        )
    if settings.is_production_like:
        raise RuntimeError("STORAGE_BUCKET must be configured")
    logger.warning("STORAGE_BUCKET not set; using in-memory blob storage")
    return InMemoryBlobStorage()


def get_blob_storage() -> BlobStorage:
    global _STORAGE
    if _STORAGE is None:
        from config import settings

        _STORAGE = build_blob_storage(settings)
    return _STORAGE
