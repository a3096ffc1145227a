"""
Blob store adapters.

The service treats storage as an opaque, byte-addressable key space with
three operations: get, put and a time-limited signed retrieval URL. The
production adapter talks to S3 (or an S3-compatible endpoint such as R2)
through boto3; the in-memory adapter backs local runs and tests.

Storage errors are not wrapped: botocore exceptions propagate unchanged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional, Protocol
from urllib.parse import quote

import boto3
from botocore.client import Config as BotoConfig

from .config import Settings
from .errors import ConfigError

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def get(self, key: str) -> bytes:
        ...

    def put(self, key: str, data: bytes, content_type: str, cache_control: Optional[str] = None) -> None:
        ...

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        ...


def build_s3_client(settings: Settings):
    """Create a boto3 S3 client from settings; credentials fall back to boto3's default chain."""
    session = boto3.session.Session()
    return session.client(
        service_name="s3",
        region_name=settings.aws_region,
        aws_access_key_id=settings.aws_access_key_id,
        aws_secret_access_key=settings.aws_secret_access_key,
        endpoint_url=settings.s3_endpoint_url,
        config=BotoConfig(signature_version="s3v4"),
    )


class S3BlobStore:
    def __init__(self, bucket: Optional[str], client=None) -> None:
        if not bucket:
            raise ConfigError("Server misconfig: BUCKET_NAME is not set")
        self.bucket = bucket
        self.client = client or boto3.session.Session().client(
            "s3", config=BotoConfig(signature_version="s3v4")
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3BlobStore":
        return cls(settings.bucket_name, client=build_s3_client(settings))

    def get(self, key: str) -> bytes:
        obj = self.client.get_object(Bucket=self.bucket, Key=key)
        body = obj["Body"]
        try:
            return body.read()
        finally:
            body.close()

    def put(self, key: str, data: bytes, content_type: str, cache_control: Optional[str] = None) -> None:
        params = {
            "Bucket": self.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if cache_control:
            params["CacheControl"] = cache_control
        self.client.put_object(**params)
        logger.debug("stored s3://%s/%s (%d bytes, %s)", self.bucket, key, len(data), content_type)

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=ttl_seconds,
        )


@dataclass
class StoredBlob:
    data: bytes
    content_type: str
    cache_control: Optional[str] = None


class InMemoryBlobStore:
    """Dict-backed store. Signed URLs are fake but carry the key and expiry."""

    def __init__(self, base_url: str = "memory://blobs", objects: Optional[Dict[str, bytes]] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.objects: Dict[str, StoredBlob] = {}
        self._lock = Lock()
        for key, data in (objects or {}).items():
            self.objects[key] = StoredBlob(data=data, content_type="application/octet-stream")

    def get(self, key: str) -> bytes:
        with self._lock:
            blob = self.objects.get(key)
        if blob is None:
            raise KeyError(key)
        return blob.data

    def put(self, key: str, data: bytes, content_type: str, cache_control: Optional[str] = None) -> None:
        with self._lock:
            self.objects[key] = StoredBlob(data=bytes(data), content_type=content_type, cache_control=cache_control)

    def signed_url(self, key: str, ttl_seconds: int) -> str:
        expires = int(time.time()) + ttl_seconds
        return f"{self.base_url}/{quote(key)}?expires={expires}"
