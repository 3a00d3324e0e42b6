"""
Binary object storage for composited images.

S3 (or any S3-compatible endpoint such as Cloudflare R2) in production, a
dict in tests. Read references are either presigned GET URLs or, when a
public base URL is configured, plain public URLs; neither grants writes.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional, Protocol, Tuple
from urllib.parse import quote, urljoin

import boto3
from botocore.client import Config as BotoConfig

from . import config

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    def put(self, name: str, data: bytes, content_type: str) -> None:
        ...

    def get_read_reference(self, name: str, ttl_seconds: int) -> str:
        ...


def build_s3_client(settings: Optional[config.Settings] = None):
    settings = settings or config.get_settings()
    session = boto3.session.Session()
    kwargs: Dict[str, Any] = {
        "service_name": "s3",
        "region_name": settings.aws_region,
        "config": BotoConfig(signature_version="s3v4"),
    }
    if settings.s3_endpoint:
        kwargs["endpoint_url"] = settings.s3_endpoint
    if settings.s3_access_key_id and settings.s3_secret_access_key:
        kwargs["aws_access_key_id"] = settings.s3_access_key_id
        kwargs["aws_secret_access_key"] = settings.s3_secret_access_key
    return session.client(**kwargs)


class S3ObjectStore:
    def __init__(self, client: Any, bucket: str, public_base_url: Optional[str] = None):
        self._client = client
        self.bucket = bucket
        self.public_base_url = public_base_url

    def put(self, name: str, data: bytes, content_type: str) -> None:
        self._client.put_object(Bucket=self.bucket, Key=name, Body=data, ContentType=content_type)
        logger.info("Uploaded object %s (%d bytes)", name, len(data))

    def get_read_reference(self, name: str, ttl_seconds: int) -> str:
        if self.public_base_url:
            return urljoin(self.public_base_url.rstrip("/") + "/", quote(name))
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": name},
            ExpiresIn=int(ttl_seconds),
        )


class InMemoryObjectStore:
    def __init__(self, bucket: str = "weather-images"):
        self.bucket = bucket
        self.objects: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put(self, name: str, data: bytes, content_type: str) -> None:
        with self._lock:
            self.objects[name] = (bytes(data), content_type)

    def get_read_reference(self, name: str, ttl_seconds: int) -> str:
        with self._lock:
            if name not in self.objects:
                raise FileNotFoundError(f"Object {name} not found")
        expires = int(time.time()) + int(ttl_seconds)
        return f"memory://{self.bucket}/{quote(name)}?expires={expires}"
