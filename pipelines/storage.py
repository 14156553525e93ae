"""Snapshot store for crawl runs.

Each crawl run lives under its own prefix in an S3-compatible bucket::

    scrapes/{host}/{YYYY-MM-DDTHH-MM-SS}-{shortid}/
        pages/{sha256(url)[:16]}.md
        metadata.json

``metadata.json`` is written after every page of the run, so its presence
marks the run as complete and safe to ingest.
"""

import asyncio
import io
import json
import logging
import posixpath
import time
from datetime import datetime
from functools import partial
from typing import Any, Callable, List, Optional
from urllib.parse import urlparse

import urllib3
from minio import Minio
from minio.error import S3Error

from config.settings import StorageConfig
from .errors import StorageError
from .models import ScrapeManifest, generate_document_id, utcnow

logger = logging.getLogger(__name__)

MANIFEST_NAME = "metadata.json"
PAGES_DIR = "pages"


def make_prefix(start_url: str, now: Optional[datetime] = None) -> str:
    """Unique prefix for a crawl run of ``start_url``."""
    now = now or utcnow()
    host = urlparse(start_url).netloc
    timestamp = now.strftime("%Y-%m-%dT%H-%M-%S")
    short_id = generate_document_id(f"{start_url}-{time.time_ns()}")[:8]
    return f"scrapes/{host}/{timestamp}-{short_id}"


class SnapshotStore:
    """Async facade over a MinIO/S3 client.

    The MinIO SDK is synchronous; calls run in the default executor.
    """

    def __init__(self, client: Minio, bucket: str):
        if not bucket:
            raise StorageError("bucket is required")
        self.client = client
        self._bucket = bucket

    @classmethod
    def from_config(cls, config: StorageConfig) -> 'SnapshotStore':
        if not config.endpoint:
            raise StorageError("endpoint is required")
        client = Minio(
            config.endpoint,
            access_key=config.access_key_id,
            secret_key=config.secret_access_key,
            secure=config.use_ssl,
        )
        return cls(client, config.bucket)

    @property
    def bucket(self) -> str:
        return self._bucket

    async def _run(self, action: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, partial(func, *args, **kwargs))
        except (S3Error, urllib3.exceptions.HTTPError, OSError) as e:
            raise StorageError(f"failed to {action}: {e}") from e

    async def ensure_bucket(self) -> None:
        """Create the bucket if it does not exist."""
        exists = await self._run("check bucket", self.client.bucket_exists, bucket_name=self._bucket)
        if exists:
            return
        await self._run("create bucket", self.client.make_bucket, bucket_name=self._bucket)
        logger.info(f"Created bucket {self._bucket}")

    async def _put(self, object_name: str, data: bytes, content_type: str) -> None:
        await self._run(
            f"put {object_name}",
            self.client.put_object,
            bucket_name=self._bucket,
            object_name=object_name,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )

    def _get_bytes(self, object_name: str) -> bytes:
        response = self.client.get_object(bucket_name=self._bucket, object_name=object_name)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    async def put_page(self, prefix: str, filename: str, content: str) -> None:
        """Write one page body under ``{prefix}/pages/``."""
        object_name = posixpath.join(prefix, PAGES_DIR, filename)
        await self._put(object_name, content.encode("utf-8"), "text/markdown")

    async def put_manifest(self, prefix: str, manifest: ScrapeManifest) -> None:
        object_name = posixpath.join(prefix, MANIFEST_NAME)
        data = json.dumps(manifest.to_dict(), indent=2).encode("utf-8")
        await self._put(object_name, data, "application/json")

    async def get_manifest(self, prefix: str) -> ScrapeManifest:
        """Read a run's manifest.

        Raises:
            StorageError: if the manifest is missing or not valid JSON
        """
        object_name = posixpath.join(prefix, MANIFEST_NAME)
        data = await self._run(f"get {object_name}", self._get_bytes, object_name)
        try:
            payload = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StorageError(f"failed to decode {object_name}: {e}") from e
        if not isinstance(payload, dict):
            raise StorageError(f"{object_name} is not a JSON object")
        return ScrapeManifest.from_dict(payload)

    async def list_pages(self, prefix: str) -> List[str]:
        """Return the basenames of the ``.md`` objects under ``{prefix}/pages/``."""
        pages_prefix = posixpath.join(prefix, PAGES_DIR) + "/"

        def _list() -> List[str]:
            return [
                posixpath.basename(obj.object_name)
                for obj in self.client.list_objects(bucket_name=self._bucket, prefix=pages_prefix, recursive=True)
                if obj.object_name.endswith(".md")
            ]

        return await self._run(f"list {pages_prefix}", _list)

    async def get_page(self, prefix: str, filename: str) -> str:
        object_name = posixpath.join(prefix, PAGES_DIR, filename)
        data = await self._run(f"get {object_name}", self._get_bytes, object_name)
        return data.decode("utf-8", errors="replace")
