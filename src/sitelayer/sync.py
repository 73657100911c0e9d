"""
Content sync.

One-way mirror of a local directory into the provisioned storage bucket.
Runs after provisioning; a failure here is reported but never undoes the
infrastructure that was created.
"""

from __future__ import annotations

import hashlib
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import aioboto3
import structlog
from botocore.exceptions import ClientError

from sitelayer.core.errors import ProviderError
from sitelayer.providers.aws import translate_client_error
from sitelayer.providers.memory import MemoryProvider
from sitelayer.resources.models import ResourceKind
from sitelayer.state.models import StateRecord

logger = structlog.get_logger()


@dataclass
class SyncResult:
    """Keys touched by one sync."""

    uploaded: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.uploaded or self.deleted)


class ContentSyncer(Protocol):
    async def sync(self, source: Path, target: StateRecord) -> SyncResult:
        ...


def local_files(source: Path) -> Dict[str, Path]:
    """Object key to file for every regular file under ``source``."""
    if not source.is_dir():
        raise ProviderError(f"Content source {source} is not a directory", {"source": str(source)})
    return {
        path.relative_to(source).as_posix(): path
        for path in sorted(source.rglob("*"))
        if path.is_file()
    }


def content_type(key: str) -> str:
    guessed, _ = mimetypes.guess_type(key)
    return guessed or "application/octet-stream"


def _bucket_name(target: StateRecord) -> str:
    name = target.last_applied_attributes.get("name") or target.provider_id
    if not name:
        raise ProviderError(f"{target.address} has no bucket name", {"address": target.address})
    return str(name)


class S3ContentSync:
    """Mirror into an S3 bucket, uploading only files whose size or MD5 differ."""

    def __init__(self, session: Optional[aioboto3.Session] = None, region: str = "us-east-1"):
        self._session = session or aioboto3.Session(region_name=region)
        self.region = region

    async def sync(self, source: Path, target: StateRecord) -> SyncResult:
        bucket = _bucket_name(target)
        files = local_files(source)
        result = SyncResult()
        try:
            async with self._session.client("s3", region_name=self.region) as s3:
                remote = await self._list(s3, bucket)
                for key, path in files.items():
                    data = path.read_bytes()
                    etag, size = remote.get(key, (None, None))
                    if size == len(data) and etag == hashlib.md5(data).hexdigest():
                        result.skipped.append(key)
                        continue
                    await s3.put_object(
                        Bucket=bucket, Key=key, Body=data, ContentType=content_type(key)
                    )
                    result.uploaded.append(key)

                stale = sorted(set(remote) - set(files))
                # delete_objects accepts at most 1000 keys per call
                for start in range(0, len(stale), 1000):
                    batch = stale[start:start + 1000]
                    await s3.delete_objects(
                        Bucket=bucket,
                        Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                    )
                    result.deleted.extend(batch)
        except ClientError as exc:
            raise translate_client_error(exc, ResourceKind.STORAGE_BUCKET, bucket) from exc

        logger.info(
            "content_synced",
            bucket=bucket,
            uploaded=len(result.uploaded),
            deleted=len(result.deleted),
            skipped=len(result.skipped),
        )
        return result

    async def _list(self, s3: Any, bucket: str) -> Dict[str, tuple[str, int]]:
        remote: Dict[str, tuple[str, int]] = {}
        paginator = s3.get_paginator("list_objects_v2")
        async for page in paginator.paginate(Bucket=bucket):
            for item in page.get("Contents", []):
                remote[item["Key"]] = (item["ETag"].strip('"'), item["Size"])
        return remote


class MemoryContentSync:
    """Mirror into a bucket held by a ``MemoryProvider``."""

    def __init__(self, provider: MemoryProvider) -> None:
        self._provider = provider

    async def sync(self, source: Path, target: StateRecord) -> SyncResult:
        bucket = _bucket_name(target)
        if bucket not in self._provider.buckets:
            raise ProviderError(f"Bucket {bucket} does not exist", {"bucket": bucket})
        objects = self._provider.buckets[bucket]
        files = local_files(source)
        result = SyncResult()
        for key, path in files.items():
            data = path.read_bytes()
            if objects.get(key) == data:
                result.skipped.append(key)
                continue
            objects[key] = data
            result.uploaded.append(key)
        for key in sorted(set(objects) - set(files)):
            del objects[key]
            result.deleted.append(key)
        logger.info("content_synced", bucket=bucket, uploaded=len(result.uploaded))
        return result
