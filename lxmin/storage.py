# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin Storage - Object storage operations on an aiobotocore S3 client.

All functions take an open client so callers control its lifetime (see
lxmin.core.open_s3_client). Botocore errors are translated into
StorageError / ObjectNotFoundError at this boundary.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List
from urllib.parse import parse_qsl, urlencode

import aiofiles
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from lxmin.config import DEFAULT_PART_SIZE
from lxmin.errors import explain_invalid_tags
from lxmin.exceptions import ObjectNotFoundError, StorageError, ValidationError
from lxmin.progress import NullProgress, ProgressSink

logger = structlog.get_logger()

# Read size for streaming uploads/downloads; progress is reported per chunk
CHUNK_SIZE = 1024 * 1024

# S3 object tagging limit
MAX_TAGS = 10

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchVersion"}


@dataclass
class ObjectInfo:
    """Descriptor of a stored object."""

    key: str
    size: int
    last_modified: datetime | None = None
    metadata: Dict[str, str] = field(default_factory=dict)
    version_id: str | None = None
    content_type: str | None = None


def _error_code(e: Exception) -> str | None:
    if isinstance(e, ClientError):
        return e.response.get("Error", {}).get("Code")
    return None


def _storage_error(e: Exception, action: str, key: str) -> StorageError:
    """Translate a botocore error into our taxonomy."""
    code = _error_code(e)
    if code in _NOT_FOUND_CODES:
        return ObjectNotFoundError(
            f"Object not found: {key}",
            code=code,
            details={"key": key, "action": action},
        )
    return StorageError(
        f"Failed to {action} {key}: {e}",
        code=code,
        details={"key": key, "action": action},
    )


def encode_tags(tags: Dict[str, str]) -> str:
    """Encode tags in the x-amz-tagging 'k=v&k2=v2' form."""
    return urlencode(sorted(tags.items()))


def parse_tags(value: str | None) -> Dict[str, str]:
    """
    Parse a 'k=v&k2=v2' tags string.

    Raises:
        ValidationError: On malformed input, duplicate or empty keys,
            or more than MAX_TAGS tags
    """
    if not value:
        return {}

    try:
        pairs = parse_qsl(value, keep_blank_values=True, strict_parsing=True)
    except ValueError as e:
        raise ValidationError(explain_invalid_tags(value)) from e

    tags: Dict[str, str] = {}
    for k, v in pairs:
        if not k or k in tags:
            raise ValidationError(explain_invalid_tags(value), details={"key": k})
        tags[k] = v

    if len(tags) > MAX_TAGS:
        raise ValidationError(
            f"Too many tags: {len(tags)}, at most {MAX_TAGS} are allowed",
            details={"tags": list(tags)},
        )

    return tags


async def _read_part(f: Any, limit: int, progress: ProgressSink) -> bytes:
    """Read up to limit bytes in chunks, reporting each chunk."""
    chunks: List[bytes] = []
    remaining = limit
    while remaining > 0:
        chunk = await f.read(min(CHUNK_SIZE, remaining))
        if not chunk:
            break
        progress.on_bytes_transferred(len(chunk))
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


async def put_file(
    s3_client: Any,
    bucket: str,
    key: str,
    path: Path,
    *,
    metadata: Dict[str, str] | None = None,
    tags: Dict[str, str] | None = None,
    part_size: int = DEFAULT_PART_SIZE,
    progress: ProgressSink | None = None,
    content_type: str | None = None,
) -> int:
    """
    Upload a local file.

    Files up to part_size go in a single PUT, larger ones as a multipart
    upload which is aborted on failure. The progress sink is called for
    every chunk read from the file.

    Args:
        s3_client: aiobotocore S3 client
        bucket: Target bucket
        key: Target object key
        path: Local file to upload
        metadata: User metadata (stored as x-amz-meta-*)
        tags: Object tags
        part_size: Multipart part size in bytes
        progress: Optional progress sink
        content_type: Optional Content-Type

    Returns:
        Number of bytes uploaded
    """
    progress = progress or NullProgress()
    size = path.stat().st_size

    extra: Dict[str, Any] = {}
    if metadata:
        extra["Metadata"] = metadata
    if tags:
        extra["Tagging"] = encode_tags(tags)
    if content_type:
        extra["ContentType"] = content_type

    try:
        async with aiofiles.open(path, "rb") as f:
            if size <= part_size:
                body = await _read_part(f, part_size, progress)
                await s3_client.put_object(Bucket=bucket, Key=key, Body=body, **extra)
            else:
                await _multipart_upload(s3_client, bucket, key, f, part_size, progress, extra)
    except (ClientError, BotoCoreError) as e:
        raise _storage_error(e, "upload", key) from e

    logger.debug("object_uploaded", key=key, size=size)
    return size


async def _multipart_upload(
    s3_client: Any,
    bucket: str,
    key: str,
    f: Any,
    part_size: int,
    progress: ProgressSink,
    extra: Dict[str, Any],
) -> None:
    response = await s3_client.create_multipart_upload(Bucket=bucket, Key=key, **extra)
    upload_id = response["UploadId"]
    parts: List[dict] = []

    try:
        part_number = 1
        while True:
            body = await _read_part(f, part_size, progress)
            if not body:
                break
            part = await s3_client.upload_part(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=body,
            )
            parts.append({"ETag": part["ETag"], "PartNumber": part_number})
            part_number += 1

        await s3_client.complete_multipart_upload(
            Bucket=bucket,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={"Parts": parts},
        )
    except BaseException:
        try:
            await s3_client.abort_multipart_upload(Bucket=bucket, Key=key, UploadId=upload_id)
        except (ClientError, BotoCoreError) as abort_error:
            logger.warning("multipart_abort_failed", key=key, error=str(abort_error))
        raise


async def download_file(
    s3_client: Any,
    bucket: str,
    key: str,
    dest: Path,
    progress: ProgressSink | None = None,
) -> int:
    """
    Download an object to a local file.

    Returns:
        Number of bytes written
    """
    progress = progress or NullProgress()
    written = 0

    try:
        response = await s3_client.get_object(Bucket=bucket, Key=key)
        async with response["Body"] as stream:
            async with aiofiles.open(dest, "wb") as f:
                while True:
                    chunk = await stream.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    await f.write(chunk)
                    written += len(chunk)
                    progress.on_bytes_transferred(len(chunk))
    except (ClientError, BotoCoreError) as e:
        raise _storage_error(e, "download", key) from e

    logger.debug("object_downloaded", key=key, size=written, dest=str(dest))
    return written


async def stat_object(s3_client: Any, bucket: str, key: str) -> ObjectInfo:
    """Fetch size, modification time and user metadata of an object."""
    try:
        response = await s3_client.head_object(Bucket=bucket, Key=key)
    except (ClientError, BotoCoreError) as e:
        raise _storage_error(e, "stat", key) from e

    return ObjectInfo(
        key=key,
        size=response["ContentLength"],
        last_modified=response.get("LastModified"),
        metadata={k.lower(): v for k, v in response.get("Metadata", {}).items()},
        version_id=response.get("VersionId"),
        content_type=response.get("ContentType"),
    )


async def object_exists(s3_client: Any, bucket: str, key: str) -> bool:
    try:
        await stat_object(s3_client, bucket, key)
        return True
    except ObjectNotFoundError:
        return False


async def iter_objects(
    s3_client: Any,
    bucket: str,
    prefix: str,
    recursive: bool = True,
) -> AsyncIterator[ObjectInfo]:
    """
    Lazily list objects under a prefix in lexicographic key order.

    Each call starts a fresh listing.
    """
    paginator = s3_client.get_paginator("list_objects_v2")
    params: Dict[str, Any] = {"Bucket": bucket, "Prefix": prefix}
    if not recursive:
        params["Delimiter"] = "/"

    try:
        async for page in paginator.paginate(**params):
            for obj in page.get("Contents", []):
                yield ObjectInfo(
                    key=obj["Key"],
                    size=obj["Size"],
                    last_modified=obj.get("LastModified"),
                )
    except (ClientError, BotoCoreError) as e:
        raise _storage_error(e, "list", prefix) from e


async def list_objects(
    s3_client: Any,
    bucket: str,
    prefix: str,
    recursive: bool = True,
) -> List[ObjectInfo]:
    return [obj async for obj in iter_objects(s3_client, bucket, prefix, recursive)]


async def get_tags(s3_client: Any, bucket: str, key: str) -> Dict[str, str]:
    try:
        response = await s3_client.get_object_tagging(Bucket=bucket, Key=key)
    except (ClientError, BotoCoreError) as e:
        raise _storage_error(e, "get tags of", key) from e
    return {t["Key"]: t["Value"] for t in response.get("TagSet", [])}


async def supports_versioned_listing(s3_client: Any, bucket: str, prefix: str) -> bool:
    """
    Probe whether the backend implements ListObjectVersions.

    Only a NotImplemented error code means "unsupported"; anything else is
    a real failure.
    """
    try:
        await s3_client.list_object_versions(Bucket=bucket, Prefix=prefix, MaxKeys=1)
        return True
    except ClientError as e:
        if _error_code(e) == "NotImplemented":
            return False
        raise _storage_error(e, "list versions of", prefix) from e
    except BotoCoreError as e:
        raise _storage_error(e, "list versions of", prefix) from e


async def _delete_all_versions(s3_client: Any, bucket: str, prefix: str) -> int:
    deleted = 0
    paginator = s3_client.get_paginator("list_object_versions")

    async for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        for entry in page.get("Versions", []) + page.get("DeleteMarkers", []):
            await s3_client.delete_object(
                Bucket=bucket,
                Key=entry["Key"],
                VersionId=entry["VersionId"],
            )
            deleted += 1

    return deleted


async def _delete_current_objects(s3_client: Any, bucket: str, prefix: str) -> int:
    # Materialize first so deletes do not disturb the listing
    objects = await list_objects(s3_client, bucket, prefix)
    for obj in objects:
        await s3_client.delete_object(Bucket=bucket, Key=obj.key)
    return len(objects)


async def delete_prefix(s3_client: Any, bucket: str, prefix: str) -> int:
    """
    CAUTION: delete everything stored under a prefix.

    With versioned listing every historical version and delete marker is
    removed, leaving nothing behind. Backends without ListObjectVersions
    fall back to deleting the current objects only.

    Returns:
        Number of object versions (or objects) deleted
    """
    if not prefix:
        raise ValidationError("Refusing to delete with an empty prefix")

    versioned = await supports_versioned_listing(s3_client, bucket, prefix)

    try:
        if versioned:
            deleted = await _delete_all_versions(s3_client, bucket, prefix)
        else:
            logger.info("versioned_listing_unsupported", bucket=bucket, prefix=prefix)
            deleted = await _delete_current_objects(s3_client, bucket, prefix)
    except (ClientError, BotoCoreError) as e:
        raise _storage_error(e, "delete", prefix) from e

    logger.info(
        "prefix_deleted",
        bucket=bucket,
        prefix=prefix,
        deleted=deleted,
        versioned=versioned,
    )
    return deleted
