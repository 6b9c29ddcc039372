# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the object storage adapter against a moto S3 server.
"""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from botocore.exceptions import ClientError

from conftest import all_keys
from lxmin.config import MIN_PART_SIZE
from lxmin.exceptions import ObjectNotFoundError, StorageError, ValidationError
from lxmin.progress import RecordingProgress
from lxmin.storage import (
    delete_prefix,
    download_file,
    encode_tags,
    get_tags,
    list_objects,
    parse_tags,
    put_file,
    stat_object,
    supports_versioned_listing,
)


class NoVersioningClient:
    """Wraps a real client but behaves like a backend without ListObjectVersions."""

    def __init__(self, client):
        self._client = client

    def __getattr__(self, name):
        return getattr(self._client, name)

    async def list_object_versions(self, **kwargs):
        raise ClientError(
            {"Error": {"Code": "NotImplemented", "Message": "A header you provided implies functionality that is not implemented"}},
            "ListObjectVersions",
        )


async def _versions(s3_client, bucket: str, prefix: str):
    response = await s3_client.list_object_versions(Bucket=bucket, Prefix=prefix)
    return response.get("Versions", []) + response.get("DeleteMarkers", [])


def test_parse_tags():
    assert parse_tags(None) == {}
    assert parse_tags("") == {}
    assert parse_tags("category=prod&project=backup") == {"category": "prod", "project": "backup"}
    assert parse_tags("note=a%20b") == {"note": "a b"}


@pytest.mark.parametrize("value", ["novalue&&", "=x", "a=1&a=2", "&".join(f"k{i}=v" for i in range(11))])
def test_parse_tags_rejects_invalid(value):
    with pytest.raises(ValidationError):
        parse_tags(value)


def test_encode_tags_is_stable():
    assert encode_tags({"b": "2", "a": "1 x"}) == "a=1+x&b=2"


@pytest.mark.asyncio
async def test_put_file_with_metadata_and_tags(test_config, s3_client, temp_dir: Path):
    path = temp_dir / "small.bin"
    path.write_bytes(b"hello world")
    progress = RecordingProgress()

    size = await put_file(
        s3_client,
        test_config.bucket,
        "u2/small.bin",
        path,
        metadata={"optimized": "true", "compressed": "true"},
        tags={"category": "prod"},
        progress=progress,
        content_type="application/gzip",
    )

    assert size == 11
    assert progress.transferred == 11

    info = await stat_object(s3_client, test_config.bucket, "u2/small.bin")
    assert info.size == 11
    assert info.metadata == {"optimized": "true", "compressed": "true"}
    assert info.content_type == "application/gzip"
    assert await get_tags(s3_client, test_config.bucket, "u2/small.bin") == {"category": "prod"}


@pytest.mark.asyncio
async def test_multipart_upload_and_download(test_config, s3_client, temp_dir: Path):
    path = temp_dir / "large.bin"
    data = b"0123456789abcdef" * ((MIN_PART_SIZE + 4096) // 16)
    path.write_bytes(data)
    upload_progress = RecordingProgress()

    await put_file(
        s3_client,
        test_config.bucket,
        "u2/large.bin",
        path,
        part_size=MIN_PART_SIZE,
        progress=upload_progress,
    )
    assert upload_progress.transferred == len(data)
    assert upload_progress.updates > 1

    dest = temp_dir / "downloaded.bin"
    download_progress = RecordingProgress()
    written = await download_file(
        s3_client, test_config.bucket, "u2/large.bin", dest, progress=download_progress
    )

    assert written == len(data)
    assert dest.read_bytes() == data
    assert download_progress.transferred == len(data)


@pytest.mark.asyncio
async def test_missing_object_raises_not_found(test_config, s3_client, temp_dir: Path):
    with pytest.raises(ObjectNotFoundError):
        await stat_object(s3_client, test_config.bucket, "u2/missing")

    with pytest.raises(ObjectNotFoundError):
        await download_file(s3_client, test_config.bucket, "u2/missing", temp_dir / "x")


@pytest.mark.asyncio
async def test_list_objects_in_key_order(test_config, s3_client):
    for key in ["u2/b", "u2/a", "u3/a", "u2/c"]:
        await s3_client.put_object(Bucket=test_config.bucket, Key=key, Body=b"x")

    objects = await list_objects(s3_client, test_config.bucket, "u2/")

    assert [o.key for o in objects] == ["u2/a", "u2/b", "u2/c"]


@pytest.mark.asyncio
async def test_delete_prefix_removes_every_version(test_config, s3_client):
    bucket = test_config.bucket
    for key in ["u2/backup_X_instance.tar.gz", "u2/backup_X_profile_000_base.yaml"]:
        for version in range(3):
            await s3_client.put_object(Bucket=bucket, Key=key, Body=f"v{version}".encode())
    await s3_client.put_object(Bucket=bucket, Key="u2/backup_X-1_instance.tar.gz", Body=b"keep")

    deleted = await delete_prefix(s3_client, bucket, "u2/backup_X_")

    assert deleted == 6
    assert await _versions(s3_client, bucket, "u2/backup_X_") == []
    assert await all_keys(s3_client, bucket) == ["u2/backup_X-1_instance.tar.gz"]


@pytest.mark.asyncio
async def test_delete_prefix_removes_delete_markers(test_config, s3_client):
    bucket = test_config.bucket
    await s3_client.put_object(Bucket=bucket, Key="u2/backup_X_instance.tar.gz", Body=b"x")
    await s3_client.delete_object(Bucket=bucket, Key="u2/backup_X_instance.tar.gz")

    deleted = await delete_prefix(s3_client, bucket, "u2/backup_X_")

    assert deleted == 2
    assert await _versions(s3_client, bucket, "u2/") == []


@pytest.mark.asyncio
async def test_delete_prefix_falls_back_without_versioned_listing(test_config, s3_client):
    bucket = test_config.bucket
    for version in range(3):
        await s3_client.put_object(Bucket=bucket, Key="u2/backup_X_instance.tar.gz", Body=f"v{version}".encode())
    await s3_client.put_object(Bucket=bucket, Key="u2/backup_Y_instance.tar.gz", Body=b"keep")

    client = NoVersioningClient(s3_client)
    assert not await supports_versioned_listing(client, bucket, "u2/backup_X_")

    deleted = await delete_prefix(client, bucket, "u2/backup_X_")

    assert deleted == 1
    assert await all_keys(s3_client, bucket) == ["u2/backup_Y_instance.tar.gz"]
    # Only current objects are removed; history stays behind
    remaining = [v for v in await _versions(s3_client, bucket, "u2/backup_X_") if "Size" in v]
    assert len(remaining) == 3


@pytest.mark.asyncio
async def test_versioned_listing_probe_propagates_other_errors():
    client = AsyncMock()
    client.list_object_versions.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}},
        "ListObjectVersions",
    )

    with pytest.raises(StorageError) as exc_info:
        await supports_versioned_listing(client, "bucket", "u2/")

    assert exc_info.value.code == "AccessDenied"


@pytest.mark.asyncio
async def test_delete_prefix_refuses_empty_prefix():
    client = AsyncMock()

    with pytest.raises(ValidationError):
        await delete_prefix(client, "bucket", "")

    client.list_object_versions.assert_not_called()
