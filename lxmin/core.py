# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin Core - Runtime state and backup catalogue operations.

The runtime state is created once by initialize_state() and passed
explicitly to every operation, so nothing here depends on process-wide
globals. The backup and restore pipelines live in lxmin.backup.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Coroutine, Dict, List, Set, TypedDict

import structlog

from lxmin.config import LxminConfig
from lxmin.exceptions import BackupInProgressError
from lxmin.keys import Backup, parse_key
from lxmin.lxc import LXCClient
from lxmin.notify import Notifier
from lxmin.storage import ObjectInfo, delete_prefix, get_tags, iter_objects, stat_object
from lxmin.tracker import OperationTracker

logger = structlog.get_logger()

COMPLETED = "completed"


class LxminState(TypedDict):
    """Runtime state shared by request handlers and background operations."""

    s3_session: Any  # aiobotocore session
    lxc: LXCClient
    tracker: OperationTracker
    notifier: Notifier
    tasks: Set[asyncio.Task]
    staging_root: Path


@dataclass
class BackupInfo:
    """A completed backup as seen in storage."""

    instance: str
    name: str
    created: datetime | None
    size: int
    optimized: bool
    compressed: bool
    tags: Dict[str, str] | None = None

    def to_dict(self) -> dict:
        info: dict = {
            "instance": self.instance,
            "name": self.name,
            "size": self.size,
            "optimized": self.optimized,
            "compressed": self.compressed,
        }
        if self.created:
            info["created"] = self.created.isoformat()
        if self.tags:
            info["tags"] = self.tags
        return info


async def initialize_state(
    config: LxminConfig,
    *,
    lxc: LXCClient | None = None,
    notifier: Notifier | None = None,
) -> LxminState:
    """
    Initialize runtime state.

    Creates the staging directory and the S3 session. The lxc adapter and
    the notifier can be injected (tests, alternative transports).

    Args:
        config: lxmin configuration
        lxc: Optional lxc adapter
        notifier: Optional notifier

    Returns:
        Initialized LxminState dictionary
    """
    from aiobotocore.session import get_session

    config.staging_root.mkdir(parents=True, exist_ok=True)

    return LxminState(
        s3_session=get_session(),
        lxc=lxc or LXCClient(config.lxc_binary),
        tracker=OperationTracker(),
        notifier=notifier or Notifier(),
        tasks=set(),
        staging_root=config.staging_root,
    )


async def shutdown_state(state: LxminState) -> None:
    """Wait for background operations to finish, then release resources."""
    pending = list(state["tasks"])
    if pending:
        logger.info("waiting_for_operations", count=len(pending))
        await asyncio.gather(*pending, return_exceptions=True)

    await state["notifier"].aclose()
    logger.info("lxmin_state_shutdown_complete")


@asynccontextmanager
async def open_s3_client(config: LxminConfig, state: LxminState) -> AsyncIterator[Any]:
    """Create an S3 client for the configured endpoint (path-style addressing)."""
    from aiobotocore.config import AioConfig

    client_config = AioConfig(
        s3={"addressing_style": "path"},
        # Not every S3 compatible server accepts the default CRC checksums
        request_checksum_calculation="when_required",
        response_checksum_validation="when_required",
    )

    async with state["s3_session"].create_client(
        "s3",
        region_name=config.region,
        endpoint_url=config.endpoint,
        aws_access_key_id=config.access_key,
        aws_secret_access_key=config.secret_key,
        config=client_config,
    ) as client:
        yield client


def dispatch(
    state: LxminState,
    coro: Coroutine[Any, Any, Any],
    operation_id: str,
) -> asyncio.Task:
    """
    Run an operation in the background.

    The task is referenced from the state until it finishes. Its outcome is
    only observable through notifications and logs.
    """
    task = asyncio.create_task(coro, name=f"lxmin-{operation_id}")
    state["tasks"].add(task)

    def _done(t: asyncio.Task) -> None:
        state["tasks"].discard(t)
        if t.cancelled():
            logger.warning("background_operation_cancelled", operation_id=operation_id)
        elif t.exception() is not None:
            logger.debug(
                "background_operation_finished",
                operation_id=operation_id,
                error=str(t.exception()),
            )

    task.add_done_callback(_done)
    return task


def _backup_info(obj: ObjectInfo, instance: str, name: str) -> BackupInfo:
    return BackupInfo(
        instance=instance,
        name=name,
        created=obj.last_modified,
        size=obj.size,
        optimized=obj.metadata.get("optimized") == "true",
        compressed=obj.metadata.get("compressed") == "true",
    )


async def list_backups(
    config: LxminConfig,
    state: LxminState,
    instance: str | None = None,
) -> List[BackupInfo]:
    """
    List completed backups.

    Profile snapshots are not listed; a backup is represented by its
    instance archive. `instance` of None or "*" lists all instances.
    """
    prefix = "" if instance in (None, "", "*") else f"{instance}/"
    backups: List[BackupInfo] = []

    async with open_s3_client(config, state) as s3_client:
        async for obj in iter_objects(s3_client, config.bucket, prefix):
            parsed = parse_key(obj.key)
            if parsed is None or parsed.kind != "instance":
                continue

            # Listing does not carry user metadata
            stat = await stat_object(s3_client, config.bucket, obj.key)
            backups.append(_backup_info(stat, parsed.instance, parsed.name))

    logger.debug("backups_listed", instance=instance, count=len(backups))
    return backups


async def get_backup_info(
    config: LxminConfig,
    state: LxminState,
    backup: Backup,
) -> BackupInfo:
    """
    Fetch stored metadata and tags of a backup.

    Raises:
        ObjectNotFoundError: If the instance archive does not exist
    """
    async with open_s3_client(config, state) as s3_client:
        stat = await stat_object(s3_client, config.bucket, backup.key())
        tags = await get_tags(s3_client, config.bucket, backup.key())

    info = _backup_info(stat, backup.instance, backup.name)
    info.tags = tags
    return info


async def get_backup_status(
    config: LxminConfig,
    state: LxminState,
    backup: Backup,
) -> dict:
    """
    Report the lifecycle phase of a backup.

    - in flight, no bytes uploaded yet: state "generating"
    - in flight, uploading: state "uploading" with progress/size
    - otherwise: stored metadata with state "completed"

    Raises:
        ObjectNotFoundError: If the backup is neither in flight nor stored
    """
    op = state["tracker"].get(backup.key())
    if op is not None:
        return op.to_dict()

    info = await get_backup_info(config, state, backup)
    return {**info.to_dict(), "state": COMPLETED}


def _ensure_not_in_flight(state: LxminState, instance: str, name: str | None = None) -> None:
    tracker = state["tracker"]
    for key in tracker.names():
        parsed = parse_key(key)
        if parsed and parsed.instance == instance and (name is None or parsed.name == name):
            raise BackupInProgressError(
                f"Backup '{parsed.name}' of instance '{instance}' is still in progress",
                details={"instance": instance, "name": parsed.name},
            )


async def delete_backup(config: LxminConfig, state: LxminState, backup: Backup) -> int:
    """
    Delete every object (and object version) of one backup.

    Returns:
        Number of objects deleted
    """
    _ensure_not_in_flight(state, backup.instance, backup.name)

    async with open_s3_client(config, state) as s3_client:
        deleted = await delete_prefix(s3_client, config.bucket, backup.prefix())

    logger.info(
        "backup_deleted",
        instance=backup.instance,
        name=backup.name,
        objects=deleted,
    )
    return deleted


async def delete_all_backups(config: LxminConfig, state: LxminState, instance: str) -> int:
    """Delete every backup of an instance."""
    _ensure_not_in_flight(state, instance)

    async with open_s3_client(config, state) as s3_client:
        deleted = await delete_prefix(s3_client, config.bucket, f"{instance}/")

    logger.info("all_backups_deleted", instance=instance, objects=deleted)
    return deleted
