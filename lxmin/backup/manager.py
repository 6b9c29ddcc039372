# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin Backup Manager - Create-backup pipeline.

A backup runs through these phases:

    created -> exporting_profiles -> exporting_instance
            -> uploading_instance -> uploading_profiles -> completed

and may fail from any of them. Whatever happens, staged files are removed
and the in-flight entry is dropped. Objects that were already uploaded are
left in place; a partial backup can be retried or deleted explicitly.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

import structlog
from ulid import ULID

from lxmin.config import DEFAULT_PART_SIZE, MIN_PART_SIZE, LxminConfig
from lxmin.core import LxminState, open_s3_client
from lxmin.errors import explain_invalid_part_size
from lxmin.exceptions import BackupInProgressError, ValidationError
from lxmin.keys import Backup, check_profile_count, generate_backup_name, validate_name
from lxmin.notify import EventInfo, EventState, OpType
from lxmin.progress import ProgressSink, TeeProgress
from lxmin.storage import object_exists, put_file
from lxmin.tracker import InFlightOperation

logger = structlog.get_logger()

# Upper bound on "-N" suffixes tried when a generated name is taken
MAX_NAME_ATTEMPTS = 100

ARCHIVE_CONTENT_TYPE = "application/gzip"
PROFILE_CONTENT_TYPE = "application/x-yaml"


class BackupPhase(str, Enum):
    """Phases of the create-backup pipeline."""

    CREATED = "created"
    EXPORTING_PROFILES = "exporting_profiles"
    EXPORTING_INSTANCE = "exporting_instance"
    UPLOADING_INSTANCE = "uploading_instance"
    UPLOADING_PROFILES = "uploading_profiles"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class BackupOptions:
    """Per-request backup settings."""

    optimized: bool = False
    tags: Dict[str, str] = field(default_factory=dict)
    part_size: int = DEFAULT_PART_SIZE
    notify_endpoint: str | None = None
    raw_url: str | None = None
    operation_id: str = field(default_factory=lambda: str(ULID()))


@dataclass
class BackupResult:
    """Result of a completed backup."""

    backup: Backup
    optimized: bool
    profiles: List[str]
    size: int
    started_at: datetime
    completed_at: datetime
    operation_id: str
    compressed: bool = True

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "instance": self.backup.instance,
            "name": self.backup.name,
            "optimized": self.optimized,
            "compressed": self.compressed,
            "profiles": self.profiles,
            "size": self.size,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "operation_id": self.operation_id,
        }


def backup_metadata(optimized: bool) -> Dict[str, str]:
    """User metadata stored on the instance archive."""
    return {
        "optimized": "true" if optimized else "false",
        # lxc export always compresses
        "compressed": "true",
    }


def remove_staged(paths: Iterable[Path], log: Any = logger) -> None:
    """Best-effort removal of staged files."""
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            log.warning("staged_file_remove_failed", path=str(path), error=str(e))


def _now() -> datetime:
    return datetime.now(UTC)


async def create_backup(
    config: LxminConfig,
    state: LxminState,
    instance: str,
    options: BackupOptions,
) -> Backup:
    """
    Validate a backup request and reserve its name.

    The generated timestamp name gets a "-N" suffix when it is already
    in flight or already stored, so two backups started within the same
    second never share keys. The reserved name is registered in the
    tracker, which makes status queries answer "generating" right away.

    Raises:
        ValidationError: On an empty instance name or invalid part size
        BackupInProgressError: If no free name could be reserved
    """
    instance = validate_name(instance, "instance")
    if options.part_size < MIN_PART_SIZE:
        raise ValidationError(explain_invalid_part_size(options.part_size))

    tracker = state["tracker"]
    base = generate_backup_name()

    async with open_s3_client(config, state) as s3_client:
        for attempt in range(MAX_NAME_ATTEMPTS):
            name = base if attempt == 0 else f"{base}-{attempt}"
            backup = Backup(instance, name)

            if backup.key() in tracker:
                continue
            if await object_exists(s3_client, config.bucket, backup.key()):
                continue
            if tracker.claim(backup.key(), InFlightOperation(name=name, instance=instance)):
                logger.debug("backup_name_reserved", instance=instance, name=name)
                return backup

    raise BackupInProgressError(
        f"Could not reserve a backup name for instance '{instance}'",
        details={"base_name": base, "attempts": MAX_NAME_ATTEMPTS},
    )


async def run_backup(
    config: LxminConfig,
    state: LxminState,
    backup: Backup,
    options: BackupOptions,
    progress: ProgressSink | None = None,
) -> BackupResult:
    """
    Export an instance with its profiles and upload everything.

    Args:
        config: lxmin configuration
        state: Runtime state
        backup: Backup reserved by create_backup() (reserved here otherwise)
        options: Backup options
        progress: Optional sink for upload progress

    Returns:
        BackupResult with backup details

    Raises:
        ConfigurationError: If the instance has more than MAX_PROFILES profiles
        ExportError: If lxc fails to export a profile or the instance
        StorageError: If an upload fails
    """
    tracker = state["tracker"]
    lxc = state["lxc"]
    notifier = state["notifier"]
    staging = state["staging_root"]
    key = backup.key()

    op = tracker.get(key)
    if op is None:
        op = InFlightOperation(name=backup.name, instance=backup.instance)
        if not tracker.claim(key, op):
            raise BackupInProgressError(f"Backup '{backup.name}' is already in progress")

    log = logger.bind(
        instance=backup.instance,
        name=backup.name,
        operation_id=options.operation_id,
    )

    started_at = _now()
    phase = BackupPhase.CREATED
    staged: List[Path] = []
    profiles: List[str] = []
    total = 0

    try:
        await notifier.send(
            options.notify_endpoint,
            EventInfo(
                op_type=OpType.BACKUP,
                state=EventState.STARTED,
                name=backup.name,
                instance=backup.instance,
                started_at=started_at,
                raw_url=options.raw_url,
            ),
        )
        log.info("backup_started", optimized=options.optimized)

        phase = BackupPhase.EXPORTING_PROFILES
        profiles = await lxc.list_profiles(backup.instance)
        check_profile_count(backup.instance, profiles)

        profile_files: List[Tuple[str, Path]] = []
        for index, profile in enumerate(profiles):
            path = staging / backup.profile_filename(index, profile)
            staged.append(path)
            await lxc.export_profile(profile, path)
            profile_files.append((backup.profile_key(index, profile), path))
        log.debug("profiles_exported", profiles=profiles)

        phase = BackupPhase.EXPORTING_INSTANCE
        archive = staging / backup.instance_filename()
        staged.append(archive)
        instance_size = await lxc.export_instance(backup.instance, archive, options.optimized)
        log.info("instance_exported", size=instance_size)

        total = instance_size + sum(path.stat().st_size for _, path in profile_files)
        sink = TeeProgress(op, progress)
        sink.on_start(total)

        async with open_s3_client(config, state) as s3_client:
            # The archive is what makes a backup restorable, so it goes first
            phase = BackupPhase.UPLOADING_INSTANCE
            await put_file(
                s3_client,
                config.bucket,
                key,
                archive,
                metadata=backup_metadata(options.optimized),
                tags=options.tags,
                part_size=options.part_size,
                progress=sink,
                content_type=ARCHIVE_CONTENT_TYPE,
            )

            phase = BackupPhase.UPLOADING_PROFILES
            for profile_key, path in profile_files:
                await put_file(
                    s3_client,
                    config.bucket,
                    profile_key,
                    path,
                    tags=options.tags,
                    part_size=options.part_size,
                    progress=sink,
                    content_type=PROFILE_CONTENT_TYPE,
                )

        phase = BackupPhase.COMPLETED

    except Exception as e:
        failed_at = _now()
        log.error("backup_failed", phase=phase.value, error=str(e))
        await notifier.send(
            options.notify_endpoint,
            EventInfo(
                op_type=OpType.BACKUP,
                state=EventState.FAILED,
                name=backup.name,
                instance=backup.instance,
                started_at=started_at,
                failed_at=failed_at,
                raw_url=options.raw_url,
                error=str(e),
            ),
        )
        raise

    finally:
        remove_staged(staged, log)
        tracker.pop(key)

    completed_at = _now()
    result = BackupResult(
        backup=backup,
        optimized=options.optimized,
        profiles=profiles,
        size=total,
        started_at=started_at,
        completed_at=completed_at,
        operation_id=options.operation_id,
    )

    log.info(
        "backup_completed",
        size=total,
        profiles=len(profiles),
        duration=result.duration_seconds,
    )

    await notifier.send(
        options.notify_endpoint,
        EventInfo(
            op_type=OpType.BACKUP,
            state=EventState.SUCCESS,
            name=backup.name,
            instance=backup.instance,
            started_at=started_at,
            completed_at=completed_at,
            raw_url=options.raw_url,
        ),
    )

    return result
