# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin Restore Manager - Restore an instance and its profiles from a backup.

Restore never overwrites anything: it refuses to run when the target
instance exists, and it skips (with a warning) profiles that already
exist on the host. Profiles are created in their stored order before the
instance is imported, so the instance finds every profile it references.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, List, Set

import aiofiles
import structlog
from ulid import ULID

from lxmin.backup.manager import remove_staged
from lxmin.config import LxminConfig
from lxmin.core import LxminState, open_s3_client
from lxmin.exceptions import ExternalToolError, InstanceExistsError, ObjectNotFoundError
from lxmin.keys import Backup, parse_profile_keys
from lxmin.lxc import LXCClient
from lxmin.notify import EventInfo, EventState, OpType
from lxmin.progress import ProgressSink, RecordingProgress, TeeProgress
from lxmin.storage import download_file, list_objects, stat_object

logger = structlog.get_logger()


class RestorePhase(str, Enum):
    """Phases of the restore pipeline."""

    CREATED = "created"
    COLLECTING_INFO = "collecting_info"
    DOWNLOADING = "downloading"
    RESTORING_PROFILES = "restoring_profiles"
    RESTORING_INSTANCE = "restoring_instance"
    COMPLETED = "completed"
    FAILED = "failed"


class OutcomeKind(str, Enum):
    OK = "ok"
    WARNING = "warning"
    FATAL = "fatal"


@dataclass(frozen=True)
class ProfileOutcome:
    """Result of restoring a single profile."""

    profile: str
    kind: OutcomeKind
    message: str | None = None
    error: Exception | None = None

    @classmethod
    def ok(cls, profile: str) -> "ProfileOutcome":
        return cls(profile, OutcomeKind.OK)

    @classmethod
    def warning(cls, profile: str, message: str) -> "ProfileOutcome":
        return cls(profile, OutcomeKind.WARNING, message=message)

    @classmethod
    def fatal(cls, profile: str, error: Exception) -> "ProfileOutcome":
        return cls(profile, OutcomeKind.FATAL, message=str(error), error=error)

    @property
    def is_warning(self) -> bool:
        return self.kind is OutcomeKind.WARNING

    @property
    def is_fatal(self) -> bool:
        return self.kind is OutcomeKind.FATAL


@dataclass
class RestoreInfo:
    """What a backup consists of, gathered before downloading anything."""

    profiles: List[str]
    profile_keys: List[str]
    total_size: int


@dataclass
class RestoreResult:
    """Result of a completed restore."""

    backup: Backup
    operation_id: str
    started_at: datetime
    completed_at: datetime
    downloaded_bytes: int = 0
    outcomes: List[ProfileOutcome] = field(default_factory=list)

    @property
    def restored_profiles(self) -> List[str]:
        return [o.profile for o in self.outcomes if o.kind is OutcomeKind.OK]

    @property
    def skipped_profiles(self) -> List[str]:
        return [o.profile for o in self.outcomes if o.is_warning]

    @property
    def warnings(self) -> List[str]:
        return [o.message for o in self.outcomes if o.is_warning and o.message]

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "instance": self.backup.instance,
            "name": self.backup.name,
            "operation_id": self.operation_id,
            "downloaded_bytes": self.downloaded_bytes,
            "restored_profiles": self.restored_profiles,
            "skipped_profiles": self.skipped_profiles,
            "warnings": self.warnings,
            "duration_seconds": self.duration_seconds,
        }


async def check_instance(state: LxminState, instance: str) -> None:
    """
    Make sure no instance with this name exists on the host.

    Raises:
        InstanceExistsError: If the instance exists
        ExternalToolError: If lxc could not be queried
    """
    if await state["lxc"].instance_exists(instance):
        raise InstanceExistsError(
            f"'{instance}' instance is already running by this name",
            details={"instance": instance},
        )


async def fetch_restore_info(config: LxminConfig, s3_client: Any, backup: Backup) -> RestoreInfo:
    """
    Reconstruct the ordered profile list and the total download size.

    Raises:
        MalformedBackupError: If the stored profile keys are out of sequence
        ObjectNotFoundError: If the instance archive is missing
    """
    objects = await list_objects(s3_client, config.bucket, backup.profile_prefix())
    keys = sorted(obj.key for obj in objects)
    profiles = parse_profile_keys(backup, keys)

    try:
        archive = await stat_object(s3_client, config.bucket, backup.key())
    except ObjectNotFoundError as e:
        raise ObjectNotFoundError(
            f"Backup '{backup.name}' of instance '{backup.instance}' not found",
            code=e.code,
            details={"key": backup.key()},
        ) from e

    total = archive.size + sum(obj.size for obj in objects)
    return RestoreInfo(profiles=profiles, profile_keys=keys, total_size=total)


async def restore_profile(
    lxc: LXCClient,
    profile: str,
    path: Path,
    existing: Set[str],
) -> ProfileOutcome:
    """Create one profile from its staged YAML unless it already exists."""
    if profile in existing:
        return ProfileOutcome.warning(
            profile,
            f"profile '{profile}' already exists, skipped restoring it",
        )

    try:
        await lxc.create_profile(profile)
        async with aiofiles.open(path, "rb") as f:
            content = await f.read()
        await lxc.edit_profile(profile, content)
    except ExternalToolError as e:
        return ProfileOutcome.fatal(profile, e)

    return ProfileOutcome.ok(profile)


async def run_restore(
    config: LxminConfig,
    state: LxminState,
    backup: Backup,
    *,
    notify_endpoint: str | None = None,
    raw_url: str | None = None,
    progress: ProgressSink | None = None,
    operation_id: str | None = None,
) -> RestoreResult:
    """
    Restore an instance and its profiles from a backup.

    Args:
        config: lxmin configuration
        state: Runtime state
        backup: Backup to restore
        notify_endpoint: Optional webhook for lifecycle events
        raw_url: Originating request URL, echoed in notifications
        progress: Optional sink for download progress
        operation_id: Correlation id for logs (generated if omitted)

    Returns:
        RestoreResult with per-profile outcomes

    Raises:
        InstanceExistsError: If the target instance already exists
        MalformedBackupError: If stored profile keys are out of sequence
        ObjectNotFoundError: If the backup does not exist
        ExternalToolError: If creating a profile or importing/starting fails
    """
    operation_id = operation_id or str(ULID())
    lxc = state["lxc"]
    notifier = state["notifier"]
    staging = state["staging_root"]

    log = logger.bind(instance=backup.instance, name=backup.name, operation_id=operation_id)

    started_at = datetime.now(UTC)
    phase = RestorePhase.CREATED
    staged: List[Path] = []
    outcomes: List[ProfileOutcome] = []
    recorder = RecordingProgress()

    try:
        await notifier.send(
            notify_endpoint,
            EventInfo(
                op_type=OpType.RESTORE,
                state=EventState.STARTED,
                name=backup.name,
                instance=backup.instance,
                started_at=started_at,
                raw_url=raw_url,
            ),
        )
        log.info("restore_started")

        await check_instance(state, backup.instance)

        async with open_s3_client(config, state) as s3_client:
            phase = RestorePhase.COLLECTING_INFO
            info = await fetch_restore_info(config, s3_client, backup)
            log.debug("restore_info_collected", profiles=info.profiles, size=info.total_size)

            phase = RestorePhase.DOWNLOADING
            sink = TeeProgress(recorder, progress)
            sink.on_start(info.total_size)

            profile_paths: List[Path] = []
            for key in info.profile_keys:
                path = staging / key.rsplit("/", 1)[-1]
                staged.append(path)
                await download_file(s3_client, config.bucket, key, path, progress=sink)
                profile_paths.append(path)

            archive = staging / backup.instance_filename()
            staged.append(archive)
            await download_file(s3_client, config.bucket, backup.key(), archive, progress=sink)

        phase = RestorePhase.RESTORING_PROFILES
        existing = await lxc.list_existing_profiles()
        for profile, path in zip(info.profiles, profile_paths):
            outcome = await restore_profile(lxc, profile, path, existing)
            remove_staged([path], log)

            if outcome.is_fatal:
                raise outcome.error
            if outcome.is_warning:
                log.warning("profile_skipped", profile=profile, reason=outcome.message)
            outcomes.append(outcome)

        phase = RestorePhase.RESTORING_INSTANCE
        try:
            await lxc.import_instance(archive)
            await lxc.start_instance(backup.instance)
        except ExternalToolError as e:
            raise ExternalToolError(
                f"Failed to restore instance '{backup.instance}' from {archive.name}: "
                f"{e.stderr or e.message}",
                stderr=e.stderr,
                returncode=e.returncode,
                args=e.command,
            ) from e

        phase = RestorePhase.COMPLETED

    except Exception as e:
        log.error("restore_failed", phase=phase.value, error=str(e))
        await notifier.send(
            notify_endpoint,
            EventInfo(
                op_type=OpType.RESTORE,
                state=EventState.FAILED,
                name=backup.name,
                instance=backup.instance,
                started_at=started_at,
                failed_at=datetime.now(UTC),
                raw_url=raw_url,
                error=str(e),
            ),
        )
        raise

    finally:
        remove_staged(staged, log)

    result = RestoreResult(
        backup=backup,
        operation_id=operation_id,
        started_at=started_at,
        completed_at=datetime.now(UTC),
        downloaded_bytes=recorder.transferred,
        outcomes=outcomes,
    )

    log.info(
        "restore_completed",
        restored=result.restored_profiles,
        skipped=result.skipped_profiles,
        duration=result.duration_seconds,
    )

    await notifier.send(
        notify_endpoint,
        EventInfo(
            op_type=OpType.RESTORE,
            state=EventState.SUCCESS,
            name=backup.name,
            instance=backup.instance,
            started_at=started_at,
            completed_at=result.completed_at,
            raw_url=raw_url,
        ),
    )

    return result
