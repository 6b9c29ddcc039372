# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Engine - Create-backup and restore pipelines.
"""

from lxmin.backup.manager import (
    BackupOptions,
    BackupPhase,
    BackupResult,
    create_backup,
    run_backup,
)

from lxmin.backup.restore import (
    ProfileOutcome,
    RestoreInfo,
    RestorePhase,
    RestoreResult,
    check_instance,
    fetch_restore_info,
    run_restore,
)

__all__ = [
    # Manager
    "BackupOptions",
    "BackupPhase",
    "BackupResult",
    "create_backup",
    "run_backup",
    # Restore
    "ProfileOutcome",
    "RestoreInfo",
    "RestorePhase",
    "RestoreResult",
    "check_instance",
    "fetch_restore_info",
    "run_restore",
]
