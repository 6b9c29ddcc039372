# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin - Backup and restore LXC instances to and from S3 compatible storage.

An instance is exported with the lxc tool, staged locally and uploaded
together with ordered snapshots of its profiles. Restore reverses the
process without ever overwriting an existing instance or profile.
"""

__version__ = "0.1.0"

# Configuration
from lxmin.config import LxminConfig
from lxmin.env import create_config_from_env

# Core functions
from lxmin.core import (
    BackupInfo,
    delete_all_backups,
    delete_backup,
    get_backup_info,
    get_backup_status,
    initialize_state,
    list_backups,
    shutdown_state,
)

# Pipelines
from lxmin.backup import (
    BackupOptions,
    create_backup,
    run_backup,
    run_restore,
)

from lxmin.keys import Backup

__all__ = [
    # Version
    "__version__",
    # Configuration
    "LxminConfig",
    "create_config_from_env",
    # Core
    "Backup",
    "BackupInfo",
    "initialize_state",
    "shutdown_state",
    "list_backups",
    "get_backup_info",
    "get_backup_status",
    "delete_backup",
    "delete_all_backups",
    # Pipelines
    "BackupOptions",
    "create_backup",
    "run_backup",
    "run_restore",
]
