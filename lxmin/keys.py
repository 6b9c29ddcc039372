# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin Keys - Object key naming for backups.

A logical backup of an instance is stored as one instance archive plus
zero or more profile snapshots:

    <instance>/<name>_instance.tar.gz
    <instance>/<name>_profile_000_<profile>.yaml
    <instance>/<name>_profile_001_<profile>.yaml

Profiles are applied in list order (later profiles override earlier ones),
so the zero-padded index is part of the key. Lexicographic listing order
equals numeric index order for up to MAX_PROFILES profiles.
"""

import re
from dataclasses import dataclass
from datetime import datetime, UTC
from typing import Iterable, List, Sequence

from lxmin.errors import explain_too_many_profiles
from lxmin.exceptions import ConfigurationError, MalformedBackupError, ValidationError

MAX_PROFILES = 1000

INSTANCE_SUFFIX = "_instance.tar.gz"
PROFILE_INFIX = "_profile_"
PROFILE_SUFFIX = ".yaml"

# Timestamp layout used for generated backup names (UTC)
BACKUP_NAME_FORMAT = "%Y-%m-%d-%H-%M%S"

_INSTANCE_KEY_RE = re.compile(r"^(?P<instance>[^/]+)/(?P<name>.+?)_instance\.tar\.gz$")
_PROFILE_KEY_RE = re.compile(
    r"^(?P<instance>[^/]+)/(?P<name>.+?)_profile_(?P<index>\d{3})_(?P<profile>.+)\.yaml$"
)


@dataclass(frozen=True)
class Backup:
    """A logical backup addressed by (instance, name)."""

    instance: str
    name: str

    def key(self) -> str:
        """Key of the instance archive."""
        return f"{self.instance}/{self.instance_filename()}"

    def profile_key(self, index: int, profile: str) -> str:
        return f"{self.instance}/{self.profile_filename(index, profile)}"

    def prefix(self) -> str:
        """
        Prefix shared by every object of this backup.

        The trailing underscore keeps `backup_X` from matching `backup_X-1`.
        """
        return f"{self.instance}/{self.name}_"

    def profile_prefix(self) -> str:
        return f"{self.instance}/{self.name}{PROFILE_INFIX}"

    def instance_filename(self) -> str:
        return f"{self.name}{INSTANCE_SUFFIX}"

    def profile_filename(self, index: int, profile: str) -> str:
        if not 0 <= index < MAX_PROFILES:
            raise ConfigurationError(
                f"Profile index {index} out of range",
                details={"max_profiles": MAX_PROFILES},
            )
        return f"{self.name}{PROFILE_INFIX}{index:03d}_{profile}{PROFILE_SUFFIX}"

    def profile_keys(self, profiles: Sequence[str]) -> List[str]:
        return [self.profile_key(i, p) for i, p in enumerate(profiles)]


@dataclass(frozen=True)
class ParsedKey:
    """An object key decoded back into its backup coordinates."""

    instance: str
    name: str
    kind: str  # "instance" or "profile"
    index: int | None = None
    profile: str | None = None

    @property
    def backup(self) -> Backup:
        return Backup(self.instance, self.name)


def generate_backup_name(now: datetime | None = None) -> str:
    """Generate a timestamped backup name, e.g. backup_2022-02-16-04-1040."""
    now = now or datetime.now(UTC)
    return "backup_" + now.strftime(BACKUP_NAME_FORMAT)


def validate_name(value: str | None, what: str = "instance") -> str:
    """Return the stripped name or raise ValidationError when empty or nested."""
    name = (value or "").strip()
    if not name:
        raise ValidationError(f"{what} name cannot be empty")
    if "/" in name:
        raise ValidationError(f"{what} name cannot contain '/'", details={what: name})
    return name


def check_profile_count(instance: str, profiles: Sequence[str]) -> None:
    """Fail fast when a profile list cannot be encoded by the key scheme."""
    if len(profiles) > MAX_PROFILES:
        raise ConfigurationError(
            explain_too_many_profiles(instance, len(profiles), MAX_PROFILES),
            details={"instance": instance, "profiles": len(profiles)},
        )


def parse_key(key: str) -> ParsedKey | None:
    """
    Decode an object key.

    Returns None for keys that are neither an instance archive nor a
    profile snapshot.
    """
    match = _PROFILE_KEY_RE.match(key)
    if match:
        return ParsedKey(
            instance=match["instance"],
            name=match["name"],
            kind="profile",
            index=int(match["index"]),
            profile=match["profile"],
        )

    match = _INSTANCE_KEY_RE.match(key)
    if match:
        return ParsedKey(instance=match["instance"], name=match["name"], kind="instance")

    return None


def parse_profile_keys(backup: Backup, keys: Iterable[str]) -> List[str]:
    """
    Reconstruct the ordered profile list of a backup from its profile keys.

    Keys are sorted lexicographically and the n-th key must carry index n.
    Any gap or malformed key raises MalformedBackupError, since restoring
    profiles out of order silently corrupts the instance configuration.
    """
    profiles: List[str] = []

    for pno, key in enumerate(sorted(keys)):
        base = key.rsplit("/", 1)[-1]
        expected_prefix = f"{backup.name}{PROFILE_INFIX}{pno:03d}_"

        if (
            not key.startswith(f"{backup.instance}/")
            or not base.startswith(expected_prefix)
            or not base.endswith(PROFILE_SUFFIX)
        ):
            raise MalformedBackupError(
                f"Unexpected profile file found: {key}",
                details={"expected_prefix": expected_prefix, "position": pno},
            )

        profile = base[len(expected_prefix) : -len(PROFILE_SUFFIX)]
        if not profile:
            raise MalformedBackupError(
                f"Profile file has an empty profile name: {key}",
                details={"position": pno},
            )

        profiles.append(profile)

    return profiles
