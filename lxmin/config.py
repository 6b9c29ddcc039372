# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so request
handlers and background operations can share one instance safely.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List
from urllib.parse import urlparse
import re

# S3 requires every part except the last to be at least 5 MiB
MIN_PART_SIZE = 5 * 1024 * 1024
DEFAULT_PART_SIZE = 64 * 1024 * 1024


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate S3 bucket name according to AWS rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    # Must be lowercase letters, numbers, hyphens, or periods
    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    # No consecutive periods
    if ".." in bucket:
        return False

    # Not IP address format
    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_endpoint(endpoint: str) -> bool:
    """Validate that the endpoint is an http(s) URL with a host."""
    if not endpoint:
        return False
    if any(not c.isprintable() or c.isspace() for c in endpoint):
        return False
    parsed = urlparse(endpoint)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _validate_address(address: str) -> bool:
    """Validate HOST:PORT listen address format."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        return False
    return 0 < int(port) < 65536


@dataclass(frozen=True)
class LxminConfig:
    """
    Immutable configuration for lxmin backup and restore operations.
    """

    # Required: S3 endpoint URL, e.g. https://minio.example.com:9000
    endpoint: str

    # Required: bucket holding the backups
    bucket: str

    # Static credentials (fall back to the botocore credential chain when unset)
    access_key: str | None = None
    secret_key: str | None = None

    region: str = "us-east-1"

    # Local directory for exported archives and downloaded files
    staging_root: Path = field(default_factory=lambda: Path("./lxmin_staging"))

    # lxc executable used for export/import
    lxc_binary: str = "lxc"

    # Default webhook for async operations started through the REST API
    notify_endpoint: str | None = None

    # Multipart upload part size in bytes
    part_size: int = DEFAULT_PART_SIZE

    # REST listen address
    address: str = "0.0.0.0:8000"

    # Server certificate and key; ca_file enables client certificate verification
    cert_file: Path | None = None
    key_file: Path | None = None
    ca_file: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not _validate_endpoint(self.endpoint):
            errors.append(f"Invalid endpoint: {self.endpoint!r}, expected http(s)://host[:port]")

        if not _validate_bucket_name(self.bucket):
            errors.append(f"Invalid bucket name: {self.bucket}")

        if bool(self.access_key) != bool(self.secret_key):
            errors.append("access_key and secret_key must be set together")

        if self.part_size < MIN_PART_SIZE:
            errors.append(f"part_size must be >= {MIN_PART_SIZE}, got {self.part_size}")

        if not self.lxc_binary:
            errors.append("lxc_binary cannot be empty")

        if self.notify_endpoint and not _validate_endpoint(self.notify_endpoint):
            errors.append(f"Invalid notify_endpoint: {self.notify_endpoint!r}")

        if not _validate_address(self.address):
            errors.append(f"Invalid address: {self.address!r}, expected HOST:PORT")

        if bool(self.cert_file) != bool(self.key_file):
            errors.append("cert_file and key_file must be set together")

        if self.ca_file and not self.cert_file:
            errors.append("ca_file requires cert_file and key_file")

        # Raise all errors at once
        if errors:
            from lxmin.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def tls_enabled(self) -> bool:
        return self.cert_file is not None

    def with_updates(self, **kwargs) -> "LxminConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return LxminConfig(**current)
