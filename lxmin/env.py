# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

Both the CLI and the REST service build their configuration here, so the
LXMIN_* variables mean the same thing everywhere. Explicit overrides (for
example command line flags) always win over the environment.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from lxmin.config import DEFAULT_PART_SIZE, LxminConfig
from lxmin.errors import (
    explain_incomplete_tls,
    explain_invalid_part_size,
    explain_missing_bucket_env,
    explain_missing_endpoint_env,
)
from lxmin.exceptions import ConfigurationError


def _parse_part_size(value: str | None) -> int:
    if not value:
        return DEFAULT_PART_SIZE
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_part_size(value)) from exc


def _optional_path(value: str | None) -> Path | None:
    return Path(value) if value else None


def create_config_from_env(**overrides: Any) -> LxminConfig:
    """
    Create an LxminConfig from environment variables plus explicit overrides.

    Overrides whose value is None are ignored, which lets callers pass
    every optional flag through unconditionally.

    Required:
        - LXMIN_ENDPOINT: S3 endpoint URL
        - LXMIN_BUCKET: Bucket holding the backups

    Optional environment variables:
        - LXMIN_ACCESS_KEY / LXMIN_SECRET_KEY: Static S3 credentials
        - LXMIN_REGION: Region (default: us-east-1)
        - LXMIN_STAGING: Staging directory (default: ./lxmin_staging)
        - LXMIN_LXC_BINARY: lxc executable (default: lxc)
        - LXMIN_NOTIFY_ENDPOINT: Default webhook for async operations
        - LXMIN_PART_SIZE: Multipart part size in bytes (default: 64 MiB)
        - LXMIN_ADDRESS: REST listen address (default: 0.0.0.0:8000)
        - LXMIN_TLS_CERT / LXMIN_TLS_KEY: Server certificate and key
        - LXMIN_TLS_CAFILE: CA bundle used to verify client certificates
    """

    values: dict[str, Any] = {
        "endpoint": os.getenv("LXMIN_ENDPOINT"),
        "bucket": os.getenv("LXMIN_BUCKET"),
        "access_key": os.getenv("LXMIN_ACCESS_KEY") or None,
        "secret_key": os.getenv("LXMIN_SECRET_KEY") or None,
        "region": os.getenv("LXMIN_REGION", "us-east-1"),
        "staging_root": Path(os.getenv("LXMIN_STAGING") or "./lxmin_staging"),
        "lxc_binary": os.getenv("LXMIN_LXC_BINARY") or "lxc",
        "notify_endpoint": os.getenv("LXMIN_NOTIFY_ENDPOINT") or None,
        "part_size": _parse_part_size(os.getenv("LXMIN_PART_SIZE")),
        "address": os.getenv("LXMIN_ADDRESS") or "0.0.0.0:8000",
        "cert_file": _optional_path(os.getenv("LXMIN_TLS_CERT")),
        "key_file": _optional_path(os.getenv("LXMIN_TLS_KEY")),
        "ca_file": _optional_path(os.getenv("LXMIN_TLS_CAFILE")),
    }
    values.update({k: v for k, v in overrides.items() if v is not None})

    if not values["endpoint"]:
        raise ConfigurationError(explain_missing_endpoint_env())
    if not values["bucket"]:
        raise ConfigurationError(explain_missing_bucket_env())
    if bool(values["cert_file"]) != bool(values["key_file"]):
        raise ConfigurationError(explain_incomplete_tls())

    for key in ("staging_root", "cert_file", "key_file", "ca_file"):
        if isinstance(values[key], str):
            values[key] = Path(values[key])

    return LxminConfig(**values)
