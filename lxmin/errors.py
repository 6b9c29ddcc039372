# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for lxmin.

These helpers centralize wording for common configuration errors so that
the CLI, the REST service and the library present consistent, actionable
messages.
"""


def explain_missing_bucket_env() -> str:
    """
    Explain that the bucket environment variable is missing.
    """

    return (
        "Bucket is not configured. "
        "Set the LXMIN_BUCKET environment variable or pass --bucket."
    )


def explain_missing_endpoint_env() -> str:
    """
    Explain that the S3 endpoint environment variable is missing.
    """

    return (
        "S3 endpoint is not configured. "
        "Set the LXMIN_ENDPOINT environment variable (e.g. https://minio:9000) or pass --endpoint."
    )


def explain_invalid_part_size(value: str | int | None) -> str:
    """
    Explain that a multipart part size is invalid.
    """

    return (
        f"Invalid part size: {value!r}. "
        "It must be an integer number of bytes, at least 5 MiB (5242880)."
    )


def explain_missing_notify_endpoint() -> str:
    """
    Explain that no notification endpoint is available for an async operation.
    """

    return (
        "No notification endpoint configured. "
        "Pass notifyEndpoint=... with the request or set LXMIN_NOTIFY_ENDPOINT on the server."
    )


def explain_invalid_notify_endpoint(value: str) -> str:
    """
    Explain that a notification endpoint is not a usable webhook URL.
    """

    return (
        f"Invalid notifyEndpoint: {value!r}. "
        "It must be an http(s) URL with a host and no whitespace or control characters."
    )


def explain_too_many_profiles(instance: str, count: int, limit: int) -> str:
    """
    Explain that an instance has more profiles than the key scheme supports.
    """

    return (
        f"Instance '{instance}' has {count} profiles; at most {limit} are supported. "
        "Profile keys use a three digit index, so larger profile lists cannot be ordered on restore."
    )


def explain_invalid_tags(value: str) -> str:
    """
    Explain that a tags string could not be parsed.
    """

    return (
        f"Invalid tags: {value!r}. "
        "Expected URL-encoded 'key=value' pairs joined with '&', e.g. 'category=prod&project=backup'."
    )


def explain_incomplete_tls() -> str:
    """
    Explain that the TLS certificate and key must be configured together.
    """

    return (
        "TLS is partially configured. "
        "Set both LXMIN_TLS_CERT and LXMIN_TLS_KEY (and optionally LXMIN_TLS_CAFILE for client verification)."
    )
