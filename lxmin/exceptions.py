# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin Exceptions - Custom exceptions for the lxmin package.
"""


class LxminError(Exception):
    """Base exception for all lxmin errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(LxminError):
    """Raised when configuration is invalid or unsupported."""

    pass


class ValidationError(LxminError):
    """Raised when a request is rejected before any side effect."""

    pass


class BackupInProgressError(ValidationError):
    """Raised when a backup with the same name is already being generated."""

    pass


class ExternalToolError(LxminError):
    """
    Raised when the lxc command line tool exits with a nonzero status.

    The tool's captured stderr is kept verbatim so operators can see why
    the underlying command failed.
    """

    def __init__(
        self,
        message: str,
        stderr: str = "",
        returncode: int | None = None,
        args: tuple[str, ...] = (),
    ):
        self.stderr = stderr
        self.returncode = returncode
        self.command = args
        super().__init__(
            message,
            details={"command": " ".join(args), "returncode": returncode, "stderr": stderr},
        )


class ExportError(ExternalToolError):
    """Raised when exporting an instance or profile fails."""

    pass


class StorageError(LxminError):
    """Raised when object storage operations fail."""

    def __init__(self, message: str, code: str | None = None, details: dict | None = None):
        self.code = code
        super().__init__(message, details={**(details or {}), "code": code})


class ObjectNotFoundError(StorageError):
    """Raised when a backup object does not exist in storage."""

    pass


class MalformedBackupError(LxminError):
    """Raised when stored profile keys violate the expected naming sequence."""

    pass


class InstanceExistsError(LxminError):
    """Raised when a restore would overwrite an existing instance."""

    pass
