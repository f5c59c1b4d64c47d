# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Exceptions - Custom exceptions for the dbvault package.
"""


class DBVaultError(Exception):
    """Base exception for all dbvault errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(DBVaultError):
    """Raised when configuration is invalid or the storage root is unusable."""

    pass


class ConcurrencyError(DBVaultError):
    """Raised when another backup or restore already holds the job slot."""

    pass


class ConnectivityError(DBVaultError):
    """Raised when the database cannot be reached before a dump starts."""

    pass


class ProcessExecutionError(DBVaultError):
    """Raised when a dump/restore executable fails to spawn or exits non-zero."""

    pass


class IntegrityError(DBVaultError):
    """Raised when an artifact fails checksum or authentication checks."""

    pass


class NotFoundError(DBVaultError):
    """Raised when a backup id or its artifact cannot be found."""

    pass


class ArtifactIOError(DBVaultError):
    """Raised when reading, writing or unlinking a local file fails."""

    pass


class StorageError(ArtifactIOError):
    """Raised when cold storage operations fail."""

    pass
