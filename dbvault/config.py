# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation to prevent
accidental modification while a backup or restore is running.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List

from apscheduler.triggers.cron import CronTrigger

from dbvault.errors import explain_missing_bucket


class StorageMode(str, Enum):
    """Where finished backup artifacts are kept."""

    LOCAL = "local"  # Storage root only
    S3 = "s3"  # Cold storage only, local copy removed after upload
    BOTH = "both"  # Storage root and cold storage

    @property
    def uses_cold_storage(self) -> bool:
        return self in (StorageMode.S3, StorageMode.BOTH)


class BackupType(str, Enum):
    """Backup type label recorded in metadata."""

    FULL = "full"
    INCREMENTAL = "incremental"


def _validate_cron_expression(expression: str) -> bool:
    """Validate a standard 5-field crontab expression."""
    if not expression or len(expression.split()) != 5:
        return False
    try:
        CronTrigger.from_crontab(expression, timezone="UTC")
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings for the MySQL server being backed up."""

    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str = ""
    name: str = "app"

    def __repr__(self) -> str:
        return (
            f"DatabaseSettings(host={self.host!r}, port={self.port}, "
            f"user={self.user!r}, password='***', name={self.name!r})"
        )


@dataclass(frozen=True)
class BackupConfig:
    """
    Immutable configuration for the backup/restore pipeline.

    Frozen after creation so a running job always sees the settings it
    started with.
    """

    # Master switch for the schedule and the startup retention sweep
    enabled: bool = False

    # Crontab expression (UTC) for scheduled full backups
    schedule_cron: str | None = "0 2 * * *"

    # Backups older than this many days are removed by the sweep
    retention_days: int = 30

    # gzip level for compressed artifacts
    compression_level: int = 6

    # Passphrase for AES-256-GCM artifact encryption; None disables it
    encryption_key: str | None = field(default=None, repr=False)

    storage_mode: StorageMode = StorageMode.LOCAL

    # Storage root: artifacts, metadata/ and journal.db live here
    local_path: Path = field(default_factory=lambda: Path("./backups"))

    # Cold storage (S3-compatible)
    s3_bucket: str | None = None
    s3_region: str = "us-east-1"
    s3_access_key_id: str | None = field(default=None, repr=False)
    s3_secret_access_key: str | None = field(default=None, repr=False)
    s3_prefix: str = "backups/"
    s3_endpoint_url: str | None = None

    database: DatabaseSettings = field(default_factory=DatabaseSettings)

    # Executables invoked for dump and restore
    dump_command: str = "mysqldump"
    restore_command: str = "mysql"

    # How long shutdown waits for an active job before forcing it to fail
    shutdown_timeout_seconds: float = 300.0

    # Finished jobs kept in memory for status queries
    job_history_limit: int = 100

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not isinstance(self.storage_mode, StorageMode):
            errors.append(f"Invalid storage_mode: {self.storage_mode!r}")
        elif self.storage_mode.uses_cold_storage and not self.s3_bucket:
            errors.append(explain_missing_bucket(self.storage_mode.value))

        if self.retention_days < 0:
            errors.append(f"retention_days must be >= 0, got {self.retention_days}")

        if not 1 <= self.compression_level <= 9:
            errors.append(
                f"compression_level must be between 1 and 9, got {self.compression_level}"
            )

        if self.encryption_key is not None and not self.encryption_key.strip():
            errors.append("encryption_key must not be blank when set")

        if self.schedule_cron and not _validate_cron_expression(self.schedule_cron):
            errors.append(
                f"Invalid schedule_cron: {self.schedule_cron!r}, expected a 5-field crontab expression"
            )

        if self.shutdown_timeout_seconds <= 0:
            errors.append(
                f"shutdown_timeout_seconds must be > 0, got {self.shutdown_timeout_seconds}"
            )

        if self.job_history_limit < 1:
            errors.append(f"job_history_limit must be >= 1, got {self.job_history_limit}")

        if not self.database.name:
            errors.append("database name is required")

        if errors:
            from dbvault.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def encryption_enabled(self) -> bool:
        return bool(self.encryption_key)

    @property
    def metadata_path(self) -> Path:
        return self.local_path / "metadata"

    @property
    def journal_path(self) -> Path:
        return self.local_path / "journal.db"

    def with_updates(self, **kwargs) -> "BackupConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new (re-validated) instance.
        """
        return replace(self, **kwargs)

    def redacted(self) -> dict:
        """Configuration summary safe to expose over an admin API."""
        return {
            "enabled": self.enabled,
            "schedule_cron": self.schedule_cron,
            "retention_days": self.retention_days,
            "compression_level": self.compression_level,
            "encryption_enabled": self.encryption_enabled,
            "storage_mode": self.storage_mode.value,
            "local_path": str(self.local_path),
            "s3_bucket": self.s3_bucket,
            "s3_region": self.s3_region,
            "s3_prefix": self.s3_prefix,
            "database_host": self.database.host,
            "database_port": self.database.port,
            "database_name": self.database.name,
            "shutdown_timeout_seconds": self.shutdown_timeout_seconds,
        }
