# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault - Backup and restore orchestration for MySQL.

Produces point-in-time logical dumps, compresses, encrypts and checksums
them, ships them to local and/or S3 storage, restores them on demand and
retires them after a retention window. One backup or restore runs at a
time, process-wide.
"""

__version__ = "0.1.0"

# Configuration
from dbvault.config import BackupConfig, BackupType, DatabaseSettings, StorageMode
from dbvault.env import create_config_from_env, parse_mysql_url

# Service facade
from dbvault.core import BackupService
from dbvault.jobs import Job, JobKind, JobStatus
from dbvault.pipeline.backup import BackupOptions
from dbvault.pipeline.restore import RestoreOptions
from dbvault.stats import BackupStats, format_bytes
from dbvault.storage.metadata import BackupMetadata

__all__ = [
    # Version
    "__version__",
    # Configuration
    "BackupConfig",
    "BackupType",
    "DatabaseSettings",
    "StorageMode",
    "create_config_from_env",
    "parse_mysql_url",
    # Service
    "BackupService",
    "BackupOptions",
    "RestoreOptions",
    # Records
    "BackupMetadata",
    "BackupStats",
    "Job",
    "JobKind",
    "JobStatus",
    "format_bytes",
]
