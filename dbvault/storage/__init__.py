# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup storage - artifacts, metadata records, job journal and cold storage.
"""

from dbvault.storage.metadata import (
    BackupMetadata,
    BackupStatus,
    MetadataStore,
)

from dbvault.storage.journal import (
    init_journal_db,
    record_job,
    list_job_history,
    get_journal_stats,
    JobRecord,
)

from dbvault.storage.cold import (
    StorageAdapter,
    S3Storage,
    DirectoryStorage,
    create_storage_adapter,
)

__all__ = [
    # Metadata
    "BackupMetadata",
    "BackupStatus",
    "MetadataStore",
    # Journal
    "init_journal_db",
    "record_job",
    "list_job_history",
    "get_journal_stats",
    "JobRecord",
    # Cold storage
    "StorageAdapter",
    "S3Storage",
    "DirectoryStorage",
    "create_storage_adapter",
]
