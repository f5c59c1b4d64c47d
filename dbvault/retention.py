# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Retention - Retire expired backups.

A backup is expired when its timestamp is strictly older than
now - retention_days. A backup exactly at the cutoff is kept.

Removal order for one backup: remote copy, local files, then the
metadata record. The record goes last so a partial failure leaves
something for the next sweep to retry.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import List

import structlog

from dbvault.exceptions import DBVaultError
from dbvault.storage.artifacts import artifact_name, purge_artifacts
from dbvault.storage.cold import StorageAdapter
from dbvault.storage.metadata import BackupMetadata, MetadataStore

logger = structlog.get_logger()


@dataclass
class RetentionResult:
    """Outcome of a retention sweep."""

    deleted_ids: List[str] = field(default_factory=list)
    bytes_freed: int = 0
    errors: List[str] = field(default_factory=list)
    dry_run: bool = False

    @property
    def deleted_count(self) -> int:
        return len(self.deleted_ids)


def retention_cutoff(now: datetime, retention_days: int) -> datetime:
    return now - timedelta(days=retention_days)


def is_expired(metadata: BackupMetadata, cutoff: datetime) -> bool:
    return metadata.timestamp < cutoff


async def remove_backup(
    metadata: BackupMetadata,
    root: Path,
    store: MetadataStore,
    storage: StorageAdapter | None,
) -> int:
    """
    Remove every trace of one backup.

    Returns:
        Local bytes freed

    Raises:
        DBVaultError: If any step fails; the metadata record is left in place
    """
    if metadata.location.uses_cold_storage:
        if storage is None:
            raise DBVaultError(
                f"Backup {metadata.id} is in cold storage but no storage adapter is configured",
                details={"backup_id": metadata.id},
            )
        await storage.delete(artifact_name(metadata.id, metadata.compression, metadata.encryption))

    freed = purge_artifacts(root, metadata.id)
    await store.delete(metadata.id)

    logger.info("backup_removed", backup_id=metadata.id, bytes_freed=freed)
    return freed


async def sweep_expired_backups(
    root: Path,
    store: MetadataStore,
    storage: StorageAdapter | None,
    now: datetime,
    retention_days: int,
    dry_run: bool = False,
) -> RetentionResult:
    """
    Remove all backups older than the retention window.

    Errors on individual backups are collected, not raised, so one bad
    artifact never blocks the rest of the sweep.
    """
    cutoff = retention_cutoff(now, retention_days)
    result = RetentionResult(dry_run=dry_run)

    for metadata in await store.list():
        if not is_expired(metadata, cutoff):
            continue

        if dry_run:
            result.deleted_ids.append(metadata.id)
            result.bytes_freed += metadata.size
            continue

        try:
            result.bytes_freed += await remove_backup(metadata, root, store, storage)
            result.deleted_ids.append(metadata.id)
        except DBVaultError as e:
            result.errors.append(f"{metadata.id}: {e.message}")
            logger.error("backup_removal_failed", backup_id=metadata.id, error=e.message)

    logger.info(
        "retention_sweep_complete",
        cutoff=cutoff.isoformat(),
        deleted=result.deleted_count,
        bytes_freed=result.bytes_freed,
        errors=len(result.errors),
        dry_run=dry_run,
    )
    return result
