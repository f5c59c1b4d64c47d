# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup statistics over the metadata store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable

from dbvault.storage.metadata import BackupMetadata

_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_bytes(size: int | float) -> str:
    """Human readable size in base-1024 units, e.g. 1536 -> '1.50 KB'."""
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.2f} {_UNITS[unit]}"


@dataclass
class BackupStats:
    total_backups: int
    total_size: str  # Formatted
    total_bytes: int
    oldest_backup: datetime | None
    newest_backup: datetime | None
    counts_by_location: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "total_backups": self.total_backups,
            "total_size": self.total_size,
            "total_bytes": self.total_bytes,
            "oldest_backup": self.oldest_backup.isoformat() if self.oldest_backup else None,
            "newest_backup": self.newest_backup.isoformat() if self.newest_backup else None,
            "counts_by_location": dict(self.counts_by_location),
        }


def summarize_backups(backups: Iterable[BackupMetadata]) -> BackupStats:
    records = list(backups)
    total_bytes = sum(record.size for record in records)

    counts: Dict[str, int] = {}
    for record in records:
        counts[record.location.value] = counts.get(record.location.value, 0) + 1

    timestamps = [record.timestamp for record in records]
    return BackupStats(
        total_backups=len(records),
        total_size=format_bytes(total_bytes),
        total_bytes=total_bytes,
        oldest_backup=min(timestamps) if timestamps else None,
        newest_backup=max(timestamps) if timestamps else None,
        counts_by_location=counts,
    )
