# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Metadata Store - One JSON record per backup.

Records live at {root}/metadata/{backup_id}.json and are the source of
truth for listing, stats, retention and restore. A record is only ever
written for a completed backup.
"""

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import structlog

from dbvault.config import BackupType, StorageMode
from dbvault.exceptions import ArtifactIOError

logger = structlog.get_logger()


class BackupStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class BackupMetadata:
    """Descriptor of one finished backup artifact."""

    id: str
    timestamp: datetime  # Aware UTC; ordering and retention use this
    type: BackupType = BackupType.FULL
    size: int = 0  # Bytes of the final artifact
    checksum: str = ""  # SHA-256 of the final artifact
    compression: bool = True
    encryption: bool = False
    location: StorageMode = StorageMode.LOCAL
    status: BackupStatus = BackupStatus.IN_PROGRESS
    tables: List[str] = field(default_factory=list)
    duration: int | None = None  # Milliseconds
    database: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "size": self.size,
            "checksum": self.checksum,
            "compression": self.compression,
            "encryption": self.encryption,
            "location": self.location.value,
            "status": self.status.value,
            "tables": list(self.tables),
            "duration": self.duration,
            "database": self.database,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupMetadata":
        return cls(
            id=data["id"],
            timestamp=_parse_timestamp(data["timestamp"]),
            type=BackupType(data.get("type", "full")),
            size=int(data.get("size", 0)),
            checksum=data.get("checksum", ""),
            compression=bool(data.get("compression", False)),
            encryption=bool(data.get("encryption", False)),
            location=StorageMode(data.get("location", "local")),
            status=BackupStatus(data.get("status", "completed")),
            tables=list(data.get("tables") or []),
            duration=data.get("duration"),
            database=data.get("database"),
        )


def _is_safe_id(backup_id: str) -> bool:
    if not backup_id or backup_id in (".", ".."):
        return False
    return "/" not in backup_id and "\\" not in backup_id


class MetadataStore:
    """
    Directory of backup metadata records.

    Reads are best effort: an unreadable directory lists as empty and a
    corrupt record is skipped with a warning.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, backup_id: str) -> Path:
        return self.root / f"{backup_id}.json"

    async def save(self, metadata: BackupMetadata) -> Path:
        """
        Write a record atomically (temp file, then rename).

        Raises:
            ArtifactIOError: If the record cannot be written
        """
        if not _is_safe_id(metadata.id):
            raise ArtifactIOError(
                f"Invalid backup id: {metadata.id!r}",
                details={"backup_id": metadata.id},
            )

        path = self._path(metadata.id)
        temp_path = path.with_suffix(".json.tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "w") as f:
                await f.write(json.dumps(metadata.to_dict(), indent=2))
            os.replace(temp_path, path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise ArtifactIOError(
                f"Failed to write metadata for {metadata.id}: {e}",
                details={"backup_id": metadata.id, "path": str(path)},
            ) from e

        logger.debug("metadata_saved", backup_id=metadata.id)
        return path

    async def read(self, backup_id: str) -> BackupMetadata | None:
        """Load one record; None if it is missing, unreadable or malformed."""
        if not _is_safe_id(backup_id):
            return None

        path = self._path(backup_id)
        try:
            async with aiofiles.open(path, "r") as f:
                raw = await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("metadata_read_failed", backup_id=backup_id, error=str(e))
            return None

        try:
            return BackupMetadata.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("metadata_corrupt", backup_id=backup_id, error=str(e))
            return None

    async def list(self, limit: int | None = None) -> List[BackupMetadata]:
        """
        All readable records, newest first.

        Args:
            limit: Keep only the first N after sorting
        """
        try:
            with os.scandir(self.root) as entries:
                names = sorted(
                    entry.name
                    for entry in entries
                    if entry.is_file() and entry.name.endswith(".json")
                )
        except OSError as e:
            if not isinstance(e, FileNotFoundError):
                logger.warning("metadata_dir_unreadable", path=str(self.root), error=str(e))
            return []

        records: List[BackupMetadata] = []
        for name in names:
            record = await self.read(name[: -len(".json")])
            if record is not None:
                records.append(record)

        records.sort(key=lambda m: m.timestamp, reverse=True)
        if limit is not None:
            records = records[: max(limit, 0)]
        return records

    async def delete(self, backup_id: str) -> bool:
        """
        Remove a record.

        Returns:
            True if a record was removed, False if none existed

        Raises:
            ArtifactIOError: If an existing record cannot be removed
        """
        if not _is_safe_id(backup_id):
            return False
        try:
            self._path(backup_id).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise ArtifactIOError(
                f"Failed to delete metadata for {backup_id}: {e}",
                details={"backup_id": backup_id},
            ) from e
        return True
