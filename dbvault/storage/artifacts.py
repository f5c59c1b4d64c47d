# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Artifact naming for backup files.

A backup with id X is stored as {root}/X.sql, with .gz appended when
compressed and .enc appended when encrypted (in that order). The remote
copy uses the same file name under the configured key prefix.
"""

from pathlib import Path
from typing import List

import structlog

from dbvault.exceptions import ArtifactIOError

logger = structlog.get_logger()

SQL_SUFFIX = ".sql"
GZIP_SUFFIX = ".gz"
ENCRYPTED_SUFFIX = ".enc"


def artifact_name(backup_id: str, compression: bool, encryption: bool) -> str:
    """File name of the final artifact, e.g. backup-01J....sql.gz.enc."""
    name = f"{backup_id}{SQL_SUFFIX}"
    if compression:
        name += GZIP_SUFFIX
    if encryption:
        name += ENCRYPTED_SUFFIX
    return name


def artifact_path(root: Path, backup_id: str, compression: bool, encryption: bool) -> Path:
    return root / artifact_name(backup_id, compression, encryption)


def artifact_variants(root: Path, backup_id: str) -> List[Path]:
    """Every path a backup (or a half-finished one) can occupy locally."""
    return [
        artifact_path(root, backup_id, compression, encryption)
        for compression in (False, True)
        for encryption in (False, True)
    ]


def remote_key(prefix: str, name: str) -> str:
    return f"{prefix}{name}"


def purge_artifacts(root: Path, backup_id: str) -> int:
    """
    Delete all local variants of a backup.

    Missing files are skipped.

    Returns:
        Bytes freed

    Raises:
        ArtifactIOError: If an existing file cannot be removed
    """
    freed = 0
    for path in artifact_variants(root, backup_id):
        try:
            size = path.stat().st_size
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            raise ArtifactIOError(
                f"Failed to delete {path}: {e}",
                details={"backup_id": backup_id, "path": str(path)},
            ) from e
        freed += size
        logger.debug("artifact_deleted", path=str(path), size=size)
    return freed
