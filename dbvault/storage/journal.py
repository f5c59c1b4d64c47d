# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Operation Journal - Append-only history of finished jobs.

The in-memory job registry forgets jobs on restart and evicts old ones;
the journal keeps every terminal job in {root}/journal.db so operators
can audit what ran, when, and how it ended.
"""

import json
from pathlib import Path
from typing import List, TypedDict

import aiosqlite
import structlog

from dbvault.exceptions import ArtifactIOError
from dbvault.jobs import Job

logger = structlog.get_logger()


class JobRecord(TypedDict):
    """Journal row for a finished job."""

    id: str
    kind: str  # backup, restore
    status: str  # completed, failed
    stage: str
    start_time: str  # ISO 8601
    end_time: str | None  # ISO 8601
    duration_ms: int | None
    error: str | None
    backup_id: str | None
    metadata: dict | None


async def init_journal_db(db_path: Path) -> None:
    """
    Initialize the journal schema. Idempotent.

    Raises:
        ArtifactIOError: If the database cannot be created
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT,
                    duration_ms INTEGER,
                    error TEXT,
                    backup_id TEXT,
                    metadata TEXT
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_start_time
                ON jobs(start_time)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_kind
                ON jobs(kind)
            """)

            await db.commit()

        logger.info("journal_db_initialized", db_path=str(db_path))

    except (aiosqlite.Error, OSError) as e:
        raise ArtifactIOError(
            f"Failed to initialize journal database: {e}",
            details={"db_path": str(db_path)},
        ) from e


async def record_job(db_path: Path, job: Job) -> bool:
    """
    Insert or update the journal row for a job.

    Journal writes never fail a pipeline: errors are logged and
    False is returned.
    """
    data = job.to_dict()
    metadata = data["metadata"]

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute(
                """
                INSERT INTO jobs
                (id, kind, status, stage, start_time, end_time, duration_ms,
                 error, backup_id, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    stage = excluded.stage,
                    end_time = excluded.end_time,
                    duration_ms = excluded.duration_ms,
                    error = excluded.error,
                    metadata = excluded.metadata
                """,
                (
                    data["id"],
                    data["kind"],
                    data["status"],
                    data["stage"],
                    data["start_time"],
                    data["end_time"],
                    job.duration_ms,
                    data["error"],
                    data["backup_id"],
                    json.dumps(metadata) if metadata is not None else None,
                ),
            )
            await db.commit()
    except (aiosqlite.Error, OSError) as e:
        logger.warning("journal_write_failed", job_id=job.id, error=str(e))
        return False

    logger.debug("job_journaled", job_id=job.id, status=data["status"])
    return True


def _row_to_record(row) -> JobRecord:
    return JobRecord(
        id=row[0],
        kind=row[1],
        status=row[2],
        stage=row[3],
        start_time=row[4],
        end_time=row[5],
        duration_ms=row[6],
        error=row[7],
        backup_id=row[8],
        metadata=json.loads(row[9]) if row[9] else None,
    )


async def list_job_history(
    db_path: Path,
    limit: int = 50,
    offset: int = 0,
    kind: str | None = None,
) -> List[JobRecord]:
    """
    List journaled jobs, newest first.

    Args:
        db_path: Journal database path
        limit: Maximum number of records to return
        offset: Number of records to skip
        kind: Optional filter (backup, restore)
    """
    if not db_path.exists():
        return []

    query = """
        SELECT id, kind, status, stage, start_time, end_time, duration_ms,
               error, backup_id, metadata
        FROM jobs
    """
    params: List = []

    if kind:
        query += " WHERE kind = ?"
        params.append(kind)

    query += " ORDER BY start_time DESC, id DESC LIMIT ? OFFSET ?"
    params.extend([limit, offset])

    records: List[JobRecord] = []
    try:
        async with aiosqlite.connect(db_path) as db:
            async with db.execute(query, params) as cursor:
                async for row in cursor:
                    records.append(_row_to_record(row))
    except aiosqlite.Error as e:
        logger.warning("journal_read_failed", error=str(e))
        return []

    return records


async def get_journal_stats(db_path: Path) -> dict:
    """Counts of journaled jobs, overall and by kind/status."""
    stats = {"total_jobs": 0, "jobs_by_kind": {}, "jobs_by_status": {}}
    if not db_path.exists():
        return stats

    try:
        async with aiosqlite.connect(db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM jobs") as cursor:
                row = await cursor.fetchone()
                stats["total_jobs"] = row[0] if row else 0

            async with db.execute(
                "SELECT kind, COUNT(*) FROM jobs GROUP BY kind"
            ) as cursor:
                stats["jobs_by_kind"] = {row[0]: row[1] async for row in cursor}

            async with db.execute(
                "SELECT status, COUNT(*) FROM jobs GROUP BY status"
            ) as cursor:
                stats["jobs_by_status"] = {row[0]: row[1] async for row in cursor}
    except aiosqlite.Error as e:
        logger.warning("journal_read_failed", error=str(e))

    return stats
