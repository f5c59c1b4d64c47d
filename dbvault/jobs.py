# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Job Registry - In-memory job records and the single-flight guard.

Every backup or restore runs as a Job. Only one Job may hold the slot at a
time, process-wide; a second caller is rejected with ConcurrencyError
rather than queued.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Callable, Dict, List

import structlog
from ulid import ULID

from dbvault.exceptions import ConcurrencyError

logger = structlog.get_logger()


class JobKind(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def new_job_id(kind: JobKind) -> str:
    """Time-ordered unique id, e.g. backup-01JAB3XQ5V0000000000000000."""
    return f"{kind.value}-{ULID()}"


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class Job:
    """
    A single backup or restore invocation.

    Status only moves forward: queued -> running -> completed | failed.
    Once terminal, further transitions are ignored.
    """

    id: str
    kind: JobKind
    status: JobStatus = JobStatus.QUEUED
    stage: str = "queued"
    progress: int = 0
    start_time: datetime = field(default_factory=_utc_now)
    end_time: datetime | None = None
    error: str | None = None
    metadata: Any = None  # BackupMetadata on a successful backup
    backup_id: str | None = None  # Backup consumed by a restore

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def start(self) -> None:
        if self.status == JobStatus.QUEUED:
            self.status = JobStatus.RUNNING

    def enter_stage(self, stage: str, progress: float | None = None) -> None:
        if self.is_terminal:
            return
        self.stage = stage
        if progress is not None:
            self.advance(progress)

    def advance(self, progress: float) -> None:
        """Raise progress; it never goes backwards and is capped at 100."""
        if self.is_terminal:
            return
        self.progress = max(self.progress, min(100, int(progress)))

    def complete(self, end_time: datetime | None = None, metadata: Any = None) -> bool:
        if self.is_terminal:
            return False
        self.status = JobStatus.COMPLETED
        self.stage = "completed"
        self.progress = 100
        self.end_time = end_time or _utc_now()
        if metadata is not None:
            self.metadata = metadata
        return True

    def fail(self, error: str, end_time: datetime | None = None) -> bool:
        if self.is_terminal:
            return False
        self.status = JobStatus.FAILED
        self.stage = "failed"
        self.error = error
        self.end_time = end_time or _utc_now()
        return True

    @property
    def duration_ms(self) -> int | None:
        if self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        metadata = self.metadata
        if metadata is not None and hasattr(metadata, "to_dict"):
            metadata = metadata.to_dict()
        return {
            "id": self.id,
            "kind": self.kind.value,
            "status": self.status.value,
            "stage": self.stage,
            "progress": self.progress,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error": self.error,
            "metadata": metadata,
            "backup_id": self.backup_id,
        }


class JobRegistry:
    """
    Table of jobs keyed by id plus a single-slot concurrency guard.

    The slot check-and-set happens under a lock, so two callers can never
    both observe an idle slot.
    """

    def __init__(
        self,
        max_history: int = 100,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._lock = threading.Lock()
        self._jobs: "OrderedDict[str, Job]" = OrderedDict()
        self._active: Job | None = None
        self._max_history = max_history
        self._clock = clock

    @property
    def active(self) -> Job | None:
        return self._active

    def try_acquire(self, kind: JobKind) -> Job:
        """
        Create a job and take the slot for it.

        Raises:
            ConcurrencyError: If another job is still holding the slot
        """
        with self._lock:
            current = self._active
            if current is not None and not current.is_terminal:
                raise ConcurrencyError(
                    "Another backup/restore operation is already running",
                    details={"active_job": current.id, "requested": kind.value},
                )

            job = Job(id=new_job_id(kind), kind=kind, start_time=self._clock())
            self._jobs[job.id] = job
            self._active = job
            self._evict_history()

        logger.debug("job_slot_acquired", job_id=job.id, kind=kind.value)
        return job

    def release(self, job: Job) -> bool:
        """Free the slot if (and only if) this job holds it."""
        with self._lock:
            if self._active is not job:
                return False
            self._active = None

        logger.debug("job_slot_released", job_id=job.id, status=job.status.value)
        return True

    def get(self, job_id: str) -> Job | None:
        return self._jobs.get(job_id)

    def list(self) -> List[Job]:
        """All remembered jobs, newest first."""
        with self._lock:
            return list(reversed(self._jobs.values()))

    def _evict_history(self) -> None:
        # Caller holds the lock. Oldest finished jobs go first; the active
        # job is never evicted.
        while len(self._jobs) > self._max_history:
            for job_id, job in self._jobs.items():
                if job is not self._active:
                    del self._jobs[job_id]
                    break
            else:
                return
