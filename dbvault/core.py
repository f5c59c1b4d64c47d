# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Core - The BackupService facade.

BackupService wires the collaborators together (database probe, process
runner, metadata store, cold storage, job registry, journal, scheduler)
and owns the job lifecycle around each pipeline run:

    acquire slot -> run pipeline -> complete | fail -> release -> journal

Collaborators are injected so tests can substitute fakes; defaults are
built from the BackupConfig.
"""

import asyncio
import os
import time
from datetime import datetime, UTC
from typing import Any, Callable, List

import structlog

from dbvault.config import BackupConfig, BackupType
from dbvault.database import DatabaseProbe, MySQLDatabase
from dbvault.errors import explain_unusable_storage_root
from dbvault.exceptions import ConfigurationError, DBVaultError
from dbvault.jobs import Job, JobKind, JobRegistry
from dbvault.pipeline.backup import BackupOptions, run_backup
from dbvault.pipeline.context import PipelineContext
from dbvault.pipeline.process import ProcessRunner
from dbvault.pipeline.restore import RestoreOptions, run_restore
from dbvault.retention import RetentionResult, remove_backup, sweep_expired_backups
from dbvault.schedule import create_backup_scheduler
from dbvault.stats import BackupStats, summarize_backups
from dbvault.storage.cold import StorageAdapter, create_storage_adapter
from dbvault.storage.journal import (
    JobRecord,
    get_journal_stats,
    init_journal_db,
    list_job_history,
    record_job,
)
from dbvault.storage.metadata import BackupMetadata, MetadataStore

logger = structlog.get_logger()

SHUTDOWN_SENTINEL = "Interrupted by shutdown"

_UNSET: Any = object()


def _utc_now() -> datetime:
    return datetime.now(UTC)


class BackupService:
    """
    Backup/restore service for one MySQL database.

    Example:
        service = BackupService(create_config_from_env())
        await service.initialize()
        backup_id = await service.create_backup("full")
        await service.shutdown()
    """

    def __init__(
        self,
        config: BackupConfig,
        database: DatabaseProbe | None = None,
        runner: ProcessRunner | None = None,
        storage: StorageAdapter | None = _UNSET,
        clock: Callable[[], datetime] = _utc_now,
        poll_interval: float = 1.0,
    ) -> None:
        self.config = config
        self.database = database or MySQLDatabase(config.database)
        self.runner = runner or ProcessRunner()
        self.storage = create_storage_adapter(config) if storage is _UNSET else storage
        self.clock = clock
        self.poll_interval = poll_interval

        self.store = MetadataStore(config.metadata_path)
        self.registry = JobRegistry(max_history=config.job_history_limit, clock=clock)
        self.scheduler = None
        self._initialized = False

    def _context(self) -> PipelineContext:
        return PipelineContext(
            config=self.config,
            database=self.database,
            runner=self.runner,
            store=self.store,
            storage=self.storage,
            clock=self.clock,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """
        Prepare the storage root and journal; when enabled, start the
        schedule and run a startup retention sweep. Idempotent.

        Raises:
            ConfigurationError: If the storage root cannot be created or written
        """
        if self._initialized:
            return

        root = self.config.local_path
        try:
            root.mkdir(parents=True, exist_ok=True)
            self.config.metadata_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                explain_unusable_storage_root(str(root), str(e)),
                details={"local_path": str(root)},
            ) from e

        if not os.access(root, os.W_OK) or not os.access(self.config.metadata_path, os.W_OK):
            raise ConfigurationError(
                explain_unusable_storage_root(str(root), "directory is not writable"),
                details={"local_path": str(root)},
            )

        try:
            await init_journal_db(self.config.journal_path)
        except DBVaultError as e:
            logger.warning("journal_unavailable", error=e.message)

        if self.config.enabled:
            if self.config.schedule_cron:
                self.scheduler = create_backup_scheduler(self)
                self.scheduler.start()
                logger.info("backup_schedule_started", schedule=self.config.schedule_cron)
            await self.cleanup_old_backups()

        self._initialized = True
        logger.info(
            "backup_service_initialized",
            enabled=self.config.enabled,
            storage_mode=self.config.storage_mode.value,
            local_path=str(root),
            retention_days=self.config.retention_days,
            encryption=self.config.encryption_enabled,
        )

    async def shutdown(self) -> None:
        """
        Stop the schedule and wait for the active job.

        If the job is still running after shutdown_timeout_seconds, it is
        marked failed, its slot is released and its child process is
        terminated.
        """
        logger.info("backup_service_stopping")

        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None

        job = self.registry.active
        if job is not None and not job.is_terminal:
            logger.info("waiting_for_active_job", job_id=job.id)
            deadline = time.monotonic() + self.config.shutdown_timeout_seconds
            while not job.is_terminal and time.monotonic() < deadline:
                await asyncio.sleep(self.poll_interval)

            if not job.is_terminal:
                logger.warning("job_force_stopped", job_id=job.id, stage=job.stage)
                job.fail(SHUTDOWN_SENTINEL, end_time=self.clock())
                self.registry.release(job)
                terminated = self.runner.terminate_active()
                logger.warning("job_processes_terminated", job_id=job.id, count=terminated)
                await record_job(self.config.journal_path, job)

        self._initialized = False
        logger.info("backup_service_stopped")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def _finish(self, job: Job, error: DBVaultError | None = None, metadata: Any = None) -> None:
        if error is None:
            job.complete(end_time=self.clock(), metadata=metadata)
        else:
            job.fail(error.message, end_time=self.clock())
        self.registry.release(job)
        await record_job(self.config.journal_path, job)

    async def create_backup(
        self,
        backup_type: BackupType | str = BackupType.FULL,
        options: BackupOptions | None = None,
    ) -> str:
        """
        Run a backup to completion.

        Returns:
            The backup id (also the job id)

        Raises:
            ConcurrencyError: If another backup or restore is running
            DBVaultError: Any pipeline failure; the job is marked failed
        """
        backup_type = BackupType(backup_type)
        job = self.registry.try_acquire(JobKind.BACKUP)

        try:
            metadata = await run_backup(self._context(), job, backup_type, options)
        except DBVaultError as e:
            logger.error("backup_failed", job_id=job.id, stage=job.stage, error=e.message)
            await self._finish(job, error=e)
            raise
        except BaseException as e:
            await self._finish(job, error=DBVaultError(str(e) or type(e).__name__))
            raise

        await self._finish(job, metadata=metadata)
        return job.id

    async def restore_backup(self, options: RestoreOptions) -> str:
        """
        Restore (or dry-run) a backup.

        Returns:
            The restore job id

        Raises:
            ConcurrencyError: If another backup or restore is running
            NotFoundError: If the backup or its artifact is missing
            IntegrityError: If validation or decryption fails
        """
        job = self.registry.try_acquire(JobKind.RESTORE)

        try:
            await run_restore(self._context(), job, options)
        except DBVaultError as e:
            logger.error(
                "restore_failed",
                job_id=job.id,
                backup_id=options.backup_id,
                stage=job.stage,
                error=e.message,
            )
            await self._finish(job, error=e)
            raise
        except BaseException as e:
            await self._finish(job, error=DBVaultError(str(e) or type(e).__name__))
            raise

        await self._finish(job)
        return job.id

    def get_job_status(self, job_id: str) -> Job | None:
        return self.registry.get(job_id)

    def list_jobs(self) -> List[Job]:
        return self.registry.list()

    async def list_job_history(
        self, limit: int = 50, offset: int = 0, kind: str | None = None
    ) -> List[JobRecord]:
        return await list_job_history(self.config.journal_path, limit, offset, kind)

    async def get_journal_stats(self) -> dict:
        return await get_journal_stats(self.config.journal_path)

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def list_backups(self, limit: int | None = None) -> List[BackupMetadata]:
        return await self.store.list(limit)

    async def get_backup(self, backup_id: str) -> BackupMetadata | None:
        return await self.store.read(backup_id)

    async def delete_backup(self, backup_id: str) -> bool:
        """
        Delete a backup everywhere.

        Returns:
            False if the backup is unknown or removal failed (the metadata
            record is kept so the delete can be retried)
        """
        metadata = await self.store.read(backup_id)
        if metadata is None:
            return False

        try:
            await remove_backup(metadata, self.config.local_path, self.store, self.storage)
        except DBVaultError as e:
            logger.error("backup_delete_failed", backup_id=backup_id, error=e.message)
            return False
        return True

    async def get_backup_stats(self) -> BackupStats:
        return summarize_backups(await self.store.list())

    async def cleanup_old_backups(self, dry_run: bool = False) -> RetentionResult:
        return await sweep_expired_backups(
            self.config.local_path,
            self.store,
            self.storage,
            now=self.clock(),
            retention_days=self.config.retention_days,
            dry_run=dry_run,
        )
