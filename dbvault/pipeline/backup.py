# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Backup Pipeline - Dump, transform, upload, record.

Stages (progress):
    verifying-connectivity (10) -> listing-tables (20) -> dumping (30-80)
    -> transforming (90) -> uploading -> persisting-metadata -> completed

The caller owns the job slot; this module only drives the stages and
cleans up its own partial artifacts when a stage fails.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

import structlog

from dbvault.config import BackupConfig, BackupType, StorageMode
from dbvault.exceptions import ArtifactIOError, ConnectivityError, DBVaultError, StorageError
from dbvault.jobs import Job
from dbvault.pipeline.context import PipelineContext, connection_args, mysql_client_env
from dbvault.pipeline.transforms import compress_file, encrypt_file, file_checksum
from dbvault.storage.artifacts import artifact_path, purge_artifacts
from dbvault.storage.metadata import BackupMetadata, BackupStatus

logger = structlog.get_logger()

# Dump progress runs 30 -> 80, estimated against this many bytes
DUMP_PROGRESS_BYTES = 10 * 1024 * 1024


@dataclass
class BackupOptions:
    """Per-call backup options."""

    tables: List[str] | None = None  # None = every base table
    compress: bool = True


def build_dump_command(config: BackupConfig, tables: Sequence[str]) -> List[str]:
    return [
        config.dump_command,
        *connection_args(config.database),
        "--single-transaction",
        "--routines",
        "--triggers",
        "--events",
        "--create-options",
        "--extended-insert",
        "--hex-blob",
        "--default-character-set=utf8mb4",
        config.database.name,
        *tables,
    ]


def dump_progress(bytes_written: int) -> float:
    return 30 + 50 * min(0.9, bytes_written / DUMP_PROGRESS_BYTES)


async def _dump(ctx: PipelineContext, job: Job, tables: Sequence[str], dump_path: Path) -> int:
    job.enter_stage("dumping", 30)
    written = await ctx.runner.run_to_file(
        build_dump_command(ctx.config, tables),
        dump_path,
        env=mysql_client_env(ctx.config.database),
        on_progress=lambda n: job.advance(dump_progress(n)),
    )
    job.advance(80)
    logger.info("backup_dump_complete", job_id=job.id, bytes=written)
    return written


def _remove_intermediate(path: Path) -> None:
    try:
        path.unlink()
    except OSError as e:
        raise ArtifactIOError(
            f"Failed to remove {path.name}: {e}",
            details={"path": str(path)},
        ) from e


async def _transform(ctx: PipelineContext, job: Job, dump_path: Path, compress: bool) -> Path:
    job.enter_stage("transforming")
    current = dump_path

    if compress:
        compressed = Path(f"{current}.gz")
        await compress_file(current, compressed, ctx.config.compression_level)
        _remove_intermediate(current)
        current = compressed

    if ctx.config.encryption_enabled:
        encrypted = Path(f"{current}.enc")
        await encrypt_file(current, encrypted, ctx.config.encryption_key)
        _remove_intermediate(current)
        current = encrypted

    job.advance(90)
    return current


async def _upload(ctx: PipelineContext, job: Job, artifact: Path) -> bool:
    mode = ctx.config.storage_mode
    if not mode.uses_cold_storage:
        return False

    job.enter_stage("uploading")
    if ctx.storage is None:
        raise StorageError(
            f"Storage mode {mode.value!r} needs a cold storage adapter",
            details={"storage_mode": mode.value},
        )
    await ctx.storage.upload(artifact, artifact.name)

    if mode == StorageMode.S3:
        _remove_intermediate(artifact)
        logger.debug("local_artifact_removed_after_upload", path=str(artifact))
    return True


async def _discard_partial(ctx: PipelineContext, backup_id: str, remote_name: str | None) -> None:
    try:
        purge_artifacts(ctx.root, backup_id)
    except DBVaultError as e:
        logger.warning("partial_artifact_cleanup_failed", backup_id=backup_id, error=e.message)

    if remote_name and ctx.storage is not None:
        try:
            await ctx.storage.delete(remote_name)
        except DBVaultError as e:
            logger.warning("partial_remote_cleanup_failed", backup_id=backup_id, error=e.message)


async def run_backup(
    ctx: PipelineContext,
    job: Job,
    backup_type: BackupType = BackupType.FULL,
    options: BackupOptions | None = None,
) -> BackupMetadata:
    """
    Produce one backup artifact for job and persist its metadata.

    The backup id is the job id. On failure the partial local (and
    remote) artifacts of this backup are removed and the error re-raised;
    no metadata is written.

    Raises:
        ConnectivityError: If the database does not answer
        ProcessExecutionError: If the dump tool fails
        ArtifactIOError: If a transform, upload or metadata write fails
    """
    options = options or BackupOptions()
    config = ctx.config
    backup_id = job.id
    remote_name: str | None = None

    job.start()
    logger.info("backup_started", job_id=backup_id, type=backup_type.value)

    try:
        job.enter_stage("verifying-connectivity", 10)
        if not await ctx.database.ping():
            raise ConnectivityError(
                "Database connection failed",
                details={"host": config.database.host, "port": config.database.port},
            )

        job.enter_stage("listing-tables")
        tables = list(options.tables) if options.tables else await ctx.database.list_tables()
        job.advance(20)

        metadata = BackupMetadata(
            id=backup_id,
            timestamp=job.start_time,
            type=backup_type,
            compression=options.compress,
            encryption=config.encryption_enabled,
            location=config.storage_mode,
            status=BackupStatus.IN_PROGRESS,
            tables=tables,
            database=config.database.name,
        )
        job.advance(30)

        ctx.root.mkdir(parents=True, exist_ok=True)
        dump_path = artifact_path(ctx.root, backup_id, compression=False, encryption=False)
        await _dump(ctx, job, tables, dump_path)

        artifact = await _transform(ctx, job, dump_path, options.compress)
        metadata.checksum = await file_checksum(artifact)
        metadata.size = artifact.stat().st_size

        if await _upload(ctx, job, artifact):
            remote_name = artifact.name

        job.enter_stage("persisting-metadata")
        if job.is_terminal:
            # Force-failed while running (shutdown timeout)
            raise DBVaultError(
                job.error or "Backup job was terminated",
                details={"backup_id": backup_id},
            )

        end_time = ctx.clock()
        metadata.status = BackupStatus.COMPLETED
        metadata.duration = int((end_time - job.start_time).total_seconds() * 1000)
        await ctx.store.save(metadata)

    except OSError as e:
        await _discard_partial(ctx, backup_id, remote_name)
        raise ArtifactIOError(
            f"Backup artifact I/O failed: {e}",
            details={"backup_id": backup_id, "path": getattr(e, "filename", None)},
        ) from e
    except Exception:
        await _discard_partial(ctx, backup_id, remote_name)
        raise

    logger.info(
        "backup_completed",
        job_id=backup_id,
        size=metadata.size,
        location=metadata.location.value,
        tables=len(metadata.tables),
        duration_ms=metadata.duration,
    )
    return metadata
