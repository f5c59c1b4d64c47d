# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Restore Pipeline - Fetch, verify, reverse transforms, load.

Stages (progress):
    resolving-metadata (10) -> preparing-artifact (30) -> validating (50)
    -> dry-run | restoring (50-100) -> completed

Intermediate files go to {root}/.restore/{restore_id}/ and are removed
when the restore ends. The artifact itself is never deleted here.
"""

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List

import structlog

from dbvault.config import BackupConfig
from dbvault.exceptions import ArtifactIOError, IntegrityError, NotFoundError, StorageError
from dbvault.jobs import Job
from dbvault.pipeline.context import PipelineContext, connection_args, mysql_client_env
from dbvault.pipeline.transforms import (
    decompress_file,
    decrypt_file,
    file_checksum,
    filter_dump_tables,
)
from dbvault.storage.artifacts import artifact_path
from dbvault.storage.metadata import BackupMetadata

logger = structlog.get_logger()

SCRATCH_DIR_NAME = ".restore"


@dataclass
class RestoreOptions:
    """Per-call restore options."""

    backup_id: str
    dry_run: bool = False
    validate_integrity: bool = False
    target_database: str | None = None  # Defaults to the configured database
    tables: List[str] | None = None  # Restore only these tables' sections


def build_restore_command(config: BackupConfig, target_database: str) -> List[str]:
    return [
        config.restore_command,
        *connection_args(config.database),
        target_database,
    ]


def restore_progress(fraction: float) -> float:
    return 50 + 50 * fraction


async def _resolve_metadata(ctx: PipelineContext, backup_id: str) -> BackupMetadata:
    metadata = await ctx.store.read(backup_id)
    if metadata is None:
        raise NotFoundError(
            f"Backup {backup_id} not found",
            details={"backup_id": backup_id},
        )
    return metadata


async def _prepare_artifact(ctx: PipelineContext, metadata: BackupMetadata) -> Path:
    path = artifact_path(ctx.root, metadata.id, metadata.compression, metadata.encryption)
    if path.exists():
        return path

    if metadata.location.uses_cold_storage and ctx.storage is not None:
        ctx.root.mkdir(parents=True, exist_ok=True)
        try:
            await ctx.storage.download(path.name, path)
        except StorageError as e:
            if not e.details.get("not_found"):
                raise
            logger.warning("restore_remote_artifact_missing", backup_id=metadata.id)

    if not path.exists():
        raise NotFoundError(
            f"Backup file not found: {path}",
            details={"backup_id": metadata.id, "path": str(path)},
        )
    return path


async def _validate(metadata: BackupMetadata, artifact: Path) -> None:
    actual = await file_checksum(artifact)
    if actual != metadata.checksum:
        logger.error(
            "restore_integrity_mismatch",
            backup_id=metadata.id,
            expected=metadata.checksum,
            actual=actual,
        )
        raise IntegrityError(
            f"Backup integrity check failed: checksum mismatch for {metadata.id}",
            details={"backup_id": metadata.id, "expected": metadata.checksum, "actual": actual},
        )


async def _reverse_transforms(
    metadata: BackupMetadata,
    artifact: Path,
    scratch: Path,
    options: RestoreOptions,
    passphrase: str | None,
    job: Job,
) -> Path:
    current = artifact

    if metadata.encryption:
        if not passphrase:
            raise IntegrityError(
                f"Backup {metadata.id} is encrypted but no encryption key is configured",
                details={"backup_id": metadata.id},
            )
        # X.sql.gz.enc -> X.sql.gz
        current = await decrypt_file(current, scratch / current.stem, passphrase)
    job.advance(restore_progress(0.2))

    if metadata.compression:
        current = await decompress_file(current, scratch / f"{metadata.id}.sql")
    job.advance(restore_progress(0.4))

    if options.tables:
        current = await filter_dump_tables(
            current, scratch / f"{metadata.id}.filtered.sql", options.tables
        )

    return current


async def run_restore(ctx: PipelineContext, job: Job, options: RestoreOptions) -> None:
    """
    Restore a backup into the target database (or just check it, in dry-run).

    Raises:
        NotFoundError: If the metadata record or artifact is missing
        IntegrityError: If checksum or decryption authentication fails
        ProcessExecutionError: If the restore tool fails
    """
    config = ctx.config
    job.backup_id = options.backup_id
    job.start()
    logger.info(
        "restore_started",
        job_id=job.id,
        backup_id=options.backup_id,
        dry_run=options.dry_run,
    )

    job.enter_stage("resolving-metadata", 10)
    metadata = await _resolve_metadata(ctx, options.backup_id)

    job.enter_stage("preparing-artifact")
    artifact = await _prepare_artifact(ctx, metadata)
    job.advance(30)

    if options.validate_integrity:
        job.enter_stage("validating")
        await _validate(metadata, artifact)
    job.advance(50)

    if options.dry_run:
        job.enter_stage("dry-run")
        logger.info("restore_dry_run_complete", job_id=job.id, backup_id=metadata.id)
        return

    job.enter_stage("restoring")
    scratch = ctx.root / SCRATCH_DIR_NAME / job.id
    try:
        scratch.mkdir(parents=True, exist_ok=True)
        sql_path = await _reverse_transforms(
            metadata, artifact, scratch, options, config.encryption_key, job
        )

        total = max(sql_path.stat().st_size, 1)
        target = options.target_database or config.database.name
        await ctx.runner.run_from_file(
            build_restore_command(config, target),
            sql_path,
            env=mysql_client_env(config.database),
            on_progress=lambda n: job.advance(restore_progress(0.6 + 0.35 * min(1.0, n / total))),
        )
    except OSError as e:
        raise ArtifactIOError(
            f"Restore scratch I/O failed: {e}",
            details={"backup_id": metadata.id, "scratch": str(scratch)},
        ) from e
    finally:
        shutil.rmtree(scratch, ignore_errors=True)

    logger.info(
        "restore_completed",
        job_id=job.id,
        backup_id=metadata.id,
        target_database=options.target_database or config.database.name,
    )
