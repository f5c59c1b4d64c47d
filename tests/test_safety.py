# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Critical Safety Tests for dbvault.

These tests verify the core safety guarantees:
1. Single flight - Only one backup or restore runs at a time
2. Monotonic jobs - Job status never moves backwards
3. Integrity - A modified artifact is NEVER restored
4. Retention gating - Backups inside the window are NEVER deleted
5. Dry-run safety - Dry-run restores NEVER touch the database
6. Failure hygiene - Failed backups NEVER leave metadata behind
7. Graceful shutdown - Shutdown waits, then forces and terminates

These tests MUST pass before any production deployment.
"""

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from dbvault.config import StorageMode
from dbvault.core import SHUTDOWN_SENTINEL
from dbvault.exceptions import (
    ArtifactIOError,
    ConcurrencyError,
    ConfigurationError,
    ConnectivityError,
    IntegrityError,
    NotFoundError,
    ProcessExecutionError,
)
from dbvault.jobs import JobKind, JobRegistry, JobStatus
from dbvault.pipeline.restore import RestoreOptions
from dbvault.storage.artifacts import artifact_path
from dbvault.storage.metadata import BackupMetadata, BackupStatus

from tests.conftest import FIXED_NOW, SAMPLE_DUMP, FakeDatabase, FakeProcessRunner, make_service


def _tree(root: Path) -> set:
    return {str(p.relative_to(root)) for p in root.rglob("*")}


# ============================================================================
# Test 1: SINGLE FLIGHT
# ============================================================================

@pytest.mark.asyncio
async def test_second_backup_rejected_while_backup_running(service, fake_runner):
    """
    CRITICAL: A backup requested while another backup runs must be rejected.
    """
    fake_runner.block()
    first = asyncio.create_task(service.create_backup("full"))
    await fake_runner.started.wait()

    with pytest.raises(ConcurrencyError, match="already running"):
        await service.create_backup("full")

    fake_runner.unblock()
    backup_id = await first
    assert service.get_job_status(backup_id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_restore_rejected_while_backup_running(service, fake_runner):
    fake_runner.block()
    first = asyncio.create_task(service.create_backup("full"))
    await fake_runner.started.wait()

    with pytest.raises(ConcurrencyError):
        await service.restore_backup(RestoreOptions(backup_id="anything", dry_run=True))

    fake_runner.unblock()
    await first


@pytest.mark.asyncio
async def test_backup_and_restore_rejected_while_restore_running(service, fake_runner):
    backup_id = await service.create_backup("full")

    fake_runner.block()
    restore = asyncio.create_task(service.restore_backup(RestoreOptions(backup_id=backup_id)))
    await fake_runner.started.wait()

    with pytest.raises(ConcurrencyError):
        await service.create_backup("full")
    with pytest.raises(ConcurrencyError):
        await service.restore_backup(RestoreOptions(backup_id=backup_id, dry_run=True))

    fake_runner.unblock()
    restore_id = await restore
    assert service.get_job_status(restore_id).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_rejected_request_does_not_create_a_job(service, fake_runner):
    fake_runner.block()
    first = asyncio.create_task(service.create_backup("full"))
    await fake_runner.started.wait()

    with pytest.raises(ConcurrencyError):
        await service.create_backup("full")
    assert len(service.list_jobs()) == 1

    fake_runner.unblock()
    await first


def test_registry_slot_is_released_only_by_its_holder():
    registry = JobRegistry()
    first = registry.try_acquire(JobKind.BACKUP)
    first.start()
    first.complete()
    assert registry.release(first) is True

    second = registry.try_acquire(JobKind.RESTORE)
    # A late release from the previous holder must not free the new slot
    assert registry.release(first) is False
    assert registry.active is second


def test_registry_history_is_bounded_and_keeps_active_job():
    registry = JobRegistry(max_history=3)
    for _ in range(5):
        job = registry.try_acquire(JobKind.BACKUP)
        job.start()
        job.complete()
        registry.release(job)
    active = registry.try_acquire(JobKind.BACKUP)

    jobs = registry.list()
    assert len(jobs) == 3
    assert jobs[0] is active


# ============================================================================
# Test 2: MONOTONIC JOB STATUS
# ============================================================================

@pytest.mark.asyncio
async def test_job_status_never_moves_backwards(service, fake_runner):
    """
    CRITICAL: queued -> running -> completed, with progress never decreasing.
    """
    order = [JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.COMPLETED, JobStatus.FAILED]
    fake_runner.block()
    task = asyncio.create_task(service.create_backup("full"))
    await fake_runner.started.wait()

    job = service.registry.active
    observed = [(job.status, job.progress)]
    fake_runner.unblock()
    while not task.done():
        observed.append((job.status, job.progress))
        await asyncio.sleep(0)
    await task
    observed.append((job.status, job.progress))

    ranks = [min(order.index(status), 2) for status, _ in observed]
    assert ranks == sorted(ranks)
    progress = [p for _, p in observed]
    assert progress == sorted(progress)
    assert observed[-1] == (JobStatus.COMPLETED, 100)


def test_terminal_job_ignores_further_transitions():
    registry = JobRegistry()
    job = registry.try_acquire(JobKind.BACKUP)
    job.start()
    assert job.fail("boom") is True

    assert job.complete() is False
    assert job.fail("again") is False
    job.advance(100)
    job.enter_stage("uploading", 90)

    assert job.status == JobStatus.FAILED
    assert job.error == "boom"
    assert job.stage == "failed"
    assert job.progress == 0


# ============================================================================
# Test 3: INTEGRITY
# ============================================================================

@pytest.mark.asyncio
async def test_unmodified_artifact_restores_with_validation(service, fake_runner):
    backup_id = await service.create_backup("full")

    restore_id = await service.restore_backup(
        RestoreOptions(backup_id=backup_id, validate_integrity=True)
    )

    assert service.get_job_status(restore_id).status == JobStatus.COMPLETED
    assert fake_runner.restore_calls[0]["sql"] == SAMPLE_DUMP


@pytest.mark.asyncio
async def test_single_byte_tamper_raises_integrity_error(service, fake_runner, test_config):
    """
    CRITICAL: Flipping one byte of the stored artifact must stop the restore
    before the database is touched.
    """
    backup_id = await service.create_backup("full")
    path = artifact_path(test_config.local_path, backup_id, compression=True, encryption=True)
    data = bytearray(path.read_bytes())
    data[len(data) // 2] ^= 0x01
    path.write_bytes(bytes(data))

    with pytest.raises(IntegrityError, match="checksum mismatch"):
        await service.restore_backup(RestoreOptions(backup_id=backup_id, validate_integrity=True))

    assert fake_runner.restore_calls == []
    failed = [job for job in service.list_jobs() if job.kind == JobKind.RESTORE][0]
    assert failed.status == JobStatus.FAILED
    assert "checksum mismatch" in failed.error


@pytest.mark.asyncio
async def test_tampered_ciphertext_fails_authentication_without_validation(
    service, fake_runner, test_config
):
    backup_id = await service.create_backup("full")
    path = artifact_path(test_config.local_path, backup_id, compression=True, encryption=True)
    data = bytearray(path.read_bytes())
    data[30] ^= 0xFF
    path.write_bytes(bytes(data))

    with pytest.raises(IntegrityError):
        await service.restore_backup(RestoreOptions(backup_id=backup_id))

    assert fake_runner.restore_calls == []
    assert not (test_config.local_path / ".restore").exists() or not any(
        (test_config.local_path / ".restore").iterdir()
    )


@pytest.mark.asyncio
async def test_wrong_encryption_key_cannot_restore(test_config, temp_dir):
    runner = FakeProcessRunner()
    writer = make_service(test_config, runner=runner)
    await writer.initialize()
    backup_id = await writer.create_backup("full")

    reader = make_service(test_config.with_updates(encryption_key="not the key"), runner=runner)
    await reader.initialize()
    with pytest.raises(IntegrityError):
        await reader.restore_backup(RestoreOptions(backup_id=backup_id))
    assert runner.restore_calls == []


# ============================================================================
# Test 4: RETENTION GATING
# ============================================================================

async def _seed_backup(service, backup_id: str, timestamp, size: int = 100) -> Path:
    path = artifact_path(service.config.local_path, backup_id, compression=True, encryption=False)
    path.write_bytes(b"x" * size)
    await service.store.save(
        BackupMetadata(
            id=backup_id,
            timestamp=timestamp,
            size=size,
            checksum="0" * 64,
            compression=True,
            encryption=False,
            location=StorageMode.LOCAL,
            status=BackupStatus.COMPLETED,
        )
    )
    return path


@pytest.mark.asyncio
async def test_retention_boundary(service):
    """
    CRITICAL: A backup exactly at the cutoff is retained, one millisecond
    older is deleted, one millisecond newer is retained.
    """
    cutoff = FIXED_NOW - timedelta(days=30)
    await _seed_backup(service, "at-cutoff", cutoff)
    older = await _seed_backup(service, "older", cutoff - timedelta(milliseconds=1))
    await _seed_backup(service, "newer", cutoff + timedelta(milliseconds=1))

    result = await service.cleanup_old_backups()

    assert result.deleted_ids == ["older"]
    assert result.bytes_freed == 100
    assert not older.exists()
    remaining = {m.id for m in await service.list_backups()}
    assert remaining == {"at-cutoff", "newer"}


@pytest.mark.asyncio
async def test_retention_sweep_is_idempotent(service):
    await _seed_backup(service, "ancient", FIXED_NOW - timedelta(days=400))

    first = await service.cleanup_old_backups()
    second = await service.cleanup_old_backups()

    assert first.deleted_ids == ["ancient"]
    assert second.deleted_ids == []
    assert second.errors == []


@pytest.mark.asyncio
async def test_retention_dry_run_deletes_nothing(service):
    path = await _seed_backup(service, "ancient", FIXED_NOW - timedelta(days=400))

    result = await service.cleanup_old_backups(dry_run=True)

    assert result.deleted_ids == ["ancient"]
    assert path.exists()
    assert await service.get_backup("ancient") is not None


# ============================================================================
# Test 5: DRY-RUN SAFETY
# ============================================================================

@pytest.mark.asyncio
async def test_dry_run_restore_never_invokes_restore_tool(service, fake_runner):
    """
    CRITICAL: A dry-run restore succeeds without spawning mysql.
    """
    backup_id = await service.create_backup("full")

    restore_id = await service.restore_backup(
        RestoreOptions(backup_id=backup_id, dry_run=True, validate_integrity=True)
    )

    job = service.get_job_status(restore_id)
    assert job.status == JobStatus.COMPLETED
    assert job.backup_id == backup_id
    assert fake_runner.restore_calls == []


# ============================================================================
# Test 6: FAILURE HYGIENE
# ============================================================================

@pytest.mark.asyncio
async def test_connectivity_failure_fails_job_without_artifacts(test_config):
    runner = FakeProcessRunner()
    svc = make_service(test_config, database=FakeDatabase(reachable=False), runner=runner)
    await svc.initialize()
    before = _tree(test_config.local_path)

    with pytest.raises(ConnectivityError, match="Database connection failed"):
        await svc.create_backup("full")

    job = svc.list_jobs()[0]
    assert job.status == JobStatus.FAILED
    assert "Database connection failed" in job.error
    assert job.end_time is not None
    assert runner.dump_calls == []
    assert await svc.list_backups() == []
    assert _tree(test_config.local_path) - before <= {"journal.db"}
    assert svc.registry.active is None


@pytest.mark.asyncio
async def test_intermediate_cleanup_failure_is_an_artifact_io_error(
    service, test_config, monkeypatch
):
    async def compress_and_drop_source(source, destination, level=6):
        destination.write_bytes(b"compressed")
        source.unlink()
        return destination

    monkeypatch.setattr("dbvault.pipeline.backup.compress_file", compress_and_drop_source)

    with pytest.raises(ArtifactIOError, match="Failed to remove"):
        await service.create_backup("full")

    job = service.list_jobs()[0]
    assert job.status == JobStatus.FAILED
    assert await service.list_backups() == []
    assert list(test_config.local_path.glob("*.sql*")) == []
    assert service.registry.active is None


@pytest.mark.asyncio
async def test_storage_root_under_a_file_is_rejected(test_config, temp_dir):
    blocker = temp_dir / "not-a-dir"
    blocker.write_bytes(b"")
    root = blocker / "backups"
    svc = make_service(test_config.with_updates(local_path=root))

    with pytest.raises(ConfigurationError) as exc_info:
        await svc.initialize()

    assert exc_info.value.details["local_path"] == str(root)
    assert blocker.is_file()


@pytest.mark.asyncio
async def test_unwritable_storage_root_is_rejected(test_config, monkeypatch):
    monkeypatch.setattr("dbvault.core.os.access", lambda path, mode: False)
    svc = make_service(test_config)

    with pytest.raises(ConfigurationError, match="not writable") as exc_info:
        await svc.initialize()

    assert exc_info.value.details["local_path"] == str(test_config.local_path)
    assert svc.scheduler is None


@pytest.mark.asyncio
async def test_failed_dump_leaves_no_metadata_and_releases_slot(service, fake_runner, test_config):
    fake_runner.fail_with = ProcessExecutionError("mysqldump failed with exit code 2")

    with pytest.raises(ProcessExecutionError):
        await service.create_backup("full")

    assert await service.list_backups() == []
    assert list(test_config.local_path.glob("*.sql*")) == []
    assert service.registry.active is None

    fake_runner.fail_with = None
    backup_id = await service.create_backup("full")
    assert (await service.get_backup(backup_id)).status == BackupStatus.COMPLETED


@pytest.mark.asyncio
async def test_restore_of_unknown_backup_is_not_found(service, fake_runner):
    with pytest.raises(NotFoundError, match="not found"):
        await service.restore_backup(RestoreOptions(backup_id="nope"))

    assert fake_runner.restore_calls == []
    assert service.registry.active is None


@pytest.mark.asyncio
async def test_restore_with_missing_artifact_is_not_found(service, fake_runner, test_config):
    backup_id = await service.create_backup("full")
    artifact_path(test_config.local_path, backup_id, True, True).unlink()

    with pytest.raises(NotFoundError, match="Backup file not found"):
        await service.restore_backup(RestoreOptions(backup_id=backup_id))
    assert fake_runner.restore_calls == []


@pytest.mark.asyncio
async def test_delete_unknown_backup_is_a_no_op(service, test_config):
    await service.create_backup("full")
    before = {p: p.stat().st_mtime_ns for p in test_config.local_path.rglob("*") if p.is_file()}

    assert await service.delete_backup("nope") is False
    assert await service.delete_backup("../metadata/x") is False

    after = {p: p.stat().st_mtime_ns for p in test_config.local_path.rglob("*") if p.is_file()}
    assert after == before


@pytest.mark.asyncio
async def test_password_never_appears_in_process_arguments(service, fake_runner):
    backup_id = await service.create_backup("full")
    await service.restore_backup(RestoreOptions(backup_id=backup_id))

    for call in fake_runner.dump_calls + fake_runner.restore_calls:
        assert not any("s3cret" in arg for arg in call["args"])
        assert call["env"] == {"MYSQL_PWD": "s3cret"}


# ============================================================================
# Test 7: GRACEFUL SHUTDOWN
# ============================================================================

@pytest.mark.asyncio
async def test_shutdown_waits_for_running_job(test_config):
    runner = FakeProcessRunner()
    svc = make_service(test_config, runner=runner)
    await svc.initialize()

    runner.block()
    backup = asyncio.create_task(svc.create_backup("full"))
    await runner.started.wait()

    shutdown = asyncio.create_task(svc.shutdown())
    await asyncio.sleep(0.05)
    assert not shutdown.done()

    runner.unblock()
    await shutdown
    backup_id = await backup

    job = svc.get_job_status(backup_id)
    assert job.status == JobStatus.COMPLETED
    assert runner.terminated == 0


@pytest.mark.asyncio
async def test_shutdown_timeout_forces_failure_and_terminates_child(test_config):
    """
    CRITICAL: A job that outlives the shutdown timeout is marked failed,
    its slot is released and its child process is terminated.
    """
    runner = FakeProcessRunner()
    svc = make_service(test_config.with_updates(shutdown_timeout_seconds=0.05), runner=runner)
    await svc.initialize()

    runner.block()
    backup = asyncio.create_task(svc.create_backup("full"))
    await runner.started.wait()
    job = svc.registry.active

    await svc.shutdown()

    assert job.status == JobStatus.FAILED
    assert job.error == SHUTDOWN_SENTINEL
    assert svc.registry.active is None
    assert runner.terminated == 1

    with pytest.raises(ProcessExecutionError):
        await backup
    # The late pipeline failure must not overwrite the shutdown reason
    assert job.error == SHUTDOWN_SENTINEL
    assert await svc.list_backups() == []
