# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault FastAPI Integration - Admin endpoints for FastAPI applications.

This module provides:
- Protected admin endpoints for backups, restores, jobs and stats
- Lifespan management (initialize on startup, graceful shutdown)
- Health check
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import List

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from dbvault.config import BackupConfig, BackupType
from dbvault.core import BackupService
from dbvault.exceptions import (
    ConcurrencyError,
    ConnectivityError,
    DBVaultError,
    IntegrityError,
    NotFoundError,
)
from dbvault.pipeline.backup import BackupOptions
from dbvault.pipeline.restore import RestoreOptions

logger = structlog.get_logger()

# Security
security = HTTPBearer(auto_error=False)


class BackupRequest(BaseModel):
    type: BackupType = BackupType.FULL
    tables: List[str] | None = None
    compress: bool = True


class RestoreRequest(BaseModel):
    backup_id: str
    dry_run: bool = False
    validate_integrity: bool = False
    target_database: str | None = None
    tables: List[str] | None = None


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the BACKUP_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("BACKUP_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="BACKUP_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def _http_error(error: DBVaultError) -> HTTPException:
    if isinstance(error, ConcurrencyError):
        status = 409
    elif isinstance(error, NotFoundError):
        status = 404
    elif isinstance(error, IntegrityError):
        status = 422
    elif isinstance(error, ConnectivityError):
        status = 503
    else:
        status = 500
    return HTTPException(status_code=status, detail={"error": error.message, **error.details})


def register_backup_routes(
    app: FastAPI,
    service: BackupService,
    prefix: str = "/admin/backups",
) -> None:
    """
    Register backup admin endpoints on a FastAPI app.

    All endpoints require Bearer token authentication.

    Args:
        app: FastAPI application
        service: Initialized backup service
        prefix: URL prefix for endpoints (default: /admin/backups)
    """

    @app.post(f"{prefix}/run", dependencies=[Depends(verify_api_key)])
    async def trigger_backup(request: BackupRequest | None = None) -> dict:
        """
        Run a backup now and wait for it to finish.

        Returns the job record including the backup metadata.
        """
        request = request or BackupRequest()
        options = BackupOptions(tables=request.tables, compress=request.compress)
        try:
            backup_id = await service.create_backup(request.type, options)
        except DBVaultError as e:
            raise _http_error(e) from e
        return service.get_job_status(backup_id).to_dict()

    @app.post(f"{prefix}/restore", dependencies=[Depends(verify_api_key)])
    async def trigger_restore(request: RestoreRequest) -> dict:
        """
        Restore a backup. Use dry_run to only fetch and verify the artifact.
        """
        options = RestoreOptions(
            backup_id=request.backup_id,
            dry_run=request.dry_run,
            validate_integrity=request.validate_integrity,
            target_database=request.target_database,
            tables=request.tables,
        )
        try:
            restore_id = await service.restore_backup(options)
        except DBVaultError as e:
            raise _http_error(e) from e
        return service.get_job_status(restore_id).to_dict()

    @app.get(f"{prefix}/list", dependencies=[Depends(verify_api_key)])
    async def list_backups(limit: int | None = None) -> list:
        """List backups, newest first."""
        backups = await service.list_backups(limit)
        return [backup.to_dict() for backup in backups]

    @app.get(f"{prefix}/jobs", dependencies=[Depends(verify_api_key)])
    async def list_jobs(
        limit: int = 50,
        offset: int = 0,
        kind: str | None = None,
    ) -> dict:
        """
        Jobs still in memory plus the journaled history.

        Args:
            limit: Maximum number of history records to return
            offset: Number of history records to skip
            kind: Filter history by kind (backup, restore)
        """
        return {
            "recent": [job.to_dict() for job in service.list_jobs()],
            "history": await service.list_job_history(limit, offset, kind),
        }

    @app.get(f"{prefix}/jobs/{{job_id}}", dependencies=[Depends(verify_api_key)])
    async def get_job(job_id: str) -> dict:
        job = service.get_job_status(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
        return job.to_dict()

    @app.get(f"{prefix}/stats", dependencies=[Depends(verify_api_key)])
    async def get_stats() -> dict:
        """Backup catalog statistics and journal counts."""
        stats = await service.get_backup_stats()
        return {
            **stats.to_dict(),
            "journal": await service.get_journal_stats(),
        }

    @app.get(f"{prefix}/health", dependencies=[Depends(verify_api_key)])
    async def health_check() -> dict:
        """
        Health check endpoint.

        Verifies database connectivity and storage root access.
        """
        database_ok = await service.database.ping()
        storage_ok = service.config.local_path.is_dir() and os.access(
            service.config.local_path, os.W_OK
        )
        active = service.registry.active

        status = "healthy"
        if not database_ok or not storage_ok:
            status = "degraded"
        if not database_ok and not storage_ok:
            status = "unhealthy"

        return {
            "status": status,
            "database_reachable": database_ok,
            "storage_writable": storage_ok,
            "active_job": active.id if active is not None else None,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration (sensitive values redacted).
        """
        return service.config.redacted()

    @app.delete(f"{prefix}/{{backup_id}}", dependencies=[Depends(verify_api_key)])
    async def delete_backup(backup_id: str) -> dict:
        deleted = await service.delete_backup(backup_id)
        if not deleted:
            raise HTTPException(
                status_code=404,
                detail=f"Backup {backup_id} not found or could not be deleted",
            )
        return {"deleted": True, "backup_id": backup_id}


@asynccontextmanager
async def backup_lifespan(app: FastAPI, config: BackupConfig, prefix: str = "/admin/backups"):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: backup_lifespan(app, config))

    Args:
        app: FastAPI application
        config: Backup configuration
        prefix: URL prefix for admin endpoints
    """
    logger.info("backup_lifespan_starting")

    service = BackupService(config)
    await service.initialize()
    app.state.backup_service = service

    register_backup_routes(app, service, prefix)

    logger.info("backup_lifespan_started")

    try:
        yield
    finally:
        logger.info("backup_lifespan_stopping")
        await service.shutdown()
        logger.info("backup_lifespan_stopped")


def get_backup_service(app: FastAPI) -> BackupService:
    """
    Get the backup service from a FastAPI app.

    Raises:
        RuntimeError: If the lifespan has not run
    """
    service = getattr(app.state, "backup_service", None)
    if service is None:
        raise RuntimeError("Backup service not initialized. Use backup_lifespan first.")
    return service
