# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Scheduled backups.

One cron job (UTC) runs a full backup followed by a retention sweep.
"""

from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from dbvault.exceptions import DBVaultError

if TYPE_CHECKING:
    from dbvault.core import BackupService

logger = structlog.get_logger()

SCHEDULED_JOB_ID = "dbvault_scheduled_backup"


async def run_scheduled_backup(service: "BackupService") -> None:
    """Run a full backup, then retire expired backups."""
    logger.info("scheduled_backup_starting")
    try:
        backup_id = await service.create_backup("full")
        logger.info("scheduled_backup_completed", backup_id=backup_id)
    except DBVaultError as e:
        logger.error("scheduled_backup_failed", error=e.message)

    try:
        result = await service.cleanup_old_backups()
        logger.info("scheduled_cleanup_completed", deleted=result.deleted_count)
    except DBVaultError as e:
        logger.error("scheduled_cleanup_failed", error=e.message)


def create_backup_scheduler(service: "BackupService") -> AsyncIOScheduler:
    """
    Build (but do not start) a scheduler for the service's cron expression.

    Raises:
        ValueError: If the service has no schedule configured
    """
    schedule = service.config.schedule_cron
    if not schedule:
        raise ValueError("No backup schedule configured")

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        run_scheduled_backup,
        trigger=CronTrigger.from_crontab(schedule, timezone="UTC"),
        args=[service],
        id=SCHEDULED_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
