# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Collaborators shared by the backup and restore pipelines.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict

from dbvault.config import BackupConfig, DatabaseSettings
from dbvault.database import DatabaseProbe
from dbvault.pipeline.process import ProcessRunner
from dbvault.storage.cold import StorageAdapter
from dbvault.storage.metadata import MetadataStore


@dataclass
class PipelineContext:
    config: BackupConfig
    database: DatabaseProbe
    runner: ProcessRunner
    store: MetadataStore
    storage: StorageAdapter | None
    clock: Callable[[], datetime]

    @property
    def root(self) -> Path:
        return self.config.local_path


def mysql_client_env(settings: DatabaseSettings) -> Dict[str, str]:
    """Child environment carrying the password, so it never shows up in argv."""
    if not settings.password:
        return {}
    return {"MYSQL_PWD": settings.password}


def connection_args(settings: DatabaseSettings) -> list:
    return [
        f"--host={settings.host}",
        f"--port={settings.port}",
        f"--user={settings.user}",
    ]
