# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Database probe - Connectivity check and table enumeration.

The pipeline only needs two things from the live server before a dump:
"are you reachable?" and "which base tables does the schema have?".
"""

from typing import List, Protocol

import aiomysql
import pymysql
import structlog

from dbvault.config import DatabaseSettings
from dbvault.exceptions import ConnectivityError

logger = structlog.get_logger()

CONNECT_TIMEOUT_SECONDS = 10

_LIST_TABLES_SQL = """
    SELECT TABLE_NAME
    FROM information_schema.TABLES
    WHERE TABLE_SCHEMA = %s AND TABLE_TYPE = 'BASE TABLE'
    ORDER BY TABLE_NAME
"""


class DatabaseProbe(Protocol):
    async def ping(self) -> bool:
        """True if the server answers a trivial query."""
        ...

    async def list_tables(self) -> List[str]:
        """Base tables of the configured schema."""
        ...


class MySQLDatabase:
    """DatabaseProbe backed by aiomysql."""

    def __init__(self, settings: DatabaseSettings) -> None:
        self.settings = settings

    async def _connect(self) -> aiomysql.Connection:
        return await aiomysql.connect(
            host=self.settings.host,
            port=self.settings.port,
            user=self.settings.user,
            password=self.settings.password,
            db=self.settings.name,
            charset="utf8mb4",
            connect_timeout=CONNECT_TIMEOUT_SECONDS,
        )

    async def ping(self) -> bool:
        try:
            conn = await self._connect()
        except (pymysql.err.Error, OSError) as e:
            logger.warning(
                "database_ping_failed",
                host=self.settings.host,
                port=self.settings.port,
                error=str(e),
            )
            return False

        try:
            async with conn.cursor() as cursor:
                await cursor.execute("SELECT 1")
                await cursor.fetchone()
            return True
        except pymysql.err.Error as e:
            logger.warning("database_ping_failed", host=self.settings.host, error=str(e))
            return False
        finally:
            conn.close()

    async def list_tables(self) -> List[str]:
        """
        Raises:
            ConnectivityError: If the query cannot be run
        """
        try:
            conn = await self._connect()
            try:
                async with conn.cursor() as cursor:
                    await cursor.execute(_LIST_TABLES_SQL, (self.settings.name,))
                    rows = await cursor.fetchall()
            finally:
                conn.close()
        except (pymysql.err.Error, OSError) as e:
            raise ConnectivityError(
                f"Failed to list tables: {e}",
                details={"database": self.settings.name},
            ) from e

        return [row[0] for row in rows]
