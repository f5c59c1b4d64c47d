# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for dbvault tests.

Provides fake database/process runner/S3 collaborators, temporary storage
roots and service construction helpers.
"""

import asyncio
import os
import tempfile
from datetime import datetime, UTC
from pathlib import Path
from typing import Generator, List

import pytest
import pytest_asyncio
from botocore.exceptions import ClientError

from dbvault.config import BackupConfig, DatabaseSettings
from dbvault.core import BackupService
from dbvault.exceptions import ProcessExecutionError

# Set test environment variables
os.environ["BACKUP_ADMIN_API_KEY"] = "test-api-key-12345"

FIXED_NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)

SAMPLE_DUMP = b"""-- MySQL dump 10.13  Distrib 8.0.36, for Linux (x86_64)
--
-- Host: localhost    Database: app
-- ------------------------------------------------------
/*!40101 SET @OLD_CHARACTER_SET_CLIENT=@@CHARACTER_SET_CLIENT */;
/*!40103 SET @OLD_TIME_ZONE=@@TIME_ZONE */;
/*!40103 SET TIME_ZONE='+00:00' */;

--
-- Table structure for table `orders`
--

DROP TABLE IF EXISTS `orders`;
CREATE TABLE `orders` (
  `id` int NOT NULL AUTO_INCREMENT,
  `user_id` int NOT NULL,
  PRIMARY KEY (`id`)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;

--
-- Dumping data for table `orders`
--

LOCK TABLES `orders` WRITE;
INSERT INTO `orders` VALUES (1,1),(2,1);
UNLOCK TABLES;

--
-- Table structure for table `users`
--

DROP TABLE IF EXISTS `users`;
CREATE TABLE `users` (
  `id` int NOT NULL AUTO_INCREMENT,
  `email` varchar(255) NOT NULL,
  PRIMARY KEY (`id`)
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;

--
-- Dumping data for table `users`
--

LOCK TABLES `users` WRITE;
INSERT INTO `users` VALUES (1,'ada@example.com');
UNLOCK TABLES;

--
-- Dumping routines for database 'app'
--

/*!40103 SET TIME_ZONE=@OLD_TIME_ZONE */;
/*!40101 SET CHARACTER_SET_CLIENT=@OLD_CHARACTER_SET_CLIENT */;

-- Dump completed on 2026-03-01 12:00:00
"""


class FakeDatabase:
    """DatabaseProbe double."""

    def __init__(self, reachable: bool = True, tables: List[str] | None = None):
        self.reachable = reachable
        self.tables = tables if tables is not None else ["orders", "users"]
        self.ping_calls = 0

    async def ping(self) -> bool:
        self.ping_calls += 1
        return self.reachable

    async def list_tables(self) -> List[str]:
        return list(self.tables)


class FakeProcessRunner:
    """
    ProcessRunner double.

    Dumps write dump_content; restores capture the SQL they were fed.
    block() makes the next calls wait until the returned event is set
    (or terminate_active() is called, which fails them like SIGTERM would).
    """

    def __init__(self, dump_content: bytes = SAMPLE_DUMP):
        self.dump_content = dump_content
        self.dump_calls: List[dict] = []
        self.restore_calls: List[dict] = []
        self.fail_with: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.terminated = 0
        self._terminate_requested = False

    def block(self) -> asyncio.Event:
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self._terminate_requested = False
        return self.gate

    def unblock(self) -> None:
        if self.gate is not None:
            self.gate.set()
        self.gate = None

    async def _enter(self, name: str) -> None:
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self._terminate_requested:
            raise ProcessExecutionError(f"{name} failed with exit code -15")
        if self.fail_with is not None:
            raise self.fail_with

    async def run_to_file(self, args, output_path: Path, env=None, on_progress=None) -> int:
        self.dump_calls.append({"args": list(args), "env": dict(env or {})})
        await self._enter(Path(args[0]).name)
        output_path.write_bytes(self.dump_content)
        if on_progress is not None:
            on_progress(len(self.dump_content))
        return len(self.dump_content)

    async def run_from_file(self, args, input_path: Path, env=None, on_progress=None) -> None:
        await self._enter(Path(args[0]).name)
        self.restore_calls.append(
            {"args": list(args), "env": dict(env or {}), "sql": input_path.read_bytes()}
        )
        if on_progress is not None:
            on_progress(input_path.stat().st_size)

    def terminate_active(self) -> int:
        if self.gate is not None and not self.gate.is_set():
            self._terminate_requested = True
            self.gate.set()
            self.terminated += 1
            return 1
        return 0


class FakeStreamingBody:
    def __init__(self, data: bytes):
        self._data = data
        self._offset = 0

    async def read(self, size: int = -1) -> bytes:
        if size < 0:
            size = len(self._data) - self._offset
        chunk = self._data[self._offset : self._offset + size]
        self._offset += len(chunk)
        return chunk

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeS3Client:
    """In-memory stand-in for an aiobotocore S3 client."""

    def __init__(self):
        self.objects: dict = {}
        self.multipart: dict = {}
        self.calls: List[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def put_object(self, Bucket, Key, Body):
        self.calls.append("put_object")
        self.objects[(Bucket, Key)] = bytes(Body)
        return {}

    async def get_object(self, Bucket, Key):
        self.calls.append("get_object")
        if (Bucket, Key) not in self.objects:
            raise _client_error("NoSuchKey", "GetObject")
        return {"Body": FakeStreamingBody(self.objects[(Bucket, Key)])}

    async def head_object(self, Bucket, Key):
        self.calls.append("head_object")
        if (Bucket, Key) not in self.objects:
            raise _client_error("404", "HeadObject")
        return {"ContentLength": len(self.objects[(Bucket, Key)])}

    async def delete_object(self, Bucket, Key):
        self.calls.append("delete_object")
        self.objects.pop((Bucket, Key), None)
        return {}

    async def create_multipart_upload(self, Bucket, Key):
        self.calls.append("create_multipart_upload")
        upload_id = f"upload-{len(self.multipart) + 1}"
        self.multipart[upload_id] = {}
        return {"UploadId": upload_id}

    async def upload_part(self, Bucket, Key, UploadId, PartNumber, Body):
        self.calls.append("upload_part")
        self.multipart[UploadId][PartNumber] = bytes(Body)
        return {"ETag": f'"etag-{PartNumber}"'}

    async def complete_multipart_upload(self, Bucket, Key, UploadId, MultipartUpload):
        self.calls.append("complete_multipart_upload")
        parts = self.multipart.pop(UploadId)
        numbers = [part["PartNumber"] for part in MultipartUpload["Parts"]]
        self.objects[(Bucket, Key)] = b"".join(parts[n] for n in numbers)
        return {}

    async def abort_multipart_upload(self, Bucket, Key, UploadId):
        self.calls.append("abort_multipart_upload")
        self.multipart.pop(UploadId, None)
        return {}


class FakeS3Session:
    def __init__(self, client: FakeS3Client | None = None):
        self.client = client or FakeS3Client()
        self.client_kwargs: List[dict] = []

    def create_client(self, service_name: str, **kwargs):
        assert service_name == "s3"
        self.client_kwargs.append(kwargs)
        return self.client


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def fake_runner() -> FakeProcessRunner:
    return FakeProcessRunner()


@pytest.fixture
def fake_s3_session() -> FakeS3Session:
    return FakeS3Session()


@pytest.fixture
def test_config(temp_dir: Path) -> BackupConfig:
    """Local-only configuration with compression and encryption enabled."""
    return BackupConfig(
        local_path=temp_dir / "backups",
        retention_days=30,
        compression_level=6,
        encryption_key="correct horse battery staple",
        database=DatabaseSettings(
            host="db.internal",
            port=3307,
            user="backup",
            password="s3cret",
            name="app",
        ),
        shutdown_timeout_seconds=5.0,
    )


def make_service(config: BackupConfig, database=None, runner=None, storage=None, clock=None):
    """Build a service wired to fakes."""
    return BackupService(
        config,
        database=database or FakeDatabase(),
        runner=runner or FakeProcessRunner(),
        storage=storage,
        clock=clock or (lambda: FIXED_NOW),
        poll_interval=0.01,
    )


@pytest_asyncio.fixture
async def service(test_config: BackupConfig, fake_database, fake_runner):
    """Initialized service over the test config."""
    svc = make_service(test_config, database=fake_database, runner=fake_runner)
    await svc.initialize()
    yield svc
    fake_runner.unblock()
    await svc.shutdown()
