# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Cold Storage - Off-host copies of backup artifacts.

Adapters address artifacts by file name; each adapter maps the name to
its own location (an S3 key under a prefix, or a file under a mounted
directory).

Adapters:
- S3Storage: any S3-compatible service through aiobotocore
- DirectoryStorage: a mounted path (NFS, external disk, test fixtures)
"""

import asyncio
import os
import shutil
from pathlib import Path
from typing import Any, List, Protocol

import aiofiles
import structlog
from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError

from dbvault.config import BackupConfig
from dbvault.exceptions import StorageError
from dbvault.storage.artifacts import remote_key

logger = structlog.get_logger()

# Artifacts above this size go through multipart upload
MULTIPART_THRESHOLD = 8 * 1024 * 1024
PART_SIZE = 8 * 1024 * 1024
DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class StorageAdapter(Protocol):
    """Cold storage target for finished artifacts."""

    async def upload(self, local_path: Path, name: str) -> str:
        """Copy a local file out; returns the remote location."""
        ...

    async def download(self, name: str, destination: Path) -> Path:
        """Fetch an artifact to destination."""
        ...

    async def exists(self, name: str) -> bool:
        ...

    async def delete(self, name: str) -> None:
        """Remove an artifact. Deleting a missing artifact is not an error."""
        ...


def _is_not_found(error: ClientError) -> bool:
    code = str(error.response.get("Error", {}).get("Code", ""))
    return code in ("404", "NoSuchKey", "NotFound")


class S3Storage:
    """S3-compatible cold storage."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "backups/",
        region: str = "us-east-1",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        endpoint_url: str | None = None,
        session: Any = None,
    ) -> None:
        self.bucket = bucket
        self.prefix = prefix
        self.region = region
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._endpoint_url = endpoint_url
        self._session = session or get_session()

    def key_for(self, name: str) -> str:
        return remote_key(self.prefix, name)

    def _client(self):
        kwargs = {"region_name": self.region}
        if self._access_key_id and self._secret_access_key:
            kwargs["aws_access_key_id"] = self._access_key_id
            kwargs["aws_secret_access_key"] = self._secret_access_key
        if self._endpoint_url:
            kwargs["endpoint_url"] = self._endpoint_url
        return self._session.create_client("s3", **kwargs)

    async def upload(self, local_path: Path, name: str) -> str:
        key = self.key_for(name)
        size = local_path.stat().st_size

        try:
            async with self._client() as s3_client:
                if size > MULTIPART_THRESHOLD:
                    await self._multipart_upload(s3_client, local_path, key)
                else:
                    async with aiofiles.open(local_path, "rb") as f:
                        body = await f.read()
                    await s3_client.put_object(Bucket=self.bucket, Key=key, Body=body)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                f"Failed to upload {name} to s3://{self.bucket}/{key}: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e

        logger.info("artifact_uploaded", bucket=self.bucket, key=key, size=size)
        return f"s3://{self.bucket}/{key}"

    async def _multipart_upload(self, s3_client: Any, local_path: Path, key: str) -> None:
        response = await s3_client.create_multipart_upload(Bucket=self.bucket, Key=key)
        upload_id = response["UploadId"]
        parts: List[dict] = []

        try:
            async with aiofiles.open(local_path, "rb") as f:
                part_number = 1
                while True:
                    chunk = await f.read(PART_SIZE)
                    if not chunk:
                        break
                    part = await s3_client.upload_part(
                        Bucket=self.bucket,
                        Key=key,
                        UploadId=upload_id,
                        PartNumber=part_number,
                        Body=chunk,
                    )
                    parts.append({"ETag": part["ETag"], "PartNumber": part_number})
                    part_number += 1

            await s3_client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except BaseException:
            try:
                await s3_client.abort_multipart_upload(
                    Bucket=self.bucket, Key=key, UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning("multipart_abort_failed", key=key, error=str(abort_error))
            raise

    async def download(self, name: str, destination: Path) -> Path:
        key = self.key_for(name)
        temp_path = destination.with_name(destination.name + ".part")

        try:
            async with self._client() as s3_client:
                response = await s3_client.get_object(Bucket=self.bucket, Key=key)
                async with response["Body"] as stream:
                    async with aiofiles.open(temp_path, "wb") as f:
                        while True:
                            chunk = await stream.read(DOWNLOAD_CHUNK_SIZE)
                            if not chunk:
                                break
                            await f.write(chunk)
            os.replace(temp_path, destination)
        except ClientError as e:
            temp_path.unlink(missing_ok=True)
            if _is_not_found(e):
                raise StorageError(
                    f"Artifact not found in cold storage: s3://{self.bucket}/{key}",
                    details={"bucket": self.bucket, "key": key, "not_found": True},
                ) from e
            raise StorageError(
                f"Failed to download s3://{self.bucket}/{key}: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e
        except (BotoCoreError, OSError) as e:
            temp_path.unlink(missing_ok=True)
            raise StorageError(
                f"Failed to download s3://{self.bucket}/{key}: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e

        logger.info("artifact_downloaded", bucket=self.bucket, key=key, path=str(destination))
        return destination

    async def exists(self, name: str) -> bool:
        key = self.key_for(name)
        try:
            async with self._client() as s3_client:
                await s3_client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return False
            raise StorageError(
                f"Failed to check s3://{self.bucket}/{key}: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Failed to check s3://{self.bucket}/{key}: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e
        return True

    async def delete(self, name: str) -> None:
        key = self.key_for(name)
        try:
            async with self._client() as s3_client:
                await s3_client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                f"Failed to delete s3://{self.bucket}/{key}: {e}",
                details={"bucket": self.bucket, "key": key},
            ) from e

        logger.info("artifact_deleted_remote", bucket=self.bucket, key=key)


class DirectoryStorage:
    """Cold storage on a mounted directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, name: str) -> Path:
        if not name or "/" in name or "\\" in name:
            raise StorageError(f"Invalid artifact name: {name!r}", details={"name": name})
        return self.root / name

    async def _copy(self, source: Path, destination: Path) -> None:
        temp_path = destination.with_name(destination.name + ".part")
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, shutil.copyfile, source, temp_path)
            os.replace(temp_path, destination)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageError(
                f"Failed to copy {source} to {destination}: {e}",
                details={"source": str(source), "destination": str(destination)},
            ) from e

    async def upload(self, local_path: Path, name: str) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        target = self._path(name)
        await self._copy(local_path, target)
        logger.info("artifact_uploaded", path=str(target))
        return str(target)

    async def download(self, name: str, destination: Path) -> Path:
        source = self._path(name)
        if not source.exists():
            raise StorageError(
                f"Artifact not found in cold storage: {source}",
                details={"path": str(source), "not_found": True},
            )
        await self._copy(source, destination)
        return destination

    async def exists(self, name: str) -> bool:
        return self._path(name).exists()

    async def delete(self, name: str) -> None:
        try:
            self._path(name).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(
                f"Failed to delete {name}: {e}",
                details={"path": str(self._path(name))},
            ) from e


def create_storage_adapter(config: BackupConfig, session: Any = None) -> StorageAdapter | None:
    """Build the cold storage adapter for a config; None in local-only mode."""
    if not config.storage_mode.uses_cold_storage:
        return None

    return S3Storage(
        bucket=config.s3_bucket,
        prefix=config.s3_prefix,
        region=config.s3_region,
        access_key_id=config.s3_access_key_id,
        secret_access_key=config.s3_secret_access_key,
        endpoint_url=config.s3_endpoint_url,
        session=session,
    )
