# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Transforms - File-to-file stages of the backup pipeline.

Stages:
1. gzip compression / decompression
2. AES-256-GCM encryption / decryption
3. SHA-256 checksums over the final artifact
4. Table filtering of plain SQL dumps (selective restore)

Encrypted layout: salt (16) | nonce (12) | ciphertext | tag (16).
The key is derived from the configured passphrase with scrypt and the
per-file salt, so the same passphrase never reuses a key/nonce pair.

All stages stream in fixed-size chunks and run in a thread pool so the
event loop stays free while large dumps are processed.
"""

import asyncio
import gzip
import hashlib
import os
import re
import shutil
import zlib
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Collection

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from dbvault.exceptions import ArtifactIOError, IntegrityError

logger = structlog.get_logger()

# Thread pool for CPU/disk-bound transform work
_executor = ThreadPoolExecutor(max_workers=2)

CHUNK_SIZE = 1024 * 1024
SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
HEADER_SIZE = SALT_SIZE + NONCE_SIZE

# scrypt cost parameters (interactive-login strength)
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1

_SECTION_RE = re.compile(
    rb"^-- (?:Table structure|Dumping data|Temporary (?:view |table )?structure"
    rb"|Final view structure) for (?:table|view) `(?P<name>[^`]+)`"
)
_DATABASE_SECTION_RE = re.compile(rb"^-- Dumping (?:events|routines) for database")
_FOOTER_PREFIX = b"/*!40103 SET TIME_ZONE=@OLD_TIME_ZONE"


async def _run(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, func, *args)


def derive_key(passphrase: str, salt: bytes) -> bytes:
    """Derive a 256-bit AES key from a passphrase and salt."""
    kdf = Scrypt(salt=salt, length=32, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(passphrase.encode("utf-8"))


# ============================================================================
# Compression
# ============================================================================


def _compress_file_sync(source: Path, destination: Path, level: int) -> None:
    with source.open("rb") as src, gzip.open(destination, "wb", compresslevel=level) as dst:
        shutil.copyfileobj(src, dst, CHUNK_SIZE)


def _decompress_file_sync(source: Path, destination: Path) -> None:
    with gzip.open(source, "rb") as src, destination.open("wb") as dst:
        shutil.copyfileobj(src, dst, CHUNK_SIZE)


async def compress_file(source: Path, destination: Path, level: int = 6) -> Path:
    """gzip source into destination."""
    try:
        await _run(_compress_file_sync, source, destination, level)
    except OSError as e:
        raise ArtifactIOError(
            f"Compression failed: {e}",
            details={"source": str(source), "destination": str(destination)},
        ) from e

    logger.debug(
        "file_compressed",
        source=str(source),
        destination=str(destination),
        original_size=source.stat().st_size,
        compressed_size=destination.stat().st_size,
    )
    return destination


async def decompress_file(source: Path, destination: Path) -> Path:
    """Inflate a gzip file into destination."""
    try:
        await _run(_decompress_file_sync, source, destination)
    except (gzip.BadGzipFile, EOFError, zlib.error) as e:
        raise IntegrityError(
            f"Decompression failed: {e}",
            details={"source": str(source)},
        ) from e
    except OSError as e:
        raise ArtifactIOError(
            f"Decompression could not read or write files: {e}",
            details={"source": str(source), "destination": str(destination)},
        ) from e
    return destination


# ============================================================================
# Encryption
# ============================================================================


def _encrypt_file_sync(source: Path, destination: Path, passphrase: str) -> None:
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    key = derive_key(passphrase, salt)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()

    with source.open("rb") as src, destination.open("wb") as dst:
        dst.write(salt)
        dst.write(nonce)
        for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
            dst.write(encryptor.update(chunk))
        dst.write(encryptor.finalize())
        dst.write(encryptor.tag)


def _decrypt_file_sync(source: Path, destination: Path, passphrase: str) -> None:
    total_size = source.stat().st_size
    if total_size < HEADER_SIZE + TAG_SIZE:
        raise IntegrityError(
            "Encrypted artifact is too small to contain salt, nonce and tag",
            details={"source": str(source), "size": total_size},
        )

    with source.open("rb") as src:
        salt = src.read(SALT_SIZE)
        nonce = src.read(NONCE_SIZE)
        src.seek(total_size - TAG_SIZE)
        tag = src.read(TAG_SIZE)
        src.seek(HEADER_SIZE)

        key = derive_key(passphrase, salt)
        decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()

        remaining = total_size - HEADER_SIZE - TAG_SIZE
        with destination.open("wb") as dst:
            while remaining > 0:
                chunk = src.read(min(CHUNK_SIZE, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                dst.write(decryptor.update(chunk))
            try:
                dst.write(decryptor.finalize())
            except InvalidTag as e:
                raise IntegrityError(
                    "Backup decryption failed: wrong key or tampered artifact",
                    details={"source": str(source)},
                ) from e


async def encrypt_file(source: Path, destination: Path, passphrase: str) -> Path:
    """Encrypt source into destination with AES-256-GCM."""
    try:
        await _run(_encrypt_file_sync, source, destination, passphrase)
    except OSError as e:
        raise ArtifactIOError(
            f"Encryption failed: {e}",
            details={"source": str(source), "destination": str(destination)},
        ) from e

    logger.debug("file_encrypted", destination=str(destination))
    return destination


async def decrypt_file(source: Path, destination: Path, passphrase: str) -> Path:
    """
    Decrypt an artifact produced by encrypt_file.

    Raises:
        IntegrityError: If authentication fails (wrong key or modified bytes).
            The partially written destination must be discarded.
    """
    try:
        await _run(_decrypt_file_sync, source, destination, passphrase)
    except OSError as e:
        raise ArtifactIOError(
            f"Decryption failed: {e}",
            details={"source": str(source)},
        ) from e
    return destination


# ============================================================================
# Checksums
# ============================================================================


def _sha256_file_sync(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


async def file_checksum(path: Path) -> str:
    """SHA-256 hex digest of a file."""
    try:
        return await _run(_sha256_file_sync, path)
    except OSError as e:
        raise ArtifactIOError(
            f"Failed to checksum {path}: {e}",
            details={"path": str(path)},
        ) from e


# ============================================================================
# Table filtering
# ============================================================================


def _filter_dump_tables_sync(source: Path, destination: Path, tables: Collection[str]) -> int:
    wanted = set(tables)
    kept_sections = 0
    # None means "outside any table section": header, events, routines, footer
    current: str | None = None
    keep = True

    with source.open("rb") as src, destination.open("wb") as dst:
        for line in src:
            match = _SECTION_RE.match(line)
            if match:
                name = match.group("name").decode("utf-8", errors="replace")
                if name != current:
                    current = name
                    keep = name in wanted
                    if keep:
                        kept_sections += 1
            elif _DATABASE_SECTION_RE.match(line) or line.startswith(_FOOTER_PREFIX):
                current = None
                keep = True

            if keep:
                dst.write(line)

    return kept_sections


async def filter_dump_tables(source: Path, destination: Path, tables: Collection[str]) -> Path:
    """
    Copy a mysqldump file keeping only the sections for the given tables.

    The dump header, event/routine sections and footer are always kept.
    """
    try:
        kept = await _run(_filter_dump_tables_sync, source, destination, tables)
    except OSError as e:
        raise ArtifactIOError(
            f"Table filtering failed: {e}",
            details={"source": str(source)},
        ) from e

    logger.debug("dump_filtered", tables=sorted(tables), sections_kept=kept)
    return destination
