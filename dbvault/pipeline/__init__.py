# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup and restore pipelines - external processes and file transforms.
"""

from dbvault.pipeline.process import ProcessRunner

from dbvault.pipeline.transforms import (
    compress_file,
    decompress_file,
    encrypt_file,
    decrypt_file,
    file_checksum,
    filter_dump_tables,
)

__all__ = [
    # Process runner
    "ProcessRunner",
    # Transforms
    "compress_file",
    "decompress_file",
    "encrypt_file",
    "decrypt_file",
    "file_checksum",
    "filter_dump_tables",
]
