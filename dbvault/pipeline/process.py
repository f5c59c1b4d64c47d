# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbvault Process Runner - Drive external dump/restore executables.

The runner streams a child's stdout into a file (dump direction) or a file
into a child's stdin (restore direction), logs stderr as it arrives, and
turns spawn failures and non-zero exits into ProcessExecutionError.

Children currently running are tracked so shutdown can terminate them.
"""

import asyncio
import os
from collections import deque
from pathlib import Path
from typing import Callable, Deque, Dict, Mapping, Sequence, Set

import aiofiles
import structlog

from dbvault.exceptions import ProcessExecutionError

logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 64 * 1024
STDERR_TAIL_LINES = 20


def _child_env(extra_env: Mapping[str, str] | None) -> Dict[str, str] | None:
    if not extra_env:
        return None
    return {**os.environ, **extra_env}


class ProcessRunner:
    """Spawns external executables for the pipeline."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._chunk_size = chunk_size
        self._active: Set[asyncio.subprocess.Process] = set()

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def run_to_file(
        self,
        args: Sequence[str],
        output_path: Path,
        env: Mapping[str, str] | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> int:
        """
        Run a command and write its stdout to output_path.

        Args:
            args: Executable and arguments
            output_path: File receiving stdout (created or truncated)
            env: Extra environment variables for the child
            on_progress: Called with the running byte count after each chunk

        Returns:
            Number of bytes written

        Raises:
            ProcessExecutionError: If the process cannot start or exits non-zero
        """
        name = Path(args[0]).name
        proc = await self._spawn(
            args,
            env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
        )

        written = 0
        stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        try:
            stderr_task = asyncio.create_task(self._drain_stderr(proc, name, stderr_tail))
            try:
                async with aiofiles.open(output_path, "wb") as f:
                    while True:
                        chunk = await proc.stdout.read(self._chunk_size)
                        if not chunk:
                            break
                        await f.write(chunk)
                        written += len(chunk)
                        if on_progress is not None:
                            on_progress(written)
            except BaseException:
                # Nobody is reading stdout any more; the child would block forever.
                if proc.returncode is None:
                    proc.kill()
                raise
            finally:
                returncode = await proc.wait()
                await stderr_task
        finally:
            self._active.discard(proc)

        self._check_returncode(name, returncode, stderr_tail)

        logger.debug("process_output_captured", command=name, bytes=written)
        return written

    async def run_from_file(
        self,
        args: Sequence[str],
        input_path: Path,
        env: Mapping[str, str] | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> None:
        """
        Run a command with input_path streamed to its stdin.

        Raises:
            ProcessExecutionError: If the process cannot start or exits non-zero
        """
        name = Path(args[0]).name
        proc = await self._spawn(
            args,
            env,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
        )

        stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        try:
            stderr_task = asyncio.create_task(self._drain_stderr(proc, name, stderr_tail))
            try:
                await self._feed_stdin(proc, input_path, on_progress)
            finally:
                returncode = await proc.wait()
                await stderr_task
        finally:
            self._active.discard(proc)

        self._check_returncode(name, returncode, stderr_tail)

    def terminate_active(self) -> int:
        """Send SIGTERM to every running child. Returns how many were signalled."""
        signalled = 0
        for proc in list(self._active):
            if proc.returncode is not None:
                continue
            try:
                proc.terminate()
                signalled += 1
            except ProcessLookupError:
                continue
            logger.warning("process_terminated", pid=proc.pid)
        return signalled

    async def _spawn(
        self,
        args: Sequence[str],
        env: Mapping[str, str] | None,
        **streams,
    ) -> asyncio.subprocess.Process:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stderr=asyncio.subprocess.PIPE,
                env=_child_env(env),
                **streams,
            )
        except OSError as e:
            raise ProcessExecutionError(
                f"Failed to start {args[0]}: {e}",
                details={"command": args[0]},
            ) from e

        self._active.add(proc)
        logger.debug("process_started", command=Path(args[0]).name, pid=proc.pid)
        return proc

    async def _feed_stdin(
        self,
        proc: asyncio.subprocess.Process,
        input_path: Path,
        on_progress: Callable[[int], None] | None,
    ) -> None:
        sent = 0
        try:
            async with aiofiles.open(input_path, "rb") as f:
                while True:
                    chunk = await f.read(self._chunk_size)
                    if not chunk:
                        break
                    proc.stdin.write(chunk)
                    await proc.stdin.drain()
                    sent += len(chunk)
                    if on_progress is not None:
                        on_progress(sent)
        except (BrokenPipeError, ConnectionResetError):
            # Child exited early; its exit code tells the story.
            logger.warning("process_stdin_closed_early", pid=proc.pid, bytes_sent=sent)
        finally:
            if not proc.stdin.is_closing():
                proc.stdin.close()
            try:
                await proc.stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass

    async def _drain_stderr(
        self,
        proc: asyncio.subprocess.Process,
        name: str,
        tail: Deque[str],
    ) -> None:
        while True:
            line = await proc.stderr.readline()
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                tail.append(text)
                logger.warning("process_stderr", command=name, line=text)

    @staticmethod
    def _check_returncode(name: str, returncode: int, stderr_tail: Deque[str]) -> None:
        if returncode != 0:
            raise ProcessExecutionError(
                f"{name} failed with exit code {returncode}",
                details={"stderr": "\n".join(stderr_tail)} if stderr_tail else None,
            )
