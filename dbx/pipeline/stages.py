# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Pipeline Stages - Byte-stream building blocks.

A stream is an ``AsyncIterator[bytes]``. A stage maps one stream to
another. External tools (pg_dump, age, mysql, ...) run as OS processes
connected by pipes: a feeder task writes the upstream stream into the
process stdin (``drain()`` gives back-pressure) while the stage yields
the process stdout. In-process stages are plain async generators.

Every process stage kills its process when the stream is closed early or
fails, and closes its upstream, so an error anywhere tears down the whole
chain.
"""

import asyncio
import collections
import os
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Deque, Mapping, Sequence, Type

import aiofiles
import structlog

from dbx.exceptions import PipelineError

logger = structlog.get_logger()

CHUNK_SIZE = 64 * 1024
STDERR_TAIL_LINES = 200

ByteStream = AsyncIterator[bytes]
Stage = Callable[[ByteStream], ByteStream]


@dataclass
class ProcessResult:
    """Outcome of a process used as a pipeline sink."""

    returncode: int
    stderr: str
    stdout: str = ""

    @property
    def stderr_lines(self) -> list[str]:
        return [line for line in self.stderr.splitlines() if line.strip()]


async def aclose_stream(stream: ByteStream | None) -> None:
    """Close a stream if it supports it (async generators do)."""
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


async def _collect_output(
    reader: asyncio.StreamReader,
    stage: str,
    verbose: bool,
    channel: str = "stderr",
) -> str:
    """Read a process output pipe to EOF, logging each line and keeping the tail."""
    tail: Deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
    log = logger.info if verbose else logger.debug
    pending = b""

    def emit(raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip("\r")
        tail.append(text)
        log("stage_output", stage=stage, channel=channel, line=text)

    while True:
        chunk = await reader.read(4096)
        if not chunk:
            break
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for raw in lines:
            emit(raw)

    if pending:
        emit(pending)
    return "\n".join(tail)


async def _feed(
    writer: asyncio.StreamWriter,
    upstream: ByteStream,
    stage: str,
) -> None:
    """Copy upstream into a process stdin, then close it."""
    try:
        async for chunk in upstream:
            writer.write(chunk)
            await writer.drain()
    except (BrokenPipeError, ConnectionResetError):
        # Process stopped reading; its exit status tells the story
        logger.debug("stage_stdin_closed_early", stage=stage)
    finally:
        await aclose_stream(upstream)
        if not writer.is_closing():
            writer.close()
        try:
            await writer.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("stage_stdin_close_failed", stage=stage)


async def _spawn(
    argv: Sequence[str],
    upstream: ByteStream | None,
    stage: str,
    error_cls: Type[PipelineError],
    env: Mapping[str, str] | None,
) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if upstream is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
        )
    except OSError as e:
        await aclose_stream(upstream)
        raise error_cls(
            f"Failed to start {stage}: {e}",
            details={"stage": stage, "executable": argv[0]},
        ) from e


async def _abort(
    proc: asyncio.subprocess.Process,
    stage: str,
    feeder: "asyncio.Task[None] | None",
    *readers: "asyncio.Task[str]",
) -> None:
    """Kill a process stage and reap its helper tasks."""
    if feeder is not None and not feeder.done():
        feeder.cancel()
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        logger.debug("stage_killed", stage=stage, pid=proc.pid)
    await proc.wait()
    for reader in readers:
        reader.cancel()

    tasks = [task for task in (feeder, *readers) if task is not None]
    for outcome in await asyncio.gather(*tasks, return_exceptions=True):
        if isinstance(outcome, Exception):
            logger.debug("stage_cleanup_error", stage=stage, error=str(outcome))


async def process_stream(
    argv: Sequence[str],
    upstream: ByteStream | None = None,
    *,
    name: str | None = None,
    error_cls: Type[PipelineError] = PipelineError,
    env: Mapping[str, str] | None = None,
    verbose: bool = False,
) -> ByteStream:
    """
    Run an external command as a streaming stage.

    Args:
        argv: Command and arguments
        upstream: Stream written to the command's stdin (None: no stdin)
        name: Stage name for logs and errors (default: executable name)
        error_cls: Exception raised on non-zero exit or spawn failure
        env: Full environment for the process (None: inherit)
        verbose: Log stderr lines at info instead of debug

    Yields:
        Chunks of the command's stdout

    Raises:
        error_cls: With ``details["stderr"]`` holding the tail of stderr
    """
    stage = name or Path(argv[0]).name
    proc = await _spawn(argv, upstream, stage, error_cls, env)
    logger.debug("stage_started", stage=stage, pid=proc.pid)

    stderr_task = asyncio.create_task(_collect_output(proc.stderr, stage, verbose))
    feeder = (
        asyncio.create_task(_feed(proc.stdin, upstream, stage))
        if upstream is not None
        else None
    )

    finished = False
    try:
        while True:
            chunk = await proc.stdout.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

        # Upstream failures take precedence over this stage's exit status
        if feeder is not None:
            await feeder
        returncode = await proc.wait()
        stderr = await stderr_task
        finished = True
    finally:
        if not finished:
            await _abort(proc, stage, feeder, stderr_task)

    if returncode != 0:
        raise error_cls(
            f"{stage} exited with status {returncode}",
            details={"stage": stage, "returncode": returncode, "stderr": stderr},
        )
    logger.debug("stage_finished", stage=stage)


async def run_process(
    argv: Sequence[str],
    upstream: ByteStream | None = None,
    *,
    name: str | None = None,
    error_cls: Type[PipelineError] = PipelineError,
    env: Mapping[str, str] | None = None,
    verbose: bool = False,
) -> ProcessResult:
    """
    Run an external command as the final sink of a pipeline.

    Unlike process_stream() a non-zero exit is returned, not raised, so the
    caller can classify tool diagnostics. Failures of the upstream stream
    still propagate.
    """
    stage = name or Path(argv[0]).name
    proc = await _spawn(argv, upstream, stage, error_cls, env)
    logger.debug("stage_started", stage=stage, pid=proc.pid)

    stderr_task = asyncio.create_task(_collect_output(proc.stderr, stage, verbose))
    stdout_task = asyncio.create_task(_collect_output(proc.stdout, stage, verbose, channel="stdout"))
    feeder = (
        asyncio.create_task(_feed(proc.stdin, upstream, stage))
        if upstream is not None
        else None
    )

    finished = False
    try:
        if feeder is not None:
            await feeder
        stdout = await stdout_task
        returncode = await proc.wait()
        stderr = await stderr_task
        finished = True
    finally:
        if not finished:
            await _abort(proc, stage, feeder, stderr_task, stdout_task)

    logger.debug("stage_finished", stage=stage, returncode=returncode)
    return ProcessResult(returncode=returncode, stderr=stderr, stdout=stdout)


async def read_file(path: Path, chunk_size: int = CHUNK_SIZE) -> ByteStream:
    """Stream a file from disk."""
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            yield chunk


async def iter_bytes(data: bytes, chunk_size: int = CHUNK_SIZE) -> ByteStream:
    """Stream an in-memory buffer."""
    for offset in range(0, len(data), chunk_size):
        yield data[offset:offset + chunk_size]


async def concat(*streams: ByteStream) -> ByteStream:
    """Yield the streams one after another (each is started only when reached)."""
    try:
        for stream in streams:
            async for chunk in stream:
                yield chunk
    finally:
        for stream in streams:
            await aclose_stream(stream)


async def require_output(
    upstream: ByteStream,
    *,
    stage: str,
    error_cls: Type[PipelineError],
    message: str,
) -> ByteStream:
    """Pass a stream through, failing at its end if it carried no bytes."""
    total = 0
    try:
        async for chunk in upstream:
            total += len(chunk)
            yield chunk
    finally:
        await aclose_stream(upstream)

    if total == 0:
        raise error_cls(message, details={"stage": stage, "stderr": ""})


async def take(upstream: ByteStream, limit: int) -> bytes:
    """Read at most ``limit`` bytes from a stream and close it."""
    buffer = bytearray()
    try:
        async for chunk in upstream:
            buffer.extend(chunk)
            if len(buffer) >= limit:
                break
    finally:
        await aclose_stream(upstream)
    return bytes(buffer[:limit])


async def collect(upstream: ByteStream) -> bytes:
    """Materialize a whole stream (tests and small payloads only)."""
    buffer = bytearray()
    async for chunk in upstream:
        buffer.extend(chunk)
    return bytes(buffer)


def _owner_only(path: str, flags: int) -> int:
    return os.open(path, flags, 0o600)


async def write_atomic(upstream: ByteStream, dest: Path) -> int:
    """
    Write a stream to ``dest`` atomically with owner-only permissions.

    Bytes go to ``<dest>.partial``; the file is renamed into place only
    after the stream completed. On any failure, cancellation included, the
    partial file is removed and the error re-raised, so ``dest`` never
    holds incomplete bytes.

    Returns:
        Number of bytes written
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    partial = dest.with_name(dest.name + ".partial")
    written = 0

    try:
        async with aiofiles.open(partial, "wb", opener=_owner_only) as f:
            async for chunk in upstream:
                await f.write(chunk)
                written += len(chunk)
        os.chmod(partial, 0o600)
        os.replace(partial, dest)
    except BaseException:
        await aclose_stream(upstream)
        partial.unlink(missing_ok=True)
        logger.warning("partial_artifact_removed", path=str(dest), bytes_written=written)
        raise

    logger.debug("artifact_written", path=str(dest), size=written)
    return written
