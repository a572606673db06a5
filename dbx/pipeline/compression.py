# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbx Compression - Streaming zstd/gzip stages.

Compression is CPU-bound, so every chunk is handed to a thread pool and
the event loop keeps serving the process pipes around it. zstd frames are
written with the configured worker count; restore accepts both zstd
(possibly multi-frame) and gzip (possibly multi-member) input.
"""

import asyncio
import zlib
from concurrent.futures import ThreadPoolExecutor

import structlog
import zstandard as zstd

from dbx.exceptions import CompressionError
from dbx.pipeline.stages import ByteStream, Stage, aclose_stream

logger = structlog.get_logger()

# Thread pool for CPU-bound codec work
_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="dbx-codec")

DEFAULT_ZSTD_LEVEL = 3


async def _run(func, *args):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, func, *args)


def zstd_compress(level: int = DEFAULT_ZSTD_LEVEL, threads: int = 1) -> Stage:
    """
    Build a zstd compression stage.

    Args:
        level: zstd level (1-22)
        threads: Worker threads used by the compressor (1 = single-threaded)

    Returns:
        Stage producing one zstd frame for the whole input
    """

    async def stage(upstream: ByteStream) -> ByteStream:
        try:
            cctx = zstd.ZstdCompressor(level=level, threads=threads if threads > 1 else 0)
            cobj = cctx.compressobj()
        except zstd.ZstdError as e:
            await aclose_stream(upstream)
            raise CompressionError(
                f"Cannot create zstd compressor: {e}",
                details={"stage": "zstd", "level": level, "threads": threads},
            ) from e

        raw_size = 0
        compressed_size = 0
        try:
            async for chunk in upstream:
                raw_size += len(chunk)
                try:
                    out = await _run(cobj.compress, chunk)
                except zstd.ZstdError as e:
                    raise CompressionError(
                        f"zstd compression failed: {e}",
                        details={"stage": "zstd", "offset": raw_size},
                    ) from e
                if out:
                    compressed_size += len(out)
                    yield out

            try:
                tail = await _run(cobj.flush)
            except zstd.ZstdError as e:
                raise CompressionError(
                    f"zstd compression failed: {e}",
                    details={"stage": "zstd", "offset": raw_size},
                ) from e
            if tail:
                compressed_size += len(tail)
                yield tail
        finally:
            await aclose_stream(upstream)

        ratio = raw_size / compressed_size if compressed_size else 0
        logger.debug(
            "compression_complete",
            original_size=raw_size,
            compressed_size=compressed_size,
            compression_ratio=f"{ratio:.2f}x",
        )

    return stage


def _zstd_feed(state: dict, data: bytes) -> bytes:
    """Decompress one chunk, starting a new frame whenever one ends."""
    out = bytearray()
    while data:
        dobj = state["dobj"]
        out.extend(dobj.decompress(data))
        if not dobj.eof:
            state["in_frame"] = True
            break
        data = dobj.unused_data
        state["dobj"] = state["dctx"].decompressobj()
        state["frames"] += 1
        state["in_frame"] = False
    return bytes(out)


async def zstd_decompress(upstream: ByteStream) -> ByteStream:
    """Decompress a zstd stream (one or more concatenated frames)."""
    dctx = zstd.ZstdDecompressor()
    state = {"dctx": dctx, "dobj": dctx.decompressobj(), "frames": 0, "in_frame": False}
    try:
        async for chunk in upstream:
            try:
                out = await _run(_zstd_feed, state, chunk)
            except zstd.ZstdError as e:
                raise CompressionError(
                    f"zstd decompression failed: {e}",
                    details={"stage": "zstd", "frames": state["frames"]},
                ) from e
            if out:
                yield out
    finally:
        await aclose_stream(upstream)

    if state["in_frame"]:
        raise CompressionError(
            "zstd stream is truncated",
            details={"stage": "zstd", "frames": state["frames"]},
        )


def _gzip_feed(state: dict, data: bytes) -> bytes:
    out = bytearray()
    while data:
        dobj = state["dobj"]
        out.extend(dobj.decompress(data))
        if not dobj.eof:
            state["in_member"] = True
            break
        data = dobj.unused_data
        state["dobj"] = zlib.decompressobj(16 + zlib.MAX_WBITS)
        state["in_member"] = False
    return bytes(out)


async def gzip_decompress(upstream: ByteStream) -> ByteStream:
    """Decompress a gzip stream (one or more concatenated members)."""
    state = {"dobj": zlib.decompressobj(16 + zlib.MAX_WBITS), "in_member": False}
    try:
        async for chunk in upstream:
            try:
                out = await _run(_gzip_feed, state, chunk)
            except zlib.error as e:
                raise CompressionError(
                    f"gzip decompression failed: {e}",
                    details={"stage": "gzip"},
                ) from e
            if out:
                yield out
    finally:
        await aclose_stream(upstream)

    if state["in_member"]:
        raise CompressionError("gzip stream is truncated", details={"stage": "gzip"})
