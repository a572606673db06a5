# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
SQL stream filters.

Both filters work line by line on bytes, so any encoding mysqldump
emits survives untouched outside the rewritten spans.
"""

import re
from typing import Callable

from dbx.config import DefinerHandling
from dbx.pipeline.stages import ByteStream, Stage, aclose_stream

# `user`@`host`; the trailing blanks go too when the clause is removed
_DEFINER_STRIP = re.compile(rb"DEFINER=`[^`]+`@`[^`]+`[ \t]*")
_DEFINER = re.compile(rb"DEFINER=`[^`]+`@`[^`]+`")

RESTORE_PREAMBLE = b"SET foreign_key_checks=0; SET unique_checks=0;\n"
_NOISE_PREFIXES = (b"mysqldump: [Warning]", b"Warning: Using a password")
_VARCHAR_REWRITES = (
    (b"VARCHAR(65000)", b"TEXT"),
    (b"VARCHAR(32000)", b"TEXT"),
)


async def iter_lines(upstream: ByteStream) -> ByteStream:
    """Re-chunk a stream so every chunk is one line (newline kept, if any)."""
    pending = b""
    try:
        async for chunk in upstream:
            pending += chunk
            start = 0
            while True:
                end = pending.find(b"\n", start)
                if end < 0:
                    break
                yield pending[start:end + 1]
                start = end + 1
            pending = pending[start:]
        if pending:
            yield pending
    finally:
        await aclose_stream(upstream)


def _line_filter(transform: Callable[[bytes], bytes | None]) -> Stage:
    async def stage(upstream: ByteStream) -> ByteStream:
        lines = iter_lines(upstream)
        try:
            async for line in lines:
                out = transform(line)
                if out:
                    yield out
        finally:
            await aclose_stream(lines)

    return stage


def _strip(line: bytes) -> bytes:
    return _DEFINER_STRIP.sub(b"", line)


def _current_user(line: bytes) -> bytes:
    return _DEFINER.sub(b"DEFINER=CURRENT_USER", line)


def definer_filter(handling: DefinerHandling) -> Stage:
    """
    Stage rewriting DEFINER=`user`@`host` clauses.

    strip removes the clause, current_user rewrites it to
    DEFINER=CURRENT_USER, passthrough returns the stream itself.
    """
    handling = DefinerHandling(handling)
    if handling is DefinerHandling.PASSTHROUGH:
        return lambda upstream: upstream
    if handling is DefinerHandling.CURRENT_USER:
        return _line_filter(_current_user)
    return _line_filter(_strip)


def _sanitize(line: bytes) -> bytes | None:
    if line.startswith(_NOISE_PREFIXES):
        return None
    for old, new in _VARCHAR_REWRITES:
        if old in line:
            line = line.replace(old, new)
    return line


async def mysql_restore_filter(upstream: ByteStream) -> ByteStream:
    """
    Prepare a mysqldump stream for import.

    Disables FK and unique checks up front, drops client warnings that
    leaked into the dump and narrows VARCHAR lengths MariaDB rejects.
    """
    sanitized = _line_filter(_sanitize)(upstream)
    try:
        yield RESTORE_PREAMBLE
        async for line in sanitized:
            yield line
    finally:
        await aclose_stream(sanitized)
        await aclose_stream(upstream)
