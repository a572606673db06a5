# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Engine adapter building blocks.

Adapters never talk to a database socket for dumping or importing: they
build argv for the engine's client tools and hand it to the pipeline.
ToolRunner decides whether those tools run on this machine or inside a
container via ``docker exec``. Passwords always travel in the process
environment, never on the command line.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, List, Mapping, Protocol, Sequence, Tuple

import structlog

from dbx.config import DefinerHandling, Engine
from dbx.exceptions import PipelineError
from dbx.pipeline.stages import ByteStream, run_process

logger = structlog.get_logger()


@dataclass(frozen=True)
class ConnectionParams:
    """Where and as whom a dump connects."""

    host: str
    port: int
    user: str
    password: str = field(default="", repr=False)
    database: str = ""


@dataclass(frozen=True)
class ConnectionEndpoint:
    """A database server a restore is applied to."""

    host: str
    port: int
    user: str
    password: str = field(default="", repr=False)


@dataclass(frozen=True)
class DumpJob:
    """One database dump request."""

    host: str
    database: str
    engine: Engine
    exclusions: FrozenSet[str] = frozenset()
    parallelism: int = 1
    verbose: bool = False
    definer_handling: DefinerHandling = DefinerHandling.STRIP


@dataclass(frozen=True)
class RestoreJob:
    """One restore request."""

    source: Path
    target_database: str
    engine: Engine


@dataclass(frozen=True)
class TableStats:
    """Row estimate and on-disk size of one table."""

    name: str
    rows: int
    size_bytes: int
    excluded: bool = False


def rank_tables(
    rows: Sequence[Tuple[str, int | None, int | None]],
    exclusions: FrozenSet[str] = frozenset(),
) -> List[TableStats]:
    """
    Turn (name, rows, size) query rows into TableStats, largest first.

    A table counts as excluded when its name matches an exclusion with or
    without the schema prefix.
    """
    tables = [
        TableStats(
            name=name,
            rows=max(int(count or 0), 0),
            size_bytes=int(size or 0),
            excluded=name in exclusions or name.rsplit(".", 1)[-1] in exclusions,
        )
        for name, count, size in rows
    ]
    tables.sort(key=lambda table: (-table.size_bytes, table.name))
    return tables


@dataclass
class RestoreOutcome:
    """Result of applying a dump to a database."""

    database: str
    engine: Engine
    with_errors: bool = False
    diagnostics: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ToolRunner:
    """
    Build argv/env for a client tool.

    Args:
        container: Run tools via ``docker exec -i`` in this container (None: locally)
        executables: Per-tool executable overrides (tool name -> path)
        docker: docker CLI executable
    """

    container: str | None = None
    executables: Mapping[str, str] = field(default_factory=dict)
    docker: str = "docker"

    def command(
        self,
        tool: str,
        args: Sequence[str],
        secret_env: Mapping[str, str] | None = None,
    ) -> Tuple[List[str], dict]:
        secret_env = {k: v for k, v in (secret_env or {}).items() if v}
        executable = self.executables.get(tool, tool)
        env = {**os.environ, **secret_env}

        if self.container is None:
            return [executable, *args], env

        # `-e NAME` without a value copies NAME from the docker client's environment
        passthrough: List[str] = []
        for name in secret_env:
            passthrough += ["-e", name]
        return [self.docker, "exec", "-i", *passthrough, self.container, executable, *args], env

    async def version(self, tool: str) -> str:
        """First line of ``<tool> --version``, or 'unknown'."""
        argv, env = self.command(tool, ["--version"])
        try:
            result = await run_process(argv, name=tool, env=env)
        except PipelineError as e:
            logger.warning("tool_version_unavailable", tool=tool, error=e.message)
            return "unknown"
        if result.returncode != 0 or not result.stdout.strip():
            return "unknown"
        return result.stdout.strip().splitlines()[0]


class DumpAdapter(Protocol):
    """Produces the raw dump byte stream of one database."""

    engine: Engine
    tool: str

    def dump(self, params: ConnectionParams, job: DumpJob) -> ByteStream: ...

    async def tool_version(self) -> str: ...


class TableAnalyzer(Protocol):
    """Reads per-table statistics from a source database."""

    async def analyze_tables(
        self, params: ConnectionParams, exclusions: FrozenSet[str] = frozenset()
    ) -> List[TableStats]: ...


class RestoreAdapter(Protocol):
    """Applies a decoded dump stream to a target database."""

    engine: Engine

    async def ensure_database(self, endpoint: ConnectionEndpoint, database: str) -> None: ...

    async def apply(
        self,
        stream: ByteStream,
        endpoint: ConnectionEndpoint,
        database: str,
        verbose: bool = False,
    ) -> RestoreOutcome: ...
