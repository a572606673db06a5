# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
PostgreSQL adapter - pg_dump / pg_restore.

Backups are a single pg_dump in custom format with pg_dump's own
compression disabled (zstd does that downstream). Excluded tables keep
their schema; only their data is skipped via --exclude-table-data.

Restores stream the custom-format archive into pg_restore's stdin.
pg_restore exits non-zero whenever it skipped a statement; if it says
"errors ignored on restore" the restore ran to completion and the
reported errors are returned as diagnostics instead of raised.
"""

import re
from typing import FrozenSet, List

import structlog

from dbx.config import Engine
from dbx.engines.base import (
    ConnectionEndpoint,
    ConnectionParams,
    DumpJob,
    RestoreOutcome,
    TableStats,
    ToolRunner,
    rank_tables,
)
from dbx.exceptions import AnalysisError, DumpError, RestoreError
from dbx.pipeline.stages import ByteStream, process_stream, require_output, run_process

logger = structlog.get_logger()

_DIAGNOSTIC = re.compile(r"^pg_restore: (error|warning)")
ERRORS_IGNORED = "errors ignored on restore"
MAINTENANCE_DB = "postgres"
TABLE_STATS_QUERY = """
SELECT schemaname || '.' || relname AS name,
       COALESCE(n_live_tup, 0) AS rows,
       pg_total_relation_size(relid) AS size
FROM pg_stat_user_tables
"""


def dump_args(params: ConnectionParams, job: DumpJob) -> List[str]:
    args = [
        f"--host={params.host}",
        f"--port={params.port}",
        f"--username={params.user}",
        "--format=custom",
        "--compress=0",
    ]
    if job.verbose:
        args.append("--verbose")
    for table in sorted(job.exclusions):
        args.append(f"--exclude-table-data={table}")
    args.append(job.database)
    return args


def restore_args(endpoint: ConnectionEndpoint, database: str, verbose: bool = False) -> List[str]:
    args = [
        f"--host={endpoint.host}",
        f"--port={endpoint.port}",
        f"--username={endpoint.user}",
        f"--dbname={database}",
        "--no-owner",
        "--no-privileges",
    ]
    if verbose:
        args.append("--verbose")
    return args


def _quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class PostgresAdapter:
    """Dump and restore adapter for PostgreSQL."""

    engine = Engine.POSTGRES
    tool = "pg_dump"

    def __init__(self, runner: ToolRunner | None = None):
        self.runner = runner or ToolRunner()

    def dump(self, params: ConnectionParams, job: DumpJob) -> ByteStream:
        """
        Stream a custom-format dump of ``job.database``.

        Raises (while iterating):
            DumpError: pg_dump failed, or exited cleanly without output
        """
        argv, env = self.runner.command("pg_dump", dump_args(params, job), {"PGPASSWORD": params.password})
        logger.info(
            "pg_dump_started",
            host=job.host,
            database=job.database,
            endpoint=f"{params.host}:{params.port}",
            excluded=sorted(job.exclusions),
        )
        stream = process_stream(
            argv,
            name="pg_dump",
            error_cls=DumpError,
            env=env,
            verbose=job.verbose,
        )
        return require_output(
            stream,
            stage="pg_dump",
            error_cls=DumpError,
            message="pg_dump produced no output",
        )

    async def tool_version(self) -> str:
        return await self.runner.version("pg_dump")

    async def analyze_tables(
        self, params: ConnectionParams, exclusions: FrozenSet[str] = frozenset()
    ) -> List[TableStats]:
        """Live row estimates and total relation size of every user table."""
        import asyncpg

        try:
            conn = await asyncpg.connect(
                host=params.host,
                port=params.port,
                user=params.user,
                password=params.password or None,
                database=params.database,
            )
        except (OSError, asyncpg.PostgresError) as e:
            raise AnalysisError(
                f"Cannot connect to PostgreSQL at {params.host}:{params.port}: {e}",
                details={"host": params.host, "port": params.port, "database": params.database},
            ) from e

        try:
            records = await conn.fetch(TABLE_STATS_QUERY)
        except asyncpg.PostgresError as e:
            raise AnalysisError(
                f"Failed to get table stats for {params.database}: {e}",
                details={"database": params.database},
            ) from e
        finally:
            await conn.close()

        return rank_tables([(r["name"], r["rows"], r["size"]) for r in records], exclusions)

    async def ensure_database(self, endpoint: ConnectionEndpoint, database: str) -> None:
        """Create ``database`` unless it already exists."""
        import asyncpg

        try:
            conn = await asyncpg.connect(
                host=endpoint.host,
                port=endpoint.port,
                user=endpoint.user,
                password=endpoint.password or None,
                database=MAINTENANCE_DB,
            )
        except (OSError, asyncpg.PostgresError) as e:
            raise RestoreError(
                f"Cannot connect to PostgreSQL at {endpoint.host}:{endpoint.port}: {e}",
                details={"host": endpoint.host, "port": endpoint.port},
            ) from e

        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", database
            )
            if exists:
                logger.debug("database_exists", database=database)
                return
            try:
                await conn.execute(f"CREATE DATABASE {_quote_ident(database)}")
            except asyncpg.DuplicateDatabaseError:
                # Created concurrently between the check and the CREATE
                return
            logger.info("database_created", engine=self.engine.value, database=database)
        except asyncpg.PostgresError as e:
            raise RestoreError(
                f"Cannot create database {database}: {e}",
                details={"database": database},
            ) from e
        finally:
            await conn.close()

    async def apply(
        self,
        stream: ByteStream,
        endpoint: ConnectionEndpoint,
        database: str,
        verbose: bool = False,
    ) -> RestoreOutcome:
        """
        Create the database if needed and pg_restore ``stream`` into it.

        Raises:
            RestoreError: pg_restore failed without completing
        """
        await self.ensure_database(endpoint, database)

        argv, env = self.runner.command(
            "pg_restore", restore_args(endpoint, database, verbose), {"PGPASSWORD": endpoint.password}
        )
        logger.info("pg_restore_started", database=database, endpoint=f"{endpoint.host}:{endpoint.port}")
        result = await run_process(
            argv,
            stream,
            name="pg_restore",
            error_cls=RestoreError,
            env=env,
            verbose=verbose,
        )

        diagnostics = [line for line in result.stderr_lines if _DIAGNOSTIC.match(line)]
        for line in diagnostics:
            logger.warning("pg_restore_diagnostic", database=database, line=line)

        if result.returncode == 0:
            return RestoreOutcome(database=database, engine=self.engine, diagnostics=diagnostics)

        if ERRORS_IGNORED in result.stderr:
            logger.warning(
                "pg_restore_completed_with_errors",
                database=database,
                errors=len(diagnostics),
            )
            return RestoreOutcome(
                database=database,
                engine=self.engine,
                with_errors=True,
                diagnostics=diagnostics,
            )

        raise RestoreError(
            f"pg_restore exited with status {result.returncode}",
            details={
                "stage": "pg_restore",
                "database": database,
                "returncode": result.returncode,
                "stderr": result.stderr,
            },
        )
