# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
MySQL/MariaDB adapter - mysqldump / mysql.

mysqldump has no per-table "schema but no data" switch, so a backup is
two passes streamed back to back:

1. schema for every table (excluded ones included), routines, triggers
   and events, passed through the DEFINER filter
2. data only, with --ignore-table for each excluded table

The restore side pipes the dump through the sanitizing filter into
``mysql <db>``.
"""

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
from dbx.engines.filters import definer_filter, mysql_restore_filter
from dbx.exceptions import AnalysisError, DumpError, RestoreError
from dbx.pipeline.stages import (
    ByteStream,
    aclose_stream,
    concat,
    process_stream,
    require_output,
    run_process,
)

logger = structlog.get_logger()

TABLE_STATS_QUERY = """
SELECT TABLE_NAME, TABLE_ROWS, DATA_LENGTH + INDEX_LENGTH
FROM information_schema.TABLES
WHERE TABLE_SCHEMA = %s
"""


def common_args(params: ConnectionParams, verbose: bool = False) -> List[str]:
    args = [
        f"--host={params.host}",
        f"--port={params.port}",
        f"--user={params.user}",
        "--single-transaction",
        "--set-gtid-purged=OFF",
        "--skip-lock-tables",
    ]
    if verbose:
        args.append("--verbose")
    return args


def schema_args(params: ConnectionParams, job: DumpJob) -> List[str]:
    return common_args(params, job.verbose) + [
        "--no-data",
        "--routines",
        "--triggers",
        "--events",
        job.database,
    ]


def data_args(params: ConnectionParams, job: DumpJob) -> List[str]:
    ignore = [f"--ignore-table={job.database}.{table}" for table in sorted(job.exclusions)]
    return common_args(params, job.verbose) + [
        "--no-create-info",
        "--skip-triggers",
        *ignore,
        job.database,
    ]


def _quote_ident(name: str) -> str:
    return "`" + name.replace("`", "``") + "`"


class MySQLAdapter:
    """Dump and restore adapter for MySQL and MariaDB."""

    engine = Engine.MYSQL
    tool = "mysqldump"

    def __init__(self, runner: ToolRunner | None = None):
        self.runner = runner or ToolRunner()

    def _mysqldump(self, params: ConnectionParams, args: List[str], job: DumpJob, name: str) -> ByteStream:
        argv, env = self.runner.command("mysqldump", args, {"MYSQL_PWD": params.password})
        return process_stream(argv, name=name, error_cls=DumpError, env=env, verbose=job.verbose)

    async def _schema_pass(self, params: ConnectionParams, job: DumpJob) -> ByteStream:
        logger.info("mysqldump_schema_pass", host=job.host, database=job.database)
        raw = self._mysqldump(params, schema_args(params, job), job, "mysqldump-schema")
        filtered = definer_filter(job.definer_handling)(raw)
        checked = require_output(
            filtered,
            stage="mysqldump-schema",
            error_cls=DumpError,
            message="Schema dump produced empty output - check connection and permissions",
        )
        try:
            async for chunk in checked:
                yield chunk
        finally:
            await aclose_stream(checked)

    async def _data_pass(self, params: ConnectionParams, job: DumpJob) -> ByteStream:
        logger.info(
            "mysqldump_data_pass",
            host=job.host,
            database=job.database,
            excluded=sorted(job.exclusions),
        )
        stream = self._mysqldump(params, data_args(params, job), job, "mysqldump-data")
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await aclose_stream(stream)

    def dump(self, params: ConnectionParams, job: DumpJob) -> ByteStream:
        """
        Stream the schema pass followed by the data pass.

        The data pass starts only after the schema pass finished cleanly.

        Raises (while iterating):
            DumpError: Either pass failed, or the schema pass was empty
        """
        return concat(self._schema_pass(params, job), self._data_pass(params, job))

    async def tool_version(self) -> str:
        return await self.runner.version("mysqldump")

    async def analyze_tables(
        self, params: ConnectionParams, exclusions: FrozenSet[str] = frozenset()
    ) -> List[TableStats]:
        """TABLE_ROWS estimates and data + index length from information_schema."""
        import aiomysql

        try:
            conn = await aiomysql.connect(
                host=params.host,
                port=params.port,
                user=params.user,
                password=params.password,
            )
        except (OSError, aiomysql.MySQLError) as e:
            raise AnalysisError(
                f"Cannot connect to MySQL at {params.host}:{params.port}: {e}",
                details={"host": params.host, "port": params.port, "database": params.database},
            ) from e

        try:
            async with conn.cursor() as cur:
                await cur.execute(TABLE_STATS_QUERY, (params.database,))
                rows = await cur.fetchall()
        except aiomysql.MySQLError as e:
            raise AnalysisError(
                f"Failed to get table stats for {params.database}: {e}",
                details={"database": params.database},
            ) from e
        finally:
            conn.close()

        return rank_tables(list(rows), exclusions)

    async def ensure_database(self, endpoint: ConnectionEndpoint, database: str) -> None:
        """CREATE DATABASE IF NOT EXISTS."""
        import aiomysql

        try:
            conn = await aiomysql.connect(
                host=endpoint.host,
                port=endpoint.port,
                user=endpoint.user,
                password=endpoint.password,
            )
        except (OSError, aiomysql.MySQLError) as e:
            raise RestoreError(
                f"Cannot connect to MySQL at {endpoint.host}:{endpoint.port}: {e}",
                details={"host": endpoint.host, "port": endpoint.port},
            ) from e

        try:
            async with conn.cursor() as cur:
                await cur.execute(f"CREATE DATABASE IF NOT EXISTS {_quote_ident(database)}")
            logger.debug("database_ensured", engine=self.engine.value, database=database)
        except aiomysql.MySQLError as e:
            raise RestoreError(
                f"Cannot create database {database}: {e}",
                details={"database": database},
            ) from e
        finally:
            conn.close()

    async def apply(
        self,
        stream: ByteStream,
        endpoint: ConnectionEndpoint,
        database: str,
        verbose: bool = False,
    ) -> RestoreOutcome:
        """
        Create the database if needed and import the sanitized stream.

        Raises:
            RestoreError: mysql exited non-zero
        """
        await self.ensure_database(endpoint, database)

        args = [
            f"--host={endpoint.host}",
            f"--port={endpoint.port}",
            f"--user={endpoint.user}",
            database,
        ]
        argv, env = self.runner.command("mysql", args, {"MYSQL_PWD": endpoint.password})
        logger.info("mysql_import_started", database=database, endpoint=f"{endpoint.host}:{endpoint.port}")
        result = await run_process(
            argv,
            mysql_restore_filter(stream),
            name="mysql",
            error_cls=RestoreError,
            env=env,
            verbose=verbose,
        )
        if result.returncode != 0:
            raise RestoreError(
                f"mysql exited with status {result.returncode}",
                details={
                    "stage": "mysql",
                    "database": database,
                    "returncode": result.returncode,
                    "stderr": result.stderr,
                },
            )
        return RestoreOutcome(database=database, engine=self.engine, diagnostics=result.stderr_lines)
