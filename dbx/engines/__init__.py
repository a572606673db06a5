# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Engine adapters - dump and restore per database engine.
"""

from dbx.config import Engine
from dbx.engines.base import (
    ConnectionEndpoint,
    ConnectionParams,
    DumpAdapter,
    DumpJob,
    RestoreAdapter,
    RestoreJob,
    RestoreOutcome,
    TableAnalyzer,
    TableStats,
    ToolRunner,
    rank_tables,
)
from dbx.exceptions import ConfigurationError


def get_adapter(engine: Engine | str, runner: ToolRunner | None = None):
    """
    Return the adapter for an engine.

    Both adapters implement DumpAdapter and RestoreAdapter.

    Raises:
        ConfigurationError: If the engine is unsupported
    """
    try:
        engine = Engine(engine)
    except ValueError as exc:
        raise ConfigurationError(f"Unsupported engine: {engine}") from exc

    if engine is Engine.POSTGRES:
        from dbx.engines.postgres import PostgresAdapter

        return PostgresAdapter(runner)
    else:
        from dbx.engines.mysql import MySQLAdapter

        return MySQLAdapter(runner)


__all__ = [
    "ConnectionEndpoint",
    "ConnectionParams",
    "DumpAdapter",
    "DumpJob",
    "RestoreAdapter",
    "RestoreJob",
    "RestoreOutcome",
    "TableAnalyzer",
    "TableStats",
    "ToolRunner",
    "get_adapter",
    "rank_tables",
]
