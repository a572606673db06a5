# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for dbx tests.

Database client tools are replaced by small shell scripts written into a
temporary bin directory, so the full pipeline runs without a database.
"""

import stat
import tempfile
from pathlib import Path
from typing import Generator

import pytest
import pytest_asyncio


def write_script(directory: Path, name: str, body: str) -> Path:
    """Write an executable /bin/sh script and return its path."""
    path = directory / name
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def bin_dir(temp_dir: Path) -> Path:
    """Directory for fake client tools."""
    path = temp_dir / "bin"
    path.mkdir()
    return path


@pytest.fixture
def make_script(bin_dir: Path):
    """Factory writing fake tools into bin_dir."""

    def factory(name: str, body: str) -> Path:
        return write_script(bin_dir, name, body)

    return factory


@pytest.fixture
def test_config(temp_dir: Path):
    """Create a test configuration with one Postgres and one MySQL host."""
    from dbx.builder import create_config
    from dbx.config import DatabaseOptions, DefinerHandling, Engine, HostConfig

    return create_config(
        data_dir=temp_dir / "data",
        config_dir=temp_dir / "config",
        use_containers=False,
        tunnel_settle_seconds=0,
        hosts={
            "pg1": HostConfig(
                name="pg1",
                type=Engine.POSTGRES,
                host="db.internal",
                port=5433,
                user="backup",
                password="secret",
                databases={"app": DatabaseOptions(exclude_data=["sessions", "logs"])},
            ),
            "my1": HostConfig(
                name="my1",
                type=Engine.MYSQL,
                host="mysql.internal",
                user="backup",
                password="secret",
                definer_handling=DefinerHandling.STRIP,
                databases={"shop": DatabaseOptions(exclude_data=["audit_log"])},
            ),
        },
    )


@pytest_asyncio.fixture
async def audit_sink(temp_dir: Path):
    """Create an initialized SQLite audit sink."""
    from dbx.vault.audit import SqliteAuditSink

    sink = SqliteAuditSink(temp_dir / "audit.db")
    await sink.initialize()
    return sink


@pytest.fixture
def fake_pg_dump(bin_dir: Path) -> Path:
    """pg_dump that logs its argv and PGPASSWORD, then prints a small archive."""
    log = bin_dir / "pg_dump.args"
    return write_script(
        bin_dir,
        "pg_dump",
        f"""
if [ "$1" = "--version" ]; then
  echo "pg_dump (PostgreSQL) 16.1"
  exit 0
fi
echo "$@" > "{log}"
echo "$PGPASSWORD" > "{log}.password"
printf 'PGDMP-fake-archive\\n'
printf 'table users\\n'
""",
    )
