# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the engine adapters.

The client tools are fake shell scripts, so these tests check argv,
environment handling and exit-status classification, not SQL.
"""

import pytest

from dbx.config import DefinerHandling, Engine
from dbx.engines import (
    ConnectionEndpoint,
    ConnectionParams,
    DumpJob,
    TableStats,
    ToolRunner,
    get_adapter,
    rank_tables,
)
from dbx.engines.mysql import MySQLAdapter, data_args, schema_args
from dbx.engines.postgres import PostgresAdapter, dump_args, restore_args
from dbx.exceptions import AnalysisError, ConfigurationError, DumpError, RestoreError
from dbx.pipeline.stages import collect, iter_bytes

PARAMS = ConnectionParams(host="127.0.0.1", port=15432, user="backup", password="s3cret")
ENDPOINT = ConnectionEndpoint(host="localhost", port=5432, user="postgres", password="pw")


def pg_job(**kwargs) -> DumpJob:
    defaults = dict(
        host="pg1",
        database="app",
        engine=Engine.POSTGRES,
        exclusions=frozenset({"sessions", "logs"}),
    )
    return DumpJob(**{**defaults, **kwargs})


def mysql_job(**kwargs) -> DumpJob:
    defaults = dict(
        host="my1",
        database="shop",
        engine=Engine.MYSQL,
        exclusions=frozenset({"audit_log"}),
        definer_handling=DefinerHandling.STRIP,
    )
    return DumpJob(**{**defaults, **kwargs})


async def _noop_ensure(self, endpoint, database):
    return None


# ============================================================================
# Adapter lookup and tool runner
# ============================================================================

def test_get_adapter_dispatch():
    assert isinstance(get_adapter("postgresql"), PostgresAdapter)
    assert isinstance(get_adapter(Engine.MYSQL), MySQLAdapter)
    assert isinstance(get_adapter("mariadb"), MySQLAdapter)

    with pytest.raises(ConfigurationError, match="Unsupported engine"):
        get_adapter("oracle")


def test_tool_runner_local_command():
    argv, env = ToolRunner().command("pg_dump", ["--version"], {"PGPASSWORD": "s3cret"})

    assert argv == ["pg_dump", "--version"]
    assert env["PGPASSWORD"] == "s3cret"


def test_tool_runner_container_keeps_password_off_argv():
    runner = ToolRunner(container="postgres-dbx")

    argv, env = runner.command("pg_dump", ["app"], {"PGPASSWORD": "s3cret"})

    assert argv == ["docker", "exec", "-i", "-e", "PGPASSWORD", "postgres-dbx", "pg_dump", "app"]
    assert "s3cret" not in " ".join(argv)
    assert env["PGPASSWORD"] == "s3cret"


def test_tool_runner_drops_empty_secrets():
    argv, _ = ToolRunner(container="mysql-dbx").command("mysql", ["shop"], {"MYSQL_PWD": ""})

    assert "-e" not in argv


@pytest.mark.asyncio
async def test_tool_runner_version(fake_pg_dump):
    runner = ToolRunner(executables={"pg_dump": str(fake_pg_dump)})

    assert await runner.version("pg_dump") == "pg_dump (PostgreSQL) 16.1"


@pytest.mark.asyncio
async def test_tool_runner_version_unknown_when_missing(temp_dir):
    runner = ToolRunner(executables={"pg_dump": str(temp_dir / "missing")})

    assert await runner.version("pg_dump") == "unknown"


# ============================================================================
# PostgreSQL
# ============================================================================

def test_pg_dump_args():
    args = dump_args(PARAMS, pg_job(verbose=True))

    assert args == [
        "--host=127.0.0.1",
        "--port=15432",
        "--username=backup",
        "--format=custom",
        "--compress=0",
        "--verbose",
        "--exclude-table-data=logs",
        "--exclude-table-data=sessions",
        "app",
    ]
    assert "s3cret" not in " ".join(args)


def test_pg_restore_args():
    assert restore_args(ENDPOINT, "app_copy") == [
        "--host=localhost",
        "--port=5432",
        "--username=postgres",
        "--dbname=app_copy",
        "--no-owner",
        "--no-privileges",
    ]


@pytest.mark.asyncio
async def test_pg_dump_streams_output(fake_pg_dump, bin_dir):
    adapter = PostgresAdapter(ToolRunner(executables={"pg_dump": str(fake_pg_dump)}))

    out = await collect(adapter.dump(PARAMS, pg_job()))

    assert out == b"PGDMP-fake-archive\ntable users\n"
    logged = (bin_dir / "pg_dump.args").read_text()
    assert "--exclude-table-data=sessions" in logged
    assert (bin_dir / "pg_dump.args.password").read_text().strip() == "s3cret"


@pytest.mark.asyncio
async def test_pg_dump_empty_output_is_error(make_script):
    script = make_script("pg_dump", "exit 0\n")
    adapter = PostgresAdapter(ToolRunner(executables={"pg_dump": str(script)}))

    with pytest.raises(DumpError, match="no output"):
        await collect(adapter.dump(PARAMS, pg_job()))


@pytest.mark.asyncio
async def test_pg_dump_failure_carries_stderr(make_script):
    script = make_script(
        "pg_dump",
        'echo "pg_dump: error: connection to server failed" >&2\nexit 1\n',
    )
    adapter = PostgresAdapter(ToolRunner(executables={"pg_dump": str(script)}))

    with pytest.raises(DumpError) as exc_info:
        await collect(adapter.dump(PARAMS, pg_job()))

    assert "connection to server failed" in exc_info.value.stderr
    assert exc_info.value.details["returncode"] == 1


@pytest.mark.asyncio
async def test_pg_restore_success(make_script, bin_dir, monkeypatch):
    monkeypatch.setattr(PostgresAdapter, "ensure_database", _noop_ensure)
    captured = bin_dir / "restore.in"
    script = make_script("pg_restore", f'cat > "{captured}"\n')
    adapter = PostgresAdapter(ToolRunner(executables={"pg_restore": str(script)}))

    outcome = await adapter.apply(iter_bytes(b"PGDMP archive"), ENDPOINT, "app")

    assert not outcome.with_errors
    assert outcome.diagnostics == []
    assert captured.read_bytes() == b"PGDMP archive"


@pytest.mark.asyncio
async def test_pg_restore_errors_ignored_completes_with_errors(make_script, monkeypatch):
    monkeypatch.setattr(PostgresAdapter, "ensure_database", _noop_ensure)
    script = make_script(
        "pg_restore",
        """cat > /dev/null
echo 'pg_restore: error: could not execute query: ERROR:  role "app" does not exist' >&2
echo 'pg_restore: processing item 42' >&2
echo 'pg_restore: warning: errors ignored on restore: 1' >&2
exit 1
""",
    )
    adapter = PostgresAdapter(ToolRunner(executables={"pg_restore": str(script)}))

    outcome = await adapter.apply(iter_bytes(b"PGDMP archive"), ENDPOINT, "app")

    assert outcome.with_errors
    assert len(outcome.diagnostics) == 2
    assert outcome.diagnostics[0].startswith("pg_restore: error:")


@pytest.mark.asyncio
async def test_pg_restore_fatal_failure_raises(make_script, monkeypatch):
    monkeypatch.setattr(PostgresAdapter, "ensure_database", _noop_ensure)
    script = make_script(
        "pg_restore",
        "cat > /dev/null\necho 'pg_restore: error: input file does not appear to be a valid archive' >&2\nexit 1\n",
    )
    adapter = PostgresAdapter(ToolRunner(executables={"pg_restore": str(script)}))

    with pytest.raises(RestoreError) as exc_info:
        await adapter.apply(iter_bytes(b"garbage"), ENDPOINT, "app")

    assert "valid archive" in exc_info.value.stderr


# ============================================================================
# MySQL
# ============================================================================

def test_mysql_pass_args():
    schema = schema_args(PARAMS, mysql_job())
    data = data_args(PARAMS, mysql_job())

    assert "--no-data" in schema and "--routines" in schema
    assert not any(arg.startswith("--ignore-table") for arg in schema)
    assert "--no-create-info" in data
    assert "--ignore-table=shop.audit_log" in data
    assert schema[-1] == data[-1] == "shop"


@pytest.fixture
def fake_mysqldump(make_script, bin_dir):
    log = bin_dir / "mysqldump.calls"
    return make_script(
        "mysqldump",
        f"""echo "$MYSQL_PWD $*" >> "{log}"
case " $* " in
  *" --no-data "*)
    printf 'CREATE TABLE `orders` (`id` int);\\n'
    printf 'CREATE DEFINER=`root`@`%%` TRIGGER `t1` BEFORE INSERT ON `orders` FOR EACH ROW SET @x = 1;\\n'
    ;;
  *)
    printf 'INSERT INTO `orders` VALUES (1);\\n'
    ;;
esac
""",
    )


@pytest.mark.asyncio
async def test_mysql_dump_runs_schema_then_data(fake_mysqldump, bin_dir):
    adapter = MySQLAdapter(ToolRunner(executables={"mysqldump": str(fake_mysqldump)}))

    out = await collect(adapter.dump(PARAMS, mysql_job()))

    assert out == (
        b"CREATE TABLE `orders` (`id` int);\n"
        b"CREATE TRIGGER `t1` BEFORE INSERT ON `orders` FOR EACH ROW SET @x = 1;\n"
        b"INSERT INTO `orders` VALUES (1);\n"
    )
    calls = (bin_dir / "mysqldump.calls").read_text().splitlines()
    assert len(calls) == 2
    assert calls[0].startswith("s3cret ") and "--no-data" in calls[0]
    assert "--ignore-table" not in calls[0]
    assert "--ignore-table=shop.audit_log" in calls[1]


@pytest.mark.asyncio
async def test_mysql_empty_schema_pass_skips_data_pass(make_script, bin_dir):
    log = bin_dir / "mysqldump.calls"
    script = make_script("mysqldump", f'echo "$*" >> "{log}"\nexit 0\n')
    adapter = MySQLAdapter(ToolRunner(executables={"mysqldump": str(script)}))

    with pytest.raises(DumpError, match="Schema dump produced empty output"):
        await collect(adapter.dump(PARAMS, mysql_job()))

    assert len(log.read_text().splitlines()) == 1


@pytest.mark.asyncio
async def test_mysql_data_pass_failure_raises(make_script, bin_dir):
    log = bin_dir / "mysqldump.calls"
    script = make_script(
        "mysqldump",
        f"""echo "$*" >> "{log}"
case " $* " in
  *" --no-data "*) printf 'CREATE TABLE `orders` (`id` int);\\n' ;;
  *)
    printf 'INSERT INTO `orders` VALUES (1'
    echo "mysqldump: Error 2013: Lost connection to MySQL server during query when dumping table orders" >&2
    exit 2
    ;;
esac
""",
    )
    adapter = MySQLAdapter(ToolRunner(executables={"mysqldump": str(script)}))

    with pytest.raises(DumpError) as exc_info:
        await collect(adapter.dump(PARAMS, mysql_job()))

    assert "Lost connection" in exc_info.value.stderr
    assert len(log.read_text().splitlines()) == 2


@pytest.mark.asyncio
async def test_mysql_apply_imports_sanitized_stream(make_script, bin_dir, monkeypatch):
    monkeypatch.setattr(MySQLAdapter, "ensure_database", _noop_ensure)
    captured = bin_dir / "mysql.in"
    script = make_script("mysql", f'echo "$*" > "{captured}.args"\ncat > "{captured}"\n')
    adapter = MySQLAdapter(ToolRunner(executables={"mysql": str(script)}))

    outcome = await adapter.apply(
        iter_bytes(b"CREATE TABLE t (c VARCHAR(65000));\n"),
        ConnectionEndpoint(host="localhost", port=3306, user="root"),
        "shop_copy",
    )

    assert not outcome.with_errors
    assert captured.read_bytes() == (
        b"SET foreign_key_checks=0; SET unique_checks=0;\n"
        b"CREATE TABLE t (c TEXT);\n"
    )
    assert (bin_dir / "mysql.in.args").read_text().split()[-1] == "shop_copy"


@pytest.mark.asyncio
async def test_mysql_apply_failure_raises(make_script, monkeypatch):
    monkeypatch.setattr(MySQLAdapter, "ensure_database", _noop_ensure)
    script = make_script(
        "mysql",
        "cat > /dev/null\necho 'ERROR 1064 (42000) at line 3: syntax error' >&2\nexit 1\n",
    )
    adapter = MySQLAdapter(ToolRunner(executables={"mysql": str(script)}))

    with pytest.raises(RestoreError) as exc_info:
        await adapter.apply(
            iter_bytes(b"BROKEN;\n"),
            ConnectionEndpoint(host="localhost", port=3306, user="root"),
            "shop",
        )

    assert "ERROR 1064" in exc_info.value.stderr


# ============================================================================
# Table statistics
# ============================================================================

def test_rank_tables_orders_by_size_and_marks_exclusions():
    tables = rank_tables(
        [("public.users", 10, 4096), ("public.sessions", 5000, 1 << 20), ("orders", None, None)],
        frozenset({"sessions", "orders"}),
    )

    assert [table.name for table in tables] == ["public.sessions", "public.users", "orders"]
    assert [table.excluded for table in tables] == [True, False, True]
    assert tables[2] == TableStats(name="orders", rows=0, size_bytes=0, excluded=True)


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows
        self.executed = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    async def execute(self, query, args=None):
        self.executed.append((query, args))

    async def fetchall(self):
        return self.rows


class FakeMySQLConnection:
    def __init__(self, rows):
        self.cur = FakeCursor(rows)
        self.closed = False

    def cursor(self):
        return self.cur

    def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_mysql_analyze_tables(monkeypatch):
    import aiomysql

    conn = FakeMySQLConnection([("orders", 120, 32768), ("audit_log", 90000, 9437184)])

    async def fake_connect(**kwargs):
        assert kwargs["password"] == "s3cret"
        return conn

    monkeypatch.setattr(aiomysql, "connect", fake_connect)
    adapter = MySQLAdapter(ToolRunner())
    params = ConnectionParams(host="127.0.0.1", port=13306, user="backup", password="s3cret", database="shop")

    tables = await adapter.analyze_tables(params, frozenset({"audit_log"}))

    assert [(t.name, t.rows, t.size_bytes, t.excluded) for t in tables] == [
        ("audit_log", 90000, 9437184, True),
        ("orders", 120, 32768, False),
    ]
    assert conn.cur.executed[0][1] == ("shop",)
    assert conn.closed


@pytest.mark.asyncio
async def test_postgres_analyze_connection_failure(monkeypatch):
    import asyncpg

    async def refuse(**kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(asyncpg, "connect", refuse)
    params = ConnectionParams(host="127.0.0.1", port=15432, user="backup", database="app")

    with pytest.raises(AnalysisError, match="Cannot connect to PostgreSQL"):
        await PostgresAdapter(ToolRunner()).analyze_tables(params)
