# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbx Core - One backup, restore, verify or table analysis per call.

These functions wire the components together: credentials and tunnel
first, then the engine adapter inside the compression/encryption
pipeline, then the integrity recorder. Backup, restore and verify jobs
get a ULID and emit exactly one audit event, preflight failures included.
"""

import contextlib
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, Dict, List

import structlog
from ulid import ULID

from dbx.backup.integrity import (
    load_metadata,
    metadata_path,
    partial_path,
    record_artifact,
    reserve_artifact_path,
)
from dbx.backup.verify import VerificationResult, verify
from dbx.config import DbxConfig, Engine
from dbx.credentials import ConfigCredentialResolver, CredentialResolver
from dbx.engines import ConnectionParams, DumpJob, RestoreJob, TableStats, ToolRunner, get_adapter
from dbx.errors import explain_unknown_engine
from dbx.exceptions import ConfigurationError, DbxError, RestoreError
from dbx.pipeline.composer import backup_pipeline, open_artifact, run_to_file
from dbx.runtime import RuntimeProvider, static_runtime_from_env
from dbx.tunnel.manager import TunnelManager, TunnelSpec, container_bind_address, resolve_endpoint
from dbx.vault.audit import AuditSink, SqliteAuditSink

logger = structlog.get_logger()


@dataclass
class BackupResult:
    """Result of a backup job."""

    job_id: str  # ULID
    host: str
    database: str
    engine: str
    path: Path
    size: int
    sha256: str
    encryption: str
    tool_version: str
    duration_seconds: float
    tunnel_reused: bool | None = None  # None: no tunnel

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["path"] = str(self.path)
        return data


@dataclass
class RestoreResult:
    """Result of a restore job."""

    job_id: str
    source: Path
    database: str
    engine: str
    with_errors: bool
    duration_seconds: float
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = str(self.source)
        return data


def _discard_artifact(path: Path, committed: bool) -> None:
    # Before the rename only the claimed .partial belongs to this job
    victims = [partial_path(path)]
    if committed:
        victims += [path, metadata_path(path)]
    for victim in victims:
        if victim.exists():
            victim.unlink()
            logger.warning("artifact_discarded", path=str(victim))


def _outcome(exc: BaseException) -> str:
    return "cancelled" if not isinstance(exc, Exception) else "failure"


async def run_backup(
    config: DbxConfig,
    host: str,
    database: str,
    *,
    verbose: bool = False,
    credentials: CredentialResolver | None = None,
    tunnels: TunnelManager | None = None,
    audit: AuditSink | None = None,
    runner: ToolRunner | None = None,
) -> BackupResult:
    """
    Back up one database.

    Args:
        config: dbx configuration
        host: Configured host name
        database: Database on that host
        verbose: Pass --verbose to the dump tool and log its output at info
        credentials: Password source (default: host configuration)
        tunnels: Tunnel manager (default: psutil-backed)
        audit: Audit sink (default: SQLite under data_dir)
        runner: Client tool runner (default: from use_containers)

    Returns:
        BackupResult describing the recorded artifact

    Raises:
        ConfigurationError: Before any side effect, for unknown hosts or
            missing key material
        DbxError: Any other failure; nothing this job wrote is left behind
    """
    job_id = str(ULID())
    audit = audit or SqliteAuditSink(config.audit_db_path)
    started_at = datetime.now(UTC)
    started = time.monotonic()
    dest = None
    committed = False
    tunnel_reused = None

    try:
        host_config = config.get_host(host)
        engine = host_config.type
        encryption = config.encryption_type
        parallelism = config.parallel_jobs_for(host, database)

        # Built first: missing encryption keys fail before anything runs
        pipeline = backup_pipeline(config, parallelism, encryption)

        credentials = credentials or ConfigCredentialResolver(config)
        tunnels = tunnels or TunnelManager(settle_seconds=config.tunnel_settle_seconds)
        runner = runner or ToolRunner(container=config.container_for(engine))
        adapter = get_adapter(engine, runner)

        logger.info(
            "backup_started",
            job_id=job_id,
            host=host,
            database=database,
            engine=engine.value,
            encryption=encryption.value,
        )

        dest = reserve_artifact_path(config.data_dir, host, database, started_at, encryption)
        password = await credentials.get_password(host)

        async with contextlib.AsyncExitStack() as stack:
            handle = None
            containerized = runner.container is not None
            if host_config.ssh_tunnel is not None:
                handle = await stack.enter_async_context(
                    tunnels.tunnel(
                        TunnelSpec.from_config(host_config.ssh_tunnel),
                        bind_address=container_bind_address() if containerized else None,
                    )
                )
                tunnel_reused = handle.reused

            effective_host, effective_port = resolve_endpoint(
                host_config, handle, containerized=containerized
            )
            params = ConnectionParams(
                host=effective_host,
                port=effective_port,
                user=host_config.user,
                password=password,
                database=database,
            )
            job = DumpJob(
                host=host,
                database=database,
                engine=engine,
                exclusions=frozenset(config.excluded_tables(host, database)),
                parallelism=parallelism,
                verbose=verbose,
                definer_handling=host_config.definer_handling,
            )

            tool_version = await adapter.tool_version()
            await run_to_file(adapter.dump(params, job), pipeline, dest)
            committed = True

        artifact = await record_artifact(
            dest,
            host=host,
            database=database,
            engine=engine,
            encryption=encryption,
            timestamp=started_at,
            duration_seconds=time.monotonic() - started,
            tool_version=tool_version,
        )

    except BaseException as e:
        if dest is not None:
            _discard_artifact(dest, committed)
        logger.error(
            "backup_failed",
            job_id=job_id,
            host=host,
            database=database,
            error=str(e) or type(e).__name__,
        )
        await audit.record(
            "backup",
            _outcome(e),
            job_id=job_id,
            host=host,
            database=database,
            error=str(e) or type(e).__name__,
        )
        raise

    result = BackupResult(
        job_id=job_id,
        host=host,
        database=database,
        engine=engine.value,
        path=artifact.path,
        size=artifact.size,
        sha256=artifact.sha256,
        encryption=encryption.value,
        tool_version=artifact.tool_version,
        duration_seconds=artifact.duration_seconds,
        tunnel_reused=tunnel_reused,
    )
    await audit.record(
        "backup",
        "success",
        job_id=job_id,
        host=host,
        database=database,
        path=str(artifact.path),
        size=artifact.size,
        duration_seconds=round(artifact.duration_seconds, 3),
    )
    logger.info(
        "backup_completed",
        job_id=job_id,
        path=str(artifact.path),
        size=artifact.size,
        sha256=artifact.sha256,
    )
    return result


def _database_from_name(path: Path) -> str | None:
    # <database>_<YYYYmmdd>_<HHMMSS>[-N].sql...
    stem = path.name.split(".", 1)[0]
    parts = stem.rsplit("_", 2)
    if len(parts) == 3 and parts[1].isdigit() and parts[2].split("-", 1)[0].isdigit():
        return parts[0]
    return None


async def _restore_job(source: Path, database: str | None, engine: Engine | str | None) -> RestoreJob:
    if not source.is_file():
        raise RestoreError(f"Backup file not found: {source}", details={"path": str(source)})

    metadata = await load_metadata(source) or {}
    if engine is None and metadata.get("type"):
        engine = metadata["type"]
    if engine is None:
        raise ConfigurationError(explain_unknown_engine(str(source)), details={"path": str(source)})
    try:
        engine = Engine(engine)
    except ValueError as exc:
        raise ConfigurationError(
            f"Unsupported engine {engine!r} for {source}",
            details={"path": str(source), "engine": str(engine)},
        ) from exc

    database = database or metadata.get("database") or _database_from_name(source)
    if not database:
        raise ConfigurationError(
            f"Cannot determine the target database for {source}",
            details={"path": str(source)},
        )
    return RestoreJob(source=source, target_database=database, engine=engine)


async def run_restore(
    config: DbxConfig,
    source: Path,
    database: str | None = None,
    *,
    engine: Engine | str | None = None,
    verbose: bool = False,
    runtime: RuntimeProvider | None = None,
    audit: AuditSink | None = None,
    runner: ToolRunner | None = None,
) -> RestoreResult:
    """
    Restore an artifact into a database, creating it if needed.

    The engine and database default to the sidecar values (database also
    falls back to the artifact file name).

    Raises:
        ConfigurationError: Engine/database cannot be determined, or
            decryption key material is missing
        RestoreError: The artifact is missing or the import failed fatally
        DbxError: Decryption or decompression failed
    """
    job_id = str(ULID())
    source = Path(source)
    audit = audit or SqliteAuditSink(config.audit_db_path)
    started = time.monotonic()

    try:
        job = await _restore_job(source, database, engine)
        database = job.target_database

        runtime = runtime or static_runtime_from_env()
        runner = runner or ToolRunner(container=config.container_for(job.engine))
        adapter = get_adapter(job.engine, runner)

        logger.info(
            "restore_started",
            job_id=job_id,
            source=str(source),
            database=database,
            engine=job.engine.value,
        )

        endpoint = await runtime.ensure_running(job.engine)
        async with contextlib.aclosing(open_artifact(job.source, config)) as stream:
            outcome = await adapter.apply(stream, endpoint, job.target_database, verbose)
    except BaseException as e:
        logger.error("restore_failed", job_id=job_id, source=str(source), error=str(e) or type(e).__name__)
        await audit.record(
            "restore",
            _outcome(e),
            job_id=job_id,
            source=str(source),
            database=database,
            error=str(e) or type(e).__name__,
        )
        raise

    result = RestoreResult(
        job_id=job_id,
        source=source,
        database=job.target_database,
        engine=job.engine.value,
        with_errors=outcome.with_errors,
        duration_seconds=time.monotonic() - started,
        diagnostics=outcome.diagnostics,
    )
    await audit.record(
        "restore",
        "completed_with_errors" if outcome.with_errors else "success",
        job_id=job_id,
        source=str(source),
        database=database,
        duration_seconds=round(result.duration_seconds, 3),
        diagnostics=len(outcome.diagnostics),
    )
    logger.info(
        "restore_completed",
        job_id=job_id,
        database=database,
        with_errors=outcome.with_errors,
    )
    return result


async def run_verify(
    config: DbxConfig,
    path: Path,
    *,
    audit: AuditSink | None = None,
) -> VerificationResult:
    """
    Verify one artifact and audit the outcome.

    Raises:
        VerificationError: If the artifact does not exist
    """
    job_id = str(ULID())
    audit = audit or SqliteAuditSink(config.audit_db_path)

    try:
        result = await verify(Path(path), config)
    except DbxError as e:
        await audit.record("verify", "failure", job_id=job_id, path=str(path), error=str(e))
        raise

    await audit.record(
        "verify",
        result.status.value,
        job_id=job_id,
        path=str(path),
        expected=result.expected,
        actual=result.actual,
    )
    return result


@dataclass
class TableAnalysis:
    """Per-table statistics of one source database, largest table first."""

    host: str
    database: str
    engine: str
    tables: List[TableStats] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return sum(table.rows for table in self.tables)

    @property
    def total_bytes(self) -> int:
        return sum(table.size_bytes for table in self.tables)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_rows"] = self.total_rows
        data["total_bytes"] = self.total_bytes
        return data


async def run_analyze(
    config: DbxConfig,
    host: str,
    database: str,
    *,
    credentials: CredentialResolver | None = None,
    tunnels: TunnelManager | None = None,
    runner: ToolRunner | None = None,
) -> TableAnalysis:
    """
    Report row counts and sizes per table, marking configured exclusions.

    The query runs from this process, through the host's tunnel when one
    is configured, so the tunnel is never bound for containers.

    Raises:
        ConfigurationError: Unknown host
        AnalysisError: The statistics query failed
    """
    host_config = config.get_host(host)
    credentials = credentials or ConfigCredentialResolver(config)
    tunnels = tunnels or TunnelManager(settle_seconds=config.tunnel_settle_seconds)
    adapter = get_adapter(host_config.type, runner)
    exclusions = frozenset(config.excluded_tables(host, database))

    password = await credentials.get_password(host)
    async with contextlib.AsyncExitStack() as stack:
        handle = None
        if host_config.ssh_tunnel is not None:
            handle = await stack.enter_async_context(
                tunnels.tunnel(TunnelSpec.from_config(host_config.ssh_tunnel))
            )
        effective_host, effective_port = resolve_endpoint(host_config, handle, containerized=False)
        params = ConnectionParams(
            host=effective_host,
            port=effective_port,
            user=host_config.user,
            password=password,
            database=database,
        )
        tables = await adapter.analyze_tables(params, exclusions)

    analysis = TableAnalysis(host=host, database=database, engine=host_config.type.value, tables=tables)
    logger.info(
        "tables_analyzed",
        host=host,
        database=database,
        tables=len(tables),
        total_rows=analysis.total_rows,
        total_bytes=analysis.total_bytes,
        excluded=sum(1 for table in tables if table.excluded),
    )
    return analysis
