# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for artifact recording, verification, listing and pruning.
"""

import hashlib
import json
import os
import stat
import time
from datetime import datetime, UTC
from pathlib import Path

import pytest

from dbx.backup import (
    VerificationStatus,
    artifact_path,
    get_backup_stats,
    list_artifacts,
    load_metadata,
    prune_old_backups,
    record_artifact,
    reserve_artifact_path,
    verify,
)
from dbx.backup.integrity import metadata_path, partial_path
from dbx.config import EncryptionType, Engine
from dbx.exceptions import VerificationError
from dbx.pipeline.composer import backup_pipeline, run_to_file
from dbx.pipeline.stages import iter_bytes

WHEN = datetime(2026, 3, 14, 15, 9, 26, tzinfo=UTC)


async def make_artifact(config, host="pg1", database="app", payload=b"-- dump\n" * 100) -> Path:
    dest = artifact_path(config.data_dir, host, database, WHEN)
    await run_to_file(iter_bytes(payload), backup_pipeline(config), dest)
    return dest


async def record(path: Path, host="pg1", database="app"):
    return await record_artifact(
        path,
        host=host,
        database=database,
        engine=Engine.POSTGRES,
        encryption=EncryptionType.NONE,
        timestamp=WHEN,
        duration_seconds=1.23456,
        tool_version="pg_dump (PostgreSQL) 16.1",
    )


def test_artifact_path_layout(temp_dir):
    assert artifact_path(temp_dir, "pg1", "app", WHEN) == (
        temp_dir / "pg1" / "app" / "app_20260314_150926.sql.zst"
    )
    assert artifact_path(temp_dir, "pg1", "app", WHEN, EncryptionType.AGE).name == (
        "app_20260314_150926.sql.zst.age"
    )


def test_reserve_artifact_path_skips_taken_names(temp_dir):
    first = reserve_artifact_path(temp_dir, "pg1", "app", WHEN, EncryptionType.AGE)
    second = reserve_artifact_path(temp_dir, "pg1", "app", WHEN, EncryptionType.AGE)

    assert first.name == "app_20260314_150926.sql.zst.age"
    assert second.name == "app_20260314_150926-1.sql.zst.age"
    assert stat.S_IMODE(partial_path(first).stat().st_mode) == 0o600
    assert partial_path(second).exists()
    assert not first.exists()


def test_reserve_artifact_path_never_reuses_finished_artifacts(temp_dir):
    taken = artifact_path(temp_dir, "pg1", "app", WHEN)
    taken.parent.mkdir(parents=True)
    taken.write_bytes(b"finished")
    metadata_path(taken.with_name("app_20260314_150926-1.sql.zst")).write_text("{}")

    reserved = reserve_artifact_path(temp_dir, "pg1", "app", WHEN)

    assert reserved.name == "app_20260314_150926-2.sql.zst"
    assert taken.read_bytes() == b"finished"


@pytest.mark.asyncio
async def test_record_artifact_writes_sidecar(test_config):
    path = await make_artifact(test_config)

    artifact = await record(path)

    meta = metadata_path(path)
    assert meta.name == "app_20260314_150926.sql.zst.meta.json"
    assert stat.S_IMODE(meta.stat().st_mode) == 0o600

    data = json.loads(meta.read_text())
    assert data == {
        "host": "pg1",
        "database": "app",
        "type": "postgres",
        "timestamp": "2026-03-14T15:09:26Z",
        "size": path.stat().st_size,
        "checksums": {"sha256": hashlib.sha256(path.read_bytes()).hexdigest()},
        "encryption": "none",
        "tool_version": "pg_dump (PostgreSQL) 16.1",
        "duration_seconds": 1.235,
    }
    assert artifact.sha256 == data["checksums"]["sha256"]


@pytest.mark.asyncio
async def test_load_metadata_tolerates_missing_and_invalid(temp_dir):
    path = temp_dir / "app_20260101_000000.sql.zst"
    path.write_bytes(b"x")

    assert await load_metadata(path) is None

    metadata_path(path).write_text("{not json")
    assert await load_metadata(path) is None


# ============================================================================
# Verification
# ============================================================================

@pytest.mark.asyncio
async def test_verify_intact_artifact(test_config):
    path = await make_artifact(test_config)
    artifact = await record(path)

    result = await verify(path, test_config)

    assert result.status is VerificationStatus.VERIFIED
    assert result.ok
    assert result.expected == result.actual == artifact.sha256


@pytest.mark.asyncio
async def test_verify_detects_flipped_byte(test_config):
    path = await make_artifact(test_config)
    artifact = await record(path)
    before = metadata_path(path).read_bytes()

    data = bytearray(path.read_bytes())
    data[len(data) // 2] ^= 0x01
    path.write_bytes(bytes(data))

    result = await verify(path, test_config)

    assert result.status is VerificationStatus.CHECKSUM_MISMATCH
    assert not result.ok
    assert result.expected == artifact.sha256
    assert result.actual == hashlib.sha256(bytes(data)).hexdigest()
    assert metadata_path(path).read_bytes() == before


@pytest.mark.asyncio
async def test_verify_without_metadata_checks_decoding(test_config):
    path = await make_artifact(test_config)

    result = await verify(path, test_config)

    assert result.status is VerificationStatus.NO_METADATA
    assert result.expected is None
    assert not metadata_path(path).exists()


@pytest.mark.asyncio
async def test_verify_undecodable_artifact(test_config):
    path = test_config.data_dir / "pg1" / "app" / "app_20260101_000000.sql.zst"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"this was never zstd")

    result = await verify(path, test_config)

    assert result.status is VerificationStatus.UNREADABLE
    assert result.to_dict()["status"] == "unreadable"


@pytest.mark.asyncio
async def test_verify_missing_file(test_config):
    with pytest.raises(VerificationError, match="not found"):
        await verify(test_config.data_dir / "nope.sql.zst", test_config)


# ============================================================================
# Listing, pruning, stats
# ============================================================================

@pytest.mark.asyncio
async def test_list_artifacts(test_config):
    path = await make_artifact(test_config)
    await record(path)
    (path.parent / (path.name + ".partial")).write_bytes(b"in flight")

    artifacts = await list_artifacts(test_config.data_dir)

    assert len(artifacts) == 1
    assert artifacts[0]["host"] == "pg1"
    assert artifacts[0]["database"] == "app"
    assert artifacts[0]["has_metadata"] is True
    assert await list_artifacts(test_config.data_dir, host="other") == []


@pytest.mark.asyncio
async def test_prune_old_backups(test_config):
    old = await make_artifact(test_config, database="old")
    await record(old, database="old")
    fresh = await make_artifact(test_config, database="fresh")

    ten_days_ago = time.time() - 10 * 86400
    os.utime(old, (ten_days_ago, ten_days_ago))

    deleted, freed = await prune_old_backups(test_config.data_dir, max_age_days=7)

    assert deleted == 2  # artifact + sidecar
    assert freed > 0
    assert not old.exists()
    assert not metadata_path(old).exists()
    assert not old.parent.exists()
    assert fresh.exists()


@pytest.mark.asyncio
async def test_prune_dry_run_keeps_files(test_config):
    old = await make_artifact(test_config)
    ten_days_ago = time.time() - 10 * 86400
    os.utime(old, (ten_days_ago, ten_days_ago))

    deleted, _ = await prune_old_backups(test_config.data_dir, max_age_days=7, dry_run=True)

    assert deleted == 1
    assert old.exists()


@pytest.mark.asyncio
async def test_backup_stats(test_config):
    first = await make_artifact(test_config, database="app")
    await record(first)
    await make_artifact(test_config, host="my1", database="shop")

    stats = await get_backup_stats(test_config.data_dir)

    assert stats["backup_files"] == 2
    assert stats["hosts"] == 2
    assert stats["databases"] == 2
    assert stats["without_metadata"] == 1
    assert stats["newest_backup"] is not None
