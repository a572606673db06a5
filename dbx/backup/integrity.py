# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbx Integrity Recorder - Artifact naming, checksums and sidecars.

Every finished artifact gets a ``<artifact>.meta.json`` sidecar holding
the SHA-256 of the bytes on disk (after encryption; decrypted content is
never hashed), its size and how it was produced. This module also lists,
prunes and summarizes the artifact tree:

    <data_dir>/<host>/<database>/<database>_<YYYYmmdd_HHMMSS>[-N].sql.zst[.age|.gpg]
"""

import hashlib
import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Any, Dict, List, Tuple

import aiofiles
import structlog

from dbx.config import EncryptionType, Engine
from dbx.pipeline.formats import artifact_suffix
from dbx.pipeline.stages import CHUNK_SIZE, iter_bytes, write_atomic

logger = structlog.get_logger()

METADATA_SUFFIX = ".meta.json"
PARTIAL_SUFFIX = ".partial"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


@dataclass(frozen=True)
class BackupArtifact:
    """A finished, checksummed backup file."""

    path: Path
    size: int
    sha256: str
    encryption: EncryptionType
    engine: Engine
    timestamp: datetime
    duration_seconds: float
    tool_version: str
    host: str
    database: str

    @property
    def metadata_path(self) -> Path:
        return metadata_path(self.path)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "database": self.database,
            "type": self.engine.value,
            "timestamp": self.timestamp.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "size": self.size,
            "checksums": {"sha256": self.sha256},
            "encryption": self.encryption.value,
            "tool_version": self.tool_version,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def metadata_path(artifact: Path) -> Path:
    return artifact.with_name(artifact.name + METADATA_SUFFIX)


def artifact_path(
    data_dir: Path,
    host: str,
    database: str,
    when: datetime,
    encryption: EncryptionType = EncryptionType.NONE,
) -> Path:
    """Destination of a new backup."""
    name = f"{database}_{when.strftime(TIMESTAMP_FORMAT)}{artifact_suffix(encryption)}"
    return data_dir / host / database / name


def partial_path(artifact: Path) -> Path:
    return artifact.with_name(artifact.name + PARTIAL_SUFFIX)


def reserve_artifact_path(
    data_dir: Path,
    host: str,
    database: str,
    when: datetime,
    encryption: EncryptionType = EncryptionType.NONE,
) -> Path:
    """
    Claim a destination no other job is using.

    Names only resolve to the second, so another job in the same second
    gets a ``-1``, ``-2``, ... suffix after the timestamp. The claim is an
    empty ``.partial`` file created exclusively; the caller owns it and
    must remove it if the job fails before the artifact is committed.
    """
    first = artifact_path(data_dir, host, database, when, encryption)
    first.parent.mkdir(parents=True, exist_ok=True)
    suffix = artifact_suffix(encryption)
    stem = first.name[: -len(suffix)]

    counter = 0
    while True:
        candidate = first if counter == 0 else first.with_name(f"{stem}-{counter}{suffix}")
        counter += 1
        if candidate.exists() or metadata_path(candidate).exists():
            continue
        try:
            fd = os.open(partial_path(candidate), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            continue
        os.close(fd)
        return candidate


def is_artifact(path: Path) -> bool:
    name = path.name
    return (
        path.is_file()
        and ".sql" in name
        and not name.endswith(METADATA_SUFFIX)
        and not name.endswith(PARTIAL_SUFFIX)
    )


async def sha256_file(path: Path) -> str:
    """SHA-256 of a file, read in chunks."""
    digest = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


async def write_metadata(path: Path, metadata: Dict[str, Any]) -> Path:
    """Write a sidecar atomically with mode 0600."""
    meta = metadata_path(path)
    payload = json.dumps(metadata, indent=2, sort_keys=True).encode() + b"\n"
    await write_atomic(iter_bytes(payload), meta)
    return meta


async def record_artifact(
    path: Path,
    *,
    host: str,
    database: str,
    engine: Engine,
    encryption: EncryptionType,
    timestamp: datetime,
    duration_seconds: float,
    tool_version: str,
) -> BackupArtifact:
    """
    Checksum a finished artifact and write its sidecar.

    Args:
        path: Artifact as persisted (encrypted bytes when encrypted)
        timestamp: When the backup started

    Returns:
        The recorded BackupArtifact
    """
    artifact = BackupArtifact(
        path=path,
        size=path.stat().st_size,
        sha256=await sha256_file(path),
        encryption=encryption,
        engine=engine,
        timestamp=timestamp,
        duration_seconds=duration_seconds,
        tool_version=tool_version,
        host=host,
        database=database,
    )
    await write_metadata(path, artifact.to_metadata())

    logger.info(
        "artifact_recorded",
        path=str(path),
        size=artifact.size,
        sha256=artifact.sha256,
    )
    return artifact


async def load_metadata(path: Path) -> Dict[str, Any] | None:
    """
    Read an artifact's sidecar.

    Returns:
        Parsed sidecar, or None if it is missing or not valid JSON
    """
    meta = metadata_path(path)
    try:
        async with aiofiles.open(meta, "r") as f:
            data = json.loads(await f.read())
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning("metadata_unreadable", path=str(meta), error=str(e))
        return None
    if not isinstance(data, dict):
        logger.warning("metadata_unreadable", path=str(meta), error="not a JSON object")
        return None
    return data


def expected_checksum(metadata: Dict[str, Any] | None) -> str | None:
    if not metadata:
        return None
    checksums = metadata.get("checksums")
    if isinstance(checksums, dict) and checksums.get("sha256"):
        return str(checksums["sha256"]).lower()
    return None


async def list_artifacts(
    data_dir: Path,
    host: str | None = None,
    database: str | None = None,
) -> List[dict]:
    """
    List artifacts, newest first.

    Args:
        data_dir: Artifact root
        host: Only this host
        database: Only this database (requires host)

    Returns:
        List of artifact info dicts
    """
    root = data_dir
    if host:
        root = root / host
        if database:
            root = root / database
    if not root.exists():
        return []

    artifacts = []
    for path in root.rglob("*"):
        if not is_artifact(path):
            continue
        stat = path.stat()
        relative = path.relative_to(data_dir).parts
        artifacts.append({
            "filename": path.name,
            "path": str(path),
            "host": relative[0] if len(relative) > 2 else None,
            "database": relative[1] if len(relative) > 2 else None,
            "size": stat.st_size,
            "created_at": datetime.fromtimestamp(stat.st_mtime, UTC).isoformat(),
            "has_metadata": metadata_path(path).exists(),
        })

    artifacts.sort(key=lambda item: item["created_at"], reverse=True)
    return artifacts


async def prune_old_backups(
    data_dir: Path,
    max_age_days: int,
    dry_run: bool = False,
) -> Tuple[int, int]:
    """
    Delete artifacts (and their sidecars) older than max_age_days.

    Leftover ``.partial`` files of the same age are removed too.

    Returns:
        Tuple of (files_deleted, bytes_freed)
    """
    cutoff = datetime.now(UTC) - timedelta(days=max_age_days)
    if not data_dir.exists():
        return (0, 0)

    files_deleted = 0
    bytes_freed = 0

    for path in list(data_dir.rglob("*")):
        if not (is_artifact(path) or (path.is_file() and path.name.endswith(PARTIAL_SUFFIX))):
            continue
        try:
            mtime = datetime.fromtimestamp(path.stat().st_mtime, UTC)
            if mtime >= cutoff:
                continue

            victims = [path]
            sidecar = metadata_path(path)
            if sidecar.exists():
                victims.append(sidecar)

            for victim in victims:
                size = victim.stat().st_size
                if not dry_run:
                    victim.unlink()
                files_deleted += 1
                bytes_freed += size

            logger.debug(
                "backup_file_pruned" if not dry_run else "backup_file_would_prune",
                path=str(path),
                age_days=(datetime.now(UTC) - mtime).days,
            )
        except OSError as e:
            logger.warning("prune_file_error", path=str(path), error=str(e))

    # Clean up empty host/database directories, deepest first
    if not dry_run:
        for directory in sorted(
            (d for d in data_dir.rglob("*") if d.is_dir()),
            key=lambda d: len(d.parts),
            reverse=True,
        ):
            if not any(directory.iterdir()):
                directory.rmdir()
                logger.debug("empty_backup_dir_removed", path=str(directory))

    logger.info(
        "backup_pruning_complete",
        files_deleted=files_deleted,
        bytes_freed=bytes_freed,
        dry_run=dry_run,
    )
    return (files_deleted, bytes_freed)


async def get_backup_stats(data_dir: Path) -> dict:
    """
    Get statistics about the artifact tree.

    Returns:
        Dict with counts, sizes and the oldest/newest artifact time
    """
    stats = {
        "backup_files": 0,
        "backup_bytes": 0,
        "hosts": 0,
        "databases": 0,
        "without_metadata": 0,
        "oldest_backup": None,
        "newest_backup": None,
    }
    if not data_dir.exists():
        return stats

    hosts = set()
    databases = set()
    oldest_mtime = None
    newest_mtime = None

    for path in data_dir.rglob("*"):
        if not is_artifact(path):
            continue
        stat = path.stat()
        stats["backup_files"] += 1
        stats["backup_bytes"] += stat.st_size
        if not metadata_path(path).exists():
            stats["without_metadata"] += 1

        relative = path.relative_to(data_dir).parts
        if len(relative) > 2:
            hosts.add(relative[0])
            databases.add((relative[0], relative[1]))

        mtime = stat.st_mtime
        if oldest_mtime is None or mtime < oldest_mtime:
            oldest_mtime = mtime
        if newest_mtime is None or mtime > newest_mtime:
            newest_mtime = mtime

    stats["hosts"] = len(hosts)
    stats["databases"] = len(databases)
    if oldest_mtime is not None:
        stats["oldest_backup"] = datetime.fromtimestamp(oldest_mtime, UTC).isoformat()
    if newest_mtime is not None:
        stats["newest_backup"] = datetime.fromtimestamp(newest_mtime, UTC).isoformat()
    return stats
