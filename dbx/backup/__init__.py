# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup Layer - Artifact integrity and verification.
"""

from dbx.backup.integrity import (
    BackupArtifact,
    artifact_path,
    get_backup_stats,
    list_artifacts,
    load_metadata,
    prune_old_backups,
    record_artifact,
    reserve_artifact_path,
    sha256_file,
)
from dbx.backup.verify import VerificationResult, VerificationStatus, verify

__all__ = [
    "BackupArtifact",
    "VerificationResult",
    "VerificationStatus",
    "artifact_path",
    "get_backup_stats",
    "list_artifacts",
    "load_metadata",
    "prune_old_backups",
    "record_artifact",
    "reserve_artifact_path",
    "sha256_file",
    "verify",
]
