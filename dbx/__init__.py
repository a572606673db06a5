# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbx - Streaming backup and restore for PostgreSQL and MySQL.

Dumps are streamed through zstd and optional age/gpg encryption into
atomically written, checksummed artifacts, over SSH tunnels when the
database is remote. Package name: dbx.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from dbx.builder import config_from_dict, create_config

# Core functions
from dbx.core import (
    BackupResult,
    RestoreResult,
    TableAnalysis,
    run_analyze,
    run_backup,
    run_restore,
    run_verify,
)

# Environment-based configuration
from dbx.env import create_config_from_env

__all__ = [
    # Version
    "__version__",
    # Configuration creation (primary user-facing APIs)
    "create_config",
    "config_from_dict",
    "create_config_from_env",
    # Core job functions
    "run_analyze",
    "run_backup",
    "run_restore",
    "run_verify",
    "BackupResult",
    "RestoreResult",
    "TableAnalysis",
]
