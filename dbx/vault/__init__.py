# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Vault Layer - Append-only audit trail.
"""

from dbx.vault.audit import (
    AuditEvent,
    AuditSink,
    NullAuditSink,
    SqliteAuditSink,
    init_audit_db,
)

__all__ = [
    "AuditEvent",
    "AuditSink",
    "NullAuditSink",
    "SqliteAuditSink",
    "init_audit_db",
]
