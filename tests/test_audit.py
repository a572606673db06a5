# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tests for the SQLite audit trail.
"""

import pytest

from dbx.exceptions import AuditError
from dbx.vault.audit import SqliteAuditSink, init_audit_db


@pytest.mark.asyncio
async def test_record_and_list(audit_sink):
    await audit_sink.record("backup", "success", job_id="01A", host="pg1", size=10)
    await audit_sink.record("restore", "completed_with_errors", job_id="01B")
    await audit_sink.record("backup", "failure", job_id="01C", error="boom")

    events = await audit_sink.list_events()
    assert [event["fields"]["job_id"] for event in events] == ["01C", "01B", "01A"]

    backups = await audit_sink.list_events(action="backup", limit=1)
    assert len(backups) == 1
    assert backups[0]["outcome"] == "failure"
    assert backups[0]["fields"] == {"job_id": "01C", "error": "boom"}


@pytest.mark.asyncio
async def test_record_initializes_lazily(temp_dir):
    sink = SqliteAuditSink(temp_dir / "nested" / "audit.db")

    await sink.record("verify", "verified", path="/x.sql.zst")

    events = await sink.list_events()
    assert events[0]["action"] == "verify"


@pytest.mark.asyncio
async def test_list_events_without_database(temp_dir):
    assert await SqliteAuditSink(temp_dir / "missing.db").list_events() == []


@pytest.mark.asyncio
async def test_record_failure_is_swallowed(temp_dir):
    """An unwritable audit database never fails the job being audited."""
    blocker = temp_dir / "not-a-dir"
    blocker.write_text("file")
    sink = SqliteAuditSink(blocker / "audit.db")

    await sink.record("backup", "success", job_id="01A")


@pytest.mark.asyncio
async def test_init_audit_db_raises(temp_dir):
    blocker = temp_dir / "not-a-dir"
    blocker.write_text("file")

    with pytest.raises(AuditError):
        await init_audit_db(blocker / "audit.db")
