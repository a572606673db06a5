# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbx Audit Trail - Append-only record of backup, restore and verify jobs.

One event per job. Rows are only ever inserted. Recording is best
effort: a broken audit database is logged and never fails the job it
describes.
"""

import json
from datetime import datetime, UTC
from pathlib import Path
from typing import Any, List, Protocol, TypedDict

import aiosqlite
import structlog

from dbx.exceptions import AuditError

logger = structlog.get_logger()


class AuditEvent(TypedDict):
    """One audited job."""

    id: int  # Auto-increment
    timestamp: str  # ISO 8601
    action: str  # backup, restore, verify
    outcome: str  # success, failure, ...
    fields: dict  # Job details (host, database, path, size, ...)


class AuditSink(Protocol):
    """Receives one event per job."""

    async def record(self, action: str, outcome: str, **fields: Any) -> None: ...


class NullAuditSink:
    """Discards events."""

    async def record(self, action: str, outcome: str, **fields: Any) -> None:
        return None


async def init_audit_db(db_path: Path) -> None:
    """
    Initialize the audit database schema.

    Creates the table if it doesn't exist. This is idempotent.

    Raises:
        AuditError: If the database cannot be created
    """
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(db_path) as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS audit_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    action TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    fields TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_events_timestamp
                ON audit_events(timestamp)
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_audit_events_action
                ON audit_events(action)
            """)

            await db.commit()

        logger.debug("audit_db_initialized", db_path=str(db_path))

    except (OSError, aiosqlite.Error) as e:
        raise AuditError(
            f"Failed to initialize audit database: {e}",
            details={"db_path": str(db_path)},
        ) from e


class SqliteAuditSink:
    """Audit sink writing to an SQLite table."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        await init_audit_db(self.db_path)
        self._initialized = True

    async def record(self, action: str, outcome: str, **fields: Any) -> None:
        """Append one event; failures are logged, never raised."""
        try:
            if not self._initialized:
                await self.initialize()
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO audit_events (timestamp, action, outcome, fields)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        datetime.now(UTC).isoformat(),
                        action,
                        outcome,
                        json.dumps(fields, default=str, sort_keys=True),
                    ),
                )
                await db.commit()
            logger.debug("audit_event_recorded", action=action, outcome=outcome)
        except (AuditError, OSError, aiosqlite.Error, TypeError, ValueError) as e:
            logger.error(
                "audit_record_failed",
                action=action,
                outcome=outcome,
                db_path=str(self.db_path),
                error=str(e),
            )

    async def list_events(
        self,
        action: str | None = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """
        Most recent events first.

        Args:
            action: Only events of this action
            limit: Maximum number of events
        """
        if not self.db_path.exists():
            return []

        query = "SELECT id, timestamp, action, outcome, fields FROM audit_events"
        params: list = []
        if action:
            query += " WHERE action = ?"
            params.append(action)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()

        return [
            AuditEvent(
                id=row["id"],
                timestamp=row["timestamp"],
                action=row["action"],
                outcome=row["outcome"],
                fields=json.loads(row["fields"]),
            )
            for row in rows
        ]
