"""SQLite storage for workflow checkpoints."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from conductor.exceptions import PersistenceError


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


class CheckpointStore:
    """Latest snapshot of each workflow, keyed by workflow id."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None
        self._init_lock = asyncio.Lock()

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        async with self._init_lock:
            if self._db is None:
                self._db = await self._connect()
        return self._db

    async def _connect(self) -> aiosqlite.Connection:
        db = await aiosqlite.connect(str(self.db_path))
        await db.execute("""
            CREATE TABLE IF NOT EXISTS checkpoints (
                workflow_id TEXT PRIMARY KEY,
                project_path TEXT NOT NULL,
                status TEXT NOT NULL,
                state TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_checkpoints_updated_at ON checkpoints(updated_at)"
        )
        await db.commit()
        return db

    async def save(self, state: dict[str, Any]) -> None:
        """Insert or replace the checkpoint for ``state["workflow_id"]``."""
        try:
            db = await self._ensure_db()
            await db.execute("""
                INSERT OR REPLACE INTO checkpoints (workflow_id, project_path, status, state, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                state["workflow_id"],
                state.get("project_path", ""),
                state.get("status", ""),
                json.dumps(state),
                _utcnow_iso(),
            ))
            await db.commit()
        except (sqlite3.Error, OSError, TypeError, ValueError) as e:
            raise PersistenceError(
                f"Failed to save checkpoint: {e}", {"workflow_id": state.get("workflow_id")}
            ) from e

    async def load(self, workflow_id: str) -> dict[str, Any] | None:
        try:
            db = await self._ensure_db()
            async with db.execute(
                "SELECT state FROM checkpoints WHERE workflow_id = ?",
                (workflow_id,),
            ) as cursor:
                row = await cursor.fetchone()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(
                f"Failed to load checkpoint: {e}", {"workflow_id": workflow_id}
            ) from e
        if row is None:
            return None
        return json.loads(row[0])

    async def list_workflows(self, limit: int = 50) -> list[dict[str, Any]]:
        """Summaries of stored workflows, most recently updated first."""
        db = await self._ensure_db()
        async with db.execute("""
            SELECT workflow_id, project_path, status, updated_at
            FROM checkpoints
            ORDER BY updated_at DESC
            LIMIT ?
        """, (limit,)) as cursor:
            rows = await cursor.fetchall()
        return [
            {
                "workflow_id": row[0],
                "project_path": row[1],
                "status": row[2],
                "updated_at": row[3],
            }
            for row in rows
        ]

    async def delete(self, workflow_id: str) -> bool:
        db = await self._ensure_db()
        cursor = await db.execute(
            "DELETE FROM checkpoints WHERE workflow_id = ?",
            (workflow_id,),
        )
        await db.commit()
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
