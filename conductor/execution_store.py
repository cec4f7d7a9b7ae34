"""SQLite storage for execution records and per-task metrics."""

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


class ExecutionStore:
    """Execution history written by the liveness tracker and task router."""

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
            CREATE TABLE IF NOT EXISTS executions (
                session_id TEXT PRIMARY KEY,
                agent_name TEXT,
                task_id TEXT,
                project_path TEXT,
                status TEXT NOT NULL,
                start_time TEXT,
                last_heartbeat TEXT,
                updated_at TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}'
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS task_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                agent_name TEXT,
                session_id TEXT,
                status TEXT NOT NULL,
                event_count INTEGER NOT NULL DEFAULT 0,
                input_tokens INTEGER NOT NULL DEFAULT 0,
                output_tokens INTEGER NOT NULL DEFAULT 0,
                cache_read_tokens INTEGER NOT NULL DEFAULT 0,
                total_cost_usd REAL NOT NULL DEFAULT 0,
                duration_seconds REAL NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
        """)
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status)"
        )
        await db.execute(
            "CREATE INDEX IF NOT EXISTS idx_task_metrics_workflow ON task_metrics(workflow_id)"
        )
        await db.commit()
        return db

    async def save_execution(self, row: dict[str, Any]) -> None:
        known = {
            "session_id", "agent_name", "task_id", "project_path",
            "status", "start_time", "last_heartbeat",
        }
        metadata = {k: v for k, v in row.items() if k not in known}
        try:
            db = await self._ensure_db()
            await db.execute("""
                INSERT OR REPLACE INTO executions
                    (session_id, agent_name, task_id, project_path, status,
                     start_time, last_heartbeat, updated_at, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                row["session_id"],
                row.get("agent_name"),
                row.get("task_id"),
                row.get("project_path"),
                row.get("status", ""),
                row.get("start_time"),
                row.get("last_heartbeat"),
                _utcnow_iso(),
                json.dumps(metadata, default=str),
            ))
            await db.commit()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(
                f"Failed to save execution: {e}", {"session_id": row.get("session_id")}
            ) from e

    async def get_execution(self, session_id: str) -> dict[str, Any] | None:
        db = await self._ensure_db()
        async with db.execute("""
            SELECT session_id, agent_name, task_id, project_path, status,
                   start_time, last_heartbeat, updated_at, metadata
            FROM executions WHERE session_id = ?
        """, (session_id,)) as cursor:
            row = await cursor.fetchone()
        return self._execution_row(row) if row else None

    async def list_executions(self, limit: int = 50, status: str | None = None) -> list[dict[str, Any]]:
        db = await self._ensure_db()
        query = """
            SELECT session_id, agent_name, task_id, project_path, status,
                   start_time, last_heartbeat, updated_at, metadata
            FROM executions
        """
        params: tuple[Any, ...] = ()
        if status:
            query += " WHERE status = ?"
            params = (status,)
        query += " ORDER BY updated_at DESC LIMIT ?"
        async with db.execute(query, params + (limit,)) as cursor:
            rows = await cursor.fetchall()
        return [self._execution_row(row) for row in rows]

    @staticmethod
    def _execution_row(row: Any) -> dict[str, Any]:
        return {
            "session_id": row[0],
            "agent_name": row[1],
            "task_id": row[2],
            "project_path": row[3],
            "status": row[4],
            "start_time": row[5],
            "last_heartbeat": row[6],
            "updated_at": row[7],
            "metadata": json.loads(row[8] or "{}"),
        }

    async def save_task_metrics(self, row: dict[str, Any]) -> None:
        try:
            db = await self._ensure_db()
            await db.execute("""
                INSERT INTO task_metrics
                    (workflow_id, task_id, agent_name, session_id, status, event_count,
                     input_tokens, output_tokens, cache_read_tokens, total_cost_usd,
                     duration_seconds, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                row.get("workflow_id", ""),
                row["task_id"],
                row.get("agent_name"),
                row.get("session_id"),
                row.get("status", ""),
                int(row.get("event_count", 0)),
                int(row.get("input_tokens", 0)),
                int(row.get("output_tokens", 0)),
                int(row.get("cache_read_tokens", 0)),
                float(row.get("total_cost_usd", 0.0)),
                float(row.get("duration_seconds", 0.0)),
                _utcnow_iso(),
            ))
            await db.commit()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(
                f"Failed to save task metrics: {e}", {"task_id": row.get("task_id")}
            ) from e

    async def list_task_metrics(self, workflow_id: str) -> list[dict[str, Any]]:
        db = await self._ensure_db()
        async with db.execute("""
            SELECT task_id, agent_name, session_id, status, event_count, input_tokens,
                   output_tokens, cache_read_tokens, total_cost_usd, duration_seconds, created_at
            FROM task_metrics
            WHERE workflow_id = ?
            ORDER BY id
        """, (workflow_id,)) as cursor:
            rows = await cursor.fetchall()
        return [
            {
                "task_id": row[0],
                "agent_name": row[1],
                "session_id": row[2],
                "status": row[3],
                "event_count": row[4],
                "input_tokens": row[5],
                "output_tokens": row[6],
                "cache_read_tokens": row[7],
                "total_cost_usd": row[8],
                "duration_seconds": row[9],
                "created_at": row[10],
            }
            for row in rows
        ]

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None
