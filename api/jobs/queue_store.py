"""SQLite-backed persistence for durable lane jobs."""
from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiosqlite

from .models import QueueJobStatus, QueueState


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


class QueueStore:
    """Async SQLite store backing the durable lanes.

    Rows survive process restarts; a row left ``active`` by a crashed
    process is put back to ``waiting`` by ``requeue_stalled``.
    """

    def __init__(self, db_path: str = "catalog_jobs_queue.db") -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._claim_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Create the queue table if it doesn't exist."""
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS queue_jobs (
                job_id TEXT PRIMARY KEY,
                lane TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'waiting',
                progress INTEGER DEFAULT 0,
                attempts_made INTEGER DEFAULT 0,
                max_attempts INTEGER DEFAULT 1,
                backoff_delay REAL DEFAULT 0,
                available_at REAL NOT NULL,
                created_at TEXT NOT NULL,
                processed_at TEXT,
                finished_at TEXT,
                result TEXT,
                failed_reason TEXT
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_queue_lane_state ON queue_jobs(lane, state, available_at)"
        )
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    # ── Writes ───────────────────────────────────────────────────────

    async def add(
        self,
        job_id: str,
        lane: str,
        owner_id: str,
        payload: Dict[str, Any],
        max_attempts: int,
        backoff_delay: float = 0.0,
    ) -> None:
        """Persist a new waiting job."""
        db = await self._conn()
        await db.execute(
            "INSERT INTO queue_jobs (job_id, lane, owner_id, payload, state, max_attempts, backoff_delay, "
            "available_at, created_at) VALUES (?,?,?,?,?,?,?,?,?)",
            (job_id, lane, owner_id, json.dumps(payload), QueueState.waiting.value,
             max_attempts, backoff_delay, time.time(), _now_iso()),
        )
        await db.commit()

    async def claim_next(self, lane: str) -> Optional[Dict[str, Any]]:
        """Atomically move the oldest due waiting job of ``lane`` to active."""
        db = await self._conn()
        async with self._claim_lock:
            async with db.execute(
                "SELECT job_id FROM queue_jobs WHERE lane = ? AND state = ? AND available_at <= ? "
                "ORDER BY available_at ASC, created_at ASC LIMIT 1",
                (lane, QueueState.waiting.value, time.time()),
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                return None
            job_id = row[0]
            await db.execute(
                "UPDATE queue_jobs SET state = ?, attempts_made = attempts_made + 1, processed_at = ? "
                "WHERE job_id = ?",
                (QueueState.active.value, _now_iso(), job_id),
            )
            await db.commit()
        return await self.get(job_id)

    async def update_progress(self, job_id: str, progress: int) -> None:
        """Record the job's progress percentage (0 – 100)."""
        db = await self._conn()
        await db.execute(
            "UPDATE queue_jobs SET progress = ? WHERE job_id = ?",
            (max(0, min(100, int(progress))), job_id),
        )
        await db.commit()

    async def mark_completed(self, job_id: str, result: Dict[str, Any]) -> None:
        db = await self._conn()
        await db.execute(
            "UPDATE queue_jobs SET state = ?, progress = 100, result = ?, failed_reason = NULL, finished_at = ? "
            "WHERE job_id = ?",
            (QueueState.completed.value, json.dumps(result), _now_iso(), job_id),
        )
        await db.commit()

    async def schedule_retry(self, job_id: str, reason: str, available_at: float) -> None:
        """Put a failed attempt back to waiting, due at ``available_at`` (epoch seconds).

        Only an ``active`` row is touched; a finished job is never reopened.
        """
        db = await self._conn()
        await db.execute(
            "UPDATE queue_jobs SET state = ?, failed_reason = ?, available_at = ? WHERE job_id = ? AND state = ?",
            (QueueState.waiting.value, reason, available_at, job_id, QueueState.active.value),
        )
        await db.commit()

    async def mark_failed(self, job_id: str, reason: str) -> None:
        db = await self._conn()
        await db.execute(
            "UPDATE queue_jobs SET state = ?, failed_reason = ?, finished_at = ? WHERE job_id = ? AND state = ?",
            (QueueState.failed.value, reason, _now_iso(), job_id, QueueState.active.value),
        )
        await db.commit()

    async def requeue_stalled(self) -> int:
        """Return jobs left active by a dead process to the waiting state."""
        db = await self._conn()
        cur = await db.execute(
            "UPDATE queue_jobs SET state = ?, available_at = ? WHERE state = ?",
            (QueueState.waiting.value, time.time(), QueueState.active.value),
        )
        await db.commit()
        return cur.rowcount

    async def trim_finished(self, lane: str, state: QueueState, keep: int) -> int:
        """Delete all but the ``keep`` most recently finished jobs in ``state``."""
        db = await self._conn()
        cur = await db.execute(
            "DELETE FROM queue_jobs WHERE lane = ? AND state = ? AND job_id NOT IN ("
            "  SELECT job_id FROM queue_jobs WHERE lane = ? AND state = ? "
            "  ORDER BY finished_at DESC LIMIT ?"
            ")",
            (lane, state.value, lane, state.value, keep),
        )
        await db.commit()
        return cur.rowcount

    async def remove_finished_before(self, lane: str, cutoff_iso: str) -> int:
        """Delete completed/failed jobs of ``lane`` created before ``cutoff_iso``."""
        db = await self._conn()
        cur = await db.execute(
            "DELETE FROM queue_jobs WHERE lane = ? AND state IN (?, ?) AND created_at < ?",
            (lane, QueueState.completed.value, QueueState.failed.value, cutoff_iso),
        )
        await db.commit()
        return cur.rowcount

    # ── Reads ────────────────────────────────────────────────────────

    async def get(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a single row by ID."""
        db = await self._conn()
        async with db.execute("SELECT * FROM queue_jobs WHERE job_id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return self._row_to_dict(row, desc)

    async def list_by_owner(self, owner_id: str) -> List[Dict[str, Any]]:
        """Rows of ``owner_id`` across lanes, newest first."""
        db = await self._conn()
        async with db.execute(
            "SELECT * FROM queue_jobs WHERE owner_id = ? ORDER BY created_at DESC, job_id DESC", (owner_id,)
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_dict(r, desc) for r in rows]

    async def counts(self, lane: str) -> Dict[str, int]:
        db = await self._conn()
        out = {state.value: 0 for state in QueueState}
        async with db.execute(
            "SELECT state, COUNT(*) FROM queue_jobs WHERE lane = ? GROUP BY state", (lane,)
        ) as cur:
            for state, n in await cur.fetchall():
                out[state] = n
        out["total"] = sum(out[state.value] for state in QueueState)
        return out

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _row_to_dict(row, description) -> Dict[str, Any]:
        cols = [d[0] for d in description]
        d = dict(zip(cols, row))
        d["payload"] = json.loads(d.get("payload") or "{}")
        d["result"] = json.loads(d["result"]) if d.get("result") else None
        return d

    @staticmethod
    def to_status(row: Dict[str, Any]) -> QueueJobStatus:
        return QueueJobStatus(
            job_id=row["job_id"],
            lane=row["lane"],
            owner_id=row["owner_id"],
            status=QueueState(row["state"]),
            progress=row.get("progress") or 0,
            attempts_made=row.get("attempts_made") or 0,
            max_attempts=row.get("max_attempts") or 1,
            result=row.get("result"),
            failed_reason=row.get("failed_reason"),
            created_at=row["created_at"],
            processed_at=row.get("processed_at"),
            completed_at=row.get("finished_at"),
        )
