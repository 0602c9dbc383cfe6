"""SQLite-backed persistence for training job records."""
from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Dict, List, Optional

import aiosqlite

from .errors import JobConflictError, JobNotFoundError
from .models import JobRecord, JobState, TrainingPayload, utcnow

logger = logging.getLogger(__name__)

# Allowed state transitions.  Terminal states have no outgoing edges.
_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.created: frozenset({JobState.submitted, JobState.failed}),
    JobState.submitted: frozenset({JobState.polling, JobState.completed, JobState.failed}),
    JobState.polling: frozenset({JobState.polling, JobState.completed, JobState.failed}),
    JobState.completed: frozenset(),
    JobState.failed: frozenset(),
}

# Columns that ``update_job`` may write.
_MUTABLE = {
    "state",
    "external_id",
    "result",
    "error",
    "next_poll_at",
    "poll_attempts",
    "transient_errors",
    "fanout_pending",
    "fanout_failures",
}

_JSON_COLUMNS = ("payload", "result", "fanout_pending")


class JobStore:
    """Async SQLite store for job lifecycle tracking.

    Every mutation goes through ``update_job`` which performs a
    compare-and-swap on ``state``; concurrent writers that lose the race
    get ``JobConflictError`` instead of silently overwriting each other.
    """

    def __init__(self, db_path: str = "training_jobs.db") -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Create the jobs table if it doesn't exist."""
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                job_id TEXT PRIMARY KEY,
                state TEXT NOT NULL DEFAULT 'created',
                payload TEXT NOT NULL,
                user_id TEXT NOT NULL,
                request_token TEXT UNIQUE,
                external_id TEXT,
                result TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                next_poll_at TEXT,
                poll_attempts INTEGER DEFAULT 0,
                transient_errors INTEGER DEFAULT 0,
                fanout_pending TEXT DEFAULT '[]',
                fanout_failures INTEGER DEFAULT 0
            )
        """)
        await self._db.execute(
            "CREATE INDEX IF NOT EXISTS idx_jobs_due ON jobs (state, next_poll_at)"
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

    # ── CRUD ─────────────────────────────────────────────────────────

    async def create_job(
        self,
        payload: TrainingPayload,
        user_id: str,
        request_token: str | None = None,
    ) -> JobRecord:
        """Insert a new job, or return the existing one for a reused token."""
        db = await self._conn()
        if request_token:
            existing = await self.find_by_token(request_token)
            if existing is not None:
                logger.info(
                    "Duplicate request token %s; returning job %s", request_token, existing.job_id
                )
                return existing

        rec = JobRecord(
            job_id=uuid.uuid4().hex[:12],
            payload=payload,
            user_id=user_id,
            request_token=request_token,
        )
        cur = await db.execute(
            "INSERT INTO jobs (job_id, state, payload, user_id, request_token, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?) ON CONFLICT(request_token) DO NOTHING",
            (
                rec.job_id,
                rec.state.value,
                json.dumps(rec.payload.model_dump()),
                rec.user_id,
                rec.request_token,
                rec.created_at,
                rec.updated_at,
            ),
        )
        inserted = cur.rowcount > 0
        await cur.close()
        await db.commit()
        if not inserted:
            # Another request with the same token won the insert.
            return await self.find_by_token(request_token)
        return rec

    async def get_job(self, job_id: str) -> JobRecord:
        """Fetch a single job by ID.

        Raises
        ------
        JobNotFoundError
            If no job has this ID.
        """
        db = await self._conn()
        async with db.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            raise JobNotFoundError(f"Job '{job_id}' not found")
        return self._row_to_record(row, desc)

    async def find_by_token(self, request_token: str) -> Optional[JobRecord]:
        db = await self._conn()
        async with db.execute(
            "SELECT * FROM jobs WHERE request_token = ?", (request_token,)
        ) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return self._row_to_record(row, desc)

    async def list_jobs(self, limit: int = 50, user_id: str | None = None) -> List[JobRecord]:
        """List jobs ordered by creation time (newest first)."""
        db = await self._conn()
        if user_id is None:
            sql, args = "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,)
        else:
            sql = "SELECT * FROM jobs WHERE user_id = ? ORDER BY created_at DESC LIMIT ?"
            args = (user_id, limit)
        async with db.execute(sql, args) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    async def due_jobs(self, now: str, limit: int = 50) -> List[JobRecord]:
        """Jobs awaiting a status check whose ``next_poll_at`` has passed."""
        db = await self._conn()
        async with db.execute(
            "SELECT * FROM jobs WHERE state IN (?, ?) AND next_poll_at IS NOT NULL "
            "AND next_poll_at <= ? ORDER BY next_poll_at LIMIT ?",
            (JobState.submitted.value, JobState.polling.value, now, limit),
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    async def jobs_with_pending_fanout(
        self, limit: int = 50, max_failures: int | None = None
    ) -> List[JobRecord]:
        """Completed jobs that still have artifacts left to save.

        With *max_failures*, jobs whose fan-out already failed that many
        times are left out.
        """
        db = await self._conn()
        sql = (
            "SELECT * FROM jobs WHERE state = ? AND fanout_pending IS NOT NULL "
            "AND fanout_pending != '[]'"
        )
        params: list = [JobState.completed.value]
        if max_failures is not None:
            sql += " AND fanout_failures < ?"
            params.append(max_failures)
        sql += " ORDER BY updated_at LIMIT ?"
        params.append(limit)
        async with db.execute(sql, params) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    async def update_job(self, job_id: str, expected_state: JobState, **fields: Any) -> JobRecord:
        """Apply *fields* only if the job is still in *expected_state*.

        ``updated_at`` is always advanced.  Returns the updated record.

        Raises
        ------
        JobNotFoundError
            If the job does not exist.
        JobConflictError
            If the stored state differs from *expected_state*.
        ValueError
            For unknown columns or a transition the lifecycle forbids.
        """
        unknown = set(fields) - _MUTABLE
        if unknown:
            raise ValueError(f"Cannot update job columns: {sorted(unknown)}")

        new_state = fields.get("state")
        if new_state is not None:
            new_state = JobState(new_state)
            if new_state != expected_state and new_state not in _TRANSITIONS[expected_state]:
                raise ValueError(
                    f"Illegal transition {expected_state.value} -> {new_state.value}"
                )
            fields["state"] = new_state.value

        sets = ["updated_at = ?"]
        vals: list = [utcnow()]
        for col, value in fields.items():
            if col in _JSON_COLUMNS and value is not None:
                value = json.dumps(value)
            sets.append(f"{col} = ?")
            vals.append(value)
        vals.extend([job_id, expected_state.value])

        db = await self._conn()
        cur = await db.execute(
            f"UPDATE jobs SET {', '.join(sets)} WHERE job_id = ? AND state = ?", vals
        )
        changed = cur.rowcount
        await cur.close()
        await db.commit()
        if changed == 0:
            current = await self.get_job(job_id)
            raise JobConflictError(job_id, expected_state.value, current.state.value)
        return await self.get_job(job_id)

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _row_to_record(row, description) -> JobRecord:
        cols = [d[0] for d in description]
        d = dict(zip(cols, row))
        d["payload"] = TrainingPayload.model_validate(json.loads(d["payload"]))
        d["result"] = json.loads(d["result"]) if d.get("result") else None
        d["fanout_pending"] = json.loads(d.get("fanout_pending") or "[]")
        return JobRecord(**d)
