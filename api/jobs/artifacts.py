"""SQLite persistence for artifacts derived from completed jobs."""
from __future__ import annotations

import json
from typing import List, Optional

import aiosqlite

from .models import ABTestResult, DerivedArtifacts, MetricRecord, TuningResult

# Artifact kinds, also used as keys in ``JobRecord.fanout_pending``.
METRIC = "metric"
AB_RESULT = "ab_result"
TUNING_RESULT = "tuning_result"


class ArtifactStore:
    """Write-once artifact tables keyed by job ID.

    Each table carries ``UNIQUE(job_id)`` and inserts use ``INSERT OR IGNORE``
    so saving the same artifact twice leaves exactly one row.
    """

    def __init__(self, db_path: str = "training_jobs.db") -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        if self._db is not None:
            return
        self._db = await aiosqlite.connect(self.db_path)
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS metrics (
                job_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                model_type TEXT NOT NULL,
                dataset TEXT NOT NULL,
                metric TEXT NOT NULL,
                value REAL NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS ab_results (
                job_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                model_a TEXT NOT NULL,
                model_b TEXT NOT NULL,
                performance_a REAL NOT NULL,
                performance_b REAL NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS tuning_results (
                job_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                best_hyperparameters TEXT NOT NULL,
                performance REAL,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_metrics_user ON metrics (user_id, created_at);
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    async def _insert(self, sql: str, args: tuple) -> bool:
        db = await self._conn()
        cur = await db.execute(sql, args)
        inserted = cur.rowcount > 0
        await cur.close()
        await db.commit()
        return inserted

    # ── Writes (return True when a new row was created) ──────────────

    async def save_metric(self, rec: MetricRecord) -> bool:
        return await self._insert(
            "INSERT OR IGNORE INTO metrics "
            "(job_id, user_id, model_type, dataset, metric, value, created_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (rec.job_id, rec.user_id, rec.model_type, rec.dataset, rec.metric, rec.value, rec.created_at),
        )

    async def save_ab_result(self, rec: ABTestResult) -> bool:
        return await self._insert(
            "INSERT OR IGNORE INTO ab_results "
            "(job_id, user_id, model_a, model_b, performance_a, performance_b, created_at) "
            "VALUES (?,?,?,?,?,?,?)",
            (
                rec.job_id,
                rec.user_id,
                rec.model_a,
                rec.model_b,
                rec.performance_a,
                rec.performance_b,
                rec.created_at,
            ),
        )

    async def save_tuning_result(self, rec: TuningResult) -> bool:
        return await self._insert(
            "INSERT OR IGNORE INTO tuning_results "
            "(job_id, user_id, best_hyperparameters, performance, created_at) "
            "VALUES (?,?,?,?,?)",
            (
                rec.job_id,
                rec.user_id,
                json.dumps(rec.best_hyperparameters),
                rec.performance,
                rec.created_at,
            ),
        )

    # ── Reads ────────────────────────────────────────────────────────

    async def _fetch_one(self, sql: str, args: tuple) -> Optional[dict]:
        db = await self._conn()
        async with db.execute(sql, args) as cur:
            row = await cur.fetchone()
            desc = cur.description
        if row is None:
            return None
        return dict(zip([d[0] for d in desc], row))

    async def get_artifacts(self, job_id: str) -> DerivedArtifacts:
        """Return whatever artifacts exist for *job_id*."""
        metric = await self._fetch_one("SELECT * FROM metrics WHERE job_id = ?", (job_id,))
        ab = await self._fetch_one("SELECT * FROM ab_results WHERE job_id = ?", (job_id,))
        tuning = await self._fetch_one("SELECT * FROM tuning_results WHERE job_id = ?", (job_id,))
        if tuning is not None:
            tuning["best_hyperparameters"] = json.loads(tuning["best_hyperparameters"])
        return DerivedArtifacts(
            metric=MetricRecord(**metric) if metric else None,
            ab_result=ABTestResult(**ab) if ab else None,
            tuning_result=TuningResult(**tuning) if tuning else None,
        )

    async def count(self, kind: str, job_id: str) -> int:
        """Number of rows of *kind* for *job_id* (0 or 1)."""
        table = {METRIC: "metrics", AB_RESULT: "ab_results", TUNING_RESULT: "tuning_results"}[kind]
        db = await self._conn()
        async with db.execute(f"SELECT COUNT(*) FROM {table} WHERE job_id = ?", (job_id,)) as cur:
            row = await cur.fetchone()
        return int(row[0])

    async def recent_metrics(self, user_id: str, limit: int = 10) -> List[MetricRecord]:
        """Latest metric records for a user, newest first."""
        db = await self._conn()
        async with db.execute(
            "SELECT * FROM metrics WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit),
        ) as cur:
            rows = await cur.fetchall()
            desc = cur.description
        cols = [d[0] for d in desc]
        return [MetricRecord(**dict(zip(cols, r))) for r in rows]
