"""Postgres job store (asyncpg)."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import asyncpg
from asyncpg import Pool

from ..errors import DuplicateActiveJob, InvalidTransition, JobNotFound
from ..models import BulkJob, BulkStatus, JobStep, QueueItem, QueueItemStatus, ScrapeJob

LOGGER = logging.getLogger(__name__)

JOB_COLUMNS = (
    "id",
    "device_id",
    "requesting_user_id",
    "step",
    "request",
    "target_id",
    "autocomplete_options",
    "slug_conflict",
    "error",
    "attempts",
    "requeue_count",
    "progress_stage",
    "progress_percent",
    "last_log",
    "created_at",
    "updated_at",
    "finished_at",
    "archived_at",
    "bulk_id",
)

ITEM_COLUMNS = (
    "job_id",
    "device_id",
    "kind",
    "status",
    "attempt",
    "max_attempts",
    "next_run_at",
    "claimed_by",
    "claimed_at",
    "last_error",
    "last_error_code",
    "created_at",
    "completed_at",
    "bulk_id",
)

ACTIVE_STEP_VALUES = ["searching", "selecting", "scraping"]

BULK_COLUMNS = (
    "id",
    "user_id",
    "status",
    "total",
    "skipped",
    "error",
    "created_at",
    "updated_at",
    "finished_at",
)


def _job_values(job: ScrapeJob) -> List[Any]:
    data = job.model_dump(mode="json", by_alias=False)
    values = []
    for column in JOB_COLUMNS:
        value = data[column]
        if column.endswith("_at") and value is not None:
            value = getattr(job, column)
        values.append(value)
    return values


def _item_values(item: QueueItem) -> List[Any]:
    data = item.model_dump(mode="json", by_alias=False)
    values = []
    for column in ITEM_COLUMNS:
        value = data[column]
        if column.endswith("_at") and value is not None:
            value = getattr(item, column)
        values.append(value)
    return values


def _row_to_job(row: asyncpg.Record) -> ScrapeJob:
    return ScrapeJob.model_validate(dict(row))


def _row_to_item(row: asyncpg.Record) -> QueueItem:
    return QueueItem.model_validate(dict(row))


def _bulk_values(bulk: BulkJob) -> List[Any]:
    data = bulk.model_dump(mode="json", by_alias=False)
    return [getattr(bulk, column) if column.endswith("_at") else data[column] for column in BULK_COLUMNS]


def _row_to_bulk(row: asyncpg.Record) -> BulkJob:
    return BulkJob.model_validate(dict(row))


class PostgresJobStore:
    """Job store backed by the ``scrape_jobs`` / ``scrape_queue_items`` tables.

    One active job per device is enforced by the partial unique index
    ``uq_scrape_jobs_active_device``.
    """

    def __init__(self, pool: Pool) -> None:
        self.pool = pool

    async def insert_job(self, job: ScrapeJob, item: Optional[QueueItem] = None) -> Optional[QueueItem]:
        placeholders = ", ".join(f"${i}" for i in range(1, len(JOB_COLUMNS) + 1))
        insert_job_sql = f"INSERT INTO scrape_jobs ({', '.join(JOB_COLUMNS)}) VALUES ({placeholders})"

        async with self.pool.acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.execute(insert_job_sql, *_job_values(job))
                    if item is None:
                        return None
                    return await self._insert_item(conn, item)
            except asyncpg.UniqueViolationError as exc:
                # The failed transaction is rolled back; look up the winner outside it.
                existing = await conn.fetchval(
                    "SELECT id FROM scrape_jobs WHERE device_id = $1 AND step = ANY($2::text[])",
                    job.device_id,
                    ACTIVE_STEP_VALUES,
                )
                raise DuplicateActiveJob(job.device_id, existing) from exc

    async def _insert_item(self, conn: asyncpg.Connection, item: QueueItem) -> QueueItem:
        placeholders = ", ".join(f"${i}" for i in range(1, len(ITEM_COLUMNS) + 1))
        row = await conn.fetchrow(
            f"INSERT INTO scrape_queue_items ({', '.join(ITEM_COLUMNS)}) VALUES ({placeholders}) RETURNING *",
            *_item_values(item),
        )
        return _row_to_item(row)

    async def get_job(self, job_id: str) -> Optional[ScrapeJob]:
        row = await self.pool.fetchrow("SELECT * FROM scrape_jobs WHERE id = $1", job_id)
        return _row_to_job(row) if row else None

    async def get_active_job(self, device_id: str) -> Optional[ScrapeJob]:
        row = await self.pool.fetchrow(
            "SELECT * FROM scrape_jobs WHERE device_id = $1 AND step = ANY($2::text[])",
            device_id,
            ACTIVE_STEP_VALUES,
        )
        return _row_to_job(row) if row else None

    async def get_latest_job(self, device_id: str) -> Optional[ScrapeJob]:
        row = await self.pool.fetchrow(
            "SELECT * FROM scrape_jobs WHERE device_id = $1 ORDER BY created_at DESC LIMIT 1",
            device_id,
        )
        return _row_to_job(row) if row else None

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        active_only: bool = False,
        limit: int = 100,
    ) -> List[ScrapeJob]:
        rows = await self.pool.fetch(
            """
            SELECT * FROM scrape_jobs
            WHERE ($1::text IS NULL OR requesting_user_id = $1)
              AND (NOT $2 OR step = ANY($3::text[]))
            ORDER BY updated_at DESC
            LIMIT $4
            """,
            user_id,
            active_only,
            ACTIVE_STEP_VALUES,
            limit,
        )
        return [_row_to_job(row) for row in rows]

    async def save_job(self, job: ScrapeJob, expected_step: JobStep) -> ScrapeJob:
        columns = JOB_COLUMNS[1:]
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(columns, start=2))
        values = _job_values(job)
        expected_index = len(JOB_COLUMNS) + 1
        try:
            row = await self.pool.fetchrow(
                f"UPDATE scrape_jobs SET {assignments} WHERE id = $1 AND step = ${expected_index} RETURNING *",
                *values,
                JobStep(expected_step).value,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateActiveJob(job.device_id, job.id) from exc
        if row is not None:
            return _row_to_job(row)

        current = await self.pool.fetchval("SELECT step FROM scrape_jobs WHERE id = $1", job.id)
        if current is None:
            raise JobNotFound(f"Job {job.id} not found")
        raise InvalidTransition(current, JobStep(job.step).value)

    async def add_item(self, item: QueueItem) -> QueueItem:
        async with self.pool.acquire() as conn:
            return await self._insert_item(conn, item)

    async def claim_next(self, worker_id: str, now: datetime) -> Optional[QueueItem]:
        row = await self.pool.fetchrow(
            """
            UPDATE scrape_queue_items
            SET status = 'claimed', claimed_by = $1, claimed_at = $2, attempt = attempt + 1
            WHERE id = (
                SELECT q.id FROM scrape_queue_items AS q
                WHERE q.status = 'pending'
                  AND q.next_run_at <= $2
                  AND NOT EXISTS (
                      SELECT 1 FROM scrape_queue_items AS c
                      WHERE c.device_id = q.device_id AND c.status = 'claimed'
                  )
                  AND NOT EXISTS (
                      SELECT 1 FROM bulk_jobs AS b
                      WHERE b.id = q.bulk_id AND b.status = 'paused'
                  )
                ORDER BY q.next_run_at, q.id
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING *
            """,
            worker_id,
            now,
        )
        return _row_to_item(row) if row else None

    async def get_item(self, item_id: int) -> Optional[QueueItem]:
        row = await self.pool.fetchrow("SELECT * FROM scrape_queue_items WHERE id = $1", item_id)
        return _row_to_item(row) if row else None

    async def list_items(self, job_id: str) -> List[QueueItem]:
        rows = await self.pool.fetch("SELECT * FROM scrape_queue_items WHERE job_id = $1 ORDER BY id", job_id)
        return [_row_to_item(row) for row in rows]

    async def save_item(self, item: QueueItem) -> QueueItem:
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(ITEM_COLUMNS, start=2))
        row = await self.pool.fetchrow(
            f"UPDATE scrape_queue_items SET {assignments} WHERE id = $1 RETURNING *",
            item.id,
            *_item_values(item),
        )
        if row is None:
            raise JobNotFound(f"Queue item {item.id} not found")
        return _row_to_item(row)

    async def open_items(self, job_id: str) -> List[QueueItem]:
        rows = await self.pool.fetch(
            "SELECT * FROM scrape_queue_items WHERE job_id = $1 AND status IN ('pending', 'claimed')",
            job_id,
        )
        return [_row_to_item(row) for row in rows]

    async def stale_claims(self, cutoff: datetime) -> List[QueueItem]:
        rows = await self.pool.fetch(
            "SELECT * FROM scrape_queue_items WHERE status = 'claimed' AND claimed_at < $1",
            cutoff,
        )
        return [_row_to_item(row) for row in rows]

    async def stale_jobs(self, step: JobStep, cutoff: datetime) -> List[ScrapeJob]:
        rows = await self.pool.fetch(
            "SELECT * FROM scrape_jobs WHERE step = $1 AND updated_at < $2",
            JobStep(step).value,
            cutoff,
        )
        return [_row_to_job(row) for row in rows]

    async def error_items(self) -> List[QueueItem]:
        rows = await self.pool.fetch("SELECT * FROM scrape_queue_items WHERE status = 'error' ORDER BY id")
        return [_row_to_item(row) for row in rows]

    async def delete_archived(self, cutoff: datetime) -> int:
        result = await self.pool.execute(
            "DELETE FROM scrape_jobs WHERE archived_at IS NOT NULL AND archived_at < $1",
            cutoff,
        )
        deleted = int(result.split()[-1])
        LOGGER.info("Pruned %d archived jobs", deleted)
        return deleted

    async def stats(self) -> Dict[str, int]:
        stats: Dict[str, int] = {}
        for row in await self.pool.fetch("SELECT step, COUNT(*) AS n FROM scrape_jobs GROUP BY step"):
            stats[f"jobs_{row['step']}"] = row["n"]
        for row in await self.pool.fetch("SELECT status, COUNT(*) AS n FROM scrape_queue_items GROUP BY status"):
            stats[f"items_{row['status']}"] = row["n"]
        for row in await self.pool.fetch("SELECT status, COUNT(*) AS n FROM bulk_jobs GROUP BY status"):
            stats[f"bulks_{row['status']}"] = row["n"]
        return stats

    async def insert_bulk(self, bulk: BulkJob) -> BulkJob:
        placeholders = ", ".join(f"${i}" for i in range(1, len(BULK_COLUMNS) + 1))
        row = await self.pool.fetchrow(
            f"INSERT INTO bulk_jobs ({', '.join(BULK_COLUMNS)}) VALUES ({placeholders}) RETURNING *",
            *_bulk_values(bulk),
        )
        return _row_to_bulk(row)

    async def get_bulk(self, bulk_id: str) -> Optional[BulkJob]:
        row = await self.pool.fetchrow("SELECT * FROM bulk_jobs WHERE id = $1", bulk_id)
        return _row_to_bulk(row) if row else None

    async def save_bulk(self, bulk: BulkJob) -> BulkJob:
        columns = BULK_COLUMNS[1:]
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(columns, start=2))
        row = await self.pool.fetchrow(
            f"UPDATE bulk_jobs SET {assignments} WHERE id = $1 RETURNING *",
            *_bulk_values(bulk),
        )
        if row is None:
            raise JobNotFound(f"Bulk job {bulk.id} not found")
        return _row_to_bulk(row)

    async def list_bulks(self, statuses: Optional[Sequence[BulkStatus]] = None, limit: int = 100) -> List[BulkJob]:
        values = [BulkStatus(status).value for status in statuses] if statuses is not None else None
        rows = await self.pool.fetch(
            """
            SELECT * FROM bulk_jobs
            WHERE ($1::text[] IS NULL OR status = ANY($1::text[]))
            ORDER BY created_at DESC
            LIMIT $2
            """,
            values,
            limit,
        )
        return [_row_to_bulk(row) for row in rows]

    async def bulk_steps(self, bulk_id: str) -> Dict[str, int]:
        rows = await self.pool.fetch(
            "SELECT step, COUNT(*) AS n FROM scrape_jobs WHERE bulk_id = $1 GROUP BY step",
            bulk_id,
        )
        return {row["step"]: row["n"] for row in rows}

    async def bulk_items(self, bulk_id: str, status: QueueItemStatus) -> List[QueueItem]:
        rows = await self.pool.fetch(
            "SELECT * FROM scrape_queue_items WHERE bulk_id = $1 AND status = $2 ORDER BY id",
            bulk_id,
            QueueItemStatus(status).value,
        )
        return [_row_to_item(row) for row in rows]
