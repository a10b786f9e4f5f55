"""
Repository helpers for the job run ledger (cron_job_runs).
"""

import json
from datetime import datetime
from typing import Any

from outreach.db.helpers import execute_query, fetch_one


class CronRunRepository:
    """One row per (job_name, run_key); the unique key is the run claim."""

    async def try_insert_run(self, job_name: str, run_key: str, now: datetime) -> int | None:
        """Returns the new run id, or None if the run key was already claimed."""
        row = await fetch_one(
            """
            INSERT INTO cron_job_runs (job_name, run_key, status, started_at, details)
            VALUES (%s, %s, 'started', %s, '{}'::jsonb)
            ON CONFLICT (job_name, run_key) DO NOTHING
            RETURNING id
            """,
            (job_name, run_key, now),
        )
        return row["id"] if row else None

    async def get_run(self, job_name: str, run_key: str) -> dict[str, Any] | None:
        return await fetch_one(
            """
            SELECT id, status, started_at FROM cron_job_runs
            WHERE job_name = %s AND run_key = %s
            """,
            (job_name, run_key),
        )

    async def restart_run(self, run_id: int, now: datetime) -> None:
        await execute_query(
            """
            UPDATE cron_job_runs
            SET status = 'started', started_at = %s, finished_at = NULL, details = '{}'::jsonb
            WHERE id = %s
            """,
            (now, run_id),
        )

    async def finish_run(
        self, run_id: int, status: str, now: datetime, details: dict[str, Any]
    ) -> None:
        await execute_query(
            """
            UPDATE cron_job_runs
            SET status = %s, finished_at = %s, details = %s
            WHERE id = %s
            """,
            (status, now, json.dumps(details, default=str), run_id),
        )


cron_run_repository = CronRunRepository()
