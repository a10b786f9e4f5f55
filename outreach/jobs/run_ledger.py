"""
Job run ledger.

Each scheduled invocation claims (job_name, run_key) in cron_job_runs
before doing any work, so a scheduler that fires twice for the same
window runs the job once. A claim left in "started" longer than the
stale window is assumed dead and taken over.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from outreach.config import settings
from outreach.db.helpers import DatabaseError
from outreach.infrastructure.observability.logging import get_logger
from outreach.repositories.cron_run_repository import CronRunRepository, cron_run_repository
from outreach.utils.time_utils import parse_timestamp

logger = get_logger(__name__)

RUN_STARTED = "started"
RUN_SUCCESS = "success"
RUN_ERROR = "error"

ALREADY_SUCCEEDED = "already_succeeded"
ALREADY_RUNNING = "already_running"


class JobRunError(Exception):
    """Raised when a job run cannot be claimed or its handler fails."""

    def __init__(self, message: str, job_name: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.job_name = job_name
        self.recoverable = recoverable


@dataclass(frozen=True, slots=True)
class RunClaim:
    started: bool
    run_id: int | None = None
    tracking: bool = True
    reason: str | None = None

    @classmethod
    def skipped(cls, reason: str) -> "RunClaim":
        return cls(started=False, reason=reason)


class JobRunLedger:
    def __init__(
        self,
        runs: CronRunRepository | None = None,
        stale_after: timedelta | None = None,
    ):
        self.runs = runs or cron_run_repository
        self.stale_after = stale_after or timedelta(minutes=settings.CRON_RUN_STALE_MINUTES)

    async def begin_run(self, job_name: str, run_key: str, now: datetime) -> RunClaim:
        """
        Claim a run.

        Returns:
            A started claim, or a skipped one with reason already_succeeded /
            already_running. Without the ledger table the claim is started
            with tracking disabled.

        Raises:
            JobRunError: If the ledger cannot be read or written
        """
        try:
            run_id = await self.runs.try_insert_run(job_name, run_key, now)
        except DatabaseError as e:
            if e.is_missing_table:
                logger.warning("Job run ledger table missing, tracking disabled", job_name=job_name)
                return RunClaim(started=True, tracking=False)
            raise JobRunError(
                f"Failed to claim job run: {e}", job_name=job_name, recoverable=e.recoverable
            ) from e

        if run_id is not None:
            return RunClaim(started=True, run_id=run_id)

        existing = await self.runs.get_run(job_name, run_key)
        if existing is None:
            raise JobRunError("Job run exists but could not be loaded", job_name=job_name)

        if existing["status"] == RUN_SUCCESS:
            return RunClaim.skipped(ALREADY_SUCCEEDED)

        if existing["status"] == RUN_STARTED:
            started_at = parse_timestamp(existing.get("started_at"))
            is_stale = started_at is not None and now - started_at > self.stale_after
            if not is_stale:
                return RunClaim.skipped(ALREADY_RUNNING)
            logger.warning(
                "Taking over stale job run",
                job_name=job_name,
                run_key=run_key,
                started_at=started_at.isoformat(),
            )

        await self.runs.restart_run(existing["id"], now)
        return RunClaim(started=True, run_id=existing["id"])

    async def finish_run(
        self, claim: RunClaim, status: str, now: datetime, details: dict[str, Any]
    ) -> None:
        if not claim.tracking or claim.run_id is None:
            return
        await self.runs.finish_run(claim.run_id, status, now, details)


job_run_ledger = JobRunLedger()
