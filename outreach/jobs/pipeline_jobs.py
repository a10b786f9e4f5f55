"""
Pipeline job definitions and the shared runner.

Every job, whether started by the worker CLI or the /cron endpoint, goes
through run_job: claim the run in the ledger, run the handler, store the
counters. Each handler iterates tenants sequentially and returns counters.
Dry runs write nothing, the ledger included, so they never use up the
run key of the real run in the same window.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from outreach.infrastructure.observability.logging import (
    bind_job_context,
    clear_job_context,
    get_logger,
    log_job_completed,
)
from outreach.jobs.run_ledger import (
    RUN_ERROR,
    RUN_SUCCESS,
    JobRunError,
    JobRunLedger,
    RunClaim,
    job_run_ledger,
)
from outreach.services.draft_generation_service import draft_generation_service
from outreach.services.outbox_service import outbox_service
from outreach.services.slack_ingestion_service import slack_ingestion_service
from outreach.utils.time_utils import RUN_KEY_DAY, RUN_KEY_HOUR, RUN_KEY_MINUTE, run_key_for, utc_now

logger = get_logger(__name__)

JobHandler = Callable[[datetime, bool], Awaitable[dict[str, Any]]]


async def run_forced_weekly_drafts(now: datetime, dry_run: bool) -> dict[str, Any]:
    return await draft_generation_service.run_forced_weekly(now, dry_run)


async def run_trigger_based_drafts(now: datetime, dry_run: bool) -> dict[str, Any]:
    return await draft_generation_service.run_trigger_based(now, dry_run)


async def run_autosend_drafts(now: datetime, dry_run: bool) -> dict[str, Any]:
    return await outbox_service.run_autosend(now, dry_run)


async def run_outbox_evaluate(now: datetime, dry_run: bool) -> dict[str, Any]:
    return await outbox_service.run_evaluate(now, dry_run)


async def run_outbox_dispatch(now: datetime, dry_run: bool) -> dict[str, Any]:
    return await outbox_service.run_dispatch(now, dry_run)


async def run_slack_process(now: datetime, dry_run: bool) -> dict[str, Any]:
    return await slack_ingestion_service.run(now, dry_run)


@dataclass(frozen=True, slots=True)
class JobDefinition:
    name: str
    handler: JobHandler
    run_key_format: str = RUN_KEY_MINUTE


JOB_DEFINITIONS: dict[str, JobDefinition] = {
    definition.name: definition
    for definition in (
        JobDefinition("drafts_forced_weekly", run_forced_weekly_drafts, RUN_KEY_DAY),
        JobDefinition("drafts_trigger_based", run_trigger_based_drafts, RUN_KEY_HOUR),
        JobDefinition("drafts_autosend", run_autosend_drafts, RUN_KEY_HOUR),
        JobDefinition("outbox_evaluate", run_outbox_evaluate),
        JobDefinition("outbox_dispatch", run_outbox_dispatch),
        JobDefinition("slack_process", run_slack_process),
    )
}


def get_job_definition(job_name: str) -> JobDefinition:
    definition = JOB_DEFINITIONS.get(job_name)
    if definition is None:
        raise ValueError(
            f"Unknown job '{job_name}'. Available jobs: {', '.join(sorted(JOB_DEFINITIONS))}"
        )
    return definition


async def run_job(
    job_name: str,
    dry_run: bool = False,
    run_key: str | None = None,
    now: datetime | None = None,
    ledger: JobRunLedger | None = None,
) -> dict[str, Any]:
    """
    Run one pipeline job through the run ledger.

    Returns:
        {ok, skipped, reason?, tracking, job_name, run_key, dry_run, details}

    Raises:
        ValueError: If the job name is unknown
        JobRunError: If the run cannot be claimed or the handler fails
    """
    definition = get_job_definition(job_name)
    ledger = ledger or job_run_ledger
    now = now or utc_now()
    run_key = run_key or run_key_for(now, definition.run_key_format)

    bind_job_context(job_name, run_key, dry_run)
    try:
        if dry_run:
            claim = RunClaim(started=True, tracking=False)
        else:
            claim = await ledger.begin_run(job_name, run_key, now)
        if not claim.started:
            logger.info("Job run skipped", reason=claim.reason)
            return {
                "ok": True,
                "skipped": True,
                "reason": claim.reason,
                "job_name": job_name,
                "run_key": run_key,
                "dry_run": dry_run,
                "details": {},
            }

        logger.info("Job run started", tracking=claim.tracking)

        try:
            details = await definition.handler(now, dry_run)
        except Exception as e:
            logger.error("Job run failed", error=str(e), error_type=type(e).__name__)
            try:
                await ledger.finish_run(claim, RUN_ERROR, utc_now(), {"dry_run": dry_run, "error": str(e)})
            except Exception as finish_error:
                logger.error("Failed to record job run failure", error=str(finish_error))
            raise JobRunError(f"Job {job_name} failed: {e}", job_name=job_name) from e

        await ledger.finish_run(claim, RUN_SUCCESS, utc_now(), {"dry_run": dry_run, **details})
        log_job_completed(job_name, details)

        return {
            "ok": True,
            "skipped": False,
            "tracking": claim.tracking,
            "job_name": job_name,
            "run_key": run_key,
            "dry_run": dry_run,
            "details": details,
        }
    finally:
        clear_job_context()
