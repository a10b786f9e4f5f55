# outreach/routes/cron.py
"""
Scheduler entrypoints: one GET per pipeline job.

    GET /cron/outbox_dispatch?dryRun=1
    Authorization: Bearer <CRON_SECRET>
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from outreach.auth.cron_auth import cron_auth_dependency
from outreach.infrastructure.observability.logging import get_logger
from outreach.jobs.pipeline_jobs import JOB_DEFINITIONS, run_job
from outreach.jobs.run_ledger import JobRunError

logger = get_logger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.get("/{job_name}", dependencies=[Depends(cron_auth_dependency)])
async def run_cron_job(job_name: str, dry_run: str | None = Query(None, alias="dryRun")):
    """Run one pipeline job; repeated calls within the same run window are skipped."""
    if job_name not in JOB_DEFINITIONS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job '{job_name}'")

    try:
        return await run_job(job_name, dry_run=dry_run == "1")
    except JobRunError as e:
        logger.error("Cron job failed", job_name=job_name, error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "error": str(e), "job_name": job_name},
        )
