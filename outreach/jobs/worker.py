"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable, runs it once through the job run ledger and exits.
Scheduling is external.

    python -m outreach.jobs.worker outbox_dispatch --dry-run
"""

import asyncio
import json
import os
import sys
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

from outreach.config import settings
from outreach.db.pool import db_pool
from outreach.infrastructure.observability.logging import get_logger, setup_logging
from outreach.jobs.pipeline_jobs import JOB_DEFINITIONS, run_job

logger = get_logger(__name__)

JobCoroutine = Callable[..., Awaitable[dict[str, Any]]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    name: partial(run_job, name) for name in JOB_DEFINITIONS
}

DRY_RUN_FLAG = "--dry-run"


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    args = [arg for arg in sys.argv[1:] if not arg.startswith("--")]
    if args:
        return args[0].strip().lower()
    return os.getenv("WORKER_JOB", "").strip().lower()


def _resolve_dry_run() -> bool:
    if DRY_RUN_FLAG in sys.argv[1:]:
        return True
    return os.getenv("WORKER_DRY_RUN", "").strip().lower() in ("1", "true", "yes")


async def run_worker(job_name: str | None = None, dry_run: bool = False) -> dict[str, Any]:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name, dry_run=dry_run)
    return await JOB_REGISTRY[name](dry_run=dry_run)


async def _run_with_pool(job_name: str, dry_run: bool) -> dict[str, Any]:
    await db_pool.initialize()
    try:
        return await run_worker(job_name, dry_run)
    finally:
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    result = asyncio.run(_run_with_pool(_resolve_job_name(), _resolve_dry_run()))
    print(json.dumps(result, default=str))


if __name__ == "__main__":
    main()
