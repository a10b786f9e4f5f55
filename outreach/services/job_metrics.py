"""
Counters returned by every batch job.
"""

from datetime import UTC, datetime
from typing import Any

from outreach.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_RECORDED_ERRORS = 20


class JobMetrics:
    """Metrics tracking for one batch job run."""

    def __init__(self, job_name: str, counters: tuple[str, ...]):
        self.job_name = job_name
        self.counter_names = ("tenants_scanned", *counters, "errors")
        self.reset()

    def reset(self):
        """Reset all metrics for new job run."""
        self.start_time = datetime.now(UTC)
        self.total_duration_seconds = 0.0
        self.counters: dict[str, int] = dict.fromkeys(self.counter_names, 0)
        self.error_details: list[dict] = []

    def increment(self, name: str, amount: int = 1):
        self.counters[name] += amount

    def __getitem__(self, name: str) -> int:
        return self.counters[name]

    def record_error(self, tenant_id: str, item_id: str | None, error: BaseException):
        """Record a per-item failure; the batch keeps going."""
        self.counters["errors"] += 1

        if len(self.error_details) < MAX_RECORDED_ERRORS:
            self.error_details.append(
                {
                    "tenant_id": tenant_id,
                    "item_id": item_id,
                    "error": str(error),
                    "error_type": error.__class__.__name__,
                }
            )

        logger.warning(
            "Job item failed",
            job_run=self.job_name,
            tenant_id=tenant_id,
            item_id=item_id,
            error=str(error),
            error_type=error.__class__.__name__,
        )

    def finalize(self):
        self.total_duration_seconds = (datetime.now(UTC) - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to dictionary for logging and the run ledger."""
        data: dict[str, Any] = dict(self.counters)
        data["total_duration_seconds"] = round(self.total_duration_seconds, 2)
        if self.error_details:
            data["error_samples"] = list(self.error_details)
        return data
