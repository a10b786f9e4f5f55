"""
Slack event ingestion: folds stored DM events into slack_dm_threads.

Only `message` events in `im` channels carry conversation state. Every
other event is simply marked processed. Thread updates are keyed by
(tenant, channel) and only move timestamps forward, so redelivered or
replayed events are harmless.
"""

from datetime import datetime
from typing import Any

from outreach.config import settings
from outreach.infrastructure.observability.logging import get_logger
from outreach.models.domain.messaging_domain import SlackEventRecord, ThreadActivity
from outreach.repositories.slack_repository import SlackRepository, slack_repository
from outreach.repositories.tenant_repository import TenantRepository, tenant_repository
from outreach.services.job_metrics import JobMetrics
from outreach.utils.time_utils import slack_ts_to_datetime

logger = get_logger(__name__)

PROCESSING_FAILED = "Slack event processing failed"


def thread_id_for(event: SlackEventRecord) -> str:
    """Deterministic id so replaying the creating event reuses it."""
    return f"sdm_{event.id[:10]}"


def is_dm_message(event: dict[str, Any]) -> bool:
    return (
        event.get("type") == "message"
        and event.get("channel_type") == "im"
        and bool(event.get("channel"))
    )


class SlackIngestionService:
    """Processes unprocessed slack_events per tenant."""

    def __init__(
        self,
        tenants: TenantRepository | None = None,
        slack: SlackRepository | None = None,
        operator_user_ids: set[str] | None = None,
    ):
        self.tenants = tenants or tenant_repository
        self.slack = slack or slack_repository
        self.operator_user_ids = (
            operator_user_ids if operator_user_ids is not None else settings.slack_operator_user_ids()
        )

    async def run(self, now: datetime, dry_run: bool = False) -> dict:
        metrics = JobMetrics("slack_process", ("events_scanned", "events_processed", "dm_updates"))

        tenant_ids = await self.tenants.list_tenant_ids()
        metrics.increment("tenants_scanned", len(tenant_ids))

        for tenant_id in tenant_ids:
            try:
                await self._run_tenant(tenant_id, now, dry_run, metrics)
            except Exception as e:
                metrics.record_error(tenant_id, None, e)

        metrics.finalize()
        return metrics.to_dict()

    async def _run_tenant(
        self, tenant_id: str, now: datetime, dry_run: bool, metrics: JobMetrics
    ) -> None:
        events = await self.slack.list_unprocessed_events(tenant_id, settings.SLACK_EVENTS_BATCH_SIZE)
        metrics.increment("events_scanned", len(events))
        if not events:
            return

        member_by_user = await self.slack.member_ids_by_slack_user(tenant_id)

        for event in events:
            try:
                touched = await self._apply_event(tenant_id, event, member_by_user, now, dry_run)
                if not dry_run:
                    await self.slack.mark_event_processed(event.id, now)
                if touched:
                    metrics.increment("dm_updates")
                metrics.increment("events_processed")
            except Exception as e:
                metrics.record_error(tenant_id, event.id, e)
                if not dry_run:
                    await self._mark_failed(event, now, e)

    def build_activity(
        self,
        tenant_id: str,
        record: SlackEventRecord,
        member_id: str,
        member_id_from_user: str | None,
        now: datetime,
    ) -> ThreadActivity:
        event = record.payload.get("event") or {}
        user_id = event.get("user")

        event_at = (
            slack_ts_to_datetime(event.get("event_ts") or event.get("ts") or record.event_ts) or now
        )

        return ThreadActivity(
            tenant_id=tenant_id,
            member_id=member_id,
            slack_channel_id=event["channel"],
            team_id=record.team_id or record.payload.get("team_id"),
            event_at=event_at,
            is_member_message=bool(user_id and member_id_from_user == member_id),
            is_cm_message=bool(user_id and user_id in self.operator_user_ids),
            thread_id=thread_id_for(record),
        )

    async def _apply_event(
        self,
        tenant_id: str,
        record: SlackEventRecord,
        member_by_user: dict[str, str],
        now: datetime,
        dry_run: bool,
    ) -> bool:
        """Returns True if the event touched a DM thread."""
        event = record.payload.get("event")
        if not isinstance(event, dict) or not is_dm_message(event):
            return False

        user_id = event.get("user")
        member_id_from_user = member_by_user.get(user_id) if user_id else None

        existing = await self.slack.get_thread_for_channel(tenant_id, event["channel"])
        member_id = existing.member_id if existing else member_id_from_user
        if not member_id:
            logger.debug(
                "DM event for unknown member",
                tenant_id=tenant_id,
                event_id=record.event_id,
                channel=event["channel"],
            )
            return False

        activity = self.build_activity(tenant_id, record, member_id, member_id_from_user, now)
        if not dry_run:
            await self.slack.upsert_thread_activity(activity, now)
        return True

    async def _mark_failed(self, record: SlackEventRecord, now: datetime, error: Exception) -> None:
        try:
            await self.slack.mark_event_processed(record.id, now, str(error) or PROCESSING_FAILED)
        except Exception as e:
            logger.error(
                "Failed to record Slack event processing error",
                event_id=record.event_id,
                error=str(e),
                error_type=type(e).__name__,
            )


# Singleton instance for application use
slack_ingestion_service = SlackIngestionService()
