"""
Repository helpers for Slack conversation state: DM threads, identities
and the raw event queue.
"""

from datetime import datetime

from outreach.db.helpers import execute_query, fetch_all, fetch_one
from outreach.infrastructure.observability.logging import get_logger
from outreach.models.domain.messaging_domain import SlackDmThread, SlackEventRecord, ThreadActivity

logger = get_logger(__name__)

_THREAD_COLUMNS = """
    id, tenant_id, member_id, team_id, slack_channel_id, last_message_at,
    last_member_message_at, last_cm_message_at, member_replied_at,
    conversation_closed_at
"""


class SlackRepository:
    """Persistence for slack_dm_threads, slack_identities and slack_events."""

    async def get_thread_for_member(self, tenant_id: str, member_id: str) -> SlackDmThread | None:
        row = await fetch_one(
            f"""
            SELECT {_THREAD_COLUMNS} FROM slack_dm_threads
            WHERE tenant_id = %s AND member_id = %s
            ORDER BY updated_at DESC
            LIMIT 1
            """,
            (tenant_id, member_id),
        )
        return SlackDmThread.from_row(row) if row else None

    async def get_thread_for_channel(self, tenant_id: str, channel_id: str) -> SlackDmThread | None:
        row = await fetch_one(
            f"""
            SELECT {_THREAD_COLUMNS} FROM slack_dm_threads
            WHERE tenant_id = %s AND slack_channel_id = %s
            """,
            (tenant_id, channel_id),
        )
        return SlackDmThread.from_row(row) if row else None

    async def member_ids_by_slack_user(self, tenant_id: str) -> dict[str, str]:
        rows = await fetch_all(
            "SELECT slack_user_id, member_id FROM slack_identities WHERE tenant_id = %s",
            (tenant_id,),
        )
        return {row["slack_user_id"]: row["member_id"] for row in rows}

    async def upsert_thread_activity(self, activity: ThreadActivity, now: datetime) -> None:
        """
        Apply one DM event to the thread keyed by (tenant, channel).

        Only the timestamps the event implies are written, and they only move
        forward, so replaying an event leaves the row unchanged.
        conversation_closed_at is owned by the explicit close action and is
        never written here.
        """
        member_at = activity.event_at if activity.is_member_message else None
        cm_at = activity.event_at if activity.is_cm_message else None

        await execute_query(
            """
            INSERT INTO slack_dm_threads (
                id, tenant_id, member_id, team_id, slack_channel_id,
                last_message_at, last_member_message_at, last_cm_message_at,
                member_replied_at, conversation_closed_at, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, NULL, %s, %s)
            ON CONFLICT (tenant_id, slack_channel_id) DO UPDATE SET
                member_id = EXCLUDED.member_id,
                last_message_at = GREATEST(slack_dm_threads.last_message_at, EXCLUDED.last_message_at),
                last_member_message_at = GREATEST(
                    slack_dm_threads.last_member_message_at, EXCLUDED.last_member_message_at
                ),
                last_cm_message_at = GREATEST(
                    slack_dm_threads.last_cm_message_at, EXCLUDED.last_cm_message_at
                ),
                member_replied_at = GREATEST(
                    slack_dm_threads.member_replied_at, EXCLUDED.member_replied_at
                ),
                updated_at = EXCLUDED.updated_at
            """,
            (
                activity.thread_id,
                activity.tenant_id,
                activity.member_id,
                activity.team_id,
                activity.slack_channel_id,
                activity.event_at,
                member_at,
                cm_at,
                member_at,
                now,
                now,
            ),
        )

    async def list_unprocessed_events(self, tenant_id: str, limit: int) -> list[SlackEventRecord]:
        rows = await fetch_all(
            """
            SELECT id, tenant_id, team_id, event_id, event_ts, payload, received_at
            FROM slack_events
            WHERE tenant_id = %s AND processed_at IS NULL
            ORDER BY received_at, id
            LIMIT %s
            """,
            (tenant_id, limit),
        )
        return [SlackEventRecord.from_row(row) for row in rows]

    async def mark_event_processed(
        self, event_id: str, now: datetime, processing_error: str | None = None
    ) -> None:
        await execute_query(
            """
            UPDATE slack_events
            SET processed_at = %s, processing_error = %s
            WHERE id = %s
            """,
            (now, processing_error, event_id),
        )


slack_repository = SlackRepository()
