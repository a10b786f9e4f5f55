"""
Repository helpers for the outbox (outbound_messages).

Every status change is a guarded UPDATE (`WHERE status IN (...)`) so two
overlapping job runs cannot move a message backwards or out of a
terminal state.
"""

from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime
from uuid import uuid4

import psycopg

from outreach.db.helpers import execute_query, fetch_all, fetch_one
from outreach.db.pool import get_db_transaction
from outreach.infrastructure.observability.logging import get_logger
from outreach.models.domain.messaging_domain import (
    CONTACT_MUTED,
    DRAFT_PENDING,
    DRAFT_SENT,
    EVALUABLE_MESSAGE_STATUSES,
    MESSAGE_BLOCKED,
    MESSAGE_ERROR,
    MESSAGE_QUEUED,
    MESSAGE_READY,
    MESSAGE_SENT,
    OutboundMessage,
)

logger = get_logger(__name__)

_MESSAGE_COLUMNS = """
    id, tenant_id, member_id, draft_id, message_type, channel, send_as, body,
    status, scheduled_for, sent_at, external_id, error, created_at
"""

INTERACTION_SUMMARY_LENGTH = 180


def _prefixed(columns: str, alias: str) -> str:
    return ", ".join(f"{alias}.{column.strip()}" for column in columns.split(","))


def external_id_for(message_id: str) -> str:
    """Delivery id recorded on dispatch; the channel itself is simulated."""
    return f"simulated:{message_id}"


class OutboundMessageRepository:
    """Persistence for outbound_messages and the dispatch transaction."""

    async def get_message(self, tenant_id: str, message_id: str) -> OutboundMessage | None:
        row = await fetch_one(
            f"SELECT {_MESSAGE_COLUMNS} FROM outbound_messages WHERE tenant_id = %s AND id = %s",
            (tenant_id, message_id),
        )
        return OutboundMessage.from_row(row) if row else None

    async def insert_if_absent(
        self, message: OutboundMessage, *, connection: psycopg.AsyncConnection | None = None
    ) -> tuple[OutboundMessage, bool]:
        """
        Insert a queued message for its draft unless one already exists.

        Returns:
            (message, created) - the stored row and whether this call created it
        """
        row = await fetch_one(
            f"""
            INSERT INTO outbound_messages (
                id, tenant_id, member_id, draft_id, message_type, channel,
                send_as, body, status, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, NOW(), NOW())
            ON CONFLICT (draft_id) DO NOTHING
            RETURNING {_MESSAGE_COLUMNS}
            """,
            (
                message.id,
                message.tenant_id,
                message.member_id,
                message.draft_id,
                message.message_type,
                message.channel,
                message.send_as,
                message.body,
                MESSAGE_QUEUED,
            ),
            connection=connection,
        )
        if row:
            return OutboundMessage.from_row(row), True

        existing = await fetch_one(
            f"SELECT {_MESSAGE_COLUMNS} FROM outbound_messages WHERE draft_id = %s",
            (message.draft_id,),
            connection=connection,
        )
        return OutboundMessage.from_row(existing), False

    async def enqueue_sent_draft(
        self, message: OutboundMessage, sent_at: datetime, sent_by: str
    ) -> tuple[OutboundMessage, bool] | None:
        """
        Flip the message's pending draft to sent and enqueue the message in
        one transaction, so a draft is never sent without its outbox row.

        The body is taken from the draft as it is at flip time.

        Returns:
            (message, created), or None when the draft already left pending
        """
        async with await get_db_transaction() as conn:
            draft = await fetch_one(
                """
                UPDATE message_drafts
                SET status = %s, sent_at = %s, sent_by = %s, updated_at = %s
                WHERE id = %s AND status = %s
                RETURNING content
                """,
                (DRAFT_SENT, sent_at, sent_by, sent_at, message.draft_id, DRAFT_PENDING),
                connection=conn,
            )
            if draft is None:
                return None

            return await self.insert_if_absent(
                replace(message, body=draft["content"]), connection=conn
            )

    async def list_for_evaluation(self, tenant_id: str, limit: int) -> list[OutboundMessage]:
        rows = await fetch_all(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM outbound_messages
            WHERE tenant_id = %s AND status = ANY(%s)
            ORDER BY created_at, id
            LIMIT %s
            """,
            (tenant_id, list(EVALUABLE_MESSAGE_STATUSES), limit),
        )
        return [OutboundMessage.from_row(row) for row in rows]

    async def list_due_for_dispatch(
        self, tenant_id: str, now: datetime, limit: int
    ) -> list[OutboundMessage]:
        """Ready messages due by `now`, excluding members muted since evaluation."""
        rows = await fetch_all(
            f"""
            SELECT {_prefixed(_MESSAGE_COLUMNS, "m")}
            FROM outbound_messages m
            JOIN members mb ON mb.id = m.member_id
            WHERE m.tenant_id = %s
              AND m.status = %s
              AND (m.scheduled_for IS NULL OR m.scheduled_for <= %s)
              AND mb.contact_state <> %s
            ORDER BY m.created_at, m.id
            LIMIT %s
            """,
            (tenant_id, MESSAGE_READY, now, CONTACT_MUTED, limit),
        )
        return [OutboundMessage.from_row(row) for row in rows]

    async def block_ready_for_muted(self, tenant_id: str, reason: str, now: datetime) -> int:
        """Move ready messages of muted members back to blocked. Returns the count."""
        return await execute_query(
            """
            UPDATE outbound_messages m
            SET status = %s, scheduled_for = NULL, error = %s, updated_at = %s
            FROM members mb
            WHERE mb.id = m.member_id
              AND m.tenant_id = %s
              AND m.status = %s
              AND mb.contact_state = %s
            """,
            (MESSAGE_BLOCKED, reason, now, tenant_id, MESSAGE_READY, CONTACT_MUTED),
        )

    async def mark_ready(self, message_id: str, now: datetime) -> bool:
        updated = await execute_query(
            """
            UPDATE outbound_messages
            SET status = %s, scheduled_for = %s, error = NULL, updated_at = %s
            WHERE id = %s AND status = ANY(%s)
            """,
            (MESSAGE_READY, now, now, message_id, list(EVALUABLE_MESSAGE_STATUSES)),
        )
        return updated > 0

    async def mark_blocked(self, message_id: str, reason: str, now: datetime) -> bool:
        updated = await execute_query(
            """
            UPDATE outbound_messages
            SET status = %s, scheduled_for = NULL, error = %s, updated_at = %s
            WHERE id = %s AND status = ANY(%s)
            """,
            (MESSAGE_BLOCKED, reason, now, message_id, list(EVALUABLE_MESSAGE_STATUSES)),
        )
        return updated > 0

    async def mark_error(self, message_id: str, reason: str, now: datetime) -> bool:
        updated = await execute_query(
            """
            UPDATE outbound_messages
            SET status = %s, error = %s, updated_at = %s
            WHERE id = %s AND status = %s
            """,
            (MESSAGE_ERROR, reason, now, message_id, MESSAGE_READY),
        )
        return updated > 0

    async def requeue(self, tenant_id: str, message_id: str, now: datetime) -> OutboundMessage | None:
        row = await fetch_one(
            f"""
            UPDATE outbound_messages
            SET status = %s, scheduled_for = NULL, error = NULL, updated_at = %s
            WHERE tenant_id = %s AND id = %s AND status = ANY(%s)
            RETURNING {_MESSAGE_COLUMNS}
            """,
            (MESSAGE_QUEUED, now, tenant_id, message_id, [MESSAGE_ERROR, MESSAGE_BLOCKED, MESSAGE_READY]),
        )
        return OutboundMessage.from_row(row) if row else None

    async def override_block(
        self, tenant_id: str, message_id: str, now: datetime
    ) -> OutboundMessage | None:
        row = await fetch_one(
            f"""
            UPDATE outbound_messages
            SET status = %s, scheduled_for = %s, error = NULL, updated_at = %s
            WHERE tenant_id = %s AND id = %s AND status = %s
            RETURNING {_MESSAGE_COLUMNS}
            """,
            (MESSAGE_READY, now, now, tenant_id, message_id, MESSAGE_BLOCKED),
        )
        return OutboundMessage.from_row(row) if row else None

    async def record_dispatch(
        self,
        message: OutboundMessage,
        now: datetime,
        actor_id: str,
        from_statuses: Sequence[str] = (MESSAGE_READY,),
        allow_muted: bool = False,
    ) -> bool:
        """
        Mark a message sent and apply its side effects in one transaction:
        the message row, an interaction log entry, the member's contact
        timestamps and the DM thread's outbound timestamps.

        Returns:
            False if the message was no longer in one of from_statuses
            (another run got there first), or its member is muted and
            allow_muted is not set; nothing is written in that case.

        Raises:
            DatabaseError: If any write fails; the whole transaction rolls back
        """
        async with await get_db_transaction() as conn:
            updated = await execute_query(
                """
                UPDATE outbound_messages
                SET status = %s, sent_at = %s, external_id = %s, error = NULL, updated_at = %s
                WHERE id = %s AND status = ANY(%s)
                  AND (%s OR NOT EXISTS (
                      SELECT 1 FROM members
                      WHERE members.id = outbound_messages.member_id AND members.contact_state = %s
                  ))
                """,
                (
                    MESSAGE_SENT,
                    now,
                    external_id_for(message.id),
                    now,
                    message.id,
                    list(from_statuses),
                    allow_muted,
                    CONTACT_MUTED,
                ),
                connection=conn,
            )
            if updated == 0:
                return False

            await execute_query(
                """
                INSERT INTO interaction_logs (
                    id, tenant_id, member_id, type, channel, summary, draft_id,
                    created_by, created_at
                )
                VALUES (%s, %s, %s, 'dm', 'slack', %s, %s, %s, %s)
                """,
                (
                    str(uuid4()),
                    message.tenant_id,
                    message.member_id,
                    message.body[:INTERACTION_SUMMARY_LENGTH],
                    message.draft_id,
                    actor_id,
                    now,
                ),
                connection=conn,
            )
            await execute_query(
                """
                UPDATE members
                SET last_contacted_at = %s, last_value_drop_at = %s, updated_at = %s
                WHERE id = %s
                """,
                (now, now, now, message.member_id),
                connection=conn,
            )
            await execute_query(
                """
                UPDATE slack_dm_threads
                SET last_message_at = %s, last_cm_message_at = %s, updated_at = %s
                WHERE tenant_id = %s AND member_id = %s
                """,
                (now, now, now, message.tenant_id, message.member_id),
                connection=conn,
            )

        logger.debug("Dispatch recorded", message_id=message.id, member_id=message.member_id)
        return True


outbound_message_repository = OutboundMessageRepository()
