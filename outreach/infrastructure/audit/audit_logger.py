"""
AuditLogger - best-effort audit trail for pipeline state transitions.

Every draft creation, enqueue, dispatch and operator action is recorded
for operational visibility. The trail is a side channel: it never joins
the transaction of the change it describes, and a failed write is logged
and reported as False instead of raised.

Usage:
    from outreach.infrastructure.audit import audit_logger

    await audit_logger.record(
        tenant_id="tnt_1",
        type="draft_created",
        member_id="mem_1",
        details={"draft_id": "drf_1", "source": "forced_weekly"},
    )
"""

import json
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from outreach.db.helpers import execute_query
from outreach.infrastructure.observability.logging import get_logger
from outreach.models.domain.messaging_domain import SYSTEM_ACTOR

logger = get_logger(__name__)

# Audit event types written by the pipeline
DRAFT_CREATED = "draft_created"
OUTBOUND_MESSAGE_ENQUEUED = "outbound_message_enqueued"
OUTBOUND_MESSAGE_SENT = "outbound_message_sent"
OUTBOUND_MESSAGE_BLOCK_OVERRIDDEN = "outbound_message_block_overridden"


class AuditLogger:
    """
    Append-only audit writer.

    Logs each entry to:
    1. Structured logs (stdout) - first, so nothing is lost if the insert fails
    2. Database (audit_logs table)
    """

    async def record(
        self,
        tenant_id: str,
        type: str,
        actor_id: str = SYSTEM_ACTOR,
        actor_label: str = "System",
        actor_role: str = "admin",
        member_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """
        Record an audit entry.

        Args:
            tenant_id: Tenant the entry belongs to
            type: Event type (e.g. "draft_created", "outbound_message_sent")
            actor_id: Who caused the transition ("system" for batch jobs)
            actor_label: Human-readable actor name
            actor_role: Role of the actor at the time
            member_id: Member affected, if any
            details: Additional context (JSON-serializable dict)

        Returns:
            True if stored, False if the database write failed (never raises)
        """
        details = details or {}

        logger.info(
            "Audit event",
            audit_type=type,
            tenant_id=tenant_id,
            actor_id=actor_id,
            member_id=member_id,
            details=details,
        )

        try:
            await execute_query(
                """
                INSERT INTO audit_logs (
                    id, tenant_id, type, actor_id, actor_label, actor_role,
                    member_id, details, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    str(uuid4()),
                    tenant_id,
                    type,
                    actor_id,
                    actor_label,
                    actor_role,
                    member_id,
                    json.dumps(details, default=str),
                    datetime.now(UTC),
                ),
            )
            return True

        except Exception as e:
            # The primary transition already happened; only report the miss
            logger.error(
                "Failed to write audit log to database",
                error=str(e),
                error_type=type_name(e),
                audit_type=type,
                tenant_id=tenant_id,
                member_id=member_id,
            )
            return False


def type_name(error: BaseException) -> str:
    return error.__class__.__name__


# Global singleton instance
audit_logger = AuditLogger()
