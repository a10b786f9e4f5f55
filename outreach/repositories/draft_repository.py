"""
Repository helpers for message drafts.
"""

from datetime import datetime

from outreach.db.helpers import fetch_all, fetch_one
from outreach.infrastructure.observability.logging import get_logger
from outreach.models.domain.messaging_domain import DRAFT_PENDING, MessageDraft

logger = get_logger(__name__)

_DRAFT_COLUMNS = """
    id, tenant_id, member_id, action_type, content, status, autosend_eligible,
    blocked_reasons, send_recommendation, impact_score,
    generated_from_opportunity_id, editor_id, sent_at, sent_by, created_at
"""


class DraftRepository:
    """Persistence for message_drafts."""

    async def create_draft(self, draft: MessageDraft) -> MessageDraft:
        row = await fetch_one(
            f"""
            INSERT INTO message_drafts (
                id, tenant_id, member_id, action_type, content, status,
                autosend_eligible, blocked_reasons, send_recommendation,
                impact_score, generated_from_opportunity_id, editor_id,
                created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW(), NOW())
            RETURNING {_DRAFT_COLUMNS}
            """,
            (
                draft.id,
                draft.tenant_id,
                draft.member_id,
                draft.action_type,
                draft.content,
                draft.status,
                draft.autosend_eligible,
                draft.blocked_reasons,
                draft.send_recommendation,
                draft.impact_score,
                draft.generated_from_opportunity_id,
                draft.editor_id,
            ),
        )
        logger.debug("Draft created", draft_id=draft.id, member_id=draft.member_id)
        return MessageDraft.from_row(row)

    async def draft_exists_for_opportunity(self, tenant_id: str, opportunity_id: str) -> bool:
        row = await fetch_one(
            """
            SELECT id FROM message_drafts
            WHERE tenant_id = %s AND generated_from_opportunity_id = %s
            LIMIT 1
            """,
            (tenant_id, opportunity_id),
        )
        return row is not None

    async def pending_value_drop_exists(
        self, tenant_id: str, member_id: str, since: datetime
    ) -> bool:
        """True if a non-opportunity draft for the member is still pending since `since`."""
        row = await fetch_one(
            """
            SELECT id FROM message_drafts
            WHERE tenant_id = %s
              AND member_id = %s
              AND status = %s
              AND generated_from_opportunity_id IS NULL
              AND created_at >= %s
            LIMIT 1
            """,
            (tenant_id, member_id, DRAFT_PENDING, since),
        )
        return row is not None

    async def list_autosend_candidates(
        self, tenant_id: str, min_impact_score: int, limit: int
    ) -> list[MessageDraft]:
        rows = await fetch_all(
            f"""
            SELECT {_DRAFT_COLUMNS}
            FROM message_drafts
            WHERE tenant_id = %s
              AND status = %s
              AND autosend_eligible = TRUE
              AND send_recommendation = 'send'
              AND impact_score >= %s
            ORDER BY created_at, id
            LIMIT %s
            """,
            (tenant_id, DRAFT_PENDING, min_impact_score, limit),
        )
        return [MessageDraft.from_row(row) for row in rows]


draft_repository = DraftRepository()
