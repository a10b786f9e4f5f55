"""
Repository helpers for members and the context used to pick and write drafts.
"""

from datetime import datetime

from outreach.db.helpers import fetch_all, fetch_one, fetch_val
from outreach.models.domain.messaging_domain import (
    CONTACT_MUTED,
    MEMBER_ACTIVE,
    Member,
    Opportunity,
)

_MEMBER_COLUMNS = """
    id, tenant_id, status, contact_state, last_contacted_at, last_value_drop_at
"""


class MemberRepository:
    """Read access to members and the rows that hang off them."""

    async def get_member(self, tenant_id: str, member_id: str) -> Member | None:
        row = await fetch_one(
            f"SELECT {_MEMBER_COLUMNS} FROM members WHERE tenant_id = %s AND id = %s",
            (tenant_id, member_id),
        )
        return Member.from_row(row) if row else None

    async def list_members_due_for_value_drop(
        self, tenant_id: str, cutoff: datetime, limit: int
    ) -> list[Member]:
        """Active, non-muted members without a value drop since cutoff."""
        rows = await fetch_all(
            f"""
            SELECT {_MEMBER_COLUMNS}
            FROM members
            WHERE tenant_id = %s
              AND status = %s
              AND contact_state <> %s
              AND (last_value_drop_at IS NULL OR last_value_drop_at < %s)
            ORDER BY created_at, id
            LIMIT %s
            """,
            (tenant_id, MEMBER_ACTIVE, CONTACT_MUTED, cutoff, limit),
        )
        return [Member.from_row(row) for row in rows]

    async def count_open_intro_suggestions(self, tenant_id: str, member_id: str) -> int:
        return await fetch_val(
            """
            SELECT COUNT(*) FROM intro_suggestions
            WHERE tenant_id = %s
              AND dismissed = FALSE
              AND (member_a_id = %s OR member_b_id = %s)
            """,
            (tenant_id, member_id, member_id),
        ) or 0

    async def count_open_perk_recommendations(self, tenant_id: str, member_id: str) -> int:
        return await fetch_val(
            """
            SELECT COUNT(*) FROM perk_recommendations
            WHERE tenant_id = %s
              AND member_id = %s
              AND dismissed = FALSE
              AND delivered_at IS NULL
            """,
            (tenant_id, member_id),
        ) or 0

    async def count_resources(self, tenant_id: str) -> int:
        return await fetch_val(
            "SELECT COUNT(*) FROM resources WHERE tenant_id = %s",
            (tenant_id,),
        ) or 0

    async def fetch_generation_context(self, member_id: str) -> dict:
        """Recent facts, signals and open opportunities for the content prompt."""
        facts = await fetch_all(
            """
            SELECT fact FROM member_facts
            WHERE member_id = %s
            ORDER BY created_at DESC
            LIMIT 10
            """,
            (member_id,),
        )
        signals = await fetch_all(
            """
            SELECT summary FROM signals
            WHERE member_id = %s
            ORDER BY created_at DESC
            LIMIT 10
            """,
            (member_id,),
        )
        opportunities = await fetch_all(
            """
            SELECT title, urgency, confidence FROM opportunities
            WHERE member_id = %s AND dismissed = FALSE
            ORDER BY urgency DESC, confidence DESC
            LIMIT 5
            """,
            (member_id,),
        )
        return {
            "facts": [row["fact"] for row in facts],
            "signals": [row["summary"] for row in signals],
            "opportunities": opportunities,
        }


class OpportunityRepository:
    """Opportunities that drive trigger-based drafts."""

    async def list_open_opportunities(self, tenant_id: str, limit: int) -> list[Opportunity]:
        rows = await fetch_all(
            """
            SELECT id, tenant_id, member_id, urgency, confidence, recommended_actions
            FROM opportunities
            WHERE tenant_id = %s AND dismissed = FALSE
            ORDER BY urgency DESC, confidence DESC, id
            LIMIT %s
            """,
            (tenant_id, limit),
        )
        return [Opportunity.from_row(row) for row in rows]


member_repository = MemberRepository()
opportunity_repository = OpportunityRepository()
