"""
Autosend gate: decides whether a member can be messaged automatically
right now.

The verdict is recomputed on every evaluation pass from live member and
DM-thread state; nothing about it is cached on the message.
"""

from datetime import datetime, timedelta

from outreach.config import settings
from outreach.models.domain.messaging_domain import (
    CONTACT_MUTED,
    MEMBER_ACTIVE,
    GateDecision,
    Member,
    SlackDmThread,
)
from outreach.repositories.member_repository import MemberRepository, member_repository
from outreach.repositories.slack_repository import SlackRepository, slack_repository
from outreach.utils.time_utils import parse_timestamp

REASON_MEMBER_NOT_FOUND = "Member not found"
REASON_MEMBER_MUTED = "Member is muted"
REASON_MEMBER_NOT_ACTIVE = "Member not active"
REASON_NO_THREAD = "No DM thread mapped"
REASON_NO_LAST_MESSAGE = "No last message timestamp"
REASON_WAITING_FOR_MEMBER = "Waiting for member reply or close"
REASON_INVALID_LAST_MESSAGE = "Invalid last message timestamp"
REASON_COOLDOWN = "24h cooldown not met"

DEFAULT_COOLDOWN = timedelta(hours=24)


def evaluate_autosend_gate(
    member: Member | None,
    thread: SlackDmThread | None,
    now: datetime,
    *,
    cooldown: timedelta = DEFAULT_COOLDOWN,
) -> GateDecision:
    """
    Pure gate decision; the first failing check wins.

    A cooldown of exactly 24h passes: only `now - last < cooldown` blocks.
    """
    if member is None:
        return GateDecision.block(REASON_MEMBER_NOT_FOUND)

    if member.contact_state == CONTACT_MUTED:
        return GateDecision.block(REASON_MEMBER_MUTED)

    if thread is None:
        return GateDecision.block(REASON_NO_THREAD)

    if not thread.last_message_at:
        return GateDecision.block(REASON_NO_LAST_MESSAGE)

    if not thread.member_replied_at and not thread.conversation_closed_at:
        return GateDecision.block(REASON_WAITING_FOR_MEMBER)

    last_message_at = parse_timestamp(thread.last_message_at)
    if last_message_at is None:
        return GateDecision.block(REASON_INVALID_LAST_MESSAGE)

    if now - last_message_at < cooldown:
        return GateDecision.block(REASON_COOLDOWN)

    return GateDecision.allow()


class AutosendGate:
    """Loads live member and thread state and applies the gate."""

    def __init__(
        self,
        members: MemberRepository | None = None,
        slack: SlackRepository | None = None,
        cooldown: timedelta | None = None,
    ):
        self.members = members or member_repository
        self.slack = slack or slack_repository
        self.cooldown = cooldown or timedelta(hours=settings.AUTOSEND_COOLDOWN_HOURS)

    async def evaluate(
        self,
        tenant_id: str,
        member_id: str,
        now: datetime,
        require_active: bool = False,
    ) -> GateDecision:
        """
        Args:
            require_active: Also block members whose status is not active
                (the tenant's autosend.require_recent_activity for new sends)
        """
        member = await self.members.get_member(tenant_id, member_id)
        if member is None:
            return GateDecision.block(REASON_MEMBER_NOT_FOUND)

        if require_active and member.status != MEMBER_ACTIVE:
            return GateDecision.block(REASON_MEMBER_NOT_ACTIVE)

        thread = await self.slack.get_thread_for_member(tenant_id, member_id)
        return evaluate_autosend_gate(member, thread, now, cooldown=self.cooldown)
