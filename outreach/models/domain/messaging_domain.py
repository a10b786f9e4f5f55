"""
Domain models for the outbound-messaging pipeline.

Lightweight dataclasses mirroring the rows the repositories read and
write. Status vocabularies live here so services and repositories agree
on the exact strings stored in Postgres.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Member lifecycle
MEMBER_ACTIVE = "active"
CONTACT_OPEN = "open"
CONTACT_CLOSED = "closed"
CONTACT_MUTED = "muted"

# Draft statuses; everything but "pending" is terminal
DRAFT_PENDING = "pending"
DRAFT_SENT = "sent"
DRAFT_DISCARDED = "discarded"
DRAFT_MERGED = "merged"

SEND_RECOMMENDATIONS = ("send", "review", "hold")

ACTION_TYPES = (
    "intro",
    "perk",
    "resource",
    "workshop_invite",
    "check_in",
    "mastermind_invite",
    "follow_up",
    "escalation",
)

# Outbound message lifecycle: queued -> {ready, blocked} -> {sent, error}
MESSAGE_QUEUED = "queued"
MESSAGE_READY = "ready"
MESSAGE_BLOCKED = "blocked"
MESSAGE_SENT = "sent"
MESSAGE_ERROR = "error"

EVALUABLE_MESSAGE_STATUSES = (MESSAGE_QUEUED, MESSAGE_BLOCKED)
TERMINAL_MESSAGE_STATUSES = (MESSAGE_SENT, MESSAGE_ERROR)

MESSAGE_TYPE_FORCED_WEEKLY = "forced_weekly"
MESSAGE_TYPE_TRIGGER_BASED = "trigger_based"

SYSTEM_ACTOR = "system"


@dataclass(slots=True)
class Member:
    """A members row, limited to the fields the pipeline reads."""

    id: str
    tenant_id: str
    status: str
    contact_state: str
    last_contacted_at: datetime | None = None
    last_value_drop_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Member":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            status=row["status"],
            contact_state=row["contact_state"],
            last_contacted_at=row.get("last_contacted_at"),
            last_value_drop_at=row.get("last_value_drop_at"),
        )


@dataclass(slots=True)
class Opportunity:
    """An undismissed opportunity that can trigger a draft."""

    id: str
    tenant_id: str
    member_id: str
    urgency: int
    confidence: int
    recommended_actions: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Opportunity":
        actions = row.get("recommended_actions")
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            member_id=row["member_id"],
            urgency=row.get("urgency") or 0,
            confidence=row.get("confidence") or 0,
            recommended_actions=actions if isinstance(actions, list) else [],
        )


@dataclass(slots=True)
class MessageDraft:
    """A message_drafts row."""

    id: str
    tenant_id: str
    member_id: str
    action_type: str
    content: str
    status: str = DRAFT_PENDING
    autosend_eligible: bool = False
    blocked_reasons: list[str] = field(default_factory=list)
    send_recommendation: str = "review"
    impact_score: int = 0
    generated_from_opportunity_id: str | None = None
    editor_id: str | None = None
    sent_at: datetime | None = None
    sent_by: str | None = None
    created_at: datetime | None = None

    @property
    def is_autosend_candidate(self) -> bool:
        return (
            self.status == DRAFT_PENDING
            and self.autosend_eligible
            and self.send_recommendation == "send"
        )

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MessageDraft":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            member_id=row["member_id"],
            action_type=row["action_type"],
            content=row["content"],
            status=row["status"],
            autosend_eligible=bool(row.get("autosend_eligible")),
            blocked_reasons=list(row.get("blocked_reasons") or []),
            send_recommendation=row.get("send_recommendation") or "review",
            impact_score=row.get("impact_score") or 0,
            generated_from_opportunity_id=row.get("generated_from_opportunity_id"),
            editor_id=row.get("editor_id"),
            sent_at=row.get("sent_at"),
            sent_by=row.get("sent_by"),
            created_at=row.get("created_at"),
        )


@dataclass(slots=True)
class OutboundMessage:
    """An outbound_messages row; at most one per draft."""

    id: str
    tenant_id: str
    member_id: str
    draft_id: str | None
    body: str
    message_type: str = MESSAGE_TYPE_FORCED_WEEKLY
    channel: str = "slack_dm"
    send_as: str = "community_manager"
    status: str = MESSAGE_QUEUED
    scheduled_for: datetime | None = None
    sent_at: datetime | None = None
    external_id: str | None = None
    error: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "OutboundMessage":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            member_id=row["member_id"],
            draft_id=row.get("draft_id"),
            body=row.get("body") or "",
            message_type=row.get("message_type") or MESSAGE_TYPE_FORCED_WEEKLY,
            channel=row.get("channel") or "slack_dm",
            send_as=row.get("send_as") or "community_manager",
            status=row["status"],
            scheduled_for=row.get("scheduled_for"),
            sent_at=row.get("sent_at"),
            external_id=row.get("external_id"),
            error=row.get("error"),
            created_at=row.get("created_at"),
        )


@dataclass(slots=True)
class SlackDmThread:
    """Conversation state for one member DM channel."""

    id: str
    tenant_id: str
    member_id: str
    slack_channel_id: str
    team_id: str | None = None
    # Usually a datetime; raw strings survive from legacy imports
    last_message_at: datetime | str | None = None
    last_member_message_at: datetime | None = None
    last_cm_message_at: datetime | None = None
    member_replied_at: datetime | None = None
    conversation_closed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SlackDmThread":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            member_id=row["member_id"],
            slack_channel_id=row["slack_channel_id"],
            team_id=row.get("team_id"),
            last_message_at=row.get("last_message_at"),
            last_member_message_at=row.get("last_member_message_at"),
            last_cm_message_at=row.get("last_cm_message_at"),
            member_replied_at=row.get("member_replied_at"),
            conversation_closed_at=row.get("conversation_closed_at"),
        )


@dataclass(slots=True)
class SlackEventRecord:
    """A stored Slack webhook delivery awaiting processing."""

    id: str
    tenant_id: str | None
    team_id: str
    event_id: str
    payload: dict[str, Any]
    event_ts: str | None = None
    received_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SlackEventRecord":
        payload = row.get("payload")
        return cls(
            id=row["id"],
            tenant_id=row.get("tenant_id"),
            team_id=row.get("team_id") or "",
            event_id=row.get("event_id") or row["id"],
            payload=payload if isinstance(payload, dict) else {},
            event_ts=row.get("event_ts"),
            received_at=row.get("received_at"),
        )


@dataclass(frozen=True, slots=True)
class ThreadActivity:
    """What a single DM event implies for the thread row."""

    tenant_id: str
    member_id: str
    slack_channel_id: str
    team_id: str | None
    event_at: datetime
    is_member_message: bool
    is_cm_message: bool
    thread_id: str


@dataclass(frozen=True, slots=True)
class GateDecision:
    """Autosend gate verdict; reason is set only when ok is False."""

    ok: bool
    reason: str | None = None

    @classmethod
    def allow(cls) -> "GateDecision":
        return cls(ok=True)

    @classmethod
    def block(cls, reason: str) -> "GateDecision":
        return cls(ok=False, reason=reason)
