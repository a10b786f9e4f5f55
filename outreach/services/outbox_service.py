"""
Outbox service: the outbound message state machine and its workers.

    queued -> {ready, blocked} -> {sent, error}

- autosend bridge: pending, autosend-eligible drafts that pass the gate
  are marked sent and enqueued (one message per draft)
- evaluator: re-runs the gate over queued/blocked messages
- dispatcher: delivers ready messages, one transaction per message; ready
  messages of members muted since evaluation go back to blocked
- operator actions: requeue, mark_sent, override_block

Every status change is a guarded update, so overlapping runs never undo
each other and sent/error stay terminal until an operator requeues.
"""

from datetime import UTC, datetime
from uuid import uuid4

from outreach.config import settings
from outreach.infrastructure.audit.audit_logger import (
    OUTBOUND_MESSAGE_BLOCK_OVERRIDDEN,
    OUTBOUND_MESSAGE_ENQUEUED,
    OUTBOUND_MESSAGE_SENT,
    AuditLogger,
    audit_logger,
)
from outreach.infrastructure.observability.logging import get_logger
from outreach.models.domain.messaging_domain import (
    MESSAGE_BLOCKED,
    MESSAGE_ERROR,
    MESSAGE_QUEUED,
    MESSAGE_READY,
    MESSAGE_SENT,
    MESSAGE_TYPE_FORCED_WEEKLY,
    MESSAGE_TYPE_TRIGGER_BASED,
    SYSTEM_ACTOR,
    MessageDraft,
    OutboundMessage,
)
from outreach.models.domain.settings_domain import TenantAutomationSettings
from outreach.repositories.draft_repository import DraftRepository, draft_repository
from outreach.repositories.outbound_message_repository import (
    OutboundMessageRepository,
    outbound_message_repository,
)
from outreach.repositories.tenant_repository import TenantRepository, tenant_repository
from outreach.services.autosend_gate import REASON_MEMBER_MUTED, AutosendGate
from outreach.services.job_metrics import JobMetrics

logger = get_logger(__name__)

DISPATCH_FAILED = "Dispatch failed"
MANUAL_SEND_FROM_STATUSES = (MESSAGE_QUEUED, MESSAGE_READY, MESSAGE_BLOCKED, MESSAGE_ERROR)


class OutboxError(Exception):
    """Raised when an operator action cannot be applied to a message."""

    def __init__(self, message: str, message_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.message_id = message_id
        self.recoverable = recoverable


def new_message_id() -> str:
    return f"out_{uuid4().hex[:10]}"


def message_type_for(draft: MessageDraft) -> str:
    if draft.generated_from_opportunity_id:
        return MESSAGE_TYPE_TRIGGER_BASED
    return MESSAGE_TYPE_FORCED_WEEKLY


def message_for_draft(draft: MessageDraft, send_as: str = "community_manager") -> OutboundMessage:
    return OutboundMessage(
        id=new_message_id(),
        tenant_id=draft.tenant_id,
        member_id=draft.member_id,
        draft_id=draft.id,
        body=draft.content,
        message_type=message_type_for(draft),
        send_as=send_as,
    )


class OutboxService:
    """Owns every transition of outbound_messages."""

    def __init__(
        self,
        tenants: TenantRepository | None = None,
        drafts: DraftRepository | None = None,
        messages: OutboundMessageRepository | None = None,
        gate: AutosendGate | None = None,
        audit: AuditLogger | None = None,
    ):
        self.tenants = tenants or tenant_repository
        self.drafts = drafts or draft_repository
        self.messages = messages or outbound_message_repository
        self.gate = gate or AutosendGate()
        self.audit = audit or audit_logger

    async def _autosend_settings(
        self, tenant_id: str, metrics: JobMetrics
    ) -> TenantAutomationSettings | None:
        """Tenant settings, or None when autosend is off for the tenant."""
        tenant_settings = await self.tenants.fetch_automation_settings(tenant_id)
        if not tenant_settings.autosend.enabled:
            logger.info("Autosend disabled for tenant", tenant_id=tenant_id)
            metrics.increment("tenants_skipped")
            return None
        return tenant_settings

    async def _for_each_tenant(self, metrics: JobMetrics, run_tenant) -> dict:
        """Run one tenant at a time; a failing tenant is recorded and the batch continues."""
        tenant_ids = await self.tenants.list_tenant_ids()
        metrics.increment("tenants_scanned", len(tenant_ids))

        for tenant_id in tenant_ids:
            try:
                await run_tenant(tenant_id)
            except Exception as e:
                metrics.record_error(tenant_id, None, e)

        metrics.finalize()
        return metrics.to_dict()

    async def enqueue_from_draft(
        self, draft: MessageDraft, send_as: str = "community_manager"
    ) -> tuple[OutboundMessage, bool]:
        """
        Create the queued message for a draft. Idempotent on draft_id: a
        second call returns the existing message with created=False.
        """
        message, created = await self.messages.insert_if_absent(message_for_draft(draft, send_as))
        if not created:
            logger.info("Outbound message already exists for draft", draft_id=draft.id, message_id=message.id)
        return message, created

    # ------------------------------------------------------------------
    # Autosend bridge
    # ------------------------------------------------------------------

    async def run_autosend(self, now: datetime, dry_run: bool = False) -> dict:
        metrics = JobMetrics(
            "drafts_autosend", ("tenants_skipped", "scanned", "sent", "blocked", "skipped_stale")
        )

        async def run_tenant(tenant_id: str) -> None:
            tenant_settings = await self._autosend_settings(tenant_id, metrics)
            if tenant_settings is None:
                return

            autosend = tenant_settings.autosend
            drafts = await self.drafts.list_autosend_candidates(
                tenant_id, autosend.min_impact_score, settings.AUTOSEND_BATCH_SIZE
            )
            metrics.increment("scanned", len(drafts))

            for draft in drafts:
                try:
                    await self._autosend_draft(
                        draft, now, dry_run, autosend.require_recent_activity, metrics
                    )
                except Exception as e:
                    metrics.record_error(tenant_id, draft.id, e)

        return await self._for_each_tenant(metrics, run_tenant)

    async def _autosend_draft(
        self,
        draft: MessageDraft,
        now: datetime,
        dry_run: bool,
        require_active: bool,
        metrics: JobMetrics,
    ) -> None:
        decision = await self.gate.evaluate(
            draft.tenant_id, draft.member_id, now, require_active=require_active
        )
        if not decision.ok:
            metrics.increment("blocked")
            logger.debug("Autosend blocked", draft_id=draft.id, reason=decision.reason)
            return

        if dry_run:
            metrics.increment("sent")
            return

        # Draft flip and enqueue commit together, so a failure leaves the draft pending
        enqueued = await self.messages.enqueue_sent_draft(
            message_for_draft(draft), now, SYSTEM_ACTOR
        )
        if enqueued is None:
            metrics.increment("skipped_stale")
            return

        message, _ = enqueued
        metrics.increment("sent")

        await self.audit.record(
            tenant_id=draft.tenant_id,
            type=OUTBOUND_MESSAGE_ENQUEUED,
            member_id=draft.member_id,
            details={"draft_id": draft.id, "message_id": message.id, "source": "autosend"},
        )

    # ------------------------------------------------------------------
    # Evaluator
    # ------------------------------------------------------------------

    async def run_evaluate(self, now: datetime, dry_run: bool = False) -> dict:
        metrics = JobMetrics(
            "outbox_evaluate", ("tenants_skipped", "evaluated", "ready", "blocked", "skipped_stale")
        )

        async def run_tenant(tenant_id: str) -> None:
            if await self._autosend_settings(tenant_id, metrics) is None:
                return

            messages = await self.messages.list_for_evaluation(
                tenant_id, settings.OUTBOX_EVALUATE_BATCH_SIZE
            )

            for message in messages:
                metrics.increment("evaluated")
                try:
                    await self._evaluate_message(message, now, dry_run, metrics)
                except Exception as e:
                    metrics.record_error(tenant_id, message.id, e)

        return await self._for_each_tenant(metrics, run_tenant)

    async def _evaluate_message(
        self, message: OutboundMessage, now: datetime, dry_run: bool, metrics: JobMetrics
    ) -> None:
        decision = await self.gate.evaluate(message.tenant_id, message.member_id, now)
        metrics.increment("ready" if decision.ok else "blocked")

        if dry_run:
            return

        if decision.ok:
            applied = await self.messages.mark_ready(message.id, now)
        else:
            applied = await self.messages.mark_blocked(message.id, decision.reason, now)

        if not applied:
            # Dispatched or requeued by someone else since we listed it
            metrics.increment("skipped_stale")

    # ------------------------------------------------------------------
    # Dispatcher
    # ------------------------------------------------------------------

    async def run_dispatch(self, now: datetime, dry_run: bool = False) -> dict:
        metrics = JobMetrics(
            "outbox_dispatch", ("tenants_skipped", "due", "dispatched", "blocked", "skipped_stale")
        )

        async def run_tenant(tenant_id: str) -> None:
            if await self._autosend_settings(tenant_id, metrics) is None:
                return

            # Muted after evaluation: back to blocked, the evaluator releases it on unmute
            if not dry_run:
                blocked = await self.messages.block_ready_for_muted(tenant_id, REASON_MEMBER_MUTED, now)
                metrics.increment("blocked", blocked)

            messages = await self.messages.list_due_for_dispatch(
                tenant_id, now, settings.OUTBOX_DISPATCH_BATCH_SIZE
            )
            metrics.increment("due", len(messages))

            for message in messages:
                if dry_run:
                    metrics.increment("dispatched")
                    continue
                await self._dispatch_message(message, now, metrics)

        return await self._for_each_tenant(metrics, run_tenant)

    async def _dispatch_message(
        self, message: OutboundMessage, now: datetime, metrics: JobMetrics
    ) -> None:
        try:
            sent = await self.messages.record_dispatch(message, now, SYSTEM_ACTOR)
        except Exception as e:
            metrics.record_error(message.tenant_id, message.id, e)
            await self._mark_dispatch_failed(message, now)
            return

        if not sent:
            metrics.increment("skipped_stale")
            return

        metrics.increment("dispatched")
        await self.audit.record(
            tenant_id=message.tenant_id,
            type=OUTBOUND_MESSAGE_SENT,
            member_id=message.member_id,
            details={"message_id": message.id, "draft_id": message.draft_id, "source": "dispatcher"},
        )

    async def _mark_dispatch_failed(self, message: OutboundMessage, now: datetime) -> None:
        """Best effort: if this write fails too the message stays ready for the next run."""
        try:
            await self.messages.mark_error(message.id, DISPATCH_FAILED, now)
        except Exception as e:
            logger.error(
                "Failed to mark message as errored after dispatch failure",
                message_id=message.id,
                tenant_id=message.tenant_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def _require_message(self, tenant_id: str, message_id: str) -> OutboundMessage:
        message = await self.messages.get_message(tenant_id, message_id)
        if message is None:
            raise OutboxError("Outbound message not found", message_id=message_id, recoverable=False)
        return message

    async def requeue(
        self,
        tenant_id: str,
        message_id: str,
        actor_id: str,
        actor_label: str = "Operator",
        actor_role: str = "admin",
        now: datetime | None = None,
    ) -> OutboundMessage:
        """
        Move an errored, blocked or ready message back to queued.

        Raises:
            OutboxError: If the message does not exist or was already sent
        """
        now = now or datetime.now(UTC)
        current = await self._require_message(tenant_id, message_id)
        previous_status = current.status

        message = await self.messages.requeue(tenant_id, message_id, now)
        if message is None:
            raise OutboxError(
                f"Cannot requeue message in status '{previous_status}'",
                message_id=message_id,
                recoverable=False,
            )

        await self.audit.record(
            tenant_id=tenant_id,
            type=OUTBOUND_MESSAGE_ENQUEUED,
            actor_id=actor_id,
            actor_label=actor_label,
            actor_role=actor_role,
            member_id=message.member_id,
            details={
                "message_id": message.id,
                "draft_id": message.draft_id,
                "previous_status": previous_status,
                "source": "manual_requeue",
            },
        )
        return message

    async def mark_sent(
        self,
        tenant_id: str,
        message_id: str,
        actor_id: str,
        actor_label: str = "Operator",
        actor_role: str = "admin",
        now: datetime | None = None,
    ) -> OutboundMessage:
        """
        Record a message as sent by hand, with the same side effects as a
        dispatch. Marking an already sent message is a no-op.

        Raises:
            OutboxError: If the message does not exist or changed concurrently
        """
        now = now or datetime.now(UTC)
        message = await self._require_message(tenant_id, message_id)
        if message.status == MESSAGE_SENT:
            return message
        previous_status = message.status

        # An operator send is a record of a message already delivered by hand
        sent = await self.messages.record_dispatch(
            message, now, actor_id, from_statuses=MANUAL_SEND_FROM_STATUSES, allow_muted=True
        )
        if not sent:
            raise OutboxError("Message changed while marking it sent", message_id=message_id)

        await self.audit.record(
            tenant_id=tenant_id,
            type=OUTBOUND_MESSAGE_SENT,
            actor_id=actor_id,
            actor_label=actor_label,
            actor_role=actor_role,
            member_id=message.member_id,
            details={
                "message_id": message.id,
                "draft_id": message.draft_id,
                "previous_status": previous_status,
                "source": "manual",
            },
        )
        return await self._require_message(tenant_id, message_id)

    async def override_block(
        self,
        tenant_id: str,
        message_id: str,
        actor_id: str,
        actor_label: str = "Operator",
        actor_role: str = "admin",
        now: datetime | None = None,
    ) -> OutboundMessage:
        """
        Release a blocked message for immediate dispatch.

        Raises:
            OutboxError: If the message does not exist or is not blocked
        """
        now = now or datetime.now(UTC)
        current = await self._require_message(tenant_id, message_id)
        blocked_reason = current.error

        message = await self.messages.override_block(tenant_id, message_id, now)
        if message is None:
            raise OutboxError(
                f"Only blocked messages can be overridden (status '{current.status}')",
                message_id=message_id,
                recoverable=False,
            )

        await self.audit.record(
            tenant_id=tenant_id,
            type=OUTBOUND_MESSAGE_BLOCK_OVERRIDDEN,
            actor_id=actor_id,
            actor_label=actor_label,
            actor_role=actor_role,
            member_id=message.member_id,
            details={
                "message_id": message.id,
                "draft_id": message.draft_id,
                "blocked_reason": blocked_reason,
            },
        )
        return message


# Singleton instance for application use
outbox_service = OutboxService()
