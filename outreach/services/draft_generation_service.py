"""
Draft generation: turns due members and open opportunities into pending
message drafts.

Two modes share one service:
- forced weekly: every active, non-muted member without a value drop in
  the tenant's cadence window gets one draft (intro > perk > resource >
  check_in)
- trigger based: every undismissed opportunity without a draft gets one,
  using the opportunity's first recommended action
"""

from datetime import datetime, timedelta
from uuid import uuid4

from outreach.config import settings
from outreach.infrastructure.audit.audit_logger import DRAFT_CREATED, AuditLogger, audit_logger
from outreach.infrastructure.observability.logging import get_logger
from outreach.models.domain.messaging_domain import (
    ACTION_TYPES,
    MESSAGE_TYPE_FORCED_WEEKLY,
    MESSAGE_TYPE_TRIGGER_BASED,
    SYSTEM_ACTOR,
    Member,
    MessageDraft,
    Opportunity,
)
from outreach.models.domain.settings_domain import TenantAutomationSettings
from outreach.repositories.draft_repository import DraftRepository, draft_repository
from outreach.repositories.member_repository import (
    MemberRepository,
    OpportunityRepository,
    member_repository,
    opportunity_repository,
)
from outreach.repositories.tenant_repository import TenantRepository, tenant_repository
from outreach.services.content_generation_service import (
    ContentGenerationService,
    content_generation_service,
)
from outreach.services.job_metrics import JobMetrics

logger = get_logger(__name__)

FORCED_WEEKLY_IMPACT_SCORE = 60
TRIGGER_BASED_IMPACT_SCORE = 70
FALLBACK_ACTION_TYPE = "follow_up"


def new_draft_id() -> str:
    return f"drf_{uuid4().hex[:10]}"


def pick_forced_weekly_action_type(has_intro: bool, has_perk: bool, has_resource: bool) -> str:
    if has_intro:
        return "intro"
    if has_perk:
        return "perk"
    if has_resource:
        return "resource"
    return "check_in"


def normalize_action_type(raw) -> str:
    return raw if raw in ACTION_TYPES else FALLBACK_ACTION_TYPE


def first_recommended_action_type(opportunity: Opportunity) -> str:
    actions = opportunity.recommended_actions
    first = actions[0] if actions else None
    return normalize_action_type(first.get("type") if isinstance(first, dict) else None)


class DraftGenerationService:
    """Creates pending drafts for the autosend bridge and the review queue."""

    def __init__(
        self,
        tenants: TenantRepository | None = None,
        members: MemberRepository | None = None,
        opportunities: OpportunityRepository | None = None,
        drafts: DraftRepository | None = None,
        content: ContentGenerationService | None = None,
        audit: AuditLogger | None = None,
    ):
        self.tenants = tenants or tenant_repository
        self.members = members or member_repository
        self.opportunities = opportunities or opportunity_repository
        self.drafts = drafts or draft_repository
        self.content = content or content_generation_service
        self.audit = audit or audit_logger

    async def _load_settings(
        self, tenant_id: str, metrics: JobMetrics
    ) -> TenantAutomationSettings | None:
        tenant_settings = await self.tenants.fetch_automation_settings(tenant_id)
        if not tenant_settings.drafts.enabled:
            logger.info("Draft generation disabled for tenant", tenant_id=tenant_id)
            metrics.increment("tenants_skipped")
            return None
        return tenant_settings

    async def _for_each_tenant(self, metrics: JobMetrics, run_tenant) -> dict:
        """A tenant that fails (bad settings, lost connection) is recorded and skipped."""
        tenant_ids = await self.tenants.list_tenant_ids()
        metrics.increment("tenants_scanned", len(tenant_ids))

        for tenant_id in tenant_ids:
            try:
                await run_tenant(tenant_id)
            except Exception as e:
                metrics.record_error(tenant_id, None, e)

        metrics.finalize()
        return metrics.to_dict()

    # ------------------------------------------------------------------
    # Forced weekly
    # ------------------------------------------------------------------

    async def run_forced_weekly(self, now: datetime, dry_run: bool = False) -> dict:
        metrics = JobMetrics(
            "drafts_forced_weekly",
            ("tenants_skipped", "members_due", "skipped_pending", "drafts_created"),
        )

        async def run_tenant(tenant_id: str) -> None:
            tenant_settings = await self._load_settings(tenant_id, metrics)
            if tenant_settings is None:
                return

            cutoff = now - timedelta(days=tenant_settings.drafts.cadence_days)
            limit = min(settings.DRAFTS_BATCH_SIZE, tenant_settings.drafts.max_per_run)
            members = await self.members.list_members_due_for_value_drop(tenant_id, cutoff, limit)
            metrics.increment("members_due", len(members))

            for member in members:
                try:
                    await self._forced_weekly_for_member(tenant_id, member, cutoff, dry_run, metrics)
                except Exception as e:
                    metrics.record_error(tenant_id, member.id, e)

        return await self._for_each_tenant(metrics, run_tenant)

    async def _forced_weekly_for_member(
        self,
        tenant_id: str,
        member: Member,
        cutoff: datetime,
        dry_run: bool,
        metrics: JobMetrics,
    ) -> None:
        # A value drop already waiting for dispatch covers this window
        if await self.drafts.pending_value_drop_exists(tenant_id, member.id, cutoff):
            metrics.increment("skipped_pending")
            return

        intro_count = await self.members.count_open_intro_suggestions(tenant_id, member.id)
        perk_count = await self.members.count_open_perk_recommendations(tenant_id, member.id)
        resource_count = await self.members.count_resources(tenant_id)

        action_type = pick_forced_weekly_action_type(
            has_intro=intro_count > 0,
            has_perk=perk_count > 0,
            has_resource=resource_count > 0,
        )
        generated = await self.content.generate(member.id, action_type)

        if dry_run:
            return

        draft = await self.drafts.create_draft(
            MessageDraft(
                id=new_draft_id(),
                tenant_id=tenant_id,
                member_id=member.id,
                action_type=action_type,
                content=generated.content,
                autosend_eligible=generated.autosend_eligible,
                blocked_reasons=generated.blocked_reasons,
                send_recommendation=generated.send_recommendation,
                impact_score=FORCED_WEEKLY_IMPACT_SCORE,
                editor_id=SYSTEM_ACTOR,
            )
        )
        metrics.increment("drafts_created")

        await self.audit.record(
            tenant_id=tenant_id,
            type=DRAFT_CREATED,
            member_id=member.id,
            details={"draft_id": draft.id, "source": MESSAGE_TYPE_FORCED_WEEKLY},
        )

    # ------------------------------------------------------------------
    # Trigger based
    # ------------------------------------------------------------------

    async def run_trigger_based(self, now: datetime, dry_run: bool = False) -> dict:
        metrics = JobMetrics(
            "drafts_trigger_based",
            ("tenants_skipped", "opportunities_scanned", "skipped_existing", "drafts_created"),
        )

        async def run_tenant(tenant_id: str) -> None:
            tenant_settings = await self._load_settings(tenant_id, metrics)
            if tenant_settings is None:
                return

            limit = min(settings.DRAFTS_BATCH_SIZE, tenant_settings.drafts.max_per_run)
            opportunities = await self.opportunities.list_open_opportunities(tenant_id, limit)
            metrics.increment("opportunities_scanned", len(opportunities))

            for opportunity in opportunities:
                try:
                    await self._draft_for_opportunity(tenant_id, opportunity, dry_run, metrics)
                except Exception as e:
                    metrics.record_error(tenant_id, opportunity.id, e)

        return await self._for_each_tenant(metrics, run_tenant)

    async def _draft_for_opportunity(
        self,
        tenant_id: str,
        opportunity: Opportunity,
        dry_run: bool,
        metrics: JobMetrics,
    ) -> None:
        if await self.drafts.draft_exists_for_opportunity(tenant_id, opportunity.id):
            metrics.increment("skipped_existing")
            return

        action_type = first_recommended_action_type(opportunity)
        generated = await self.content.generate(opportunity.member_id, action_type)

        if dry_run:
            return

        draft = await self.drafts.create_draft(
            MessageDraft(
                id=new_draft_id(),
                tenant_id=tenant_id,
                member_id=opportunity.member_id,
                action_type=action_type,
                content=generated.content,
                autosend_eligible=generated.autosend_eligible,
                blocked_reasons=generated.blocked_reasons,
                send_recommendation=generated.send_recommendation,
                impact_score=TRIGGER_BASED_IMPACT_SCORE,
                generated_from_opportunity_id=opportunity.id,
                editor_id=SYSTEM_ACTOR,
            )
        )
        metrics.increment("drafts_created")

        await self.audit.record(
            tenant_id=tenant_id,
            type=DRAFT_CREATED,
            member_id=opportunity.member_id,
            details={
                "draft_id": draft.id,
                "opportunity_id": opportunity.id,
                "source": MESSAGE_TYPE_TRIGGER_BASED,
            },
        )


# Singleton instance for application use
draft_generation_service = DraftGenerationService()
