"""
Tests for the outbox state machine: autosend bridge, evaluator, dispatcher
and operator actions.
"""

from datetime import timedelta

import pytest

from outreach.db.helpers import DatabaseError
from outreach.models.domain.messaging_domain import (
    DRAFT_PENDING,
    DRAFT_SENT,
    MESSAGE_BLOCKED,
    MESSAGE_ERROR,
    MESSAGE_QUEUED,
    MESSAGE_READY,
    MESSAGE_SENT,
)
from outreach.services.autosend_gate import AutosendGate
from outreach.services.outbox_service import DISPATCH_FAILED, OutboxError, OutboxService
from tests.conftest import NOW, TENANT


@pytest.fixture
def service(tenants, drafts, messages, members, slack, fake_audit):
    return OutboxService(
        tenants=tenants,
        drafts=drafts,
        messages=messages,
        gate=AutosendGate(members=members, slack=slack, cooldown=timedelta(hours=24)),
        audit=fake_audit,
    )


def _ready_thread(store, member_id="mem_1", hours_ago=25, channel="D1"):
    last = NOW - timedelta(hours=hours_ago)
    return store.add_thread(member_id, channel=channel, last_message_at=last, member_replied_at=last)


# ----------------------------------------------------------------------
# Evaluator
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_evaluate_blocks_member_without_thread(store, service):
    """Scenario A: no thread row blocks the queued message."""
    store.add_member("mem_1")
    store.add_message("out_1", "mem_1")

    result = await service.run_evaluate(NOW)

    message = store.messages["out_1"]
    assert message.status == MESSAGE_BLOCKED
    assert message.error == "No DM thread mapped"
    assert message.scheduled_for is None
    assert result["evaluated"] == 1
    assert result["blocked"] == 1
    assert result["errors"] == 0


@pytest.mark.asyncio
async def test_evaluate_then_dispatch_happy_path(store, service, fake_audit):
    """Scenario B: replied thread past cooldown goes ready, then sent with side effects."""
    member = store.add_member("mem_1")
    thread = _ready_thread(store)
    store.add_message("out_1", "mem_1", body="x" * 300)

    await service.run_evaluate(NOW)

    message = store.messages["out_1"]
    assert message.status == MESSAGE_READY
    assert message.scheduled_for == NOW
    assert message.error is None

    result = await service.run_dispatch(NOW)

    assert result["dispatched"] == 1
    assert message.status == MESSAGE_SENT
    assert message.sent_at == NOW
    assert message.external_id == "simulated:out_1"
    assert member.last_contacted_at == NOW
    assert member.last_value_drop_at == NOW
    assert thread.last_cm_message_at == NOW
    assert thread.last_message_at == NOW
    assert len(store.interaction_logs) == 1
    assert len(store.interaction_logs[0]["summary"]) == 180
    assert "outbound_message_sent" in fake_audit.types()


@pytest.mark.asyncio
async def test_blocked_message_flips_to_ready_when_member_replies(store, service):
    store.add_member("mem_1")
    thread = store.add_thread("mem_1", last_message_at=NOW - timedelta(hours=30))
    store.add_message("out_1", "mem_1")

    await service.run_evaluate(NOW)
    assert store.messages["out_1"].error == "Waiting for member reply or close"

    thread.member_replied_at = NOW - timedelta(hours=30)
    await service.run_evaluate(NOW)

    assert store.messages["out_1"].status == MESSAGE_READY
    assert store.messages["out_1"].error is None


@pytest.mark.asyncio
async def test_evaluate_dry_run_writes_nothing(store, service):
    store.add_member("mem_1")
    store.add_message("out_1", "mem_1")

    result = await service.run_evaluate(NOW, dry_run=True)

    assert result["blocked"] == 1
    assert store.messages["out_1"].status == MESSAGE_QUEUED


@pytest.mark.asyncio
async def test_evaluate_never_touches_terminal_messages(store, service, messages):
    store.add_member("mem_1")
    store.add_message("out_sent", "mem_1", status=MESSAGE_SENT)
    store.add_message("out_err", "mem_1", status=MESSAGE_ERROR)

    result = await service.run_evaluate(NOW)

    assert result["evaluated"] == 0
    assert store.messages["out_sent"].status == MESSAGE_SENT
    assert store.messages["out_err"].status == MESSAGE_ERROR
    # The guarded update refuses to reopen a sent message
    assert await messages.mark_blocked("out_sent", "late", NOW) is False
    assert await messages.mark_ready("out_sent", NOW) is False


@pytest.mark.asyncio
async def test_evaluate_counts_stale_update(store, service, messages, monkeypatch):
    store.add_member("mem_1")
    _ready_thread(store)
    store.add_message("out_1", "mem_1")

    async def dispatched_meanwhile(message_id, now):
        store.messages[message_id].status = MESSAGE_SENT
        return False

    monkeypatch.setattr(messages, "mark_ready", dispatched_meanwhile)

    result = await service.run_evaluate(NOW)

    assert result["skipped_stale"] == 1
    assert store.messages["out_1"].status == MESSAGE_SENT


# ----------------------------------------------------------------------
# Dispatcher
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_dispatch_skips_future_schedule(store, service):
    store.add_member("mem_1")
    store.add_message("out_later", "mem_1", status=MESSAGE_READY, scheduled_for=NOW + timedelta(minutes=5))
    store.add_message("out_now", "mem_1", status=MESSAGE_READY, scheduled_for=None)

    result = await service.run_dispatch(NOW)

    assert result["dispatched"] == 1
    assert store.messages["out_now"].status == MESSAGE_SENT
    assert store.messages["out_later"].status == MESSAGE_READY


@pytest.mark.asyncio
async def test_dispatch_failure_marks_error_and_continues(store, service, messages):
    store.add_member("mem_1")
    store.add_member("mem_2")
    store.add_message("out_1", "mem_1", status=MESSAGE_READY)
    store.add_message("out_2", "mem_2", status=MESSAGE_READY)
    messages.fail_dispatch_for.add("out_1")

    result = await service.run_dispatch(NOW)

    assert result["errors"] == 1
    assert result["dispatched"] == 1
    assert store.messages["out_1"].status == MESSAGE_ERROR
    assert store.messages["out_1"].error == DISPATCH_FAILED
    assert store.messages["out_2"].status == MESSAGE_SENT
    assert store.members["mem_1"].last_contacted_at is None


@pytest.mark.asyncio
async def test_dispatch_failure_leaves_ready_when_error_mark_fails(store, service, messages):
    store.add_member("mem_1")
    store.add_message("out_1", "mem_1", status=MESSAGE_READY)
    messages.fail_dispatch_for.add("out_1")
    messages.fail_mark_error = True

    result = await service.run_dispatch(NOW)

    assert result["errors"] == 1
    assert store.messages["out_1"].status == MESSAGE_READY


@pytest.mark.asyncio
async def test_dispatch_dry_run_sends_nothing(store, service):
    store.add_member("mem_1")
    store.add_message("out_1", "mem_1", status=MESSAGE_READY)

    result = await service.run_dispatch(NOW, dry_run=True)

    assert result["dispatched"] == 1
    assert store.messages["out_1"].status == MESSAGE_READY
    assert store.interaction_logs == []


@pytest.mark.asyncio
async def test_second_dispatch_run_does_not_resend(store, service):
    store.add_member("mem_1")
    store.add_message("out_1", "mem_1", status=MESSAGE_READY)

    await service.run_dispatch(NOW)
    result = await service.run_dispatch(NOW + timedelta(minutes=1))

    assert result["dispatched"] == 0
    assert len(store.interaction_logs) == 1


@pytest.mark.asyncio
async def test_dispatch_reblocks_member_muted_after_evaluation(store, service, fake_audit):
    member = store.add_member("mem_1")
    _ready_thread(store)
    store.add_message("out_1", "mem_1")

    await service.run_evaluate(NOW)
    assert store.messages["out_1"].status == MESSAGE_READY

    member.contact_state = "muted"
    result = await service.run_dispatch(NOW)

    message = store.messages["out_1"]
    assert result["dispatched"] == 0
    assert result["blocked"] == 1
    assert message.status == MESSAGE_BLOCKED
    assert message.error == "Member is muted"
    assert message.sent_at is None
    assert store.interaction_logs == []
    assert member.last_contacted_at is None
    assert "outbound_message_sent" not in fake_audit.types()

    # Unmuted: the evaluator releases it again
    member.contact_state = "open"
    await service.run_evaluate(NOW)
    result = await service.run_dispatch(NOW)

    assert result["dispatched"] == 1
    assert message.status == MESSAGE_SENT


@pytest.mark.asyncio
async def test_dispatch_refuses_muted_member_listed_before_mute(store, service, messages, monkeypatch):
    member = store.add_member("mem_1")
    store.add_message("out_1", "mem_1", status=MESSAGE_READY)
    original = messages.list_due_for_dispatch

    async def muted_meanwhile(tenant_id, now, limit):
        due = await original(tenant_id, now, limit)
        member.contact_state = "muted"
        return due

    monkeypatch.setattr(messages, "list_due_for_dispatch", muted_meanwhile)

    result = await service.run_dispatch(NOW)

    assert result["dispatched"] == 0
    assert result["skipped_stale"] == 1
    assert store.messages["out_1"].status == MESSAGE_READY
    assert store.interaction_logs == []


# ----------------------------------------------------------------------
# Autosend bridge
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_enqueue_is_idempotent_per_draft(store, service):
    draft = store.add_draft("drf_1", "mem_1")

    first, created_first = await service.enqueue_from_draft(draft)
    second, created_second = await service.enqueue_from_draft(draft)

    assert created_first is True
    assert created_second is False
    assert first.id == second.id
    assert len(store.messages) == 1
    assert first.message_type == "forced_weekly"


@pytest.mark.asyncio
async def test_enqueue_marks_opportunity_drafts_trigger_based(store, service):
    draft = store.add_draft("drf_1", "mem_1", generated_from_opportunity_id="opp_1")

    message, _ = await service.enqueue_from_draft(draft)

    assert message.message_type == "trigger_based"
    assert message.status == MESSAGE_QUEUED
    assert message.body == draft.content


@pytest.mark.asyncio
async def test_autosend_sends_eligible_draft(store, service, fake_audit):
    store.add_member("mem_1")
    _ready_thread(store)
    store.add_draft("drf_1", "mem_1")

    result = await service.run_autosend(NOW)

    assert result["sent"] == 1
    draft = store.drafts["drf_1"]
    assert draft.status == DRAFT_SENT
    assert draft.sent_by == "system"
    assert [m.draft_id for m in store.messages.values()] == ["drf_1"]
    entry = fake_audit.entries[-1]
    assert entry["type"] == "outbound_message_enqueued"
    assert entry["details"]["source"] == "autosend"


@pytest.mark.asyncio
async def test_autosend_blocked_draft_stays_pending(store, service):
    store.add_member("mem_1")
    store.add_draft("drf_1", "mem_1")

    result = await service.run_autosend(NOW)

    assert result["blocked"] == 1
    assert store.drafts["drf_1"].status == DRAFT_PENDING
    assert store.messages == {}


@pytest.mark.asyncio
async def test_autosend_ignores_non_candidates(store, service):
    store.add_member("mem_1")
    _ready_thread(store)
    store.add_draft("drf_review", "mem_1", send_recommendation="review")
    store.add_draft("drf_ineligible", "mem_1", autosend_eligible=False)
    store.add_draft("drf_low", "mem_1", impact_score=10)

    result = await service.run_autosend(NOW)

    assert result["scanned"] == 0
    assert store.messages == {}


@pytest.mark.asyncio
async def test_autosend_respects_tenant_settings(store, service):
    store.add_member("mem_1")
    _ready_thread(store)
    store.add_draft("drf_1", "mem_1")
    store.tenant_documents[TENANT] = {"autosend": {"enabled": False}}

    result = await service.run_autosend(NOW)

    assert result["tenants_skipped"] == 1
    assert store.drafts["drf_1"].status == DRAFT_PENDING


@pytest.mark.asyncio
async def test_autosend_requires_active_member(store, service):
    store.add_member("mem_1", status="paused")
    _ready_thread(store)
    store.add_draft("drf_1", "mem_1")

    result = await service.run_autosend(NOW)
    assert result["blocked"] == 1

    store.tenant_documents[TENANT] = {"autosend": {"requireRecentActivity": False}}
    result = await service.run_autosend(NOW)
    assert result["sent"] == 1


@pytest.mark.asyncio
async def test_autosend_dry_run(store, service):
    store.add_member("mem_1")
    _ready_thread(store)
    store.add_draft("drf_1", "mem_1")

    result = await service.run_autosend(NOW, dry_run=True)

    assert result["sent"] == 1
    assert store.drafts["drf_1"].status == DRAFT_PENDING
    assert store.messages == {}


@pytest.mark.asyncio
async def test_autosend_continues_after_item_failure(store, service, messages):
    store.add_member("mem_1")
    store.add_member("mem_2")
    _ready_thread(store, "mem_1", channel="D1")
    _ready_thread(store, "mem_2", channel="D2")
    store.add_draft("drf_1", "mem_1")
    store.add_draft("drf_2", "mem_2")
    messages.fail_enqueue_for.add("drf_1")

    result = await service.run_autosend(NOW)

    assert result["errors"] == 1
    assert result["sent"] == 1
    assert store.drafts["drf_2"].status == DRAFT_SENT


@pytest.mark.asyncio
async def test_autosend_enqueue_failure_keeps_draft_for_next_run(store, service, messages):
    store.add_member("mem_1")
    _ready_thread(store)
    store.add_draft("drf_1", "mem_1")
    messages.fail_enqueue_for.add("drf_1")

    first = await service.run_autosend(NOW)

    assert first["errors"] == 1
    assert store.drafts["drf_1"].status == DRAFT_PENDING
    assert store.messages == {}

    messages.fail_enqueue_for.clear()
    second = await service.run_autosend(NOW + timedelta(hours=1))

    assert second["scanned"] == 1
    assert second["sent"] == 1
    assert store.drafts["drf_1"].status == DRAFT_SENT
    assert [m.draft_id for m in store.messages.values()] == ["drf_1"]


@pytest.mark.asyncio
async def test_autosend_skips_draft_sent_concurrently(store, service, drafts, monkeypatch):
    store.add_member("mem_1")
    _ready_thread(store)
    store.add_draft("drf_1", "mem_1")
    original = drafts.list_autosend_candidates

    async def sent_meanwhile(tenant_id, min_impact_score, limit):
        listed = await original(tenant_id, min_impact_score, limit)
        store.drafts["drf_1"].status = DRAFT_SENT
        return listed

    monkeypatch.setattr(drafts, "list_autosend_candidates", sent_meanwhile)

    result = await service.run_autosend(NOW)

    assert result["skipped_stale"] == 1
    assert result["sent"] == 0
    assert store.messages == {}


@pytest.mark.asyncio
async def test_autosend_blocks_muted_member_even_when_tenant_relaxes_contact_state(store, service):
    store.add_member("mem_1", contact_state="muted")
    _ready_thread(store)
    store.add_draft("drf_1", "mem_1")
    store.tenant_documents[TENANT] = {"autosend": {"respectContactState": False}}

    result = await service.run_autosend(NOW)

    assert result["blocked"] == 1
    assert store.drafts["drf_1"].status == DRAFT_PENDING
    assert store.messages == {}


@pytest.mark.asyncio
async def test_failing_tenant_does_not_stop_the_batch(store, service, tenants, monkeypatch):
    store.tenant_ids = ["tnt_broken", TENANT]
    store.add_member("mem_1")
    _ready_thread(store)
    store.add_message("out_1", "mem_1")
    original = tenants.fetch_automation_settings

    async def flaky_settings(tenant_id):
        if tenant_id == "tnt_broken":
            raise DatabaseError("connection lost", operation="fetch_one", recoverable=True)
        return await original(tenant_id)

    monkeypatch.setattr(tenants, "fetch_automation_settings", flaky_settings)

    evaluated = await service.run_evaluate(NOW)
    dispatched = await service.run_dispatch(NOW)

    assert evaluated["errors"] == 1
    assert evaluated["tenants_scanned"] == 2
    assert evaluated["ready"] == 1
    assert dispatched["errors"] == 1
    assert dispatched["dispatched"] == 1
    assert store.messages["out_1"].status == MESSAGE_SENT


# ----------------------------------------------------------------------
# Operator actions
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_requeue_errored_message(store, service, fake_audit):
    store.add_member("mem_1")
    store.add_message("out_1", "mem_1", status=MESSAGE_ERROR, error=DISPATCH_FAILED)

    message = await service.requeue(TENANT, "out_1", actor_id="usr_1", now=NOW)

    assert message.status == MESSAGE_QUEUED
    assert message.error is None
    entry = fake_audit.entries[-1]
    assert entry["type"] == "outbound_message_enqueued"
    assert entry["actor_id"] == "usr_1"
    assert entry["details"]["source"] == "manual_requeue"
    assert entry["details"]["previous_status"] == MESSAGE_ERROR


@pytest.mark.asyncio
async def test_requeue_refuses_sent_message(store, service):
    store.add_member("mem_1")
    store.add_message("out_1", "mem_1", status=MESSAGE_SENT)

    with pytest.raises(OutboxError):
        await service.requeue(TENANT, "out_1", actor_id="usr_1", now=NOW)

    assert store.messages["out_1"].status == MESSAGE_SENT


@pytest.mark.asyncio
async def test_requeue_unknown_message(service):
    with pytest.raises(OutboxError) as exc_info:
        await service.requeue(TENANT, "out_missing", actor_id="usr_1", now=NOW)

    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_mark_sent_applies_dispatch_side_effects(store, service, fake_audit):
    member = store.add_member("mem_1")
    store.add_message("out_1", "mem_1", status=MESSAGE_BLOCKED, error="No DM thread mapped")

    message = await service.mark_sent(TENANT, "out_1", actor_id="usr_1", now=NOW)

    assert message.status == MESSAGE_SENT
    assert message.external_id == "simulated:out_1"
    assert member.last_contacted_at == NOW
    assert store.interaction_logs[0]["created_by"] == "usr_1"
    assert fake_audit.types() == ["outbound_message_sent"]
    assert fake_audit.entries[-1]["details"]["previous_status"] == MESSAGE_BLOCKED

    # Marking again is a no-op
    again = await service.mark_sent(TENANT, "out_1", actor_id="usr_1", now=NOW + timedelta(hours=1))
    assert again.sent_at == NOW
    assert len(store.interaction_logs) == 1


@pytest.mark.asyncio
async def test_override_block_releases_message(store, service, fake_audit):
    store.add_member("mem_1")
    store.add_message("out_1", "mem_1", status=MESSAGE_BLOCKED, error="24h cooldown not met")

    message = await service.override_block(TENANT, "out_1", actor_id="usr_1", now=NOW)

    assert message.status == MESSAGE_READY
    assert message.scheduled_for == NOW
    entry = fake_audit.entries[-1]
    assert entry["type"] == "outbound_message_block_overridden"
    assert entry["details"]["blocked_reason"] == "24h cooldown not met"

    result = await service.run_dispatch(NOW)
    assert result["dispatched"] == 1


@pytest.mark.asyncio
async def test_override_block_requires_blocked_status(store, service):
    store.add_member("mem_1")
    store.add_message("out_1", "mem_1", status=MESSAGE_QUEUED)

    with pytest.raises(OutboxError):
        await service.override_block(TENANT, "out_1", actor_id="usr_1", now=NOW)


@pytest.mark.asyncio
async def test_mark_sent_records_hand_delivery_to_muted_member(store, service):
    member = store.add_member("mem_1", contact_state="muted")
    store.add_message("out_1", "mem_1", status=MESSAGE_BLOCKED, error="Member is muted")

    message = await service.mark_sent(TENANT, "out_1", actor_id="usr_1", now=NOW)

    assert message.status == MESSAGE_SENT
    assert member.last_contacted_at == NOW


@pytest.mark.asyncio
async def test_operator_results_are_detached_from_storage(store, service):
    store.add_member("mem_1")
    store.add_message("out_1", "mem_1", status=MESSAGE_BLOCKED, error="24h cooldown not met")

    message = await service.override_block(TENANT, "out_1", actor_id="usr_1", now=NOW)
    message.status = MESSAGE_ERROR

    assert store.messages["out_1"].status == MESSAGE_READY
