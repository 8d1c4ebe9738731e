"""Tests for the escalation scheduler and reminder pass.

Escalations are driven by a FixedClock; the scheduler re-checks status and
step id under the instance lock, so a timer that fires after the step moved
on does nothing.
"""
from decimal import Decimal
from unittest.mock import MagicMock, patch

from approval_routing.core.clock import as_utc
from approval_routing.models.notification import NotificationIntent, NotificationType
from approval_routing.models.workflow import SYSTEM_ACTOR, WorkflowStatus
from approval_routing.schemas.workflow import RequestAttributes, RouteRequestIn
from approval_routing.services.escalation import find_due_escalations, run_escalation_pass, run_reminder_pass
from approval_routing.services.locking import InstanceLockManager


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _amount_gt(value) -> dict:
    return {"trigger_type": "amount", "operator": "greater_than", "value": {"kind": "number", "value": value}}


def _route(engine, amount=50):
    return engine.route(
        RouteRequestIn(reference_id="PR-9", category="purchase",
                       attributes=RequestAttributes(amount=Decimal(str(amount)))),
        "alice",
    )


def _run(db, directory, clock):
    return run_escalation_pass(db, directory, clock=clock, locks=InstanceLockManager(timeout=1))


# ─── Due detection ────────────────────────────────────────────────────────────

def test_step_is_due_only_after_timeout(engine, make_config, db, clock):
    make_config([{
        "level": 1, "thresholds": [_amount_gt(0)],
        "approvers": [{"type": "user", "user_id": "mgr"}],
        "escalation": {"timeout_hours": 24, "escalate_to_user_id": "cfo"},
    }])
    instance = _route(engine)

    clock.advance(hours=23)
    assert find_due_escalations(db, clock.now()) == []

    clock.advance(hours=1)
    assert find_due_escalations(db, clock.now()) == [(instance.id, instance.current_step_id)]


def test_tier_without_timeout_never_escalates(engine, make_config, db, clock):
    make_config([{"level": 1, "thresholds": [_amount_gt(0)], "approvers": [{"type": "user", "user_id": "mgr"}]}])
    _route(engine)

    clock.advance(days=30)

    assert find_due_escalations(db, clock.now()) == []


# ─── Escalation targets ───────────────────────────────────────────────────────

def test_escalate_to_user(engine, make_config, db, directory, clock):
    make_config([{
        "level": 1, "thresholds": [_amount_gt(0)],
        "approvers": [{"type": "user", "user_id": "mgr"}],
        "escalation": {"timeout_hours": 24, "escalate_to_user_id": "cfo"},
    }])
    instance = _route(engine)
    clock.advance(hours=25)

    stats = _run(db, directory, clock)

    assert stats == {"due": 1, "escalated": 1, "skipped": 0, "failed": 0}
    db.refresh(instance)
    assert instance.status == WorkflowStatus.escalated.value
    assert instance.escalation_target == {"type": "user", "user_id": "cfo"}
    last = instance.step_history[-1]
    assert (last.action, last.action_by, last.is_system_action) == ("escalated", SYSTEM_ACTOR, True)
    assert [e.user_id for e in engine.eligible_approvers(instance.id)] == ["cfo"]

    instance = engine.approve(instance.id, "cfo", instance.current_step_id)
    assert instance.status == WorkflowStatus.approved.value


def test_escalate_to_next_higher_tier(engine, make_config, db, directory, clock):
    make_config([
        {"level": 1, "thresholds": [_amount_gt(0)], "approvers": [{"type": "user", "user_id": "mgr"}],
         "auto_escalate_hours": 8},
        {"level": 2, "thresholds": [_amount_gt(1000)], "approvers": [{"type": "user", "user_id": "dir"}]},
    ])
    instance = _route(engine, amount=50)
    assert [t["level"] for t in instance.tier_plan] == [1]
    clock.advance(hours=9)

    _run(db, directory, clock)

    db.refresh(instance)
    assert instance.escalation_target == {"type": "tier", "level": 2}
    assert [e.user_id for e in engine.eligible_approvers(instance.id)] == ["dir"]
    intents = db.query(NotificationIntent).filter_by(
        instance_id=instance.id, notification_type=NotificationType.escalation_fired.value,
    ).all()
    assert {i.recipient_id for i in intents} == {"dir", "alice"}


def test_auto_approve_is_flagged_as_system(engine, make_config, db, directory, clock):
    make_config([{
        "level": 1, "thresholds": [_amount_gt(0)],
        "approvers": [{"type": "user", "user_id": "mgr"}],
        "auto_escalate_hours": 48,
        "auto_approve_on_timeout": True,
    }])
    instance = _route(engine)
    clock.advance(hours=48)

    _run(db, directory, clock)

    db.refresh(instance)
    assert instance.status == WorkflowStatus.approved.value
    [entry] = instance.step_history
    assert entry.action == "approved"
    assert entry.action_by == SYSTEM_ACTOR
    assert entry.is_system_action is True


# ─── Escalated AND tiers ──────────────────────────────────────────────────────

AND_FINANCE = {
    "approvers": [
        {"id": "f1", "type": "user", "user_id": "fin1", "is_required": True},
        {"id": "f2", "type": "user", "user_id": "fin2", "is_required": True},
    ],
    "require_all_approvers": True,
}


def test_escalated_and_tier_still_needs_every_required_approver(engine, make_config, db, directory, clock):
    make_config([{"level": 1, "thresholds": [_amount_gt(0)], "auto_escalate_hours": 24, **AND_FINANCE}])
    instance = _route(engine)
    clock.advance(hours=25)

    assert _run(db, directory, clock)["escalated"] == 1
    db.refresh(instance)
    assert instance.escalation_target["type"] == "current"

    instance = engine.approve(instance.id, "fin1", instance.current_step_id)
    assert instance.status == WorkflowStatus.in_progress.value
    assert [e.user_id for e in engine.eligible_approvers(instance.id)] == ["fin2"]

    clock.advance(hours=25)
    assert _run(db, directory, clock)["due"] == 0

    instance = engine.approve(instance.id, "fin2", instance.current_step_id)
    assert instance.status == WorkflowStatus.approved.value


def test_approval_before_escalation_counts_on_the_escalated_step(engine, make_config, db, directory, clock):
    make_config([{"level": 1, "thresholds": [_amount_gt(0)], "auto_escalate_hours": 24, **AND_FINANCE}])
    instance = _route(engine)
    instance = engine.approve(instance.id, "fin1", instance.current_step_id)
    clock.advance(hours=25)

    assert _run(db, directory, clock)["escalated"] == 1
    db.refresh(instance)
    assert instance.status == WorkflowStatus.escalated.value
    assert [e.user_id for e in engine.eligible_approvers(instance.id)] == ["fin2"]

    instance = engine.approve(instance.id, "fin2", instance.current_step_id)
    assert instance.status == WorkflowStatus.approved.value


def test_escalation_to_and_tier_uses_that_tiers_policy(engine, make_config, db, directory, clock):
    make_config([
        {"level": 1, "thresholds": [_amount_gt(0)], "approvers": [{"type": "user", "user_id": "mgr"}],
         "auto_escalate_hours": 8},
        {"level": 2, "thresholds": [_amount_gt(1000)], **AND_FINANCE},
    ])
    instance = _route(engine, amount=50)
    clock.advance(hours=9)

    _run(db, directory, clock)
    db.refresh(instance)
    assert instance.escalation_target == {"type": "tier", "level": 2}

    instance = engine.approve(instance.id, "fin1", instance.current_step_id)
    assert instance.status == WorkflowStatus.in_progress.value
    assert [e.user_id for e in engine.eligible_approvers(instance.id)] == ["fin2"]

    instance = engine.approve(instance.id, "fin2", instance.current_step_id)
    assert instance.status == WorkflowStatus.approved.value


# ─── Idempotency ──────────────────────────────────────────────────────────────

def test_timer_for_already_approved_step_is_a_no_op(engine, make_config, clock):
    """The step was approved 2 minutes before its escalation timer fired."""
    make_config([
        {"level": 1, "thresholds": [_amount_gt(0)], "approvers": [{"type": "user", "user_id": "mgr"}],
         "auto_escalate_hours": 24},
        {"level": 2, "thresholds": [_amount_gt(1000)], "approvers": [{"type": "user", "user_id": "dir"}]},
    ])
    instance = _route(engine, amount=5000)
    stale_step = instance.current_step_id
    clock.advance(hours=24)
    clock.advance(minutes=-2)
    instance = engine.approve(instance.id, "mgr", stale_step)
    history_before = [(h.sequence, h.action) for h in instance.step_history]
    clock.advance(minutes=2)

    assert engine.escalate(instance.id, step_id=stale_step) is False

    assert [(h.sequence, h.action) for h in instance.step_history] == history_before
    assert instance.status == WorkflowStatus.in_progress.value


def test_second_pass_does_not_escalate_again(engine, make_config, db, directory, clock):
    make_config([{
        "level": 1, "thresholds": [_amount_gt(0)],
        "approvers": [{"type": "user", "user_id": "mgr"}],
        "escalation": {"timeout_hours": 1, "escalate_to_role": "executive"},
    }])
    _route(engine)
    clock.advance(hours=2)

    assert _run(db, directory, clock)["escalated"] == 1
    clock.advance(hours=2)
    assert _run(db, directory, clock)["due"] == 0


def test_one_failing_instance_does_not_stop_the_pass(engine, make_config, db, directory, clock):
    make_config([{
        "level": 1, "thresholds": [_amount_gt(0)],
        "approvers": [{"type": "user", "user_id": "mgr"}],
        "escalation": {"timeout_hours": 1, "escalate_to_user_id": "cfo"},
    }])
    _route(engine)
    _route(engine)
    clock.advance(hours=2)

    with patch(
        "approval_routing.services.escalation.WorkflowEngine.escalate",
        side_effect=[RuntimeError("db went away"), True],
    ):
        stats = _run(db, directory, clock)

    assert stats == {"due": 2, "escalated": 1, "skipped": 0, "failed": 1}


# ─── Reminders ────────────────────────────────────────────────────────────────

def test_reminders_do_not_mutate_instances(engine, make_config, db, directory, clock):
    make_config([{
        "level": 1, "thresholds": [_amount_gt(0)],
        "approvers": [{"type": "user", "user_id": "mgr"}],
        "escalation": {"reminder_interval_hours": 4},
    }])
    instance = _route(engine)
    version_before, updated_before = instance.version_id, instance.updated_at

    clock.advance(hours=3)
    assert run_reminder_pass(db, directory, clock=clock) == 0
    clock.advance(hours=2)
    assert run_reminder_pass(db, directory, clock=clock) == 1
    assert run_reminder_pass(db, directory, clock=clock) == 0
    clock.advance(hours=4)
    assert run_reminder_pass(db, directory, clock=clock) == 1

    db.refresh(instance)
    assert instance.version_id == version_before
    assert as_utc(instance.updated_at) == as_utc(updated_before)
    assert instance.step_history == []
    reminders = db.query(NotificationIntent).filter_by(
        notification_type=NotificationType.approval_reminder.value,
    ).all()
    assert [r.recipient_id for r in reminders] == ["mgr", "mgr"]


# ─── Celery task ──────────────────────────────────────────────────────────────

@patch("approval_routing.services.escalation.run_reminder_pass", return_value=2)
@patch("approval_routing.services.escalation.run_escalation_pass")
@patch("approval_routing.db.session.SyncSessionLocal")
def test_check_escalations_task(mock_session_local, mock_escalation_pass, mock_reminder_pass):
    from approval_routing.workers.escalation_tasks import check_escalations

    mock_session_local.return_value.__enter__.return_value = MagicMock()
    mock_escalation_pass.return_value = {"due": 1, "escalated": 1, "skipped": 0, "failed": 0}

    result = check_escalations()

    assert result == {"due": 1, "escalated": 1, "skipped": 0, "failed": 0, "reminders": 2}


@patch("approval_routing.services.escalation.run_escalation_pass", side_effect=RuntimeError("boom"))
@patch("approval_routing.db.session.SyncSessionLocal")
def test_check_escalations_task_logs_failure(mock_session_local, mock_escalation_pass):
    from approval_routing.workers.escalation_tasks import check_escalations

    mock_session_local.return_value.__enter__.return_value = MagicMock()

    result = check_escalations()

    assert result == {"error": "boom"}


@patch("approval_routing.services.delegation.DelegationRegistry.record_expirations", return_value=3)
@patch("approval_routing.db.session.SyncSessionLocal")
def test_record_delegation_expirations_task(mock_session_local, mock_record):
    from approval_routing.workers.escalation_tasks import record_delegation_expirations

    session = MagicMock()
    mock_session_local.return_value.__enter__.return_value = session

    result = record_delegation_expirations()

    assert result == {"expired": 3}
    session.commit.assert_called_once()
