"""Tests for the delegation registry: effective approver, limits, lifecycle and audit."""
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from approval_routing.core.errors import InvalidDelegationError, InvalidTransitionError
from approval_routing.models.delegation import DelegationAuditAction, DelegationStatus
from approval_routing.models.notification import NotificationIntent, NotificationType
from approval_routing.schemas.delegation import DelegationIn
from approval_routing.schemas.workflow import RequestContext
from approval_routing.services.delegation import DelegationRegistry, compute_status


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _ctx(amount=None, category="purchase", requester_id="req", **extra) -> RequestContext:
    return RequestContext(
        requester_id=requester_id,
        category=category,
        amount=Decimal(str(amount)) if amount is not None else None,
        **extra,
    )


def _delegate(registry, clock, from_user="alice", to_user="bob", start=date(2024, 1, 1),
              end=date(2024, 1, 10), **extra):
    data = DelegationIn(from_user_id=from_user, to_user_id=to_user, start_date=start, end_date=end, **extra)
    result = registry.create(data, from_user, clock.now())
    registry.db.commit()
    return result


@pytest.fixture
def registry(db, directory):
    return DelegationRegistry(db, directory)


# ─── Effective approver ───────────────────────────────────────────────────────

def test_amount_over_limit_keeps_original_approver(registry, clock):
    """Alice → Bob with maxApprovalAmount 2000; a 3000 request stays with Alice."""
    _delegate(registry, clock, limits={"max_approval_amount": 2000})

    effective, rule = registry.effective_approver("alice", clock.now(), _ctx(3000))

    assert effective == "alice"
    reasons = registry.explain_bypass("alice", clock.now(), _ctx(3000))
    assert any("exceeds delegation limit" in r for r in reasons)


def test_amount_within_limit_substitutes_delegate(registry, clock):
    result = _delegate(registry, clock, limits={"max_approval_amount": 2000})

    effective, rule = registry.effective_approver("alice", clock.now(), _ctx(1500))

    assert effective == "bob"
    assert rule.id == result.rule.id


def test_amount_near_limit_is_a_warning_not_an_error(registry, clock):
    result = _delegate(registry, clock, limits={"max_approval_amount": 2000})

    check = registry.validate_limits(result.rule, _ctx(1900), clock.now())

    assert check.is_valid
    assert check.warnings


def test_delegation_window_is_inclusive_to_end_of_day(registry, clock):
    result = _delegate(registry, clock)
    rule = result.rule

    assert compute_status(rule, datetime(2023, 12, 31, 23, 59, tzinfo=timezone.utc)) == DelegationStatus.scheduled
    assert compute_status(rule, datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)) == DelegationStatus.active
    assert compute_status(rule, datetime(2024, 1, 10, 23, 59, 59, tzinfo=timezone.utc)) == DelegationStatus.active
    assert compute_status(rule, datetime(2024, 1, 11, 0, 0, tzinfo=timezone.utc)) == DelegationStatus.expired


def test_outside_window_returns_nominal(registry, clock):
    _delegate(registry, clock)

    effective, rule = registry.effective_approver(
        "alice", datetime(2024, 1, 11, 8, 0, tzinfo=timezone.utc), _ctx(100)
    )

    assert effective == "alice"
    assert rule is None


def test_specific_delegation_only_covers_its_categories(registry, clock):
    _delegate(registry, clock, delegation_type="specific", workflow_categories=["expense"])

    assert registry.effective_approver("alice", clock.now(), _ctx(100, category="expense"))[0] == "bob"
    assert registry.effective_approver("alice", clock.now(), _ctx(100, category="purchase"))[0] == "alice"


def test_high_priority_excluded(registry, clock):
    _delegate(registry, clock, limits={"exclude_high_priority": True})

    assert registry.effective_approver("alice", clock.now(), _ctx(100, urgency="critical"))[0] == "alice"
    assert registry.effective_approver("alice", clock.now(), _ctx(100, urgency="low"))[0] == "bob"


def test_max_tier_level(registry, clock):
    _delegate(registry, clock, limits={"max_tier_level": 2})

    assert registry.effective_approver("alice", clock.now(), _ctx(100, tier_level=3))[0] == "alice"
    assert registry.effective_approver("alice", clock.now(), _ctx(100, tier_level=2))[0] == "bob"


def test_same_department_restriction(registry, clock):
    _delegate(registry, clock, to_user="carol", limits={"restrict_to_same_department": True})

    assert registry.effective_approver("alice", clock.now(), _ctx(100, department="engineering"))[0] == "alice"
    assert registry.effective_approver("alice", clock.now(), _ctx(100, department="sales"))[0] == "carol"


def test_delegate_equal_to_requester_is_not_substituted(registry, clock):
    _delegate(registry, clock)

    effective, _ = registry.effective_approver("alice", clock.now(), _ctx(100, requester_id="bob"))

    assert effective == "alice"


def test_chain_follows_re_delegation(registry, clock):
    _delegate(registry, clock, from_user="alice", to_user="bob")
    clock.advance(minutes=1)
    _delegate(registry, clock, from_user="bob", to_user="carol")

    sub = registry.resolve("alice", clock.now(), _ctx(100))

    assert sub.effective_id == "carol"
    assert [r.to_user_id for r in sub.chain] == ["bob", "carol"]


def test_chain_stops_when_re_delegation_forbidden(registry, clock):
    _delegate(registry, clock, from_user="alice", to_user="bob", limits={"allow_re_delegation": False})
    clock.advance(minutes=1)
    _delegate(registry, clock, from_user="bob", to_user="carol")

    assert registry.resolve("alice", clock.now(), _ctx(100)).effective_id == "bob"


def test_chain_cycle_stops(registry, clock):
    _delegate(registry, clock, from_user="alice", to_user="bob")
    clock.advance(minutes=1)
    _delegate(registry, clock, from_user="bob", to_user="alice")

    sub = registry.resolve("alice", clock.now(), _ctx(100))

    assert sub.effective_id == "bob"
    assert any("loops back" in r for r in sub.bypass_reasons)


def test_newest_overlapping_delegation_wins(registry, clock):
    _delegate(registry, clock, to_user="bob")
    clock.advance(minutes=1)
    result = _delegate(registry, clock, to_user="carol", start=date(2024, 1, 5), end=date(2024, 1, 8))

    assert result.conflicts
    assert result.warnings
    assert registry.effective_approver("alice", clock.now(), _ctx(100))[0] == "carol"


def test_lookup_without_audit_leaves_trail_untouched(registry, clock):
    result = _delegate(registry, clock)

    assert registry.effective_approver("alice", clock.now(), _ctx(100), emit_audit=False)[0] == "bob"
    assert [e.action for e in registry.audit_entries(result.rule.id)] == ["created"]

    clock.advance(minutes=1)
    registry.effective_approver("alice", clock.now(), _ctx(100))
    assert [e.action for e in registry.audit_entries(result.rule.id)] == ["created", "approval_used"]


# ─── Lifecycle ────────────────────────────────────────────────────────────────

def test_self_delegation_rejected(registry, clock):
    with pytest.raises(InvalidDelegationError):
        _delegate(registry, clock, from_user="alice", to_user="alice")


def test_inverted_window_rejected(registry, clock):
    with pytest.raises(InvalidDelegationError):
        _delegate(registry, clock, start=date(2024, 1, 10), end=date(2024, 1, 6))


def test_create_writes_audit_and_notification(registry, clock, db):
    result = _delegate(registry, clock)

    entries = registry.audit_entries(result.rule.id)
    assert [e.action for e in entries] == [DelegationAuditAction.created.value]
    intents = db.query(NotificationIntent).filter_by(recipient_id="bob").all()
    assert [i.notification_type for i in intents] == [NotificationType.delegation_assigned.value]


def test_revoke_stops_substitution_and_is_audited(registry, clock):
    result = _delegate(registry, clock)
    clock.advance(hours=1)

    registry.revoke(result.rule.id, "alice", "Back early", clock.now())

    assert compute_status(result.rule, clock.now()) == DelegationStatus.revoked
    assert registry.effective_approver("alice", clock.now(), _ctx(100))[0] == "alice"
    assert [e.action for e in registry.audit_entries(result.rule.id)] == ["created", "revoked"]


def test_revoke_requires_reason(registry, clock):
    result = _delegate(registry, clock)
    with pytest.raises(InvalidDelegationError):
        registry.revoke(result.rule.id, "alice", "  ", clock.now())


def test_revoke_twice_rejected(registry, clock):
    result = _delegate(registry, clock)
    registry.revoke(result.rule.id, "alice", "Back early", clock.now())
    with pytest.raises(InvalidTransitionError):
        registry.revoke(result.rule.id, "alice", "Again", clock.now())


def test_record_expirations_once(registry, clock, db):
    result = _delegate(registry, clock)
    later = datetime(2024, 1, 12, 0, 5, tzinfo=timezone.utc)

    assert registry.record_expirations(later) == 1
    db.commit()
    assert registry.record_expirations(later) == 0

    actions = [e.action for e in registry.audit_entries(result.rule.id)]
    assert actions == ["created", "expired"]


def test_list_rules_filters_by_computed_status(registry, clock):
    _delegate(registry, clock, from_user="alice", to_user="bob")
    _delegate(registry, clock, from_user="mgr", to_user="bob", start=date(2024, 2, 1), end=date(2024, 2, 5))

    active = registry.list_rules(clock.now(), status=DelegationStatus.active)
    scheduled = registry.list_rules(clock.now(), status=DelegationStatus.scheduled)

    assert [r.from_user_id for r, _ in active] == ["alice"]
    assert [r.from_user_id for r, _ in scheduled] == ["mgr"]
