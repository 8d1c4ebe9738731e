"""Tests for tier resolution over explicit configuration snapshots.

Tests:
  1. test_purchase_6000_resolves_tiers_2_and_3     — scenario: [Tier2, Tier3]
  2. test_time_off_without_matching_tier_raises    — NoTierMatchedError, never auto-approved
  3. test_cumulative_includes_lower_tiers          — all active tiers up to the highest match
  4. test_matched_only_configuration               — only matched tiers when not cumulative
  5. test_resolution_is_deterministic              — same snapshot + attributes, same result
  6. test_unknown_trigger_type_rejected_at_load    — invalid configs fail validation
"""
from decimal import Decimal

import pytest
from pydantic import ValidationError

from approval_routing.core.errors import NoTierMatchedError
from approval_routing.schemas.tiers import TierConfigSnapshot, TierThreshold
from approval_routing.schemas.workflow import RequestAttributes
from approval_routing.services.tier_resolver import resolve, threshold_matches


# ─── Helpers ──────────────────────────────────────────────────────────────────

def _amount_gt(value) -> dict:
    return {"trigger_type": "amount", "operator": "greater_than", "value": {"kind": "number", "value": value}}


def _tier(level: int, *thresholds: dict, **extra) -> dict:
    return {
        "level": level,
        "name": f"Tier {level}",
        "thresholds": list(thresholds),
        "approvers": [{"type": "user", "user_id": f"approver{level}"}],
        **extra,
    }


def _snapshot(tiers: list[dict], category: str = "purchase", cumulative: bool = True) -> TierConfigSnapshot:
    return TierConfigSnapshot(category=category, cumulative=cumulative, tiers=tiers)


# ─── Scenarios ────────────────────────────────────────────────────────────────

def test_purchase_6000_resolves_tiers_2_and_3():
    """amount=6000 with Tier2 `amount > 1000` and Tier3 `amount > 5000` → [Tier2, Tier3]."""
    config = _snapshot([_tier(2, _amount_gt(1000)), _tier(3, _amount_gt(5000))])

    tiers = resolve(config, RequestAttributes(amount=Decimal("6000"), category="purchase"))

    assert [t.level for t in tiers] == [2, 3]


def test_time_off_without_matching_tier_raises():
    """Amount thresholds are irrelevant to a time-off request with no amount."""
    config = _snapshot([_tier(1, _amount_gt(0)), _tier(2, _amount_gt(1000))], category="time_off")

    with pytest.raises(NoTierMatchedError) as exc_info:
        resolve(config, RequestAttributes(category="time_off", urgency="normal"))

    assert exc_info.value.code == "NO_TIER_MATCHED"
    assert exc_info.value.category == "time_off"


def test_cumulative_includes_lower_tiers():
    urgent = {"trigger_type": "urgency", "operator": "equals", "value": {"kind": "text", "value": "critical"}}
    config = _snapshot([
        _tier(1, _amount_gt(10_000)),
        _tier(2, _amount_gt(50_000)),
        _tier(3, urgent),
    ])

    tiers = resolve(config, RequestAttributes(amount=Decimal("100"), urgency="Critical"))

    assert [t.level for t in tiers] == [1, 2, 3]


def test_matched_only_configuration():
    urgent = {"trigger_type": "urgency", "operator": "equals", "value": {"kind": "text", "value": "critical"}}
    config = _snapshot(
        [_tier(1, _amount_gt(10_000)), _tier(2, _amount_gt(50_000)), _tier(3, urgent)],
        cumulative=False,
    )

    tiers = resolve(config, RequestAttributes(amount=Decimal("100"), urgency="critical"))

    assert [t.level for t in tiers] == [3]


def test_inactive_tiers_are_skipped():
    config = _snapshot([
        _tier(1, _amount_gt(0)),
        _tier(2, _amount_gt(1000), is_active=False),
        _tier(3, _amount_gt(5000)),
    ])

    tiers = resolve(config, RequestAttributes(amount=Decimal("6000")))

    assert [t.level for t in tiers] == [1, 3]


def test_resolution_is_deterministic():
    config = _snapshot([_tier(3, _amount_gt(5000)), _tier(1, _amount_gt(0)), _tier(2, _amount_gt(1000))])
    attrs = RequestAttributes(amount=Decimal("2500"))

    results = {tuple(t.level for t in resolve(config, attrs)) for _ in range(5)}

    assert results == {(1, 2)}


# ─── Threshold semantics ──────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "threshold, attrs, expected",
    [
        ({"trigger_type": "amount", "operator": "between",
          "value": {"kind": "range", "low": 1000, "high": 5000}}, {"amount": 5000}, True),
        ({"trigger_type": "amount", "operator": "between",
          "value": {"kind": "range", "low": 1000, "high": 5000}}, {"amount": "5000.01"}, False),
        ({"trigger_type": "department", "operator": "in_list",
          "value": {"kind": "text_set", "values": ["Finance", "Legal"]}}, {"department": "finance"}, True),
        ({"trigger_type": "urgency", "operator": "not_equals",
          "value": {"kind": "text", "value": "low"}}, {"urgency": "high"}, True),
        ({"trigger_type": "amount", "operator": "less_than",
          "value": {"kind": "number", "value": 100}}, {}, False),
    ],
)
def test_threshold_matches(threshold, attrs, expected):
    assert threshold_matches(TierThreshold.model_validate(threshold), RequestAttributes(**attrs)) is expected


# ─── Configuration validation ─────────────────────────────────────────────────

def test_unknown_trigger_type_rejected_at_load():
    bad = {"trigger_type": "weather", "operator": "equals", "value": {"kind": "text", "value": "rain"}}
    with pytest.raises(ValidationError):
        _snapshot([_tier(1, bad)])


def test_operator_value_mismatch_rejected():
    bad = {"trigger_type": "amount", "operator": "greater_than", "value": {"kind": "text", "value": "lots"}}
    with pytest.raises(ValidationError):
        _snapshot([_tier(1, bad)])


def test_duplicate_tier_levels_rejected():
    with pytest.raises(ValidationError):
        _snapshot([_tier(1, _amount_gt(0)), _tier(1, _amount_gt(100))])


def test_active_tier_without_approvers_rejected():
    tier = _tier(1, _amount_gt(0))
    tier["approvers"] = []
    with pytest.raises(ValidationError):
        _snapshot([tier])
