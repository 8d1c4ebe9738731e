"""Tier resolution: which approval tiers apply to a request.

Pure functions over an explicit configuration snapshot; no database access and
no global state, so the same snapshot and attributes always produce the same
ordered tier list.
"""
import logging
from decimal import Decimal
from typing import Any

from approval_routing.core.errors import NoTierMatchedError
from approval_routing.schemas.tiers import (
    ApprovalTier,
    NumberRange,
    NumberValue,
    TextSet,
    TextValue,
    ThresholdOperator,
    TierConfigSnapshot,
    TierThreshold,
)
from approval_routing.schemas.workflow import RequestAttributes

logger = logging.getLogger(__name__)


# ─── Threshold evaluation ───

def _as_number(raw: Any) -> Decimal | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, Decimal):
        return raw
    if isinstance(raw, (int, float)):
        return Decimal(str(raw))
    return None


def _as_text(raw: Any) -> str | None:
    if isinstance(raw, str):
        return raw.strip().lower()
    return None


def threshold_matches(threshold: TierThreshold, attributes: RequestAttributes) -> bool:
    """Evaluate one threshold. A missing or mistyped attribute never matches."""
    raw = attributes.lookup(threshold.trigger_type.value)
    if raw is None:
        return False

    op = threshold.operator
    value = threshold.value

    if isinstance(value, (NumberValue, NumberRange)):
        actual = _as_number(raw)
        if actual is None:
            return False
        if isinstance(value, NumberRange):
            return value.low <= actual <= value.high  # inclusive
        if op == ThresholdOperator.equals:
            return actual == value.value
        if op == ThresholdOperator.not_equals:
            return actual != value.value
        if op == ThresholdOperator.greater_than:
            return actual > value.value
        if op == ThresholdOperator.less_than:
            return actual < value.value
        return False

    actual_text = _as_text(raw)
    if actual_text is None:
        return False
    if isinstance(value, TextSet):
        return actual_text in {v.strip().lower() for v in value.values}
    if isinstance(value, TextValue):
        expected = value.value.strip().lower()
        if op == ThresholdOperator.equals:
            return actual_text == expected
        if op == ThresholdOperator.not_equals:
            return actual_text != expected
    return False


def tier_matches(tier: ApprovalTier, attributes: RequestAttributes) -> bool:
    """A tier applies when ANY of its thresholds matches."""
    return any(threshold_matches(t, attributes) for t in tier.thresholds)


# ─── Resolution ───

def resolve(config: TierConfigSnapshot, attributes: RequestAttributes) -> list[ApprovalTier]:
    """Return the ordered tiers that apply to a request.

    Args:
        config: The configuration version the request is pinned to.
        attributes: Typed request attributes (amount, urgency, category, department).

    Returns:
        Active tiers in ascending level. With a cumulative configuration every
        active tier up to the highest matched level is included; otherwise only
        the matched tiers.

    Raises:
        NoTierMatchedError: when no active tier matches. A request is never
            silently routed with zero approvers.
    """
    active = [t for t in config.tiers if t.is_active]
    matched = [t for t in active if tier_matches(t, attributes)]

    if not matched:
        logger.info(
            "No tier matched for category=%s config=%s v%s",
            config.category.value, config.id, config.version,
        )
        raise NoTierMatchedError(config.category.value, configuration_id=config.id)

    if config.cumulative:
        highest = max(t.level for t in matched)
        resolved = [t for t in active if t.level <= highest]
    else:
        resolved = matched

    logger.debug(
        "Resolved tiers %s for category=%s config=%s v%s",
        [t.level for t in resolved], config.category.value, config.id, config.version,
    )
    return resolved
