"""Delegation registry.

Answers "who actually acts for this approver right now?" and keeps the
delegation lifecycle (create, revoke, expire) and its audit trail.

Status is never stored. ``compute_status`` derives it from the window and
``revoked_at`` at the caller's evaluation instant, so a rule read twice within
one transition cannot change state between the reads.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from approval_routing.core.clock import as_utc
from approval_routing.core.config import settings
from approval_routing.core.errors import InvalidDelegationError, InvalidTransitionError, NotFoundError
from approval_routing.models.delegation import (
    DelegationAuditAction,
    DelegationAuditEntry,
    DelegationRule,
    DelegationStatus,
    DelegationType,
    ProxyApprovalRecord,
)
from approval_routing.models.notification import NotificationType
from approval_routing.models.workflow import SYSTEM_ACTOR
from approval_routing.schemas.delegation import DelegationIn, DelegationLimits, LimitCheckResult
from approval_routing.schemas.workflow import RequestContext
from approval_routing.services import audit as audit_svc
from approval_routing.services import notifications as notify_svc
from approval_routing.services.directory import IdentityDirectory

logger = logging.getLogger(__name__)


# ─── Status ───

def window_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """Inclusive UTC bounds: start of the first day to the end of the last day."""
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end, time.max, tzinfo=timezone.utc),
    )


def compute_status(rule: DelegationRule, at: datetime) -> DelegationStatus:
    at = as_utc(at)
    if rule.revoked_at is not None and as_utc(rule.revoked_at) <= at:
        return DelegationStatus.revoked
    start, end = window_bounds(rule.start_date, rule.end_date)
    if at < start:
        return DelegationStatus.scheduled
    if at > end:
        return DelegationStatus.expired
    return DelegationStatus.active


def limits_of(rule: DelegationRule) -> DelegationLimits:
    return DelegationLimits.model_validate(rule.limits or {})


def _day_bounds(at: datetime) -> tuple[datetime, datetime]:
    start = datetime.combine(as_utc(at).date(), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


@dataclass(frozen=True)
class Substitution:
    """Outcome of an effective-approver lookup."""

    nominal_id: str
    effective_id: str
    chain: tuple[DelegationRule, ...] = ()
    bypass_reasons: tuple[str, ...] = ()

    @property
    def rule(self) -> DelegationRule | None:
        """The delegation granted by the nominal approver, if one was applied."""
        return self.chain[0] if self.chain else None

    @property
    def is_proxy(self) -> bool:
        return self.effective_id != self.nominal_id


@dataclass
class CreateResult:
    rule: DelegationRule
    warnings: list[str] = field(default_factory=list)
    conflicts: list[DelegationRule] = field(default_factory=list)


# ─── Registry ───

class DelegationRegistry:
    """Delegation lookups and lifecycle over a sync session.

    Args:
        db: Sync SQLAlchemy session; the caller owns the transaction.
        directory: Used for the same-department limit. Optional for callers
            that never evaluate limits.
    """

    def __init__(self, db: Session, directory: IdentityDirectory | None = None) -> None:
        self.db = db
        self.directory = directory

    # ── lookups ──

    def get(self, delegation_id: uuid.UUID) -> DelegationRule:
        rule = self.db.get(DelegationRule, delegation_id)
        if rule is None:
            raise NotFoundError(f"Delegation {delegation_id} not found.")
        return rule

    def active_rule_for(self, user_id: str, at: datetime) -> DelegationRule | None:
        """Most recently created rule from ``user_id`` that is active at ``at``."""
        day = as_utc(at).date()
        candidates = self.db.execute(
            select(DelegationRule)
            .where(
                DelegationRule.from_user_id == user_id,
                DelegationRule.start_date <= day,
                DelegationRule.end_date >= day,
            )
            .order_by(DelegationRule.created_at.desc(), DelegationRule.id.desc())
        ).scalars().all()
        for rule in candidates:
            if compute_status(rule, at) == DelegationStatus.active:
                return rule
        return None

    def list_rules(
        self,
        at: datetime,
        from_user_id: str | None = None,
        to_user_id: str | None = None,
        status: DelegationStatus | None = None,
    ) -> list[tuple[DelegationRule, DelegationStatus]]:
        q = select(DelegationRule).order_by(DelegationRule.created_at.desc())
        if from_user_id:
            q = q.where(DelegationRule.from_user_id == from_user_id)
        if to_user_id:
            q = q.where(DelegationRule.to_user_id == to_user_id)
        rows = [(r, compute_status(r, at)) for r in self.db.execute(q).scalars().all()]
        if status is not None:
            rows = [(r, s) for r, s in rows if s == status]
        return rows

    def approvals_today(self, rule: DelegationRule, at: datetime) -> int:
        """Times ``rule`` carried a decision on the UTC day of ``at``, as any hop of a chain."""
        start, end = _day_bounds(at)
        return self.db.execute(
            select(func.count(DelegationAuditEntry.id)).where(
                DelegationAuditEntry.delegation_id == rule.id,
                DelegationAuditEntry.action == DelegationAuditAction.approval_used.value,
                DelegationAuditEntry.created_at >= start,
                DelegationAuditEntry.created_at < end,
            )
        ).scalar_one()

    # ── limits ──

    def validate_limits(self, rule: DelegationRule, ctx: RequestContext, at: datetime) -> LimitCheckResult:
        """Check a request context against a rule's scope and limits.

        Errors mean the delegate may not act; warnings are informational
        (amount close to the cap, justification expected).
        """
        limits = limits_of(rule)
        errors: list[str] = []
        warnings: list[str] = []

        if rule.delegation_type == DelegationType.specific.value and ctx.category not in (rule.workflow_categories or []):
            errors.append(f"Category {ctx.category!r} is outside the scope of this delegation")

        if limits.max_approval_amount is not None and ctx.amount is not None:
            if ctx.amount > limits.max_approval_amount:
                errors.append(f"Amount {ctx.amount:,} exceeds delegation limit of {limits.max_approval_amount:,}")
            elif ctx.amount > limits.max_approval_amount * Decimal(str(settings.DELEGATION_WARNING_RATIO)):
                warnings.append(f"Amount is approaching the delegation limit of {limits.max_approval_amount:,}")

        if limits.require_justification_above is not None and ctx.amount is not None:
            if ctx.amount > limits.require_justification_above:
                warnings.append(f"Amounts over {limits.require_justification_above:,} require justification")

        if ctx.category in {c.value for c in limits.exclude_categories}:
            errors.append(f"Category {ctx.category!r} is excluded from this delegation")

        if limits.max_tier_level is not None and ctx.tier_level is not None:
            if ctx.tier_level > limits.max_tier_level:
                errors.append(f"Tier {ctx.tier_level} exceeds the maximum allowed tier level ({limits.max_tier_level})")

        if limits.exclude_high_priority and ctx.urgency:
            if ctx.urgency.strip().lower() in settings.high_priority_urgencies:
                errors.append("High priority requests require direct approval from the original approver")

        if limits.restrict_to_same_department:
            delegate_dept = self.directory.department_of(rule.to_user_id) if self.directory else None
            if delegate_dept is None or delegate_dept != ctx.department:
                errors.append("Delegate is not in the request's department")

        if limits.max_approvals_per_day is not None:
            used = self.approvals_today(rule, at)
            if used >= limits.max_approvals_per_day:
                errors.append(f"Daily limit of {limits.max_approvals_per_day} delegated approvals reached")

        return LimitCheckResult(is_valid=not errors, errors=errors, warnings=warnings)

    # ── effective approver ──

    def resolve(self, nominal_id: str, at: datetime, ctx: RequestContext) -> Substitution:
        """Follow active delegations from ``nominal_id`` as far as limits allow.

        A hop whose scope or limits reject the context ends the chain at the
        user holding it; so does a delegate equal to the requester, a cycle,
        or a previous hop that forbids re-delegation.
        """
        current = nominal_id
        chain: list[DelegationRule] = []
        visited = {nominal_id}
        reasons: list[str] = []

        for _ in range(max(settings.MAX_DELEGATION_CHAIN, 1)):
            rule = self.active_rule_for(current, at)
            if rule is None:
                break
            if chain and not limits_of(chain[-1]).allow_re_delegation:
                reasons.append(f"Delegation {chain[-1].id} does not allow re-delegation")
                break
            if rule.to_user_id == ctx.requester_id:
                reasons.append("Delegate is the requester")
                break
            if rule.to_user_id in visited:
                reasons.append("Delegation chain loops back to an earlier approver")
                break
            check = self.validate_limits(rule, ctx, at)
            if not check.is_valid:
                reasons.extend(check.errors)
                break
            chain.append(rule)
            visited.add(rule.to_user_id)
            current = rule.to_user_id

        return Substitution(
            nominal_id=nominal_id,
            effective_id=current,
            chain=tuple(chain),
            bypass_reasons=tuple(reasons),
        )

    def _record_chain_used(
        self,
        chain: tuple[DelegationRule, ...],
        actor_id: str,
        nominal_id: str,
        at: datetime,
        instance_id: uuid.UUID | None,
        details: dict,
    ) -> None:
        """One ``approval_used`` entry per hop so each rule's daily cap sees the use."""
        chain_ids = [str(r.id) for r in chain]
        for rule in chain:
            audit_svc.record_delegation_event(
                self.db, rule.id, DelegationAuditAction.approval_used.value, actor_id, at,
                instance_id=instance_id,
                details={
                    **details,
                    "nominal_id": nominal_id,
                    "from_user_id": rule.from_user_id,
                    "chain": chain_ids,
                },
            )

    def effective_approver(
        self,
        nominal_id: str,
        at: datetime,
        ctx: RequestContext,
        emit_audit: bool = True,
    ) -> tuple[str, DelegationRule | None]:
        """Return the user who acts for ``nominal_id`` and the delegation used.

        Falls back to the nominal approver when the winning delegation's
        limits reject the request; never fails because of a delegation.
        Pass ``emit_audit=False`` for lookups that do not lead to a decision.
        """
        sub = self.resolve(nominal_id, at, ctx)
        if sub.is_proxy and emit_audit:
            self._record_chain_used(
                sub.chain, sub.effective_id, nominal_id, at, ctx.instance_id, {"tier_level": ctx.tier_level}
            )
        if sub.bypass_reasons:
            logger.info("Delegation bypassed for %s: %s", nominal_id, "; ".join(sub.bypass_reasons))
        return sub.effective_id, sub.rule

    def explain_bypass(self, nominal_id: str, at: datetime, ctx: RequestContext) -> list[str]:
        """Why a delegate was not substituted for ``nominal_id`` (empty if it was, or none exists)."""
        return list(self.resolve(nominal_id, at, ctx).bypass_reasons)

    def record_proxy_action(
        self,
        chain: tuple[DelegationRule, ...],
        instance_id: uuid.UUID,
        step_id: str | None,
        original_approver_id: str,
        proxy_approver_id: str,
        action: str,
        at: datetime,
        tier_level: int | None = None,
        category: str = "",
        amount: Decimal | None = None,
        comments: str | None = None,
    ) -> ProxyApprovalRecord:
        """Persist an immutable proxy record plus an ``approval_used`` entry per hop.

        The record points at the last hop, the rule the acting user holds;
        ``original_approver_id`` stays the nominal approver of the slot.
        """
        if not chain:
            raise ValueError("A proxy action needs at least one delegation.")
        final = chain[-1]
        record = ProxyApprovalRecord(
            instance_id=instance_id,
            step_id=step_id,
            delegation_id=final.id,
            original_approver_id=original_approver_id,
            proxy_approver_id=proxy_approver_id,
            action=action,
            tier_level=tier_level,
            category=category,
            amount=amount,
            comments=comments,
            acted_at=at,
            created_at=at,
        )
        self.db.add(record)
        self.db.flush()
        self._record_chain_used(
            chain, proxy_approver_id, original_approver_id, at, instance_id,
            {
                "original_approver_id": original_approver_id,
                "action": action,
                "tier_level": tier_level,
                "proxy_approval_id": str(record.id),
            },
        )
        logger.info(
            "Proxy %s by %s for %s on instance %s (delegations %s)",
            action, proxy_approver_id, original_approver_id, instance_id,
            ", ".join(str(r.id) for r in chain),
        )
        return record

    # ── lifecycle ──

    def find_conflicts(
        self,
        from_user_id: str,
        start: date,
        end: date,
        at: datetime,
        exclude_id: uuid.UUID | None = None,
    ) -> list[DelegationRule]:
        """Active or scheduled rules from the same user whose window overlaps [start, end]."""
        q = select(DelegationRule).where(
            DelegationRule.from_user_id == from_user_id,
            DelegationRule.start_date <= end,
            DelegationRule.end_date >= start,
        )
        if exclude_id is not None:
            q = q.where(DelegationRule.id != exclude_id)
        rows = self.db.execute(q.order_by(DelegationRule.created_at)).scalars().all()
        live = (DelegationStatus.active, DelegationStatus.scheduled)
        return [r for r in rows if compute_status(r, at) in live]

    def check_redelegation(self, to_user_id: str, start: date, end: date, at: datetime) -> list[str]:
        """Warnings when the delegate has delegated their own approvals over the window."""
        warnings = []
        for rule in self.find_conflicts(to_user_id, start, end, at):
            warnings.append(
                f"{to_user_id} has delegated their approvals to {rule.to_user_id} "
                f"from {rule.start_date} to {rule.end_date}; approvals may be passed on"
            )
        return warnings

    def create(self, data: DelegationIn, actor_id: str, at: datetime) -> CreateResult:
        """Create a delegation rule.

        Overlapping windows are allowed (the newest rule wins) but reported
        back as warnings together with the conflicting rules.

        Raises:
            InvalidDelegationError: self-delegation, inverted or already-ended window.
        """
        from_user_id = data.from_user_id or actor_id
        if from_user_id == data.to_user_id:
            raise InvalidDelegationError("A user cannot delegate approvals to themselves.")
        if data.end_date < data.start_date:
            raise InvalidDelegationError("Delegation end date is before its start date.")
        if data.end_date < as_utc(at).date():
            raise InvalidDelegationError("Delegation window has already ended.")

        conflicts = self.find_conflicts(from_user_id, data.start_date, data.end_date, at)
        warnings = []
        if conflicts:
            warnings.append(
                f"Overlaps {len(conflicts)} existing delegation(s); the most recently created one takes precedence"
            )
        warnings.extend(self.check_redelegation(data.to_user_id, data.start_date, data.end_date, at))

        rule = DelegationRule(
            from_user_id=from_user_id,
            to_user_id=data.to_user_id,
            start_date=data.start_date,
            end_date=data.end_date,
            delegation_type=data.delegation_type.value,
            workflow_categories=[c.value for c in data.workflow_categories],
            limits=data.limits.model_dump(mode="json"),
            reason=data.reason,
            created_by=actor_id,
            created_at=at,
            updated_at=at,
        )
        self.db.add(rule)
        self.db.flush()

        audit_svc.record_delegation_event(
            self.db, rule.id, DelegationAuditAction.created.value, actor_id, at,
            details={
                "from_user_id": from_user_id,
                "to_user_id": data.to_user_id,
                "start_date": data.start_date.isoformat(),
                "end_date": data.end_date.isoformat(),
                "delegation_type": data.delegation_type.value,
            },
        )
        notify_svc.emit(
            self.db, data.to_user_id, NotificationType.delegation_assigned, at,
            payload={"delegation_id": str(rule.id), "from_user_id": from_user_id},
        )
        logger.info("Delegation %s created: %s -> %s (%s..%s)", rule.id, from_user_id, data.to_user_id,
                    data.start_date, data.end_date)
        return CreateResult(rule=rule, warnings=warnings, conflicts=conflicts)

    def revoke(self, delegation_id: uuid.UUID, actor_id: str, reason: str, at: datetime) -> DelegationRule:
        """Revoke a rule. Proxy records written under it are left untouched."""
        if not reason or not reason.strip():
            raise InvalidDelegationError("A reason is required to revoke a delegation.")
        rule = self.get(delegation_id)
        current = compute_status(rule, at)
        if current in (DelegationStatus.revoked, DelegationStatus.expired):
            raise InvalidTransitionError(
                f"Delegation {delegation_id} is already {current.value}.",
                status=current.value, action="revoke",
            )
        rule.revoked_at = at
        rule.revoke_reason = reason.strip()
        rule.revoked_by = actor_id
        self.db.flush()

        audit_svc.record_delegation_event(
            self.db, rule.id, DelegationAuditAction.revoked.value, actor_id, at,
            details={"reason": rule.revoke_reason, "previous_status": current.value},
        )
        notify_svc.emit(
            self.db, rule.to_user_id, NotificationType.delegation_revoked, at,
            payload={"delegation_id": str(rule.id), "reason": rule.revoke_reason},
        )
        logger.info("Delegation %s revoked by %s", rule.id, actor_id)
        return rule

    def record_expirations(self, at: datetime) -> int:
        """Write one ``expired`` audit entry per rule whose window has elapsed."""
        day = as_utc(at).date()
        rows = self.db.execute(
            select(DelegationRule).where(
                DelegationRule.expired_recorded_at.is_(None),
                DelegationRule.end_date < day,
                or_(DelegationRule.revoked_at.is_(None), DelegationRule.revoked_at > at),
            )
        ).scalars().all()
        count = 0
        for rule in rows:
            if compute_status(rule, at) != DelegationStatus.expired:
                continue
            audit_svc.record_delegation_event(
                self.db, rule.id, DelegationAuditAction.expired.value, SYSTEM_ACTOR, at,
                details={"end_date": rule.end_date.isoformat()},
            )
            rule.expired_recorded_at = at
            count += 1
        self.db.flush()
        if count:
            logger.info("Recorded %d delegation expirations", count)
        return count

    # ── reporting ──

    def audit_entries(self, delegation_id: uuid.UUID) -> list[DelegationAuditEntry]:
        self.get(delegation_id)
        return list(self.db.execute(
            select(DelegationAuditEntry)
            .where(DelegationAuditEntry.delegation_id == delegation_id)
            .order_by(DelegationAuditEntry.created_at)
        ).scalars().all())

    def proxy_approvals(
        self,
        proxy_approver_id: str | None = None,
        original_approver_id: str | None = None,
        delegation_id: uuid.UUID | None = None,
    ) -> list[ProxyApprovalRecord]:
        q = select(ProxyApprovalRecord).order_by(ProxyApprovalRecord.acted_at.desc())
        if proxy_approver_id:
            q = q.where(ProxyApprovalRecord.proxy_approver_id == proxy_approver_id)
        if original_approver_id:
            q = q.where(ProxyApprovalRecord.original_approver_id == original_approver_id)
        if delegation_id:
            q = q.where(ProxyApprovalRecord.delegation_id == delegation_id)
        return list(self.db.execute(q).scalars().all())

    def stats(self, at: datetime, user_id: str | None = None) -> dict:
        rules = self.db.execute(select(DelegationRule)).scalars().all()
        if user_id:
            rules = [r for r in rules if user_id in (r.from_user_id, r.to_user_id)]
        by_status = {s.value: 0 for s in DelegationStatus}
        for rule in rules:
            by_status[compute_status(rule, at).value] += 1

        proxy_q = select(ProxyApprovalRecord.action, func.count(ProxyApprovalRecord.id)).group_by(
            ProxyApprovalRecord.action
        )
        if user_id:
            proxy_q = proxy_q.where(or_(
                ProxyApprovalRecord.proxy_approver_id == user_id,
                ProxyApprovalRecord.original_approver_id == user_id,
            ))
        by_action = {action: n for action, n in self.db.execute(proxy_q).all()}
        return {
            "total": len(rules),
            "by_status": by_status,
            "proxy_actions": sum(by_action.values()),
            "proxy_actions_by_action": by_action,
        }
