"""Workflow instance state machine.

Every mutation runs inside the per-instance lock, loads the instance with
``SELECT ... FOR UPDATE``, reads the clock once, checks the cached status
against the step-history fold, applies the transition and commits. Domain
errors are raised before anything is written, so a refused transition
leaves the instance exactly as it was.
"""
import logging
import uuid
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, NamedTuple, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from approval_routing.core.clock import Clock, SystemClock, as_utc
from approval_routing.core.errors import (
    ConfigurationError,
    DelegationLimitExceededError,
    InvalidTransitionError,
    NoTierMatchedError,
    NotEligibleError,
    NotFoundError,
    StatusProjectionError,
)
from approval_routing.models.notification import NotificationType
from approval_routing.models.workflow import (
    ACTIVE_STATUSES,
    SYSTEM_ACTOR,
    TERMINAL_STATUSES,
    StepAction,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStepHistory,
)
from approval_routing.schemas.tiers import ApprovalTier, TierConfigSnapshot
from approval_routing.schemas.workflow import RequestAttributes, RequestContext, RouteRequestIn
from approval_routing.services import audit as audit_svc
from approval_routing.services import notifications as notify_svc
from approval_routing.services import tier_configs as config_svc
from approval_routing.services.delegation import DelegationRegistry
from approval_routing.services.directory import IdentityDirectory
from approval_routing.services.eligibility import EligibilityResolver, EligibleApprover, is_tier_satisfied
from approval_routing.services.locking import InstanceLockManager, get_lock_manager
from approval_routing.services.tier_resolver import resolve

logger = logging.getLogger(__name__)


# ─── Status fold ───

def derive_status(history: Sequence[WorkflowStepHistory]) -> WorkflowStatus:
    """Fold the step history into the instance status.

    approved/skipped  -> approved when the entry completes the workflow, else in_progress
    rejected          -> rejected
    returned          -> returned
    escalated         -> escalated
    resubmitted       -> pending
    cancelled         -> cancelled
    delegated/reassigned leave the status unchanged.
    """
    status = WorkflowStatus.pending
    for entry in history:
        action = StepAction(entry.action)
        if action in (StepAction.approved, StepAction.skipped):
            status = WorkflowStatus.approved if entry.completes_workflow else WorkflowStatus.in_progress
        elif action == StepAction.rejected:
            status = WorkflowStatus.rejected
        elif action == StepAction.returned:
            status = WorkflowStatus.returned
        elif action == StepAction.escalated:
            status = WorkflowStatus.escalated
        elif action == StepAction.resubmitted:
            status = WorkflowStatus.pending
        elif action == StepAction.cancelled:
            status = WorkflowStatus.cancelled
    return status


class Credit(NamedTuple):
    action_by: str
    approver_slot_id: str | None


# ─── Engine ───

class WorkflowEngine:
    """Routes requests and applies actor and system decisions to instances.

    Args:
        db: Sync SQLAlchemy session. The engine commits each transition.
        directory: Identity directory for approver sources.
        clock: Time source; one reading per transition.
        locks: Per-instance lock manager, shared process-wide by default.
    """

    def __init__(
        self,
        db: Session,
        directory: IdentityDirectory,
        clock: Clock | None = None,
        locks: InstanceLockManager | None = None,
    ) -> None:
        self.db = db
        self.directory = directory
        self.clock = clock or SystemClock()
        self.locks = locks or get_lock_manager()
        self.registry = DelegationRegistry(db, directory)
        self.eligibility = EligibilityResolver(db, directory, self.registry)

    # ── loading / helpers ──

    def get_instance(self, instance_id: uuid.UUID) -> WorkflowInstance:
        instance = self.db.get(WorkflowInstance, instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found.")
        return instance

    def _load_for_update(self, instance_id: uuid.UUID) -> WorkflowInstance:
        instance = self.db.execute(
            select(WorkflowInstance)
            .where(WorkflowInstance.id == instance_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().first()
        if instance is None:
            raise NotFoundError(f"Workflow instance {instance_id} not found.")
        return instance

    def _verify_projection(self, instance: WorkflowInstance) -> None:
        derived = derive_status(instance.step_history)
        if instance.status != derived.value:
            logger.error(
                "Status drift on instance %s: cached=%s derived=%s",
                instance.id, instance.status, derived.value,
            )
            raise StatusProjectionError(
                f"Workflow {instance.id} status is inconsistent with its history; it needs repair.",
                instance_id=str(instance.id),
                cached=instance.status,
                derived=derived.value,
            )

    def _apply_status(self, instance: WorkflowInstance, at: datetime) -> None:
        instance.status = derive_status(instance.step_history).value
        instance.updated_at = at
        self.db.flush()

    @contextmanager
    def _transition(self, instance_id: uuid.UUID) -> Iterator[tuple[WorkflowInstance, datetime]]:
        with self.locks.hold(instance_id):
            at = self.clock.now()
            try:
                instance = self._load_for_update(instance_id)
                self._verify_projection(instance)
                yield instance, at
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

    @staticmethod
    def plan(instance: WorkflowInstance) -> list[ApprovalTier]:
        return [ApprovalTier.model_validate(t) for t in instance.tier_plan]

    def current_tier(self, instance: WorkflowInstance) -> ApprovalTier:
        return self.plan(instance)[instance.current_step_order - 1]

    def _snapshot(self, instance: WorkflowInstance) -> TierConfigSnapshot:
        return config_svc.load_snapshot(config_svc.get_configuration(self.db, instance.configuration_id))

    def context(self, instance: WorkflowInstance, tier_level: int | None) -> RequestContext:
        attrs = RequestAttributes.model_validate(instance.attributes or {})
        return RequestContext(
            instance_id=instance.id,
            requester_id=instance.requester_id,
            category=instance.category,
            amount=attrs.amount,
            urgency=attrs.urgency,
            department=attrs.department or self.directory.department_of(instance.requester_id),
            tier_level=tier_level,
            attributes=instance.attributes or {},
        )

    @staticmethod
    def step_approvals(instance: WorkflowInstance) -> list[WorkflowStepHistory]:
        """Approvals credited to the open step.

        A step escalated in place to its own approvers keeps the approvals
        recorded before the escalation.
        """
        if instance.current_step_id is None:
            return []
        step_ids = {instance.current_step_id}
        target = instance.escalation_target or {}
        if target.get("type") == "current" and target.get("carried_step_id"):
            step_ids.add(target["carried_step_id"])
        return [
            h for h in instance.step_history
            if h.step_id in step_ids and h.action == StepAction.approved.value
        ]

    def governing_tier(self, instance: WorkflowInstance) -> ApprovalTier:
        """The tier whose approvers and policy decide the open step.

        That is the escalated-to tier while the step is escalated to a tier
        level, else the current tier of the plan.
        """
        target = instance.escalation_target
        if not target or target.get("type") != "tier":
            return self.current_tier(instance)
        escalated_tier = self._snapshot(instance).tier(target["level"])
        if escalated_tier is None:
            raise ConfigurationError(
                f"Escalation target tier {target['level']} is missing from configuration "
                f"{instance.configuration_id}.",
            )
        return escalated_tier

    def _eligible_now(
        self,
        instance: WorkflowInstance,
        at: datetime,
        approvals: Sequence[Any] = (),
    ) -> list[EligibleApprover]:
        if instance.status not in {s.value for s in ACTIVE_STATUSES} or instance.current_step_id is None:
            return []
        tier = self.governing_tier(instance)
        ctx = self.context(instance, tier.level)
        return self.eligibility.eligible(tier, ctx, at, approvals, escalation_target=instance.escalation_target)

    def _activate_step(self, instance: WorkflowInstance, order: int, at: datetime) -> None:
        instance.current_step_order = order
        instance.current_step_id = uuid.uuid4().hex
        instance.step_entered_at = at
        instance.escalation_target = None
        self.db.flush()
        tier = self.current_tier(instance)
        eligible = self.eligibility.eligible(tier, self.context(instance, tier.level), at)
        if not eligible:
            logger.warning(
                "Instance %s tier %d has no eligible approvers; it will wait for escalation",
                instance.id, tier.level,
            )
        notify_svc.emit_many(
            self.db, [e.user_id for e in eligible], NotificationType.step_activated, at,
            instance_id=instance.id, step_id=instance.current_step_id,
            payload={"tier_level": tier.level, "reference_id": instance.reference_id},
        )

    def _close_step(self, instance: WorkflowInstance) -> None:
        instance.current_step_id = None
        instance.step_entered_at = None
        instance.escalation_target = None

    def _ensure_open_step(self, instance: WorkflowInstance, action: str, step_id: str | None) -> None:
        if instance.status in {s.value for s in TERMINAL_STATUSES}:
            raise InvalidTransitionError(
                f"Workflow is already {instance.status}; it cannot be {action}d.",
                status=instance.status, action=action,
            )
        if instance.status == WorkflowStatus.returned.value:
            raise InvalidTransitionError(
                "Workflow was returned to the requester and awaits resubmission.",
                status=instance.status, action=action,
            )
        if step_id is not None and step_id != instance.current_step_id:
            raise InvalidTransitionError(
                "This step is no longer current; reload the request.",
                status=instance.status, action=action,
            )

    def _refuse(self, actor_id: str, instance: WorkflowInstance, at: datetime) -> None:
        """Raise the most specific eligibility error for an actor not in the eligible set."""
        tier = self.governing_tier(instance)
        ctx = self.context(instance, tier.level)
        if (instance.escalation_target or {}).get("type") not in ("user", "role"):
            for approver, nominal_id in self.eligibility.nominal_approvers(tier, ctx, at):
                rule = self.registry.active_rule_for(nominal_id, at)
                if rule is not None and rule.to_user_id == actor_id:
                    reasons = self.registry.explain_bypass(nominal_id, at, ctx)
                    if reasons:
                        raise DelegationLimitExceededError(actor_id, reasons)
                if nominal_id == actor_id and tier.sequential:
                    raise NotEligibleError(
                        "An earlier approver in the sequence has not acted yet.",
                        actor_id=actor_id, reason="sequential",
                    )
        if actor_id == instance.requester_id:
            raise NotEligibleError(
                "You cannot approve your own request.", actor_id=actor_id, reason="self_approval",
            )
        raise NotEligibleError(
            "You are not an eligible approver for the current step.", actor_id=actor_id, reason="not_eligible",
        )

    def _authorize(
        self, instance: WorkflowInstance, actor_id: str, at: datetime, approvals: Sequence[WorkflowStepHistory]
    ) -> EligibleApprover:
        if any(a.action_by == actor_id for a in approvals):
            raise InvalidTransitionError(
                "You have already approved this step.", status=instance.status, action="approve",
            )
        entry = self.eligibility.slot_for(actor_id, self._eligible_now(instance, at, approvals))
        if entry is None:
            self._refuse(actor_id, instance, at)
        return entry

    def _record_proxy(
        self, instance: WorkflowInstance, entry: EligibleApprover, action: str, tier_level: int,
        at: datetime, comments: str | None,
    ) -> None:
        if not entry.is_proxy or not entry.chain:
            return
        self.registry.record_proxy_action(
            entry.chain,
            instance_id=instance.id,
            step_id=instance.current_step_id,
            original_approver_id=entry.nominal_id,
            proxy_approver_id=entry.user_id,
            action=action,
            at=at,
            tier_level=tier_level,
            category=instance.category,
            amount=RequestAttributes.model_validate(instance.attributes or {}).amount,
            comments=comments,
        )

    def _advance(self, instance: WorkflowInstance, at: datetime, completes: bool) -> None:
        if completes:
            instance.completed_at = at
            self._close_step(instance)
            notify_svc.emit(
                self.db, instance.requester_id, NotificationType.approval_complete, at,
                instance_id=instance.id, payload={"reference_id": instance.reference_id},
            )
        else:
            self._activate_step(instance, instance.current_step_order + 1, at)

    # ── route ──

    def route(self, data: RouteRequestIn, requester_id: str) -> WorkflowInstance:
        """Resolve tiers for a new request and open its first step.

        Raises:
            NoTierMatchedError: no configuration for the category, or no tier matches.
            ConfigurationError: the configuration is invalid, inactive or for another category.
        """
        at = self.clock.now()
        category = data.category.value
        if data.configuration_id is not None:
            config = config_svc.get_configuration(self.db, data.configuration_id)
            if config.category != category or not config.is_active:
                raise ConfigurationError(
                    f"Configuration {config.id} is not an active {category} configuration.",
                )
        else:
            config = config_svc.default_for(self.db, category)
            if config is None:
                raise NoTierMatchedError(category)

        snapshot = config_svc.load_snapshot(config)
        attributes = data.attributes
        if attributes.category is None:
            attributes = attributes.model_copy(update={"category": category})
        tiers = resolve(snapshot, attributes)

        try:
            instance = WorkflowInstance(
                reference_id=data.reference_id,
                reference_type=data.reference_type,
                category=category,
                requester_id=requester_id,
                attributes=attributes.as_json(),
                configuration_id=config.id,
                configuration_version=config.version,
                tier_plan=[t.model_dump(mode="json") for t in tiers],
                status=WorkflowStatus.pending.value,
                cycle=0,
                current_step_order=1,
                created_at=at,
                updated_at=at,
            )
            self.db.add(instance)
            self.db.flush()
            config_svc.mark_referenced(self.db, config, at)
            self._activate_step(instance, 1, at)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Routed %s %s as instance %s: tiers=%s config=%s v%d",
            data.reference_type, data.reference_id, instance.id,
            [t.level for t in tiers], config.id, config.version,
        )
        return instance

    # ── actor decisions ──

    def decide(
        self, instance_id: uuid.UUID, actor_id: str, step_id: str, action: str, reason: str | None = None
    ) -> WorkflowInstance:
        if action == "approve":
            return self.approve(instance_id, actor_id, step_id, comments=reason)
        if action == "reject":
            return self.reject(instance_id, actor_id, step_id, reason, return_to_requestor=False)
        if action == "return":
            return self.reject(instance_id, actor_id, step_id, reason, return_to_requestor=True)
        raise InvalidTransitionError(f"Unknown action {action!r}.", action=action)

    def approve(
        self, instance_id: uuid.UUID, actor_id: str, step_id: str | None, comments: str | None = None
    ) -> WorkflowInstance:
        with self._transition(instance_id) as (instance, at):
            self._ensure_open_step(instance, "approve", step_id)
            tier = self.current_tier(instance)
            approvals = self.step_approvals(instance)
            entry = self._authorize(instance, actor_id, at, approvals)

            tier_done = is_tier_satisfied(
                self.governing_tier(instance),
                [*approvals, Credit(actor_id, entry.slot_id)],
                instance.escalation_target,
            )
            completes = tier_done and instance.current_step_order >= len(instance.tier_plan)

            self._record_proxy(instance, entry, StepAction.approved.value, tier.level, at, comments)
            audit_svc.record_step(
                self.db, instance, StepAction.approved, actor_id, at,
                tier_level=tier.level,
                approver_slot_id=entry.slot_id,
                is_proxy_approval=entry.is_proxy,
                original_approver_id=entry.nominal_id if entry.is_proxy else None,
                delegation_id=entry.delegation.id if entry.is_proxy and entry.delegation else None,
                completes_workflow=completes,
                comments=comments,
            )
            if tier_done:
                self._advance(instance, at, completes)
            self._apply_status(instance, at)
            logger.info(
                "Instance %s tier %d approved by %s%s -> %s",
                instance.id, tier.level, actor_id,
                f" (for {entry.nominal_id})" if entry.is_proxy else "", instance.status,
            )
        return instance

    def reject(
        self,
        instance_id: uuid.UUID,
        actor_id: str,
        step_id: str | None,
        reason: str | None,
        return_to_requestor: bool = False,
    ) -> WorkflowInstance:
        """Reject the current step, or return the request to the requester.

        A return resets the instance to the first tier and clears the step;
        approvals already recorded stay in the history but belong to a step
        id that is no longer current.
        """
        action = StepAction.returned if return_to_requestor else StepAction.rejected
        verb = "return" if return_to_requestor else "reject"
        if not reason or not reason.strip():
            raise InvalidTransitionError(f"A reason is required to {verb} a request.", action=verb)

        with self._transition(instance_id) as (instance, at):
            self._ensure_open_step(instance, verb, step_id)
            tier = self.current_tier(instance)
            approvals = self.step_approvals(instance)
            entry = self._authorize(instance, actor_id, at, approvals)
            reason = reason.strip()

            audit_svc.record_rejection(
                self.db, instance, actor_id, reason, at,
                tier_level=tier.level,
                returned_to_requestor=return_to_requestor,
                is_proxy_approval=entry.is_proxy,
                original_approver_id=entry.nominal_id if entry.is_proxy else None,
                amount=RequestAttributes.model_validate(instance.attributes or {}).amount,
            )
            self._record_proxy(instance, entry, action.value, tier.level, at, reason)
            audit_svc.record_step(
                self.db, instance, action, actor_id, at,
                tier_level=tier.level,
                approver_slot_id=entry.slot_id,
                is_proxy_approval=entry.is_proxy,
                original_approver_id=entry.nominal_id if entry.is_proxy else None,
                delegation_id=entry.delegation.id if entry.is_proxy and entry.delegation else None,
                comments=reason,
            )

            self._close_step(instance)
            if return_to_requestor:
                instance.current_step_order = 1
                notification = NotificationType.request_returned
            else:
                instance.completed_at = at
                notification = NotificationType.request_rejected
            notify_svc.emit(
                self.db, instance.requester_id, notification, at,
                instance_id=instance.id, payload={"reason": reason, "tier_level": tier.level},
            )
            self._apply_status(instance, at)
            logger.info("Instance %s %s at tier %d by %s", instance.id, action.value, tier.level, actor_id)
        return instance

    # ── requester / admin actions ──

    def cancel(
        self, instance_id: uuid.UUID, actor_id: str, is_admin: bool = False, reason: str | None = None
    ) -> WorkflowInstance:
        with self._transition(instance_id) as (instance, at):
            if instance.status in {s.value for s in TERMINAL_STATUSES}:
                raise InvalidTransitionError(
                    f"Workflow is already {instance.status}; it cannot be cancelled.",
                    status=instance.status, action="cancel",
                )
            if actor_id != instance.requester_id and not is_admin:
                raise NotEligibleError(
                    "Only the requester or an administrator can cancel this request.",
                    actor_id=actor_id, reason="not_requester",
                )
            waiting_on = [e.user_id for e in self._eligible_now(instance, at)]
            tier_level = self.current_tier(instance).level if instance.current_step_id else None
            audit_svc.record_step(
                self.db, instance, StepAction.cancelled, actor_id, at,
                tier_level=tier_level, comments=reason,
            )
            instance.completed_at = at
            self._close_step(instance)
            notify_svc.emit_many(
                self.db, waiting_on, NotificationType.request_cancelled, at,
                instance_id=instance.id, payload={"reason": reason},
            )
            self._apply_status(instance, at)
            logger.info("Instance %s cancelled by %s", instance.id, actor_id)
        return instance

    def resubmit(
        self,
        instance_id: uuid.UUID,
        actor_id: str,
        changes: RequestAttributes | dict | None = None,
        comments: str | None = None,
    ) -> WorkflowInstance:
        """Start a new cycle for a returned request.

        Attribute changes are merged over the current attributes and tiers are
        resolved again against the configuration version the instance is
        pinned to. If no tier matches, nothing is written.
        """
        if isinstance(changes, RequestAttributes):
            delta = changes.model_dump(mode="json", exclude_unset=True)
        else:
            delta = RequestAttributes.model_validate(changes or {}).model_dump(mode="json", exclude_unset=True)

        with self._transition(instance_id) as (instance, at):
            if instance.status != WorkflowStatus.returned.value:
                raise InvalidTransitionError(
                    f"Only returned requests can be resubmitted; this one is {instance.status}.",
                    status=instance.status, action="resubmit",
                )
            if actor_id != instance.requester_id:
                raise NotEligibleError(
                    "Only the requester can resubmit this request.", actor_id=actor_id, reason="not_requester",
                )
            attributes = RequestAttributes.model_validate({**(instance.attributes or {}), **delta})
            tiers = resolve(self._snapshot(instance), attributes)

            instance.cycle += 1
            audit_svc.record_step(
                self.db, instance, StepAction.resubmitted, actor_id, at,
                comments=comments,
            )
            instance.attributes = attributes.as_json()
            instance.tier_plan = [t.model_dump(mode="json") for t in tiers]
            self._activate_step(instance, 1, at)
            self._apply_status(instance, at)
            logger.info(
                "Instance %s resubmitted by %s (cycle %d, tiers=%s)",
                instance.id, actor_id, instance.cycle, [t.level for t in tiers],
            )
        return instance

    # ── escalation ──

    def escalate(
        self,
        instance_id: uuid.UUID,
        step_id: str | None = None,
        actor_id: str = SYSTEM_ACTOR,
        reason: str | None = None,
        is_admin: bool = False,
    ) -> bool:
        """Escalate the current step. Returns False when the system call is a no-op.

        Target order: the tier's escalation rule (user, role or tier level);
        else auto-approval by the system when the tier allows it; else the
        next higher active tier of the pinned configuration; else the step
        stays with its current approvers and is flagged escalated.

        A system escalation whose step was already decided, superseded or
        escalated does nothing. The same situations raise
        ``InvalidTransitionError`` for a human caller.
        """
        is_system = actor_id == SYSTEM_ACTOR
        with self._transition(instance_id) as (instance, at):
            stale = (
                instance.status not in {WorkflowStatus.pending.value, WorkflowStatus.in_progress.value}
                or instance.current_step_id is None
                or instance.escalation_target is not None
                or (step_id is not None and step_id != instance.current_step_id)
            )
            if stale:
                if is_system:
                    logger.debug(
                        "Escalation skipped for instance %s: status=%s step=%s (requested %s)",
                        instance.id, instance.status, instance.current_step_id, step_id,
                    )
                    return False
                self._ensure_open_step(instance, "escalate", step_id)
                raise InvalidTransitionError(
                    "This step is already escalated.", status=instance.status, action="escalate",
                )

            if not is_system and not is_admin:
                if self.eligibility.slot_for(actor_id, self._eligible_now(instance, at)) is None:
                    raise NotEligibleError(
                        "Only a current approver or an administrator can escalate this step.",
                        actor_id=actor_id, reason="not_eligible",
                    )

            tier = self.current_tier(instance)
            rule = tier.escalation

            if (rule is None or not rule.has_target) and tier.auto_approve_on_timeout and is_system:
                completes = instance.current_step_order >= len(instance.tier_plan)
                audit_svc.record_step(
                    self.db, instance, StepAction.approved, SYSTEM_ACTOR, at,
                    tier_level=tier.level,
                    is_system_action=True,
                    completes_workflow=completes,
                    comments=reason or "Auto-approved after escalation timeout",
                )
                self._advance(instance, at, completes)
                self._apply_status(instance, at)
                logger.info("Instance %s tier %d auto-approved on timeout", instance.id, tier.level)
                return True

            if rule is not None and rule.escalate_to_user_id:
                target = {"type": "user", "user_id": rule.escalate_to_user_id}
            elif rule is not None and rule.escalate_to_role:
                target = {"type": "role", "role": rule.escalate_to_role}
            elif rule is not None and rule.escalate_to_tier_level:
                target = {"type": "tier", "level": rule.escalate_to_tier_level}
            else:
                higher = next(
                    (t for t in self._snapshot(instance).tiers if t.is_active and t.level > tier.level),
                    None,
                )
                if higher is not None:
                    target = {"type": "tier", "level": higher.level}
                else:
                    target = {"type": "current", "level": tier.level, "carried_step_id": instance.current_step_id}

            audit_svc.record_step(
                self.db, instance, StepAction.escalated, actor_id, at,
                tier_level=tier.level,
                is_system_action=is_system,
                comments=reason,
            )
            instance.escalation_target = target
            instance.current_step_id = uuid.uuid4().hex
            instance.step_entered_at = at
            self._apply_status(instance, at)

            if tier.notify_on_escalation:
                recipients = [e.user_id for e in self._eligible_now(instance, at, self.step_approvals(instance))]
                notify_svc.emit_many(
                    self.db, [*recipients, instance.requester_id], NotificationType.escalation_fired, at,
                    instance_id=instance.id, step_id=instance.current_step_id,
                    payload={"tier_level": tier.level, "target": target},
                )
            logger.info("Instance %s tier %d escalated by %s to %s", instance.id, tier.level, actor_id, target)
        return True

    # ── reads ──

    def eligible_approvers(self, instance_id: uuid.UUID) -> list[EligibleApprover]:
        instance = self.get_instance(instance_id)
        at = self.clock.now()
        return self._eligible_now(instance, at, self.step_approvals(instance))

    def available_actions(self, instance_id: uuid.UUID, actor_id: str, is_admin: bool = False) -> list[str]:
        """Actions the actor may take on the instance right now."""
        instance = self.get_instance(instance_id)
        status = instance.status
        actions: list[str] = []

        if status == WorkflowStatus.returned.value:
            if actor_id == instance.requester_id:
                actions.append("resubmit")
            if actor_id == instance.requester_id or is_admin:
                actions.append("cancel")
            return actions
        if status in {s.value for s in TERMINAL_STATUSES}:
            return actions

        eligible = self._eligible_now(instance, self.clock.now(), self.step_approvals(instance))
        if any(e.user_id == actor_id for e in eligible):
            actions.extend(["approve", "reject", "return"])
            if status != WorkflowStatus.escalated.value:
                actions.append("escalate")
        elif is_admin and status != WorkflowStatus.escalated.value:
            actions.append("escalate")
        if actor_id == instance.requester_id or is_admin:
            actions.append("cancel")
        return actions

    def audit_trail(self, instance_id: uuid.UUID) -> dict[str, list]:
        self.get_instance(instance_id)
        return audit_svc.audit_trail(self.db, instance_id)

    def workflow_stats(self, category: str | None = None) -> dict:
        """Counts per status and tier, mean hours to approval, and escalation rate."""
        q = select(WorkflowInstance)
        if category:
            q = q.where(WorkflowInstance.category == category)
        instances = self.db.execute(q).scalars().all()

        by_status = Counter(i.status for i in instances)
        pending_by_tier: Counter = Counter()
        durations: list[float] = []
        escalated = 0
        active = {s.value for s in ACTIVE_STATUSES}
        for inst in instances:
            if inst.status in active and inst.current_step_id and inst.tier_plan:
                pending_by_tier[int(inst.tier_plan[inst.current_step_order - 1]["level"])] += 1
            if inst.status == WorkflowStatus.approved.value and inst.completed_at:
                durations.append((as_utc(inst.completed_at) - as_utc(inst.created_at)).total_seconds() / 3600)
            if any(h.action == StepAction.escalated.value for h in inst.step_history):
                escalated += 1

        total = len(instances)
        return {
            "total": total,
            "by_status": {s.value: by_status.get(s.value, 0) for s in WorkflowStatus},
            "pending_by_tier": dict(sorted(pending_by_tier.items())),
            "average_hours_to_completion": round(sum(durations) / len(durations), 2) if durations else None,
            "escalation_rate": round(escalated / total, 4) if total else 0.0,
        }
