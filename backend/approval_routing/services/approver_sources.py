"""Approver sources: one class per approver type.

Each source expands a ``TierApprover`` slot into the nominal user ids it
names for a given request. New approver types register themselves with
``register_source`` instead of growing a switch in the eligibility resolver.
"""
import logging
from typing import Callable, Protocol

from approval_routing.schemas.tiers import ApproverType, TierApprover
from approval_routing.schemas.workflow import RequestContext
from approval_routing.services.directory import IdentityDirectory

logger = logging.getLogger(__name__)


class ApproverSource(Protocol):
    def resolve(self, approver: TierApprover, ctx: RequestContext, directory: IdentityDirectory) -> list[str]:
        ...


APPROVER_SOURCES: dict[ApproverType, ApproverSource] = {}


def register_source(approver_type: ApproverType) -> Callable[[type], type]:
    def wrap(cls: type) -> type:
        APPROVER_SOURCES[approver_type] = cls()
        return cls
    return wrap


def source_for(approver_type: ApproverType) -> ApproverSource:
    try:
        return APPROVER_SOURCES[approver_type]
    except KeyError:
        raise LookupError(f"No approver source registered for {approver_type.value!r}") from None


# ─── Built-in sources ───

@register_source(ApproverType.user)
class UserSource:
    def resolve(self, approver, ctx, directory):
        return [approver.user_id] if approver.user_id else []


@register_source(ApproverType.role)
class RoleSource:
    def resolve(self, approver, ctx, directory):
        return directory.users_with_role(approver.role) if approver.role else []


@register_source(ApproverType.manager)
class ManagerSource:
    """The requester's direct manager."""

    def resolve(self, approver, ctx, directory):
        manager = directory.manager_of(ctx.requester_id)
        return [manager] if manager else []


@register_source(ApproverType.department_head)
class DepartmentHeadSource:
    """Head of the request's department, falling back to the requester's own."""

    def resolve(self, approver, ctx, directory):
        department = ctx.department or directory.department_of(ctx.requester_id)
        if not department:
            return []
        head = directory.department_head(department)
        return [head] if head else []


@register_source(ApproverType.executive)
class ExecutiveSource:
    def resolve(self, approver, ctx, directory):
        return directory.executives()


@register_source(ApproverType.dynamic)
class DynamicSource:
    """User id(s) carried on the request itself, e.g. ``project_owner``."""

    def resolve(self, approver, ctx, directory):
        raw = ctx.attributes.get(approver.attribute)
        if isinstance(raw, str) and raw:
            return [raw]
        if isinstance(raw, (list, tuple)):
            return [v for v in raw if isinstance(v, str) and v]
        if raw is not None:
            logger.warning("Dynamic approver attribute %r is not a user id: %r", approver.attribute, raw)
        return []
