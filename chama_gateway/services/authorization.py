"""
Centralized authorization policy.

Every service entry point asks `PermissionPolicy` whether an actor may
perform an action on a resource, instead of each route re-deriving roles.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from chama_gateway.domain.exceptions import PermissionDeniedError
from chama_gateway.domain.models import MembershipRole
from chama_gateway.infrastructure.database.repositories import MembershipRepository


class Action(str, enum.Enum):
    APPLY_FOR_LOAN = "apply_for_loan"
    CHECK_ELIGIBILITY = "check_eligibility"
    VIEW_LOAN = "view_loan"
    APPROVE_LOAN = "approve_loan"
    DISBURSE_LOAN = "disburse_loan"
    RESTRUCTURE_LOAN = "restructure_loan"
    MARK_DEFAULTED = "mark_defaulted"
    RECORD_PAYMENT = "record_payment"
    VIEW_DEFAULTERS = "view_defaulters"
    VIEW_GROUP_LOANS = "view_group_loans"
    VIEW_MEMBER_LOANS = "view_member_loans"
    PAY_CONTRIBUTION = "pay_contribution"
    VIEW_PAYMENT = "view_payment"


@dataclass(frozen=True)
class ResourceRef:
    """The group a resource belongs to and the user who owns it, if any"""

    group_id: uuid.UUID
    owner_user_id: Optional[str] = None


_OFFICERS = frozenset({MembershipRole.ADMIN, MembershipRole.TREASURER})
_TREASURER = frozenset({MembershipRole.TREASURER})
_COMMITTEE = frozenset({MembershipRole.ADMIN, MembershipRole.TREASURER, MembershipRole.SECRETARY})
_NOBODY: FrozenSet[MembershipRole] = frozenset()

# Roles (in the resource's group) that may act regardless of ownership
ROLE_RULES: Dict[Action, FrozenSet[MembershipRole]] = {
    Action.APPLY_FOR_LOAN: _NOBODY,
    Action.CHECK_ELIGIBILITY: _NOBODY,
    Action.PAY_CONTRIBUTION: _NOBODY,
    Action.VIEW_LOAN: _OFFICERS,
    Action.VIEW_PAYMENT: _OFFICERS,
    Action.APPROVE_LOAN: _OFFICERS,
    Action.RESTRUCTURE_LOAN: _OFFICERS,
    Action.MARK_DEFAULTED: _OFFICERS,
    Action.VIEW_DEFAULTERS: _OFFICERS,
    Action.VIEW_MEMBER_LOANS: _OFFICERS,
    Action.VIEW_GROUP_LOANS: _COMMITTEE,
    Action.DISBURSE_LOAN: _TREASURER,
    Action.RECORD_PAYMENT: _TREASURER,
}

# Actions the resource owner may always perform
OWNER_ACTIONS = frozenset({
    Action.APPLY_FOR_LOAN,
    Action.CHECK_ELIGIBILITY,
    Action.PAY_CONTRIBUTION,
    Action.VIEW_LOAN,
    Action.VIEW_PAYMENT,
    Action.VIEW_MEMBER_LOANS,
})

_DENIAL_MESSAGES = {
    Action.APPLY_FOR_LOAN: "A member can only apply for a loan for themselves.",
    Action.CHECK_ELIGIBILITY: "A member can only check their own eligibility.",
    Action.PAY_CONTRIBUTION: "Permission Denied: You can only pay for your own contributions.",
}


class PermissionPolicy:
    """Allow/deny decisions backed by the actor's membership in the resource's group"""

    def __init__(self, db: Session):
        self.memberships = MembershipRepository(db)

    def can_perform(self, actor_id: str, action: Action, resource: ResourceRef) -> bool:
        if action in OWNER_ACTIONS and resource.owner_user_id is not None and actor_id == resource.owner_user_id:
            return True

        allowed_roles = ROLE_RULES[action]
        if not allowed_roles:
            return False

        membership = self.memberships.get_active_membership(actor_id, resource.group_id)
        if membership is None:
            return False
        return MembershipRole(membership.role) in allowed_roles

    def require(self, actor_id: str, action: Action, resource: ResourceRef) -> None:
        """Raise PermissionDeniedError unless `can_perform` allows it"""
        if self.can_perform(actor_id, action, resource):
            return

        message = _DENIAL_MESSAGES.get(action)
        if message is None:
            roles = ", ".join(sorted(role.value for role in ROLE_RULES[action]))
            message = f"Access Denied: This action requires one of the following roles: {roles}."
        raise PermissionDeniedError(message)
