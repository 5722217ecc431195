"""
Loan lifecycle: application, approval, disbursement, restructuring and default tracking.

    PENDING --approve--> APPROVED --disburse--> ACTIVE --full payment--> PAID
    PENDING --reject---> REJECTED
    ACTIVE  --mark defaulted (overdue only)--> DEFAULTED
    APPROVED/ACTIVE --restructure--> same status, new terms

Every status change is a compare-on-status UPDATE so concurrent requests on
the same loan cannot both succeed.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, List, Optional

from sqlalchemy.orm import Session

from chama_gateway.config import settings
from chama_gateway.domain.eligibility import calculate_eligibility
from chama_gateway.domain.exceptions import (
    EligibilityError,
    ResourceNotFoundError,
    StateConflictError,
    ValidationError,
)
from chama_gateway.domain.models import (
    AuditAction,
    Eligibility,
    LoanApplication,
    LoanStatus,
    RequestMeta,
    ScheduleEntry,
    TransactionType,
)
from chama_gateway.domain.schedule import compute_repayment_terms, generate_repayment_schedule, round_money
from chama_gateway.infrastructure.database.models import Loan
from chama_gateway.infrastructure.database.repositories import (
    ContributionRepository,
    LedgerRepository,
    LoanRepository,
    MembershipRepository,
)
from chama_gateway.infrastructure.observability.logging import log_loan_transition
from chama_gateway.infrastructure.observability.metrics import eligibility_rejection_counter, record_loan_transition
from chama_gateway.services.audit import AuditRecorder, snapshot
from chama_gateway.services.authorization import Action, PermissionPolicy, ResourceRef
from chama_gateway.utils.date_utils import add_months, utcnow


def loan_resource(loan: Loan) -> ResourceRef:
    return ResourceRef(group_id=loan.membership.group_id, owner_user_id=loan.membership.user_id)


def activate_disbursed_loan(
    loans: LoanRepository,
    ledger: LedgerRepository,
    loan: Loan,
    now: datetime,
    criteria: Iterable[Any] = (),
    reference: Optional[str] = None,
) -> bool:
    """
    APPROVED -> ACTIVE with disbursement stamps and the outgoing ledger entry.

    Shared by manual disbursement and the B2C result webhook. Returns False
    without writing anything if the loan is no longer APPROVED (or `criteria`
    no longer hold).
    """
    activated = loans.transition(
        loan.id,
        LoanStatus.APPROVED,
        {
            "status": LoanStatus.ACTIVE.value,
            "disbursed_at": now,
            "due_date": add_months(now, 1),
        },
        criteria,
    )
    if not activated:
        return False

    ledger.record_movement(
        group_id=loan.membership.group_id,
        type=TransactionType.LOAN_DISBURSEMENT,
        amount=-loan.amount,
        description=f"Loan disbursement to member for loan ID: {loan.id}",
        reference=reference,
        loan_id=loan.id,
    )
    return True


class LoanService:
    """Loan state machine over a request-scoped session"""

    def __init__(
        self,
        db: Session,
        audit: AuditRecorder,
        policy: Optional[PermissionPolicy] = None,
        eligibility_multiplier: Optional[Decimal] = None,
    ):
        self.db = db
        self.audit = audit
        self.policy = policy or PermissionPolicy(db)
        self.multiplier = (
            eligibility_multiplier if eligibility_multiplier is not None else settings.loan_eligibility_multiplier
        )
        self.loans = LoanRepository(db)
        self.memberships = MembershipRepository(db)
        self.contributions = ContributionRepository(db)
        self.ledger = LedgerRepository(db)

    def _load_loan(self, loan_id: uuid.UUID) -> Loan:
        loan = self.loans.get_loan(loan_id)
        if loan is None:
            logging.warning("Loan not found", extra={"loan_id": str(loan_id)})
            raise ResourceNotFoundError("Loan not found.")
        return loan

    def _audit_loan(
        self,
        action: AuditAction,
        actor_id: str,
        loan: Loan,
        old_value: Optional[dict],
        request_meta: Optional[RequestMeta],
    ) -> None:
        self.audit.record(
            action=action,
            actor_id=actor_id,
            target_id=loan.id,
            group_id=loan.membership.group_id,
            loan_id=loan.id,
            membership_id=loan.membership_id,
            old_value=old_value,
            new_value=snapshot(loan),
            request_meta=request_meta,
        )

    def calculate_eligibility(self, membership_id: uuid.UUID, requested_amount: Decimal) -> Eligibility:
        """Pure read: PAID contributions x multiplier against the requested amount"""
        total_paid = self.contributions.total_paid(membership_id)
        eligibility = calculate_eligibility(total_paid, requested_amount, self.multiplier)

        logging.info(
            "Loan eligibility calculated",
            extra={
                "membership_id": str(membership_id),
                "total_paid": str(total_paid),
                "max_loanable": str(eligibility.max_loanable),
                "is_eligible": eligibility.is_eligible,
            },
        )
        return eligibility

    def check_eligibility(self, membership_id: uuid.UUID, actor_id: str, requested_amount: Decimal) -> Eligibility:
        membership = self.memberships.get_membership(membership_id)
        if membership is None:
            raise ResourceNotFoundError("Membership not found.")
        self.policy.require(
            actor_id, Action.CHECK_ELIGIBILITY, ResourceRef(membership.group_id, membership.user_id)
        )
        return self.calculate_eligibility(membership_id, requested_amount)

    def apply_for_loan(
        self,
        membership_id: uuid.UUID,
        actor_id: str,
        terms: LoanApplication,
        request_meta: Optional[RequestMeta] = None,
    ) -> Loan:
        """
        Create a PENDING loan for the actor's own membership.

        Raises:
            ValidationError: Non-positive amount or duration, negative rate
            PermissionDeniedError: Actor does not own the membership
            EligibilityError: Amount above PAID contributions x multiplier;
                the message carries the ceiling to two decimals
        """
        if terms.amount <= 0:
            raise ValidationError("Loan amount must be greater than zero.")
        if terms.duration <= 0:
            raise ValidationError("Loan duration must be at least one month.")
        if terms.interest_rate < 0:
            raise ValidationError("Interest rate cannot be negative.")

        membership = self.memberships.get_membership(membership_id)
        if membership is None or not membership.is_active:
            logging.warning(
                "Membership not found for loan application",
                extra={"membership_id": str(membership_id), "actor_id": actor_id},
            )
            raise ResourceNotFoundError("Membership not found.")

        self.policy.require(actor_id, Action.APPLY_FOR_LOAN, ResourceRef(membership.group_id, membership.user_id))

        eligibility = self.calculate_eligibility(membership_id, terms.amount)
        if not eligibility.is_eligible:
            eligibility_rejection_counter.inc()
            logging.warning(
                "Loan application rejected: exceeds eligibility",
                extra={
                    "membership_id": str(membership_id),
                    "requested_amount": str(terms.amount),
                    "max_loanable": str(eligibility.max_loanable),
                },
            )
            raise EligibilityError(eligibility.max_loanable)

        loan = self.loans.create_loan(
            membership_id=membership_id,
            amount=round_money(terms.amount),
            interest_rate=terms.interest_rate,
            duration=terms.duration,
            purpose=terms.purpose,
        )
        self.db.commit()

        record_loan_transition("apply")
        log_loan_transition(str(loan.id), "apply", actor_id, None, loan.status, amount=str(loan.amount))
        self._audit_loan(AuditAction.LOAN_APPLY, actor_id, loan, None, request_meta)
        return loan

    def approve_or_reject(
        self,
        loan_id: uuid.UUID,
        decision: LoanStatus,
        actor_id: str,
        request_meta: Optional[RequestMeta] = None,
    ) -> Loan:
        """
        Decide a PENDING loan. Approval fixes the flat-rate repayment terms.

        Raises:
            StateConflictError: Loan is not PENDING (including a lost race)
        """
        if decision not in (LoanStatus.APPROVED, LoanStatus.REJECTED):
            raise ValidationError("Invalid status provided. Must be APPROVED or REJECTED.")

        loan = self._load_loan(loan_id)
        self.policy.require(actor_id, Action.APPROVE_LOAN, loan_resource(loan))
        old_value = snapshot(loan)

        if decision == LoanStatus.REJECTED:
            values = {"status": LoanStatus.REJECTED.value}
        else:
            terms = compute_repayment_terms(loan.amount, loan.interest_rate, loan.duration)
            values = {
                "status": LoanStatus.APPROVED.value,
                "approved_at": utcnow(),
                "repayment_amount": round_money(terms.repayment_amount),
                "monthly_installment": round_money(terms.monthly_installment),
            }

        if not self.loans.transition(loan.id, LoanStatus.PENDING, values):
            self.db.rollback()
            logging.warning(
                "Cannot update loan: not pending",
                extra={"loan_id": str(loan_id), "current_status": old_value["status"]},
            )
            raise StateConflictError("Loan not found or cannot be updated.")
        self.db.commit()

        action = "approve" if decision == LoanStatus.APPROVED else "reject"
        record_loan_transition(action)
        log_loan_transition(str(loan.id), action, actor_id, old_value["status"], loan.status)
        self._audit_loan(
            AuditAction.LOAN_APPROVE if decision == LoanStatus.APPROVED else AuditAction.LOAN_REJECT,
            actor_id,
            loan,
            old_value,
            request_meta,
        )
        return loan

    def disburse(self, loan_id: uuid.UUID, actor_id: str, request_meta: Optional[RequestMeta] = None) -> Loan:
        """
        Hand out an APPROVED loan outside the rail (cash, bank transfer).

        In one transaction: ACTIVE, disbursed_at = now, due_date = now + 1 month,
        and a negative LOAN_DISBURSEMENT movement on the group's books.

        Raises:
            StateConflictError: Not APPROVED, already disbursed, or a mobile-money
                disbursement is in flight
        """
        loan = self._load_loan(loan_id)
        self.policy.require(actor_id, Action.DISBURSE_LOAN, loan_resource(loan))

        if loan.status == LoanStatus.APPROVED.value and loan.disbursement_conversation_id is not None:
            raise StateConflictError("A mobile-money disbursement is already in flight for this loan.")

        old_value = snapshot(loan)
        activated = activate_disbursed_loan(
            self.loans,
            self.ledger,
            loan,
            utcnow(),
            criteria=[Loan.disbursement_conversation_id.is_(None)],
        )
        if not activated:
            self.db.rollback()
            logging.warning(
                "Cannot disburse: loan not approved",
                extra={"loan_id": str(loan_id), "current_status": old_value["status"]},
            )
            raise StateConflictError("Loan must be approved before disbursement.")
        self.db.commit()

        record_loan_transition("disburse")
        log_loan_transition(str(loan.id), "disburse", actor_id, old_value["status"], loan.status, amount=str(loan.amount))
        self._audit_loan(AuditAction.LOAN_DISBURSE, actor_id, loan, old_value, request_meta)
        return loan

    def restructure(
        self,
        loan_id: uuid.UUID,
        actor_id: str,
        notes: str,
        new_interest_rate: Optional[Decimal] = None,
        new_duration: Optional[int] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> Loan:
        """Recompute terms of an APPROVED or ACTIVE loan; missing terms keep their current value"""
        notes = (notes or "").strip()
        if not notes:
            raise ValidationError("Restructure notes are required.")

        loan = self._load_loan(loan_id)
        self.policy.require(actor_id, Action.RESTRUCTURE_LOAN, loan_resource(loan))

        current_status = LoanStatus(loan.status)
        if current_status not in (LoanStatus.APPROVED, LoanStatus.ACTIVE):
            raise StateConflictError("Only APPROVED or ACTIVE loans can be restructured.")

        rate = new_interest_rate if new_interest_rate is not None else loan.interest_rate
        duration = new_duration if new_duration is not None else loan.duration
        terms = compute_repayment_terms(loan.amount, rate, duration)

        old_value = snapshot(loan)
        restructured = self.loans.transition(
            loan.id,
            current_status,
            {
                "interest_rate": rate,
                "duration": duration,
                "repayment_amount": round_money(terms.repayment_amount),
                "monthly_installment": round_money(terms.monthly_installment),
                "is_restructured": True,
                "restructure_notes": notes,
            },
        )
        if not restructured:
            self.db.rollback()
            raise StateConflictError("Loan status changed while restructuring; reload and retry.")
        self.db.commit()

        record_loan_transition("restructure")
        log_loan_transition(
            str(loan.id),
            "restructure",
            actor_id,
            current_status.value,
            loan.status,
            repayment_amount=str(loan.repayment_amount),
            monthly_installment=str(loan.monthly_installment),
        )
        self._audit_loan(AuditAction.LOAN_RESTRUCTURE, actor_id, loan, old_value, request_meta)
        return loan

    def mark_defaulted(self, loan_id: uuid.UUID, actor_id: str, request_meta: Optional[RequestMeta] = None) -> Loan:
        """Operator decision to write an overdue ACTIVE loan off as DEFAULTED"""
        loan = self._load_loan(loan_id)
        self.policy.require(actor_id, Action.MARK_DEFAULTED, loan_resource(loan))

        if loan.status != LoanStatus.ACTIVE.value:
            raise StateConflictError("Only ACTIVE loans can be marked as defaulted.")

        now = utcnow()
        if loan.due_date is None or loan.due_date >= now:
            raise StateConflictError("Loan is not past its due date.")

        old_value = snapshot(loan)
        if not self.loans.transition(
            loan.id,
            LoanStatus.ACTIVE,
            {"status": LoanStatus.DEFAULTED.value, "due_date": None},
            criteria=[Loan.due_date < now],
        ):
            self.db.rollback()
            raise StateConflictError("Only ACTIVE loans can be marked as defaulted.")
        self.db.commit()

        record_loan_transition("default")
        log_loan_transition(str(loan.id), "default", actor_id, old_value["status"], loan.status)
        self._audit_loan(AuditAction.LOAN_DEFAULT, actor_id, loan, old_value, request_meta)
        return loan

    def find_defaulters(self, group_id: uuid.UUID, actor_id: str) -> List[Loan]:
        """Overdue ACTIVE loans. Advisory only: nothing is moved to DEFAULTED here"""
        self.policy.require(actor_id, Action.VIEW_DEFAULTERS, ResourceRef(group_id))
        defaulters = self.loans.find_overdue(group_id, utcnow())
        logging.info("Loan defaulters found", extra={"group_id": str(group_id), "defaulters_count": len(defaulters)})
        return defaulters

    def get_loan(self, loan_id: uuid.UUID, actor_id: str) -> Loan:
        loan = self._load_loan(loan_id)
        self.policy.require(actor_id, Action.VIEW_LOAN, loan_resource(loan))
        return loan

    def list_group_loans(self, group_id: uuid.UUID, actor_id: str) -> List[Loan]:
        """All loans in a group, for its committee (admin, treasurer, secretary)"""
        self.policy.require(actor_id, Action.VIEW_GROUP_LOANS, ResourceRef(group_id))
        return self.loans.list_for_group(group_id)

    def list_member_loans(self, membership_id: uuid.UUID, actor_id: str) -> List[Loan]:
        """One member's loans, for the member or the group's officers"""
        membership = self.memberships.get_membership(membership_id)
        if membership is None:
            raise ResourceNotFoundError("Membership not found.")
        self.policy.require(actor_id, Action.VIEW_MEMBER_LOANS, ResourceRef(membership.group_id, membership.user_id))
        return self.loans.list_for_membership(membership_id)

    def generate_schedule(self, loan_id: uuid.UUID, actor_id: str) -> List[ScheduleEntry]:
        """Schedule derived from the loan row alone; empty until disbursed"""
        loan = self.get_loan(loan_id, actor_id)
        return generate_repayment_schedule(loan.amount, loan.interest_rate, loan.duration, loan.disbursed_at)
