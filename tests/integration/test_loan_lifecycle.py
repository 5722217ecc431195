"""Integration tests for the loan state machine and repayment ledger"""

import pytest
import uuid
from datetime import timedelta
from decimal import Decimal
from sqlalchemy.orm import Session
from chama_gateway.domain.exceptions import (
    DuplicatePaymentError,
    EligibilityError,
    PermissionDeniedError,
    ResourceNotFoundError,
    StateConflictError,
    ValidationError,
)
from chama_gateway.domain.models import AuditAction, LoanApplication, LoanStatus, PaymentDetails, TransactionType
from chama_gateway.infrastructure.database.models import GroupTransaction, Loan, LoanPayment
from chama_gateway.infrastructure.database.repositories import AuditLogRepository, LedgerRepository
from chama_gateway.services.audit import AuditRecorder
from chama_gateway.services.loans import LoanService
from chama_gateway.services.payments import PaymentLedger
from chama_gateway.utils.date_utils import add_months, utcnow

ADMIN = "user-admin"
TREASURER = "user-treasurer"
MEMBER = "user-member"


@pytest.fixture
def loans(db: Session, audit: AuditRecorder) -> LoanService:
    return LoanService(db, audit)


@pytest.fixture
def ledger(db: Session, audit: AuditRecorder) -> PaymentLedger:
    return PaymentLedger(db, audit)


def application(amount: str) -> LoanApplication:
    return LoanApplication(amount=Decimal(amount), duration=12, interest_rate=Decimal("0.10"), purpose="Stock")


# Application and eligibility

def test_apply_at_ceiling_succeeds(db, loans, member, paid_contributions):
    """5000 paid in x 3 = 15000; exactly the ceiling is allowed"""
    loan = loans.apply_for_loan(member.id, MEMBER, application("15000"))

    assert loan.status == LoanStatus.PENDING.value
    assert loan.amount == Decimal("15000.00")

    entries = AuditLogRepository(db).list_for_loan(loan.id)
    assert [entry.action for entry in entries] == [AuditAction.LOAN_APPLY.value]
    assert entries[0].new_value["status"] == "PENDING"


def test_apply_above_ceiling_reports_ceiling(loans, member, paid_contributions):
    with pytest.raises(EligibilityError, match="15000.00"):
        loans.apply_for_loan(member.id, MEMBER, application("15001"))


def test_pending_contributions_do_not_count(loans, member, paid_contributions):
    eligibility = loans.calculate_eligibility(member.id, Decimal("1"))

    assert eligibility.total_paid == Decimal("5000.00")
    assert eligibility.max_loanable == Decimal("15000.00")


def test_member_cannot_apply_for_someone_else(loans, member, paid_contributions):
    with pytest.raises(PermissionDeniedError):
        loans.apply_for_loan(member.id, ADMIN, application("1000"))


def test_apply_rejects_invalid_terms(loans, member, paid_contributions):
    with pytest.raises(ValidationError):
        loans.apply_for_loan(
            member.id, MEMBER, LoanApplication(amount=Decimal("1000"), duration=0, interest_rate=Decimal("0.1"))
        )


# Approval

def test_approval_fixes_flat_rate_terms(loans, make_loan):
    loan = make_loan(LoanStatus.PENDING, amount="12000.00", interest_rate="0.10", duration=12)

    approved = loans.approve_or_reject(loan.id, LoanStatus.APPROVED, ADMIN)

    assert approved.status == LoanStatus.APPROVED.value
    assert approved.repayment_amount == Decimal("13200.00")
    assert approved.monthly_installment == Decimal("1100.00")
    assert approved.approved_at is not None


def test_rejection_computes_nothing(loans, make_loan):
    loan = make_loan(LoanStatus.PENDING)

    rejected = loans.approve_or_reject(loan.id, LoanStatus.REJECTED, TREASURER)

    assert rejected.status == LoanStatus.REJECTED.value
    assert rejected.repayment_amount is None


@pytest.mark.parametrize("status", [LoanStatus.APPROVED, LoanStatus.ACTIVE, LoanStatus.REJECTED, LoanStatus.PAID])
def test_decision_only_from_pending(loans, make_loan, status):
    loan = make_loan(status)

    with pytest.raises(StateConflictError, match="cannot be updated"):
        loans.approve_or_reject(loan.id, LoanStatus.APPROVED, ADMIN)


def test_member_cannot_approve_own_loan(loans, make_loan):
    loan = make_loan(LoanStatus.PENDING)

    with pytest.raises(PermissionDeniedError):
        loans.approve_or_reject(loan.id, LoanStatus.APPROVED, MEMBER)


# Disbursement

def test_disburse_activates_and_books_outflow(db, loans, make_loan):
    loan = make_loan(LoanStatus.APPROVED)
    before = utcnow()

    active = loans.disburse(loan.id, TREASURER)

    assert active.status == LoanStatus.ACTIVE.value
    assert active.disbursed_at >= before
    assert active.due_date == add_months(active.disbursed_at, 1)

    movements = LedgerRepository(db).list_for_loan(loan.id)
    assert len(movements) == 1
    assert movements[0].type == TransactionType.LOAN_DISBURSEMENT.value
    assert movements[0].amount == Decimal("-12000.00")


def test_disburse_twice_fails(db, loans, make_loan):
    loan = make_loan(LoanStatus.APPROVED)
    loans.disburse(loan.id, TREASURER)

    with pytest.raises(StateConflictError, match="approved before disbursement"):
        loans.disburse(loan.id, TREASURER)
    assert len(LedgerRepository(db).list_for_loan(loan.id)) == 1


def test_racing_disbursements_have_one_winner(db, audit, session_factory, make_loan):
    """Both sessions saw APPROVED; the guarded update lets only one through"""
    loan = make_loan(LoanStatus.APPROVED)
    first, second = session_factory(), session_factory()
    try:
        first_service, second_service = LoanService(first, audit), LoanService(second, audit)
        second_service.loans.get_loan(loan.id)  # second request read the loan before the first committed

        first_service.disburse(loan.id, TREASURER)
        with pytest.raises(StateConflictError):
            second_service.disburse(loan.id, TREASURER)
    finally:
        first.close()
        second.close()

    assert db.query(GroupTransaction).filter(GroupTransaction.loan_id == loan.id).count() == 1


def test_pending_loan_cannot_be_disbursed(loans, make_loan):
    loan = make_loan(LoanStatus.PENDING)

    with pytest.raises(StateConflictError):
        loans.disburse(loan.id, TREASURER)


def test_admin_cannot_disburse(loans, make_loan):
    loan = make_loan(LoanStatus.APPROVED)

    with pytest.raises(PermissionDeniedError):
        loans.disburse(loan.id, ADMIN)


def test_disburse_refused_while_mobile_money_in_flight(loans, make_loan):
    loan = make_loan(LoanStatus.APPROVED, conversation_id="AG_inflight")

    with pytest.raises(StateConflictError, match="in flight"):
        loans.disburse(loan.id, TREASURER)


# Restructure

def test_restructure_recomputes_terms(loans, make_loan):
    loan = make_loan(LoanStatus.ACTIVE, amount="12000.00", interest_rate="0.10", duration=12)

    restructured = loans.restructure(loan.id, ADMIN, notes="Harvest failed", new_duration=24)

    assert restructured.status == LoanStatus.ACTIVE.value
    assert restructured.duration == 24
    assert restructured.interest_rate == Decimal("0.10")
    assert restructured.repayment_amount == Decimal("14400.00")
    assert restructured.monthly_installment == Decimal("600.00")
    assert restructured.is_restructured is True
    assert restructured.restructure_notes == "Harvest failed"


def test_restructure_approved_loan_new_rate(loans, make_loan):
    loan = make_loan(LoanStatus.APPROVED, amount="12000.00", interest_rate="0.10", duration=12)

    restructured = loans.restructure(loan.id, TREASURER, notes="Rate cut", new_interest_rate=Decimal("0.05"))

    assert restructured.status == LoanStatus.APPROVED.value
    assert restructured.repayment_amount == Decimal("12600.00")
    assert restructured.monthly_installment == Decimal("1050.00")


def test_restructure_requires_notes(loans, make_loan):
    loan = make_loan(LoanStatus.ACTIVE)

    with pytest.raises(ValidationError):
        loans.restructure(loan.id, ADMIN, notes="   ")


def test_restructure_rejected_for_pending(loans, make_loan):
    loan = make_loan(LoanStatus.PENDING)

    with pytest.raises(StateConflictError):
        loans.restructure(loan.id, ADMIN, notes="No")


# Repayments

def add_existing_payment(db: Session, loan, amount: str) -> None:
    db.add(LoanPayment(loan_id=loan.id, amount=Decimal(amount), payment_method="MPESA", paid_at=utcnow()))
    db.commit()


def test_final_payment_settles_loan(db, ledger, make_loan):
    loan = make_loan(LoanStatus.ACTIVE, amount="10000.00", interest_rate="0", duration=10)
    add_existing_payment(db, loan, "9000.00")

    receipt = ledger.record_payment(loan.id, PaymentDetails(amount=Decimal("1000"), external_reference_code="QK1"), TREASURER)

    assert receipt.fully_paid
    assert receipt.total_paid == Decimal("10000.00")
    assert receipt.outstanding == Decimal("0.00")
    db.refresh(loan)
    assert loan.status == LoanStatus.PAID.value
    assert loan.due_date is None


def test_partial_payment_advances_due_date(db, ledger, make_loan):
    loan = make_loan(LoanStatus.ACTIVE, amount="10000.00", interest_rate="0", duration=10)
    add_existing_payment(db, loan, "9000.00")
    prior_due = loan.due_date

    receipt = ledger.record_payment(loan.id, PaymentDetails(amount=Decimal("500"), external_reference_code="QK2"), TREASURER)

    assert not receipt.fully_paid
    assert receipt.outstanding == Decimal("500.00")
    db.refresh(loan)
    assert loan.status == LoanStatus.ACTIVE.value
    assert loan.due_date == add_months(prior_due, 1)


def test_repayment_books_inflow_and_audit(db, ledger, make_loan):
    loan = make_loan(LoanStatus.ACTIVE)

    ledger.record_payment(loan.id, PaymentDetails(amount=Decimal("1100"), external_reference_code="QK3"), TREASURER)

    movements = LedgerRepository(db).list_for_loan(loan.id)
    assert [(m.type, m.amount) for m in movements] == [(TransactionType.LOAN_REPAYMENT.value, Decimal("1100.00"))]
    entries = AuditLogRepository(db).list_for_loan(loan.id)
    assert entries[-1].action == AuditAction.LOAN_REPAYMENT.value
    assert entries[-1].new_value["external_reference_code"] == "QK3"


def test_duplicate_reference_writes_nothing(db, ledger, make_loan):
    loan = make_loan(LoanStatus.ACTIVE)
    ledger.record_payment(loan.id, PaymentDetails(amount=Decimal("1100"), external_reference_code="QK4"), TREASURER)
    db.refresh(loan)
    due_after_first = loan.due_date

    with pytest.raises(DuplicatePaymentError):
        ledger.record_payment(loan.id, PaymentDetails(amount=Decimal("1100"), external_reference_code="QK4"), TREASURER)

    db.expire_all()
    assert db.query(LoanPayment).filter(LoanPayment.loan_id == loan.id).count() == 1
    assert len(LedgerRepository(db).list_for_loan(loan.id)) == 1
    assert db.get(Loan, loan.id).due_date == due_after_first


def test_payment_without_reference_is_allowed_twice(db, ledger, make_loan):
    loan = make_loan(LoanStatus.ACTIVE)

    ledger.record_payment(loan.id, PaymentDetails(amount=Decimal("100"), payment_method="CASH"), TREASURER)
    ledger.record_payment(loan.id, PaymentDetails(amount=Decimal("100"), payment_method="CASH", external_reference_code=" "), TREASURER)

    assert db.query(LoanPayment).filter(LoanPayment.loan_id == loan.id).count() == 2


@pytest.mark.parametrize("status", [LoanStatus.APPROVED, LoanStatus.PAID, LoanStatus.PENDING])
def test_payment_requires_active_loan(ledger, make_loan, status):
    loan = make_loan(status)

    with pytest.raises(StateConflictError, match="Cannot record payment"):
        ledger.record_payment(loan.id, PaymentDetails(amount=Decimal("100")), TREASURER)


def test_member_cannot_record_own_payment(ledger, make_loan):
    loan = make_loan(LoanStatus.ACTIVE)

    with pytest.raises(PermissionDeniedError):
        ledger.record_payment(loan.id, PaymentDetails(amount=Decimal("100")), MEMBER)


# Defaulters

def test_defaulters_are_reported_not_transitioned(db, loans, make_loan):
    now = utcnow()
    overdue = make_loan(LoanStatus.ACTIVE, disbursed_at=now - timedelta(days=60), due_date=now - timedelta(days=30))
    make_loan(LoanStatus.ACTIVE)  # not yet due
    make_loan(LoanStatus.APPROVED)

    defaulters = loans.find_defaulters(overdue.membership.group_id, ADMIN)

    assert [loan.id for loan in defaulters] == [overdue.id]
    assert defaulters[0].membership.user_id == MEMBER
    db.refresh(overdue)
    assert overdue.status == LoanStatus.ACTIVE.value


def test_mark_defaulted_requires_overdue(loans, make_loan):
    loan = make_loan(LoanStatus.ACTIVE)

    with pytest.raises(StateConflictError, match="past its due date"):
        loans.mark_defaulted(loan.id, ADMIN)


def test_mark_defaulted(db, loans, make_loan):
    now = utcnow()
    loan = make_loan(LoanStatus.ACTIVE, disbursed_at=now - timedelta(days=60), due_date=now - timedelta(days=1))

    defaulted = loans.mark_defaulted(loan.id, ADMIN)

    assert defaulted.status == LoanStatus.DEFAULTED.value
    assert defaulted.due_date is None
    assert AuditLogRepository(db).list_for_loan(loan.id)[-1].action == AuditAction.LOAN_DEFAULT.value


# Listings

def test_group_loans_listed_for_committee(loans, group, make_loan):
    pending = make_loan(LoanStatus.PENDING)
    active = make_loan(LoanStatus.ACTIVE)

    listed = loans.list_group_loans(group.id, "user-secretary")

    assert {loan.id for loan in listed} == {pending.id, active.id}
    assert all(loan.membership.group_id == group.id for loan in listed)


def test_group_loans_denied_to_plain_member(loans, group, make_loan):
    make_loan(LoanStatus.PENDING)

    with pytest.raises(PermissionDeniedError):
        loans.list_group_loans(group.id, MEMBER)


def test_member_loans_listed_for_owner(loans, member, make_loan):
    loan = make_loan(LoanStatus.APPROVED)

    assert [listed.id for listed in loans.list_member_loans(member.id, MEMBER)] == [loan.id]
    assert [listed.id for listed in loans.list_member_loans(member.id, TREASURER)] == [loan.id]


def test_member_loans_denied_to_outsider(loans, member, make_loan):
    make_loan(LoanStatus.APPROVED)

    with pytest.raises(PermissionDeniedError):
        loans.list_member_loans(member.id, "user-outsider")


def test_member_loans_unknown_membership(loans, memberships):
    with pytest.raises(ResourceNotFoundError, match="Membership not found"):
        loans.list_member_loans(uuid.uuid4(), ADMIN)


# Schedule

def test_schedule_empty_before_disbursement(loans, make_loan):
    loan = make_loan(LoanStatus.APPROVED)
    assert loans.generate_schedule(loan.id, MEMBER) == []


def test_schedule_after_disbursement(loans, make_loan):
    loan = make_loan(LoanStatus.APPROVED)
    loans.disburse(loan.id, TREASURER)

    schedule = loans.generate_schedule(loan.id, MEMBER)

    assert len(schedule) == 12
    assert sum(entry.payment_amount for entry in schedule) == Decimal("13200.00")
    assert schedule[-1].remaining_balance == Decimal("0.00")
