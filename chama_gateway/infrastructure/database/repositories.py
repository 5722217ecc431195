"""Data access layer for group, loan, payment, gateway and audit entities"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload, selectinload

from chama_gateway.domain.models import (
    AuditAction,
    ContributionStatus,
    GatewayTransactionKind,
    GatewayTransactionStatus,
    LoanStatus,
    PaymentDetails,
    RequestMeta,
    TransactionType,
)
from chama_gateway.domain.schedule import round_money
from chama_gateway.infrastructure.database.models import (
    AuditLog,
    Contribution,
    GroupTransaction,
    Loan,
    LoanPayment,
    Membership,
    PendingGatewayTransaction,
)
from chama_gateway.utils.date_utils import utcnow


def _as_decimal(value: Any) -> Decimal:
    # SUM() comes back as float on some drivers
    return round_money(Decimal(str(value)) if value is not None else Decimal("0"))


class MembershipRepository:
    """Repository for group memberships"""

    def __init__(self, db: Session):
        self.db = db

    def get_membership(self, membership_id: uuid.UUID) -> Optional[Membership]:
        return self.db.get(Membership, membership_id)

    def get_active_membership(self, user_id: str, group_id: uuid.UUID) -> Optional[Membership]:
        """Actor's active seat in a group, if any"""
        return (
            self.db.query(Membership)
            .filter(
                Membership.user_id == user_id,
                Membership.group_id == group_id,
                Membership.is_active.is_(True),
            )
            .first()
        )


class ContributionRepository:
    """Repository for member contributions"""

    def __init__(self, db: Session):
        self.db = db

    def get_contribution(self, contribution_id: uuid.UUID) -> Optional[Contribution]:
        return self.db.get(Contribution, contribution_id)

    def total_paid(self, membership_id: uuid.UUID) -> Decimal:
        """Sum of PAID contributions for a membership"""
        total = (
            self.db.query(func.sum(Contribution.amount))
            .filter(
                Contribution.membership_id == membership_id,
                Contribution.status == ContributionStatus.PAID.value,
            )
            .scalar()
        )
        return _as_decimal(total)

    def attach_checkout_request(self, contribution_id: uuid.UUID, checkout_request_id: str) -> None:
        self.db.query(Contribution).filter(Contribution.id == contribution_id).update(
            {"checkout_request_id": checkout_request_id}
        )

    def mark_paid_by_checkout(
        self,
        checkout_request_id: str,
        receipt_code: str,
        paid_at: datetime,
    ) -> Optional[Contribution]:
        """
        Settle the contribution awaiting this checkout request.

        Returns None when nothing matched (unknown id or already PAID).
        """
        contribution = (
            self.db.query(Contribution)
            .filter(Contribution.checkout_request_id == checkout_request_id)
            .first()
        )
        if contribution is None:
            return None

        updated = (
            self.db.query(Contribution)
            .filter(
                Contribution.id == contribution.id,
                Contribution.status != ContributionStatus.PAID.value,
            )
            .update(
                {
                    "status": ContributionStatus.PAID.value,
                    "receipt_code": receipt_code,
                    "paid_at": paid_at,
                    "payment_method": "MPESA",
                }
            )
        )
        return contribution if updated == 1 else None


class LoanRepository:
    """Repository for loans; status changes go through compare-on-status updates"""

    def __init__(self, db: Session):
        self.db = db

    def create_loan(
        self,
        membership_id: uuid.UUID,
        amount: Decimal,
        interest_rate: Decimal,
        duration: int,
        purpose: str,
    ) -> Loan:
        """Persist a new PENDING application"""
        loan = Loan(
            membership_id=membership_id,
            amount=amount,
            interest_rate=interest_rate,
            duration=duration,
            purpose=purpose,
            status=LoanStatus.PENDING.value,
            applied_at=utcnow(),
        )
        self.db.add(loan)
        self.db.flush()  # Get ID without committing
        return loan

    def get_loan(self, loan_id: uuid.UUID) -> Optional[Loan]:
        return (
            self.db.query(Loan)
            .options(joinedload(Loan.membership), selectinload(Loan.payments))
            .filter(Loan.id == loan_id)
            .first()
        )

    def get_loan_for_update(self, loan_id: uuid.UUID) -> Optional[Loan]:
        """Row-locked read for read-modify-write paths (no-op lock on SQLite)"""
        return (
            self.db.query(Loan)
            .filter(Loan.id == loan_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    def get_by_conversation_id(self, conversation_id: str) -> Optional[Loan]:
        return (
            self.db.query(Loan)
            .filter(Loan.disbursement_conversation_id == conversation_id)
            .first()
        )

    def transition(
        self,
        loan_id: uuid.UUID,
        expected: LoanStatus,
        values: Dict[str, Any],
        criteria: Iterable[Any] = (),
    ) -> bool:
        """
        Apply `values` only if the loan is still in `expected` status.

        Exactly one of two racing callers sees True; the loser's UPDATE
        matches no row.
        """
        updated = (
            self.db.query(Loan)
            .filter(Loan.id == loan_id, Loan.status == expected.value, *criteria)
            .update(values, synchronize_session="fetch")
        )
        return updated == 1

    def find_overdue(self, group_id: uuid.UUID, now: datetime) -> List[Loan]:
        """ACTIVE loans in a group whose due date has passed, with owner and payments"""
        return (
            self.db.query(Loan)
            .join(Membership, Loan.membership_id == Membership.id)
            .options(joinedload(Loan.membership), selectinload(Loan.payments))
            .filter(
                Membership.group_id == group_id,
                Loan.status == LoanStatus.ACTIVE.value,
                Loan.due_date < now,
            )
            .order_by(Loan.due_date.asc())
            .all()
        )

    def list_for_group(self, group_id: uuid.UUID) -> List[Loan]:
        """Every loan of a group's members, newest application first"""
        return (
            self.db.query(Loan)
            .join(Membership, Loan.membership_id == Membership.id)
            .options(joinedload(Loan.membership), selectinload(Loan.payments))
            .filter(Membership.group_id == group_id)
            .order_by(Loan.applied_at.desc())
            .all()
        )

    def list_for_membership(self, membership_id: uuid.UUID) -> List[Loan]:
        return (
            self.db.query(Loan)
            .options(joinedload(Loan.membership), selectinload(Loan.payments))
            .filter(Loan.membership_id == membership_id)
            .order_by(Loan.applied_at.desc())
            .all()
        )


class PaymentRepository:
    """Repository for loan repayments (insert-only)"""

    def __init__(self, db: Session):
        self.db = db

    def reference_exists(self, external_reference_code: str) -> bool:
        return (
            self.db.query(LoanPayment.id)
            .filter(LoanPayment.external_reference_code == external_reference_code)
            .first()
            is not None
        )

    def total_paid(self, loan_id: uuid.UUID) -> Decimal:
        total = (
            self.db.query(func.sum(LoanPayment.amount))
            .filter(LoanPayment.loan_id == loan_id)
            .scalar()
        )
        return _as_decimal(total)

    def create_payment(self, loan_id: uuid.UUID, details: PaymentDetails, recorded_by: str) -> LoanPayment:
        payment = LoanPayment(
            loan_id=loan_id,
            amount=details.amount,
            payment_method=details.payment_method,
            external_reference_code=details.external_reference_code,
            paid_at=details.paid_at or utcnow(),
            recorded_by=recorded_by,
        )
        self.db.add(payment)
        self.db.flush()
        return payment


class LedgerRepository:
    """Repository for group book movements"""

    def __init__(self, db: Session):
        self.db = db

    def record_movement(
        self,
        group_id: uuid.UUID,
        type: TransactionType,
        amount: Decimal,
        description: str,
        reference: Optional[str] = None,
        loan_id: Optional[uuid.UUID] = None,
        contribution_id: Optional[uuid.UUID] = None,
    ) -> GroupTransaction:
        """Append a signed movement: negative for money leaving the group"""
        movement = GroupTransaction(
            group_id=group_id,
            type=type.value,
            amount=amount,
            description=description,
            reference=reference,
            loan_id=loan_id,
            contribution_id=contribution_id,
            created_at=utcnow(),
        )
        self.db.add(movement)
        self.db.flush()
        return movement

    def list_for_loan(self, loan_id: uuid.UUID) -> List[GroupTransaction]:
        return (
            self.db.query(GroupTransaction)
            .filter(GroupTransaction.loan_id == loan_id)
            .order_by(GroupTransaction.created_at.asc())
            .all()
        )


class GatewayTransactionRepository:
    """Repository for in-flight M-Pesa requests awaiting their webhook"""

    def __init__(self, db: Session):
        self.db = db

    def register(
        self,
        correlation_id: str,
        kind: GatewayTransactionKind,
        amount: Decimal,
        phone_number: str,
        contribution_id: Optional[uuid.UUID] = None,
        loan_id: Optional[uuid.UUID] = None,
    ) -> PendingGatewayTransaction:
        pending = PendingGatewayTransaction(
            correlation_id=correlation_id,
            kind=kind.value,
            status=GatewayTransactionStatus.PENDING.value,
            amount=amount,
            phone_number=phone_number,
            contribution_id=contribution_id,
            loan_id=loan_id,
            created_at=utcnow(),
        )
        self.db.add(pending)
        self.db.flush()
        return pending

    def get_by_correlation_id(self, correlation_id: str) -> Optional[PendingGatewayTransaction]:
        return (
            self.db.query(PendingGatewayTransaction)
            .filter(PendingGatewayTransaction.correlation_id == correlation_id)
            .first()
        )

    def resolve(
        self,
        correlation_id: str,
        kind: GatewayTransactionKind,
        status: GatewayTransactionStatus,
        result_code: Optional[int] = None,
        result_desc: Optional[str] = None,
    ) -> Optional[PendingGatewayTransaction]:
        """
        Move a PENDING transaction to its terminal status.

        Returns the transaction if this call resolved it, None if it was
        unknown or already resolved by an earlier delivery.
        """
        updated = (
            self.db.query(PendingGatewayTransaction)
            .filter(
                PendingGatewayTransaction.correlation_id == correlation_id,
                PendingGatewayTransaction.kind == kind.value,
                PendingGatewayTransaction.status == GatewayTransactionStatus.PENDING.value,
            )
            .update(
                {
                    "status": status.value,
                    "result_code": result_code,
                    "result_desc": result_desc,
                    "resolved_at": utcnow(),
                },
                synchronize_session="fetch",
            )
        )
        if updated != 1:
            return None
        return self.get_by_correlation_id(correlation_id)


class AuditLogRepository:
    """Repository for the append-only audit trail"""

    def __init__(self, db: Session):
        self.db = db

    def create_entry(
        self,
        action: AuditAction,
        actor_id: str,
        target_id: Optional[str] = None,
        group_id: Optional[uuid.UUID] = None,
        loan_id: Optional[uuid.UUID] = None,
        contribution_id: Optional[uuid.UUID] = None,
        membership_id: Optional[uuid.UUID] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> AuditLog:
        entry = AuditLog(
            action=action.value,
            actor_id=actor_id,
            target_id=target_id,
            group_id=group_id,
            loan_id=loan_id,
            contribution_id=contribution_id,
            membership_id=membership_id,
            old_value=old_value,
            new_value=new_value,
            ip_address=request_meta.ip_address if request_meta else None,
            user_agent=request_meta.user_agent if request_meta else None,
            created_at=utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def list_for_loan(self, loan_id: uuid.UUID) -> List[AuditLog]:
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.loan_id == loan_id)
            .order_by(AuditLog.created_at.asc())
            .all()
        )
