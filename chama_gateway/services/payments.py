"""Loan repayment ledger"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chama_gateway.domain.exceptions import (
    DuplicatePaymentError,
    ResourceNotFoundError,
    StateConflictError,
    ValidationError,
)
from chama_gateway.domain.models import (
    AuditAction,
    LoanStatus,
    PaymentDetails,
    PaymentReceipt,
    RequestMeta,
    TransactionType,
)
from chama_gateway.domain.schedule import round_money
from chama_gateway.infrastructure.database.repositories import (
    LedgerRepository,
    LoanRepository,
    PaymentRepository,
)
from chama_gateway.infrastructure.observability.logging import log_loan_transition
from chama_gateway.infrastructure.observability.metrics import duplicate_payment_counter, record_loan_transition
from chama_gateway.services.audit import AuditRecorder, snapshot
from chama_gateway.services.authorization import Action, PermissionPolicy
from chama_gateway.services.loans import loan_resource
from chama_gateway.utils.date_utils import add_months


class PaymentLedger:
    """Records repayments and settles loans once fully paid"""

    def __init__(self, db: Session, audit: AuditRecorder, policy: Optional[PermissionPolicy] = None):
        self.db = db
        self.audit = audit
        self.policy = policy or PermissionPolicy(db)
        self.loans = LoanRepository(db)
        self.payments = PaymentRepository(db)
        self.ledger = LedgerRepository(db)

    def record_payment(
        self,
        loan_id: uuid.UUID,
        details: PaymentDetails,
        actor_id: str,
        request_meta: Optional[RequestMeta] = None,
    ) -> PaymentReceipt:
        """
        Record a repayment against an ACTIVE loan.

        In one transaction: insert the payment, append a LOAN_REPAYMENT
        movement, then either settle the loan (PAID, due date cleared) or
        push its due date out by one month.

        Raises:
            ValidationError: Non-positive amount
            StateConflictError: Loan is not ACTIVE
            DuplicatePaymentError: External reference code already used;
                nothing is written
        """
        if details.amount is None or details.amount <= 0:
            raise ValidationError("Payment amount must be greater than zero.")

        reference = (details.external_reference_code or "").strip() or None
        details = PaymentDetails(
            amount=round_money(details.amount),
            payment_method=details.payment_method,
            external_reference_code=reference,
            paid_at=details.paid_at,
        )

        loan = self.loans.get_loan(loan_id)
        if loan is None:
            raise ResourceNotFoundError("Loan not found.")
        self.policy.require(actor_id, Action.RECORD_PAYMENT, loan_resource(loan))

        # Serializes concurrent repayments on the same loan
        loan = self.loans.get_loan_for_update(loan_id)
        if loan is None or loan.status != LoanStatus.ACTIVE.value:
            self.db.rollback()
            raise StateConflictError("Cannot record payment for this loan.")

        if reference is not None and self.payments.reference_exists(reference):
            self.db.rollback()
            duplicate_payment_counter.inc()
            logging.warning(
                "Duplicate payment reference rejected",
                extra={"loan_id": str(loan_id), "external_reference_code": reference},
            )
            raise DuplicatePaymentError("Payment with the provided M-Pesa code already exists.")

        old_status = loan.status
        try:
            payment = self.payments.create_payment(loan.id, details, recorded_by=actor_id)
            self.ledger.record_movement(
                group_id=loan.membership.group_id,
                type=TransactionType.LOAN_REPAYMENT,
                amount=details.amount,
                description=f"Loan repayment for loan ID: {loan.id}",
                reference=reference,
                loan_id=loan.id,
            )

            total_paid = self.payments.total_paid(loan.id)
            if total_paid >= loan.repayment_amount:
                loan.status = LoanStatus.PAID.value
                loan.due_date = None
            else:
                loan.due_date = self._next_due_date(loan.due_date)
            self.db.commit()
        except IntegrityError as e:
            # A concurrent request inserted the same reference first
            self.db.rollback()
            duplicate_payment_counter.inc()
            raise DuplicatePaymentError("Payment with the provided M-Pesa code already exists.") from e

        outstanding = max(loan.repayment_amount - total_paid, round_money(0))
        receipt = PaymentReceipt(
            payment_id=payment.id,
            total_paid=total_paid,
            outstanding=outstanding,
            loan_status=LoanStatus(loan.status),
            due_date=loan.due_date,
        )

        record_loan_transition("repayment")
        if receipt.fully_paid:
            record_loan_transition("paid")
        log_loan_transition(
            str(loan.id),
            "repayment",
            actor_id,
            old_status,
            loan.status,
            amount=str(details.amount),
            total_paid=str(total_paid),
            outstanding=str(outstanding),
        )
        self.audit.record(
            action=AuditAction.LOAN_REPAYMENT,
            actor_id=actor_id,
            target_id=payment.id,
            group_id=loan.membership.group_id,
            loan_id=loan.id,
            membership_id=loan.membership_id,
            old_value=None,
            new_value=snapshot(payment),
            request_meta=request_meta,
        )
        return receipt

    @staticmethod
    def _next_due_date(current: Optional[datetime]) -> Optional[datetime]:
        if current is None:
            return None
        return add_months(current, 1)
