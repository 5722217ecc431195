"""
Second phase of webhook handling: apply a decoded rail callback to the books.

The HTTP layer has already acknowledged the rail by the time this runs, so
nothing here may raise. Every event is applied in its own transaction, gated
by resolving its PENDING gateway transaction; a replay finds the transaction
already resolved and changes nothing.
"""

import logging
from typing import Any, Dict, Optional, Tuple, Union

from chama_gateway.domain.callbacks import (
    CallbackChannel,
    CallbackEvent,
    DisbursementResult,
    DisbursementTimeout,
    PushPaymentResult,
)
from chama_gateway.domain.models import (
    AuditAction,
    GatewayTransactionKind,
    GatewayTransactionStatus,
    LoanStatus,
    TransactionType,
)
from chama_gateway.infrastructure.clients.notifications import NotificationClient
from chama_gateway.infrastructure.database.models import Loan, PendingGatewayTransaction
from chama_gateway.infrastructure.database.repositories import (
    ContributionRepository,
    GatewayTransactionRepository,
    LedgerRepository,
    LoanRepository,
)
from chama_gateway.infrastructure.database.session import SessionFactory, SessionLocal, session_scope
from chama_gateway.infrastructure.observability.logging import log_loan_transition
from chama_gateway.infrastructure.observability.metrics import record_callback, record_loan_transition
from chama_gateway.services.audit import AuditRecorder, snapshot
from chama_gateway.services.loans import activate_disbursed_loan
from chama_gateway.utils.date_utils import utcnow

SYSTEM_ACTOR = "mpesa-callback"

# Outcomes, also used as the callback metric label
APPLIED = "applied"
DUPLICATE = "duplicate"
UNKNOWN = "unknown"
FAILED = "failed"
ERROR = "error"


class CallbackReconciler:
    """Applies push results, disbursement results and disbursement timeouts"""

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        audit: Optional[AuditRecorder] = None,
        notifications: Optional[NotificationClient] = None,
    ):
        self.session_factory = session_factory
        self.audit = audit or AuditRecorder(session_factory)
        self.notifications = notifications

    async def reconcile(self, event: CallbackEvent) -> str:
        """Apply one event and return its outcome. Never raises."""
        if isinstance(event, PushPaymentResult):
            channel, handler, correlation_id = CallbackChannel.PUSH_RESULT, self.apply_push_result, event.checkout_request_id
        elif isinstance(event, DisbursementResult):
            channel, handler, correlation_id = (
                CallbackChannel.DISBURSEMENT_RESULT,
                self.apply_disbursement_result,
                event.conversation_id,
            )
        elif isinstance(event, DisbursementTimeout):
            channel, handler, correlation_id = (
                CallbackChannel.DISBURSEMENT_TIMEOUT,
                self.apply_disbursement_timeout,
                event.conversation_id,
            )
        else:
            logging.error("Unsupported callback event", extra={"event_type": type(event).__name__})
            return ERROR

        try:
            outcome = handler(event)
        except Exception:
            outcome = ERROR
            logging.exception(
                "Callback reconciliation failed",
                extra={"channel": channel.value, "correlation_id": correlation_id},
            )

        record_callback(channel.value, outcome)

        if outcome == APPLIED and isinstance(event, DisbursementResult) and event.succeeded:
            await self._notify({"event": "LOAN_DISBURSED", "conversation_id": event.conversation_id})
        return outcome

    async def _notify(self, payload: Dict[str, Any]) -> None:
        if self.notifications is not None:
            await self.notifications.send_event(payload)

    def _drop(self, pending_repo: GatewayTransactionRepository, channel: CallbackChannel, *correlation_ids: Optional[str]) -> str:
        known = any(pending_repo.get_by_correlation_id(key) is not None for key in correlation_ids if key)
        outcome = DUPLICATE if known else UNKNOWN
        logging.warning(
            "Callback dropped",
            extra={"channel": channel.value, "correlation_id": correlation_ids[0], "outcome": outcome},
        )
        return outcome

    @staticmethod
    def _resolve_disbursement(
        pending_repo: GatewayTransactionRepository,
        event: Union[DisbursementResult, DisbursementTimeout],
        status: GatewayTransactionStatus,
        result_code: Optional[int] = None,
    ) -> Tuple[Optional[PendingGatewayTransaction], Optional[str]]:
        """
        Resolve by ConversationID, falling back to our OriginatorConversationID
        for a request whose initiation response never reached us.

        Returns the resolved transaction and the key it is stored under.
        """
        for key in (event.conversation_id, event.originator_conversation_id):
            if not key:
                continue
            pending = pending_repo.resolve(
                key,
                GatewayTransactionKind.DISBURSEMENT,
                status,
                result_code=result_code,
                result_desc=event.result_desc,
            )
            if pending is not None:
                return pending, key
        return None, None

    def apply_push_result(self, event: PushPaymentResult) -> str:
        """Settle a contribution on a successful push; record the reason on a failed one"""
        with session_scope(self.session_factory) as db:
            pending_repo = GatewayTransactionRepository(db)
            status = GatewayTransactionStatus.SUCCEEDED if event.succeeded else GatewayTransactionStatus.FAILED
            pending = pending_repo.resolve(
                event.checkout_request_id,
                GatewayTransactionKind.PUSH_PAYMENT,
                status,
                result_code=event.result_code,
                result_desc=event.result_desc,
            )
            if pending is None:
                return self._drop(pending_repo, CallbackChannel.PUSH_RESULT, event.checkout_request_id)

            if not event.succeeded:
                logging.info(
                    "M-Pesa push payment failed",
                    extra={
                        "checkout_request_id": event.checkout_request_id,
                        "result_code": event.result_code,
                        "result_desc": event.result_desc,
                    },
                )
                return FAILED

            contributions = ContributionRepository(db)
            contribution = contributions.mark_paid_by_checkout(
                event.checkout_request_id,
                receipt_code=event.receipt_number,
                paid_at=event.transaction_date or utcnow(),
            )
            if contribution is None:
                logging.warning(
                    "No unpaid contribution for checkout request",
                    extra={"checkout_request_id": event.checkout_request_id},
                )
                return UNKNOWN

            db.refresh(contribution)
            membership = contribution.membership
            LedgerRepository(db).record_movement(
                group_id=membership.group_id,
                type=TransactionType.CONTRIBUTION,
                amount=contribution.amount,
                description=f"Contribution payment for {contribution.month:02d}/{contribution.year}",
                reference=event.receipt_number,
                contribution_id=contribution.id,
            )
            audit_args = dict(
                action=AuditAction.CONTRIBUTION_PAID,
                actor_id=SYSTEM_ACTOR,
                target_id=contribution.id,
                group_id=membership.group_id,
                contribution_id=contribution.id,
                membership_id=membership.id,
                new_value=snapshot(contribution),
            )

        logging.info(
            "Contribution marked as paid",
            extra={"checkout_request_id": event.checkout_request_id, "receipt_number": event.receipt_number},
        )
        self.audit.record(**audit_args)
        return APPLIED

    def apply_disbursement_result(self, event: DisbursementResult) -> str:
        """Activate the loan on success. A failed disbursement is only logged."""
        with session_scope(self.session_factory) as db:
            pending_repo = GatewayTransactionRepository(db)
            status = GatewayTransactionStatus.SUCCEEDED if event.succeeded else GatewayTransactionStatus.FAILED
            pending, key = self._resolve_disbursement(pending_repo, event, status, result_code=event.result_code)
            if pending is None:
                return self._drop(
                    pending_repo,
                    CallbackChannel.DISBURSEMENT_RESULT,
                    event.conversation_id,
                    event.originator_conversation_id,
                )

            if not event.succeeded:
                # Loan keeps its correlation id and stays APPROVED; needs an operator
                logging.error(
                    "M-Pesa disbursement failed; loan left awaiting operator action",
                    extra={
                        "conversation_id": event.conversation_id,
                        "loan_id": str(pending.loan_id),
                        "result_code": event.result_code,
                        "result_desc": event.result_desc,
                    },
                )
                return FAILED

            loans = LoanRepository(db)
            loan = loans.get_loan(pending.loan_id) if pending.loan_id is not None else None
            if loan is None:
                logging.warning("Disbursed loan no longer exists", extra={"conversation_id": event.conversation_id})
                return UNKNOWN

            old_value = snapshot(loan)
            activated = activate_disbursed_loan(
                loans,
                LedgerRepository(db),
                loan,
                utcnow(),
                criteria=[Loan.disbursement_conversation_id == key],
                reference=event.receipt_number,
            )
            if not activated:
                logging.warning(
                    "Disbursement confirmed for a loan that is no longer awaiting it",
                    extra={"conversation_id": event.conversation_id, "loan_id": str(loan.id), "status": loan.status},
                )
                return UNKNOWN

            audit_args = dict(
                action=AuditAction.LOAN_DISBURSE,
                actor_id=SYSTEM_ACTOR,
                target_id=loan.id,
                group_id=loan.membership.group_id,
                loan_id=loan.id,
                membership_id=loan.membership_id,
                old_value=old_value,
                new_value=snapshot(loan),
            )

        record_loan_transition("disburse")
        log_loan_transition(
            str(audit_args["loan_id"]),
            "disburse",
            SYSTEM_ACTOR,
            LoanStatus.APPROVED.value,
            LoanStatus.ACTIVE.value,
            conversation_id=event.conversation_id,
            receipt_number=event.receipt_number,
        )
        self.audit.record(**audit_args)
        return APPLIED

    def apply_disbursement_timeout(self, event: DisbursementTimeout) -> str:
        """Clear the in-flight correlation id so the loan can be disbursed again"""
        with session_scope(self.session_factory) as db:
            pending_repo = GatewayTransactionRepository(db)
            pending, key = self._resolve_disbursement(pending_repo, event, GatewayTransactionStatus.TIMED_OUT)
            if pending is None:
                return self._drop(
                    pending_repo,
                    CallbackChannel.DISBURSEMENT_TIMEOUT,
                    event.conversation_id,
                    event.originator_conversation_id,
                )

            loans = LoanRepository(db)
            loan = loans.get_loan(pending.loan_id) if pending.loan_id is not None else None
            if loan is None:
                return UNKNOWN

            old_value = snapshot(loan)
            reverted = loans.transition(
                loan.id,
                LoanStatus.APPROVED,
                {"disbursement_conversation_id": None},
                criteria=[Loan.disbursement_conversation_id == key],
            )
            if not reverted:
                logging.warning(
                    "Disbursement timeout for a loan that is no longer awaiting it",
                    extra={"conversation_id": event.conversation_id, "loan_id": str(loan.id)},
                )
                return UNKNOWN

            audit_args = dict(
                action=AuditAction.LOAN_DISBURSE_TIMEOUT,
                actor_id=SYSTEM_ACTOR,
                target_id=loan.id,
                group_id=loan.membership.group_id,
                loan_id=loan.id,
                membership_id=loan.membership_id,
                old_value=old_value,
                new_value=snapshot(loan),
            )

        logging.warning(
            "M-Pesa disbursement timed out; loan returned to APPROVED",
            extra={"conversation_id": event.conversation_id, "result_desc": event.result_desc},
        )
        self.audit.record(**audit_args)
        return APPLIED
