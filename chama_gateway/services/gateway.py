"""
Mobile-money flows that start on our side: contribution push payments and
loan disbursements over B2C.

Both only *start* a payment. The rail reports the outcome later on a webhook,
so each accepted request leaves a PENDING gateway transaction keyed by the
rail's correlation id for the reconciler to settle.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from chama_gateway.domain.exceptions import (
    GatewayError,
    GatewayRejectedError,
    ResourceNotFoundError,
    StateConflictError,
    TokenAcquisitionError,
    ValidationError,
)
from chama_gateway.domain.models import (
    AuditAction,
    ContributionStatus,
    DisbursementInitiation,
    GatewayTransactionKind,
    LoanStatus,
    PushInitiation,
    RequestMeta,
)
from chama_gateway.domain.phone import normalize_msisdn
from chama_gateway.domain.schedule import round_money
from chama_gateway.infrastructure.clients.mpesa import MpesaClient
from chama_gateway.infrastructure.database.models import Loan
from chama_gateway.infrastructure.database.repositories import (
    ContributionRepository,
    GatewayTransactionRepository,
    LoanRepository,
)
from chama_gateway.infrastructure.observability.logging import log_loan_transition
from chama_gateway.services.audit import AuditRecorder, snapshot
from chama_gateway.services.authorization import Action, PermissionPolicy, ResourceRef
from chama_gateway.services.loans import loan_resource

# Placeholder held in disbursement_conversation_id while the B2C request is in flight
CLAIM_PREFIX = "claim:"


class MobileMoneyService:
    """Starts push payments and B2C disbursements and records what the rail accepted"""

    def __init__(
        self,
        db: Session,
        client: MpesaClient,
        audit: AuditRecorder,
        policy: Optional[PermissionPolicy] = None,
    ):
        self.db = db
        self.client = client
        self.audit = audit
        self.policy = policy or PermissionPolicy(db)
        self.contributions = ContributionRepository(db)
        self.loans = LoanRepository(db)
        self.pending = GatewayTransactionRepository(db)

    async def initiate_contribution_push(
        self,
        contribution_id: uuid.UUID,
        actor_id: str,
        phone: str,
        amount: Optional[Decimal] = None,
        request_meta: Optional[RequestMeta] = None,
    ) -> PushInitiation:
        """
        Prompt the member's phone to pay a contribution.

        Amount defaults to the contribution's own amount.

        Raises:
            PermissionDeniedError: Actor does not own the contribution
            StateConflictError: Contribution is already PAID
            GatewayError: Rail refused or could not be reached; nothing is stored
        """
        msisdn = normalize_msisdn(phone)

        contribution = self.contributions.get_contribution(contribution_id)
        if contribution is None:
            raise ResourceNotFoundError("Contribution not found.")

        membership = contribution.membership
        self.policy.require(actor_id, Action.PAY_CONTRIBUTION, ResourceRef(membership.group_id, membership.user_id))

        if contribution.status == ContributionStatus.PAID.value:
            raise StateConflictError("This contribution has already been paid.")

        amount = round_money(amount if amount is not None else contribution.amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than zero.")

        old_value = snapshot(contribution)
        initiation = await self.client.initiate_push(
            phone=msisdn,
            amount=amount,
            account_reference=f"CHAMA{contribution.year}{contribution.month:02d}",
            description="Contribution",
        )

        self.contributions.attach_checkout_request(contribution.id, initiation.checkout_request_id)
        self.pending.register(
            correlation_id=initiation.checkout_request_id,
            kind=GatewayTransactionKind.PUSH_PAYMENT,
            amount=amount,
            phone_number=msisdn,
            contribution_id=contribution.id,
        )
        self.db.commit()

        logging.info(
            "STK push initiated",
            extra={
                "contribution_id": str(contribution_id),
                "checkout_request_id": initiation.checkout_request_id,
                "amount": str(amount),
            },
        )
        self.audit.record(
            action=AuditAction.CONTRIBUTION_PUSH_INITIATED,
            actor_id=actor_id,
            target_id=contribution.id,
            group_id=membership.group_id,
            contribution_id=contribution.id,
            membership_id=membership.id,
            old_value=old_value,
            new_value=snapshot(contribution),
            request_meta=request_meta,
        )
        return initiation

    async def query_push_status(self, checkout_request_id: str, actor_id: str) -> Dict[str, Any]:
        """Ask the rail for a push payment's outcome; only known checkout ids are forwarded"""
        pending = self.pending.get_by_correlation_id(checkout_request_id)
        if pending is None or pending.kind != GatewayTransactionKind.PUSH_PAYMENT.value:
            raise ResourceNotFoundError("Payment request not found.")

        contribution = self.contributions.get_contribution(pending.contribution_id)
        if contribution is None:
            raise ResourceNotFoundError("Payment request not found.")
        membership = contribution.membership
        self.policy.require(actor_id, Action.VIEW_PAYMENT, ResourceRef(membership.group_id, membership.user_id))

        return await self.client.query_push_status(checkout_request_id)

    async def disburse_loan(
        self,
        loan_id: uuid.UUID,
        actor_id: str,
        phone: str,
        request_meta: Optional[RequestMeta] = None,
    ) -> DisbursementInitiation:
        """
        Send an APPROVED loan's principal to the member over B2C.

        Steps:
        1. Claim the loan with a placeholder correlation id (one winner under races)
        2. Call the rail with our own OriginatorConversationID
        3. Accepted: swap the placeholder for the ConversationID and register
           a PENDING disbursement
        4. Refused (HTTP 4xx, non-zero ResponseCode, or never sent): release
           the claim and re-raise
        5. Outcome unknown (timeout, transport error, 5xx): the rail may have
           taken the payout, so hold the loan under the OriginatorConversationID.
           The result or timeout webhook settles it; until then manual and
           mobile-money disbursement are refused.

        The loan stays APPROVED until the result webhook activates it.
        """
        msisdn = normalize_msisdn(phone)

        loan = self.loans.get_loan(loan_id)
        if loan is None:
            raise ResourceNotFoundError("Loan not found.")
        self.policy.require(actor_id, Action.DISBURSE_LOAN, loan_resource(loan))

        old_value = snapshot(loan)
        claim = f"{CLAIM_PREFIX}{uuid.uuid4()}"
        claimed = self.loans.transition(
            loan.id,
            LoanStatus.APPROVED,
            {"disbursement_conversation_id": claim},
            criteria=[Loan.disbursement_conversation_id.is_(None)],
        )
        if not claimed:
            self.db.rollback()
            if old_value["status"] == LoanStatus.APPROVED.value:
                raise StateConflictError("A mobile-money disbursement is already in flight for this loan.")
            raise StateConflictError("Loan must be approved before disbursement.")
        self.db.commit()

        originator_id = str(uuid.uuid4())
        try:
            initiation = await self.client.initiate_disbursement(
                phone=msisdn,
                amount=loan.amount,
                remarks=f"Loan disbursement {loan.id}",
                originator_conversation_id=originator_id,
            )
        except (GatewayRejectedError, TokenAcquisitionError, ValidationError):
            self._release_claim(loan.id, claim)
            raise
        except GatewayError as e:
            self._await_outcome(loan, claim, originator_id, msisdn, actor_id, old_value, request_meta)
            raise GatewayError(
                "M-Pesa did not confirm the disbursement request; the loan is held until M-Pesa reports the outcome.",
                payload=e.payload,
            ) from e
        except Exception:
            self._await_outcome(loan, claim, originator_id, msisdn, actor_id, old_value, request_meta)
            raise

        self._await_outcome(loan, claim, initiation.conversation_id, msisdn, actor_id, old_value, request_meta)
        return initiation

    def _await_outcome(
        self,
        loan: Loan,
        claim: str,
        correlation_id: str,
        msisdn: str,
        actor_id: str,
        old_value: Dict[str, Any],
        request_meta: Optional[RequestMeta],
    ) -> None:
        """Swap the claim for the id the webhook will carry and register the PENDING disbursement"""
        self.db.rollback()
        swapped = self.loans.transition(
            loan.id,
            LoanStatus.APPROVED,
            {"disbursement_conversation_id": correlation_id},
            criteria=[Loan.disbursement_conversation_id == claim],
        )
        if not swapped:
            # Money may already be moving; keep the pending row so the webhook can still settle it
            logging.error(
                "Disbursement claim lost before the correlation id was stored",
                extra={"loan_id": str(loan.id), "correlation_id": correlation_id},
            )
        self.pending.register(
            correlation_id=correlation_id,
            kind=GatewayTransactionKind.DISBURSEMENT,
            amount=loan.amount,
            phone_number=msisdn,
            loan_id=loan.id,
        )
        self.db.commit()

        log_loan_transition(
            str(loan.id),
            "disburse_initiated",
            actor_id,
            old_value["status"],
            loan.status,
            correlation_id=correlation_id,
        )
        self.audit.record(
            action=AuditAction.LOAN_DISBURSE_INITIATED,
            actor_id=actor_id,
            target_id=loan.id,
            group_id=loan.membership.group_id,
            loan_id=loan.id,
            membership_id=loan.membership_id,
            old_value=old_value,
            new_value=snapshot(loan),
            request_meta=request_meta,
        )

    def _release_claim(self, loan_id: uuid.UUID, claim: str) -> None:
        self.db.rollback()
        self.loans.transition(
            loan_id,
            LoanStatus.APPROVED,
            {"disbursement_conversation_id": None},
            criteria=[Loan.disbursement_conversation_id == claim],
        )
        self.db.commit()
        logging.warning("Disbursement claim released after the rail refused it", extra={"loan_id": str(loan_id)})
