"""/v1/loans - loan application, decisions, disbursement, repayments and defaulters"""

import logging
import uuid
from decimal import Decimal

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from chama_gateway.api.dependencies import (
    get_actor_id,
    get_audit_recorder,
    get_notification_client,
    get_request_id,
    get_request_meta,
)
from chama_gateway.api.errors import to_http_error
from chama_gateway.api.v1.schemas import (
    DefaultersResponse,
    EligibilityResponse,
    LoanApplicationRequest,
    LoanDecisionRequest,
    LoanListResponse,
    LoanResponse,
    PaymentReceiptResponse,
    PaymentRequest,
    RestructureRequest,
    ScheduleEntrySchema,
    ScheduleResponse,
)
from chama_gateway.domain.exceptions import DomainException
from chama_gateway.domain.models import LoanApplication, LoanStatus, PaymentDetails, RequestMeta
from chama_gateway.infrastructure.clients.notifications import NotificationClient
from chama_gateway.infrastructure.database.session import get_db
from chama_gateway.services.audit import AuditRecorder
from chama_gateway.services.loans import LoanService
from chama_gateway.services.payments import PaymentLedger

router = APIRouter()


def _loan_event(event: str, loan) -> dict:
    return {
        "event": event,
        "loan_id": str(loan.id),
        "user_id": loan.membership.user_id,
        "group_id": str(loan.membership.group_id),
        "amount": str(loan.amount),
    }


@router.get("/eligibility", response_model=EligibilityResponse)
def check_eligibility(
    request: Request,
    membership_id: uuid.UUID = Query(...),
    amount: Decimal = Query(..., gt=0),
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """How much the member may borrow, and whether `amount` fits under it"""
    try:
        eligibility = LoanService(db, audit).check_eligibility(membership_id, actor_id, amount)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))

    return EligibilityResponse(
        is_eligible=eligibility.is_eligible,
        max_loanable=eligibility.max_loanable,
        total_paid=eligibility.total_paid,
    )


@router.get("/defaulters/{group_id}", response_model=DefaultersResponse)
def list_defaulters(
    group_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """ACTIVE loans past their due date. Reporting only, statuses are not changed."""
    try:
        loans = LoanService(db, audit).find_defaulters(group_id, actor_id)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))

    return DefaultersResponse(
        group_id=str(group_id),
        defaulters=[LoanResponse.model_validate(loan) for loan in loans],
    )


@router.get("/group/{group_id}", response_model=LoanListResponse)
def list_group_loans(
    group_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """Every loan in the group, newest first"""
    try:
        loans = LoanService(db, audit).list_group_loans(group_id, actor_id)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))

    return LoanListResponse(loans=[LoanResponse.model_validate(loan) for loan in loans])


@router.get("/membership/{membership_id}", response_model=LoanListResponse)
def list_member_loans(
    membership_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    try:
        loans = LoanService(db, audit).list_member_loans(membership_id, actor_id)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))

    return LoanListResponse(loans=[LoanResponse.model_validate(loan) for loan in loans])


@router.post("", response_model=LoanResponse, status_code=201)
def apply_for_loan(
    body: LoanApplicationRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
    meta: RequestMeta = Depends(get_request_meta),
):
    """Apply for a loan against the caller's own membership"""
    terms = LoanApplication(
        amount=body.amount,
        duration=body.duration,
        interest_rate=body.interest_rate,
        purpose=body.purpose,
    )
    try:
        loan = LoanService(db, audit).apply_for_loan(body.membership_id, actor_id, terms, meta)
    except DomainException as e:
        db.rollback()
        raise to_http_error(e, get_request_id(request))

    return LoanResponse.model_validate(loan)


@router.get("/{loan_id}", response_model=LoanResponse)
def get_loan(
    loan_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    try:
        loan = LoanService(db, audit).get_loan(loan_id, actor_id)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return LoanResponse.model_validate(loan)


@router.get("/{loan_id}/schedule", response_model=ScheduleResponse)
def get_schedule(
    loan_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    """
    Monthly repayment schedule.

    Returns:
        One row per month of the term; empty until the loan is disbursed
    """
    try:
        schedule = LoanService(db, audit).generate_schedule(loan_id, actor_id)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))

    return ScheduleResponse(
        loan_id=str(loan_id),
        schedule=[
            ScheduleEntrySchema(
                installment_number=entry.installment_number,
                due_date=entry.due_date,
                payment_amount=entry.payment_amount,
                remaining_balance=entry.remaining_balance,
            )
            for entry in schedule
        ],
    )


@router.put("/{loan_id}/approve", response_model=LoanResponse)
def approve_or_reject_loan(
    loan_id: uuid.UUID,
    body: LoanDecisionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
    meta: RequestMeta = Depends(get_request_meta),
    notifications: NotificationClient = Depends(get_notification_client),
):
    try:
        loan = LoanService(db, audit).approve_or_reject(loan_id, LoanStatus(body.status), actor_id, meta)
    except DomainException as e:
        db.rollback()
        raise to_http_error(e, get_request_id(request))

    background_tasks.add_task(notifications.send_event, _loan_event(f"LOAN_{body.status}", loan))
    return LoanResponse.model_validate(loan)


@router.put("/{loan_id}/disburse", response_model=LoanResponse)
def disburse_loan(
    loan_id: uuid.UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
    meta: RequestMeta = Depends(get_request_meta),
    notifications: NotificationClient = Depends(get_notification_client),
):
    """Record an off-rail disbursement (cash, bank transfer); use /v1/payments/b2c for M-Pesa"""
    try:
        loan = LoanService(db, audit).disburse(loan_id, actor_id, meta)
    except DomainException as e:
        db.rollback()
        raise to_http_error(e, get_request_id(request))

    background_tasks.add_task(notifications.send_event, _loan_event("LOAN_DISBURSED", loan))
    return LoanResponse.model_validate(loan)


@router.put("/{loan_id}/restructure", response_model=LoanResponse)
def restructure_loan(
    loan_id: uuid.UUID,
    body: RestructureRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
    meta: RequestMeta = Depends(get_request_meta),
):
    try:
        loan = LoanService(db, audit).restructure(
            loan_id,
            actor_id,
            notes=body.notes,
            new_interest_rate=body.new_interest_rate,
            new_duration=body.new_duration,
            request_meta=meta,
        )
    except DomainException as e:
        db.rollback()
        raise to_http_error(e, get_request_id(request))
    return LoanResponse.model_validate(loan)


@router.put("/{loan_id}/default", response_model=LoanResponse)
def mark_loan_defaulted(
    loan_id: uuid.UUID,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
    meta: RequestMeta = Depends(get_request_meta),
):
    try:
        loan = LoanService(db, audit).mark_defaulted(loan_id, actor_id, meta)
    except DomainException as e:
        db.rollback()
        raise to_http_error(e, get_request_id(request))
    return LoanResponse.model_validate(loan)


@router.post("/{loan_id}/payments", response_model=PaymentReceiptResponse, status_code=201)
def record_payment(
    loan_id: uuid.UUID,
    body: PaymentRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    audit: AuditRecorder = Depends(get_audit_recorder),
    meta: RequestMeta = Depends(get_request_meta),
    notifications: NotificationClient = Depends(get_notification_client),
):
    details = PaymentDetails(
        amount=body.amount,
        payment_method=body.payment_method,
        external_reference_code=body.external_reference_code,
        paid_at=body.paid_at,
    )
    try:
        receipt = PaymentLedger(db, audit).record_payment(loan_id, details, actor_id, meta)
    except DomainException as e:
        db.rollback()
        raise to_http_error(e, get_request_id(request))

    if receipt.fully_paid:
        logging.info("Loan fully paid", extra={"loan_id": str(loan_id), "request_id": get_request_id(request)})
        background_tasks.add_task(
            notifications.send_event,
            {"event": "LOAN_PAID", "loan_id": str(loan_id), "total_paid": str(receipt.total_paid)},
        )

    return PaymentReceiptResponse(
        payment_id=receipt.payment_id,
        total_paid=receipt.total_paid,
        outstanding=receipt.outstanding,
        loan_status=receipt.loan_status.value,
        due_date=receipt.due_date,
    )
