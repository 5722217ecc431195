"""/v1/payments - M-Pesa push payments, B2C disbursements and their webhooks"""

import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from sqlalchemy.orm import Session

from chama_gateway.api.dependencies import (
    get_actor_id,
    get_audit_recorder,
    get_mpesa_client,
    get_reconciler,
    get_request_id,
    get_request_meta,
)
from chama_gateway.api.errors import to_http_error
from chama_gateway.api.v1.schemas import (
    B2CRequest,
    B2CResponse,
    CallbackAck,
    PushStatusResponse,
    StkPushRequest,
    StkPushResponse,
)
from chama_gateway.domain.callbacks import CallbackChannel, decode_callback
from chama_gateway.domain.exceptions import CallbackDecodeError, DomainException
from chama_gateway.domain.models import RequestMeta
from chama_gateway.infrastructure.clients.mpesa import MpesaClient
from chama_gateway.infrastructure.database.session import get_db
from chama_gateway.infrastructure.observability.metrics import record_callback
from chama_gateway.services.audit import AuditRecorder
from chama_gateway.services.gateway import MobileMoneyService
from chama_gateway.services.reconciliation import CallbackReconciler

router = APIRouter()

ACCEPTED = CallbackAck()


@router.post("/stk-push", response_model=StkPushResponse)
async def initiate_stk_push(
    body: StkPushRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    client: MpesaClient = Depends(get_mpesa_client),
    audit: AuditRecorder = Depends(get_audit_recorder),
    meta: RequestMeta = Depends(get_request_meta),
):
    """Prompt the member's phone to pay one of their contributions"""
    try:
        initiation = await MobileMoneyService(db, client, audit).initiate_contribution_push(
            body.contribution_id, actor_id, body.phone, body.amount, meta
        )
    except DomainException as e:
        db.rollback()
        raise to_http_error(e, get_request_id(request))

    return StkPushResponse(
        checkout_request_id=initiation.checkout_request_id,
        merchant_request_id=initiation.merchant_request_id,
        customer_message=initiation.customer_message,
    )


@router.get("/status/{checkout_request_id}", response_model=PushStatusResponse)
async def query_stk_status(
    checkout_request_id: str,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    client: MpesaClient = Depends(get_mpesa_client),
    audit: AuditRecorder = Depends(get_audit_recorder),
):
    try:
        result = await MobileMoneyService(db, client, audit).query_push_status(checkout_request_id, actor_id)
    except DomainException as e:
        raise to_http_error(e, get_request_id(request))
    return PushStatusResponse(checkout_request_id=checkout_request_id, result=result)


@router.post("/b2c", response_model=B2CResponse, status_code=202)
async def disburse_via_mpesa(
    body: B2CRequest,
    request: Request,
    db: Session = Depends(get_db),
    actor_id: str = Depends(get_actor_id),
    client: MpesaClient = Depends(get_mpesa_client),
    audit: AuditRecorder = Depends(get_audit_recorder),
    meta: RequestMeta = Depends(get_request_meta),
):
    """
    Send an APPROVED loan to the member's phone.

    202: the rail accepted the request. The loan turns ACTIVE when the
    result webhook confirms the transfer.
    """
    try:
        initiation = await MobileMoneyService(db, client, audit).disburse_loan(body.loan_id, actor_id, body.phone, meta)
    except DomainException as e:
        db.rollback()
        raise to_http_error(e, get_request_id(request))

    return B2CResponse(
        conversation_id=initiation.conversation_id,
        originator_conversation_id=initiation.originator_conversation_id,
    )


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


async def _accept_callback(
    channel: CallbackChannel,
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: CallbackReconciler,
) -> CallbackAck:
    """
    Phase 1 of webhook handling: decode and acknowledge.

    The rail retries anything that is not a 200 with this body, so decode
    failures are logged and counted here and still acknowledged. Valid events
    are reconciled after the response is sent.
    """
    request_id = get_request_id(request)
    payload = await _read_json(request)

    try:
        event = decode_callback(channel, payload)
    except CallbackDecodeError as e:
        record_callback(channel.value, "malformed")
        logging.warning(
            f"Malformed M-Pesa callback: {e}",
            extra={"channel": channel.value, "request_id": request_id},
        )
        return ACCEPTED

    logging.info("M-Pesa callback received", extra={"channel": channel.value, "request_id": request_id})
    background_tasks.add_task(reconciler.reconcile, event)
    return ACCEPTED


@router.post("/callback", response_model=CallbackAck)
async def stk_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: CallbackReconciler = Depends(get_reconciler),
):
    return await _accept_callback(CallbackChannel.PUSH_RESULT, request, background_tasks, reconciler)


@router.get("/callback", response_model=CallbackAck)
def stk_callback_ping():
    """Safaricom probes the callback URL with a GET when it is registered"""
    logging.info("M-Pesa callback URL ping received")
    return ACCEPTED


@router.post("/b2c/result", response_model=CallbackAck)
async def b2c_result(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: CallbackReconciler = Depends(get_reconciler),
):
    return await _accept_callback(CallbackChannel.DISBURSEMENT_RESULT, request, background_tasks, reconciler)


@router.post("/b2c/timeout", response_model=CallbackAck)
async def b2c_timeout(
    request: Request,
    background_tasks: BackgroundTasks,
    reconciler: CallbackReconciler = Depends(get_reconciler),
):
    return await _accept_callback(CallbackChannel.DISBURSEMENT_TIMEOUT, request, background_tasks, reconciler)
