"""Pydantic schemas for API request/response validation"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, UUID4


class EligibilityResponse(BaseModel):
    """Response for GET /v1/loans/eligibility"""

    is_eligible: bool
    max_loanable: Decimal
    total_paid: Decimal


class LoanApplicationRequest(BaseModel):
    """Request body for POST /v1/loans"""

    membership_id: UUID4
    amount: Decimal = Field(..., gt=0, description="Principal requested")
    duration: int = Field(..., gt=0, description="Repayment term in months")
    interest_rate: Decimal = Field(..., ge=0, description="Annual flat rate, e.g. 0.10 for 10%")
    purpose: str = ""


class LoanDecisionRequest(BaseModel):
    """Request body for PUT /v1/loans/{loan_id}/approve"""

    status: Literal["APPROVED", "REJECTED"]


class RestructureRequest(BaseModel):
    """Request body for PUT /v1/loans/{loan_id}/restructure"""

    notes: str = Field(..., min_length=1)
    new_interest_rate: Optional[Decimal] = Field(None, ge=0)
    new_duration: Optional[int] = Field(None, gt=0)


class PaymentRequest(BaseModel):
    """Request body for POST /v1/loans/{loan_id}/payments"""

    amount: Decimal = Field(..., gt=0)
    payment_method: str = "MPESA"
    external_reference_code: Optional[str] = Field(None, description="M-Pesa receipt number")
    paid_at: Optional[datetime] = None


class PaymentSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID4
    amount: Decimal
    payment_method: str
    external_reference_code: Optional[str] = None
    paid_at: datetime


class MembershipSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID4
    user_id: str
    group_id: UUID4
    role: str


class LoanResponse(BaseModel):
    """Loan with its owner and payment history"""

    model_config = ConfigDict(from_attributes=True)

    id: UUID4
    membership_id: UUID4
    amount: Decimal
    interest_rate: Decimal
    duration: int
    purpose: str
    status: str
    repayment_amount: Optional[Decimal] = None
    monthly_installment: Optional[Decimal] = None
    applied_at: datetime
    approved_at: Optional[datetime] = None
    disbursed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    is_restructured: bool
    restructure_notes: Optional[str] = None
    membership: Optional[MembershipSchema] = None
    payments: List[PaymentSchema] = []


class PaymentReceiptResponse(BaseModel):
    """Response for POST /v1/loans/{loan_id}/payments"""

    payment_id: UUID4
    total_paid: Decimal
    outstanding: Decimal
    loan_status: str
    due_date: Optional[datetime] = None


class ScheduleEntrySchema(BaseModel):
    """Single installment in a repayment schedule"""

    installment_number: int
    due_date: date
    payment_amount: Decimal
    remaining_balance: Decimal


class ScheduleResponse(BaseModel):
    """Response for GET /v1/loans/{loan_id}/schedule"""

    loan_id: str
    schedule: List[ScheduleEntrySchema]


class DefaultersResponse(BaseModel):
    """Response for GET /v1/loans/defaulters/{group_id}"""

    group_id: str
    defaulters: List[LoanResponse]


class LoanListResponse(BaseModel):
    """Response for GET /v1/loans/group/{group_id} and /v1/loans/membership/{membership_id}"""

    loans: List[LoanResponse]


class StkPushRequest(BaseModel):
    """Request body for POST /v1/payments/stk-push"""

    contribution_id: UUID4
    phone: str = Field(..., min_length=9)
    amount: Optional[Decimal] = Field(None, gt=0, description="Defaults to the contribution amount")


class StkPushResponse(BaseModel):
    message: str = "STK Push initiated successfully. Please check your phone."
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    customer_message: Optional[str] = None


class B2CRequest(BaseModel):
    """Request body for POST /v1/payments/b2c"""

    loan_id: UUID4
    phone: str = Field(..., min_length=9)


class B2CResponse(BaseModel):
    message: str = "Disbursement request accepted. The loan activates once M-Pesa confirms."
    conversation_id: str
    originator_conversation_id: Optional[str] = None


class PushStatusResponse(BaseModel):
    """Rail status body passed through unchanged"""

    checkout_request_id: str
    result: Dict[str, Any]


class CallbackAck(BaseModel):
    """Fixed acknowledgment returned to every M-Pesa webhook"""

    ResultCode: int = 0
    ResultDesc: str = "Accepted"
