"""Domain models - pure Python dataclasses and enums representing business entities"""

import enum
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional


class LoanStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ACTIVE = "ACTIVE"
    PAID = "PAID"
    DEFAULTED = "DEFAULTED"


class ContributionStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class MembershipRole(str, enum.Enum):
    ADMIN = "ADMIN"
    TREASURER = "TREASURER"
    SECRETARY = "SECRETARY"
    MEMBER = "MEMBER"


class TransactionType(str, enum.Enum):
    """Group ledger movement categories"""

    CONTRIBUTION = "CONTRIBUTION"
    LOAN_DISBURSEMENT = "LOAN_DISBURSEMENT"
    LOAN_REPAYMENT = "LOAN_REPAYMENT"
    EXPENSE = "EXPENSE"
    OTHER = "OTHER"


class GatewayTransactionKind(str, enum.Enum):
    PUSH_PAYMENT = "PUSH_PAYMENT"
    DISBURSEMENT = "DISBURSEMENT"


class GatewayTransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


class AuditAction(str, enum.Enum):
    LOAN_APPLY = "LOAN_APPLY"
    LOAN_APPROVE = "LOAN_APPROVE"
    LOAN_REJECT = "LOAN_REJECT"
    LOAN_DISBURSE = "LOAN_DISBURSE"
    LOAN_DISBURSE_INITIATED = "LOAN_DISBURSE_INITIATED"
    LOAN_DISBURSE_TIMEOUT = "LOAN_DISBURSE_TIMEOUT"
    LOAN_REPAYMENT = "LOAN_REPAYMENT"
    LOAN_RESTRUCTURE = "LOAN_RESTRUCTURE"
    LOAN_DEFAULT = "LOAN_DEFAULT"
    CONTRIBUTION_PUSH_INITIATED = "CONTRIBUTION_PUSH_INITIATED"
    CONTRIBUTION_PAID = "CONTRIBUTION_PAID"


@dataclass
class Eligibility:
    """Outcome of an eligibility check"""

    is_eligible: bool
    max_loanable: Decimal
    total_paid: Decimal


@dataclass
class RepaymentTerms:
    """Flat-rate repayment figures for a principal, rate and duration"""

    total_interest: Decimal
    repayment_amount: Decimal
    monthly_installment: Decimal


@dataclass
class ScheduleEntry:
    """Single row of a repayment schedule"""

    installment_number: int
    due_date: date
    payment_amount: Decimal
    remaining_balance: Decimal


@dataclass
class PaymentDetails:
    """Repayment submitted against an active loan"""

    amount: Decimal
    payment_method: str = "MPESA"
    external_reference_code: Optional[str] = None
    paid_at: Optional[datetime] = None


@dataclass
class RequestMeta:
    """Caller metadata attached to audit entries"""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class PushInitiation:
    """Rail acknowledgment of an STK push request"""

    checkout_request_id: str
    merchant_request_id: Optional[str]
    response_code: str
    response_description: Optional[str]
    customer_message: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DisbursementInitiation:
    """Rail acknowledgment of a B2C payment request"""

    conversation_id: str
    originator_conversation_id: Optional[str]
    response_code: str
    response_description: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LoanApplication:
    """Terms a member asks for"""

    amount: Decimal
    duration: int
    interest_rate: Decimal
    purpose: str = ""


@dataclass
class PaymentReceipt:
    """Loan position right after a repayment was recorded"""

    payment_id: Any
    total_paid: Decimal
    outstanding: Decimal
    loan_status: LoanStatus
    due_date: Optional[datetime]

    @property
    def fully_paid(self) -> bool:
        return self.loan_status == LoanStatus.PAID
