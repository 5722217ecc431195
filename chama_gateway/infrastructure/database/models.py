"""SQLAlchemy ORM models for groups, contributions, loans, gateway correlation and audit"""

import uuid
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship

from chama_gateway.domain.models import (
    ContributionStatus,
    GatewayTransactionStatus,
    LoanStatus,
    MembershipRole,
)
from chama_gateway.utils.date_utils import utcnow

Base = declarative_base()

MONEY = Numeric(14, 2)


class SavingsGroup(Base):
    """Chama: a member-owned savings group"""

    __tablename__ = "savings_group"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    memberships = relationship("Membership", back_populates="group")
    transactions = relationship("GroupTransaction", back_populates="group")


class Membership(Base):
    """A user's seat in a group, carrying their role"""

    __tablename__ = "membership"
    __table_args__ = (UniqueConstraint("user_id", "group_id", name="uq_membership_user_group"),)

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=False, index=True)
    group_id = Column(Uuid, ForeignKey("savings_group.id", ondelete="CASCADE"), nullable=False)
    role = Column(Text, nullable=False, default=MembershipRole.MEMBER.value)
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(DateTime, nullable=False, default=utcnow)

    group = relationship("SavingsGroup", back_populates="memberships")
    contributions = relationship("Contribution", back_populates="membership")
    loans = relationship("Loan", back_populates="membership")


class Contribution(Base):
    """Recurring contribution owed or paid by a member"""

    __tablename__ = "contribution"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    membership_id = Column(Uuid, ForeignKey("membership.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    month = Column(Integer, nullable=False)
    year = Column(Integer, nullable=False)
    status = Column(Text, nullable=False, default=ContributionStatus.PENDING.value)
    payment_method = Column(Text, nullable=False, default="MPESA")
    receipt_code = Column(Text, nullable=True, unique=True)
    checkout_request_id = Column(Text, nullable=True, unique=True)
    paid_at = Column(DateTime, nullable=True)

    membership = relationship("Membership", back_populates="contributions")


class Loan(Base):
    """Loan application and contract"""

    __tablename__ = "loan"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    membership_id = Column(Uuid, ForeignKey("membership.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    interest_rate = Column(Numeric(8, 5), nullable=False)
    duration = Column(Integer, nullable=False)  # months
    purpose = Column(Text, nullable=False, default="")
    status = Column(Text, nullable=False, default=LoanStatus.PENDING.value, index=True)
    repayment_amount = Column(MONEY, nullable=True)
    monthly_installment = Column(MONEY, nullable=True)
    applied_at = Column(DateTime, nullable=False, default=utcnow)
    approved_at = Column(DateTime, nullable=True)
    disbursed_at = Column(DateTime, nullable=True)
    due_date = Column(DateTime, nullable=True)
    is_restructured = Column(Boolean, nullable=False, default=False)
    restructure_notes = Column(Text, nullable=True)
    # Set while a mobile-money disbursement is in flight
    disbursement_conversation_id = Column(Text, nullable=True, unique=True)

    membership = relationship("Membership", back_populates="loans")
    payments = relationship("LoanPayment", back_populates="loan", order_by="LoanPayment.paid_at")


class LoanPayment(Base):
    """Immutable repayment record"""

    __tablename__ = "loan_payment"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    loan_id = Column(Uuid, ForeignKey("loan.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    payment_method = Column(Text, nullable=False, default="MPESA")
    # M-Pesa receipt number; unique so a rail confirmation is never counted twice
    external_reference_code = Column(Text, nullable=True, unique=True)
    paid_at = Column(DateTime, nullable=False, default=utcnow)
    recorded_by = Column(Text, nullable=True)

    loan = relationship("Loan", back_populates="payments")


class GroupTransaction(Base):
    """Signed money movement on a group's books"""

    __tablename__ = "group_transaction"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    group_id = Column(Uuid, ForeignKey("savings_group.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(Text, nullable=False)
    amount = Column(MONEY, nullable=False)
    description = Column(Text, nullable=False)
    reference = Column(Text, nullable=True)
    loan_id = Column(Uuid, ForeignKey("loan.id", ondelete="SET NULL"), nullable=True)
    contribution_id = Column(Uuid, ForeignKey("contribution.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    group = relationship("SavingsGroup", back_populates="transactions")


class PendingGatewayTransaction(Base):
    """Correlates an outbound M-Pesa request with the record its webhook will settle"""

    __tablename__ = "pending_gateway_transaction"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    correlation_id = Column(Text, nullable=False, unique=True)  # CheckoutRequestID or ConversationID
    kind = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default=GatewayTransactionStatus.PENDING.value)
    contribution_id = Column(Uuid, ForeignKey("contribution.id", ondelete="SET NULL"), nullable=True)
    loan_id = Column(Uuid, ForeignKey("loan.id", ondelete="SET NULL"), nullable=True)
    amount = Column(MONEY, nullable=False)
    phone_number = Column(Text, nullable=False)
    result_code = Column(Integer, nullable=True)
    result_desc = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)


class AuditLog(Base):
    """Append-only before/after record of a financial mutation"""

    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    action = Column(Text, nullable=False, index=True)
    actor_id = Column(Text, nullable=False)
    target_id = Column(Text, nullable=True)
    group_id = Column(Uuid, nullable=True)
    loan_id = Column(Uuid, nullable=True, index=True)
    contribution_id = Column(Uuid, nullable=True)
    membership_id = Column(Uuid, nullable=True)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
