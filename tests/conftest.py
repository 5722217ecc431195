"""Pytest fixtures for testing"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")

import httpx
import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Generator, Optional
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from chama_gateway.api.dependencies import (
    get_audit_recorder,
    get_mpesa_client,
    get_notification_client,
    get_reconciler,
)
from chama_gateway.api.main import create_app
from chama_gateway.config import Settings
from chama_gateway.domain.models import ContributionStatus, LoanStatus, MembershipRole
from chama_gateway.domain.schedule import compute_repayment_terms, round_money
from chama_gateway.infrastructure.clients.mpesa import MpesaClient
from chama_gateway.infrastructure.clients.notifications import NotificationClient
from chama_gateway.infrastructure.database.models import Base, Contribution, Loan, Membership, SavingsGroup
from chama_gateway.infrastructure.database.session import get_db
from chama_gateway.services.audit import AuditRecorder
from chama_gateway.services.reconciliation import CallbackReconciler
from chama_gateway.utils.date_utils import utcnow
from mock_daraja.main import app as daraja_app


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ADMIN = "user-admin"
TREASURER = "user-treasurer"
MEMBER = "user-member"
SECRETARY = "user-secretary"
OUTSIDER = "user-outsider"


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory() -> sessionmaker:
    """Factory for sessions other than the request-scoped one"""
    return TestingSessionLocal


@pytest.fixture
def rail_settings() -> Settings:
    """Settings pointing the M-Pesa client at the mock Daraja app"""
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        mpesa_api_base_url="http://daraja.test",
        mpesa_consumer_key="test-key",
        mpesa_consumer_secret="test-secret",
        mpesa_passkey="test-passkey",
        mpesa_callback_base_url="https://chama.example.com",
        mpesa_b2c_consumer_key="test-key",
        mpesa_b2c_consumer_secret="test-secret",
        mpesa_b2c_initiator_name="testapi",
        mpesa_b2c_security_credential="test-credential",
    )


@pytest.fixture
def mpesa_client(rail_settings: Settings) -> MpesaClient:
    return MpesaClient(config=rail_settings, transport=httpx.ASGITransport(app=daraja_app))


@pytest.fixture
def audit() -> AuditRecorder:
    return AuditRecorder(TestingSessionLocal)


@pytest.fixture
def notifications() -> NotificationClient:
    """Notification client whose webhook always accepts"""
    return NotificationClient(
        webhook_url="http://notifications.test/events",
        transport=httpx.MockTransport(lambda request: httpx.Response(200)),
    )


@pytest.fixture
def reconciler(audit: AuditRecorder, notifications: NotificationClient) -> CallbackReconciler:
    return CallbackReconciler(TestingSessionLocal, audit=audit, notifications=notifications)


@pytest.fixture
def client(
    db: Session,
    mpesa_client: MpesaClient,
    audit: AuditRecorder,
    notifications: NotificationClient,
    reconciler: CallbackReconciler,
) -> TestClient:
    """Create FastAPI test client with test database and mock rail"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_mpesa_client] = lambda: mpesa_client
    app.dependency_overrides[get_audit_recorder] = lambda: audit
    app.dependency_overrides[get_notification_client] = lambda: notifications
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    return TestClient(app)


@pytest.fixture
def group(db: Session) -> SavingsGroup:
    group = SavingsGroup(name="Umoja Chama")
    db.add(group)
    db.commit()
    return group


@pytest.fixture
def memberships(db: Session, group: SavingsGroup) -> dict:
    """One active membership per role, keyed by role name"""
    seats = {
        "admin": Membership(user_id=ADMIN, group_id=group.id, role=MembershipRole.ADMIN.value),
        "treasurer": Membership(user_id=TREASURER, group_id=group.id, role=MembershipRole.TREASURER.value),
        "secretary": Membership(user_id=SECRETARY, group_id=group.id, role=MembershipRole.SECRETARY.value),
        "member": Membership(user_id=MEMBER, group_id=group.id, role=MembershipRole.MEMBER.value),
    }
    db.add_all(seats.values())
    db.commit()
    return seats


@pytest.fixture
def member(memberships: dict) -> Membership:
    return memberships["member"]


@pytest.fixture
def paid_contributions(db: Session, member: Membership) -> list:
    """5000 paid in, so the member may borrow up to 15000"""
    contributions = [
        Contribution(
            membership_id=member.id,
            amount=Decimal("2500.00"),
            month=month,
            year=2026,
            status=ContributionStatus.PAID.value,
            receipt_code=f"RCP00{month}",
            paid_at=utcnow(),
        )
        for month in (1, 2)
    ]
    # Unpaid contributions do not count towards eligibility
    contributions.append(
        Contribution(
            membership_id=member.id,
            amount=Decimal("2500.00"),
            month=3,
            year=2026,
            status=ContributionStatus.PENDING.value,
        )
    )
    db.add_all(contributions)
    db.commit()
    return contributions


@pytest.fixture
def pending_contribution(paid_contributions: list) -> Contribution:
    return paid_contributions[-1]


@pytest.fixture
def make_loan(db: Session, member: Membership) -> Callable[..., Loan]:
    """Insert a loan directly in any lifecycle state"""

    def _make_loan(
        status: LoanStatus = LoanStatus.PENDING,
        amount: str = "12000.00",
        interest_rate: str = "0.10",
        duration: int = 12,
        disbursed_at: Optional[datetime] = None,
        due_date: Optional[datetime] = None,
        conversation_id: Optional[str] = None,
    ) -> Loan:
        loan = Loan(
            membership_id=member.id,
            amount=Decimal(amount),
            interest_rate=Decimal(interest_rate),
            duration=duration,
            purpose="Stock for shop",
            status=status.value,
            applied_at=utcnow(),
            disbursement_conversation_id=conversation_id,
        )
        if status != LoanStatus.PENDING and status != LoanStatus.REJECTED:
            terms = compute_repayment_terms(loan.amount, loan.interest_rate, duration)
            loan.repayment_amount = round_money(terms.repayment_amount)
            loan.monthly_installment = round_money(terms.monthly_installment)
            loan.approved_at = utcnow()
        if status in (LoanStatus.ACTIVE, LoanStatus.PAID, LoanStatus.DEFAULTED):
            loan.disbursed_at = disbursed_at or utcnow()
            loan.due_date = due_date or (loan.disbursed_at + timedelta(days=30))
        db.add(loan)
        db.commit()
        return loan

    return _make_loan
