"""Integration tests for API endpoints"""

import pytest
import uuid
from unittest.mock import AsyncMock, patch
from datetime import timedelta
from fastapi.testclient import TestClient
from chama_gateway.domain.models import ContributionStatus, LoanStatus
from chama_gateway.infrastructure.database.models import Contribution, Loan
from chama_gateway.utils.date_utils import utcnow

ADMIN = {"X-Actor-Id": "user-admin"}
TREASURER = {"X-Actor-Id": "user-treasurer"}
MEMBER = {"X-Actor-Id": "user-member"}
SECRETARY = {"X-Actor-Id": "user-secretary"}
OUTSIDER = {"X-Actor-Id": "user-outsider"}

ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


def stk_callback(checkout_request_id: str, result_code: int = 0) -> dict:
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully.",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 2500},
                {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                {"Name": "TransactionDate", "Value": 20261019102115},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def b2c_envelope(conversation_id: str, result_code: int = 0) -> dict:
    return {
        "Result": {
            "ResultType": 0,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully.",
            "OriginatorConversationID": "10571-7910404-1",
            "ConversationID": conversation_id,
            "TransactionID": "LGR0000000",
            "ResultParameters": {
                "ResultParameter": [
                    {"Key": "TransactionReceipt", "Value": "LGR019G3J2"},
                    {"Key": "TransactionAmount", "Value": 12000},
                ]
            },
        }
    }


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "chama_loan_transitions_total" in response.text


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_missing_actor_is_unauthorized(client: TestClient, member):
    response = client.post(
        "/v1/loans",
        json={"membership_id": str(member.id), "amount": "1000", "duration": 6, "interest_rate": "0.10"},
    )
    assert response.status_code == 401


# Loans

def test_eligibility_endpoint(client: TestClient, member, paid_contributions):
    response = client.get(
        "/v1/loans/eligibility",
        params={"membership_id": str(member.id), "amount": "20000"},
        headers=MEMBER,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["is_eligible"] is False
    assert data["max_loanable"] == "15000.00"
    assert data["total_paid"] == "5000.00"


def test_apply_for_loan(client: TestClient, member, paid_contributions):
    response = client.post(
        "/v1/loans",
        json={
            "membership_id": str(member.id),
            "amount": "12000",
            "duration": 12,
            "interest_rate": "0.10",
            "purpose": "Stock for shop",
        },
        headers=MEMBER,
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "PENDING"
    assert data["repayment_amount"] is None
    assert data["membership"]["user_id"] == "user-member"


def test_apply_over_ceiling_is_bad_request(client: TestClient, member, paid_contributions):
    response = client.post(
        "/v1/loans",
        json={"membership_id": str(member.id), "amount": "20000", "duration": 12, "interest_rate": "0.10"},
        headers=MEMBER,
    )

    assert response.status_code == 400
    assert "15000.00" in response.json()["detail"]


def test_apply_for_someone_else_is_forbidden(client: TestClient, member, paid_contributions):
    response = client.post(
        "/v1/loans",
        json={"membership_id": str(member.id), "amount": "1000", "duration": 6, "interest_rate": "0.10"},
        headers=ADMIN,
    )

    assert response.status_code == 403


def test_invalid_body_is_rejected(client: TestClient, member):
    response = client.post(
        "/v1/loans",
        json={"membership_id": str(member.id), "amount": "-5", "duration": 0, "interest_rate": "0.10"},
        headers=MEMBER,
    )

    assert response.status_code == 422


def test_approve_loan(client: TestClient, make_loan):
    loan = make_loan()

    response = client.put(f"/v1/loans/{loan.id}/approve", json={"status": "APPROVED"}, headers=ADMIN)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "APPROVED"
    assert data["repayment_amount"] == "13200.00"
    assert data["monthly_installment"] == "1100.00"


@patch("chama_gateway.infrastructure.clients.notifications.NotificationClient.send_event")
def test_approval_notifies_member(mock_send: AsyncMock, client: TestClient, make_loan):
    mock_send.return_value = True
    loan = make_loan()

    client.put(f"/v1/loans/{loan.id}/approve", json={"status": "REJECTED"}, headers=ADMIN)

    mock_send.assert_called_once()
    event = mock_send.call_args.args[0]
    assert event["event"] == "LOAN_REJECTED"
    assert event["loan_id"] == str(loan.id)
    assert event["user_id"] == "user-member"


def test_second_decision_is_conflict(client: TestClient, make_loan):
    loan = make_loan()
    client.put(f"/v1/loans/{loan.id}/approve", json={"status": "REJECTED"}, headers=ADMIN)

    response = client.put(f"/v1/loans/{loan.id}/approve", json={"status": "APPROVED"}, headers=TREASURER)

    assert response.status_code == 409


def test_secretary_cannot_approve(client: TestClient, make_loan):
    loan = make_loan()

    response = client.put(f"/v1/loans/{loan.id}/approve", json={"status": "APPROVED"}, headers=SECRETARY)

    assert response.status_code == 403


def test_unknown_loan_is_not_found(client: TestClient, memberships):
    response = client.get("/v1/loans/00000000-0000-4000-8000-000000000000", headers=ADMIN)
    assert response.status_code == 404


def test_manual_disbursement(client: TestClient, make_loan):
    loan = make_loan(LoanStatus.APPROVED)

    response = client.put(f"/v1/loans/{loan.id}/disburse", headers=TREASURER)

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ACTIVE"
    assert data["disbursed_at"] is not None
    assert data["due_date"] is not None


def test_restructure_endpoint(client: TestClient, make_loan):
    loan = make_loan(LoanStatus.ACTIVE)

    response = client.put(
        f"/v1/loans/{loan.id}/restructure",
        json={"notes": "Harvest failed", "new_duration": 24},
        headers=ADMIN,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["is_restructured"] is True
    assert data["duration"] == 24
    assert data["repayment_amount"] == "14400.00"
    assert data["monthly_installment"] == "600.00"


def test_payment_endpoint_settles_loan(client: TestClient, make_loan):
    loan = make_loan(LoanStatus.ACTIVE)

    partial = client.post(
        f"/v1/loans/{loan.id}/payments",
        json={"amount": "1100", "external_reference_code": "QAB1"},
        headers=TREASURER,
    )
    assert partial.status_code == 201
    assert partial.json()["loan_status"] == "ACTIVE"
    assert partial.json()["outstanding"] == "12100.00"

    final = client.post(
        f"/v1/loans/{loan.id}/payments",
        json={"amount": "12100", "external_reference_code": "QAB2"},
        headers=TREASURER,
    )
    assert final.status_code == 201
    assert final.json()["loan_status"] == "PAID"
    assert final.json()["due_date"] is None


def test_duplicate_payment_reference_is_conflict(client: TestClient, make_loan):
    loan = make_loan(LoanStatus.ACTIVE)
    body = {"amount": "500", "external_reference_code": "QAB1"}
    client.post(f"/v1/loans/{loan.id}/payments", json=body, headers=TREASURER)

    response = client.post(f"/v1/loans/{loan.id}/payments", json=body, headers=TREASURER)

    assert response.status_code == 409


def test_payment_on_pending_loan_is_conflict(client: TestClient, make_loan):
    loan = make_loan()

    response = client.post(f"/v1/loans/{loan.id}/payments", json={"amount": "500"}, headers=TREASURER)

    assert response.status_code == 409


def test_schedule_endpoint(client: TestClient, make_loan):
    loan = make_loan(LoanStatus.ACTIVE, duration=3, amount="3000.00", interest_rate="0.12")

    response = client.get(f"/v1/loans/{loan.id}/schedule", headers=MEMBER)

    assert response.status_code == 200
    schedule = response.json()["schedule"]
    assert [entry["installment_number"] for entry in schedule] == [1, 2, 3]
    assert schedule[-1]["remaining_balance"] == "0.00"


def test_defaulters_endpoint(client: TestClient, group, make_loan):
    overdue = make_loan(LoanStatus.ACTIVE, due_date=utcnow() - timedelta(days=3))
    make_loan(LoanStatus.ACTIVE, due_date=utcnow() + timedelta(days=3))

    response = client.get(f"/v1/loans/defaulters/{group.id}", headers=ADMIN)

    assert response.status_code == 200
    assert [loan["id"] for loan in response.json()["defaulters"]] == [str(overdue.id)]

    forbidden = client.get(f"/v1/loans/defaulters/{group.id}", headers=MEMBER)
    assert forbidden.status_code == 403


def test_group_loans_endpoint(client: TestClient, group, make_loan):
    loan = make_loan(LoanStatus.PENDING)

    response = client.get(f"/v1/loans/group/{group.id}", headers=SECRETARY)

    assert response.status_code == 200
    assert [listed["id"] for listed in response.json()["loans"]] == [str(loan.id)]

    forbidden = client.get(f"/v1/loans/group/{group.id}", headers=MEMBER)
    assert forbidden.status_code == 403


def test_member_loans_endpoint(client: TestClient, member, make_loan):
    loan = make_loan(LoanStatus.ACTIVE)

    response = client.get(f"/v1/loans/membership/{member.id}", headers=MEMBER)

    assert response.status_code == 200
    assert [listed["id"] for listed in response.json()["loans"]] == [str(loan.id)]
    assert client.get(f"/v1/loans/membership/{member.id}", headers=OUTSIDER).status_code == 403
    assert client.get(f"/v1/loans/membership/{uuid.uuid4()}", headers=ADMIN).status_code == 404


def test_mark_defaulted_endpoint(client: TestClient, make_loan):
    loan = make_loan(LoanStatus.ACTIVE, due_date=utcnow() - timedelta(days=3))

    response = client.put(f"/v1/loans/{loan.id}/default", headers=ADMIN)

    assert response.status_code == 200
    assert response.json()["status"] == "DEFAULTED"


# M-Pesa

def test_stk_push_then_callback_marks_contribution_paid(client: TestClient, db, pending_contribution):
    response = client.post(
        "/v1/payments/stk-push",
        json={"contribution_id": str(pending_contribution.id), "phone": "+254712345678"},
        headers=MEMBER,
    )
    assert response.status_code == 200
    checkout_request_id = response.json()["checkout_request_id"]

    ack = client.post("/v1/payments/callback", json=stk_callback(checkout_request_id))
    assert ack.status_code == 200
    assert ack.json() == ACK

    # Replay is acknowledged and ignored
    assert client.post("/v1/payments/callback", json=stk_callback(checkout_request_id)).json() == ACK

    db.expire_all()
    contribution = db.get(Contribution, pending_contribution.id)
    assert contribution.status == ContributionStatus.PAID.value
    assert contribution.receipt_code == "NLJ7RT61SV"


def test_stk_push_bad_phone_is_bad_request(client: TestClient, pending_contribution):
    response = client.post(
        "/v1/payments/stk-push",
        json={"contribution_id": str(pending_contribution.id), "phone": "0612345678"},
        headers=MEMBER,
    )
    assert response.status_code == 400


def test_stk_push_rail_rejection_is_bad_gateway(client: TestClient, pending_contribution):
    response = client.post(
        "/v1/payments/stk-push",
        json={"contribution_id": str(pending_contribution.id), "phone": "0712345678", "amount": "999999"},
        headers=MEMBER,
    )

    assert response.status_code == 502
    assert response.json()["detail"]["rail_response"]["errorCode"] == "400.002.02"


def test_stk_status_endpoint(client: TestClient, pending_contribution):
    push = client.post(
        "/v1/payments/stk-push",
        json={"contribution_id": str(pending_contribution.id), "phone": "0712345678"},
        headers=MEMBER,
    )
    checkout_request_id = push.json()["checkout_request_id"]

    response = client.get(f"/v1/payments/status/{checkout_request_id}", headers=MEMBER)

    assert response.status_code == 200
    assert response.json()["result"]["ResultCode"] == "0"
    assert client.get("/v1/payments/status/ws_CO_unknown", headers=MEMBER).status_code == 404


def test_b2c_then_result_activates_loan(client: TestClient, db, make_loan):
    loan = make_loan(LoanStatus.APPROVED)

    response = client.post("/v1/payments/b2c", json={"loan_id": str(loan.id), "phone": "0712345678"}, headers=TREASURER)
    assert response.status_code == 202
    conversation_id = response.json()["conversation_id"]

    db.expire_all()
    assert db.get(Loan, loan.id).status == LoanStatus.APPROVED.value

    ack = client.post("/v1/payments/b2c/result", json=b2c_envelope(conversation_id))
    assert ack.json() == ACK

    db.expire_all()
    assert db.get(Loan, loan.id).status == LoanStatus.ACTIVE.value


def test_b2c_timeout_clears_correlation(client: TestClient, db, make_loan):
    loan = make_loan(LoanStatus.APPROVED)
    response = client.post("/v1/payments/b2c", json={"loan_id": str(loan.id), "phone": "0712345678"}, headers=TREASURER)
    conversation_id = response.json()["conversation_id"]

    ack = client.post("/v1/payments/b2c/timeout", json=b2c_envelope(conversation_id, result_code=1))
    assert ack.json() == ACK

    db.expire_all()
    reverted = db.get(Loan, loan.id)
    assert reverted.status == LoanStatus.APPROVED.value
    assert reverted.disbursement_conversation_id is None


def test_b2c_by_non_treasurer_is_forbidden(client: TestClient, make_loan):
    loan = make_loan(LoanStatus.APPROVED)

    response = client.post("/v1/payments/b2c", json={"loan_id": str(loan.id), "phone": "0712345678"}, headers=ADMIN)

    assert response.status_code == 403


@pytest.mark.parametrize("path", ["/v1/payments/callback", "/v1/payments/b2c/result", "/v1/payments/b2c/timeout"])
@pytest.mark.parametrize("body", [b"not json", b"[]", b'{"Body": {}}'])
def test_malformed_callbacks_are_acknowledged(client: TestClient, path, body):
    response = client.post(path, content=body, headers={"Content-Type": "application/json"})

    assert response.status_code == 200
    assert response.json() == ACK


def test_unknown_callback_is_acknowledged(client: TestClient, db):
    response = client.post("/v1/payments/callback", json=stk_callback("ws_CO_nobody"))
    assert response.json() == ACK


def test_callback_ping(client: TestClient):
    response = client.get("/v1/payments/callback")
    assert response.status_code == 200
    assert response.json() == ACK
