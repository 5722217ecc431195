from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
import base64
import os
import uuid

app = FastAPI(title="Mock Daraja Server", version="1.0.0")

CONSUMER_KEY = os.getenv("MOCK_DARAJA_CONSUMER_KEY", "test-key")
CONSUMER_SECRET = os.getenv("MOCK_DARAJA_CONSUMER_SECRET", "test-secret")
ACCESS_TOKEN = "mock-access-token"
# Amount that makes the rail reject a request, to exercise error paths
REJECTED_AMOUNT = 999999

# CheckoutRequestID -> last push request, for stkpushquery
PUSHES = {}


def _require_token(authorization):
    if authorization != f"Bearer {ACCESS_TOKEN}":
        raise HTTPException(status_code=401, detail={"errorCode": "404.001.03", "errorMessage": "Invalid Access Token"})


def _rejected(request_id):
    return JSONResponse(
        status_code=400,
        content={"requestId": request_id, "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"},
    )


@app.get("/health")
def health(): return {"status": "ok"}


@app.get("/oauth/v1/generate")
def generate_token(grant_type: str, authorization: str = Header(None)):
    expected = base64.b64encode(f"{CONSUMER_KEY}:{CONSUMER_SECRET}".encode()).decode()
    if grant_type != "client_credentials" or authorization != f"Basic {expected}":
        raise HTTPException(status_code=400, detail={"errorCode": "400.008.01", "errorMessage": "Invalid Authentication passed"})
    return {"access_token": ACCESS_TOKEN, "expires_in": "3599"}


@app.post("/mpesa/stkpush/v1/processrequest")
async def stk_push(request: Request, authorization: str = Header(None)):
    _require_token(authorization)
    body = await request.json()
    merchant_request_id = f"{uuid.uuid4().int % 100000}-{uuid.uuid4().int % 10000000}-1"
    if body.get("Amount") == REJECTED_AMOUNT:
        return _rejected(merchant_request_id)

    checkout_request_id = f"ws_CO_{uuid.uuid4().hex[:20]}"
    PUSHES[checkout_request_id] = body
    return {
        "MerchantRequestID": merchant_request_id,
        "CheckoutRequestID": checkout_request_id,
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    }


@app.post("/mpesa/stkpushquery/v1/query")
async def stk_query(request: Request, authorization: str = Header(None)):
    _require_token(authorization)
    body = await request.json()
    checkout_request_id = body.get("CheckoutRequestID")
    if checkout_request_id not in PUSHES:
        return JSONResponse(
            status_code=500,
            content={"requestId": checkout_request_id, "errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
        )
    return {
        "ResponseCode": "0",
        "ResponseDescription": "The service request has been accepted successsfully",
        "MerchantRequestID": "mock-merchant",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": "0",
        "ResultDesc": "The service request is processed successfully.",
    }


@app.post("/mpesa/b2c/v1/paymentrequest")
async def b2c_payment(request: Request, authorization: str = Header(None)):
    _require_token(authorization)
    body = await request.json()
    originator_conversation_id = body.get("OriginatorConversationID") or str(uuid.uuid4())
    if body.get("Amount") == REJECTED_AMOUNT:
        return _rejected(originator_conversation_id)
    if not body.get("InitiatorName") or not body.get("SecurityCredential"):
        return JSONResponse(
            status_code=400,
            content={"requestId": originator_conversation_id, "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Initiator"},
        )
    return {
        "ConversationID": f"AG_{uuid.uuid4().hex[:20]}",
        "OriginatorConversationID": originator_conversation_id,
        "ResponseCode": "0",
        "ResponseDescription": "Accept the service request successfully.",
    }
