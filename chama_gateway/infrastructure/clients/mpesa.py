"""M-Pesa Daraja HTTP client for STK push, STK status queries and B2C disbursements"""

import base64
import httpx
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional

from chama_gateway.config import Settings, settings as default_settings
from chama_gateway.domain.exceptions import GatewayError, GatewayRejectedError, TokenAcquisitionError, ValidationError
from chama_gateway.domain.models import DisbursementInitiation, PushInitiation
from chama_gateway.infrastructure.clients.token_cache import AccessTokenCache
from chama_gateway.infrastructure.observability.metrics import gateway_failure_counter, gateway_latency_histogram
from chama_gateway.utils.date_utils import rail_timestamp

PUSH_CALLBACK_PATH = "/v1/payments/callback"
B2C_RESULT_PATH = "/v1/payments/b2c/result"
B2C_TIMEOUT_PATH = "/v1/payments/b2c/timeout"


@dataclass(frozen=True)
class ConsumerCredentials:
    """Daraja app key pair; push and B2C flows each have their own"""

    consumer_key: str
    consumer_secret: str

    @property
    def configured(self) -> bool:
        return bool(self.consumer_key and self.consumer_secret)


def _error_payload(response: httpx.Response) -> Any:
    """Rail error body as JSON when possible, raw text otherwise"""
    try:
        return response.json()
    except ValueError:
        return response.text


def whole_shillings(amount: Decimal) -> int:
    """Daraja only accepts whole-shilling amounts"""
    value = int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if value < 1:
        raise ValidationError("M-Pesa amount must be at least 1.")
    return value


class MpesaClient:
    """
    Client for the Safaricom Daraja API.

    Push payments authenticate with the C2B app and the shortcode passkey.
    Disbursements authenticate with a separate B2C app plus the initiator
    name and security credential; the two flows never share a token.

    One instance is meant to live for the whole process so its token caches
    are reused across requests.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Callable[[], float]] = None,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or default_settings
        self.base_url = self.config.mpesa_api_base_url.rstrip("/")
        self.timeout = self.config.http_timeout_seconds
        self.transport = transport
        self._now = now

        cache_args = {"refresh_margin_seconds": self.config.mpesa_token_refresh_margin_seconds}
        if clock is not None:
            cache_args["clock"] = clock
        self.push_credentials = ConsumerCredentials(self.config.mpesa_consumer_key, self.config.mpesa_consumer_secret)
        self.b2c_credentials = ConsumerCredentials(self.config.mpesa_b2c_consumer_key, self.config.mpesa_b2c_consumer_secret)
        self.push_tokens = AccessTokenCache(**cache_args)
        self.b2c_tokens = AccessTokenCache(**cache_args)

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    def _callback_url(self, path: str) -> str:
        return f"{self.config.mpesa_callback_base_url.rstrip('/')}{path}"

    def _password(self, timestamp: str) -> str:
        raw = f"{self.config.mpesa_business_short_code}{self.config.mpesa_passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    async def _access_token(self, credentials: ConsumerCredentials, cache: AccessTokenCache) -> str:
        """
        Return a cached bearer token or fetch a new one.

        Raises:
            TokenAcquisitionError: Credentials missing, rail refused, or timeout.
                Never retried here; the calling operation fails.
        """
        token = cache.get()
        if token is not None:
            return token

        if not credentials.configured:
            raise TokenAcquisitionError("M-Pesa credentials are not configured.")

        async with self._http() as client:
            try:
                with gateway_latency_histogram.labels(operation="token").time():
                    response = await client.get(
                        f"{self.base_url}/oauth/v1/generate",
                        params={"grant_type": "client_credentials"},
                        auth=(credentials.consumer_key, credentials.consumer_secret),
                    )
                response.raise_for_status()
                data = response.json()
                token = data["access_token"]
                expires_in = float(data["expires_in"])  # Typically "3599"

            except httpx.TimeoutException as e:
                gateway_failure_counter.labels(operation="token").inc()
                raise TokenAcquisitionError(f"M-Pesa token request timed out after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                gateway_failure_counter.labels(operation="token").inc()
                raise TokenAcquisitionError(
                    "Failed to obtain M-Pesa access token.", payload=_error_payload(e.response)
                ) from e
            except httpx.RequestError as e:
                gateway_failure_counter.labels(operation="token").inc()
                raise TokenAcquisitionError(f"M-Pesa token request failed: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                gateway_failure_counter.labels(operation="token").inc()
                raise TokenAcquisitionError(f"Invalid token response from M-Pesa: {e}") from e

        cache.store(token, expires_in)
        return token

    async def _post(self, operation: str, path: str, payload: Dict[str, Any], token: str, cache: AccessTokenCache) -> Dict[str, Any]:
        """
        POST to Daraja and return the JSON body.

        Raises:
            GatewayError: On timeout, transport failure or HTTP error, with
                the rail's error body preserved in `payload`
        """
        async with self._http() as client:
            try:
                with gateway_latency_histogram.labels(operation=operation).time():
                    response = await client.post(
                        f"{self.base_url}{path}",
                        json=payload,
                        headers={"Authorization": f"Bearer {token}"},
                    )
                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                gateway_failure_counter.labels(operation=operation).inc()
                raise GatewayError(f"M-Pesa {operation} timed out after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                gateway_failure_counter.labels(operation=operation).inc()
                if e.response.status_code == 401:
                    # Token revoked before its advertised expiry
                    cache.invalidate()
                # 4xx is a definite refusal; 5xx leaves the outcome unknown
                error_type = GatewayRejectedError if e.response.status_code < 500 else GatewayError
                raise error_type(
                    f"M-Pesa {operation} failed with HTTP {e.response.status_code}",
                    payload=_error_payload(e.response),
                ) from e
            except httpx.RequestError as e:
                gateway_failure_counter.labels(operation=operation).inc()
                raise GatewayError(f"M-Pesa {operation} request failed: {e}") from e
            except ValueError as e:
                gateway_failure_counter.labels(operation=operation).inc()
                raise GatewayError(f"Invalid JSON from M-Pesa {operation}", payload=response.text) from e

    @staticmethod
    def _ensure_accepted(operation: str, data: Dict[str, Any]) -> None:
        if str(data.get("ResponseCode")) != "0":
            gateway_failure_counter.labels(operation=operation).inc()
            raise GatewayRejectedError(f"M-Pesa {operation} was not accepted", payload=data)

    async def initiate_push(self, phone: str, amount: Decimal, account_reference: str, description: str) -> PushInitiation:
        """
        Prompt the payer's phone to authorize a payment (Lipa na M-Pesa Online).

        Acceptance only means the prompt reached the device; the outcome
        arrives later on the push callback URL.
        """
        token = await self._access_token(self.push_credentials, self.push_tokens)
        timestamp = rail_timestamp(self._now())
        short_code = self.config.mpesa_business_short_code

        payload = {
            "BusinessShortCode": short_code,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.config.mpesa_transaction_type,
            "Amount": whole_shillings(amount),
            "PartyA": phone,
            "PartyB": short_code,
            "PhoneNumber": phone,
            "CallBackURL": self._callback_url(PUSH_CALLBACK_PATH),
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13],
        }

        data = await self._post("stk_push", "/mpesa/stkpush/v1/processrequest", payload, token, self.push_tokens)
        self._ensure_accepted("stk_push", data)

        checkout_request_id = data.get("CheckoutRequestID")
        if not checkout_request_id:
            raise GatewayError("M-Pesa push response has no CheckoutRequestID", payload=data)

        return PushInitiation(
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            response_code=str(data.get("ResponseCode")),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
            raw=data,
        )

    async def query_push_status(self, checkout_request_id: str) -> Dict[str, Any]:
        """Poll the outcome of a push payment; the rail's body is returned as-is"""
        token = await self._access_token(self.push_credentials, self.push_tokens)
        timestamp = rail_timestamp(self._now())

        payload = {
            "BusinessShortCode": self.config.mpesa_business_short_code,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        return await self._post("stk_query", "/mpesa/stkpushquery/v1/query", payload, token, self.push_tokens)

    async def initiate_disbursement(
        self,
        phone: str,
        amount: Decimal,
        remarks: str,
        occasion: str = "",
        originator_conversation_id: Optional[str] = None,
    ) -> DisbursementInitiation:
        """
        Send money from the group's B2C shortcode to a member's phone.

        The outcome arrives on the B2C result URL, or on the timeout URL if
        the rail gives up queueing it. Both webhooks echo
        `originator_conversation_id`, so a caller that supplies one can match
        the outcome even when this response is lost.
        """
        if not (self.config.mpesa_b2c_initiator_name and self.config.mpesa_b2c_security_credential):
            raise TokenAcquisitionError("M-Pesa B2C initiator credentials are not configured.")

        token = await self._access_token(self.b2c_credentials, self.b2c_tokens)

        payload = {
            "InitiatorName": self.config.mpesa_b2c_initiator_name,
            "SecurityCredential": self.config.mpesa_b2c_security_credential,
            "CommandID": "BusinessPayment",
            "Amount": whole_shillings(amount),
            "PartyA": self.config.mpesa_b2c_short_code,
            "PartyB": phone,
            "Remarks": remarks[:100],
            "QueueTimeOutURL": self._callback_url(B2C_TIMEOUT_PATH),
            "ResultURL": self._callback_url(B2C_RESULT_PATH),
            "Occassion": (occasion or f"Payment to {phone}")[:100],  # sic, Daraja field name
        }
        if originator_conversation_id:
            payload["OriginatorConversationID"] = originator_conversation_id

        data = await self._post("b2c", "/mpesa/b2c/v1/paymentrequest", payload, token, self.b2c_tokens)
        self._ensure_accepted("b2c", data)

        conversation_id = data.get("ConversationID")
        if not conversation_id:
            raise GatewayError("M-Pesa B2C response has no ConversationID", payload=data)

        return DisbursementInitiation(
            conversation_id=conversation_id,
            originator_conversation_id=data.get("OriginatorConversationID") or originator_conversation_id,
            response_code=str(data.get("ResponseCode")),
            response_description=data.get("ResponseDescription"),
            raw=data,
        )
