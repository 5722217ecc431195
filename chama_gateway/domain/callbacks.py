"""Decoding of M-Pesa webhook payloads into typed callback events.

The rail posts three shapes to three URLs:

- STK push result:        {"Body": {"stkCallback": {...}}}
- B2C result:             {"Result": {...}}  (posted to the ResultURL)
- B2C queue timeout:      {"Result": {...}}  (posted to the QueueTimeOutURL)

Each channel is decoded strictly; anything that does not match raises
CallbackDecodeError instead of being probed field by field later on.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from chama_gateway.domain.exceptions import CallbackDecodeError
from chama_gateway.utils.date_utils import parse_rail_timestamp


class CallbackChannel(str, enum.Enum):
    PUSH_RESULT = "push_result"
    DISBURSEMENT_RESULT = "disbursement_result"
    DISBURSEMENT_TIMEOUT = "disbursement_timeout"


@dataclass(frozen=True)
class PushPaymentResult:
    checkout_request_id: str
    merchant_request_id: Optional[str]
    result_code: int
    result_desc: str
    receipt_number: Optional[str] = None
    amount: Optional[Decimal] = None
    phone_number: Optional[str] = None
    transaction_date: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


@dataclass(frozen=True)
class DisbursementResult:
    conversation_id: str
    originator_conversation_id: Optional[str]
    result_code: int
    result_desc: str
    transaction_id: Optional[str] = None
    receipt_number: Optional[str] = None
    amount: Optional[Decimal] = None
    receiver: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


@dataclass(frozen=True)
class DisbursementTimeout:
    conversation_id: str
    originator_conversation_id: Optional[str]
    result_desc: str


CallbackEvent = Union[PushPaymentResult, DisbursementResult, DisbursementTimeout]


# Wire shapes

class _RailModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _MetadataItem(_RailModel):
    Name: str
    Value: Any = None


class _CallbackMetadata(_RailModel):
    Item: List[_MetadataItem]


class _StkCallback(_RailModel):
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str
    ResultCode: int
    ResultDesc: str = ""
    CallbackMetadata: Optional[_CallbackMetadata] = None


class _StkBody(_RailModel):
    stkCallback: _StkCallback


class _StkEnvelope(_RailModel):
    Body: _StkBody


class _ResultParameter(_RailModel):
    Key: str
    Value: Any = None


class _ResultParameters(_RailModel):
    # Daraja sends a bare object instead of a list when there is a single parameter
    ResultParameter: Union[List[_ResultParameter], _ResultParameter]


class _B2CResult(_RailModel):
    ResultType: Optional[int] = None
    ResultCode: int
    ResultDesc: str = ""
    OriginatorConversationID: Optional[str] = None
    ConversationID: str
    TransactionID: Optional[str] = None
    ResultParameters: Optional[_ResultParameters] = None


class _B2CEnvelope(_RailModel):
    Result: _B2CResult


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise CallbackDecodeError(f"Non-numeric amount in callback: {value!r}")


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def decode_push_callback(payload: Dict[str, Any]) -> PushPaymentResult:
    try:
        callback = _StkEnvelope.model_validate(payload).Body.stkCallback
    except PydanticValidationError as e:
        raise CallbackDecodeError(f"Invalid M-Pesa push callback structure: {e.error_count()} errors") from e

    if callback.ResultCode != 0:
        return PushPaymentResult(
            checkout_request_id=callback.CheckoutRequestID,
            merchant_request_id=callback.MerchantRequestID,
            result_code=callback.ResultCode,
            result_desc=callback.ResultDesc,
        )

    if callback.CallbackMetadata is None:
        raise CallbackDecodeError("Successful push callback is missing CallbackMetadata")

    items = {item.Name: item.Value for item in callback.CallbackMetadata.Item}
    receipt = items.get("MpesaReceiptNumber")
    if not receipt:
        raise CallbackDecodeError("Successful push callback is missing MpesaReceiptNumber")

    return PushPaymentResult(
        checkout_request_id=callback.CheckoutRequestID,
        merchant_request_id=callback.MerchantRequestID,
        result_code=callback.ResultCode,
        result_desc=callback.ResultDesc,
        receipt_number=str(receipt),
        amount=_to_decimal(items.get("Amount")),
        phone_number=_optional_str(items.get("PhoneNumber")),
        transaction_date=parse_rail_timestamp(items.get("TransactionDate")),
    )


def _decode_b2c_envelope(payload: Dict[str, Any]) -> _B2CResult:
    try:
        return _B2CEnvelope.model_validate(payload).Result
    except PydanticValidationError as e:
        raise CallbackDecodeError(f"Invalid M-Pesa B2C callback structure: {e.error_count()} errors") from e


def decode_disbursement_result(payload: Dict[str, Any]) -> DisbursementResult:
    result = _decode_b2c_envelope(payload)

    params: Dict[str, Any] = {}
    if result.ResultParameters is not None:
        raw = result.ResultParameters.ResultParameter
        for param in raw if isinstance(raw, list) else [raw]:
            params[param.Key] = param.Value

    return DisbursementResult(
        conversation_id=result.ConversationID,
        originator_conversation_id=result.OriginatorConversationID,
        result_code=result.ResultCode,
        result_desc=result.ResultDesc,
        transaction_id=result.TransactionID,
        receipt_number=_optional_str(params.get("TransactionReceipt") or result.TransactionID),
        amount=_to_decimal(params.get("TransactionAmount")),
        receiver=_optional_str(params.get("ReceiverPartyPublicName")),
        completed_at=_parse_completed_at(params.get("TransactionCompletedDateTime")),
    )


def decode_disbursement_timeout(payload: Dict[str, Any]) -> DisbursementTimeout:
    result = _decode_b2c_envelope(payload)
    return DisbursementTimeout(
        conversation_id=result.ConversationID,
        originator_conversation_id=result.OriginatorConversationID,
        result_desc=result.ResultDesc,
    )


def _parse_completed_at(value: Any) -> Optional[datetime]:
    # B2C reports "19.10.2026 14:03:27"
    if value is None:
        return None
    try:
        return datetime.strptime(str(value), "%d.%m.%Y %H:%M:%S")
    except ValueError:
        return None


_DECODERS = {
    CallbackChannel.PUSH_RESULT: decode_push_callback,
    CallbackChannel.DISBURSEMENT_RESULT: decode_disbursement_result,
    CallbackChannel.DISBURSEMENT_TIMEOUT: decode_disbursement_timeout,
}


def decode_callback(channel: CallbackChannel, payload: Any) -> CallbackEvent:
    """Decode a webhook body received on `channel`"""
    if not isinstance(payload, dict):
        raise CallbackDecodeError("Callback body must be a JSON object")
    return _DECODERS[channel](payload)
