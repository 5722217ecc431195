"""Translation of domain exceptions into HTTP errors"""

import logging

from fastapi import HTTPException

from chama_gateway.domain.exceptions import (
    DomainException,
    DuplicatePaymentError,
    EligibilityError,
    GatewayError,
    PermissionDeniedError,
    ResourceNotFoundError,
    StateConflictError,
    ValidationError,
)

_STATUS_CODES = [
    (ValidationError, 400),
    (EligibilityError, 400),
    (PermissionDeniedError, 403),
    (ResourceNotFoundError, 404),
    (StateConflictError, 409),
    (DuplicatePaymentError, 409),
    (GatewayError, 502),
]


def to_http_error(error: DomainException, request_id: str = "unknown") -> HTTPException:
    """Map a domain error to the HTTPException the route should raise"""
    if isinstance(error, GatewayError):
        logging.error(
            f"M-Pesa error: {error}",
            extra={"request_id": request_id, "rail_payload": error.payload},
        )
        return HTTPException(status_code=502, detail={"message": str(error), "rail_response": error.payload})

    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            logging.warning(
                f"Request rejected: {error}",
                extra={"request_id": request_id, "error_type": type(error).__name__, "status_code": status_code},
            )
            return HTTPException(status_code=status_code, detail=str(error))

    logging.error(f"Unmapped domain error: {error}", extra={"request_id": request_id})
    return HTTPException(status_code=500, detail="Internal server error")
