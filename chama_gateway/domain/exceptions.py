"""Domain-specific exceptions"""

from decimal import Decimal
from typing import Any


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class ValidationError(DomainException):
    """Malformed or missing input, rejected before any state change"""

    pass


class PermissionDeniedError(DomainException):
    """Actor is not allowed to perform the action on the resource"""

    pass


class ResourceNotFoundError(DomainException):
    """Referenced loan, membership or contribution does not exist"""

    pass


class StateConflictError(DomainException):
    """Action attempted from a status that does not permit it"""

    pass


class EligibilityError(DomainException):
    """Requested amount exceeds the member's borrowing ceiling"""

    def __init__(self, max_loanable: Decimal):
        self.max_loanable = max_loanable
        super().__init__(
            f"Loan application rejected. You are only eligible to borrow up to {max_loanable:.2f}."
        )


class DuplicatePaymentError(DomainException):
    """External reference code was already used by another payment"""

    pass


class GatewayError(DomainException):
    """M-Pesa rejected the request or could not be reached.

    ``payload`` keeps the rail's raw error body for operator diagnosis.
    """

    def __init__(self, message: str, payload: Any = None):
        super().__init__(message)
        self.payload = payload


class TokenAcquisitionError(GatewayError):
    """OAuth access token could not be obtained"""

    pass


class GatewayRejectedError(GatewayError):
    """M-Pesa answered and refused the request (HTTP 4xx or a non-zero ResponseCode).

    Unlike a timeout, nothing was accepted for processing.
    """

    pass


class CallbackDecodeError(DomainException):
    """Webhook body matches none of the known rail payload shapes"""

    pass
