"""Borrowing capacity derived from paid contribution history"""

from decimal import Decimal

from chama_gateway.domain.models import Eligibility


def calculate_eligibility(total_paid: Decimal, requested_amount: Decimal, multiplier: Decimal) -> Eligibility:
    """
    A member may borrow up to `multiplier` times what they have paid in.

    Only PAID contributions count towards `total_paid`; the caller sums them.
    Requesting exactly the ceiling is eligible.
    """
    total_paid = Decimal(total_paid)
    max_loanable = total_paid * Decimal(multiplier)

    return Eligibility(
        is_eligible=Decimal(requested_amount) <= max_loanable,
        max_loanable=max_loanable,
        total_paid=total_paid,
    )
