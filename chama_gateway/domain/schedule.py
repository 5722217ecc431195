"""Flat-rate interest terms and repayment schedule generation"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from chama_gateway.domain.exceptions import ValidationError
from chama_gateway.domain.models import RepaymentTerms, ScheduleEntry
from chama_gateway.utils.date_utils import add_months

CENT = Decimal("0.01")
MONTHS_PER_YEAR = Decimal(12)


def round_money(value: Decimal) -> Decimal:
    """Round half-up to cents"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_repayment_terms(principal: Decimal, annual_rate: Decimal, duration_months: int) -> RepaymentTerms:
    """
    Flat-rate interest: charged once on the original principal for the whole term.

        total_interest      = principal * annual_rate * (duration_months / 12)
        repayment_amount    = principal + total_interest
        monthly_installment = repayment_amount / duration_months

    Used identically at approval, at restructure and when generating the schedule.
    Figures are returned unrounded; callers round when persisting.
    """
    if duration_months <= 0:
        raise ValidationError("Loan duration must be at least one month.")
    if principal <= 0:
        raise ValidationError("Loan amount must be greater than zero.")
    if annual_rate < 0:
        raise ValidationError("Interest rate cannot be negative.")

    principal = Decimal(principal)
    annual_rate = Decimal(annual_rate)
    total_interest = principal * annual_rate * (Decimal(duration_months) / MONTHS_PER_YEAR)
    repayment_amount = principal + total_interest
    monthly_installment = repayment_amount / Decimal(duration_months)

    return RepaymentTerms(
        total_interest=total_interest,
        repayment_amount=repayment_amount,
        monthly_installment=monthly_installment,
    )


def generate_repayment_schedule(
    principal: Decimal,
    annual_rate: Decimal,
    duration_months: int,
    disbursed_at: Optional[datetime],
) -> List[ScheduleEntry]:
    """
    Build the monthly schedule of a disbursed loan.

    Requirements:
    - One row per month, due `disbursed_at + i months` for i in 1..duration
    - Every row pays the monthly installment rounded to cents
    - The running balance is carried unrounded and only rounded for display,
      so the last row shows 0.00 even when the rows do not sum to the total

    Returns an empty list for a loan that was never disbursed.

    Example:
        1000 at 0% over 3 months -> (333.33, 666.67), (333.33, 333.33), (333.33, 0.00)
    """
    if disbursed_at is None:
        return []

    terms = compute_repayment_terms(principal, annual_rate, duration_months)
    payment = round_money(terms.monthly_installment)

    schedule = []
    balance = terms.repayment_amount
    for i in range(1, duration_months + 1):
        balance -= terms.monthly_installment
        # Decimal residue can leave -0.00
        remaining = round_money(balance) if balance > 0 else Decimal("0.00")

        schedule.append(
            ScheduleEntry(
                installment_number=i,
                due_date=add_months(disbursed_at, i).date(),
                payment_amount=payment,
                remaining_balance=remaining,
            )
        )

    return schedule
