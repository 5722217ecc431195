"""Kenyan mobile number normalization"""

import re

from chama_gateway.domain.exceptions import ValidationError

_MSISDN = re.compile(r"^254[17]\d{8}$")


def normalize_msisdn(phone: str) -> str:
    """
    Normalize 07XX.., 01XX.., +2547.. and 2547.. variants to the 2547XXXXXXXX
    form Daraja expects in PartyA/PartyB/PhoneNumber.
    """
    value = (phone or "").strip().replace(" ", "").replace("-", "")

    if value.startswith("+"):
        value = value[1:]
    if value.startswith("0"):
        value = "254" + value[1:]

    if not _MSISDN.match(value):
        raise ValidationError("A valid Kenyan phone number is required (+254... or 07...).")
    return value
