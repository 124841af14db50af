"""
Cameroon mobile numbering rules.

Numbers travel through the engine in a single 12-digit form (``237`` +
nine national digits); provider prefix sets are checked on the national
part.
"""
import re
from typing import Optional

from ride_payments.core.enums import Provider
from ride_payments.core.errors import PhoneNumberError

COUNTRY_CODE = "237"
NATIONAL_LENGTH = 9

MTN_PATTERN = re.compile(r"^6(7[0-9]|(8|5)[0-4])[0-9]{6}$")
ORANGE_PATTERN = re.compile(r"^6(9[0-9]|5[5-9])[0-9]{6}$")


def normalize_phone(raw: str) -> str:
    """
    Normalise a phone number to ``237XXXXXXXXX``.

    Args:
        raw: Phone number in any common notation (+237 6.., 6.., spaces)

    Returns:
        str: 12-digit number with country code

    Raises:
        PhoneNumberError: If the number has the wrong length or country code
    """
    digits = re.sub(r"\D", "", raw or "")

    if len(digits) == NATIONAL_LENGTH:
        return COUNTRY_CODE + digits
    if len(digits) == NATIONAL_LENGTH + len(COUNTRY_CODE) and digits.startswith(COUNTRY_CODE):
        return digits

    raise PhoneNumberError(f"Invalid phone number format: {raw!r}")


def national_number(phone: str) -> str:
    """Return the nine national digits of a normalised number."""
    return normalize_phone(phone)[len(COUNTRY_CODE):]


def is_mtn_number(phone: str) -> bool:
    """Check if the number belongs to MTN Cameroon."""
    try:
        return bool(MTN_PATTERN.match(national_number(phone)))
    except PhoneNumberError:
        return False


def is_orange_number(phone: str) -> bool:
    """Check if the number belongs to Orange Cameroon."""
    try:
        return bool(ORANGE_PATTERN.match(national_number(phone)))
    except PhoneNumberError:
        return False


def detect_operator(phone: str) -> Optional[Provider]:
    """
    Infer the mobile network operator from the number prefix.

    Returns:
        Optional[Provider]: MTN or ORANGE, None when neither prefix set matches
    """
    if is_mtn_number(phone):
        return Provider.MTN
    if is_orange_number(phone):
        return Provider.ORANGE
    return None
