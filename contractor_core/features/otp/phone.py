"""E.164 phone number normalization."""
import re

from contractor_core.core.config import MAX_CODE_LENGTH, MIN_CODE_LENGTH
from contractor_core.core.errors import InvalidPhone

E164_PATTERN = re.compile(r"^\+[1-9][0-9]{1,14}$")
_SEPARATORS = re.compile(r"[\s\-().]")


def normalize_phone(raw: str) -> str:
    """Strip common separators and require a leading '+' with 2-15 digits.

    Raises:
        InvalidPhone: if the result is not E.164
    """
    if not isinstance(raw, str):
        raise InvalidPhone()
    phone = _SEPARATORS.sub("", raw.strip())
    if not E164_PATTERN.match(phone):
        raise InvalidPhone()
    return phone


def is_valid_code_format(code: str) -> bool:
    """Codes are compared as strings; only shape is checked here."""
    return isinstance(code, str) and MIN_CODE_LENGTH <= len(code) <= MAX_CODE_LENGTH and code.isascii() and code.isdigit()
