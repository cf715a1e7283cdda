"""Check-digit validators for identifier-like PII matches."""
import re

_NON_DIGIT = re.compile(r"\D")


def digits_only(value: str) -> str:
    return _NON_DIGIT.sub("", value)


def _cpf_check_digit(digits: str, weight_start: int) -> int:
    total = sum(int(d) * (weight_start - i) for i, d in enumerate(digits))
    remainder = 11 - (total % 11)
    return 0 if remainder >= 10 else remainder


def is_valid_cpf(value: str) -> bool:
    """Validate a CPF using the modulo-11 check digits.

    Formatting characters are ignored. Repeated-digit sequences such as
    111.111.111-11 satisfy the arithmetic but are not issued, so they are
    rejected.
    """
    digits = digits_only(value)
    if len(digits) != 11:
        return False
    if digits == digits[0] * 11:
        return False

    if _cpf_check_digit(digits[:9], 10) != int(digits[9]):
        return False
    return _cpf_check_digit(digits[:10], 11) == int(digits[10])
