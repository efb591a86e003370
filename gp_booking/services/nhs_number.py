"""
NHS number validation.

The tenth digit of an NHS number is a modulus 11 check digit over the first
nine. A computed check digit of 10 means the number was never issued, so
such identifiers are rejected here and never produced by the generator.
"""

import random
from typing import Optional, Sequence

NHS_NUMBER_LENGTH = 10


def compute_check_digit(digits: Sequence[int]) -> Optional[int]:
    """
    Compute the check digit for the first nine digits of an NHS number.

    Args:
        digits: The first nine digits as integers

    Returns:
        The check digit, or None when the digits can never form a valid number
    """
    if len(digits) != NHS_NUMBER_LENGTH - 1:
        raise ValueError("Exactly nine digits are required")

    weighted_sum = sum(digit * (10 - i) for i, digit in enumerate(digits))
    check_digit = 11 - (weighted_sum % 11)

    if check_digit == 11:
        return 0
    if check_digit == 10:
        return None
    return check_digit


def is_valid_nhs_number(value: str) -> bool:
    """Return True if value is ten ASCII digits with a correct check digit."""
    if not isinstance(value, str) or len(value) != NHS_NUMBER_LENGTH:
        return False
    if not (value.isascii() and value.isdigit()):
        return False

    digits = [int(char) for char in value]
    expected = compute_check_digit(digits[:9])
    return expected is not None and expected == digits[9]


def generate_nhs_number(rng: Optional[random.Random] = None) -> str:
    """
    Generate a random, checksum-valid NHS number for demos and tests.

    Draws again whenever the first nine digits would need a check digit of 10.
    """
    rng = rng or random.Random()
    while True:
        digits = [rng.randint(1, 9)] + [rng.randint(0, 9) for _ in range(8)]
        check_digit = compute_check_digit(digits)
        if check_digit is not None:
            return "".join(str(d) for d in digits) + str(check_digit)


def mask_nhs_number(value: Optional[str]) -> str:
    """Mask an NHS number for log output, keeping the first three digits."""
    if not value:
        return "[empty]"
    return f"{value[:3]}****"
