"""Phone number normalization for mobile-money payers."""

import re

_MSISDN_PATTERN = re.compile(r"^254\d{9}$")


def normalize_msisdn(phone: str) -> str:
    """Normalize a Kenyan phone number to international ``254XXXXXXXXX`` form.

    Accepts local (``0712345678``), bare (``712345678``) and international
    (``254712345678`` or ``+254 712 345 678``) forms.

    Raises:
        ValueError: If the number cannot be normalized.
    """
    digits = re.sub(r"\D", "", str(phone or ""))

    if digits.startswith("0"):
        digits = f"254{digits[1:]}"
    elif len(digits) == 9:
        digits = f"254{digits}"

    if not _MSISDN_PATTERN.match(digits):
        raise ValueError("Invalid Kenyan phone format. Use 2547XXXXXXXX")
    return digits
