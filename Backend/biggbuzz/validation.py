"""
South African identity and phone number validation.

ID NUMBER LAYOUT (13 digits):
    YYMMDD SSSS C A Z
    - YYMMDD: date of birth
    - SSSS:   sequence; 5000-9999 male, 0000-4999 female
    - C:      0 = SA citizen, 1 = permanent resident
    - A:      historical race digit, unused
    - Z:      Luhn check digit

PHONE NUMBERS:
    Mobile numbers are accepted as 0XXXXXXXXX, +27XXXXXXXXX, 0027XXXXXXXXX
    or 27XXXXXXXXX and are stored as +27XXXXXXXXX.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from .core.errors import ValidationError
from .core.responses import ErrorCodes


MINIMUM_AGE = 18

VALID_MOBILE_PREFIXES = (
    "071", "072", "073", "074", "076", "078", "079",
    "081", "082", "083", "084",
)

_ID_PATTERN = re.compile(r"^\d{13}$")
_PHONE_STRIP = re.compile(r"[\s\-()]")
_PHONE_FORMS = (
    re.compile(r"^0(\d{9})$"),
    re.compile(r"^\+27(\d{9})$"),
    re.compile(r"^0027(\d{9})$"),
    re.compile(r"^27(\d{9})$"),
)


@dataclass
class SAIDInfo:
    date_of_birth: date
    age: int
    gender: str
    is_sa_citizen: bool
    is_valid_age: bool


# ────────────────────────────────────────────────────────────────
# ID numbers
# ────────────────────────────────────────────────────────────────

def _luhn_check_digit(first_twelve: str) -> int:
    total = 0
    multiplier = 2
    for index in range(11, -1, -1):
        value = int(first_twelve[index]) * multiplier
        if value > 9:
            value = value // 10 + value % 10
        total += value
        multiplier = 1 if multiplier == 2 else 2
    return (10 - total % 10) % 10


def validate_sa_id(id_number: str) -> bool:
    if not id_number or not _ID_PATTERN.match(id_number):
        return False

    month = int(id_number[2:4])
    day = int(id_number[4:6])
    if month < 1 or month > 12:
        return False
    # Leap years can't be known without the century, so February allows 29.
    max_day = 29 if month == 2 else calendar.monthrange(2001, month)[1]
    if day < 1 or day > max_day:
        return False

    if id_number[10] not in ("0", "1"):
        return False

    return _luhn_check_digit(id_number[:12]) == int(id_number[12])


def _age_on(birth: date, today: date) -> int:
    years = today.year - birth.year
    if (today.month, today.day) < (birth.month, birth.day):
        years -= 1
    return years


def parse_sa_id(id_number: str, today: Optional[date] = None) -> SAIDInfo:
    """Extract date of birth, age, gender and citizenship from a valid ID."""
    if not validate_sa_id(id_number):
        raise ValidationError("Invalid South African ID number", code=ErrorCodes.INVALID_SA_ID)

    today = today or date.today()
    yy = int(id_number[0:2])
    century = 2000 if yy <= today.year % 100 else 1900
    try:
        birth = date(century + yy, int(id_number[2:4]), int(id_number[4:6]))
    except ValueError:
        raise ValidationError(
            "Invalid date of birth in ID number", code=ErrorCodes.INVALID_SA_ID
        )

    age = _age_on(birth, today)
    return SAIDInfo(
        date_of_birth=birth,
        age=age,
        gender="male" if int(id_number[6]) >= 5 else "female",
        is_sa_citizen=id_number[10] == "0",
        is_valid_age=age >= MINIMUM_AGE,
    )


# ────────────────────────────────────────────────────────────────
# Phone numbers
# ────────────────────────────────────────────────────────────────

def _national_digits(phone: str) -> Optional[str]:
    """Return the nine digits after the country/trunk prefix, or None."""
    if not phone:
        return None
    cleaned = _PHONE_STRIP.sub("", phone)
    for pattern in _PHONE_FORMS:
        match = pattern.match(cleaned)
        if match:
            return match.group(1)
    return None


def validate_sa_phone(phone: str) -> bool:
    digits = _national_digits(phone)
    if digits is None:
        return False
    return f"0{digits[:2]}" in VALID_MOBILE_PREFIXES


def normalize_sa_phone(phone: str) -> str:
    if not validate_sa_phone(phone):
        raise ValidationError(
            "Invalid South African mobile number", code=ErrorCodes.INVALID_PHONE
        )
    return f"+27{_national_digits(phone)}"


# ────────────────────────────────────────────────────────────────
# Display helpers
# ────────────────────────────────────────────────────────────────

def mask_phone(phone: Optional[str]) -> str:
    if not phone or len(phone) < 6:
        return "***"
    return f"{phone[:3]}***{phone[-2:]}"


def mask_sa_id(last4: Optional[str]) -> str:
    """Mask an ID given either the full number or its last four digits."""
    if not last4:
        return "******"
    return f"******{last4[-4:]}"


def sanitize_text(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    return text.strip().replace("<", "").replace(">", "")
