# Overview: South African national ID and mobile number validation; pure functions, no database access.

"""
National ID layout (13 digits): YYMMDD SSSS C A Z

- YYMMDD: date of birth
- SSSS: sequence, 0000-4999 female, 5000-9999 male
- C: citizenship, 0 citizen, 1 permanent resident
- A: historically race, ignored
- Z: Luhn check digit over the first twelve digits
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

from ..errors import ValidationError
from ..time_utils import today as utc_today


MINIMUM_AGE = 18

VALID_MOBILE_PREFIXES = frozenset({
    "071", "072", "073", "074", "076", "078", "079",
    "081", "082", "083", "084",
})

_SEPARATORS = re.compile(r"[\s\-()]")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class NationalIdInfo:
    date_of_birth: date
    age: int
    sex: str  # "M" or "F"
    citizen_resident: bool
    is_of_legal_age: bool

    def to_dict(self) -> dict:
        return {
            "date_of_birth": self.date_of_birth.isoformat(),
            "age": self.age,
            "sex": self.sex,
            "citizen_resident": self.citizen_resident,
            "is_of_legal_age": self.is_of_legal_age,
        }


def clean_national_id(raw: str | None) -> str:
    if raw is None:
        return ""
    return re.sub(r"[\s\-]", "", str(raw))


def luhn_check_digit(digits: str) -> int:
    """Check digit for a string of digits (doubling from the rightmost)."""
    total = 0
    for offset, ch in enumerate(reversed(digits)):
        n = int(ch)
        if offset % 2 == 0:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return (10 - total % 10) % 10


def _birth_date(yy: int, mm: int, dd: int, reference: date) -> date:
    """
    Resolve the century: the most recent year ending in yy that does not put
    the birth date in the future.
    """
    year = (reference.year // 100) * 100 + yy
    if year > reference.year:
        year -= 100
    born = date(year, mm, dd)  # ValueError for impossible dates
    if born > reference:
        born = date(year - 100, mm, dd)
    return born


def _age_on(born: date, reference: date) -> int:
    years = reference.year - born.year
    if (reference.month, reference.day) < (born.month, born.day):
        years -= 1
    return years


def parse_national_id(raw: str | None, today: date | None = None, minimum_age: int = MINIMUM_AGE) -> NationalIdInfo:
    """
    Validate and decode a national ID.

    Raises ValidationError with a reason in details when the number is
    malformed, fails the checksum, or encodes an impossible date.
    """
    value = clean_national_id(raw)
    if not value:
        raise ValidationError("National ID is required", {"field": "national_id", "reason": "missing"})
    if len(value) != 13 or not value.isdigit():
        raise ValidationError("National ID must be 13 digits", {"field": "national_id", "reason": "format"})

    reference = today or utc_today()

    yy, mm, dd = int(value[0:2]), int(value[2:4]), int(value[4:6])
    try:
        born = _birth_date(yy, mm, dd, reference)
    except ValueError:
        raise ValidationError("National ID contains an invalid date of birth", {"field": "national_id", "reason": "date"})

    citizenship = value[10]
    if citizenship not in ("0", "1"):
        raise ValidationError("National ID has an invalid citizenship digit", {"field": "national_id", "reason": "citizenship"})

    if luhn_check_digit(value[:12]) != int(value[12]):
        raise ValidationError("National ID checksum is invalid", {"field": "national_id", "reason": "checksum"})

    age = _age_on(born, reference)
    return NationalIdInfo(
        date_of_birth=born,
        age=age,
        sex="M" if int(value[6]) >= 5 else "F",
        citizen_resident=citizenship == "0",
        is_of_legal_age=age >= minimum_age,
    )


def validate_national_id(raw: str | None, today: date | None = None) -> bool:
    try:
        parse_national_id(raw, today=today)
    except ValidationError:
        return False
    return True


def normalize_phone(raw: str | None) -> str:
    """
    Normalize a South African mobile number to +27XXXXXXXXX.

    Accepts 0XXXXXXXXX, +27XXXXXXXXX, 0027XXXXXXXXX and 27XXXXXXXXX with
    spaces, dashes or brackets.
    """
    if raw is None:
        raise ValidationError("Phone number is required", {"field": "phone"})
    value = _SEPARATORS.sub("", str(raw))

    if value.startswith("+27"):
        local = value[3:]
    elif value.startswith("0027"):
        local = value[4:]
    elif value.startswith("27") and len(value) == 11:
        local = value[2:]
    elif value.startswith("0") and len(value) == 10:
        local = value[1:]
    else:
        raise ValidationError("Invalid South African mobile number", {"field": "phone"})

    if len(local) != 9 or not local.isdigit():
        raise ValidationError("Invalid South African mobile number", {"field": "phone"})
    if "0" + local[:2] not in VALID_MOBILE_PREFIXES:
        raise ValidationError("Unsupported mobile network prefix", {"field": "phone"})

    return "+27" + local


def validate_phone(raw: str | None) -> bool:
    try:
        normalize_phone(raw)
    except ValidationError:
        return False
    return True


def normalize_email(raw: str | None) -> str | None:
    if raw is None:
        return None
    value = str(raw).strip().lower()
    if not value:
        return None
    if not _EMAIL_RE.match(value):
        raise ValidationError("Invalid email address", {"field": "email"})
    return value


def mask_phone(phone: str | None) -> str | None:
    if not phone or len(phone) < 7:
        return phone
    return phone[:5] + "*" * (len(phone) - 7) + phone[-2:]


def mask_national_id(value: str | None) -> str | None:
    if not value or len(value) < 6:
        return value
    return value[:6] + "*" * (len(value) - 6)


def mask_email(email: str | None) -> str | None:
    if not email or "@" not in email:
        return email
    local, domain = email.split("@", 1)
    return local[:1] + "***@" + domain
