from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

from .errors import ValidationError


MAX_CART_QUANTITY = 50
POSTAL_CODE_RE = re.compile(r"^\d{4}$")


def coerce_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer parsing for JSON payloads.

    Rejects bools, floats, decimals and scientific notation.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer", {"field": field})
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped or not re.fullmatch(r"-?\d+", stripped):
            raise ValidationError(f"{field} must be an integer", {"field": field})
        result = int(stripped)
    else:
        raise ValidationError(f"{field} must be an integer", {"field": field})

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be at least {minimum}", {"field": field})
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} must be at most {maximum}", {"field": field})
    return result


TRUE_STRINGS = ("true", "1", "yes", "on")
FALSE_STRINGS = ("false", "0", "no", "off", "")


def coerce_bool(value: Any, field: str) -> bool:
    """
    Strict boolean parsing for JSON payloads.

    Accepts real bools, null (False) and true/false-style strings; anything
    else (numbers, lists, "maybe") is rejected.
    """
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in TRUE_STRINGS:
            return True
        if lowered in FALSE_STRINGS:
            return False
    raise ValidationError(f"{field} must be true or false", {"field": field})


def _text(data: dict, key: str, *, required: bool = False, min_len: int = 0, max_len: int = 255) -> Optional[str]:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{key} is required", {"field": key})
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string", {"field": key})
    value = value.strip()
    if len(value) < min_len or len(value) > max_len:
        raise ValidationError(f"{key} must be between {min_len} and {max_len} characters", {"field": key})
    return value


@dataclass(frozen=True)
class RegistrationIdentity:
    """Identity payload for a new pending registration (raw, not yet normalized)."""
    first_name: str
    last_name: str
    phone: str
    national_id: str
    email: Optional[str] = None
    terms_accepted: bool = False
    privacy_accepted: bool = False
    marketing_consent: bool = False

    @classmethod
    def from_payload(cls, data: dict) -> "RegistrationIdentity":
        return cls(
            first_name=_text(data, "first_name", required=True, min_len=1, max_len=64),
            last_name=_text(data, "last_name", required=True, min_len=1, max_len=64),
            phone=_text(data, "phone", required=True, max_len=32),
            national_id=_text(data, "national_id", required=True, max_len=32),
            email=_text(data, "email", max_len=255),
            terms_accepted=coerce_bool(data.get("terms_accepted"), "terms_accepted"),
            privacy_accepted=coerce_bool(data.get("privacy_accepted"), "privacy_accepted"),
            marketing_consent=coerce_bool(data.get("marketing_consent"), "marketing_consent"),
        )


@dataclass(frozen=True)
class DeliveryInfo:
    """
    Delivery and payment details captured at checkout.

    PICKUP orders carry no address; the other methods require street, city,
    province and a 4-digit postal code.
    """
    method: str = "STANDARD"
    payment_method: str = "TOKENS"
    street: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "South Africa"
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, data: dict) -> "DeliveryInfo":
        from .models import DELIVERY_METHODS, PAYMENT_METHODS

        method = (data.get("delivery_method") or "STANDARD").upper()
        if method not in DELIVERY_METHODS:
            raise ValidationError("Invalid delivery method", {"field": "delivery_method", "allowed": list(DELIVERY_METHODS)})

        payment_method = (data.get("payment_method") or "TOKENS").upper()
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError("Invalid payment method", {"field": "payment_method", "allowed": list(PAYMENT_METHODS)})

        address = data.get("delivery_address") or {}
        if not isinstance(address, dict):
            raise ValidationError("delivery_address must be an object", {"field": "delivery_address"})

        notes = _text(data, "notes", max_len=500)

        if method == "PICKUP":
            return cls(method=method, payment_method=payment_method, notes=notes)

        postal_code = _text(address, "postal_code", required=True, max_len=4)
        if not POSTAL_CODE_RE.match(postal_code):
            raise ValidationError("postal_code must be 4 digits", {"field": "postal_code"})

        return cls(
            method=method,
            payment_method=payment_method,
            street=_text(address, "street", required=True, min_len=5, max_len=100),
            city=_text(address, "city", required=True, min_len=2, max_len=50),
            province=_text(address, "province", required=True, min_len=2, max_len=50),
            postal_code=postal_code,
            country=_text(address, "country", max_len=64) or "South Africa",
            notes=notes,
        )


def parse_pagination(args, *, default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    try:
        page = int(args.get("page", 1))
        limit = int(args.get("limit", default_limit))
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers")
    return max(1, page), max(1, min(limit, max_limit))
