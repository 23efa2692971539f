"""
Payload parsing for registration and checkout requests.
"""

import pytest

from biggbuzz.errors import ValidationError
from biggbuzz.validation import (
    DeliveryInfo,
    RegistrationIdentity,
    coerce_bool,
    coerce_int,
)


# =============================================================================
# SCALARS
# =============================================================================


@pytest.mark.parametrize(
    "value, expected",
    [(True, True), (False, False), (None, False), ("true", True), (" Yes ", True), ("0", False), ("off", False)],
)
def test_coerce_bool_accepts(value, expected):
    assert coerce_bool(value, "terms_accepted") is expected


@pytest.mark.parametrize("value", [1, 0, 2.5, "maybe", [], {}])
def test_coerce_bool_rejects(value):
    with pytest.raises(ValidationError) as exc:
        coerce_bool(value, "terms_accepted")
    assert exc.value.details["field"] == "terms_accepted"


def test_coerce_int_rejects_decimals():
    assert coerce_int(" 1250 ", "amount_cents", minimum=1) == 1250
    with pytest.raises(ValidationError):
        coerce_int("12.50", "amount_cents")
    with pytest.raises(ValidationError):
        coerce_int(True, "amount_cents")


# =============================================================================
# REGISTRATION IDENTITY
# =============================================================================


class TestRegistrationIdentity:
    def test_from_payload(self, registration_payload):
        identity = RegistrationIdentity.from_payload(registration_payload)

        assert identity.first_name == "Thabo"
        assert identity.national_id == "8001015009087"
        assert identity.terms_accepted is True
        assert identity.privacy_accepted is True
        assert identity.marketing_consent is False

    def test_missing_consents_default_to_false(self, registration_payload):
        for key in ("terms_accepted", "privacy_accepted", "marketing_consent"):
            registration_payload.pop(key)
        identity = RegistrationIdentity.from_payload(registration_payload)
        assert (identity.terms_accepted, identity.privacy_accepted, identity.marketing_consent) == (False, False, False)

    def test_string_consents(self, registration_payload):
        registration_payload["terms_accepted"] = "true"
        registration_payload["marketing_consent"] = "no"
        identity = RegistrationIdentity.from_payload(registration_payload)
        assert identity.terms_accepted is True
        assert identity.marketing_consent is False

    def test_invalid_consent(self, registration_payload):
        registration_payload["privacy_accepted"] = "sure"
        with pytest.raises(ValidationError) as exc:
            RegistrationIdentity.from_payload(registration_payload)
        assert exc.value.details["field"] == "privacy_accepted"


# =============================================================================
# DELIVERY
# =============================================================================


class TestDeliveryInfo:
    def test_pickup_needs_no_address(self):
        info = DeliveryInfo.from_payload({"delivery_method": "pickup"})
        assert info.method == "PICKUP"
        assert info.street is None

    def test_postal_code_must_be_four_digits(self):
        with pytest.raises(ValidationError) as exc:
            DeliveryInfo.from_payload({
                "delivery_method": "STANDARD",
                "delivery_address": {"street": "12 Long Street", "city": "Cape Town", "province": "WC", "postal_code": "80A1"},
            })
        assert exc.value.details["field"] == "postal_code"
