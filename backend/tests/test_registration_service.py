"""
Pending registration lifecycle: initiate -> OTP sent -> OTP verified -> finalized,
plus the terminal paths (expiry, attempt exhaustion, conflict).
"""

from datetime import date, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from biggbuzz.errors import (
    AlreadyVerifiedError,
    AttemptsExhaustedError,
    ConflictError,
    ExpiredError,
    InvalidCodeError,
    NotFoundError,
    TransportError,
    ValidationError,
)
from biggbuzz.extensions import db
from biggbuzz.models import ComplianceEvent, OtpEntry, PendingRegistration, Subscriber
from biggbuzz.services import registration_service
from biggbuzz.services.compliance_service import RequestContext, list_events
from biggbuzz.services.registry import get_registration_machine
from biggbuzz.time_utils import utcnow
from biggbuzz.validation import RegistrationIdentity

from conftest import make_national_id


PHONE = "+27821234567"
WRONG_CODE = "000000"


def _identity(**overrides):
    data = {
        "first_name": "Thabo",
        "last_name": "Nkosi",
        "phone": "0821234567",
        "national_id": "8001015009087",
        "email": "thabo@example.co.za",
        "terms_accepted": True,
        "privacy_accepted": True,
        "marketing_consent": False,
    }
    data.update(overrides)
    return RegistrationIdentity.from_payload(data)


def _expire(pending_id):
    db.session.query(PendingRegistration).filter_by(id=pending_id).update(
        {"expires_at": utcnow() - timedelta(seconds=1)}
    )
    db.session.commit()


@pytest.fixture
def machine(db_session):
    return get_registration_machine()


@pytest.fixture
def pending(machine):
    return machine.initiate(_identity())


# =============================================================================
# INITIATE
# =============================================================================


class TestInitiate:
    def test_creates_pending_and_sends_code(self, machine, transport, db_session):
        pending = machine.initiate(_identity(), request=RequestContext(ip_address="10.0.0.1"))

        assert pending.id is not None
        assert pending.phone == PHONE
        assert pending.national_id == "8001015009087"
        assert pending.state == "OTP_SENT"
        assert pending.otp_attempts == 0
        assert pending.expires_at > utcnow() + timedelta(minutes=29)
        assert transport.last_code(PHONE) is not None

        event = db_session.query(ComplianceEvent).one()
        assert event.event_type == "USER_REGISTRATION"
        assert event.event_metadata["stage"] == "INITIATED"
        assert event.event_metadata["phone"] != PHONE
        assert event.ip_address == "10.0.0.1"

    def test_underage_rejected_without_side_effects(self, machine, transport, db_session):
        born = date(utcnow().year - 16, 1, 1)
        with pytest.raises(ValidationError) as exc:
            machine.initiate(_identity(national_id=make_national_id(born)))

        assert exc.value.details["reason"] == "underage"
        assert db_session.query(PendingRegistration).count() == 0
        assert transport.messages == []

    def test_invalid_national_id_rejected(self, machine, db_session):
        with pytest.raises(ValidationError) as exc:
            machine.initiate(_identity(national_id="8001015009088"))
        assert exc.value.details["reason"] == "checksum"

    def test_invalid_phone_rejected(self, machine, db_session):
        with pytest.raises(ValidationError) as exc:
            machine.initiate(_identity(phone="0121234567"))
        assert exc.value.details["field"] == "phone"

    def test_self_registration_requires_consent(self, machine, db_session):
        with pytest.raises(ValidationError):
            machine.initiate(_identity(terms_accepted=False))
        assert db_session.query(PendingRegistration).count() == 0

    def test_operator_registration_records_source(self, machine, operator):
        pending = machine.initiate(_identity(terms_accepted=False), source="ADMIN", operator_id=operator.id)
        assert pending.source == "ADMIN"
        assert pending.created_by_operator_id == operator.id

    @pytest.mark.parametrize(
        "field,overrides",
        [
            ("phone", {"national_id": None, "email": "other@example.co.za"}),
            ("national_id", {"phone": "0831234567", "email": "other@example.co.za"}),
            ("email", {"phone": "0831234567", "national_id": None}),
        ],
    )
    def test_existing_subscriber_conflict(self, machine, make_subscriber, field, overrides):
        existing = {
            "phone": "0821234567",
            "national_id": "8001015009087",
            "email": "thabo@example.co.za",
        }
        if field != "phone":
            existing["phone"] = "0721234567"
        if field != "national_id":
            existing["national_id"] = make_national_id(date(1975, 5, 5))
        if field != "email":
            existing["email"] = "someone@example.co.za"
        make_subscriber(**existing)

        identity = {k: v for k, v in overrides.items() if v is not None}
        with pytest.raises(ConflictError) as exc:
            machine.initiate(_identity(**identity))
        assert exc.value.field == field

    def test_live_pending_blocks_second_initiation(self, machine, pending):
        with pytest.raises(ConflictError) as exc:
            machine.initiate(_identity(email="other@example.co.za"))
        assert exc.value.field == "phone"

    def test_expired_pending_is_purged_on_reinitiation(self, machine, pending, db_session):
        old_id = pending.id
        _expire(old_id)
        db_session.expunge_all()

        fresh = machine.initiate(_identity())
        fresh_id = fresh.id

        assert db_session.query(PendingRegistration).count() == 1
        # SQLite may hand the old rowid back; whatever holds it must be the new live record
        survivor = db_session.get(PendingRegistration, old_id)
        assert survivor is None or survivor.id == fresh_id
        current = db_session.get(PendingRegistration, fresh_id)
        assert current.expires_at > utcnow()
        assert current.otp_attempts == 0
        assert current.otp_sent is True

    def test_concurrent_insert_names_clashing_field(self, machine, pending, db_session, monkeypatch):
        # Hide the live record from the first lookup so the insert hits the unique constraint
        calls = {"n": 0}
        real_find = registration_service._find_pending

        def racing_find(identity_match):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_find(identity_match)

        monkeypatch.setattr(registration_service, "_find_pending", racing_find)

        with pytest.raises(ConflictError) as exc:
            machine.initiate(_identity(phone="0831234567", email="other@example.co.za"))

        assert exc.value.field == "national_id"
        assert db_session.query(PendingRegistration).count() == 1

    def test_issue_failure_removes_pending(self, machine, db_session, monkeypatch):
        def broken_issue(phone, **kwargs):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(machine.ledger, "issue", broken_issue)

        with pytest.raises(OperationalError):
            machine.initiate(_identity())

        assert db_session.query(PendingRegistration).count() == 0
        # Nothing left behind to block a retry
        monkeypatch.undo()
        assert machine.initiate(_identity()).otp_sent is True

    def test_transport_failure_persists_nothing(self, machine, transport, db_session):
        transport.fail = True
        with pytest.raises(TransportError):
            machine.initiate(_identity())

        assert db_session.query(PendingRegistration).count() == 0
        assert db_session.query(OtpEntry).count() == 0


# =============================================================================
# VERIFY OTP
# =============================================================================


class TestVerifyOtp:
    def test_correct_code_marks_verified(self, machine, pending, transport):
        verified = machine.verify_otp(pending.id, transport.last_code(PHONE))
        assert verified.otp_verified is True
        assert verified.state == "OTP_VERIFIED"
        assert verified.otp_attempts == 1

    def test_wrong_code_counts_attempt(self, machine, pending):
        with pytest.raises(InvalidCodeError) as exc:
            machine.verify_otp(pending.id, WRONG_CODE)

        assert exc.value.details["remaining_attempts"] == 4
        assert db.session.get(PendingRegistration, pending.id).otp_attempts == 1

    def test_attempts_exhausted_after_five_failures(self, machine, pending, transport, db_session):
        code = transport.last_code(PHONE)
        for expected_remaining in (4, 3, 2, 1, 0):
            with pytest.raises(InvalidCodeError) as exc:
                machine.verify_otp(pending.id, WRONG_CODE)
            assert exc.value.details["remaining_attempts"] == expected_remaining

        # Even the right code is refused once the budget is spent
        with pytest.raises(AttemptsExhaustedError):
            machine.verify_otp(pending.id, code)

        assert db_session.query(PendingRegistration).count() == 0
        assert db_session.query(OtpEntry).count() == 0

    def test_code_cannot_be_replayed(self, machine, pending, transport):
        code = transport.last_code(PHONE)
        machine.verify_otp(pending.id, code)

        with pytest.raises(AlreadyVerifiedError):
            machine.verify_otp(pending.id, code)

    def test_expired_registration(self, machine, pending, transport, db_session):
        _expire(pending.id)
        with pytest.raises(ExpiredError):
            machine.verify_otp(pending.id, transport.last_code(PHONE))
        assert db_session.query(PendingRegistration).count() == 0

    def test_unknown_registration(self, machine, db_session):
        with pytest.raises(NotFoundError):
            machine.verify_otp(999999, "123456")


class TestResendOtp:
    def test_resend_replaces_code_without_resetting_attempts(self, machine, pending, transport):
        first = transport.last_code(PHONE)
        with pytest.raises(InvalidCodeError):
            machine.verify_otp(pending.id, WRONG_CODE)

        refreshed = machine.resend_otp(pending.id)
        second = transport.last_code(PHONE)

        assert refreshed.otp_attempts == 1
        assert len(transport.messages) == 2
        if first != second:
            with pytest.raises(InvalidCodeError):
                machine.verify_otp(pending.id, first)
        assert machine.verify_otp(pending.id, second).otp_verified is True

    def test_resend_after_verification_rejected(self, machine, pending, transport):
        machine.verify_otp(pending.id, transport.last_code(PHONE))
        with pytest.raises(AlreadyVerifiedError):
            machine.resend_otp(pending.id)


# =============================================================================
# FINALIZE
# =============================================================================


class TestFinalize:
    def test_creates_subscriber_and_audit_trail(self, machine, pending, transport, db_session):
        machine.verify_otp(pending.id, transport.last_code(PHONE))
        subscriber, info = machine.finalize(pending.id)

        assert subscriber.phone == PHONE
        assert subscriber.date_of_birth == date(1980, 1, 1)
        assert subscriber.phone_verified_at is not None
        assert subscriber.token_balance_cents == 0
        assert subscriber.terms_accepted_at is not None
        assert info.is_of_legal_age is True
        assert db_session.query(PendingRegistration).count() == 0

        event_types = [event.event_type for event in list_events(subject_id=subscriber.id)]
        assert event_types == ["USER_REGISTRATION", "AGE_VERIFICATION", "ID_VERIFICATION"]
        id_event = list_events(subject_id=subscriber.id, event_type="ID_VERIFICATION")[0]
        assert id_event.event_metadata["national_id"] == "800101*******"

    def test_requires_verified_phone(self, machine, pending, db_session):
        with pytest.raises(ValidationError):
            machine.finalize(pending.id)
        assert db_session.query(Subscriber).count() == 0
        assert db_session.query(PendingRegistration).count() == 1

    def test_conflict_at_finalize_discards_pending(self, machine, pending, transport, make_subscriber, db_session):
        machine.verify_otp(pending.id, transport.last_code(PHONE))
        make_subscriber(phone="0831234567", national_id="8001015009087", email="first@example.co.za")

        with pytest.raises(ConflictError) as exc:
            machine.finalize(pending.id)

        assert exc.value.field == "national_id"
        assert db_session.query(PendingRegistration).count() == 0
        assert db_session.query(Subscriber).count() == 1

    def test_finalize_twice(self, machine, pending, transport):
        machine.verify_otp(pending.id, transport.last_code(PHONE))
        machine.finalize(pending.id)
        with pytest.raises(NotFoundError):
            machine.finalize(pending.id)

    def test_expired_after_verification(self, machine, pending, transport, db_session):
        machine.verify_otp(pending.id, transport.last_code(PHONE))
        _expire(pending.id)
        with pytest.raises(ExpiredError):
            machine.finalize(pending.id)
        assert db_session.query(Subscriber).count() == 0


# =============================================================================
# INSPECTION / MAINTENANCE
# =============================================================================


def test_list_pending_includes_decoded_age(machine, pending):
    result = machine.list_pending()
    assert result["pagination"]["total"] == 1
    row = result["registrations"][0]
    assert row["id"] == pending.id
    assert row["sex"] == "M"
    assert row["age"] >= 46
    assert row["national_id"] == "800101*******"


def test_sweep_expired(machine, pending, db_session):
    assert machine.sweep_expired() == 0
    _expire(pending.id)
    assert machine.sweep_expired() == 1
    assert db_session.query(PendingRegistration).count() == 0
