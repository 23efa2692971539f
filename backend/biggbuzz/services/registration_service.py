# Overview: Pending-registration state machine; initiate, verify OTP, finalize into a Subscriber, sweep.

"""
LIFECYCLE:
    CREATED -> OTP_SENT -> OTP_VERIFIED -> finalized (Subscriber created)

Terminal failures delete the pending row:
- EXPIRED: now > expires_at (checked lazily on every access and by sweep_expired)
- ATTEMPTS_EXHAUSTED: otp_attempts reached the configured maximum
- CONFLICTED: a Subscriber already holds the phone, email or national ID at finalize

Every state-changing operation runs inside one write transaction with the
pending row locked, so concurrent verify/finalize calls on the same record
serialize.
"""

from __future__ import annotations

from datetime import timedelta

from flask import current_app
from sqlalchemy import delete, or_
from sqlalchemy.exc import IntegrityError

from ..errors import (
    AlreadyVerifiedError,
    AttemptsExhaustedError,
    ConflictError,
    ExpiredError,
    InvalidCodeError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..models import OtpEntry, PendingRegistration, Subscriber
from ..time_utils import is_past, utcnow
from ..validation import RegistrationIdentity
from .compliance_service import (
    AgeVerificationMetadata,
    ComplianceRecorder,
    IdVerificationMetadata,
    RegistrationMetadata,
    RequestContext,
)
from .concurrency import begin_write, lock_for_update, run_with_retry
from .identity_service import (
    NationalIdInfo,
    clean_national_id,
    mask_national_id,
    mask_email,
    mask_phone,
    normalize_email,
    normalize_phone,
    parse_national_id,
)
from .otp_service import OtpLedger


SOURCES = ("SELF", "ADMIN")


def find_subscriber_conflict(phone: str, email: str | None, national_id: str) -> str | None:
    """Name of the first identity field already held by a Subscriber, else None."""
    if db.session.query(Subscriber.id).filter(Subscriber.phone == phone).first():
        return "phone"
    if db.session.query(Subscriber.id).filter(Subscriber.national_id == national_id).first():
        return "national_id"
    if email and db.session.query(Subscriber.id).filter(Subscriber.email == email).first():
        return "email"
    return None


def _find_pending(identity_match: list):
    return db.session.query(PendingRegistration).filter(or_(*identity_match)).first()


def _pending_conflict(pending: PendingRegistration, phone: str, email: str | None, national_id: str) -> str:
    if pending.phone == phone:
        return "phone"
    if pending.national_id == national_id:
        return "national_id"
    return "email"


class RegistrationMachine:
    def __init__(
        self,
        ledger: OtpLedger,
        recorder: ComplianceRecorder,
        *,
        ttl_minutes: int = 30,
        max_attempts: int = 5,
        minimum_age: int = 18,
    ):
        self.ledger = ledger
        self.recorder = recorder
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self.minimum_age = minimum_age

    # ------------------------------------------------------------------
    # initiate
    # ------------------------------------------------------------------

    def initiate(
        self,
        identity: RegistrationIdentity,
        *,
        source: str = "SELF",
        operator_id: int | None = None,
        channel: str = "sms",
        request: RequestContext | None = None,
    ) -> PendingRegistration:
        """
        Validate identity, create the pending record and send the first OTP.

        Raises ValidationError (bad ID, underage, bad phone, consent missing),
        ConflictError(field) or TransportError. Nothing is persisted when an
        error is raised.
        """
        if source not in SOURCES:
            raise ValidationError("Invalid registration source", {"field": "source"})
        if not (identity.first_name or "").strip() or not (identity.last_name or "").strip():
            raise ValidationError("First and last name are required", {"field": "first_name"})

        info = parse_national_id(identity.national_id, minimum_age=self.minimum_age)
        if not info.is_of_legal_age:
            raise ValidationError(
                f"Must be at least {self.minimum_age} years old to register",
                {"field": "national_id", "reason": "underage", "age": info.age},
            )

        phone = normalize_phone(identity.phone)
        email = normalize_email(identity.email)
        national_id = clean_national_id(identity.national_id)

        if source == "SELF" and not (identity.terms_accepted and identity.privacy_accepted):
            raise ValidationError("Terms and privacy policy must be accepted", {"field": "terms_accepted"})

        field = find_subscriber_conflict(phone, email, national_id)
        if field:
            current_app.logger.info(
                "Registration rejected, %s already registered (%s, %s)", field, mask_phone(phone), mask_email(email)
            )
            raise ConflictError("An account already exists with these details", field=field)

        identity_match = [PendingRegistration.phone == phone, PendingRegistration.national_id == national_id]
        if email:
            identity_match.append(PendingRegistration.email == email)

        def _op() -> int:
            begin_write()
            now = utcnow()
            db.session.execute(
                delete(PendingRegistration).where(
                    PendingRegistration.expires_at <= now,
                    or_(*identity_match),
                )
            )

            live = _find_pending(identity_match)
            if live:
                raise ConflictError(
                    "A registration is already in progress for these details",
                    field=_pending_conflict(live, phone, email, national_id),
                )

            pending = PendingRegistration(
                first_name=identity.first_name.strip(),
                last_name=identity.last_name.strip(),
                phone=phone,
                email=email,
                national_id=national_id,
                terms_accepted=bool(identity.terms_accepted),
                privacy_accepted=bool(identity.privacy_accepted),
                marketing_consent=bool(identity.marketing_consent),
                source=source,
                created_by_operator_id=operator_id,
                otp_attempts=0,
                expires_at=now + timedelta(minutes=self.ttl_minutes),
            )
            db.session.add(pending)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                # A concurrent initiation won the unique constraint; name the field it holds
                clash = _find_pending(identity_match)
                raise ConflictError(
                    "A registration is already in progress for these details",
                    field=_pending_conflict(clash, phone, email, national_id) if clash else "phone",
                )
            return pending.id

        pending_id = run_with_retry(_op)

        try:
            self.ledger.issue(phone, channel=channel, pending_registration_id=pending_id)
        except Exception:
            db.session.rollback()
            db.session.execute(delete(PendingRegistration).where(PendingRegistration.id == pending_id))
            db.session.commit()
            raise

        pending = db.session.get(PendingRegistration, pending_id)
        pending.otp_sent = True
        pending.last_otp_sent_at = utcnow()
        db.session.commit()

        self.recorder.record(
            RegistrationMetadata(
                registration_method=source,
                phone=mask_phone(phone),
                email_provided=email is not None,
                marketing_consent=bool(identity.marketing_consent),
                pending_registration_id=pending_id,
                stage="INITIATED",
            ),
            operator_id=operator_id,
            description="Registration initiated",
            request=request,
        )
        current_app.logger.info("Pending registration %s created (%s) for %s", pending_id, source, mask_phone(phone))
        return pending

    # ------------------------------------------------------------------
    # OTP
    # ------------------------------------------------------------------

    def _load_live(self, pending_id: int, *, lock: bool = False) -> PendingRegistration:
        """Fetch a pending row, deleting it and raising ExpiredError if past its TTL."""
        query = db.session.query(PendingRegistration).filter_by(id=pending_id)
        if lock:
            query = lock_for_update(query)
        pending = query.first()
        if not pending:
            raise NotFoundError("Registration not found", {"pending_id": pending_id})
        if is_past(pending.expires_at):
            db.session.delete(pending)
            db.session.commit()
            raise ExpiredError("Registration has expired, please start again", {"pending_id": pending_id})
        return pending

    def _exhaust(self, pending: PendingRegistration) -> None:
        pending_id = pending.id
        db.session.execute(delete(OtpEntry).where(OtpEntry.phone == pending.phone))
        db.session.delete(pending)
        db.session.commit()
        raise AttemptsExhaustedError(
            "Too many failed verification attempts, please start again",
            {"pending_id": pending_id, "max_attempts": self.max_attempts},
        )

    def resend_otp(self, pending_id: int, *, channel: str = "sms") -> PendingRegistration:
        """Issue a replacement code. The attempt counter is not reset."""
        pending = self._load_live(pending_id)
        if pending.otp_verified:
            raise AlreadyVerifiedError("Phone number already verified", details={"pending_id": pending_id})
        if pending.otp_attempts >= self.max_attempts:
            self._exhaust(pending)

        phone = pending.phone
        db.session.commit()
        self.ledger.issue(phone, channel=channel, pending_registration_id=pending_id)

        pending = db.session.get(PendingRegistration, pending_id)
        pending.otp_sent = True
        pending.last_otp_sent_at = utcnow()
        db.session.commit()
        return pending

    def verify_otp(self, pending_id: int, code, *, request: RequestContext | None = None) -> PendingRegistration:
        """
        Check a code against the pending registration's phone.

        The attempt counter is incremented before the code is compared, so a
        burst of guesses cannot exceed max_attempts comparisons.
        """
        def _op() -> PendingRegistration:
            begin_write()
            pending = self._load_live(pending_id, lock=True)
            if pending.otp_verified:
                raise AlreadyVerifiedError("Phone number already verified", details={"pending_id": pending_id})
            if pending.otp_attempts >= self.max_attempts:
                self._exhaust(pending)

            pending.otp_attempts += 1
            if not self.ledger.verify(pending.phone, code, commit=False):
                remaining = self.max_attempts - pending.otp_attempts
                db.session.commit()
                raise InvalidCodeError(
                    "Invalid or expired verification code",
                    {"pending_id": pending_id, "remaining_attempts": remaining},
                )

            pending.otp_verified = True
            pending.otp_verified_at = utcnow()
            db.session.commit()
            return pending

        return run_with_retry(_op)

    # ------------------------------------------------------------------
    # finalize
    # ------------------------------------------------------------------

    def finalize(self, pending_id: int, *, request: RequestContext | None = None) -> tuple[Subscriber, NationalIdInfo]:
        """
        Convert a verified pending registration into a Subscriber.

        Uniqueness is re-checked immediately before the insert and an
        IntegrityError from a concurrent finalize is reported the same way:
        the pending row is deleted and ConflictError(field) is raised.
        """
        def _op():
            begin_write()
            pending = self._load_live(pending_id, lock=True)
            if not pending.otp_verified:
                raise ValidationError("Phone number has not been verified", {"pending_id": pending_id})

            info = parse_national_id(pending.national_id, minimum_age=self.minimum_age)
            if not info.is_of_legal_age:
                raise ValidationError("Registrant is under the minimum age", {"field": "national_id"})

            snapshot = {
                "phone": pending.phone,
                "email": pending.email,
                "national_id": pending.national_id,
                "source": pending.source,
                "operator_id": pending.created_by_operator_id,
                "marketing_consent": pending.marketing_consent,
            }

            field = find_subscriber_conflict(pending.phone, pending.email, pending.national_id)
            if field:
                db.session.delete(pending)
                db.session.commit()
                raise ConflictError("An account already exists with these details", field=field)

            now = utcnow()
            subscriber = Subscriber(
                first_name=pending.first_name,
                last_name=pending.last_name,
                phone=pending.phone,
                email=pending.email,
                national_id=pending.national_id,
                date_of_birth=info.date_of_birth,
                phone_verified_at=now,
                terms_accepted=pending.terms_accepted,
                terms_accepted_at=now if pending.terms_accepted else None,
                privacy_accepted=pending.privacy_accepted,
                privacy_accepted_at=now if pending.privacy_accepted else None,
                marketing_consent=pending.marketing_consent,
                marketing_consent_at=now if pending.marketing_consent else None,
                is_active=True,
                token_balance_cents=0,
            )
            db.session.add(subscriber)
            db.session.delete(pending)
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                db.session.execute(delete(PendingRegistration).where(PendingRegistration.id == pending_id))
                db.session.commit()
                field = find_subscriber_conflict(snapshot["phone"], snapshot["email"], snapshot["national_id"])
                raise ConflictError("An account already exists with these details", field=field or "phone")
            return subscriber.id, info, snapshot

        subscriber_id, info, snapshot = run_with_retry(_op)
        self._audit_finalized(subscriber_id, pending_id, info, snapshot, request)

        current_app.logger.info("Pending registration %s finalized as subscriber %s", pending_id, subscriber_id)
        return db.session.get(Subscriber, subscriber_id), info

    def _audit_finalized(self, subscriber_id, pending_id, info, snapshot, request) -> None:
        operator_id = snapshot["operator_id"]
        self.recorder.record(
            RegistrationMetadata(
                registration_method=snapshot["source"],
                phone=mask_phone(snapshot["phone"]),
                email_provided=snapshot["email"] is not None,
                marketing_consent=snapshot["marketing_consent"],
                pending_registration_id=pending_id,
            ),
            subject_id=subscriber_id,
            operator_id=operator_id,
            description="Subscriber registered",
            request=request,
        )
        self.recorder.record(
            AgeVerificationMetadata(age=info.age, is_of_legal_age=info.is_of_legal_age, minimum_age=self.minimum_age),
            subject_id=subscriber_id,
            operator_id=operator_id,
            description="Age verified from national ID",
            request=request,
        )
        self.recorder.record(
            IdVerificationMetadata(
                national_id=mask_national_id(snapshot["national_id"]),
                citizen_resident=info.citizen_resident,
                sex=info.sex,
            ),
            subject_id=subscriber_id,
            operator_id=operator_id,
            description="National ID verified",
            request=request,
        )

    # ------------------------------------------------------------------
    # inspection / maintenance
    # ------------------------------------------------------------------

    def get_status(self, pending_id: int) -> PendingRegistration:
        return self._load_live(pending_id)

    def list_pending(self, page: int = 1, limit: int = 20) -> dict:
        query = db.session.query(PendingRegistration).filter(PendingRegistration.expires_at > utcnow())
        total = query.count()
        rows = (
            query.order_by(PendingRegistration.created_at.desc(), PendingRegistration.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        registrations = []
        for row in rows:
            data = row.to_dict()
            try:
                info = parse_national_id(row.national_id, minimum_age=self.minimum_age)
                data["age"] = info.age
                data["sex"] = info.sex
            except ValidationError:
                data["age"] = None
                data["sex"] = None
            registrations.append(data)
        return {
            "registrations": registrations,
            "pagination": {"page": page, "limit": limit, "total": total},
        }

    def sweep_expired(self) -> int:
        """Delete every pending registration past its TTL, regardless of state."""
        result = db.session.execute(delete(PendingRegistration).where(PendingRegistration.expires_at <= utcnow()))
        db.session.commit()
        removed = result.rowcount or 0
        if removed:
            current_app.logger.info("Swept %s expired pending registrations", removed)
        return removed
