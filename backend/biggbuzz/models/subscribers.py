from __future__ import annotations

from ..extensions import db
from biggbuzz.time_utils import to_utc_z


def _mask_national_id(value: str | None) -> str | None:
    if not value or len(value) != 13:
        return value
    return value[:6] + "*******"


class Subscriber(db.Model):
    """
    Durable subscriber account.

    Created only by finalizing a PendingRegistration. Never hard-deleted:
    deactivation sets is_active=False.

    LEDGER: token_balance_cents is mutated exclusively through
    token_ledger_service.append_token_transaction, which appends a
    TokenTransaction carrying the resulting balance. The balance can never
    go negative.
    """
    __tablename__ = "subscribers"
    __table_args__ = (
        db.UniqueConstraint("phone", name="uq_subscribers_phone"),
        db.UniqueConstraint("email", name="uq_subscribers_email"),
        db.UniqueConstraint("national_id", name="uq_subscribers_national_id"),
        db.CheckConstraint("token_balance_cents >= 0", name="ck_subscribers_balance_non_negative"),
        db.Index("ix_subscribers_active", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    first_name = db.Column(db.String(64), nullable=False)
    last_name = db.Column(db.String(64), nullable=False)
    phone = db.Column(db.String(16), nullable=False)  # +27XXXXXXXXX
    email = db.Column(db.String(255), nullable=True)
    national_id = db.Column(db.String(13), nullable=False)
    date_of_birth = db.Column(db.Date, nullable=False)

    phone_verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    terms_accepted = db.Column(db.Boolean, nullable=False, default=False)
    terms_accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    privacy_accepted = db.Column(db.Boolean, nullable=False, default=False)
    privacy_accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    marketing_consent = db.Column(db.Boolean, nullable=False, default=False)
    marketing_consent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    token_balance_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Subscriber id={self.id} phone={self.phone!r} active={self.is_active}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "email": self.email,
            "national_id": _mask_national_id(self.national_id),
            "date_of_birth": self.date_of_birth.isoformat() if self.date_of_birth else None,
            "phone_verified_at": to_utc_z(self.phone_verified_at),
            "terms_accepted": self.terms_accepted,
            "privacy_accepted": self.privacy_accepted,
            "marketing_consent": self.marketing_consent,
            "is_active": self.is_active,
            "token_balance_cents": self.token_balance_cents,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class PendingRegistration(db.Model):
    """
    Time-boxed draft account awaiting OTP verification and finalization.

    LIFECYCLE: Created -> OtpSent -> OtpVerified -> Finalized (converted to a
    Subscriber and deleted), or deleted on expiry, attempt exhaustion or
    conflict.

    UNIQUENESS: phone, email and national_id are unique. Expired rows are
    purged before insert, so the constraints mean "at most one live pending
    record per identity field".
    """
    __tablename__ = "pending_registrations"
    __table_args__ = (
        db.UniqueConstraint("phone", name="uq_pending_registrations_phone"),
        db.UniqueConstraint("email", name="uq_pending_registrations_email"),
        db.UniqueConstraint("national_id", name="uq_pending_registrations_national_id"),
        db.Index("ix_pending_registrations_expires", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    first_name = db.Column(db.String(64), nullable=False)
    last_name = db.Column(db.String(64), nullable=False)
    phone = db.Column(db.String(16), nullable=False)
    email = db.Column(db.String(255), nullable=True)
    national_id = db.Column(db.String(13), nullable=False)

    terms_accepted = db.Column(db.Boolean, nullable=False, default=False)
    privacy_accepted = db.Column(db.Boolean, nullable=False, default=False)
    marketing_consent = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    source = db.Column(db.String(16), nullable=False, default="SELF")  # SELF, ADMIN
    created_by_operator_id = db.Column(db.Integer, db.ForeignKey("operators.id"), nullable=True, index=True)

    otp_sent = db.Column(db.Boolean, nullable=False, default=False)
    last_otp_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    otp_verified = db.Column(db.Boolean, nullable=False, default=False)
    otp_verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    otp_attempts = db.Column(db.Integer, nullable=False, default=0)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    created_by_operator = db.relationship("Operator", backref=db.backref("pending_registrations", lazy=True))

    @property
    def state(self) -> str:
        if self.otp_verified:
            return "OTP_VERIFIED"
        if self.otp_sent:
            return "OTP_SENT"
        return "CREATED"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "phone": self.phone,
            "email": self.email,
            "national_id": _mask_national_id(self.national_id),
            "source": self.source,
            "state": self.state,
            "created_by_operator_id": self.created_by_operator_id,
            "otp_sent": self.otp_sent,
            "last_otp_sent_at": to_utc_z(self.last_otp_sent_at),
            "otp_verified": self.otp_verified,
            "otp_verified_at": to_utc_z(self.otp_verified_at),
            "otp_attempts": self.otp_attempts,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
        }


class OtpEntry(db.Model):
    """
    Single live one-time passcode per phone number.

    Row existence is the "unconsumed" flag: verification deletes the row in
    the same statement that checks the code, so a code can be consumed once.
    Only a SHA-256 digest of "phone:code" is stored.
    """
    __tablename__ = "otp_entries"
    __table_args__ = (
        db.UniqueConstraint("phone", name="uq_otp_entries_phone"),
        db.Index("ix_otp_entries_expires", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    phone = db.Column(db.String(16), nullable=False)
    code_hash = db.Column(db.String(64), nullable=False)
    channel = db.Column(db.String(16), nullable=False, default="sms")

    subscriber_id = db.Column(db.Integer, db.ForeignKey("subscribers.id", ondelete="CASCADE"), nullable=True, index=True)
    pending_registration_id = db.Column(db.Integer, nullable=True, index=True)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phone": self.phone,
            "channel": self.channel,
            "subscriber_id": self.subscriber_id,
            "pending_registration_id": self.pending_registration_id,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
        }


class Operator(db.Model):
    """
    Back-office account allowed to initiate registrations on behalf of a
    subscriber and to move orders along their fulfilment states.

    Passwords are bcrypt hashes (see auth_service.hash_password).
    """
    __tablename__ = "operators"
    __table_args__ = (
        db.UniqueConstraint("username", name="uq_operators_username"),
        db.UniqueConstraint("email", name="uq_operators_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), nullable=False)
    email = db.Column(db.String(255), nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "is_active": self.is_active,
            "last_login_at": to_utc_z(self.last_login_at),
            "created_at": to_utc_z(self.created_at),
        }
