# Overview: Subscriber OTP login, operator password authentication and account deactivation.

"""
Two kinds of principal authenticate against this service:

- Subscribers never have a password. They prove possession of their
  verified phone by consuming an OTP and receive a subscriber token.
- Operators (back-office staff) log in with username/email and password.
  Passwords are hashed with bcrypt (cost factor 12) and must meet the
  strength rules below.
"""

import re

import bcrypt
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, InvalidCodeError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Operator, Subscriber
from biggbuzz.time_utils import utcnow
from . import token_service
from .compliance_service import ComplianceRecorder, LoginMetadata, RequestContext
from .identity_service import mask_phone, normalize_email, normalize_phone
from .otp_service import OtpLedger


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    """
    Requirements:
    - Minimum 8 characters
    - At least one uppercase letter
    - At least one lowercase letter
    - At least one digit
    - At least one special character
    """
    if len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")

    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")

    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")

    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    """Validate strength, then hash with bcrypt (cost factor 12)."""
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        # Malformed stored hash
        return False


# =============================================================================
# Operators
# =============================================================================

def create_operator(username: str, email: str, password: str) -> Operator:
    username = (username or "").strip()
    if not username:
        raise ValidationError("username is required", {"field": "username"})
    email = normalize_email(email)
    if not email:
        raise ValidationError("email is required", {"field": "email"})

    existing = db.session.query(Operator).filter(
        db.or_(Operator.username == username, Operator.email == email)
    ).first()
    if existing:
        raise ConflictError("Username or email already exists", field="username" if existing.username == username else "email")

    operator = Operator(username=username, email=email, password_hash=hash_password(password))
    db.session.add(operator)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Username or email already exists", field="username")
    return operator


def authenticate_operator(username: str, password: str) -> tuple[Operator, str] | None:
    """
    Returns (operator, token) if credentials are valid, None otherwise.
    Updates last_login_at on success.
    """
    operator = db.session.query(Operator).filter(
        db.or_(Operator.username == username, Operator.email == (username or "").lower()),
        Operator.is_active.is_(True),
    ).first()

    if not operator or not verify_password(password or "", operator.password_hash):
        return None

    operator.last_login_at = utcnow()
    db.session.commit()
    return operator, token_service.issue_operator_token(operator)


# =============================================================================
# Subscribers
# =============================================================================

def _active_subscriber_by_phone(phone: str) -> Subscriber:
    subscriber = db.session.query(Subscriber).filter_by(phone=phone).first()
    if not subscriber or not subscriber.is_active:
        raise NotFoundError("No active account for this phone number", {"field": "phone"})
    return subscriber


def request_login_otp(
    phone: str,
    *,
    ledger: OtpLedger,
    recorder: ComplianceRecorder,
    channel: str = "sms",
    request: RequestContext | None = None,
) -> Subscriber:
    """Issue a login OTP to an existing, active subscriber."""
    phone = normalize_phone(phone)
    subscriber = _active_subscriber_by_phone(phone)

    ledger.issue(phone, channel=channel, subscriber_id=subscriber.id)

    recorder.record(
        LoginMetadata(phone=mask_phone(phone), stage="OTP_REQUESTED", success=True, channel=channel),
        subject_id=subscriber.id,
        description="Login OTP requested",
        request=request,
    )
    return subscriber


def login_with_otp(
    phone: str,
    code: str,
    *,
    ledger: OtpLedger,
    recorder: ComplianceRecorder,
    request: RequestContext | None = None,
) -> tuple[Subscriber, str]:
    """Consume the login OTP and return (subscriber, access token)."""
    phone = normalize_phone(phone)
    subscriber = _active_subscriber_by_phone(phone)

    if not ledger.verify(phone, code):
        recorder.record(
            LoginMetadata(phone=mask_phone(phone), stage="OTP_REJECTED", success=False),
            subject_id=subscriber.id,
            description="Login OTP rejected",
            request=request,
        )
        raise InvalidCodeError("Invalid or expired verification code")

    recorder.record(
        LoginMetadata(phone=mask_phone(phone), stage="OTP_VERIFIED", success=True),
        subject_id=subscriber.id,
        description="Subscriber logged in",
        request=request,
    )
    return subscriber, token_service.issue_subscriber_token(subscriber)


def deactivate_subscriber(subscriber_id: int) -> Subscriber:
    """Soft-deactivate; subscribers are never hard-deleted."""
    subscriber = db.session.get(Subscriber, subscriber_id)
    if not subscriber:
        raise NotFoundError("Subscriber not found", {"subscriber_id": subscriber_id})
    if subscriber.is_active:
        subscriber.is_active = False
        subscriber.deactivated_at = utcnow()
        db.session.commit()
    return subscriber
