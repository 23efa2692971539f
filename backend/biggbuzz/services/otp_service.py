# Overview: One-time passcode ledger; single live code per phone with atomic compare-and-consume.

from __future__ import annotations

import hashlib
import secrets
from datetime import timedelta

from flask import current_app
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from ..errors import TransportError
from ..extensions import db
from ..models import OtpEntry
from ..time_utils import utcnow
from .concurrency import begin_write, run_with_retry
from .identity_service import mask_phone, normalize_phone
from .sms_service import SmsTransport, otp_message


OTP_LENGTH = 6


def hash_code(phone: str, code: str) -> str:
    """SHA-256 digest of "phone:code"; the plaintext code is never stored."""
    return hashlib.sha256(f"{phone}:{code}".encode("utf-8")).hexdigest()


def generate_code() -> str:
    return str(secrets.randbelow(900000) + 100000)


class OtpLedger:
    """
    Issues and consumes one-time passcodes.

    INVARIANTS:
    - At most one live entry per phone; issuing replaces the previous one.
    - A code verifies successfully at most once (the verifying DELETE removes it).
    - Expired and mismatched codes are reported identically (False).
    """

    def __init__(self, transport: SmsTransport, ttl_minutes: int = 10):
        self.transport = transport
        self.ttl_minutes = ttl_minutes

    def issue(
        self,
        phone: str,
        *,
        channel: str = "sms",
        subscriber_id: int | None = None,
        pending_registration_id: int | None = None,
    ) -> str:
        """
        Create a fresh code for phone and dispatch it.

        Returns the plaintext code (callers must not expose it over the API).
        Raises TransportError if dispatch fails; the entry is removed first.
        """
        phone = normalize_phone(phone)
        code = generate_code()
        digest = hash_code(phone, code)

        def _op():
            for attempt in range(3):
                begin_write()
                db.session.execute(delete(OtpEntry).where(OtpEntry.phone == phone))
                db.session.add(OtpEntry(
                    phone=phone,
                    code_hash=digest,
                    channel=channel,
                    subscriber_id=subscriber_id,
                    pending_registration_id=pending_registration_id,
                    expires_at=utcnow() + timedelta(minutes=self.ttl_minutes),
                ))
                try:
                    db.session.commit()
                    return
                except IntegrityError:
                    # Another issuer inserted between our delete and insert
                    db.session.rollback()
                    if attempt >= 2:
                        raise

        run_with_retry(_op)

        try:
            self.transport.send(phone, otp_message(code, self.ttl_minutes), channel=channel)
        except TransportError:
            current_app.logger.warning("OTP dispatch to %s failed; discarding code", mask_phone(phone))
            # Only remove the entry if a concurrent issue has not replaced it
            db.session.execute(
                delete(OtpEntry).where(OtpEntry.phone == phone, OtpEntry.code_hash == digest)
            )
            db.session.commit()
            raise

        return code

    def verify(self, phone: str, code, *, commit: bool = True) -> bool:
        """
        Consume the live code for phone if it matches and has not expired.

        The match and the consumption are one DELETE statement, so two
        concurrent verifications of the same code cannot both succeed.
        With commit=False the caller owns the surrounding transaction.
        """
        phone = normalize_phone(phone)
        code = str(code or "").strip()
        now = utcnow()

        consumed = 0
        if len(code) == OTP_LENGTH and code.isdigit():
            result = db.session.execute(
                delete(OtpEntry).where(
                    OtpEntry.phone == phone,
                    OtpEntry.code_hash == hash_code(phone, code),
                    OtpEntry.expires_at > now,
                )
            )
            consumed = result.rowcount

        # Lazy expiry for this phone
        db.session.execute(
            delete(OtpEntry).where(OtpEntry.phone == phone, OtpEntry.expires_at <= now)
        )

        if commit:
            db.session.commit()
        return consumed == 1

    def has_live_code(self, phone: str) -> bool:
        phone = normalize_phone(phone)
        return (
            db.session.query(OtpEntry.id)
            .filter(OtpEntry.phone == phone, OtpEntry.expires_at > utcnow())
            .first()
            is not None
        )

    def cleanup_expired(self) -> int:
        """Delete every expired entry. Returns the number removed."""
        result = db.session.execute(delete(OtpEntry).where(OtpEntry.expires_at <= utcnow()))
        db.session.commit()
        return result.rowcount or 0
