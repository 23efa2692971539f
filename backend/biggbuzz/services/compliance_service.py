# Overview: Compliance audit sink; typed event metadata persisted after the primary transaction commits.

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import ClassVar, Optional, Union

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import ComplianceEvent


@dataclass(frozen=True)
class RequestContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_request(cls, req) -> "RequestContext":
        """Client address honouring X-Forwarded-For / X-Real-IP from the proxy."""
        if req is None:
            return cls()
        forwarded = req.headers.get("X-Forwarded-For", "")
        ip = forwarded.split(",")[0].strip() if forwarded else None
        ip = ip or req.headers.get("X-Real-IP") or req.remote_addr
        user_agent = req.headers.get("User-Agent")
        return cls(
            ip_address=ip[:45] if ip else None,
            user_agent=user_agent[:255] if user_agent else None,
        )


@dataclass(frozen=True)
class RegistrationMetadata:
    event_type: ClassVar[str] = "USER_REGISTRATION"
    registration_method: str  # SELF, ADMIN
    phone: str  # masked
    email_provided: bool
    marketing_consent: bool
    pending_registration_id: Optional[int] = None
    stage: str = "COMPLETED"  # INITIATED, COMPLETED


@dataclass(frozen=True)
class AgeVerificationMetadata:
    event_type: ClassVar[str] = "AGE_VERIFICATION"
    age: int
    is_of_legal_age: bool
    minimum_age: int
    method: str = "NATIONAL_ID"


@dataclass(frozen=True)
class IdVerificationMetadata:
    event_type: ClassVar[str] = "ID_VERIFICATION"
    national_id: str  # masked
    citizen_resident: bool
    sex: str
    checksum_valid: bool = True


@dataclass(frozen=True)
class LoginMetadata:
    event_type: ClassVar[str] = "LOGIN_ATTEMPT"
    phone: str  # masked
    stage: str  # OTP_REQUESTED, OTP_VERIFIED, OTP_REJECTED
    success: bool
    channel: str = "sms"


@dataclass(frozen=True)
class OrderMetadata:
    order_number: str
    total_cents: int
    payment_method: str
    item_count: int
    action: str = "PLACED"  # PLACED, CANCELLED
    reason: Optional[str] = None

    @property
    def event_type(self) -> str:
        return f"ORDER_{self.action}"


@dataclass(frozen=True)
class LedgerAlertMetadata:
    event_type: ClassVar[str] = "SECURITY_ALERT"
    check: str
    expected_cents: int
    actual_cents: int
    details: dict = field(default_factory=dict)


EventMetadata = Union[
    RegistrationMetadata,
    AgeVerificationMetadata,
    IdVerificationMetadata,
    LoginMetadata,
    OrderMetadata,
    LedgerAlertMetadata,
]


class ComplianceRecorder:
    """
    Append-only writer for ComplianceEvent rows.

    record() commits its own transaction and must be called once the
    business transaction has committed. Failures are logged and swallowed:
    an audit outage never undoes a completed registration or order.
    """

    def record(
        self,
        metadata: EventMetadata,
        *,
        subject_id: int | None = None,
        operator_id: int | None = None,
        description: str | None = None,
        request: RequestContext | None = None,
    ) -> ComplianceEvent | None:
        context = request or RequestContext()
        event = ComplianceEvent(
            subject_id=subject_id,
            operator_id=operator_id,
            event_type=metadata.event_type,
            description=description,
            metadata_json=json.dumps(asdict(metadata), default=str, sort_keys=True),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        try:
            db.session.add(event)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.warning(
                "Failed to record compliance event %s for subject %s", metadata.event_type, subject_id, exc_info=True
            )
            return None
        return event


def list_events(subject_id: int | None = None, event_type: str | None = None, limit: int = 100) -> list[ComplianceEvent]:
    query = db.session.query(ComplianceEvent)
    if subject_id is not None:
        query = query.filter(ComplianceEvent.subject_id == subject_id)
    if event_type:
        query = query.filter(ComplianceEvent.event_type == event_type)
    return query.order_by(ComplianceEvent.occurred_at.asc(), ComplianceEvent.id.asc()).limit(limit).all()
