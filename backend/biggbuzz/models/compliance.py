from __future__ import annotations

import json

from ..extensions import db
from biggbuzz.time_utils import utcnow, to_utc_z


class ComplianceEvent(db.Model):
    """
    Append-only audit log for regulatory review.

    EVENT TYPES:
    - USER_REGISTRATION, AGE_VERIFICATION, ID_VERIFICATION
    - LOGIN_ATTEMPT
    - ORDER_PLACED, ORDER_CANCELLED
    - SECURITY_ALERT

    metadata_json holds the serialized metadata dataclass for the event type.
    National IDs and phone numbers are stored masked.
    """
    __tablename__ = "compliance_events"
    __table_args__ = (
        db.Index("ix_compliance_events_subject_time", "subject_id", "occurred_at"),
        db.Index("ix_compliance_events_type_time", "event_type", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.Integer, db.ForeignKey("subscribers.id"), nullable=True)
    operator_id = db.Column(db.Integer, db.ForeignKey("operators.id"), nullable=True)
    event_type = db.Column(db.String(32), nullable=False)
    description = db.Column(db.String(255), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    ip_address = db.Column(db.String(45), nullable=True)  # IPv6 max length
    user_agent = db.Column(db.String(255), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def event_metadata(self) -> dict:
        if not self.metadata_json:
            return {}
        return json.loads(self.metadata_json)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "operator_id": self.operator_id,
            "event_type": self.event_type,
            "description": self.description,
            "metadata": self.event_metadata,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "occurred_at": to_utc_z(self.occurred_at),
        }
