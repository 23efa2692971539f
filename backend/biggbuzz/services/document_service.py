# Overview: Gap-tolerant document numbering (order numbers) backed by DocumentSequence rows.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence


class DocumentSequenceError(Exception):
    """Raised when document sequence operations fail."""
    pass


def ensure_document_sequence(document_type: str) -> None:
    """
    Create the counter row for document_type if missing.

    Runs in its own transaction so that next_document_number never has to
    insert (and risk rolling back) inside a caller's write transaction.
    """
    if not document_type:
        raise DocumentSequenceError("document_type is required")
    if db.session.query(DocumentSequence.id).filter_by(document_type=document_type).first():
        return
    db.session.add(DocumentSequence(document_type=document_type, next_number=1))
    try:
        db.session.commit()
    except IntegrityError:
        # Created concurrently
        db.session.rollback()


def next_document_number(*, document_type: str, prefix: str, pad: int = 6) -> str:
    """
    Allocate the next number inside the caller's transaction.

    The UPDATE takes the row lock; if the caller rolls back, the number is
    released with it.
    """
    result = db.session.execute(
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise DocumentSequenceError(f"No sequence configured for {document_type}")

    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )
    return f"{prefix}-{current - 1:0{pad}d}"
