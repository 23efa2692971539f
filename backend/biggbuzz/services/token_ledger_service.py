# Overview: Append-only token ledger; the only writer of Subscriber.token_balance_cents.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..errors import InvariantViolationError, NotFoundError, ValidationError
from ..extensions import db
from ..models import Subscriber, TokenTransaction, TOKEN_TRANSACTION_TYPES
from .compliance_service import ComplianceRecorder, LedgerAlertMetadata
from .concurrency import begin_write, lock_for_update, run_with_retry


CREDIT_TYPES = ("DEPOSIT", "BONUS", "ADJUSTMENT")


def append_token_transaction(
    subscriber: Subscriber,
    tx_type: str,
    amount_cents: int,
    *,
    order_id: int | None = None,
    description: str | None = None,
) -> TokenTransaction:
    """
    Apply a signed amount to the subscriber balance and append the ledger row.

    Caller must hold the write lock on the subscriber and owns the commit.
    A resulting negative balance is an invariant violation, never clamped.
    """
    if tx_type not in TOKEN_TRANSACTION_TYPES:
        raise ValidationError(f"Unknown token transaction type: {tx_type}", {"type": tx_type})

    new_balance = subscriber.token_balance_cents + amount_cents
    if new_balance < 0:
        current_app.logger.error(
            "Ledger invariant violated: subscriber %s balance %s + %s < 0",
            subscriber.id, subscriber.token_balance_cents, amount_cents,
        )
        raise InvariantViolationError(
            "Token balance cannot go negative",
            {"subscriber_id": subscriber.id, "balance_cents": subscriber.token_balance_cents, "amount_cents": amount_cents},
        )

    subscriber.token_balance_cents = new_balance
    tx = TokenTransaction(
        subscriber_id=subscriber.id,
        order_id=order_id,
        type=tx_type,
        amount_cents=amount_cents,
        balance_cents=new_balance,
        status="COMPLETED",
        description=description,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def credit_tokens(
    subscriber_id: int,
    amount_cents: int,
    *,
    tx_type: str = "DEPOSIT",
    description: str | None = None,
) -> TokenTransaction:
    """Committed top-up (deposit, bonus or positive adjustment)."""
    if tx_type not in CREDIT_TYPES:
        raise ValidationError("Credit type must be DEPOSIT, BONUS or ADJUSTMENT", {"type": tx_type})
    if not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("amount_cents must be a positive integer", {"amount_cents": amount_cents})

    def _op():
        begin_write()
        subscriber = lock_for_update(db.session.query(Subscriber).filter_by(id=subscriber_id)).first()
        if not subscriber:
            raise NotFoundError("Subscriber not found", {"subscriber_id": subscriber_id})
        if not subscriber.is_active:
            raise ValidationError("Subscriber is deactivated", {"subscriber_id": subscriber_id})
        tx = append_token_transaction(subscriber, tx_type, amount_cents, description=description)
        db.session.commit()
        return tx

    return run_with_retry(_op)


def ledger_balance(subscriber_id: int) -> int:
    """Sum of all ledger entries for the subscriber."""
    total = (
        db.session.query(func.coalesce(func.sum(TokenTransaction.amount_cents), 0))
        .filter(TokenTransaction.subscriber_id == subscriber_id)
        .scalar()
    )
    return int(total or 0)


def check_ledger_consistency(subscriber_id: int, recorder: ComplianceRecorder | None = None) -> int:
    """
    Verify sum(amount_cents) == token_balance_cents.

    Returns the balance. On mismatch logs at ERROR, records a SECURITY_ALERT
    and raises InvariantViolationError.
    """
    subscriber = db.session.get(Subscriber, subscriber_id)
    if not subscriber:
        raise NotFoundError("Subscriber not found", {"subscriber_id": subscriber_id})

    expected = ledger_balance(subscriber_id)
    if expected != subscriber.token_balance_cents:
        current_app.logger.error(
            "Ledger mismatch for subscriber %s: ledger=%s balance=%s",
            subscriber_id, expected, subscriber.token_balance_cents,
        )
        (recorder or ComplianceRecorder()).record(
            LedgerAlertMetadata(
                check="token_balance",
                expected_cents=expected,
                actual_cents=subscriber.token_balance_cents,
            ),
            subject_id=subscriber_id,
            description="Token balance does not match ledger",
        )
        raise InvariantViolationError(
            "Token balance does not match ledger",
            {"subscriber_id": subscriber_id, "ledger_cents": expected, "balance_cents": subscriber.token_balance_cents},
        )
    return expected


def list_transactions(subscriber_id: int, page: int = 1, limit: int = 20) -> dict:
    page = max(1, page)
    limit = max(1, min(limit, 100))
    query = db.session.query(TokenTransaction).filter(TokenTransaction.subscriber_id == subscriber_id)
    total = query.count()
    rows = (
        query.order_by(TokenTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "transactions": [row.to_dict() for row in rows],
        "pagination": {"page": page, "limit": limit, "total": total},
    }
