from __future__ import annotations

from ..extensions import db
from biggbuzz.time_utils import to_utc_z


ORDER_STATUSES = (
    "PENDING",
    "CONFIRMED",
    "PROCESSING",
    "PACKED",
    "SHIPPED",
    "OUT_FOR_DELIVERY",
    "DELIVERED",
    "CANCELLED",
    "REFUNDED",
)

PAYMENT_METHODS = ("TOKENS", "CASH_ON_DELIVERY")

DELIVERY_METHODS = ("EXPRESS", "STANDARD", "PICKUP")

TOKEN_TRANSACTION_TYPES = (
    "PURCHASE",
    "REFUND",
    "DEPOSIT",
    "WITHDRAWAL",
    "BONUS",
    "PENALTY",
    "ADJUSTMENT",
)


class Order(db.Model):
    """
    Checkout document.

    Money columns are integer cents:
    total_cents = subtotal_cents + tax_cents + delivery_fee_cents.

    Only PENDING orders can be cancelled by the subscriber; later states are
    reached through CheckoutEngine.update_status.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_orders_order_number"),
        db.Index("ix_orders_subscriber_status", "subscriber_id", "status"),
        db.Index("ix_orders_created_at", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False)
    subscriber_id = db.Column(db.Integer, db.ForeignKey("subscribers.id"), nullable=False, index=True)

    status = db.Column(db.String(32), nullable=False, default="PENDING")
    payment_method = db.Column(db.String(32), nullable=False, default="TOKENS")

    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    delivery_method = db.Column(db.String(16), nullable=False, default="STANDARD")
    street = db.Column(db.String(100), nullable=True)
    city = db.Column(db.String(50), nullable=True)
    province = db.Column(db.String(50), nullable=True)
    postal_code = db.Column(db.String(4), nullable=True)
    country = db.Column(db.String(64), nullable=True, default="South Africa")
    notes = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    subscriber = db.relationship("Subscriber", backref=db.backref("orders", lazy=True))

    def __repr__(self) -> str:
        return f"<Order {self.order_number} status={self.status} total={self.total_cents}>"

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "subscriber_id": self.subscriber_id,
            "status": self.status,
            "payment_method": self.payment_method,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "total_cents": self.total_cents,
            "delivery": {
                "method": self.delivery_method,
                "street": self.street,
                "city": self.city,
                "province": self.province,
                "postal_code": self.postal_code,
                "country": self.country,
                "notes": self.notes,
            },
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "cancellation_reason": self.cancellation_reason,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant = db.Column(db.String(255), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False)
    price_at_order_cents = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", backref=db.backref("items", lazy=True, order_by="OrderItem.id"))
    product = db.relationship("Product")

    @property
    def line_total_cents(self) -> int:
        return self.price_at_order_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "variant": self.variant or None,
            "quantity": self.quantity,
            "price_at_order_cents": self.price_at_order_cents,
            "line_total_cents": self.line_total_cents,
        }


class OrderStatusHistory(db.Model):
    """Append-only trail of order status changes."""
    __tablename__ = "order_status_history"
    __table_args__ = (
        db.Index("ix_order_status_history_order", "order_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False)
    from_status = db.Column(db.String(32), nullable=True)
    to_status = db.Column(db.String(32), nullable=False)
    note = db.Column(db.String(255), nullable=True)
    actor_type = db.Column(db.String(16), nullable=False, default="SUBSCRIBER")  # SUBSCRIBER, OPERATOR, SYSTEM
    actor_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "note": self.note,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "created_at": to_utc_z(self.created_at),
        }


class TokenTransaction(db.Model):
    """
    Append-only token ledger entry.

    amount_cents is signed (PURCHASE negative, REFUND/DEPOSIT positive) and
    balance_cents is the subscriber balance after this entry. For every
    subscriber the sum of amount_cents equals Subscriber.token_balance_cents.
    """
    __tablename__ = "token_transactions"
    __table_args__ = (
        db.Index("ix_token_transactions_subscriber", "subscriber_id", "created_at"),
        db.Index("ix_token_transactions_order_type", "order_id", "type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    subscriber_id = db.Column(db.Integer, db.ForeignKey("subscribers.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    type = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="COMPLETED")
    description = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscriber_id": self.subscriber_id,
            "order_id": self.order_id,
            "type": self.type,
            "amount_cents": self.amount_cents,
            "balance_cents": self.balance_cents,
            "status": self.status,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
        }


class DocumentSequence(db.Model):
    """
    Per document-type counter.

    next_number is advanced with a single UPDATE ... SET next_number =
    next_number + 1 inside the caller's write transaction.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_document_sequences_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
