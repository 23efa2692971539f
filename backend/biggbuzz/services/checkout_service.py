# Overview: Atomic checkout and cancellation; converts a cart into an order, adjusting stock and the token ledger.

"""
CheckoutEngine owns the two shared counters of the marketplace:
product stock and subscriber token balance.

TRANSACTION DISCIPLINE:
- Every mutation runs in one write transaction (BEGIN IMMEDIATE on SQLite,
  SELECT ... FOR UPDATE elsewhere).
- Products are locked in ascending id order to keep lock acquisition
  deterministic across concurrent checkouts.
- Stock and balance checks happen after the locks are held, so they cannot
  go stale before the decrement.
- Any exception rolls back the whole unit: order, items, stock, ledger row
  and cart deletion.

Audit events are written after commit and never affect the outcome.
"""

from __future__ import annotations

from flask import current_app

from ..errors import (
    EmptyCartError,
    InsufficientBalanceError,
    InvalidTransitionError,
    InvariantViolationError,
    NotCancellableError,
    NotFoundError,
    OutOfStockError,
    ValidationError,
)
from ..extensions import db
from ..models import (
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatusHistory,
    Product,
    Subscriber,
    TokenTransaction,
    ORDER_STATUSES,
)
from ..time_utils import utcnow
from ..validation import DeliveryInfo
from .cart_service import compute_tax_cents
from .compliance_service import ComplianceRecorder, OrderMetadata, RequestContext
from .concurrency import begin_write, lock_for_update, run_with_retry
from .document_service import ensure_document_sequence, next_document_number
from .token_ledger_service import append_token_transaction


ORDER_DOCUMENT_TYPE = "ORDER"
ORDER_PREFIX = "ORD"

# Forward-only fulfilment path; CANCELLED is reachable only through cancel()
STATUS_TRANSITIONS = {
    "PENDING": ("CONFIRMED",),
    "CONFIRMED": ("PROCESSING",),
    "PROCESSING": ("SHIPPED",),
    "SHIPPED": ("DELIVERED",),
}


class CheckoutEngine:
    def __init__(self, tax_rate_bps: int, delivery_fees_cents: dict, recorder: ComplianceRecorder):
        self.tax_rate_bps = tax_rate_bps
        self.delivery_fees_cents = dict(delivery_fees_cents)
        self.recorder = recorder

    # ------------------------------------------------------------------
    # pricing
    # ------------------------------------------------------------------

    def quote(self, subtotal_cents: int, delivery_method: str) -> dict:
        if delivery_method not in self.delivery_fees_cents:
            raise ValidationError("Invalid delivery method", {"field": "delivery_method"})
        tax = compute_tax_cents(subtotal_cents, self.tax_rate_bps)
        fee = self.delivery_fees_cents[delivery_method]
        return {
            "subtotal_cents": subtotal_cents,
            "tax_cents": tax,
            "delivery_fee_cents": fee,
            "total_cents": subtotal_cents + tax + fee,
        }

    # ------------------------------------------------------------------
    # checkout
    # ------------------------------------------------------------------

    def checkout(self, subscriber_id: int, delivery: DeliveryInfo, *, request: RequestContext | None = None) -> Order:
        """
        Convert the subscriber's cart into a PENDING order.

        Raises EmptyCartError, OutOfStockError (naming the product),
        InsufficientBalanceError (naming the shortfall) or NotFoundError.
        """
        ensure_document_sequence(ORDER_DOCUMENT_TYPE)

        def _op() -> int:
            begin_write()

            subscriber = lock_for_update(db.session.query(Subscriber).filter_by(id=subscriber_id)).first()
            if not subscriber or not subscriber.is_active:
                raise NotFoundError("Subscriber not found", {"subscriber_id": subscriber_id})

            cart = db.session.query(Cart).filter_by(subscriber_id=subscriber_id).first()
            items = []
            if cart:
                items = db.session.query(CartItem).filter_by(cart_id=cart.id).order_by(CartItem.id.asc()).all()
            if not items:
                raise EmptyCartError("Cart is empty")

            requested: dict[int, int] = {}
            for item in items:
                requested[item.product_id] = requested.get(item.product_id, 0) + item.quantity

            product_ids = sorted(requested)
            products = {
                p.id: p
                for p in lock_for_update(
                    db.session.query(Product).filter(Product.id.in_(product_ids)).order_by(Product.id.asc())
                ).all()
            }

            for product_id in product_ids:
                product = products.get(product_id)
                wanted = requested[product_id]
                if not product or not product.in_stock or product.stock_quantity < wanted:
                    raise OutOfStockError(
                        f"Insufficient stock for {product.name if product else f'product {product_id}'}",
                        {
                            "product_id": product_id,
                            "product_name": product.name if product else None,
                            "requested": wanted,
                            "available": product.stock_quantity if product and product.in_stock else 0,
                        },
                    )

            subtotal = sum(item.price_at_add_cents * item.quantity for item in items)
            pricing = self.quote(subtotal, delivery.method)
            total = pricing["total_cents"]

            if delivery.payment_method == "TOKENS" and subscriber.token_balance_cents < total:
                raise InsufficientBalanceError(
                    "Insufficient token balance",
                    {
                        "required_cents": total,
                        "available_cents": subscriber.token_balance_cents,
                        "shortfall_cents": total - subscriber.token_balance_cents,
                    },
                )

            order = Order(
                order_number=next_document_number(document_type=ORDER_DOCUMENT_TYPE, prefix=ORDER_PREFIX),
                subscriber_id=subscriber.id,
                status="PENDING",
                payment_method=delivery.payment_method,
                subtotal_cents=pricing["subtotal_cents"],
                tax_cents=pricing["tax_cents"],
                delivery_fee_cents=pricing["delivery_fee_cents"],
                total_cents=total,
                delivery_method=delivery.method,
                street=delivery.street,
                city=delivery.city,
                province=delivery.province,
                postal_code=delivery.postal_code,
                country=delivery.country,
                notes=delivery.notes,
            )
            db.session.add(order)
            db.session.flush()

            for item in items:
                db.session.add(OrderItem(
                    order_id=order.id,
                    product_id=item.product_id,
                    variant=item.variant,
                    quantity=item.quantity,
                    price_at_order_cents=item.price_at_add_cents,
                ))

            for product_id in product_ids:
                product = products[product_id]
                product.stock_quantity -= requested[product_id]
                if product.stock_quantity < 0:
                    current_app.logger.error("Stock invariant violated for product %s", product_id)
                    raise InvariantViolationError("Stock cannot go negative", {"product_id": product_id})

            if delivery.payment_method == "TOKENS":
                append_token_transaction(
                    subscriber,
                    "PURCHASE",
                    -total,
                    order_id=order.id,
                    description=f"Order {order.order_number}",
                )

            db.session.add(OrderStatusHistory(
                order_id=order.id,
                from_status=None,
                to_status="PENDING",
                note="Order placed",
                actor_type="SUBSCRIBER",
                actor_id=subscriber.id,
            ))

            db.session.query(CartItem).filter_by(cart_id=cart.id).delete(synchronize_session=False)
            cart.last_activity_at = utcnow()

            db.session.commit()
            return order.id

        order_id = run_with_retry(_op)
        order = db.session.get(Order, order_id)

        self.recorder.record(
            OrderMetadata(
                order_number=order.order_number,
                total_cents=order.total_cents,
                payment_method=order.payment_method,
                item_count=sum(item.quantity for item in order.items),
            ),
            subject_id=subscriber_id,
            description=f"Order {order.order_number} placed",
            request=request,
        )
        current_app.logger.info("Order %s placed by subscriber %s", order.order_number, subscriber_id)
        return order

    # ------------------------------------------------------------------
    # cancel
    # ------------------------------------------------------------------

    def cancel(
        self,
        order_id: int,
        subscriber_id: int,
        *,
        reason: str | None = None,
        request: RequestContext | None = None,
    ) -> Order:
        """
        Cancel a PENDING order: restock every item and refund the full total.

        Cash-on-delivery orders have no PURCHASE entry and get no REFUND.
        """
        def _op() -> int:
            begin_write()

            order = lock_for_update(
                db.session.query(Order).filter_by(id=order_id, subscriber_id=subscriber_id)
            ).first()
            if not order:
                raise NotFoundError("Order not found", {"order_id": order_id})
            if order.status != "PENDING":
                raise NotCancellableError(
                    "Only pending orders can be cancelled",
                    {"order_id": order_id, "status": order.status},
                )

            items = db.session.query(OrderItem).filter_by(order_id=order.id).all()
            restock: dict[int, int] = {}
            for item in items:
                restock[item.product_id] = restock.get(item.product_id, 0) + item.quantity

            for product in lock_for_update(
                db.session.query(Product).filter(Product.id.in_(sorted(restock))).order_by(Product.id.asc())
            ).all():
                product.stock_quantity += restock[product.id]

            ledger_types = {
                tx_type
                for (tx_type,) in db.session.query(TokenTransaction.type).filter(TokenTransaction.order_id == order.id)
            }
            if "REFUND" in ledger_types:
                current_app.logger.error("Order %s already has a REFUND entry", order.order_number)
                raise InvariantViolationError("Order already refunded", {"order_id": order.id})

            if "PURCHASE" in ledger_types:
                subscriber = lock_for_update(db.session.query(Subscriber).filter_by(id=order.subscriber_id)).first()
                append_token_transaction(
                    subscriber,
                    "REFUND",
                    order.total_cents,
                    order_id=order.id,
                    description=f"Refund for cancelled order {order.order_number}",
                )

            now = utcnow()
            db.session.add(OrderStatusHistory(
                order_id=order.id,
                from_status=order.status,
                to_status="CANCELLED",
                note=reason or "Cancelled by subscriber",
                actor_type="SUBSCRIBER",
                actor_id=subscriber_id,
            ))
            order.status = "CANCELLED"
            order.cancelled_at = now
            order.cancellation_reason = reason

            db.session.commit()
            return order.id

        order = db.session.get(Order, run_with_retry(_op))

        self.recorder.record(
            OrderMetadata(
                order_number=order.order_number,
                total_cents=order.total_cents,
                payment_method=order.payment_method,
                item_count=sum(item.quantity for item in order.items),
                action="CANCELLED",
                reason=reason,
            ),
            subject_id=subscriber_id,
            description=f"Order {order.order_number} cancelled",
            request=request,
        )
        return order

    # ------------------------------------------------------------------
    # fulfilment
    # ------------------------------------------------------------------

    def update_status(
        self,
        order_id: int,
        new_status: str,
        *,
        operator_id: int | None = None,
        note: str | None = None,
    ) -> Order:
        new_status = (new_status or "").upper()
        if new_status not in ORDER_STATUSES:
            raise ValidationError("Unknown order status", {"field": "status", "status": new_status})
        if new_status == "CANCELLED":
            raise InvalidTransitionError("Use order cancellation to cancel an order", {"status": new_status})

        def _op() -> int:
            begin_write()
            order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
            if not order:
                raise NotFoundError("Order not found", {"order_id": order_id})
            if new_status not in STATUS_TRANSITIONS.get(order.status, ()):
                raise InvalidTransitionError(
                    f"Cannot move order from {order.status} to {new_status}",
                    {"order_id": order_id, "from": order.status, "to": new_status},
                )
            db.session.add(OrderStatusHistory(
                order_id=order.id,
                from_status=order.status,
                to_status=new_status,
                note=note,
                actor_type="OPERATOR",
                actor_id=operator_id,
            ))
            order.status = new_status
            db.session.commit()
            return order.id

        return db.session.get(Order, run_with_retry(_op))

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_order(self, order_id: int, subscriber_id: int | None = None) -> Order:
        query = db.session.query(Order).filter(Order.id == order_id)
        if subscriber_id is not None:
            query = query.filter(Order.subscriber_id == subscriber_id)
        order = query.first()
        if not order:
            raise NotFoundError("Order not found", {"order_id": order_id})
        return order

    def list_orders(self, subscriber_id: int, *, status: str | None = None, page: int = 1, limit: int = 20) -> dict:
        query = db.session.query(Order).filter(Order.subscriber_id == subscriber_id)
        if status:
            query = query.filter(Order.status == status.upper())
        total = query.count()
        orders = (
            query.order_by(Order.created_at.desc(), Order.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return {
            "orders": [order.to_dict() for order in orders],
            "pagination": {"page": page, "limit": limit, "total": total},
        }

    def status_history(self, order_id: int) -> list[OrderStatusHistory]:
        return (
            db.session.query(OrderStatusHistory)
            .filter_by(order_id=order_id)
            .order_by(OrderStatusHistory.id.asc())
            .all()
        )
