# Overview: Subscriber cart; lazy creation, price snapshots and race-safe quantity increments.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import NotFoundError, OutOfStockError, ValidationError
from ..extensions import db
from ..models import Cart, CartItem, Product, Subscriber
from ..time_utils import utcnow
from ..validation import MAX_CART_QUANTITY, coerce_int
from .concurrency import run_with_retry


def compute_tax_cents(subtotal_cents: int, tax_rate_bps: int) -> int:
    """Tax on subtotal, rounded half-up to the cent."""
    return (subtotal_cents * tax_rate_bps + 5000) // 10000


def get_cart(subscriber_id: int) -> Cart | None:
    return db.session.query(Cart).filter_by(subscriber_id=subscriber_id).first()


def get_or_create_cart(subscriber_id: int) -> Cart:
    cart = get_cart(subscriber_id)
    if cart:
        return cart

    subscriber = db.session.get(Subscriber, subscriber_id)
    if not subscriber or not subscriber.is_active:
        raise NotFoundError("Subscriber not found", {"subscriber_id": subscriber_id})

    cart = Cart(subscriber_id=subscriber_id, last_activity_at=utcnow())
    db.session.add(cart)
    try:
        db.session.commit()
    except IntegrityError:
        # Created concurrently
        db.session.rollback()
        cart = get_cart(subscriber_id)
        if not cart:
            raise
    return cart


def _find_item(cart_id: int, product_id: int, variant: str) -> CartItem | None:
    return (
        db.session.query(CartItem)
        .filter_by(cart_id=cart_id, product_id=product_id, variant=variant)
        .first()
    )


def _load_available_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found", {"product_id": product_id})
    if not product.in_stock:
        raise OutOfStockError(
            f"{product.name} is not available",
            {"product_id": product.id, "requested": 0, "available": 0},
        )
    return product


def _check_quantity(product: Product, quantity: int) -> None:
    if quantity > MAX_CART_QUANTITY:
        raise ValidationError(
            f"Quantity cannot exceed {MAX_CART_QUANTITY}",
            {"field": "quantity", "product_id": product.id, "maximum": MAX_CART_QUANTITY},
        )
    if quantity > product.stock_quantity:
        raise OutOfStockError(
            f"Insufficient stock for {product.name}",
            {"product_id": product.id, "requested": quantity, "available": product.stock_quantity},
        )


def _increment_item(cart_id: int, product: Product, variant: str, quantity: int) -> CartItem:
    """
    Atomic quantity += n for an existing line.

    The limit is part of the WHERE clause, so concurrent increments cannot
    push the line past the cap or the stock seen by this request.
    """
    limit = min(MAX_CART_QUANTITY, product.stock_quantity)
    result = db.session.execute(
        update(CartItem)
        .where(
            CartItem.cart_id == cart_id,
            CartItem.product_id == product.id,
            CartItem.variant == variant,
            CartItem.quantity + quantity <= limit,
        )
        .values(quantity=CartItem.quantity + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.rollback()
        existing = _find_item(cart_id, product.id, variant)
        current = existing.quantity if existing else 0
        _check_quantity(product, current + quantity)
        raise OutOfStockError(
            f"Insufficient stock for {product.name}",
            {"product_id": product.id, "requested": current + quantity, "available": product.stock_quantity},
        )
    db.session.execute(
        update(Cart).where(Cart.id == cart_id).values(last_activity_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return _find_item(cart_id, product.id, variant)


def add_item(subscriber_id: int, product_id: int, quantity, variant: str | None = None) -> CartItem:
    """
    Add quantity of a product to the subscriber's cart.

    An existing line for (product, variant) is incremented; otherwise a new
    line is inserted with the current price as its snapshot. If a concurrent
    request inserted the same line first, the unique constraint fires and
    the quantity is added to that line instead.
    """
    quantity = coerce_int(quantity, "quantity", minimum=1, maximum=MAX_CART_QUANTITY)
    variant = (variant or "").strip()

    def _op() -> CartItem:
        product = _load_available_product(product_id)
        cart = get_or_create_cart(subscriber_id)

        existing = _find_item(cart.id, product.id, variant)
        if existing:
            _check_quantity(product, existing.quantity + quantity)
            return _increment_item(cart.id, product, variant, quantity)

        _check_quantity(product, quantity)
        item = CartItem(
            cart_id=cart.id,
            product_id=product.id,
            variant=variant,
            quantity=quantity,
            price_at_add_cents=product.price_cents,
        )
        db.session.add(item)
        cart.last_activity_at = utcnow()
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            product = _load_available_product(product_id)
            return _increment_item(cart.id, product, variant, quantity)
        return item

    return run_with_retry(_op)


def _owned_item(subscriber_id: int, item_id: int) -> CartItem:
    item = (
        db.session.query(CartItem)
        .join(Cart, Cart.id == CartItem.cart_id)
        .filter(CartItem.id == item_id, Cart.subscriber_id == subscriber_id)
        .first()
    )
    if not item:
        raise NotFoundError("Cart item not found", {"item_id": item_id})
    return item


def update_item_quantity(subscriber_id: int, item_id: int, quantity) -> CartItem:
    quantity = coerce_int(quantity, "quantity", minimum=1, maximum=MAX_CART_QUANTITY)
    item = _owned_item(subscriber_id, item_id)
    product = _load_available_product(item.product_id)
    _check_quantity(product, quantity)

    item.quantity = quantity
    item.cart.last_activity_at = utcnow()
    db.session.commit()
    return item


def remove_item(subscriber_id: int, item_id: int) -> None:
    item = _owned_item(subscriber_id, item_id)
    item.cart.last_activity_at = utcnow()
    db.session.delete(item)
    db.session.commit()


def clear_cart(subscriber_id: int) -> int:
    cart = get_cart(subscriber_id)
    if not cart:
        return 0
    removed = db.session.query(CartItem).filter_by(cart_id=cart.id).delete(synchronize_session=False)
    cart.last_activity_at = utcnow()
    db.session.commit()
    return removed


def cart_summary(subscriber_id: int, tax_rate_bps: int) -> dict:
    cart = get_cart(subscriber_id)
    items = []
    if cart:
        items = db.session.query(CartItem).filter_by(cart_id=cart.id).order_by(CartItem.id.asc()).all()

    subtotal = sum(item.line_total_cents for item in items)
    tax = compute_tax_cents(subtotal, tax_rate_bps)
    return {
        "cart_id": cart.id if cart else None,
        "items": [item.to_dict() for item in items],
        "item_count": sum(item.quantity for item in items),
        "subtotal_cents": subtotal,
        "tax_cents": tax,
        "total_cents": subtotal + tax,
    }
