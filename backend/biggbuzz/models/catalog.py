from __future__ import annotations

from ..extensions import db
from biggbuzz.time_utils import to_utc_z


class Product(db.Model):
    """
    Marketplace product.

    STOCK: stock_quantity is a mutable counter guarded by row locks and
    version_id (optimistic locking). It is decremented only by checkout and
    re-incremented only by cancellation, and may never go negative.

    in_stock is the availability flag set by catalog management; a product
    with stock but in_stock=False cannot be added to a cart or checked out.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        db.Index("ix_products_in_stock_quantity", "in_stock", "stock_quantity"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(32), nullable=True)  # FLOWER, EDIBLES, ACCESSORIES, ...

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=False)

    in_stock = db.Column(db.Boolean, nullable=False, default=True)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} stock={self.stock_quantity}>"

    @property
    def is_available(self) -> bool:
        return bool(self.in_stock) and self.stock_quantity > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "price_cents": self.price_cents,
            "in_stock": self.in_stock,
            "stock_quantity": self.stock_quantity,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Cart(db.Model):
    """One cart per subscriber, created lazily on first use."""
    __tablename__ = "carts"
    __table_args__ = (
        db.UniqueConstraint("subscriber_id", name="uq_carts_subscriber"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    subscriber_id = db.Column(db.Integer, db.ForeignKey("subscribers.id"), nullable=False, index=True)
    last_activity_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    subscriber = db.relationship("Subscriber", backref=db.backref("cart", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subscriber_id": self.subscriber_id,
            "last_activity_at": to_utc_z(self.last_activity_at),
            "created_at": to_utc_z(self.created_at),
        }


class CartItem(db.Model):
    """
    Cart line keyed by (cart, product, variant).

    variant is a non-null string ("" when the product has no variant) so the
    unique constraint also holds for variant-less lines.

    price_at_add_cents is a snapshot taken when the line is first inserted and
    is never updated; later price changes do not affect the cart.
    """
    __tablename__ = "cart_items"
    __table_args__ = (
        db.UniqueConstraint("cart_id", "product_id", "variant", name="uq_cart_items_cart_product_variant"),
        db.CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("carts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    variant = db.Column(db.String(255), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False)
    price_at_add_cents = db.Column(db.Integer, nullable=False)
    added_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    cart = db.relationship("Cart", backref=db.backref("items", lazy=True))
    product = db.relationship("Product")

    @property
    def line_total_cents(self) -> int:
        return self.price_at_add_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cart_id": self.cart_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "variant": self.variant or None,
            "quantity": self.quantity,
            "price_at_add_cents": self.price_at_add_cents,
            "line_total_cents": self.line_total_cents,
            "added_at": to_utc_z(self.added_at),
        }
