"""
Checkout, cancellation and fulfilment against the stock and token ledgers.
"""

import pytest

from biggbuzz.errors import (
    EmptyCartError,
    InsufficientBalanceError,
    InvalidTransitionError,
    InvariantViolationError,
    NotCancellableError,
    NotFoundError,
    OutOfStockError,
    ValidationError,
)
from biggbuzz.extensions import db
from biggbuzz.models import (
    CartItem,
    ComplianceEvent,
    Order,
    Product,
    Subscriber,
    TokenTransaction,
)
from biggbuzz.services import cart_service, token_ledger_service
from biggbuzz.services.registry import get_checkout_engine
from biggbuzz.validation import DeliveryInfo


STANDARD = DeliveryInfo(
    method="STANDARD",
    payment_method="TOKENS",
    street="12 Long Street",
    city="Cape Town",
    province="Western Cape",
    postal_code="8001",
)
COD = DeliveryInfo(
    method="STANDARD",
    payment_method="CASH_ON_DELIVERY",
    street="12 Long Street",
    city="Cape Town",
    province="Western Cape",
    postal_code="8001",
)
PICKUP = DeliveryInfo(method="PICKUP", payment_method="TOKENS")


@pytest.fixture
def engine(db_session):
    return get_checkout_engine()


@pytest.fixture
def funded(make_subscriber):
    return make_subscriber(balance_cents=50000)


def _stock(product_id):
    return db.session.get(Product, product_id).stock_quantity


def _balance(subscriber_id):
    return db.session.get(Subscriber, subscriber_id).token_balance_cents


# =============================================================================
# CHECKOUT
# =============================================================================


class TestCheckout:
    def test_standard_delivery_totals(self, engine, funded, product, db_session):
        cart_service.add_item(funded.id, product.id, 2)
        order = engine.checkout(funded.id, STANDARD)

        assert order.subtotal_cents == 20000
        assert order.tax_cents == 2000
        assert order.delivery_fee_cents == 2500
        assert order.total_cents == 24500
        assert order.status == "PENDING"
        assert order.order_number == "ORD-000001"
        assert [(i.product_id, i.quantity, i.price_at_order_cents) for i in order.items] == [(product.id, 2, 10000)]

        assert _stock(product.id) == 8
        assert _balance(funded.id) == 50000 - 24500
        assert db_session.query(CartItem).count() == 0

        purchase = db_session.query(TokenTransaction).filter_by(order_id=order.id).one()
        assert purchase.type == "PURCHASE"
        assert purchase.amount_cents == -24500
        assert purchase.balance_cents == 25500

        assert token_ledger_service.check_ledger_consistency(funded.id) == 25500
        assert db_session.query(ComplianceEvent).filter_by(event_type="ORDER_PLACED").count() == 1

    def test_insufficient_balance_leaves_everything_intact(self, engine, make_subscriber, product, db_session):
        subscriber = make_subscriber(balance_cents=20000)
        cart_service.add_item(subscriber.id, product.id, 2)

        with pytest.raises(InsufficientBalanceError) as exc:
            engine.checkout(subscriber.id, STANDARD)

        assert exc.value.details == {
            "required_cents": 24500,
            "available_cents": 20000,
            "shortfall_cents": 4500,
        }
        assert _stock(product.id) == 10
        assert _balance(subscriber.id) == 20000
        assert db_session.query(CartItem).one().quantity == 2
        assert db_session.query(Order).count() == 0

    def test_cash_on_delivery_does_not_touch_balance(self, engine, subscriber, product, db_session):
        cart_service.add_item(subscriber.id, product.id, 1)
        order = engine.checkout(subscriber.id, COD)

        assert order.payment_method == "CASH_ON_DELIVERY"
        assert _balance(subscriber.id) == 0
        assert db_session.query(TokenTransaction).count() == 0
        assert _stock(product.id) == 9

    def test_pickup_has_no_fee(self, engine, funded, product):
        cart_service.add_item(funded.id, product.id, 1)
        order = engine.checkout(funded.id, PICKUP)
        assert order.delivery_fee_cents == 0
        assert order.total_cents == 11000
        assert order.street is None

    def test_empty_cart(self, engine, funded):
        with pytest.raises(EmptyCartError):
            engine.checkout(funded.id, STANDARD)

    def test_stock_fell_below_cart_quantity(self, engine, funded, product, db_session):
        cart_service.add_item(funded.id, product.id, 5)
        product.stock_quantity = 3
        db_session.commit()

        with pytest.raises(OutOfStockError) as exc:
            engine.checkout(funded.id, STANDARD)

        assert exc.value.details["product_id"] == product.id
        assert exc.value.details["product_name"] == product.name
        assert exc.value.details["requested"] == 5
        assert exc.value.details["available"] == 3
        assert _balance(funded.id) == 50000
        assert db_session.query(CartItem).count() == 1

    def test_product_withdrawn_after_adding(self, engine, funded, product, db_session):
        cart_service.add_item(funded.id, product.id, 1)
        product.in_stock = False
        db_session.commit()

        with pytest.raises(OutOfStockError):
            engine.checkout(funded.id, STANDARD)

    def test_variant_lines_share_stock(self, engine, funded, make_product):
        product = make_product(price_cents=1000, stock=3)
        cart_service.add_item(funded.id, product.id, 2, variant="red")
        cart_service.add_item(funded.id, product.id, 2, variant="blue")

        with pytest.raises(OutOfStockError) as exc:
            engine.checkout(funded.id, STANDARD)
        assert exc.value.details["requested"] == 4

    def test_uses_snapshot_price(self, engine, funded, product, db_session):
        cart_service.add_item(funded.id, product.id, 1)
        product.price_cents = 99900
        db_session.commit()

        order = engine.checkout(funded.id, PICKUP)
        assert order.subtotal_cents == 10000

    def test_order_numbers_are_sequential(self, engine, funded, product):
        numbers = []
        for _ in range(3):
            cart_service.add_item(funded.id, product.id, 1)
            numbers.append(engine.checkout(funded.id, PICKUP).order_number)
        assert numbers == ["ORD-000001", "ORD-000002", "ORD-000003"]


# =============================================================================
# CANCEL
# =============================================================================


class TestCancel:
    def test_cancel_restocks_and_refunds(self, engine, funded, product, db_session):
        cart_service.add_item(funded.id, product.id, 2)
        order = engine.checkout(funded.id, STANDARD)

        cancelled = engine.cancel(order.id, funded.id, reason="Changed my mind")

        assert cancelled.status == "CANCELLED"
        assert cancelled.cancelled_at is not None
        assert cancelled.cancellation_reason == "Changed my mind"
        assert _stock(product.id) == 10
        assert _balance(funded.id) == 50000

        refund = db_session.query(TokenTransaction).filter_by(order_id=order.id, type="REFUND").one()
        assert refund.amount_cents == 24500
        assert token_ledger_service.check_ledger_consistency(funded.id) == 50000

        history = [(h.from_status, h.to_status) for h in engine.status_history(order.id)]
        assert history == [(None, "PENDING"), ("PENDING", "CANCELLED")]
        assert db_session.query(ComplianceEvent).filter_by(event_type="ORDER_CANCELLED").count() == 1

    def test_cancel_twice_rejected(self, engine, funded, product, db_session):
        cart_service.add_item(funded.id, product.id, 1)
        order = engine.checkout(funded.id, STANDARD)
        engine.cancel(order.id, funded.id)

        with pytest.raises(NotCancellableError):
            engine.cancel(order.id, funded.id)
        assert db_session.query(TokenTransaction).filter_by(type="REFUND").count() == 1
        assert _stock(product.id) == 10

    def test_confirmed_order_not_cancellable(self, engine, funded, product, operator):
        cart_service.add_item(funded.id, product.id, 2)
        order = engine.checkout(funded.id, STANDARD)
        engine.update_status(order.id, "CONFIRMED", operator_id=operator.id)

        with pytest.raises(NotCancellableError):
            engine.cancel(order.id, funded.id)

        assert _stock(product.id) == 8
        assert _balance(funded.id) == 25500

    def test_cannot_cancel_another_subscribers_order(self, engine, funded, make_subscriber, product):
        cart_service.add_item(funded.id, product.id, 1)
        order = engine.checkout(funded.id, STANDARD)
        other = make_subscriber(phone="0831234567")

        with pytest.raises(NotFoundError):
            engine.cancel(order.id, other.id)

    def test_cash_on_delivery_cancel_has_no_refund(self, engine, subscriber, product, db_session):
        cart_service.add_item(subscriber.id, product.id, 1)
        order = engine.checkout(subscriber.id, COD)
        engine.cancel(order.id, subscriber.id)

        assert db_session.query(TokenTransaction).count() == 0
        assert _stock(product.id) == 10

    def test_existing_refund_is_an_invariant_violation(self, engine, funded, product, db_session):
        cart_service.add_item(funded.id, product.id, 1)
        order = engine.checkout(funded.id, PICKUP)
        db_session.add(TokenTransaction(
            subscriber_id=funded.id,
            order_id=order.id,
            type="REFUND",
            amount_cents=0,
            balance_cents=_balance(funded.id),
        ))
        db_session.commit()

        with pytest.raises(InvariantViolationError):
            engine.cancel(order.id, funded.id)
        assert db.session.get(Order, order.id).status == "PENDING"
        assert _stock(product.id) == 9


# =============================================================================
# FULFILMENT
# =============================================================================


class TestUpdateStatus:
    def test_forward_path(self, engine, funded, product, operator):
        cart_service.add_item(funded.id, product.id, 1)
        order = engine.checkout(funded.id, PICKUP)

        for status in ("CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED"):
            order = engine.update_status(order.id, status, operator_id=operator.id)
            assert order.status == status

        history = engine.status_history(order.id)
        assert len(history) == 5
        assert history[-1].actor_type == "OPERATOR"

    def test_skipping_a_state_rejected(self, engine, funded, product):
        cart_service.add_item(funded.id, product.id, 1)
        order = engine.checkout(funded.id, PICKUP)
        with pytest.raises(InvalidTransitionError):
            engine.update_status(order.id, "SHIPPED")

    def test_cancel_through_status_update_rejected(self, engine, funded, product):
        cart_service.add_item(funded.id, product.id, 1)
        order = engine.checkout(funded.id, PICKUP)
        with pytest.raises(InvalidTransitionError):
            engine.update_status(order.id, "CANCELLED")

    def test_unknown_status(self, engine, db_session):
        with pytest.raises(ValidationError):
            engine.update_status(1, "LOST")


def test_list_orders_filters_by_status(engine, funded, product):
    for _ in range(2):
        cart_service.add_item(funded.id, product.id, 1)
        engine.checkout(funded.id, PICKUP)
    first = engine.list_orders(funded.id)["orders"][-1]
    engine.cancel(first["id"], funded.id)

    assert engine.list_orders(funded.id)["pagination"]["total"] == 2
    pending = engine.list_orders(funded.id, status="pending")
    assert [o["status"] for o in pending["orders"]] == ["PENDING"]


# =============================================================================
# TOKEN LEDGER
# =============================================================================


class TestTokenLedger:
    def test_credit_appends_entry(self, subscriber, db_session):
        tx = token_ledger_service.credit_tokens(subscriber.id, 5000, tx_type="BONUS")
        assert tx.balance_cents == 5000
        assert _balance(subscriber.id) == 5000
        assert token_ledger_service.ledger_balance(subscriber.id) == 5000

    @pytest.mark.parametrize("amount", [0, -100])
    def test_credit_must_be_positive(self, subscriber, amount):
        with pytest.raises(ValidationError):
            token_ledger_service.credit_tokens(subscriber.id, amount)

    def test_credit_type_restricted(self, subscriber):
        with pytest.raises(ValidationError):
            token_ledger_service.credit_tokens(subscriber.id, 100, tx_type="PURCHASE")

    def test_credit_unknown_subscriber(self, db_session):
        with pytest.raises(NotFoundError):
            token_ledger_service.credit_tokens(999999, 100)

    def test_debit_below_zero_is_refused(self, funded, db_session):
        subscriber = db_session.get(Subscriber, funded.id)
        with pytest.raises(InvariantViolationError):
            token_ledger_service.append_token_transaction(subscriber, "PENALTY", -50001)
        db_session.rollback()
        assert _balance(funded.id) == 50000

    def test_mismatch_raises_and_records_alert(self, funded, db_session):
        db_session.query(Subscriber).filter_by(id=funded.id).update({"token_balance_cents": 12345})
        db_session.commit()

        with pytest.raises(InvariantViolationError):
            token_ledger_service.check_ledger_consistency(funded.id)

        alert = db_session.query(ComplianceEvent).filter_by(event_type="SECURITY_ALERT").one()
        assert alert.event_metadata["expected_cents"] == 50000
        assert alert.event_metadata["actual_cents"] == 12345

    def test_list_transactions_newest_first(self, funded):
        token_ledger_service.credit_tokens(funded.id, 100)
        result = token_ledger_service.list_transactions(funded.id)
        assert [tx["amount_cents"] for tx in result["transactions"]] == [100, 50000]
        assert result["pagination"]["total"] == 2
