# Overview: Flask API routes for checkout, order lookup and cancellation.

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import CoreError
from ..decorators import require_subscriber
from ..services.compliance_service import RequestContext
from ..services.registry import get_checkout_engine
from ..validation import DeliveryInfo, parse_pagination


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("")
@require_subscriber
def list_orders_route():
    try:
        page, limit = parse_pagination(request.args)
        result = get_checkout_engine().list_orders(
            g.current_subscriber.id, status=request.args.get("status"), page=page, limit=limit
        )
        return jsonify(result), 200
    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.post("")
@require_subscriber
def checkout_route():
    """
    Checkout the current cart.

    Body: delivery_method (EXPRESS|STANDARD|PICKUP), payment_method
    (TOKENS|CASH_ON_DELIVERY), delivery_address {street, city, province,
    postal_code, country}, notes.
    """
    try:
        delivery = DeliveryInfo.from_payload(request.get_json() or {})
        order = get_checkout_engine().checkout(
            g.current_subscriber.id, delivery, request=RequestContext.from_request(request)
        )
        return jsonify({"order": order.to_dict(include_items=True)}), 201

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Checkout failed")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_subscriber
def get_order_route(order_id: int):
    try:
        engine = get_checkout_engine()
        order = engine.get_order(order_id, subscriber_id=g.current_subscriber.id)
        return jsonify({
            "order": order.to_dict(include_items=True),
            "status_history": [row.to_dict() for row in engine.status_history(order.id)],
        }), 200
    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code


@orders_bp.delete("/<int:order_id>")
@require_subscriber
def cancel_order_route(order_id: int):
    try:
        data = request.get_json(silent=True) or {}
        order = get_checkout_engine().cancel(
            order_id,
            g.current_subscriber.id,
            reason=data.get("reason"),
            request=RequestContext.from_request(request),
        )
        return jsonify({"order": order.to_dict(include_items=True)}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
