# Overview: Flask API routes for the subscriber cart.

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import CoreError
from ..decorators import require_subscriber
from ..services import cart_service


cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


def _summary():
    return cart_service.cart_summary(g.current_subscriber.id, current_app.config["TAX_RATE_BPS"])


@cart_bp.get("")
@require_subscriber
def get_cart_route():
    return jsonify({"cart": _summary()}), 200


@cart_bp.post("")
@require_subscriber
def add_to_cart_route():
    """Body: product_id, quantity (1-50), variant (optional)."""
    try:
        data = request.get_json() or {}
        product_id = data.get("product_id")
        if not product_id:
            return jsonify({"error": "product_id required"}), 400

        item = cart_service.add_item(
            g.current_subscriber.id,
            int(product_id),
            data.get("quantity", 1),
            variant=data.get("variant"),
        )
        return jsonify({"item": item.to_dict(), "cart": _summary()}), 201

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except (TypeError, ValueError):
        return jsonify({"error": "product_id must be an integer"}), 400
    except Exception:
        current_app.logger.exception("Failed to add cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("")
@require_subscriber
def clear_cart_route():
    try:
        removed = cart_service.clear_cart(g.current_subscriber.id)
        return jsonify({"removed": removed, "cart": _summary()}), 200
    except Exception:
        current_app.logger.exception("Failed to clear cart")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.put("/items/<int:item_id>")
@require_subscriber
def update_cart_item_route(item_id: int):
    try:
        data = request.get_json() or {}
        item = cart_service.update_item_quantity(g.current_subscriber.id, item_id, data.get("quantity"))
        return jsonify({"item": item.to_dict(), "cart": _summary()}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update cart item")
        return jsonify({"error": "Internal server error"}), 500


@cart_bp.delete("/items/<int:item_id>")
@require_subscriber
def remove_cart_item_route(item_id: int):
    try:
        cart_service.remove_item(g.current_subscriber.id, item_id)
        return jsonify({"cart": _summary()}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to remove cart item")
        return jsonify({"error": "Internal server error"}), 500
