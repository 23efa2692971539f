# Overview: Flask API routes for the signed-in subscriber's token ledger.

from flask import Blueprint, request, jsonify, g

from ..errors import CoreError
from ..decorators import require_subscriber
from ..services import token_ledger_service
from ..validation import parse_pagination


subscribers_bp = Blueprint("subscribers", __name__, url_prefix="/api/subscribers")


@subscribers_bp.get("/token-transactions")
@require_subscriber
def token_transactions_route():
    try:
        page, limit = parse_pagination(request.args)
        result = token_ledger_service.list_transactions(g.current_subscriber.id, page=page, limit=limit)
        result["balance_cents"] = g.current_subscriber.token_balance_cents
        return jsonify(result), 200
    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
