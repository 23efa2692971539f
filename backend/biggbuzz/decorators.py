# Overview: Credential decorators for API routes (subscriber and operator tokens).

from functools import wraps
from flask import jsonify, g
from flask_jwt_extended import get_jwt, get_jwt_identity, verify_jwt_in_request

from .extensions import db
from .models import Operator, Subscriber


def register_jwt_handlers(jwt_manager):
    """Answer credential failures with the same {"error": ...} body as the routes."""

    @jwt_manager.unauthorized_loader
    def _missing_token(reason):
        return jsonify({"error": "Authentication required"}), 401

    @jwt_manager.invalid_token_loader
    def _invalid_token(reason):
        return jsonify({"error": "Invalid or expired token"}), 401

    @jwt_manager.expired_token_loader
    def _expired_token(jwt_header, jwt_payload):
        return jsonify({"error": "Invalid or expired token"}), 401


def require_subscriber(f):
    """
    Require a valid subscriber token.

    Sets g.current_subscriber. Returns 401 for a missing, invalid or expired
    token or a deactivated account, 403 for an operator token.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        verify_jwt_in_request()
        if get_jwt().get("role") != "subscriber":
            return jsonify({"error": "Subscriber credentials required"}), 403

        subscriber = db.session.get(Subscriber, int(get_jwt_identity()))
        if not subscriber or not subscriber.is_active:
            return jsonify({"error": "Account is not active"}), 401

        g.current_subscriber = subscriber
        return f(*args, **kwargs)

    return decorated_function


def require_operator(f):
    """Require a valid operator token. Sets g.current_operator."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        verify_jwt_in_request()
        if get_jwt().get("role") != "operator":
            return jsonify({"error": "Operator credentials required"}), 403

        operator = db.session.get(Operator, int(get_jwt_identity()))
        if not operator or not operator.is_active:
            return jsonify({"error": "Account is not active"}), 401

        g.current_operator = operator
        return f(*args, **kwargs)

    return decorated_function
