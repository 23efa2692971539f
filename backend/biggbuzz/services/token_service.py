# Overview: Signed access credentials for subscribers and operators (Flask-JWT-Extended).

from __future__ import annotations

from flask import current_app
from flask_jwt_extended import create_access_token

from ..models import Operator, Subscriber


def subscriber_claims(subscriber: Subscriber) -> dict:
    return {
        "role": "subscriber",
        "first_name": subscriber.first_name,
        "last_name": subscriber.last_name,
        "phone": subscriber.phone,
        "email": subscriber.email,
        "is_active": subscriber.is_active,
        "phone_verified": subscriber.phone_verified_at is not None,
        "terms_accepted": subscriber.terms_accepted,
    }


def issue_subscriber_token(subscriber: Subscriber) -> str:
    """Access token for a subscriber; identity is the subscriber id as a string."""
    return create_access_token(
        identity=str(subscriber.id),
        additional_claims=subscriber_claims(subscriber),
        expires_delta=current_app.config["JWT_ACCESS_TOKEN_EXPIRES"],
    )


def issue_operator_token(operator: Operator) -> str:
    return create_access_token(
        identity=str(operator.id),
        additional_claims={"role": "operator", "username": operator.username},
        expires_delta=current_app.config["JWT_ACCESS_TOKEN_EXPIRES"],
    )


def token_response(token: str) -> dict:
    """Wire shape returned by the login and registration-complete endpoints."""
    expires = current_app.config["JWT_ACCESS_TOKEN_EXPIRES"]
    return {
        "access_token": token,
        "token_type": "Bearer",
        "expires_in": int(expires.total_seconds()),
    }
