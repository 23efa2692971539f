# Overview: Flask API routes for operators; assisted registration, token credits and order fulfilment.

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import CoreError
from ..decorators import require_operator
from ..services import auth_service, token_ledger_service, token_service
from ..services.compliance_service import RequestContext, list_events
from ..services.registry import get_checkout_engine, get_registration_machine
from ..validation import RegistrationIdentity, coerce_int, parse_pagination


admin_bp = Blueprint("admin", __name__, url_prefix="/api/admin")


@admin_bp.post("/login")
def operator_login_route():
    try:
        data = request.get_json() or {}
        username = data.get("username") or data.get("email")
        password = data.get("password")
        if not all([username, password]):
            return jsonify({"error": "username/email and password required"}), 400

        result = auth_service.authenticate_operator(username, password)
        if not result:
            return jsonify({"error": "Invalid credentials"}), 401

        operator, token = result
        return jsonify({"operator": operator.to_dict(), **token_service.token_response(token)}), 200

    except Exception:
        current_app.logger.exception("Operator login failed")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# Assisted registration
# =============================================================================

@admin_bp.post("/registrations")
@require_operator
def create_registration_route():
    """
    Initiate a registration on behalf of a subscriber.

    The OTP goes to the subscriber's phone; the operator relays the code
    back through verify-otp.
    """
    try:
        data = request.get_json() or {}
        identity = RegistrationIdentity.from_payload(data)
        pending = get_registration_machine().initiate(
            identity,
            source="ADMIN",
            operator_id=g.current_operator.id,
            channel=data.get("channel") or "sms",
            request=RequestContext.from_request(request),
        )
        return jsonify({"registration": pending.to_dict()}), 201

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create registration")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.get("/registrations")
@require_operator
def list_registrations_route():
    try:
        page, limit = parse_pagination(request.args)
        return jsonify(get_registration_machine().list_pending(page=page, limit=limit)), 200
    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code


@admin_bp.get("/registrations/<int:pending_id>")
@require_operator
def get_registration_route(pending_id: int):
    try:
        pending = get_registration_machine().get_status(pending_id)
        return jsonify({"registration": pending.to_dict()}), 200
    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code


@admin_bp.post("/registrations/<int:pending_id>/verify-otp")
@require_operator
def verify_registration_route(pending_id: int):
    try:
        data = request.get_json() or {}
        code = data.get("code")
        if not code:
            return jsonify({"error": "code required"}), 400

        pending = get_registration_machine().verify_otp(
            pending_id, code, request=RequestContext.from_request(request)
        )
        return jsonify({"registration": pending.to_dict(), "verified": True}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to verify registration OTP")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/registrations/<int:pending_id>/resend-otp")
@require_operator
def resend_registration_route(pending_id: int):
    try:
        data = request.get_json(silent=True) or {}
        pending = get_registration_machine().resend_otp(pending_id, channel=data.get("channel") or "sms")
        return jsonify({"registration": pending.to_dict()}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to resend registration OTP")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/registrations/<int:pending_id>/complete")
@require_operator
def complete_registration_route(pending_id: int):
    try:
        subscriber, info = get_registration_machine().finalize(
            pending_id, request=RequestContext.from_request(request)
        )
        return jsonify({"subscriber": subscriber.to_dict(), "age_verification": info.to_dict()}), 201

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to complete registration")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# Subscribers
# =============================================================================

@admin_bp.post("/subscribers/<int:subscriber_id>/tokens")
@require_operator
def credit_tokens_route(subscriber_id: int):
    """Body: amount_cents, type (DEPOSIT|BONUS|ADJUSTMENT), description."""
    try:
        data = request.get_json() or {}
        amount_cents = coerce_int(data.get("amount_cents"), "amount_cents", minimum=1)
        tx = token_ledger_service.credit_tokens(
            subscriber_id,
            amount_cents,
            tx_type=(data.get("type") or "DEPOSIT").upper(),
            description=data.get("description") or f"Credited by operator {g.current_operator.username}",
        )
        return jsonify({"transaction": tx.to_dict()}), 201

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to credit tokens")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.post("/subscribers/<int:subscriber_id>/deactivate")
@require_operator
def deactivate_subscriber_route(subscriber_id: int):
    try:
        subscriber = auth_service.deactivate_subscriber(subscriber_id)
        return jsonify({"subscriber": subscriber.to_dict()}), 200
    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to deactivate subscriber")
        return jsonify({"error": "Internal server error"}), 500


@admin_bp.get("/subscribers/<int:subscriber_id>/compliance-events")
@require_operator
def compliance_events_route(subscriber_id: int):
    events = list_events(subject_id=subscriber_id, event_type=request.args.get("event_type"))
    return jsonify({"events": [event.to_dict() for event in events]}), 200


# =============================================================================
# Orders
# =============================================================================

@admin_bp.put("/orders/<int:order_id>/status")
@require_operator
def update_order_status_route(order_id: int):
    try:
        data = request.get_json() or {}
        status = data.get("status")
        if not status:
            return jsonify({"error": "status required"}), 400

        order = get_checkout_engine().update_status(
            order_id, status, operator_id=g.current_operator.id, note=data.get("note")
        )
        return jsonify({"order": order.to_dict(include_items=True)}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500
