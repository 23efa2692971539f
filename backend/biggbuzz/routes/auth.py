# Overview: Flask API routes for self-registration and subscriber OTP login.

# backend/biggbuzz/routes/auth.py
"""
Subscriber registration and login

FLOW:
1. POST /register                 -> pending registration, OTP sent
2. POST /register/<id>/verify-otp -> phone verified
3. POST /register/<id>/complete   -> subscriber created, access token issued

Login is passwordless: POST /send-otp then POST /login with the code.
"""

from flask import Blueprint, request, jsonify, current_app, g

from ..errors import CoreError
from ..decorators import require_subscriber
from ..services import auth_service, token_service
from ..services.compliance_service import RequestContext
from ..services.registry import get_otp_ledger, get_recorder, get_registration_machine
from ..validation import RegistrationIdentity


auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


@auth_bp.post("/register")
def register_route():
    """
    Start a self-service registration.

    Body: first_name, last_name, phone, national_id, email (optional),
    terms_accepted, privacy_accepted, marketing_consent, channel (sms|whatsapp).
    """
    try:
        data = request.get_json() or {}
        identity = RegistrationIdentity.from_payload(data)

        pending = get_registration_machine().initiate(
            identity,
            source="SELF",
            channel=data.get("channel") or "sms",
            request=RequestContext.from_request(request),
        )
        return jsonify({
            "registration": pending.to_dict(),
            "message": "Verification code sent",
        }), 201

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to start registration")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/register/<int:pending_id>/verify-otp")
def verify_registration_otp_route(pending_id: int):
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


@auth_bp.post("/register/<int:pending_id>/resend-otp")
def resend_registration_otp_route(pending_id: int):
    try:
        data = request.get_json(silent=True) or {}
        pending = get_registration_machine().resend_otp(pending_id, channel=data.get("channel") or "sms")
        return jsonify({"registration": pending.to_dict(), "message": "Verification code sent"}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to resend registration OTP")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/register/<int:pending_id>/complete")
def complete_registration_route(pending_id: int):
    """Finalize a verified registration and log the new subscriber in."""
    try:
        subscriber, info = get_registration_machine().finalize(
            pending_id, request=RequestContext.from_request(request)
        )
        token = token_service.issue_subscriber_token(subscriber)
        return jsonify({
            "subscriber": subscriber.to_dict(),
            "age_verification": info.to_dict(),
            **token_service.token_response(token),
        }), 201

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to complete registration")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/send-otp")
def send_login_otp_route():
    try:
        data = request.get_json() or {}
        phone = data.get("phone")
        if not phone:
            return jsonify({"error": "phone required"}), 400

        auth_service.request_login_otp(
            phone,
            ledger=get_otp_ledger(),
            recorder=get_recorder(),
            channel=data.get("channel") or "sms",
            request=RequestContext.from_request(request),
        )
        return jsonify({"message": "Verification code sent"}), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to send login OTP")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.post("/login")
def login_route():
    """Consume a login OTP and return the subscriber with an access token."""
    try:
        data = request.get_json() or {}
        phone = data.get("phone")
        code = data.get("code")
        if not all([phone, code]):
            return jsonify({"error": "phone and code required"}), 400

        subscriber, token = auth_service.login_with_otp(
            phone,
            code,
            ledger=get_otp_ledger(),
            recorder=get_recorder(),
            request=RequestContext.from_request(request),
        )
        return jsonify({
            "subscriber": subscriber.to_dict(),
            **token_service.token_response(token),
        }), 200

    except CoreError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to log in")
        return jsonify({"error": "Internal server error"}), 500


@auth_bp.get("/me")
@require_subscriber
def me_route():
    return jsonify({"subscriber": g.current_subscriber.to_dict()}), 200
