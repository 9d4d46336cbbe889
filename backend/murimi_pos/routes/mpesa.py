# Overview: Flask API routes for M-Pesa operations; parses input and returns JSON responses.

"""
M-Pesa routes.

POST /api/mpesa/callback is called by Safaricom, not by a logged-in user:
it is unauthenticated, exempt from rate limiting, and always answers in the
gateway's {ResultCode, ResultDesc} shape rather than the API envelope.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_auth, require_permission
from ..errors import AppError, error_response, internal_error_response, success_response
from ..permissions import INITIATE_MPESA
from ..services import payment_service
from ..validation import parse_mpesa_payment
from murimi_pos.time_utils import to_utc_z, utcnow

mpesa_bp = Blueprint("mpesa", __name__, url_prefix="/api/mpesa")


@mpesa_bp.post("/stk-push")
@require_auth
@require_permission(INITIATE_MPESA)
def stk_push_route():
    """
    Body: {amount (cents, 100..7,000,000), phoneNumber, saleId?}

    Returns 400 when the gateway refuses the push and 503 when it is unreachable.
    """
    try:
        req = parse_mpesa_payment(request.get_json(silent=True))
        result = payment_service.initiate_stk_push(req, user_id=g.current_user.id)
        return success_response(result)
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("M-Pesa STK push error")
        return internal_error_response()


@mpesa_bp.post("/callback")
def callback_route():
    try:
        payload = request.get_json(silent=True)
        current_app.logger.info("M-Pesa callback received: %s", payload)
        result = payment_service.process_callback(payload)
        return jsonify(result.to_dict()), 200 if result.accepted else 400
    except Exception:
        current_app.logger.exception("M-Pesa callback error")
        return jsonify({"ResultCode": 1, "ResultDesc": "Callback processing error"}), 500


@mpesa_bp.get("/callback")
def callback_health_route():
    return jsonify({
        "status": "M-Pesa callback endpoint is active",
        "timestamp": to_utc_z(utcnow()),
    })
