# Overview: Flask API routes for sales operations; parses input and returns JSON responses.

"""
Sales routes.

SECURITY:
- Creating and viewing sales requires CREATE_SALE / VIEW_SALES (cashiers only
  see their own sales; VIEW_ALL_SALES lifts that)
- Refunds require REFUND_SALE, voids require VOID_SALE (Manager/Admin)

Money fields in request and response bodies are integer cents.
"""

from flask import Blueprint, current_app, g, request

from ..decorators import require_auth, require_permission
from ..errors import AppError, ValidationError, error_response, internal_error_response, success_response
from ..permissions import CREATE_SALE, REFUND_SALE, VIEW_SALES, VOID_SALE
from ..security import sanitize_input
from ..services import refund_service, sales_service
from ..validation import parse_refund_request, parse_sale_request, parse_void_request
from murimi_pos.time_utils import parse_iso_datetime

sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


def _date_arg(name: str):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date")


@sales_bp.post("")
@require_auth
@require_permission(CREATE_SALE)
def create_sale_route():
    """
    Create a sale.

    Body: {cartItems: [{productId, quantity, wholesaleTierId?}], paymentMethod,
    paidAmount, discountAmount?, customerName?, customerPhone?, offlineId?,
    phoneNumber? (required for MPESA)}

    Returns 201 with the new sale, or 200 with the existing sale when the
    offlineId was already recorded. M-Pesa sales also carry the gateway's
    checkoutRequestId and customerMessage under "mpesa".
    """
    try:
        req = parse_sale_request(request.get_json(silent=True))
        result = sales_service.create_sale(req, user_id=g.current_user.id)
        data = result.sale.to_dict()
        if result.gateway:
            data["mpesa"] = result.gateway
        if not result.created:
            return success_response(data, 200, message="Sale already recorded")
        return success_response(data, 201)
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return internal_error_response()


@sales_bp.get("")
@require_auth
@require_permission(VIEW_SALES)
def list_sales_route():
    """
    Sales history, newest first.

    Query params: page, limit / per_page, startDate, endDate, cashierId,
    paymentMethod, status, search (sale number or customer).
    """
    try:
        search = request.args.get("search")
        result = sales_service.list_sales(
            user=g.current_user,
            page=request.args.get("page", default=1, type=int),
            per_page=request.args.get("limit", type=int) or request.args.get("per_page", type=int),
            start_date=_date_arg("startDate"),
            end_date=_date_arg("endDate"),
            cashier_id=request.args.get("cashierId", type=int),
            payment_method=request.args.get("paymentMethod"),
            status=request.args.get("status"),
            search=sanitize_input(search) if search else None,
        )
        return success_response(result["items"], pagination=result.get("pagination"), summary=result["summary"])
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list sales")
        return internal_error_response()


@sales_bp.get("/<sale_id>")
@require_auth
@require_permission(VIEW_SALES)
def get_sale_route(sale_id: str):
    try:
        sale = sales_service.get_sale(sale_id, user=g.current_user)
        data = sale.to_dict()
        data["refundedAmount"] = refund_service.get_refunded_total(sale.id)
        data["remainingAmount"] = sale.total_amount_cents - data["refundedAmount"]
        return success_response(data)
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get sale")
        return internal_error_response()


@sales_bp.get("/<sale_id>/receipt")
@require_auth
@require_permission(VIEW_SALES)
def receipt_route(sale_id: str):
    try:
        return success_response(sales_service.get_receipt(sale_id, user=g.current_user))
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to build receipt")
        return internal_error_response()


@sales_bp.route("/<sale_id>/refund", methods=["POST", "PUT"])
@require_auth
@require_permission(REFUND_SALE)
def refund_route(sale_id: str):
    """
    Refund a sale.

    Body: {reason, refundItems?: [{saleItemId, quantity}], refundAmount?}
    With refundItems the listed units are refunded at their current price;
    otherwise refundAmount (default: everything remaining) is refunded
    proportionally across all lines.
    """
    try:
        req = parse_refund_request(request.get_json(silent=True))
        result = refund_service.process_refund(sale_id, req, user_id=g.current_user.id)
        current_app.logger.info(
            "Refund %s of %s cents on sale %s by user %s",
            result.refund.id, result.refund.total_refund_cents, sale_id, g.current_user.id,
        )
        return success_response(result.to_dict())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process refund")
        return internal_error_response()


@sales_bp.post("/<sale_id>/void")
@require_auth
@require_permission(VOID_SALE)
def void_route(sale_id: str):
    """Void a sale within the void window. Body: {reason}."""
    try:
        reason = parse_void_request(request.get_json(silent=True))
        result = sales_service.void_sale(sale_id, user_id=g.current_user.id, reason=reason)
        current_app.logger.info("Sale %s voided by user %s", sale_id, g.current_user.id)
        return success_response(result.to_dict())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to void sale")
        return internal_error_response()
