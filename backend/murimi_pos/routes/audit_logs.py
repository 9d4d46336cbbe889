# Overview: Flask API routes for audit log operations; parses input and returns JSON responses.

from flask import Blueprint, current_app, request

from ..decorators import require_auth, require_permission
from ..errors import AppError, ValidationError, error_response, internal_error_response, success_response
from ..permissions import VIEW_AUDIT_LOG
from ..services import audit_service
from murimi_pos.time_utils import parse_iso_datetime

audit_logs_bp = Blueprint("audit_logs", __name__, url_prefix="/api/audit-logs")


def _date_arg(name: str):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date")


@audit_logs_bp.get("")
@require_auth
@require_permission(VIEW_AUDIT_LOG)
def list_audit_logs_route():
    """
    Query params: entityType, entityId, action, userId, startDate, endDate,
    page, limit / per_page (default 50, max 100).
    """
    try:
        result = audit_service.list_audit_logs(
            entity_type=request.args.get("entityType"),
            entity_id=request.args.get("entityId"),
            action=request.args.get("action"),
            user_id=request.args.get("userId", type=int),
            start_date=_date_arg("startDate"),
            end_date=_date_arg("endDate"),
            page=request.args.get("page", default=1, type=int),
            per_page=request.args.get("limit", type=int) or request.args.get("per_page", default=50, type=int),
        )
        return success_response(result["items"], pagination=result.get("pagination"))
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list audit logs")
        return internal_error_response()
