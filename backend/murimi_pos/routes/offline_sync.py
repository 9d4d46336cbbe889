# Overview: Flask API routes for offline sync operations; parses input and returns JSON responses.

"""
Offline sync routes.

- POST /api/offline-sync          replay a batch sent by a register
- GET  /api/offline-sync          retryable queue rows (?limit=, default 50)
- GET  /api/offline-sync/status   counts by status (Manager/Admin)
- POST /api/offline-sync/process  replay the server's own retryable rows (Manager/Admin)

A batch answers 200 even when some items fail; per-item failures are in
"errors" and on their queue rows.
"""

from flask import Blueprint, current_app, g, request

from ..decorators import require_auth, require_permission
from ..errors import AppError, error_response, internal_error_response, success_response
from ..permissions import SYNC_OFFLINE, VIEW_SYNC_STATUS
from ..services import offline_sync_service
from ..validation import parse_sync_batch

offline_sync_bp = Blueprint("offline_sync", __name__, url_prefix="/api/offline-sync")


@offline_sync_bp.post("")
@require_auth
@require_permission(SYNC_OFFLINE)
def sync_batch_route():
    """Body: {syncItems: [{id, type: sale|stock_entry|refund|void, data}]} (max 500)."""
    try:
        entries = parse_sync_batch(request.get_json(silent=True))
        result = offline_sync_service.process_batch(entries, user=g.current_user)
        current_app.logger.info(
            "Offline sync batch from user %s: %s processed, %s failed",
            g.current_user.id, result.processed, result.failed,
        )
        return success_response(result.to_dict())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process offline sync batch")
        return internal_error_response()


@offline_sync_bp.get("")
@require_auth
@require_permission(SYNC_OFFLINE)
def list_pending_route():
    try:
        limit = request.args.get("limit", default=50, type=int)
        limit = max(1, min(limit, 500))
        records = offline_sync_service.list_pending(limit)
        return success_response([record.to_dict() for record in records])
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list offline sync queue")
        return internal_error_response()


@offline_sync_bp.get("/status")
@require_auth
@require_permission(VIEW_SYNC_STATUS)
def queue_status_route():
    try:
        return success_response(offline_sync_service.get_queue_status())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get offline sync status")
        return internal_error_response()


@offline_sync_bp.post("/process")
@require_auth
@require_permission(VIEW_SYNC_STATUS)
def process_queue_route():
    """Replay stored pending/failed rows, oldest first. Body (optional): {limit}."""
    try:
        body = request.get_json(silent=True)
        limit = 50
        if isinstance(body, dict) and isinstance(body.get("limit"), int) and not isinstance(body["limit"], bool):
            limit = max(1, min(body["limit"], 500))
        result = offline_sync_service.process_pending_queue(user=g.current_user, limit=limit)
        return success_response({
            "syncedItems": result.processed,
            "failed": result.failed,
            "errors": result.errors,
        })
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process offline sync queue")
        return internal_error_response()
