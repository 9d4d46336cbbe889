# Overview: Service-layer operations for offline sync; encapsulates business logic and database work.

"""
Offline Sync Service

WHY: Registers keep trading when the network drops. Each operation they
capture offline is queued on the device and later sent here in a batch.
Replay must be idempotent: a batch resent after a timeout must not sell the
same goods twice or refund the same money twice.

Replay rules per type:
- sale:        create_sale(replay=True); dedupe by saleId / offlineId
- stock_entry: stock adjustment + StockEntry; dedupe by referenceNumber
- refund:      process_offline_refund; dedupe by refundId
- void:        void_sale; a sale that is already VOID is a no-op

Each item runs in its own transaction. One bad item fails alone and is
recorded on its queue row (status=failed, retry_count + 1, error).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import OfflineSyncQueue, Sale, User
from ..models.sales import SALE_STATUS_VOID
from ..models.sync import (
    SYNC_STATUS_COMPLETED,
    SYNC_STATUS_FAILED,
    SYNC_STATUS_PENDING,
    SYNC_TYPE_REFUND,
    SYNC_TYPE_SALE,
    SYNC_TYPE_STOCK_ENTRY,
    SYNC_TYPE_VOID,
)
from ..permissions import ADJUST_STOCK, REFUND_SALE, VOID_SALE, has_permission
from murimi_pos.errors import AppError, AuthorizationError, INTERNAL_ERROR_MESSAGE, ValidationError
from murimi_pos.time_utils import utcnow
from murimi_pos.validation import parse_sync_payload
from .concurrency import begin_write, run_with_retry

logger = logging.getLogger(__name__)


@dataclass
class SyncBatchResult:
    processed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"processed": self.processed, "failed": self.failed, "errors": self.errors}


# =============================================================================
# QUEUE RECORDS
# =============================================================================

def enqueue_sync_record(sync_type: str, data: dict, *, record_id: str | None = None) -> OfflineSyncQueue:
    """
    Add a pending queue row in the caller's transaction (no commit).

    Server-side operations (refunds, voids, offline-tagged sales) enqueue one
    of these so other devices can pick the change up.
    """
    kwargs = {"id": record_id} if record_id else {}
    record = OfflineSyncQueue(
        type=sync_type,
        data=json.dumps(data, default=str),
        status=SYNC_STATUS_PENDING,
        retry_count=0,
        max_retries=current_app.config.get("OFFLINE_SYNC_MAX_RETRIES", 3),
        **kwargs,
    )
    db.session.add(record)
    return record


def list_pending(limit: int = 50) -> list[OfflineSyncQueue]:
    """Rows still worth (re)trying: pending or failed, under max_retries, oldest first."""
    return (
        db.session.query(OfflineSyncQueue)
        .filter(
            OfflineSyncQueue.status.in_([SYNC_STATUS_PENDING, SYNC_STATUS_FAILED]),
            OfflineSyncQueue.retry_count < OfflineSyncQueue.max_retries,
        )
        .order_by(OfflineSyncQueue.created_at.asc(), OfflineSyncQueue.id.asc())
        .limit(limit)
        .all()
    )


def get_queue_status() -> dict:
    """Counts by status plus how many failed rows have exhausted their retries."""
    counts = dict(
        db.session.query(OfflineSyncQueue.status, func.count(OfflineSyncQueue.id))
        .group_by(OfflineSyncQueue.status)
        .all()
    )
    exhausted = (
        db.session.query(func.count(OfflineSyncQueue.id))
        .filter(
            OfflineSyncQueue.status == SYNC_STATUS_FAILED,
            OfflineSyncQueue.retry_count >= OfflineSyncQueue.max_retries,
        )
        .scalar()
    )
    return {
        "pending": counts.get(SYNC_STATUS_PENDING, 0),
        "completed": counts.get(SYNC_STATUS_COMPLETED, 0),
        "failed": counts.get(SYNC_STATUS_FAILED, 0),
        "exhausted": int(exhausted or 0),
        "total": sum(counts.values()),
    }


def purge_completed(retention_days: int | None = None) -> int:
    """Delete completed rows last touched more than retention_days ago. Returns rows removed."""
    if retention_days is None:
        retention_days = current_app.config.get("OFFLINE_SYNC_RETENTION_DAYS", 7)
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = (
        db.session.query(OfflineSyncQueue)
        .filter(
            OfflineSyncQueue.status == SYNC_STATUS_COMPLETED,
            OfflineSyncQueue.updated_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted


def _mark_completed(item_id: str, sync_type: str, raw_data) -> None:
    record = db.session.get(OfflineSyncQueue, item_id)
    if record is None:
        record = OfflineSyncQueue(
            id=item_id,
            type=sync_type,
            data=json.dumps(raw_data, default=str),
            max_retries=current_app.config.get("OFFLINE_SYNC_MAX_RETRIES", 3),
        )
        db.session.add(record)
    record.status = SYNC_STATUS_COMPLETED
    record.error = None
    record.updated_at = utcnow()


def _mark_failed(item_id: str, sync_type, raw_data, message: str) -> None:
    def _op():
        record = db.session.get(OfflineSyncQueue, item_id)
        if record is None:
            record = OfflineSyncQueue(
                id=item_id,
                type=str(sync_type or "unknown")[:32],
                data=json.dumps(raw_data, default=str),
                retry_count=0,
                max_retries=current_app.config.get("OFFLINE_SYNC_MAX_RETRIES", 3),
            )
            db.session.add(record)
        record.status = SYNC_STATUS_FAILED
        record.retry_count = (record.retry_count or 0) + 1
        record.error = message
        record.updated_at = utcnow()
        db.session.commit()

    run_with_retry(_op)


# =============================================================================
# REPLAY
# =============================================================================

def _replay_sale(payload, user: User) -> None:
    from .sales_service import create_sale
    create_sale(payload, user_id=user.id, replay=True)


def _replay_stock_entry(payload, user: User) -> None:
    from .inventory_service import (
        apply_stock_adjustment_locked,
        find_stock_entry,
        get_locked_product,
    )

    if not has_permission(user, ADJUST_STOCK):
        raise AuthorizationError("Insufficient permissions for stock entry")

    def _op():
        begin_write()
        product = get_locked_product(payload.product_id)
        if find_stock_entry(product.id, payload.reference_number) is not None:
            db.session.rollback()
            return
        apply_stock_adjustment_locked(
            product,
            payload,
            user_id=user.id,
            default_reference_prefix="SYNC",
            default_notes="Offline stock entry",
        )
        db.session.commit()

    run_with_retry(_op)


def _replay_refund(payload, user: User) -> None:
    from .refund_service import process_offline_refund

    if not has_permission(user, REFUND_SALE):
        raise AuthorizationError("Insufficient permissions for refund")
    process_offline_refund(payload, user_id=user.id)


def _replay_void(payload, user: User) -> None:
    from .sales_service import void_sale

    if not has_permission(user, VOID_SALE):
        raise AuthorizationError("Insufficient permissions for void")
    sale = db.session.get(Sale, payload.sale_id)
    if sale is not None and sale.status == SALE_STATUS_VOID:
        return
    void_sale(
        payload.sale_id,
        user_id=user.id,
        reason=payload.reason,
        occurred_at=payload.voided_at,
        enqueue=False,
    )


REPLAY_HANDLERS = {
    SYNC_TYPE_SALE: _replay_sale,
    SYNC_TYPE_STOCK_ENTRY: _replay_stock_entry,
    SYNC_TYPE_REFUND: _replay_refund,
    SYNC_TYPE_VOID: _replay_void,
}


def replay_item(item_id: str, sync_type, data, user: User) -> None:
    """
    Validate and apply one queued operation, then mark its queue row completed.

    Raises on failure; the caller records the failure.
    """
    payload = parse_sync_payload(sync_type, data)
    REPLAY_HANDLERS[sync_type](payload, user)

    def _op():
        _mark_completed(item_id, sync_type, data)
        db.session.commit()

    run_with_retry(_op)


def _item_id(entry) -> str:
    if isinstance(entry, dict) and entry.get("id") not in (None, ""):
        return str(entry["id"])[:64]
    return ""


def _run_items(entries, user: User, result: SyncBatchResult) -> None:
    for entry in entries:
        item_id = _item_id(entry)
        sync_type = entry.get("type") if isinstance(entry, dict) else None
        data = entry.get("data") if isinstance(entry, dict) else None
        try:
            if not item_id:
                raise ValidationError("Sync item id is required")
            replay_item(item_id, sync_type, data, user)
            result.processed += 1
        except AppError as exc:
            db.session.rollback()
            logger.info("Offline sync item %s (%s) failed: %s", item_id, sync_type, exc.message)
            result.failed += 1
            result.errors.append(f"Item {item_id or '?'}: {exc.message}")
            if item_id:
                _mark_failed(item_id, sync_type, data, exc.message)
        except Exception:
            db.session.rollback()
            logger.exception("Unexpected error replaying offline sync item %s (%s)", item_id, sync_type)
            result.failed += 1
            result.errors.append(f"Item {item_id or '?'}: {INTERNAL_ERROR_MESSAGE}")
            if item_id:
                _mark_failed(item_id, sync_type, data, INTERNAL_ERROR_MESSAGE)


def process_batch(entries: list, *, user: User) -> SyncBatchResult:
    """
    Replay a batch sent by a device.

    Args:
        entries: Raw [{id, type, data}] entries (envelope already validated)
        user: The authenticated user replaying the batch. Refunds, voids and
            stock entries still need the matching permission per item.

    Returns:
        SyncBatchResult {processed, failed, errors}; errors read
        "Item <id>: <message>".

    Completed rows older than OFFLINE_SYNC_RETENTION_DAYS are purged afterwards.
    """
    result = SyncBatchResult()
    _run_items(entries, user, result)
    purge_completed()
    return result


def process_pending_queue(*, user: User, limit: int = 50) -> SyncBatchResult:
    """Replay the server's own retryable rows (pending or failed), oldest first."""
    entries = [
        {"id": record.id, "type": record.type, "data": record.payload}
        for record in list_pending(limit)
    ]
    result = SyncBatchResult()
    _run_items(entries, user, result)
    purge_completed()
    return result
