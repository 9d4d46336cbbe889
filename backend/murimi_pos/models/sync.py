from __future__ import annotations

import json
import uuid

from ..extensions import db
from murimi_pos.time_utils import to_utc_z, utcnow

SYNC_TYPE_SALE = "sale"
SYNC_TYPE_STOCK_ENTRY = "stock_entry"
SYNC_TYPE_REFUND = "refund"
SYNC_TYPE_VOID = "void"
VALID_SYNC_TYPES = (SYNC_TYPE_SALE, SYNC_TYPE_STOCK_ENTRY, SYNC_TYPE_REFUND, SYNC_TYPE_VOID)

SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_COMPLETED = "completed"
SYNC_STATUS_FAILED = "failed"


class OfflineSyncQueue(db.Model):
    """
    Operation recorded for replay between offline devices and the server.

    WHY: Devices keep selling when the network is down. Every operation they
    queue is replayed here exactly once; the row id is assigned by the client
    so a resent batch finds the same row.
    """
    __tablename__ = "offline_sync_queue"
    __table_args__ = (
        db.Index("ix_offline_sync_status_created", "status", "created_at"),
    )

    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    type = db.Column(db.String(32), nullable=False)

    # JSON-encoded payload
    data = db.Column(db.Text, nullable=False, default="{}")

    status = db.Column(db.String(16), nullable=False, default=SYNC_STATUS_PENDING)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=3)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def payload(self) -> dict:
        try:
            return json.loads(self.data or "{}")
        except ValueError:
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "data": self.payload,
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error": self.error,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
