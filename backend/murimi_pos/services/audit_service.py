# Overview: Service-layer operations for audit; encapsulates business logic and database work.

"""
Audit Log Service

WHY: Refunds, voids and stock changes move money and inventory. Every one
of them leaves an append-only record of who did it and what changed.

log_activity() only adds the row to the session. It is called inside the
same transaction as the change it describes, so both commit or neither does.
"""

import json
from datetime import datetime

from flask import has_request_context, request

from ..extensions import db
from ..models import AuditLog
from ..security import client_identifier
from .pagination import paginate


def _dump(values) -> str | None:
    if values is None:
        return None
    return json.dumps(values, default=str, sort_keys=True)


def log_activity(
    *,
    action: str,
    entity_type: str,
    entity_id,
    user_id: int | None = None,
    old_values: dict | None = None,
    new_values: dict | None = None,
    product_id: int | None = None,
) -> AuditLog:
    """
    Record an audit entry in the current transaction (no commit).

    Client IP and user agent are taken from the active request, if any.
    """
    ip_address = None
    user_agent = None
    if has_request_context():
        ip_address = client_identifier()[:64]
        user_agent = (request.headers.get("User-Agent") or "")[:255] or None

    entry = AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        product_id=product_id,
        old_values=_dump(old_values),
        new_values=_dump(new_values),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    db.session.add(entry)
    return entry


def list_audit_logs(
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    user_id: int | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int | None = 1,
    per_page: int | None = 50,
) -> dict:
    """Newest-first audit listing with optional filters."""
    query = db.session.query(AuditLog)
    if entity_type:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditLog.entity_id == str(entity_id))
    if action:
        query = query.filter(AuditLog.action == action)
    if user_id:
        query = query.filter(AuditLog.user_id == user_id)
    if start_date:
        query = query.filter(AuditLog.created_at >= start_date)
    if end_date:
        query = query.filter(AuditLog.created_at <= end_date)

    query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    return paginate(query, page, per_page, lambda entry: entry.to_dict())
