"""
Refund Processing Service

WHY: Refunds send money back to the customer and put goods back on the
shelf. Both must agree, and two cashiers refunding the same sale at the same
moment must not be able to refund more than was paid.

DESIGN PRINCIPLES:
- The remaining refundable amount is total - SUM(existing refunds), read
  inside the write transaction with the sale row locked
- Item-level refunds value each line at its CURRENT remaining price per unit
- Proportional refunds restore floor(quantity * amount / total) units per line;
  the Refund row records the requested amount
- SaleItem.quantity / total_price_cents hold the remaining (un-refunded) values
- Once refunds cover the total, the sale becomes REFUNDED
- Every refund is audited and enqueued for sync to other devices

MODES:
1. Item-level: refundItems = [{saleItemId, quantity}, ...]
2. Proportional: refundAmount (default: everything that remains)
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import func

from ..extensions import db
from ..models import Refund, Sale, SaleItem
from ..models.sales import (
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_REFUNDED,
    SALE_STATUS_REFUNDED,
    SALE_STATUS_VOID,
)
from ..models.sync import SYNC_TYPE_REFUND
from murimi_pos.errors import InvalidRefundError, SaleStateError, ValidationError
from murimi_pos.validation import RefundLine, RefundRequest, RefundSyncPayload
from .audit_service import log_activity
from .concurrency import begin_write, run_with_retry
from .inventory_service import lock_products, restore_stock
from .offline_sync_service import enqueue_sync_record
from .sales_service import get_locked_sale


@dataclass
class RefundResult:
    refund: Refund
    refunded_amount_cents: int
    remaining_amount_cents: int
    created: bool = True

    def to_dict(self) -> dict:
        return {
            "refund": self.refund.to_dict(),
            "refundedAmount": self.refunded_amount_cents,
            "remainingAmount": self.remaining_amount_cents,
        }


# =============================================================================
# QUERIES
# =============================================================================

def get_refunded_total(sale_id: str) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(Refund.total_refund_cents), 0))
        .filter(Refund.sale_id == sale_id)
        .scalar()
    )
    return int(total or 0)


def _snapshot(sale: Sale, refunded_total: int) -> dict:
    return {
        "status": sale.status,
        "payment_status": sale.payment_status,
        "refunded_amount_cents": refunded_total,
        "items": [
            {"id": item.id, "quantity": item.quantity, "total_price_cents": item.total_price_cents}
            for item in sale.items
        ],
    }


# =============================================================================
# REFUND MOVEMENTS (caller owns the transaction)
# =============================================================================

def _take_back(sale: Sale, item: SaleItem, quantity: int, value_cents: int, products: dict) -> None:
    if sale.stock_debited:
        product = products.get(item.product_id)
        if product is not None:
            restore_stock(product, quantity)
    item.quantity -= quantity
    item.total_price_cents -= value_cents


def _refund_items(sale: Sale, lines: list[RefundLine], remaining: int) -> int:
    """
    Item-level refund. Returns the refund amount (sum over the lines).

    Duplicate saleItemIds are merged before checking remaining quantities.

    Line values are pre-discount. On a sale with a sale-level discount the
    last units can't be refunded by item (their value exceeds what is left
    of the sale total); an amount refund takes the remainder.
    """
    requested: dict[int, int] = {}
    for line in lines:
        requested[line.sale_item_id] = requested.get(line.sale_item_id, 0) + line.quantity

    items_by_id = {item.id: item for item in sale.items}
    plan = []
    amount = 0
    for sale_item_id, quantity in requested.items():
        item = items_by_id.get(sale_item_id)
        if item is None:
            raise InvalidRefundError(f"Sale item not found: {sale_item_id}")
        if quantity > item.quantity:
            raise InvalidRefundError(
                f"Cannot refund {quantity} units of sale item {sale_item_id}; only {item.quantity} remaining"
            )
        value = item.total_price_cents * quantity // item.quantity
        plan.append((item, quantity, value))
        amount += value

    if amount <= 0:
        raise InvalidRefundError("Refund amount must be greater than zero")
    if amount > remaining:
        if sale.discount_amount_cents:
            raise InvalidRefundError(
                "Refund amount exceeds remaining sale amount; item prices exclude the "
                f"sale discount, refund by amount instead (remaining {remaining})"
            )
        raise InvalidRefundError("Refund amount exceeds remaining sale amount")

    products = lock_products(item.product_id for item, _, _ in plan)
    for item, quantity, value in plan:
        _take_back(sale, item, quantity, value, products)
    return amount


def _refund_proportional(sale: Sale, amount: int | None, remaining: int) -> int:
    """Proportional refund over every line. Returns the requested amount."""
    if amount is None:
        amount = remaining
    if amount <= 0:
        raise ValidationError("Refund amount must be greater than zero")
    if amount > remaining:
        raise InvalidRefundError("Refund amount exceeds remaining sale amount")

    products = lock_products(item.product_id for item in sale.items)
    for item in sale.items:
        quantity = item.quantity * amount // sale.total_amount_cents
        if quantity <= 0:
            continue
        value = item.total_price_cents * quantity // item.quantity
        _take_back(sale, item, quantity, value, products)
    return amount


def _process_refund_locked(
    sale: Sale,
    *,
    user_id: int,
    reason: str,
    refund_amount_cents: int | None,
    refund_items: list[RefundLine],
    refund_id: str | None = None,
    enqueue: bool = True,
) -> RefundResult:
    if sale.status == SALE_STATUS_VOID:
        raise SaleStateError("Cannot refund a voided sale")
    if not reason or not reason.strip():
        raise ValidationError("Refund reason is required")

    refunded_before = get_refunded_total(sale.id)
    remaining = sale.total_amount_cents - refunded_before
    if remaining <= 0:
        raise InvalidRefundError("Sale has already been fully refunded")
    if sale.payment_status != PAYMENT_STATUS_COMPLETED:
        raise SaleStateError(f"Cannot refund a sale with payment status {sale.payment_status}")

    old_values = _snapshot(sale, refunded_before)

    if refund_items:
        amount = _refund_items(sale, refund_items, remaining)
    else:
        amount = _refund_proportional(sale, refund_amount_cents, remaining)

    refund_kwargs = {"id": refund_id} if refund_id else {}
    refund = Refund(
        sale_id=sale.id,
        user_id=user_id,
        total_refund_cents=amount,
        reason=reason.strip(),
        **refund_kwargs,
    )
    db.session.add(refund)

    refunded_total = refunded_before + amount
    if refunded_total >= sale.total_amount_cents:
        sale.status = SALE_STATUS_REFUNDED
        sale.payment_status = PAYMENT_STATUS_REFUNDED

    db.session.flush()

    if enqueue:
        enqueue_sync_record(
            SYNC_TYPE_REFUND,
            {
                "refundId": refund.id,
                "saleId": sale.id,
                "refundAmount": amount,
                "reason": refund.reason,
            },
        )

    new_values = _snapshot(sale, refunded_total)
    new_values["refund_id"] = refund.id
    new_values["refund_amount_cents"] = amount
    log_activity(
        action="refund",
        entity_type="Sale",
        entity_id=sale.id,
        user_id=user_id,
        old_values=old_values,
        new_values=new_values,
    )

    return RefundResult(
        refund=refund,
        refunded_amount_cents=refunded_total,
        remaining_amount_cents=sale.total_amount_cents - refunded_total,
    )


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================

def process_refund(sale_id: str, req: RefundRequest, *, user_id: int) -> RefundResult:
    """
    Refund part or all of a sale.

    WHY: The remaining amount is re-read under the write lock, so concurrent
    refunds serialize: with 100 remaining, two simultaneous 80 refunds
    produce exactly one success.

    Args:
        sale_id: Sale being refunded
        req: Validated refund request (item-level when refund_items is non-empty)
        user_id: Manager/admin issuing the refund

    Returns:
        RefundResult (refund, refundedAmount, remainingAmount)

    Raises:
        NotFoundError: Sale not found
        SaleStateError: Sale is VOID or its payment never completed
        ValidationError: Empty reason or non-positive amount
        InvalidRefundError: Unknown item, too many units, nothing left to
            refund, or amount above the remaining amount
    """
    def _op():
        begin_write()
        sale = get_locked_sale(sale_id)
        result = _process_refund_locked(
            sale,
            user_id=user_id,
            reason=req.reason,
            refund_amount_cents=req.refund_amount_cents,
            refund_items=req.refund_items,
        )
        db.session.commit()
        return result

    return run_with_retry(_op)


def process_offline_refund(payload: RefundSyncPayload, *, user_id: int) -> RefundResult:
    """
    Replay a refund captured on an offline device.

    The device assigned refundId; a refund with that id already on file is
    returned as-is (created=False). Otherwise this is a proportional refund
    of refundAmount with inventory restored, and it is not enqueued again.
    """
    def _op():
        begin_write()
        existing = db.session.get(Refund, payload.refund_id)
        if existing is not None:
            refunded_total = get_refunded_total(existing.sale_id)
            sale = db.session.get(Sale, existing.sale_id)
            db.session.rollback()
            return RefundResult(
                refund=existing,
                refunded_amount_cents=refunded_total,
                remaining_amount_cents=sale.total_amount_cents - refunded_total,
                created=False,
            )

        sale = get_locked_sale(payload.sale_id)
        result = _process_refund_locked(
            sale,
            user_id=user_id,
            reason=payload.reason,
            refund_amount_cents=payload.refund_amount_cents,
            refund_items=[],
            refund_id=payload.refund_id,
            enqueue=False,
        )
        db.session.commit()
        return result

    return run_with_retry(_op)
