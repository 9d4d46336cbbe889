# Overview: Service-layer operations for sales; encapsulates business logic and database work.

"""
Sales Service

WHY: A sale is the moment money and inventory change hands together. Sale
rows, item rows, the stock debit, the payment row and the audit entry are
written in ONE transaction so a failure can never leave stock debited
without a sale (or a sale without its stock debit).

Sale lifecycle:
    COMPLETED -> VOID      (void_sale, within VOID_WINDOW_HOURS)
    COMPLETED -> REFUNDED  (refund_service, once refunds cover the total)

Payment status on the sale:
    PENDING   M-Pesa push sent, waiting for the gateway callback
    COMPLETED cash/card/split, offline replay, or confirmed M-Pesa
    FAILED    M-Pesa rejected or voided
    REFUNDED  fully refunded
"""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass, field

from flask import current_app
from sqlalchemy import func, or_

from ..extensions import db
from ..models import Payment, Sale, SaleItem, User
from ..models.catalog import VAT_INCLUSIVE, VAT_NONE
from ..models.sales import (
    PAYMENT_METHOD_MPESA,
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PENDING,
    SALE_STATUS_COMPLETED,
    SALE_STATUS_REFUNDED,
    SALE_STATUS_VOID,
)
from ..models.sync import SYNC_TYPE_SALE, SYNC_TYPE_VOID
from ..permissions import VIEW_ALL_SALES, has_permission
from murimi_pos.errors import (
    AuthorizationError,
    NotFoundError,
    SaleStateError,
    ValidationError,
    VoidWindowExpiredError,
)
from murimi_pos.time_utils import hours_between, to_naive_utc, to_utc_z, utcnow
from murimi_pos.validation import SaleRequest
from .audit_service import log_activity
from .concurrency import begin_write, lock_for_update, run_with_retry
from .inventory_service import debit_stock, lock_products, restore_stock
from .offline_sync_service import enqueue_sync_record
from .pagination import paginate
from . import settings_service


SALE_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


@dataclass
class SaleResult:
    sale: Sale
    created: bool
    gateway: dict = field(default_factory=dict)


@dataclass
class VoidResult:
    sale: Sale
    voided_by: User
    reason: str
    voided_at: object

    def to_dict(self) -> dict:
        return {
            "sale": self.sale.to_dict(),
            "voidedBy": {
                "id": self.voided_by.id,
                "name": self.voided_by.full_name,
                "role": self.voided_by.role,
            },
            "reason": self.reason,
            "voidedAt": to_utc_z(self.voided_at),
        }


# =============================================================================
# HELPERS
# =============================================================================

def generate_sale_number() -> str:
    """SALE-<epoch ms>-<6 uppercase alphanumerics>."""
    epoch_ms = int(utcnow().timestamp() * 1000)
    suffix = "".join(secrets.choice(SALE_NUMBER_ALPHABET) for _ in range(6))
    return f"SALE-{epoch_ms}-{suffix}"


def compute_item_tax(item_total_cents: int, vat_status: str, vat_rate_percent: int) -> int:
    """
    VAT on one line in cents, rounded half-up.

    INCLUSIVE prices already contain VAT and NONE items are zero-rated.
    """
    if vat_status in (VAT_INCLUSIVE, VAT_NONE):
        return 0
    return (item_total_cents * vat_rate_percent + 50) // 100


def find_existing_sale(sale_id: str | None, offline_id: str | None) -> Sale | None:
    if sale_id:
        sale = db.session.get(Sale, sale_id)
        if sale is not None:
            return sale
    if offline_id:
        return db.session.query(Sale).filter_by(offline_id=offline_id).first()
    return None


def get_locked_sale(sale_id: str) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
    if sale is None:
        raise NotFoundError("Sale not found")
    return sale


def release_sale_stock_locked(sale: Sale) -> None:
    """
    Give back the stock a sale still holds (its items' remaining quantities).

    No-op when the sale holds none, so a sale's stock is never restored twice.
    Caller owns the transaction.
    """
    if not sale.stock_debited:
        return
    products = lock_products(item.product_id for item in sale.items)
    for item in sale.items:
        product = products.get(item.product_id)
        if product is not None:
            restore_stock(product, item.quantity)
    sale.stock_debited = False


def sale_sync_payload(sale: Sale) -> dict:
    """Replayable description of a sale for other devices."""
    return {
        "saleId": sale.id,
        "offlineId": sale.offline_id,
        "cartItems": [
            {
                "productId": item.product_id,
                "quantity": item.quantity,
                "wholesaleTierId": item.wholesale_tier_id,
            }
            for item in sale.items
        ],
        "paymentMethod": sale.payment_method,
        "paidAmount": sale.paid_amount_cents,
        "discountAmount": sale.discount_amount_cents,
        "customerName": sale.customer_name,
        "customerPhone": sale.customer_phone,
    }


def _sale_snapshot(sale: Sale) -> dict:
    return {
        "status": sale.status,
        "payment_status": sale.payment_status,
        "total_amount_cents": sale.total_amount_cents,
        "stock_debited": sale.stock_debited,
        "items": [{"id": item.id, "quantity": item.quantity} for item in sale.items],
    }


# =============================================================================
# SALE CREATION
# =============================================================================

def _create_sale_locked(req: SaleRequest, *, user_id: int, replay: bool) -> Sale:
    vat_rate = current_app.config.get("VAT_RATE_PERCENT", 16)

    # Sum per product first so two lines for the same product can't
    # each pass the stock check on their own.
    requested: dict[int, int] = {}
    for line in req.cart_items:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

    products = lock_products(requested.keys())
    for product_id, quantity in requested.items():
        product = products.get(product_id)
        if product is None:
            raise NotFoundError(f"Product not found: {product_id}")
        debit_stock(product, quantity)

    subtotal = 0
    total_tax = 0
    items = []
    for line in req.cart_items:
        product = products[line.product_id]
        unit_price = product.retail_price_cents
        tier_id = None
        if line.wholesale_tier_id is not None:
            tier = next((t for t in product.wholesale_tiers if t.id == line.wholesale_tier_id), None)
            if tier is not None and line.quantity >= tier.min_quantity:
                unit_price = tier.price_cents
                tier_id = tier.id

        item_total = unit_price * line.quantity
        item_tax = compute_item_tax(item_total, product.vat_status, vat_rate)
        subtotal += item_total
        total_tax += item_tax
        items.append(
            SaleItem(
                product_id=product.id,
                quantity=line.quantity,
                unit_price_cents=unit_price,
                total_price_cents=item_total,
                discount_cents=0,
                tax_cents=item_tax,
                wholesale_tier_id=tier_id,
            )
        )

    if req.discount_amount_cents > subtotal + total_tax:
        raise ValidationError("Discount cannot exceed the sale total")

    total = subtotal + total_tax - req.discount_amount_cents
    change = max(0, req.paid_amount_cents - total)

    awaiting_gateway = req.payment_method == PAYMENT_METHOD_MPESA and not replay
    payment_status = PAYMENT_STATUS_PENDING if awaiting_gateway else PAYMENT_STATUS_COMPLETED

    sale_kwargs = {}
    if req.sale_id:
        sale_kwargs["id"] = req.sale_id
    sale = Sale(
        sale_number=generate_sale_number(),
        user_id=user_id,
        subtotal_amount_cents=subtotal,
        tax_amount_cents=total_tax,
        discount_amount_cents=req.discount_amount_cents,
        total_amount_cents=total,
        paid_amount_cents=req.paid_amount_cents,
        change_amount_cents=change,
        payment_method=req.payment_method,
        payment_status=payment_status,
        status=SALE_STATUS_COMPLETED,
        customer_name=req.customer_name,
        customer_phone=req.customer_phone,
        offline_id=req.offline_id,
        stock_debited=True,
        **sale_kwargs,
    )
    sale.items = items
    db.session.add(sale)
    db.session.flush()

    db.session.add(
        Payment(
            sale_id=sale.id,
            amount_cents=total,
            method=req.payment_method,
            status=payment_status,
        )
    )

    if req.offline_id and not replay:
        enqueue_sync_record(SYNC_TYPE_SALE, sale_sync_payload(sale))

    log_activity(
        action="sale",
        entity_type="Sale",
        entity_id=sale.id,
        user_id=user_id,
        new_values={
            "sale_number": sale.sale_number,
            "total_amount_cents": total,
            "payment_method": req.payment_method,
            "status": payment_status,
            "offline_replay": replay,
        },
    )
    return sale


def create_sale(req: SaleRequest, *, user_id: int, replay: bool = False) -> SaleResult:
    """
    Create a sale, debit stock and record its payment.

    WHY: This is the only place stock leaves the shelf through a sale.
    All effects commit together or not at all.

    Args:
        req: Validated sale request (amounts in cents)
        user_id: Cashier ringing up the sale
        replay: True when replaying a sale captured offline. Its payment is
            already settled, so the payment is COMPLETED whatever the method,
            and nothing is enqueued for sync again.

    Returns:
        SaleResult. created=False when a sale with the same id or offlineId
        already exists; it is returned unchanged and stock is untouched.

    Raises:
        NotFoundError: A cart product does not exist
        InsufficientStockError: Stock is short for any product (nothing is written)
        ValidationError: Discount larger than the sale total
        PaymentRejectedError / MpesaError: M-Pesa push failed (sale kept as
            FAILED with its stock given back)
    """
    def _op():
        begin_write()
        existing = find_existing_sale(req.sale_id, req.offline_id)
        if existing is not None:
            db.session.rollback()
            return existing, False
        sale = _create_sale_locked(req, user_id=user_id, replay=replay)
        db.session.commit()
        return sale, True

    sale, created = run_with_retry(_op)
    result = SaleResult(sale=sale, created=created)

    if created and sale.payment_method == PAYMENT_METHOD_MPESA and not replay:
        from .payment_service import start_sale_payment
        result.gateway = start_sale_payment(sale.id, req.phone_number)
        db.session.refresh(sale)

    return result


# =============================================================================
# VOID
# =============================================================================

def void_sale(
    sale_id: str,
    *,
    user_id: int,
    reason: str,
    occurred_at=None,
    enqueue: bool = True,
) -> VoidResult:
    """
    Void a sale and reverse its inventory and payment effects.

    WHY: Voids undo a mistaken sale completely, so they are only allowed
    shortly after the sale (VOID_WINDOW_HOURS, default 24).

    Each item's CURRENT remaining quantity goes back to stock; units already
    refunded were restored by the refund. A sale whose stock was already
    released (failed M-Pesa payment) restores nothing.

    Args:
        occurred_at: When the void happened on an offline device. Clamped to
            now, never earlier than the sale, and at most one window old
            when it reaches the server. Used for the window check.
        enqueue: False during offline replay.

    Raises:
        ValidationError: empty reason, or occurred_at before the sale
        NotFoundError: unknown sale
        SaleStateError: sale already VOID or REFUNDED
        VoidWindowExpiredError: sale older than the void window, or an
            offline void synced more than one window after it happened
    """
    if not reason or not reason.strip():
        raise ValidationError("Void reason is required")
    reason = reason.strip()

    def _op():
        begin_write()
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")

        sale = get_locked_sale(sale_id)
        if sale.status == SALE_STATUS_VOID:
            raise SaleStateError("Sale is already voided")
        if sale.status == SALE_STATUS_REFUNDED:
            raise SaleStateError("Cannot void a refunded sale")

        now = utcnow()
        window_hours = current_app.config.get("VOID_WINDOW_HOURS", 24)
        effective_at = now
        if occurred_at is not None:
            effective_at = min(to_naive_utc(occurred_at), now)
            if effective_at < sale.created_at:
                raise ValidationError("Void time is earlier than the sale")
            # A device void must also reach the server within one window
            if hours_between(effective_at, now) > window_hours:
                raise VoidWindowExpiredError(
                    f"Offline void must be synced within {window_hours} hours"
                )

        if hours_between(sale.created_at, effective_at) > window_hours:
            raise VoidWindowExpiredError(f"Sale can only be voided within {window_hours} hours")

        old_values = _sale_snapshot(sale)

        release_sale_stock_locked(sale)

        sale.status = SALE_STATUS_VOID
        sale.payment_status = PAYMENT_STATUS_FAILED
        sale.voided_by_user_id = user.id
        sale.voided_at = effective_at
        sale.void_reason = reason
        for payment in sale.payments:
            payment.status = PAYMENT_STATUS_FAILED

        if enqueue:
            enqueue_sync_record(
                SYNC_TYPE_VOID,
                {
                    "saleId": sale.id,
                    "saleNumber": sale.sale_number,
                    "reason": reason,
                    "voidedBy": user.id,
                    "voidedAt": to_utc_z(effective_at),
                },
            )

        log_activity(
            action="void",
            entity_type="Sale",
            entity_id=sale.id,
            user_id=user.id,
            old_values=old_values,
            new_values={**_sale_snapshot(sale), "void_reason": reason},
        )

        db.session.commit()
        return VoidResult(sale=sale, voided_by=user, reason=reason, voided_at=effective_at)

    return run_with_retry(_op)


# =============================================================================
# QUERIES
# =============================================================================

def _ensure_can_view(sale: Sale, user: User) -> None:
    if sale.user_id != user.id and not has_permission(user, VIEW_ALL_SALES):
        raise AuthorizationError()


def get_sale(sale_id: str, *, user: User) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFoundError("Sale not found")
    _ensure_can_view(sale, user)
    return sale


def list_sales(
    *,
    user: User,
    page: int = 1,
    per_page: int = 20,
    start_date=None,
    end_date=None,
    cashier_id: int | None = None,
    payment_method: str | None = None,
    status: str | None = None,
    search: str | None = None,
) -> dict:
    """
    Newest-first sales history with summary totals over the whole filter.

    Cashiers only ever see their own sales.
    """
    query = db.session.query(Sale)
    if not has_permission(user, VIEW_ALL_SALES):
        query = query.filter(Sale.user_id == user.id)
    elif cashier_id:
        query = query.filter(Sale.user_id == cashier_id)

    if start_date:
        query = query.filter(Sale.created_at >= start_date)
    if end_date:
        query = query.filter(Sale.created_at <= end_date)
    if payment_method:
        query = query.filter(Sale.payment_method == payment_method)
    if status:
        query = query.filter(Sale.status == status)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(
                Sale.sale_number.ilike(pattern),
                Sale.customer_name.ilike(pattern),
                Sale.customer_phone.ilike(pattern),
            )
        )

    count, revenue, discounts, tax = query.with_entities(
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.total_amount_cents), 0),
        func.coalesce(func.sum(Sale.discount_amount_cents), 0),
        func.coalesce(func.sum(Sale.tax_amount_cents), 0),
    ).one()

    result = paginate(
        query.order_by(Sale.created_at.desc(), Sale.sale_number.desc()),
        page,
        per_page,
        lambda sale: sale.to_dict(),
    )
    result["summary"] = {
        "totalSales": int(count),
        "totalRevenue": int(revenue),
        "totalDiscounts": int(discounts),
        "totalTax": int(tax),
    }
    return result


def get_receipt(sale_id: str, *, user: User) -> dict:
    """Receipt data for printing. Marks the receipt as printed."""
    sale = get_sale(sale_id, user=user)
    business = settings_service.get_settings(
        ["business_name", "business_address", "business_phone", "business_email", "receipt_footer", "currency"]
    )
    mpesa_payment = next(
        (p for p in sale.payments if p.method == PAYMENT_METHOD_MPESA and p.mpesa_receipt_number),
        None,
    )

    receipt = {
        "saleNumber": sale.sale_number,
        "cashierName": sale.user.full_name if sale.user else None,
        "customerName": sale.customer_name,
        "customerPhone": sale.customer_phone,
        "items": [
            {
                "name": item.product.name if item.product else None,
                "sku": item.product.sku if item.product else None,
                "quantity": item.quantity,
                "unitPrice": item.unit_price_cents,
                "totalPrice": item.total_price_cents,
            }
            for item in sale.items
        ],
        "subtotal": sale.subtotal_amount_cents,
        "discount": sale.discount_amount_cents,
        "tax": sale.tax_amount_cents,
        "total": sale.total_amount_cents,
        "paid": sale.paid_amount_cents,
        "change": sale.change_amount_cents,
        "paymentMethod": sale.payment_method,
        "paymentStatus": sale.payment_status,
        "status": sale.status,
        "date": to_utc_z(sale.created_at),
        "businessName": business["business_name"],
        "businessAddress": business["business_address"],
        "businessPhone": business["business_phone"],
        "businessEmail": business["business_email"],
        "footer": business["receipt_footer"],
        "currency": business["currency"],
        "mpesaReceipt": mpesa_payment.mpesa_receipt_number if mpesa_payment else None,
    }

    def _op():
        sale.receipt_printed = True
        db.session.commit()

    run_with_retry(_op)
    return receipt
