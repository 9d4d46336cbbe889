# Overview: Service-layer operations for inventory; encapsulates business logic and database work.

"""
Inventory Invariants (authoritative)

Stock model:
- Product.stock_quantity is the single mutable on-hand figure.
- It may never go negative. Services check before writing and the
  ck_products_stock_non_negative CHECK constraint backs them up.

Movements:
- Sales debit stock (sales_service.create_sale).
- Refunds and voids credit it back (refund_service, sales_service.void_sale).
- Staff adjustments and offline stock-ins write a StockEntry row with a signed
  quantity plus an audit log entry (this module).

Locking:
- Callers inside a write transaction lock products through lock_products(),
  which orders ids ascending so two transactions touching the same products
  always lock them in the same order.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..models import Product, StockEntry, Supplier
from murimi_pos.errors import AppError, InsufficientStockError, NotFoundError, ValidationError
from murimi_pos.validation import StockAdjustment, parse_stock_adjustment
from murimi_pos.time_utils import utcnow
from .audit_service import log_activity
from .concurrency import begin_write, lock_for_update, run_with_retry
from .pagination import paginate


# =============================================================================
# LOW-LEVEL STOCK MOVEMENTS (caller owns the transaction)
# =============================================================================

def lock_products(product_ids) -> dict[int, Product]:
    """Lock and return the given products keyed by id. Missing ids are simply absent."""
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    products = lock_for_update(
        db.session.query(Product).filter(Product.id.in_(ids)).order_by(Product.id.asc())
    ).all()
    return {p.id: p for p in products}


def get_locked_product(product_id: int) -> Product:
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None:
        raise NotFoundError(f"Product not found: {product_id}")
    return product


def debit_stock(product: Product, quantity: int) -> None:
    if quantity <= 0:
        return
    if product.stock_quantity < quantity:
        raise InsufficientStockError(
            f"Insufficient stock for {product.name}. Available: {product.stock_quantity}, Requested: {quantity}",
            details={"product_id": product.id, "available": product.stock_quantity, "requested": quantity},
        )
    product.stock_quantity -= quantity


def restore_stock(product: Product, quantity: int) -> None:
    if quantity <= 0:
        return
    product.stock_quantity += quantity


def stock_snapshot(product: Product) -> dict:
    return {"stock_quantity": product.stock_quantity, "cost_price_cents": product.cost_price_cents}


# =============================================================================
# STOCK ADJUSTMENTS
# =============================================================================

def find_stock_entry(product_id: int, reference_number: str | None) -> StockEntry | None:
    """Existing entry with this reference for this product (offline replay dedupe)."""
    if not reference_number:
        return None
    return (
        db.session.query(StockEntry)
        .filter_by(product_id=product_id, reference_number=reference_number)
        .first()
    )


def apply_stock_adjustment_locked(
    product: Product,
    adjustment: StockAdjustment,
    *,
    user_id: int | None,
    default_reference_prefix: str = "ADJ",
    default_notes: str = "Manual stock adjustment",
) -> tuple[StockEntry, int]:
    """
    Apply a signed stock movement to a locked product inside the caller's transaction.

    Returns (stock_entry, previous_stock). No commit.

    Raises:
        InsufficientStockError: negative adjustment larger than on-hand stock
        NotFoundError: unknown supplier
    """
    if adjustment.quantity < 0 and product.stock_quantity + adjustment.quantity < 0:
        raise InsufficientStockError(
            f"Insufficient stock for this adjustment. Current: {product.stock_quantity}, Requested: {adjustment.quantity}"
        )

    supplier_id = adjustment.supplier_id
    if supplier_id is not None and db.session.get(Supplier, supplier_id) is None:
        raise NotFoundError(f"Supplier not found: {supplier_id}")

    cost_price_cents = (
        adjustment.cost_price_cents if adjustment.cost_price_cents is not None else product.cost_price_cents
    )
    total_cost_cents = cost_price_cents * abs(adjustment.quantity)
    previous_stock = product.stock_quantity
    old_values = stock_snapshot(product)

    reference_number = adjustment.reference_number or (
        f"{default_reference_prefix}-{int(utcnow().timestamp() * 1000)}"
    )

    entry = StockEntry(
        product_id=product.id,
        quantity=adjustment.quantity,
        cost_price_cents=cost_price_cents,
        total_cost_cents=total_cost_cents,
        supplier_id=supplier_id or product.supplier_id,
        user_id=user_id,
        reference_number=reference_number,
        notes=adjustment.notes or default_notes,
    )
    db.session.add(entry)

    product.stock_quantity += adjustment.quantity
    db.session.flush()

    new_values = stock_snapshot(product)
    new_values.update({"adjustment": adjustment.quantity, "total_cost_cents": total_cost_cents})
    log_activity(
        action="stock_adjustment",
        entity_type="Product",
        entity_id=product.id,
        user_id=user_id,
        product_id=product.id,
        old_values=old_values,
        new_values=new_values,
    )
    return entry, previous_stock


def adjust_stock(product_id: int, adjustment: StockAdjustment, *, user_id: int) -> dict:
    """
    Adjust one product's stock and record a StockEntry.

    Returns dict with product, stockEntry, stockStatus, previousStock, newStock.
    """
    def _op():
        begin_write()
        product = get_locked_product(product_id)
        entry, previous_stock = apply_stock_adjustment_locked(product, adjustment, user_id=user_id)
        db.session.commit()
        return {
            "product": product.to_dict(),
            "stockEntry": entry.to_dict(),
            "stockStatus": product.stock_status,
            "previousStock": previous_stock,
            "newStock": product.stock_quantity,
        }

    return run_with_retry(_op)


@dataclass
class BulkStockResult:
    results: list
    errors: list
    total_value_cents: int
    reference_number: str

    def to_dict(self) -> dict:
        return {
            "processed": len(self.results) + len(self.errors),
            "successful": len(self.results),
            "failed": len(self.errors),
            "results": self.results,
            "errors": self.errors,
            "summary": {
                "totalValue": self.total_value_cents,
                "totalAdjustments": len(self.results),
                "referenceNumber": self.reference_number,
            },
        }


def bulk_adjust_stock(
    adjustments: list,
    *,
    user_id: int,
    supplier_id: int | None = None,
    reference_number: str | None = None,
    notes: str | None = None,
) -> BulkStockResult:
    """
    Apply many stock adjustments, each in its own transaction.

    A bad line (validation, missing product, insufficient stock) is reported
    in errors and does not affect the other lines.
    """
    reference_number = reference_number or f"BULK-{int(utcnow().timestamp() * 1000)}"
    results = []
    errors = []
    total_value = 0

    for raw in adjustments:
        product_id = raw.get("productId") if isinstance(raw, dict) else None
        try:
            if not isinstance(raw, dict):
                raise ValidationError("Adjustment must be an object")
            line = parse_stock_adjustment(raw, require_product=True)
            line = StockAdjustment(
                quantity=line.quantity,
                product_id=line.product_id,
                cost_price_cents=line.cost_price_cents,
                supplier_id=line.supplier_id or supplier_id,
                reference_number=reference_number,
                notes=notes or raw.get("reason") or "Bulk stock adjustment",
            )

            def _op(line=line):
                begin_write()
                product = get_locked_product(line.product_id)
                entry, previous_stock = apply_stock_adjustment_locked(product, line, user_id=user_id)
                db.session.commit()
                return {
                    "productId": product.id,
                    "productName": product.name,
                    "previousStock": previous_stock,
                    "newStock": product.stock_quantity,
                    "adjustment": line.quantity,
                    "costPrice": entry.cost_price_cents,
                    "totalCost": entry.total_cost_cents,
                    "stockEntryId": entry.id,
                }

            result = run_with_retry(_op)
            total_value += result["totalCost"]
            results.append(result)
        except AppError as exc:
            errors.append({"productId": product_id, "error": exc.message})

    return BulkStockResult(
        results=results, errors=errors, total_value_cents=total_value, reference_number=reference_number
    )


# =============================================================================
# QUERIES
# =============================================================================

LOW_STOCK_URGENCY = ((10, "CRITICAL"), (5, "HIGH"), (0, "MEDIUM"))


def _urgency(deficit: int) -> str:
    for threshold, label in LOW_STOCK_URGENCY:
        if deficit > threshold:
            return label
    return "LOW"


def _low_stock_row(product: Product) -> dict:
    deficit = max(0, product.min_stock_level - product.stock_quantity)
    data = product.to_dict()
    data.update({
        "stockDeficit": deficit,
        "reorderValue": deficit * product.cost_price_cents,
        "urgency": _urgency(deficit),
    })
    return data


def low_stock_report(page: int | None = 1, per_page: int | None = 20) -> dict:
    """
    Active products at or below their minimum level, emptiest first.

    Each row carries stockDeficit (units below minimum), reorderValue (deficit
    at cost) and urgency (CRITICAL > 10 short, HIGH > 5, MEDIUM > 0, else LOW).
    The summary covers the returned page.
    """
    query = (
        db.session.query(Product)
        .filter(Product.is_active.is_(True), Product.stock_quantity <= Product.min_stock_level)
        .order_by(Product.stock_quantity.asc(), Product.name.asc())
    )
    result = paginate(query, page, per_page, _low_stock_row)
    rows = result["items"]
    result["summary"] = {
        "totalLowStockProducts": result.get("pagination", {}).get("total", len(rows)),
        "totalStockDeficit": sum(r["stockDeficit"] for r in rows),
        "totalReorderValue": sum(r["reorderValue"] for r in rows),
        "criticalCount": sum(1 for r in rows if r["urgency"] == "CRITICAL"),
        "highCount": sum(1 for r in rows if r["urgency"] == "HIGH"),
        "mediumCount": sum(1 for r in rows if r["urgency"] == "MEDIUM"),
    }
    return result


def list_stock_entries(product_id: int, limit: int = 50) -> list[StockEntry]:
    return (
        db.session.query(StockEntry)
        .filter_by(product_id=product_id)
        .order_by(StockEntry.created_at.desc(), StockEntry.id.desc())
        .limit(limit)
        .all()
    )
