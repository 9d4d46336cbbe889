from __future__ import annotations
from datetime import datetime
from murimi_pos.time_utils import parse_iso_datetime

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from sqlalchemy import Boolean, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta

from murimi_pos.errors import ValidationError
from murimi_pos.models.catalog import VALID_VAT_STATUSES
from murimi_pos.models.sales import PAYMENT_METHOD_MPESA, VALID_PAYMENT_METHODS
from murimi_pos.models.sync import (
    SYNC_TYPE_REFUND,
    SYNC_TYPE_SALE,
    SYNC_TYPE_STOCK_ENTRY,
    SYNC_TYPE_VOID,
)
from murimi_pos.services.mpesa_client import is_valid_mpesa_phone


# Maximum price: KES 9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

MAX_LINE_QUANTITY = 100_000
MAX_CART_LINES = 200
MAX_SYNC_BATCH = 500

# M-Pesa accepts 1 .. 70,000 KES per STK push
MPESA_MIN_AMOUNT_CENTS = 100
MPESA_MAX_AMOUNT_CENTS = 7_000_000

CUSTOMER_PHONE_RE = re.compile(r"^(\+254|0)\d{9}$")


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name", "description", "barcode", "sku", "category_id", "supplier_id",
        "cost_price_cents", "retail_price_cents", "wholesale_price_cents",
        "stock_quantity", "min_stock_level", "max_stock_level",
        "vat_status", "image_url", "is_active",
    },
    required_on_create={"name", "cost_price_cents", "retail_price_cents"},
)

CATEGORY_POLICY = ModelValidationPolicy(
    writable_fields={"name", "description", "is_active"},
    required_on_create={"name"},
)

SUPPLIER_POLICY = ModelValidationPolicy(
    writable_fields={"name", "contact_person", "email", "phone", "address", "is_active"},
    required_on_create={"name"},
)


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_int(key: str, value: Any) -> int:
    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{key} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    # Reject floats explicitly
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    if isinstance(coltype, Integer):
        return _coerce_int(col.key, value)

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        raise ValidationError(f"{col.key} must be a boolean")

    # Datetimes (accept ISO-8601 strings; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationError(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationError(f"{col.key} must be a datetime")

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.

    partial=False: create semantics (enforce required_on_create)
    partial=True: patch semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = sorted(f for f in required if f not in payload)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)

    # Reject unknown / non-writable fields
    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationError(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationError(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        # NULL handling
        if raw is None:
            if not col.nullable:
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Optional unique strings are stored as NULL, not ""
        if isinstance(col.type, String) and col.nullable and val == "":
            val = None

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


def enforce_rules_product(patch: dict, existing=None) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.

    existing is the current Product on update so cross-field rules
    (min <= max stock) see the merged values.
    """
    for key in ("cost_price_cents", "retail_price_cents", "wholesale_price_cents"):
        price = patch.get(key)
        if price is None:
            continue
        if price < 0:
            raise ValidationError(f"{key} must be >= 0")
        if price > MAX_PRICE_CENTS:
            raise ValidationError(f"{key} cannot exceed {MAX_PRICE_CENTS} (KES {MAX_PRICE_CENTS / 100:,.2f})")

    for key in ("stock_quantity", "min_stock_level", "max_stock_level"):
        if key in patch and patch[key] is not None and patch[key] < 0:
            raise ValidationError(f"{key} must be >= 0")

    if "vat_status" in patch and patch["vat_status"] not in VALID_VAT_STATUSES:
        raise ValidationError(f"vat_status must be one of: {', '.join(VALID_VAT_STATUSES)}")

    min_level = patch.get("min_stock_level", getattr(existing, "min_stock_level", None))
    max_level = patch.get("max_stock_level", getattr(existing, "max_stock_level", None))
    if min_level is not None and max_level is not None and min_level > max_level:
        raise ValidationError("min_stock_level cannot exceed max_stock_level")


def parse_wholesale_tiers(raw: Any) -> list[dict]:
    """Validate the wholesaleTiers list sent with a product create/update."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("wholesale_tiers must be a list")
    tiers = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValidationError(f"wholesale_tiers[{idx}] must be an object")
        name = _require_str(entry, "name", max_len=64, label=f"wholesale_tiers[{idx}].name")
        min_quantity = _require_int(entry, "min_quantity", minimum=1, label=f"wholesale_tiers[{idx}].min_quantity")
        price_cents = _require_int(entry, "price_cents", minimum=0, label=f"wholesale_tiers[{idx}].price_cents")
        if price_cents > MAX_PRICE_CENTS:
            raise ValidationError(f"wholesale_tiers[{idx}].price_cents cannot exceed {MAX_PRICE_CENTS}")
        tiers.append({"name": name, "min_quantity": min_quantity, "price_cents": price_cents})
    return tiers


# =============================================================================
# FIELD HELPERS
# =============================================================================

def _require_object(payload: Any) -> dict:
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def _require_int(
    payload: dict,
    key: str,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    label: str | None = None,
) -> int:
    label = label or key
    if payload.get(key) is None:
        raise ValidationError(f"{label} is required")
    value = _coerce_int(label, payload[key])
    if minimum is not None and value < minimum:
        raise ValidationError(f"{label} must be >= {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(f"{label} must be <= {maximum}")
    return value


def _optional_int(
    payload: dict,
    key: str,
    *,
    default: int | None = None,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    if payload.get(key) is None:
        return default
    return _require_int(payload, key, minimum=minimum, maximum=maximum)


def _require_str(payload: dict, key: str, *, max_len: int = 255, label: str | None = None) -> str:
    label = label or key
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{label} is required")
    value = value.strip()
    if len(value) > max_len:
        raise ValidationError(f"{label} exceeds max length {max_len}")
    return value


def _optional_str(payload: dict, key: str, *, max_len: int = 255) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    value = value.strip()
    if not value:
        return None
    if len(value) > max_len:
        raise ValidationError(f"{key} exceeds max length {max_len}")
    return value


def _optional_datetime(payload: dict, key: str) -> datetime | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be an ISO-8601 datetime")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{key} must be an ISO-8601 datetime")


def _require_id(payload: dict, key: str, *, max_len: int = 64) -> str:
    value = payload.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    return _require_str({key: value}, key, max_len=max_len)


# =============================================================================
# SALES
# =============================================================================

@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    wholesale_tier_id: int | None = None


@dataclass(frozen=True)
class SaleRequest:
    cart_items: list[CartLine]
    payment_method: str
    paid_amount_cents: int
    discount_amount_cents: int = 0
    customer_name: str | None = None
    customer_phone: str | None = None
    offline_id: str | None = None
    phone_number: str | None = None
    sale_id: str | None = None


def _parse_cart_items(raw: Any) -> list[CartLine]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("Cart items are required")
    if len(raw) > MAX_CART_LINES:
        raise ValidationError(f"Cart cannot contain more than {MAX_CART_LINES} items")
    lines = []
    for idx, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ValidationError(f"cartItems[{idx}] must be an object")
        lines.append(
            CartLine(
                product_id=_require_int(entry, "productId", minimum=1, label=f"cartItems[{idx}].productId"),
                quantity=_require_int(
                    entry, "quantity", minimum=1, maximum=MAX_LINE_QUANTITY, label=f"cartItems[{idx}].quantity"
                ),
                wholesale_tier_id=_optional_int(entry, "wholesaleTierId", minimum=1),
            )
        )
    return lines


def parse_sale_request(payload: Any, *, allow_sale_id: bool = False) -> SaleRequest:
    """
    Validate a sale creation body.

    Amounts are integer cents. allow_sale_id lets offline replay carry the id
    the device assigned to the sale.
    """
    payload = _require_object(payload)

    cart_items = _parse_cart_items(payload.get("cartItems"))

    payment_method = payload.get("paymentMethod")
    if payment_method not in VALID_PAYMENT_METHODS:
        raise ValidationError(f"Payment method must be one of: {', '.join(VALID_PAYMENT_METHODS)}")

    paid_amount = payload.get("paidAmount")
    if paid_amount is None:
        raise ValidationError("Paid amount must be greater than zero")
    paid_amount_cents = _coerce_int("paidAmount", paid_amount)
    if paid_amount_cents <= 0:
        raise ValidationError("Paid amount must be greater than zero")

    discount_amount_cents = _optional_int(payload, "discountAmount", default=0, minimum=0)

    customer_phone = _optional_str(payload, "customerPhone", max_len=32)
    if customer_phone and not CUSTOMER_PHONE_RE.match(customer_phone):
        raise ValidationError("Invalid customer phone number")

    phone_number = _optional_str(payload, "phoneNumber", max_len=32)
    if payment_method == PAYMENT_METHOD_MPESA and not phone_number and not allow_sale_id:
        raise ValidationError("Phone number is required for M-Pesa payments")
    if payment_method == PAYMENT_METHOD_MPESA and phone_number and not is_valid_mpesa_phone(phone_number):
        raise ValidationError("Invalid M-Pesa phone number format")

    sale_id = None
    if allow_sale_id and payload.get("saleId") is not None:
        sale_id = _require_id(payload, "saleId")

    return SaleRequest(
        cart_items=cart_items,
        payment_method=payment_method,
        paid_amount_cents=paid_amount_cents,
        discount_amount_cents=discount_amount_cents,
        customer_name=_optional_str(payload, "customerName"),
        customer_phone=customer_phone,
        offline_id=_optional_str(payload, "offlineId", max_len=64),
        phone_number=phone_number,
        sale_id=sale_id,
    )


# =============================================================================
# REFUNDS / VOIDS
# =============================================================================

@dataclass(frozen=True)
class RefundLine:
    sale_item_id: int
    quantity: int


@dataclass(frozen=True)
class RefundRequest:
    reason: str
    refund_amount_cents: int | None = None
    refund_items: list[RefundLine] = field(default_factory=list)


def parse_refund_request(payload: Any) -> RefundRequest:
    """
    Validate a refund body.

    A non-empty refundItems list selects item-level refunds; otherwise the
    refund is proportional over refundAmount (default: the remaining amount).
    """
    payload = _require_object(payload)

    reason = payload.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("Refund reason is required")
    reason = reason.strip()
    if len(reason) > 255:
        raise ValidationError("reason exceeds max length 255")

    refund_amount_cents = None
    if payload.get("refundAmount") is not None:
        refund_amount_cents = _coerce_int("refundAmount", payload["refundAmount"])
        if refund_amount_cents <= 0:
            raise ValidationError("Refund amount must be greater than zero")

    raw_items = payload.get("refundItems")
    items: list[RefundLine] = []
    if raw_items is not None:
        if not isinstance(raw_items, list):
            raise ValidationError("refundItems must be a list")
        for idx, entry in enumerate(raw_items):
            if not isinstance(entry, dict):
                raise ValidationError(f"refundItems[{idx}] must be an object")
            items.append(
                RefundLine(
                    sale_item_id=_require_int(entry, "saleItemId", minimum=1, label=f"refundItems[{idx}].saleItemId"),
                    quantity=_require_int(entry, "quantity", minimum=1, label=f"refundItems[{idx}].quantity"),
                )
            )

    return RefundRequest(reason=reason, refund_amount_cents=refund_amount_cents, refund_items=items)


def parse_void_request(payload: Any) -> str:
    payload = _require_object(payload)
    reason = payload.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        raise ValidationError("Void reason is required")
    reason = reason.strip()
    if len(reason) > 255:
        raise ValidationError("reason exceeds max length 255")
    return reason


# =============================================================================
# STOCK
# =============================================================================

@dataclass(frozen=True)
class StockAdjustment:
    quantity: int
    product_id: int | None = None
    cost_price_cents: int | None = None
    supplier_id: int | None = None
    reference_number: str | None = None
    notes: str | None = None


def parse_stock_adjustment(payload: Any, *, require_product: bool = False) -> StockAdjustment:
    """
    Validate a stock movement. quantity is signed: positive adds stock,
    negative writes it off. Zero is rejected.
    """
    payload = _require_object(payload)
    quantity = _require_int(payload, "quantity", minimum=-MAX_LINE_QUANTITY, maximum=MAX_LINE_QUANTITY)
    if quantity == 0:
        raise ValidationError("quantity cannot be zero")
    product_id = None
    if require_product:
        product_id = _require_int(payload, "productId", minimum=1)
    cost_price_cents = _optional_int(payload, "costPrice", minimum=0, maximum=MAX_PRICE_CENTS)
    return StockAdjustment(
        quantity=quantity,
        product_id=product_id,
        cost_price_cents=cost_price_cents,
        supplier_id=_optional_int(payload, "supplierId", minimum=1),
        reference_number=_optional_str(payload, "referenceNumber", max_len=64),
        notes=_optional_str(payload, "notes", max_len=2000),
    )


BULK_STOCK_MAX = 100


@dataclass(frozen=True)
class BulkStockRequest:
    adjustments: list
    supplier_id: int | None = None
    reference_number: str | None = None
    notes: str | None = None


def parse_bulk_stock(payload: Any) -> BulkStockRequest:
    """
    Validate the bulk envelope only. Each adjustment is validated on its own
    during processing so one bad line doesn't sink the rest.
    """
    payload = _require_object(payload)
    adjustments = payload.get("adjustments")
    if not isinstance(adjustments, list) or not adjustments:
        raise ValidationError("Adjustments array is required")
    if len(adjustments) > BULK_STOCK_MAX:
        raise ValidationError(f"Maximum {BULK_STOCK_MAX} adjustments allowed per request")
    return BulkStockRequest(
        adjustments=adjustments,
        supplier_id=_optional_int(payload, "supplierId", minimum=1),
        reference_number=_optional_str(payload, "referenceNumber", max_len=64),
        notes=_optional_str(payload, "notes", max_len=2000),
    )


# =============================================================================
# M-PESA
# =============================================================================

@dataclass(frozen=True)
class MpesaPaymentRequest:
    amount_cents: int
    phone_number: str
    sale_id: str | None = None


def parse_mpesa_payment(payload: Any) -> MpesaPaymentRequest:
    payload = _require_object(payload)
    if payload.get("amount") is None or not payload.get("phoneNumber"):
        raise ValidationError("Amount and phone number are required")
    amount_cents = _coerce_int("amount", payload["amount"])
    if amount_cents <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount_cents < MPESA_MIN_AMOUNT_CENTS or amount_cents > MPESA_MAX_AMOUNT_CENTS:
        raise ValidationError(
            f"Amount must be between {MPESA_MIN_AMOUNT_CENTS} and {MPESA_MAX_AMOUNT_CENTS} cents"
        )
    phone_number = payload["phoneNumber"]
    if not isinstance(phone_number, str):
        raise ValidationError("phoneNumber must be a string")
    if not is_valid_mpesa_phone(phone_number):
        raise ValidationError("Invalid M-Pesa phone number format")
    sale_id = None
    if payload.get("saleId") is not None:
        sale_id = _require_id(payload, "saleId")
    return MpesaPaymentRequest(amount_cents=amount_cents, phone_number=phone_number.strip(), sale_id=sale_id)


# =============================================================================
# OFFLINE SYNC (tagged payloads)
# =============================================================================

@dataclass(frozen=True)
class RefundSyncPayload:
    refund_id: str
    sale_id: str
    refund_amount_cents: int
    reason: str


@dataclass(frozen=True)
class VoidSyncPayload:
    sale_id: str
    reason: str
    voided_at: datetime | None = None


def _parse_sale_sync(data: dict) -> SaleRequest:
    sale = parse_sale_request(data, allow_sale_id=True)
    if not sale.sale_id and not sale.offline_id:
        raise ValidationError("Offline sale requires saleId or offlineId")
    return sale


def _parse_stock_entry_sync(data: dict) -> StockAdjustment:
    return parse_stock_adjustment(data, require_product=True)


def _parse_refund_sync(data: dict) -> RefundSyncPayload:
    amount = _require_int(data, "refundAmount", minimum=1)
    return RefundSyncPayload(
        refund_id=_require_id(data, "refundId"),
        sale_id=_require_id(data, "saleId"),
        refund_amount_cents=amount,
        reason=_require_str(data, "reason", label="Refund reason"),
    )


def _parse_void_sync(data: dict) -> VoidSyncPayload:
    return VoidSyncPayload(
        sale_id=_require_id(data, "saleId"),
        reason=_require_str(data, "reason", label="Void reason"),
        voided_at=_optional_datetime(data, "voidedAt"),
    )


SYNC_PAYLOAD_PARSERS: dict[str, Callable[[dict], Any]] = {
    SYNC_TYPE_SALE: _parse_sale_sync,
    SYNC_TYPE_STOCK_ENTRY: _parse_stock_entry_sync,
    SYNC_TYPE_REFUND: _parse_refund_sync,
    SYNC_TYPE_VOID: _parse_void_sync,
}


def parse_sync_payload(sync_type: str, data: Any):
    """Validate the data of one queued operation against the schema for its type."""
    parser = SYNC_PAYLOAD_PARSERS.get(sync_type)
    if parser is None:
        raise ValidationError(f"Unknown sync type: {sync_type}")
    if not isinstance(data, dict):
        raise ValidationError("Sync item data must be an object")
    return parser(data)


def parse_sync_batch(payload: Any) -> list[dict]:
    """
    Validate the batch envelope only.

    Item-level problems (bad type, bad data) fail that item, not the batch,
    so entries are returned raw and parsed one by one during replay.
    """
    payload = _require_object(payload)
    sync_items = payload.get("syncItems")
    if not isinstance(sync_items, list):
        raise ValidationError("Sync items array is required")
    if len(sync_items) > MAX_SYNC_BATCH:
        raise ValidationError(f"Cannot sync more than {MAX_SYNC_BATCH} items at once")
    return sync_items
