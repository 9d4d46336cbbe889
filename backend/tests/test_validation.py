"""
Request parsing tests.

These run without a database: parsers only shape and bound client input.
"""

import pytest

from murimi_pos.errors import ValidationError
from murimi_pos.models import Product
from murimi_pos.validation import (
    PRODUCT_POLICY,
    MAX_CART_LINES,
    RefundSyncPayload,
    SaleRequest,
    StockAdjustment,
    VoidSyncPayload,
    enforce_rules_product,
    parse_bulk_stock,
    parse_mpesa_payment,
    parse_refund_request,
    parse_sale_request,
    parse_stock_adjustment,
    parse_sync_batch,
    parse_sync_payload,
    parse_void_request,
    parse_wholesale_tiers,
    validate_payload,
)


def _cart(**extra):
    body = {
        "cartItems": [{"productId": 1, "quantity": 2}],
        "paymentMethod": "CASH",
        "paidAmount": 5000,
    }
    body.update(extra)
    return body


# =============================================================================
# SALES
# =============================================================================


class TestSaleRequest:

    def test_minimal_cash_sale(self):
        req = parse_sale_request(_cart())
        assert isinstance(req, SaleRequest)
        assert req.cart_items[0].product_id == 1
        assert req.cart_items[0].quantity == 2
        assert req.discount_amount_cents == 0
        assert req.sale_id is None

    @pytest.mark.parametrize(
        "override,message",
        [
            ({"cartItems": []}, "Cart items are required"),
            ({"cartItems": "abc"}, "Cart items are required"),
            ({"paymentMethod": "CHEQUE"}, "Payment method must be one of"),
            ({"paidAmount": 0}, "Paid amount must be greater than zero"),
            ({"paidAmount": None}, "Paid amount must be greater than zero"),
            ({"paidAmount": 12.5}, "not a decimal"),
            ({"discountAmount": -1}, "discountAmount must be >= 0"),
            ({"customerPhone": "12345"}, "Invalid customer phone number"),
            ({"paymentMethod": "MPESA"}, "Phone number is required for M-Pesa payments"),
            ({"paymentMethod": "MPESA", "phoneNumber": "0812"}, "Invalid M-Pesa phone number format"),
        ],
    )
    def test_rejections(self, override, message):
        with pytest.raises(ValidationError, match=message):
            parse_sale_request(_cart(**override))

    @pytest.mark.parametrize("quantity", [0, -3, 100_001, "2.5", True])
    def test_bad_quantities(self, quantity):
        with pytest.raises(ValidationError, match=r"cartItems\[0\]\.quantity"):
            parse_sale_request(_cart(cartItems=[{"productId": 1, "quantity": quantity}]))

    def test_numeric_strings_accepted(self):
        req = parse_sale_request(_cart(paidAmount="5000", cartItems=[{"productId": "3", "quantity": "4"}]))
        assert req.paid_amount_cents == 5000
        assert req.cart_items[0].product_id == 3
        assert req.cart_items[0].quantity == 4

    def test_cart_size_limit(self):
        lines = [{"productId": 1, "quantity": 1}] * (MAX_CART_LINES + 1)
        with pytest.raises(ValidationError, match="Cart cannot contain more than"):
            parse_sale_request(_cart(cartItems=lines))

    def test_sale_id_only_read_for_replays(self):
        assert parse_sale_request(_cart(saleId="dev-1")).sale_id is None
        assert parse_sale_request(_cart(saleId="dev-1"), allow_sale_id=True).sale_id == "dev-1"

    def test_not_an_object(self):
        with pytest.raises(ValidationError, match="Invalid JSON payload"):
            parse_sale_request(["cartItems"])


# =============================================================================
# REFUNDS / VOIDS
# =============================================================================


class TestRefundAndVoid:

    def test_reason_is_trimmed(self):
        req = parse_refund_request({"reason": "  Damaged  "})
        assert req.reason == "Damaged"
        assert req.refund_amount_cents is None
        assert req.refund_items == []

    def test_refund_items_parsed(self):
        req = parse_refund_request({"reason": "x", "refundItems": [{"saleItemId": 7, "quantity": 2}]})
        assert req.refund_items[0].sale_item_id == 7
        assert req.refund_items[0].quantity == 2

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"reason": 42},
            {"reason": "x" * 256},
            {"reason": "x", "refundAmount": -100},
            {"reason": "x", "refundItems": {"saleItemId": 1}},
            {"reason": "x", "refundItems": [{"saleItemId": 1, "quantity": 0}]},
        ],
    )
    def test_refund_rejections(self, body):
        with pytest.raises(ValidationError):
            parse_refund_request(body)

    def test_void_reason(self):
        assert parse_void_request({"reason": " Duplicate "}) == "Duplicate"
        with pytest.raises(ValidationError, match="Void reason is required"):
            parse_void_request(None)


# =============================================================================
# STOCK
# =============================================================================


class TestStock:

    def test_signed_quantity(self):
        adj = parse_stock_adjustment({"quantity": -4, "notes": "Broken"})
        assert isinstance(adj, StockAdjustment)
        assert adj.quantity == -4
        assert adj.notes == "Broken"

    def test_zero_quantity_rejected(self):
        with pytest.raises(ValidationError, match="quantity cannot be zero"):
            parse_stock_adjustment({"quantity": 0})

    def test_product_required_for_replay(self):
        with pytest.raises(ValidationError, match="productId is required"):
            parse_stock_adjustment({"quantity": 3}, require_product=True)

    def test_bulk_envelope(self):
        req = parse_bulk_stock({"adjustments": [{"productId": 1, "quantity": 5}], "referenceNumber": "GRN-1"})
        assert req.reference_number == "GRN-1"
        with pytest.raises(ValidationError, match="Adjustments array is required"):
            parse_bulk_stock({"adjustments": []})
        with pytest.raises(ValidationError, match="Maximum 100 adjustments"):
            parse_bulk_stock({"adjustments": [{}] * 101})


# =============================================================================
# PRODUCTS
# =============================================================================


class TestProductPayload:

    def test_create_requires_prices(self):
        with pytest.raises(ValidationError, match="Missing required fields: cost_price_cents, retail_price_cents"):
            validate_payload(model=Product, payload={"name": "Milk"}, policy=PRODUCT_POLICY, partial=False)

    def test_unknown_and_protected_fields_rejected(self):
        with pytest.raises(ValidationError, match="Field not allowed: id"):
            validate_payload(model=Product, payload={"id": 5}, policy=PRODUCT_POLICY, partial=True)

    def test_blank_optional_strings_become_null(self):
        patch = validate_payload(
            model=Product,
            payload={"name": " Milk ", "sku": "", "retail_price_cents": "120"},
            policy=PRODUCT_POLICY,
            partial=True,
        )
        assert patch == {"name": "Milk", "sku": None, "retail_price_cents": 120}

    def test_name_cannot_be_blank(self):
        with pytest.raises(ValidationError, match="name cannot be blank"):
            validate_payload(model=Product, payload={"name": "  "}, policy=PRODUCT_POLICY, partial=True)

    @pytest.mark.parametrize(
        "patch,message",
        [
            ({"retail_price_cents": -1}, "must be >= 0"),
            ({"cost_price_cents": 1_000_000_000}, "cannot exceed"),
            ({"stock_quantity": -2}, "stock_quantity must be >= 0"),
            ({"vat_status": "ZERO"}, "vat_status must be one of"),
            ({"min_stock_level": 50, "max_stock_level": 10}, "min_stock_level cannot exceed max_stock_level"),
        ],
    )
    def test_business_rules(self, patch, message):
        with pytest.raises(ValidationError, match=message):
            enforce_rules_product(patch)

    def test_min_level_checked_against_existing_max(self):
        existing = Product(name="Milk", min_stock_level=5, max_stock_level=20)
        with pytest.raises(ValidationError):
            enforce_rules_product({"min_stock_level": 25}, existing)

    def test_wholesale_tiers(self):
        tiers = parse_wholesale_tiers([{"name": "Carton", "min_quantity": 12, "price_cents": 900}])
        assert tiers == [{"name": "Carton", "min_quantity": 12, "price_cents": 900}]
        with pytest.raises(ValidationError, match=r"wholesale_tiers\[0\]\.min_quantity must be >= 1"):
            parse_wholesale_tiers([{"name": "Carton", "min_quantity": 0, "price_cents": 900}])


# =============================================================================
# M-PESA
# =============================================================================


class TestMpesaPayment:

    def test_valid_request(self):
        req = parse_mpesa_payment({"amount": 25000, "phoneNumber": " 0712345678 ", "saleId": "abc"})
        assert req.amount_cents == 25000
        assert req.phone_number == "0712345678"
        assert req.sale_id == "abc"

    @pytest.mark.parametrize(
        "body,message",
        [
            ({"phoneNumber": "0712345678"}, "Amount and phone number are required"),
            ({"amount": 99, "phoneNumber": "0712345678"}, "Amount must be between"),
            ({"amount": 7_000_001, "phoneNumber": "0712345678"}, "Amount must be between"),
            ({"amount": 1000, "phoneNumber": "0712"}, "Invalid M-Pesa phone number format"),
        ],
    )
    def test_rejections(self, body, message):
        with pytest.raises(ValidationError, match=message):
            parse_mpesa_payment(body)


# =============================================================================
# OFFLINE SYNC
# =============================================================================


class TestSyncParsing:

    def test_batch_envelope(self):
        assert parse_sync_batch({"syncItems": []}) == []
        with pytest.raises(ValidationError, match="Sync items array is required"):
            parse_sync_batch({})

    def test_sale_item_requires_device_id(self):
        with pytest.raises(ValidationError, match="Offline sale requires saleId or offlineId"):
            parse_sync_payload("sale", _cart())

    def test_sale_item_keeps_device_ids(self):
        payload = parse_sync_payload("sale", _cart(saleId="s-1", offlineId="o-1"))
        assert payload.sale_id == "s-1"
        assert payload.offline_id == "o-1"

    def test_refund_item(self):
        payload = parse_sync_payload(
            "refund", {"refundId": "rf-1", "saleId": "s-1", "refundAmount": 500, "reason": "Damaged"}
        )
        assert payload == RefundSyncPayload(
            refund_id="rf-1", sale_id="s-1", refund_amount_cents=500, reason="Damaged"
        )

    def test_void_item_with_time(self):
        payload = parse_sync_payload(
            "void", {"saleId": "s-1", "reason": "Oops", "voidedAt": "2026-10-01T08:00:00Z"}
        )
        assert isinstance(payload, VoidSyncPayload)
        assert payload.voided_at.hour == 8

    @pytest.mark.parametrize(
        "sync_type,data,message",
        [
            ("teleport", {}, "Unknown sync type: teleport"),
            ("void", "nope", "Sync item data must be an object"),
            ("refund", {"saleId": "s", "reason": "x"}, "refundAmount is required"),
        ],
    )
    def test_rejections(self, sync_type, data, message):
        with pytest.raises(ValidationError, match=message):
            parse_sync_payload(sync_type, data)
