from __future__ import annotations

import uuid

from ..extensions import db
from murimi_pos.time_utils import to_utc_z, utcnow

# Sale lifecycle
SALE_STATUS_COMPLETED = "COMPLETED"
SALE_STATUS_VOID = "VOID"
SALE_STATUS_REFUNDED = "REFUNDED"

# Payment status on the sale (and on individual payments, minus REFUNDED)
PAYMENT_STATUS_PENDING = "PENDING"
PAYMENT_STATUS_COMPLETED = "COMPLETED"
PAYMENT_STATUS_FAILED = "FAILED"
PAYMENT_STATUS_REFUNDED = "REFUNDED"

PAYMENT_METHOD_CASH = "CASH"
PAYMENT_METHOD_MPESA = "MPESA"
PAYMENT_METHOD_CARD = "CARD"
PAYMENT_METHOD_SPLIT = "SPLIT"
VALID_PAYMENT_METHODS = (
    PAYMENT_METHOD_CASH,
    PAYMENT_METHOD_MPESA,
    PAYMENT_METHOD_CARD,
    PAYMENT_METHOD_SPLIT,
)


def _new_id() -> str:
    return str(uuid.uuid4())


class Sale(db.Model):
    """
    Sale document.

    WHY: A sale is the aggregation root for its items, payments and refunds.
    String ids let offline devices assign the id up front so replays dedupe.

    stock_debited tracks whether this sale currently holds inventory taken
    from products. It is set when the sale is created and cleared when the
    stock is given back because the payment failed. Voids consult it so stock
    is never restored twice.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_user_created", "user_id", "created_at"),
        db.Index("ix_sales_status_created", "status", "created_at"),
    )

    id = db.Column(db.String(64), primary_key=True, default=_new_id)

    # Human-readable number (e.g., "SALE-1718000000000-AB12CD")
    sale_number = db.Column(db.String(64), nullable=False, unique=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # Amounts in cents. Invariant: total = subtotal + tax - discount
    subtotal_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    change_amount_cents = db.Column(db.Integer, nullable=False, default=0)

    payment_method = db.Column(db.String(16), nullable=False, default=PAYMENT_METHOD_CASH)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)
    status = db.Column(db.String(16), nullable=False, default=SALE_STATUS_COMPLETED, index=True)

    customer_name = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    # Client-generated id for sales captured offline
    offline_id = db.Column(db.String(64), nullable=True, unique=True)

    receipt_printed = db.Column(db.Boolean, nullable=False, default=False)
    stock_debited = db.Column(db.Boolean, nullable=False, default=False)

    # Void audit trail
    voided_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    voided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    void_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    user = db.relationship("User", foreign_keys=[user_id])
    voided_by = db.relationship("User", foreign_keys=[voided_by_user_id])

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Sale {self.sale_number} status={self.status} payment={self.payment_status}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "sale_number": self.sale_number,
            "user_id": self.user_id,
            "cashier_name": self.user.full_name if self.user else None,
            "subtotal_amount_cents": self.subtotal_amount_cents,
            "tax_amount_cents": self.tax_amount_cents,
            "discount_amount_cents": self.discount_amount_cents,
            "total_amount_cents": self.total_amount_cents,
            "paid_amount_cents": self.paid_amount_cents,
            "change_amount_cents": self.change_amount_cents,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "status": self.status,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "offline_id": self.offline_id,
            "receipt_printed": self.receipt_printed,
            "stock_debited": self.stock_debited,
            "voided_by_user_id": self.voided_by_user_id,
            "voided_at": to_utc_z(self.voided_at) if self.voided_at else None,
            "void_reason": self.void_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["payments"] = [payment.to_dict() for payment in self.payments]
            data["refunds"] = [refund.to_dict() for refund in self.refunds]
        return data


class SaleItem(db.Model):
    """
    Line item on a sale.

    quantity and total_price_cents are the REMAINING values: refunds decrement
    them in place. Rows are never deleted.
    """
    __tablename__ = "sale_items"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_sale_items_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.String(64), db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)

    wholesale_tier_id = db.Column(db.Integer, db.ForeignKey("wholesale_tiers.id"), nullable=True)

    sale = db.relationship(
        "Sale",
        backref=db.backref("items", lazy=True, order_by="SaleItem.id"),
    )
    product = db.relationship("Product")
    wholesale_tier = db.relationship("WholesaleTier")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "total_price_cents": self.total_price_cents,
            "discount_cents": self.discount_cents,
            "tax_cents": self.tax_cents,
            "wholesale_tier_id": self.wholesale_tier_id,
        }


class Payment(db.Model):
    """
    Payment against a sale.

    M-Pesa payments start PENDING and are settled by the gateway callback,
    matched on mpesa_checkout_request_id.
    """
    __tablename__ = "payments"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.String(64), db.ForeignKey("sales.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(16), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=PAYMENT_STATUS_PENDING, index=True)
    reference = db.Column(db.String(64), nullable=True)

    # M-Pesa gateway identifiers
    mpesa_merchant_request_id = db.Column(db.String(128), nullable=True)
    mpesa_checkout_request_id = db.Column(db.String(128), nullable=True, unique=True)
    mpesa_receipt_number = db.Column(db.String(64), nullable=True)
    mpesa_timestamp = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    sale = db.relationship(
        "Sale",
        backref=db.backref("payments", lazy=True, order_by="Payment.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "amount_cents": self.amount_cents,
            "method": self.method,
            "status": self.status,
            "reference": self.reference,
            "mpesa_merchant_request_id": self.mpesa_merchant_request_id,
            "mpesa_checkout_request_id": self.mpesa_checkout_request_id,
            "mpesa_receipt_number": self.mpesa_receipt_number,
            "mpesa_timestamp": self.mpesa_timestamp,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Refund(db.Model):
    """Money given back against a sale. Append-only."""
    __tablename__ = "refunds"

    id = db.Column(db.String(64), primary_key=True, default=_new_id)
    sale_id = db.Column(db.String(64), db.ForeignKey("sales.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    total_refund_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    sale = db.relationship(
        "Sale",
        backref=db.backref("refunds", lazy=True, order_by="Refund.created_at"),
    )
    user = db.relationship("User")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "user_id": self.user_id,
            "total_refund_cents": self.total_refund_cents,
            "reason": self.reason,
            "created_at": to_utc_z(self.created_at),
        }
