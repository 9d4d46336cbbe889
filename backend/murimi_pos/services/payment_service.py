# Overview: Service-layer operations for payment; encapsulates business logic and database work.

"""
M-Pesa Payment Service

WHY: M-Pesa is asynchronous. The POS asks the gateway to prompt the
customer's phone (STK push), answers the cashier immediately, and learns the
outcome later when Safaricom calls back. This module owns both halves and
keeps the payment row, the sale's payment status and the sale's stock in step.

DESIGN PRINCIPLES:
- Never hold a database write lock across a gateway call: the PENDING payment
  is committed first, the gateway is called, then the outcome is written.
- Payments are matched to callbacks by mpesa_checkout_request_id.
- A failed payment gives the sale's stock back exactly once
  (release_sale_stock_locked is a no-op on a sale that holds none).
- Callbacks are idempotent: a repeated success or failure changes nothing.

PAYMENT LIFECYCLE:
    PENDING -> COMPLETED  (callback ResultCode 0)
    PENDING -> FAILED     (gateway refused the push, gateway unreachable,
                           or callback ResultCode != 0)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..extensions import db
from ..models import Payment, Sale
from ..models.sales import (
    PAYMENT_METHOD_MPESA,
    PAYMENT_STATUS_COMPLETED,
    PAYMENT_STATUS_FAILED,
    PAYMENT_STATUS_PENDING,
    SALE_STATUS_COMPLETED,
    SALE_STATUS_VOID,
)
from murimi_pos.errors import (
    MpesaError,
    NotFoundError,
    PaymentRejectedError,
    SaleStateError,
)
from murimi_pos.time_utils import utcnow
from murimi_pos.validation import MpesaPaymentRequest
from .audit_service import log_activity
from .concurrency import begin_write, lock_for_update, run_with_retry
from .inventory_service import lock_products
from .mpesa_client import format_phone_number, generate_timestamp, get_mpesa_client
from .sales_service import generate_sale_number, get_locked_sale, release_sale_stock_locked

logger = logging.getLogger(__name__)

GATEWAY_ACCEPTED = "0"


@dataclass
class CallbackResult:
    accepted: bool
    result_desc: str

    def to_dict(self) -> dict:
        return {"ResultCode": 0 if self.accepted else 1, "ResultDesc": self.result_desc}


def generate_account_reference() -> str:
    """MURIMI<epoch ms>, shown to the customer on the phone prompt."""
    return f"MURIMI{int(utcnow().timestamp() * 1000)}"


# =============================================================================
# OUTCOME WRITERS (caller owns the transaction)
# =============================================================================

def _fail_payment_locked(sale: Sale, payment: Payment, *, reason: str) -> None:
    old_status = payment.status
    payment.status = PAYMENT_STATUS_FAILED
    payment.mpesa_timestamp = generate_timestamp()

    if sale.status != SALE_STATUS_VOID and sale.payment_status != PAYMENT_STATUS_COMPLETED:
        sale.payment_status = PAYMENT_STATUS_FAILED
        release_sale_stock_locked(sale)

    log_activity(
        action="payment_failed",
        entity_type="Payment",
        entity_id=payment.id,
        old_values={"status": old_status},
        new_values={"status": payment.status, "sale_id": sale.id, "reason": reason},
    )


def _redebit_stock_locked(sale: Sale) -> bool:
    """
    Take a sale's stock again after a late successful payment.

    All-or-nothing: returns False and changes nothing if any product is short.
    """
    products = lock_products(item.product_id for item in sale.items)
    needed: dict[int, int] = {}
    for item in sale.items:
        needed[item.product_id] = needed.get(item.product_id, 0) + item.quantity
    for product_id, quantity in needed.items():
        product = products.get(product_id)
        if product is None or product.stock_quantity < quantity:
            return False
    for product_id, quantity in needed.items():
        products[product_id].stock_quantity -= quantity
    sale.stock_debited = True
    return True


def _record_gateway_failure(payment_id: int, reason: str) -> None:
    def _op():
        begin_write()
        payment = lock_for_update(db.session.query(Payment).filter_by(id=payment_id)).first()
        sale = get_locked_sale(payment.sale_id)
        _fail_payment_locked(sale, payment, reason=reason)
        db.session.commit()

    run_with_retry(_op)


def _push(payment_id: int, amount_cents: int, phone_number: str, reference: str) -> dict:
    """
    Send the STK push for a committed PENDING payment and record the outcome.

    Raises:
        PaymentRejectedError: gateway answered with a non-zero ResponseCode
        MpesaError: gateway unreachable or answered garbage
    """
    client = get_mpesa_client()
    try:
        response = client.initiate_stk_push(amount_cents, phone_number, reference)
    except MpesaError as exc:
        logger.warning("STK push for payment %s failed: %s", payment_id, exc.message)
        _record_gateway_failure(payment_id, exc.message)
        raise

    if str(response.get("ResponseCode")) != GATEWAY_ACCEPTED:
        message = response.get("ResponseDescription") or "STK push failed"
        logger.info("STK push for payment %s rejected: %s", payment_id, message)
        _record_gateway_failure(payment_id, message)
        raise PaymentRejectedError(message)

    def _op():
        payment = db.session.get(Payment, payment_id)
        payment.mpesa_checkout_request_id = response.get("CheckoutRequestID")
        payment.mpesa_merchant_request_id = response.get("MerchantRequestID")
        payment.mpesa_timestamp = generate_timestamp()
        db.session.commit()

    run_with_retry(_op)
    return {
        "paymentId": payment_id,
        "checkoutRequestId": response.get("CheckoutRequestID"),
        "merchantRequestId": response.get("MerchantRequestID"),
        "customerMessage": response.get("CustomerMessage"),
    }


# =============================================================================
# STK PUSH
# =============================================================================

def start_sale_payment(sale_id: str, phone_number: str) -> dict:
    """
    Push the payment prompt for an M-Pesa sale that create_sale just committed.

    Returns:
        dict with paymentId, checkoutRequestId, merchantRequestId,
        customerMessage and message

    Raises:
        PaymentRejectedError / MpesaError: the sale is left with payment
        FAILED and its stock released
    """
    def _op():
        sale = db.session.get(Sale, sale_id)
        if sale is None:
            raise NotFoundError("Sale not found")
        payment = next(
            (p for p in sale.payments if p.method == PAYMENT_METHOD_MPESA and p.status == PAYMENT_STATUS_PENDING),
            None,
        )
        if payment is None:
            raise SaleStateError("Sale has no pending M-Pesa payment")
        payment.reference = generate_account_reference()
        db.session.commit()
        return payment.id, sale.total_amount_cents, payment.reference

    payment_id, amount_cents, reference = run_with_retry(_op)
    result = _push(payment_id, amount_cents, format_phone_number(phone_number), reference)
    result["message"] = "Payment request sent to customer's phone"
    return result


def initiate_stk_push(req: MpesaPaymentRequest, *, user_id: int) -> dict:
    """
    Start an M-Pesa payment outside the sale flow.

    With saleId the payment is attached to that sale (a retry after a failed
    or timed-out prompt). Without it a placeholder sale for the amount is
    created, PENDING and holding no stock.

    Returns:
        dict with paymentId, saleId, checkoutRequestId, merchantRequestId,
        customerMessage

    Raises:
        NotFoundError: saleId does not exist
        SaleStateError: sale is VOID or already paid
        PaymentRejectedError: gateway refused the push (400)
        MpesaError: gateway unavailable (503)
    """
    phone_number = format_phone_number(req.phone_number)
    reference = generate_account_reference()

    def _op():
        begin_write()
        if req.sale_id:
            sale = get_locked_sale(req.sale_id)
            if sale.status == SALE_STATUS_VOID:
                raise SaleStateError("Cannot take payment for a voided sale")
            if sale.payment_status == PAYMENT_STATUS_COMPLETED:
                raise SaleStateError("Sale is already paid")
            sale.payment_status = PAYMENT_STATUS_PENDING
        else:
            sale = Sale(
                sale_number=generate_sale_number(),
                user_id=user_id,
                subtotal_amount_cents=req.amount_cents,
                total_amount_cents=req.amount_cents,
                paid_amount_cents=0,
                payment_method=PAYMENT_METHOD_MPESA,
                payment_status=PAYMENT_STATUS_PENDING,
                status=SALE_STATUS_COMPLETED,
                customer_phone=phone_number,
                stock_debited=False,
            )
            db.session.add(sale)
            db.session.flush()

        payment = Payment(
            sale_id=sale.id,
            amount_cents=req.amount_cents,
            method=PAYMENT_METHOD_MPESA,
            status=PAYMENT_STATUS_PENDING,
            reference=reference,
        )
        db.session.add(payment)
        db.session.flush()

        log_activity(
            action="payment_initiated",
            entity_type="Payment",
            entity_id=payment.id,
            user_id=user_id,
            new_values={"sale_id": sale.id, "amount_cents": req.amount_cents, "reference": reference},
        )
        db.session.commit()
        return sale.id, payment.id

    sale_id, payment_id = run_with_retry(_op)
    result = _push(payment_id, req.amount_cents, phone_number, reference)
    result["saleId"] = sale_id
    return result


# =============================================================================
# CALLBACK
# =============================================================================

def _metadata_values(callback: dict) -> dict:
    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    return {
        item.get("Name"): item.get("Value")
        for item in items
        if isinstance(item, dict) and item.get("Name")
    }


def _result_code(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def process_callback(payload) -> CallbackResult:
    """
    Apply Safaricom's STK callback.

    Accepts {"Body": {"stkCallback": {...}}} or {"stkCallback": {...}}.

    ResultCode 0: payment COMPLETED with its receipt number and the sale's
    payment_status COMPLETED. A sale whose stock was released by an earlier
    failure takes its stock again if it can. A VOID sale stays VOID.

    Non-zero ResultCode: payment FAILED, sale payment_status FAILED and its
    stock released.
    """
    if not isinstance(payload, dict):
        return CallbackResult(False, "Invalid callback payload")
    body = payload.get("Body") if isinstance(payload.get("Body"), dict) else payload
    callback = body.get("stkCallback")
    if not isinstance(callback, dict):
        return CallbackResult(False, "Invalid callback payload")

    checkout_id = callback.get("CheckoutRequestID")
    result_code = _result_code(callback.get("ResultCode"))
    result_desc = callback.get("ResultDesc") or ""
    if not checkout_id or result_code is None:
        return CallbackResult(False, "Invalid callback payload")

    metadata = _metadata_values(callback)

    def _op():
        begin_write()
        payment = lock_for_update(
            db.session.query(Payment).filter_by(mpesa_checkout_request_id=checkout_id)
        ).first()
        if payment is None:
            db.session.rollback()
            logger.error("M-Pesa callback for unknown CheckoutRequestID %s", checkout_id)
            return CallbackResult(False, "Payment record not found")

        sale = get_locked_sale(payment.sale_id)

        if result_code != 0:
            if payment.status != PAYMENT_STATUS_PENDING:
                db.session.rollback()
                logger.info("Ignoring failure callback for payment %s in status %s", payment.id, payment.status)
                return CallbackResult(False, result_desc or "Payment failed")
            _fail_payment_locked(sale, payment, reason=result_desc)
            db.session.commit()
            logger.info("M-Pesa payment %s failed: %s", payment.id, result_desc)
            return CallbackResult(False, result_desc or "Payment failed")

        if payment.status == PAYMENT_STATUS_COMPLETED:
            db.session.rollback()
            return CallbackResult(True, "Success")

        receipt = metadata.get("MpesaReceiptNumber")
        old_values = {"status": payment.status, "sale_payment_status": sale.payment_status}
        payment.status = PAYMENT_STATUS_COMPLETED
        payment.mpesa_receipt_number = str(receipt) if receipt is not None else None
        payment.mpesa_timestamp = generate_timestamp()

        if sale.status == SALE_STATUS_VOID:
            logger.warning("M-Pesa payment %s completed for voided sale %s", payment.id, sale.id)
        else:
            sale.payment_status = PAYMENT_STATUS_COMPLETED
            if not sale.stock_debited and sale.items and not _redebit_stock_locked(sale):
                logger.error(
                    "M-Pesa payment %s completed but stock for sale %s could not be taken again",
                    payment.id,
                    sale.id,
                )

        log_activity(
            action="payment_completed",
            entity_type="Payment",
            entity_id=payment.id,
            old_values=old_values,
            new_values={
                "status": payment.status,
                "sale_payment_status": sale.payment_status,
                "mpesa_receipt_number": payment.mpesa_receipt_number,
                "amount": metadata.get("Amount"),
            },
        )
        db.session.commit()
        logger.info("M-Pesa payment %s completed (receipt %s)", payment.id, payment.mpesa_receipt_number)
        return CallbackResult(True, "Success")

    return run_with_retry(_op)
