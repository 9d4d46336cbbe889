"""
M-Pesa tests.

The Daraja API is replaced by FakeDaraja (httpx.MockTransport), so these
cover the wire format we send, the STK push flow and callback reconciliation
without touching the network.
"""

import base64
import json
from datetime import datetime, timezone

import pytest

from murimi_pos.errors import MpesaError, ValidationError
from murimi_pos.models import Payment, Sale
from murimi_pos.services.mpesa_client import (
    format_phone_number,
    generate_password,
    generate_timestamp,
    get_mpesa_client,
    is_valid_mpesa_phone,
)
from murimi_pos.services.payment_service import process_callback

from conftest import stk_callback


def _mpesa_sale(client, headers, product, quantity=3, phone="0712345678"):
    return client.post(
        "/api/sales",
        json={
            "cartItems": [{"productId": product.id, "quantity": quantity}],
            "paymentMethod": "MPESA",
            "paidAmount": product.retail_price_cents * quantity,
            "phoneNumber": phone,
        },
        headers=headers,
    )


def _callback(client, payload):
    return client.post("/api/mpesa/callback", json=payload)


# =============================================================================
# HELPERS
# =============================================================================


class TestHelpers:

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("0712345678", "254712345678"),
            ("+254712345678", "254712345678"),
            ("254712345678", "254712345678"),
            ("712345678", "254712345678"),
            ("0712 345 678", "254712345678"),
        ],
    )
    def test_format_phone_number(self, raw, expected):
        assert format_phone_number(raw) == expected

    def test_format_rejects_garbage(self):
        with pytest.raises(ValidationError):
            format_phone_number("12345")

    def test_is_valid_mpesa_phone(self):
        assert is_valid_mpesa_phone("0712345678")
        assert not is_valid_mpesa_phone("07123")
        assert not is_valid_mpesa_phone("2547123456789")

    def test_timestamp_is_east_africa_time(self):
        now = datetime(2026, 10, 19, 21, 30, 5, tzinfo=timezone.utc)
        assert generate_timestamp(now) == "20261020003005"

    def test_password_is_base64_of_shortcode_passkey_timestamp(self):
        password = generate_password("174379", "passkey", "20261019120000")
        assert base64.b64decode(password).decode() == "174379passkey20261019120000"


# =============================================================================
# CLIENT
# =============================================================================


class TestDarajaClient:

    def test_stk_push_wire_format(self, app, daraja):
        get_mpesa_client().initiate_stk_push(12550, "254712345678", "MURIMI1")

        token_request, push_request = daraja.requests
        assert token_request.headers["Authorization"].startswith("Basic ")
        assert push_request.headers["Authorization"] == "Bearer test-access-token"

        body = json.loads(push_request.content)
        assert body["Amount"] == 125
        assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
        assert body["BusinessShortCode"] == body["PartyB"] == "174379"
        assert body["TransactionType"] == "CustomerPayBillOnline"
        assert body["CallBackURL"] == "https://pos.example.com/api/mpesa/callback"
        decoded = base64.b64decode(body["Password"]).decode()
        assert decoded == f"174379test-passkey{body['Timestamp']}"

    def test_network_failure_is_mpesa_error(self, app, daraja):
        daraja.network_down = True
        with pytest.raises(MpesaError, match="unavailable"):
            get_mpesa_client().initiate_stk_push(10000, "254712345678", "MURIMI1")

    def test_http_error_is_mpesa_error(self, app, daraja):
        daraja.stk_status = 500
        with pytest.raises(MpesaError, match="STK push failed"):
            get_mpesa_client().initiate_stk_push(10000, "254712345678", "MURIMI1")


# =============================================================================
# SALE FLOW
# =============================================================================


class TestMpesaSale:

    def test_sale_waits_for_callback(self, client, db_session, cashier_headers, product, daraja):
        resp = _mpesa_sale(client, cashier_headers, product)

        assert resp.status_code == 201
        data = resp.json["data"]
        assert data["payment_status"] == "PENDING"
        assert data["mpesa"]["checkoutRequestId"] == "ws_CO_1"
        assert data["mpesa"]["message"] == "Payment request sent to customer's phone"
        assert product.stock_quantity == 7

        payment = db_session.query(Payment).filter_by(sale_id=data["id"]).one()
        assert payment.mpesa_checkout_request_id == "ws_CO_1"
        assert payment.reference.startswith("MURIMI")

    def test_successful_callback_completes_payment(self, client, db_session, cashier_headers, product, daraja):
        sale_id = _mpesa_sale(client, cashier_headers, product).json["data"]["id"]

        resp = _callback(client, stk_callback("ws_CO_1"))

        assert resp.status_code == 200
        assert resp.json == {"ResultCode": 0, "ResultDesc": "Success"}
        sale = db_session.get(Sale, sale_id)
        assert sale.payment_status == "COMPLETED"
        assert sale.payments[0].status == "COMPLETED"
        assert sale.payments[0].mpesa_receipt_number == "QGH7XK2LMN"
        assert product.stock_quantity == 7

    def test_duplicate_success_callback_is_harmless(self, client, db_session, cashier_headers, product, daraja):
        _mpesa_sale(client, cashier_headers, product)
        _callback(client, stk_callback("ws_CO_1"))

        resp = _callback(client, stk_callback("ws_CO_1", receipt="OTHER"))

        assert resp.status_code == 200
        assert db_session.query(Payment).one().mpesa_receipt_number == "QGH7XK2LMN"
        assert product.stock_quantity == 7

    def test_failed_callback_releases_stock(self, client, db_session, cashier_headers, product, daraja):
        sale_id = _mpesa_sale(client, cashier_headers, product).json["data"]["id"]

        resp = _callback(client, stk_callback("ws_CO_1", result_code=1032))

        assert resp.status_code == 400
        assert resp.json == {"ResultCode": 1, "ResultDesc": "Request cancelled by user"}
        sale = db_session.get(Sale, sale_id)
        assert sale.payment_status == "FAILED"
        assert sale.stock_debited is False
        assert product.stock_quantity == 10

        # A second failure for the same checkout changes nothing
        _callback(client, stk_callback("ws_CO_1", result_code=1032))
        assert product.stock_quantity == 10

    def test_late_success_takes_stock_again(self, client, db_session, cashier_headers, product, daraja):
        sale_id = _mpesa_sale(client, cashier_headers, product).json["data"]["id"]
        _callback(client, stk_callback("ws_CO_1", result_code=1037))
        assert product.stock_quantity == 10

        _callback(client, stk_callback("ws_CO_1"))

        sale = db_session.get(Sale, sale_id)
        assert sale.payment_status == "COMPLETED"
        assert sale.stock_debited is True
        assert product.stock_quantity == 7

    def test_callback_for_voided_sale_keeps_it_void(self, client, db_session, cashier_headers, manager_headers,
                                                    product, daraja):
        sale_id = _mpesa_sale(client, cashier_headers, product).json["data"]["id"]
        void = client.post(f"/api/sales/{sale_id}/void", json={"reason": "Customer left"}, headers=manager_headers)
        assert void.status_code == 200
        assert product.stock_quantity == 10

        resp = _callback(client, stk_callback("ws_CO_1"))

        assert resp.status_code == 200
        sale = db_session.get(Sale, sale_id)
        assert sale.status == "VOID"
        assert sale.payments[0].status == "COMPLETED"
        assert product.stock_quantity == 10

    def test_rejected_push_fails_sale_and_releases_stock(self, client, db_session, cashier_headers, product, daraja):
        daraja.stk_body = {"ResponseCode": "1", "ResponseDescription": "Invalid PhoneNumber"}

        resp = _mpesa_sale(client, cashier_headers, product)

        assert resp.status_code == 400
        assert resp.json == {"success": False, "error": "Invalid PhoneNumber"}
        sale = db_session.query(Sale).one()
        assert sale.payment_status == "FAILED"
        assert product.stock_quantity == 10

    def test_gateway_down_is_503(self, client, db_session, cashier_headers, product, daraja):
        daraja.network_down = True

        resp = _mpesa_sale(client, cashier_headers, product)

        assert resp.status_code == 503
        assert resp.json["error"] == "M-Pesa service unavailable"
        assert product.stock_quantity == 10

    def test_invalid_mpesa_phone_rejected_before_sale(self, client, db_session, cashier_headers, product, daraja):
        resp = _mpesa_sale(client, cashier_headers, product, phone="12345")
        assert resp.status_code == 400
        assert resp.json["error"] == "Invalid M-Pesa phone number format"
        assert db_session.query(Sale).count() == 0
        assert daraja.requests == []


# =============================================================================
# STANDALONE STK PUSH / CALLBACK EDGES
# =============================================================================


class TestStkPushRoute:

    def test_push_without_sale_creates_placeholder(self, client, db_session, cashier_headers, daraja):
        resp = client.post(
            "/api/mpesa/stk-push",
            json={"amount": 50000, "phoneNumber": "0712345678"},
            headers=cashier_headers,
        )

        assert resp.status_code == 200
        sale = db_session.get(Sale, resp.json["data"]["saleId"])
        assert sale.total_amount_cents == 50000
        assert sale.payment_status == "PENDING"
        assert sale.stock_debited is False
        assert json.loads(daraja.stk_requests[0].content)["Amount"] == 500

    def test_retry_on_failed_sale(self, client, db_session, cashier_headers, product, daraja):
        sale_id = _mpesa_sale(client, cashier_headers, product).json["data"]["id"]
        _callback(client, stk_callback("ws_CO_1", result_code=1032))

        resp = client.post(
            "/api/mpesa/stk-push",
            json={"amount": 3000, "phoneNumber": "0712345678", "saleId": sale_id},
            headers=cashier_headers,
        )
        assert resp.status_code == 200
        assert resp.json["data"]["checkoutRequestId"] == "ws_CO_2"

        _callback(client, stk_callback("ws_CO_2"))
        sale = db_session.get(Sale, sale_id)
        assert sale.payment_status == "COMPLETED"
        assert product.stock_quantity == 7

    def test_paid_sale_cannot_be_pushed_again(self, client, db_session, cashier_headers, product, daraja):
        sale_id = _mpesa_sale(client, cashier_headers, product).json["data"]["id"]
        _callback(client, stk_callback("ws_CO_1"))

        resp = client.post(
            "/api/mpesa/stk-push",
            json={"amount": 3000, "phoneNumber": "0712345678", "saleId": sale_id},
            headers=cashier_headers,
        )
        assert resp.status_code == 400
        assert resp.json["error"] == "Sale is already paid"

    def test_amount_limits(self, client, cashier_headers, daraja):
        resp = client.post(
            "/api/mpesa/stk-push",
            json={"amount": 50, "phoneNumber": "0712345678"},
            headers=cashier_headers,
        )
        assert resp.status_code == 400


class TestCallbackEdges:

    def test_unknown_checkout_id(self, client):
        resp = _callback(client, stk_callback("ws_CO_unknown"))
        assert resp.status_code == 400
        assert resp.json == {"ResultCode": 1, "ResultDesc": "Payment record not found"}

    @pytest.mark.parametrize("payload", [None, [], {"Body": {}}, {"Body": {"stkCallback": {"ResultCode": 0}}}])
    def test_malformed_payloads(self, db_session, payload):
        result = process_callback(payload)
        assert result.accepted is False
        assert result.result_desc == "Invalid callback payload"

    def test_top_level_callback_shape_accepted(self, client, db_session, cashier_headers, product, daraja):
        _mpesa_sale(client, cashier_headers, product)
        body = stk_callback("ws_CO_1")["Body"]
        resp = _callback(client, body)
        assert resp.status_code == 200

    def test_liveness(self, client):
        resp = client.get("/api/mpesa/callback")
        assert resp.status_code == 200
        assert resp.json["status"] == "M-Pesa callback endpoint is active"
