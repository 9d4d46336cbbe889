"""
Offline sync tests.

Batches replay sales, stock entries, refunds and voids captured on a device.
A resent batch must not apply anything twice, and one bad item fails alone.
"""

from datetime import timedelta

from murimi_pos.models import OfflineSyncQueue, Payment, Refund, Sale, StockEntry
from murimi_pos.models.sync import SYNC_STATUS_COMPLETED, SYNC_STATUS_FAILED, SYNC_STATUS_PENDING
from murimi_pos.services import offline_sync_service
from murimi_pos.services.offline_sync_service import enqueue_sync_record, process_pending_queue
from murimi_pos.time_utils import utcnow

from conftest import auth_headers


def _sale_item(item_id, product, quantity=2, **data):
    payload = {
        "saleId": f"sale-{item_id}",
        "offlineId": f"offline-{item_id}",
        "cartItems": [{"productId": product.id, "quantity": quantity}],
        "paymentMethod": "CASH",
        "paidAmount": product.retail_price_cents * quantity,
    }
    payload.update(data)
    return {"id": item_id, "type": "sale", "data": payload}


def _sync(client, headers, *items):
    return client.post("/api/offline-sync", json={"syncItems": list(items)}, headers=headers)


class TestSaleReplay:

    def test_offline_sale_is_created_with_device_id(self, client, db_session, cashier_headers, product):
        resp = _sync(client, cashier_headers, _sale_item("q-1", product))

        assert resp.status_code == 200
        assert resp.json["data"] == {"processed": 1, "failed": 0, "errors": []}
        sale = db_session.get(Sale, "sale-q-1")
        assert sale is not None
        assert sale.offline_id == "offline-q-1"
        assert sale.payment_status == "COMPLETED"
        assert product.stock_quantity == 8

    def test_resent_batch_does_not_sell_twice(self, client, db_session, cashier_headers, product):
        item = _sale_item("q-2", product)
        _sync(client, cashier_headers, item)
        resp = _sync(client, cashier_headers, item)

        assert resp.json["data"]["processed"] == 1
        assert db_session.query(Sale).count() == 1
        assert db_session.query(Payment).count() == 1
        assert product.stock_quantity == 8
        assert db_session.get(OfflineSyncQueue, "q-2").status == SYNC_STATUS_COMPLETED

    def test_offline_mpesa_sale_is_already_settled(self, client, db_session, cashier_headers, product):
        _sync(client, cashier_headers, _sale_item("q-3", product, paymentMethod="MPESA"))
        sale = db_session.get(Sale, "sale-q-3")
        assert sale.payment_method == "MPESA"
        assert sale.payment_status == "COMPLETED"

    def test_bad_item_fails_alone(self, client, db_session, cashier_headers, product):
        resp = _sync(
            client,
            cashier_headers,
            _sale_item("q-4", product, quantity=50),
            _sale_item("q-5", product, quantity=1),
        )

        data = resp.json["data"]
        assert resp.status_code == 200
        assert data["processed"] == 1
        assert data["failed"] == 1
        assert data["errors"][0].startswith("Item q-4: Insufficient stock")
        assert product.stock_quantity == 9

        failed = db_session.get(OfflineSyncQueue, "q-4")
        assert failed.status == SYNC_STATUS_FAILED
        assert failed.retry_count == 1
        assert "Insufficient stock" in failed.error

    def test_unknown_type_and_missing_id(self, client, cashier_headers):
        resp = _sync(
            client,
            cashier_headers,
            {"id": "q-6", "type": "teleport", "data": {}},
            {"type": "sale", "data": {}},
        )
        data = resp.json["data"]
        assert data["failed"] == 2
        assert data["errors"][0] == "Item q-6: Unknown sync type: teleport"
        assert data["errors"][1] == "Item ?: Sync item id is required"

    def test_envelope_must_be_a_list(self, client, cashier_headers):
        resp = client.post("/api/offline-sync", json={"syncItems": "nope"}, headers=cashier_headers)
        assert resp.status_code == 400
        assert resp.json == {"success": False, "error": "Sync items array is required"}


class TestOtherReplays:

    def test_stock_entry_deduped_by_reference(self, client, db_session, manager_headers, product):
        item = {
            "id": "q-10",
            "type": "stock_entry",
            "data": {"productId": product.id, "quantity": 12, "referenceNumber": "GRN-0042"},
        }
        _sync(client, manager_headers, item)
        _sync(client, manager_headers, dict(item, id="q-11"))

        assert product.stock_quantity == 22
        assert db_session.query(StockEntry).filter_by(reference_number="GRN-0042").count() == 1

    def test_cashier_cannot_replay_stock_entry(self, client, cashier_headers, product):
        resp = _sync(client, cashier_headers, {
            "id": "q-12",
            "type": "stock_entry",
            "data": {"productId": product.id, "quantity": 5},
        })
        assert resp.json["data"]["errors"] == ["Item q-12: Insufficient permissions for stock entry"]
        assert product.stock_quantity == 10

    def test_refund_replay_is_idempotent(self, client, db_session, cashier, manager, product):
        _sync(client, auth_headers(cashier), _sale_item("q-20", product, quantity=4))
        refund = {
            "id": "q-21",
            "type": "refund",
            "data": {"refundId": "dev-refund-1", "saleId": "sale-q-20", "refundAmount": 2000, "reason": "Returned"},
        }
        headers = auth_headers(manager)
        _sync(client, headers, refund)
        resp = _sync(client, headers, refund)

        assert resp.json["data"]["failed"] == 0
        assert db_session.query(Refund).count() == 1
        assert product.stock_quantity == 8

    def test_void_replay_is_idempotent(self, client, db_session, cashier, manager, product):
        _sync(client, auth_headers(cashier), _sale_item("q-30", product, quantity=3))
        void = {
            "id": "q-31",
            "type": "void",
            "data": {"saleId": "sale-q-30", "reason": "Voided offline"},
        }
        headers = auth_headers(manager)
        first = _sync(client, headers, void)
        second = _sync(client, headers, dict(void, id="q-32"))

        assert first.json["data"]["processed"] == 1
        assert second.json["data"]["processed"] == 1
        assert db_session.get(Sale, "sale-q-30").status == "VOID"
        assert product.stock_quantity == 10

    def test_backdated_void_of_old_sale_fails(self, client, db_session, cashier, manager, product):
        _sync(client, auth_headers(cashier), _sale_item("q-33", product, quantity=3))
        sale = db_session.get(Sale, "sale-q-33")
        sale.created_at = utcnow() - timedelta(days=30)
        db_session.commit()
        voided_at = (sale.created_at - timedelta(days=1)).isoformat() + "Z"

        resp = _sync(client, auth_headers(manager), {
            "id": "q-34",
            "type": "void",
            "data": {"saleId": "sale-q-33", "reason": "Backdated", "voidedAt": voided_at},
        })

        assert resp.json["data"]["processed"] == 0
        assert resp.json["data"]["failed"] == 1
        assert resp.json["data"]["errors"] == ["Item q-34: Void time is earlier than the sale"]
        assert sale.status == "COMPLETED"
        assert sale.voided_at is None
        assert product.stock_quantity == 7
        assert db_session.get(OfflineSyncQueue, "q-34").status == SYNC_STATUS_FAILED


class TestQueueMaintenance:

    def test_pending_rows_are_replayed_by_manager(self, client, db_session, cashier, manager_headers, product):
        sale_resp = client.post(
            "/api/sales",
            json={
                "cartItems": [{"productId": product.id, "quantity": 1}],
                "paymentMethod": "CASH",
                "paidAmount": 1000,
                "offlineId": "till-2-77",
            },
            headers=auth_headers(cashier),
        )
        assert sale_resp.status_code == 201

        listed = client.get("/api/offline-sync", headers=manager_headers)
        assert [row["type"] for row in listed.json["data"]] == ["sale"]

        resp = client.post("/api/offline-sync/process", json={"limit": 10}, headers=manager_headers)
        assert resp.json["data"] == {"syncedItems": 1, "failed": 0, "errors": []}
        assert db_session.query(Sale).count() == 1
        assert product.stock_quantity == 9

        status = client.get("/api/offline-sync/status", headers=manager_headers).json["data"]
        assert status["pending"] == 0
        assert status["completed"] == 1

    def test_rows_stop_retrying_after_max_retries(self, app, db_session, manager):
        record = enqueue_sync_record("refund", {"refundId": "x", "saleId": "missing", "refundAmount": 100, "reason": "r"})
        db_session.commit()

        for _ in range(3):
            result = process_pending_queue(user=manager)
            assert result.failed == 1

        assert record.retry_count == 3
        assert process_pending_queue(user=manager).processed == 0
        assert offline_sync_service.get_queue_status()["exhausted"] == 1

    def test_purge_only_removes_old_completed_rows(self, db_session):
        old = enqueue_sync_record("sale", {}, record_id="old")
        fresh = enqueue_sync_record("sale", {}, record_id="fresh")
        pending = enqueue_sync_record("sale", {}, record_id="pending")
        db_session.flush()
        old.status = SYNC_STATUS_COMPLETED
        fresh.status = SYNC_STATUS_COMPLETED
        pending.status = SYNC_STATUS_PENDING
        db_session.commit()
        old.updated_at = utcnow() - timedelta(days=8)
        db_session.commit()

        assert offline_sync_service.purge_completed() == 1
        assert {row.id for row in db_session.query(OfflineSyncQueue).all()} == {"fresh", "pending"}
