"""
Catalog API tests.

Products (with wholesale tiers), stock adjustments, the low-stock report,
categories and suppliers.
"""

import pytest

from murimi_pos.models import AuditLog, Category, Product, StockEntry

from conftest import make_product


def _new_product(**overrides):
    body = {
        "name": "Cooking Oil 1L",
        "sku": "OIL-1L",
        "cost_price_cents": 25000,
        "retail_price_cents": 32000,
        "stock_quantity": 40,
        "vat_status": "EXCLUSIVE",
    }
    body.update(overrides)
    return body


# =============================================================================
# PRODUCTS
# =============================================================================


class TestProducts:

    def test_create_with_wholesale_tiers(self, client, db_session, manager, manager_headers, category):
        body = _new_product(
            category_id=category.id,
            wholesale_tiers=[
                {"name": "Dozen", "min_quantity": 12, "price_cents": 30000},
                {"name": "Carton", "min_quantity": 24, "price_cents": 29000},
            ],
        )

        resp = client.post("/api/products", json=body, headers=manager_headers)

        assert resp.status_code == 201
        data = resp.json["data"]
        assert data["sku"] == "OIL-1L"
        assert [t["min_quantity"] for t in data["wholesale_tiers"]] == [12, 24]
        log = db_session.query(AuditLog).filter_by(entity_type="Product", action="create").one()
        assert log.user_id == manager.id

    def test_missing_prices(self, client, manager_headers):
        resp = client.post("/api/products", json={"name": "Salt"}, headers=manager_headers)
        assert resp.status_code == 400
        assert resp.json["error"] == "Missing required fields: cost_price_cents, retail_price_cents"

    def test_duplicate_sku_is_conflict(self, client, manager_headers, product):
        resp = client.post("/api/products", json=_new_product(sku="UNGA-2KG"), headers=manager_headers)
        assert resp.status_code == 409
        assert resp.json["error"] == "SKU already exists"

    def test_unknown_category(self, client, manager_headers):
        resp = client.post("/api/products", json=_new_product(category_id=4242), headers=manager_headers)
        assert resp.status_code == 404
        assert resp.json["error"] == "Category not found"

    def test_update_prices_and_replace_tiers(self, client, manager_headers, product):
        resp = client.put(
            f"/api/products/{product.id}",
            json={"retail_price_cents": 1100, "wholesale_tiers": [{"name": "Bale", "min_quantity": 10, "price_cents": 950}]},
            headers=manager_headers,
        )

        assert resp.status_code == 200
        assert resp.json["data"]["retail_price_cents"] == 1100
        assert [t["name"] for t in resp.json["data"]["wholesale_tiers"]] == ["Bale"]

        resp = client.put(f"/api/products/{product.id}", json={"wholesale_tiers": []}, headers=manager_headers)
        assert resp.json["data"]["wholesale_tiers"] == []

    def test_stock_cannot_be_edited_directly(self, client, manager_headers, product):
        resp = client.put(f"/api/products/{product.id}", json={"stock_quantity": 99}, headers=manager_headers)
        assert resp.status_code == 400
        assert resp.json["error"] == "Use a stock adjustment to change stock_quantity"
        assert product.stock_quantity == 10

    def test_delete_is_soft(self, client, db_session, manager_headers, cashier_headers, product):
        resp = client.delete(f"/api/products/{product.id}", headers=manager_headers)
        assert resp.status_code == 200
        assert db_session.get(Product, product.id).is_active is False

        listed = client.get("/api/products", headers=cashier_headers).json["data"]
        assert listed == []
        with_inactive = client.get("/api/products?includeInactive=true", headers=cashier_headers).json["data"]
        assert [p["id"] for p in with_inactive] == [product.id]

    def test_list_search_and_pagination(self, client, cashier_headers, product, taxed_product):
        make_product("Unga 1kg", sku="UNGA-1KG")

        resp = client.get("/api/products?search=unga&limit=1", headers=cashier_headers)

        assert [p["name"] for p in resp.json["data"]] == ["Unga 1kg"]
        assert resp.json["pagination"]["total"] == 2

    def test_register_search(self, client, cashier_headers, product):
        make_product("Unga Sold Out", sku="UNGA-OUT", stock=0)

        found = client.get("/api/products/search?q=unga", headers=cashier_headers).json["data"]
        assert [p["name"] for p in found] == ["Unga 2kg"]

        too_short = client.get("/api/products/search?q=u", headers=cashier_headers).json["data"]
        assert too_short == []

    def test_missing_product(self, client, cashier_headers):
        resp = client.get("/api/products/9999", headers=cashier_headers)
        assert resp.status_code == 404
        assert resp.json["error"] == "Product not found"


# =============================================================================
# STOCK
# =============================================================================


class TestStock:

    def test_receive_stock(self, client, db_session, manager_headers, product, supplier):
        resp = client.post(
            f"/api/products/{product.id}/stock",
            json={"quantity": 12, "costPrice": 450, "supplierId": supplier.id, "referenceNumber": "GRN-7"},
            headers=manager_headers,
        )

        data = resp.json["data"]
        assert resp.status_code == 200
        assert data["previousStock"] == 10
        assert data["newStock"] == 22
        assert data["stockEntry"]["total_cost_cents"] == 12 * 450
        assert data["stockEntry"]["reference_number"] == "GRN-7"
        assert db_session.query(StockEntry).count() == 1

    def test_write_off_below_zero_rejected(self, client, db_session, manager_headers, product):
        resp = client.post(f"/api/products/{product.id}/stock", json={"quantity": -11}, headers=manager_headers)
        assert resp.status_code == 400
        assert resp.json["error"].startswith("Insufficient stock for this adjustment")
        assert db_session.query(StockEntry).count() == 0

    def test_write_off_gets_default_reference(self, client, manager_headers, product):
        resp = client.post(
            f"/api/products/{product.id}/stock",
            json={"quantity": -2, "notes": "Damaged bags"},
            headers=manager_headers,
        )
        entry = resp.json["data"]["stockEntry"]
        assert entry["reference_number"].startswith("ADJ-")
        assert entry["notes"] == "Damaged bags"
        assert product.stock_quantity == 8

    def test_stock_history(self, client, manager_headers, cashier_headers, product):
        client.post(f"/api/products/{product.id}/stock", json={"quantity": 5}, headers=manager_headers)
        client.post(f"/api/products/{product.id}/stock", json={"quantity": -1}, headers=manager_headers)

        data = client.get(f"/api/products/{product.id}/stock", headers=cashier_headers).json["data"]

        assert data["product"]["stock_quantity"] == 14
        assert data["stockStatus"] == "NORMAL"
        assert [e["quantity"] for e in data["stockEntries"]] == [-1, 5]

    def test_bulk_lines_fail_independently(self, client, manager_headers, product, taxed_product):
        resp = client.post(
            "/api/products/bulk-stock",
            json={
                "referenceNumber": "BULK-TEST",
                "adjustments": [
                    {"productId": product.id, "quantity": 5},
                    {"productId": taxed_product.id, "quantity": -50},
                    {"productId": 9999, "quantity": 1},
                ],
            },
            headers=manager_headers,
        )

        data = resp.json["data"]
        assert data["successful"] == 1
        assert data["failed"] == 2
        assert data["errors"][1] == {"productId": 9999, "error": "Product not found: 9999"}
        assert data["summary"]["referenceNumber"] == "BULK-TEST"
        assert data["summary"]["totalValue"] == 5 * 500
        assert product.stock_quantity == 15
        assert taxed_product.stock_quantity == 20

    def test_low_stock_report(self, client, cashier_headers, product):
        make_product("Matches", sku="MATCH", stock=2, min_stock_level=5)
        make_product("Rice 5kg", sku="RICE-5", stock=0, min_stock_level=20)

        resp = client.get("/api/products/low-stock", headers=cashier_headers)

        rows = resp.json["data"]
        assert [r["name"] for r in rows] == ["Rice 5kg", "Matches"]
        assert rows[0]["stockDeficit"] == 20
        assert rows[0]["urgency"] == "CRITICAL"
        assert rows[1]["urgency"] == "MEDIUM"
        assert resp.json["summary"]["totalLowStockProducts"] == 2
        assert resp.json["summary"]["totalStockDeficit"] == 23


# =============================================================================
# CATEGORIES / SUPPLIERS
# =============================================================================


class TestCategories:

    def test_create_and_duplicate_name(self, client, manager_headers):
        first = client.post("/api/categories", json={"name": "Dairy"}, headers=manager_headers)
        second = client.post("/api/categories", json={"name": "dairy"}, headers=manager_headers)

        assert first.status_code == 201
        assert second.status_code == 409
        assert second.json["error"] == "Category with this name already exists"

    def test_list_counts_active_products(self, client, cashier_headers, category):
        make_product("Juice", sku="JUICE", category_id=category.id)
        make_product("Old Juice", sku="JUICE-OLD", category_id=category.id, is_active=False)

        data = client.get("/api/categories", headers=cashier_headers).json["data"]
        assert data[0]["name"] == "Beverages"
        assert data[0]["product_count"] == 1

    def test_cannot_delete_category_in_use(self, client, db_session, manager_headers, category):
        make_product("Juice", sku="JUICE", category_id=category.id)

        resp = client.delete(f"/api/categories/{category.id}", headers=manager_headers)

        assert resp.status_code == 400
        assert resp.json["error"] == "Cannot delete category with existing products"
        assert db_session.get(Category, category.id) is not None

    def test_delete_empty_category(self, client, manager_headers, category):
        assert client.delete(f"/api/categories/{category.id}", headers=manager_headers).status_code == 200
        assert client.get(f"/api/categories/{category.id}", headers=manager_headers).status_code == 404


class TestSuppliers:

    def test_supplier_products(self, client, cashier_headers, supplier):
        make_product("Sugar 2kg", sku="SUGAR-2", supplier_id=supplier.id)

        resp = client.get(f"/api/suppliers/{supplier.id}/products", headers=cashier_headers)

        assert resp.json["data"]["supplier"]["name"] == "Kenya Distributors"
        assert [p["sku"] for p in resp.json["data"]["products"]] == ["SUGAR-2"]

    def test_cannot_delete_supplier_in_use(self, client, manager_headers, supplier):
        make_product("Sugar 2kg", sku="SUGAR-2", supplier_id=supplier.id)
        resp = client.delete(f"/api/suppliers/{supplier.id}", headers=manager_headers)
        assert resp.status_code == 400
        assert resp.json["error"].startswith("Cannot delete supplier with existing products")

    @pytest.mark.parametrize("field,value", [("email", "x" * 300), ("is_active", "yes")])
    def test_invalid_update(self, client, manager_headers, supplier, field, value):
        resp = client.put(f"/api/suppliers/{supplier.id}", json={field: value}, headers=manager_headers)
        assert resp.status_code == 400
