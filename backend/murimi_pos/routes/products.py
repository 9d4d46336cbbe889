# Overview: Flask API routes for products operations; parses input and returns JSON responses.

"""
Product management routes.

SECURITY: All routes require authentication.
- Read operations require VIEW_PRODUCTS permission
- Catalog writes require MANAGE_PRODUCTS permission
- Stock movements require ADJUST_STOCK permission

Product bodies use column names (snake_case) plus an optional
"wholesale_tiers" list of {name, min_quantity, price_cents}.
"""

from flask import Blueprint, current_app, g, request

from ..decorators import require_auth, require_permission
from ..errors import AppError, error_response, internal_error_response, success_response
from ..models import Product
from ..permissions import ADJUST_STOCK, MANAGE_PRODUCTS, VIEW_PRODUCTS
from ..security import sanitize_input
from ..services import catalog_service, inventory_service
from ..validation import (
    PRODUCT_POLICY,
    parse_bulk_stock,
    parse_stock_adjustment,
    parse_wholesale_tiers,
    validate_payload,
)

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _split_tiers(payload):
    """Separate wholesale_tiers from the column fields. Returns (payload, tiers or None)."""
    if not isinstance(payload, dict):
        return payload, None
    payload = dict(payload)
    if "wholesale_tiers" not in payload:
        return payload, None
    return payload, parse_wholesale_tiers(payload.pop("wholesale_tiers"))


@products_bp.get("")
@require_auth
@require_permission(VIEW_PRODUCTS)
def list_products_route():
    """
    List products with optional filters and pagination.

    Query params:
    - page: int (default 1)
    - limit / per_page: int (default 20, max 100)
    - search: matches name, SKU or barcode
    - category: category id
    - lowStock: "true" for products at or below their minimum level
    - includeInactive: "true" to include deactivated products
    """
    try:
        search = request.args.get("search")
        result = catalog_service.list_products(
            page=request.args.get("page", default=1, type=int),
            per_page=request.args.get("limit", type=int) or request.args.get("per_page", type=int),
            search=sanitize_input(search) if search else None,
            category_id=request.args.get("category", type=int),
            low_stock=request.args.get("lowStock") == "true",
            include_inactive=request.args.get("includeInactive") == "true",
        )
        return success_response(result["items"], pagination=result.get("pagination"))
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list products")
        return internal_error_response()


@products_bp.get("/search")
@require_auth
@require_permission(VIEW_PRODUCTS)
def search_products_route():
    """Register search: ?q=<term>&limit=<n>. In-stock active products only."""
    try:
        term = sanitize_input(request.args.get("q") or "")
        products = catalog_service.search_products(term, limit=request.args.get("limit", default=10, type=int))
        return success_response([p.to_dict() for p in products])
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to search products")
        return internal_error_response()


@products_bp.get("/low-stock")
@require_auth
@require_permission(VIEW_PRODUCTS)
def low_stock_route():
    try:
        result = inventory_service.low_stock_report(
            page=request.args.get("page", default=1, type=int),
            per_page=request.args.get("limit", type=int) or request.args.get("per_page", type=int),
        )
        return success_response(result["items"], summary=result["summary"], pagination=result.get("pagination"))
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list low stock products")
        return internal_error_response()


@products_bp.post("/bulk-stock")
@require_auth
@require_permission(ADJUST_STOCK)
def bulk_stock_route():
    """
    Apply up to 100 stock adjustments. Each line succeeds or fails on its own.

    Body: {adjustments: [{productId, quantity, costPrice?, reason?}], supplierId?,
    referenceNumber?, notes?}
    """
    try:
        req = parse_bulk_stock(request.get_json(silent=True))
        result = inventory_service.bulk_adjust_stock(
            req.adjustments,
            user_id=g.current_user.id,
            supplier_id=req.supplier_id,
            reference_number=req.reference_number,
            notes=req.notes,
        )
        return success_response(result.to_dict())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to apply bulk stock adjustment")
        return internal_error_response()


@products_bp.post("")
@require_auth
@require_permission(MANAGE_PRODUCTS)
def create_product_route():
    try:
        payload, tiers = _split_tiers(request.get_json(silent=True))
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
        product = catalog_service.create_product(patch=patch, tiers=tiers, user_id=g.current_user.id)
        return success_response(product.to_dict(), 201)
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create product")
        return internal_error_response()


@products_bp.get("/<int:product_id>")
@require_auth
@require_permission(VIEW_PRODUCTS)
def get_product_route(product_id: int):
    try:
        return success_response(catalog_service.get_product(product_id).to_dict())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get product")
        return internal_error_response()


@products_bp.put("/<int:product_id>")
@require_auth
@require_permission(MANAGE_PRODUCTS)
def update_product_route(product_id: int):
    try:
        payload, tiers = _split_tiers(request.get_json(silent=True))
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
        product = catalog_service.update_product(product_id, patch=patch, tiers=tiers, user_id=g.current_user.id)
        return success_response(product.to_dict())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update product")
        return internal_error_response()


@products_bp.delete("/<int:product_id>")
@require_auth
@require_permission(MANAGE_PRODUCTS)
def delete_product_route(product_id: int):
    """Soft delete (deactivate)."""
    try:
        catalog_service.delete_product(product_id, user_id=g.current_user.id)
        return success_response({"message": "Product deleted successfully"})
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete product")
        return internal_error_response()


@products_bp.post("/<int:product_id>/stock")
@require_auth
@require_permission(ADJUST_STOCK)
def adjust_stock_route(product_id: int):
    """
    Signed stock adjustment for one product.

    Body: {quantity (non-zero, signed), costPrice?, supplierId?, referenceNumber?, notes?}
    """
    try:
        adjustment = parse_stock_adjustment(request.get_json(silent=True))
        result = inventory_service.adjust_stock(product_id, adjustment, user_id=g.current_user.id)
        return success_response(result)
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return internal_error_response()


@products_bp.get("/<int:product_id>/stock")
@require_auth
@require_permission(VIEW_PRODUCTS)
def stock_history_route(product_id: int):
    """Current stock plus the most recent stock entries."""
    try:
        product = catalog_service.get_product(product_id)
        entries = inventory_service.list_stock_entries(
            product.id, limit=request.args.get("limit", default=50, type=int)
        )
        return success_response({
            "product": product.to_dict(),
            "stockStatus": product.stock_status,
            "stockEntries": [entry.to_dict() for entry in entries],
        })
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get stock history")
        return internal_error_response()
