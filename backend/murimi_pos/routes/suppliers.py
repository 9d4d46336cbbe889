# Overview: Flask API routes for suppliers operations; parses input and returns JSON responses.

from flask import Blueprint, current_app, g, request

from ..decorators import require_auth, require_permission
from ..errors import AppError, error_response, internal_error_response, success_response
from ..models import Supplier
from ..permissions import MANAGE_PRODUCTS, VIEW_PRODUCTS
from ..security import sanitize_input
from ..services import catalog_service
from ..validation import SUPPLIER_POLICY, validate_payload

suppliers_bp = Blueprint("suppliers", __name__, url_prefix="/api/suppliers")


@suppliers_bp.get("")
@require_auth
@require_permission(VIEW_PRODUCTS)
def list_suppliers_route():
    try:
        search = request.args.get("search")
        items = catalog_service.list_suppliers(
            search=sanitize_input(search) if search else None,
            include_inactive=request.args.get("includeInactive") == "true",
        )
        return success_response(items)
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list suppliers")
        return internal_error_response()


@suppliers_bp.post("")
@require_auth
@require_permission(MANAGE_PRODUCTS)
def create_supplier_route():
    try:
        patch = validate_payload(
            model=Supplier, payload=request.get_json(silent=True), policy=SUPPLIER_POLICY, partial=False
        )
        supplier = catalog_service.create_supplier(patch=patch, user_id=g.current_user.id)
        return success_response(supplier.to_dict(), 201)
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create supplier")
        return internal_error_response()


@suppliers_bp.get("/<int:supplier_id>")
@require_auth
@require_permission(VIEW_PRODUCTS)
def get_supplier_route(supplier_id: int):
    try:
        return success_response(catalog_service.get_supplier(supplier_id).to_dict())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get supplier")
        return internal_error_response()


@suppliers_bp.put("/<int:supplier_id>")
@require_auth
@require_permission(MANAGE_PRODUCTS)
def update_supplier_route(supplier_id: int):
    try:
        patch = validate_payload(
            model=Supplier, payload=request.get_json(silent=True), policy=SUPPLIER_POLICY, partial=True
        )
        supplier = catalog_service.update_supplier(supplier_id, patch=patch, user_id=g.current_user.id)
        return success_response(supplier.to_dict())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update supplier")
        return internal_error_response()


@suppliers_bp.delete("/<int:supplier_id>")
@require_auth
@require_permission(MANAGE_PRODUCTS)
def delete_supplier_route(supplier_id: int):
    """Refused while products still reference the supplier."""
    try:
        catalog_service.delete_supplier(supplier_id, user_id=g.current_user.id)
        return success_response({"message": "Supplier deleted successfully"})
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete supplier")
        return internal_error_response()


@suppliers_bp.get("/<int:supplier_id>/products")
@require_auth
@require_permission(VIEW_PRODUCTS)
def supplier_products_route(supplier_id: int):
    try:
        result = catalog_service.list_supplier_products(
            supplier_id,
            page=request.args.get("page", default=1, type=int),
            per_page=request.args.get("limit", type=int) or request.args.get("per_page", type=int),
        )
        return success_response(
            {"supplier": result["supplier"], "products": result["items"]},
            pagination=result.get("pagination"),
        )
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list supplier products")
        return internal_error_response()
