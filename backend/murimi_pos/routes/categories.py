# Overview: Flask API routes for categories operations; parses input and returns JSON responses.

"""
Category routes.

Reads need VIEW_PRODUCTS; writes need MANAGE_PRODUCTS. A category that
products still reference cannot be deleted.
"""

from flask import Blueprint, current_app, g, request

from ..decorators import require_auth, require_permission
from ..errors import AppError, error_response, internal_error_response, success_response
from ..models import Category
from ..permissions import MANAGE_PRODUCTS, VIEW_PRODUCTS
from ..security import sanitize_input
from ..services import catalog_service
from ..validation import CATEGORY_POLICY, validate_payload

categories_bp = Blueprint("categories", __name__, url_prefix="/api/categories")


@categories_bp.get("")
@require_auth
@require_permission(VIEW_PRODUCTS)
def list_categories_route():
    """Query params: search, includeInactive=true."""
    try:
        search = request.args.get("search")
        items = catalog_service.list_categories(
            search=sanitize_input(search) if search else None,
            include_inactive=request.args.get("includeInactive") == "true",
        )
        return success_response(items)
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list categories")
        return internal_error_response()


@categories_bp.post("")
@require_auth
@require_permission(MANAGE_PRODUCTS)
def create_category_route():
    try:
        patch = validate_payload(
            model=Category, payload=request.get_json(silent=True), policy=CATEGORY_POLICY, partial=False
        )
        category = catalog_service.create_category(patch=patch, user_id=g.current_user.id)
        return success_response(category.to_dict(), 201)
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create category")
        return internal_error_response()


@categories_bp.get("/<int:category_id>")
@require_auth
@require_permission(VIEW_PRODUCTS)
def get_category_route(category_id: int):
    try:
        return success_response(catalog_service.get_category(category_id).to_dict())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to get category")
        return internal_error_response()


@categories_bp.put("/<int:category_id>")
@require_auth
@require_permission(MANAGE_PRODUCTS)
def update_category_route(category_id: int):
    try:
        patch = validate_payload(
            model=Category, payload=request.get_json(silent=True), policy=CATEGORY_POLICY, partial=True
        )
        category = catalog_service.update_category(category_id, patch=patch, user_id=g.current_user.id)
        return success_response(category.to_dict())
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update category")
        return internal_error_response()


@categories_bp.delete("/<int:category_id>")
@require_auth
@require_permission(MANAGE_PRODUCTS)
def delete_category_route(category_id: int):
    try:
        catalog_service.delete_category(category_id, user_id=g.current_user.id)
        return success_response({"message": "Category deleted successfully"})
    except AppError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete category")
        return internal_error_response()
