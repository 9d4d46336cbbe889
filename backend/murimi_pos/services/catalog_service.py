# Overview: Service-layer operations for the catalog (products, categories, suppliers).

"""
Catalog Service

Products, categories and suppliers. Routes validate payloads with
validation.validate_payload; this module enforces uniqueness, writes the
audit trail and commits.

Stock is NOT edited here after creation. Stock changes go through
inventory_service so every movement leaves a StockEntry.
"""

from __future__ import annotations

from sqlalchemy import func, or_

from ..extensions import db
from ..models import Category, Product, Supplier, WholesaleTier
from murimi_pos.errors import BusinessRuleViolation, ConflictError, NotFoundError, ValidationError
from murimi_pos.validation import enforce_rules_product
from .audit_service import log_activity
from .concurrency import run_with_retry
from .pagination import paginate

SEARCH_MIN_LENGTH = 2


def _category_snapshot(c: Category) -> dict:
    return {"name": c.name, "description": c.description, "is_active": c.is_active}


def _supplier_snapshot(s: Supplier) -> dict:
    return {
        "name": s.name,
        "contact_person": s.contact_person,
        "email": s.email,
        "phone": s.phone,
        "address": s.address,
        "is_active": s.is_active,
    }


def _product_snapshot(p: Product) -> dict:
    data = p.to_dict()
    data.pop("created_at", None)
    data.pop("updated_at", None)
    return data


# =============================================================================
# PRODUCTS
# =============================================================================

def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


def list_products(
    *,
    page: int | None = 1,
    per_page: int | None = 20,
    search: str | None = None,
    category_id: int | None = None,
    low_stock: bool = False,
    include_inactive: bool = False,
) -> dict:
    query = db.session.query(Product)
    if not include_inactive:
        query = query.filter(Product.is_active.is_(True))
    if category_id:
        query = query.filter(Product.category_id == category_id)
    if low_stock:
        query = query.filter(Product.stock_quantity <= Product.min_stock_level)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(Product.name.ilike(pattern), Product.sku.ilike(pattern), Product.barcode.ilike(pattern))
        )
    return paginate(query.order_by(Product.name.asc(), Product.id.asc()), page, per_page, lambda p: p.to_dict())


def search_products(term: str | None, limit: int = 10) -> list[Product]:
    """
    Register search: active, in-stock products whose name, barcode or SKU
    contains the term. Terms shorter than two characters return nothing.
    """
    term = (term or "").strip()
    if len(term) < SEARCH_MIN_LENGTH:
        return []
    limit = max(1, min(limit, 50))
    pattern = f"%{term}%"
    return (
        db.session.query(Product)
        .filter(
            Product.is_active.is_(True),
            Product.stock_quantity > 0,
            or_(Product.name.ilike(pattern), Product.barcode.ilike(pattern), Product.sku.ilike(pattern)),
        )
        .order_by(Product.name.asc())
        .limit(limit)
        .all()
    )


def _ensure_unique_codes(patch: dict, product_id: int | None = None) -> None:
    for key, label in (("sku", "SKU"), ("barcode", "Barcode")):
        value = patch.get(key)
        if not value:
            continue
        query = db.session.query(Product).filter(getattr(Product, key) == value)
        if product_id is not None:
            query = query.filter(Product.id != product_id)
        if query.first() is not None:
            raise ConflictError(f"{label} already exists")


def _ensure_references(patch: dict) -> None:
    if patch.get("category_id") is not None and db.session.get(Category, patch["category_id"]) is None:
        raise NotFoundError("Category not found")
    if patch.get("supplier_id") is not None and db.session.get(Supplier, patch["supplier_id"]) is None:
        raise NotFoundError("Supplier not found")


def _replace_tiers(product: Product, tiers: list[dict]) -> None:
    for tier in list(product.wholesale_tiers):
        db.session.delete(tier)
    db.session.flush()
    for tier in tiers:
        db.session.add(WholesaleTier(product_id=product.id, **tier))
    db.session.flush()
    db.session.expire(product, ["wholesale_tiers"])


def create_product(*, patch: dict, tiers: list[dict] | None = None, user_id: int | None = None) -> Product:
    """
    Create a product from a validated patch.

    Raises:
        ConflictError: SKU or barcode already used
        NotFoundError: unknown category or supplier
    """
    enforce_rules_product(patch)
    _ensure_unique_codes(patch)
    _ensure_references(patch)

    def _op():
        product = Product(**patch)
        product.wholesale_tiers = [WholesaleTier(**tier) for tier in tiers or []]
        db.session.add(product)
        db.session.flush()
        log_activity(
            action="create",
            entity_type="Product",
            entity_id=product.id,
            user_id=user_id,
            product_id=product.id,
            new_values=_product_snapshot(product),
        )
        db.session.commit()
        return product

    return run_with_retry(_op)


def update_product(
    product_id: int,
    *,
    patch: dict,
    tiers: list[dict] | None = None,
    user_id: int | None = None,
) -> Product:
    """
    Update a product. tiers=None leaves wholesale tiers alone; a list replaces them.

    stock_quantity cannot be changed here (use a stock adjustment).
    """
    if "stock_quantity" in patch:
        raise ValidationError("Use a stock adjustment to change stock_quantity")

    def _op():
        product = get_product(product_id)
        enforce_rules_product(patch, existing=product)
        _ensure_unique_codes(patch, product_id=product.id)
        _ensure_references(patch)

        old_values = _product_snapshot(product)
        for key, value in patch.items():
            setattr(product, key, value)
        if tiers is not None:
            _replace_tiers(product, tiers)
        db.session.flush()

        log_activity(
            action="update",
            entity_type="Product",
            entity_id=product.id,
            user_id=user_id,
            product_id=product.id,
            old_values=old_values,
            new_values=_product_snapshot(product),
        )
        db.session.commit()
        return product

    return run_with_retry(_op)


def delete_product(product_id: int, *, user_id: int | None = None) -> Product:
    """Soft delete: the product is deactivated so sales history keeps its lines."""
    def _op():
        product = get_product(product_id)
        old_values = {"is_active": product.is_active}
        product.is_active = False
        log_activity(
            action="delete",
            entity_type="Product",
            entity_id=product.id,
            user_id=user_id,
            product_id=product.id,
            old_values=old_values,
            new_values={"is_active": False},
        )
        db.session.commit()
        return product

    return run_with_retry(_op)


# =============================================================================
# CATEGORIES
# =============================================================================

def _active_product_counts(column) -> dict:
    rows = (
        db.session.query(column, func.count(Product.id))
        .filter(Product.is_active.is_(True), column.isnot(None))
        .group_by(column)
        .all()
    )
    return dict(rows)


def list_categories(*, search: str | None = None, include_inactive: bool = False) -> list[dict]:
    query = db.session.query(Category)
    if not include_inactive:
        query = query.filter(Category.is_active.is_(True))
    if search:
        query = query.filter(Category.name.ilike(f"%{search}%"))
    counts = _active_product_counts(Product.category_id)
    items = []
    for category in query.order_by(Category.name.asc()).all():
        data = category.to_dict()
        data["product_count"] = counts.get(category.id, 0)
        items.append(data)
    return items


def get_category(category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category not found")
    return category


def _ensure_unique_name(model, name: str | None, label: str, exclude_id: int | None = None) -> None:
    if not name:
        return
    query = db.session.query(model).filter(func.lower(model.name) == name.lower())
    if exclude_id is not None:
        query = query.filter(model.id != exclude_id)
    if query.first() is not None:
        raise ConflictError(f"{label} with this name already exists")


def create_category(*, patch: dict, user_id: int | None = None) -> Category:
    _ensure_unique_name(Category, patch.get("name"), "Category")

    def _op():
        category = Category(**patch)
        db.session.add(category)
        db.session.flush()
        log_activity(
            action="create",
            entity_type="Category",
            entity_id=category.id,
            user_id=user_id,
            new_values=_category_snapshot(category),
        )
        db.session.commit()
        return category

    return run_with_retry(_op)


def update_category(category_id: int, *, patch: dict, user_id: int | None = None) -> Category:
    def _op():
        category = get_category(category_id)
        _ensure_unique_name(Category, patch.get("name"), "Category", exclude_id=category.id)
        old_values = _category_snapshot(category)
        for key, value in patch.items():
            setattr(category, key, value)
        log_activity(
            action="update",
            entity_type="Category",
            entity_id=category.id,
            user_id=user_id,
            old_values=old_values,
            new_values=_category_snapshot(category),
        )
        db.session.commit()
        return category

    return run_with_retry(_op)


def delete_category(category_id: int, *, user_id: int | None = None) -> None:
    """
    Hard delete.

    Raises:
        BusinessRuleViolation: products still reference the category
    """
    def _op():
        category = get_category(category_id)
        in_use = db.session.query(Product.id).filter(Product.category_id == category.id).first()
        if in_use is not None:
            raise BusinessRuleViolation("Cannot delete category with existing products")
        log_activity(
            action="delete",
            entity_type="Category",
            entity_id=category.id,
            user_id=user_id,
            old_values=_category_snapshot(category),
        )
        db.session.delete(category)
        db.session.commit()

    run_with_retry(_op)


# =============================================================================
# SUPPLIERS
# =============================================================================

def list_suppliers(*, search: str | None = None, include_inactive: bool = False) -> list[dict]:
    query = db.session.query(Supplier)
    if not include_inactive:
        query = query.filter(Supplier.is_active.is_(True))
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            or_(Supplier.name.ilike(pattern), Supplier.contact_person.ilike(pattern), Supplier.email.ilike(pattern))
        )
    counts = _active_product_counts(Product.supplier_id)
    items = []
    for supplier in query.order_by(Supplier.name.asc()).all():
        data = supplier.to_dict()
        data["product_count"] = counts.get(supplier.id, 0)
        items.append(data)
    return items


def get_supplier(supplier_id: int) -> Supplier:
    supplier = db.session.get(Supplier, supplier_id)
    if supplier is None:
        raise NotFoundError("Supplier not found")
    return supplier


def create_supplier(*, patch: dict, user_id: int | None = None) -> Supplier:
    _ensure_unique_name(Supplier, patch.get("name"), "Supplier")

    def _op():
        supplier = Supplier(**patch)
        db.session.add(supplier)
        db.session.flush()
        log_activity(
            action="create",
            entity_type="Supplier",
            entity_id=supplier.id,
            user_id=user_id,
            new_values=_supplier_snapshot(supplier),
        )
        db.session.commit()
        return supplier

    return run_with_retry(_op)


def update_supplier(supplier_id: int, *, patch: dict, user_id: int | None = None) -> Supplier:
    def _op():
        supplier = get_supplier(supplier_id)
        _ensure_unique_name(Supplier, patch.get("name"), "Supplier", exclude_id=supplier.id)
        old_values = _supplier_snapshot(supplier)
        for key, value in patch.items():
            setattr(supplier, key, value)
        log_activity(
            action="update",
            entity_type="Supplier",
            entity_id=supplier.id,
            user_id=user_id,
            old_values=old_values,
            new_values=_supplier_snapshot(supplier),
        )
        db.session.commit()
        return supplier

    return run_with_retry(_op)


def delete_supplier(supplier_id: int, *, user_id: int | None = None) -> None:
    def _op():
        supplier = get_supplier(supplier_id)
        in_use = db.session.query(Product.id).filter(Product.supplier_id == supplier.id).first()
        if in_use is not None:
            raise BusinessRuleViolation(
                "Cannot delete supplier with existing products. Remove supplier from products first."
            )
        log_activity(
            action="delete",
            entity_type="Supplier",
            entity_id=supplier.id,
            user_id=user_id,
            old_values=_supplier_snapshot(supplier),
        )
        db.session.delete(supplier)
        db.session.commit()

    run_with_retry(_op)


def list_supplier_products(supplier_id: int, *, page: int | None = 1, per_page: int | None = 20) -> dict:
    supplier = get_supplier(supplier_id)
    query = (
        db.session.query(Product)
        .filter(Product.supplier_id == supplier.id, Product.is_active.is_(True))
        .order_by(Product.name.asc())
    )
    result = paginate(query, page, per_page, lambda p: p.to_dict())
    result["supplier"] = supplier.to_dict()
    return result
