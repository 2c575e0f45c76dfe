# Overview: Flask API routes for products operations; parses input and returns JSON responses.

# backend/pharmapos/routes/products.py
"""
Product catalog routes.

SECURITY: All routes require authentication.
- Read operations require VIEW_CATALOG permission
- Write operations (create, update, delete, restock) require MANAGE_PRODUCTS
"""
from datetime import date

from flask import Blueprint, request, g

from ..services import catalog_service
from ..models import Product
from ..validation import (
    ModelValidationPolicy,
    validate_payload,
    enforce_rules_product,
    parse_quantity,
)
from ..errors import PosError
from ..decorators import require_auth, require_permission

PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields=set(catalog_service.PRODUCT_MUTABLE_FIELDS),
    required_on_create={
        "name",
        "category",
        "supplier",
        "batch_number",
        "expiry_date",
        "selling_price_cents",
    },
)

products_bp = Blueprint("products", __name__, url_prefix="/api/products")


def _truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes"}


@products_bp.get("")
@require_auth
@require_permission("VIEW_CATALOG")
def list_products():
    """
    List products ordered by name.

    Query params:
    - in_stock: bool (optional) - only products with stock on hand (POS picker)
    - search: str (optional) - name contains / barcode prefix
    - category: str (optional)
    - page: int (optional) - page number (1-indexed). If omitted, returns all items.
    - per_page: int (optional) - items per page (default 20, max 100)
    """
    return catalog_service.list_products(
        in_stock_only=_truthy(request.args.get("in_stock")),
        search=request.args.get("search"),
        category=request.args.get("category"),
        page=request.args.get("page", type=int),
        per_page=request.args.get("per_page", type=int),
    )


@products_bp.get("/<int:product_id>")
@require_auth
@require_permission("VIEW_CATALOG")
def get_product_route(product_id: int):
    try:
        return catalog_service.get_product(product_id).to_dict()
    except PosError as e:
        return e.to_dict(), e.http_status


@products_bp.get("/barcode/<string:barcode>")
@require_auth
@require_permission("VIEW_CATALOG")
def get_by_barcode_route(barcode: str):
    """Scanner lookup."""
    try:
        return catalog_service.get_by_barcode(barcode).to_dict()
    except PosError as e:
        return e.to_dict(), e.http_status


@products_bp.get("/categories")
@require_auth
@require_permission("VIEW_CATALOG")
def categories_route():
    return {"categories": catalog_service.categories()}


@products_bp.get("/alerts")
@require_auth
@require_permission("VIEW_CATALOG")
def alerts_route():
    """
    Low-stock, out-of-stock and expiring-soon products.

    Query params:
    - as_of: YYYY-MM-DD (optional, default today)
    - days: int (optional, default EXPIRY_WARNING_DAYS)
    """
    as_of_raw = request.args.get("as_of")
    try:
        as_of = date.fromisoformat(as_of_raw) if as_of_raw else None
    except ValueError:
        return {"error": "as_of must be a YYYY-MM-DD date"}, 400

    days = request.args.get("days", type=int)
    if days is not None and days < 0:
        return {"error": "days must be >= 0"}, 400

    return catalog_service.catalog_alerts(as_of=as_of, warning_days=days)


@products_bp.post("")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def create_product_route():
    """
    Create a new product.

    Requires MANAGE_PRODUCTS permission.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=False)
        enforce_rules_product(patch)  # Handles price validation including max check
        created = catalog_service.create_product(patch=patch, actor=g.current_user)
    except PosError as e:
        return e.to_dict(), e.http_status

    return created.to_dict(), 201


@products_bp.patch("/<int:product_id>")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def update_product_route(product_id: int):
    """
    Update a product.

    Requires MANAGE_PRODUCTS permission.
    """
    payload = request.get_json(silent=True) or {}

    try:
        patch = validate_payload(model=Product, payload=payload, policy=PRODUCT_POLICY, partial=True)
        enforce_rules_product(patch)
        updated = catalog_service.update_product(product_id=product_id, patch=patch, actor=g.current_user)
    except PosError as e:
        return e.to_dict(), e.http_status

    return updated.to_dict(), 200


@products_bp.delete("/<int:product_id>")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def delete_product_route(product_id: int):
    """
    Delete a product that has never been sold.

    Requires MANAGE_PRODUCTS permission.
    """
    try:
        catalog_service.delete_product(product_id=product_id, actor=g.current_user)
    except PosError as e:
        return e.to_dict(), e.http_status

    return {"ok": True}, 200


@products_bp.post("/<int:product_id>/restock")
@require_auth
@require_permission("MANAGE_PRODUCTS")
def restock_route(product_id: int):
    """
    Add received units.

    Request body:
    - quantity: int (required, > 0)
    """
    payload = request.get_json(silent=True) or {}

    try:
        if "quantity" not in payload:
            return {"error": "quantity is required"}, 400
        quantity = parse_quantity(payload["quantity"])
        product = catalog_service.restock(product_id=product_id, quantity=quantity, actor=g.current_user)
    except PosError as e:
        return e.to_dict(), e.http_status

    return product.to_dict(), 200
