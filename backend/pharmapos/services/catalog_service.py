# backend/pharmapos/services/catalog_service.py
"""
Catalog store: products, stock levels and catalog alerts.

STOCK: Checkout never writes stock_level from a value it read earlier.
decrement_stock issues one conditional UPDATE guarded by
stock_level >= quantity, so two sessions selling the last unit cannot
both succeed. The caller owns the transaction.

Writes (create, update, delete, restock) require MANAGE_PRODUCTS; the
acting user is re-checked here as well as on the route.
"""
from __future__ import annotations

from datetime import date, timedelta

from flask import current_app
from sqlalchemy import func, or_, update

from ..extensions import db
from ..models import Product, SaleLine, User
from ..errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from ..validation import MAX_QUANTITY
from .permission_service import require_permission
from pharmapos.time_utils import utcnow

PRODUCT_MUTABLE_FIELDS = {
    "name",
    "category",
    "supplier",
    "batch_number",
    "expiry_date",
    "cost_price_cents",
    "selling_price_cents",
    "stock_level",
    "minimum_stock",
    "barcode",
    "prescription_required",
}


def apply_product_patch(p: Product, patch: dict) -> None:
    for k, v in patch.items():
        if k not in PRODUCT_MUTABLE_FIELDS:
            continue
        setattr(p, k, v)


def _require_manage(actor: User | None, resource: str) -> None:
    if actor is not None:
        require_permission(actor, "MANAGE_PRODUCTS", resource=resource)


def _check_barcode_free(barcode: str | None, exclude_id: int | None = None) -> None:
    if not barcode:
        return
    query = db.session.query(Product.id).filter(Product.barcode == barcode)
    if exclude_id is not None:
        query = query.filter(Product.id != exclude_id)
    if query.first():
        raise ConflictError("Barcode already assigned to another product", details={"barcode": barcode})


def list_products(
    in_stock_only: bool = False,
    search: str | None = None,
    category: str | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """
    Product listing ordered by name, with optional pagination.

    Args:
        in_stock_only: only products with stock_level > 0 (the POS picker)
        search: case-insensitive name match, or barcode prefix
        category: exact category
        page: Page number (1-indexed). If None, returns all items.
        per_page: Items per page (default 20, max 100)

    Returns:
        Dict with 'items', 'count', and pagination metadata if paginated.
    """
    base_query = db.session.query(Product)

    if in_stock_only:
        base_query = base_query.filter(Product.stock_level > 0)
    if category:
        base_query = base_query.filter(Product.category == category)
    if search:
        term = search.strip()
        if term:
            base_query = base_query.filter(
                or_(
                    func.lower(Product.name).contains(term.lower(), autoescape=True),
                    Product.barcode.startswith(term, autoescape=True),
                )
            )

    base_query = base_query.order_by(Product.name.asc(), Product.id.asc())

    if page is None:
        products = base_query.all()
        return {
            "items": [p.to_dict() for p in products],
            "count": len(products),
        }

    per_page = min(per_page or 20, 100)
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    products = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [p.to_dict() for p in products],
        "count": len(products),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def get_product(product_id: int) -> Product:
    p = db.session.get(Product, product_id)
    if not p:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return p


def get_by_barcode(barcode: str) -> Product:
    p = db.session.query(Product).filter(Product.barcode == (barcode or "").strip()).first()
    if not p:
        raise NotFoundError("No product with this barcode", details={"barcode": barcode})
    return p


def create_product(*, patch: dict, actor: User | None = None) -> Product:
    """
    Create product using a validated patch dict.

    Raises:
        AuthorizationError: actor lacks MANAGE_PRODUCTS
        ConflictError: barcode already assigned
    """
    _require_manage(actor, "products")

    if patch.get("selling_price_cents") is None:
        raise ValidationError("selling_price_cents is required")

    _check_barcode_free(patch.get("barcode"))

    p = Product()
    apply_product_patch(p, patch)

    db.session.add(p)
    db.session.commit()

    current_app.logger.info("Product %s created: %s", p.id, p.name)
    return p


def update_product(*, product_id: int, patch: dict, actor: User | None = None) -> Product:
    """
    Update a product.

    Price edits never touch open carts; lines keep the price captured at add time.

    Raises:
        NotFoundError: unknown product
        ConflictError: new barcode already assigned
    """
    _require_manage(actor, f"products/{product_id}")

    p = get_product(product_id)

    if "barcode" in patch and patch["barcode"] != p.barcode:
        _check_barcode_free(patch["barcode"], exclude_id=p.id)

    apply_product_patch(p, patch)
    db.session.commit()
    return p


def delete_product(*, product_id: int, actor: User | None = None) -> None:
    """
    Delete a product that has never been sold.

    Sold products stay so receipts and reports keep their references.
    """
    _require_manage(actor, f"products/{product_id}")

    p = get_product(product_id)

    sold = db.session.query(SaleLine.id).filter(SaleLine.product_id == p.id).first()
    if sold:
        raise ConflictError(
            "Product has recorded sales and cannot be deleted",
            details={"product_id": p.id},
        )

    db.session.delete(p)
    db.session.commit()
    current_app.logger.info("Product %s deleted", product_id)


def decrement_stock(product_id: int, quantity: int) -> None:
    """
    Atomically remove `quantity` units, only if that many are on hand.

    Does not commit. Raises InsufficientStockError (with the current level)
    when the guard fails, and NotFoundError for an unknown product.
    """
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")

    result = db.session.execute(
        update(Product)
        .where(Product.id == product_id, Product.stock_level >= quantity)
        .values(
            stock_level=Product.stock_level - quantity,
            version_id=Product.version_id + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    row = db.session.query(Product.name, Product.stock_level).filter(Product.id == product_id).first()
    if row is None:
        raise NotFoundError("Product not found", details={"product_id": product_id})
    raise InsufficientStockError(
        f"Insufficient stock for {row.name}",
        items=[{
            "product_id": product_id,
            "product_name": row.name,
            "requested_quantity": quantity,
            "available": row.stock_level,
        }],
    )


def restock(*, product_id: int, quantity: int, actor: User | None = None) -> Product:
    """Add received units to a product's stock level."""
    _require_manage(actor, f"products/{product_id}/restock")

    if quantity <= 0 or quantity > MAX_QUANTITY:
        raise ValidationError(f"quantity must be between 1 and {MAX_QUANTITY}")

    get_product(product_id)

    db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(
            stock_level=Product.stock_level + quantity,
            version_id=Product.version_id + 1,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    db.session.commit()

    p = get_product(product_id)
    current_app.logger.info("Product %s restocked by %d (now %d)", product_id, quantity, p.stock_level)
    return p


def categories() -> list[str]:
    rows = db.session.query(Product.category).distinct().order_by(Product.category.asc()).all()
    return [r[0] for r in rows]


def catalog_alerts(as_of: date | None = None, warning_days: int | None = None) -> dict:
    """
    Products that need attention.

    Returns:
        {
          "as_of": "YYYY-MM-DD",
          "out_of_stock": [...],
          "low_stock": [...],       # 0 < stock_level <= minimum_stock
          "expiring_soon": [...],   # expiry within warning_days, incl. expired
        }
    """
    if as_of is None:
        as_of = utcnow().date()
    if warning_days is None:
        warning_days = current_app.config.get("EXPIRY_WARNING_DAYS", 90)

    out_of_stock = (
        db.session.query(Product)
        .filter(Product.stock_level <= 0)
        .order_by(Product.name.asc())
        .all()
    )
    low_stock = (
        db.session.query(Product)
        .filter(Product.stock_level > 0, Product.stock_level <= Product.minimum_stock)
        .order_by(Product.stock_level.asc(), Product.name.asc())
        .all()
    )
    expiring = (
        db.session.query(Product)
        .filter(Product.expiry_date <= as_of + timedelta(days=warning_days))
        .order_by(Product.expiry_date.asc(), Product.name.asc())
        .all()
    )

    return {
        "as_of": as_of.isoformat(),
        "warning_days": warning_days,
        "out_of_stock": [p.to_dict() for p in out_of_stock],
        "low_stock": [p.to_dict() for p in low_stock],
        "expiring_soon": [
            {**p.to_dict(), "days_to_expiry": (p.expiry_date - as_of).days}
            for p in expiring
        ],
    }
