from __future__ import annotations

from datetime import date, timedelta

from ..extensions import db
from pharmapos.time_utils import to_utc_z


class Product(db.Model):
    """
    Product (medicine) master data with its on-hand stock level.

    STOCK: stock_level is the authoritative on-hand count. Checkout never
    writes it from an in-memory value; it issues a conditional decrement
    (see catalog_service.decrement_stock) guarded by stock_level >= qty.
    The check constraint is the last line of defence against underflow.

    BARCODE: optional, unique when present.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("stock_level >= 0", name="ck_products_stock_level_nonneg"),
        db.CheckConstraint("minimum_stock >= 0", name="ck_products_minimum_stock_nonneg"),
        db.CheckConstraint("cost_price_cents >= 0", name="ck_products_cost_price_nonneg"),
        db.CheckConstraint("selling_price_cents >= 0", name="ck_products_selling_price_nonneg"),
        db.Index("ix_products_name", "name"),
        db.Index("ix_products_category", "category"),
        db.Index("ix_products_expiry_date", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(120), nullable=False)
    supplier = db.Column(db.String(255), nullable=False)
    batch_number = db.Column(db.String(64), nullable=False)
    expiry_date = db.Column(db.Date, nullable=False)

    # Authoritative storage in cents (frontend may only format for display)
    cost_price_cents = db.Column(db.Integer, nullable=False, default=0)
    selling_price_cents = db.Column(db.Integer, nullable=False, default=0)

    stock_level = db.Column(db.Integer, nullable=False, default=0)
    minimum_stock = db.Column(db.Integer, nullable=False, default=0)

    barcode = db.Column(db.String(64), nullable=True, unique=True, index=True)
    prescription_required = db.Column(db.Boolean, nullable=False, default=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} stock_level={self.stock_level}>"

    @property
    def stock_status(self) -> str:
        if self.stock_level <= 0:
            return "OUT_OF_STOCK"
        if self.stock_level <= self.minimum_stock:
            return "LOW"
        if self.stock_level * 2 <= self.minimum_stock * 3:
            return "RUNNING_LOW"
        return "OK"

    def is_expiring_soon(self, as_of: date, warning_days: int) -> bool:
        return self.expiry_date <= as_of + timedelta(days=warning_days)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "supplier": self.supplier,
            "batch_number": self.batch_number,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "cost_price_cents": self.cost_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "stock_level": self.stock_level,
            "minimum_stock": self.minimum_stock,
            "stock_status": self.stock_status,
            "barcode": self.barcode,
            "prescription_required": self.prescription_required,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
