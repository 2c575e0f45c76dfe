from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z


PAYMENT_METHODS = ("cash", "mobile_money", "card", "insurance")


class Sale(db.Model):
    """
    A completed sale.

    Written once by the checkout workflow in the same transaction as its
    lines and the stock decrements; there is no update or delete path.

    INVARIANTS:
    - total_cents = subtotal_cents + tax_cents
    - subtotal_cents = sum(lines.line_total_cents) at persistence time
    - receipt_number and idempotency_key are unique
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.CheckConstraint("subtotal_cents >= 0", name="ck_sales_subtotal_nonneg"),
        db.CheckConstraint("tax_cents >= 0", name="ck_sales_tax_nonneg"),
        db.CheckConstraint("total_cents = subtotal_cents + tax_cents", name="ck_sales_total"),
        db.CheckConstraint(
            "payment_method IN ('cash', 'mobile_money', 'card', 'insurance')",
            name="ck_sales_payment_method",
        ),
        db.Index("ix_sales_staff_created", "staff_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable receipt number (e.g., "RCP-000123")
    receipt_number = db.Column(db.String(64), nullable=False, unique=True, index=True)

    # Client-supplied (or generated) key; replays return the existing sale
    idempotency_key = db.Column(db.String(128), nullable=False, unique=True, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False)
    tax_cents = db.Column(db.Integer, nullable=False)
    total_cents = db.Column(db.Integer, nullable=False)
    # Rate applied at checkout, kept as a decimal string
    tax_rate = db.Column(db.String(16), nullable=False)

    payment_method = db.Column(db.String(16), nullable=False, index=True)
    payment_reference = db.Column(db.String(128), nullable=True)

    # Cash tender only
    cash_received_cents = db.Column(db.Integer, nullable=True)
    change_cents = db.Column(db.Integer, nullable=True)

    staff_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    staff = db.relationship("User", backref=db.backref("sales", lazy=True))
    lines = db.relationship(
        "SaleLine",
        back_populates="sale",
        order_by="SaleLine.id",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Sale id={self.id} receipt_number={self.receipt_number!r} total_cents={self.total_cents}>"

    def to_dict(self, include_lines: bool = False) -> dict:
        data = {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "idempotency_key": self.idempotency_key,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "tax_rate": self.tax_rate,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "cash_received_cents": self.cash_received_cents,
            "change_cents": self.change_cents,
            "staff_id": self.staff_id,
            "staff_name": self.staff.full_name if self.staff else None,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class SaleLine(db.Model):
    """Individual line items on a sale, created as one batch with it."""
    __tablename__ = "sale_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_sale_lines_quantity_pos"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_sale_lines_unit_price_nonneg"),
        db.CheckConstraint("line_total_cents = quantity * unit_price_cents", name="ck_sale_lines_total"),
        db.UniqueConstraint("sale_id", "product_id", name="uq_sale_lines_sale_product"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    # Denormalized at sale time so reports survive product renames
    product_name = db.Column(db.String(255), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    sale = db.relationship("Sale", back_populates="lines")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
        }


class ReceiptSequence(db.Model):
    """
    Named counter for receipt numbers.

    Incremented with a single UPDATE inside the checkout transaction, so
    numbers are strictly increasing across committed sales. A checkout that
    rolls back releases its allocation together with the sale row.
    """
    __tablename__ = "receipt_sequences"

    name = db.Column(db.String(32), primary_key=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
