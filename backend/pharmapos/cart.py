# Overview: In-memory cart aggregation; line capture, stock ceilings and totals.

"""
Cart aggregation for a single checkout session.

A cart is ephemeral and owned by exactly one authenticated session. Nothing
here touches the database: products are passed in by the caller (the cart
service looks them up in the catalog), and unit prices are captured the
moment a product is first added so later catalog price edits never change
an open cart.

Money is integer minor units (cents). Tax is computed with Decimal and
rounded half-up to the cent.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterator, Protocol

from .errors import CheckoutInProgressError, ValidationError


class StockedProduct(Protocol):
    id: int
    name: str
    selling_price_cents: int
    stock_level: int


def parse_tax_rate(value) -> Decimal:
    """Parse a configured tax rate ("0.16", Decimal, int). Rejects negatives."""
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid tax rate: {value!r}")
    if not rate.is_finite() or rate < 0:
        raise ValueError(f"Invalid tax rate: {value!r}")
    return rate


def compute_tax_cents(subtotal_cents: int, tax_rate: Decimal) -> int:
    return int((Decimal(subtotal_cents) * tax_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class CartLine:
    product_id: int
    product_name: str
    quantity: int
    unit_price_cents: int
    # Stock level seen the last time this line was validated against the catalog
    stock_level: int

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "stock_level": self.stock_level,
        }


@dataclass(frozen=True)
class CartTotals:
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    tax_rate: Decimal
    line_count: int
    item_count: int

    @property
    def can_checkout(self) -> bool:
        return self.line_count > 0

    def to_dict(self) -> dict:
        return {
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "tax_rate": str(self.tax_rate),
            "line_count": self.line_count,
            "item_count": self.item_count,
            "can_checkout": self.can_checkout,
        }


class Cart:
    """Pending sale lines keyed by product id, in insertion order."""

    def __init__(self) -> None:
        self._lines: dict[int, CartLine] = {}
        self._checkout_lock = threading.Lock()

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines.values())

    def is_empty(self) -> bool:
        return not self._lines

    def get_line(self, product_id: int) -> CartLine | None:
        return self._lines.get(product_id)

    def add_item(self, product: StockedProduct, requested_qty: int = 1) -> CartLine:
        """
        Add a product, or bump the quantity of an existing line.

        Raises ValidationError (cart unchanged) when the resulting quantity
        would exceed the product's current stock level.
        """
        if requested_qty <= 0:
            raise ValidationError("Quantity must be greater than zero")

        existing = self._lines.get(product.id)
        current_qty = existing.quantity if existing else 0
        new_qty = current_qty + requested_qty

        if new_qty > product.stock_level:
            raise ValidationError(
                "Insufficient stock available",
                details={
                    "product_id": product.id,
                    "product_name": product.name,
                    "requested_quantity": new_qty,
                    "available": product.stock_level,
                },
            )

        if existing:
            existing.quantity = new_qty
            existing.stock_level = product.stock_level
            return existing

        line = CartLine(
            product_id=product.id,
            product_name=product.name,
            quantity=new_qty,
            unit_price_cents=product.selling_price_cents,
            stock_level=product.stock_level,
        )
        self._lines[product.id] = line
        return line

    def set_quantity(self, product_id: int, new_qty: int, stock_level: int | None = None) -> CartLine | None:
        """
        Set a line's quantity. Zero removes the line and returns None.

        `stock_level` is the product's current stock; when omitted the level
        recorded on the line is used.
        """
        if new_qty < 0:
            raise ValidationError("Quantity cannot be negative")

        line = self._lines.get(product_id)
        if line is None:
            raise ValidationError("Product is not in the cart", details={"product_id": product_id})

        if new_qty == 0:
            del self._lines[product_id]
            return None

        ceiling = line.stock_level if stock_level is None else stock_level
        if new_qty > ceiling:
            raise ValidationError(
                "Insufficient stock available",
                details={
                    "product_id": product_id,
                    "product_name": line.product_name,
                    "requested_quantity": new_qty,
                    "available": ceiling,
                },
            )

        line.quantity = new_qty
        line.stock_level = ceiling
        return line

    def remove_item(self, product_id: int) -> None:
        self._lines.pop(product_id, None)

    def clear(self) -> None:
        self._lines.clear()

    def compute_totals(self, tax_rate) -> CartTotals:
        rate = tax_rate if isinstance(tax_rate, Decimal) else parse_tax_rate(tax_rate)
        subtotal = sum(line.line_total_cents for line in self._lines.values())
        tax = compute_tax_cents(subtotal, rate)
        return CartTotals(
            subtotal_cents=subtotal,
            tax_cents=tax,
            total_cents=subtotal + tax,
            tax_rate=rate,
            line_count=len(self._lines),
            item_count=sum(line.quantity for line in self._lines.values()),
        )

    @contextmanager
    def checkout_guard(self) -> Iterator["Cart"]:
        """
        Hold the cart's checkout lock for the duration of a checkout.

        Non-blocking: a second concurrent attempt on the same cart fails
        immediately with CheckoutInProgressError.
        """
        if not self._checkout_lock.acquire(blocking=False):
            raise CheckoutInProgressError("A checkout is already in progress for this cart")
        try:
            yield self
        finally:
            self._checkout_lock.release()

    @property
    def checkout_in_progress(self) -> bool:
        return self._checkout_lock.locked()

    def to_dict(self, tax_rate) -> dict:
        return {
            "lines": [line.to_dict() for line in self._lines.values()],
            "totals": self.compute_totals(tax_rate).to_dict(),
            "checkout_in_progress": self.checkout_in_progress,
        }


class CartRegistry:
    """
    Process-wide map of session id -> Cart.

    Carts are never shared between sessions and never persisted; they are
    dropped on checkout, abandonment or logout.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._carts: dict[int, Cart] = {}

    def get(self, session_id: int) -> Cart:
        with self._lock:
            cart = self._carts.get(session_id)
            if cart is None:
                cart = Cart()
                self._carts[session_id] = cart
            return cart

    def peek(self, session_id: int) -> Cart | None:
        with self._lock:
            return self._carts.get(session_id)

    def discard(self, session_id: int) -> None:
        with self._lock:
            self._carts.pop(session_id, None)

    def reset(self) -> None:
        with self._lock:
            self._carts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._carts)
