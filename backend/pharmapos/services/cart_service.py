# Overview: Service-layer operations for the POS cart; binds session carts to catalog lookups.

"""
Cart operations for an authenticated session.

The cart itself (pharmapos.cart) is pure in-memory state. This layer looks
products up in the catalog so each call sees the current name, price and
stock level, and resolves the cart owned by the caller's session.
"""

from __future__ import annotations

from flask import current_app

from ..cart import Cart, parse_tax_rate
from ..extensions import carts
from ..validation import MAX_QUANTITY
from ..errors import CheckoutInProgressError, ValidationError
from . import catalog_service
from .session_service import SessionContext


def current_tax_rate():
    return parse_tax_rate(current_app.config.get("TAX_RATE", "0"))


def get_cart(ctx: SessionContext) -> Cart:
    return carts.get(ctx.session_id)


def _editable_cart(ctx: SessionContext) -> Cart:
    cart = get_cart(ctx)
    if cart.checkout_in_progress:
        raise CheckoutInProgressError("Cart is locked while checkout is in progress")
    return cart


def cart_payload(ctx: SessionContext) -> dict:
    cart = get_cart(ctx)
    data = cart.to_dict(current_tax_rate())
    data["currency"] = current_app.config.get("CURRENCY", "KES")
    return data


def add_item(ctx: SessionContext, product_id: int, quantity: int = 1) -> Cart:
    """Add `quantity` units of a catalog product; stock is checked at call time."""
    product = catalog_service.get_product(product_id)
    cart = _editable_cart(ctx)
    line = cart.get_line(product_id)
    if line and line.quantity + quantity > MAX_QUANTITY:
        raise ValidationError(f"quantity cannot exceed {MAX_QUANTITY}")
    cart.add_item(product, quantity)
    return cart


def set_quantity(ctx: SessionContext, product_id: int, quantity: int) -> Cart:
    cart = _editable_cart(ctx)
    if cart.get_line(product_id) is None:
        raise ValidationError("Product is not in the cart", details={"product_id": product_id})
    stock_level = None
    if quantity > 0:
        stock_level = catalog_service.get_product(product_id).stock_level
    cart.set_quantity(product_id, quantity, stock_level)
    return cart


def remove_item(ctx: SessionContext, product_id: int) -> Cart:
    cart = _editable_cart(ctx)
    cart.remove_item(product_id)
    return cart


def abandon(ctx: SessionContext) -> None:
    """Drop the session's cart entirely."""
    _editable_cart(ctx)
    current_app.logger.debug("Cart abandoned for session %s", ctx.session_id)
    carts.discard(ctx.session_id)
