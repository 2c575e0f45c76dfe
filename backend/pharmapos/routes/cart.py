# Overview: Flask API routes for the POS cart; parses input and returns JSON responses.

"""
Cart routes.

Each authenticated session owns exactly one cart, held in process memory
and keyed by the session. Every mutation answers with the full cart and
its totals so the client never computes money itself.

SECURITY: All routes require authentication and CHECKOUT permission.
"""

from flask import Blueprint, request, g

from ..services import cart_service
from ..validation import coerce_int, parse_quantity
from ..errors import PosError
from ..decorators import require_auth, require_permission

cart_bp = Blueprint("cart", __name__, url_prefix="/api/cart")


@cart_bp.get("")
@require_auth
@require_permission("CHECKOUT")
def get_cart_route():
    return cart_service.cart_payload(g.session_context)


@cart_bp.post("/items")
@require_auth
@require_permission("CHECKOUT")
def add_item_route():
    """
    Add a product (or bump its quantity).

    Request body:
    - product_id: int (required)
    - quantity: int (optional, default 1)
    """
    payload = request.get_json(silent=True) or {}

    try:
        if "product_id" not in payload:
            return {"error": "product_id is required"}, 400
        product_id = coerce_int("product_id", payload["product_id"])
        quantity = parse_quantity(payload.get("quantity", 1))
        cart_service.add_item(g.session_context, product_id, quantity)
    except PosError as e:
        return e.to_dict(), e.http_status

    return cart_service.cart_payload(g.session_context), 200


@cart_bp.put("/items/<int:product_id>")
@require_auth
@require_permission("CHECKOUT")
def set_quantity_route(product_id: int):
    """
    Set a line's quantity; 0 removes the line.

    Request body:
    - quantity: int (required, >= 0)
    """
    payload = request.get_json(silent=True) or {}

    try:
        if "quantity" not in payload:
            return {"error": "quantity is required"}, 400
        quantity = parse_quantity(payload["quantity"], allow_zero=True)
        cart_service.set_quantity(g.session_context, product_id, quantity)
    except PosError as e:
        return e.to_dict(), e.http_status

    return cart_service.cart_payload(g.session_context), 200


@cart_bp.delete("/items/<int:product_id>")
@require_auth
@require_permission("CHECKOUT")
def remove_item_route(product_id: int):
    try:
        cart_service.remove_item(g.session_context, product_id)
    except PosError as e:
        return e.to_dict(), e.http_status

    return cart_service.cart_payload(g.session_context), 200


@cart_bp.delete("")
@require_auth
@require_permission("CHECKOUT")
def abandon_cart_route():
    """Abandon the sale in progress."""
    try:
        cart_service.abandon(g.session_context)
    except PosError as e:
        return e.to_dict(), e.http_status

    return cart_service.cart_payload(g.session_context), 200
