# Overview: Flask API route for checkout; turns the session cart into a sale.

"""
Checkout API route.

Requires: CHECKOUT permission (all roles). The checkout service re-checks
the acting user at its own boundary.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import cart_service, checkout_service
from ..errors import PosError
from ..decorators import require_auth, require_permission


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


@checkout_bp.post("")
@require_auth
@require_permission("CHECKOUT")
def checkout_route():
    """
    Complete the sale held in the caller's cart.

    Request body:
    - payment_method: "cash" | "mobile_money" | "card" | "insurance" (required)
    - payment_reference: str (required for mobile_money)
    - cash_received_cents: int (required for cash, >= total)
    - idempotency_key: str (optional; also read from the Idempotency-Key header)

    Returns:
    - 201 with the receipt on a new sale
    - 200 with the original receipt when the idempotency key was already used
    - 409 INSUFFICIENT_STOCK listing the short products; the cart is kept
    """
    try:
        data = request.get_json(silent=True) or {}
        idempotency_key = data.get("idempotency_key") or request.headers.get("Idempotency-Key")

        receipt = checkout_service.checkout(
            cart_service.get_cart(g.session_context),
            actor=g.current_user,
            payment_method=data.get("payment_method"),
            payment_reference=data.get("payment_reference"),
            cash_received_cents=data.get("cash_received_cents"),
            idempotency_key=idempotency_key,
        )

        return jsonify({"receipt": receipt.to_dict()}), (200 if receipt.replayed else 201)

    except PosError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to complete checkout")
        return jsonify({"error": "Internal server error"}), 500
