"""
Cart tests.

Verifies:
- Unit prices are captured when a product is first added
- Quantities never exceed the stock level seen at add/update time
- Totals: subtotal, half-up rounded tax and total in integer cents
- One cart per session; logout drops it
- Carts are frozen while a checkout holds them
"""

from decimal import Decimal

import pytest

from conftest import make_product, auth_headers, get_auth_token
from pharmapos.cart import Cart, compute_tax_cents, parse_tax_rate
from pharmapos.errors import CheckoutInProgressError, NotFoundError, ValidationError
from pharmapos.services import cart_service, catalog_service


# =============================================================================
# CART AGGREGATE
# =============================================================================


class TestCartLines:

    def test_add_item_captures_price_and_name(self, panadol):
        cart = Cart()
        line = cart.add_item(panadol, 2)

        assert line.product_name == "Panadol Extra"
        assert line.unit_price_cents == 15000
        assert line.line_total_cents == 30000

    def test_adding_same_product_bumps_quantity(self, panadol):
        cart = Cart()
        cart.add_item(panadol, 2)
        cart.add_item(panadol, 3)

        assert len(cart.lines) == 1
        assert cart.get_line(panadol.id).quantity == 5

    def test_add_beyond_stock_leaves_cart_unchanged(self, amoxicillin):
        cart = Cart()
        cart.add_item(amoxicillin, 10)

        with pytest.raises(ValidationError) as exc:
            cart.add_item(amoxicillin, 6)

        assert exc.value.details["available"] == 15
        assert exc.value.details["requested_quantity"] == 16
        assert cart.get_line(amoxicillin.id).quantity == 10

    def test_non_positive_quantity_rejected(self, panadol):
        cart = Cart()
        with pytest.raises(ValidationError):
            cart.add_item(panadol, 0)
        assert cart.is_empty()

    def test_set_quantity_zero_removes_line(self, panadol):
        cart = Cart()
        cart.add_item(panadol, 2)

        assert cart.set_quantity(panadol.id, 0) is None
        assert cart.is_empty()

    def test_set_quantity_checks_given_stock_level(self, panadol):
        cart = Cart()
        cart.add_item(panadol, 2)

        with pytest.raises(ValidationError):
            cart.set_quantity(panadol.id, 5, stock_level=4)
        assert cart.get_line(panadol.id).quantity == 2

    def test_set_quantity_unknown_product(self, panadol):
        cart = Cart()
        with pytest.raises(ValidationError):
            cart.set_quantity(panadol.id, 1)


class TestCartTotals:

    def test_totals_in_cents(self, panadol, amoxicillin):
        cart = Cart()
        cart.add_item(panadol, 3)
        cart.add_item(amoxicillin, 1)

        totals = cart.compute_totals("0.16")

        assert totals.subtotal_cents == 80000
        assert totals.tax_cents == 12800
        assert totals.total_cents == 92800
        assert totals.item_count == 4
        assert totals.line_count == 2
        assert totals.can_checkout is True

    def test_empty_cart_cannot_checkout(self):
        totals = Cart().compute_totals("0.16")
        assert totals.total_cents == 0
        assert totals.can_checkout is False

    def test_tax_rounds_half_up(self):
        assert compute_tax_cents(3, Decimal("0.16")) == 0
        assert compute_tax_cents(25, Decimal("0.16")) == 4
        assert compute_tax_cents(1, Decimal("0.5")) == 1
        assert compute_tax_cents(3, Decimal("0.5")) == 2

    @pytest.mark.parametrize("value", ["-0.01", "abc", "NaN"])
    def test_invalid_tax_rate(self, value):
        with pytest.raises(ValueError):
            parse_tax_rate(value)


# =============================================================================
# CART SERVICE (SESSION BOUND)
# =============================================================================


class TestCartService:

    def test_later_price_edit_does_not_reprice_cart(self, cashier_ctx, panadol):
        cart_service.add_item(cashier_ctx, panadol.id, 1)
        catalog_service.update_product(product_id=panadol.id, patch={"selling_price_cents": 99900})

        line = cart_service.get_cart(cashier_ctx).get_line(panadol.id)
        assert line.unit_price_cents == 15000

    def test_unknown_product(self, cashier_ctx):
        with pytest.raises(NotFoundError):
            cart_service.add_item(cashier_ctx, 9999, 1)

    def test_set_quantity_uses_current_stock(self, cashier_ctx, db_session):
        product = make_product(stock_level=5)
        cart_service.add_item(cashier_ctx, product.id, 2)

        product.stock_level = 3
        db_session.commit()

        with pytest.raises(ValidationError):
            cart_service.set_quantity(cashier_ctx, product.id, 4)
        cart_service.set_quantity(cashier_ctx, product.id, 3)
        assert cart_service.get_cart(cashier_ctx).get_line(product.id).quantity == 3

    def test_mutations_blocked_during_checkout(self, cashier_ctx, panadol):
        cart = cart_service.get_cart(cashier_ctx)
        cart_service.add_item(cashier_ctx, panadol.id, 1)

        with cart.checkout_guard():
            with pytest.raises(CheckoutInProgressError):
                cart_service.add_item(cashier_ctx, panadol.id, 1)
            with pytest.raises(CheckoutInProgressError):
                cart_service.abandon(cashier_ctx)
            with pytest.raises(CheckoutInProgressError):
                with cart.checkout_guard():
                    pass

        assert cart.get_line(panadol.id).quantity == 1

    def test_abandon_drops_cart(self, cashier_ctx, panadol):
        cart_service.add_item(cashier_ctx, panadol.id, 1)
        cart_service.abandon(cashier_ctx)

        assert cart_service.get_cart(cashier_ctx).is_empty()


# =============================================================================
# CART ROUTES
# =============================================================================


class TestCartRoutes:

    def test_add_item_returns_totals(self, client, cashier_headers, panadol):
        resp = client.post(
            "/api/cart/items",
            json={"product_id": panadol.id, "quantity": 2},
            headers=cashier_headers,
        )
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["totals"]["subtotal_cents"] == 30000
        assert data["totals"]["tax_cents"] == 4800
        assert data["totals"]["total_cents"] == 34800
        assert data["currency"] == "KES"
        assert data["lines"][0]["product_id"] == panadol.id

    def test_add_item_over_stock_is_400(self, client, cashier_headers, amoxicillin):
        resp = client.post(
            "/api/cart/items",
            json={"product_id": amoxicillin.id, "quantity": 16},
            headers=cashier_headers,
        )
        assert resp.status_code == 400
        assert resp.get_json()["details"]["available"] == 15

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, "2e3", True])
    def test_add_item_rejects_bad_quantity(self, client, cashier_headers, panadol, quantity):
        resp = client.post(
            "/api/cart/items",
            json={"product_id": panadol.id, "quantity": quantity},
            headers=cashier_headers,
        )
        assert resp.status_code == 400

    def test_update_and_remove(self, client, cashier_headers, panadol):
        client.post("/api/cart/items", json={"product_id": panadol.id}, headers=cashier_headers)

        resp = client.put(f"/api/cart/items/{panadol.id}", json={"quantity": 4}, headers=cashier_headers)
        assert resp.status_code == 200
        assert resp.get_json()["lines"][0]["quantity"] == 4

        resp = client.delete(f"/api/cart/items/{panadol.id}", headers=cashier_headers)
        assert resp.status_code == 200
        assert resp.get_json()["lines"] == []

    def test_each_session_has_its_own_cart(self, client, cashier_user, panadol):
        first = auth_headers(get_auth_token(client, cashier_user.email))
        second = auth_headers(get_auth_token(client, cashier_user.email))

        client.post("/api/cart/items", json={"product_id": panadol.id}, headers=first)

        assert len(client.get("/api/cart", headers=first).get_json()["lines"]) == 1
        assert client.get("/api/cart", headers=second).get_json()["lines"] == []

    def test_logout_drops_cart(self, client, cashier_user, panadol):
        headers = auth_headers(get_auth_token(client, cashier_user.email))
        client.post("/api/cart/items", json={"product_id": panadol.id}, headers=headers)

        resp = client.post("/api/auth/logout", headers=headers)
        assert resp.status_code == 200

        resp = client.get("/api/cart", headers=headers)
        assert resp.status_code == 401

        fresh = auth_headers(get_auth_token(client, cashier_user.email))
        assert client.get("/api/cart", headers=fresh).get_json()["lines"] == []

    def test_requires_auth(self, client, db_session):
        assert client.get("/api/cart").status_code == 401
