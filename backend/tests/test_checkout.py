"""
Checkout tests.

Verifies:
- A successful checkout writes one sale, its lines and the stock decrements
- Any failure leaves no sale, no lines, no stock change and the cart intact
- Idempotency keys replay the original receipt, only for the same staff and cart
- Lock contention is retried a bounded number of times
- Receipt numbers are sequential and formatted RCP-000001
- Payment rules (cash tendered, mobile money reference)
"""

import re
import threading

import pytest
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from conftest import make_product
from pharmapos.extensions import db
from pharmapos.models import Product, Sale, SaleLine
from pharmapos.errors import (
    AuthorizationError,
    CheckoutCancelledError,
    ConflictError,
    InsufficientStockError,
    PersistenceError,
    ValidationError,
)
from pharmapos.services import cart_service, checkout_service
from pharmapos.services.checkout_service import CheckoutAttempt, CheckoutState


def _sale_count():
    return db.session.query(Sale).count()


def _line_count():
    return db.session.query(SaleLine).count()


def _stock(product_id):
    return db.session.get(Product, product_id).stock_level


# =============================================================================
# SUCCESSFUL CHECKOUT
# =============================================================================


class TestCheckoutSuccess:

    def test_cash_sale(self, cashier_ctx, db_session):
        product = make_product(name="Cough Syrup", price_cents=8000, stock_level=10)
        cart_service.add_item(cashier_ctx, product.id, 2)
        cart = cart_service.get_cart(cashier_ctx)

        receipt = checkout_service.checkout(
            cart,
            actor=cashier_ctx.user,
            payment_method="cash",
            cash_received_cents=20000,
        )

        assert receipt.subtotal_cents == 16000
        assert receipt.tax_cents == 2560
        assert receipt.total_cents == 18560
        assert receipt.change_cents == 1440
        assert receipt.cash_received_cents == 20000
        assert receipt.tax_rate == "0.16"
        assert receipt.staff_name == "Carol Cashier"
        assert receipt.replayed is False
        assert len(receipt.lines) == 1
        assert receipt.lines[0]["quantity"] == 2
        assert receipt.lines[0]["unit_price_cents"] == 8000

        assert _stock(product.id) == 8
        assert _sale_count() == 1
        assert _line_count() == 1
        assert cart.is_empty()

    def test_receipt_numbers_are_sequential(self, cashier_ctx, panadol):
        cart = cart_service.get_cart(cashier_ctx)
        numbers = []
        for _ in range(3):
            cart_service.add_item(cashier_ctx, panadol.id, 1)
            receipt = checkout_service.checkout(cart, actor=cashier_ctx.user, payment_method="card")
            numbers.append(receipt.receipt_number)

        assert numbers == ["RCP-000001", "RCP-000002", "RCP-000003"]
        assert all(re.fullmatch(r"RCP-\d{6}", n) for n in numbers)

    def test_mobile_money_with_reference(self, cashier_ctx, panadol):
        cart_service.add_item(cashier_ctx, panadol.id, 1)

        receipt = checkout_service.checkout(
            cart_service.get_cart(cashier_ctx),
            actor=cashier_ctx.user,
            payment_method="M-Pesa",
            payment_reference="QK7XH2P9Z1",
        )

        assert receipt.payment_method == "mobile_money"
        assert receipt.payment_reference == "QK7XH2P9Z1"
        assert receipt.change_cents is None

    def test_multiple_lines_decrement_each_product(self, cashier_ctx, panadol, amoxicillin):
        cart_service.add_item(cashier_ctx, panadol.id, 3)
        cart_service.add_item(cashier_ctx, amoxicillin.id, 2)

        receipt = checkout_service.checkout(
            cart_service.get_cart(cashier_ctx),
            actor=cashier_ctx.user,
            payment_method="insurance",
        )

        assert receipt.subtotal_cents == 115000
        assert _stock(panadol.id) == 247
        assert _stock(amoxicillin.id) == 13
        assert _line_count() == 2


# =============================================================================
# FAILURES LEAVE NOTHING BEHIND
# =============================================================================


class TestCheckoutFailures:

    def test_empty_cart(self, cashier_ctx, db_session):
        with pytest.raises(ValidationError):
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx),
                actor=cashier_ctx.user,
                payment_method="card",
            )
        assert _sale_count() == 0

    def test_insufficient_stock_rolls_back_everything(self, cashier_ctx, db_session):
        product = make_product(stock_level=2)
        cart_service.add_item(cashier_ctx, product.id, 2)
        cart = cart_service.get_cart(cashier_ctx)

        # Another till sold one unit after this cart was built
        product.stock_level = 1
        db_session.commit()

        with pytest.raises(InsufficientStockError) as exc:
            checkout_service.checkout(cart, actor=cashier_ctx.user, payment_method="card")

        item = exc.value.items[0]
        assert item["product_id"] == product.id
        assert item["requested_quantity"] == 2
        assert item["available"] == 1

        assert _sale_count() == 0
        assert _line_count() == 0
        assert _stock(product.id) == 1
        assert cart.get_line(product.id).quantity == 2

        # The failed attempt released its receipt number
        cart_service.set_quantity(cashier_ctx, product.id, 1)
        receipt = checkout_service.checkout(cart, actor=cashier_ctx.user, payment_method="card")
        assert receipt.receipt_number == "RCP-000001"
        assert _stock(product.id) == 0

    def test_all_short_lines_reported(self, cashier_ctx, db_session):
        first = make_product(name="Aspirin 100mg", stock_level=3)
        second = make_product(name="Vitamin C Tablets", stock_level=3)
        cart_service.add_item(cashier_ctx, first.id, 3)
        cart_service.add_item(cashier_ctx, second.id, 3)

        first.stock_level = 0
        second.stock_level = 1
        db_session.commit()

        with pytest.raises(InsufficientStockError) as exc:
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx), actor=cashier_ctx.user, payment_method="card"
            )

        assert {item["product_id"] for item in exc.value.items} == {first.id, second.id}
        assert _sale_count() == 0

    def test_store_failure_after_sale_row(self, cashier_ctx, panadol, monkeypatch):
        cart_service.add_item(cashier_ctx, panadol.id, 1)

        def broken_decrement(product_id, quantity):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(checkout_service.catalog_service, "decrement_stock", broken_decrement)

        with pytest.raises(PersistenceError):
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx), actor=cashier_ctx.user, payment_method="card"
            )

        assert _sale_count() == 0
        assert _line_count() == 0
        assert _stock(panadol.id) == 250
        assert not cart_service.get_cart(cashier_ctx).is_empty()

    def test_cash_below_total(self, cashier_ctx, panadol):
        cart_service.add_item(cashier_ctx, panadol.id, 1)

        with pytest.raises(ValidationError):
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx),
                actor=cashier_ctx.user,
                payment_method="cash",
                cash_received_cents=17399,
            )
        assert _sale_count() == 0

    def test_mobile_money_requires_reference(self, cashier_ctx, panadol):
        cart_service.add_item(cashier_ctx, panadol.id, 1)

        with pytest.raises(ValidationError):
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx),
                actor=cashier_ctx.user,
                payment_method="mobile_money",
            )
        assert _sale_count() == 0

    def test_unknown_payment_method(self, cashier_ctx, panadol):
        cart_service.add_item(cashier_ctx, panadol.id, 1)

        with pytest.raises(ValidationError):
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx), actor=cashier_ctx.user, payment_method="cheque"
            )

    def test_cancelled_before_write(self, cashier_ctx, panadol):
        cart_service.add_item(cashier_ctx, panadol.id, 1)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(CheckoutCancelledError):
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx),
                actor=cashier_ctx.user,
                payment_method="card",
                cancel_event=cancel,
            )

        assert _sale_count() == 0
        assert _stock(panadol.id) == 250
        assert not cart_service.get_cart(cashier_ctx).is_empty()

    def test_inactive_actor_denied(self, cashier_ctx, panadol, db_session):
        cart_service.add_item(cashier_ctx, panadol.id, 1)
        cashier_ctx.user.is_active = False
        db_session.commit()

        with pytest.raises(AuthorizationError):
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx), actor=cashier_ctx.user, payment_method="card"
            )
        assert _sale_count() == 0


# =============================================================================
# IDEMPOTENCY
# =============================================================================


class TestIdempotency:

    def test_replay_returns_original_receipt(self, cashier_ctx, panadol):
        cart = cart_service.get_cart(cashier_ctx)
        cart_service.add_item(cashier_ctx, panadol.id, 2)

        first = checkout_service.checkout(
            cart, actor=cashier_ctx.user, payment_method="card", idempotency_key="till-1-0001"
        )

        # Client retries after a dropped response; the cart was already cleared
        second = checkout_service.checkout(
            cart, actor=cashier_ctx.user, payment_method="card", idempotency_key="till-1-0001"
        )

        assert second.replayed is True
        assert second.receipt_number == first.receipt_number
        assert second.sale_id == first.sale_id
        assert _sale_count() == 1
        assert _stock(panadol.id) == 248

    def test_generated_keys_are_unique(self, cashier_ctx, panadol):
        cart = cart_service.get_cart(cashier_ctx)
        keys = set()
        for _ in range(2):
            cart_service.add_item(cashier_ctx, panadol.id, 1)
            keys.add(checkout_service.checkout(cart, actor=cashier_ctx.user, payment_method="card").idempotency_key)
        assert len(keys) == 2

    def test_blank_key_rejected(self, cashier_ctx, panadol):
        cart_service.add_item(cashier_ctx, panadol.id, 1)
        with pytest.raises(ValidationError):
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx),
                actor=cashier_ctx.user,
                payment_method="card",
                idempotency_key="   ",
            )

    def test_key_from_another_staff_member_is_409(self, cashier_ctx, pharmtech_ctx, panadol, amoxicillin):
        cart_service.add_item(cashier_ctx, panadol.id, 1)
        checkout_service.checkout(
            cart_service.get_cart(cashier_ctx), actor=cashier_ctx.user, payment_method="card", idempotency_key="K1"
        )

        cart_service.add_item(pharmtech_ctx, amoxicillin.id, 3)
        with pytest.raises(ConflictError):
            checkout_service.checkout(
                cart_service.get_cart(pharmtech_ctx), actor=pharmtech_ctx.user, payment_method="card", idempotency_key="K1"
            )

        assert _sale_count() == 1
        assert _stock(amoxicillin.id) == 15
        assert cart_service.get_cart(pharmtech_ctx).get_line(amoxicillin.id).quantity == 3

    def test_key_reused_for_different_cart_is_409(self, cashier_ctx, panadol, amoxicillin):
        cart = cart_service.get_cart(cashier_ctx)
        cart_service.add_item(cashier_ctx, panadol.id, 1)
        checkout_service.checkout(cart, actor=cashier_ctx.user, payment_method="card", idempotency_key="till-1-0002")

        cart_service.add_item(cashier_ctx, amoxicillin.id, 1)
        with pytest.raises(ConflictError):
            checkout_service.checkout(cart, actor=cashier_ctx.user, payment_method="card", idempotency_key="till-1-0002")

        assert _sale_count() == 1
        assert _stock(amoxicillin.id) == 15
        assert cart.get_line(amoxicillin.id).quantity == 1

    def test_resend_with_same_cart_replays_and_clears(self, cashier_ctx, panadol):
        cart = cart_service.get_cart(cashier_ctx)
        cart_service.add_item(cashier_ctx, panadol.id, 2)
        first = checkout_service.checkout(cart, actor=cashier_ctx.user, payment_method="card", idempotency_key="till-1-0003")

        # Till restored its cart before resending
        cart_service.add_item(cashier_ctx, panadol.id, 2)
        second = checkout_service.checkout(cart, actor=cashier_ctx.user, payment_method="card", idempotency_key="till-1-0003")

        assert second.replayed is True
        assert second.sale_id == first.sale_id
        assert cart.is_empty()
        assert _sale_count() == 1
        assert _stock(panadol.id) == 248

    def test_key_taken_while_validating_is_409(self, cashier_ctx, pharmtech_ctx, panadol, amoxicillin, monkeypatch):
        cart_service.add_item(cashier_ctx, panadol.id, 1)
        checkout_service.checkout(
            cart_service.get_cart(cashier_ctx), actor=cashier_ctx.user, payment_method="card", idempotency_key="K2"
        )

        # The sale lands between the validation lookup and the write transaction
        real_find = checkout_service._find_by_key
        lookups = []

        def late_find(key):
            lookups.append(key)
            return None if len(lookups) == 1 else real_find(key)

        monkeypatch.setattr(checkout_service, "_find_by_key", late_find)

        cart_service.add_item(pharmtech_ctx, amoxicillin.id, 2)
        with pytest.raises(ConflictError):
            checkout_service.checkout(
                cart_service.get_cart(pharmtech_ctx), actor=pharmtech_ctx.user, payment_method="card", idempotency_key="K2"
            )

        assert len(lookups) == 2
        assert _sale_count() == 1
        assert _stock(amoxicillin.id) == 15
        assert not cart_service.get_cart(pharmtech_ctx).is_empty()


# =============================================================================
# LOCK CONTENTION RETRY
# =============================================================================


@pytest.fixture
def recorded_attempts(monkeypatch):
    """Collects every CheckoutAttempt the service creates."""
    attempts = []

    class RecordingAttempt(CheckoutAttempt):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            attempts.append(self)

    monkeypatch.setattr(checkout_service, "CheckoutAttempt", RecordingAttempt)
    return attempts


def _database_locked():
    return OperationalError("UPDATE products", {}, Exception("database is locked"))


class TestCheckoutRetry:

    def test_locked_once_then_succeeds(self, cashier_ctx, panadol, recorded_attempts, monkeypatch):
        real_decrement = checkout_service.catalog_service.decrement_stock
        calls = []

        def locked_once(product_id, quantity):
            calls.append(product_id)
            if len(calls) == 1:
                raise _database_locked()
            return real_decrement(product_id, quantity)

        monkeypatch.setattr(checkout_service.catalog_service, "decrement_stock", locked_once)

        cart_service.add_item(cashier_ctx, panadol.id, 2)
        receipt = checkout_service.checkout(
            cart_service.get_cart(cashier_ctx), actor=cashier_ctx.user, payment_method="card"
        )

        attempt = recorded_attempts[0]
        assert attempt.retries == 1
        assert attempt.state == CheckoutState.COMPLETED
        assert attempt.history.count(CheckoutState.SALE_PERSISTING) == 2
        # The rolled-back attempt released its receipt number
        assert receipt.receipt_number == "RCP-000001"
        assert _sale_count() == 1
        assert _line_count() == 1
        assert _stock(panadol.id) == 248

    def test_retries_exhausted(self, app, cashier_ctx, panadol, recorded_attempts, monkeypatch):
        def always_locked(product_id, quantity):
            raise _database_locked()

        monkeypatch.setattr(checkout_service.catalog_service, "decrement_stock", always_locked)

        cart_service.add_item(cashier_ctx, panadol.id, 1)
        with pytest.raises(PersistenceError) as exc:
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx), actor=cashier_ctx.user, payment_method="card"
            )

        assert exc.value.details["reason"] == "OperationalError"
        attempt = recorded_attempts[0]
        assert attempt.state == CheckoutState.FAILED
        assert attempt.retries == app.config["STOCK_RETRY_ATTEMPTS"] - 1
        assert _sale_count() == 0
        assert _line_count() == 0
        assert _stock(panadol.id) == 250
        assert not cart_service.get_cart(cashier_ctx).is_empty()

    def test_unexpected_error_marks_attempt_failed(self, cashier_ctx, panadol, recorded_attempts, monkeypatch):
        def broken_decrement(product_id, quantity):
            raise RuntimeError("decrement bug")

        monkeypatch.setattr(checkout_service.catalog_service, "decrement_stock", broken_decrement)

        cart_service.add_item(cashier_ctx, panadol.id, 1)
        with pytest.raises(RuntimeError):
            checkout_service.checkout(
                cart_service.get_cart(cashier_ctx), actor=cashier_ctx.user, payment_method="card"
            )

        attempt = recorded_attempts[0]
        assert attempt.state == CheckoutState.FAILED
        assert attempt.failure_reason == "RuntimeError"
        assert attempt.retries == 0
        assert _sale_count() == 0
        assert _stock(panadol.id) == 250


# =============================================================================
# STATE MACHINE
# =============================================================================


class TestCheckoutAttempt:

    def test_happy_path(self, app):
        attempt = CheckoutAttempt("k")
        for state in (
            CheckoutState.VALIDATING,
            CheckoutState.SALE_PERSISTING,
            CheckoutState.ITEMS_PERSISTING,
            CheckoutState.STOCK_APPLYING,
            CheckoutState.COMPLETED,
        ):
            attempt.advance(state)
        assert attempt.is_terminal

    def test_cannot_skip_persisting_steps(self, app):
        attempt = CheckoutAttempt("k")
        attempt.advance(CheckoutState.VALIDATING)
        attempt.advance(CheckoutState.SALE_PERSISTING)
        with pytest.raises(RuntimeError):
            attempt.advance(CheckoutState.STOCK_APPLYING)

    def test_retry_returns_to_sale_persisting(self, app):
        attempt = CheckoutAttempt("k")
        attempt.advance(CheckoutState.VALIDATING)
        attempt.advance(CheckoutState.SALE_PERSISTING)
        attempt.advance(CheckoutState.ITEMS_PERSISTING)
        attempt.restart()
        assert attempt.state == CheckoutState.SALE_PERSISTING
        assert attempt.retries == 1

    def test_fail_is_terminal(self, app):
        attempt = CheckoutAttempt("k")
        attempt.advance(CheckoutState.VALIDATING)
        attempt.fail("ValidationError: Cart is empty")
        assert attempt.state == CheckoutState.FAILED
        assert attempt.failure_reason == "ValidationError: Cart is empty"
        with pytest.raises(RuntimeError):
            attempt.advance(CheckoutState.SALE_PERSISTING)


# =============================================================================
# ROUTES
# =============================================================================


class TestCheckoutRoutes:

    def test_checkout_and_replay(self, client, cashier_headers, panadol):
        client.post("/api/cart/items", json={"product_id": panadol.id, "quantity": 2}, headers=cashier_headers)

        headers = {**cashier_headers, "Idempotency-Key": "till-2-0042"}
        resp = client.post(
            "/api/checkout",
            json={"payment_method": "cash", "cash_received_cents": 40000},
            headers=headers,
        )
        assert resp.status_code == 201
        receipt = resp.get_json()["receipt"]
        assert receipt["receipt_number"] == "RCP-000001"
        assert receipt["total_cents"] == 34800
        assert receipt["change_cents"] == 5200
        assert receipt["created_at"].endswith("Z")

        resp = client.post(
            "/api/checkout",
            json={"payment_method": "cash", "cash_received_cents": 40000},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.get_json()["receipt"]["receipt_number"] == "RCP-000001"
        assert resp.get_json()["receipt"]["replayed"] is True

        assert client.get("/api/cart", headers=cashier_headers).get_json()["lines"] == []

    def test_insufficient_stock_is_409(self, client, cashier_headers, db_session):
        product = make_product(stock_level=1)
        client.post("/api/cart/items", json={"product_id": product.id}, headers=cashier_headers)
        product.stock_level = 0
        db_session.commit()

        resp = client.post("/api/checkout", json={"payment_method": "card"}, headers=cashier_headers)
        assert resp.status_code == 409
        data = resp.get_json()
        assert data["code"] == "INSUFFICIENT_STOCK"
        assert data["details"]["items"][0]["available"] == 0

        # Cart kept so the cashier can adjust and retry
        assert len(client.get("/api/cart", headers=cashier_headers).get_json()["lines"]) == 1

    def test_empty_cart_is_400(self, client, cashier_headers):
        resp = client.post("/api/checkout", json={"payment_method": "card"}, headers=cashier_headers)
        assert resp.status_code == 400

    def test_receipt_reprint(self, client, cashier_headers, panadol):
        client.post("/api/cart/items", json={"product_id": panadol.id}, headers=cashier_headers)
        sale_id = client.post(
            "/api/checkout", json={"payment_method": "card"}, headers=cashier_headers
        ).get_json()["receipt"]["sale_id"]

        resp = client.get(f"/api/sales/{sale_id}/receipt", headers=cashier_headers)
        assert resp.status_code == 200
        assert resp.get_json()["receipt"]["receipt_number"] == "RCP-000001"

        resp = client.get("/api/sales/receipt/RCP-000001", headers=cashier_headers)
        assert resp.status_code == 200
        assert len(resp.get_json()["sale"]["lines"]) == 1

        resp = client.get("/api/sales", headers=cashier_headers)
        assert resp.get_json()["count"] == 1

    def test_unknown_sale_is_404(self, client, cashier_headers):
        assert client.get("/api/sales/999", headers=cashier_headers).status_code == 404

    def test_key_from_another_staff_member_is_409(self, client, cashier_headers, pharmtech_headers, panadol, amoxicillin):
        client.post("/api/cart/items", json={"product_id": panadol.id}, headers=cashier_headers)
        resp = client.post(
            "/api/checkout", json={"payment_method": "card"}, headers={**cashier_headers, "Idempotency-Key": "shared-key"}
        )
        assert resp.status_code == 201

        client.post("/api/cart/items", json={"product_id": amoxicillin.id, "quantity": 3}, headers=pharmtech_headers)
        resp = client.post(
            "/api/checkout", json={"payment_method": "card"}, headers={**pharmtech_headers, "Idempotency-Key": "shared-key"}
        )
        assert resp.status_code == 409
        assert resp.get_json()["code"] == "CONFLICT"
        assert len(client.get("/api/cart", headers=pharmtech_headers).get_json()["lines"]) == 1
