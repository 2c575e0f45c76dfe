# Overview: Service-layer operations for checkout; turns a cart into a persisted sale.

"""
Checkout workflow.

WHY: A sale, its lines and the stock decrements either all happen or none
do. The three writes share one database transaction (BEGIN IMMEDIATE on
SQLite), so a failed stock step can never leave an orphaned sale behind.

States:
    IDLE -> VALIDATING -> SALE_PERSISTING -> ITEMS_PERSISTING
         -> STOCK_APPLYING -> COMPLETED
    FAILED(reason) is reachable from any non-terminal state.

VALIDATING performs no database write. Cancellation is honoured only
there; once the sale row is being written the attempt runs to completion
or rolls back as a whole.

IDEMPOTENCY: every sale carries a unique idempotency key (client supplied
or generated). Replaying a key returns the existing receipt and writes
nothing. A replay is honoured only for the staff member who made the sale
and, when the cart still holds lines, only if they match the recorded
sale; anything else is a ConflictError.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..cart import Cart, CartLine, compute_tax_cents, parse_tax_rate
from ..extensions import db
from ..models import ReceiptSequence, Sale, SaleLine, User
from ..models.sales import PAYMENT_METHODS
from ..errors import (
    CheckoutCancelledError,
    ConflictError,
    InsufficientStockError,
    NotFoundError,
    PersistenceError,
    PosError,
    ValidationError,
)
from ..validation import parse_cents
from . import catalog_service
from .concurrency import begin_immediate, run_with_retry
from .permission_service import require_permission
from pharmapos.time_utils import to_utc_z, utcnow


PAYMENT_METHOD_ALIASES = {"mpesa": "mobile_money", "m-pesa": "mobile_money"}

# Methods whose external transaction reference must be captured
REFERENCE_REQUIRED = {"mobile_money"}


class CheckoutState(str, Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    SALE_PERSISTING = "SALE_PERSISTING"
    ITEMS_PERSISTING = "ITEMS_PERSISTING"
    STOCK_APPLYING = "STOCK_APPLYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


_TRANSITIONS = {
    CheckoutState.IDLE: {CheckoutState.VALIDATING},
    CheckoutState.VALIDATING: {CheckoutState.SALE_PERSISTING, CheckoutState.COMPLETED},
    CheckoutState.SALE_PERSISTING: {CheckoutState.ITEMS_PERSISTING, CheckoutState.COMPLETED},
    CheckoutState.ITEMS_PERSISTING: {CheckoutState.STOCK_APPLYING},
    CheckoutState.STOCK_APPLYING: {CheckoutState.COMPLETED},
}

TERMINAL_STATES = {CheckoutState.COMPLETED, CheckoutState.FAILED}


class CheckoutAttempt:
    """
    Records the path one checkout takes through the state machine.

    A lock-contention retry re-enters SALE_PERSISTING from whichever
    persisting state the rolled-back attempt had reached.
    """

    def __init__(self, idempotency_key: str | None = None):
        self.idempotency_key = idempotency_key
        self.state = CheckoutState.IDLE
        self.history: list[CheckoutState] = [CheckoutState.IDLE]
        self.failure_reason: str | None = None
        self.receipt_number: str | None = None
        self.retries = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def advance(self, new_state: CheckoutState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal checkout transition {self.state.value} -> {new_state.value}")
        self._enter(new_state)

    def restart(self) -> None:
        """Back to SALE_PERSISTING after the transaction was rolled back for a retry."""
        if self.state not in (
            CheckoutState.SALE_PERSISTING,
            CheckoutState.ITEMS_PERSISTING,
            CheckoutState.STOCK_APPLYING,
        ):
            raise RuntimeError(f"Cannot retry checkout from {self.state.value}")
        self.retries += 1
        self._enter(CheckoutState.SALE_PERSISTING)

    def fail(self, reason: str) -> None:
        if self.is_terminal:
            return
        self.failure_reason = reason
        self._enter(CheckoutState.FAILED)
        current_app.logger.warning(
            "Checkout failed in %s: %s (key=%s receipt=%s)",
            self.history[-2].value,
            reason,
            self.idempotency_key,
            self.receipt_number,
        )

    def _enter(self, new_state: CheckoutState) -> None:
        current_app.logger.debug(
            "Checkout %s: %s -> %s", self.idempotency_key, self.state.value, new_state.value
        )
        self.state = new_state
        self.history.append(new_state)


@dataclass
class Receipt:
    sale_id: int
    receipt_number: str
    idempotency_key: str
    lines: list[dict]
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    tax_rate: str
    payment_method: str
    payment_reference: str | None
    cash_received_cents: int | None
    change_cents: int | None
    staff_id: int
    staff_name: str | None
    created_at: datetime
    currency: str
    replayed: bool = field(default=False)

    @classmethod
    def from_sale(cls, sale: Sale, *, currency: str, replayed: bool = False) -> "Receipt":
        return cls(
            sale_id=sale.id,
            receipt_number=sale.receipt_number,
            idempotency_key=sale.idempotency_key,
            lines=[line.to_dict() for line in sale.lines],
            subtotal_cents=sale.subtotal_cents,
            tax_cents=sale.tax_cents,
            total_cents=sale.total_cents,
            tax_rate=sale.tax_rate,
            payment_method=sale.payment_method,
            payment_reference=sale.payment_reference,
            cash_received_cents=sale.cash_received_cents,
            change_cents=sale.change_cents,
            staff_id=sale.staff_id,
            staff_name=sale.staff.full_name if sale.staff else None,
            created_at=sale.created_at,
            currency=currency,
            replayed=replayed,
        )

    def to_dict(self) -> dict:
        return {
            "sale_id": self.sale_id,
            "receipt_number": self.receipt_number,
            "idempotency_key": self.idempotency_key,
            "lines": self.lines,
            "subtotal_cents": self.subtotal_cents,
            "tax_cents": self.tax_cents,
            "total_cents": self.total_cents,
            "tax_rate": self.tax_rate,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "cash_received_cents": self.cash_received_cents,
            "change_cents": self.change_cents,
            "staff_id": self.staff_id,
            "staff_name": self.staff_name,
            "created_at": to_utc_z(self.created_at),
            "currency": self.currency,
            "replayed": self.replayed,
        }


@dataclass(frozen=True)
class _Payment:
    method: str
    reference: str | None
    cash_received_cents: int | None
    change_cents: int | None


def normalize_payment_method(value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("payment_method is required")
    method = value.strip().lower()
    method = PAYMENT_METHOD_ALIASES.get(method, method)
    if method not in PAYMENT_METHODS:
        raise ValidationError(
            f"payment_method must be one of: {', '.join(PAYMENT_METHODS)}",
            details={"payment_method": value},
        )
    return method


def _validate_payment(method, reference, cash_received_cents, total_cents: int) -> _Payment:
    method = normalize_payment_method(method)

    if reference is not None and not isinstance(reference, str):
        raise ValidationError("payment_reference must be a string")
    reference = (reference or "").strip() or None
    if reference and len(reference) > 128:
        raise ValidationError("payment_reference exceeds max length 128")

    if method in REFERENCE_REQUIRED and not reference:
        raise ValidationError(f"payment_reference is required for {method} payments")

    if method != "cash":
        return _Payment(method, reference, None, None)

    if cash_received_cents is None:
        raise ValidationError("cash_received_cents is required for cash payments")
    received = parse_cents(cash_received_cents, key="cash_received_cents")
    if received < total_cents:
        raise ValidationError(
            "Cash received is less than the total",
            details={"cash_received_cents": received, "total_cents": total_cents},
        )
    return _Payment(method, reference, received, received - total_cents)


def next_receipt_number(prefix: str | None = None, pad: int = 6) -> str:
    """
    Allocate the next receipt number inside the caller's transaction.

    The counter row is bumped with a single UPDATE, so it is locked until
    the checkout commits or rolls back.
    """
    if prefix is None:
        prefix = current_app.config.get("RECEIPT_PREFIX", "RCP")

    stmt = (
        update(ReceiptSequence)
        .where(ReceiptSequence.name == prefix)
        .values(next_number=ReceiptSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        try:
            with db.session.begin_nested():
                db.session.add(ReceiptSequence(name=prefix, next_number=1))
        except IntegrityError:
            # Another transaction created the row first
            pass
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise PersistenceError("Could not allocate a receipt number")

    current = (
        db.session.query(ReceiptSequence.next_number)
        .filter(ReceiptSequence.name == prefix)
        .scalar()
    )
    return f"{prefix}-{current - 1:0{pad}d}"


def _find_by_key(idempotency_key: str) -> Sale | None:
    return db.session.query(Sale).filter(Sale.idempotency_key == idempotency_key).first()


def _line_signature(lines) -> list[tuple]:
    return sorted((line.product_id, line.quantity, line.unit_price_cents) for line in lines)


def _check_replay(existing: Sale, actor: User, lines: list[CartLine]) -> None:
    """
    Refuse to replay a sale that does not belong to this checkout.

    An empty cart is a client retry after the first response was lost;
    a non-empty cart must hold exactly the lines that were sold.
    """
    details = {"idempotency_key": existing.idempotency_key, "receipt_number": existing.receipt_number}
    if existing.staff_id != actor.id:
        raise ConflictError("Idempotency key was used by another staff member", details=details)
    if not lines:
        return
    subtotal = sum(line.line_total_cents for line in lines)
    if subtotal != existing.subtotal_cents or _line_signature(lines) != _line_signature(existing.lines):
        raise ConflictError("Idempotency key was used for a different sale", details=details)


def _persist(
    attempt: CheckoutAttempt,
    lines: list[CartLine],
    *,
    actor: User,
    payment: _Payment,
    subtotal_cents: int,
    tax_cents: int,
    tax_rate: str,
    idempotency_key: str,
) -> tuple[Sale, bool]:
    """Steps 1-3 as one transaction. Returns (sale, replayed)."""
    if attempt.state == CheckoutState.VALIDATING:
        attempt.advance(CheckoutState.SALE_PERSISTING)
    else:
        attempt.restart()

    try:
        begin_immediate()

        existing = _find_by_key(idempotency_key)
        if existing:
            _check_replay(existing, actor, lines)
            db.session.rollback()
            return existing, True

        # Step 1: the sale row
        receipt_number = next_receipt_number()
        attempt.receipt_number = receipt_number
        sale = Sale(
            receipt_number=receipt_number,
            idempotency_key=idempotency_key,
            subtotal_cents=subtotal_cents,
            tax_cents=tax_cents,
            total_cents=subtotal_cents + tax_cents,
            tax_rate=tax_rate,
            payment_method=payment.method,
            payment_reference=payment.reference,
            cash_received_cents=payment.cash_received_cents,
            change_cents=payment.change_cents,
            staff_id=actor.id,
            created_at=utcnow(),
        )
        db.session.add(sale)
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            replay = _find_by_key(idempotency_key)
            if replay:
                _check_replay(replay, actor, lines)
                return replay, True
            raise PersistenceError(
                "Sale could not be recorded",
                details={"step": "sale", "reason": str(exc.orig)},
            ) from exc

        # Step 2: line items, one batch
        attempt.advance(CheckoutState.ITEMS_PERSISTING)
        for line in lines:
            db.session.add(SaleLine(
                sale_id=sale.id,
                product_id=line.product_id,
                product_name=line.product_name,
                quantity=line.quantity,
                unit_price_cents=line.unit_price_cents,
                line_total_cents=line.line_total_cents,
            ))
        try:
            db.session.flush()
        except IntegrityError as exc:
            raise PersistenceError(
                "Sale lines could not be recorded",
                details={"step": "lines", "reason": str(exc.orig)},
            ) from exc

        # Step 3: conditional decrements; report every short line at once
        attempt.advance(CheckoutState.STOCK_APPLYING)
        short: list[dict] = []
        for line in lines:
            try:
                catalog_service.decrement_stock(line.product_id, line.quantity)
            except InsufficientStockError as exc:
                short.extend(exc.items)
        if short:
            names = ", ".join(item["product_name"] for item in short)
            raise InsufficientStockError(f"Insufficient stock for {names}", items=short)

        db.session.commit()
        return sale, False
    except Exception:
        db.session.rollback()
        raise


def checkout(
    cart: Cart,
    *,
    actor: User,
    payment_method: str,
    payment_reference: str | None = None,
    cash_received_cents: int | None = None,
    idempotency_key: str | None = None,
    tax_rate=None,
    cancel_event: threading.Event | None = None,
) -> Receipt:
    """
    Convert the cart into a persisted sale and return its receipt.

    On success the cart is cleared. On any failure the cart is left as it
    was and nothing is written.

    Raises:
        AuthorizationError: actor inactive or not allowed to CHECKOUT
        ValidationError: empty cart, bad payment data
        CheckoutInProgressError: another checkout holds this cart
        CheckoutCancelledError: cancel_event set before the first write
        ConflictError: idempotency key belongs to another staff member or another sale
        InsufficientStockError: a conditional decrement found too few units
        PersistenceError: the store rejected a write or was unreachable
    """
    if idempotency_key is not None:
        if not isinstance(idempotency_key, str) or not idempotency_key.strip():
            raise ValidationError("idempotency_key must be a non-empty string")
        idempotency_key = idempotency_key.strip()
        if len(idempotency_key) > 128:
            raise ValidationError("idempotency_key exceeds max length 128")

    currency = current_app.config.get("CURRENCY", "KES")
    attempt = CheckoutAttempt(idempotency_key)

    with cart.checkout_guard():
        try:
            attempt.advance(CheckoutState.VALIDATING)

            require_permission(actor, "CHECKOUT", resource="checkout")

            if idempotency_key is not None:
                existing = _find_by_key(idempotency_key)
                if existing:
                    _check_replay(existing, actor, cart.lines)
                    attempt.receipt_number = existing.receipt_number
                    attempt.advance(CheckoutState.COMPLETED)
                    current_app.logger.info(
                        "Checkout replay for key %s returned %s", idempotency_key, existing.receipt_number
                    )
                    cart.clear()
                    return Receipt.from_sale(existing, currency=currency, replayed=True)

            if cart.is_empty():
                raise ValidationError("Cart is empty")

            rate = parse_tax_rate(tax_rate if tax_rate is not None else current_app.config.get("TAX_RATE", "0"))
            lines = [replace(line) for line in cart.lines]
            subtotal = sum(line.line_total_cents for line in lines)
            tax = compute_tax_cents(subtotal, rate)

            payment = _validate_payment(payment_method, payment_reference, cash_received_cents, subtotal + tax)

            if cancel_event is not None and cancel_event.is_set():
                raise CheckoutCancelledError("Checkout cancelled")

            key = idempotency_key or uuid.uuid4().hex
            attempt.idempotency_key = key

            sale, replayed = run_with_retry(
                lambda: _persist(
                    attempt,
                    lines,
                    actor=actor,
                    payment=payment,
                    subtotal_cents=subtotal,
                    tax_cents=tax,
                    tax_rate=str(rate),
                    idempotency_key=key,
                ),
                attempts=current_app.config.get("STOCK_RETRY_ATTEMPTS", 3),
            )
        except PosError as exc:
            attempt.fail(f"{type(exc).__name__}: {exc.message}")
            raise
        except SQLAlchemyError as exc:
            db.session.rollback()
            attempt.fail(type(exc).__name__)
            raise PersistenceError(
                "Database unavailable, sale not recorded",
                details={"reason": type(exc).__name__},
            ) from exc
        except Exception as exc:
            attempt.fail(type(exc).__name__)
            raise

        attempt.receipt_number = sale.receipt_number
        attempt.advance(CheckoutState.COMPLETED)
        cart.clear()

    current_app.logger.info(
        "Checkout %s: %s total=%d %s by user %s",
        "replayed" if replayed else "completed",
        sale.receipt_number,
        sale.total_cents,
        sale.payment_method,
        sale.staff_id,
    )
    return Receipt.from_sale(sale, currency=currency, replayed=replayed)


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if not sale:
        raise NotFoundError("Sale not found", details={"sale_id": sale_id})
    return sale


def get_sale_by_receipt(receipt_number: str) -> Sale:
    sale = db.session.query(Sale).filter(Sale.receipt_number == receipt_number).first()
    if not sale:
        raise NotFoundError("Sale not found", details={"receipt_number": receipt_number})
    return sale


def get_receipt(sale_id: int) -> Receipt:
    return Receipt.from_sale(get_sale(sale_id), currency=current_app.config.get("CURRENCY", "KES"))


def list_sales(
    start: datetime | None = None,
    end: datetime | None = None,
    staff_id: int | None = None,
    limit: int = 100,
) -> list[Sale]:
    """Most recent first. `start`/`end` are UTC-naive bounds, end exclusive."""
    query = db.session.query(Sale)
    if start is not None:
        query = query.filter(Sale.created_at >= start)
    if end is not None:
        query = query.filter(Sale.created_at < end)
    if staff_id is not None:
        query = query.filter(Sale.staff_id == staff_id)
    return query.order_by(Sale.created_at.desc(), Sale.id.desc()).limit(limit).all()
