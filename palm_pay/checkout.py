"""
Checkout and top-up authorization by palm code.

A palm code, either typed by the operator (manual) or produced by a
:class:`~palm_pay.session.CaptureSession` (scan), is submitted together
with the cart total or top-up amount.  Local checks run first; a request
only leaves the device once they pass.  Each submission yields one
:class:`AuthorizationAttempt` with exactly one terminal outcome and a
notice ready for display.  Nothing is retried automatically.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Dict, Iterator, List, Optional, Union

from .ledger import (
    InsufficientBalance,
    InvalidPalmCode,
    LedgerClient,
    NetworkFailure,
    OrderPlaced,
    PalmNotVerified,
    Rejected,
    TopupAccepted,
    User,
)
from .session import CaptureSession

logger = logging.getLogger(__name__)

CURRENCY_SYMBOL = "₭"
TOPUP_MIN = Decimal("1")
TOPUP_MAX = Decimal("1000")

MSG_ENTER_CODE      = "Please enter your palm code"
MSG_EMPTY_CART      = "Your cart is empty"
MSG_TOPUP_RANGE     = "Please enter a valid amount between 1 and 1000 LAK"
MSG_IN_FLIGHT       = "A payment is already being processed"
MSG_INVALID_CODE    = "Palm verification failed. Please check your palm code or try scanning again."
MSG_NOT_VERIFIED    = "Your palm is not verified in the system. Please register your palm first."
MSG_ORDER_FAILED    = "Order failed. Please try again."
MSG_TOPUP_FAILED    = "Top-up failed"
MSG_TOPUP_OK        = "Top-up successful!"


class AuthMethod(Enum):
    MANUAL = "manual"
    SCAN   = "scan"


class Outcome(Enum):
    PENDING              = "pending"
    APPROVED             = "approved"
    INSUFFICIENT_BALANCE = "insufficient-balance"
    INVALID_CODE         = "invalid-code"
    NOT_VERIFIED         = "not-verified"
    FAILED               = "failed"


class CheckoutRejected(ValueError):
    """Submission refused locally; no request was sent."""


def format_amount(amount: Union[Decimal, int, float]) -> str:
    """``1500`` → ``₭1,500``; fractional amounts keep their significant decimals."""
    d = Decimal(str(amount))
    if d == d.to_integral_value():
        text = f"{int(d):,}"
    else:
        text = f"{d:,f}".rstrip("0").rstrip(".")
    return f"{CURRENCY_SYMBOL}{text}"


def parse_amount(text: str) -> Decimal:
    try:
        return Decimal(text.strip())
    except (InvalidOperation, AttributeError, ValueError) as exc:
        raise CheckoutRejected(MSG_TOPUP_RANGE) from exc


def check_topup_amount(amount: Union[Decimal, int, float, str]) -> Decimal:
    """Top-up amount as a Decimal inside the inclusive bound; NaN and infinities are refused."""
    value = parse_amount(amount) if isinstance(amount, str) else parse_amount(str(amount))
    if not value.is_finite() or not (TOPUP_MIN <= value <= TOPUP_MAX):
        raise CheckoutRejected(MSG_TOPUP_RANGE)
    return value


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

@dataclass
class CartItem:
    name: str
    price: Decimal
    quantity: int = 1

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.quantity


class Cart:
    """Line items keyed by product name, in insertion order."""

    def __init__(self) -> None:
        self._items: Dict[str, CartItem] = {}

    def add(self, name: str, price: Union[Decimal, int, float, str], quantity: int = 1) -> None:
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        if name in self._items:
            self._items[name].quantity += quantity
        else:
            self._items[name] = CartItem(name, Decimal(str(price)), quantity)

    def update_quantity(self, name: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove(name)
        elif name in self._items:
            self._items[name].quantity = quantity

    def remove(self, name: str) -> None:
        self._items.pop(name, None)

    def clear(self) -> None:
        self._items.clear()

    @property
    def items(self) -> List[CartItem]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    @property
    def is_empty(self) -> bool:
        return not self._items

    @property
    def total(self) -> Decimal:
        return sum((item.subtotal for item in self._items.values()), Decimal("0"))

    def order_items(self) -> Dict[str, int]:
        return {item.name: item.quantity for item in self._items.values()}

    def description(self) -> str:
        return f"Store purchase of {len(self)} items"


# ---------------------------------------------------------------------------
# Attempt / outcome
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Confirmation:
    order_id: str
    amount: Decimal
    items: int
    palm_code: str


@dataclass
class AuthorizationAttempt:
    method: AuthMethod
    code: str
    amount: Decimal
    outcome: Outcome = Outcome.PENDING
    notice: str = ""
    confirmation: Optional[Confirmation] = None
    user: Optional[User] = None
    payment_url: Optional[str] = None
    current_balance: Optional[Decimal] = None
    required_amount: Optional[Decimal] = None

    @property
    def approved(self) -> bool:
        return self.outcome is Outcome.APPROVED


def _apply_refusal(attempt: AuthorizationAttempt, result, fallback: str) -> None:
    if isinstance(result, InsufficientBalance):
        attempt.outcome = Outcome.INSUFFICIENT_BALANCE
        attempt.current_balance = result.current_balance
        attempt.required_amount = result.required_amount
        attempt.notice = (
            f"Insufficient balance. Current: {format_amount(result.current_balance)}, "
            f"Required: {format_amount(result.required_amount)}"
        )
    elif isinstance(result, InvalidPalmCode):
        attempt.outcome = Outcome.INVALID_CODE
        attempt.notice = MSG_INVALID_CODE
    elif isinstance(result, PalmNotVerified):
        attempt.outcome = Outcome.NOT_VERIFIED
        attempt.notice = MSG_NOT_VERIFIED
    else:
        attempt.outcome = Outcome.FAILED
        message = result.message if isinstance(result, Rejected) else None
        attempt.notice = message or fallback


class CheckoutAuthorizer:
    """
    Turns a palm code plus an amount into an authorized order or top-up.

    Parameters
    ----------
    ledger:
        Ledger service client.
    method:
        Initially selected authorization method.
    """

    def __init__(self, ledger: LedgerClient, method: AuthMethod = AuthMethod.MANUAL) -> None:
        self.ledger = ledger
        self.method = method
        self.in_flight = False
        self.last_attempt: Optional[AuthorizationAttempt] = None
        self.last_rejection: Optional[str] = None

    def select_method(self, method: AuthMethod) -> None:
        self.method = method

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def submit_order(self, cart: Cart, code: str) -> AuthorizationAttempt:
        """Authorize *cart* with *code*; clears the cart only on approval."""
        code = self._check_code(code)
        if cart.is_empty:
            raise CheckoutRejected(MSG_EMPTY_CART)

        amount = cart.total
        attempt = AuthorizationAttempt(self.method, code, amount)
        with self._submitting():
            try:
                result = self.ledger.create_order(
                    amount, code, description=cart.description(), items=cart.order_items(),
                )
            except NetworkFailure as exc:
                logger.error("Order submission failed: %s", exc)
                result = Rejected()

        if isinstance(result, OrderPlaced):
            order_id = result.order.id if result.order is not None else "N/A"
            attempt.outcome = Outcome.APPROVED
            attempt.confirmation = Confirmation(order_id, amount, len(cart), code)
            attempt.notice = f"Order {order_id} paid: {format_amount(amount)}"
            cart.clear()
            logger.info("Order approved – id=%s amount=%s", order_id, amount)
        else:
            _apply_refusal(attempt, result, MSG_ORDER_FAILED)
            logger.warning("Order refused – outcome=%s", attempt.outcome.value)

        self.last_attempt = attempt
        return attempt

    def scan_for_order(self, session: CaptureSession, cart: Cart) -> None:
        """Open *session*; its palm code is submitted for *cart* when the scan completes."""
        if cart.is_empty:
            raise CheckoutRejected(MSG_EMPTY_CART)
        self.method = AuthMethod.SCAN
        session.on_scan = lambda code: self._submit_scanned(self.submit_order, cart, code)
        session.open()

    # ------------------------------------------------------------------
    # Top-ups
    # ------------------------------------------------------------------

    def submit_topup(self, amount: Union[Decimal, int, float, str], code: str) -> AuthorizationAttempt:
        """Top up the wallet by *amount*, presenting *code* as the credential."""
        code = self._check_code(code)
        value = check_topup_amount(amount)

        attempt = AuthorizationAttempt(self.method, code, value)
        with self._submitting():
            try:
                result = self.ledger.topup(value, palm_code=code)
            except NetworkFailure as exc:
                logger.error("Top-up submission failed: %s", exc)
                result = Rejected()

        if isinstance(result, TopupAccepted):
            attempt.outcome = Outcome.APPROVED
            attempt.user = result.user
            attempt.payment_url = result.payment_url
            attempt.notice = MSG_TOPUP_OK
            logger.info("Top-up approved – amount=%s", value)
        else:
            _apply_refusal(attempt, result, MSG_TOPUP_FAILED)
            logger.warning("Top-up refused – outcome=%s", attempt.outcome.value)

        self.last_attempt = attempt
        return attempt

    def scan_for_topup(self, session: CaptureSession, amount: Union[Decimal, int, float, str]) -> None:
        check_topup_amount(amount)
        self.method = AuthMethod.SCAN
        session.on_scan = lambda code: self._submit_scanned(self.submit_topup, amount, code)
        session.open()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _submit_scanned(self, submit, target, code: str) -> None:
        try:
            submit(target, code)
        except CheckoutRejected as exc:
            logger.warning("Scanned code not submitted: %s", exc)
            self.last_rejection = str(exc)

    def _check_code(self, code: Optional[str]) -> str:
        if self.in_flight:
            raise CheckoutRejected(MSG_IN_FLIGHT)
        code = (code or "").strip()
        if not code:
            raise CheckoutRejected(MSG_ENTER_CODE)
        return code

    @contextmanager
    def _submitting(self) -> Iterator[None]:
        self.in_flight = True
        try:
            yield
        finally:
            self.in_flight = False
