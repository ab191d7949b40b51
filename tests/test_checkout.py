"""
Unit tests for CheckoutAuthorizer, Cart and palm enrollment.
Run with:  pytest tests/
"""

from __future__ import annotations

import json
from decimal import Decimal

import httpx
import pytest

from palm_pay.checkout import (
    MSG_EMPTY_CART,
    MSG_ENTER_CODE,
    MSG_INVALID_CODE,
    MSG_NOT_VERIFIED,
    MSG_ORDER_FAILED,
    MSG_TOPUP_RANGE,
    AuthMethod,
    Cart,
    CheckoutAuthorizer,
    CheckoutRejected,
    Outcome,
    format_amount,
)
from palm_pay.enrollment import MSG_SCAN_FIRST, enroll_palm
from palm_pay.ledger import LedgerClient
from palm_pay.registry import MemoryRegistryStore, PalmRegistry
from palm_pay.session import CaptureSession, GatedPolicy


class Recorder:
    """Mock transport handler answering with a canned response."""

    def __init__(self, status: int = 200, body=None) -> None:
        self.status = status
        self.body = body if body is not None else {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)


def _authorizer(recorder: Recorder) -> CheckoutAuthorizer:
    client = httpx.Client(transport=httpx.MockTransport(recorder))
    return CheckoutAuthorizer(LedgerClient("https://ledger.test/api", client=client))


@pytest.fixture
def cart() -> Cart:
    c = Cart()
    c.add("Coffee", "25000", 2)
    c.add("Bread", 15000)
    return c


class TestCart:

    def test_totals_and_payload(self, cart):
        assert cart.total == Decimal("65000")
        assert len(cart) == 2
        assert cart.order_items() == {"Coffee": 2, "Bread": 1}
        assert cart.description() == "Store purchase of 2 items"

    def test_quantity_updates(self, cart):
        cart.add("Coffee", "25000")
        assert cart.order_items()["Coffee"] == 3
        cart.update_quantity("Bread", 0)
        assert "Bread" not in cart.order_items()

    def test_format_amount(self):
        assert format_amount(Decimal("1500")) == "₭1,500"
        assert format_amount(5) == "₭5"
        assert format_amount(Decimal("12.50")) == "₭12.5"


class TestOrderAuthorization:

    def test_approved_clears_cart(self, cart):
        rec = Recorder(201, {"order": {"id": "ord-1"}})
        auth = _authorizer(rec)
        attempt = auth.submit_order(cart, "  PALM_1_abcdefghi ")

        assert attempt.outcome is Outcome.APPROVED
        assert attempt.method is AuthMethod.MANUAL
        assert attempt.code == "PALM_1_abcdefghi"
        assert attempt.amount == Decimal("65000")
        assert attempt.confirmation.order_id == "ord-1"
        assert attempt.confirmation.items == 2
        assert attempt.confirmation.amount == Decimal("65000")
        assert cart.is_empty
        assert not auth.in_flight
        assert rec.requests[0].headers["x-palm-code"] == "PALM_1_abcdefghi"

    def test_missing_order_id(self, cart):
        attempt = _authorizer(Recorder(201, {})).submit_order(cart, "code")
        assert attempt.confirmation.order_id == "N/A"

    def test_insufficient_balance_shows_figures(self, cart):
        rec = Recorder(400, {"error": "Insufficient balance", "currentBalance": 5, "requiredAmount": 7})
        attempt = _authorizer(rec).submit_order(cart, "code")
        assert attempt.outcome is Outcome.INSUFFICIENT_BALANCE
        assert attempt.notice == "Insufficient balance. Current: ₭5, Required: ₭7"
        assert (attempt.current_balance, attempt.required_amount) == (Decimal("5"), Decimal("7"))
        assert not cart.is_empty

    @pytest.mark.parametrize("error, outcome, notice", [
        ("Invalid palm code", Outcome.INVALID_CODE, MSG_INVALID_CODE),
        ("Palm not verified", Outcome.NOT_VERIFIED, MSG_NOT_VERIFIED),
        ("Store closed", Outcome.FAILED, "Store closed"),
    ])
    def test_refusals(self, cart, error, outcome, notice):
        attempt = _authorizer(Recorder(400, {"error": error})).submit_order(cart, "code")
        assert attempt.outcome is outcome
        assert attempt.notice == notice
        assert not cart.is_empty

    def test_network_failure_is_generic(self, cart):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        auth = CheckoutAuthorizer(LedgerClient("https://ledger.test/api", client=client))
        attempt = auth.submit_order(cart, "code")
        assert attempt.outcome is Outcome.FAILED
        assert attempt.notice == MSG_ORDER_FAILED
        assert not auth.in_flight

    def test_blank_code_rejected_locally(self, cart):
        rec = Recorder()
        with pytest.raises(CheckoutRejected, match=MSG_ENTER_CODE):
            _authorizer(rec).submit_order(cart, "   ")
        assert rec.requests == []

    def test_empty_cart_rejected_locally(self):
        rec = Recorder()
        with pytest.raises(CheckoutRejected, match=MSG_EMPTY_CART):
            _authorizer(rec).submit_order(Cart(), "code")
        assert rec.requests == []

    def test_resubmission_blocked_while_in_flight(self, cart):
        auth = _authorizer(Recorder())
        auth.in_flight = True
        with pytest.raises(CheckoutRejected):
            auth.submit_order(cart, "code")


class TestTopupAuthorization:

    def test_amount_above_bound_rejected_before_network(self):
        rec = Recorder()
        with pytest.raises(CheckoutRejected, match=MSG_TOPUP_RANGE):
            _authorizer(rec).submit_topup(1500, "code")
        assert rec.requests == []

    @pytest.mark.parametrize(
        "amount", [0, "0.5", -3, "abc", "nan", "sNaN", float("nan"), "inf", float("-inf")],
    )
    def test_amount_below_bound_or_garbage(self, amount):
        with pytest.raises(CheckoutRejected):
            _authorizer(Recorder()).submit_topup(amount, "code")

    @pytest.mark.parametrize("amount", [1, "1000"])
    def test_bounds_inclusive(self, amount):
        rec = Recorder(200, {"user": {"id": "u1", "amount": "1000"}})
        attempt = _authorizer(rec).submit_topup(amount, "code")
        assert attempt.outcome is Outcome.APPROVED
        assert json.loads(rec.requests[0].content)["amount"] == int(amount)
        assert rec.requests[0].headers["x-palm-code"] == "code"

    def test_payment_url_relayed(self):
        rec = Recorder(200, {"user": {"id": "u1"}, "payment": {"paymentUrl": "https://pay.test/x"}})
        attempt = _authorizer(rec).submit_topup("100", "code")
        assert attempt.payment_url == "https://pay.test/x"

    def test_failure_falls_back_to_generic(self):
        attempt = _authorizer(Recorder(500, {})).submit_topup(100, "code")
        assert attempt.outcome is Outcome.FAILED
        assert attempt.notice == "Top-up failed"


class TestScanCheckout:

    def test_scanned_code_is_submitted(self, cart, make_device, clock):
        rec = Recorder(201, {"order": {"id": "ord-9"}})
        auth = _authorizer(rec)
        session = CaptureSession(
            make_device(), GatedPolicy(registry=PalmRegistry(MemoryRegistryStore())), clock=clock,
        )
        auth.scan_for_order(session, cart)
        for _ in range(8):
            session.tick()
        assert session.capture().accepted
        assert rec.requests == []

        clock.advance(2.0)
        session.tick()

        attempt = auth.last_attempt
        assert attempt.method is AuthMethod.SCAN
        assert attempt.outcome is Outcome.APPROVED
        assert attempt.code == session.result
        assert rec.requests[0].headers["x-palm-code"] == session.result
        assert cart.is_empty
        assert session.stopped

    def test_scan_with_empty_cart_never_opens_camera(self, make_device, capture_factory):
        auth = _authorizer(Recorder())
        session = CaptureSession(make_device())
        with pytest.raises(CheckoutRejected):
            auth.scan_for_order(session, Cart())
        assert capture_factory.created == []

    @pytest.mark.parametrize("amount", [5000, "nan", "inf"])
    def test_scan_topup_out_of_range_never_opens_camera(self, amount, make_device, capture_factory):
        rec = Recorder()
        auth = _authorizer(rec)
        session = CaptureSession(
            make_device(), GatedPolicy(registry=PalmRegistry(MemoryRegistryStore())),
        )
        with pytest.raises(CheckoutRejected, match="between"):
            auth.scan_for_topup(session, amount)
        assert capture_factory.created == []
        assert session.on_scan is None
        assert rec.requests == []


class TestEnrollment:

    def test_binds_code(self):
        rec = Recorder(200, {"message": "Palm verified successfully", "user": {"id": "u1"}})
        client = httpx.Client(transport=httpx.MockTransport(rec))
        result = enroll_palm(LedgerClient("https://ledger.test/api", client=client), "PALM_1_abcdefghi")
        assert result.ok
        assert result.message == "Palm verified successfully"
        assert json.loads(rec.requests[0].content) == {"plam_code": "PALM_1_abcdefghi"}

    def test_blank_code(self):
        result = enroll_palm(LedgerClient("https://ledger.test/api", client=httpx.Client()), "")
        assert not result.ok
        assert result.message == MSG_SCAN_FIRST

    def test_server_error_text(self):
        rec = Recorder(400, {"error": "Palm code already in use"})
        client = httpx.Client(transport=httpx.MockTransport(rec))
        result = enroll_palm(LedgerClient("https://ledger.test/api", client=client), "PALM_1_x")
        assert not result.ok
        assert result.message == "Palm code already in use"
