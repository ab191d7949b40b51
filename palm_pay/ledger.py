"""
Client for the remote ledger service (auth, balance, top-up, orders).

Responses to the two payment calls, ``POST /orders`` and
``POST /users/topup``, come back as tagged results: one success type per
endpoint plus one type per failure the service names.  Only transport
problems raise (:class:`NetworkFailure`).  Nothing here retries; a new
attempt is always a new user action.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.ceit-iot-lab.site/api"
PALM_CODE_HEADER = "x-palm-code"

ENV_API_URL = "PALM_PAY_API_URL"
ENV_TOKEN = "PALM_PAY_TOKEN"

ERR_INSUFFICIENT_BALANCE = "Insufficient balance"
ERR_INVALID_PALM_CODE = "Invalid palm code"
ERR_PALM_NOT_VERIFIED = "Palm not verified"


class LedgerError(RuntimeError):
    """Base error for the ledger client."""


class NetworkFailure(LedgerError):
    """The request never produced an HTTP response."""


class LedgerApiError(LedgerError):
    """The service answered with an error or an unexpected payload."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("id", "user_id", mode="before", check_fields=False)
    @classmethod
    def _ids_as_text(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class User(_Payload):
    id: str
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    plam_code: Optional[str] = None
    amount: Decimal = Decimal("0")
    vertify_plam: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AuthResponse(_Payload):
    user: User
    token: str


class Order(_Payload):
    id: str
    user_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    payment_method: Optional[str] = None
    payment_status: Optional[str] = None
    transaction_id: Optional[str] = None
    items: Any = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class TransactionList(_Payload):
    message: str = ""
    total: int = 0
    transactions: List[Order] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Tagged results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OrderPlaced:
    order: Optional[Order]


@dataclass(frozen=True)
class TopupAccepted:
    user: Optional[User]
    payment_url: Optional[str] = None


@dataclass(frozen=True)
class PalmBound:
    message: str
    user: Optional[User]


@dataclass(frozen=True)
class InsufficientBalance:
    current_balance: Decimal
    required_amount: Decimal


@dataclass(frozen=True)
class InvalidPalmCode:
    message: str = ERR_INVALID_PALM_CODE


@dataclass(frozen=True)
class PalmNotVerified:
    message: str = ERR_PALM_NOT_VERIFIED


@dataclass(frozen=True)
class Rejected:
    """Any other refusal; ``message`` is the service's text when it sent one."""
    message: Optional[str] = None
    status_code: Optional[int] = None


Refusal = Union[InsufficientBalance, InvalidPalmCode, PalmNotVerified, Rejected]
OrderResult = Union[OrderPlaced, Refusal]
TopupResult = Union[TopupAccepted, Refusal]
PalmBindResult = Union[PalmBound, Refusal]


def _as_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (ArithmeticError, ValueError):
        return Decimal("0")


def _json_number(amount: Union[Decimal, int, float]) -> Union[int, float]:
    d = Decimal(str(amount))
    return int(d) if d == d.to_integral_value() else float(d)


def refusal_from_payload(payload: Any, status_code: Optional[int] = None) -> Refusal:
    """Classify an error body by its ``error`` field."""
    if not isinstance(payload, dict):
        return Rejected(status_code=status_code)
    error = payload.get("error")
    if error == ERR_INSUFFICIENT_BALANCE:
        return InsufficientBalance(
            current_balance=_as_decimal(payload.get("currentBalance")),
            required_amount=_as_decimal(payload.get("requiredAmount")),
        )
    if error == ERR_INVALID_PALM_CODE:
        return InvalidPalmCode()
    if error == ERR_PALM_NOT_VERIFIED:
        return PalmNotVerified()
    return Rejected(message=error if isinstance(error, str) and error else None,
                    status_code=status_code)


class LedgerClient:
    """
    Thin JSON client for the ledger service.

    Parameters
    ----------
    base_url:
        Service root, e.g. ``https://host/api``.
    token:
        Bearer token; set automatically by :meth:`login` / :meth:`register`.
    timeout:
        Per-request timeout in seconds.
    client:
        Optional preconfigured ``httpx.Client`` (tests inject a mock transport).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        token: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_env(cls, base_url: Optional[str] = None) -> "LedgerClient":
        return cls(
            base_url or os.environ.get(ENV_API_URL, DEFAULT_BASE_URL),
            token=os.environ.get(ENV_TOKEN) or None,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "LedgerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- Auth ---------------
    def login(self, phone: str, password: str) -> AuthResponse:
        auth = self._model(AuthResponse, self._expect_ok(
            self._send("POST", "/auth/login", json={"phone": phone, "password": password})
        ))
        self.token = auth.token
        return auth

    def register(
        self,
        first_name: str,
        last_name: str,
        phone: str,
        password: str,
        palm_code: Optional[str] = None,
    ) -> AuthResponse:
        body: Dict[str, Any] = {
            "first_name": first_name,
            "last_name": last_name,
            "phone": phone,
            "password": password,
        }
        if palm_code:
            body["plam_code"] = palm_code
        auth = self._model(AuthResponse, self._expect_ok(
            self._send("POST", "/auth/register", json=body)
        ))
        self.token = auth.token
        return auth

    # --------------- Profile ---------------
    def profile(self) -> User:
        return self._model(User, self._expect_ok(self._send("GET", "/users/profile")))

    def verify_palm(self, palm_code: str) -> PalmBindResult:
        """Bind or replace the palm code on the signed-in profile."""
        resp = self._send("POST", "/users/verify-palm", json={"plam_code": palm_code})
        if not resp.is_success:
            return refusal_from_payload(self._json_or_none(resp), resp.status_code)
        data = self._json_or_none(resp)
        if not isinstance(data, dict):
            data = {}
        return PalmBound(
            message=str(data.get("message", "")),
            user=self._optional_model(User, data.get("user")),
        )

    # --------------- Payments ---------------
    def topup(self, amount: Union[Decimal, int, float], palm_code: Optional[str] = None) -> TopupResult:
        headers = {PALM_CODE_HEADER: palm_code} if palm_code else None
        resp = self._send("POST", "/users/topup", json={"amount": _json_number(amount)}, headers=headers)
        if not resp.is_success:
            return refusal_from_payload(self._json_or_none(resp), resp.status_code)
        data = self._json_or_none(resp)
        if not isinstance(data, dict):
            data = {}
        payment = data.get("payment") or {}
        return TopupAccepted(
            user=self._optional_model(User, data.get("user")),
            payment_url=payment.get("paymentUrl") if isinstance(payment, dict) else None,
        )

    def create_order(
        self,
        amount: Union[Decimal, int, float],
        palm_code: str,
        *,
        description: Optional[str] = None,
        items: Optional[Dict[str, int]] = None,
    ) -> OrderResult:
        body: Dict[str, Any] = {"amount": _json_number(amount)}
        if description is not None:
            body["description"] = description
        if items is not None:
            body["items"] = items
        resp = self._send("POST", "/orders", json=body, headers={PALM_CODE_HEADER: palm_code})
        if not resp.is_success:
            return refusal_from_payload(self._json_or_none(resp), resp.status_code)
        data = self._json_or_none(resp)
        if not isinstance(data, dict):
            data = {}
        return OrderPlaced(order=self._optional_model(Order, data.get("order")))

    # --------------- History ---------------
    def order_history(self) -> TransactionList:
        return self._model(TransactionList, self._expect_ok(
            self._send("GET", "/transactions/order-history")
        ))

    def topup_history(self) -> TransactionList:
        return self._model(TransactionList, self._expect_ok(
            self._send("GET", "/transactions/topup-history")
        ))

    def payment_status(self, order_id: str) -> Dict[str, Any]:
        data = self._expect_ok(self._send("GET", f"/payment/status/{order_id}"))
        if not isinstance(data, dict):
            raise LedgerApiError("Unexpected payment status payload")
        return data

    # --------------- Internal ---------------
    def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        merged = {"Content-Type": "application/json"}
        if self.token:
            merged["Authorization"] = f"Bearer {self.token}"
        if headers:
            merged.update(headers)
        try:
            return self._client.request(method, self.base_url + path, json=json, headers=merged)
        except httpx.TransportError as exc:
            logger.error("%s %s failed: %s", method, path, exc)
            raise NetworkFailure(f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _json_or_none(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return None

    def _expect_ok(self, resp: httpx.Response) -> Any:
        data = self._json_or_none(resp)
        if resp.is_success:
            return data
        message = data.get("error") if isinstance(data, dict) else None
        raise LedgerApiError(
            message or f"HTTP {resp.status_code} from ledger service",
            status_code=resp.status_code,
        )

    @staticmethod
    def _model(model: type, data: Any):
        try:
            return model.model_validate(data)
        except ValidationError as ve:
            raise LedgerApiError(f"Failed to parse {model.__name__} payload: {ve}") from ve

    @staticmethod
    def _optional_model(model: type, data: Any):
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring malformed %s in response", model.__name__)
            return None
