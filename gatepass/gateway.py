from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple, TypedDict
from urllib.parse import quote
import base64
import hashlib
import hmac
import json
import logging
import os
import uuid

import httpx

from .errors import GatewayError, InvalidInput
from .helpers import now_ts, parse_ts, to_iso

logger = logging.getLogger(__name__)

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class InitResult(TypedDict):
    authorization_url: str
    access_code: str
    reference: str


class Verification(TypedDict):
    # "success" is the only status that proves payment
    status: str
    reference: str
    transaction_id: str
    amount_minor: int
    currency: str
    paid_on: Optional[float]
    metadata: Dict[str, Any]
    raw: Dict[str, Any]


def is_settled(v: Optional[Verification]) -> bool:
    if not v:
        return False
    return str(v.get("status") or "").strip().lower() == "success"


def _metadata(value: Any) -> Dict[str, Any]:
    # gateways echo metadata back either as an object or as a JSON string
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _verification(data: Dict[str, Any]) -> Verification:
    return {
        "status": str(data.get("status") or ""),
        "reference": str(data.get("reference") or ""),
        "transaction_id": str(data.get("id") or ""),
        "amount_minor": int(data.get("amount") or 0),
        "currency": str(data.get("currency") or ""),
        "paid_on": parse_ts(data.get("paid_at") or data.get("paidAt")
                            or data.get("created_at")),
        "metadata": _metadata(data.get("metadata")),
        "raw": data,
    }


class PaymentAdapter(ABC):
    @abstractmethod
    async def initialize_transaction(
        self, *, email: str, amount_minor: int, reference: str,
        callback_url: str, metadata: Optional[Dict[str, Any]] = None,
    ) -> InitResult: ...

    @abstractmethod
    async def verify_transaction(self, reference: str) -> Verification: ...

    # raises InvalidInput on a bad signature or body
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # ("success" | "failed" | <other event name>, data)
    def parse_event(self, event: dict) -> Tuple[str, Dict[str, Any]]:
        name = str(event.get("event") or "")
        data = event.get("data") or {}
        if name == "charge.success":
            return "success", data
        return name.split(".")[-1] or "unknown", data


# ----------------------------
# Paystack implementation
# ----------------------------
class PaystackGateway(PaymentAdapter):
    def __init__(self, secret_key: str, http: httpx.AsyncClient,
                 base_url: str = "https://api.paystack.co",
                 currency: str = "NGN") -> None:
        if not secret_key:
            raise RuntimeError("PaystackGateway requires PAYSTACK_SECRET_KEY")
        self.secret_key = secret_key
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.currency = currency

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    async def _call(self, method: str, path: str,
                    body: Optional[dict] = None) -> Tuple[int, dict]:
        try:
            r = await self.http.request(
                method, f"{self.base_url}{path}",
                headers=self._headers(), json=body,
            )
        except httpx.HTTPError as e:
            raise GatewayError(f"gateway unreachable: {e}") from e
        if r.status_code >= 500:
            raise GatewayError(f"gateway error {r.status_code}")
        try:
            data = r.json()
        except ValueError as e:
            raise GatewayError("gateway returned non-JSON") from e
        return r.status_code, data if isinstance(data, dict) else {}

    async def initialize_transaction(
        self, *, email: str, amount_minor: int, reference: str,
        callback_url: str, metadata: Optional[Dict[str, Any]] = None,
    ) -> InitResult:
        code, data = await self._call("POST", "/transaction/initialize", {
            "email": email,
            "amount": int(amount_minor),
            "currency": self.currency,
            "reference": reference,
            "callback_url": callback_url,
            "metadata": metadata or {},
        })
        if code >= 400 or not data.get("status"):
            raise GatewayError(
                data.get("message") or "Paystack initialize failed"
            )
        d = data.get("data") or {}
        return {
            "authorization_url": d.get("authorization_url", ""),
            "access_code": d.get("access_code", ""),
            "reference": d.get("reference") or reference,
        }

    async def verify_transaction(self, reference: str) -> Verification:
        code, data = await self._call(
            "GET", f"/transaction/verify/{quote(reference, safe='')}"
        )
        if code >= 400 or not data.get("status"):
            # unknown reference etc: not proven paid, nothing to retry
            logger.info("verify %s rejected: %s", reference,
                        data.get("message"))
            return _verification({"reference": reference})
        return _verification(data.get("data") or {})

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-paystack-signature")
        expected = hmac.new(
            self.secret_key.encode(), payload, hashlib.sha512
        ).hexdigest()
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidInput("Invalid signature")
        try:
            return json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidInput("Invalid JSON")


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    In-process stand-in for the gateway (dev + tests). Sessions live in
    memory, so verification only works within the process that initialized
    the transaction.
    """

    def __init__(self, secret: str = MOCK_SECRET,
                 currency: str = "NGN") -> None:
        self.secret = secret
        self.currency = currency
        self._sessions: Dict[str, Dict[str, Any]] = {}

    async def initialize_transaction(
        self, *, email: str, amount_minor: int, reference: str,
        callback_url: str, metadata: Optional[Dict[str, Any]] = None,
    ) -> InitResult:
        self._sessions[reference] = {
            "id": uuid.uuid4().int >> 96,
            "reference": reference,
            "status": "pending",
            "amount": int(amount_minor),
            "currency": self.currency,
            "customer": {"email": email},
            "metadata": metadata or {},
            "callback_url": callback_url,
            "created_at": to_iso(now_ts()),
            "paid_at": None,
        }
        return {
            "authorization_url": f"/mockpay/{reference}",
            "access_code": uuid.uuid4().hex,
            "reference": reference,
        }

    def session(self, reference: str) -> Optional[Dict[str, Any]]:
        return self._sessions.get(reference)

    def settle(self, reference: str, kind: str = "succeeded") -> dict:
        """mark the session paid/failed and return the webhook event"""
        ps = self._sessions.get(reference)
        if ps is None:
            raise KeyError(reference)
        if kind == "succeeded":
            ps["status"] = "success"
            ps["paid_at"] = to_iso(now_ts())
            name = "charge.success"
        else:
            ps["status"] = "failed" if kind == "failed" else "abandoned"
            name = f"charge.{ps['status']}"
        return {"event": name, "data": dict(ps)}

    async def verify_transaction(self, reference: str) -> Verification:
        ps = self._sessions.get(reference)
        if ps is None:
            return _verification({"reference": reference})
        return _verification(dict(ps))

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise InvalidInput("Invalid signature")
        try:
            return json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidInput("Invalid JSON")
