import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from shared.utils import settings
from storefront.errors import PaymentSetupError
from storefront.models import OrderSource

logger = logging.getLogger(__name__)

SUBJECT_KEY = "subject"


def _unwrap(data: Any) -> Any:
    # Marketplace services wrap payloads in {"success": ..., "data": ...}
    if isinstance(data, dict) and "success" in data and "data" in data:
        return data["data"]
    return data


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        data = response.json()
    except ValueError:
        return default
    if isinstance(data, dict):
        return data.get("message") or data.get("detail") or data.get("error") or default
    return default


# --- Primary API ---
class PrimaryApiClient:
    def __init__(
        self,
        base_url: str = settings.PRIMARY_API_URL,
        authorization: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.authorization = authorization
        self.transport = transport
        self.request_id: Optional[str] = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, transport=self.transport)

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.authorization:
            headers["Authorization"] = self.authorization
        if self.request_id:
            headers["X-Request-ID"] = self.request_id
        return headers

    async def list_orders(self, subject_id: str) -> List[dict]:
        async with self._client() as client:
            response = await client.get("/orders", params={"subject": subject_id}, headers=self._headers())
            response.raise_for_status()
            orders = _unwrap(response.json())
        return orders if isinstance(orders, list) else []

    async def create_order(self, payload: dict) -> dict:
        async with self._client() as client:
            response = await client.post("/orders", json=payload, headers=self._headers())
            response.raise_for_status()
            created = _unwrap(response.json())
        return created if isinstance(created, dict) else {}

    async def create_payment_intent(self, amount_cents: int, currency: str, metadata: dict) -> httpx.Response:
        async with self._client() as client:
            return await client.post(
                "/payment-intent",
                json={"amount": amount_cents, "currency": currency, "orderData": metadata},
                headers=self._headers(),
            )

    async def confirm_payment_intent(self, client_secret: str, payment_details: dict) -> httpx.Response:
        async with self._client() as client:
            return await client.post(
                "/payment-intent/confirm",
                json={"clientSecret": client_secret, "paymentDetails": payment_details},
                headers=self._headers(),
            )

    async def ping(self) -> bool:
        async with self._client() as client:
            try:
                response = await client.get("/health", timeout=2.0)
                return response.status_code == 200
            except httpx.RequestError:
                return False


class PrimaryApiOrders:
    """Order history as recorded by the primary API."""

    tag = OrderSource.PRIMARY_API

    def __init__(self, api: PrimaryApiClient):
        self.api = api

    async def fetch(self, subject_id: str) -> List[dict]:
        return await self.api.list_orders(subject_id)


# --- Charge Authorization ---
class ChargeAuthorization(BaseModel):
    client_secret: str
    amount: Decimal


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class HttpChargeAuthorizer:
    def __init__(self, api: PrimaryApiClient, currency: str = settings.CURRENCY):
        self.api = api
        self.currency = currency

    async def create_authorization(self, amount: Decimal, metadata: dict) -> ChargeAuthorization:
        if amount is None or Decimal(amount) <= 0:
            raise PaymentSetupError("Valid amount is required")
        try:
            response = await self.api.create_payment_intent(to_cents(amount), self.currency, metadata)
        except httpx.RequestError:
            raise PaymentSetupError("Payment service unavailable")

        if response.is_error:
            raise PaymentSetupError(_error_message(response, "Unable to process payment. Please try again."))
        try:
            data = _unwrap(response.json())
        except ValueError:
            raise PaymentSetupError("Invalid response from payment service")

        client_secret = data.get("clientSecret") if isinstance(data, dict) else None
        if not client_secret:
            raise PaymentSetupError("Payment service did not return a client secret")
        return ChargeAuthorization(client_secret=client_secret, amount=amount)

    async def confirm_payment(self, client_secret: str, payment_details: dict) -> None:
        try:
            response = await self.api.confirm_payment_intent(client_secret, payment_details or {})
        except httpx.RequestError:
            raise PaymentSetupError("Payment service unavailable")

        if response.is_error:
            raise PaymentSetupError(_error_message(response, "Payment was not confirmed. Please try again."))
        try:
            data = _unwrap(response.json())
        except ValueError:
            data = {}
        status = data.get("status", "succeeded") if isinstance(data, dict) else "succeeded"
        if status != "succeeded":
            raise PaymentSetupError(f"Payment {status}")


# --- Identity ---
class CachedIdentity:
    """Signed-in subject remembered through a device-local marker."""

    def __init__(self, cache, key: str = SUBJECT_KEY):
        self.cache = cache
        self.key = key

    def current_subject_id(self) -> Optional[str]:
        return self.cache.get(self.key) or None

    def sign_in(self, subject_id: str) -> None:
        self.cache.set(self.key, subject_id)

    def sign_out(self) -> None:
        self.cache.remove(self.key)
