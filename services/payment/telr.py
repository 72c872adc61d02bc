"""
services/payment/telr.py
Thin async client for the Telr hosted payment page (order.json)
and the Telr remote API used for Apple Pay (remote.json).

Every call is bounded by TELR_TIMEOUT_SECONDS. A timeout surfaces as
PaymentGatewayTimeout so callers can leave the transaction pending;
any other failure is a PaymentGatewayError. Only the read-only order
check is retried.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import settings
from shared.exceptions import PaymentGatewayError, PaymentGatewayTimeout

logger = logging.getLogger(__name__)

# order.status.code values returned by method=check
ORDER_PENDING = 1
ORDER_AUTHORISED = 2
ORDER_PAID = 3
ORDER_EXPIRED = -1
ORDER_CANCELLED = -2
ORDER_DECLINED = -3

APPLEPAY_AUTHORISED = "A"


@dataclass
class TelrOrder:
    ref: str
    url: str


@dataclass
class TelrOrderStatus:
    ref: str
    code: int
    text: str
    transaction_ref: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.code in (ORDER_AUTHORISED, ORDER_PAID)

    @property
    def is_failed(self) -> bool:
        return self.code in (ORDER_EXPIRED, ORDER_CANCELLED, ORDER_DECLINED)


@dataclass
class ApplePayResult:
    status: str
    ref: Optional[str]
    message: str

    @property
    def is_authorised(self) -> bool:
        return self.status == APPLEPAY_AUTHORISED


def _amount(value: Decimal) -> str:
    return f"{Decimal(value):.2f}"


class TelrClient:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def _send(self, url: str, payload: dict) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=settings.TELR_TIMEOUT_SECONDS, transport=self._transport
        ) as client:
            return await client.post(url, json=payload, headers={"Accept": "application/json"})

    @retry(
        retry=retry_if_exception_type(httpx.NetworkError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        reraise=True,
    )
    async def _send_idempotent(self, url: str, payload: dict) -> httpx.Response:
        return await self._send(url, payload)

    async def _call(self, url: str, payload: dict, idempotent: bool = False) -> dict:
        send = self._send_idempotent if idempotent else self._send
        try:
            response = await send(url, payload)
        except httpx.TimeoutException:
            logger.warning(f"Telr call to {url} timed out")
            raise PaymentGatewayTimeout()
        except httpx.HTTPError as e:
            logger.error(f"Telr call to {url} failed: {e}")
            raise PaymentGatewayError(f"Payment gateway error: {e}")

        if response.status_code >= 400:
            raise PaymentGatewayError(f"Payment gateway returned HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError:
            raise PaymentGatewayError("Payment gateway returned an unreadable response")

        if "error" in body:
            error = body["error"] or {}
            message = error.get("message") or "Unknown gateway error"
            note = error.get("note")
            raise PaymentGatewayError(f"{message}: {note}" if note else message)
        return body

    # ── Hosted payment page ───────────────────────────────────

    async def create_order(
        self,
        cart_id: str,
        amount: Decimal,
        description: str,
        customer: Optional[dict] = None,
    ) -> TelrOrder:
        payload = {
            "method": "create",
            "store": settings.TELR_STORE_ID,
            "authkey": settings.TELR_AUTH_KEY,
            "framed": 0,
            "order": {
                "cartid": cart_id,
                "test": 1 if settings.TELR_TEST_MODE else 0,
                "amount": _amount(amount),
                "currency": settings.TELR_CURRENCY,
                "description": description,
            },
            "return": {
                "authorised": f"{settings.TELR_RETURN_AUTHORISED_URL}?cart={cart_id}",
                "declined": f"{settings.TELR_RETURN_DECLINED_URL}?cart={cart_id}",
                "cancelled": f"{settings.TELR_RETURN_CANCELLED_URL}?cart={cart_id}",
            },
        }
        if customer:
            payload["customer"] = customer

        body = await self._call(settings.TELR_ORDER_URL, payload)
        order = body.get("order") or {}
        if not order.get("ref") or not order.get("url"):
            raise PaymentGatewayError("Payment gateway did not return an order")
        logger.info(f"Telr order {order['ref']} created for cart {cart_id}")
        return TelrOrder(ref=order["ref"], url=order["url"])

    async def check_order(self, order_ref: str) -> TelrOrderStatus:
        payload = {
            "method": "check",
            "store": settings.TELR_STORE_ID,
            "authkey": settings.TELR_AUTH_KEY,
            "order": {"ref": order_ref},
        }
        body = await self._call(settings.TELR_ORDER_URL, payload, idempotent=True)
        order = body.get("order") or {}
        status = order.get("status") or {}
        try:
            code = int(status.get("code"))
        except (TypeError, ValueError):
            raise PaymentGatewayError("Payment gateway returned no order status")
        transaction = order.get("transaction") or {}
        return TelrOrderStatus(
            ref=order.get("ref", order_ref),
            code=code,
            text=status.get("text", ""),
            transaction_ref=transaction.get("ref"),
        )

    # ── Apple Pay (remote API) ────────────────────────────────

    async def process_applepay(
        self,
        cart_id: str,
        amount: Decimal,
        token: dict,
        description: str = "ApplePay transaction",
    ) -> ApplePayResult:
        payment_data = token.get("paymentData") or {}
        header = payment_data.get("header") or {}
        method = token.get("paymentMethod") or {}
        payload = {
            "tran": {
                "id": cart_id,
                "class": "ecom",
                "type": "sale",
                "description": description,
                "amount": _amount(amount),
                "test": 1 if settings.TELR_TEST_MODE else 0,
                "currency": settings.TELR_CURRENCY,
                "method": "applepay",
            },
            "applepay": {
                "token": {
                    "paymentData": {
                        "header": {
                            "transactionId": header.get("transactionId", ""),
                            "ephemeralPublicKey": header.get("ephemeralPublicKey", ""),
                            "publicKeyHash": header.get("publicKeyHash", ""),
                        },
                        "data": payment_data.get("data", ""),
                        "signature": payment_data.get("signature", ""),
                        "version": payment_data.get("version", "EC_v1"),
                    },
                    "transactionIdentifier": token.get("transactionIdentifier", ""),
                    "paymentMethod": {
                        "network": method.get("network", "Unknown"),
                        "type": method.get("type", "Unknown"),
                        "displayName": method.get("displayName", "Unknown"),
                    },
                },
            },
            "store": settings.TELR_STORE_ID,
            "authkey": settings.TELR_REMOTE_AUTH_KEY,
        }
        body = await self._call(settings.TELR_REMOTE_URL, payload)
        transaction = body.get("transaction") or {}
        return ApplePayResult(
            status=transaction.get("status", ""),
            ref=transaction.get("ref"),
            message=transaction.get("message", ""),
        )


def get_telr_client() -> TelrClient:
    """FastAPI dependency; overridden in tests."""
    return TelrClient()
