"""
Razorpay Gateway Client

Wraps the order/payment endpoints the renewal engine needs:
- POST /orders                  create an order for a renewal
- GET  /orders/{id}             authoritative order status
- GET  /orders/{id}/payments    payments made against an order
- GET  /payments/{id}           authoritative payment status
- GET  /orders?receipt=         find an order by idempotency receipt

Every call is bounded by an overall timeout. Reads are retried with
exponential backoff on transient failures. Order creation is retried
with the same receipt, and the receipt is looked up first so a create
that actually landed is returned instead of being duplicated.
"""

import asyncio
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog
import tenacity

from app.shared.core.config import get_settings
from app.shared.core.datetime_utils import utcnow
from app.shared.core.exceptions import ConfigurationError, GatewayAPIError, GatewayError, GatewayTimeout
from app.shared.core.ops_metrics import GATEWAY_LATENCY, GATEWAY_REQUESTS

logger = structlog.get_logger()

MAX_RECEIPT_LENGTH = 40
PAYMENT_CAPTURED = "captured"


class OrderStatus:
    CREATED = "created"
    ATTEMPTED = "attempted"
    PAID = "paid"


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    status: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    attempts: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "GatewayOrder":
        return cls(
            id=data["id"],
            status=data.get("status", ""),
            amount=int(data.get("amount", 0)),
            currency=data.get("currency", ""),
            receipt=data.get("receipt"),
            attempts=int(data.get("attempts", 0) or 0),
            raw=data,
        )


@dataclass(frozen=True)
class GatewayPayment:
    id: str
    status: str
    amount: int
    currency: str
    order_id: Optional[str] = None
    method: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_captured(self) -> bool:
        return self.status == PAYMENT_CAPTURED

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "GatewayPayment":
        return cls(
            id=data["id"],
            status=data.get("status", ""),
            amount=int(data.get("amount", 0)),
            currency=data.get("currency", ""),
            order_id=data.get("order_id"),
            method=data.get("method"),
            raw=data,
        )


class PaymentGateway(Protocol):
    async def create_order(
        self, amount_minor: int, currency: str, receipt: str, notes: Optional[Dict[str, str]] = None
    ) -> GatewayOrder: ...

    async def fetch_order(self, order_id: str) -> GatewayOrder: ...

    async def fetch_payment(self, payment_id: str) -> GatewayPayment: ...

    async def fetch_order_payments(self, order_id: str) -> List[GatewayPayment]: ...

    async def find_order_by_receipt(self, receipt: str) -> Optional[GatewayOrder]: ...

    async def ping(self) -> None: ...


def generate_receipt(tenant_id, now: Optional[datetime] = None) -> str:
    """
    Idempotency receipt: tenant prefix + minute timestamp + random suffix.

    rn_<12 hex of tenant>_<yymmddHHMM>_<8 hex>, within the gateway's
    40 character limit.
    """
    now = now or utcnow()
    tenant_part = str(tenant_id).replace("-", "")[:12]
    receipt = f"rn_{tenant_part}_{now.strftime('%y%m%d%H%M')}_{secrets.token_hex(4)}"
    return receipt[:MAX_RECEIPT_LENGTH]


def compute_payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    return hmac.new(
        secret.encode(),
        f"{order_id}|{payment_id}".encode(),
        hashlib.sha256,
    ).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    """HMAC-SHA256 over "order_id|payment_id", compared in constant time."""
    if not signature or not secret:
        return False
    expected = compute_payment_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected, signature)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError) and exc.retryable


def _log_retry(retry_state: tenacity.RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "razorpay_call_retrying",
        attempt=retry_state.attempt_number,
        error=str(exc) if exc else None,
    )


class RazorpayClient:
    """Async Razorpay API client."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        request_timeout: float = 8.0,
        overall_timeout: float = 20.0,
        max_attempts: int = 3,
        create_max_attempts: int = 2,
        retry_wait: Optional[tenacity.wait.wait_base] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.overall_timeout = overall_timeout
        self.max_attempts = max_attempts
        self.create_max_attempts = create_max_attempts
        self.retry_wait = retry_wait or tenacity.wait_exponential(multiplier=0.5, min=0.5, max=4)
        self._transport = transport

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """Single HTTP attempt, errors mapped to the gateway taxonomy."""
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                auth=(self.key_id, self.key_secret),
                timeout=self.request_timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, f"/{endpoint}", json=data, params=params)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            logger.warning("razorpay_request_timeout", endpoint=endpoint)
            raise GatewayTimeout(f"Razorpay {method} {endpoint} timed out") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            description = _error_description(e.response)
            logger.error("razorpay_api_error", status=status, endpoint=endpoint, error=description)
            raise GatewayAPIError(
                f"Razorpay error {status}: {description}",
                gateway_status=status,
                retryable=status >= 500 or status == 429,
            ) from e
        except httpx.TransportError as e:
            logger.error("razorpay_transport_error", endpoint=endpoint, error=str(e))
            raise GatewayAPIError(f"Razorpay unreachable: {e}", retryable=True) from e

    def _retrying(self, max_attempts: int) -> tenacity.AsyncRetrying:
        return tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception(_is_retryable),
            wait=self.retry_wait,
            stop=tenacity.stop_after_attempt(max_attempts),
            before_sleep=_log_retry,
            reraise=True,
        )

    async def _read(self, endpoint: str, params: Optional[Dict] = None) -> Dict[str, Any]:
        async for attempt in self._retrying(self.max_attempts):
            with attempt:
                return await self._request("GET", endpoint, params=params)

    async def _bounded(self, operation: str, coro):
        """Apply the overall timeout and record metrics for one logical call."""
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(coro, timeout=self.overall_timeout)
        except asyncio.TimeoutError as e:
            GATEWAY_REQUESTS.labels(operation=operation, result="timeout").inc()
            logger.error("razorpay_call_timed_out", operation=operation, timeout_seconds=self.overall_timeout)
            raise GatewayTimeout(f"Razorpay {operation} exceeded {self.overall_timeout}s") from e
        except GatewayError as e:
            GATEWAY_REQUESTS.labels(operation=operation, result=e.kind.value).inc()
            raise
        finally:
            GATEWAY_LATENCY.labels(operation=operation).observe(time.perf_counter() - start)
        GATEWAY_REQUESTS.labels(operation=operation, result="ok").inc()
        return result

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """
        Create an order for ``amount_minor`` (paise).

        A retried create first asks the gateway for an order with the same
        receipt, so a create that timed out after landing is not duplicated.
        """
        if len(receipt) > MAX_RECEIPT_LENGTH:
            raise ValueError(f"Receipt exceeds {MAX_RECEIPT_LENGTH} characters")

        payload = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }

        async def _create() -> GatewayOrder:
            attempt_number = 0
            async for attempt in self._retrying(self.create_max_attempts):
                with attempt:
                    attempt_number += 1
                    if attempt_number > 1:
                        existing = await self._find_by_receipt(receipt)
                        if existing:
                            logger.info("razorpay_order_recovered_by_receipt", order_id=existing.id, receipt=receipt)
                            return existing
                    data = await self._request("POST", "orders", data=payload)
                    return GatewayOrder.from_api(data)

        order = await self._bounded("create_order", _create())
        logger.info("razorpay_order_created", order_id=order.id, amount=order.amount, receipt=receipt)
        return order

    async def _find_by_receipt(self, receipt: str) -> Optional[GatewayOrder]:
        data = await self._request("GET", "orders", params={"receipt": receipt})
        items = data.get("items") or []
        return GatewayOrder.from_api(items[0]) if items else None

    async def find_order_by_receipt(self, receipt: str) -> Optional[GatewayOrder]:
        async def _find():
            data = await self._read("orders", params={"receipt": receipt})
            items = data.get("items") or []
            return GatewayOrder.from_api(items[0]) if items else None
        return await self._bounded("find_order_by_receipt", _find())

    async def fetch_order(self, order_id: str) -> GatewayOrder:
        async def _fetch():
            return GatewayOrder.from_api(await self._read(f"orders/{order_id}"))
        return await self._bounded("fetch_order", _fetch())

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        async def _fetch():
            return GatewayPayment.from_api(await self._read(f"payments/{payment_id}"))
        return await self._bounded("fetch_payment", _fetch())

    async def fetch_order_payments(self, order_id: str) -> List[GatewayPayment]:
        async def _fetch():
            data = await self._read(f"orders/{order_id}/payments")
            return [GatewayPayment.from_api(item) for item in data.get("items") or []]
        return await self._bounded("fetch_order_payments", _fetch())

    async def ping(self) -> None:
        """Authenticated reachability check used by the health check."""
        await self._bounded("ping", self._request("GET", "orders", params={"count": 1}))


def _error_description(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("description") or response.text[:200]
    except (ValueError, AttributeError):
        return response.text[:200]


def get_gateway_client() -> RazorpayClient:
    settings = get_settings()
    if not settings.gateway_configured:
        raise ConfigurationError("Razorpay credentials are not configured")
    return RazorpayClient(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        base_url=settings.RAZORPAY_BASE_URL,
        request_timeout=settings.GATEWAY_REQUEST_TIMEOUT_SECONDS,
        overall_timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        max_attempts=settings.GATEWAY_MAX_ATTEMPTS,
        create_max_attempts=settings.GATEWAY_CREATE_MAX_ATTEMPTS,
    )
