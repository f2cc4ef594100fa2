import asyncio
import enum
import hmac
import hashlib
import logging
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, Optional
from uuid import uuid4

import httpx
from sqlalchemy import select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from busbooking.config import settings
from busbooking.errors import PaymentProviderError
from busbooking.metrics import PAYMENT_SUCCESS, PAYMENT_FAILURE, PAYMENT_PROVIDER_ERRORS
from busbooking.models.models import PaymentIntentRecord
from busbooking.redis_client import redis_client

logger = logging.getLogger(__name__)


class PaymentOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class PaymentHandle:
    handle_ref: str
    client_secret: Optional[str]


@dataclass(frozen=True)
class WebhookEvent:
    event_id: Optional[str]
    provider_ref: Optional[str]
    status: Optional[str]


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class BaseAdapter:
    provider_name: str = "base"

    async def create_intent(self, amount_minor: int, currency: str, metadata: Dict) -> Dict:
        raise NotImplementedError()

    async def retrieve_status(self, provider_ref: str) -> PaymentOutcome:
        raise NotImplementedError()

    async def verify_signature(self, headers: Dict[str, str], body: bytes) -> bool:
        # default: HMAC-SHA256 using provider secret configured in settings
        secret = self.get_secret()
        if not secret:
            return False
        sig_header = headers.get("x-signature") or ""
        computed = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(computed, sig_header)

    def get_secret(self) -> Optional[str]:
        return ""

    def parse_event(self, payload: Dict) -> WebhookEvent:
        event_id = payload.get("id") or payload.get("event_id")
        data = payload.get("data") or payload
        status = data.get("status") or data.get("transaction_status")
        provider_ref = data.get("transaction_id") or data.get("tx_ref")
        return WebhookEvent(event_id=event_id, provider_ref=provider_ref, status=status)

    async def aclose(self):
        return None


class StripeAdapter(BaseAdapter):
    """Stripe payment intents over its REST API."""

    provider_name = "stripe"
    SIGNATURE_TOLERANCE_SECONDS = 300

    def __init__(self, secret_key: str, webhook_secret: str, api_base: str, timeout: float,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.webhook_secret = webhook_secret
        self._client = httpx.AsyncClient(
            base_url=api_base,
            headers={"Authorization": f"Bearer {secret_key}"},
            timeout=timeout,
            transport=transport,
        )

    def get_secret(self) -> Optional[str]:
        return self.webhook_secret

    @staticmethod
    def _read_body(resp: httpx.Response) -> Dict:
        resp.raise_for_status()
        body = resp.json()
        if not isinstance(body, dict) or not body.get("id"):
            raise ValueError(f"unexpected payment intent payload: {resp.text[:200]!r}")
        return body

    async def create_intent(self, amount_minor: int, currency: str, metadata: Dict) -> Dict:
        data = {
            "amount": str(amount_minor),
            "currency": currency,
            "payment_method_types[]": "card",
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = str(value)
        resp = await self._client.post("/v1/payment_intents", data=data)
        body = self._read_body(resp)
        return {"provider_ref": body["id"], "client_secret": body.get("client_secret")}

    async def retrieve_status(self, provider_ref: str) -> PaymentOutcome:
        resp = await self._client.get(f"/v1/payment_intents/{provider_ref}")
        body = self._read_body(resp)
        status = body.get("status")
        if status == "succeeded":
            return PaymentOutcome.SUCCEEDED
        if status == "canceled":
            return PaymentOutcome.FAILED
        # a declined card sends the intent back to requires_payment_method
        if status == "requires_payment_method" and body.get("last_payment_error"):
            return PaymentOutcome.FAILED
        return PaymentOutcome.PENDING

    async def verify_signature(self, headers: Dict[str, str], body: bytes) -> bool:
        secret = self.get_secret()
        sig_header = headers.get("stripe-signature") or ""
        if not secret or not sig_header:
            return False
        parts = [p.split("=", 1) for p in sig_header.split(",") if "=" in p]
        timestamp = next((v for k, v in parts if k == "t"), None)
        candidates = [v for k, v in parts if k == "v1"]
        if not timestamp or not candidates:
            return False
        try:
            if abs(time.time() - int(timestamp)) > self.SIGNATURE_TOLERANCE_SECONDS:
                return False
        except ValueError:
            return False
        signed = timestamp.encode() + b"." + body
        computed = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(computed, c) for c in candidates)

    def parse_event(self, payload: Dict) -> WebhookEvent:
        obj = (payload.get("data") or {}).get("object") or {}
        return WebhookEvent(event_id=payload.get("id"), provider_ref=obj.get("id"), status=obj.get("status"))

    async def aclose(self):
        await self._client.aclose()


class SandboxAdapter(BaseAdapter):
    """In-process simulated provider for local development and tests.

    Intents start pending; settle() plays the customer paying (or not).
    """

    provider_name = "sandbox"

    def __init__(self, secret: str = ""):
        self.secret = secret
        self.unavailable = False
        self._intents: Dict[str, Dict] = {}

    def get_secret(self) -> Optional[str]:
        return self.secret

    async def create_intent(self, amount_minor: int, currency: str, metadata: Dict) -> Dict:
        if self.unavailable:
            raise ConnectionError("sandbox provider unavailable")
        provider_ref = f"sbx_{uuid4().hex}"
        self._intents[provider_ref] = {
            "amount": amount_minor,
            "currency": currency,
            "metadata": dict(metadata),
            "status": PaymentOutcome.PENDING,
        }
        return {"provider_ref": provider_ref, "client_secret": f"{provider_ref}_secret_{uuid4().hex[:12]}"}

    async def retrieve_status(self, provider_ref: str) -> PaymentOutcome:
        if self.unavailable:
            raise ConnectionError("sandbox provider unavailable")
        intent = self._intents.get(provider_ref)
        if intent is None:
            raise PaymentProviderError(f"Unknown payment intent {provider_ref}")
        return intent["status"]

    def settle(self, provider_ref: str, outcome: PaymentOutcome):
        self._intents[provider_ref]["status"] = PaymentOutcome(outcome)


def get_adapter(name: str) -> BaseAdapter:
    name = name.lower()
    if name == "stripe":
        if not settings.STRIPE_SECRET_KEY:
            raise PaymentProviderError("STRIPE_SECRET_KEY is not configured")
        return StripeAdapter(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            api_base=settings.STRIPE_API_BASE,
            timeout=settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS,
        )
    if name == "sandbox":
        return SandboxAdapter(secret=settings.SANDBOX_SECRET)
    raise PaymentProviderError(f"Unknown provider: {name}")


class PaymentCoordinator:
    """Single entry point to the payment provider for the booking lifecycle.

    Every provider call is bounded by ``timeout``; timeouts, transport errors
    and non-2xx responses all surface as PaymentProviderError.
    """

    def __init__(self, adapter: BaseAdapter, currency: str = None, timeout: float = None):
        self.adapter = adapter
        self.currency = currency or settings.PAYMENT_CURRENCY
        self.timeout = timeout or settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS

    @property
    def provider_name(self) -> str:
        return self.adapter.provider_name

    async def _call(self, operation: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except PaymentProviderError:
            PAYMENT_PROVIDER_ERRORS.labels(provider=self.provider_name, operation=operation).inc()
            raise
        except (asyncio.TimeoutError, httpx.HTTPError, OSError, KeyError, ValueError) as exc:
            # KeyError and ValueError: the provider answered with a body we cannot use
            PAYMENT_PROVIDER_ERRORS.labels(provider=self.provider_name, operation=operation).inc()
            logger.warning("Payment provider %s %s failed: %r", self.provider_name, operation, exc)
            raise PaymentProviderError(
                f"Payment provider {self.provider_name} {operation} failed",
                details={"provider": self.provider_name, "operation": operation},
            ) from exc

    async def initiate(self, amount: Decimal, currency: str = None, metadata: Dict = None) -> PaymentHandle:
        currency = currency or self.currency
        resp = await self._call("initiate", self.adapter.create_intent(to_minor_units(amount), currency, metadata or {}))
        return PaymentHandle(handle_ref=resp["provider_ref"], client_secret=resp.get("client_secret"))

    async def check_status(self, handle_ref: str) -> PaymentOutcome:
        return await self._call("check_status", self.adapter.retrieve_status(handle_ref))

    async def verify_webhook(self, headers: Dict[str, str], body: bytes) -> bool:
        return await self.adapter.verify_signature(headers, body)

    def parse_webhook(self, payload: Dict) -> WebhookEvent:
        return self.adapter.parse_event(payload)

    async def record_intent(self, db: AsyncSession, booking_id: str, handle: PaymentHandle, amount: Decimal, currency: str = None):
        record = PaymentIntentRecord(
            booking_id=booking_id,
            provider=self.provider_name,
            provider_ref=handle.handle_ref,
            amount=amount,
            currency=currency or self.currency,
            status=PaymentOutcome.PENDING.value,
        )
        db.add(record)
        return record

    async def record_status(self, db: AsyncSession, provider_ref: str, outcome: PaymentOutcome):
        stmt = sa_select(PaymentIntentRecord).where(PaymentIntentRecord.provider_ref == provider_ref)
        res = await db.execute(stmt)
        record = res.scalars().first()
        if record:
            record.status = outcome.value
        if outcome == PaymentOutcome.SUCCEEDED:
            PAYMENT_SUCCESS.labels(provider=self.provider_name).inc()
        elif outcome == PaymentOutcome.FAILED:
            PAYMENT_FAILURE.labels(provider=self.provider_name).inc()
        return record

    async def aclose(self):
        await self.adapter.aclose()


def build_payment_coordinator() -> PaymentCoordinator:
    return PaymentCoordinator(get_adapter(settings.PAYMENT_PROVIDER))


IDEMPOTENCY_KEY_TPL = "payment_webhook:{provider}:{event_id}"


async def mark_event_processed(provider: str, event_id: str, ttl: int = None) -> bool:
    key = IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id)
    # set NX to ensure we only process once
    added = await redis_client.set(key, "1", ex=ttl or settings.WEBHOOK_EVENT_TTL_SECONDS, nx=True)
    return bool(added)


async def clear_event(provider: str, event_id: str):
    # lets the provider's retry through when processing failed
    key = IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id)
    await redis_client.delete(key)
