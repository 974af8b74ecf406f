from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar

import stripe

from homehero.core.config import Settings

logger = logging.getLogger(__name__)

INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"
LIST_PAGE_SIZE = 100
MAX_LISTED_INTENTS = 2000

T = TypeVar("T")

# Errors the processor may clear on its own; callers retry these.
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class PaymentGatewayError(Exception):
    """The payment processor rejected the request."""


class PaymentGatewayUnavailableError(PaymentGatewayError):
    """The payment processor is not configured or could not be reached."""


class WebhookSignatureError(Exception):
    """The webhook payload is unsigned, mis-signed, or outside the tolerance window."""


@dataclass(slots=True)
class PaymentIntent:
    id: str
    status: str
    amount: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)
    client_secret: str | None = None
    created: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == INTENT_SUCCEEDED

    @property
    def terminal(self) -> bool:
        return self.status in {INTENT_SUCCEEDED, INTENT_CANCELED}

    @classmethod
    def from_api(cls, payload: Any) -> PaymentIntent:
        """Build from a webhook ``data.object`` dict or a ``stripe.PaymentIntent``."""
        raw_metadata = payload.get("metadata") or {}
        metadata = {str(key): str(value) for key, value in dict(raw_metadata).items() if value is not None}
        created = payload.get("created")
        return cls(
            id=str(payload.get("id") or ""),
            status=str(payload.get("status") or ""),
            amount=int(payload.get("amount") or 0),
            currency=str(payload.get("currency") or ""),
            metadata=metadata,
            client_secret=payload.get("client_secret"),
            created=datetime.fromtimestamp(int(created), tz=timezone.utc) if isinstance(created, int) else None,
        )


class StripePaymentGateway:
    """Payment intents over the Stripe SDK.

    The SDK is blocking, so every call runs in a worker thread. The API key is
    passed per call instead of through the module-level ``stripe.api_key``.
    """

    def __init__(self, *, secret_key: str | None) -> None:
        self.secret_key = secret_key

    @classmethod
    def from_settings(cls, settings: Settings) -> StripePaymentGateway:
        return cls(secret_key=settings.stripe_secret_key)

    async def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        api_key = self._api_key()
        intent = await self._call(
            lambda: stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
                api_key=api_key,
                idempotency_key=idempotency_key,
            )
        )
        return PaymentIntent.from_api(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:
        api_key = self._api_key()
        intent = await self._call(lambda: stripe.PaymentIntent.retrieve(intent_id, api_key=api_key))
        return PaymentIntent.from_api(intent)

    async def list_payment_intents(
        self, *, created_gte: datetime, max_intents: int = MAX_LISTED_INTENTS
    ) -> list[PaymentIntent]:
        api_key = self._api_key()

        def collect() -> list[PaymentIntent]:
            page = stripe.PaymentIntent.list(
                created={"gte": int(created_gte.timestamp())},
                limit=LIST_PAGE_SIZE,
                api_key=api_key,
            )
            intents: list[PaymentIntent] = []
            for item in page.auto_paging_iter():
                intents.append(PaymentIntent.from_api(item))
                if len(intents) >= max_intents:
                    logger.warning("payment intent listing truncated limit=%s", max_intents)
                    break
            return intents

        return await self._call(collect)

    def _api_key(self) -> str:
        if not self.secret_key:
            raise PaymentGatewayUnavailableError("HH_STRIPE_SECRET_KEY is not configured")
        return self.secret_key

    async def _call(self, operation: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(operation)
        except _TRANSIENT_ERRORS as exc:
            raise PaymentGatewayUnavailableError(f"payment processor unavailable: {type(exc).__name__}") from exc
        except stripe.StripeError as exc:
            raise PaymentGatewayError(exc.user_message or str(exc)) from exc


def verify_webhook_signature(
    payload: bytes,
    signature_header: str | None,
    *,
    secret: str | None,
    tolerance_seconds: int = 300,
) -> dict[str, Any]:
    """Verify a ``Stripe-Signature`` header and return the event as plain JSON."""
    if not secret:
        raise WebhookSignatureError("webhook secret is not configured")
    if not signature_header:
        raise WebhookSignatureError("missing signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise WebhookSignatureError("webhook body is not UTF-8") from exc

    # The check stripe.Webhook.construct_event runs, minus building a stripe.Event;
    # non-object bodies must surface as WebhookSignatureError.
    try:
        stripe.WebhookSignature.verify_header(body, signature_header, secret, tolerance=tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        raise WebhookSignatureError(str(exc)) from exc

    try:
        event = json.loads(body)
    except json.JSONDecodeError as exc:
        raise WebhookSignatureError("webhook body is not valid JSON") from exc
    if not isinstance(event, dict):
        raise WebhookSignatureError("webhook body is not an object")
    return event
