"""Payment processor adapters.

The engine talks to the processor through :class:`PaymentProcessor`. The
Stripe adapter uses manual-capture PaymentIntents: a hold is an authorized
intent in ``requires_capture``, a capture finalizes part or all of it and a
cancel releases it.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import stripe

from ..config import PaymentConfig
from ..logging import get_logger

logger = get_logger(__name__)


class ProcessorError(Exception):
    """A processor call failed or timed out."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class ProcessorIntent:
    """Processor-side view of a payment intent."""

    id: str
    status: str
    amount_cents: int
    amount_received_cents: int = 0

    @property
    def is_authorized(self) -> bool:
        return self.status == "requires_capture"

    @property
    def is_captured(self) -> bool:
        return self.status == "succeeded"


class PaymentProcessor(ABC):
    """Interface for hold/capture payment processors."""

    @abstractmethod
    def create_hold(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        idempotency_key: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorIntent:
        """Authorize ``amount_cents`` without capturing it."""

    @abstractmethod
    def capture(
        self,
        intent_id: str,
        amount_cents: int,
        idempotency_key: str | None = None,
    ) -> ProcessorIntent:
        """Capture part or all of an authorized intent."""

    @abstractmethod
    def cancel(self, intent_id: str) -> ProcessorIntent:
        """Release an uncaptured hold."""

    @abstractmethod
    def retrieve(self, intent_id: str) -> ProcessorIntent:
        """Fetch the current processor state of an intent."""


def _intent_from_stripe(intent: Any) -> ProcessorIntent:
    return ProcessorIntent(
        id=str(intent["id"]),
        status=str(intent["status"]),
        amount_cents=int(intent.get("amount") or 0),
        amount_received_cents=int(intent.get("amount_received") or 0),
    )


def _processor_error(exc: stripe.StripeError) -> ProcessorError:
    if isinstance(exc, stripe.APIConnectionError):
        code = "processor_unreachable"
    else:
        code = getattr(exc, "code", None) or type(exc).__name__
    message = getattr(exc, "user_message", None) or str(exc) or "Payment processor error"
    return ProcessorError(code, message)


class StripeProcessor(PaymentProcessor):
    """Stripe adapter with a bounded HTTP timeout and no automatic retries."""

    def __init__(self, secret_key: str, api_version: str = "", timeout_seconds: float = 10.0):
        if not secret_key:
            raise ValueError("Stripe secret key is not configured")
        stripe.api_key = secret_key
        if api_version:
            stripe.api_version = api_version
        # Retry policy belongs to the caller; a timed-out call surfaces as FAILED
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    @classmethod
    def from_config(cls, config: PaymentConfig) -> "StripeProcessor":
        return cls(
            secret_key=config.secret_key,
            api_version=config.api_version,
            timeout_seconds=config.timeout_seconds,
        )

    def create_hold(
        self,
        amount_cents: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        idempotency_key: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ProcessorIntent:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "customer": customer_id,
            "payment_method": payment_method_id,
            "capture_method": "manual",
            "confirm": True,
            "off_session": True,
            "metadata": metadata or {},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as exc:
            logger.warning("stripe_hold_failed", customer_id=customer_id, error=str(exc))
            raise _processor_error(exc) from exc
        return _intent_from_stripe(intent)

    def capture(
        self,
        intent_id: str,
        amount_cents: int,
        idempotency_key: str | None = None,
    ) -> ProcessorIntent:
        params: dict[str, Any] = {"amount_to_capture": amount_cents}
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.capture(intent_id, **params)
        except stripe.StripeError as exc:
            logger.warning("stripe_capture_failed", payment_intent_id=intent_id, error=str(exc))
            raise _processor_error(exc) from exc
        return _intent_from_stripe(intent)

    def cancel(self, intent_id: str) -> ProcessorIntent:
        try:
            intent = stripe.PaymentIntent.cancel(intent_id)
        except stripe.StripeError as exc:
            logger.warning("stripe_cancel_failed", payment_intent_id=intent_id, error=str(exc))
            raise _processor_error(exc) from exc
        return _intent_from_stripe(intent)

    def retrieve(self, intent_id: str) -> ProcessorIntent:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as exc:
            raise _processor_error(exc) from exc
        return _intent_from_stripe(intent)


@dataclass
class WebhookEvent:
    """Processor webhook delivery reduced to the fields the engine uses."""

    id: str
    type: str
    payment_intent_id: str | None
    amount_cents: int | None = None
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "WebhookEvent":
        """Build from a Stripe event body.

        PaymentIntent events carry the intent as the data object; charge
        events reference it through ``payment_intent``.

        Raises:
            ValueError: If the event id or type is missing.
        """
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise ValueError("Webhook event requires id and type")

        obj = (payload.get("data") or {}).get("object") or {}
        if obj.get("object") == "charge" or event_type.startswith("charge."):
            intent_id = obj.get("payment_intent")
            amount = obj.get("amount_captured")
        else:
            intent_id = obj.get("id")
            amount = obj.get("amount_received")

        last_error = obj.get("last_payment_error") or {}
        return cls(
            id=str(event_id),
            type=str(event_type),
            payment_intent_id=str(intent_id) if intent_id else None,
            amount_cents=int(amount) if amount is not None else None,
            error_code=last_error.get("decline_code") or last_error.get("code"),
            error_message=last_error.get("message"),
        )


def parse_webhook_event(payload: bytes | str, signature: str, secret: str) -> WebhookEvent:
    """Verify a webhook signature and parse the event.

    Raises:
        ValueError: If the signature or the payload is invalid.
    """
    if not secret:
        raise ValueError("Webhook secret is not configured")
    try:
        # Raises ValueError itself for a body that is not JSON
        stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=secret)
    except stripe.SignatureVerificationError as exc:
        raise ValueError("Invalid webhook signature") from exc

    body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    return WebhookEvent.from_dict(json.loads(body))
