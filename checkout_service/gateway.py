"""Payment gateway adapter.

Thin wrapper around the Stripe SDK. Everything the checkout flow needs from
the processor goes through :class:`StripeGateway`, which is constructed once
at startup and injected, so tests can hand in a fake with the same methods.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

import requests
import stripe

from .errors import GatewayError, PaymentVerificationError, SignatureError

logger = logging.getLogger(__name__)

# Seconds a signed webhook stays valid; matches the Stripe SDK default.
WEBHOOK_TOLERANCE = 300


@dataclass(frozen=True)
class PaymentIntentInfo:
    """The parts of a gateway payment intent the checkout flow relies on."""
    id: str
    status: str
    amount: int  # Minor units.
    currency: str
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


def _to_info(intent: Any) -> PaymentIntentInfo:
    return PaymentIntentInfo(
        id=intent.id,
        status=intent.status,
        amount=intent.amount,
        currency=intent.currency,
        client_secret=getattr(intent, "client_secret", None),
        metadata=dict(intent.metadata or {}),
    )


def _gateway_error(exc: stripe.StripeError) -> GatewayError:
    # Timeouts and throttling leave the payment state unknown, not failed.
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return GatewayError("Payment service unavailable, please retry", retryable=True)
    return GatewayError("Payment service error")


class StripeGateway:
    def __init__(self, api_key: str, timeout: float = 10.0, http_session: Optional[requests.Session] = None):
        # Every call to the processor is bounded by ``timeout``.
        self.http_session = http_session or requests.Session()
        self.client = stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout, session=self.http_session),
        )

    def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentInfo:
        """Create a payment intent for ``amount`` minor units."""
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            intent = self.client.payment_intents.create(
                params={
                    "amount": amount,
                    "currency": currency,
                    "metadata": metadata or {},
                    "automatic_payment_methods": {"enabled": True},
                },
                options=options,
            )
        except stripe.StripeError as exc:
            logger.warning("Payment intent creation failed: %s", exc)
            raise _gateway_error(exc) from exc
        logger.info("Created payment intent %s for %d %s", intent.id, amount, currency)
        return _to_info(intent)

    def retrieve_intent(self, intent_id: str) -> PaymentIntentInfo:
        """Fetch the current state of an intent straight from the processor."""
        try:
            intent = self.client.payment_intents.retrieve(intent_id)
        except stripe.InvalidRequestError as exc:
            logger.warning("Payment intent %s could not be retrieved: %s", intent_id, exc)
            raise PaymentVerificationError("Payment intent not found") from exc
        except stripe.StripeError as exc:
            logger.warning("Payment intent %s retrieval failed: %s", intent_id, exc)
            raise _gateway_error(exc) from exc
        return _to_info(intent)

    def verify_webhook_signature(
        self, raw_body: Union[bytes, str], signature_header: Optional[str], secret: str
    ) -> Dict[str, Any]:
        """Check the ``stripe-signature`` header against the raw request body.

        The signature covers the exact bytes the processor sent, so the body
        must not be parsed and re-serialized before this call.
        """
        if not signature_header:
            raise SignatureError("Missing Stripe signature")
        if not secret:
            raise SignatureError("Webhook secret is not configured")
        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        except UnicodeDecodeError as exc:
            raise SignatureError("Invalid webhook payload") from exc
        try:
            stripe.WebhookSignature.verify_header(payload, signature_header, secret, WEBHOOK_TOLERANCE)
        except stripe.SignatureVerificationError as exc:
            raise SignatureError("Invalid webhook signature") from exc
        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise SignatureError("Invalid webhook payload") from exc
        if not isinstance(event, dict) or "type" not in event:
            raise SignatureError("Invalid webhook payload")
        return event

    def close(self) -> None:
        self.http_session.close()
