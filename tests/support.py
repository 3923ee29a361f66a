"""Fakes and helpers shared by the checkout tests."""
import hashlib
import hmac
import json
import time

from checkout_service.errors import PaymentVerificationError
from checkout_service.gateway import PaymentIntentInfo, StripeGateway
from checkout_service.models import Product
from checkout_service.schemas import CartItem

WEBHOOK_SECRET = "whsec_test_secret"
USER = "user-1"
OTHER_USER = "user-2"


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a ``stripe-signature`` header for ``payload`` the way Stripe does."""
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type, intent, event_id="evt_1"):
    # Indented on purpose: the exact bytes are what gets signed.
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": intent}}, indent=2)


def cart(*lines):
    return [CartItem(product_id=p, price=price, quantity=q) for p, price, q in lines]


class FakeGateway:
    """In-memory payment processor. Webhook signatures are checked for real."""

    def __init__(self):
        self.intents = {}
        self.retrieve_calls = []
        self.created = []
        self.fail_with = None
        self._verifier = StripeGateway("sk_test_unused")

    def add_intent(self, intent_id, amount, status="succeeded", currency="usd", user_id=USER):
        metadata = {"userId": user_id} if user_id else {}
        self.intents[intent_id] = PaymentIntentInfo(
            id=intent_id,
            status=status,
            amount=amount,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            metadata=metadata,
        )
        return self.intents[intent_id]

    def create_intent(self, amount, currency, metadata=None, idempotency_key=None):
        if self.fail_with is not None:
            raise self.fail_with
        intent_id = f"pi_created_{len(self.created) + 1}"
        info = PaymentIntentInfo(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            metadata=dict(metadata or {}),
        )
        self.created.append(info)
        self.intents[intent_id] = info
        return info

    def retrieve_intent(self, intent_id):
        self.retrieve_calls.append(intent_id)
        if self.fail_with is not None:
            raise self.fail_with
        if intent_id not in self.intents:
            raise PaymentVerificationError("Payment intent not found")
        return self.intents[intent_id]

    def verify_webhook_signature(self, raw_body, signature_header, secret):
        return self._verifier.verify_webhook_signature(raw_body, signature_header, secret)


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, routing_key, message):
        self.events.append((routing_key, message))


def stock_of(session_factory, product_id):
    session = session_factory()
    try:
        return session.get(Product, product_id).stock
    finally:
        session.close()


def count_rows(session_factory, model):
    session = session_factory()
    try:
        return session.query(model).count()
    finally:
        session.close()
