import logging
from typing import Any, Dict, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .models import Order, OrderStatus, WebhookEvent

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"

_OPEN_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)


class WebhookHandler:
    """
    Applies payment gateway webhook events to orders.
    Delivery is at-least-once, so each event id is recorded alongside the
    status change it caused and replays are acknowledged without effect.
    """

    def __init__(self, session_factory: sessionmaker, gateway, webhook_secret: str, orders=None):
        self.session_factory = session_factory
        self.gateway = gateway
        self.webhook_secret = webhook_secret
        self.orders = orders  # OrderOrchestrator, used to publish resulting events.

    def handle(self, raw_body: Union[bytes, str], signature_header: Optional[str]) -> Dict[str, Any]:
        # Raises SignatureError; the gateway then retries delivery on its own schedule.
        event = self.gateway.verify_webhook_signature(raw_body, signature_header, self.webhook_secret)
        event_id = event.get("id")
        event_type = event.get("type")

        if event_type != PAYMENT_SUCCEEDED:
            logger.info("Ignoring webhook event %s of type %s", event_id, event_type)
            return {"received": True}

        intent = (event.get("data") or {}).get("object") or {}
        order = self.apply_payment_succeeded(event_id, intent)
        if order is not None and self.orders is not None:
            routing_key = "order.paid" if order.status == OrderStatus.PAID.value else "order.failed"
            self.orders.publish(routing_key, order)
        return {"received": True}

    def apply_payment_succeeded(self, event_id: Optional[str], intent: Dict[str, Any]) -> Optional[Order]:
        """Move the matching open order to PAID (or FAILED on mismatch).

        Returns the order when its status changed, otherwise None.
        """
        session: Session = self.session_factory()
        try:
            if event_id and session.get(WebhookEvent, event_id) is not None:
                logger.info("Webhook event %s already processed", event_id)
                return None

            order = self._find_order(session, intent)
            if event_id:
                session.add(WebhookEvent(id=event_id, type=PAYMENT_SUCCEEDED))

            changed = None
            if order is None:
                # The synchronous checkout call may simply not have landed yet.
                logger.info("No order for payment intent %s yet", intent.get("id"))
            elif order.status_enum.is_terminal:
                logger.info("Order %s already %s, nothing to do", order.id, order.status)
            else:
                new_status = self._status_for(order, intent)
                result = session.execute(
                    update(Order)
                    .where(Order.id == order.id, Order.status.in_(_OPEN_STATUSES))
                    .values(status=new_status)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    order.status = new_status
                    changed = order
                    logger.info("Order %s -> %s from event %s", order.id, new_status, event_id)

            session.commit()
            return changed
        except IntegrityError:
            # A concurrent delivery of the same event recorded it first.
            session.rollback()
            logger.info("Webhook event %s processed concurrently", event_id)
            return None
        finally:
            session.close()

    @staticmethod
    def _find_order(session: Session, intent: Dict[str, Any]) -> Optional[Order]:
        intent_id = intent.get("id")
        if intent_id:
            order = session.query(Order).filter(Order.payment_intent_id == intent_id).one_or_none()
            if order is not None:
                return order
        order_id = (intent.get("metadata") or {}).get("orderId")
        if order_id:
            return session.get(Order, order_id)
        return None

    @staticmethod
    def _status_for(order: Order, intent: Dict[str, Any]) -> str:
        if intent.get("id") != order.payment_intent_id:
            logger.warning("Order %s expects intent %s, event carries %s",
                           order.id, order.payment_intent_id, intent.get("id"))
            return OrderStatus.FAILED.value
        if intent.get("amount") != order.total_cents:
            logger.warning("Order %s total %d does not match paid amount %s",
                           order.id, order.total_cents, intent.get("amount"))
            return OrderStatus.FAILED.value
        return OrderStatus.PAID.value
