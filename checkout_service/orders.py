"""Order creation for verified payments.

``create_order`` turns a cart plus a payment intent the client has already
confirmed into a PAID order with its line items and the matching stock
decrement, all in one datastore transaction. The payment is re-read from the
gateway first; the client's word for it is never taken.

The same payment intent may arrive twice (double submit, or racing the
webhook), so an order is looked up by ``payment_intent_id`` before and inside
the transaction, and the unique index on that column settles the last race.
"""
import logging
import time
from typing import Callable, List, Optional, Tuple, Union

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import (
    AuthorizationError,
    CheckoutError,
    NotFoundError,
    OrderCreationFailed,
    PaymentVerificationError,
    ValidationError,
)
from .gateway import PaymentIntentInfo
from .inventory import InventoryService
from .models import Address, Order, OrderItem, OrderStatus
from .money import cart_total_cents
from .retry import TRANSIENT_ERRORS, with_transaction_retry
from .schemas import AddressIn, CartItem

logger = logging.getLogger(__name__)

AddressOrId = Union[str, AddressIn, None]


def order_event(order: Order) -> dict:
    return {
        "order_id": order.id,
        "user_id": order.user_id,
        "payment_intent_id": order.payment_intent_id,
        "status": order.status,
        "total_cents": order.total_cents,
    }


class OrderOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway,
        inventory: Optional[InventoryService] = None,
        publisher=None,
        currency: str = "usd",
        max_attempts: int = 3,
        initial_delay: float = 0.1,
        max_delay: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.inventory = inventory or InventoryService()
        self.publisher = publisher
        self.currency = currency.lower()
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.sleep = sleep

    # --- Payment intents ---

    def prepare_payment(
        self,
        user_id: str,
        cart_items: List[CartItem],
        address_id: Optional[str] = None,
        address: Optional[AddressIn] = None,
    ) -> PaymentIntentInfo:
        """Create the gateway intent the client will confirm for this cart.

        A new shipping address travels in the intent metadata with the
        ``saveAddress`` flag, so the processor dashboard shows where the
        order ships before the order row exists.
        """
        if not cart_items:
            raise ValidationError("No items in order")
        amount = cart_total_cents(cart_items)
        if amount <= 0:
            raise ValidationError("Order total must be greater than zero")
        metadata = {
            "userId": user_id,
            "addressId": address_id or "",
            "itemCount": str(sum(item.quantity for item in cart_items)),
            # Gateway metadata values are capped at 500 characters.
            "productIds": ",".join(sorted({item.product_id for item in cart_items}))[:500],
            "saveAddress": "true" if address is not None and address.save_address else "false",
        }
        if address is not None:
            metadata.update({
                "addressName": address.name[:500],
                "addressStreet": address.street[:500],
                "addressCity": address.city[:500],
                "addressState": address.state[:500],
                "addressPostalCode": address.postal_code[:500],
                "addressCountry": address.country[:500],
            })
        return self.gateway.create_intent(amount, self.currency, metadata)

    def _verify_payment(self, user_id: str, payment_intent_id: str, total_cents: int) -> None:
        intent = self.gateway.retrieve_intent(payment_intent_id)
        if intent.status != "succeeded":
            raise PaymentVerificationError(f"Payment has not succeeded (status: {intent.status})")
        if intent.amount != total_cents:
            logger.warning("Intent %s amount %d does not match cart total %d",
                           payment_intent_id, intent.amount, total_cents)
            raise PaymentVerificationError("Payment amount does not match order total")
        if (intent.currency or "").lower() != self.currency:
            raise PaymentVerificationError("Payment currency does not match")
        owner = intent.metadata.get("userId")
        if owner and owner != user_id:
            raise PaymentVerificationError("Payment belongs to a different user")

    # --- Orders ---

    def create_order(
        self,
        user_id: str,
        cart_items: List[CartItem],
        address_or_id: AddressOrId,
        payment_intent_id: Optional[str],
    ) -> Order:
        """Create a PAID order for a verified payment, or return the one that exists."""
        if not cart_items:
            raise ValidationError("No items in order")
        if not payment_intent_id:
            raise ValidationError("paymentIntentId is required")
        if address_or_id is None or address_or_id == "":
            raise ValidationError("An addressId or address is required")

        existing = self._retry(lambda: self._find_existing(payment_intent_id))
        if existing is not None:
            self._ensure_owner(existing, user_id)
            logger.info("Order %s already exists for intent %s", existing.id, payment_intent_id)
            return existing

        total_cents = cart_total_cents(cart_items)
        self._verify_payment(user_id, payment_intent_id, total_cents)

        order, created = self._retry(
            lambda: self._create_in_transaction(user_id, cart_items, address_or_id, payment_intent_id, total_cents)
        )
        if created:
            logger.info("Order %s created for user %s (%d cents)", order.id, user_id, order.total_cents)
            self.publish("order.paid", order)
        return order

    def _retry(self, fn):
        return with_transaction_retry(
            fn,
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            sleep=self.sleep,
        )

    def _find_existing(self, payment_intent_id: str) -> Optional[Order]:
        try:
            return self.find_by_payment_intent(payment_intent_id)
        except TRANSIENT_ERRORS:
            raise
        except SQLAlchemyError as exc:
            logger.exception("Unexpected datastore error looking up intent %s", payment_intent_id)
            raise OrderCreationFailed() from exc

    def _create_in_transaction(
        self,
        user_id: str,
        cart_items: List[CartItem],
        address_or_id: AddressOrId,
        payment_intent_id: str,
        total_cents: int,
    ) -> Tuple[Order, bool]:
        session: Session = self.session_factory()
        try:
            existing = self._query_by_intent(session, payment_intent_id)
            if existing is not None:
                self._ensure_owner(existing, user_id)
                return existing, False

            address_id = None
            if isinstance(address_or_id, str):
                address_id = self._existing_address(session, user_id, address_or_id).id

            self.inventory.reserve(session, cart_items)

            if isinstance(address_or_id, AddressIn):
                address = Address(
                    user_id=user_id,
                    name=address_or_id.name,
                    street=address_or_id.street,
                    city=address_or_id.city,
                    state=address_or_id.state,
                    postal_code=address_or_id.postal_code,
                    country=address_or_id.country,
                    is_default=False,
                )
                session.add(address)
                session.flush()
                address_id = address.id

            order = Order(
                user_id=user_id,
                total_cents=total_cents,
                status=OrderStatus.PROCESSING.value,
                address_id=address_id,
                payment_intent_id=payment_intent_id,
                items=[
                    OrderItem(
                        product_id=item.product_id,
                        quantity=item.quantity,
                        price_cents=item.price_cents,
                        position=position,
                    )
                    for position, item in enumerate(cart_items)
                ],
            )
            session.add(order)
            session.flush()
            # The payment was verified before the transaction began.
            order.status = OrderStatus.PAID.value
            session.commit()
            return order, True
        except IntegrityError as exc:
            session.rollback()
            existing = self._query_by_intent(session, payment_intent_id)
            if existing is None:
                logger.error("Order insert for intent %s violated a constraint: %s", payment_intent_id, exc)
                raise OrderCreationFailed() from exc
            self._ensure_owner(existing, user_id)
            logger.info("Lost the race for intent %s to order %s", payment_intent_id, existing.id)
            return existing, False
        except (CheckoutError,) + TRANSIENT_ERRORS:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Unexpected datastore error creating order for intent %s", payment_intent_id)
            raise OrderCreationFailed() from exc
        finally:
            session.close()

    @staticmethod
    def _query_by_intent(session: Session, payment_intent_id: str) -> Optional[Order]:
        return session.query(Order).filter(Order.payment_intent_id == payment_intent_id).one_or_none()

    @staticmethod
    def _existing_address(session: Session, user_id: str, address_id: str) -> Address:
        address = session.get(Address, address_id)
        if address is None:
            raise ValidationError("Address not found")
        if address.user_id != user_id:
            raise AuthorizationError("Address belongs to a different user")
        return address

    @staticmethod
    def _ensure_owner(order: Order, user_id: str) -> None:
        if order.user_id != user_id:
            raise AuthorizationError("Payment intent belongs to a different user")

    def find_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        session = self.session_factory()
        try:
            return self._query_by_intent(session, payment_intent_id)
        finally:
            session.close()

    def list_orders(self, user_id: str) -> List[Order]:
        session = self.session_factory()
        try:
            return (
                session.query(Order)
                .filter(Order.user_id == user_id)
                .order_by(Order.created_at.desc())
                .all()
            )
        finally:
            session.close()

    def get_order(self, user_id: str, order_id: str) -> Order:
        session = self.session_factory()
        try:
            order = session.get(Order, order_id)
        finally:
            session.close()
        # Someone else's order is reported the same as a missing one.
        if order is None or order.user_id != user_id:
            raise NotFoundError("Order not found")
        return order

    def publish(self, routing_key: str, order: Order) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher.publish(routing_key, order_event(order))
        except Exception:
            # The order is committed; a lost notification must not fail the request.
            logger.exception("Failed to publish '%s' for order %s", routing_key, order.id)
