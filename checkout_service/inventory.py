"""Inventory reservation for checkout.

Stock is decremented inside the caller's order transaction with a single
conditional ``UPDATE ... WHERE stock >= quantity``, so concurrent buyers only
collide when the stock really runs short. If the row no longer covers the
quantity that was read, :class:`InventoryConflict` is raised and the order
orchestrator retries with a fresh transaction; the re-check then reports
:class:`InsufficientInventory`. ``products.version`` is bumped on every
decrement for auditing, but never compared.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from sqlalchemy import update
from sqlalchemy.orm import Session

from .errors import InsufficientInventory, ValidationError
from .models import Product

logger = logging.getLogger(__name__)


class InventoryConflict(Exception):
    """Another transaction changed a product's stock between read and write."""

    def __init__(self, product_id: str):
        super().__init__(f"Concurrent stock update on {product_id}")
        self.product_id = product_id


@dataclass(frozen=True)
class Availability:
    ok: bool
    insufficient: List[str] = field(default_factory=list)


def merge_quantities(items: Iterable) -> Dict[str, int]:
    """Total quantity per product, in first-seen cart order."""
    wanted: Dict[str, int] = {}
    for item in items:
        wanted[item.product_id] = wanted.get(item.product_id, 0) + item.quantity
    return wanted


class InventoryService:
    def _load(self, session: Session, product_ids: Iterable[str]) -> Dict[str, Product]:
        rows = session.query(Product).filter(Product.id.in_(list(product_ids))).all()
        return {p.id: p for p in rows}

    @staticmethod
    def _availability(wanted: Dict[str, int], products: Dict[str, Product]) -> Availability:
        insufficient = [
            product_id
            for product_id, quantity in wanted.items()
            if product_id not in products or products[product_id].stock < quantity
        ]
        return Availability(ok=not insufficient, insufficient=insufficient)

    def check_availability(self, session: Session, items: Iterable) -> Availability:
        """Report which products cannot cover the requested quantities."""
        wanted = merge_quantities(items)
        return self._availability(wanted, self._load(session, wanted))

    def reserve(self, session: Session, items: List) -> None:
        """Check and decrement stock for every cart line, all or nothing.

        Must run in the same transaction as the order insert; nothing is
        committed here.
        """
        wanted = merge_quantities(items)
        products = self._load(session, wanted)

        availability = self._availability(wanted, products)
        if not availability.ok:
            logger.info("Insufficient inventory for %s", availability.insufficient)
            raise InsufficientInventory(availability.insufficient)

        # The cart price is what the customer paid; it has to match what we sell at.
        stale = [item.product_id for item in items
                 if item.price_cents != products[item.product_id].effective_price_cents]
        if stale:
            raise ValidationError(f"Price changed for: {', '.join(stale)}", details={"products": stale})

        # Fixed write order keeps concurrent multi-item checkouts from deadlocking.
        for product_id in sorted(wanted):
            quantity = wanted[product_id]
            result = session.execute(
                update(Product)
                .where(Product.id == product_id, Product.stock >= quantity)
                .values(stock=Product.stock - quantity, version=Product.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InventoryConflict(product_id)
            logger.debug("Reserved %d x %s", quantity, product_id)
