import logging
import random
import time
from typing import Callable, Tuple, Type, TypeVar

from sqlalchemy.exc import OperationalError

from .errors import OrderCreationFailed
from .inventory import InventoryConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


# Deadlocks, lock timeouts and dropped connections surface as OperationalError.
TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (OperationalError, InventoryConflict)


def backoff_delay(attempt: int, initial_delay: float, max_delay: float) -> float:
    """Exponential backoff with a little jitter, capped at ``max_delay``."""
    if initial_delay <= 0:
        return 0.0
    return min(initial_delay * (2 ** attempt) + random.uniform(0, initial_delay), max_delay)


def with_transaction_retry(
    fn: Callable[[], T],
    max_attempts: int = 3,
    initial_delay: float = 0.1,
    max_delay: float = 3.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` until it succeeds, retrying transient datastore errors.

    ``fn`` must own its transaction: each call starts fresh and rolls back on
    failure. Once attempts are exhausted the last transient error is reported
    as :class:`OrderCreationFailed`.
    """
    for attempt in range(max_attempts):
        try:
            return fn()
        except TRANSIENT_ERRORS as exc:
            if attempt + 1 >= max_attempts:
                logger.error("Giving up after %d attempts: %s", max_attempts, exc)
                raise OrderCreationFailed() from exc
            delay = backoff_delay(attempt, initial_delay, max_delay)
            logger.warning("Transient failure on attempt %d/%d (%s), retrying in %.2fs",
                           attempt + 1, max_attempts, exc, delay)
            sleep(delay)
    raise OrderCreationFailed()
