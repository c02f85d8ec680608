"""Order status machine — pure rules, no I/O.

The venue is authoritative, but its feed is polled and can be stale or
out of order.  Status only ever moves forward along this machine::

    CREATED → PAID → COMPLETED | APPEALED | CANCELLED*
    APPEALED → COMPLETED | CANCELLED*

Polling may skip intermediate states (CREATED → COMPLETED is legal).
"""

from enum import Enum
from typing import Optional, Union


class OrderStatus(str, Enum):
    """Local order status, mirroring the venue's lifecycle."""

    CREATED = "CREATED"
    PAID = "PAID"
    APPEALED = "APPEALED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    CANCELLED_SYSTEM = "CANCELLED_SYSTEM"
    CANCELLED_TIMEOUT = "CANCELLED_TIMEOUT"


TERMINAL_STATUSES = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.CANCELLED_SYSTEM,
    OrderStatus.CANCELLED_TIMEOUT,
})

_CANCELLED = {
    OrderStatus.CANCELLED,
    OrderStatus.CANCELLED_SYSTEM,
    OrderStatus.CANCELLED_TIMEOUT,
}

_ALLOWED: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset(
        {OrderStatus.PAID, OrderStatus.APPEALED, OrderStatus.COMPLETED} | _CANCELLED
    ),
    OrderStatus.PAID: frozenset(
        {OrderStatus.APPEALED, OrderStatus.COMPLETED} | _CANCELLED
    ),
    OrderStatus.APPEALED: frozenset({OrderStatus.COMPLETED} | _CANCELLED),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.CANCELLED_SYSTEM: frozenset(),
    OrderStatus.CANCELLED_TIMEOUT: frozenset(),
}

# Venue codes: numeric when filtering by status list, strings elsewhere.
_VENUE_STATUS_MAP: dict[Union[int, str], OrderStatus] = {
    1: OrderStatus.CREATED,
    2: OrderStatus.PAID,
    3: OrderStatus.APPEALED,
    4: OrderStatus.COMPLETED,
    5: OrderStatus.CANCELLED,
    6: OrderStatus.CANCELLED_SYSTEM,
    7: OrderStatus.CANCELLED_TIMEOUT,
    "TRADING": OrderStatus.CREATED,
    "PENDING": OrderStatus.CREATED,
    "CREATED": OrderStatus.CREATED,
    "BUYER_PAYED": OrderStatus.PAID,
    "PAID": OrderStatus.PAID,
    "APPEALING": OrderStatus.APPEALED,
    "APPEALED": OrderStatus.APPEALED,
    "COMPLETED": OrderStatus.COMPLETED,
    "CANCELLED": OrderStatus.CANCELLED,
    "CANCELLED_BY_SYSTEM": OrderStatus.CANCELLED_SYSTEM,
    "CANCELLED_SYSTEM": OrderStatus.CANCELLED_SYSTEM,
    "CANCELLED_TIMEOUT": OrderStatus.CANCELLED_TIMEOUT,
}


def normalize_status(raw: Union[int, str, None]) -> Optional[OrderStatus]:
    """Map a venue status code to ``OrderStatus``.

    Returns ``None`` for anything unrecognised.  Unknown codes are never
    defaulted, since a default could move an order backwards.
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        stripped = raw.strip()
        if stripped.isdigit():
            return _VENUE_STATUS_MAP.get(int(stripped))
        return _VENUE_STATUS_MAP.get(stripped.upper())
    return _VENUE_STATUS_MAP.get(raw)


def is_terminal(status: OrderStatus) -> bool:
    """``True`` for statuses that never change again."""
    return status in TERMINAL_STATUSES


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    """``True`` when *current* → *new* is a forward move."""
    return new in _ALLOWED[current]
