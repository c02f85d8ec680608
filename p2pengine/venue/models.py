"""Venue data models — typed representations of the venue's C2C objects."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from p2pengine.positioning.models import Side
from p2pengine.sync.lifecycle import OrderStatus


@dataclass(frozen=True)
class OwnAd:
    """One of the merchant's own advertisements."""

    ad_no: str
    asset: str
    fiat: str
    side: Side
    price: Decimal
    online: bool = True


@dataclass(frozen=True)
class OrderPlacementRequest:
    """An order-placement payload.

    Exactly one of ``quantity`` (asset units) and ``fiat_amount`` is set.
    ``client_token`` is the idempotency token; it is identical on every
    attempt for the same dispatch.
    """

    asset: str
    fiat: str
    side: Side
    client_token: str
    quantity: Optional[Decimal] = None
    fiat_amount: Optional[Decimal] = None
    price: Optional[Decimal] = None
    ad_no: Optional[str] = None


@dataclass(frozen=True)
class PlacedOrder:
    """Response from a successful order placement."""

    order_number: str
    client_token: str


@dataclass(frozen=True)
class VenueOrder:
    """An order as reported by the venue.

    ``status`` is ``None`` when the venue reported a code we do not know.
    """

    order_number: str
    side: Side
    status: Optional[OrderStatus]
    raw_status: str
    asset: str
    fiat: str
    amount: Decimal
    counterparty_id: str = ""
    client_token: str = ""
    created_at: Optional[datetime] = None
