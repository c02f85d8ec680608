"""Local order cache record."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from p2pengine.positioning.models import Side
from p2pengine.sync.lifecycle import OrderStatus, is_terminal


@dataclass(frozen=True)
class Order:
    """A venue order as last confirmed by the synchronizer.

    ``order_number`` is venue-assigned and globally unique.  ``dispatch_id``
    is set when the order was placed by the dispatch queue.
    """

    order_number: str
    merchant_id: str
    status: OrderStatus
    side: Side
    asset: str
    fiat: str
    amount: Decimal
    created_at: datetime
    last_synced_at: datetime
    counterparty_id: str = ""
    client_token: str = ""
    dispatch_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_dict(self) -> dict:
        return {
            "order_number": self.order_number,
            "merchant_id": self.merchant_id,
            "status": self.status.value,
            "side": self.side.value,
            "asset": self.asset,
            "fiat": self.fiat,
            "amount": str(self.amount),
            "counterparty_id": self.counterparty_id,
            "client_token": self.client_token,
            "dispatch_id": self.dispatch_id,
            "created_at": self.created_at.isoformat(),
            "last_synced_at": self.last_synced_at.isoformat(),
        }
