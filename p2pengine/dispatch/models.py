"""Dispatch data models — the retry state machine's records."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class DispatchState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    RETRYING = "RETRYING"
    DEAD = "DEAD"
    CANCELLED = "CANCELLED"


TERMINAL_DISPATCH_STATES = frozenset({
    DispatchState.SUCCEEDED,
    DispatchState.DEAD,
    DispatchState.CANCELLED,
})

# States a worker may pick up.
RUNNABLE_DISPATCH_STATES = frozenset({DispatchState.PENDING, DispatchState.RETRYING})


class DispatchSource(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


@dataclass(frozen=True)
class Dispatch:
    """A queued buy intent and its attempt history.

    ``idempotency_token`` is generated once at enqueue time and sent with
    every placement attempt.  ``ambiguous`` is set when the last attempt
    may have reached the venue; the next attempt resolves it first.
    """

    id: str
    merchant_id: str
    intent: dict
    state: DispatchState
    attempt_count: int
    idempotency_token: str
    source: DispatchSource
    created_at: datetime
    updated_at: datetime
    last_error: Optional[str] = None
    order_number: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    cancel_requested: bool = False
    ambiguous: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_DISPATCH_STATES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "intent": self.intent,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "idempotency_token": self.idempotency_token,
            "source": self.source.value,
            "last_error": self.last_error,
            "order_number": self.order_number,
            "next_attempt_at": _iso(self.next_attempt_at),
            "cancel_requested": self.cancel_requested,
            "ambiguous": self.ambiguous,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
