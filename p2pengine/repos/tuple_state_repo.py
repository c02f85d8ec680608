"""Tuple state repository — per-tuple scheduler state, persisted so a
restart resumes with the last published price and backoff."""

import json
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from p2pengine.positioning.models import (
    PricingDecision,
    SchedulerPhase,
    Side,
    TupleKey,
    TupleState,
)
from p2pengine.repos.db import from_iso, get_connection, to_iso


class TupleStateRepo:
    """Data access layer for ``TupleState`` records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    def save(self, state: TupleState) -> None:
        key = state.key
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO tuple_states
                    (merchant_id, asset, fiat, side, phase,
                     current_published_price, consecutive_failures,
                     next_eligible_at, last_error, last_decision_json,
                     updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (merchant_id, asset, fiat, side) DO UPDATE SET
                    phase = excluded.phase,
                    current_published_price = excluded.current_published_price,
                    consecutive_failures = excluded.consecutive_failures,
                    next_eligible_at = excluded.next_eligible_at,
                    last_error = excluded.last_error,
                    last_decision_json = excluded.last_decision_json,
                    updated_at = excluded.updated_at
                """,
                (
                    key.merchant_id, key.asset, key.fiat, key.side.value,
                    state.phase.value,
                    _str_or_none(state.current_published_price),
                    state.consecutive_failures,
                    to_iso(state.next_eligible_at),
                    state.last_error,
                    _decision_to_json(state.last_decision),
                    to_iso(state.updated_at or datetime.now(timezone.utc)),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, key: TupleKey) -> Optional[TupleState]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                """
                SELECT * FROM tuple_states
                WHERE merchant_id = ? AND asset = ? AND fiat = ? AND side = ?
                """,
                (key.merchant_id, key.asset, key.fiat, key.side.value),
            ).fetchone()
            return _row_to_state(row) if row else None
        finally:
            conn.close()

    def list_for_merchant(self, merchant_id: str) -> list[TupleState]:
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM tuple_states WHERE merchant_id = ? "
                "ORDER BY asset, fiat, side",
                (merchant_id,),
            ).fetchall()
            return [_row_to_state(r) for r in rows]
        finally:
            conn.close()


def state_to_dict(state: TupleState) -> dict:
    """JSON-safe view of a tuple state for the operator API."""
    return {
        "merchant_id": state.key.merchant_id,
        "asset": state.key.asset,
        "fiat": state.key.fiat,
        "side": state.key.side.value,
        "phase": state.phase.value,
        "current_published_price": _str_or_none(state.current_published_price),
        "consecutive_failures": state.consecutive_failures,
        "next_eligible_at": to_iso(state.next_eligible_at),
        "last_error": state.last_error,
        "last_decision": (
            json.loads(_decision_to_json(state.last_decision))
            if state.last_decision else None
        ),
        "updated_at": to_iso(state.updated_at),
    }


def _str_or_none(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _decision_to_json(decision: Optional[PricingDecision]) -> Optional[str]:
    if decision is None:
        return None
    return json.dumps({
        "target_price": str(decision.target_price),
        "reference_competitor_price": str(decision.reference_competitor_price),
        "qualified_competitor_count": decision.qualified_competitor_count,
        "computed_at": decision.computed_at.isoformat(),
    })


def _decision_from_json(raw: Optional[str]) -> Optional[PricingDecision]:
    if not raw:
        return None
    data = json.loads(raw)
    return PricingDecision(
        target_price=Decimal(data["target_price"]),
        reference_competitor_price=Decimal(data["reference_competitor_price"]),
        qualified_competitor_count=int(data["qualified_competitor_count"]),
        computed_at=datetime.fromisoformat(data["computed_at"]),
    )


def _row_to_state(row: sqlite3.Row) -> TupleState:
    price = row["current_published_price"]
    return TupleState(
        key=TupleKey(row["merchant_id"], row["asset"], row["fiat"], Side(row["side"])),
        phase=SchedulerPhase(row["phase"]),
        current_published_price=Decimal(price) if price is not None else None,
        consecutive_failures=row["consecutive_failures"],
        next_eligible_at=from_iso(row["next_eligible_at"]),
        last_error=row["last_error"],
        last_decision=_decision_from_json(row["last_decision_json"]),
        updated_at=from_iso(row["updated_at"]),
    )
