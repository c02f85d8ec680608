"""Dispatch repository — SQLite persistence for the dispatch queue.

State changes go through :meth:`DispatchRepo.transition`, a conditional
``UPDATE ... WHERE state IN (...)``.  A transition that lost a race
updates no row and reports ``False``.
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Iterable, Optional

from p2pengine.dispatch.models import (
    RUNNABLE_DISPATCH_STATES,
    Dispatch,
    DispatchSource,
    DispatchState,
)
from p2pengine.repos.db import from_iso, get_connection, to_iso

_UPDATABLE_FIELDS = {
    "attempt_count",
    "last_error",
    "order_number",
    "next_attempt_at",
    "cancel_requested",
    "ambiguous",
}


class DispatchRepo:
    """Data access layer for dispatch records.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert(self, dispatch: Dispatch) -> None:
        """Persist a new dispatch."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                INSERT INTO dispatches
                    (id, merchant_id, intent_json, state, attempt_count,
                     idempotency_token, source, last_error, order_number,
                     next_attempt_at, cancel_requested, ambiguous,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    dispatch.id, dispatch.merchant_id,
                    json.dumps(dispatch.intent), dispatch.state.value,
                    dispatch.attempt_count, dispatch.idempotency_token,
                    dispatch.source.value, dispatch.last_error,
                    dispatch.order_number, to_iso(dispatch.next_attempt_at),
                    int(dispatch.cancel_requested), int(dispatch.ambiguous),
                    to_iso(dispatch.created_at), to_iso(dispatch.updated_at),
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def transition(
        self,
        dispatch_id: str,
        from_states: Iterable[DispatchState],
        to_state: DispatchState,
        **fields,
    ) -> bool:
        """Move a dispatch to *to_state* if it is currently in *from_states*.

        Extra keyword arguments update the named columns in the same
        statement.

        Returns:
            ``True`` if a row was updated.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update dispatch field(s): {sorted(unknown)}")

        sets = ["state = ?", "updated_at = ?"]
        params: list = [to_state.value, datetime.now(timezone.utc).isoformat()]
        for name, value in fields.items():
            sets.append(f"{name} = ?")
            params.append(_to_column(value))

        states = [s.value for s in from_states]
        placeholders = ", ".join("?" for _ in states)
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                f"UPDATE dispatches SET {', '.join(sets)} "
                f"WHERE id = ? AND state IN ({placeholders})",
                (*params, dispatch_id, *states),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get(self, dispatch_id: str, merchant_id: Optional[str] = None) -> Optional[Dispatch]:
        """Return one dispatch, optionally scoped to a merchant."""
        sql = "SELECT * FROM dispatches WHERE id = ?"
        params: list = [dispatch_id]
        if merchant_id is not None:
            sql += " AND merchant_id = ?"
            params.append(merchant_id)

        conn = get_connection(self._db_path)
        try:
            row = conn.execute(sql, params).fetchone()
            return _row_to_dispatch(row) if row else None
        finally:
            conn.close()

    def list_for_merchant(
        self,
        merchant_id: str,
        state: Optional[DispatchState] = None,
        limit: int = 100,
    ) -> list[Dispatch]:
        """Return a merchant's dispatches, newest first."""
        conditions = ["merchant_id = ?"]
        params: list = [merchant_id]
        if state is not None:
            conditions.append("state = ?")
            params.append(state.value)

        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                f"SELECT * FROM dispatches WHERE {' AND '.join(conditions)} "
                "ORDER BY created_at DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            return [_row_to_dispatch(r) for r in rows]
        finally:
            conn.close()

    def list_in_state(self, state: DispatchState) -> list[Dispatch]:
        """Return every dispatch in *state*, across merchants."""
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM dispatches WHERE state = ? ORDER BY created_at ASC",
                (state.value,),
            ).fetchall()
            return [_row_to_dispatch(r) for r in rows]
        finally:
            conn.close()

    def list_due(self, now: datetime) -> list[Dispatch]:
        """Return PENDING/RETRYING dispatches eligible at *now*, oldest first."""
        states = [s.value for s in RUNNABLE_DISPATCH_STATES]
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                "SELECT * FROM dispatches WHERE state IN (?, ?) "
                "ORDER BY created_at ASC",
                states,
            ).fetchall()
        finally:
            conn.close()

        due = []
        for row in rows:
            dispatch = _row_to_dispatch(row)
            if dispatch.next_attempt_at is None or dispatch.next_attempt_at <= now:
                due.append(dispatch)
        return due


def _to_column(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool):
        return int(value)
    return value


def _row_to_dispatch(row: sqlite3.Row) -> Dispatch:
    return Dispatch(
        id=row["id"],
        merchant_id=row["merchant_id"],
        intent=json.loads(row["intent_json"]),
        state=DispatchState(row["state"]),
        attempt_count=row["attempt_count"],
        idempotency_token=row["idempotency_token"],
        source=DispatchSource(row["source"]),
        created_at=from_iso(row["created_at"]),
        updated_at=from_iso(row["updated_at"]),
        last_error=row["last_error"],
        order_number=row["order_number"],
        next_attempt_at=from_iso(row["next_attempt_at"]),
        cancel_requested=bool(row["cancel_requested"]),
        ambiguous=bool(row["ambiguous"]),
    )
