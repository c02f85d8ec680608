"""Order repository — SQLite CRUD for the local order cache."""

import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import Optional

from p2pengine.positioning.models import Side
from p2pengine.repos.db import as_utc, from_iso, get_connection, to_iso
from p2pengine.sync.lifecycle import TERMINAL_STATUSES, OrderStatus
from p2pengine.sync.models import Order


class OrderRepo:
    """Data access layer for order records.

    Status writes are conditional on the expected current status, so the
    synchronizer never overwrites a newer value it has not seen.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    # ── Write ────────────────────────────────────────────────────────────

    def insert_if_absent(self, order: Order) -> bool:
        """Insert *order* unless its order number is already cached.

        Returns:
            ``True`` if a row was inserted.
        """
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO orders
                    (order_number, merchant_id, status, side, asset, fiat,
                     amount, counterparty_id, client_token, dispatch_id,
                     created_at, last_synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    order.order_number, order.merchant_id, order.status.value,
                    order.side.value, order.asset, order.fiat,
                    str(order.amount), order.counterparty_id,
                    order.client_token, order.dispatch_id,
                    to_iso(order.created_at), to_iso(order.last_synced_at),
                ),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def update_status(
        self,
        order_number: str,
        expected: OrderStatus,
        new: OrderStatus,
        synced_at: datetime,
    ) -> bool:
        """Set status to *new* if it is still *expected*."""
        conn = get_connection(self._db_path)
        try:
            cur = conn.execute(
                """
                UPDATE orders SET status = ?, last_synced_at = ?
                WHERE order_number = ? AND status = ?
                """,
                (new.value, synced_at.isoformat(), order_number, expected.value),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def touch(self, order_number: str, synced_at: datetime) -> None:
        """Record that the venue confirmed the cached status."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                "UPDATE orders SET last_synced_at = ? WHERE order_number = ?",
                (synced_at.isoformat(), order_number),
            )
            conn.commit()
        finally:
            conn.close()

    def link_dispatch(self, order_number: str, dispatch_id: str, client_token: str) -> None:
        """Attach a dispatch to an order discovered before it was linked."""
        conn = get_connection(self._db_path)
        try:
            conn.execute(
                """
                UPDATE orders SET dispatch_id = ?, client_token = ?
                WHERE order_number = ? AND dispatch_id IS NULL
                """,
                (dispatch_id, client_token, order_number),
            )
            conn.commit()
        finally:
            conn.close()

    # ── Read ─────────────────────────────────────────────────────────────

    def get(self, order_number: str, merchant_id: Optional[str] = None) -> Optional[Order]:
        sql = "SELECT * FROM orders WHERE order_number = ?"
        params: list = [order_number]
        if merchant_id is not None:
            sql += " AND merchant_id = ?"
            params.append(merchant_id)

        conn = get_connection(self._db_path)
        try:
            row = conn.execute(sql, params).fetchone()
            return _row_to_order(row) if row else None
        finally:
            conn.close()

    def find_by_client_token(self, merchant_id: str, client_token: str) -> Optional[Order]:
        conn = get_connection(self._db_path)
        try:
            row = conn.execute(
                "SELECT * FROM orders WHERE merchant_id = ? AND client_token = ?",
                (merchant_id, client_token),
            ).fetchone()
            return _row_to_order(row) if row else None
        finally:
            conn.close()

    def list_for_merchant(
        self,
        merchant_id: str,
        status: Optional[OrderStatus] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 200,
    ) -> list[Order]:
        """Return a merchant's orders, newest first, filtered by status and
        creation time range.  Naive bounds are taken as UTC."""
        conditions = ["merchant_id = ?"]
        params: list = [merchant_id]
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)

        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                f"SELECT * FROM orders WHERE {' AND '.join(conditions)} "
                "ORDER BY created_at DESC",
                params,
            ).fetchall()
        finally:
            conn.close()

        since, until = as_utc(since), as_utc(until)
        orders = []
        for row in rows:
            order = _row_to_order(row)
            if since is not None and order.created_at < since:
                continue
            if until is not None and order.created_at > until:
                continue
            orders.append(order)
        return orders[:limit]

    def list_open(self, merchant_id: str) -> list[Order]:
        """Orders not yet in a terminal status."""
        terminal = [s.value for s in TERMINAL_STATUSES]
        placeholders = ", ".join("?" for _ in terminal)
        conn = get_connection(self._db_path)
        try:
            rows = conn.execute(
                f"SELECT * FROM orders WHERE merchant_id = ? "
                f"AND status NOT IN ({placeholders})",
                (merchant_id, *terminal),
            ).fetchall()
            return [_row_to_order(r) for r in rows]
        finally:
            conn.close()


def _row_to_order(row: sqlite3.Row) -> Order:
    return Order(
        order_number=row["order_number"],
        merchant_id=row["merchant_id"],
        status=OrderStatus(row["status"]),
        side=Side(row["side"]),
        asset=row["asset"],
        fiat=row["fiat"],
        amount=Decimal(row["amount"]),
        created_at=from_iso(row["created_at"]),
        last_synced_at=from_iso(row["last_synced_at"]),
        counterparty_id=row["counterparty_id"],
        client_token=row["client_token"],
        dispatch_id=row["dispatch_id"],
    )
