"""Order lifecycle synchronizer — reconciles the local order cache with
the venue.

The synchronizer is the only writer of ``Order.status``.  It applies a
venue-reported status only when ``can_transition`` allows it; anything
else (a terminal order "reopening", a backward move) is logged as an
anomaly and ignored.  A failed venue call leaves the cache untouched.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from p2pengine.config import Config
from p2pengine.errors import NotFound, VenueError
from p2pengine.positioning.models import Side
from p2pengine.repos.order_repo import OrderRepo
from p2pengine.sync.lifecycle import can_transition
from p2pengine.sync.models import Order
from p2pengine.venue.client import VenueClient
from p2pengine.venue.models import VenueOrder

logger = logging.getLogger("p2pengine.sync")


class OrderSynchronizer:
    """Polls venue order state for every merchant.

    Args:
        config: Application configuration.
        clients: ``{merchant_id: VenueClient}``.
        order_repo: The local order cache.
    """

    def __init__(
        self,
        config: Config,
        clients: dict,
        order_repo: OrderRepo,
    ) -> None:
        self._config = config
        self._clients = clients
        self._order_repo = order_repo
        self._running: bool = False

    def _client(self, merchant_id: str) -> VenueClient:
        client = self._clients.get(merchant_id)
        if client is None:
            raise NotFound(f"Unknown merchant: {merchant_id}")
        return client

    # ── Sync operations ──────────────────────────────────────────────────

    async def sync_merchant(self, merchant_id: str, now: Optional[datetime] = None) -> dict:
        """Pull recent orders for *merchant_id* and apply their status.

        Orders inside the sync window are listed per side; cached open
        orders older than the window are refreshed one by one.

        Returns:
            Counts per outcome, or ``{"action": "error", ...}`` when the
            venue could not be read.
        """
        now = now or datetime.now(timezone.utc)
        start = now - timedelta(hours=self._config.sync_window_hours)
        client = self._client(merchant_id)

        venue_orders: list[VenueOrder] = []
        try:
            for side in (Side.BUY, Side.SELL):
                venue_orders.extend(await client.list_orders(side, start, now))
        except VenueError as exc:
            logger.warning("Sync %s — venue unavailable, cache unchanged: %s", merchant_id, exc)
            return {"action": "error", "reason": str(exc)}

        counts = {"discovered": 0, "updated": 0, "unchanged": 0, "anomalies": 0, "skipped": 0}
        seen: set[str] = set()
        for venue_order in venue_orders:
            seen.add(venue_order.order_number)
            counts[self._apply(merchant_id, venue_order, now)] += 1

        for cached in self._order_repo.list_open(merchant_id):
            if cached.order_number in seen:
                continue
            try:
                venue_order = await client.get_order(cached.order_number)
            except VenueError as exc:
                logger.warning(
                    "Sync %s — could not refresh order %s: %s",
                    merchant_id, cached.order_number, exc,
                )
                continue
            counts[self._apply(merchant_id, venue_order, now)] += 1

        if counts["discovered"] or counts["updated"] or counts["anomalies"]:
            logger.info("Sync %s — %s", merchant_id, counts)
        return {"action": "synced", **counts}

    async def sync_order(
        self,
        merchant_id: str,
        order_number: str,
        now: Optional[datetime] = None,
    ) -> Optional[Order]:
        """Refresh one order on demand and return the cached record.

        On venue failure the cached record is returned unchanged.
        """
        now = now or datetime.now(timezone.utc)
        try:
            venue_order = await self._client(merchant_id).get_order(order_number)
        except VenueError as exc:
            logger.warning("Sync order %s — venue unavailable: %s", order_number, exc)
        else:
            self._apply(merchant_id, venue_order, now)
        return self._order_repo.get(order_number, merchant_id=merchant_id)

    async def resolve_client_token(
        self,
        merchant_id: str,
        client_token: str,
        since: datetime,
    ) -> Optional[Order]:
        """Find the order the venue created for *client_token*, if any.

        Checks the cache first, then the venue's BUY orders since *since*.
        A match found on the venue is cached before returning.

        Raises:
            VenueError: the venue could not be read, so the outcome is
                still unknown.
        """
        cached = self._order_repo.find_by_client_token(merchant_id, client_token)
        if cached is not None:
            return cached

        now = datetime.now(timezone.utc)
        orders = await self._client(merchant_id).list_orders(Side.BUY, since, now)
        for venue_order in orders:
            if venue_order.client_token == client_token:
                self._apply(merchant_id, venue_order, now)
                return self._order_repo.get(venue_order.order_number, merchant_id=merchant_id)
        return None

    # ── Reconciliation ───────────────────────────────────────────────────

    def _apply(self, merchant_id: str, venue_order: VenueOrder, now: datetime) -> str:
        """Apply one venue observation to the cache; return the outcome."""
        if venue_order.status is None:
            logger.debug(
                "Order %s — unknown venue status %r, skipped",
                venue_order.order_number, venue_order.raw_status,
            )
            return "skipped"

        cached = self._order_repo.get(venue_order.order_number)
        if cached is None:
            inserted = self._order_repo.insert_if_absent(
                Order(
                    order_number=venue_order.order_number,
                    merchant_id=merchant_id,
                    status=venue_order.status,
                    side=venue_order.side,
                    asset=venue_order.asset,
                    fiat=venue_order.fiat,
                    amount=venue_order.amount,
                    created_at=venue_order.created_at or now,
                    last_synced_at=now,
                    counterparty_id=venue_order.counterparty_id,
                    client_token=venue_order.client_token,
                )
            )
            if inserted:
                logger.info(
                    "Order %s discovered for %s (%s)",
                    venue_order.order_number, merchant_id, venue_order.status.value,
                )
                return "discovered"
            cached = self._order_repo.get(venue_order.order_number)
            if cached is None:
                return "skipped"

        if cached.merchant_id != merchant_id:
            logger.warning(
                "Anomaly: order %s reported for %s but cached for %s — ignored",
                venue_order.order_number, merchant_id, cached.merchant_id,
            )
            return "anomalies"

        if cached.status == venue_order.status:
            self._order_repo.touch(cached.order_number, now)
            return "unchanged"

        if not can_transition(cached.status, venue_order.status):
            logger.warning(
                "Anomaly: order %s venue reports %s but cache has %s — not applied",
                cached.order_number, venue_order.status.value, cached.status.value,
            )
            return "anomalies"

        if self._order_repo.update_status(
            cached.order_number, cached.status, venue_order.status, now,
        ):
            logger.info(
                "Order %s: %s → %s",
                cached.order_number, cached.status.value, venue_order.status.value,
            )
            return "updated"
        # Lost a race with a concurrent sync; the next poll re-checks.
        return "skipped"

    # ── Polling loop ─────────────────────────────────────────────────────

    async def run(self, merchant_ids: list[str], max_cycles: int = 0) -> None:
        """Sync every merchant each ``sync_interval_seconds`` until stopped."""
        self._running = True
        cycle = 0
        while self._running:
            cycle += 1
            for merchant_id in merchant_ids:
                try:
                    await self.sync_merchant(merchant_id)
                except Exception:
                    logger.exception("Sync %s — cycle %d crashed", merchant_id, cycle)

            if max_cycles > 0 and cycle >= max_cycles:
                break

            for _ in range(self._config.sync_interval_seconds):
                if not self._running:
                    break
                await asyncio.sleep(1)
        self._running = False

    def stop(self) -> None:
        self._running = False
