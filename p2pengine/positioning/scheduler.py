"""Ad positioning scheduler — one snapshot→filter→select→publish loop per tuple.

Each cycle walks ``IDLE → FETCHING → DECIDING → PUBLISHING → IDLE``.
Failures move the tuple to ``ERROR`` with a ``next_eligible_at``:
exponential backoff for transient venue errors, a fixed cooldown for
anything else.  Once that time passes the tuple returns to ``IDLE``.

Config is re-read from the store every cycle so operator updates apply
without a restart.  State is persisted after every phase change.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from p2pengine.backoff import backoff_delay
from p2pengine.config import Config
from p2pengine.errors import (
    EngineError,
    NoMarketData,
    RateLimited,
    UpstreamUnavailable,
    VenueError,
)
from p2pengine.positioning.fetcher import MarketSnapshotFetcher
from p2pengine.positioning.models import (
    PositioningConfig,
    SchedulerPhase,
    TupleKey,
    TupleState,
)
from p2pengine.positioning.pricing import select
from p2pengine.positioning.qualify import qualify
from p2pengine.repos.positioning_repo import PositioningRepo
from p2pengine.repos.tuple_state_repo import TupleStateRepo
from p2pengine.venue.client import VenueClient

logger = logging.getLogger("p2pengine.scheduler")

_TRANSIENT = (UpstreamUnavailable, RateLimited)


class PositioningScheduler:
    """Keeps one of our ads priced against its competitors.

    Args:
        config: Application configuration.
        client: The merchant's ``VenueClient`` (or a mock).
        positioning_repo: Store holding the tuple's ``PositioningConfig``.
        state_repo: Store for the tuple's ``TupleState``.
        key: The tuple this scheduler owns.
        fetcher: Snapshot fetcher; built from *client* when omitted.
    """

    def __init__(
        self,
        config: Config,
        client: VenueClient,
        positioning_repo: PositioningRepo,
        state_repo: TupleStateRepo,
        key: TupleKey,
        fetcher: Optional[MarketSnapshotFetcher] = None,
    ) -> None:
        self._config = config
        self._client = client
        self._positioning_repo = positioning_repo
        self._state_repo = state_repo
        self._key = key
        self._fetcher = fetcher or MarketSnapshotFetcher(client)
        self._state: Optional[TupleState] = None
        self._ad_no: str = ""
        self._running: bool = False
        self._cycle_count: int = 0

    @property
    def key(self) -> TupleKey:
        return self._key

    @property
    def state(self) -> TupleState:
        if self._state is None:
            self._state = self._state_repo.get(self._key) or TupleState(key=self._key)
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Load persisted state and resolve our ad from the venue.

        When the store has no published price (first run, or a wiped
        database) the current price of our own ad seeds it, so the first
        cycle's hysteresis check compares against what is really live.
        """
        state = self.state
        cfg = self._positioning_repo.get_config(self._key)
        self._ad_no = cfg.ad_no if cfg else ""

        if state.current_published_price is None or not self._ad_no:
            try:
                own_ads = await self._client.list_my_ads()
            except VenueError as exc:
                logger.error(
                    "Tuple %s — could not list own ads (venue unreachable?): %s",
                    self._key, exc,
                )
                own_ads = []

            for ad in own_ads:
                matches = (
                    ad.ad_no == self._ad_no if self._ad_no
                    else (ad.asset, ad.fiat, ad.side) == (
                        self._key.asset, self._key.fiat, self._key.side,
                    )
                )
                if matches:
                    self._ad_no = ad.ad_no
                    if state.current_published_price is None:
                        state.current_published_price = ad.price
                    logger.info(
                        "Tuple %s — seeded from venue ad %s at %s",
                        self._key, ad.ad_no, ad.price,
                    )
                    break

        self._save(state)
        self._running = True

    def stop(self) -> None:
        """Signal the loop to stop after the current cycle."""
        self._running = False

    # ── Polling loop ─────────────────────────────────────────────────────

    async def run(self, max_cycles: int = 0) -> list[dict]:
        """Run cycles at the tuple's interval until stopped.

        Args:
            max_cycles: Stop after this many cycles (0 = unlimited).

        Returns:
            List of per-cycle result dicts.
        """
        results: list[dict] = []
        cycle = 0

        while self._running:
            cycle += 1
            self._cycle_count += 1
            try:
                result = await self.run_once()
            except Exception as exc:
                # A store failure must not kill the other tuples.
                logger.exception("Tuple %s — cycle %d crashed", self._key, cycle)
                result = {"action": "error", "reason": str(exc)}
            results.append(result)
            logger.debug("Tuple %s — cycle %d: %s", self._key, cycle, result["action"])

            if max_cycles > 0 and cycle >= max_cycles:
                break

            # Interruptible sleep, interval re-read each cycle.
            cfg = self._positioning_repo.get_config(self._key)
            interval = max(
                cfg.interval_seconds if cfg else self._config.rate_limit_window_seconds,
                self._config.rate_limit_window_seconds,
            )
            for _ in range(int(interval)):
                if not self._running:
                    break
                await asyncio.sleep(1)

        return results

    # ── Single cycle ─────────────────────────────────────────────────────

    async def run_once(self, now: Optional[datetime] = None) -> dict:
        """Execute one positioning cycle.

        Returns:
            Result dict with an ``action`` key: ``published``,
            ``unchanged``, ``skipped``, ``backoff``, ``error`` or
            ``disabled``.
        """
        now = now or datetime.now(timezone.utc)
        state = self.state

        cfg = self._positioning_repo.get_config(self._key)
        if cfg is None or not cfg.enabled:
            return {"action": "disabled"}
        if cfg.ad_no:
            self._ad_no = cfg.ad_no

        if state.next_eligible_at is not None and now < state.next_eligible_at:
            return {
                "action": "backoff",
                "until": state.next_eligible_at.isoformat(),
            }
        if state.phase == SchedulerPhase.ERROR:
            logger.info("Tuple %s — cooldown over, back to IDLE", self._key)
        state.next_eligible_at = None

        # 1 ── Fetch
        self._set_phase(state, SchedulerPhase.FETCHING, now)
        try:
            ads = await self._fetcher.fetch(
                cfg.asset, cfg.fiat, cfg.side, page_size=cfg.page_size,
            )
        except EngineError as exc:
            return self._fail(state, exc, now)

        # 2 ── Decide
        self._set_phase(state, SchedulerPhase.DECIDING, now)
        qualified = qualify(ads, cfg)
        try:
            decision = select(qualified, ads, cfg, now=now)
        except NoMarketData as exc:
            logger.warning("Tuple %s — skipping cycle: %s", self._key, exc)
            self._succeed(state, now)
            return {"action": "skipped", "reason": "no_market_data"}

        state.last_decision = decision
        current = state.current_published_price
        if current is not None and abs(decision.target_price - current) < cfg.min_price_change_threshold:
            self._positioning_repo.record_decision(self._key, decision, published=False)
            self._succeed(state, now)
            return {
                "action": "unchanged",
                "price": str(current),
                "target": str(decision.target_price),
            }

        if not self._ad_no:
            self._positioning_repo.record_decision(self._key, decision, published=False)
            self._succeed(state, now)
            logger.warning("Tuple %s — no ad to publish to, decision recorded only", self._key)
            return {"action": "skipped", "reason": "no_ad"}

        # 3 ── Publish
        self._set_phase(state, SchedulerPhase.PUBLISHING, now)
        try:
            await self._client.update_ad_price(self._ad_no, decision.target_price)
        except EngineError as exc:
            self._positioning_repo.record_decision(self._key, decision, published=False)
            return self._fail(state, exc, now)

        previous = state.current_published_price
        state.current_published_price = decision.target_price
        self._positioning_repo.record_decision(self._key, decision, published=True)
        self._succeed(state, now)
        logger.info(
            "Tuple %s — published %s (was %s, reference %s, %d qualified)",
            self._key, decision.target_price, previous,
            decision.reference_competitor_price, decision.qualified_competitor_count,
        )
        return {
            "action": "published",
            "price": str(decision.target_price),
            "previous": str(previous) if previous is not None else None,
            "qualified": decision.qualified_competitor_count,
        }

    # ── State helpers ────────────────────────────────────────────────────

    def _set_phase(self, state: TupleState, phase: SchedulerPhase, now: datetime) -> None:
        state.phase = phase
        state.updated_at = now
        self._save(state)

    def _succeed(self, state: TupleState, now: datetime) -> None:
        state.consecutive_failures = 0
        state.last_error = None
        self._set_phase(state, SchedulerPhase.IDLE, now)

    def _fail(self, state: TupleState, exc: EngineError, now: datetime) -> dict:
        """Park the tuple in ERROR until its backoff or cooldown expires."""
        state.consecutive_failures += 1
        state.last_error = f"{type(exc).__name__}: {exc}"

        if isinstance(exc, _TRANSIENT):
            delay = backoff_delay(
                self._config.scheduler_backoff_base_seconds,
                state.consecutive_failures - 1,
                self._config.scheduler_backoff_cap_seconds,
                getattr(exc, "retry_after", None),
            )
            action = "backoff"
            logger.warning(
                "Tuple %s — %s, backing off %.1fs (failure %d)",
                self._key, state.last_error, delay, state.consecutive_failures,
            )
        else:
            delay = self._config.scheduler_error_cooldown_seconds
            action = "error"
            logger.error(
                "Tuple %s — %s, cooling down %.1fs",
                self._key, state.last_error, delay,
            )

        state.next_eligible_at = now + timedelta(seconds=delay)
        self._set_phase(state, SchedulerPhase.ERROR, now)
        return {"action": action, "reason": state.last_error, "delay": delay}

    def _save(self, state: TupleState) -> None:
        self._state_repo.save(state)

    def status(self) -> dict:
        state = self.state
        return {
            "tuple": str(self._key),
            "running": self._running,
            "cycle_count": self._cycle_count,
            "phase": state.phase.value,
            "current_published_price": (
                str(state.current_published_price)
                if state.current_published_price is not None else None
            ),
            "consecutive_failures": state.consecutive_failures,
            "last_error": state.last_error,
        }


def seed_configs(positioning_repo: PositioningRepo, configs: list[PositioningConfig]) -> None:
    """Write tuples from the merchants file into the store.

    Existing rows are replaced, so the merchants file wins on restart.
    """
    for cfg in configs:
        positioning_repo.upsert_config(cfg)
