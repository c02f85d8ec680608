"""SchedulerManager — runs every positioning tuple concurrently.

Each enabled tuple of each enabled merchant gets its own
``PositioningScheduler``.  Tuples run as independent ``asyncio`` tasks,
so a slow or failing tuple never delays another.
"""

import asyncio
import logging
from typing import Optional

from p2pengine.config import Config, MerchantConfig
from p2pengine.positioning.models import TupleKey
from p2pengine.positioning.scheduler import PositioningScheduler, seed_configs
from p2pengine.repos.positioning_repo import PositioningRepo
from p2pengine.repos.tuple_state_repo import TupleStateRepo
from p2pengine.venue.client import VenueClient

logger = logging.getLogger("p2pengine.scheduler_manager")


class SchedulerManager:
    """Lifecycle manager for all positioning tuples.

    Args:
        config: Global ``Config`` loaded from ``.env``.
        clients: ``{merchant_id: VenueClient}``.
        merchants: Merchants loaded from the merchants file.
        positioning_repo: Config and decision store.
        state_repo: Tuple state store.
    """

    def __init__(
        self,
        config: Config,
        clients: dict[str, VenueClient],
        merchants: list[MerchantConfig],
        positioning_repo: PositioningRepo,
        state_repo: TupleStateRepo,
    ) -> None:
        self._config = config
        self._clients = clients
        self._merchants = [m for m in merchants if m.enabled]
        self._positioning_repo = positioning_repo
        self._state_repo = state_repo
        self._schedulers: dict[str, PositioningScheduler] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ── Public API ───────────────────────────────────────────────────────

    @property
    def schedulers(self) -> dict[str, PositioningScheduler]:
        """Map of tuple name → ``PositioningScheduler``."""
        return dict(self._schedulers)

    def build_schedulers(self) -> None:
        """Seed configs and instantiate one scheduler per enabled tuple."""
        for merchant in self._merchants:
            seed_configs(self._positioning_repo, merchant.tuples)
            client = self._clients[merchant.merchant_id]
            for cfg in merchant.tuples:
                if not cfg.enabled:
                    continue
                scheduler = PositioningScheduler(
                    config=self._config,
                    client=client,
                    positioning_repo=self._positioning_repo,
                    state_repo=self._state_repo,
                    key=cfg.key,
                )
                self._schedulers[str(cfg.key)] = scheduler
                logger.info(
                    "Registered tuple %s (%s, every %ds)",
                    cfg.key, cfg.match_mode.value, cfg.interval_seconds,
                )

    async def run_all(self) -> dict[str, list[dict]]:
        """Launch all tuples concurrently and wait for them to finish.

        Returns:
            ``{tuple_name: [cycle_results]}`` for every tuple.
        """
        if not self._schedulers:
            self.build_schedulers()

        async def _run_tuple(name: str, scheduler: PositioningScheduler):
            await scheduler.initialize()
            logger.info("Starting tuple %s.", name)
            return await scheduler.run()

        tasks = {
            name: asyncio.create_task(_run_tuple(name, sched))
            for name, sched in self._schedulers.items()
        }
        self._tasks = tasks

        results: dict[str, list[dict]] = {}
        for name, task in tasks.items():
            try:
                results[name] = await task
            except Exception as exc:  # pragma: no cover
                logger.error("Tuple %s crashed: %s", name, exc)
                results[name] = [{"action": "error", "reason": str(exc)}]

        return results

    def stop_all(self) -> None:
        """Signal every scheduler to stop gracefully."""
        for name, scheduler in self._schedulers.items():
            scheduler.stop()
            logger.info("Stop signal sent to tuple %s.", name)

    def stop_tuple(self, key: TupleKey) -> None:
        """Stop a single tuple."""
        scheduler = self._schedulers.get(str(key))
        if scheduler:
            scheduler.stop()
            logger.info("Stop signal sent to tuple %s.", key)

    def get_status(self, merchant_id: Optional[str] = None) -> dict:
        """Return per-tuple scheduler status, optionally for one merchant."""
        return {
            "tuples": {
                name: sched.status()
                for name, sched in self._schedulers.items()
                if merchant_id is None or sched.key.merchant_id == merchant_id
            }
        }
