"""Tests for the snapshot fetcher, positioning scheduler and scheduler manager."""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from p2pengine.config import Config, MerchantConfig
from p2pengine.errors import RateLimited, UpstreamUnavailable, ValidationRejected
from p2pengine.positioning.fetcher import MarketSnapshotFetcher
from p2pengine.positioning.models import (
    CompetitorAd,
    PositioningConfig,
    SchedulerPhase,
    Side,
)
from p2pengine.positioning.scheduler import PositioningScheduler
from p2pengine.repos.db import init_db
from p2pengine.repos.positioning_repo import PositioningRepo
from p2pengine.repos.tuple_state_repo import TupleStateRepo
from p2pengine.scheduler_manager import SchedulerManager
from p2pengine.venue.models import OwnAd

_T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_config(**overrides) -> Config:
    base = Config(
        venue_base_url="https://api.venue.test",
        market_search_url="https://p2p.venue.test/search",
        merchants_file="merchants.json",
        request_timeout_seconds=5.0,
        rate_limit_window_seconds=5,
        scheduler_backoff_base_seconds=5.0,
        scheduler_backoff_cap_seconds=300.0,
        scheduler_error_cooldown_seconds=30.0,
        dispatch_max_attempts=3,
        dispatch_backoff_base_seconds=2.0,
        dispatch_backoff_cap_seconds=120.0,
        dispatch_concurrency_per_merchant=1,
        dispatch_poll_seconds=1.0,
        sync_interval_seconds=15,
        sync_window_hours=24,
        db_path=":memory:",
        log_level="INFO",
        api_port=8080,
    )
    return replace(base, **overrides)


def _ad(price, nickname="rival", orders=50, qty="100") -> CompetitorAd:
    return CompetitorAd(
        advertiser_id=f"id-{nickname}",
        nickname=nickname,
        side=Side.SELL,
        price=Decimal(str(price)),
        available_quantity=Decimal(qty),
        counterparty_order_count=orders,
        fiat="MXN",
        asset="USDT",
    )


def _tuple_cfg(**overrides) -> PositioningConfig:
    values = dict(
        merchant_id="acme",
        asset="USDT",
        fiat="MXN",
        side=Side.SELL,
        own_nickname="AcmeOTC",
        ad_no="A1",
        undercut_amount=Decimal("0.05"),
        min_price_change_threshold=Decimal("0.02"),
    )
    values.update(overrides)
    return PositioningConfig(**values)


@pytest.fixture
def repos(tmp_path):
    db_path = str(tmp_path / "test.db")
    init_db(db_path)
    return PositioningRepo(db_path), TupleStateRepo(db_path)


def _make_scheduler(repos, client, cfg=None, config=None) -> PositioningScheduler:
    positioning_repo, state_repo = repos
    cfg = cfg or _tuple_cfg()
    positioning_repo.upsert_config(cfg)
    return PositioningScheduler(
        config=config or _make_config(),
        client=client,
        positioning_repo=positioning_repo,
        state_repo=state_repo,
        key=cfg.key,
    )


def _make_client(ads=None, own_ads=None) -> AsyncMock:
    client = AsyncMock()
    client.search_ads.return_value = ads if ads is not None else []
    client.list_my_ads.return_value = own_ads or []
    client.update_ad_price.return_value = None
    return client


# ── Fetcher ──────────────────────────────────────────────────────────────


class TestFetcher:
    @pytest.mark.asyncio
    async def test_searches_opposite_tab_and_clamps_rows(self):
        client = _make_client(ads=[_ad(17)])
        ads = await MarketSnapshotFetcher(client).fetch("USDT", "MXN", Side.SELL, page_size=100)
        assert len(ads) == 1
        client.search_ads.assert_awaited_once_with("USDT", "MXN", Side.BUY, page=1, rows=20)

    @pytest.mark.asyncio
    async def test_multi_page_stops_on_empty_page(self):
        client = _make_client()
        client.search_ads.side_effect = [[_ad(17)], [_ad(18)], [], [_ad(19)]]
        ads = await MarketSnapshotFetcher(client).fetch("USDT", "MXN", Side.BUY, pages=4)
        assert [a.price for a in ads] == [Decimal("17"), Decimal("18")]
        assert client.search_ads.await_count == 3


# ── Scheduler cycles ─────────────────────────────────────────────────────


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_publishes_undercut_price(self, repos):
        client = _make_client(ads=[_ad("17.50"), _ad("17.60", nickname="b")])
        scheduler = _make_scheduler(repos, client)

        result = await scheduler.run_once(now=_T0)

        assert result["action"] == "published"
        assert result["price"] == "17.45"
        client.update_ad_price.assert_awaited_once_with("A1", Decimal("17.45"))
        assert scheduler.state.phase == SchedulerPhase.IDLE
        assert scheduler.state.current_published_price == Decimal("17.45")

    @pytest.mark.asyncio
    async def test_hysteresis_skips_small_change(self, repos):
        client = _make_client(ads=[_ad("17.50")])
        scheduler = _make_scheduler(repos, client)
        await scheduler.run_once(now=_T0)

        client.search_ads.return_value = [_ad("17.51")]
        result = await scheduler.run_once(now=_T0 + timedelta(seconds=10))

        assert result["action"] == "unchanged"
        assert client.update_ad_price.await_count == 1

    @pytest.mark.asyncio
    async def test_change_at_threshold_publishes(self, repos):
        client = _make_client(ads=[_ad("17.50")])
        scheduler = _make_scheduler(repos, client)
        await scheduler.run_once(now=_T0)

        client.search_ads.return_value = [_ad("17.48")]
        result = await scheduler.run_once(now=_T0 + timedelta(seconds=10))

        assert result["action"] == "published"
        assert result["price"] == "17.43"

    @pytest.mark.asyncio
    async def test_no_market_data_skips_without_publishing(self, repos):
        client = _make_client(ads=[])
        scheduler = _make_scheduler(repos, client)

        result = await scheduler.run_once(now=_T0)

        assert result == {"action": "skipped", "reason": "no_market_data"}
        client.update_ad_price.assert_not_awaited()
        assert scheduler.state.phase == SchedulerPhase.IDLE

    @pytest.mark.asyncio
    async def test_own_ad_never_used_as_reference(self, repos):
        client = _make_client(ads=[_ad("17.00", nickname="AcmeOTC"), _ad("17.50")])
        scheduler = _make_scheduler(repos, client)

        result = await scheduler.run_once(now=_T0)
        assert result["price"] == "17.45"

    @pytest.mark.asyncio
    async def test_disabled_tuple_does_nothing(self, repos):
        client = _make_client(ads=[_ad("17.50")])
        scheduler = _make_scheduler(repos, client, cfg=_tuple_cfg(enabled=False))

        assert (await scheduler.run_once(now=_T0))["action"] == "disabled"
        client.search_ads.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_config_update_applies_next_cycle(self, repos):
        client = _make_client(ads=[_ad("17.50")])
        scheduler = _make_scheduler(repos, client)
        await scheduler.run_once(now=_T0)

        positioning_repo, _ = repos
        positioning_repo.upsert_config(_tuple_cfg(undercut_amount=Decimal("0.20")))
        result = await scheduler.run_once(now=_T0 + timedelta(seconds=10))

        assert result["price"] == "17.30"

    @pytest.mark.asyncio
    async def test_decisions_recorded(self, repos):
        client = _make_client(ads=[_ad("17.50")])
        scheduler = _make_scheduler(repos, client)
        await scheduler.run_once(now=_T0)

        positioning_repo, _ = repos
        decisions = positioning_repo.list_decisions("acme")
        assert len(decisions) == 1
        assert decisions[0]["target_price"] == "17.45"
        assert decisions[0]["published"] is True


class TestBackoff:
    @pytest.mark.asyncio
    async def test_upstream_failure_backs_off_exponentially(self, repos):
        client = _make_client()
        client.search_ads.side_effect = UpstreamUnavailable("503")
        scheduler = _make_scheduler(repos, client)

        first = await scheduler.run_once(now=_T0)
        assert first["action"] == "backoff"
        assert first["delay"] == 5.0
        assert scheduler.state.phase == SchedulerPhase.ERROR

        # Still inside the backoff window: no venue call
        blocked = await scheduler.run_once(now=_T0 + timedelta(seconds=1))
        assert blocked["action"] == "backoff"
        assert client.search_ads.await_count == 1

        second = await scheduler.run_once(now=_T0 + timedelta(seconds=6))
        assert second["delay"] == 10.0
        assert scheduler.state.consecutive_failures == 2

    @pytest.mark.asyncio
    async def test_rate_limited_honours_retry_after(self, repos):
        client = _make_client()
        client.search_ads.side_effect = RateLimited("429", retry_after=60)
        scheduler = _make_scheduler(repos, client)

        result = await scheduler.run_once(now=_T0)
        assert result["delay"] == 60.0
        assert scheduler.state.next_eligible_at == _T0 + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_recovers_to_idle_and_resets_failures(self, repos):
        client = _make_client()
        client.search_ads.side_effect = UpstreamUnavailable("503")
        scheduler = _make_scheduler(repos, client)
        await scheduler.run_once(now=_T0)

        client.search_ads.side_effect = None
        client.search_ads.return_value = [_ad("17.50")]
        result = await scheduler.run_once(now=_T0 + timedelta(seconds=5))

        assert result["action"] == "published"
        assert scheduler.state.phase == SchedulerPhase.IDLE
        assert scheduler.state.consecutive_failures == 0
        assert scheduler.state.last_error is None

    @pytest.mark.asyncio
    async def test_publish_rejection_uses_error_cooldown(self, repos):
        client = _make_client(ads=[_ad("17.50")])
        client.update_ad_price.side_effect = ValidationRejected("price out of range")
        scheduler = _make_scheduler(repos, client)

        result = await scheduler.run_once(now=_T0)

        assert result["action"] == "error"
        assert result["delay"] == 30.0
        assert scheduler.state.current_published_price is None


class TestRestartRecovery:
    @pytest.mark.asyncio
    async def test_state_survives_new_scheduler(self, repos):
        client = _make_client(ads=[_ad("17.50")])
        first = _make_scheduler(repos, client)
        await first.run_once(now=_T0)

        second = _make_scheduler(repos, client)
        await second.initialize()
        assert second.state.current_published_price == Decimal("17.45")
        client.list_my_ads.assert_not_awaited()

        result = await second.run_once(now=_T0 + timedelta(seconds=10))
        assert result["action"] == "unchanged"

    @pytest.mark.asyncio
    async def test_seeds_price_and_ad_from_venue(self, repos):
        own = OwnAd(ad_no="A9", asset="USDT", fiat="MXN", side=Side.SELL, price=Decimal("17.45"))
        client = _make_client(ads=[_ad("17.50")], own_ads=[own])
        scheduler = _make_scheduler(repos, client, cfg=_tuple_cfg(ad_no=""))

        await scheduler.initialize()
        assert scheduler.state.current_published_price == Decimal("17.45")

        client.search_ads.return_value = [_ad("17.40")]
        result = await scheduler.run_once(now=_T0)
        client.update_ad_price.assert_awaited_once_with("A9", Decimal("17.35"))
        assert result["action"] == "published"

    @pytest.mark.asyncio
    async def test_initialize_tolerates_venue_failure(self, repos):
        client = _make_client()
        client.list_my_ads.side_effect = UpstreamUnavailable("down")
        scheduler = _make_scheduler(repos, client, cfg=_tuple_cfg(ad_no=""))

        await scheduler.initialize()
        assert scheduler.running
        assert scheduler.state.current_published_price is None


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_stops_after_max_cycles(self, repos):
        client = _make_client(ads=[_ad("17.50")])
        scheduler = _make_scheduler(repos, client)
        await scheduler.initialize()

        results = await scheduler.run(max_cycles=1)
        assert [r["action"] for r in results] == ["published"]

    @pytest.mark.asyncio
    async def test_run_isolates_unexpected_errors(self, repos):
        client = _make_client()
        client.search_ads.side_effect = RuntimeError("boom")
        scheduler = _make_scheduler(repos, client)
        await scheduler.initialize()

        results = await scheduler.run(max_cycles=1)
        assert results[0]["action"] == "error"


# ── Manager ──────────────────────────────────────────────────────────────


class TestSchedulerManager:
    def _manager(self, repos, client, tuples) -> SchedulerManager:
        positioning_repo, state_repo = repos
        merchant = MerchantConfig(
            merchant_id="acme", api_key="k", api_secret="s",
            own_nickname="AcmeOTC", tuples=tuples,
        )
        return SchedulerManager(
            config=_make_config(),
            clients={"acme": client},
            merchants=[merchant],
            positioning_repo=positioning_repo,
            state_repo=state_repo,
        )

    def test_builds_one_scheduler_per_enabled_tuple(self, repos):
        tuples = [
            _tuple_cfg(),
            _tuple_cfg(side=Side.BUY, ad_no="A2"),
            _tuple_cfg(fiat="ARS", enabled=False),
        ]
        manager = self._manager(repos, _make_client(), tuples)
        manager.build_schedulers()

        assert sorted(manager.schedulers) == ["acme:USDT/MXN:BUY", "acme:USDT/MXN:SELL"]
        positioning_repo, _ = repos
        assert len(positioning_repo.list_configs("acme")) == 3

    def test_status_and_stop(self, repos):
        manager = self._manager(repos, _make_client(), [_tuple_cfg()])
        manager.build_schedulers()
        status = manager.get_status("acme")
        assert "acme:USDT/MXN:SELL" in status["tuples"]
        assert manager.get_status("other") == {"tuples": {}}

        manager.stop_all()
        assert not manager.schedulers["acme:USDT/MXN:SELL"].running

    @pytest.mark.asyncio
    async def test_run_all_until_tuple_stopped(self, repos):
        client = _make_client()
        cfg = _tuple_cfg()
        manager = self._manager(repos, client, [cfg])
        manager.build_schedulers()

        task = asyncio.create_task(manager.run_all())
        await asyncio.sleep(0.05)
        manager.stop_tuple(cfg.key)
        results = await asyncio.wait_for(task, timeout=5)

        assert results[str(cfg.key)][0]["action"] == "skipped"
        client.update_ad_price.assert_not_awaited()
