"""Tests for side mapping, qualification filter and price selection.

All inputs are fixed ad fixtures. Same input = same output, always.
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from p2pengine.errors import NoMarketData
from p2pengine.positioning.models import CompetitorAd, MatchMode, PositioningConfig, Side
from p2pengine.positioning.pricing import price_increment, round_price, select
from p2pengine.positioning.qualify import qualify
from p2pengine.positioning.sides import competitor_side_for, search_side_for

_NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _ad(price, qty="10", orders=50, nickname="rival", side=Side.SELL) -> CompetitorAd:
    return CompetitorAd(
        advertiser_id=f"id-{nickname}",
        nickname=nickname,
        side=side,
        price=Decimal(str(price)),
        available_quantity=Decimal(str(qty)),
        counterparty_order_count=orders,
        fiat="MXN",
        asset="USDT",
    )


def _cfg(**overrides) -> PositioningConfig:
    values = dict(
        merchant_id="acme",
        asset="USDT",
        fiat="MXN",
        side=Side.SELL,
        own_nickname="AcmeOTC",
        min_counterparty_order_count=10,
        min_tradable_fiat_value=Decimal("50"),
        undercut_amount=Decimal("0.50"),
        match_mode=MatchMode.UNDERCUT,
    )
    values.update(overrides)
    return PositioningConfig(**values)


# ── Side mapping ─────────────────────────────────────────────────────────


@pytest.mark.parametrize(
    "own_side, search_side",
    [
        (Side.SELL, Side.BUY),
        (Side.BUY, Side.SELL),
        ("SELL", Side.BUY),
        ("BUY", Side.SELL),
    ],
)
def test_search_side_is_opposite_of_own_side(own_side, search_side):
    assert search_side_for(own_side) == search_side


@pytest.mark.parametrize(
    "search_side, ad_side",
    [
        (Side.BUY, Side.SELL),
        (Side.SELL, Side.BUY),
    ],
)
def test_competitor_side_for_search_tab(search_side, ad_side):
    assert competitor_side_for(search_side) == ad_side


@pytest.mark.parametrize("own_side", [Side.SELL, Side.BUY])
def test_side_mapping_round_trips(own_side):
    assert competitor_side_for(search_side_for(own_side)) == own_side


def test_unknown_side_rejected():
    with pytest.raises(ValueError):
        search_side_for("HOLD")


# ── Qualification ────────────────────────────────────────────────────────


class TestQualify:
    def test_excludes_own_nickname_case_insensitive(self):
        ads = [_ad(100, nickname="acmeotc"), _ad(101, nickname="rival")]
        result = qualify(ads, _cfg())
        assert [a.nickname for a in result] == ["rival"]

    def test_excludes_low_order_count(self):
        ads = [_ad(100, orders=9), _ad(101, orders=10)]
        result = qualify(ads, _cfg())
        assert [a.price for a in result] == [Decimal("101")]

    def test_threshold_uses_fiat_value_not_quantity(self):
        # 0.4 BTC at 1000 = 400 fiat passes; 40 units at 1 = 40 fiat does not
        ads = [_ad(1000, qty="0.4", nickname="whale"), _ad(1, qty="40", nickname="dust")]
        result = qualify(ads, _cfg(min_tradable_fiat_value=Decimal("100")))
        assert [a.nickname for a in result] == ["whale"]

    def test_fiat_value_boundary_is_inclusive(self):
        result = qualify([_ad(5, qty="10")], _cfg(min_tradable_fiat_value=Decimal("50")))
        assert len(result) == 1

    def test_excludes_ignored_advertisers(self):
        ads = [_ad(100, nickname="Spoofer"), _ad(101, nickname="honest")]
        result = qualify(ads, _cfg(ignored_advertisers=("spoofer",)))
        assert [a.nickname for a in result] == ["honest"]

    def test_all_removed_is_empty_not_error(self):
        assert qualify([_ad(100, orders=0)], _cfg()) == []

    def test_output_is_subset_without_self(self):
        ads = [
            _ad(100, nickname="AcmeOTC"),
            _ad(99, orders=3),
            _ad(98, qty="0.1"),
            _ad(97, nickname="ok"),
        ]
        result = qualify(ads, _cfg())
        assert set(result) <= set(ads)
        assert all(a.nickname.lower() != "acmeotc" for a in result)

    def test_quality_thresholds_off_by_default(self):
        assert len(qualify([_ad(100)], _cfg())) == 1

    @pytest.mark.parametrize(
        "overrides, metrics",
        [
            ({"min_month_finish_rate": Decimal("0.95")}, {"month_finish_rate": Decimal("0.90")}),
            ({"min_positive_rate": Decimal("0.98")}, {"positive_rate": Decimal("0.97")}),
            ({"min_user_grade": 2}, {"user_grade": 1}),
            ({"require_online": True}, {"is_online": False}),
            ({"min_month_finish_rate": Decimal("0.95")}, {}),
            ({"require_online": True}, {}),
        ],
    )
    def test_quality_threshold_excludes(self, overrides, metrics):
        ad = replace(_ad(100), **metrics)
        assert qualify([ad], _cfg(**overrides)) == []

    def test_quality_thresholds_pass_at_boundary(self):
        ad = replace(
            _ad(100),
            month_finish_rate=Decimal("0.95"), positive_rate=Decimal("0.98"),
            user_grade=2, is_online=True,
        )
        cfg = _cfg(
            min_month_finish_rate=Decimal("0.95"), min_positive_rate=Decimal("0.98"),
            min_user_grade=2, require_online=True,
        )
        assert qualify([ad], cfg) == [ad]


# ── Price selection ──────────────────────────────────────────────────────


class TestSelect:
    def test_scenario_a_sell_undercut(self):
        qualified = [_ad(100, qty="10", orders=50)]
        decision = select(qualified, qualified, _cfg(), now=_NOW)
        assert decision.target_price == Decimal("99.50")
        assert decision.reference_competitor_price == Decimal("100")
        assert decision.qualified_competitor_count == 1
        assert decision.computed_at == _NOW

    def test_scenario_b_fallback_without_undercut(self):
        all_ads = [_ad(95, orders=0)]
        decision = select([], all_ads, _cfg(), now=_NOW)
        assert decision.target_price == Decimal("95")
        assert decision.reference_competitor_price == Decimal("95")
        assert decision.qualified_competitor_count == 0

    def test_scenario_c_no_market_data(self):
        with pytest.raises(NoMarketData):
            select([], [], _cfg(), now=_NOW)

    def test_exact_single_ad_round_trip(self):
        qualified = [_ad("101.37")]
        decision = select(qualified, qualified, _cfg(match_mode=MatchMode.EXACT), now=_NOW)
        assert decision.target_price == decision.reference_competitor_price

    def test_sell_reference_is_minimum(self):
        qualified = [_ad(103, nickname="a"), _ad(101, nickname="b"), _ad(102, nickname="c")]
        decision = select(qualified, qualified, _cfg(match_mode=MatchMode.EXACT), now=_NOW)
        assert decision.reference_competitor_price == min(a.price for a in qualified)

    def test_buy_reference_is_maximum_and_undercut_adds(self):
        qualified = [
            _ad(98, side=Side.BUY, nickname="a"),
            _ad(99, side=Side.BUY, nickname="b"),
            _ad(97, side=Side.BUY, nickname="c"),
        ]
        decision = select(qualified, qualified, _cfg(side=Side.BUY), now=_NOW)
        assert decision.reference_competitor_price == Decimal("99")
        assert decision.target_price == Decimal("99.50")

    def test_fallback_buy_uses_highest_price(self):
        all_ads = [_ad(90, side=Side.BUY), _ad(92, side=Side.BUY)]
        decision = select([], all_ads, _cfg(side=Side.BUY), now=_NOW)
        assert decision.target_price == Decimal("92")

    def test_rounds_half_up_to_increment(self):
        qualified = [_ad("100.005")]
        decision = select(
            qualified, qualified,
            _cfg(undercut_amount=Decimal("0")), now=_NOW,
        )
        assert decision.target_price == Decimal("100.01")

    def test_whole_unit_fiat_rounding(self):
        assert price_increment("JPY") == Decimal("1")
        assert round_price(Decimal("150.5"), "JPY") == Decimal("151")
        assert round_price(Decimal("17.125"), "MXN") == Decimal("17.13")

    def test_price_floor_clamps_sell(self):
        qualified = [_ad(100)]
        decision = select(qualified, qualified, _cfg(price_floor=Decimal("99.90")), now=_NOW)
        assert decision.target_price == Decimal("99.90")

    def test_price_ceiling_clamps_buy(self):
        qualified = [_ad(100, side=Side.BUY)]
        decision = select(
            qualified, qualified,
            _cfg(side=Side.BUY, price_ceiling=Decimal("100.10")), now=_NOW,
        )
        assert decision.target_price == Decimal("100.10")

    def test_fallback_ignores_floor(self):
        decision = select([], [_ad(95, orders=0)], _cfg(price_floor=Decimal("99")), now=_NOW)
        assert decision.target_price == Decimal("95")
