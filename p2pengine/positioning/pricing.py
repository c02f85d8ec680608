"""Price selection — match or undercut the best qualified competitor.

SELL ads benchmark against the cheapest qualified seller, BUY ads against
the highest qualified buyer.  Undercutting always moves our price in the
direction that attracts a counterparty: down for SELL, up for BUY.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from p2pengine.errors import NoMarketData
from p2pengine.positioning.models import (
    CompetitorAd,
    MatchMode,
    PositioningConfig,
    PricingDecision,
    Side,
)

DEFAULT_PRICE_INCREMENT = Decimal("0.01")

# Fiat currencies quoted in whole units on the venue.
_PRICE_INCREMENTS: dict[str, Decimal] = {
    "JPY": Decimal("1"),
    "KRW": Decimal("1"),
    "VND": Decimal("1"),
    "IDR": Decimal("1"),
    "COP": Decimal("1"),
    "NGN": Decimal("0.1"),
}


def price_increment(fiat: str) -> Decimal:
    """Minimum price step for *fiat*."""
    return _PRICE_INCREMENTS.get(fiat.upper(), DEFAULT_PRICE_INCREMENT)


def round_price(price: Decimal, fiat: str) -> Decimal:
    """Round half-up to the fiat's price increment."""
    return price.quantize(price_increment(fiat), rounding=ROUND_HALF_UP)


def _best(ads: list[CompetitorAd], side: Side) -> CompetitorAd:
    # SELL: cheapest first.  BUY: highest first.
    ordered = sorted(ads, key=lambda ad: ad.price, reverse=(side == Side.BUY))
    return ordered[0]


def select(
    qualified: list[CompetitorAd],
    all_ads: list[CompetitorAd],
    cfg: PositioningConfig,
    now: Optional[datetime] = None,
) -> PricingDecision:
    """Derive our target price from a market snapshot.

    Args:
        qualified: Output of ``qualify`` for this snapshot.
        all_ads: The full snapshot, used for the fallback price.
        cfg: Tuple configuration.
        now: Decision timestamp; defaults to the current UTC time.

    Returns:
        A ``PricingDecision``.  When nothing qualified, the target is the
        best price in *all_ads* with no undercut and no floor/ceiling.

    Raises:
        NoMarketData: *all_ads* is empty.
    """
    computed_at = now or datetime.now(timezone.utc)

    if not qualified:
        if not all_ads:
            raise NoMarketData(
                f"No ads in snapshot for {cfg.asset}/{cfg.fiat} {cfg.side.value}"
            )
        reference = _best(all_ads, cfg.side).price
        return PricingDecision(
            target_price=reference,
            reference_competitor_price=reference,
            qualified_competitor_count=0,
            computed_at=computed_at,
        )

    reference = _best(qualified, cfg.side).price
    target = reference
    if cfg.match_mode == MatchMode.UNDERCUT:
        if cfg.side == Side.SELL:
            target = reference - cfg.undercut_amount
        else:
            target = reference + cfg.undercut_amount
    target = round_price(target, cfg.fiat)

    if cfg.side == Side.SELL and cfg.price_floor is not None:
        target = max(target, cfg.price_floor)
    if cfg.side == Side.BUY and cfg.price_ceiling is not None:
        target = min(target, cfg.price_ceiling)

    return PricingDecision(
        target_price=target,
        reference_competitor_price=reference,
        qualified_competitor_count=len(qualified),
        computed_at=computed_at,
    )
