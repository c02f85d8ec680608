"""Qualification filter — drops competitors we should not price against.

Pure function, no I/O.  Rules, in order:

1. Self-exclusion: our own nickname (case-insensitive).
2. Ignored advertisers configured for the tuple (case-insensitive).
3. Too few completed orders.
4. Tradable fiat value ``price * available_quantity`` below the minimum.
   Fiat value rather than raw quantity, since asset units differ by
   orders of magnitude.
5. Advertiser quality, each rule only when its threshold is set: 30-day
   finish rate, positive feedback rate, user grade, and being online.
   An ad that does not report a metric fails that metric's rule.
"""

from p2pengine.positioning.models import CompetitorAd, PositioningConfig


def qualify(ads: list[CompetitorAd], cfg: PositioningConfig) -> list[CompetitorAd]:
    """Return the subset of *ads* that passes every rule.

    Output order is unspecified; callers re-sort.  An empty result means
    "no qualified competitors" and is not an error.
    """
    own = cfg.own_nickname.strip().lower()
    ignored = {name.strip().lower() for name in cfg.ignored_advertisers}

    qualified: list[CompetitorAd] = []
    for ad in ads:
        nickname = ad.nickname.strip().lower()
        if nickname == own or nickname in ignored:
            continue
        if ad.counterparty_order_count < cfg.min_counterparty_order_count:
            continue
        if ad.tradable_fiat_value < cfg.min_tradable_fiat_value:
            continue
        if not _meets_quality(ad, cfg):
            continue
        qualified.append(ad)
    return qualified


def _meets_quality(ad: CompetitorAd, cfg: PositioningConfig) -> bool:
    checks = (
        (cfg.min_month_finish_rate, ad.month_finish_rate),
        (cfg.min_positive_rate, ad.positive_rate),
        (cfg.min_user_grade, ad.user_grade),
    )
    for minimum, value in checks:
        if minimum is not None and (value is None or value < minimum):
            return False
    return not cfg.require_online or ad.is_online is True
