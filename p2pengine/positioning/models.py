"""Positioning data models — sides, per-tuple configuration, decisions."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional


class Side(str, Enum):
    """Side of an advertisement."""

    BUY = "BUY"
    SELL = "SELL"


class MatchMode(str, Enum):
    """How our price relates to the best qualified competitor."""

    EXACT = "EXACT"
    UNDERCUT = "UNDERCUT"


class SchedulerPhase(str, Enum):
    """Phase of one positioning tuple's cycle."""

    IDLE = "IDLE"
    FETCHING = "FETCHING"
    DECIDING = "DECIDING"
    PUBLISHING = "PUBLISHING"
    ERROR = "ERROR"


@dataclass(frozen=True)
class TupleKey:
    """Identity of a positioning tuple: (merchant, asset, fiat, side)."""

    merchant_id: str
    asset: str
    fiat: str
    side: Side

    def __str__(self) -> str:
        return f"{self.merchant_id}:{self.asset}/{self.fiat}:{self.side.value}"


@dataclass(frozen=True)
class CompetitorAd:
    """One competitor advertisement from a market snapshot."""

    advertiser_id: str
    nickname: str
    side: Side
    price: Decimal
    available_quantity: Decimal
    counterparty_order_count: int
    fiat: str
    asset: str
    ad_no: str = ""
    month_finish_rate: Optional[Decimal] = None
    positive_rate: Optional[Decimal] = None
    user_grade: Optional[int] = None
    is_online: Optional[bool] = None

    @property
    def tradable_fiat_value(self) -> Decimal:
        """Fiat value of the quantity still on offer."""
        return self.price * self.available_quantity


@dataclass(frozen=True)
class PositioningConfig:
    """Configuration for one positioning tuple.

    Thresholds are in fiat units.  ``price_floor`` only applies to SELL
    ads and ``price_ceiling`` only to BUY ads.  The advertiser quality
    thresholds (finish rate, positive rate, grade, online) are off when
    unset; rates are fractions in ``[0, 1]``.
    """

    merchant_id: str
    asset: str
    fiat: str
    side: Side
    own_nickname: str
    ad_no: str = ""
    min_counterparty_order_count: int = 10
    min_tradable_fiat_value: Decimal = Decimal("100")
    undercut_amount: Decimal = Decimal("0.01")
    match_mode: MatchMode = MatchMode.UNDERCUT
    interval_seconds: int = 10
    min_price_change_threshold: Decimal = Decimal("0.01")
    page_size: int = 20
    ignored_advertisers: tuple[str, ...] = field(default_factory=tuple)
    price_floor: Optional[Decimal] = None
    price_ceiling: Optional[Decimal] = None
    min_month_finish_rate: Optional[Decimal] = None
    min_positive_rate: Optional[Decimal] = None
    min_user_grade: Optional[int] = None
    require_online: bool = False
    enabled: bool = True

    @property
    def key(self) -> TupleKey:
        return TupleKey(self.merchant_id, self.asset, self.fiat, self.side)

    # ── Serialisation ────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: dict) -> "PositioningConfig":
        """Build a config from a JSON-style dict.

        Decimal fields accept strings or numbers; unknown keys raise
        ``ValueError`` so a typo in ``merchants.json`` is not silently
        ignored.
        """
        unknown = set(data) - set(_CONFIG_FIELDS)
        if unknown:
            raise ValueError(
                f"Unknown positioning config key(s): {', '.join(sorted(unknown))}"
            )
        missing = [k for k in ("merchant_id", "asset", "fiat", "side", "own_nickname") if not data.get(k)]
        if missing:
            raise ValueError(
                f"Missing positioning config key(s): {', '.join(missing)}"
            )

        kwargs = dict(data)
        kwargs["side"] = Side(str(data["side"]).upper())
        kwargs["asset"] = str(data["asset"]).upper()
        kwargs["fiat"] = str(data["fiat"]).upper()
        if "match_mode" in data:
            kwargs["match_mode"] = MatchMode(str(data["match_mode"]).upper())
        for name in _DECIMAL_FIELDS:
            if data.get(name) is not None:
                kwargs[name] = Decimal(str(data[name]))
        for name in ("min_month_finish_rate", "min_positive_rate"):
            rate = kwargs.get(name)
            if rate is not None and not Decimal("0") <= rate <= Decimal("1"):
                raise ValueError(f"{name} must be a fraction in [0, 1], got {rate}")
        if "ignored_advertisers" in data:
            kwargs["ignored_advertisers"] = tuple(data["ignored_advertisers"] or ())
        for name in ("min_counterparty_order_count", "interval_seconds", "page_size"):
            if name in data:
                kwargs[name] = int(data[name])
        if data.get("min_user_grade") is not None:
            kwargs["min_user_grade"] = int(data["min_user_grade"])
        for name in ("require_online", "enabled"):
            if name in data:
                kwargs[name] = bool(data[name])
        return cls(**kwargs)

    def to_dict(self) -> dict:
        """JSON-safe representation (decimals as strings)."""
        out: dict = {}
        for name in _CONFIG_FIELDS:
            value = getattr(self, name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, Decimal):
                value = str(value)
            elif isinstance(value, tuple):
                value = list(value)
            out[name] = value
        return out


_DECIMAL_FIELDS = (
    "min_tradable_fiat_value",
    "undercut_amount",
    "min_price_change_threshold",
    "price_floor",
    "price_ceiling",
    "min_month_finish_rate",
    "min_positive_rate",
)

_CONFIG_FIELDS = (
    "merchant_id", "asset", "fiat", "side", "own_nickname", "ad_no",
    "min_counterparty_order_count", "min_tradable_fiat_value",
    "undercut_amount", "match_mode", "interval_seconds",
    "min_price_change_threshold", "page_size", "ignored_advertisers",
    "price_floor", "price_ceiling", "min_month_finish_rate",
    "min_positive_rate", "min_user_grade", "require_online", "enabled",
)


@dataclass(frozen=True)
class PricingDecision:
    """Output of one price-selection run.

    ``qualified_competitor_count == 0`` means the target is a fallback
    safety price equal to the reference, with no undercut applied.
    """

    target_price: Decimal
    reference_competitor_price: Decimal
    qualified_competitor_count: int
    computed_at: datetime


@dataclass
class TupleState:
    """Persisted scheduler state for one tuple."""

    key: TupleKey
    phase: SchedulerPhase = SchedulerPhase.IDLE
    current_published_price: Optional[Decimal] = None
    consecutive_failures: int = 0
    next_eligible_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_decision: Optional[PricingDecision] = None
    updated_at: Optional[datetime] = None
