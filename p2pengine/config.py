"""P2P positioning engine — application configuration.

Loads .env variables into a typed config object and the merchants file
into per-merchant credentials plus positioning tuples.
Validates required variables on startup.
"""

import json
import os
import pathlib
from dataclasses import dataclass, field

from dotenv import load_dotenv

from p2pengine.positioning.models import PositioningConfig


_REQUIRED_VARS = [
    "VENUE_BASE_URL",
    "MERCHANTS_FILE",
]


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    venue_base_url: str
    market_search_url: str
    merchants_file: str
    request_timeout_seconds: float
    rate_limit_window_seconds: int
    scheduler_backoff_base_seconds: float
    scheduler_backoff_cap_seconds: float
    scheduler_error_cooldown_seconds: float
    dispatch_max_attempts: int
    dispatch_backoff_base_seconds: float
    dispatch_backoff_cap_seconds: float
    dispatch_concurrency_per_merchant: int
    dispatch_poll_seconds: float
    sync_interval_seconds: int
    sync_window_hours: int
    db_path: str
    log_level: str
    api_port: int


@dataclass(frozen=True)
class MerchantConfig:
    """One merchant: venue credentials plus the tuples it positions."""

    merchant_id: str
    api_key: str
    api_secret: str
    own_nickname: str
    tuples: list[PositioningConfig] = field(default_factory=list)
    enabled: bool = True


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` with a message naming the missing variable when a
    required variable is absent, or when a tunable is out of range.
    """
    load_dotenv(dotenv_path=env_path)

    missing = [v for v in _REQUIRED_VARS if not os.environ.get(v)]
    if missing:
        raise ValueError(
            f"Missing required environment variable(s): {', '.join(missing)}"
        )

    config = Config(
        venue_base_url=os.environ["VENUE_BASE_URL"].rstrip("/"),
        market_search_url=os.environ.get(
            "MARKET_SEARCH_URL",
            "https://p2p.binance.com/bapi/c2c/v2/friendly/c2c/adv/search",
        ),
        merchants_file=os.environ["MERCHANTS_FILE"],
        request_timeout_seconds=float(os.environ.get("REQUEST_TIMEOUT_SECONDS", "10")),
        rate_limit_window_seconds=int(os.environ.get("RATE_LIMIT_WINDOW_SECONDS", "5")),
        scheduler_backoff_base_seconds=float(
            os.environ.get("SCHEDULER_BACKOFF_BASE_SECONDS", "5")
        ),
        scheduler_backoff_cap_seconds=float(
            os.environ.get("SCHEDULER_BACKOFF_CAP_SECONDS", "300")
        ),
        scheduler_error_cooldown_seconds=float(
            os.environ.get("SCHEDULER_ERROR_COOLDOWN_SECONDS", "30")
        ),
        dispatch_max_attempts=int(os.environ.get("DISPATCH_MAX_ATTEMPTS", "3")),
        dispatch_backoff_base_seconds=float(
            os.environ.get("DISPATCH_BACKOFF_BASE_SECONDS", "2")
        ),
        dispatch_backoff_cap_seconds=float(
            os.environ.get("DISPATCH_BACKOFF_CAP_SECONDS", "120")
        ),
        dispatch_concurrency_per_merchant=int(
            os.environ.get("DISPATCH_CONCURRENCY_PER_MERCHANT", "1")
        ),
        dispatch_poll_seconds=float(os.environ.get("DISPATCH_POLL_SECONDS", "1")),
        sync_interval_seconds=int(os.environ.get("SYNC_INTERVAL_SECONDS", "15")),
        sync_window_hours=int(os.environ.get("SYNC_WINDOW_HOURS", "24")),
        db_path=os.environ.get("DB_PATH", "data/p2pengine.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_port=int(os.environ.get("API_PORT", "8080")),
    )

    if config.dispatch_max_attempts < 1:
        raise ValueError("DISPATCH_MAX_ATTEMPTS must be at least 1")
    if config.dispatch_concurrency_per_merchant < 1:
        raise ValueError("DISPATCH_CONCURRENCY_PER_MERCHANT must be at least 1")
    return config


def load_merchants(config: Config) -> list[MerchantConfig]:
    """Read ``merchants.json`` and resolve credentials from the environment.

    Expected shape::

        {"merchants": [{"merchant_id": "acme",
                        "api_key_env": "ACME_API_KEY",
                        "api_secret_env": "ACME_API_SECRET",
                        "own_nickname": "AcmeOTC",
                        "ads": [{"asset": "USDT", "fiat": "MXN",
                                 "side": "SELL", ...}]}]}

    Raises ``ValueError`` when a credential variable is unset, a merchant id
    repeats, or a tuple polls faster than the venue rate-limit window.
    """
    path = pathlib.Path(config.merchants_file)
    if not path.exists():
        raise ValueError(f"Merchants file not found: {path}")

    data = json.loads(path.read_text(encoding="utf-8"))
    merchants: list[MerchantConfig] = []
    seen: set[str] = set()

    for raw in data.get("merchants", []):
        merchant_id = raw["merchant_id"]
        if merchant_id in seen:
            raise ValueError(f"Duplicate merchant_id in merchants file: {merchant_id}")
        seen.add(merchant_id)

        key_var = raw.get("api_key_env", "")
        secret_var = raw.get("api_secret_env", "")
        missing = [v for v in (key_var, secret_var) if not v or not os.environ.get(v)]
        if missing:
            raise ValueError(
                f"Merchant '{merchant_id}' credential variable(s) not set: "
                f"{', '.join(m or '<unnamed>' for m in missing)}"
            )

        own_nickname = raw["own_nickname"]
        tuples: list[PositioningConfig] = []
        for ad in raw.get("ads", []):
            cfg = PositioningConfig.from_dict({
                "merchant_id": merchant_id,
                "own_nickname": own_nickname,
                **ad,
            })
            validate_interval(cfg, config)
            tuples.append(cfg)

        merchants.append(
            MerchantConfig(
                merchant_id=merchant_id,
                api_key=os.environ[key_var],
                api_secret=os.environ[secret_var],
                own_nickname=own_nickname,
                tuples=tuples,
                enabled=bool(raw.get("enabled", True)),
            )
        )
    return merchants


def validate_interval(cfg: PositioningConfig, config: Config) -> None:
    """Reject a tuple that would poll inside the venue's rate-limit window."""
    if cfg.interval_seconds < config.rate_limit_window_seconds:
        raise ValueError(
            f"Tuple {cfg.key}: interval_seconds={cfg.interval_seconds} is below "
            f"the venue rate-limit window ({config.rate_limit_window_seconds}s)"
        )
