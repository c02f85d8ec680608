"""Venue C2C REST API async client.

Handles all communication with the venue: public market search, own-ad
listing and price updates, order placement, and order status queries.

Failures are classified into the ``p2pengine.errors`` taxonomy.  Reads are
retried here with exponential backoff; writes are sent once and the caller
owns the retry policy.
"""

import asyncio
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import urlencode

import httpx

from p2pengine.backoff import backoff_delay
from p2pengine.config import Config
from p2pengine.errors import (
    AmbiguousNetworkFailure,
    DuplicateIntentRejected,
    InsufficientBalance,
    RateLimited,
    UpstreamUnavailable,
    ValidationRejected,
    VenueError,
    VenueRejected,
)
from p2pengine.positioning.models import CompetitorAd, Side
from p2pengine.positioning.sides import competitor_side_for
from p2pengine.sync.lifecycle import normalize_status
from p2pengine.venue.models import (
    OrderPlacementRequest,
    OwnAd,
    PlacedOrder,
    VenueOrder,
)

logger = logging.getLogger("p2pengine.venue")

# Retry settings (reads only)
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 1.0  # seconds; doubles each attempt
_RETRY_MAX_DELAY = 30.0

_RATE_LIMIT_STATUS_CODES = {418, 429}
_SUCCESS_CODE = "000000"
_RECV_WINDOW_MS = 5000

# Substrings of venue messages that identify a rejection class.
_INSUFFICIENT_MARKERS = ("insufficient", "balance not enough")
_DUPLICATE_MARKERS = ("duplicate", "already exists", "repeated")

MAX_SEARCH_ROWS = 20
ORDER_PAGE_ROWS = 50
MAX_ORDER_PAGES = 20


class VenueClient:
    """Async client wrapping the venue's C2C REST API.

    Args:
        config: Application configuration.
        api_key: Merchant API key.  Empty for a public, market-data-only
                 client.
        api_secret: Merchant API secret used for HMAC request signing.
    """

    def __init__(self, config: Config, api_key: str = "", api_secret: str = "") -> None:
        self._config = config
        self._base_url = config.venue_base_url
        self._search_url = config.market_search_url
        self._timeout = config.request_timeout_seconds
        self._api_key = api_key
        self._api_secret = api_secret
        self._headers = {
            "Content-Type": "application/json",
            "clientType": "web",
        }
        if api_key:
            self._headers["X-MBX-APIKEY"] = api_key

    # ── Signing ──────────────────────────────────────────────────────────

    def _signed_query(self, params: Optional[dict] = None) -> str:
        """Return ``params`` + timestamp as a query string, signature last."""
        if not self._api_secret:
            raise ValidationRejected("Signed endpoint called without API credentials")
        all_params = {
            **(params or {}),
            "recvWindow": _RECV_WINDOW_MS,
            "timestamp": int(time.time() * 1000),
        }
        query = urlencode({k: v for k, v in all_params.items() if v is not None})
        signature = hmac.new(
            self._api_secret.encode("utf-8"),
            query.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"{query}&signature={signature}"

    # ── Transport ────────────────────────────────────────────────────────

    async def _send(
        self,
        method: str,
        url: str,
        *,
        idempotent: bool,
        **kwargs,
    ) -> dict:
        """Send one request and return the decoded JSON body.

        Raises a ``VenueError`` subclass on failure.  For non-idempotent
        calls a timeout or dropped connection after the request may have
        been written becomes ``AmbiguousNetworkFailure``.
        """
        try:
            async with httpx.AsyncClient() as client:
                resp = await getattr(client, method)(
                    url,
                    headers=self._headers,
                    timeout=self._timeout,
                    **kwargs,
                )
        except httpx.ConnectError as exc:
            # Connection never established, nothing was sent.
            raise UpstreamUnavailable(f"connect failed: {exc}") from exc
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            if idempotent:
                raise UpstreamUnavailable(f"transport error: {exc!r}") from exc
            raise AmbiguousNetworkFailure(
                f"{method.upper()} {url} outcome unknown: {exc!r}"
            ) from exc

        if resp.status_code in _RATE_LIMIT_STATUS_CODES:
            raise RateLimited(
                f"{method.upper()} {url} rate limited ({resp.status_code})",
                retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
            )
        if resp.status_code >= 500:
            raise UpstreamUnavailable(
                f"{method.upper()} {url} returned {resp.status_code}"
            )

        try:
            body = resp.json()
        except ValueError:
            if resp.status_code >= 400:
                raise ValidationRejected(
                    f"{method.upper()} {url} returned {resp.status_code}"
                )
            raise UpstreamUnavailable(f"{method.upper()} {url} returned a non-JSON body")

        if not isinstance(body, dict):
            return {"data": body}

        ok = body.get("success") is True or body.get("code") in (None, _SUCCESS_CODE)
        if resp.status_code >= 400 or not ok:
            raise _classify_rejection(body)
        return body

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> dict:
        """Execute an idempotent request with exponential-backoff retry.

        Retries ``UpstreamUnavailable`` and ``RateLimited``; rejections are
        raised immediately.
        """
        last_exc: Optional[VenueError] = None

        for attempt in range(_MAX_RETRIES):
            try:
                return await self._send(method, url, idempotent=True, **kwargs)
            except (UpstreamUnavailable, RateLimited) as exc:
                retry_after = getattr(exc, "retry_after", None)
                delay = backoff_delay(
                    _RETRY_BASE_DELAY, attempt, _RETRY_MAX_DELAY, retry_after,
                )
                logger.warning(
                    "Venue %s %s failed (%s) — retry %d/%d in %.1fs",
                    method.upper(), url, exc, attempt + 1, _MAX_RETRIES, delay,
                )
                last_exc = exc
                if attempt + 1 < _MAX_RETRIES:
                    await asyncio.sleep(delay)

        # All retries exhausted; raise the last error
        raise last_exc  # type: ignore[misc]

    def _sapi(self, path: str, params: Optional[dict] = None) -> str:
        return f"{self._base_url}{path}?{self._signed_query(params)}"

    # ── Market data ──────────────────────────────────────────────────────

    async def search_ads(
        self,
        asset: str,
        fiat: str,
        search_side: Side,
        page: int = 1,
        rows: int = MAX_SEARCH_ROWS,
    ) -> list[CompetitorAd]:
        """Query the public ad search for one (asset, fiat, tab).

        Args:
            search_side: The venue tab to search, from the taker's point
                         of view.  See ``p2pengine.positioning.sides``.
            rows: Page size, at most ``MAX_SEARCH_ROWS``.

        Returns:
            Parsed ads, in venue order.  Malformed entries are dropped.
        """
        body = {
            "asset": asset,
            "fiat": fiat,
            "tradeType": Side(search_side).value,
            "page": page,
            "rows": min(rows, MAX_SEARCH_ROWS),
            "payTypes": [],
            "publisherType": None,
        }
        data = await self._request_with_retry("post", self._search_url, json=body)

        ad_side = competitor_side_for(search_side)
        ads: list[CompetitorAd] = []
        for item in data.get("data") or []:
            try:
                adv = item["adv"]
                advertiser = item["advertiser"]
                ads.append(
                    CompetitorAd(
                        advertiser_id=str(advertiser.get("userNo", "")),
                        nickname=str(advertiser.get("nickName", "")),
                        side=ad_side,
                        price=Decimal(str(adv["price"])),
                        available_quantity=Decimal(str(adv.get("surplusAmount", "0"))),
                        counterparty_order_count=int(advertiser.get("monthOrderCount") or 0),
                        fiat=str(adv.get("fiatUnit", fiat)),
                        asset=str(adv.get("asset", asset)),
                        ad_no=str(adv.get("advNo", "")),
                        month_finish_rate=_optional_decimal(advertiser.get("monthFinishRate")),
                        positive_rate=_optional_decimal(advertiser.get("positiveRate")),
                        user_grade=_optional_int(advertiser.get("userGrade")),
                        is_online=_optional_bool(advertiser.get("isOnline")),
                    )
                )
            except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
                logger.debug("Dropping malformed ad from search result: %s", exc)
        return ads

    # ── Own ads ──────────────────────────────────────────────────────────

    async def list_my_ads(self, rows: int = 50) -> list[OwnAd]:
        """Return the merchant's own advertisements."""
        data = await self._request_with_retry(
            "post",
            self._sapi("/sapi/v1/c2c/ads/listWithPagination"),
            json={"page": 1, "rows": rows},
        )

        payload = data.get("data")
        raw_ads: list[dict] = []
        if isinstance(payload, list):
            raw_ads = payload
        elif isinstance(payload, dict):
            raw_ads = [*payload.get("sellList", []), *payload.get("buyList", [])]

        ads: list[OwnAd] = []
        for ad in raw_ads:
            try:
                ads.append(
                    OwnAd(
                        ad_no=str(ad["advNo"]),
                        asset=str(ad["asset"]),
                        fiat=str(ad["fiatUnit"]),
                        side=Side(str(ad["tradeType"]).upper()),
                        price=Decimal(str(ad["price"])),
                        online=ad.get("advStatus", 1) == 1,
                    )
                )
            except (KeyError, ValueError, InvalidOperation) as exc:
                logger.debug("Dropping malformed own ad: %s", exc)
        return ads

    async def update_ad_price(self, ad_no: str, price: Decimal) -> None:
        """Publish a new fixed price for one of our ads.

        Sent once.  Re-publishing the same price is harmless, so a timeout
        is reported as ``UpstreamUnavailable`` rather than ambiguous.
        """
        await self._send(
            "post",
            self._sapi("/sapi/v1/c2c/ads/update"),
            idempotent=True,
            json={"advNo": ad_no, "price": str(price)},
        )

    # ── Orders ───────────────────────────────────────────────────────────

    async def place_order(self, order: OrderPlacementRequest) -> PlacedOrder:
        """Place a counter-order.

        Sent once.  The venue de-duplicates on ``clientOrderId``, so the
        caller may resend after an ``AmbiguousNetworkFailure`` with the
        same token.
        """
        body: dict = {
            "asset": order.asset,
            "fiatUnit": order.fiat,
            "tradeType": Side(order.side).value,
            "clientOrderId": order.client_token,
        }
        if order.quantity is not None:
            body["quantity"] = str(order.quantity)
        if order.fiat_amount is not None:
            body["totalAmount"] = str(order.fiat_amount)
        if order.price is not None:
            body["price"] = str(order.price)
        if order.ad_no:
            body["advNo"] = order.ad_no

        data = await self._send(
            "post",
            self._sapi("/sapi/v1/c2c/orderMatch/placeOrder"),
            idempotent=False,
            json=body,
        )
        payload = data.get("data") or {}
        order_number = payload.get("orderNumber") if isinstance(payload, dict) else None
        if not order_number:
            # Accepted but unreadable: the order may exist.
            raise AmbiguousNetworkFailure("placeOrder succeeded without an orderNumber")
        return PlacedOrder(
            order_number=str(order_number),
            client_token=str(payload.get("clientOrderId") or order.client_token),
        )

    async def get_order(self, order_number: str) -> VenueOrder:
        """Return the venue's current view of one order.

        Raises:
            UpstreamUnavailable: the venue answered without a readable order.
        """
        data = await self._request_with_retry(
            "post",
            self._sapi("/sapi/v1/c2c/orderMatch/getUserOrderDetail"),
            json={"adOrderNo": order_number},
        )
        payload = data.get("data")
        if not isinstance(payload, dict) or not payload.get("orderNumber"):
            raise UpstreamUnavailable(f"Order detail for {order_number} came back empty")
        try:
            return _parse_order(payload)
        except (KeyError, TypeError, ValueError, InvalidOperation) as exc:
            raise UpstreamUnavailable(
                f"Unreadable order detail for {order_number}: {exc}"
            ) from exc

    async def list_orders(
        self,
        trade_type: Side,
        start: datetime,
        end: Optional[datetime] = None,
        rows: int = ORDER_PAGE_ROWS,
        max_pages: int = MAX_ORDER_PAGES,
    ) -> list[VenueOrder]:
        """List orders of one side created inside ``[start, end]``.

        Pages are read until the venue returns a short page, up to
        *max_pages*.
        """
        orders: list[VenueOrder] = []
        for page in range(1, max_pages + 1):
            raw_rows = await self._list_orders_page(trade_type, start, end, page, rows)
            for raw in raw_rows:
                try:
                    orders.append(_parse_order(raw))
                except (
                    AttributeError, KeyError, TypeError, ValueError, InvalidOperation,
                ) as exc:
                    logger.debug("Dropping malformed order row: %s", exc)
            if len(raw_rows) < rows:
                break
        else:
            logger.warning(
                "Order listing for %s stopped at %d pages; older orders not read",
                Side(trade_type).value, max_pages,
            )
        return orders

    async def _list_orders_page(
        self,
        trade_type: Side,
        start: datetime,
        end: Optional[datetime],
        page: int,
        rows: int,
    ) -> list:
        body: dict = {
            "tradeType": Side(trade_type).value,
            "startDate": _to_ms(start),
            "page": page,
            "rows": rows,
        }
        if end is not None:
            body["endDate"] = _to_ms(end)

        data = await self._request_with_retry(
            "post",
            self._sapi("/sapi/v1/c2c/orderMatch/listOrders"),
            json=body,
        )
        payload = data.get("data")
        if isinstance(payload, dict):
            payload = payload.get("data")
        return payload if isinstance(payload, list) else []


# ── Helpers ──────────────────────────────────────────────────────────────


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _classify_rejection(body: dict) -> VenueRejected:
    """Map a venue error body onto the rejection taxonomy."""
    code = str(body.get("code", "")) or None
    message = str(body.get("message") or body.get("msg") or "rejected by venue")
    lowered = message.lower()
    if any(marker in lowered for marker in _INSUFFICIENT_MARKERS):
        return InsufficientBalance(message, code=code)
    if any(marker in lowered for marker in _DUPLICATE_MARKERS):
        return DuplicateIntentRejected(message, code=code)
    return ValidationRejected(message, code=code)


def _optional_decimal(value) -> Optional[Decimal]:
    return None if value is None or value == "" else Decimal(str(value))


def _optional_int(value) -> Optional[int]:
    return None if value is None or value == "" else int(value)


def _optional_bool(value) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "online")
    return bool(value)


def _to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _parse_order(raw: dict) -> VenueOrder:
    raw_status = raw.get("orderStatus")
    created = raw.get("createTime")
    created_at = (
        datetime.fromtimestamp(int(created) / 1000, tz=timezone.utc)
        if created else None
    )
    return VenueOrder(
        order_number=str(raw["orderNumber"]),
        side=Side(str(raw.get("tradeType", "BUY")).upper()),
        status=normalize_status(raw_status),
        raw_status=str(raw_status),
        asset=str(raw.get("asset", "")),
        fiat=str(raw.get("fiat") or raw.get("fiatUnit") or ""),
        amount=Decimal(str(raw.get("amount") or "0")),
        counterparty_id=str(
            raw.get("counterPartUserNo") or raw.get("counterPartNickName") or ""
        ),
        client_token=str(raw.get("clientOrderId") or ""),
        created_at=created_at,
    )
