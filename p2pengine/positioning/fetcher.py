"""Market snapshot fetcher — competitor ads for one positioning tuple."""

import logging

from p2pengine.positioning.models import CompetitorAd, Side
from p2pengine.positioning.sides import search_side_for
from p2pengine.venue.client import MAX_SEARCH_ROWS, VenueClient

logger = logging.getLogger("p2pengine.fetcher")


class MarketSnapshotFetcher:
    """Queries the venue's public ad search.

    Args:
        client: A ``VenueClient`` (or compatible duck-type / mock).
    """

    def __init__(self, client: VenueClient) -> None:
        self._client = client

    async def fetch(
        self,
        asset: str,
        fiat: str,
        own_side: Side,
        page_size: int = MAX_SEARCH_ROWS,
        pages: int = 1,
    ) -> list[CompetitorAd]:
        """Return competitor ads for an ad of ours on *own_side*.

        ``page_size`` is clamped to the venue maximum.  With ``pages > 1``
        further pages are requested until one comes back empty.

        Raises:
            UpstreamUnavailable: network failure or 5xx after client retries.
            RateLimited: the venue throttled the search.
        """
        rows = max(1, min(page_size, MAX_SEARCH_ROWS))
        search_side = search_side_for(own_side)

        ads: list[CompetitorAd] = []
        for page in range(1, max(pages, 1) + 1):
            batch = await self._client.search_ads(
                asset, fiat, search_side, page=page, rows=rows,
            )
            if not batch:
                break
            ads.extend(batch)

        logger.debug(
            "Fetched %d %s ads for %s/%s (searched %s tab)",
            len(ads), own_side.value, asset, fiat, search_side.value,
        )
        return ads
