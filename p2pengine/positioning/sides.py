"""Side mapping for the venue's market search.

The venue's search tabs are named from the *taker's* point of view: the
BUY tab lists ads of merchants who sell.  To see the competitors of our
SELL ad we therefore search the BUY tab, and vice versa.
"""

from p2pengine.positioning.models import Side


_SEARCH_SIDE: dict[Side, Side] = {
    Side.SELL: Side.BUY,
    Side.BUY: Side.SELL,
}


def search_side_for(own_side: Side) -> Side:
    """Search tab that lists competitors of an ad on *own_side*."""
    return _SEARCH_SIDE[Side(own_side)]


def competitor_side_for(search_side: Side) -> Side:
    """Ad side of the listings returned by the *search_side* tab."""
    for own, searched in _SEARCH_SIDE.items():
        if searched == Side(search_side):
            return own
    raise ValueError(f"Unknown search side: {search_side!r}")
