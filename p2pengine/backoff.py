"""Exponential backoff — pure math, no I/O.

``delay = min(base * 2 ** attempt, cap)``.  A venue-provided
``retry_after`` wins when it asks for a longer wait.
"""

from typing import Optional


def backoff_delay(
    base: float,
    attempt: int,
    cap: float,
    retry_after: Optional[float] = None,
) -> float:
    """Seconds to wait before the next attempt.

    Args:
        base: Delay for the first retry (``attempt == 0``).
        attempt: Zero-based count of failures so far.
        cap: Upper bound on the computed delay.
        retry_after: Venue-requested delay, honoured when larger.

    Raises:
        ValueError: if *base* or *cap* is negative, or *attempt* < 0.
    """
    if base < 0 or cap < 0:
        raise ValueError(f"base and cap must be non-negative, got {base}, {cap}")
    if attempt < 0:
        raise ValueError(f"attempt must be non-negative, got {attempt}")

    # Clamp the exponent so huge failure counts don't overflow.
    delay = min(base * (2 ** min(attempt, 32)), cap)
    if retry_after is not None and retry_after > delay:
        return float(retry_after)
    return float(delay)
