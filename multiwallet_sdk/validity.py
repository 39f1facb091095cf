"""
Validity-window arithmetic.

A token-expiring network keeps the most recent ``WINDOW_CAPACITY`` tokens
and accepts a transaction only while its token ranks within the newest
``MAX_ACCEPTED_RANK``. Every block-height advance pushes existing tokens one
rank back, so a token observed at rank R survives ``MAX_ACCEPTED_RANK - R``
more advances.
"""
from typing import Optional, Tuple

from .exceptions import StaleTokenError
from .models import MAX_ACCEPTED_RANK, WINDOW_CAPACITY, ExpirationEstimate, ValidityToken

DEFAULT_ADVANCE_INTERVAL_RANGE: Tuple[float, float] = (0.4, 0.8)


def remaining_advances(token: ValidityToken, height: Optional[int] = None) -> int:
    """Advances the token can still absorb before it leaves the accepted ranks"""
    if height is None:
        height = token.observed_height
    return max(0, token.last_valid_height - height)


def is_expired(token: ValidityToken, height: int) -> bool:
    """True once the chain is past the token's last valid height"""
    return height > token.last_valid_height


def estimate_expiration(
    token: ValidityToken,
    height: Optional[int] = None,
    interval_range: Tuple[float, float] = DEFAULT_ADVANCE_INTERVAL_RANGE
) -> ExpirationEstimate:
    """
    Bound the time a token stays usable.

    Args:
        token: Token to estimate
        height: Current block height; the token's observation height when omitted
        interval_range: Fastest and slowest seconds per window advance

    Returns:
        ExpirationEstimate with the advance count and a wall-clock bound
    """
    low, high = interval_range
    if low <= 0 or high < low:
        raise ValueError(f"Invalid advance interval range: {interval_range}")
    advances = remaining_advances(token, height)
    return ExpirationEstimate(
        remaining_advances=advances,
        earliest_seconds=advances * low,
        latest_seconds=advances * high,
    )


def ensure_accepted(token: ValidityToken, height: Optional[int] = None) -> None:
    """
    Raises:
        StaleTokenError: If the token's rank at ``height`` is past the accepted ranks
    """
    if height is None:
        height = token.observed_height
    rank = token.rank_at(height)
    if rank > MAX_ACCEPTED_RANK:
        raise StaleTokenError(
            f"Token {token.value} is at rank {rank}, beyond the accepted {MAX_ACCEPTED_RANK}",
            token=token.value,
        )


def is_fresher(candidate: ValidityToken, expired: ValidityToken) -> bool:
    """True if ``candidate`` stays valid strictly longer than ``expired``"""
    return candidate.last_valid_height > expired.last_valid_height


__all__ = [
    "DEFAULT_ADVANCE_INTERVAL_RANGE",
    "MAX_ACCEPTED_RANK",
    "WINDOW_CAPACITY",
    "ensure_accepted",
    "estimate_expiration",
    "is_expired",
    "is_fresher",
    "remaining_advances",
]
