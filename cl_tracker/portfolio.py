"""
Portfolio Summary & Sorting
===========================

Aggregates over a list of enriched positions. Missing values count as 0
here: these are display totals, not per-position metrics.
"""

from typing import Any, Dict, List

from cl_tracker.central_config import DAYS_PER_YEAR
from cl_tracker.models import Position

SORT_KEYS = ("value", "apr", "daily", "pair")
SORT_ORDERS = ("asc", "desc")


def _value(p: Position) -> float:
    return p.valuation.usd_value or 0.0


def _apr(p: Position) -> float:
    return (p.rewards.estimated_apr if p.rewards else None) or 0.0


def _daily(p: Position) -> float:
    per_year = p.rewards.reward_per_year_usd if p.rewards else None
    return per_year / DAYS_PER_YEAR if per_year else 0.0


def portfolio_stats(positions: List[Position]) -> Dict[str, Any]:
    """
    Totals shown above the position list.

    Returns:
        total_deposited_usd:   Σ usd_value over active positions
        active_count:          number of active positions
        total_claimable_usd:   Σ earned_usd over staked positions
        expected_daily_usd:    Σ reward_per_year_usd / 365
        average_apr:           APR weighted by position value
        has_staked_with_apr:   any staked position with an APR
    """
    active = [p for p in positions if p.is_active]
    staked = [p for p in positions if p.is_staked and p.rewards is not None]
    with_apr = [p for p in staked if p.rewards.estimated_apr]

    total_claimable = sum(p.rewards.earned_usd or 0.0 for p in staked)
    per_year = sum(p.rewards.reward_per_year_usd or 0.0 for p in staked)

    weighted = sum(_value(p) * _apr(p) for p in with_apr)
    weight = sum(_value(p) for p in with_apr)

    return {
        "total_deposited_usd": sum(_value(p) for p in active),
        "active_count": len(active),
        "total_claimable_usd": total_claimable,
        "expected_daily_usd": per_year / DAYS_PER_YEAR,
        "average_apr": weighted / weight if weight > 0 else 0.0,
        "has_staked_with_apr": bool(with_apr),
    }


def sort_positions(
    positions: List[Position], sort_by: str = "value", order: str = "desc"
) -> List[Position]:
    """
    Sorted copy of ``positions``. Pair sorts by "SYM0/SYM1" text; unknown
    pairs sort as empty strings.

    Raises:
        ValueError: On an unknown sort key or order.
    """
    if sort_by not in SORT_KEYS:
        raise ValueError(f"Unknown sort key: {sort_by}. Available: {list(SORT_KEYS)}")
    if order not in SORT_ORDERS:
        raise ValueError(f"Unknown sort order: {order}. Available: {list(SORT_ORDERS)}")

    keys = {
        "value": _value,
        "apr": _apr,
        "daily": _daily,
        "pair": lambda p: (p.pair_symbol or "").lower(),
    }
    return sorted(positions, key=keys[sort_by], reverse=order == "desc")
