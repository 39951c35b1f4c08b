#!/usr/bin/env python3
"""
Real DeFi Math Engine
=====================

Pure concentrated-liquidity and reward formulas for Slipstream positions.
No I/O, no hidden state: identical inputs always give identical outputs.

FORMULA SOURCES (every formula is traceable):
──────────────────────────────────────────────
1. Uniswap V3 Core Whitepaper (Slipstream pools share the tick design)
   https://uniswap.org/whitepaper-v3.pdf
   - §6.1  Tick-Indexed Concentrated Liquidity: p(i) = 1.0001^i
   - §6.2  Global State: √P, L
   - §6.3  Per-Tick State

2. Uniswap V3 Development Book — Token Amounts from Liquidity
   https://uniswapv3book.com/docs/milestone_1/calculating-liquidity/
     P < P_a          : x = L·(1/√P_a − 1/√P_b),   y = 0
     P ≥ P_b          : x = 0,                     y = L·(√P_b − √P_a)
     P_a ≤ P < P_b    : x = L·(1/√P − 1/√P_b),     y = L·(√P − √P_a)

3. Aerodrome Slipstream CLGauge — emissions per second per pool
   https://github.com/aerodrome-finance/slipstream/blob/main/contracts/gauge/CLGauge.sol
   A staker's share of rewardRate is its liquidity over the pool's
   stakedLiquidity. Staked liquidity is assumed perfectly fungible: one
   unit of in-range staked liquidity earns the same as any other.

Range convention (matches the pool's tick crossing logic):
  tickLower is inclusive, tickUpper is exclusive.
    currentTick <  tickLower  → all token0
    currentTick >= tickUpper  → all token1
    otherwise                 → in range, both tokens
"""

import math
from typing import Dict, Optional, Tuple

from cl_tracker.central_config import (
    DAYS_PER_YEAR,
    SECONDS_PER_DAY,
    SECONDS_PER_WEEK,
    SECONDS_PER_YEAR,
)
from cl_tracker.models import PriceRange
from cl_tracker.rpc_helpers import Q96

# ── Named Constants ──────────────────────────────────────────────────────

MIN_TICK = -887272   # TickMath.MIN_TICK
MAX_TICK = 887272    # TickMath.MAX_TICK
TICK_BASE = 1.0001   # Each tick = 0.01% (1 basis point) price change


# ── Concentrated Liquidity Math ──────────────────────────────────────────


class SlipstreamMath:
    """
    Pure functions implementing tick-based concentrated-liquidity math.
    Every formula references a specific section of the V3 Whitepaper.
    """

    @staticmethod
    def tick_to_price(tick: int) -> float:
        """
        Convert a tick index to a raw price (token1 smallest units per
        token0 smallest unit).

        Formula (Whitepaper §6.1): p(i) = 1.0001^i

        CWE-682 mitigation: ticks are clamped to [MIN_TICK, MAX_TICK] so the
        power cannot overflow a float.
        """
        tick = max(MIN_TICK, min(MAX_TICK, tick))
        return TICK_BASE ** tick

    @staticmethod
    def tick_to_sqrt_price(tick: int) -> float:
        """√p(i) = 1.0001^(i/2)"""
        return math.sqrt(SlipstreamMath.tick_to_price(tick))

    @staticmethod
    def sqrt_price_from_x96(sqrt_price_x96: int) -> float:
        """√P from the pool's Q64.96 fixed-point value: sqrtPriceX96 / 2^96."""
        return sqrt_price_x96 / Q96

    @staticmethod
    def human_price(tick: int, decimals0: int, decimals1: int) -> float:
        """
        Token1 per token0 in human units.

        Formula: price = 1.0001^tick × 10^(decimals0 − decimals1)
        """
        return SlipstreamMath.tick_to_price(tick) * 10 ** (decimals0 - decimals1)

    @staticmethod
    def reciprocal(price: Optional[float]) -> Optional[float]:
        """Token0 per token1; None when the price is missing or exactly zero."""
        if price is None or price == 0:
            return None
        return 1 / price

    @staticmethod
    def price_range(
        tick_lower: int, tick_upper: int, decimals0: int, decimals1: int
    ) -> PriceRange:
        """
        Position price bounds in both directions.

        Taking min/max on each side keeps the bounds ordered after the
        1/x inversion, which reverses them.
        """
        p_lower = SlipstreamMath.human_price(tick_lower, decimals0, decimals1)
        p_upper = SlipstreamMath.human_price(tick_upper, decimals0, decimals1)
        low, high = min(p_lower, p_upper), max(p_lower, p_upper)
        return PriceRange(
            min_1per0=low,
            max_1per0=high,
            min_0per1=SlipstreamMath.reciprocal(high),
            max_0per1=SlipstreamMath.reciprocal(low),
        )

    @staticmethod
    def is_in_range(current_tick: int, tick_lower: int, tick_upper: int) -> bool:
        """tickLower ≤ currentTick < tickUpper"""
        return tick_lower <= current_tick < tick_upper

    @staticmethod
    def amounts_for_liquidity(
        liquidity: int,
        tick_lower: int,
        tick_upper: int,
        current_tick: int,
        sqrt_price_x96: Optional[int] = None,
    ) -> Tuple[float, float]:
        """
        Raw token amounts (smallest units) backing ``liquidity`` at the
        current pool price.

        Formulae (Whitepaper §6.2, V3 Book "Calculating Liquidity"):
          currentTick < tickLower  : amount0 = L·(1/√P_a − 1/√P_b), amount1 = 0
          currentTick ≥ tickUpper  : amount0 = 0, amount1 = L·(√P_b − √P_a)
          in range                 : amount0 = L·(1/√P − 1/√P_b)
                                     amount1 = L·(√P − √P_a)

        √P comes from sqrtPriceX96 when available (same snapshot as the
        tick); a zero or missing sqrtPriceX96 falls back to √(1.0001^tick).

        Raises:
            ValueError: If tick_lower >= tick_upper.
        """
        if tick_lower >= tick_upper:
            raise ValueError(
                f"Invalid tick range: tickLower {tick_lower} >= tickUpper {tick_upper}"
            )
        L = float(liquidity)
        if L <= 0:
            return 0.0, 0.0

        sqrt_lower = SlipstreamMath.tick_to_sqrt_price(tick_lower)
        sqrt_upper = SlipstreamMath.tick_to_sqrt_price(tick_upper)

        if current_tick < tick_lower:
            return L * (1 / sqrt_lower - 1 / sqrt_upper), 0.0
        if current_tick >= tick_upper:
            return 0.0, L * (sqrt_upper - sqrt_lower)

        if sqrt_price_x96:
            sqrt_current = SlipstreamMath.sqrt_price_from_x96(sqrt_price_x96)
        else:
            sqrt_current = SlipstreamMath.tick_to_sqrt_price(current_tick)
        # A sqrtPrice rounded just outside the tick's bounds must not go negative
        sqrt_current = max(sqrt_lower, min(sqrt_upper, sqrt_current))
        amount0 = L * (1 / sqrt_current - 1 / sqrt_upper)
        amount1 = L * (sqrt_current - sqrt_lower)
        return amount0, amount1

    @staticmethod
    def to_human(raw_amount: float, decimals: int) -> float:
        """Scale a smallest-unit amount by 10^(−decimals)."""
        return raw_amount / 10 ** decimals


# ── Valuation Helpers ────────────────────────────────────────────────────


def usd_value(
    amount0: Optional[float],
    amount1: Optional[float],
    price0_usd: Optional[float],
    price1_usd: Optional[float],
) -> Optional[float]:
    """
    Σ amount × unit price. A token without a price contributes zero and never
    blocks the other token; with no price for either token the value is
    unknown (None), not zero.
    """
    if amount0 is None or amount1 is None:
        return None
    if price0_usd is None and price1_usd is None:
        return None
    total = amount0 * (price0_usd or 0.0) + amount1 * (price1_usd or 0.0)
    return max(total, 0.0)


# ── Rewards & APR ────────────────────────────────────────────────────────


class RewardMath:
    """Gauge emission share, projections and annualized rates."""

    @staticmethod
    def liquidity_proportion(my_liquidity: int, total_staked_liquidity: int) -> float:
        """
        Formula: proportion = myLiquidity / totalStakedLiquidity

        0 when either side is 0 (no division by zero). Clamped to [0, 1]
        because a stale stakedLiquidity can briefly lag a fresh position read.
        """
        if my_liquidity <= 0 or total_staked_liquidity <= 0:
            return 0.0
        return min(1.0, my_liquidity / total_staked_liquidity)

    @staticmethod
    def project_rewards(pool_reward_per_second: float, proportion: float) -> Dict[str, float]:
        """
        Position reward flow over standard periods.

            per_second = poolRewardPerSecond × proportion
            per_day    = per_second × 86 400
            per_week   = per_second × 604 800
            per_year   = per_second × 31 536 000   (365-day year)
        """
        per_second = pool_reward_per_second * proportion
        return {
            "per_second": per_second,
            "per_day": per_second * SECONDS_PER_DAY,
            "per_week": per_second * SECONDS_PER_WEEK,
            "per_year": per_second * SECONDS_PER_YEAR,
        }

    @staticmethod
    def staking_apr(
        reward_per_year: float,
        reward_price_usd: Optional[float],
        position_usd_value: Optional[float],
    ) -> Optional[float]:
        """
        Formula: APR = (rewardPerYear × rewardPriceUSD / positionUSD) × 100

        None when the position value or reward price is missing or zero.
        """
        if not reward_price_usd or reward_price_usd <= 0:
            return None
        if not position_usd_value or position_usd_value <= 0:
            return None
        return reward_per_year * reward_price_usd / position_usd_value * 100


# ── Historical Yield ─────────────────────────────────────────────────────


def fee_apr(fees_7d_usd: float, tvl_usd: float, days: int = 7) -> Optional[float]:
    """
    Pool fee APR from trailing daily fee buckets.

    Formula: APR = (fees_7d / 7 × 365 / TVL) × 100

    The divisor is the nominal window length, so a pool younger than a week
    reads low rather than high.
    """
    if tvl_usd is None or tvl_usd <= 0 or days <= 0:
        return None
    return fees_7d_usd / days * DAYS_PER_YEAR / tvl_usd * 100


def roi(collected_fees_usd: Optional[float], deposited_value_usd: Optional[float]) -> Optional[float]:
    """Formula: ROI = collectedFeesUSD / depositedValueUSD × 100"""
    if collected_fees_usd is None or not deposited_value_usd or deposited_value_usd <= 0:
        return None
    return collected_fees_usd / deposited_value_usd * 100


def position_age_days(created_at: Optional[int], now: float) -> Optional[int]:
    """Whole days since the creation transaction (never negative)."""
    if created_at is None:
        return None
    return max(0, math.floor((now - created_at) / SECONDS_PER_DAY))
