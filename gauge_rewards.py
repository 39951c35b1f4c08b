#!/usr/bin/env python3
"""
Gauge Rewards & Staking APR
===========================

For every staked position: its share of the gauge's emissions, the
projected reward flow, the on-chain accrued reward and a staking APR.

Data Sources (per RPC call):
─────────────────────────────
1. CLPool.gauge()                   → gauge address (once per pool)
2. CLGauge.rewardRate()             → pool-wide emission, reward-token wei/s
   CLGauge.rewardToken()            → emitted token (AERO on Base)
   CLGauge.periodFinish()           → end of the current emission epoch
3. CLPool.stakedLiquidity()         → denominator of the share (pool snapshot)
4. CLGauge.earned(owner, tokenId)   → accrued, claimable reward (exact)
   Ref: https://github.com/aerodrome-finance/slipstream/blob/main/contracts/gauge/CLGauge.sol

Formulas:
  proportion   = myLiquidity / stakedLiquidity          ∈ [0, 1]
  per_second   = rewardRate × proportion
  per_year     = per_second × 31 536 000                (365-day year)
  APR          = per_year × rewardPriceUSD / positionUSD × 100

Assumption: staked liquidity is fungible, so emissions split pro rata by
liquidity. ``earned`` is read separately and never derived from the rate.

A position missing any of gauge, rewardRate, rewardToken or stakedLiquidity
gets no reward state at all: a half-built state would read as 0% APR
instead of unknown.
"""

import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from cl_tracker.central_config import config
from cl_tracker.diagnostics import PipelineTrace, say
from cl_tracker.errors import ErrorKind
from cl_tracker.models import Position, RewardState, TokenInfo
from cl_tracker.rpc_helpers import (
    SELECTORS,
    encode_uint256 as _encode_uint256,
    encode_address as _encode_address,
    decode_optional_uint as _optional_uint,
    decode_optional_address as _optional_address,
    eth_call_batch as _eth_call_batch,
)
from real_defi_math import RewardMath, SlipstreamMath


@dataclass
class GaugeState:
    """Per-pool gauge reads; any field may be missing."""

    pool: str
    gauge: Optional[str] = None
    reward_rate: Optional[int] = None
    reward_token: Optional[str] = None
    period_finish: Optional[int] = None


# ── Pure Reward Computation ─────────────────────────────────────────────


def compute_reward_state(
    position_liquidity: int,
    gauge: Optional[GaugeState],
    total_staked_liquidity: Optional[int],
    reward_info: Optional[TokenInfo] = None,
    reward_price_usd: Optional[float] = None,
    position_usd_value: Optional[float] = None,
    earned_raw: Optional[int] = None,
    now: Optional[float] = None,
) -> Optional[RewardState]:
    """
    Reward state for one staked position, or None if a required input is
    missing (gauge, rewardRate, rewardToken, stakedLiquidity).

    Amounts are in reward-token human units (rewardRate / 10^decimals).
    """
    if gauge is None or gauge.gauge is None:
        return None
    if gauge.reward_rate is None or gauge.reward_token is None:
        return None
    if total_staked_liquidity is None:
        return None

    decimals = reward_info.decimals if reward_info else 18
    pool_rate = SlipstreamMath.to_human(gauge.reward_rate, decimals)
    proportion = RewardMath.liquidity_proportion(position_liquidity, total_staked_liquidity)
    flow = RewardMath.project_rewards(pool_rate, proportion)

    per_year_usd = None
    earned_usd = None
    if reward_price_usd:
        per_year_usd = flow["per_year"] * reward_price_usd
    earned = SlipstreamMath.to_human(earned_raw, decimals) if earned_raw is not None else None
    if earned is not None and reward_price_usd:
        earned_usd = earned * reward_price_usd

    now = time.time() if now is None else now
    return RewardState(
        gauge=gauge.gauge,
        reward_token=gauge.reward_token,
        reward_decimals=decimals,
        reward_symbol=reward_info.symbol if reward_info else None,
        reward_price_usd=reward_price_usd,
        pool_reward_per_second=pool_rate,
        total_staked_liquidity=total_staked_liquidity,
        liquidity_proportion=proportion,
        reward_per_second=flow["per_second"],
        reward_per_day=flow["per_day"],
        reward_per_week=flow["per_week"],
        reward_per_year=flow["per_year"],
        reward_per_year_usd=per_year_usd,
        estimated_apr=RewardMath.staking_apr(
            flow["per_year"], reward_price_usd, position_usd_value
        ),
        earned_amount=earned,
        earned_usd=earned_usd,
        period_finish=gauge.period_finish,
        is_emitting=(
            gauge.period_finish > now if gauge.period_finish is not None else None
        ),
    )


# ── On-Chain Gauge Reads ────────────────────────────────────────────────


class GaugeRewards:
    """
    Reads gauge state for pools with staked positions and attaches
    RewardState to each staked position.

    Usage:
        rewards = GaugeRewards()
        await rewards.attach_rewards(owner, positions, prices, trace, block,
                                     token_reader=reader, price_oracle=oracle)
    """

    def __init__(self, rpc_url: str = None, verbose: bool = False):
        self.rpc_url = rpc_url or config.chain.RPC_URL
        self.max_batch = config.chain.MAX_BATCH_SIZE
        self.timeout = config.chain.RPC_TIMEOUT_SECONDS
        self.verbose = verbose

    async def _batch(self, calls, block: str) -> List[str]:
        if not calls:
            return []
        return await _eth_call_batch(
            self.rpc_url, calls, timeout=self.timeout, block=block, max_batch=self.max_batch
        )

    async def read_gauge_states(
        self, pools: List[str], trace: PipelineTrace, block: str = "latest"
    ) -> Dict[str, GaugeState]:
        """gauge() per pool, then rewardRate/rewardToken/periodFinish per gauge."""
        unique = list(dict.fromkeys(p.lower() for p in pools if p))
        results = await self._batch([(p, SELECTORS["gauge"]) for p in unique], block)
        trace.batch("rewards.gauge", results)
        states = {
            pool: GaugeState(pool=pool, gauge=_optional_address(raw))
            for pool, raw in zip(unique, results)
        }

        with_gauge = [s for s in states.values() if s.gauge]
        calls = []
        for s in with_gauge:
            calls += [
                (s.gauge, SELECTORS["rewardRate"]),
                (s.gauge, SELECTORS["rewardToken"]),
                (s.gauge, SELECTORS["periodFinish"]),
            ]
        results = await self._batch(calls, block)
        if calls:
            trace.batch("rewards.gaugeInfo", results, gauges=len(with_gauge))
        for i, s in enumerate(with_gauge):
            s.reward_rate = _optional_uint(results[3 * i])
            s.reward_token = _optional_address(results[3 * i + 1])
            s.period_finish = _optional_uint(results[3 * i + 2])
        return states

    async def read_earned(
        self,
        owner: str,
        staked: List[Position],
        gauges: Dict[str, GaugeState],
        trace: PipelineTrace,
        block: str = "latest",
    ) -> Dict[int, int]:
        """earned(owner, tokenId) per staked position on its pool's gauge."""
        targets = []
        for p in staked:
            state = gauges.get(p.pool.lower()) if p.pool else None
            if state and state.gauge:
                targets.append((p.token_id, state.gauge))
        calls = [
            (gauge, SELECTORS["earned"] + _encode_address(owner) + _encode_uint256(token_id))
            for token_id, gauge in targets
        ]
        results = await self._batch(calls, block)
        if calls:
            trace.batch("rewards.earned", results)
        earned = {}
        for (token_id, _), raw in zip(targets, results):
            value = _optional_uint(raw)
            if value is not None:
                earned[token_id] = value
        return earned

    async def attach_rewards(
        self,
        owner: str,
        positions: List[Position],
        prices: Dict[str, float],
        trace: PipelineTrace,
        block: str = "latest",
        token_reader=None,
        price_oracle=None,
        now: Optional[float] = None,
    ) -> None:
        """
        Compute RewardState for every staked position (in place).

        Args:
            token_reader: Object with ``read_token_info(addresses, trace, block)``
                          for reward token metadata.
            price_oracle: Object with ``get_prices_usd(addresses)``; consulted
                          only for reward tokens missing from ``prices``.
                          ``prices`` is updated with what it returns.
        """
        for p in positions:
            if p.is_staked and not p.pool:
                trace.failure(
                    f"rewards[{p.token_id}]",
                    ErrorKind.PARTIAL_READ_FAILURE,
                    "pool lookup failed",
                )
        staked = [p for p in positions if p.is_staked and p.pool]
        if not staked:
            trace.step("rewards", total=0)
            return

        say(self.verbose, f"  🎁 Reading gauges for {len(staked)} staked positions...")
        gauges = await self.read_gauge_states([p.pool for p in staked], trace, block)
        earned = await self.read_earned(owner, staked, gauges, trace, block)

        reward_tokens = list(
            dict.fromkeys(s.reward_token.lower() for s in gauges.values() if s.reward_token)
        )
        reward_info: Dict[str, TokenInfo] = {}
        if reward_tokens and token_reader is not None:
            reward_info = await token_reader.read_token_info(reward_tokens, trace, block)
        missing = [t for t in reward_tokens if t not in prices]
        if missing and price_oracle is not None:
            try:
                prices.update(await price_oracle.get_prices_usd(missing))
            except RuntimeError as e:
                trace.failure("rewards.prices", ErrorKind.UPSTREAM_UNAVAILABLE, e)

        attached = 0
        for p in staked:
            state = gauges.get(p.pool.lower())
            token = state.reward_token.lower() if state and state.reward_token else None
            total_staked = p.snapshot.total_staked_liquidity if p.snapshot else None
            p.rewards = compute_reward_state(
                p.liquidity,
                state,
                total_staked,
                reward_info=reward_info.get(token) if token else None,
                reward_price_usd=prices.get(token) if token else None,
                position_usd_value=p.valuation.usd_value,
                earned_raw=earned.get(p.token_id),
                now=now,
            )
            if p.rewards is None:
                trace.failure(
                    f"rewards[{p.token_id}]",
                    ErrorKind.PARTIAL_READ_FAILURE,
                    "gauge, rewardRate, rewardToken or stakedLiquidity missing",
                )
            else:
                attached += 1
                if p.rewards.estimated_apr is None:
                    trace.failure(
                        f"rewards[{p.token_id}].apr",
                        ErrorKind.COMPUTATION_GUARDED,
                        "position value or reward price missing or zero",
                    )
        trace.step("rewards", total=len(staked), ok=attached)
