#!/usr/bin/env python3
"""
Position Valuation Engine
=========================

Turns a position and its pool snapshot into token amounts, prices, price
range, unclaimed fees and USD value.

Two tiers:
  1. EXACT — Slipstream SugarHelper view functions evaluated on-chain:
       principal(positionManager, tokenId, sqrtRatioX96) → (amount0, amount1)
       fees(positionManager, tokenId)                    → (fees0, fees1)
     Same integer math and rounding as the pool itself.
     Ref: https://github.com/aerodrome-finance/slipstream/blob/main/contracts/periphery/SugarHelper.sol

  2. APPROXIMATE — closed-form float math (real_defi_math.SlipstreamMath),
     used only for a position whose principal() call failed. Fees then fall
     back to the tokensOwed0/1 checkpoint stored in the NFT, which excludes
     fees accrued since the last poke.

The result carries its provenance as ``ValuationSource``. Without a pool
snapshot, or with an invalid tick range, nothing numeric is derived.
"""

from typing import Dict, List, Optional, Tuple

from cl_tracker.central_config import config
from cl_tracker.diagnostics import PipelineTrace, say
from cl_tracker.errors import ErrorKind, UpstreamUnavailable
from cl_tracker.models import PoolSnapshot, Position, Valuation, ValuationSource
from cl_tracker.rpc_helpers import (
    SELECTORS,
    encode_uint256 as _encode_uint256,
    encode_address as _encode_address,
    decode_uint as _decode_uint,
    eth_call_batch as _eth_call_batch,
)
from real_defi_math import SlipstreamMath, usd_value

RawPair = Tuple[int, int]


def _decode_pair(raw: str) -> Optional[RawPair]:
    if not raw:
        return None
    try:
        return _decode_uint(raw, 0), _decode_uint(raw, 1)
    except ValueError:
        return None


# ── Pure Valuation ──────────────────────────────────────────────────────


def compute_valuation(
    position: Position,
    snapshot: Optional[PoolSnapshot],
    exact_principal: Optional[RawPair] = None,
    exact_fees: Optional[RawPair] = None,
    price0_usd: Optional[float] = None,
    price1_usd: Optional[float] = None,
) -> Valuation:
    """
    Derive the valuation of one position from one snapshot.

    Args:
        position: Position structure (ticks, liquidity, token decimals).
        snapshot: Pool state at the refresh block; None → unavailable.
        exact_principal: Raw (amount0, amount1) from SugarHelper.principal().
        exact_fees: Raw (fees0, fees1) from SugarHelper.fees().
        price0_usd / price1_usd: USD unit prices; None = unknown.

    Returns:
        Valuation tagged EXACT, APPROXIMATE or UNAVAILABLE.
    """
    if snapshot is None or not position.tick_range_valid:
        return Valuation.unavailable()

    d0, d1 = position.token0.decimals, position.token1.decimals

    # ── Price (same snapshot as the amounts) ─────────────────────────
    price1_per_0 = SlipstreamMath.human_price(snapshot.current_tick, d0, d1)
    price_range = SlipstreamMath.price_range(position.tick_lower, position.tick_upper, d0, d1)

    # ── Amounts ──────────────────────────────────────────────────────
    if exact_principal is not None:
        source = ValuationSource.EXACT
        raw0, raw1 = exact_principal
    else:
        source = ValuationSource.APPROXIMATE
        raw0, raw1 = SlipstreamMath.amounts_for_liquidity(
            position.liquidity,
            position.tick_lower,
            position.tick_upper,
            snapshot.current_tick,
            snapshot.sqrt_price_x96,
        )
    amount0 = SlipstreamMath.to_human(raw0, d0)
    amount1 = SlipstreamMath.to_human(raw1, d1)

    # ── Unclaimed Fees ───────────────────────────────────────────────
    if exact_fees is not None:
        fees_source = ValuationSource.EXACT
        fees_raw0, fees_raw1 = exact_fees
    else:
        fees_source = ValuationSource.APPROXIMATE
        fees_raw0, fees_raw1 = position.tokens_owed0, position.tokens_owed1
    fees0 = SlipstreamMath.to_human(fees_raw0, d0)
    fees1 = SlipstreamMath.to_human(fees_raw1, d1)

    return Valuation(
        source=source,
        amount0=amount0,
        amount1=amount1,
        in_range=SlipstreamMath.is_in_range(
            snapshot.current_tick, position.tick_lower, position.tick_upper
        ),
        price1_per_0=price1_per_0,
        price0_per_1=SlipstreamMath.reciprocal(price1_per_0),
        price_range=price_range,
        unclaimed_fees0=fees0,
        unclaimed_fees1=fees1,
        fees_source=fees_source,
        token0_price_usd=price0_usd,
        token1_price_usd=price1_usd,
        usd_value=usd_value(amount0, amount1, price0_usd, price1_usd),
        unclaimed_fees_usd=usd_value(fees0, fees1, price0_usd, price1_usd),
    )


# ── On-Chain Helper Reads ───────────────────────────────────────────────


class PositionValuator:
    """
    Batches SugarHelper reads and applies ``compute_valuation`` per position.

    Usage:
        valuator = PositionValuator()
        await valuator.value_positions(positions, prices, trace, block)
    """

    def __init__(
        self,
        rpc_url: str = None,
        position_manager: str = None,
        sugar_helper: str = None,
        verbose: bool = False,
    ):
        self.rpc_url = rpc_url or config.chain.RPC_URL
        self.position_manager = position_manager or config.chain.POSITION_MANAGER
        self.sugar_helper = sugar_helper or config.chain.SUGAR_HELPER
        self.max_batch = config.chain.MAX_BATCH_SIZE
        self.timeout = config.chain.RPC_TIMEOUT_SECONDS
        self.verbose = verbose

    async def read_exact(
        self, positions: List[Position], trace: PipelineTrace, block: str = "latest"
    ) -> Dict[int, Tuple[Optional[RawPair], Optional[RawPair]]]:
        """
        principal() and fees() for every position that has a snapshot.

        Returns:
            token_id → (principal or None, fees or None).
        """
        eligible = [p for p in positions if p.snapshot is not None and p.tick_range_valid]
        if not eligible:
            return {}

        npm = _encode_address(self.position_manager)
        calls = []
        for p in eligible:
            token_id = _encode_uint256(p.token_id)
            calls.append(
                (
                    self.sugar_helper,
                    SELECTORS["principal"] + npm + token_id
                    + _encode_uint256(p.snapshot.sqrt_price_x96),
                )
            )
            calls.append((self.sugar_helper, SELECTORS["fees"] + npm + token_id))

        results = await _eth_call_batch(
            self.rpc_url, calls, timeout=self.timeout, block=block, max_batch=self.max_batch
        )
        trace.batch("valuation.sugarHelper", results, positions=len(eligible))

        return {
            p.token_id: (_decode_pair(results[2 * i]), _decode_pair(results[2 * i + 1]))
            for i, p in enumerate(eligible)
        }

    async def value_positions(
        self,
        positions: List[Position],
        prices: Dict[str, float],
        trace: PipelineTrace,
        block: str = "latest",
    ) -> None:
        """Attach a Valuation to every position (in place)."""
        say(self.verbose, "  🧮 Valuing positions...")
        try:
            exact = await self.read_exact(positions, trace, block)
        except UpstreamUnavailable as e:
            trace.failure("valuation.sugarHelper", ErrorKind.UPSTREAM_UNAVAILABLE, e)
            exact = {}

        counts = {source: 0 for source in ValuationSource}
        for position in positions:
            principal, fees = exact.get(position.token_id, (None, None))
            position.valuation = compute_valuation(
                position,
                position.snapshot,
                exact_principal=principal,
                exact_fees=fees,
                price0_usd=prices.get(position.token0.address.lower()),
                price1_usd=prices.get(position.token1.address.lower()),
            )
            counts[position.valuation.source] += 1
            if position.valuation.source is ValuationSource.UNAVAILABLE:
                reason = (
                    "invalid tick range" if not position.tick_range_valid
                    else "no pool snapshot"
                )
                trace.failure(
                    f"valuation[{position.token_id}]", ErrorKind.PARTIAL_READ_FAILURE, reason
                )
            elif position.valuation.usd_value is None:
                trace.failure(
                    f"valuation[{position.token_id}].usd",
                    ErrorKind.COMPUTATION_GUARDED,
                    "no USD price for either token",
                )

        trace.step(
            "valuation",
            total=len(positions),
            exact=counts[ValuationSource.EXACT],
            approximate=counts[ValuationSource.APPROXIMATE],
            unavailable=counts[ValuationSource.UNAVAILABLE],
        )
