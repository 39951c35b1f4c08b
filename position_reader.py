#!/usr/bin/env python3
"""
On-Chain Position Reader for Aerodrome Slipstream
==================================================

Reads position structure, pool state and token metadata directly from the
chain via public JSON-RPC. No web3.py dependency — uses httpx for raw
eth_call batches.

Data Sources (per RPC call):
─────────────────────────────
1. NonfungiblePositionManager.positions(tokenId)
   Returns: nonce, operator, token0, token1, tickSpacing, tickLower,
            tickUpper, liquidity, feeGrowthInside0LastX128,
            feeGrowthInside1LastX128, tokensOwed0, tokensOwed1
   Ref: https://github.com/aerodrome-finance/slipstream/blob/main/contracts/periphery/NonfungiblePositionManager.sol

2. CLFactory.getPool(token0, token1, int24 tickSpacing)
   Slipstream keys pools by tick spacing instead of a fee tier.

3. CLPool.slot0()
   Returns: sqrtPriceX96, tick (current price state)
   CLPool.liquidity(), CLPool.stakedLiquidity()
   Ref: https://github.com/aerodrome-finance/slipstream/blob/main/contracts/core/CLPool.sol

4. ERC-20.decimals(), ERC-20.symbol()
   Token metadata for human-readable formatting.

Every stage is one batch. A failed item leaves its field absent and never
fails the batch: decimals default to 18, a symbol stays unknown.
"""

import asyncio
from typing import Dict, Iterable, List, Tuple

from cl_tracker.central_config import config
from cl_tracker.diagnostics import PipelineTrace, say
from cl_tracker.errors import ErrorKind
from cl_tracker.models import PoolSnapshot, Position, PositionRef, TokenInfo
from cl_tracker.rpc_helpers import (
    # Constants
    SELECTORS,
    # Encoding
    encode_uint256 as _encode_uint256,
    encode_address as _encode_address,
    encode_int24 as _encode_int24,
    # Decoding
    decode_uint as _decode_uint,
    decode_int as _decode_int,
    decode_address as _decode_address,
    decode_string as _decode_string,
    decode_optional_uint as _optional_uint,
    decode_optional_address as _optional_address,
    # RPC
    eth_call_batch as _eth_call_batch,
    # Symbol normalization
    normalize_symbol as _normalize_symbol,
)

DEFAULT_DECIMALS = 18
MAX_DECIMALS = 77  # 10^78 > 2^256: no ERC-20 can meaningfully use more


def decode_position(token_id: int, is_staked: bool, raw: str) -> Position:
    """
    Decode a positions(tokenId) return into a Position.

    Raises:
        ValueError: If the response is shorter than the 12-word struct.
    """
    return Position(
        token_id=token_id,
        is_staked=is_staked,
        token0=TokenInfo(address=_decode_address(raw, 2)),
        token1=TokenInfo(address=_decode_address(raw, 3)),
        tick_spacing=_decode_int(raw, 4),
        tick_lower=_decode_int(raw, 5),
        tick_upper=_decode_int(raw, 6),
        liquidity=_decode_uint(raw, 7),
        tokens_owed0=_decode_uint(raw, 10),
        tokens_owed1=_decode_uint(raw, 11),
    )


def _pool_key(position: Position) -> Tuple[str, str, int]:
    return (
        position.token0.address.lower(),
        position.token1.address.lower(),
        position.tick_spacing,
    )


class PositionReader:
    """
    Reads Slipstream position data directly from the blockchain.

    Usage:
        reader = PositionReader()
        positions = await reader.read(refs, trace, block="0x12d6a8f")
    """

    def __init__(
        self,
        rpc_url: str = None,
        position_manager: str = None,
        factory: str = None,
        verbose: bool = False,
    ):
        self.rpc_url = rpc_url or config.chain.RPC_URL
        self.position_manager = position_manager or config.chain.POSITION_MANAGER
        self.factory = factory or config.chain.CL_FACTORY
        self.max_batch = config.chain.MAX_BATCH_SIZE
        self.timeout = config.chain.RPC_TIMEOUT_SECONDS
        self.verbose = verbose

    async def _batch(self, calls, block: str) -> List[str]:
        if not calls:
            return []
        return await _eth_call_batch(
            self.rpc_url, calls, timeout=self.timeout, block=block, max_batch=self.max_batch
        )

    # ── Step 1: Position NFTs ────────────────────────────────────────────

    async def read_positions(
        self, refs: List[PositionRef], trace: PipelineTrace, block: str = "latest"
    ) -> List[Position]:
        """
        positions(tokenId) for every ref. A position whose read fails is
        dropped (nothing about it is known) and recorded in the trace.
        """
        calls = [
            (self.position_manager, SELECTORS["positions"] + _encode_uint256(ref.token_id))
            for ref in refs
        ]
        results = await self._batch(calls, block)
        trace.batch("detail.positions", results)

        positions = []
        for ref, raw in zip(refs, results):
            if not raw:
                trace.failure(
                    f"detail.positions[{ref.token_id}]",
                    ErrorKind.PARTIAL_READ_FAILURE,
                    "positions() returned no data",
                )
                continue
            try:
                position = decode_position(ref.token_id, ref.is_staked, raw)
            except ValueError as e:
                trace.failure(
                    f"detail.positions[{ref.token_id}]", ErrorKind.PARTIAL_READ_FAILURE, e
                )
                continue
            if not position.tick_range_valid:
                position.data_errors.append(
                    f"invalid tick range: tickLower {position.tick_lower} "
                    f">= tickUpper {position.tick_upper}"
                )
            positions.append(position)
        return positions

    # ── Step 2: Pool Addresses ───────────────────────────────────────────

    async def resolve_pools(
        self, positions: List[Position], trace: PipelineTrace, block: str = "latest"
    ) -> None:
        """
        CLFactory.getPool() once per unique (token0, token1, tickSpacing).
        Sets ``position.pool``; a failed lookup leaves it None.
        """
        keys = list(dict.fromkeys(_pool_key(p) for p in positions))
        calls = [
            (
                self.factory,
                SELECTORS["getPool"]
                + _encode_address(t0)
                + _encode_address(t1)
                + _encode_int24(ts),
            )
            for t0, t1, ts in keys
        ]
        results = await self._batch(calls, block)
        trace.batch("detail.getPool", results, unique=len(keys))

        pools: Dict[Tuple[str, str, int], str] = {}
        for key, raw in zip(keys, results):
            addr = _optional_address(raw)
            if addr:
                pools[key] = addr

        for position in positions:
            position.pool = pools.get(_pool_key(position))

    # ── Step 3: Pool Snapshots ───────────────────────────────────────────

    async def read_pool_snapshots(
        self, pools: Iterable[str], trace: PipelineTrace, block: str = "latest"
    ) -> Dict[str, PoolSnapshot]:
        """
        slot0(), liquidity() and stakedLiquidity() per unique pool, in one
        batch at one block so every valuation uses the same state.

        A pool whose slot0() fails has no snapshot; the liquidity totals are
        optional.
        """
        unique = list(dict.fromkeys(p.lower() for p in pools if p))
        calls = []
        for pool in unique:
            calls += [
                (pool, SELECTORS["slot0"]),
                (pool, SELECTORS["liquidity"]),
                (pool, SELECTORS["stakedLiquidity"]),
            ]
        results = await self._batch(calls, block)
        trace.batch("detail.poolState", results, pools=len(unique))

        snapshots = {}
        for i, pool in enumerate(unique):
            slot0, liquidity, staked = results[3 * i:3 * i + 3]
            if not slot0:
                continue
            try:
                sqrt_price_x96 = _decode_uint(slot0, 0)
                current_tick = _decode_int(slot0, 1)
            except ValueError:
                continue
            snapshots[pool] = PoolSnapshot(
                address=pool,
                current_tick=current_tick,
                sqrt_price_x96=sqrt_price_x96,
                total_liquidity=_optional_uint(liquidity),
                total_staked_liquidity=_optional_uint(staked),
            )
        return snapshots

    # ── Step 4: Token Metadata ───────────────────────────────────────────

    async def read_token_info(
        self, addresses: Iterable[str], trace: PipelineTrace, block: str = "latest"
    ) -> Dict[str, TokenInfo]:
        """
        symbol() and decimals() per unique token (keys lowercased).

        Defaults: decimals → 18 when unreadable; symbol → None (never made up).
        """
        unique = list(dict.fromkeys(a.lower() for a in addresses if a))
        calls = []
        for token in unique:
            calls += [(token, SELECTORS["symbol"]), (token, SELECTORS["decimals"])]
        results = await self._batch(calls, block)
        trace.batch("detail.tokenMetadata", results, tokens=len(unique))

        tokens = {}
        for i, token in enumerate(unique):
            raw_symbol, raw_decimals = results[2 * i], results[2 * i + 1]
            symbol = _decode_string(raw_symbol) if raw_symbol else None
            decimals = _optional_uint(raw_decimals)
            if decimals is None or decimals > MAX_DECIMALS:
                decimals = DEFAULT_DECIMALS
            tokens[token] = TokenInfo(
                address=token,
                symbol=_normalize_symbol(symbol) if symbol else None,
                decimals=decimals,
            )
        return tokens

    # ── Full Read ────────────────────────────────────────────────────────

    async def read(
        self, refs: List[PositionRef], trace: PipelineTrace, block: str = "latest"
    ) -> List[Position]:
        """
        Positions with pool address, pool snapshot and token metadata attached.
        """
        say(self.verbose, f"  📖 Reading {len(refs)} positions...")
        positions = await self.read_positions(refs, trace, block)
        if not positions:
            return []

        await self.resolve_pools(positions, trace, block)

        say(self.verbose, "  📊 Reading pool & token state...")
        snapshots, tokens = await asyncio.gather(
            self.read_pool_snapshots([p.pool for p in positions if p.pool], trace, block),
            self.read_token_info(
                [a for p in positions for a in (p.token0.address, p.token1.address)],
                trace,
                block,
            ),
        )

        for position in positions:
            if position.pool:
                position.snapshot = snapshots.get(position.pool.lower())
            position.token0 = tokens.get(position.token0.address.lower(), position.token0)
            position.token1 = tokens.get(position.token1.address.lower(), position.token1)
            if position.liquidity == 0 and not position.is_staked:
                say(self.verbose, f"  ⚠️  #{position.token_id} has zero liquidity (closed)")
        return positions