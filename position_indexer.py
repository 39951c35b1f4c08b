#!/usr/bin/env python3
"""
Slipstream Position Indexer — Owner → Position IDs
==================================================

Discovers every CL position NFT an owner controls, held or staked.

Wallet flow (NonfungiblePositionManager, ERC-721 Enumerable):
  1. balanceOf(owner)              → How many position NFTs the wallet holds
  2. tokenOfOwnerByIndex(owner, i) → Token ID at index i (one batch)

Staked flow (staked NFTs are owned by the gauge, not the wallet):
  1. Candidate pool keys           → allow-list ∪ pool cache
  2. CLFactory.getPool(t0, t1, ts) → Pool address (zero = no pool)
  3. CLPool.gauge()                → Gauge address (zero = no gauge)
  4. CLGauge.stakedValues(owner)   → uint256[] of staked token IDs

Every per-index, per-pool and per-gauge failure drops only that item. The
whole resolution fails only when the chain RPC is unreachable for both
flows.

Contract References:
  NonfungiblePositionManager: https://github.com/aerodrome-finance/slipstream/blob/main/contracts/periphery/NonfungiblePositionManager.sol
  ERC-721 Enumerable:         https://eips.ethereum.org/EIPS/eip-721
  CLFactory:                  https://github.com/aerodrome-finance/slipstream/blob/main/contracts/core/CLFactory.sol
  CLGauge:                    https://github.com/aerodrome-finance/slipstream/blob/main/contracts/gauge/CLGauge.sol
"""

import asyncio
from typing import Dict, List, Optional, Set

from cl_tracker.central_config import config
from cl_tracker.diagnostics import PipelineTrace, say
from cl_tracker.errors import ErrorKind, InvalidInput, UpstreamUnavailable
from cl_tracker.models import PositionRef
from cl_tracker.pool_registry import candidate_pool_keys, load_pool_cache
from cl_tracker.rpc_helpers import (
    # Constants
    SELECTORS,
    is_valid_address,
    # Encoding
    encode_uint256 as _encode_uint256,
    encode_address as _encode_address,
    encode_int24 as _encode_int24,
    # Decoding
    decode_uint as _decode_uint,
    decode_uint_array as _decode_uint_array,
    decode_optional_address as _address_or_none,
    # RPC
    eth_call as _eth_call,
    eth_call_batch as _eth_call_batch,
)


class PositionIndexer:
    """
    Resolves an owner address to the position NFTs it holds or has staked.

    Usage:
        indexer = PositionIndexer()
        refs = await indexer.resolve("0x...owner...")
    """

    def __init__(
        self,
        rpc_url: str = None,
        position_manager: str = None,
        factory: str = None,
        pool_cache_source: Optional[str] = None,
        verbose: bool = False,
    ):
        self.rpc_url = rpc_url or config.chain.RPC_URL
        self.position_manager = position_manager or config.chain.POSITION_MANAGER
        self.factory = factory or config.chain.CL_FACTORY
        self.pool_cache_source = (
            pool_cache_source if pool_cache_source is not None else config.pool_cache.SOURCE
        )
        self.max_batch = config.chain.MAX_BATCH_SIZE
        self.timeout = config.chain.RPC_TIMEOUT_SECONDS
        self.verbose = verbose

    async def _batch(self, calls, block: str) -> List[str]:
        return await _eth_call_batch(
            self.rpc_url, calls, timeout=self.timeout, block=block, max_batch=self.max_batch
        )

    # ── Wallet Holdings ──────────────────────────────────────────────────

    async def get_position_count(self, owner: str, block: str = "latest") -> int:
        """
        Number of position NFTs held by the wallet.
        Calls: balanceOf(address) on NonfungiblePositionManager.
        """
        calldata = SELECTORS["balanceOf"] + _encode_address(owner)
        result = await _eth_call(
            self.rpc_url, self.position_manager, calldata, timeout=self.timeout, block=block
        )
        return _decode_uint(result, 0)

    async def get_wallet_token_ids(
        self, owner: str, trace: PipelineTrace, block: str = "latest"
    ) -> List[int]:
        """
        Token IDs held directly by the wallet (tokenOfOwnerByIndex batch).
        Failed indices are skipped.

        Raises:
            UpstreamUnavailable: If the chain RPC cannot be reached.
        """
        try:
            count = await self.get_position_count(owner, block)
        except UpstreamUnavailable:
            raise
        except (RuntimeError, ValueError) as e:
            trace.failure("wallet.balanceOf", ErrorKind.PARTIAL_READ_FAILURE, e)
            return []
        trace.step("wallet.balanceOf", count=count)
        if count == 0:
            return []

        calls = [
            (
                self.position_manager,
                SELECTORS["tokenOfOwnerByIndex"] + _encode_address(owner) + _encode_uint256(i),
            )
            for i in range(count)
        ]
        results = await self._batch(calls, block)
        trace.batch("wallet.tokenOfOwnerByIndex", results)

        token_ids = []
        for r in results:
            if not r:
                continue
            try:
                token_ids.append(_decode_uint(r, 0))
            except ValueError:
                continue
        return token_ids

    # ── Staked Holdings ──────────────────────────────────────────────────

    async def resolve_pools(
        self, pool_keys: List[Dict], trace: PipelineTrace, block: str = "latest"
    ) -> Dict[int, str]:
        """
        CLFactory.getPool(token0, token1, tickSpacing) for every key.

        Returns:
            Index into ``pool_keys`` → pool address, for keys that have a pool.
        """
        calls = [
            (
                self.factory,
                SELECTORS["getPool"]
                + _encode_address(k["token0"])
                + _encode_address(k["token1"])
                + _encode_int24(k["tickSpacing"]),
            )
            for k in pool_keys
        ]
        results = await self._batch(calls, block) if calls else []
        trace.batch("staked.getPool", results)
        pools = {}
        for i, r in enumerate(results):
            addr = _address_or_none(r)
            if addr:
                pools[i] = addr
        return pools

    async def resolve_gauges(
        self, pools: List[str], trace: PipelineTrace, block: str = "latest"
    ) -> Dict[str, str]:
        """CLPool.gauge() per pool → {pool: gauge}; pools without a gauge are left out."""
        results = await self._batch(
            [(p, SELECTORS["gauge"]) for p in pools], block
        ) if pools else []
        trace.batch("staked.gauge", results)
        gauges = {}
        for pool, r in zip(pools, results):
            addr = _address_or_none(r)
            if addr:
                gauges[pool] = addr
        return gauges

    async def get_staked_token_ids(
        self, owner: str, trace: PipelineTrace, block: str = "latest"
    ) -> Set[int]:
        """
        Token IDs the owner has staked in any candidate pool's gauge.

        Raises:
            UpstreamUnavailable: If the chain RPC cannot be reached.
        """
        cached = await load_pool_cache(self.pool_cache_source, config.pool_cache.MAX_ENTRIES)
        pool_keys = candidate_pool_keys(cached)
        trace.step("staked.candidates", total=len(pool_keys), cached=len(cached))

        pools_by_key = await self.resolve_pools(pool_keys, trace, block)
        pools = list(dict.fromkeys(pools_by_key.values()))
        gauges = await self.resolve_gauges(pools, trace, block)
        gauge_list = list(dict.fromkeys(gauges.values()))
        if not gauge_list:
            return set()

        calldata = SELECTORS["stakedValues"] + _encode_address(owner)
        results = await self._batch([(g, calldata) for g in gauge_list], block)
        trace.batch("staked.stakedValues", results)

        staked: Set[int] = set()
        for r in results:
            if not r:
                continue
            try:
                staked.update(_decode_uint_array(r, 0))
            except ValueError:
                continue
        return staked

    # ── Resolution ───────────────────────────────────────────────────────

    async def resolve(
        self,
        owner: str,
        trace: Optional[PipelineTrace] = None,
        block: str = "latest",
    ) -> List[PositionRef]:
        """
        Deduplicated union of wallet and staked position IDs.

        An ID found in a gauge is staked; an ID found only in the wallet is
        not. Wallet order is kept, staked-only IDs follow in ascending order.

        Raises:
            InvalidInput: If ``owner`` is not a well-formed address (no I/O).
            UpstreamUnavailable: If the chain RPC is down for both flows.
        """
        if not is_valid_address(owner):
            raise InvalidInput(f"Invalid owner address: {owner!r}")
        trace = trace or PipelineTrace(owner)

        say(self.verbose, f"  🔍 Scanning positions for {owner[:10]}...")
        wallet_task = self.get_wallet_token_ids(owner, trace, block)
        staked_task = self.get_staked_token_ids(owner, trace, block)
        wallet_result, staked_result = await asyncio.gather(
            wallet_task, staked_task, return_exceptions=True
        )

        failures = []
        for name, result in (("wallet", wallet_result), ("staked", staked_result)):
            if isinstance(result, UpstreamUnavailable):
                trace.failure(f"{name}.resolve", ErrorKind.UPSTREAM_UNAVAILABLE, result)
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
        if len(failures) == 2:
            raise failures[0]

        wallet_ids = wallet_result if isinstance(wallet_result, list) else []
        staked_ids = staked_result if isinstance(staked_result, set) else set()

        ordered = list(dict.fromkeys(wallet_ids))
        held = set(ordered)
        ordered += sorted(i for i in staked_ids if i not in held)
        refs = [PositionRef(token_id=i, is_staked=i in staked_ids) for i in ordered]

        trace.step(
            "resolve",
            total=len(refs),
            wallet=len(wallet_ids),
            staked=len(staked_ids),
        )
        say(
            self.verbose,
            f"  ✅ {len(refs)} positions ({len(staked_ids)} staked)",
        )
        return refs
