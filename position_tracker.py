#!/usr/bin/env python3
"""
Position Tracker — One Refresh, Full Pipeline
==============================================

Stages run strictly in order, each one after the previous stage's reads
have all settled:

  0. eth_blockNumber          → pin every read of this refresh to one block
  1. PositionIndexer          → owner → [PositionRef]
  2. PositionReader           → structure, pool, snapshot, token metadata
  3. PriceOracle              → USD unit prices of position tokens
  4. PositionValuator         → amounts, prices, range, fees, USD value
  5. GaugeRewards             → reward share, projections, APR
  6. HistoricalEnricher       → pool stats, position history, ROI

Failure policy:
  • Malformed owner                  → InvalidInput before any I/O
  • Chain RPC down at stage 1 or 2   → PipelineFailed (carries the trace)
  • Anything else                    → that stage's fields stay absent,
                                       recorded in the trace

``PositionTracker`` adds the caller-side state: a per-address cooldown and
failure backoff, and the last result per address.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cl_tracker.central_config import config
from cl_tracker.diagnostics import PipelineTrace, say
from cl_tracker.errors import ErrorKind, InvalidInput, PipelineFailed, UpstreamUnavailable
from cl_tracker.models import Position
from cl_tracker.price_oracle import PriceOracle
from cl_tracker.rpc_helpers import eth_block_number as _eth_block_number, is_valid_address
from cl_tracker.throttle import RefreshGuard
from gauge_rewards import GaugeRewards
from historical_analyzer import HistoricalEnricher
from position_indexer import PositionIndexer
from position_reader import PositionReader
from position_valuation import PositionValuator


@dataclass
class TrackerResult:
    """Enriched positions of one owner at one block."""

    owner: str
    positions: List[Position]
    trace: PipelineTrace
    block: Optional[int] = None
    fetched_at: float = field(default_factory=time.time)

    def to_dict(self, include_trace: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "owner": self.owner,
            "block": self.block,
            "fetched_at": int(self.fetched_at),
            "positions": [p.to_dict() for p in self.positions],
        }
        if include_trace:
            out["debug"] = self.trace.to_dict()
        return out


def _require_owner(owner) -> str:
    if not is_valid_address(owner):
        raise InvalidInput(f"Invalid owner address: {owner!r}")
    return owner


async def fetch_positions(
    owner: str,
    rpc_url: str = None,
    indexer: PositionIndexer = None,
    reader: PositionReader = None,
    valuator: PositionValuator = None,
    rewards: GaugeRewards = None,
    enricher: HistoricalEnricher = None,
    price_oracle: PriceOracle = None,
    verbose: bool = False,
    now: Optional[float] = None,
) -> TrackerResult:
    """
    Run the whole pipeline once for ``owner``.

    Raises:
        InvalidInput: Malformed owner address (no network call is made).
        PipelineFailed: The chain RPC is unreachable; ``.trace`` says where.
    """
    _require_owner(owner)
    rpc_url = rpc_url or config.chain.RPC_URL
    indexer = indexer or PositionIndexer(rpc_url=rpc_url, verbose=verbose)
    reader = reader or PositionReader(rpc_url=rpc_url, verbose=verbose)
    valuator = valuator or PositionValuator(rpc_url=rpc_url, verbose=verbose)
    rewards = rewards or GaugeRewards(rpc_url=rpc_url, verbose=verbose)
    enricher = enricher or HistoricalEnricher(verbose=verbose)
    price_oracle = price_oracle or PriceOracle()

    trace = PipelineTrace(owner)

    # ── Stage 0: Pin block ───────────────────────────────────────────
    block = "latest"
    try:
        trace.block = await _eth_block_number(rpc_url)
        block = hex(trace.block)
        trace.step("block", block=trace.block)
    except (UpstreamUnavailable, RuntimeError, ValueError, KeyError) as e:
        trace.failure("block", ErrorKind.UPSTREAM_UNAVAILABLE, e)

    # ── Stages 1-2: Resolve + detail ─────────────────────────────────
    try:
        refs = await indexer.resolve(owner, trace, block)
        positions = await reader.read(refs, trace, block) if refs else []
    except UpstreamUnavailable as e:
        trace.failure("pipeline", ErrorKind.UPSTREAM_UNAVAILABLE, e)
        say(verbose, "  ❌ Chain RPC unavailable")
        raise PipelineFailed(f"Chain RPC unavailable for {owner}", trace) from e

    if not positions:
        say(verbose, "  ℹ️  No positions found")
        return TrackerResult(owner=owner, positions=[], trace=trace, block=trace.block)

    # ── Stage 3: Prices ──────────────────────────────────────────────
    prices: Dict[str, float] = {}
    tokens = [a for p in positions for a in (p.token0.address, p.token1.address)]
    try:
        prices = await price_oracle.get_prices_usd(tokens)
        trace.step("prices", total=len(set(t.lower() for t in tokens)), ok=len(prices))
    except UpstreamUnavailable as e:
        trace.failure("prices", ErrorKind.UPSTREAM_UNAVAILABLE, e)

    # ── Stage 4: Valuation ───────────────────────────────────────────
    await valuator.value_positions(positions, prices, trace, block)

    # ── Stage 5: Rewards ─────────────────────────────────────────────
    try:
        await rewards.attach_rewards(
            owner, positions, prices, trace, block,
            token_reader=reader, price_oracle=price_oracle, now=now,
        )
    except UpstreamUnavailable as e:
        trace.failure("rewards", ErrorKind.UPSTREAM_UNAVAILABLE, e)

    # ── Stage 6: History ─────────────────────────────────────────────
    await enricher.enrich(positions, prices, trace, now=now)

    say(verbose, f"  ✅ {len(positions)} positions enriched")
    return TrackerResult(owner=owner, positions=positions, trace=trace, block=trace.block)


class PositionTracker:
    """
    Caller-owned refresh state around ``fetch_positions``.

    Usage:
        tracker = PositionTracker()
        result = await tracker.refresh("0x...owner...")
        result = await tracker.refresh("0x...owner...")   # throttled → cached
        result = await tracker.refresh("0x...owner...", force=True)
    """

    def __init__(self, guard: RefreshGuard = None, verbose: bool = False, **pipeline):
        self.guard = guard or RefreshGuard(
            cooldown_seconds=config.refresh.COOLDOWN_SECONDS,
            fail_backoff_seconds=config.refresh.FAIL_BACKOFF_SECONDS,
        )
        self.verbose = verbose
        self._pipeline = pipeline
        # One oracle (and its rate limiter) across refreshes
        self._pipeline.setdefault("price_oracle", PriceOracle())
        self._cache: Dict[str, TrackerResult] = {}
        self._generation: Dict[str, int] = {}
        self._stored_generation: Dict[str, int] = {}

    def cached(self, owner: str) -> Optional[TrackerResult]:
        return self._cache.get(owner.lower())

    async def refresh(self, owner: str, force: bool = False) -> Optional[TrackerResult]:
        """
        Run the pipeline unless throttled.

        Within the cooldown or failure-backoff window the last result is
        returned (None if there is none). ``force`` skips both windows.
        When two refreshes for one owner overlap, the one started last wins.

        Raises:
            InvalidInput: Malformed owner address.
            PipelineFailed: The run failed; the backoff window is armed.
        """
        _require_owner(owner)
        key = owner.lower()
        if not force and not self.guard.allow(key):
            say(
                self.verbose,
                f"  ⏳ Throttled, next refresh in {self.guard.remaining(key):.0f}s",
            )
            return self._cache.get(key)

        self.guard.record_attempt(key)
        generation = self._generation.get(key, 0) + 1
        self._generation[key] = generation
        try:
            result = await fetch_positions(owner, verbose=self.verbose, **self._pipeline)
        except PipelineFailed:
            self.guard.record_failure(key)
            raise

        if generation >= self._stored_generation.get(key, 0):
            self._cache[key] = result
            self._stored_generation[key] = generation
        return self._cache[key]
