#!/usr/bin/env python3
"""
Historical Enrichment — Subgraph Pool & Position Aggregates
============================================================

Merges indexer aggregates into positions:

  Pool level     : TVL, 24h / 7d volume and fees (daily buckets), fee APR
  Position level : deposited / withdrawn / collected per token, age, ROI

Source: Aerodrome Slipstream subgraph (GraphQL over HTTPS)
  pools(where: {id_in: [...]})     { totalValueLockedUSD, poolDayData(first: 7) }
  positions(where: {id_in: [...]}) { depositedToken0/1, withdrawnToken0/1,
                                     collectedFeesToken0/1, transaction.timestamp }

Formulas:
  feeAPR = (fees_7d / 7 × 365 / TVL) × 100
  ROI    = collectedFeesUSD / depositedValueUSD × 100
  age    = floor((now − createdAt) / 86 400)

Best effort: an unreachable or erroring subgraph leaves every field of this
stage absent and never blocks the on-chain results.

Zero storage — all data computed in real-time.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import httpx

from cl_tracker.central_config import config
from cl_tracker.diagnostics import PipelineTrace, say
from cl_tracker.errors import ErrorKind, UpstreamUnavailable
from cl_tracker.models import PoolStats, Position, PositionHistory
from real_defi_math import fee_apr, position_age_days, roi, usd_value

POOLS_QUERY = """
query GetPoolData($poolIds: [String!]!, $days: Int!) {
  pools(where: { id_in: $poolIds }) {
    id
    totalValueLockedUSD
    poolDayData(first: $days, orderBy: date, orderDirection: desc) {
      date
      volumeUSD
      feesUSD
    }
  }
}
"""

POSITIONS_QUERY = """
query GetPositions($tokenIds: [String!]!) {
  positions(where: { id_in: $tokenIds }) {
    id
    depositedToken0
    depositedToken1
    withdrawnToken0
    withdrawnToken1
    collectedFeesToken0
    collectedFeesToken1
    transaction { timestamp }
    token0 { id decimals }
    token1 { id decimals }
  }
}
"""


def _num(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _decimals(token: Optional[Dict[str, Any]]) -> int:
    try:
        return int((token or {}).get("decimals", 18))
    except (TypeError, ValueError):
        return 18


# ── Subgraph Client ─────────────────────────────────────────────────────


class SubgraphClient:
    """Minimal GraphQL client for the Slipstream subgraph."""

    def __init__(self, url: str = None, timeout: int = None):
        self.url = url or config.subgraph.URL
        self.session = httpx.AsyncClient(
            timeout=timeout or config.subgraph.TIMEOUT_SECONDS, verify=True
        )

    async def close(self):
        await self.session.aclose()

    async def query(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST a GraphQL query and return its ``data`` object.

        Raises:
            UpstreamUnavailable: On transport failure, non-200 status,
                                 non-JSON body or GraphQL ``errors``.
        """
        try:
            response = await self.session.post(
                self.url, json={"query": query, "variables": variables}
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable("subgraph", type(e).__name__) from e

        if body.get("errors"):
            raise UpstreamUnavailable("subgraph", "query returned errors")
        return body.get("data") or {}

    async def get_pools(self, pool_ids: List[str], days: int = 7) -> List[Dict[str, Any]]:
        if not pool_ids:
            return []
        data = await self.query(
            POOLS_QUERY, {"poolIds": [p.lower() for p in pool_ids], "days": days}
        )
        return data.get("pools") or []

    async def get_positions(self, token_ids: List[int]) -> List[Dict[str, Any]]:
        if not token_ids:
            return []
        data = await self.query(POSITIONS_QUERY, {"tokenIds": [str(t) for t in token_ids]})
        return data.get("positions") or []


# ── Aggregation ─────────────────────────────────────────────────────────


def summarize_pool(pool: Dict[str, Any], days: int = 7) -> PoolStats:
    """
    Pool aggregates from a subgraph pool document.

    poolDayData is newest first: bucket 0 is the last 24h, the sum of all
    buckets is the trailing window.
    """
    buckets = pool.get("poolDayData") or []
    tvl = _num(pool.get("totalValueLockedUSD"))
    fees_7d = sum(_num(d.get("feesUSD")) for d in buckets)
    return PoolStats(
        tvl_usd=tvl,
        volume_24h=_num(buckets[0].get("volumeUSD")) if buckets else 0.0,
        volume_7d=sum(_num(d.get("volumeUSD")) for d in buckets),
        fees_24h=_num(buckets[0].get("feesUSD")) if buckets else 0.0,
        fees_7d=fees_7d,
        fee_apr=fee_apr(fees_7d, tvl, days),
    )


def summarize_position(
    doc: Dict[str, Any],
    price0_usd: Optional[float] = None,
    price1_usd: Optional[float] = None,
    now: Optional[float] = None,
) -> PositionHistory:
    """
    Lifetime aggregates for one position document.

    Raw amounts are scaled by the subgraph's token decimals. USD figures and
    ROI use current unit prices; they are absent when no price is known.
    """
    now = time.time() if now is None else now
    d0, d1 = _decimals(doc.get("token0")), _decimals(doc.get("token1"))

    created_at = int(_num((doc.get("transaction") or {}).get("timestamp")))
    created_at = created_at if created_at > 0 else None

    def scaled(field: str, decimals: int) -> float:
        return _num(doc.get(field)) / 10 ** decimals

    deposited0 = scaled("depositedToken0", d0)
    deposited1 = scaled("depositedToken1", d1)
    collected0 = scaled("collectedFeesToken0", d0)
    collected1 = scaled("collectedFeesToken1", d1)

    collected_usd = usd_value(collected0, collected1, price0_usd, price1_usd)
    deposited_usd = usd_value(deposited0, deposited1, price0_usd, price1_usd)

    return PositionHistory(
        created_at=created_at,
        age_days=position_age_days(created_at, now),
        deposited0=deposited0,
        deposited1=deposited1,
        withdrawn0=scaled("withdrawnToken0", d0),
        withdrawn1=scaled("withdrawnToken1", d1),
        collected_fees0=collected0,
        collected_fees1=collected1,
        collected_fees_usd=collected_usd,
        deposited_value_usd=deposited_usd,
        roi=roi(collected_usd, deposited_usd),
    )


# ── Enrichment Stage ────────────────────────────────────────────────────


class HistoricalEnricher:
    """
    Attaches PoolStats and PositionHistory to positions (in place).

    Usage:
        enricher = HistoricalEnricher()
        await enricher.enrich(positions, prices, trace)
    """

    def __init__(self, client: SubgraphClient = None, verbose: bool = False):
        self._client = client
        self.days = config.subgraph.DAY_BUCKETS
        self.verbose = verbose

    async def _fetch(self, client, positions, trace):
        pools = list(dict.fromkeys(p.pool.lower() for p in positions if p.pool))
        results = await asyncio.gather(
            client.get_pools(pools, self.days),
            client.get_positions([p.token_id for p in positions]),
            return_exceptions=True,
        )

        docs: List[List[Dict[str, Any]]] = []
        for name, total, result in zip(
            ("history.pools", "history.positions"), (len(pools), len(positions)), results
        ):
            if isinstance(result, UpstreamUnavailable):
                trace.failure(name, ErrorKind.UPSTREAM_UNAVAILABLE, result)
                docs.append([])
            elif isinstance(result, BaseException):
                raise result
            else:
                trace.step(name, total=total, ok=len(result))
                docs.append(result)
        return docs[0], docs[1]

    async def enrich(
        self,
        positions: List[Position],
        prices: Dict[str, float],
        trace: PipelineTrace,
        now: Optional[float] = None,
    ) -> None:
        if not positions:
            return
        say(self.verbose, "  📜 Fetching pool & position history...")

        if self._client is not None:
            pool_docs, position_docs = await self._fetch(self._client, positions, trace)
        else:
            client = SubgraphClient()
            try:
                pool_docs, position_docs = await self._fetch(client, positions, trace)
            finally:
                await client.close()

        pool_stats = {
            str(doc.get("id", "")).lower(): summarize_pool(doc, self.days)
            for doc in pool_docs
        }
        histories = {str(doc.get("id", "")): doc for doc in position_docs}

        for p in positions:
            if p.pool:
                p.pool_stats = pool_stats.get(p.pool.lower())
            doc = histories.get(str(p.token_id))
            if doc is not None:
                p.history = summarize_position(
                    doc,
                    prices.get(p.token0.address.lower()),
                    prices.get(p.token1.address.lower()),
                    now=now,
                )
