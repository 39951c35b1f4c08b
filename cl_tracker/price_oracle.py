#!/usr/bin/env python3
"""
Price Oracle Adapter — USD unit prices per token address
=========================================================
Based on the Enso price API: https://docs.enso.build/api-reference/tokens/token-price

  GET {BASE_URL}/{chainId}/{tokenAddress}  →  {"price": 3012.55, ...}

One request per address, all issued concurrently. An address whose request
fails or whose price is not a positive number is simply missing from the
result; it never shows up as 0.
"""

import asyncio
import math
from typing import Dict, Iterable, Optional

import httpx

from cl_tracker.central_config import config
from cl_tracker.errors import UpstreamUnavailable
from cl_tracker.throttle import RateLimiter


class _TransportFailure:
    """Marker for a request that never got an HTTP answer."""


_TRANSPORT_FAILURE = _TransportFailure()


class PriceOracle:
    """Enso token price client for one chain."""

    def __init__(
        self,
        chain_id: int = None,
        api_key: Optional[str] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        self.chain_id = chain_id or config.chain.CHAIN_ID
        self.limiter = limiter or RateLimiter(
            max_requests=config.prices.MAX_REQUESTS_PER_MINUTE, period_seconds=60
        )
        self.timeout = config.prices.TIMEOUT_SECONDS
        self.api_key = api_key if api_key is not None else config.prices.API_KEY

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _fetch_one(self, client: httpx.AsyncClient, address: str):
        """Return a positive float, None (no price), or the transport-failure marker."""
        url = config.prices.get_price_url(self.chain_id, address)
        try:
            await self.limiter.acquire()
            response = await client.get(url)
        except httpx.HTTPError:
            return _TRANSPORT_FAILURE
        if response.status_code != 200:
            return None
        try:
            data = response.json()
            price = float(data.get("price"))
        except (ValueError, TypeError, AttributeError):
            return None
        if not math.isfinite(price) or price <= 0:
            return None
        return price

    async def get_prices_usd(self, addresses: Iterable[str]) -> Dict[str, float]:
        """
        Resolve USD unit prices.

        Args:
            addresses: Token addresses (any case, duplicates allowed).

        Returns:
            Dict mapping lowercased address → price (> 0). Unresolvable
            addresses are absent.

        Raises:
            UpstreamUnavailable: If not a single request reached the API.
        """
        unique = list(dict.fromkeys(a.lower() for a in addresses if a))
        if not unique:
            return {}

        async with httpx.AsyncClient(
            timeout=self.timeout, headers=self._headers(), verify=True
        ) as client:
            results = await asyncio.gather(
                *[self._fetch_one(client, addr) for addr in unique]
            )

        if all(r is _TRANSPORT_FAILURE for r in results):
            raise UpstreamUnavailable("price-oracle", "no request reached the API")

        return {
            addr: price
            for addr, price in zip(unique, results)
            if isinstance(price, float)
        }
