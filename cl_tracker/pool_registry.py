#!/usr/bin/env python3
"""
Pool Registry — Candidate Slipstream Pools for Gauge Scanning
=============================================================

Staked positions live inside gauge contracts, not in the owner's wallet,
so they can only be found by asking each gauge. The set of gauges to ask
comes from candidate pool keys:

  • A static allow-list of well-known Base Slipstream pools (below)
  • A dynamically discovered pool cache (JSON file or URL) produced by a
    separate discovery job, shaped as {"pools": [{token0, token1,
    tickSpacing}, ...]}

A pool key is (token0, token1, tickSpacing); CLFactory.getPool() maps it
to the pool address, and CLPool.gauge() maps the pool to its gauge.

Token References (Base mainnet):
  https://basescan.org/token/0x4200000000000000000000000000000000000006  WETH
  https://basescan.org/token/0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913  USDC
"""

import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import httpx

WETH = "0x4200000000000000000000000000000000000006"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
CBBTC = "0xcbB7C0000aB88B473b1f5aFd9ef808440eed33Bf"
AERO = "0x940181a94A35A4569E4529A3CDfB74e38FD98631"
CBETH = "0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22"
WSTETH = "0xc1CBa3fCea344f92D9239c08C0568f6F2F0ee452"
EURC = "0x60a3E35Cc302bFA44Cb288Bc5a4F316Fdb1adb42"
USDBC = "0xd9aAEc86B65D86f6A7B5B1b0c42FFA531710b6CA"

# ── Static Allow-List ───────────────────────────────────────────────────
# token0 < token1 by address, as the factory sorts them.

WHITELIST_POOLS: List[Dict] = [
    {"label": "WETH/USDC",   "token0": WETH,  "token1": USDC,   "tickSpacing": 100},
    {"label": "USDC/cbBTC",  "token0": USDC,  "token1": CBBTC,  "tickSpacing": 100},
    {"label": "WETH/cbBTC",  "token0": WETH,  "token1": CBBTC,  "tickSpacing": 100},
    {"label": "USDC/AERO",   "token0": USDC,  "token1": AERO,   "tickSpacing": 200},
    {"label": "WETH/AERO",   "token0": WETH,  "token1": AERO,   "tickSpacing": 200},
    {"label": "WETH/wstETH", "token0": WETH,  "token1": WSTETH, "tickSpacing": 1},
    {"label": "cbETH/WETH",  "token0": CBETH, "token1": WETH,   "tickSpacing": 1},
    {"label": "EURC/USDC",   "token0": EURC,  "token1": USDC,   "tickSpacing": 50},
    {"label": "USDC/USDbC",  "token0": USDC,  "token1": USDBC,  "tickSpacing": 1},
]


# ── Helper Functions ────────────────────────────────────────────────────


def pool_key(entry: Dict) -> Tuple[str, str, int]:
    """Case-insensitive identity of a pool: (token0, token1, tickSpacing)."""
    return (
        entry["token0"].lower(),
        entry["token1"].lower(),
        int(entry["tickSpacing"]),
    )


def dedupe_pool_keys(entries: Iterable[Dict]) -> List[Dict]:
    """Drop repeated pool keys, keeping the first occurrence and the input order."""
    seen = set()
    unique = []
    for entry in entries:
        try:
            key = pool_key(entry)
        except (KeyError, TypeError, ValueError, AttributeError):
            continue
        if key in seen:
            continue
        seen.add(key)
        unique.append(
            {"token0": entry["token0"], "token1": entry["token1"], "tickSpacing": key[2]}
        )
    return unique


def parse_pool_cache(document, limit: int = 100) -> List[Dict]:
    """Extract pool keys from a cache document; anything malformed yields []."""
    if not isinstance(document, dict):
        return []
    pools = document.get("pools")
    if not isinstance(pools, list):
        return []
    return dedupe_pool_keys(p for p in pools[:limit] if isinstance(p, dict))


async def load_pool_cache(source: Optional[str], limit: int = 100, timeout: int = 10) -> List[Dict]:
    """
    Load the dynamic pool cache from a local path or an http(s) URL.

    A missing file, unreachable URL or malformed document is not an error:
    the tracker still scans the static allow-list.
    """
    if not source:
        return []

    if source.startswith(("http://", "https://")):
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(source)
                if response.status_code != 200:
                    return []
                document = response.json()
        except (httpx.HTTPError, ValueError):
            return []
        return parse_pool_cache(document, limit)

    path = Path(source)
    if not path.is_file():
        return []
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return []
    return parse_pool_cache(document, limit)


def candidate_pool_keys(cached: Optional[List[Dict]] = None) -> List[Dict]:
    """Allow-list ∪ cache, deduplicated by (token0, token1, tickSpacing)."""
    return dedupe_pool_keys(list(WHITELIST_POOLS) + list(cached or []))
