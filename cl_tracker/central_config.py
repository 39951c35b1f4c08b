"""
Project Configuration — chain, contracts, APIs, refresh policy
===============================================================

Single source of truth for every endpoint, contract address and timing
constant used by the tracker. Values that differ between deployments can
be overridden through environment variables (see each field).

Contract Sources (Base mainnet, Aerodrome Slipstream):
  Deployments : https://github.com/aerodrome-finance/slipstream#deployments
  Sugar       : https://github.com/aerodrome-finance/sugar
Price API:
  Enso        : https://docs.enso.build/api-reference/tokens/token-price
"""

import os
import re
from dataclasses import dataclass, field
from importlib.metadata import version, PackageNotFoundError
from pathlib import Path

# Version — single source of truth is pyproject.toml
try:
    PROJECT_VERSION = version("cl-position-tracker")
except PackageNotFoundError:
    # Dev / CI: package not installed — read pyproject.toml directly
    _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
    _m = (
        re.search(r'version\s*=\s*"([^"]+)"', _toml.read_text())
        if _toml.exists()
        else None
    )
    PROJECT_VERSION = _m.group(1) if _m else "0.0.0-dev"
PROJECT_NAME = "CL Position Tracker"


# ── Time Constants ──────────────────────────────────────────────────────

SECONDS_PER_DAY = 86_400
SECONDS_PER_WEEK = 604_800
DAYS_PER_YEAR = 365              # one convention everywhere (no 365.25)
SECONDS_PER_YEAR = SECONDS_PER_DAY * DAYS_PER_YEAR  # 31_536_000


def _resolve_rpc_url() -> str:
    """First configured endpoint wins; public privacy relay otherwise."""
    explicit = os.environ.get("BASE_RPC_URL") or os.environ.get("ALCHEMY_BASE_HTTP")
    if explicit:
        return explicit
    key = os.environ.get("ALCHEMY_BASE_KEY")
    if key:
        return f"https://base-mainnet.g.alchemy.com/v2/{key}"
    return "https://1rpc.io/base"


def _env_seconds(name: str, default_ms: int) -> float:
    raw = os.environ.get(name)
    try:
        return int(raw) / 1000 if raw else default_ms / 1000
    except ValueError:
        return default_ms / 1000


@dataclass(frozen=True)
class ChainConfig:
    """Base mainnet + Aerodrome Slipstream contract addresses."""

    CHAIN_ID: int = 8453
    NETWORK: str = "base"
    RPC_URL: str = field(default_factory=_resolve_rpc_url)

    # NonfungiblePositionManager (ERC-721 Enumerable position NFTs)
    POSITION_MANAGER: str = "0x827922686190790b37229fd06084350E74485b72"
    # CLFactory — getPool(token0, token1, int24 tickSpacing)
    CL_FACTORY: str = "0x5e7BB104d84c7CB9B682AaC2F3d509f5F406809A"
    # Slipstream SugarHelper — principal() / fees() exact position math
    SUGAR_HELPER: str = "0x0AD09A66af0154a84e86F761313d02d0abB6edd5"

    RPC_TIMEOUT_SECONDS: int = 30
    # Public endpoints reject oversized JSON-RPC batches
    MAX_BATCH_SIZE: int = 100


@dataclass(frozen=True)
class PriceOracleAPI:
    """Enso token price API (USD unit price per token address)."""

    BASE_URL: str = "https://api.enso.finance/api/v1/prices"
    TIMEOUT_SECONDS: int = 15
    API_KEY: str | None = field(default_factory=lambda: os.environ.get("ENSO_API_KEY"))
    MAX_REQUESTS_PER_MINUTE: int = 100

    @classmethod
    def get_price_url(cls, chain_id: int, token_address: str) -> str:
        """URL for a single token price."""
        return f"{cls.BASE_URL}/{chain_id}/{token_address}"


@dataclass(frozen=True)
class SubgraphAPI:
    """Slipstream subgraph (pool day data, position lifetime aggregates)."""

    URL: str = field(
        default_factory=lambda: os.environ.get(
            "CL_SUBGRAPH_URL",
            "https://api.goldsky.com/api/public/project_clvxxqf0uc8qs01x7bcs1e4ci"
            "/subgraphs/aerodrome-slipstream/v1.0.0/gn",
        )
    )
    TIMEOUT_SECONDS: int = 15
    DAY_BUCKETS: int = 7


@dataclass(frozen=True)
class RefreshPolicy:
    """Client-side throttling for full pipeline refreshes."""

    COOLDOWN_SECONDS: float = field(
        default_factory=lambda: _env_seconds("LP_COOLDOWN_MS", 15_000)
    )
    FAIL_BACKOFF_SECONDS: float = field(
        default_factory=lambda: _env_seconds("LP_FAIL_BACKOFF_MS", 30_000)
    )
    AUTO_REFRESH_SECONDS: float = 60.0


@dataclass(frozen=True)
class PoolCacheConfig:
    """Dynamically discovered pool keys, merged with the static allow-list."""

    SOURCE: str = field(
        default_factory=lambda: os.environ.get("LP_POOL_CACHE", "pool-cache.json")
    )
    MAX_ENTRIES: int = 100


# Unified configuration
class TrackerConfig:
    """Unified tracker configuration."""

    chain = ChainConfig()
    prices = PriceOracleAPI()
    subgraph = SubgraphAPI()
    refresh = RefreshPolicy()
    pool_cache = PoolCacheConfig()


# Global instance
config = TrackerConfig()
