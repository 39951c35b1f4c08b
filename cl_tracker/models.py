"""
Data Model — positions, pool snapshots and derived metrics
===========================================================

``None`` always means "could not be determined" and is dropped from the
serialized output; it is never the same thing as zero.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class ValuationSource(str, Enum):
    """Provenance of a position's token amounts."""

    EXACT = "exact"              # SugarHelper principal()/fees()
    APPROXIMATE = "approximate"  # closed-form float math
    UNAVAILABLE = "unavailable"  # missing tick or liquidity data


@dataclass(frozen=True)
class PositionRef:
    """A position NFT found for an owner, before any detail is read."""

    token_id: int
    is_staked: bool = False


@dataclass
class TokenInfo:
    address: str
    symbol: Optional[str] = None
    decimals: int = 18


@dataclass(frozen=True)
class PoolSnapshot:
    """Pool pricing state read once per refresh."""

    address: str
    current_tick: int
    sqrt_price_x96: int
    total_liquidity: Optional[int] = None
    total_staked_liquidity: Optional[int] = None


@dataclass
class PriceRange:
    min_1per0: float
    max_1per0: float
    min_0per1: Optional[float] = None
    max_0per1: Optional[float] = None


@dataclass
class Valuation:
    source: ValuationSource
    amount0: Optional[float] = None
    amount1: Optional[float] = None
    in_range: Optional[bool] = None
    price1_per_0: Optional[float] = None
    price0_per_1: Optional[float] = None
    price_range: Optional[PriceRange] = None
    unclaimed_fees0: Optional[float] = None
    unclaimed_fees1: Optional[float] = None
    fees_source: Optional[ValuationSource] = None
    token0_price_usd: Optional[float] = None
    token1_price_usd: Optional[float] = None
    usd_value: Optional[float] = None
    unclaimed_fees_usd: Optional[float] = None

    @classmethod
    def unavailable(cls) -> "Valuation":
        return cls(source=ValuationSource.UNAVAILABLE)


@dataclass
class RewardState:
    """A staked position's share of its gauge's emissions."""

    gauge: str
    reward_token: str
    reward_decimals: int
    pool_reward_per_second: float
    total_staked_liquidity: int
    liquidity_proportion: float
    reward_per_second: float
    reward_per_day: float
    reward_per_week: float
    reward_per_year: float
    reward_symbol: Optional[str] = None
    reward_price_usd: Optional[float] = None
    reward_per_year_usd: Optional[float] = None
    estimated_apr: Optional[float] = None
    earned_amount: Optional[float] = None
    earned_usd: Optional[float] = None
    period_finish: Optional[int] = None
    is_emitting: Optional[bool] = None


@dataclass
class PoolStats:
    """Indexer aggregates for the position's pool."""

    tvl_usd: float
    volume_24h: float
    volume_7d: float
    fees_24h: float
    fees_7d: float
    fee_apr: Optional[float] = None


@dataclass
class PositionHistory:
    """Indexer lifetime aggregates for one position (human token units)."""

    created_at: Optional[int] = None
    age_days: Optional[int] = None
    deposited0: Optional[float] = None
    deposited1: Optional[float] = None
    withdrawn0: Optional[float] = None
    withdrawn1: Optional[float] = None
    collected_fees0: Optional[float] = None
    collected_fees1: Optional[float] = None
    collected_fees_usd: Optional[float] = None
    deposited_value_usd: Optional[float] = None
    roi: Optional[float] = None


@dataclass
class Position:
    token_id: int
    is_staked: bool
    token0: TokenInfo
    token1: TokenInfo
    tick_spacing: int
    tick_lower: int
    tick_upper: int
    liquidity: int
    tokens_owed0: int = 0
    tokens_owed1: int = 0
    pool: Optional[str] = None
    snapshot: Optional[PoolSnapshot] = None
    valuation: Valuation = field(default_factory=Valuation.unavailable)
    rewards: Optional[RewardState] = None
    pool_stats: Optional[PoolStats] = None
    history: Optional[PositionHistory] = None
    data_errors: List[str] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        # Gauge withdrawal clears liquidity together with the unstake,
        # so a staked NFT is backed by liquidity.
        return self.liquidity > 0 or self.is_staked

    @property
    def tick_range_valid(self) -> bool:
        return self.tick_lower < self.tick_upper

    @property
    def pair_symbol(self) -> Optional[str]:
        if self.token0.symbol and self.token1.symbol:
            return f"{self.token0.symbol}/{self.token1.symbol}"
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Flat, JSON-ready record; undetermined fields are omitted."""
        out: Dict[str, Any] = {
            "token_id": self.token_id,
            "is_staked": self.is_staked,
            "is_active": self.is_active,
            "token0": self.token0.address,
            "token1": self.token1.address,
            "token0_symbol": self.token0.symbol,
            "token1_symbol": self.token1.symbol,
            "token0_decimals": self.token0.decimals,
            "token1_decimals": self.token1.decimals,
            "pair_symbol": self.pair_symbol,
            "tick_spacing": self.tick_spacing,
            "tick_lower": self.tick_lower,
            "tick_upper": self.tick_upper,
            "liquidity": self.liquidity,
            "pool": self.pool,
        }
        if self.snapshot is not None:
            out["current_tick"] = self.snapshot.current_tick
            out["sqrt_price_x96"] = self.snapshot.sqrt_price_x96
            out["pool_liquidity"] = self.snapshot.total_liquidity
            out["pool_staked_liquidity"] = self.snapshot.total_staked_liquidity

        valuation = asdict(self.valuation)
        price_range = valuation.pop("price_range") or {}
        valuation["valuation_source"] = valuation.pop("source")
        for key, value in price_range.items():
            valuation[f"price_range_{key}"] = value
        out.update(valuation)

        for name in ("rewards", "pool_stats", "history"):
            section = getattr(self, name)
            if section is not None:
                out[name] = _compact(asdict(section))
        if self.data_errors:
            out["data_errors"] = list(self.data_errors)
        return _compact(out)


def _compact(value):
    """Drop None recursively and turn enums into their plain values."""
    if isinstance(value, dict):
        return {k: _compact(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [_compact(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    return value
