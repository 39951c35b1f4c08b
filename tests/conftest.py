"""
Shared fixtures — an in-memory Slipstream deployment.

``FakeChain`` answers eth_call / eth_call_batch / eth_blockNumber by
function selector, so the whole pipeline runs offline. Every module that
reads the chain imports the RPC helpers under private aliases; the
``fake_chain`` fixture patches those aliases.
"""

from typing import Dict, List, Optional, Tuple

import pytest

from cl_tracker.errors import UpstreamUnavailable
from cl_tracker.rpc_helpers import (
    SELECTORS,
    ZERO_ADDRESS,
    encode_address,
    encode_int24,
    encode_uint256,
)

# ── Scenario Constants ───────────────────────────────────────────────────

OWNER = "0x" + "ab" * 20
TKA = "0x" + "a1" * 20
TKB = "0x" + "b2" * 20
REWARD = "0x" + "c3" * 20
POOL = "0x" + "11" * 20
GAUGE = "0x" + "22" * 20
NOW = 1_750_000_000
BLOCK = 12_345_678
Q96 = 2 ** 96

# Exact SugarHelper principal for L = 1e18, ticks ±1000, sqrtPriceX96 = 2^96
EXACT_AMOUNT = 48_768_197_581_278_888

_SELECTOR_NAMES = {v[2:]: k for k, v in SELECTORS.items()}


def _words(args: str) -> List[str]:
    return [args[i:i + 64] for i in range(0, len(args), 64)]


def _addr(word: str) -> str:
    return "0x" + word[24:].lower()


def _int(word: str) -> int:
    v = int(word, 16)
    return v - 2 ** 256 if v >= 2 ** 255 else v


def encode_string(text: str) -> str:
    raw = text.encode().hex()
    padded = raw + "0" * (-len(raw) % 64)
    return encode_uint256(32) + encode_uint256(len(text.encode())) + padded


def encode_uint_array(values: List[int]) -> str:
    return encode_uint256(32) + encode_uint256(len(values)) + "".join(
        encode_uint256(v) for v in values
    )


class FakeChain:
    """Selector-dispatching stand-in for a JSON-RPC node."""

    def __init__(self):
        self.block = BLOCK
        self.down = False
        self.calls: List[Tuple[str, str, str]] = []   # (to, selector name, block)
        self.position_manager = "0x827922686190790b37229fd06084350e74485b72"
        self.factory = "0x5e7bb104d84c7cb9b682aac2f3d509f5f406809a"
        self.sugar_helper = "0x0ad09a66af0154a84e86f761313d02d0abb6edd5"

        self.wallet: Dict[str, List[int]] = {}
        self.positions: Dict[int, dict] = {}
        self.pools: Dict[Tuple[str, str, int], str] = {}
        self.pool_state: Dict[str, dict] = {}
        self.gauges: Dict[str, dict] = {}
        self.tokens: Dict[str, Tuple[Optional[str], Optional[int]]] = {}
        self.principal: Dict[int, Tuple[int, int]] = {}
        self.fees: Dict[int, Tuple[int, int]] = {}

    # ── Scenario Builders ────────────────────────────────────────────

    def add_position(
        self,
        token_id: int,
        token0: str,
        token1: str,
        tick_spacing: int,
        tick_lower: int,
        tick_upper: int,
        liquidity: int,
        owed: Tuple[int, int] = (0, 0),
    ) -> None:
        self.positions[token_id] = {
            "token0": token0.lower(),
            "token1": token1.lower(),
            "tick_spacing": tick_spacing,
            "tick_lower": tick_lower,
            "tick_upper": tick_upper,
            "liquidity": liquidity,
            "owed": owed,
        }

    # ── Dispatch ─────────────────────────────────────────────────────

    def answer(self, to: str, data: str) -> str:
        to = to.lower()
        selector, args = data[2:10], data[10:]
        name = _SELECTOR_NAMES.get(selector, selector)
        w = _words(args)

        if to == self.position_manager:
            if name == "balanceOf":
                return encode_uint256(len(self.wallet.get(_addr(w[0]), [])))
            if name == "tokenOfOwnerByIndex":
                ids = self.wallet.get(_addr(w[0]), [])
                i = int(w[1], 16)
                return encode_uint256(ids[i]) if i < len(ids) else ""
            if name == "positions":
                p = self.positions.get(int(w[0], 16))
                if p is None:
                    return ""
                return "".join([
                    encode_uint256(0),
                    encode_address(ZERO_ADDRESS),
                    encode_address(p["token0"]),
                    encode_address(p["token1"]),
                    encode_int24(p["tick_spacing"]),
                    encode_int24(p["tick_lower"]),
                    encode_int24(p["tick_upper"]),
                    encode_uint256(p["liquidity"]),
                    encode_uint256(0),
                    encode_uint256(0),
                    encode_uint256(p["owed"][0]),
                    encode_uint256(p["owed"][1]),
                ])
            return ""

        if to == self.factory and name == "getPool":
            key = (_addr(w[0]), _addr(w[1]), _int(w[2]))
            return encode_address(self.pools.get(key, ZERO_ADDRESS))

        if to == self.sugar_helper:
            token_id = int(w[1], 16)
            table = self.principal if name == "principal" else self.fees
            pair = table.get(token_id)
            return encode_uint256(pair[0]) + encode_uint256(pair[1]) if pair else ""

        if to in self.pool_state:
            s = self.pool_state[to]
            if name == "slot0":
                if s.get("sqrt_price_x96") is None:
                    return ""
                return encode_uint256(s["sqrt_price_x96"]) + encode_int24(s["tick"]) + encode_uint256(0) * 4
            if name in ("liquidity", "stakedLiquidity"):
                value = s.get(name)
                return encode_uint256(value) if value is not None else ""
            if name == "gauge":
                return encode_address(s.get("gauge") or ZERO_ADDRESS)
            return ""

        if to in self.gauges:
            g = self.gauges[to]
            if name == "stakedValues":
                return encode_uint_array(g.get("staked", {}).get(_addr(w[0]), []))
            if name in ("rewardRate", "periodFinish"):
                value = g.get(name)
                return encode_uint256(value) if value is not None else ""
            if name == "rewardToken":
                return encode_address(g["rewardToken"]) if g.get("rewardToken") else ""
            if name == "earned":
                value = g.get("earned", {}).get(int(w[1], 16))
                return encode_uint256(value) if value is not None else ""
            return ""

        if to in self.tokens:
            symbol, decimals = self.tokens[to]
            if name == "symbol":
                return encode_string(symbol) if symbol is not None else ""
            if name == "decimals":
                return encode_uint256(decimals) if decimals is not None else ""
        return ""

    # ── RPC Surface (same signatures as cl_tracker.rpc_helpers) ──────

    async def eth_call_batch(self, rpc_url, calls, timeout=20, block="latest", max_batch=100):
        if self.down:
            raise UpstreamUnavailable("chain-rpc", "ConnectError")
        out = []
        for to, data in calls:
            self.calls.append((to.lower(), _SELECTOR_NAMES.get(data[2:10], data[2:10]), block))
            out.append(self.answer(to, data))
        return out

    async def eth_call(self, rpc_url, to, data, timeout=20, block="latest"):
        result = (await self.eth_call_batch(rpc_url, [(to, data)], timeout, block))[0]
        if not result:
            raise RuntimeError("Empty response — contract may not exist at this address")
        return result

    async def eth_block_number(self, rpc_url, timeout=10):
        if self.down:
            raise UpstreamUnavailable("chain-rpc", "ConnectError")
        return self.block


class FakeOracle:
    def __init__(self, prices: Dict[str, float], down: bool = False):
        self.prices = {k.lower(): v for k, v in prices.items()}
        self.down = down
        self.requested: List[List[str]] = []

    async def get_prices_usd(self, addresses):
        addresses = [a.lower() for a in addresses]
        self.requested.append(addresses)
        if self.down:
            raise UpstreamUnavailable("price-oracle", "ConnectError")
        return {a: self.prices[a] for a in addresses if a in self.prices}


class FakeSubgraph:
    def __init__(self, pools=None, positions=None, down: bool = False):
        self.pools = pools or []
        self.positions = positions or []
        self.down = down

    async def get_pools(self, pool_ids, days=7):
        if self.down:
            raise UpstreamUnavailable("subgraph", "ConnectError")
        wanted = {p.lower() for p in pool_ids}
        return [p for p in self.pools if p["id"].lower() in wanted]

    async def get_positions(self, token_ids):
        if self.down:
            raise UpstreamUnavailable("subgraph", "ConnectError")
        wanted = {str(t) for t in token_ids}
        return [p for p in self.positions if p["id"] in wanted]


def build_scenario(chain: FakeChain) -> FakeChain:
    """
    One pool TKA/TKB (tick spacing 100) at tick 0 with a gauge:
      #1001  held,   L = 1e18, ticks ±1000, exact helper values
      #2002  staked, L = 1e18, ticks ±1000, helper reverts (fallback)
      #3003  held,   L = 0,    ticks ±500  (closed)
    """
    chain.tokens = {
        TKA: ("TKA", 18),
        TKB: ("TKB", 18),
        REWARD: ("AERO", 18),
    }
    chain.pools[(TKA, TKB, 100)] = POOL
    chain.pool_state[POOL] = {
        "sqrt_price_x96": Q96,
        "tick": 0,
        "liquidity": 4 * 10 ** 18,
        "stakedLiquidity": 4 * 10 ** 18,
        "gauge": GAUGE,
    }
    chain.gauges[GAUGE] = {
        "staked": {OWNER: [2002]},
        "rewardRate": 10 ** 18,
        "rewardToken": REWARD,
        "periodFinish": NOW + 3600,
        "earned": {2002: 5 * 10 ** 18},
    }
    chain.wallet[OWNER] = [1001, 3003]
    chain.add_position(1001, TKA, TKB, 100, -1000, 1000, 10 ** 18, owed=(7, 9))
    chain.add_position(2002, TKA, TKB, 100, -1000, 1000, 10 ** 18, owed=(10 ** 15, 0))
    chain.add_position(3003, TKA, TKB, 100, -500, 500, 0)
    chain.principal[1001] = (EXACT_AMOUNT, EXACT_AMOUNT)
    chain.fees[1001] = (10 ** 15, 2 * 10 ** 15)
    chain.principal[3003] = (0, 0)
    chain.fees[3003] = (0, 0)
    return chain


@pytest.fixture
def fake_chain(monkeypatch):
    """FakeChain wired into every module that reads the chain."""
    import gauge_rewards
    import position_indexer
    import position_reader
    import position_tracker
    import position_valuation

    chain = FakeChain()
    for module in (position_indexer, position_reader, position_valuation, gauge_rewards):
        monkeypatch.setattr(module, "_eth_call_batch", chain.eth_call_batch)
    monkeypatch.setattr(position_indexer, "_eth_call", chain.eth_call)
    monkeypatch.setattr(position_tracker, "_eth_block_number", chain.eth_block_number)

    async def _cache(source, limit=100, timeout=10):
        return [{"token0": TKA, "token1": TKB, "tickSpacing": 100}]

    monkeypatch.setattr(position_indexer, "load_pool_cache", _cache)
    return chain


@pytest.fixture
def scenario(fake_chain):
    return build_scenario(fake_chain)


@pytest.fixture
def oracle():
    return FakeOracle({TKA: 2.0, TKB: 1.0, REWARD: 0.5})


@pytest.fixture
def subgraph():
    day = {"date": NOW - 86400, "volumeUSD": "50000", "feesUSD": "100"}
    return FakeSubgraph(
        pools=[{"id": POOL, "totalValueLockedUSD": "1000000", "poolDayData": [day] * 7}],
        positions=[{
            "id": "1001",
            "depositedToken0": str(10 ** 18),
            "depositedToken1": str(2 * 10 ** 18),
            "withdrawnToken0": "0",
            "withdrawnToken1": "0",
            "collectedFeesToken0": str(10 ** 17),
            "collectedFeesToken1": "0",
            "transaction": {"timestamp": str(NOW - 10 * 86400 - 5)},
            "token0": {"id": TKA, "decimals": "18"},
            "token1": {"id": TKB, "decimals": "18"},
        }],
    )
