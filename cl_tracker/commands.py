"""
CL Position Tracker — Command Implementations
==============================================

All CLI command handlers live here, keeping run.py as a thin argparse
dispatcher. Each public function corresponds to a subcommand
(positions, info).
"""

from __future__ import annotations

import asyncio
import json
import re

from cl_tracker.central_config import PROJECT_NAME, PROJECT_VERSION, config
from cl_tracker.errors import InvalidInput, PipelineFailed
from cl_tracker.models import Position, ValuationSource
from cl_tracker.portfolio import portfolio_stats, sort_positions


# ── Formatting Helpers ───────────────────────────────────────────────────


def _mask_url(url: str) -> str:
    """Hide API keys embedded in RPC URLs (path segment after /v2/ etc.)."""
    return re.sub(r"(/v\d+/)[^/?#]+", r"\1***", url)


def _usd(value) -> str:
    return f"${value:,.2f}" if value is not None else "n/a"


def _pct(value) -> str:
    return f"{value:,.2f}%" if value is not None else "n/a"


def _amount(value) -> str:
    return f"{value:,.6f}" if value is not None else "n/a"


def _print_position(i: int, p: Position) -> None:
    v = p.valuation
    pair = p.pair_symbol or f"{p.token0.address[:8]}…/{p.token1.address[:8]}…"
    status = "🟢 Active" if p.is_active else "⚪ Closed"
    if p.is_staked:
        status += " · 🔒 Staked"
    if v.in_range is True:
        range_label = "✅ In range"
    elif v.in_range is False:
        range_label = "⚠️  Out of range"
    else:
        range_label = "❔ Unknown"

    sym0 = p.token0.symbol or "token0"
    sym1 = p.token1.symbol or "token1"
    print(f"\n  {i}. Position #{p.token_id} — {pair} (tick spacing {p.tick_spacing})")
    print(f"       Status   : {status} · {range_label}")
    if v.source is ValuationSource.UNAVAILABLE:
        print("       Value    : unavailable (no pool state)")
    else:
        tag = "" if v.source is ValuationSource.EXACT else " (approx.)"
        print(f"       Amounts  : {_amount(v.amount0)} {sym0} + {_amount(v.amount1)} {sym1}{tag}")
        print(f"       Value    : {_usd(v.usd_value)}")
        if v.price1_per_0 is not None:
            print(f"       Price    : {v.price1_per_0:.6g} {sym1}/{sym0}")
        if v.price_range:
            print(
                f"       Range    : {v.price_range.min_1per0:.6g} – "
                f"{v.price_range.max_1per0:.6g} {sym1}/{sym0}"
            )
        print(f"       Fees     : {_amount(v.unclaimed_fees0)} {sym0} + "
              f"{_amount(v.unclaimed_fees1)} {sym1} ({_usd(v.unclaimed_fees_usd)})")
    if p.rewards:
        r = p.rewards
        sym = r.reward_symbol or "reward"
        print(f"       Rewards  : {r.reward_per_day:,.4f} {sym}/day · APR {_pct(r.estimated_apr)}")
        if r.earned_amount is not None:
            print(f"       Earned   : {r.earned_amount:,.6f} {sym} ({_usd(r.earned_usd)})")
    if p.pool_stats:
        s = p.pool_stats
        print(f"       Pool     : TVL {_usd(s.tvl_usd)} · 24h fees {_usd(s.fees_24h)} "
              f"· fee APR {_pct(s.fee_apr)}")
    if p.history and p.history.age_days is not None:
        print(f"       History  : {p.history.age_days} days · ROI {_pct(p.history.roi)}")
    for err in p.data_errors:
        print(f"       ⚠️  {err}")


def _print_result(result, sort_by: str, order: str) -> None:
    positions = sort_positions(result.positions, sort_by, order)
    print(f"\n{'=' * 65}")
    print(f"  Slipstream CL Positions — {config.chain.NETWORK.title()}")
    print(f"  👛 Owner: {result.owner}")
    if result.block is not None:
        print(f"  📦 Block: {result.block:,}")
    print(f"{'=' * 65}")

    if not positions:
        print("  No CL positions found for this address.")
        return

    for i, p in enumerate(positions, 1):
        _print_position(i, p)

    stats = portfolio_stats(result.positions)
    print(f"\n{'=' * 65}")
    print(f"  Total value   : {_usd(stats['total_deposited_usd'])} "
          f"({stats['active_count']} active)")
    print(f"  Claimable     : {_usd(stats['total_claimable_usd'])}")
    print(f"  Expected/day  : {_usd(stats['expected_daily_usd'])}")
    if stats["has_staked_with_apr"]:
        print(f"  Avg. APR      : {_pct(stats['average_apr'])}")
    print(f"{'=' * 65}")


# ── Commands ─────────────────────────────────────────────────────────────


def cmd_info() -> None:
    """Display system and architecture information."""
    print(f"\n📊 {PROJECT_NAME} v{PROJECT_VERSION}")
    print("=" * 55)
    print("🔗 Protocol   : Aerodrome Slipstream (concentrated liquidity)")
    print(f"🌐 Chain      : {config.chain.NETWORK.title()} ({config.chain.CHAIN_ID})")
    print(f"📡 RPC        : {_mask_url(config.chain.RPC_URL)}")
    print(f"💵 Prices     : {config.prices.BASE_URL}")
    print(f"📜 Subgraph   : {_mask_url(config.subgraph.URL)}")
    print()
    print("📁 Files:")
    print("   run.py                 — CLI entry point")
    print("   position_tracker.py    — Pipeline orchestrator + refresh guard")
    print("   position_indexer.py    — Owner → held & staked position IDs")
    print("   position_reader.py     — Position, pool & token reads")
    print("   position_valuation.py  — Exact (SugarHelper) / approximate valuation")
    print("   gauge_rewards.py       — Gauge reward share & staking APR")
    print("   historical_analyzer.py — Subgraph pool stats & position ROI")
    print("   real_defi_math.py      — Tick & reward math")
    print("   cl_tracker/            — Config, RPC, prices, errors, trace")
    print()
    print("📄 Contracts:")
    print(f"   NonfungiblePositionManager : {config.chain.POSITION_MANAGER}")
    print(f"   CLFactory                  : {config.chain.CL_FACTORY}")
    print(f"   SugarHelper                : {config.chain.SUGAR_HELPER}")
    print()
    print("🔗 Quick Start:")
    print("   python run.py positions 0xOWNER")
    print("   python run.py positions 0xOWNER --sort apr --order desc")
    print("   python run.py positions 0xOWNER --json --debug")
    print("   python run.py positions 0xOWNER --watch 60")


async def cmd_positions(
    owner: str,
    as_json: bool = False,
    debug: bool = False,
    sort_by: str = "value",
    order: str = "desc",
    watch: float | None = None,
) -> bool:
    """List and value every CL position of ``owner``. Returns False on failure."""
    from position_tracker import PositionTracker

    tracker = PositionTracker(verbose=not as_json)
    if not as_json:
        print(f"\n🔄 Scanning Slipstream positions on {config.chain.NETWORK.title()}...")

    while True:
        try:
            result = await tracker.refresh(owner, force=True)
        except InvalidInput:
            print("❌ Invalid owner address. Must be 42 hex characters starting with 0x.")
            return False
        except PipelineFailed as e:
            if as_json:
                print(json.dumps(
                    {"error": str(e), "debug": e.trace.to_dict() if e.trace else None},
                    indent=2,
                ))
            else:
                print(f"❌ {e}. Try again later or set BASE_RPC_URL.")
            if not watch:
                return False
            result = None

        if result is not None:
            if as_json:
                payload = result.to_dict(include_trace=debug)
                payload["positions"] = [
                    p.to_dict() for p in sort_positions(result.positions, sort_by, order)
                ]
                payload["portfolio"] = portfolio_stats(result.positions)
                print(json.dumps(payload, indent=2))
            else:
                _print_result(result, sort_by, order)
                if debug:
                    print(json.dumps(result.trace.to_dict(), indent=2))

        if not watch:
            return True
        await asyncio.sleep(max(watch, tracker.guard.remaining(owner)))
