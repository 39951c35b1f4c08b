#!/usr/bin/env python3
"""
CL Position Tracker
===================

Concentrated-liquidity position analytics for Aerodrome Slipstream on Base:
held and staked positions, exact token amounts, unclaimed fees, USD value,
gauge rewards with staking APR, and subgraph history.

Usage:
  python run.py positions <owner>                         Scan, value and list positions
  python run.py positions <owner> --sort apr --order asc  Sort by value|apr|daily|pair
  python run.py positions <owner> --json --debug          JSON output with pipeline trace
  python run.py positions <owner> --watch 60              Refresh every 60 seconds
  python run.py info                                      System overview

Sources:
  Slipstream contracts : https://github.com/aerodrome-finance/slipstream
  Uniswap V3 Whitepaper: https://uniswap.org/whitepaper-v3.pdf
  Enso price API       : https://docs.enso.build/
"""

import sys
import asyncio
import argparse
from pathlib import Path

# ── Imports ───────────────────────────────────────────────────────────────

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from cl_tracker.central_config import PROJECT_VERSION, PROJECT_NAME, config
from cl_tracker.commands import cmd_info, cmd_positions
from cl_tracker.portfolio import SORT_KEYS, SORT_ORDERS


# ── CLI Parser ────────────────────────────────────────────────────────────


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cl-tracker",
        description=f"{PROJECT_NAME} v{PROJECT_VERSION} — Slipstream CL position analytics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py positions 0xOWNER                      All held + staked positions
  python run.py positions 0xOWNER --sort daily         Highest daily reward first
  python run.py positions 0xOWNER --json > out.json    Machine-readable output
  python run.py positions 0xOWNER --watch 60           Auto-refresh every minute
  python run.py info                                   System overview

Environment:
  BASE_RPC_URL / ALCHEMY_BASE_HTTP / ALCHEMY_BASE_KEY  Chain RPC endpoint
  ENSO_API_KEY                                         Price API key (optional)
  CL_SUBGRAPH_URL                                      Slipstream subgraph
  LP_POOL_CACHE                                        Pool cache file or URL
  LP_COOLDOWN_MS / LP_FAIL_BACKOFF_MS                  Refresh throttling
""",
    )
    parser.add_argument(
        "--version", action="version", version=f"{PROJECT_NAME} v{PROJECT_VERSION}"
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    pos_p = sub.add_parser("positions", help="List and value CL positions for an owner")
    pos_p.add_argument("owner", help="Owner wallet address (0x…)")
    pos_p.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    pos_p.add_argument(
        "--debug", action="store_true", help="Include the pipeline diagnostic trace"
    )
    pos_p.add_argument(
        "--sort",
        type=str,
        choices=SORT_KEYS,
        default="value",
        help="Sort by: value, apr, daily, pair (default: value)",
    )
    pos_p.add_argument(
        "--order",
        type=str,
        choices=SORT_ORDERS,
        default="desc",
        help="Sort order: asc, desc (default: desc)",
    )
    pos_p.add_argument(
        "--watch",
        type=float,
        nargs="?",
        const=config.refresh.AUTO_REFRESH_SECONDS,
        default=None,
        metavar="SECONDS",
        help=f"Refresh periodically (default interval: "
        f"{config.refresh.AUTO_REFRESH_SECONDS:.0f}s)",
    )

    sub.add_parser("info", help="System & architecture info")

    return parser


# ── Main ──────────────────────────────────────────────────────────────────


def main() -> int:
    parser = create_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 0

    if args.command == "info":
        cmd_info()
        return 0

    if args.command == "positions":
        ok = asyncio.run(
            cmd_positions(
                owner=args.owner,
                as_json=args.json,
                debug=args.debug,
                sort_by=args.sort,
                order=args.order,
                watch=args.watch,
            )
        )
        return 0 if ok else 1

    parser.print_help()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n❌ Cancelled.")
        sys.exit(130)
