#!/usr/bin/env python3
"""
RPC Helpers — Shared ABI Encoding/Decoding and JSON-RPC Client
===============================================================

Low-level EVM primitives shared by every pipeline stage:

  • ABI encoding/decoding (uint256, int24, address, string, uint256[])
  • JSON-RPC client (eth_call, eth_call_batch, eth_blockNumber)
  • Function selectors for the Slipstream contracts the tracker reads

All constants reference the Ethereum ABI specification:
  https://docs.soliditylang.org/en/latest/abi-spec.html

Terminology:
  • Word:  32 bytes = 256 bits = 64 hex characters
  • Slot:  Position of a 32-byte word in an ABI response
  • Q96:   2^96  — fixed-point denominator for sqrtPriceX96
  • Q256:  2^256 — two's complement boundary for int256

Failure model:
  • Transport failure (connection, HTTP status, non-JSON body) of a whole
    request → UpstreamUnavailable("chain-rpc").
  • A single call inside a batch that reverts or returns nothing → "" in
    that call's slot. Callers treat "" as "field absent".
"""

import asyncio
import re
from typing import List, Optional, Tuple

import httpx

from cl_tracker.errors import UpstreamUnavailable

# ── ABI Word Constants ──────────────────────────────────────────────────

ABI_WORD_BYTES = 32          # 1 ABI word = 32 bytes
ABI_WORD_HEX = 64            # 32 bytes × 2 hex chars = 64 hex characters
ADDRESS_HEX = 40              # 20 bytes × 2 = 40 hex characters
ADDRESS_PAD_HEX = 24          # Left padding in a 32-byte slot = 64 - 40 = 24 hex chars
SIGN_BIT = 1 << 255           # Two's complement sign bit for int256

# ── Fixed-Point Constants ───────────────────────────────────────────────

Q96 = 2 ** 96                # sqrtPriceX96 denominator (FixedPoint96.RESOLUTION)
Q256 = 2 ** 256              # int256 overflow boundary (two's complement wrap)

ZERO_ADDRESS = "0x" + "0" * ADDRESS_HEX

_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")

# ── Common Token Symbol Normalization ───────────────────────────────────

SYMBOL_MAP = {
    "USD₮0": "USDT",
    "USD₮": "USDT",
    "USDT0": "USDT",
}


def normalize_symbol(raw_symbol: str) -> str:
    """Normalize on-chain token symbol to common name."""
    cleaned = raw_symbol.strip().strip("\x00")
    return SYMBOL_MAP.get(cleaned, cleaned)


def is_valid_address(addr) -> bool:
    """True for a well-formed 0x-prefixed 20-byte hex address."""
    return isinstance(addr, str) and _ADDRESS_RE.fullmatch(addr) is not None


# ── ABI Function Selectors ──────────────────────────────────────────────
# First 4 bytes of keccak256(function_signature).

SELECTORS: dict[str, str] = {
    # NonfungiblePositionManager (ERC-721 Enumerable)
    "balanceOf":              "0x70a08231",  # balanceOf(address)
    "tokenOfOwnerByIndex":    "0x2f745c59",  # tokenOfOwnerByIndex(address,uint256)
    "positions":              "0x99fbab88",  # positions(uint256)

    # CLFactory
    "getPool":                "0x28af8d0b",  # getPool(address,address,int24)

    # CLPool (read-only state)
    "slot0":                  "0x3850c7bd",  # slot0()
    "liquidity":              "0x1a686502",  # liquidity()
    "stakedLiquidity":        "0x3ab04b20",  # stakedLiquidity()
    "gauge":                  "0xa6f19c84",  # gauge()

    # CLGauge
    "stakedValues":           "0x4b937763",  # stakedValues(address)
    "rewardRate":             "0x7b0a47ee",  # rewardRate()
    "rewardToken":            "0xf7c618c1",  # rewardToken()
    "periodFinish":           "0xebe2b12b",  # periodFinish()
    "earned":                 "0x3e491d47",  # earned(address,uint256)

    # SugarHelper
    "principal":              "0x22635397",  # principal(address,uint256,uint160)
    "fees":                   "0x263a5362",  # fees(address,uint256)

    # ERC-20 metadata
    "symbol":                 "0x95d89b41",  # symbol()
    "decimals":               "0x313ce567",  # decimals()
}


# ── ABI Encoding ────────────────────────────────────────────────────────

def encode_uint256(value: int) -> str:
    """ABI-encode a uint256 as 32-byte hex (no 0x prefix).

    >>> encode_uint256(1)
    '0000000000000000000000000000000000000000000000000000000000000001'
    """
    return format(value, f'0{ABI_WORD_HEX}x')


def encode_address(addr: str) -> str:
    """ABI-encode an address as 32 bytes (left-padded, no 0x prefix).

    >>> encode_address('0x827922686190790b37229fd06084350E74485b72')
    '000000000000000000000000827922686190790b37229fd06084350e74485b72'
    """
    return addr.lower().replace("0x", "").zfill(ABI_WORD_HEX)


def encode_int24(value: int) -> str:
    """ABI-encode an int24 sign-extended to int256 (ticks, tick spacing).

    >>> encode_int24(-887220)
    'fffffffffffffffffffffffffffffffffffffffffffffffffffffffffff27e8c'
    """
    if value < 0:
        value = Q256 + value
    return format(value, f'0{ABI_WORD_HEX}x')


# ── ABI Decoding ────────────────────────────────────────────────────────

def decode_uint(hex_data: str, slot: int = 0) -> int:
    """Decode uint256 from ABI response at 32-byte slot offset.

    Args:
        hex_data: Hex string (without 0x prefix).
        slot: Which 32-byte word to read (0-indexed).
    """
    start = slot * ABI_WORD_HEX
    word = hex_data[start:start + ABI_WORD_HEX]
    if len(word) != ABI_WORD_HEX:
        raise ValueError(f"ABI response too short for slot {slot}")
    return int(word, 16)


def decode_int(hex_data: str, slot: int = 0) -> int:
    """Decode int256 (two's complement) from ABI response."""
    val = decode_uint(hex_data, slot)
    if val >= SIGN_BIT:
        return val - Q256
    return val


def decode_address(hex_data: str, slot: int = 0) -> str:
    """Decode address (last 20 bytes of 32-byte slot)."""
    start = slot * ABI_WORD_HEX
    word = hex_data[start:start + ABI_WORD_HEX]
    if len(word) != ABI_WORD_HEX:
        raise ValueError(f"ABI response too short for slot {slot}")
    return "0x" + word[ADDRESS_PAD_HEX:]


def decode_optional_uint(hex_data: str) -> Optional[int]:
    """First-slot uint of a batch result; empty or malformed → None."""
    if not hex_data:
        return None
    try:
        return decode_uint(hex_data, 0)
    except ValueError:
        return None


def decode_optional_address(hex_data: str) -> Optional[str]:
    """First-slot address of a batch result; empty, malformed or zero → None."""
    if not hex_data:
        return None
    try:
        addr = decode_address(hex_data, 0)
    except ValueError:
        return None
    return None if addr == ZERO_ADDRESS else addr


def decode_uint_array(hex_data: str, slot: int = 0) -> List[int]:
    """Decode a dynamic uint256[] whose offset sits at ``slot``."""
    word_offset = decode_uint(hex_data, slot) // ABI_WORD_BYTES
    length = decode_uint(hex_data, word_offset)
    return [decode_uint(hex_data, word_offset + 1 + i) for i in range(length)]


def decode_string(hex_data: str) -> Optional[str]:
    """
    Decode ABI-encoded dynamic string return value.

    Handles both standard dynamic strings (offset + length + data)
    and non-standard bytes32 returns from some token contracts.
    Returns None when neither layout decodes — never a placeholder.
    """
    try:
        offset = decode_uint(hex_data, 0)
        word_offset = offset // ABI_WORD_BYTES
        length = decode_uint(hex_data, word_offset)
        start_byte = (word_offset + 1) * ABI_WORD_HEX
        hex_str = hex_data[start_byte:start_byte + length * 2]
        if len(hex_str) != length * 2:
            raise ValueError("truncated string")
        return bytes.fromhex(hex_str).decode("utf-8").strip("\x00")
    except (ValueError, UnicodeDecodeError):
        # Some tokens return bytes32 instead of string
        try:
            raw = bytes.fromhex(hex_data[:ABI_WORD_HEX])
            text = raw.decode("utf-8").strip("\x00").strip()
            return text or None
        except (ValueError, UnicodeDecodeError):
            return None


# ── JSON-RPC Client ─────────────────────────────────────────────────────

def _call_payload(request_id: int, to: str, data: str, block: str) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "eth_call",
        "params": [{"to": to, "data": data}, block],
    }


async def eth_call(
    rpc_url: str, to: str, data: str, timeout: int = 20, block: str = "latest"
) -> str:
    """
    Execute eth_call on an EVM node.

    Args:
        rpc_url: JSON-RPC endpoint URL
        to: Contract address (0x...)
        data: ABI-encoded calldata (0x + selector + params)
        timeout: HTTP timeout in seconds
        block: Block tag or hex block number to read at

    Returns:
        Hex response string (without 0x prefix).

    Raises:
        UpstreamUnavailable: If the endpoint cannot be reached.
        RuntimeError: If RPC returns an error or empty response.
    """
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(rpc_url, json=_call_payload(1, to, data, block))
            resp.raise_for_status()
            result = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise UpstreamUnavailable("chain-rpc", type(e).__name__) from e

    if "error" in result:
        raise RuntimeError(f"RPC error: {result['error'].get('message', result['error'])}")
    raw = result.get("result", "0x")
    if raw == "0x" or len(raw) < 4:
        raise RuntimeError("Empty response — contract may not exist at this address")
    return raw[2:]  # strip 0x prefix


async def _post_batch(
    client: httpx.AsyncClient,
    rpc_url: str,
    calls: List[Tuple[str, str]],
    block: str,
) -> List[str]:
    payloads = [
        _call_payload(i + 1, to, data, block) for i, (to, data) in enumerate(calls)
    ]
    try:
        resp = await client.post(rpc_url, json=payloads)
        resp.raise_for_status()
        results = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise UpstreamUnavailable("chain-rpc", type(e).__name__) from e

    if isinstance(results, list):
        by_id = {r.get("id"): r for r in results if isinstance(r, dict)}
        out = []
        for i in range(len(calls)):
            raw = by_id.get(i + 1, {}).get("result")
            out.append(raw[2:] if isinstance(raw, str) and len(raw) > 2 else "")
        return out

    if isinstance(results, dict) and "result" in results:
        # Single result (some RPCs don't support batch); only valid for one call
        if len(calls) != 1:
            raise UpstreamUnavailable("chain-rpc", "batch not supported")
        raw = results["result"]
        return [raw[2:] if isinstance(raw, str) and len(raw) > 2 else ""]

    message = results.get("error", results) if isinstance(results, dict) else results
    raise UpstreamUnavailable("chain-rpc", f"batch rejected: {message}")


async def eth_call_batch(
    rpc_url: str,
    calls: List[Tuple[str, str]],
    timeout: int = 20,
    block: str = "latest",
    max_batch: int = 100,
) -> List[str]:
    """
    Batch multiple eth_call requests into JSON-RPC batch requests.

    Calls are split into chunks of at most ``max_batch`` and the chunks are
    sent concurrently. A reverted or empty call yields "" in its slot; the
    other calls are unaffected.

    Args:
        rpc_url: JSON-RPC endpoint URL
        calls: List of (contract_address, calldata) tuples
        timeout: HTTP timeout in seconds
        block: Block tag or hex block number to read at
        max_batch: Maximum calls per HTTP request

    Returns:
        List of hex result strings (without 0x prefix), in same order as calls.
    """
    if not calls:
        return []

    chunks = [calls[i:i + max_batch] for i in range(0, len(calls), max_batch)]
    async with httpx.AsyncClient(timeout=timeout) as client:
        parts = await asyncio.gather(
            *[_post_batch(client, rpc_url, chunk, block) for chunk in chunks]
        )

    results: List[str] = []
    for part in parts:
        results.extend(part)
    return results


async def eth_block_number(rpc_url: str, timeout: int = 10) -> int:
    """
    Get the latest block number from an EVM node.

    Returns:
        Latest block number as integer.
    """
    payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "eth_blockNumber",
        "params": [],
    }
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.post(rpc_url, json=payload)
            resp.raise_for_status()
            result = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        raise UpstreamUnavailable("chain-rpc", type(e).__name__) from e
    if "error" in result:
        raise RuntimeError(f"RPC error: {result['error']}")
    return int(result["result"], 16)
