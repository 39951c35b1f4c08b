"""
Test Suite — Full Refresh Pipeline (offline)
=============================================

Runs resolve → detail → prices → valuation → rewards → history against the
in-memory Slipstream deployment from conftest.py.

Run:  python -m pytest tests/test_pipeline.py -v
"""

import asyncio
import json

import pytest

from cl_tracker.errors import InvalidInput, PipelineFailed, UpstreamUnavailable
from cl_tracker.models import PositionRef, ValuationSource
from cl_tracker.price_oracle import PriceOracle
from cl_tracker.throttle import RefreshGuard
from historical_analyzer import HistoricalEnricher
from position_indexer import PositionIndexer
from position_tracker import PositionTracker, fetch_positions
from tests.conftest import (
    BLOCK,
    EXACT_AMOUNT,
    GAUGE,
    NOW,
    OWNER,
    POOL,
    REWARD,
    TKA,
    TKB,
    FakeOracle,
    FakeSubgraph,
)


def _run(subgraph=None, oracle=None, owner=OWNER):
    return asyncio.run(
        fetch_positions(
            owner,
            enricher=HistoricalEnricher(client=subgraph or FakeSubgraph()),
            price_oracle=oracle or FakeOracle({}),
            now=NOW,
        )
    )


def _by_id(result):
    return {p.token_id: p for p in result.positions}


# ── Position Discovery ───────────────────────────────────────────────────


class TestResolve:
    def test_wallet_then_staked_order(self, scenario):
        refs = asyncio.run(PositionIndexer().resolve(OWNER))
        assert refs == [
            PositionRef(1001, False),
            PositionRef(3003, False),
            PositionRef(2002, True),
        ]

    def test_id_in_wallet_and_gauge_is_listed_once_as_staked(self, scenario):
        scenario.wallet[OWNER] = [1001, 2002]
        refs = asyncio.run(PositionIndexer().resolve(OWNER))
        assert [r.token_id for r in refs] == [1001, 2002]
        assert refs[1].is_staked is True

    def test_pool_without_gauge_keeps_wallet_positions(self, scenario):
        scenario.pool_state[POOL]["gauge"] = None
        refs = asyncio.run(PositionIndexer().resolve(OWNER))
        assert [r.token_id for r in refs] == [1001, 3003]
        assert not any(r.is_staked for r in refs)

    def test_wallet_flow_down_keeps_staked_flow(self, scenario, monkeypatch):
        import position_indexer

        async def down(*args, **kwargs):
            raise UpstreamUnavailable("chain-rpc", "ConnectError")

        monkeypatch.setattr(position_indexer, "_eth_call", down)
        refs = asyncio.run(PositionIndexer().resolve(OWNER))
        assert refs == [PositionRef(2002, True)]

    @pytest.mark.parametrize("owner", ["", "0x123", "0x" + "g" * 40, None, "ab" * 21])
    def test_malformed_owner_rejected_before_io(self, scenario, owner):
        with pytest.raises(InvalidInput):
            asyncio.run(PositionIndexer().resolve(owner))
        assert scenario.calls == []


# ── End-to-End Refresh ───────────────────────────────────────────────────


class TestFetchPositions:
    def test_full_enrichment(self, scenario, oracle, subgraph):
        result = _run(subgraph, oracle)
        assert [p.token_id for p in result.positions] == [1001, 3003, 2002]
        assert result.block == BLOCK

        held = _by_id(result)[1001]
        assert held.pair_symbol == "TKA/TKB"
        assert held.pool == POOL
        assert held.valuation.source is ValuationSource.EXACT
        assert held.valuation.amount0 == pytest.approx(EXACT_AMOUNT / 1e18)
        assert held.valuation.amount1 == pytest.approx(EXACT_AMOUNT / 1e18)
        assert held.valuation.in_range is True
        assert held.valuation.fees_source is ValuationSource.EXACT
        assert held.valuation.unclaimed_fees0 == pytest.approx(0.001)
        assert held.valuation.unclaimed_fees1 == pytest.approx(0.002)
        assert held.valuation.usd_value == pytest.approx(3 * EXACT_AMOUNT / 1e18)
        assert held.rewards is None

    def test_staked_position_falls_back_and_earns(self, scenario, oracle, subgraph):
        staked = _by_id(_run(subgraph, oracle))[2002]
        v = staked.valuation
        assert staked.is_staked is True
        assert v.source is ValuationSource.APPROXIMATE
        # Float formula agrees with the on-chain integer result
        assert v.amount0 == pytest.approx(EXACT_AMOUNT / 1e18, rel=0.01)
        assert v.fees_source is ValuationSource.APPROXIMATE
        assert v.unclaimed_fees0 == pytest.approx(0.001)
        assert v.unclaimed_fees1 == 0

        r = staked.rewards
        assert r.gauge == GAUGE
        assert r.reward_token == REWARD
        assert r.reward_symbol == "AERO"
        assert r.liquidity_proportion == 0.25
        assert r.reward_per_second == pytest.approx(0.25)
        assert r.reward_per_day == pytest.approx(0.25 * 86_400)
        assert r.reward_per_year_usd == pytest.approx(0.25 * 31_536_000 * 0.5)
        assert r.earned_amount == pytest.approx(5.0)
        assert r.earned_usd == pytest.approx(2.5)
        assert r.is_emitting is True
        assert r.estimated_apr == pytest.approx(r.reward_per_year_usd / v.usd_value * 100)

    def test_closed_position_is_zero_not_missing(self, scenario, oracle, subgraph):
        closed = _by_id(_run(subgraph, oracle))[3003]
        assert closed.is_active is False
        assert closed.valuation.source is ValuationSource.EXACT
        assert closed.valuation.amount0 == 0
        assert closed.valuation.amount1 == 0
        assert closed.valuation.usd_value == 0

    def test_history_and_pool_stats(self, scenario, oracle, subgraph):
        positions = _by_id(_run(subgraph, oracle))
        history = positions[1001].history
        assert history.age_days == 10
        assert history.deposited_value_usd == pytest.approx(4.0)
        assert history.collected_fees_usd == pytest.approx(0.2)
        assert history.roi == pytest.approx(5.0)
        assert positions[2002].history is None
        for p in positions.values():
            assert p.pool_stats.fee_apr == pytest.approx(3.65)
            assert p.pool_stats.fees_24h == pytest.approx(100.0)

    def test_every_read_uses_the_pinned_block(self, scenario, oracle, subgraph):
        _run(subgraph, oracle)
        assert scenario.calls
        assert {block for _, _, block in scenario.calls} == {hex(BLOCK)}

    def test_pool_state_read_once(self, scenario, oracle, subgraph):
        _run(subgraph, oracle)
        slot0_reads = [c for c in scenario.calls if c[1] == "slot0"]
        assert slot0_reads == [(POOL, "slot0", hex(BLOCK))]

    def test_pool_and_token_reads_overlap(self, scenario, oracle, subgraph, monkeypatch):
        import position_reader

        inner = position_reader._eth_call_batch
        in_flight, peak = [0], [0]

        async def tracked(*args, **kwargs):
            in_flight[0] += 1
            peak[0] = max(peak[0], in_flight[0])
            try:
                await asyncio.sleep(0.01)
                return await inner(*args, **kwargs)
            finally:
                in_flight[0] -= 1

        monkeypatch.setattr(position_reader, "_eth_call_batch", tracked)
        result = _run(subgraph, oracle)
        assert peak[0] == 2
        assert _by_id(result)[1001].token0.symbol == "TKA"

    def test_reward_price_fetched_on_demand(self, scenario, oracle, subgraph):
        _run(subgraph, oracle)
        assert set(oracle.requested[0]) == {TKA, TKB}
        assert oracle.requested[1] == [REWARD]

    def test_result_serializes(self, scenario, oracle, subgraph):
        payload = _run(subgraph, oracle).to_dict(include_trace=True)
        text = json.dumps(payload)
        assert payload["debug"]["block"] == BLOCK
        first = payload["positions"][0]
        assert first["valuation_source"] == "exact"
        assert "null" not in text

    def test_no_positions(self, fake_chain, oracle):
        result = _run(oracle=oracle)
        assert result.positions == []
        assert oracle.requested == []


# ── Degraded Upstreams ───────────────────────────────────────────────────


class TestPartialFailures:
    def test_one_missing_price_keeps_partial_value(self, scenario, subgraph):
        held = _by_id(_run(subgraph, FakeOracle({TKA: 2.0})))[1001]
        assert held.valuation.token1_price_usd is None
        assert held.valuation.usd_value == pytest.approx(2 * EXACT_AMOUNT / 1e18)

    def test_oracle_down_values_stay_unpriced(self, scenario, subgraph):
        result = _run(subgraph, FakeOracle({TKA: 2.0}, down=True))
        held = _by_id(result)[1001]
        assert held.valuation.source is ValuationSource.EXACT
        assert held.valuation.usd_value is None
        staked = _by_id(result)[2002]
        assert staked.rewards is not None
        assert staked.rewards.estimated_apr is None
        assert result.trace.find("prices")[0]["error_kind"] == "UpstreamUnavailable"

    def test_subgraph_down_leaves_history_absent(self, scenario, oracle):
        result = _run(FakeSubgraph(down=True), oracle)
        assert all(p.history is None and p.pool_stats is None for p in result.positions)
        assert all(p.valuation.usd_value is not None for p in result.positions)
        assert result.trace.find("history.pools")[0]["error_kind"] == "UpstreamUnavailable"

    def test_helper_down_falls_back_to_formula(self, scenario, oracle, subgraph):
        scenario.principal.clear()
        scenario.fees.clear()
        held = _by_id(_run(subgraph, oracle))[1001]
        assert held.valuation.source is ValuationSource.APPROXIMATE
        assert held.valuation.unclaimed_fees0 == pytest.approx(7e-18)

    def test_invalid_tick_range_is_flagged(self, scenario, oracle, subgraph):
        scenario.wallet[OWNER].append(4004)
        scenario.add_position(4004, TKA, TKB, 100, 500, -500, 10 ** 18)
        bad = _by_id(_run(subgraph, oracle))[4004]
        assert bad.valuation.source is ValuationSource.UNAVAILABLE
        assert bad.data_errors and "invalid tick range" in bad.data_errors[0]

    def test_position_without_pool_is_unavailable(self, scenario, oracle, subgraph):
        scenario.wallet[OWNER].append(5005)
        scenario.add_position(5005, TKA, REWARD, 1, -10, 10, 10 ** 12)
        result = _run(subgraph, oracle)
        orphan = _by_id(result)[5005]
        assert orphan.pool is None
        assert orphan.valuation.source is ValuationSource.UNAVAILABLE
        assert result.trace.find("valuation[5005]")

    def test_staked_position_without_pool_is_traced(self, scenario, oracle, subgraph):
        scenario.gauges[GAUGE]["staked"][OWNER].append(7007)
        scenario.add_position(7007, TKA, REWARD, 1, -10, 10, 10 ** 12)
        result = _run(subgraph, oracle)
        orphan = _by_id(result)[7007]
        assert orphan.is_staked and orphan.pool is None
        assert orphan.rewards is None
        step = result.trace.find("rewards[7007]")[0]
        assert step["error_kind"] == "PartialReadFailure"
        assert step["error"] == "pool lookup failed"

    def test_failed_position_read_is_dropped(self, scenario, oracle, subgraph):
        scenario.wallet[OWNER].append(6006)
        result = _run(subgraph, oracle)
        assert 6006 not in _by_id(result)
        assert result.trace.find("detail.positions[6006]")

    def test_missing_reward_token_means_no_reward_state(self, scenario, oracle, subgraph):
        del scenario.gauges[GAUGE]["rewardToken"]
        result = _run(subgraph, oracle)
        assert _by_id(result)[2002].rewards is None
        assert result.trace.find("rewards[2002]")

    def test_zero_reward_rate_is_a_real_zero(self, scenario, oracle, subgraph):
        scenario.gauges[GAUGE]["rewardRate"] = 0
        r = _by_id(_run(subgraph, oracle))[2002].rewards
        assert r.reward_per_day == 0
        assert r.estimated_apr == 0

    def test_chain_down_fails_with_trace(self, scenario, oracle):
        scenario.down = True
        with pytest.raises(PipelineFailed) as exc:
            _run(oracle=oracle)
        trace = exc.value.trace
        assert trace.find("block")[0]["error_kind"] == "UpstreamUnavailable"
        assert trace.find("pipeline")
        assert oracle.requested == []

    def test_malformed_owner_makes_no_calls(self, scenario, oracle):
        with pytest.raises(InvalidInput):
            _run(oracle=oracle, owner="0xnot-an-address")
        assert scenario.calls == []
        assert oracle.requested == []


# ── Refresh Throttling ───────────────────────────────────────────────────


class TestPositionTracker:
    def _tracker(self, clock, oracle, subgraph):
        guard = RefreshGuard(
            cooldown_seconds=15, fail_backoff_seconds=30, clock=lambda: clock[0]
        )
        return PositionTracker(
            guard=guard,
            enricher=HistoricalEnricher(client=subgraph),
            price_oracle=oracle,
            now=NOW,
        )

    def test_cooldown_returns_cached_result(self, scenario, oracle, subgraph):
        clock = [1000.0]
        tracker = self._tracker(clock, oracle, subgraph)
        first = asyncio.run(tracker.refresh(OWNER))
        calls = len(scenario.calls)

        again = asyncio.run(tracker.refresh(OWNER.upper().replace("0X", "0x")))
        assert again is first
        assert len(scenario.calls) == calls

        clock[0] += 16
        fresh = asyncio.run(tracker.refresh(OWNER))
        assert fresh is not first
        assert tracker.cached(OWNER) is fresh

    def test_force_skips_cooldown(self, scenario, oracle, subgraph):
        clock = [1000.0]
        tracker = self._tracker(clock, oracle, subgraph)
        first = asyncio.run(tracker.refresh(OWNER))
        forced = asyncio.run(tracker.refresh(OWNER, force=True))
        assert forced is not first

    def test_failure_arms_backoff(self, scenario, oracle, subgraph):
        clock = [1000.0]
        tracker = self._tracker(clock, oracle, subgraph)
        scenario.down = True
        with pytest.raises(PipelineFailed):
            asyncio.run(tracker.refresh(OWNER))

        scenario.down = False
        clock[0] += 16   # past the cooldown, inside the backoff
        assert asyncio.run(tracker.refresh(OWNER)) is None
        assert tracker.guard.remaining(OWNER) == pytest.approx(14)

        clock[0] += 15
        assert asyncio.run(tracker.refresh(OWNER)) is not None

    def test_throttled_owner_does_not_block_others(self, scenario, oracle, subgraph):
        clock = [1000.0]
        tracker = self._tracker(clock, oracle, subgraph)
        asyncio.run(tracker.refresh(OWNER))
        other = asyncio.run(tracker.refresh("0x" + "cd" * 20))
        assert other is not None
        assert other.positions == []

    def test_invalid_owner(self, scenario, oracle, subgraph):
        tracker = self._tracker([0.0], oracle, subgraph)
        with pytest.raises(InvalidInput):
            asyncio.run(tracker.refresh("nope"))

    def test_unbatched_rpc_reply_fails_and_arms_backoff(self, scenario, oracle, subgraph, monkeypatch):
        import position_reader

        async def unbatched(*args, **kwargs):
            raise UpstreamUnavailable("chain-rpc", "batch not supported")

        monkeypatch.setattr(position_reader, "_eth_call_batch", unbatched)
        clock = [1000.0]
        tracker = self._tracker(clock, oracle, subgraph)
        with pytest.raises(PipelineFailed) as exc:
            asyncio.run(tracker.refresh(OWNER))
        assert exc.value.trace.find("pipeline")[0]["error_kind"] == "UpstreamUnavailable"
        assert tracker.guard.remaining(OWNER) == pytest.approx(30)

    def test_default_oracle_is_kept_across_refreshes(self):
        tracker = PositionTracker()
        oracle = tracker._pipeline["price_oracle"]
        assert isinstance(oracle, PriceOracle)
        assert PositionTracker()._pipeline["price_oracle"] is not oracle
