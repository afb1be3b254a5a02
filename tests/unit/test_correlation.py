# tests/unit/test_correlation.py
"""
Unit tests for the correlation / arbitrage analyzer
"""
from datetime import timedelta

import pytest

from core.analysis_models import CorrelationTrend, DeviationTrend
from core.correlation_analyzer import (
    align_series, analyze_correlations, price_correlation, price_deviation,
    relative_deviation
)

from conftest import BASE_TIME, make_series, make_snapshot

POOL = "PoolMainXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXX"
PEER = "PoolPeerXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXX"


def rising(n=30, base=100.0, step=1.0):
    return [base + i * step + (0.3 if i % 3 == 0 else 0.0) for i in range(n)]


@pytest.mark.unit
class TestPriceCorrelation:
    """Pearson correlation and classification"""

    def test_moving_together_is_strong_positive(self):
        xs = rising()
        ys = [x * 1.01 for x in xs]
        result = price_correlation(xs, ys)
        assert result.coefficient == pytest.approx(1.0)
        assert result.significance > 0.95
        assert result.trend == CorrelationTrend.STRONG_POSITIVE
        assert result.sample_size == 30

    def test_mirror_is_strong_negative(self):
        xs = rising()
        ys = [300 - x for x in xs]
        assert price_correlation(xs, ys).trend == CorrelationTrend.STRONG_NEGATIVE

    def test_constant_series_is_neutral(self):
        result = price_correlation(rising(), [5.0] * 30)
        assert result.coefficient == 0.0
        assert result.trend == CorrelationTrend.NEUTRAL

    def test_short_series_is_neutral(self):
        result = price_correlation([1.0, 2.0], [2.0, 4.0])
        assert result.trend == CorrelationTrend.NEUTRAL
        assert result.sample_size == 2

    def test_alignment_uses_common_timestamps(self):
        a = make_series([1, 2, 3, 4])
        b = make_series([10, 20, 30], start=BASE_TIME + timedelta(hours=1))
        xs, ys = align_series(a, b)
        assert xs == [2.0, 3.0, 4.0]
        assert ys == [10.0, 20.0, 30.0]


@pytest.mark.unit
class TestPriceDeviation:
    """Relative price deviation"""

    def test_relative_deviation(self):
        assert relative_deviation(102, 98) == pytest.approx(4.0)
        assert relative_deviation(0, 0) is None

    def test_constant_gap_is_stable(self):
        xs = rising()
        ys = [x - 1 for x in xs]
        result = price_deviation(xs, ys)
        assert result.current > 0
        assert result.trend == DeviationTrend.STABLE

    def test_widening_gap_is_diverging(self):
        xs = [100.0] * 30
        ys = [100.0 - i for i in range(30)]
        assert price_deviation(xs, ys).trend == DeviationTrend.DIVERGING

    def test_closing_gap_is_converging(self):
        xs = [100.0] * 30
        ys = [70.0 + i for i in range(30)]
        assert price_deviation(xs, ys).trend == DeviationTrend.CONVERGING

    def test_gap_closing_from_below_is_converging(self):
        xs = [70.0 + i for i in range(30)]
        ys = [100.0] * 30
        result = price_deviation(xs, ys)
        assert result.current < 0
        assert result.trend == DeviationTrend.CONVERGING

    def test_empty(self):
        assert price_deviation([], []).trend == DeviationTrend.NEUTRAL


@pytest.mark.unit
class TestAnalyzeCorrelations:
    """Peer analysis and arbitrage candidates"""

    def test_same_pair_price_gap_gives_candidate(self):
        pool = make_snapshot(address=POOL, price=102.0)
        peer = make_snapshot(address=PEER, price=100.0)
        prices = rising()
        series = {POOL: make_series(prices), PEER: make_series([p * 0.99 for p in prices])}

        result = analyze_correlations(pool, [peer], series, fee_pct=0.3, timestamp=BASE_TIME)

        assert len(result.correlations) == 1
        assert result.correlations[0].token_pair == "SOL/USDC"
        assert len(result.arbitrage_candidates) == 1
        candidate = result.arbitrage_candidates[0]
        assert candidate.buy_pool == PEER
        assert candidate.sell_pool == POOL
        assert candidate.estimated_costs_pct == pytest.approx(0.6)
        assert candidate.net_return_pct == pytest.approx(candidate.gross_return_pct - 0.6)
        assert candidate.advisory is True

    def test_gap_smaller_than_fees_is_ignored(self):
        pool = make_snapshot(address=POOL, price=100.2)
        peer = make_snapshot(address=PEER, price=100.0)
        prices = rising()
        series = {POOL: make_series(prices), PEER: make_series(prices)}
        result = analyze_correlations(pool, [peer], series, fee_pct=0.3)
        assert result.arbitrage_candidates == []

    def test_candidates_ranked_by_net_return(self):
        pool = make_snapshot(address=POOL, price=110.0)
        near = make_snapshot(address=PEER, price=108.0)
        far = make_snapshot(address="PoolFarXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXXX", price=100.0)
        prices = rising()
        series = {p.address: make_series(prices) for p in (pool, near, far)}
        result = analyze_correlations(pool, [near, far], series)
        assert [c.target_pool for c in result.arbitrage_candidates] == [far.address, near.address]

    def test_shared_token_other_pair_has_no_candidate(self):
        pool = make_snapshot(address=POOL, price=102.0)
        peer = make_snapshot(address=PEER, price=50.0, token_y="USDT")
        prices = rising()
        series = {POOL: make_series(prices), PEER: make_series(prices)}
        result = analyze_correlations(pool, [peer], series)
        assert len(result.correlations) == 1
        assert result.arbitrage_candidates == []

    def test_unrelated_pool_is_skipped(self):
        pool = make_snapshot(address=POOL)
        other = make_snapshot(address=PEER, token_x="BONK", token_y="JUP")
        result = analyze_correlations(pool, [other], {POOL: make_series(rising())})
        assert result.correlations == []
        assert result.failed_peers == []

    def test_missing_peer_history_is_reported(self):
        pool = make_snapshot(address=POOL)
        peer = make_snapshot(address=PEER)
        result = analyze_correlations(pool, [peer], {POOL: make_series(rising())})
        assert result.correlations == []
        assert result.failed_peers == [PEER]

    def test_inverted_pair_is_normalized(self):
        pool = make_snapshot(address=POOL, price=102.0)
        peer = make_snapshot(address=PEER, price=1 / 100.0, token_x="USDC", token_y="SOL")
        prices = rising()
        series = {POOL: make_series(prices), PEER: make_series([1 / p for p in prices])}
        result = analyze_correlations(pool, [peer], series)
        assert result.correlations[0].correlation.coefficient == pytest.approx(1.0)
        assert len(result.arbitrage_candidates) == 1
        assert result.arbitrage_candidates[0].buy_pool == PEER
