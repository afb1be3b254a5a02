"""
Correlation / Arbitrage Analyzer

Compares a pool's price history against peers that share one of its tokens:
Pearson correlation with significance, a relative price-deviation series and
its trend, and advisory arbitrage candidates between pools of the same pair.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import pearsonr

from core.analysis_models import (
    ArbitrageCandidate, ArbitrageRisk, CorrelationAnalysis, CorrelationTrend,
    DeviationTrend, PeerCorrelation, PriceCorrelation, PriceDeviation
)
from core.models import PoolSnapshot, SeriesPoint
from utils import indicators

logger = logging.getLogger(__name__)

STRONG_CORRELATION = 0.7
WEAK_CORRELATION = 0.3
STRONG_SIGNIFICANCE = 0.95
MIN_ALIGNED_POINTS = 3
DEVIATION_TREND_WINDOW = 24
DEVIATION_SLOPE_THRESHOLD = 0.01


def align_series(a: Sequence[SeriesPoint],
                 b: Sequence[SeriesPoint]) -> Tuple[List[float], List[float]]:
    """Pair up values of two series on their common timestamps, in time order."""
    b_by_time = {p.timestamp: p.value for p in b}
    xs: List[float] = []
    ys: List[float] = []
    for point in sorted(a, key=lambda p: p.timestamp):
        if point.timestamp in b_by_time:
            xs.append(point.value)
            ys.append(b_by_time[point.timestamp])
    return xs, ys


def classify_correlation(coefficient: float, significance: float) -> CorrelationTrend:
    if coefficient > STRONG_CORRELATION and significance > STRONG_SIGNIFICANCE:
        return CorrelationTrend.STRONG_POSITIVE
    if coefficient < -STRONG_CORRELATION and significance > STRONG_SIGNIFICANCE:
        return CorrelationTrend.STRONG_NEGATIVE
    if coefficient > WEAK_CORRELATION:
        return CorrelationTrend.WEAK_POSITIVE
    if coefficient < -WEAK_CORRELATION:
        return CorrelationTrend.WEAK_NEGATIVE
    return CorrelationTrend.NEUTRAL


def price_correlation(xs: Sequence[float], ys: Sequence[float]) -> PriceCorrelation:
    """
    Pearson correlation of two aligned price series.

    Short series and constant series have no defined correlation and
    resolve to a coefficient of 0.
    """
    n = min(len(xs), len(ys))
    if n < MIN_ALIGNED_POINTS:
        return PriceCorrelation(sample_size=n)

    x = np.asarray(xs[:n], dtype=float)
    y = np.asarray(ys[:n], dtype=float)
    if np.std(x) == 0 or np.std(y) == 0:
        return PriceCorrelation(sample_size=n)

    result = pearsonr(x, y)
    coefficient = float(result[0])
    p_value = float(result[1])
    if math.isnan(coefficient):
        return PriceCorrelation(sample_size=n)
    significance = 0.0 if math.isnan(p_value) else max(0.0, min(1.0, 1 - p_value))
    coefficient = max(-1.0, min(1.0, coefficient))

    return PriceCorrelation(
        coefficient=coefficient,
        significance=significance,
        trend=classify_correlation(coefficient, significance),
        sample_size=n,
    )


def relative_deviation(p1: float, p2: float) -> Optional[float]:
    """(p1 - p2) relative to their average, in percent; None if the average is 0."""
    average = (p1 + p2) / 2
    if average == 0:
        return None
    return (p1 - p2) / average * 100


def price_deviation(xs: Sequence[float], ys: Sequence[float]) -> PriceDeviation:
    """
    Deviation statistics of xs against ys. The trend follows the magnitude of
    the gap, so a negative gap shrinking towards 0 is CONVERGING.
    """
    deviations = [
        d for d in (relative_deviation(a, b) for a, b in zip(xs, ys))
        if d is not None
    ]
    if not deviations:
        return PriceDeviation()

    recent = [abs(d) for d in deviations[-DEVIATION_TREND_WINDOW:]]
    if len(recent) < 2:
        trend = DeviationTrend.NEUTRAL
    else:
        slope = indicators.linear_regression_slope(recent)
        if abs(slope) < DEVIATION_SLOPE_THRESHOLD:
            trend = DeviationTrend.STABLE
        elif slope > 0:
            trend = DeviationTrend.DIVERGING
        else:
            trend = DeviationTrend.CONVERGING

    return PriceDeviation(
        current=deviations[-1],
        average=indicators.mean(deviations),
        volatility=indicators.std_dev(deviations),
        max=max(deviations),
        min=min(deviations),
        trend=trend,
    )


def is_inverted_pair(pool: PoolSnapshot, peer: PoolSnapshot) -> bool:
    """True when the peer quotes the same pair with the tokens swapped."""
    return pool.token_x == peer.token_y and pool.token_y == peer.token_x and pool.token_x != pool.token_y


def invert_series(series: Sequence[SeriesPoint]) -> List[SeriesPoint]:
    return [SeriesPoint(timestamp=p.timestamp, value=1 / p.value) for p in series if p.value != 0]


def arbitrage_candidate(pool: PoolSnapshot, peer: PoolSnapshot, peer_result: PeerCorrelation,
                        fee_pct: float) -> Optional[ArbitrageCandidate]:
    """
    Advisory arbitrage check between two pools of the same token pair.

    Net return is the absolute price deviation minus one fee per leg. Only
    positively correlated pairs qualify; None when nothing is left after fees.
    """
    if not pool.same_pair_as(peer):
        return None
    correlation = peer_result.correlation
    if correlation.coefficient <= 0:
        return None

    peer_price = peer.current_price
    if is_inverted_pair(pool, peer):
        if peer_price == 0:
            return None
        peer_price = 1 / peer_price
    deviation = relative_deviation(pool.current_price, peer_price)
    if deviation is None or deviation == 0:
        return None

    gross = abs(deviation)
    costs = 2 * fee_pct
    net = gross - costs
    if net <= 0:
        return None

    if deviation > 0:
        buy_pool, sell_pool = peer.address, pool.address
    else:
        buy_pool, sell_pool = pool.address, peer.address

    slippage = min(1.0, gross / 10)
    timing = min(1.0, peer_result.deviation.volatility / gross)

    return ArbitrageCandidate(
        source_pool=pool.address,
        target_pool=peer.address,
        buy_pool=buy_pool,
        sell_pool=sell_pool,
        deviation_pct=deviation,
        gross_return_pct=gross,
        estimated_costs_pct=costs,
        net_return_pct=net,
        risk=ArbitrageRisk(slippage=slippage, timing=timing, overall=(slippage + timing) / 2),
        confidence=round(correlation.coefficient * correlation.significance * 100, 2),
    )


def analyze_correlations(pool: PoolSnapshot,
                         peers: Iterable[PoolSnapshot],
                         price_series: Dict[str, Sequence[SeriesPoint]],
                         fee_pct: float = 0.3,
                         failed_peers: Iterable[str] = (),
                         timestamp: Optional[datetime] = None) -> CorrelationAnalysis:
    """
    Correlate a pool with its token-sharing peers.

    Args:
        pool: The pool being analyzed
        peers: Candidate peers; ones that share no token with the pool are ignored
        price_series: Price history per pool address; peers missing here are
            reported as failed
        fee_pct: Swap fee per leg, in percent
        failed_peers: Peers whose history could not be fetched
        timestamp: Analysis time (defaults to now, UTC)

    Returns:
        CorrelationAnalysis with arbitrage candidates ranked by net return
    """
    timestamp = timestamp or datetime.now(timezone.utc)
    failed = list(failed_peers)
    own_series = price_series.get(pool.address, [])

    correlations: List[PeerCorrelation] = []
    candidates: List[ArbitrageCandidate] = []

    for peer in peers:
        if peer.address == pool.address or not pool.shares_token_with(peer):
            continue
        if peer.address in failed:
            continue
        if peer.address not in price_series:
            failed.append(peer.address)
            continue

        peer_series = price_series[peer.address]
        if is_inverted_pair(pool, peer):
            peer_series = invert_series(peer_series)
        xs, ys = align_series(own_series, peer_series)
        peer_result = PeerCorrelation(
            pool_address=peer.address,
            token_pair=f"{peer.token_x}/{peer.token_y}",
            correlation=price_correlation(xs, ys),
            deviation=price_deviation(xs, ys),
        )
        correlations.append(peer_result)

        candidate = arbitrage_candidate(pool, peer, peer_result, fee_pct)
        if candidate is not None:
            candidates.append(candidate)

    candidates.sort(key=lambda c: c.net_return_pct, reverse=True)
    if failed:
        logger.warning(f"Correlation for {pool.address} skipped peers: {', '.join(failed)}")

    return CorrelationAnalysis(
        pool_address=pool.address,
        timestamp=timestamp,
        correlations=correlations,
        arbitrage_candidates=candidates,
        failed_peers=failed,
    )
