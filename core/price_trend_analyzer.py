"""
Price trend and volatility analysis over a rolling price series.

Trend combines a MACD-style EMA spread (12 vs 24 periods) with a 14-period
Wilder RSI. Volatility compares the RMS of recent percent changes with the
preceding window.
"""
import logging
import math
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from core.analysis_models import (
    ChangeStatistics, PriceRange, PriceTrendAnalysis, Severity, TrendDirection,
    TrendIndicators, VolatilityAnalysis, VolatilityTrend
)
from core.models import SeriesPoint
from utils import indicators

logger = logging.getLogger(__name__)

SHORT_EMA_PERIOD = 12
LONG_EMA_PERIOD = 24
RSI_PERIOD = 14
RECENT_WINDOW = 24
VOLATILITY_TREND_THRESHOLD = 20.0  # percent change in volatility


def change_statistics(changes: Sequence[float]) -> ChangeStatistics:
    return ChangeStatistics(
        mean=indicators.mean(changes),
        median=indicators.median(changes),
        std_dev=indicators.std_dev(changes),
        sample_count=len(changes),
    )


def classify_trend(macd: float, rsi: float) -> TrendDirection:
    if macd > 0 and rsi > 50:
        return TrendDirection.UPWARD
    if macd < 0 and rsi < 50:
        return TrendDirection.DOWNWARD
    return TrendDirection.NEUTRAL


def trend_strength(macd: float, rsi: float) -> float:
    return min(100.0, abs(macd) * 10 + abs(rsi - 50))


def consistency_score(changes: Sequence[float]) -> float:
    """Percent of changes moving in the same direction as the latest one."""
    if len(changes) < 2:
        return 50.0
    direction = 1 if changes[-1] > 0 else -1
    consistent = sum(
        1 for c in changes[:-1]
        if (c > 0 and direction > 0) or (c < 0 and direction < 0)
    )
    return consistent / len(changes) * 100


def trend_reliability(changes: Sequence[float], stats: ChangeStatistics) -> float:
    volatility_impact = max(0.0, 100 - stats.std_dev * 10)
    return round((consistency_score(changes) + volatility_impact) / 2, 2)


def compute_indicators(prices: Sequence[float], changes: Sequence[float]) -> TrendIndicators:
    """EMA spread and RSI over the most recent window."""
    recent_prices = list(prices[-RECENT_WINDOW:])
    recent_changes = list(changes[-RECENT_WINDOW:])

    ema_short = indicators.ema(recent_prices, SHORT_EMA_PERIOD)
    ema_long = indicators.ema(recent_prices, LONG_EMA_PERIOD)
    macd = ema_short[-1] - ema_long[-1] if ema_short else 0.0

    return TrendIndicators(
        macd=macd,
        rsi=indicators.rsi(recent_changes, RSI_PERIOD),
        ema_short=ema_short[-1] if ema_short else None,
        ema_long=ema_long[-1] if ema_long else None,
    )


def find_peaks_and_troughs(prices: Sequence[float]):
    peaks: List[float] = []
    troughs: List[float] = []
    for prev, curr, nxt in zip(prices, prices[1:], prices[2:]):
        if curr > prev and curr > nxt:
            peaks.append(curr)
        elif curr < prev and curr < nxt:
            troughs.append(curr)
    return peaks, troughs


def analyze_volatility(prices: Sequence[float], changes: Sequence[float],
                       stats: ChangeStatistics) -> VolatilityAnalysis:
    """
    Compare recent volatility against the preceding window.

    Volatility is the RMS of absolute percent changes. With no historical
    window (or a flat one) the change is undefined and any current movement
    counts as INCREASING.
    """
    if not changes:
        return VolatilityAnalysis()

    recent = changes[-RECENT_WINDOW:]
    historical = changes[:-RECENT_WINDOW]
    current_vol = indicators.rms(recent)
    historical_vol = indicators.rms(historical)

    change_pct: Optional[float] = None
    if historical_vol > 0:
        change_pct = (current_vol - historical_vol) / historical_vol * 100
        if change_pct > VOLATILITY_TREND_THRESHOLD:
            trend = VolatilityTrend.INCREASING
        elif change_pct < -VOLATILITY_TREND_THRESHOLD:
            trend = VolatilityTrend.DECREASING
        else:
            trend = VolatilityTrend.STABLE
    else:
        trend = VolatilityTrend.INCREASING if current_vol > 0 else VolatilityTrend.STABLE

    if current_vol > stats.std_dev * 2:
        risk = Severity.HIGH
    elif current_vol > stats.std_dev * 1.5:
        risk = Severity.MEDIUM
    else:
        risk = Severity.LOW

    low, high = min(prices), max(prices)
    peaks, troughs = find_peaks_and_troughs(prices)

    return VolatilityAnalysis(
        current=current_vol,
        historical=historical_vol,
        change_pct=change_pct,
        trend=trend,
        risk=risk,
        price_range=PriceRange(min=low, max=high, range=high - low),
        peaks=peaks,
        troughs=troughs,
    )


def analyze_price_trend(pool_address: str, series: Sequence[SeriesPoint],
                        timestamp: Optional[datetime] = None) -> PriceTrendAnalysis:
    """
    Analyze trend direction, strength and volatility of a price series.

    Args:
        pool_address: Pool the series belongs to
        series: Price points ordered by time
        timestamp: Analysis time (defaults to now, UTC)

    Returns:
        PriceTrendAnalysis; a neutral result when fewer than 2 points exist
    """
    timestamp = timestamp or datetime.now(timezone.utc)
    prices = [p.value for p in series if math.isfinite(p.value)]

    if len(prices) < 2:
        logger.debug(f"Not enough price history for {pool_address} ({len(prices)} points)")
        return PriceTrendAnalysis(pool_address=pool_address, timestamp=timestamp)

    changes = indicators.percent_changes(prices)
    stats = change_statistics(changes)
    ind = compute_indicators(prices, changes)

    return PriceTrendAnalysis(
        pool_address=pool_address,
        timestamp=timestamp,
        trend=classify_trend(ind.macd, ind.rsi),
        strength=trend_strength(ind.macd, ind.rsi),
        reliability=trend_reliability(changes, stats),
        indicators=ind,
        statistics=stats,
        volatility=analyze_volatility(prices, changes, stats),
    )
