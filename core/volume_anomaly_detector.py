"""
Volume Pattern Analyzer

Detects unusual volume patterns in a pool's rolling volume history:
- Multi-window moving-average trends (4h, 12h, 24h baselines)
- Spikes and sustained high/low periods against the series mean
- A composite trading-activity level
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from core.analysis_models import (
    ActivityAssessment, AnomalyReport, AnomalyType, Direction, Severity, Tier,
    VolumeAnomaly, VolumePatternAnalysis, VolumeTrend, WindowTrend
)
from core.models import SeriesPoint
from utils import indicators

logger = logging.getLogger(__name__)

# (moving-average period, number of recent MA values regressed, weight)
TREND_WINDOWS = [(4, 5, 0.5), (12, 12, 0.3), (24, 24, 0.2)]
SLOPE_THRESHOLD = 0.05
OVERALL_SCORE_THRESHOLD = 0.3

SPIKE_SIGMA = 3
SUSTAINED_HIGH_SIGMA = 2
SUSTAINED_LOW_SIGMA = 2
SUSTAINED_HIGH_WINDOW = 6
SUSTAINED_LOW_WINDOW = 24
RECENT_ANOMALY_WINDOW = timedelta(hours=24)
ACTIVITY_TREND_WINDOW = 6


def _direction_score(direction: Direction) -> int:
    if direction == Direction.INCREASING:
        return 1
    if direction == Direction.DECREASING:
        return -1
    return 0


def slope_trend(values: Sequence[float], lookback: int, period: int = 0) -> WindowTrend:
    """
    Trend of the last `lookback` values by least-squares slope.

    The slope is divided by the mean of the values so the 0.05 threshold
    means "5% of the average level per step" regardless of volume scale.
    """
    current = values[-1] if values else None
    if len(values) < lookback or lookback < 2:
        return WindowTrend(period=period, current_average=current)

    recent = list(values[-lookback:])
    level = indicators.mean(recent)
    slope = indicators.linear_regression_slope(recent) / level if level > 0 else 0.0

    if slope > SLOPE_THRESHOLD:
        direction = Direction.INCREASING
    elif slope < -SLOPE_THRESHOLD:
        direction = Direction.DECREASING
    else:
        direction = Direction.NEUTRAL

    return WindowTrend(
        period=period,
        direction=direction,
        slope=slope,
        strength=min(100.0, abs(slope) * 100),
        current_average=current,
    )


def analyze_volume_trend(volumes: Sequence[float]) -> VolumeTrend:
    if not volumes:
        return VolumeTrend()

    windows: List[WindowTrend] = []
    evaluated: List[bool] = []
    for period, lookback, _weight in TREND_WINDOWS:
        averages = indicators.simple_moving_average(volumes, period)
        windows.append(slope_trend(averages, lookback, period))
        evaluated.append(len(averages) >= lookback)

    weights = [w for _, _, w in TREND_WINDOWS]
    score = sum(_direction_score(t.direction) * w for t, w in zip(windows, weights))
    if score > OVERALL_SCORE_THRESHOLD:
        overall = Direction.INCREASING
    elif score < -OVERALL_SCORE_THRESHOLD:
        overall = Direction.DECREASING
    else:
        overall = Direction.NEUTRAL

    strength = min(100.0, sum(t.strength * w for t, w in zip(windows, weights)))
    # weight of windows that had enough data and agree with the overall call
    agreement = sum(
        w for t, w, ok in zip(windows, weights, evaluated)
        if ok and t.direction == overall
    )

    return VolumeTrend(
        trend=overall,
        score=score,
        strength=strength,
        confidence=round(agreement * 100, 2),
        windows=windows,
    )


def _risk_from_anomalies(anomalies: Sequence[VolumeAnomaly], latest: datetime) -> Severity:
    if not anomalies:
        return Severity.LOW
    high_count = sum(1 for a in anomalies if a.severity == Severity.HIGH)
    recent_count = sum(1 for a in anomalies if latest - a.timestamp < RECENT_ANOMALY_WINDOW)
    if high_count >= 3 or recent_count >= 5:
        return Severity.HIGH
    if high_count >= 1 or recent_count >= 2:
        return Severity.MEDIUM
    return Severity.LOW


def detect_volume_anomalies(series: Sequence[SeriesPoint]) -> AnomalyReport:
    """
    Flag spikes and sustained deviations against the series mean.

    A flat series (zero standard deviation) has no anomalies. Recency for
    the risk tier is measured against the newest point, not wall-clock time.
    """
    if not series:
        return AnomalyReport()

    volumes = [p.value for p in series]
    avg = indicators.mean(volumes)
    sigma = indicators.std_dev(volumes)
    distribution = {Severity.HIGH.value: 0, Severity.MEDIUM.value: 0, Severity.LOW.value: 0}

    if sigma == 0:
        return AnomalyReport(risk_level=Severity.LOW, mean=avg, std_dev=sigma,
                             severity_distribution=distribution)

    anomalies: List[VolumeAnomaly] = []
    for i, point in enumerate(series):
        if point.value >= avg + SPIKE_SIGMA * sigma:
            anomalies.append(VolumeAnomaly(
                type=AnomalyType.SPIKE,
                timestamp=point.timestamp,
                volume=point.value,
                expected_volume=avg,
                deviation=(point.value - avg) / sigma,
                severity=Severity.HIGH,
            ))
        elif i >= SUSTAINED_HIGH_WINDOW - 1:
            window_avg = indicators.mean(volumes[i - SUSTAINED_HIGH_WINDOW + 1:i + 1])
            if window_avg >= avg + SUSTAINED_HIGH_SIGMA * sigma:
                anomalies.append(VolumeAnomaly(
                    type=AnomalyType.SUSTAINED_HIGH,
                    timestamp=point.timestamp,
                    volume=window_avg,
                    expected_volume=avg,
                    deviation=(window_avg - avg) / sigma,
                    severity=Severity.MEDIUM,
                ))

        if i >= SUSTAINED_LOW_WINDOW - 1:
            window_avg = indicators.mean(volumes[i - SUSTAINED_LOW_WINDOW + 1:i + 1])
            if window_avg <= avg - SUSTAINED_LOW_SIGMA * sigma:
                anomalies.append(VolumeAnomaly(
                    type=AnomalyType.SUSTAINED_LOW,
                    timestamp=point.timestamp,
                    volume=window_avg,
                    expected_volume=avg,
                    deviation=(window_avg - avg) / sigma,
                    severity=Severity.MEDIUM,
                ))

    anomalies.sort(key=lambda a: abs(a.deviation), reverse=True)
    for a in anomalies:
        distribution[a.severity.value] += 1

    return AnomalyReport(
        anomalies=anomalies,
        risk_level=_risk_from_anomalies(anomalies, series[-1].timestamp),
        mean=avg,
        std_dev=sigma,
        severity_distribution=distribution,
    )


def assess_trading_activity(series: Sequence[SeriesPoint],
                            reference_volume: float = 100_000.0) -> ActivityAssessment:
    """
    Composite activity level from four normalized metrics.

    - average volume, scaled as avg / (avg + reference_volume)
    - volume stability, 1 - coefficient of variation (floored at 0)
    - trading frequency, share of intervals with non-zero volume
    - interval regularity, 1 - coefficient of variation of the sampling gaps
    """
    if not series:
        return ActivityAssessment()

    volumes = [p.value for p in series]
    avg = indicators.mean(volumes)
    peak = max(volumes)

    if avg + reference_volume > 0:
        normalized_volume = avg / (avg + reference_volume)
    else:
        normalized_volume = 0.0
    if avg > 0:
        stability = max(0.0, 1 - min(1.0, indicators.coefficient_of_variation(volumes)))
    else:
        stability = 0.0
    frequency = sum(1 for v in volumes if v > 0) / len(volumes)

    intervals = [
        (b.timestamp - a.timestamp).total_seconds()
        for a, b in zip(series, series[1:])
    ]
    if intervals:
        regularity = max(0.0, 1 - min(1.0, indicators.coefficient_of_variation(intervals)))
    else:
        regularity = 0.0

    score = normalized_volume * 0.3 + stability * 0.2 + frequency * 0.3 + regularity * 0.2
    if score > 0.7:
        level = Tier.HIGH
    elif score > 0.3:
        level = Tier.MODERATE
    else:
        level = Tier.LOW

    if avg > 0:
        mean_abs_dev = indicators.mean([abs(v - avg) / avg for v in volumes])
        consistency = max(0.0, 100 - mean_abs_dev * 100)
    else:
        consistency = 0.0

    trend = slope_trend(volumes[-ACTIVITY_TREND_WINDOW:], ACTIVITY_TREND_WINDOW)

    return ActivityAssessment(
        level=level,
        score=score,
        trend=trend.direction,
        consistency=consistency,
        average_volume=avg,
        peak_volume=peak,
        volume_stability=stability,
        trading_frequency=frequency,
        interval_regularity=regularity,
    )


def analyze_volume_pattern(pool_address: str, series: Sequence[SeriesPoint],
                           reference_volume: float = 100_000.0,
                           timestamp: Optional[datetime] = None) -> VolumePatternAnalysis:
    """
    Analyze trend, anomalies and activity of a volume series.

    Args:
        pool_address: Pool the series belongs to
        series: Volume points ordered by time
        reference_volume: Volume level that maps to a normalized score of 0.5
        timestamp: Analysis time (defaults to now, UTC)
    """
    timestamp = timestamp or datetime.now(timezone.utc)
    if not series:
        logger.debug(f"No volume history for {pool_address}")
        return VolumePatternAnalysis(pool_address=pool_address, timestamp=timestamp)

    return VolumePatternAnalysis(
        pool_address=pool_address,
        timestamp=timestamp,
        trend=analyze_volume_trend([p.value for p in series]),
        anomalies=detect_volume_anomalies(series),
        activity=assess_trading_activity(series, reference_volume),
    )
