# tests/unit/test_volume_patterns.py
"""
Unit tests for the volume pattern analyzer
"""
from datetime import timedelta

import pytest

from core.analysis_models import AnomalyType, Direction, Severity, Tier
from core.models import SeriesPoint
from core.volume_anomaly_detector import (
    analyze_volume_pattern, analyze_volume_trend, assess_trading_activity,
    detect_volume_anomalies
)

from conftest import BASE_TIME, make_series


@pytest.mark.unit
class TestVolumeTrend:
    """Multi-window moving-average trend"""

    def test_growing_volume_is_increasing(self):
        result = analyze_volume_trend([1000 * 1.1 ** i for i in range(60)])
        assert result.trend == Direction.INCREASING
        assert all(w.direction == Direction.INCREASING for w in result.windows)
        assert result.score == pytest.approx(1.0)
        assert result.confidence == 100.0

    def test_shrinking_volume_is_decreasing(self):
        result = analyze_volume_trend([1000 * 0.9 ** i for i in range(60)])
        assert result.trend == Direction.DECREASING

    def test_short_history_uses_available_windows(self):
        result = analyze_volume_trend([1000 * 1.1 ** i for i in range(10)])
        assert result.trend == Direction.INCREASING
        assert result.windows[1].direction == Direction.NEUTRAL
        assert result.windows[2].direction == Direction.NEUTRAL
        assert result.confidence == 50.0

    def test_flat_volume_is_neutral(self):
        result = analyze_volume_trend([500.0] * 60)
        assert result.trend == Direction.NEUTRAL
        assert result.strength == pytest.approx(0.0, abs=1e-9)

    def test_empty(self):
        result = analyze_volume_trend([])
        assert result.trend == Direction.NEUTRAL
        assert result.confidence == 0.0


@pytest.mark.unit
class TestVolumeAnomalies:
    """Spikes and sustained deviations"""

    def test_single_spike(self):
        values = [100.0] * 30
        values[20] = 10_000.0
        result = detect_volume_anomalies(make_series(values))
        assert len(result.anomalies) == 1
        anomaly = result.anomalies[0]
        assert anomaly.type == AnomalyType.SPIKE
        assert anomaly.severity == Severity.HIGH
        assert anomaly.timestamp == BASE_TIME + timedelta(hours=20)
        assert result.risk_level == Severity.MEDIUM
        assert result.severity_distribution["HIGH"] == 1

    def test_three_spikes_are_high_risk(self):
        values = [100.0] * 60
        for i in (10, 30, 50):
            values[i] = 10_000.0
        result = detect_volume_anomalies(make_series(values))
        assert [a.type for a in result.anomalies] == [AnomalyType.SPIKE] * 3
        assert result.risk_level == Severity.HIGH

    def test_sustained_high(self):
        result = detect_volume_anomalies(make_series([100.0] * 40 + [400.0] * 8))
        types = {a.type for a in result.anomalies}
        assert types == {AnomalyType.SUSTAINED_HIGH}
        assert all(a.severity == Severity.MEDIUM for a in result.anomalies)

    def test_sustained_low(self):
        result = detect_volume_anomalies(make_series([1000.0] * 144 + [0.0] * 24))
        lows = [a for a in result.anomalies if a.type == AnomalyType.SUSTAINED_LOW]
        assert lows
        assert all(a.deviation < 0 for a in lows)
        assert lows[0].timestamp == BASE_TIME + timedelta(hours=167)

    def test_ranked_by_absolute_deviation(self):
        values = [100.0] * 60
        values[10] = 8_000.0
        values[40] = 12_000.0
        result = detect_volume_anomalies(make_series(values))
        deviations = [abs(a.deviation) for a in result.anomalies]
        assert deviations == sorted(deviations, reverse=True)
        assert result.anomalies[0].volume == 12_000.0

    def test_flat_series_has_no_anomalies(self):
        result = detect_volume_anomalies(make_series([250.0] * 30))
        assert result.anomalies == []
        assert result.risk_level == Severity.LOW

    def test_empty_series(self):
        assert detect_volume_anomalies([]).risk_level == Severity.UNKNOWN


@pytest.mark.unit
class TestTradingActivity:
    """Composite activity level"""

    def test_steady_heavy_trading_is_high(self):
        result = assess_trading_activity(make_series([100_000.0] * 24), reference_volume=100_000)
        assert result.score == pytest.approx(0.85)
        assert result.level == Tier.HIGH
        assert result.consistency == pytest.approx(100.0)

    def test_no_trading_is_low(self):
        result = assess_trading_activity(make_series([0.0] * 24))
        assert result.level == Tier.LOW
        assert result.trading_frequency == 0.0

    def test_irregular_sampling_lowers_regularity(self):
        offsets = [0, 1, 2, 10, 11, 30]
        series = [SeriesPoint(timestamp=BASE_TIME + timedelta(hours=h), value=100.0) for h in offsets]
        result = assess_trading_activity(series)
        assert result.interval_regularity < 1.0

    def test_empty(self):
        assert assess_trading_activity([]).level == Tier.UNKNOWN


@pytest.mark.unit
def test_volume_pattern_bundle():
    result = analyze_volume_pattern("pool", make_series([100.0] * 30), timestamp=BASE_TIME)
    assert result.pool_address == "pool"
    assert result.anomalies.anomalies == []
    assert result.activity.level in (Tier.LOW, Tier.MODERATE, Tier.HIGH)
