"""
Numeric helpers shared by the market analyzers.

All helpers accept plain sequences and return floats. Empty or degenerate
input yields 0.0 (or the documented neutral value) instead of nan/inf.
"""
from typing import List, Sequence

import numpy as np


def mean(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.mean(values))


def median(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.median(values))


def std_dev(values: Sequence[float]) -> float:
    """Population standard deviation."""
    if len(values) == 0:
        return 0.0
    return float(np.std(values))


def rms(values: Sequence[float]) -> float:
    """Root mean square of absolute values."""
    if len(values) == 0:
        return 0.0
    arr = np.abs(np.asarray(values, dtype=float))
    return float(np.sqrt(np.mean(arr * arr)))


def coefficient_of_variation(values: Sequence[float]) -> float:
    avg = mean(values)
    if avg == 0:
        return 0.0
    return std_dev(values) / abs(avg)


def linear_regression_slope(values: Sequence[float]) -> float:
    """Least-squares slope of values against their index (0 for < 2 points)."""
    if len(values) < 2:
        return 0.0
    xs = np.arange(len(values), dtype=float)
    slope, _intercept = np.polyfit(xs, np.asarray(values, dtype=float), 1)
    return float(slope)


def ema(prices: Sequence[float], period: int) -> List[float]:
    """
    Exponential moving average seeded with the first price.

    ema[i] = (price[i] - ema[i-1]) * alpha + ema[i-1], alpha = 2 / (period + 1)
    """
    if len(prices) == 0:
        return []
    alpha = 2 / (period + 1)
    result = [float(prices[0])]
    for price in prices[1:]:
        result.append((float(price) - result[-1]) * alpha + result[-1])
    return result


def rsi(changes: Sequence[float], period: int = 14) -> float:
    """
    Relative strength index using Wilder's smoothing.

    Returns 50 when there are fewer than `period` changes or no movement at
    all, and 100 when there were gains but no losses.
    """
    if len(changes) < period:
        return 50.0

    gains = 0.0
    losses = 0.0
    for change in changes[:period]:
        if change >= 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period

    for change in changes[period:]:
        gain = change if change > 0 else 0.0
        loss = -change if change < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period

    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100 - 100 / (1 + rs)


def simple_moving_average(values: Sequence[float], period: int) -> List[float]:
    """Trailing simple moving averages; empty when there are fewer than `period` values."""
    if period <= 0 or len(values) < period:
        return []
    arr = np.asarray(values, dtype=float)
    window = np.ones(period) / period
    return [float(v) for v in np.convolve(arr, window, mode="valid")]


def percent_changes(values: Sequence[float]) -> List[float]:
    """Step-wise percent changes; steps from a zero value are skipped."""
    changes = []
    for prev, curr in zip(values, values[1:]):
        if prev == 0:
            continue
        changes.append((curr - prev) / prev * 100)
    return changes
