"""
Liquidity distribution analysis for a pool's bin array.

Covers concentration (top-20% share, Gini, entropy), gaps between adjacent
bins, and stability of the pool's liquidity total over time.
"""
import logging
import math
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from core.analysis_models import (
    ConcentrationAnalysis, ConcentrationClass, Direction, GapAnalysis, Hotspot,
    LiquidityDistributionAnalysis, LiquidityGap, Severity, StabilityAnalysis, Tier
)
from core.models import Bin, PoolSnapshot, SeriesPoint
from utils import indicators

logger = logging.getLogger(__name__)

TOP_BIN_FRACTION = 0.2
HOTSPOT_SHARE_PCT = 5.0
EFFECTIVE_BIN_SHARE = 0.01
PERSISTENCE_THRESHOLD = 0.05
DROP_THRESHOLD = -0.05
STABILITY_TREND_WINDOW = 24

_SEVERITY_ORDER = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2, Severity.UNKNOWN: 3}


# ----------------------------------------------------------------------------
# Concentration
# ----------------------------------------------------------------------------

def gini_coefficient(shares: Sequence[float]) -> float:
    """Gini over bin shares: sum_ij |s_i - s_j| / (2 * n * sum(s)). 0 = equal."""
    n = len(shares)
    total = sum(shares)
    if n == 0 or total <= 0:
        return 0.0
    # sorted-rank form of the pairwise sum: sum_i (2i - n + 1) * s_i
    ordered = sorted(shares)
    pairwise = 2 * sum((2 * i - n + 1) * s for i, s in enumerate(ordered))
    return pairwise / (2 * n * total)


def entropy_index(shares: Sequence[float]) -> float:
    """Shannon entropy (natural log) of shares normalized to fractions."""
    total = sum(shares)
    if total <= 0:
        return 0.0
    entropy = 0.0
    for share in shares:
        p = share / total
        if p > 0:
            entropy -= p * math.log(p)
    return entropy


def analyze_concentration(bins: Sequence[Bin], bin_step: Optional[int] = None) -> ConcentrationAnalysis:
    liquidities = [max(0.0, float(b.total_liquidity)) for b in bins]
    total = sum(liquidities)
    if not bins or total <= 0:
        return ConcentrationAnalysis()

    shares = [liq / total * 100 for liq in liquidities]
    ranked = sorted(zip(bins, liquidities, shares), key=lambda item: item[2], reverse=True)

    top_count = math.ceil(len(ranked) * TOP_BIN_FRACTION)
    concentration = sum(share for _, _, share in ranked[:top_count])

    if concentration > 80:
        distribution = ConcentrationClass.HIGHLY_CONCENTRATED
    elif concentration > 60:
        distribution = ConcentrationClass.MODERATELY_CONCENTRATED
    elif concentration < 30:
        distribution = ConcentrationClass.DISPERSED
    else:
        distribution = ConcentrationClass.BALANCED

    hotspots = [
        Hotspot(bin_id=b.bin_id, price_range=b.price_range(bin_step), liquidity=liq, share=share)
        for b, liq, share in ranked
        if share > HOTSPOT_SHARE_PCT
    ]

    entropy = entropy_index(shares)
    n = len(shares)
    return ConcentrationAnalysis(
        concentration=concentration,
        distribution=distribution,
        hotspots=hotspots,
        gini_coefficient=gini_coefficient(shares),
        entropy_index=entropy,
        normalized_entropy=entropy / math.log(n) if n > 1 else 0.0,
        effective_bins=sum(1 for s in shares if s / 100 > EFFECTIVE_BIN_SHARE),
    )


# ----------------------------------------------------------------------------
# Gaps
# ----------------------------------------------------------------------------

def gap_severity(gap_size: float, distance: float, current_price: float):
    """Score a gap by relative size weighted by proximity to the current price."""
    if current_price <= 0:
        return 0.0, Severity.LOW
    relative_size = gap_size / current_price * 100
    proximity = max(0.0, 1 - distance / current_price)
    score = relative_size * proximity
    if score > 5:
        return score, Severity.HIGH
    if score > 2:
        return score, Severity.MEDIUM
    return score, Severity.LOW


def identify_gaps(bins: Sequence[Bin], current_price: float,
                  bin_step: Optional[int] = None) -> GapAnalysis:
    if not bins:
        return GapAnalysis()

    ranges = sorted(b.price_range(bin_step) for b in bins)
    gaps: List[LiquidityGap] = []

    for (_, cur_upper), (next_lower, _) in zip(ranges, ranges[1:]):
        size = next_lower - cur_upper
        # bounds derived from bin steps can differ from the next bin by float rounding
        if size <= abs(cur_upper) * 1e-9:
            continue
        center = (next_lower + cur_upper) / 2
        distance = abs(center - current_price)
        score, severity = gap_severity(size, distance, current_price)
        gaps.append(LiquidityGap(
            start_price=cur_upper,
            end_price=next_lower,
            size=size,
            distance_from_current=distance,
            score=score,
            severity=severity,
        ))

    total_gap = sum(g.size for g in gaps)
    full_range = max(upper for _, upper in ranges) - ranges[0][0]
    gap_ratio = total_gap / full_range if full_range > 0 else 0.0

    if gap_ratio > 0.2 or any(g.severity == Severity.HIGH for g in gaps):
        risk = Severity.HIGH
    elif gap_ratio > 0.1 or any(g.severity == Severity.MEDIUM for g in gaps):
        risk = Severity.MEDIUM
    else:
        risk = Severity.LOW

    gaps.sort(key=lambda g: (_SEVERITY_ORDER[g.severity], -g.size))
    return GapAnalysis(
        gaps=gaps,
        risk_level=risk,
        total_gap_size=total_gap,
        gap_ratio=gap_ratio,
        average_gap_size=total_gap / len(gaps) if gaps else 0.0,
    )


# ----------------------------------------------------------------------------
# Stability
# ----------------------------------------------------------------------------

def liquidity_step_changes(history: Sequence[SeriesPoint]) -> List[float]:
    """Fractional step changes of the liquidity total; steps from 0 are skipped."""
    values = [p.value for p in history]
    return [c / 100 for c in indicators.percent_changes(values)]


def persistence(changes: Sequence[float]) -> float:
    if not changes:
        return 1.0
    return sum(1 for c in changes if abs(c) < PERSISTENCE_THRESHOLD) / len(changes)


def resilience(changes: Sequence[float]) -> float:
    """Fraction of significant drops followed by a recovering step."""
    drops = 0
    recoveries = 0
    for prev, curr in zip(changes, changes[1:]):
        if prev < DROP_THRESHOLD:
            drops += 1
            if curr > 0:
                recoveries += 1
    if drops == 0:
        return 1.0
    return recoveries / drops


def assess_stability(history: Sequence[SeriesPoint]) -> StabilityAnalysis:
    changes = liquidity_step_changes(history)
    if not changes:
        return StabilityAnalysis()

    volatility = indicators.std_dev(changes)
    persist = persistence(changes)
    resil = resilience(changes)

    if volatility < 0.1 and persist > 0.8 and resil > 0.7:
        stability = Tier.HIGH
    elif volatility > 0.3 or persist < 0.4 or resil < 0.3:
        stability = Tier.LOW
    else:
        stability = Tier.MODERATE

    average_pct = indicators.mean(changes[-STABILITY_TREND_WINDOW:]) * 100
    if average_pct > 1:
        trend = Direction.INCREASING
    elif average_pct < -1:
        trend = Direction.DECREASING
    else:
        trend = Direction.NEUTRAL

    if stability == Tier.HIGH and trend != Direction.DECREASING:
        risk = Severity.LOW
    elif stability == Tier.LOW or trend == Direction.DECREASING:
        risk = Severity.HIGH
    else:
        risk = Severity.MEDIUM

    return StabilityAnalysis(
        stability=stability,
        trend=trend,
        trend_strength=min(100.0, abs(average_pct) * 10),
        risk=risk,
        volatility=volatility,
        persistence=persist,
        resilience=resil,
    )


def analyze_liquidity_distribution(snapshot: PoolSnapshot,
                                   liquidity_history: Sequence[SeriesPoint] = (),
                                   timestamp: Optional[datetime] = None) -> LiquidityDistributionAnalysis:
    """
    Analyze a pool's current bin distribution and its liquidity history.

    Args:
        snapshot: Current pool snapshot
        liquidity_history: Liquidity totals ordered by time
        timestamp: Analysis time (defaults to now, UTC)
    """
    return LiquidityDistributionAnalysis(
        pool_address=snapshot.address,
        timestamp=timestamp or datetime.now(timezone.utc),
        concentration=analyze_concentration(snapshot.bins, snapshot.bin_step),
        gaps=identify_gaps(snapshot.bins, snapshot.current_price, snapshot.bin_step),
        stability=assess_stability(liquidity_history),
    )
