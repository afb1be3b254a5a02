"""
Pydantic models for market-structure analysis results.

Every result is a pure function output keyed by pool address and timestamp.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class TrendDirection(str, Enum):
    UPWARD = "UPWARD"
    DOWNWARD = "DOWNWARD"
    NEUTRAL = "NEUTRAL"


class Direction(str, Enum):
    """Direction of a volume or liquidity trend."""
    INCREASING = "INCREASING"
    DECREASING = "DECREASING"
    NEUTRAL = "NEUTRAL"


class VolatilityTrend(str, Enum):
    INCREASING = "INCREASING"
    DECREASING = "DECREASING"
    STABLE = "STABLE"


class Severity(str, Enum):
    """Risk or severity tier used across the market analyses."""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"


class Tier(str, Enum):
    """Stability and activity levels."""
    HIGH = "HIGH"
    MODERATE = "MODERATE"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"


class ConcentrationClass(str, Enum):
    HIGHLY_CONCENTRATED = "HIGHLY_CONCENTRATED"
    MODERATELY_CONCENTRATED = "MODERATELY_CONCENTRATED"
    BALANCED = "BALANCED"
    DISPERSED = "DISPERSED"
    UNKNOWN = "UNKNOWN"


class AnomalyType(str, Enum):
    SPIKE = "SPIKE"
    SUSTAINED_HIGH = "SUSTAINED_HIGH"
    SUSTAINED_LOW = "SUSTAINED_LOW"


class CorrelationTrend(str, Enum):
    STRONG_POSITIVE = "STRONG_POSITIVE"
    WEAK_POSITIVE = "WEAK_POSITIVE"
    NEUTRAL = "NEUTRAL"
    WEAK_NEGATIVE = "WEAK_NEGATIVE"
    STRONG_NEGATIVE = "STRONG_NEGATIVE"


class DeviationTrend(str, Enum):
    CONVERGING = "CONVERGING"
    DIVERGING = "DIVERGING"
    STABLE = "STABLE"
    NEUTRAL = "NEUTRAL"


# ----------------------------------------------------------------------------
# Price trend / volatility
# ----------------------------------------------------------------------------

class ChangeStatistics(BaseModel):
    mean: float = 0.0
    median: float = 0.0
    std_dev: float = 0.0
    sample_count: int = 0


class TrendIndicators(BaseModel):
    macd: float = 0.0
    rsi: float = 50.0
    ema_short: Optional[float] = None
    ema_long: Optional[float] = None


class PriceRange(BaseModel):
    min: float = 0.0
    max: float = 0.0
    range: float = 0.0


class VolatilityAnalysis(BaseModel):
    current: float = 0.0
    historical: float = 0.0
    change_pct: Optional[float] = None  # None when there is no historical window to compare
    trend: VolatilityTrend = VolatilityTrend.STABLE
    risk: Severity = Severity.LOW
    price_range: PriceRange = Field(default_factory=PriceRange)
    peaks: List[float] = Field(default_factory=list)
    troughs: List[float] = Field(default_factory=list)


class PriceTrendAnalysis(BaseModel):
    pool_address: str
    timestamp: datetime
    trend: TrendDirection = TrendDirection.NEUTRAL
    strength: float = 0.0
    reliability: float = 0.0
    indicators: TrendIndicators = Field(default_factory=TrendIndicators)
    statistics: ChangeStatistics = Field(default_factory=ChangeStatistics)
    volatility: VolatilityAnalysis = Field(default_factory=VolatilityAnalysis)


# ----------------------------------------------------------------------------
# Liquidity distribution
# ----------------------------------------------------------------------------

class Hotspot(BaseModel):
    bin_id: str
    price_range: Tuple[float, float]
    liquidity: float
    share: float  # percent


class ConcentrationAnalysis(BaseModel):
    concentration: float = 0.0  # percent held by the top 20% of bins
    distribution: ConcentrationClass = ConcentrationClass.UNKNOWN
    hotspots: List[Hotspot] = Field(default_factory=list)
    gini_coefficient: float = 0.0
    entropy_index: float = 0.0
    normalized_entropy: float = 0.0
    effective_bins: int = 0


class LiquidityGap(BaseModel):
    start_price: float
    end_price: float
    size: float
    distance_from_current: float
    score: float
    severity: Severity


class GapAnalysis(BaseModel):
    gaps: List[LiquidityGap] = Field(default_factory=list)
    risk_level: Severity = Severity.UNKNOWN
    total_gap_size: float = 0.0
    gap_ratio: float = 0.0
    average_gap_size: float = 0.0


class StabilityAnalysis(BaseModel):
    stability: Tier = Tier.UNKNOWN
    trend: Direction = Direction.NEUTRAL
    trend_strength: float = 0.0
    risk: Severity = Severity.UNKNOWN
    volatility: float = 0.0
    persistence: float = 0.0
    resilience: float = 0.0


class LiquidityDistributionAnalysis(BaseModel):
    pool_address: str
    timestamp: datetime
    concentration: ConcentrationAnalysis = Field(default_factory=ConcentrationAnalysis)
    gaps: GapAnalysis = Field(default_factory=GapAnalysis)
    stability: StabilityAnalysis = Field(default_factory=StabilityAnalysis)


# ----------------------------------------------------------------------------
# Volume patterns
# ----------------------------------------------------------------------------

class WindowTrend(BaseModel):
    period: int
    direction: Direction = Direction.NEUTRAL
    slope: float = 0.0
    strength: float = 0.0
    current_average: Optional[float] = None


class VolumeTrend(BaseModel):
    trend: Direction = Direction.NEUTRAL
    score: float = 0.0
    strength: float = 0.0
    confidence: float = 0.0
    windows: List[WindowTrend] = Field(default_factory=list)


class VolumeAnomaly(BaseModel):
    type: AnomalyType
    timestamp: datetime
    volume: float
    expected_volume: float
    deviation: float  # in standard deviations, signed
    severity: Severity


class AnomalyReport(BaseModel):
    anomalies: List[VolumeAnomaly] = Field(default_factory=list)
    risk_level: Severity = Severity.UNKNOWN
    mean: float = 0.0
    std_dev: float = 0.0
    severity_distribution: Dict[str, int] = Field(default_factory=dict)


class ActivityAssessment(BaseModel):
    level: Tier = Tier.UNKNOWN
    score: float = 0.0
    trend: Direction = Direction.NEUTRAL
    consistency: float = 0.0
    average_volume: float = 0.0
    peak_volume: float = 0.0
    volume_stability: float = 0.0
    trading_frequency: float = 0.0
    interval_regularity: float = 0.0


class VolumePatternAnalysis(BaseModel):
    pool_address: str
    timestamp: datetime
    trend: VolumeTrend = Field(default_factory=VolumeTrend)
    anomalies: AnomalyReport = Field(default_factory=AnomalyReport)
    activity: ActivityAssessment = Field(default_factory=ActivityAssessment)


# ----------------------------------------------------------------------------
# Correlation / arbitrage
# ----------------------------------------------------------------------------

class PriceCorrelation(BaseModel):
    coefficient: float = 0.0
    significance: float = 0.0
    trend: CorrelationTrend = CorrelationTrend.NEUTRAL
    sample_size: int = 0


class PriceDeviation(BaseModel):
    current: float = 0.0  # percent
    average: float = 0.0
    volatility: float = 0.0
    max: float = 0.0
    min: float = 0.0
    trend: DeviationTrend = DeviationTrend.NEUTRAL


class PeerCorrelation(BaseModel):
    pool_address: str
    token_pair: str
    correlation: PriceCorrelation = Field(default_factory=PriceCorrelation)
    deviation: PriceDeviation = Field(default_factory=PriceDeviation)


class ArbitrageRisk(BaseModel):
    slippage: float
    timing: float
    overall: float


class ArbitrageCandidate(BaseModel):
    """Advisory only: derived from simplified return and risk estimates."""
    source_pool: str
    target_pool: str
    buy_pool: str
    sell_pool: str
    deviation_pct: float
    gross_return_pct: float
    estimated_costs_pct: float
    net_return_pct: float
    risk: ArbitrageRisk
    confidence: float
    advisory: bool = True


class CorrelationAnalysis(BaseModel):
    pool_address: str
    timestamp: datetime
    correlations: List[PeerCorrelation] = Field(default_factory=list)
    arbitrage_candidates: List[ArbitrageCandidate] = Field(default_factory=list)
    failed_peers: List[str] = Field(default_factory=list)


class MarketAnalysisEvent(BaseModel):
    """Market-structure findings for one pool, delivered via on_market_analysis."""
    pool_address: str
    pool_name: str
    timestamp: datetime
    price_trend: Optional[PriceTrendAnalysis] = None
    distribution: Optional[LiquidityDistributionAnalysis] = None
    volume: Optional[VolumePatternAnalysis] = None
    correlation: Optional[CorrelationAnalysis] = None
    errors: List[str] = Field(default_factory=list)
