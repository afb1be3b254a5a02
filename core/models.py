"""
Pydantic models for pool snapshots, liquidity changes and whale events.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class RiskLevel(str, Enum):
    """Risk tier assigned to a whale event."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class ChangeType(str, Enum):
    """Direction of a bin-level liquidity change."""
    ADD = "add"
    REMOVE = "remove"


class DetectionMethod(str, Enum):
    """What triggered the check that produced an event."""
    POLLING = "polling"
    SUBSCRIPTION = "subscription"


class Bin(BaseModel):
    """A single price bin of a pool."""
    bin_id: str
    price: float
    total_liquidity: Decimal = Decimal(0)
    price_lower: Optional[float] = None  # explicit bounds, when the source provides them
    price_upper: Optional[float] = None

    def price_range(self, bin_step: Optional[int] = None) -> Tuple[float, float]:
        """
        Price bounds of the bin.

        Explicit bounds win. Otherwise a DLMM bin spans one bin step above its
        price; with no bin step the range collapses to the bin price.
        """
        if self.price_lower is not None and self.price_upper is not None:
            return self.price_lower, self.price_upper
        if bin_step:
            return self.price, self.price * (1 + bin_step / 10_000)
        return self.price, self.price


class PoolSnapshot(BaseModel):
    """Point-in-time state of a pool."""
    address: str
    name: Optional[str] = None
    token_x: str
    token_y: str
    bin_step: Optional[int] = None  # basis points
    total_liquidity: Decimal
    current_price: float
    bins: List[Bin] = Field(default_factory=list)
    fees_24h: Optional[Decimal] = None
    volume_24h: Optional[float] = None
    captured_at: datetime

    @property
    def display_name(self) -> str:
        return self.name or f"Pool_{self.address[:8]}"

    def shares_token_with(self, other: "PoolSnapshot") -> bool:
        return bool({self.token_x, self.token_y} & {other.token_x, other.token_y})

    def same_pair_as(self, other: "PoolSnapshot") -> bool:
        return {self.token_x, self.token_y} == {other.token_x, other.token_y}


class SeriesPoint(BaseModel):
    """One point of a price, volume or liquidity series."""
    timestamp: datetime
    value: float


class BinChange(BaseModel):
    """Liquidity moved in or out of a single bin between two snapshots."""
    model_config = ConfigDict(frozen=True)

    bin_id: str
    price_point: float
    price_range: Tuple[float, float]
    amount: Decimal
    percent: Optional[float] = None  # relative to the old total, None when that total is 0
    type: ChangeType


class ChangeRecord(BaseModel):
    """Diff of two consecutive snapshots of the same pool."""
    model_config = ConfigDict(frozen=True)

    total_before: Decimal
    total_after: Decimal
    change_amount: Decimal
    change_percent: Optional[float] = None  # None marks an undefined change (old total 0)
    top_changes: List[BinChange] = Field(default_factory=list)

    @property
    def is_undefined(self) -> bool:
        return self.change_percent is None


class WhaleActivityEvent(BaseModel):
    """Escalated liquidity change. Immutable once emitted."""
    model_config = ConfigDict(frozen=True)

    id: str
    pool_address: str
    pool_name: str
    timestamp: datetime
    total_before: Decimal
    total_after: Decimal
    change_amount: Decimal
    change_percent: float
    top_changes: List[BinChange]
    concentration_before: float
    concentration_after: float
    current_price: float
    risk_level: RiskLevel
    detection_method: DetectionMethod
    detection_time: datetime

    @property
    def is_addition(self) -> bool:
        return self.total_after >= self.total_before


class PoolErrorEvent(BaseModel):
    """Asynchronous failure for one pool, delivered through the error callback."""
    model_config = ConfigDict(frozen=True)

    pool_address: str
    error_type: str
    message: str
    consecutive_failures: int = 0
    timestamp: datetime
