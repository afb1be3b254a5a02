"""
Whale activity detection.

Diffs consecutive pool snapshots, ranks bin-level liquidity moves, scores the
result into a risk tier and escalates large changes into WhaleActivityEvent
records. Everything in this module is synchronous and side-effect free.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from config import EngineConfig
from core.models import (
    Bin, BinChange, ChangeRecord, ChangeType, DetectionMethod,
    PoolSnapshot, RiskLevel, WhaleActivityEvent
)

logger = logging.getLogger(__name__)

CONCENTRATION_TOP_BINS = 10


def calculate_concentration(snapshot: PoolSnapshot) -> float:
    """
    Fraction of a pool's liquidity held by its 10 most liquid bins.

    Returns 0 when total liquidity is 0. The result is clamped to [0, 1]
    because external totals may not match the bin sum.
    """
    total = snapshot.total_liquidity
    if total <= 0:
        return 0.0

    ranked = sorted((b.total_liquidity for b in snapshot.bins), reverse=True)
    top = sum(ranked[:CONCENTRATION_TOP_BINS], Decimal(0))
    return min(1.0, max(0.0, float(top / total)))


def _relative_to(amount: Decimal, base: Decimal) -> Optional[float]:
    if base == 0:
        return None
    return float(amount / base)


def _bin_change(bin_: Bin, amount: Decimal, change_type: ChangeType,
                old_total: Decimal, bin_step: Optional[int]) -> BinChange:
    return BinChange(
        bin_id=bin_.bin_id,
        price_point=bin_.price,
        price_range=bin_.price_range(bin_step),
        amount=amount,
        percent=_relative_to(amount, old_total),
        type=change_type,
    )


def rank_bin_changes(old: PoolSnapshot, new: PoolSnapshot, top_n: int = 3) -> List[BinChange]:
    """
    Rank bin-level liquidity changes between two snapshots.

    Bins are matched by bin_id. A bin only in `new` is a full add, a bin only
    in `old` a full remove. Changes are ordered by amount, largest first; ties
    keep iteration order (new bins in snapshot order, then removed bins).

    Args:
        old: Previous snapshot
        new: Current snapshot
        top_n: Number of changes to keep

    Returns:
        Up to `top_n` BinChange records
    """
    old_total = old.total_liquidity
    old_bins: Dict[str, Bin] = {b.bin_id: b for b in old.bins}
    new_ids = set()
    changes: List[BinChange] = []

    for new_bin in new.bins:
        new_ids.add(new_bin.bin_id)
        old_bin = old_bins.get(new_bin.bin_id)
        if old_bin is None:
            amount = new_bin.total_liquidity
            change_type = ChangeType.ADD
        else:
            delta = new_bin.total_liquidity - old_bin.total_liquidity
            amount = abs(delta)
            change_type = ChangeType.ADD if delta > 0 else ChangeType.REMOVE
        if amount > 0:
            changes.append(_bin_change(new_bin, amount, change_type, old_total, new.bin_step))

    for old_bin in old.bins:
        if old_bin.bin_id in new_ids:
            continue
        amount = old_bin.total_liquidity
        if amount > 0:
            changes.append(_bin_change(old_bin, amount, ChangeType.REMOVE, old_total, old.bin_step))

    # sorted() is stable, so equal amounts keep their iteration order
    changes = sorted(changes, key=lambda c: c.amount, reverse=True)
    return changes[:top_n]


def detect_changes(old: PoolSnapshot, new: PoolSnapshot, top_n: int = 3) -> ChangeRecord:
    """
    Diff two snapshots of the same pool.

    change_percent is |new_total - old_total| / old_total. When the old total
    is 0 the record carries change_percent=None (an undefined change) instead
    of inf or nan.
    """
    old_total = old.total_liquidity
    new_total = new.total_liquidity
    change_amount = abs(new_total - old_total)

    return ChangeRecord(
        total_before=old_total,
        total_after=new_total,
        change_amount=change_amount,
        change_percent=_relative_to(change_amount, old_total),
        top_changes=rank_bin_changes(old, new, top_n),
    )


def assess_risk_level(change_percent: Optional[float], top_changes: Sequence[BinChange],
                      config: Optional[EngineConfig] = None) -> RiskLevel:
    """
    Map a change magnitude and the largest bin move to a risk tier.

    The high tier is checked first. Undefined percents count as 0.
    """
    config = config or EngineConfig()
    total_pct = change_percent or 0.0
    top_bin_pct = 0.0
    if top_changes:
        top_bin_pct = top_changes[0].percent or 0.0

    if total_pct >= config.high_risk_total_change_pct or top_bin_pct >= config.high_risk_top_bin_pct:
        return RiskLevel.HIGH
    if total_pct >= config.medium_risk_total_change_pct or top_bin_pct >= config.medium_risk_top_bin_pct:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def is_whale_change(record: ChangeRecord, config: EngineConfig) -> bool:
    """True when a change is large enough to escalate into an event."""
    if record.is_undefined:
        return False
    return record.change_percent >= config.whale_change_threshold


def build_whale_event(old: PoolSnapshot, new: PoolSnapshot, config: EngineConfig,
                      detection_method: DetectionMethod,
                      detected_at: datetime) -> Optional[WhaleActivityEvent]:
    """
    Diff two snapshots and escalate the result if it crosses the threshold.

    Returns:
        A WhaleActivityEvent, or None when the change is below the threshold
        or undefined
    """
    record = detect_changes(old, new, config.top_bin_change_count)

    if record.is_undefined:
        logger.info(
            f"Undefined liquidity change for {new.address}: previous total was 0, "
            f"new total {new.total_liquidity}"
        )
        return None

    if not is_whale_change(record, config):
        logger.debug(f"Change for {new.address} below threshold: {record.change_percent:.4f}")
        return None

    timestamp_ms = int(detected_at.timestamp() * 1000)
    return WhaleActivityEvent(
        id=f"{new.address}_{timestamp_ms}",
        pool_address=new.address,
        pool_name=new.display_name,
        timestamp=new.captured_at,
        total_before=record.total_before,
        total_after=record.total_after,
        change_amount=record.change_amount,
        change_percent=record.change_percent,
        top_changes=record.top_changes,
        concentration_before=calculate_concentration(old),
        concentration_after=calculate_concentration(new),
        current_price=new.current_price,
        risk_level=assess_risk_level(record.change_percent, record.top_changes, config),
        detection_method=detection_method,
        detection_time=detected_at,
    )
