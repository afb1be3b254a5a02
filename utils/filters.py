"""
Filtering utilities for whale and market analysis alerts.
Determines whether engine events should trigger notifications.
"""
import logging
from typing import Iterable, Optional

from core.analysis_models import MarketAnalysisEvent, Severity
from core.models import RiskLevel, WhaleActivityEvent

logger = logging.getLogger(__name__)


def parse_risk_level(value: Optional[str], default: RiskLevel = RiskLevel.MEDIUM) -> RiskLevel:
    """Parse 'low' / 'medium' / 'high' (any case); unknown values fall back to the default."""
    if not value:
        return default
    try:
        return RiskLevel(value.strip().lower())
    except ValueError:
        logger.warning(f"Unknown risk level {value!r}, using {default.value}")
        return default


def should_notify_whale(event: WhaleActivityEvent, min_risk: RiskLevel = RiskLevel.MEDIUM,
                        pools: Optional[Iterable[str]] = None) -> bool:
    """
    Check if a whale event should trigger a notification.

    Args:
        event: The whale activity event
        min_risk: Lowest risk level that is delivered
        pools: Optional allow-list of pool addresses

    Returns:
        True if notification should be sent, False otherwise
    """
    if pools is not None:
        allowed = set(pools)
        if allowed and event.pool_address not in allowed:
            return False

    return event.risk_level.rank >= min_risk.rank


def should_notify_analysis(event: MarketAnalysisEvent) -> bool:
    """
    Market analyses are only pushed when they contain something actionable:
    a high-risk gap profile, a high volatility or volume-anomaly risk, or an
    arbitrage candidate.
    """
    if event.price_trend and event.price_trend.volatility.risk == Severity.HIGH:
        return True
    if event.distribution and event.distribution.gaps.risk_level == Severity.HIGH:
        return True
    if event.volume and event.volume.anomalies.risk_level == Severity.HIGH:
        return True
    if event.correlation and event.correlation.arbitrage_candidates:
        return True
    return False


def format_address(address: str, length: int = 6) -> str:
    """
    Format blockchain address for display (AbCd12...xYz789).

    Args:
        address: Full blockchain address
        length: Number of characters to show on each side

    Returns:
        Formatted address string
    """
    if not address or len(address) <= length * 2:
        return address

    return f"{address[:length]}...{address[-length:]}"


def parse_pool_addresses(text: str) -> list[str]:
    """
    Parse pool addresses from a comma or newline separated string.
    Duplicates are dropped, order is kept.
    """
    addresses = []
    for line in (text or "").replace(',', '\n').split('\n'):
        addr = line.strip()
        if addr and addr not in addresses:
            addresses.append(addr)

    return addresses
