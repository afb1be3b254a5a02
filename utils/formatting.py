"""
Message formatting utilities for Telegram alert notifications.
"""
from decimal import Decimal
from typing import Union

from core.analysis_models import MarketAnalysisEvent
from core.models import ChangeType, RiskLevel, WhaleActivityEvent
from utils.filters import format_address

RISK_EMOJI = {
    RiskLevel.LOW: "🟢",
    RiskLevel.MEDIUM: "🟠",
    RiskLevel.HIGH: "🔴",
}


def format_amount(amount: Union[float, Decimal]) -> str:
    """Format a token amount with a K / M / B suffix."""
    value = float(amount)
    sign = "-" if value < 0 else ""
    value = abs(value)
    if value >= 1_000_000_000:
        return f"{sign}{value / 1_000_000_000:.2f}B"
    elif value >= 1_000_000:
        return f"{sign}{value / 1_000_000:.2f}M"
    elif value >= 1_000:
        return f"{sign}{value / 1_000:.2f}K"
    else:
        return f"{sign}{value:.2f}"


def format_price(price: float) -> str:
    """Show small prices with enough significant digits."""
    if price == 0:
        return "0"
    if abs(price) < 0.01:
        return f"{price:.8g}"
    return f"{price:,.4f}"


def format_whale_notification(event: WhaleActivityEvent) -> str:
    """
    Format a whale activity event into a Telegram message.

    Args:
        event: The whale activity event

    Returns:
        Formatted message string with emojis
    """
    action = "LIQUIDITY ADDED" if event.is_addition else "LIQUIDITY REMOVED"
    header = f"🐋 WHALE {action}"

    lines = [
        header,
        "",
        f"Pool: {event.pool_name} (`{format_address(event.pool_address)}`)",
        f"Change: {format_amount(event.change_amount)} ({event.change_percent:.2%})",
        f"Liquidity: {format_amount(event.total_before)} → {format_amount(event.total_after)}",
        f"Concentration (top 10 bins): {event.concentration_before:.1%} → {event.concentration_after:.1%}",
        f"Price: {format_price(event.current_price)}",
        f"Risk: {RISK_EMOJI[event.risk_level]} {event.risk_level.value.upper()}",
    ]

    if event.top_changes:
        lines.append("")
        lines.append("Top bin changes:")
        for change in event.top_changes:
            sign = "+" if change.type == ChangeType.ADD else "-"
            low, high = change.price_range
            percent = f" ({change.percent:.2%})" if change.percent is not None else ""
            lines.append(
                f"  {sign}{format_amount(change.amount)}{percent} "
                f"bin {change.bin_id} [{format_price(low)} - {format_price(high)}]"
            )

    lines.extend([
        "",
        f"Detected via {event.detection_method.value}",
        f"Time: {event.detection_time.strftime('%d/%m/%Y %I:%M:%S %p')} UTC",
    ])

    return "\n".join(lines)


def format_analysis_notification(event: MarketAnalysisEvent) -> str:
    """Format a market analysis bundle into a compact Telegram message."""
    lines = [
        "📊 MARKET ANALYSIS",
        "",
        f"Pool: {event.pool_name} (`{format_address(event.pool_address)}`)",
    ]

    if event.price_trend:
        trend = event.price_trend
        lines.append(
            f"Trend: {trend.trend.value} (strength {trend.strength:.0f}, "
            f"RSI {trend.indicators.rsi:.1f})"
        )
        lines.append(f"Volatility: {trend.volatility.trend.value}, risk {trend.volatility.risk.value}")

    if event.distribution:
        dist = event.distribution
        lines.append(
            f"Distribution: {dist.concentration.distribution.value} "
            f"({dist.concentration.concentration:.1f}% in top bins, Gini {dist.concentration.gini_coefficient:.2f})"
        )
        lines.append(f"Gaps: {len(dist.gaps.gaps)}, risk {dist.gaps.risk_level.value}")

    if event.volume:
        volume = event.volume
        lines.append(
            f"Volume: {volume.trend.trend.value}, activity {volume.activity.level.value}, "
            f"{len(volume.anomalies.anomalies)} anomalies"
        )

    if event.correlation and event.correlation.arbitrage_candidates:
        lines.append("")
        lines.append("Arbitrage (advisory):")
        for candidate in event.correlation.arbitrage_candidates[:3]:
            lines.append(
                f"  buy {format_address(candidate.buy_pool)} → sell {format_address(candidate.sell_pool)}: "
                f"net {candidate.net_return_pct:.2f}% (confidence {candidate.confidence:.0f})"
            )

    if event.errors:
        lines.append("")
        lines.append(f"⚠️ {len(event.errors)} partial failures")

    lines.extend([
        "",
        f"Time: {event.timestamp.strftime('%d/%m/%Y %I:%M:%S %p')} UTC",
    ])

    return "\n".join(lines)
