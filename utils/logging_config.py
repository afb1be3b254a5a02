"""
Logging configuration for the pool surveillance service.

Features:
- Separate log files for whale activity and market analysis
- Rotating file handlers (max 50MB per file, keep 5 backups)
- Automatic cleanup of old logs (keeps last 7 days)
- Console output for real-time monitoring
"""
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional


# Rotation settings
MAX_BYTES = 50 * 1024 * 1024  # 50 MB per file
BACKUP_COUNT = 5  # Keep 5 backup files (total ~250 MB per log type)

# Cleanup settings
LOG_RETENTION_DAYS = 7

WHALES_LOGGER = "whales"
ANALYSIS_LOGGER = "analysis"


def _rotating_handler(path: Path, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_level: str = "INFO", log_dir: str = "logs") -> dict:
    """
    Configure logging with rotation and cleanup.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_dir: Directory for the rotating log files

    Returns:
        dict: Dictionary of specialized loggers
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    system_handler = _rotating_handler(directory / "system.log", level, formatter)
    # Critical errors only (easier to monitor)
    errors_handler = _rotating_handler(directory / "errors.log", logging.ERROR, formatter)
    whales_handler = _rotating_handler(directory / "whales.log", logging.INFO, formatter)
    analysis_handler = _rotating_handler(directory / "analysis.log", logging.INFO, formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)
    root_logger.addHandler(system_handler)
    root_logger.addHandler(errors_handler)

    whales_logger = logging.getLogger(WHALES_LOGGER)
    whales_logger.handlers.clear()
    whales_logger.addHandler(whales_handler)
    whales_logger.propagate = True  # Also log to root (console + system)

    analysis_logger = logging.getLogger(ANALYSIS_LOGGER)
    analysis_logger.handlers.clear()
    analysis_logger.addHandler(analysis_handler)
    analysis_logger.propagate = True

    cleanup_old_logs(directory)

    root_logger.info("=" * 80)
    root_logger.info("Pool surveillance logging initialized")
    root_logger.info(f"Log directory: {directory.absolute()}")
    root_logger.info(f"Log level: {log_level}")
    root_logger.info(f"Rotation: {MAX_BYTES // (1024*1024)} MB per file, {BACKUP_COUNT} backups")
    root_logger.info(f"Retention: {LOG_RETENTION_DAYS} days")
    root_logger.info("=" * 80)

    return {
        'system': root_logger,
        'whales': whales_logger,
        'analysis': analysis_logger,
    }


def cleanup_old_logs(log_dir: Path, now: Optional[datetime] = None) -> int:
    """
    Delete log files older than LOG_RETENTION_DAYS.

    Keeps backup files (.1, .2, etc.) that are still within retention.

    Returns:
        Number of files deleted
    """
    cutoff_time = (now or datetime.now()) - timedelta(days=LOG_RETENTION_DAYS)
    deleted_count = 0
    total_size_freed = 0

    for pattern in (Path(log_dir) / "*.log", Path(log_dir) / "*.log.*"):
        for log_file in glob.glob(str(pattern)):
            log_path = Path(log_file)
            if not log_path.exists():
                continue
            try:
                stat = log_path.stat()
                if datetime.fromtimestamp(stat.st_mtime) < cutoff_time:
                    log_path.unlink()
                    deleted_count += 1
                    total_size_freed += stat.st_size
            except OSError as e:
                logging.error(f"Error cleaning up {log_path}: {e}")

    if deleted_count > 0:
        size_mb = total_size_freed / (1024 * 1024)
        logging.info(f"Cleaned up {deleted_count} old log files ({size_mb:.2f} MB freed)")
    return deleted_count


# Convenience functions for common logging patterns

def log_whale_activity(event) -> None:
    """Log a whale event to the dedicated whales log."""
    logger = logging.getLogger(WHALES_LOGGER)
    direction = "added" if event.is_addition else "removed"
    logger.info(
        f"{event.pool_name} ({event.pool_address[:8]}...) {direction} "
        f"{event.change_amount:,.2f} ({event.change_percent:.2%}) "
        f"risk={event.risk_level.value} via {event.detection_method.value}"
    )


def log_market_analysis(event) -> None:
    """Log a one-line market analysis summary to the analysis log."""
    logger = logging.getLogger(ANALYSIS_LOGGER)
    parts = [f"{event.pool_name} ({event.pool_address[:8]}...)"]
    if event.price_trend:
        parts.append(f"trend={event.price_trend.trend.value}/{event.price_trend.strength:.0f}")
    if event.distribution:
        parts.append(f"distribution={event.distribution.concentration.distribution.value}")
        parts.append(f"gaps={event.distribution.gaps.risk_level.value}")
    if event.volume:
        parts.append(f"volume={event.volume.trend.trend.value}")
        parts.append(f"anomalies={len(event.volume.anomalies.anomalies)}")
    if event.correlation:
        parts.append(f"peers={len(event.correlation.correlations)}")
        parts.append(f"arb={len(event.correlation.arbitrage_candidates)}")
    if event.errors:
        parts.append(f"errors={len(event.errors)}")
    logger.info(" ".join(parts))
