"""
Pool market surveillance engine.

Owns the watch-list, the snapshot store, the scheduler and the alert
registry. Whale path: fetch -> timestamp-guarded replace -> diff -> risk ->
dispatch. Market path: history fetch -> trend / distribution / volume /
correlation analyzers -> dispatch.
"""
import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Callable, Deque, Dict, List, Optional

from config import EngineConfig
from core.analysis_models import MarketAnalysisEvent
from core.correlation_analyzer import analyze_correlations
from core.errors import ProviderError, StaleSnapshotError
from core.events import MARKET_ANALYSIS, POOL_ERROR, WHALE_ACTIVITY, EventRegistry
from core.liquidity_distribution import analyze_liquidity_distribution
from core.models import DetectionMethod, PoolErrorEvent, PoolSnapshot, SeriesPoint, WhaleActivityEvent
from core.pool_provider import PoolStateProvider
from core.price_trend_analyzer import analyze_price_trend
from core.scheduler import ScheduleEntry, SurveillanceScheduler
from core.snapshot_store import SnapshotStore
from core.volume_anomaly_detector import analyze_volume_pattern
from core.whale_monitor import build_whale_event
from utils.logging_config import log_market_analysis, log_whale_activity

logger = logging.getLogger(__name__)

MAX_ACTIVITY_HISTORY = 1000


class SurveillanceEngine:
    """Watches pools and emits whale activity and market analysis events."""

    def __init__(
        self,
        provider: PoolStateProvider,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.time,
        store: Optional[SnapshotStore] = None,
        registry: Optional[EventRegistry] = None,
        max_activity_history: int = MAX_ACTIVITY_HISTORY,
        autostart: bool = True
    ):
        """Initialize the engine. Call open() before adding pools."""
        self.provider = provider
        self.config = config or EngineConfig()
        self.clock = clock
        self.store = store or SnapshotStore(self.config.series_window)
        self.events = registry or EventRegistry()
        self.scheduler = SurveillanceScheduler(
            self.config,
            check=self._check_pool,
            analyze=self.run_market_analysis,
            on_failure=self._on_check_failure,
            clock=clock,
        )
        self._activities: Deque[WhaleActivityEvent] = deque(maxlen=max_activity_history)
        self.autostart = autostart
        self._opened = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self):
        self.store.open()
        self._opened = True
        logger.info("Surveillance engine opened")

    async def close(self):
        """Stop polling, cancel subscriptions and drop all pool state."""
        await self.scheduler.shutdown()
        await self.events.drain()
        self.store.close()
        self._opened = False
        logger.info("Surveillance engine closed")

    async def start(self) -> List[asyncio.Task]:
        """
        Start polling from inside the event loop.

        Pools added while no loop was running are registered but idle until
        this is called: it starts the tick loop (with autostart) and the
        baseline fetch of every pool that is due.
        """
        if not self._opened:
            self.open()
        if self.autostart and self.scheduler.entries:
            self.scheduler.start()
        return self.scheduler.tick()

    async def __aenter__(self):
        self.open()
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)

    @staticmethod
    def _has_running_loop() -> bool:
        try:
            asyncio.get_running_loop()
            return True
        except RuntimeError:
            return False

    # ------------------------------------------------------------------
    # Watch-list
    # ------------------------------------------------------------------

    def add_pool(self, address: str) -> bool:
        """
        Start watching a pool. Idempotent.

        The baseline fetch starts immediately when an event loop is running,
        otherwise when start() is awaited. The first snapshot never produces
        an event.

        Returns:
            True if the pool was newly added
        """
        if not self._opened:
            self.open()
        if address in self.scheduler:
            return False

        self.store.register(address)
        entry = self.scheduler.add(address)
        try:
            entry.subscription = self.provider.subscribe_to_pool_change(address, self._on_pool_change)
        except Exception as e:
            logger.warning(f"Push subscription unavailable for {address}: {e}")

        logger.info(f"Watching pool {address} ({len(self.scheduler.entries)} pools)")
        if self._has_running_loop():
            if self.autostart:
                self.scheduler.start()
            self.scheduler.run_now(address, DetectionMethod.POLLING)
        else:
            logger.info(f"No running event loop, polling for {address} starts with start()")
        return True

    def remove_pool(self, address: str) -> bool:
        """
        Stop watching a pool. Idempotent.

        Drops its schedule entry, push subscription and stored state. A fetch
        still in flight for it is discarded when it completes.
        """
        removed = self.scheduler.remove(address)
        self.store.discard(address)
        if removed:
            self._activities = deque(
                (a for a in self._activities if a.pool_address != address),
                maxlen=self._activities.maxlen,
            )
            logger.info(f"Stopped watching pool {address}")
        if not self.scheduler.entries:
            self.scheduler.stop()
        return removed

    def watched_pools(self) -> List[str]:
        return list(self.scheduler.entries)

    def get_snapshot(self, address: str) -> Optional[PoolSnapshot]:
        return self.store.get(address)

    def active_handle_count(self) -> int:
        """Schedule entries, live push subscriptions and the tick loop."""
        count = len(self.scheduler.entries)
        for entry in self.scheduler.entries.values():
            if entry.subscription is not None and getattr(entry.subscription, "active", True):
                count += 1
        if self.scheduler.loop_running:
            count += 1
        return count

    # ------------------------------------------------------------------
    # Alert registration
    # ------------------------------------------------------------------

    def on_whale_activity(self, handler: Callable[[WhaleActivityEvent], object]):
        return self.events.subscribe(WHALE_ACTIVITY, handler)

    def on_market_analysis(self, handler: Callable[[MarketAnalysisEvent], object]):
        return self.events.subscribe(MARKET_ANALYSIS, handler)

    def on_error(self, handler: Callable[[PoolErrorEvent], object]):
        return self.events.subscribe(POOL_ERROR, handler)

    # ------------------------------------------------------------------
    # Whale path
    # ------------------------------------------------------------------

    def _on_pool_change(self, address: str):
        """Push notification from the provider."""
        if address not in self.scheduler:
            return
        self.scheduler.request_recheck(address)

    async def tick(self) -> List[asyncio.Task]:
        """Run one scheduler tick and wait for the work it started."""
        tasks = self.scheduler.tick()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return tasks

    async def check_pool(self, address: str,
                         method: DetectionMethod = DetectionMethod.POLLING) -> bool:
        """
        Run one fetch-and-diff cycle for a watched pool now.

        Returns:
            False if the pool is unknown or a check was already in flight
        """
        task = self.scheduler.run_now(address, method)
        if task is None:
            return False
        await task
        return True

    async def _check_pool(self, entry: ScheduleEntry, method: DetectionMethod):
        address = entry.address
        snapshot = await self.provider.fetch_pool_snapshot(address)

        # the pool may have been removed, or removed and re-added, meanwhile
        if not self.scheduler.is_current(entry):
            logger.debug(f"Discarding snapshot for removed pool {address}")
            return

        try:
            previous = self.store.compare_and_replace(snapshot)
        except StaleSnapshotError as e:
            logger.debug(str(e))
            return

        self.store.append_series(snapshot)

        if previous is None:
            logger.info(
                f"Baseline for {snapshot.display_name}: liquidity {snapshot.total_liquidity}, "
                f"{len(snapshot.bins)} bins"
            )
            return

        event = build_whale_event(previous, snapshot, self.config, method, self._now())
        if event is None:
            return

        self._activities.append(event)
        log_whale_activity(event)
        self.events.dispatch(WHALE_ACTIVITY, event)

    def _on_check_failure(self, address: str, error: BaseException, failures: int):
        event = PoolErrorEvent(
            pool_address=address,
            error_type=type(error).__name__,
            message=error.message if isinstance(error, ProviderError) else str(error),
            consecutive_failures=failures,
            timestamp=self._now(),
        )
        self.events.dispatch(POOL_ERROR, event)

    # ------------------------------------------------------------------
    # Market path
    # ------------------------------------------------------------------

    async def _history(self, address: str, kind: str, errors: List[str]) -> Optional[List[SeriesPoint]]:
        fetch = (self.provider.fetch_price_history if kind == "price"
                 else self.provider.fetch_volume_history)
        try:
            return await fetch(address, self.config.history_interval, self.config.history_limit)
        except ProviderError as e:
            errors.append(f"{kind} history: {e.message}")
            logger.warning(f"Could not fetch {kind} history for {address}: {e.message}")
            return None

    async def run_market_analysis(self, address: str) -> Optional[MarketAnalysisEvent]:
        """
        Run all market-structure analyses for a watched pool and dispatch the bundle.

        History that cannot be fetched falls back to the series collected from
        polling. Failing peers are skipped. Returns None when the pool has no
        baseline snapshot yet or was removed while the analysis ran.
        """
        snapshot = self.store.get(address)
        if snapshot is None:
            logger.debug(f"No snapshot for {address}, skipping market analysis")
            return None

        errors: List[str] = []
        now = self._now()
        price_history, volume_history = await asyncio.gather(
            self._history(address, "price", errors),
            self._history(address, "volume", errors),
        )
        if price_history is None:
            price_history = self.store.price_series(address)
        if volume_history is None:
            volume_history = self.store.volume_series(address)

        peers = [
            peer for peer in (self.store.get(a) for a in self.watched_pools() if a != address)
            if peer is not None and snapshot.shares_token_with(peer)
        ]
        peer_results = await asyncio.gather(
            *(self.provider.fetch_price_history(p.address, self.config.history_interval,
                                                self.config.history_limit) for p in peers),
            return_exceptions=True,
        )
        price_series: Dict[str, List[SeriesPoint]] = {address: price_history}
        failed_peers: List[str] = []
        for peer, result in zip(peers, peer_results):
            if isinstance(result, BaseException):
                logger.warning(f"Peer history failed for {peer.address}: {result}")
                failed_peers.append(peer.address)
            else:
                price_series[peer.address] = result

        if address not in self.scheduler:
            logger.debug(f"Discarding market analysis for removed pool {address}")
            return None

        event = MarketAnalysisEvent(
            pool_address=address,
            pool_name=snapshot.display_name,
            timestamp=now,
            errors=errors,
        )

        analyses = {
            "price_trend": lambda: analyze_price_trend(address, price_history, now),
            "distribution": lambda: analyze_liquidity_distribution(
                snapshot, self.store.liquidity_series(address), now),
            "volume": lambda: analyze_volume_pattern(
                address, volume_history, self.config.activity_reference_volume, now),
            "correlation": lambda: analyze_correlations(
                snapshot, peers, price_series, self.config.arbitrage_fee_pct, failed_peers, now),
        }
        for name, run in analyses.items():
            try:
                setattr(event, name, run())
            except Exception as e:
                logger.error(f"{name} analysis failed for {address}: {e}", exc_info=True)
                event.errors.append(f"{name}: {e}")

        log_market_analysis(event)
        self.events.dispatch(MARKET_ANALYSIS, event)
        return event

    # ------------------------------------------------------------------
    # Queries and configuration
    # ------------------------------------------------------------------

    def get_recent_activities(self, hours: float = 24) -> List[WhaleActivityEvent]:
        cutoff = self._now() - timedelta(hours=hours)
        return [a for a in self._activities if a.detection_time >= cutoff]

    def get_pool_activities(self, address: str, hours: float = 24) -> List[WhaleActivityEvent]:
        return [a for a in self.get_recent_activities(hours) if a.pool_address == address]

    def update_config(self, **changes) -> EngineConfig:
        """Apply validated configuration changes. Raises ConfigurationError."""
        self.config = self.config.updated(**changes)
        self.scheduler.config = self.config
        if self.store.series_window != self.config.series_window:
            self.store.resize(self.config.series_window)
        logger.info(f"Engine configuration updated: {changes}")
        return self.config

    def get_pool_status(self, address: str) -> Optional[dict]:
        entry = self.scheduler.entries.get(address)
        if entry is None:
            return None
        snapshot = self.store.get(address)
        return {
            "address": address,
            "state": entry.state.value,
            "consecutive_failures": entry.consecutive_failures,
            "in_flight": entry.in_flight,
            "coalesced": entry.coalesced,
            "next_run_at": entry.next_run_at,
            "next_analysis_at": entry.next_analysis_at,
            "last_success_at": entry.last_success_at,
            "last_error": entry.last_error,
            "subscribed": entry.subscription is not None,
            "last_snapshot_at": snapshot.captured_at if snapshot else None,
        }

    def get_all_status(self) -> Dict[str, dict]:
        return {address: self.get_pool_status(address) for address in self.watched_pools()}
