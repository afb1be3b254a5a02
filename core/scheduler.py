"""
Surveillance scheduler.

A single tick loop walks the per-pool schedule entries and starts a
fetch-and-diff check for every pool whose next_run_at has passed, plus a
market analysis for every pool whose next_analysis_at has passed. Push
notifications start an out-of-band check unless one is already in flight
for that pool, in which case they are coalesced.

Time comes from an injected clock (epoch seconds), so tests can drive
tick() directly.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from config import EngineConfig
from core.errors import ProviderError
from core.models import DetectionMethod

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
CheckFn = Callable[["ScheduleEntry", DetectionMethod], Awaitable[None]]
AnalysisFn = Callable[[str], Awaitable[object]]
FailureFn = Callable[[str, BaseException, int], None]


class EntryState(str, Enum):
    PENDING = "pending"      # no baseline snapshot yet
    ACTIVE = "active"
    BACKOFF = "backoff"      # last check failed, waiting for retry


@dataclass
class ScheduleEntry:
    """Scheduling state of one watched pool."""
    address: str
    next_run_at: float
    next_analysis_at: float
    state: EntryState = EntryState.PENDING
    consecutive_failures: int = 0
    in_flight: bool = False
    analysis_in_flight: bool = False
    coalesced: int = 0
    last_success_at: Optional[float] = None
    last_error: Optional[str] = None
    subscription: Optional[object] = None


def backoff_delay(failures: int, base: float, maximum: float) -> float:
    """Delay before retry number `failures`: min(base * 2**(failures-1), maximum)."""
    if failures <= 0:
        return 0.0
    return min(base * 2 ** (failures - 1), maximum)


class SurveillanceScheduler:
    """Per-pool schedule entries driven by one tick loop."""

    def __init__(
        self,
        config: EngineConfig,
        check: CheckFn,
        analyze: AnalysisFn,
        on_failure: Optional[FailureFn] = None,
        clock: Clock = time.time
    ):
        """Initialize the scheduler with the check and analysis callables."""
        self.config = config
        self._check = check
        self._analyze = analyze
        self._on_failure = on_failure
        self.clock = clock

        self.entries: Dict[str, ScheduleEntry] = {}
        # removed entries whose check is still running, by address
        self._retired: Dict[str, ScheduleEntry] = {}
        self._tasks: set = set()
        self._loop_task: Optional[asyncio.Task] = None
        self.running = False
        self._closing = False

    # ------------------------------------------------------------------
    # Watch-list entries
    # ------------------------------------------------------------------

    def __contains__(self, address: str) -> bool:
        return address in self.entries

    def add(self, address: str) -> ScheduleEntry:
        """Create an entry due immediately; returns the existing one if present."""
        entry = self.entries.get(address)
        if entry is not None:
            return entry
        now = self.clock()
        entry = ScheduleEntry(
            address=address,
            next_run_at=now,
            next_analysis_at=now + self.config.analysis_interval_ms / 1000,
        )
        self.entries[address] = entry
        return entry

    def remove(self, address: str) -> bool:
        """Drop the entry and cancel its push subscription."""
        entry = self.entries.pop(address, None)
        if entry is None:
            return False
        if entry.in_flight:
            self._retired[address] = entry
        if entry.subscription is not None:
            entry.subscription.cancel()
            entry.subscription = None
        return True

    def is_current(self, entry: ScheduleEntry) -> bool:
        return self.entries.get(entry.address) is entry

    def is_busy(self, entry: ScheduleEntry) -> bool:
        """A check is running for this pool, possibly one started before a re-add."""
        return entry.in_flight or entry.address in self._retired

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def run_now(self, address: str,
                method: DetectionMethod = DetectionMethod.POLLING) -> Optional[asyncio.Task]:
        """
        Start a check for a pool right away.

        Returns:
            The started task, or None if the pool is unknown or a check is
            already in flight (the request is then counted as coalesced)
        """
        entry = self.entries.get(address)
        if entry is None:
            return None
        if self.is_busy(entry):
            entry.coalesced += 1
            logger.debug(f"Coalesced {method.value} re-check for {address} ({entry.coalesced} total)")
            return None
        entry.in_flight = True
        return self._spawn(self._run_check(entry, method))

    def request_recheck(self, address: str) -> Optional[asyncio.Task]:
        """Push-notification entry point."""
        return self.run_now(address, DetectionMethod.SUBSCRIPTION)

    async def _run_check(self, entry: ScheduleEntry, method: DetectionMethod):
        try:
            await self._check(entry, method)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self.is_current(entry):
                self._record_failure(entry, e)
            else:
                logger.debug(f"Ignoring failure for removed pool {entry.address}: {e}")
        else:
            if self.is_current(entry):
                self._record_success(entry, method)
        finally:
            entry.in_flight = False
            if self._retired.get(entry.address) is entry:
                del self._retired[entry.address]
                self._resume(entry.address)

    def _resume(self, address: str):
        """Start the check a re-added pool had to wait for."""
        current = self.entries.get(address)
        if current is None or self._closing or current.next_run_at > self.clock():
            return
        self.run_now(address, DetectionMethod.POLLING)

    def _record_success(self, entry: ScheduleEntry, method: DetectionMethod):
        now = self.clock()
        recovering = entry.state == EntryState.BACKOFF
        if recovering:
            logger.info(f"Pool {entry.address} recovered after {entry.consecutive_failures} failures")
        entry.consecutive_failures = 0
        entry.last_error = None
        entry.last_success_at = now
        entry.state = EntryState.ACTIVE
        if method == DetectionMethod.POLLING or recovering:
            entry.next_run_at = now + self.config.poll_interval_ms / 1000

    def _record_failure(self, entry: ScheduleEntry, error: Exception):
        entry.consecutive_failures += 1
        entry.last_error = str(error)
        entry.state = EntryState.BACKOFF
        delay = backoff_delay(
            entry.consecutive_failures,
            self.config.retry_base_delay_ms / 1000,
            self.config.retry_max_delay_ms / 1000,
        )
        entry.next_run_at = self.clock() + delay

        if isinstance(error, ProviderError):
            logger.warning(
                f"Fetch failed for {entry.address} (attempt {entry.consecutive_failures}), "
                f"retrying in {delay:.0f}s: {error.message}"
            )
        else:
            logger.error(f"Check failed for {entry.address}: {error}", exc_info=True)

        if self._on_failure:
            self._on_failure(entry.address, error, entry.consecutive_failures)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def run_analysis_now(self, address: str) -> Optional[asyncio.Task]:
        entry = self.entries.get(address)
        if entry is None or entry.analysis_in_flight:
            return None
        entry.analysis_in_flight = True
        return self._spawn(self._run_analysis(entry))

    async def _run_analysis(self, entry: ScheduleEntry):
        try:
            await self._analyze(entry.address)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Market analysis failed for {entry.address}: {e}", exc_info=True)
        finally:
            entry.analysis_in_flight = False
            entry.next_analysis_at = self.clock() + self.config.analysis_interval_ms / 1000

    # ------------------------------------------------------------------
    # Tick loop
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def tick(self) -> List[asyncio.Task]:
        """Start every check and analysis that is due; returns the started tasks."""
        now = self.clock()
        started: List[asyncio.Task] = []
        for entry in list(self.entries.values()):
            if not self.is_busy(entry) and entry.next_run_at <= now:
                task = self.run_now(entry.address, DetectionMethod.POLLING)
                if task:
                    started.append(task)
            if (not entry.analysis_in_flight and entry.state != EntryState.PENDING
                    and entry.next_analysis_at <= now):
                task = self.run_analysis_now(entry.address)
                if task:
                    started.append(task)
        return started

    async def _loop(self):
        logger.info(f"Scheduler loop started ({len(self.entries)} pools)")
        while self.running:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick error: {e}", exc_info=True)
            await asyncio.sleep(self.config.tick_interval_ms / 1000)

    def start(self):
        """Start the tick loop if it is not running. Needs a running event loop."""
        if self._loop_task is not None and not self._loop_task.done():
            return
        self.running = True
        self._loop_task = asyncio.get_running_loop().create_task(self._loop())

    def stop(self):
        """Cancel the tick loop. In-flight checks are left to finish."""
        self.running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            self._loop_task = None
            logger.info("Scheduler loop stopped")

    @property
    def loop_running(self) -> bool:
        return self._loop_task is not None

    async def drain(self):
        """Wait for in-flight checks and analyses."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self):
        self._closing = True
        self.stop()
        for task in list(self._tasks):
            task.cancel()
        await self.drain()
        for address in list(self.entries):
            self.remove(address)
        self._retired.clear()
        self._closing = False
