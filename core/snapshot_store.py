"""
In-memory store of the latest pool snapshot and derived series per pool.

One store instance belongs to one engine. All access is keyed by pool
address; nothing is shared between pools.
"""
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from core.errors import StaleSnapshotError, SurveillanceError
from core.models import PoolSnapshot, SeriesPoint

logger = logging.getLogger(__name__)


@dataclass
class PoolRecord:
    """Everything the engine keeps for one watched pool."""
    snapshot: Optional[PoolSnapshot] = None
    previous: Optional[PoolSnapshot] = None
    price_series: Deque[SeriesPoint] = field(default_factory=deque)
    volume_series: Deque[SeriesPoint] = field(default_factory=deque)
    liquidity_series: Deque[SeriesPoint] = field(default_factory=deque)


class SnapshotStore:
    """Latest snapshot per pool with timestamp-guarded replacement."""

    def __init__(self, series_window: int = 168):
        """Initialize a closed store; call open() before use."""
        self.series_window = series_window
        self._records: Dict[str, PoolRecord] = {}
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self):
        self._open = True
        logger.debug("Snapshot store opened")

    def close(self):
        self._records.clear()
        self._open = False
        logger.debug("Snapshot store closed")

    def _check_open(self):
        if not self._open:
            raise SurveillanceError("Snapshot store is not open")

    def _new_record(self) -> PoolRecord:
        return PoolRecord(
            price_series=deque(maxlen=self.series_window),
            volume_series=deque(maxlen=self.series_window),
            liquidity_series=deque(maxlen=self.series_window),
        )

    def resize(self, series_window: int):
        """Change the rolling window; existing series keep their newest points."""
        self.series_window = series_window
        for record in self._records.values():
            record.price_series = deque(record.price_series, maxlen=series_window)
            record.volume_series = deque(record.volume_series, maxlen=series_window)
            record.liquidity_series = deque(record.liquidity_series, maxlen=series_window)

    def register(self, address: str):
        self._check_open()
        if address not in self._records:
            self._records[address] = self._new_record()

    def discard(self, address: str):
        self._records.pop(address, None)

    def __contains__(self, address: str) -> bool:
        return address in self._records

    def addresses(self) -> List[str]:
        return list(self._records)

    def get(self, address: str) -> Optional[PoolSnapshot]:
        record = self._records.get(address)
        return record.snapshot if record else None

    def get_previous(self, address: str) -> Optional[PoolSnapshot]:
        record = self._records.get(address)
        return record.previous if record else None

    def compare_and_replace(self, snapshot: PoolSnapshot) -> Optional[PoolSnapshot]:
        """
        Store a snapshot unless a newer one is already held for the pool.

        Returns:
            The snapshot it replaced (None for a first observation)

        Raises:
            SurveillanceError: if the pool is not registered or the snapshot is
                not newer than the stored one; the stored snapshot is unchanged
        """
        self._check_open()
        record = self._records.get(snapshot.address)
        if record is None:
            raise SurveillanceError(f"Pool {snapshot.address} is not registered")

        current = record.snapshot
        if current is not None and snapshot.captured_at <= current.captured_at:
            raise StaleSnapshotError(snapshot.address, snapshot.captured_at, current.captured_at)

        record.previous = current
        record.snapshot = snapshot
        return current

    def append_series(self, snapshot: PoolSnapshot):
        """Append the snapshot's price, volume and liquidity to the rolling series."""
        record = self._records.get(snapshot.address)
        if record is None:
            return
        ts = snapshot.captured_at
        record.price_series.append(SeriesPoint(timestamp=ts, value=snapshot.current_price))
        record.liquidity_series.append(SeriesPoint(timestamp=ts, value=float(snapshot.total_liquidity)))
        if snapshot.volume_24h is not None:
            record.volume_series.append(SeriesPoint(timestamp=ts, value=snapshot.volume_24h))

    def price_series(self, address: str) -> List[SeriesPoint]:
        record = self._records.get(address)
        return list(record.price_series) if record else []

    def volume_series(self, address: str) -> List[SeriesPoint]:
        record = self._records.get(address)
        return list(record.volume_series) if record else []

    def liquidity_series(self, address: str) -> List[SeriesPoint]:
        record = self._records.get(address)
        return list(record.liquidity_series) if record else []

