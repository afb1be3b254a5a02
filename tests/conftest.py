# tests/conftest.py
"""
Global pytest configuration and fixtures
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from config import EngineConfig
from core.errors import ProviderError
from core.models import (
    Bin, BinChange, ChangeType, DetectionMethod, PoolSnapshot, RiskLevel, SeriesPoint,
    WhaleActivityEvent
)
from core.pool_provider import PoolStateProvider, SubscriptionHandle

BASE_TIME = datetime(2025, 3, 1, tzinfo=timezone.utc)


def make_bins(liquidities, start_price: float = 1.0, step: float = 0.01) -> List[Bin]:
    """Bins with ids '0', '1', ... and evenly spaced prices."""
    return [
        Bin(bin_id=str(i), price=start_price + i * step, total_liquidity=Decimal(str(liq)))
        for i, liq in enumerate(liquidities)
    ]


def make_snapshot(
    address: str = "PoolAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA",
    total=None,
    bins: Optional[List[Bin]] = None,
    captured_at: Optional[datetime] = None,
    price: float = 1.0,
    token_x: str = "SOL",
    token_y: str = "USDC",
    volume: Optional[float] = None,
    name: Optional[str] = None,
    bin_step: Optional[int] = None
) -> PoolSnapshot:
    bins = bins if bins is not None else []
    if total is None:
        total = sum((b.total_liquidity for b in bins), Decimal(0))
    return PoolSnapshot(
        address=address,
        name=name,
        token_x=token_x,
        token_y=token_y,
        bin_step=bin_step,
        total_liquidity=Decimal(str(total)),
        current_price=price,
        bins=bins,
        volume_24h=volume,
        captured_at=captured_at or BASE_TIME,
    )


def make_series(values, start: datetime = BASE_TIME, step: timedelta = timedelta(hours=1)) -> List[SeriesPoint]:
    return [SeriesPoint(timestamp=start + i * step, value=float(v)) for i, v in enumerate(values)]



def make_whale_event(risk: RiskLevel = RiskLevel.MEDIUM, before: str = "1000000", after: str = "1100000",
                     address: str = "PoolAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA") -> WhaleActivityEvent:
    return WhaleActivityEvent(
        id=f"{address}_1",
        pool_address=address,
        pool_name="SOL-USDC",
        timestamp=BASE_TIME,
        total_before=Decimal(before),
        total_after=Decimal(after),
        change_amount=abs(Decimal(after) - Decimal(before)),
        change_percent=0.10,
        top_changes=[
            BinChange(bin_id="7", price_point=1.07, price_range=(1.065, 1.075),
                      amount=Decimal("60000"), percent=0.06, type=ChangeType.ADD),
            BinChange(bin_id="3", price_point=1.03, price_range=(1.025, 1.035),
                      amount=Decimal("40000"), percent=0.04, type=ChangeType.REMOVE),
        ],
        concentration_before=0.5,
        concentration_after=0.6,
        current_price=1.05,
        risk_level=risk,
        detection_method=DetectionMethod.POLLING,
        detection_time=BASE_TIME,
    )


class ManualClock:
    """Injectable clock returning epoch seconds that only moves when told to."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start.timestamp()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)


class FakeSubscription(SubscriptionHandle):
    def __init__(self, provider: "FakeProvider", address: str, callback):
        self.provider = provider
        self.address = address
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self):
        self._active = False


class FakeProvider(PoolStateProvider):
    """
    In-memory provider. Queue snapshots per pool with queue(); each fetch pops
    the next one (the last one is repeated). Errors queued with fail() are
    raised in order. gate() makes fetches for a pool block until released.
    """

    def __init__(self, supports_push: bool = True):
        self.snapshots: Dict[str, List[PoolSnapshot]] = {}
        self.errors: Dict[str, List[Exception]] = {}
        self.price_history: Dict[str, List[SeriesPoint]] = {}
        self.volume_history: Dict[str, List[SeriesPoint]] = {}
        self.history_errors: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.fetch_count: Dict[str, int] = {}
        self.in_flight: Dict[str, int] = {}
        self.max_in_flight: Dict[str, int] = {}
        self.subscriptions: List[FakeSubscription] = []
        self.supports_push = supports_push

    def queue(self, *snapshots: PoolSnapshot):
        for snapshot in snapshots:
            self.snapshots.setdefault(snapshot.address, []).append(snapshot)

    def fail(self, address: str, count: int = 1, message: str = "boom"):
        self.errors.setdefault(address, []).extend(
            ProviderError(address, message) for _ in range(count)
        )

    def gate(self, address: str) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[address] = event
        return event

    async def fetch_pool_snapshot(self, address: str) -> PoolSnapshot:
        self.fetch_count[address] = self.fetch_count.get(address, 0) + 1
        self.in_flight[address] = self.in_flight.get(address, 0) + 1
        self.max_in_flight[address] = max(self.max_in_flight.get(address, 0), self.in_flight[address])
        try:
            return await self._fetch(address)
        finally:
            self.in_flight[address] -= 1

    async def _fetch(self, address: str) -> PoolSnapshot:
        gate = self.gates.get(address)
        if gate is not None:
            await gate.wait()
        errors = self.errors.get(address)
        if errors:
            raise errors.pop(0)
        queued = self.snapshots.get(address)
        if not queued:
            raise ProviderError(address, "no snapshot queued")
        return queued.pop(0) if len(queued) > 1 else queued[0]

    async def fetch_price_history(self, address: str, interval: str, limit: int) -> List[SeriesPoint]:
        if address in self.history_errors:
            raise self.history_errors[address]
        return list(self.price_history.get(address, []))[-limit:]

    async def fetch_volume_history(self, address: str, interval: str, limit: int) -> List[SeriesPoint]:
        if address in self.history_errors:
            raise self.history_errors[address]
        return list(self.volume_history.get(address, []))[-limit:]

    def subscribe_to_pool_change(self, address: str, callback):
        if not self.supports_push:
            return None
        handle = FakeSubscription(self, address, callback)
        self.subscriptions.append(handle)
        return handle

    def push(self, address: str):
        """Simulate an account-change notification."""
        for handle in self.subscriptions:
            if handle.active and handle.address == address:
                handle.callback(address)

    def active_subscriptions(self) -> int:
        return sum(1 for s in self.subscriptions if s.active)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def config():
    return EngineConfig()
