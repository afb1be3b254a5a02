# tests/unit/test_engine.py
"""
Unit tests for SurveillanceEngine and its scheduler
"""
import asyncio
from datetime import timedelta

import pytest

from config import EngineConfig
from core.errors import ConfigurationError, ProviderError
from core.engine import SurveillanceEngine
from core.models import DetectionMethod, RiskLevel
from core.scheduler import EntryState, backoff_delay

from conftest import BASE_TIME, FakeProvider, make_bins, make_series, make_snapshot

POOL = "PoolAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAAA"
PEER = "PoolBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBBB"


def snap(total, minutes=0, address=POOL, **kwargs):
    half = total / 2
    return make_snapshot(address=address, total=total, bins=make_bins([half, half]),
                         captured_at=BASE_TIME + timedelta(minutes=minutes), **kwargs)


@pytest.fixture
async def engine(provider, clock):
    engine = SurveillanceEngine(provider, EngineConfig(), clock=clock, autostart=False)
    engine.open()
    yield engine
    await engine.close()


@pytest.fixture
def whales(engine):
    received = []
    engine.on_whale_activity(received.append)
    return received


@pytest.fixture
def errors(engine):
    received = []
    engine.on_error(received.append)
    return received


@pytest.mark.unit
class TestWatchList:
    """add_pool / remove_pool"""

    @pytest.mark.asyncio
    async def test_first_observation_is_baseline_only(self, engine, provider, whales):
        provider.queue(snap(1_000_000))
        assert engine.add_pool(POOL) is True
        await engine.scheduler.drain()
        assert engine.get_snapshot(POOL).total_liquidity == 1_000_000
        assert whales == []
        assert engine.get_pool_status(POOL)["state"] == EntryState.ACTIVE.value

    @pytest.mark.asyncio
    async def test_add_is_idempotent(self, engine, provider):
        provider.queue(snap(1000))
        assert engine.add_pool(POOL) is True
        assert engine.add_pool(POOL) is False
        await engine.scheduler.drain()
        assert provider.fetch_count[POOL] == 1
        assert len(provider.subscriptions) == 1

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, engine, provider):
        provider.queue(snap(1000))
        engine.add_pool(POOL)
        assert engine.remove_pool(POOL) is True
        assert engine.remove_pool(POOL) is False
        assert engine.remove_pool("unknown") is False

    @pytest.mark.asyncio
    async def test_add_then_remove_leaves_no_handles(self, engine, provider):
        provider.queue(snap(1000))
        engine.add_pool(POOL)
        assert engine.active_handle_count() == 2
        engine.remove_pool(POOL)
        assert engine.active_handle_count() == 0
        assert provider.active_subscriptions() == 0
        await engine.scheduler.drain()
        assert engine.get_snapshot(POOL) is None
        assert engine.watched_pools() == []

    @pytest.mark.asyncio
    async def test_tick_loop_stops_when_watch_list_empties(self, provider, clock):
        engine = SurveillanceEngine(provider, EngineConfig(), clock=clock)
        engine.open()
        provider.queue(snap(1000))
        engine.add_pool(POOL)
        assert engine.scheduler.loop_running
        assert engine.active_handle_count() == 3
        engine.remove_pool(POOL)
        assert not engine.scheduler.loop_running
        assert engine.active_handle_count() == 0
        await engine.close()

    @pytest.mark.asyncio
    async def test_readd_waits_for_fetch_of_removed_entry(self, engine, provider, whales):
        gate = provider.gate(POOL)
        provider.queue(snap(1_000_000), snap(2_000_000, minutes=5))
        engine.add_pool(POOL)
        await asyncio.sleep(0)

        engine.remove_pool(POOL)
        engine.add_pool(POOL)
        await asyncio.sleep(0)
        assert provider.fetch_count[POOL] == 1
        assert engine.get_pool_status(POOL)["coalesced"] == 1

        gate.set()
        await engine.scheduler.drain()

        assert provider.max_in_flight[POOL] == 1
        assert provider.fetch_count[POOL] == 2
        assert engine.get_snapshot(POOL).total_liquidity == 2_000_000
        assert whales == []

    @pytest.mark.asyncio
    async def test_failure_of_removed_entry_is_not_reported(self, engine, provider, errors):
        gate = provider.gate(POOL)
        provider.fail(POOL, count=1)
        provider.queue(snap(1000))
        engine.add_pool(POOL)
        await asyncio.sleep(0)
        engine.remove_pool(POOL)
        engine.add_pool(POOL)
        gate.set()
        await engine.scheduler.drain()

        assert errors == []
        assert engine.get_pool_status(POOL)["state"] == EntryState.ACTIVE.value
        assert engine.get_snapshot(POOL).total_liquidity == 1000

    def test_pool_added_outside_event_loop_starts_with_start(self, provider, clock):
        engine = SurveillanceEngine(provider, EngineConfig(tick_interval_ms=10), clock=clock)
        provider.queue(snap(1000))
        assert engine.add_pool(POOL) is True
        assert not engine.scheduler.loop_running
        assert provider.fetch_count == {}

        async def run():
            await engine.start()
            running = engine.scheduler.loop_running
            await engine.scheduler.drain()
            snapshot = engine.get_snapshot(POOL)
            await engine.close()
            return running, snapshot

        running, snapshot = asyncio.run(run())
        assert running
        assert snapshot.total_liquidity == 1000
        assert provider.fetch_count[POOL] == 1

    @pytest.mark.asyncio
    async def test_context_manager_starts_polling(self, provider, clock):
        provider.queue(snap(1000))
        engine = SurveillanceEngine(provider, clock=clock, autostart=False)
        async with engine:
            engine.add_pool(POOL)
            await engine.scheduler.drain()
            assert engine.get_snapshot(POOL) is not None
        assert engine.active_handle_count() == 0

    @pytest.mark.asyncio
    async def test_removal_drops_activity_history(self, engine, provider, whales):
        provider.queue(snap(1000), snap(2000, minutes=1))
        engine.add_pool(POOL)
        await engine.scheduler.drain()
        await engine.check_pool(POOL)
        assert len(engine.get_pool_activities(POOL)) == 1

        engine.remove_pool(POOL)
        assert engine.get_pool_activities(POOL) == []
        assert engine.get_recent_activities() == []
        assert len(whales) == 1

    @pytest.mark.asyncio
    async def test_fetch_completing_after_removal_is_discarded(self, engine, provider, whales, errors):
        gate = provider.gate(POOL)
        provider.queue(snap(1000))
        engine.add_pool(POOL)
        engine.remove_pool(POOL)
        gate.set()
        await engine.scheduler.drain()
        assert engine.get_snapshot(POOL) is None
        assert whales == []
        assert errors == []

    @pytest.mark.asyncio
    async def test_works_without_push_support(self, clock):
        provider = FakeProvider(supports_push=False)
        engine = SurveillanceEngine(provider, clock=clock, autostart=False)
        engine.open()
        provider.queue(snap(1000))
        engine.add_pool(POOL)
        assert engine.active_handle_count() == 1
        assert engine.get_pool_status(POOL)["subscribed"] is False
        await engine.close()


@pytest.mark.unit
class TestWhalePath:
    """Polling, push re-checks and ordering"""

    @pytest.mark.asyncio
    async def test_ten_percent_change_emits_medium_event(self, engine, provider, clock, whales):
        provider.queue(snap(1_000_000), snap(1_100_000, minutes=5))
        engine.add_pool(POOL)
        await engine.scheduler.drain()

        clock.advance(300)
        await engine.tick()

        assert len(whales) == 1
        event = whales[0]
        assert event.change_percent == pytest.approx(0.10)
        assert event.risk_level == RiskLevel.MEDIUM
        assert event.detection_method == DetectionMethod.POLLING
        assert engine.get_recent_activities(hours=1) == [event]
        assert engine.get_pool_activities(POOL) == [event]
        assert engine.get_pool_activities(PEER) == []

    @pytest.mark.asyncio
    async def test_poll_not_due_before_interval(self, engine, provider, clock):
        provider.queue(snap(1000), snap(2000, minutes=5))
        engine.add_pool(POOL)
        await engine.scheduler.drain()
        clock.advance(299)
        assert await engine.tick() == []
        assert provider.fetch_count[POOL] == 1

    @pytest.mark.asyncio
    async def test_small_change_is_silent_but_becomes_baseline(self, engine, provider, clock, whales):
        provider.queue(snap(1000), snap(1040, minutes=5), snap(1080, minutes=10))
        engine.add_pool(POOL)
        await engine.scheduler.drain()
        for _ in range(2):
            clock.advance(300)
            await engine.tick()
        assert whales == []
        assert engine.get_snapshot(POOL).total_liquidity == 1080

    @pytest.mark.asyncio
    async def test_zero_baseline_does_not_crash(self, engine, provider, clock, whales, errors):
        provider.queue(snap(0), snap(5000, minutes=5))
        engine.add_pool(POOL)
        await engine.scheduler.drain()
        clock.advance(300)
        await engine.tick()
        assert whales == []
        assert errors == []
        assert engine.get_snapshot(POOL).total_liquidity == 5000

    @pytest.mark.asyncio
    async def test_push_notification_triggers_subscription_check(self, engine, provider, whales):
        provider.queue(snap(1000), snap(2000, minutes=1))
        engine.add_pool(POOL)
        await engine.scheduler.drain()

        provider.push(POOL)
        await engine.scheduler.drain()

        assert len(whales) == 1
        assert whales[0].detection_method == DetectionMethod.SUBSCRIPTION
        assert whales[0].risk_level == RiskLevel.HIGH

    @pytest.mark.asyncio
    async def test_push_while_in_flight_is_coalesced(self, engine, provider):
        gate = provider.gate(POOL)
        provider.queue(snap(1000))
        engine.add_pool(POOL)
        provider.push(POOL)
        provider.push(POOL)
        assert await engine.check_pool(POOL) is False
        gate.set()
        await engine.scheduler.drain()
        assert provider.fetch_count[POOL] == 1
        assert engine.get_pool_status(POOL)["coalesced"] == 3

    @pytest.mark.asyncio
    async def test_older_snapshot_never_replaces_newer(self, engine, provider, clock, whales):
        provider.queue(snap(1000, minutes=10), snap(5000, minutes=5))
        engine.add_pool(POOL)
        await engine.scheduler.drain()
        clock.advance(300)
        await engine.tick()
        assert engine.get_snapshot(POOL).total_liquidity == 1000
        assert whales == []

    @pytest.mark.asyncio
    async def test_handler_failure_is_isolated(self, engine, provider, whales):
        def broken(_event):
            raise RuntimeError("sink down")

        engine.on_whale_activity(broken)
        provider.queue(snap(1000), snap(2000, minutes=1))
        engine.add_pool(POOL)
        await engine.scheduler.drain()
        assert await engine.check_pool(POOL) is True
        assert len(whales) == 1


@pytest.mark.unit
class TestFailures:
    """Backoff and per-pool isolation"""

    def test_backoff_delay(self):
        assert backoff_delay(1, 5, 300) == 5
        assert backoff_delay(2, 5, 300) == 10
        assert backoff_delay(4, 5, 300) == 40
        assert backoff_delay(10, 5, 300) == 300
        assert backoff_delay(0, 5, 300) == 0

    @pytest.mark.asyncio
    async def test_provider_errors_back_off_and_recover(self, engine, provider, clock, errors):
        provider.fail(POOL, count=2, message="timeout")
        provider.queue(snap(1000))
        engine.add_pool(POOL)
        await engine.scheduler.drain()

        status = engine.get_pool_status(POOL)
        assert status["state"] == EntryState.BACKOFF.value
        assert status["consecutive_failures"] == 1
        assert status["next_run_at"] == clock() + 5
        assert len(errors) == 1
        assert errors[0].error_type == "ProviderError"
        assert errors[0].message == "timeout"

        assert await engine.tick() == []

        clock.advance(5)
        await engine.tick()
        status = engine.get_pool_status(POOL)
        assert status["consecutive_failures"] == 2
        assert status["next_run_at"] == clock() + 10
        assert errors[-1].consecutive_failures == 2

        clock.advance(10)
        await engine.tick()
        status = engine.get_pool_status(POOL)
        assert status["state"] == EntryState.ACTIVE.value
        assert status["consecutive_failures"] == 0
        assert engine.get_snapshot(POOL) is not None
        assert POOL in engine.watched_pools()

    @pytest.mark.asyncio
    async def test_one_failing_pool_does_not_block_others(self, engine, provider, clock, whales):
        provider.fail(POOL, count=10)
        provider.queue(snap(1000, address=PEER), snap(3000, minutes=5, address=PEER))
        engine.add_pool(POOL)
        engine.add_pool(PEER)
        await engine.scheduler.drain()

        clock.advance(300)
        await engine.tick()

        assert [e.pool_address for e in whales] == [PEER]
        assert engine.get_pool_status(POOL)["state"] == EntryState.BACKOFF.value
        assert engine.get_all_status()[PEER]["state"] == EntryState.ACTIVE.value

    @pytest.mark.asyncio
    async def test_unexpected_errors_are_reported(self, engine, provider, errors):
        async def broken(address):
            raise ValueError("bad payload")

        provider.fetch_pool_snapshot = broken
        engine.add_pool(POOL)
        await engine.scheduler.drain()
        assert errors[0].error_type == "ValueError"


@pytest.mark.unit
class TestMarketAnalysis:
    """Market path"""

    @pytest.fixture
    def histories(self, provider):
        prices = [100 + i * 0.5 for i in range(48)]
        provider.price_history[POOL] = make_series(prices)
        provider.price_history[PEER] = make_series([p * 0.98 for p in prices])
        provider.volume_history[POOL] = make_series([10_000.0] * 48)
        provider.queue(snap(1000, price=124.0), snap(1000, address=PEER, price=110.0))

    @pytest.mark.asyncio
    async def test_full_bundle(self, engine, provider, histories):
        received = []
        engine.on_market_analysis(received.append)
        engine.add_pool(POOL)
        engine.add_pool(PEER)
        await engine.scheduler.drain()

        event = await engine.run_market_analysis(POOL)

        assert received == [event]
        assert event.errors == []
        assert event.price_trend.statistics.sample_count == 47
        assert event.distribution.concentration.effective_bins == 2
        assert event.volume.anomalies.anomalies == []
        assert [c.pool_address for c in event.correlation.correlations] == [PEER]
        assert event.correlation.arbitrage_candidates[0].buy_pool == PEER

    @pytest.mark.asyncio
    async def test_partial_failures(self, engine, provider, histories):
        provider.history_errors[PEER] = ProviderError(PEER, "down")
        provider.history_errors[POOL] = ProviderError(POOL, "down")
        engine.add_pool(POOL)
        engine.add_pool(PEER)
        await engine.scheduler.drain()

        event = await engine.run_market_analysis(POOL)

        assert len(event.errors) == 2
        assert event.correlation.failed_peers == [PEER]
        assert event.price_trend.statistics.sample_count == 0

    @pytest.mark.asyncio
    async def test_no_baseline_no_analysis(self, engine):
        assert await engine.run_market_analysis(POOL) is None

    @pytest.mark.asyncio
    async def test_scheduled_by_tick(self, engine, provider, clock, histories):
        received = []
        engine.on_market_analysis(received.append)
        engine.add_pool(POOL)
        await engine.scheduler.drain()

        clock.advance(3600)
        await engine.tick()

        assert len(received) == 1
        assert engine.get_pool_status(POOL)["next_analysis_at"] == clock() + 3600


@pytest.mark.unit
class TestConfiguration:
    """Runtime configuration updates"""

    @pytest.mark.asyncio
    async def test_update_config(self, engine):
        config = engine.update_config(whale_change_threshold=0.02)
        assert config.whale_change_threshold == 0.02
        assert engine.scheduler.config is config

    @pytest.mark.asyncio
    async def test_invalid_update_is_rejected(self, engine):
        with pytest.raises(ConfigurationError):
            engine.update_config(whale_change_threshold=0)
        assert engine.config.whale_change_threshold == 0.05

    @pytest.mark.asyncio
    async def test_lower_threshold_takes_effect(self, engine, provider, whales):
        engine.update_config(whale_change_threshold=0.01)
        provider.queue(snap(1000), snap(1020, minutes=1))
        engine.add_pool(POOL)
        await engine.scheduler.drain()
        await engine.check_pool(POOL)
        assert len(whales) == 1
        assert whales[0].risk_level == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_series_window_update_applies_to_stored_series(self, engine, provider, clock):
        provider.queue(*(snap(1000 + i, minutes=5 * i) for i in range(5)))
        engine.add_pool(POOL)
        await engine.scheduler.drain()
        engine.update_config(series_window=2)
        for _ in range(4):
            clock.advance(300)
            await engine.tick()

        assert engine.store.series_window == 2
        assert [p.value for p in engine.store.liquidity_series(POOL)] == [1003.0, 1004.0]

    @pytest.mark.asyncio
    async def test_tick_interval_update_reaches_running_loop(self, provider, clock):
        engine = SurveillanceEngine(provider, EngineConfig(tick_interval_ms=10), clock=clock)
        ticks = []
        original_tick = engine.scheduler.tick

        def counting_tick():
            ticks.append(clock())
            return original_tick()

        engine.scheduler.tick = counting_tick
        engine.open()
        provider.queue(snap(1000))
        engine.add_pool(POOL)
        await asyncio.sleep(0.1)
        assert len(ticks) >= 2

        engine.update_config(tick_interval_ms=60_000)
        await asyncio.sleep(0.05)
        settled = len(ticks)
        await asyncio.sleep(0.1)
        assert len(ticks) == settled
        await engine.close()
