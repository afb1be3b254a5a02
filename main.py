"""
Pool Surveillance - Main Entry Point
Watches liquidity pools for whale activity and market-structure changes.
"""
import asyncio
import logging
import signal
import sys
from typing import Optional

from aiogram import Bot

from config import Settings, ensure_data_directory, load_settings
from core.analysis_models import MarketAnalysisEvent
from core.database import AlertStore
from core.engine import SurveillanceEngine
from core.errors import ConfigurationError
from core.models import PoolErrorEvent, WhaleActivityEvent
from core.pool_change_ws import PoolChangeStream
from core.pool_provider import DataServiceProvider
from bot.notifier import Notifier
from utils.filters import parse_risk_level
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


class PoolSurveillanceApp:
    """Main application wiring the provider, the engine and the alert sinks."""

    def __init__(self, settings: Settings):
        """Initialize application components."""
        self.settings = settings
        self.change_stream: Optional[PoolChangeStream] = None
        self.provider: Optional[DataServiceProvider] = None
        self.engine: Optional[SurveillanceEngine] = None
        self.store: Optional[AlertStore] = None
        self.bot: Optional[Bot] = None
        self.notifier: Optional[Notifier] = None
        self._stop_event = asyncio.Event()

    async def setup(self):
        """Setup all components."""
        logger.info("Setting up pool surveillance...")
        engine_config = self.settings.engine_config()

        if self.settings.solana_ws_url:
            self.change_stream = PoolChangeStream(
                ws_url=self.settings.solana_ws_url,
                reconnect_delay=self.settings.ws_reconnect_delay,
                max_reconnect_delay=self.settings.ws_max_reconnect_delay,
                ping_interval=self.settings.ws_ping_interval,
                ping_timeout=self.settings.ws_ping_timeout
            )

        self.provider = DataServiceProvider(
            base_url=self.settings.data_service_url,
            timeout=self.settings.request_timeout,
            min_request_interval=self.settings.request_min_interval,
            change_stream=self.change_stream
        )
        await self.provider.open()

        self.engine = SurveillanceEngine(self.provider, engine_config)
        self.engine.open()

        if self.settings.database_path:
            ensure_data_directory(self.settings)
            self.store = AlertStore(self.settings.database_path)
            await self.store.connect()

        if self.settings.bot_token and self.settings.alerts_chat_id:
            self.bot = Bot(token=self.settings.bot_token)
            self.notifier = Notifier(
                self.bot,
                self.settings.alerts_chat_id,
                min_risk=parse_risk_level(self.settings.min_alert_risk)
            )
        else:
            logger.info("Telegram alerts disabled (no bot token or chat configured)")

        self.engine.on_whale_activity(self.handle_whale_activity)
        self.engine.on_market_analysis(self.handle_market_analysis)
        self.engine.on_error(self.handle_pool_error)

    async def handle_whale_activity(self, event: WhaleActivityEvent):
        """Persist and forward a whale event."""
        if self.store:
            await self.store.save_whale_event(event)
        if self.notifier:
            await self.notifier.notify_whale(event)

    async def handle_market_analysis(self, event: MarketAnalysisEvent):
        """Persist and forward a market analysis bundle."""
        if self.store:
            await self.store.save_market_analysis(event)
        if self.notifier:
            await self.notifier.notify_market_analysis(event)

    def handle_pool_error(self, event: PoolErrorEvent):
        if event.consecutive_failures and event.consecutive_failures % 5 == 0:
            logger.error(
                f"Pool {event.pool_address} has failed {event.consecutive_failures} times in a row: "
                f"{event.message}"
            )

    def request_stop(self):
        self._stop_event.set()

    async def start(self):
        """Start watching the configured pools and run until stopped."""
        logger.info("Starting pool surveillance...")

        if self.change_stream:
            self.change_stream.start_background()

        pools = self.settings.watched_pool_list()
        if not pools:
            logger.warning("No pools configured (set WATCHED_POOLS)")
        for address in pools:
            self.engine.add_pool(address)
        await self.engine.start()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                # Not supported on Windows event loops
                pass

        try:
            await self._stop_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        """Graceful shutdown."""
        logger.info("Shutting down pool surveillance...")

        if self.engine:
            await self.engine.close()
        if self.change_stream:
            await self.change_stream.stop()
        if self.provider:
            await self.provider.close()
        if self.store:
            await self.store.close()
        if self.bot:
            await self.bot.session.close()

        logger.info("Shutdown complete")


async def main():
    """Main entry point."""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    setup_logging(log_level=settings.log_level, log_dir=settings.log_dir)
    app = PoolSurveillanceApp(settings)

    try:
        await app.setup()
        await app.start()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Pool surveillance stopped by user")
