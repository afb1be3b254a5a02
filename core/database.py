"""
Alert store using aiosqlite.
Records whale events and market analysis bundles delivered by the engine.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import aiosqlite

from core.analysis_models import MarketAnalysisEvent
from core.models import WhaleActivityEvent

logger = logging.getLogger(__name__)


class AlertStore:
    """Async alert history backed by SQLite."""

    def __init__(self, db_path: str):
        """Initialize database with path."""
        self.db_path = db_path
        self.conn: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Connect to the database and create tables if needed."""
        self.conn = await aiosqlite.connect(self.db_path)
        self.conn.row_factory = aiosqlite.Row
        await self._create_tables()
        logger.info(f"Alert store connected: {self.db_path}")

    async def close(self):
        """Close database connection."""
        if self.conn:
            await self.conn.close()
            self.conn = None
            logger.info("Alert store connection closed")

    async def _create_tables(self):
        """Create database tables if they don't exist."""
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS whale_events (
                id TEXT PRIMARY KEY,
                pool_address TEXT NOT NULL,
                pool_name TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                change_percent REAL NOT NULL,
                risk_level TEXT NOT NULL,
                detection_method TEXT NOT NULL,
                payload_json TEXT NOT NULL
            )
        """)

        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS market_analyses (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                pool_address TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                error_count INTEGER NOT NULL DEFAULT 0,
                payload_json TEXT NOT NULL
            )
        """)

        await self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_whale_events_pool ON whale_events(pool_address, timestamp)
        """)

        await self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_market_analyses_pool ON market_analyses(pool_address, timestamp)
        """)

        await self.conn.commit()

    @staticmethod
    def _ts(value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()

    # Whale events
    async def save_whale_event(self, event: WhaleActivityEvent) -> bool:
        """Store a whale event. Returns False if it was already stored or on error."""
        try:
            cursor = await self.conn.execute("""
                INSERT OR IGNORE INTO whale_events
                    (id, pool_address, pool_name, timestamp, change_percent,
                     risk_level, detection_method, payload_json)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event.id,
                event.pool_address,
                event.pool_name,
                self._ts(event.timestamp),
                event.change_percent,
                event.risk_level.value,
                event.detection_method.value,
                event.model_dump_json()
            ))
            await self.conn.commit()
            return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error(f"Error saving whale event {event.id}: {e}")
            return False

    async def get_recent_whale_events(self, pool_address: Optional[str] = None,
                                      hours: float = 24,
                                      now: Optional[datetime] = None) -> List[WhaleActivityEvent]:
        """Whale events newer than `hours`, newest first, optionally for one pool."""
        cutoff = self._ts((now or datetime.now(timezone.utc)) - timedelta(hours=hours))
        if pool_address:
            cursor = await self.conn.execute("""
                SELECT payload_json FROM whale_events
                WHERE pool_address = ? AND timestamp >= ?
                ORDER BY timestamp DESC
            """, (pool_address, cutoff))
        else:
            cursor = await self.conn.execute("""
                SELECT payload_json FROM whale_events
                WHERE timestamp >= ?
                ORDER BY timestamp DESC
            """, (cutoff,))
        rows = await cursor.fetchall()
        return [WhaleActivityEvent.model_validate_json(row['payload_json']) for row in rows]

    async def get_pool_whale_events(self, pool_address: str, limit: int = 50) -> List[WhaleActivityEvent]:
        """Latest whale events for a pool."""
        cursor = await self.conn.execute("""
            SELECT payload_json FROM whale_events
            WHERE pool_address = ?
            ORDER BY timestamp DESC
            LIMIT ?
        """, (pool_address, limit))
        rows = await cursor.fetchall()
        return [WhaleActivityEvent.model_validate_json(row['payload_json']) for row in rows]

    # Market analyses
    async def save_market_analysis(self, event: MarketAnalysisEvent) -> Optional[int]:
        """Store a market analysis bundle. Returns the row id or None on error."""
        try:
            cursor = await self.conn.execute("""
                INSERT INTO market_analyses (pool_address, timestamp, error_count, payload_json)
                VALUES (?, ?, ?, ?)
            """, (
                event.pool_address,
                self._ts(event.timestamp),
                len(event.errors),
                event.model_dump_json()
            ))
            await self.conn.commit()
            return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error(f"Error saving market analysis for {event.pool_address}: {e}")
            return None

    async def get_latest_market_analysis(self, pool_address: str) -> Optional[MarketAnalysisEvent]:
        cursor = await self.conn.execute("""
            SELECT payload_json FROM market_analyses
            WHERE pool_address = ?
            ORDER BY timestamp DESC, id DESC
            LIMIT 1
        """, (pool_address,))
        row = await cursor.fetchone()
        if not row:
            return None
        return MarketAnalysisEvent.model_validate_json(row['payload_json'])
