"""
Pool state providers.

The engine only talks to the PoolStateProvider interface. DataServiceProvider
reads pool detail and snapshot history from the pool data service over HTTP
and, when given a PoolChangeStream, supports push-based change notifications.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from core.errors import ProviderError
from core.models import Bin, PoolSnapshot, SeriesPoint

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str], Any]


class SubscriptionHandle(ABC):
    """Handle for a push subscription; cancel() is synchronous and idempotent."""

    @abstractmethod
    def cancel(self):
        ...

    @property
    @abstractmethod
    def active(self) -> bool:
        ...


class PoolStateProvider(ABC):
    """Source of pool snapshots and history series."""

    @abstractmethod
    async def fetch_pool_snapshot(self, address: str) -> PoolSnapshot:
        """Fetch current pool state. Raises ProviderError on failure."""

    @abstractmethod
    async def fetch_price_history(self, address: str, interval: str, limit: int) -> List[SeriesPoint]:
        """Price points ordered by time. Raises ProviderError on failure."""

    @abstractmethod
    async def fetch_volume_history(self, address: str, interval: str, limit: int) -> List[SeriesPoint]:
        """Volume points ordered by time. Raises ProviderError on failure."""

    def subscribe_to_pool_change(self, address: str,
                                 callback: ChangeCallback) -> Optional[SubscriptionHandle]:
        """Register for state-change notifications; None when push is unsupported."""
        return None

    async def open(self):
        pass

    async def close(self):
        pass


def _to_decimal(value, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid decimal value: {value!r}")


def _to_datetime(value) -> datetime:
    """Parse ISO strings or epoch seconds/milliseconds into an aware datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Invalid timestamp: {value!r}")


def _token_id(token) -> str:
    if isinstance(token, dict):
        return str(token.get("address") or token.get("mint") or token.get("symbol") or "")
    return str(token or "")


def _period_value(data: Dict[str, Any], key: str):
    """24h figure given as `{key}24h`, `{key: {"24h": ...}}` or a plain `{key}`."""
    if data.get(f"{key}24h") is not None:
        return data[f"{key}24h"]
    value = data.get(key)
    if isinstance(value, dict):
        return value.get("24h")
    return value


def parse_pool_detail(address: str, data: Dict[str, Any],
                      captured_at: Optional[datetime] = None) -> PoolSnapshot:
    """
    Build a PoolSnapshot from a pool detail payload.

    Accepts `liquidity.total` or `totalLiquidity` for the pool total and
    `parameters.currentPrice` or `currentPrice` for the price. Bin liquidity
    strings are kept as Decimal.
    """
    liquidity = data.get("liquidity") or {}
    parameters = data.get("parameters") or {}
    total = liquidity.get("total") if isinstance(liquidity, dict) else liquidity
    if total is None:
        total = data.get("totalLiquidity")

    price = parameters.get("currentPrice", data.get("currentPrice"))
    if price is None:
        raise ValueError("missing current price")

    bins = [
        Bin(
            bin_id=str(b.get("binId", b.get("bin_id"))),
            price=float(b.get("price", 0)),
            total_liquidity=_to_decimal(b.get("totalLiquidity", b.get("liquidity"))),
            price_lower=b.get("priceLower"),
            price_upper=b.get("priceUpper"),
        )
        for b in data.get("bins") or []
    ]

    volume = _period_value(data, "volume")
    fees = _period_value(data, "fees")

    return PoolSnapshot(
        address=address,
        name=data.get("name"),
        token_x=_token_id(data.get("tokenX", data.get("mintX"))),
        token_y=_token_id(data.get("tokenY", data.get("mintY"))),
        bin_step=parameters.get("binStep", data.get("binStep")),
        total_liquidity=_to_decimal(total),
        current_price=float(price),
        bins=bins,
        fees_24h=_to_decimal(fees) if fees is not None else None,
        volume_24h=float(volume) if volume is not None else None,
        captured_at=captured_at or datetime.now(timezone.utc),
    )


def parse_history(data, field: str) -> List[SeriesPoint]:
    """Extract `{timestamp, field}` points from a snapshot history payload, ordered by time."""
    items = data.get("snapshots", []) if isinstance(data, dict) else data
    points = [
        SeriesPoint(timestamp=_to_datetime(item["timestamp"]), value=float(item[field]))
        for item in items or []
        if item.get(field) is not None
    ]
    points.sort(key=lambda p: p.timestamp)
    return points


class DataServiceProvider(PoolStateProvider):
    """HTTP client for the pool data service."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        min_request_interval: float = 0.2,
        change_stream=None
    ):
        """Initialize the data service client."""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.min_request_interval = min_request_interval
        self.change_stream = change_stream
        self.session: Optional[aiohttp.ClientSession] = None
        self._rate_lock = asyncio.Lock()
        self._last_request = 0.0

    async def open(self):
        """Initialize HTTP session"""
        if not self.session:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
        logger.info(f"Data service provider ready: {self.base_url}")

    async def close(self):
        """Close HTTP session"""
        if self.session:
            await self.session.close()
            self.session = None

    async def _throttle(self):
        async with self._rate_lock:
            wait = self._last_request + self.min_request_interval - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()

    async def _get(self, address: str, path: str, params: Optional[Dict[str, Any]] = None):
        if not self.session:
            await self.open()
        await self._throttle()

        url = f"{self.base_url}{path}"
        try:
            async with self.session.get(url, params=params) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise ProviderError(address, f"HTTP {resp.status} from {path}: {text[:200]}")
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ProviderError(address, f"Timeout fetching {path}", e)
        except aiohttp.ClientError as e:
            raise ProviderError(address, f"Request to {path} failed: {e}", e)

        if not isinstance(payload, dict) or payload.get("status") != "success":
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ProviderError(address, f"Unsuccessful response from {path}: {message or payload!r}")
        return payload.get("data")

    async def fetch_pool_snapshot(self, address: str) -> PoolSnapshot:
        data = await self._get(address, f"/pools/{address}")
        try:
            return parse_pool_detail(address, data or {})
        except (ValueError, TypeError, KeyError) as e:
            raise ProviderError(address, f"Malformed pool detail: {e}", e)

    async def _history(self, address: str, interval: str, limit: int, field: str) -> List[SeriesPoint]:
        data = await self._get(address, f"/snapshots/{address}/{interval}", {"limit": limit})
        try:
            return parse_history(data, field)[-limit:]
        except (ValueError, TypeError, KeyError) as e:
            raise ProviderError(address, f"Malformed {field} history: {e}", e)

    async def fetch_price_history(self, address: str, interval: str, limit: int) -> List[SeriesPoint]:
        return await self._history(address, interval, limit, "currentPrice")

    async def fetch_volume_history(self, address: str, interval: str, limit: int) -> List[SeriesPoint]:
        return await self._history(address, interval, limit, "volume")

    def subscribe_to_pool_change(self, address: str,
                                 callback: ChangeCallback) -> Optional[SubscriptionHandle]:
        if self.change_stream is None:
            return None
        return self.change_stream.subscribe(address, callback)
