"""
Solana account-change stream for watched pools.

Auto-reconnecting JSON-RPC websocket client that keeps one accountSubscribe
per pool address and calls the registered callback with the pool address
whenever the pool account changes.
"""
import asyncio
import itertools
import json
import logging
from typing import Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from core.pool_provider import ChangeCallback, SubscriptionHandle

logger = logging.getLogger(__name__)


class PoolChangeSubscription(SubscriptionHandle):
    """One callback registration for one pool."""

    def __init__(self, stream: "PoolChangeStream", address: str, callback: ChangeCallback):
        self.stream = stream
        self.address = address
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self):
        if not self._active:
            return
        self._active = False
        self.stream._remove(self)


class PoolChangeStream:
    """
    Auto-reconnecting account-change WebSocket client.
    Resubscribes every tracked pool after a reconnect.
    """

    def __init__(
        self,
        ws_url: str,
        commitment: str = "confirmed",
        reconnect_delay: int = 1,
        max_reconnect_delay: int = 60,
        ping_interval: int = 20,
        ping_timeout: int = 10
    ):
        """Initialize the account-change stream."""
        self.ws_url = ws_url
        self.commitment = commitment
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

        self.ws = None
        self.running = False
        self._task: Optional[asyncio.Task] = None
        self._current_delay = reconnect_delay

        self._subscriptions: Dict[str, List[PoolChangeSubscription]] = {}
        self._request_ids = itertools.count(1)
        self._pending: Dict[int, str] = {}       # request id -> address
        self._remote_ids: Dict[str, int] = {}    # address -> rpc subscription id
        self._addresses_by_remote: Dict[int, str] = {}

    def subscribe(self, address: str, callback: ChangeCallback) -> PoolChangeSubscription:
        """Register a callback for changes to a pool account."""
        handle = PoolChangeSubscription(self, address, callback)
        is_new = address not in self._subscriptions
        self._subscriptions.setdefault(address, []).append(handle)
        if is_new:
            self._send_soon(self._subscribe_account(address))
        return handle

    def _remove(self, handle: PoolChangeSubscription):
        handles = self._subscriptions.get(handle.address, [])
        if handle in handles:
            handles.remove(handle)
        if not handles:
            self._subscriptions.pop(handle.address, None)
            remote_id = self._remote_ids.pop(handle.address, None)
            if remote_id is not None:
                self._addresses_by_remote.pop(remote_id, None)
                self._send_soon(self._unsubscribe_account(remote_id))

    @property
    def subscription_count(self) -> int:
        return sum(len(h) for h in self._subscriptions.values())

    def _send_soon(self, coro):
        if self.ws is None:
            coro.close()
            return
        try:
            asyncio.get_running_loop().create_task(coro)
        except RuntimeError:
            coro.close()

    async def start(self):
        """Start the WebSocket connection with auto-reconnect."""
        self.running = True
        logger.info("Starting pool change stream")

        while self.running:
            try:
                await self._connect_and_listen()
            except Exception as e:
                logger.error(f"Pool change stream error: {e}")
            if self.running:
                logger.info(f"Reconnecting in {self._current_delay} seconds...")
                await asyncio.sleep(self._current_delay)
                self._current_delay = min(self._current_delay * 2, self.max_reconnect_delay)

    def start_background(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.start())
        return self._task

    async def stop(self):
        """Stop the WebSocket connection."""
        self.running = False
        if self.ws:
            await self.ws.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Pool change stream stopped")

    async def _connect_and_listen(self):
        """Connect to the RPC websocket and listen for notifications."""
        logger.info(f"Connecting to pool change stream: {self.ws_url}")

        async with websockets.connect(
            self.ws_url,
            ping_interval=self.ping_interval,
            ping_timeout=self.ping_timeout
        ) as ws:
            self.ws = ws
            logger.info("Connected to pool change stream")
            self._current_delay = self.reconnect_delay

            await self._resubscribe()

            try:
                async for message in ws:
                    try:
                        self._handle_message(message)
                    except Exception as e:
                        logger.error(f"Error handling message: {e}")
                        logger.debug(f"Message content: {message}")
            except ConnectionClosed as e:
                logger.warning(f"Pool change stream closed: {e}")
            finally:
                self.ws = None
                self._pending.clear()
                self._remote_ids.clear()
                self._addresses_by_remote.clear()

    async def _resubscribe(self):
        """Resubscribe to all tracked pools after reconnection."""
        if not self._subscriptions:
            logger.info("No pools to subscribe to")
            return

        logger.info(f"Resubscribing to {len(self._subscriptions)} pools...")
        for address in list(self._subscriptions):
            await self._subscribe_account(address)

    async def _subscribe_account(self, address: str):
        """Send accountSubscribe for a pool address."""
        if self.ws is None:
            return
        request_id = next(self._request_ids)
        self._pending[request_id] = address
        request = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "accountSubscribe",
            "params": [address, {"encoding": "base64", "commitment": self.commitment}],
        }
        await self.ws.send(json.dumps(request))
        logger.debug(f"Sent accountSubscribe for {address}")

    async def _unsubscribe_account(self, remote_id: int):
        """Send accountUnsubscribe for an rpc subscription id."""
        if self.ws is None:
            return
        request = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": "accountUnsubscribe",
            "params": [remote_id],
        }
        await self.ws.send(json.dumps(request))

    def _handle_message(self, message: str):
        """Route subscription confirmations and account notifications."""
        data = json.loads(message)

        if "id" in data and data["id"] in self._pending:
            address = self._pending.pop(data["id"])
            if "error" in data:
                logger.error(f"accountSubscribe for {address} failed: {data['error']}")
                return
            remote_id = data.get("result")
            if address not in self._subscriptions:
                # cancelled while the request was in flight
                self._send_soon(self._unsubscribe_account(remote_id))
                return
            self._remote_ids[address] = remote_id
            self._addresses_by_remote[remote_id] = address
            logger.info(f"Subscribed to pool account: {address}")
            return

        if data.get("method") != "accountNotification":
            return

        remote_id = (data.get("params") or {}).get("subscription")
        address = self._addresses_by_remote.get(remote_id)
        if address is None:
            return
        for handle in list(self._subscriptions.get(address, [])):
            if handle.active:
                handle.callback(address)
