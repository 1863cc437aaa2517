import asyncio
import json
from datetime import datetime
from enum import Enum
from logging import Logger
from typing import Awaitable, Callable, Dict, List, Optional
import logging

import websockets
import websockets.exceptions

from execution.constants import PUMP_PROGRAM

SUPPORTED_METHODS = ("logsSubscribe", "transactionSubscribe")
NOTIFICATION_METHODS = ("logsNotification", "transactionNotification")


class FeedError(Exception):
    """Raised inside the feed for unusable connection setups"""
    pass


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    STOPPED = "stopped"


PayloadCallback = Callable[[Dict], Awaitable[None]]


class PumpDataFeed:
    """Websocket subscription to pump.fun program activity.

    Raw notification payloads are handed to the registered callbacks one at a
    time, in arrival order. Disconnects are retried with exponential backoff;
    after max_reconnect_attempts consecutive failures the feed goes to FAILED
    and stays there until started again.
    """

    def __init__(self,
                 ws_url: str,
                 logger: Optional[Logger] = None,
                 addresses: Optional[List[str]] = None,
                 method: str = "logsSubscribe",
                 commitment: str = "confirmed",
                 ping_interval: float = 30.0,
                 initial_reconnect_delay: float = 1.0,
                 max_reconnect_delay: float = 60.0,
                 max_reconnect_attempts: int = 10,
                 on_state_change: Optional[Callable[[ConnectionState], None]] = None,
                 connect: Callable = websockets.connect):
        if method not in SUPPORTED_METHODS:
            raise FeedError(f"Unsupported subscription method: {method}")
        if not ws_url:
            raise FeedError("A websocket url is required")

        self.ws_url = ws_url
        self.logger = logger or logging.getLogger(__name__)
        self.addresses = list(addresses or [str(PUMP_PROGRAM)])
        self.method = method
        self.commitment = commitment
        self.ping_interval = ping_interval
        self.initial_reconnect_delay = initial_reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.on_state_change = on_state_change
        self._connect = connect

        self.callbacks: List[PayloadCallback] = []
        self.ws = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._state = ConnectionState.DISCONNECTED
        self.subscription_ids: Dict[int, int] = {}

        self.connection_status = {
            'last_disconnect_time': None,
            'disconnect_code': None,
            'reconnect_success': False,
            'time_to_reconnect': 0.0,
            'reconnect_count': 0
        }

        self.message_health = {
            'last_message_time': None,
            'messages_received': 0,
            'processing_errors': 0
        }

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_callback(self, callback: PayloadCallback):
        """Add a callback to receive raw notification payloads"""
        self.callbacks.append(callback)

    async def start(self):
        """Start the feed as a background task"""
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="pump-data-feed")

    async def stop(self):
        """Stop the feed. Safe to call more than once."""
        self._stop_event.set()
        if self.ws is not None:
            try:
                await self.ws.close()
            except Exception as e:
                self.logger.debug(f"Error closing websocket: {str(e)}")

        task, self._task = self._task, None
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=5)
            if not done:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        if self._state != ConnectionState.STOPPED:
            self._set_state(ConnectionState.STOPPED)

    async def _run(self):
        attempt = 0
        while not self._stop_event.is_set():
            self._set_state(ConnectionState.CONNECTING if attempt == 0 else ConnectionState.RECONNECTING)
            connect_start = datetime.now()
            try:
                self.logger.info(f"Attempting to connect to WebSocket at {self.ws_url}")
                async with self._connect(self.ws_url, ping_interval=self.ping_interval) as ws:
                    self.ws = ws
                    await self._subscribe(ws)

                    self.connection_status['reconnect_success'] = True
                    self.connection_status['time_to_reconnect'] = (datetime.now() - connect_start).total_seconds()
                    self._set_state(ConnectionState.CONNECTED)
                    attempt = 0

                    async for msg in ws:
                        await self.process_message(msg)

                    self._record_disconnect(getattr(ws, "close_code", None))

            except asyncio.CancelledError:
                raise
            except websockets.exceptions.ConnectionClosed as e:
                self._record_disconnect(getattr(e, "code", None))
            except Exception as e:
                self.logger.error(f"Connection error: {str(e)}")
            finally:
                self.ws = None

            if self._stop_event.is_set():
                break

            if attempt >= self.max_reconnect_attempts:
                self.logger.error(f"Giving up after {attempt} reconnect attempts")
                self._set_state(ConnectionState.FAILED)
                return

            delay = min(self.initial_reconnect_delay * (2 ** attempt), self.max_reconnect_delay)
            attempt += 1
            self.connection_status['reconnect_count'] += 1
            self.logger.info(f"Reconnecting in {delay:.1f}s (attempt {attempt}/{self.max_reconnect_attempts})")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def _subscribe(self, ws):
        for message in self.subscription_messages():
            await ws.send(json.dumps(message))
        self.logger.info(f"Subscription message sent successfully ({self.method})")

    def subscription_messages(self) -> List[Dict]:
        """Requests sent on every (re)connect"""
        if self.method == "transactionSubscribe":
            return [{
                "jsonrpc": "2.0",
                "id": 1,
                "method": "transactionSubscribe",
                "params": [
                    {"accountInclude": self.addresses, "failed": False},
                    {
                        "commitment": self.commitment,
                        "encoding": "jsonParsed",
                        "transactionDetails": "full",
                        "maxSupportedTransactionVersion": 0
                    }
                ]
            }]

        return [{
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "logsSubscribe",
            "params": [
                {"mentions": [address]},
                {"commitment": self.commitment}
            ]
        } for request_id, address in enumerate(self.addresses, start=1)]

    async def process_message(self, msg):
        self.message_health['last_message_time'] = datetime.now()
        self.message_health['messages_received'] += 1
        try:
            data = json.loads(msg)

            # Subscription confirmation
            if "id" in data and "result" in data:
                self.subscription_ids[data["id"]] = data["result"]
                return
            if "error" in data:
                self.message_health['processing_errors'] += 1
                self.logger.error(f"Subscription error: {data['error']}")
                return
            if data.get("method") not in NOTIFICATION_METHODS:
                return

            payload = data["params"]["result"]
            for callback in self.callbacks:
                await callback(payload)

        except Exception as e:
            self.message_health['processing_errors'] += 1
            self.logger.error(f"Error processing message: {str(e)}")

    def _record_disconnect(self, code: Optional[int]):
        self.connection_status['last_disconnect_time'] = datetime.now()
        self.connection_status['disconnect_code'] = code
        self.connection_status['reconnect_success'] = False
        if not self._stop_event.is_set():
            self.logger.error(
                f"WebSocket disconnected. Code: {code}, "
                f"Last message: {self.message_health['last_message_time']}"
            )

    def _set_state(self, state: ConnectionState):
        if state == self._state:
            return
        self._state = state
        if self.on_state_change is not None:
            try:
                self.on_state_change(state)
            except Exception as e:
                self.logger.error(f"Error in state change callback: {str(e)}")
