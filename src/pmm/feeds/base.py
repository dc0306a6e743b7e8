"""Supervised WebSocket connection shared by the market and user feeds."""

import asyncio
import contextlib
import time
from typing import Any, Callable, Optional

import websockets

from pmm.config import Settings
from pmm.market_maker.errors import FeedUnrecoverableError
from pmm.market_maker.types import FeedEvent, FeedStatus
from pmm.utils.logging import get_logger

log = get_logger(__name__)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff: base * 2^(attempt-1), capped."""
    if attempt < 1:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


class FeedSupervisor:
    """
    Owns one WebSocket, reconnecting with capped exponential backoff.

    Subclasses implement ``subscribe`` and ``handle_message`` and push typed
    events onto the shared queue. Connection state changes are pushed as
    FeedStatus events; after ``ws_max_reconnect_attempts`` consecutive
    failures the feed reports itself unrecoverable and stops.
    """

    name = "feed"

    def __init__(
        self,
        url: str,
        queue: "asyncio.Queue[FeedEvent]",
        settings: Settings,
        clock: Callable[[], float] = time.time,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.url = url
        self.queue = queue
        self.settings = settings
        self._clock = clock
        self._connect = connect or websockets.connect

        self.ping_interval = settings.ws_ping_interval_seconds
        self.max_attempts = settings.ws_max_reconnect_attempts
        self.backoff_base = settings.ws_backoff_base_seconds
        self.backoff_max = settings.ws_backoff_max_seconds
        self.stale_after = settings.feed_stale_after_seconds

        self.connected = False
        self.unrecoverable = False
        self.failures = 0
        self.connections = 0
        self.messages_received = 0
        self.started_at: Optional[float] = None
        self.last_message_at: Optional[float] = None
        self._running = False
        self._ws: Any = None

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    def connect_kwargs(self) -> dict[str, Any]:
        return {}

    async def subscribe(self, ws: Any) -> None:
        raise NotImplementedError

    async def handle_message(self, raw: str) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    async def emit(self, event: FeedEvent) -> None:
        await self.queue.put(event)

    def is_stale(self, now: Optional[float] = None) -> bool:
        """No message within the staleness window (or never connected)."""
        now = self._clock() if now is None else now
        reference = self.last_message_at or self.started_at
        if reference is None:
            return True
        return now - reference > self.stale_after

    async def _ping_loop(self, ws: Any) -> None:
        # Polymarket expects an application-level "PING" text frame.
        while True:
            await asyncio.sleep(self.ping_interval)
            await ws.send("PING")

    async def _session(self) -> None:
        async with self._connect(self.url, ping_interval=None, **self.connect_kwargs()) as ws:
            self._ws = ws
            reconnected = self.connections > 0
            self.connections += 1
            self.failures = 0
            self.connected = True
            await self.subscribe(ws)
            log.info("Feed connected", feed=self.name, reconnected=reconnected)
            await self.emit(FeedStatus(feed=self.name, up=True, reconnected=reconnected))

            ping_task = asyncio.create_task(self._ping_loop(ws))
            try:
                async for raw in ws:
                    self.last_message_at = self._clock()
                    self.messages_received += 1
                    if raw == "PONG":
                        continue
                    await self.handle_message(raw)
            finally:
                ping_task.cancel()
                with contextlib.suppress(asyncio.CancelledError, websockets.exceptions.WebSocketException, OSError):
                    await ping_task
                self._ws = None

    async def run(self) -> None:
        """
        Connect and keep reconnecting until stopped.

        Raises FeedUnrecoverableError once reconnect attempts are exhausted.
        """
        self._running = True
        self.started_at = self._clock()

        while self._running:
            reason = "closed"
            try:
                await self._session()
            except asyncio.CancelledError:
                raise
            except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
                reason = str(e) or type(e).__name__
                log.warning("Feed connection error", feed=self.name, error=reason)

            self.connected = False
            if not self._running:
                break

            self.failures += 1
            await self.emit(FeedStatus(feed=self.name, up=False, reason=reason))

            if self.failures >= self.max_attempts:
                self.unrecoverable = True
                self._running = False
                log.error("Feed reconnect attempts exhausted", feed=self.name, attempts=self.failures)
                await self.emit(
                    FeedStatus(feed=self.name, up=False, unrecoverable=True, reason="max_reconnect_attempts")
                )
                raise FeedUnrecoverableError(self.name, self.failures)

            delay = backoff_delay(self.failures, self.backoff_base, self.backoff_max)
            log.info("Feed reconnecting", feed=self.name, attempt=self.failures, delay_s=delay)
            await asyncio.sleep(delay)

    async def stop(self) -> None:
        self._running = False
        ws = self._ws
        if ws is not None:
            await ws.close()
        self.connected = False

    def get_stats(self) -> dict:
        return {
            "feed": self.name,
            "connected": self.connected,
            "unrecoverable": self.unrecoverable,
            "connections": self.connections,
            "failures": self.failures,
            "messages_received": self.messages_received,
            "last_message_at": self.last_message_at,
        }
