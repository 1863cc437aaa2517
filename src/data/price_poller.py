import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from logging import Logger
from typing import Callable, Dict, List, Optional
import logging

from core.event_bus import EventBus, Handler, Unsubscribe
from core.types import PriceSample, utc_now
from data.price_source import PriceSource


@dataclass
class PollerStats:
    polls: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    last_success: Optional[datetime] = None


@dataclass
class _Subscription:
    mint: str
    refs: int = 0
    stop: asyncio.Event = field(default_factory=asyncio.Event)
    task: Optional[asyncio.Task] = None


class PricePoller:
    """Polls a price source for every mint somebody is interested in.

    Interest is reference counted through acquire/release. Each monitored mint
    gets one task; samples for a mint are dispatched one at a time and every
    handler is awaited before the next fetch.
    """

    def __init__(self,
                 source: PriceSource,
                 interval_seconds: float = 5.0,
                 fetch_timeout_seconds: float = 10.0,
                 logger: Optional[Logger] = None,
                 clock: Callable[[], datetime] = utc_now):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.source = source
        self.interval_seconds = interval_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        self.samples: EventBus[PriceSample] = EventBus("price_sample", self.logger)
        self._subscriptions: Dict[str, _Subscription] = {}
        self._stats: Dict[str, PollerStats] = {}
        self._last_samples: Dict[str, PriceSample] = {}
        self._tasks = set()
        self._stopped = False

    def on_sample(self, handler: Handler) -> Unsubscribe:
        return self.samples.subscribe(handler)

    def acquire(self, mint: str) -> int:
        """Register interest in mint, starting its poll task on first use"""
        if self._stopped:
            raise RuntimeError("Poller has been stopped")

        sub = self._subscriptions.get(mint)
        if sub is None:
            sub = _Subscription(mint=mint)
            self._subscriptions[mint] = sub
            self._stats.setdefault(mint, PollerStats())
            sub.task = asyncio.create_task(self._poll_loop(sub), name=f"poll-{mint}")
            self._tasks.add(sub.task)
            sub.task.add_done_callback(self._tasks.discard)
            self.logger.info(f"Started price monitoring for {mint}")
        sub.refs += 1
        return sub.refs

    def release(self, mint: str) -> int:
        """Drop one unit of interest. The poll task winds down at zero."""
        sub = self._subscriptions.get(mint)
        if sub is None:
            return 0

        sub.refs -= 1
        if sub.refs > 0:
            return sub.refs

        del self._subscriptions[mint]
        # Wakes the sleep; an in-flight dispatch still runs to completion
        sub.stop.set()
        self.logger.info(f"Stopped price monitoring for {mint}")
        return 0

    def is_monitoring(self, mint: str) -> bool:
        return mint in self._subscriptions

    def ref_count(self, mint: str) -> int:
        sub = self._subscriptions.get(mint)
        return sub.refs if sub else 0

    @property
    def monitored_mints(self) -> List[str]:
        return list(self._subscriptions)

    def last_sample(self, mint: str) -> Optional[PriceSample]:
        return self._last_samples.get(mint)

    def stats(self, mint: str) -> PollerStats:
        stats = self._stats.get(mint)
        return PollerStats(**vars(stats)) if stats else PollerStats()

    async def poll_once(self, mint: str) -> Optional[PriceSample]:
        """Fetch one sample for mint and dispatch it. None on failure."""
        stats = self._stats.setdefault(mint, PollerStats())
        stats.polls += 1
        try:
            quote = await asyncio.wait_for(self.source.fetch_price(mint), timeout=self.fetch_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._record_failure(mint, stats, f"timed out after {self.fetch_timeout_seconds}s")
            return None
        except Exception as e:
            self._record_failure(mint, stats, str(e))
            return None

        sample = PriceSample.from_quote(mint, quote, self.clock())
        stats.consecutive_failures = 0
        stats.last_success = sample.observed_at
        self._last_samples[mint] = sample

        await self.samples.publish(sample)
        return sample

    async def stop(self, drain_timeout: Optional[float] = None):
        """Stop every poll task. Dispatches already running are allowed to finish."""
        self._stopped = True
        subs = list(self._subscriptions.values())
        self._subscriptions.clear()
        for sub in subs:
            sub.stop.set()

        tasks = list(self._tasks)
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=drain_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _poll_loop(self, sub: _Subscription):
        try:
            while not sub.stop.is_set():
                await self.poll_once(sub.mint)
                if sub.stop.is_set():
                    break
                try:
                    await asyncio.wait_for(sub.stop.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(f"Price poll loop for {sub.mint} crashed: {str(e)}")

    def _record_failure(self, mint: str, stats: PollerStats, error: str):
        stats.failures += 1
        stats.consecutive_failures += 1
        stats.last_error = error
        self.logger.warning(f"Price fetch failed for {mint} ({stats.consecutive_failures} in a row): {error}")
