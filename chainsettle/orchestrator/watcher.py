"""Chain watcher: turns address activity into new transaction references.

Per watched address the watcher moves IDLE -> SUBSCRIBED, then
RESOLVING -> SUBSCRIBED on every change event. Each newly seen reference is
handed to the callback exactly once.
"""

import asyncio
from collections import OrderedDict
from enum import Enum
from typing import Awaitable, Callable, Optional

from ..chains.base import WatchableChainSource
from ..config import config
from ..logging_utils import get_logger

logger = get_logger(__name__)

ReferenceCallback = Callable[[str], Awaitable[None]]

# Seen references kept per watcher, as a multiple of history_limit
SEEN_WINDOW_FACTOR = 4


class WatcherState(str, Enum):
    IDLE = "IDLE"
    SUBSCRIBED = "SUBSCRIBED"
    RESOLVING = "RESOLVING"


class ChainWatcher:
    """Long-lived subscription on one merchant address.

    Survives isolated failures: a failed reference lookup is logged and the
    subscription continues; a broken subscription stream is re-established
    after ``resubscribe_delay`` seconds. Existing history is loaded before
    subscribing and is never delivered as new; loading is retried until it
    succeeds.
    """

    def __init__(
        self,
        source: WatchableChainSource,
        address: str,
        history_limit: int = None,
        resubscribe_delay: float = None,
        prime_history: bool = True,
    ):
        self.source = source
        self.address = address
        self.network = source.network
        self.history_limit = history_limit or config.watcher_history_limit
        self.resubscribe_delay = (
            resubscribe_delay if resubscribe_delay is not None else config.watcher_resubscribe_delay
        )
        self.prime_history = prime_history
        self.state = WatcherState.IDLE
        # Insertion-ordered; references still returned by the node are refreshed
        # on every fetch, so only references that fell out of history are evicted.
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._seen_capacity = self.history_limit * SEEN_WINDOW_FACTOR
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, callback: ReferenceCallback) -> None:
        """Start watching in a background task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(callback), name=f"watcher-{self.network.value}-{self.address}")
        logger.info(f"Chain watcher started for {self.address} on {self.network.value}")

    async def stop(self) -> None:
        """Cancel the subscription and return to IDLE."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.state = WatcherState.IDLE
        logger.info(f"Chain watcher stopped for {self.address}")

    def _remember(self, reference: str) -> None:
        self._seen[reference] = None
        self._seen.move_to_end(reference)
        while len(self._seen) > self._seen_capacity:
            self._seen.popitem(last=False)

    async def _prime(self) -> bool:
        try:
            history = await self.source.list_recent_references(self.address, self.history_limit)
        except Exception as e:
            logger.warning(f"Could not load reference history for {self.address}: {e}", exc_info=True)
            return False
        for reference in reversed(history):
            self._remember(reference)
        logger.info(f"Primed watcher for {self.address} with {len(history)} known references")
        return True

    async def _run(self, callback: ReferenceCallback) -> None:
        if self.prime_history:
            while not await self._prime():
                await asyncio.sleep(self.resubscribe_delay)
        self.state = WatcherState.SUBSCRIBED

        while True:
            try:
                async for _event in self.source.subscribe_to_address_activity(self.address):
                    self.state = WatcherState.SUBSCRIBED
                    await self.resolve(callback)
                # Stream ended cleanly: subscribe again
            except Exception as e:
                logger.warning(f"Subscription for {self.address} dropped: {e}; resubscribing", exc_info=True)
            self.state = WatcherState.SUBSCRIBED
            await asyncio.sleep(self.resubscribe_delay)

    async def resolve(self, callback: ReferenceCallback) -> list[str]:
        """Fetch recent references and deliver the unseen ones, oldest first.

        Returns:
            The references delivered by this call.
        """
        self.state = WatcherState.RESOLVING
        try:
            try:
                recent = await self.source.list_recent_references(self.address, self.history_limit)
            except Exception as e:
                logger.warning(f"Failed to fetch references for {self.address}: {e}", exc_info=True)
                return []

            fresh = []
            for reference in reversed(recent):
                known = reference in self._seen
                self._remember(reference)
                if known:
                    continue
                fresh.append(reference)
                logger.info(f"New reference {reference} observed on {self.address}")
                try:
                    await callback(reference)
                except Exception as e:
                    logger.error(f"Reference callback failed for {reference}: {e}", exc_info=True)
            return fresh
        finally:
            self.state = WatcherState.SUBSCRIBED
