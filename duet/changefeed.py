# In-process change feed for committed row mutations.
#
# The store publishes a RecordChanged event after every committed insert or
# update. Subscribers register a (table, predicate) pair and receive matching
# events on their own asyncio queue. Delivery is at-least-once with no
# ordering guarantee across distinct rows, so consumers must treat events as
# hints to merge authoritative state, never as deltas.

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordChanged:
    table: str
    record_id: str
    event: str = "UPDATE"  # "INSERT" | "UPDATE"
    # Row snapshot as committed; None means "refetch it yourself"
    record: Optional[Dict[str, Any]] = None


@dataclass
class Subscription:
    table: str
    predicate: Dict[str, Any]
    queue: "asyncio.Queue[RecordChanged]"
    loop: asyncio.AbstractEventLoop
    feed: Optional["ChangeFeed"] = field(default=None, repr=False)

    def matches(self, event: RecordChanged) -> bool:
        if event.table != self.table:
            return False
        for key, expected in self.predicate.items():
            if key == "id":
                if event.record_id != expected:
                    return False
            elif event.record is None or event.record.get(key) != expected:
                return False
        return True

    async def get(self) -> RecordChanged:
        return await self.queue.get()

    def close(self) -> None:
        if self.feed is not None:
            self.feed.unsubscribe(self)
            self.feed = None


class ChangeFeed:
    """Fan events out to every matching subscription.

    publish() may be called from any thread (the store commits from worker
    threads); events are handed to each subscriber's loop thread-safely.
    """

    def __init__(self) -> None:
        self._subs: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, table: str, **predicate: Any) -> Subscription:
        sub = Subscription(
            table=table,
            predicate=predicate,
            queue=asyncio.Queue(),
            loop=asyncio.get_running_loop(),
            feed=self,
        )
        with self._lock:
            self._subs.append(sub)
        logger.debug("Subscribed to %s where %s", table, predicate)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subs)

    def publish(self, event: RecordChanged) -> int:
        with self._lock:
            targets = [s for s in self._subs if s.matches(event)]

        for sub in targets:
            if sub.loop.is_closed():
                self.unsubscribe(sub)
                continue
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is sub.loop:
                sub.queue.put_nowait(event)
            else:
                sub.loop.call_soon_threadsafe(sub.queue.put_nowait, event)
        return len(targets)


# Process-wide feed used by the store.
FEED = ChangeFeed()
