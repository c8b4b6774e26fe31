"""Bounded FIFO buffer between the fetch worker and the batch processor."""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, Any, List, Optional

from .exceptions import QueueFullTimeout
from .models import TokenRecord

logger = logging.getLogger(__name__)


class BatchQueue:
    """
    Bounded, order-preserving queue of TokenRecords.

    ``push`` waits while the queue is full and raises QueueFullTimeout once
    its timeout expires. ``drain`` never waits. The queue holds at most
    ``capacity`` records at any time and does no deduplication.
    """

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")

        self.capacity = capacity
        self._items: Deque[TokenRecord] = deque()
        self._changed = asyncio.Condition()

        self.stats = {
            "pushed": 0,
            "drained": 0,
            "push_timeouts": 0,
            "high_water_mark": 0
        }

    def __len__(self) -> int:
        return len(self._items)

    @property
    def depth(self) -> int:
        return len(self._items)

    def full(self) -> bool:
        return len(self._items) >= self.capacity

    def empty(self) -> bool:
        return not self._items

    async def push(self, record: TokenRecord, timeout: Optional[float] = None):
        """
        Append a record, waiting up to ``timeout`` seconds for free space.

        ``timeout=None`` waits indefinitely; callers in the pipeline always pass one.
        """
        async with self._changed:
            if self.full():
                try:
                    await asyncio.wait_for(
                        self._changed.wait_for(lambda: not self.full()),
                        timeout
                    )
                except asyncio.TimeoutError:
                    self.stats["push_timeouts"] += 1
                    raise QueueFullTimeout(self.capacity, timeout or 0.0)

            self._items.append(record)
            self.stats["pushed"] += 1
            self.stats["high_water_mark"] = max(self.stats["high_water_mark"], len(self._items))
            self._changed.notify_all()

    async def drain(self, max_items: int) -> List[TokenRecord]:
        """Remove up to ``max_items`` records in FIFO order without waiting for more."""
        if max_items <= 0:
            return []

        async with self._changed:
            count = min(max_items, len(self._items))
            drained = [self._items.popleft() for _ in range(count)]
            if drained:
                self.stats["drained"] += len(drained)
                self._changed.notify_all()
            return drained

    async def wait_for_depth(
        self,
        threshold: int,
        timeout: Optional[float] = None,
        interrupt: Optional[asyncio.Event] = None
    ) -> bool:
        """
        Wait until at least ``threshold`` records are queued.

        Returns True when the depth was reached, False on timeout or when
        ``interrupt`` is set (followed by ``notify``).
        """
        def _ready():
            return len(self._items) >= threshold or (interrupt is not None and interrupt.is_set())

        async with self._changed:
            try:
                await asyncio.wait_for(self._changed.wait_for(_ready), timeout)
            except asyncio.TimeoutError:
                return False
            return len(self._items) >= threshold

    async def notify(self):
        """Wake any waiters so they can re-check their stop flags."""
        async with self._changed:
            self._changed.notify_all()

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "depth": len(self._items),
            "capacity": self.capacity
        }
