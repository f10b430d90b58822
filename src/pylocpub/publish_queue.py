"""Bounded FIFO buffer between the location source and the broker.

Every mutation completes without a suspension point, so on a single event
loop the producer and the drain loop never observe a half-applied change.
Only waits (``put`` under the block policy, ``get``) suspend.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Iterable

from pylocpub.config import OverflowPolicy
from pylocpub.exceptions import QueueEmptyError, QueueFullError
from pylocpub.models.sample import LocationSample

_logger = logging.getLogger(__name__)


def _wake_all(waiters: list[asyncio.Future[None]]) -> None:
    pending = list(waiters)
    waiters.clear()
    for waiter in pending:
        if not waiter.done():
            waiter.set_result(None)


class PublishQueue:
    """Ordered, bounded sample queue with a configurable overflow policy."""

    def __init__(
        self,
        capacity: int = 50,
        policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        *,
        put_timeout: float | None = 5.0,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._policy = policy
        self._put_timeout = put_timeout
        self._items: deque[LocationSample] = deque()
        # Blocked producers, in arrival order. Only the head may take a slot.
        self._putters: deque[object] = deque()
        self._space_waiters: list[asyncio.Future[None]] = []
        self._item_waiters: list[asyncio.Future[None]] = []

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def policy(self) -> OverflowPolicy:
        return self._policy

    def __len__(self) -> int:
        return len(self._items)

    def empty(self) -> bool:
        return not self._items

    def full(self) -> bool:
        return len(self._items) >= self._capacity

    def snapshot(self) -> list[LocationSample]:
        """Copy of the queued samples, head first."""
        return list(self._items)

    def _append(self, sample: LocationSample) -> LocationSample | None:
        evicted: LocationSample | None = None
        if self.full():
            evicted = self._items.popleft()
            _logger.debug("Publish queue at capacity (%d); evicted sample ts=%s", self._capacity, evicted.timestamp)
        self._items.append(sample)
        _wake_all(self._item_waiters)
        return evicted

    async def _wait(self, waiters: list[asyncio.Future[None]]) -> None:
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        waiters.append(waiter)
        try:
            await waiter
        finally:
            if waiter in waiters:
                waiters.remove(waiter)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def put_nowait(self, sample: LocationSample) -> LocationSample | None:
        """Append *sample*; return the evicted head under ``drop_oldest``.

        Raises
        ------
        QueueFullError
            Under the ``block`` policy, when the queue is at capacity or
            other producers are already waiting for space.
        """
        if self._policy is OverflowPolicy.BLOCK and (self.full() or self._putters):
            raise QueueFullError(f"publish queue full ({self._capacity} samples)")
        return self._append(sample)

    async def put(self, sample: LocationSample, timeout: float | None = None) -> LocationSample | None:
        """Append *sample*, waiting for space under the ``block`` policy.

        Producers that find the queue full queue up behind each other, so
        samples are appended in arrival order.

        Raises
        ------
        QueueFullError
            If no space freed up within *timeout* (defaults to the
            ``put_timeout`` given at construction).
        """
        if self._policy is OverflowPolicy.DROP_OLDEST or not (self.full() or self._putters):
            return self.put_nowait(sample)

        wait_for = self._put_timeout if timeout is None else timeout
        ticket = object()
        self._putters.append(ticket)
        try:
            async with asyncio.timeout(wait_for):
                while self.full() or self._putters[0] is not ticket:
                    await self._wait(self._space_waiters)
        except TimeoutError as exc:
            raise QueueFullError(f"publish queue stayed full for {wait_for:.3f}s") from exc
        finally:
            self._putters.remove(ticket)
            # The next producer in line re-checks for space.
            _wake_all(self._space_waiters)
        return self._append(sample)

    def requeue(self, samples: Iterable[LocationSample]) -> list[LocationSample]:
        """Put unsent *samples* back at the head, keeping their order.

        Requeued samples are older than anything already queued, so when
        they do not all fit the oldest ones are returned as overflow.
        """
        pending = list(samples)
        if not pending:
            return []
        room = max(self._capacity - len(self._items), 0)
        overflow = pending[: max(len(pending) - room, 0)]
        kept = pending[len(overflow) :]
        self._items.extendleft(reversed(kept))
        if kept:
            _wake_all(self._item_waiters)
        if overflow:
            _logger.debug("Requeue overflow; %d samples did not fit", len(overflow))
        return overflow

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def get_nowait(self) -> LocationSample:
        """Remove and return the head.

        Raises
        ------
        QueueEmptyError
            If no sample is queued.
        """
        if not self._items:
            raise QueueEmptyError("publish queue is empty")
        sample = self._items.popleft()
        _wake_all(self._space_waiters)
        return sample

    async def get(self) -> LocationSample:
        """Remove and return the head, waiting until one is available."""
        while not self._items:
            await self._wait(self._item_waiters)
        return self.get_nowait()

    def drain(self, max_items: int) -> list[LocationSample]:
        """Remove up to *max_items* samples from the head in FIFO order."""
        taken: list[LocationSample] = []
        while self._items and len(taken) < max_items:
            taken.append(self._items.popleft())
        if taken:
            _wake_all(self._space_waiters)
        return taken

    def clear(self) -> int:
        """Drop every queued sample and return how many were dropped."""
        count = len(self._items)
        self._items.clear()
        if count:
            _wake_all(self._space_waiters)
        return count
