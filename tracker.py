#!/usr/bin/env python3
"""
In-flight update tracking.

The set of sources currently being updated is owned by a single worker task.
Every change goes through its message queue, so add/remove requests are
applied in the order they were submitted and subscribers always observe a
consistent set.
"""

from asyncio import Queue, CancelledError, Event, create_task
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, List, Optional

from config import get_logger

# Module-specific logger
logger = get_logger("tracker")

Subscriber = Callable[[FrozenSet[int]], None]


@dataclass
class _Request:
    action: str
    source_id: Optional[int] = None
    done: Event = field(default_factory=Event)
    result: FrozenSet[int] = frozenset()


class InFlightTracker:
    """Serialized owner of the set of source ids with an update in progress."""

    def __init__(self) -> None:
        self.queue: Queue = Queue()
        self._current: FrozenSet[int] = frozenset()
        self._subscribers: List[Subscriber] = []
        self.running = False
        self.worker_task = None

    @property
    def current(self) -> FrozenSet[int]:
        """The last published in-flight set."""
        return self._current

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("In-flight tracker started")

    async def stop(self) -> None:
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        # Release anyone still waiting on an acknowledgement
        while not self.queue.empty():
            request = self.queue.get_nowait()
            request.done.set()

        logger.debug("In-flight tracker stopped")

    async def _worker(self) -> None:
        while self.running:
            request = await self.queue.get()
            try:
                self._apply(request)
            finally:
                request.done.set()
                self.queue.task_done()

    def _apply(self, request: _Request) -> None:
        if request.action == 'add':
            if request.source_id not in self._current:
                self._publish(self._current | {request.source_id})
        elif request.action == 'remove':
            if request.source_id in self._current:
                self._publish(self._current - {request.source_id})
        elif request.action != 'snapshot':
            raise ValueError(f"Unknown tracker action: {request.action}")
        request.result = self._current

    def _publish(self, updated: FrozenSet[int]) -> None:
        self._current = updated
        for callback in list(self._subscribers):
            try:
                callback(updated)
            except Exception as e:
                logger.error(f"In-flight subscriber {callback!r} failed: {e}")

    def _submit(self, action: str, source_id: Optional[int] = None) -> _Request:
        if not self.running:
            raise RuntimeError("In-flight tracker is not running")
        request = _Request(action, source_id)
        self.queue.put_nowait(request)
        return request

    async def add(self, source_id: int) -> None:
        """Mark a source as in flight; returns once the change is applied."""
        request = self._submit('add', source_id)
        await request.done.wait()

    async def remove(self, source_id: int) -> None:
        """Clear the in-flight mark of a source; a no-op if it is not marked."""
        request = self._submit('remove', source_id)
        await request.done.wait()

    async def snapshot(self) -> FrozenSet[int]:
        """Return the in-flight set after every earlier request has been applied."""
        request = self._submit('snapshot')
        await request.done.wait()
        return request.result

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Call ``callback`` with the new set after every change.

        Callbacks run on the tracker's worker task and must not block.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe
