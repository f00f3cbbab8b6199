"""Broadcast bus for failure events."""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, List, Optional, Union

from .models import FailureEvent

logger = logging.getLogger(__name__)

FailureListener = Callable[[FailureEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Delivers published failures to every subscriber in emission order.

    Publishing never blocks the publisher: events are queued and a background
    dispatcher task hands them to listeners, so listener side effects may land
    after the publisher has moved on.
    """

    def __init__(self):
        self._listeners: List[FailureListener] = []
        self._queue: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self.published_count = 0

    def subscribe(self, listener: FailureListener):
        self._listeners.append(listener)

    def unsubscribe(self, listener: FailureListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish(self, event: FailureEvent):
        """Queue an event for delivery; must be called from inside the event loop."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        self._ensure_dispatcher()
        self._queue.put_nowait(event)
        self.published_count += 1
        logger.debug(f"Published failure from {event.source}: {event.message}")

    def _ensure_dispatcher(self):
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop())

    async def _dispatch_loop(self):
        while True:
            event = await self._queue.get()
            try:
                for listener in list(self._listeners):
                    try:
                        result = listener(event)
                        if inspect.isawaitable(result):
                            await result
                    except Exception as e:
                        logger.error(f"Failure listener {listener!r} raised: {e}")
            finally:
                self._queue.task_done()

    async def join(self):
        """Wait until every published event has been delivered."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self):
        """Deliver what is queued, then stop the dispatcher."""
        await self.join()
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
