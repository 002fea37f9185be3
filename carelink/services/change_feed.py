"""In-process change notifications for live queries."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)


class ChangeFeed:
    """Tells live readers that a collection changed.

    Signals carry no payload; subscribers re-run their own query. Publishing
    must happen on the event loop thread.
    """

    def __init__(self) -> None:
        # collection -> queues of live readers
        self._subscribers: dict[str, set[asyncio.Queue]] = {}

    def subscribe(self, collection: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(collection, set()).add(queue)
        return queue

    def unsubscribe(self, collection: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(collection)
        if queues:
            queues.discard(queue)
            if not queues:
                del self._subscribers[collection]

    def publish(self, collection: str) -> None:
        queues = self._subscribers.get(collection, set())
        for queue in queues:
            queue.put_nowait(collection)
        if queues:
            logger.debug("Change on %s pushed to %s live readers", collection, len(queues))
