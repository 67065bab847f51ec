"""In-process change feed backed by asyncio queues.

Database webhooks POSTed to the HTTP surface are published here and fanned
out to every channel subscribed to the table.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any

logger = logging.getLogger(__name__)

_CLOSED = object()


class QueueChannel:
    """One subscriber's queue of raw change payloads for a table."""

    def __init__(self, table: str, feed: "InMemoryChangeFeed"):
        self.table = table
        self._feed = feed
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, payload: dict[str, Any]) -> None:
        if not self._closed:
            self._queue.put_nowait(payload)

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict[str, Any]:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def unsubscribe(self) -> None:
        """Detach from the feed and end iteration once queued payloads are consumed."""
        if self._closed:
            return
        self._closed = True
        self._feed._detach(self)
        self._queue.put_nowait(_CLOSED)
        logger.debug(f"Unsubscribed channel for table '{self.table}'")


class InMemoryChangeFeed:
    """Fan-out of published change payloads to per-table channels."""

    def __init__(self):
        self._channels: dict[str, list[QueueChannel]] = defaultdict(list)
        self.published = 0

    async def subscribe(self, table: str) -> QueueChannel:
        channel = QueueChannel(table, self)
        self._channels[table].append(channel)
        logger.info(f"Subscribed to changes on table '{table}'")
        return channel

    def publish(self, table: str, payload: dict[str, Any]) -> int:
        """Deliver a payload to every subscriber of ``table``.

        Returns:
            Number of channels the payload was delivered to
        """
        channels = list(self._channels.get(table, ()))
        for channel in channels:
            channel.put(payload)
        self.published += 1
        if not channels:
            logger.debug(f"No subscribers for change on table '{table}'")
        return len(channels)

    def subscriber_count(self, table: str) -> int:
        return len(self._channels.get(table, ()))

    def _detach(self, channel: QueueChannel) -> None:
        channels = self._channels.get(channel.table)
        if channels and channel in channels:
            channels.remove(channel)
