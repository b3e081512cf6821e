"""Subscriber fan-out: metrics counter and live listener channels.

Each decoded event is serialized once and offered to every connected listener.
Offers never block: every listener owns a bounded queue bound to its event
loop, and a full queue drops the message for that listener only.
"""

from __future__ import annotations

import asyncio
import itertools
import json
from typing import Protocol

from prometheus_client import CollectorRegistry, Counter

from fillfeed.core.events import DecodedEvent, FillEvent
from fillfeed.utils.logger import get_logger

logger = get_logger("fanout")

FILL_LABELS = ("market", "isGlobal", "takerIsBuy")
DEFAULT_QUEUE_SIZE = 1000


def _label_bool(value: bool) -> str:
    return "true" if value else "false"


# ================================================================
# Metrics
# ================================================================


class MetricsSink(Protocol):
    """Anything that can count a labelled fill."""

    def increment(self, labels: dict[str, str]) -> None: ...


class PrometheusFillCounter:
    """``fills{market, isGlobal, takerIsBuy}`` counter on an explicit registry."""

    def __init__(self, registry: CollectorRegistry) -> None:
        self._counter = Counter(
            "fills",
            "Number of fills",
            labelnames=FILL_LABELS,
            registry=registry,
        )

    def increment(self, labels: dict[str, str]) -> None:
        self._counter.labels(**labels).inc()


# ================================================================
# Listener channels
# ================================================================


class ListenerChannel:
    """Outbound message queue for one connected listener.

    ``offer`` and ``close`` are safe to call from any thread; the queue is
    only touched on the listener's own event loop.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        name: str,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self.name = name
        self._loop = loop
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, message: str) -> None:
        """Queue a message without waiting. Raises RuntimeError if the loop is gone."""
        if self._closed:
            return
        self._loop.call_soon_threadsafe(self._put, message)

    def close(self) -> None:
        """Ask the listener's sender to flush and disconnect."""
        if self._closed:
            return
        self._closed = True
        try:
            self._loop.call_soon_threadsafe(self._put_sentinel)
        except RuntimeError as e:
            logger.debug("listener_loop_closed", listener=self.name, error=str(e))

    async def get(self) -> str | None:
        """Next message, or None once the channel is closed."""
        return await self._queue.get()

    def pending(self) -> int:
        return self._queue.qsize()

    def _put(self, message: str) -> None:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("listener_message_dropped", listener=self.name, dropped=self.dropped)

    def _put_sentinel(self) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(None)


class ListenerRegistry:
    """Set of currently connected listener channels."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._channels: dict[str, ListenerChannel] = {}
        self._ids = itertools.count(1)

    def register(self, loop: asyncio.AbstractEventLoop | None = None) -> ListenerChannel:
        """Create a channel bound to ``loop`` (default: the running loop)."""
        if loop is None:
            loop = asyncio.get_running_loop()
        channel = ListenerChannel(loop, f"listener-{next(self._ids)}", self._queue_size)
        self._channels[channel.name] = channel
        return channel

    def unregister(self, channel: ListenerChannel) -> None:
        self._channels.pop(channel.name, None)

    def publish(self, message: str) -> int:
        """Offer ``message`` to every channel. Returns how many accepted it."""
        delivered = 0
        for channel in list(self._channels.values()):
            try:
                channel.offer(message)
            except RuntimeError as e:
                logger.warning("listener_channel_failed", listener=channel.name, error=str(e))
                self.unregister(channel)
                continue
            delivered += 1
        return delivered

    def close_all(self) -> None:
        """Close every current channel. New listeners may still register."""
        channels = list(self._channels.values())
        for channel in channels:
            channel.close()
            self.unregister(channel)
        if channels:
            logger.info("listeners_closed", count=len(channels))

    @property
    def count(self) -> int:
        return len(self._channels)


# ================================================================
# Fan-out
# ================================================================


class EventFanout:
    """Broadcast decoded events to the metrics sink and live listeners."""

    def __init__(self, listeners: ListenerRegistry, metrics: MetricsSink | None = None) -> None:
        self._listeners = listeners
        self._metrics = metrics

    @property
    def listeners(self) -> ListenerRegistry:
        return self._listeners

    def dispatch(self, event: DecodedEvent) -> int:
        """Count and broadcast one event. Returns the number of listeners reached."""
        if isinstance(event, FillEvent) and self._metrics is not None:
            self._metrics.increment(
                {
                    "market": event.market,
                    "isGlobal": _label_bool(event.is_maker_global),
                    "takerIsBuy": _label_bool(event.taker_is_buy),
                }
            )

        message = json.dumps({"type": event.kind.value, "data": event.to_dict()})
        delivered = self._listeners.publish(message)
        logger.debug(
            "event_dispatched",
            type=event.kind.value,
            signature=event.signature,
            listeners=delivered,
        )
        return delivered

    def close(self) -> None:
        """Disconnect all current listeners."""
        self._listeners.close_all()
