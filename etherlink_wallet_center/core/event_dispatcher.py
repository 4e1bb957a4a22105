"""Async publish/subscribe hub for session, balance and transfer events."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, DefaultDict, Dict, List, Optional


LOGGER = logging.getLogger(__name__)

EventPublisher = Callable[[str, Dict[str, Any]], Awaitable[None]]

WILDCARD = "*"


@dataclass
class Subscription:
    event: str
    subscriber_id: str
    queue: "asyncio.Queue[Optional[Dict[str, Any]]]"


class EventDispatcher:
    """Fan out events to every subscriber queue interested in them.

    Services publish with :meth:`emit`; observers hold a queue obtained from
    :meth:`subscribe` and read ``{"event": ..., "data": ...}`` messages off it.
    Bounded queues apply the configured overflow strategy so a slow observer
    can never stall the session.
    """

    _OVERFLOW_STRATEGIES = {"drop_new", "drop_oldest", "block"}

    def __init__(
        self,
        *,
        default_queue_size: int = 0,
        overflow_strategy: str = "drop_new",
    ) -> None:
        if overflow_strategy not in self._OVERFLOW_STRATEGIES:
            raise ValueError(
                "overflow_strategy must be one of "
                f"{sorted(self._OVERFLOW_STRATEGIES)}"
            )
        if default_queue_size < 0:
            raise ValueError("default_queue_size must be >= 0")

        self._subscriptions: DefaultDict[str, List[Subscription]] = defaultdict(list)
        self._by_queue: Dict[asyncio.Queue, Subscription] = {}
        self._default_queue_size = default_queue_size
        self._overflow_strategy = overflow_strategy
        self._delivered: Counter[str] = Counter()
        self._dropped: Counter[str] = Counter()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------
    def subscribe(
        self,
        event_name: str,
        *,
        maxsize: Optional[int] = None,
        subscriber_id: str = "anonymous",
    ) -> "asyncio.Queue[Optional[Dict[str, Any]]]":
        """Return a queue receiving ``event_name`` (``"*"`` for everything)."""

        size = self._default_queue_size if maxsize is None else max(maxsize, 0)
        queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue(maxsize=size)
        subscription = Subscription(event=event_name, subscriber_id=subscriber_id, queue=queue)
        self._subscriptions[event_name].append(subscription)
        self._by_queue[queue] = subscription
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        subscription = self._by_queue.pop(queue, None)
        if subscription is None:
            return
        subscribers = self._subscriptions.get(subscription.event)
        if subscribers and subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscriptions.pop(subscription.event, None)

    def publisher(self) -> EventPublisher:
        """Callable handed to services that only need to publish."""

        async def _publish(event_name: str, payload: Dict[str, Any]) -> None:
            await self.emit(event_name, payload)

        return _publish

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    async def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        subscribers = list(self._subscriptions.get(event_name, []))
        subscribers.extend(self._subscriptions.get(WILDCARD, []))

        if not subscribers:
            LOGGER.debug("No subscribers for event '%s'", event_name)
            return

        message = {"event": event_name, "data": payload}
        for subscription in subscribers:
            await self._deliver(subscription, event_name, message)

    async def _deliver(
        self,
        subscription: Subscription,
        event_name: str,
        message: Dict[str, Any],
    ) -> None:
        queue = subscription.queue
        if queue.maxsize == 0 or self._overflow_strategy == "block":
            await queue.put(message)
            self._delivered[event_name] += 1
            return

        while True:
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                self._dropped[event_name] += 1
                LOGGER.warning(
                    "Queue overflow for event '%s' (subscriber=%s strategy=%s size=%d)",
                    event_name,
                    subscription.subscriber_id,
                    self._overflow_strategy,
                    queue.maxsize,
                )
                if self._overflow_strategy == "drop_new":
                    return
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    await asyncio.sleep(0)
                continue
            else:
                self._delivered[event_name] += 1
                return

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    def metrics_snapshot(self) -> Dict[str, Dict[str, int]]:
        return {
            "delivered": dict(self._delivered),
            "dropped": dict(self._dropped),
        }

    def subscriber_snapshot(self) -> List[Dict[str, Any]]:
        return [
            {
                "event": subscription.event,
                "subscriber": subscription.subscriber_id,
                "size": subscription.queue.qsize(),
                "maxsize": subscription.queue.maxsize,
            }
            for subscription in self._by_queue.values()
        ]
