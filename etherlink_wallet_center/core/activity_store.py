"""In-memory history of session and transfer activity."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from copy import deepcopy
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Mapping, Optional

from .event_dispatcher import EventDispatcher
from .event_schemas import (
    BALANCE_UPDATED,
    SESSION_CHANGED,
    TRANSFER_NOTICE,
    TRANSFER_STATUS,
)


__all__ = ["ActivityStore", "ActivityEntry"]

LOGGER = logging.getLogger(__name__)

_SESSION_EVENTS = {SESSION_CHANGED, BALANCE_UPDATED}
_TRANSFER_EVENTS = {TRANSFER_STATUS, TRANSFER_NOTICE}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class ActivityEntry:
    """Single recorded event tagged with a timestamp."""

    timestamp: str
    event: str
    payload: Mapping[str, Any]

    def to_payload(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp, "event": self.event, "payload": dict(self.payload)}


class ActivityStore:
    """Keep rolling windows of recent session and transfer events.

    Nothing is written to disk; the history is lost with the process.
    """

    def __init__(
        self,
        *,
        max_session_records: int = 200,
        max_transfer_records: int = 200,
    ) -> None:
        if max_session_records < 0:
            raise ValueError("max_session_records must be non-negative")
        if max_transfer_records < 0:
            raise ValueError("max_transfer_records must be non-negative")

        self._session: Deque[ActivityEntry] = deque(maxlen=max_session_records)
        self._transfers: Deque[ActivityEntry] = deque(maxlen=max_transfer_records)
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._dispatcher: Optional[EventDispatcher] = None

    # ------------------------------------------------------------------
    # Dispatcher binding
    # ------------------------------------------------------------------
    async def attach(self, dispatcher: EventDispatcher) -> None:
        if self._task is not None:
            return
        self._dispatcher = dispatcher
        self._queue = dispatcher.subscribe("*", subscriber_id="activity-store")
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def detach(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._queue is not None and self._dispatcher is not None:
            self._dispatcher.unsubscribe(self._queue)
        self._queue = None
        self._dispatcher = None

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            message = await self._queue.get()
            if message is None:
                break
            self.record(message["event"], message["data"])

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def record(self, event: str, payload: Mapping[str, Any]) -> None:
        entry = ActivityEntry(timestamp=_now_iso(), event=event, payload=deepcopy(dict(payload)))
        if event in _TRANSFER_EVENTS:
            self._transfers.append(entry)
        elif event in _SESSION_EVENTS:
            self._session.append(entry)
        else:
            LOGGER.debug("Not recording event '%s'", event)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def session_history(self) -> List[Dict[str, Any]]:
        return self._serialise(self._session)

    def transfer_history(self) -> List[Dict[str, Any]]:
        return self._serialise(self._transfers)

    def history(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "session": self.session_history(),
            "transfers": self.transfer_history(),
        }

    def clear(self) -> None:
        self._session.clear()
        self._transfers.clear()

    def _serialise(self, entries: Iterable[ActivityEntry]) -> List[Dict[str, Any]]:
        return [entry.to_payload() for entry in entries]
