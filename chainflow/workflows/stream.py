"""Ordered, multi-consumer event channel scoped to one execution."""

import asyncio
from typing import Any, AsyncIterator, Collection, List, Optional

from loguru import logger

from ..models.workflow import StreamEvent


class StreamController:
    """Append-only event log with any number of async subscribers.

    ``write`` is synchronous and never blocks. Each subscriber replays the
    log from the beginning, then follows new events in write order until
    the controller is closed.
    """

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        self._events: List[StreamEvent] = []
        self._closed = False
        self._changed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def events(self) -> List[StreamEvent]:
        """Snapshot of everything written so far."""
        return list(self._events)

    def _notify(self) -> None:
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    def write(self, event: StreamEvent) -> None:
        """Enqueue an event; silently dropped once the controller is closed."""
        if self._closed:
            logger.debug(f"Dropping {event.type} event on closed stream {self.execution_id}")
            return
        self._events.append(event)
        self._notify()

    def emit(self, type: str, from_: str, payload: Any = None) -> StreamEvent:
        """Build an event for this execution and write it."""
        event = StreamEvent(
            type=type, from_=from_, execution_id=self.execution_id, payload=payload
        )
        self.write(event)
        return event

    async def pipe_from(
        self,
        source: AsyncIterator[Any],
        prefix: Optional[str] = None,
        filter: Optional[Collection[str]] = None,
    ) -> int:
        """Forward every event of ``source`` into this controller.

        Items may be :class:`StreamEvent` instances or dicts with ``type``,
        ``payload`` and optionally ``from`` keys. ``prefix`` is prepended to
        the originating id; ``filter`` keeps only the listed event types.

        Returns:
            Number of events forwarded
        """
        forwarded = 0
        async for item in source:
            if isinstance(item, StreamEvent):
                event_type, origin, payload = item.type, item.from_, item.payload
            elif isinstance(item, dict):
                event_type = str(item.get("type", "event"))
                origin = item.get("from")
                payload = item.get("payload")
            else:
                event_type, origin, payload = "event", None, item

            if filter is not None and event_type not in filter:
                continue

            if prefix and origin:
                origin = f"{prefix}.{origin}"
            else:
                origin = prefix or origin or "external"

            self.emit(event_type, origin, payload)
            forwarded += 1
        return forwarded

    async def subscribe(self) -> AsyncIterator[StreamEvent]:
        """Yield every event, past and future, until the controller closes."""
        index = 0
        while True:
            if index < len(self._events):
                event = self._events[index]
                index += 1
                yield event
                continue
            if self._closed:
                return
            await self._changed.wait()

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self.subscribe()

    def close(self) -> None:
        """End every subscription once it has drained the log."""
        if not self._closed:
            self._closed = True
            self._notify()
