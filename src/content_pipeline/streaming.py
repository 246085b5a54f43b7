"""Per-content live event channels for Server-Sent Events.

One StreamingManager instance lives in each runtime. It maps a content id to
at most one open StreamChannel. Opening a second stream for the same content
replaces (and closes) the first: one observer at a time, no fan-out.

Events sent while no channel is open are dropped, never buffered.

The map is process-local. Running several API processes needs a shared
pub/sub layer in place of this class.
"""

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"


class EventType(str, Enum):
    LOG = "log"  # Free-form narration
    PROGRESS = "progress"  # Stage index/total and percent
    ERROR = "error"  # Terminal failure, closes the channel
    COMPLETE = "complete"  # Pipeline success, closes the channel


CLOSING_EVENTS = (EventType.ERROR, EventType.COMPLETE)


class StreamEvent(BaseModel):
    """One event as delivered to the observer."""

    type: EventType
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json()}\n\n"


_CLOSED = object()


class StreamChannel:
    """Single-subscriber queue of events for one content id."""

    def __init__(self, content_id: str):
        self.content_id = content_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def put(self, event: StreamEvent) -> bool:
        if self.closed:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self) -> None:
        """Stop the channel after the events already queued."""
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    async def events(self, heartbeat_interval_s: float = 15.0) -> AsyncIterator[str]:
        """Yield SSE frames until the channel closes.

        A ``: heartbeat`` comment is yielded after ``heartbeat_interval_s``
        without events so proxies keep the connection open.
        """
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=heartbeat_interval_s)
            except asyncio.TimeoutError:
                yield HEARTBEAT_FRAME
                continue

            if item is _CLOSED:
                return
            yield item.to_sse()


class StreamingManager:
    """Content id → open channel, with typed send helpers."""

    def __init__(self):
        self._channels: Dict[str, StreamChannel] = {}

    def open_stream(self, content_id: str) -> StreamChannel:
        existing = self._channels.pop(content_id, None)
        if existing is not None:
            logger.info("Replacing open stream for content %s", content_id)
            existing.close()

        channel = StreamChannel(content_id)
        self._channels[content_id] = channel
        self.send_log(content_id, "Connected", {"content_id": content_id})
        return channel

    def send(
        self,
        content_id: str,
        event_type: EventType,
        message: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Deliver an event to the open channel.

        Returns:
            False when no channel is open for ``content_id`` (event dropped)
        """
        channel = self._channels.get(content_id)
        if channel is None:
            return False

        event = StreamEvent(type=EventType(event_type), message=message, data=data or {})
        delivered = channel.put(event)

        if event.type in CLOSING_EVENTS:
            self.disconnect(content_id, channel)
        return delivered

    def send_log(self, content_id: str, message: str, data: Optional[Dict[str, Any]] = None) -> bool:
        return self.send(content_id, EventType.LOG, message, data)

    def send_progress(
        self,
        content_id: str,
        message: str,
        stage_index: Optional[int] = None,
        total_stages: Optional[int] = None,
        percent: Optional[int] = None,
        **data: Any,
    ) -> bool:
        payload = {"stage_index": stage_index, "total_stages": total_stages, "percent": percent}
        payload.update(data)
        return self.send(content_id, EventType.PROGRESS, message, payload)

    def send_error(self, content_id: str, message: str, data: Optional[Dict[str, Any]] = None) -> bool:
        return self.send(content_id, EventType.ERROR, message, data)

    def send_complete(self, content_id: str, message: str, data: Optional[Dict[str, Any]] = None) -> bool:
        return self.send(content_id, EventType.COMPLETE, message, data)

    def disconnect(self, content_id: str, channel: Optional[StreamChannel] = None) -> bool:
        """Close and forget the channel for ``content_id``.

        With ``channel`` given, only that channel is removed; a newer channel
        that replaced it stays open.
        """
        current = self._channels.get(content_id)
        if channel is not None and current is not channel:
            channel.close()
            return False
        if current is None:
            return False

        del self._channels[content_id]
        current.close()
        return True

    def is_connected(self, content_id: str) -> bool:
        return content_id in self._channels

    def connection_count(self) -> int:
        return len(self._channels)

    def close_all(self) -> None:
        for content_id in list(self._channels):
            self.disconnect(content_id)
