"""In-process event bus for summary progress streaming."""

from __future__ import annotations

import asyncio
from collections import OrderedDict, defaultdict, deque
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    SUMMARY_STARTED = "summary_started"
    SUMMARY_CHUNK = "summary_chunk"
    SUMMARY_COMPLETED = "summary_completed"
    SUMMARY_FAILED = "summary_failed"


class SummaryEvent(BaseModel):
    """A single progress event for one video."""

    id: int
    video_key: str
    event_type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Publish/subscribe event bus with a bounded replay buffer per video.

    Args:
        buffer_size: Events kept per video for replay.
        max_videos: Videos with a replay buffer. Publishing for a new
            video beyond this drops the least recently active buffer.
    """

    def __init__(self, buffer_size: int = 200, max_videos: int = 100) -> None:
        if max_videos < 1:
            msg = f"max_videos must be >= 1, got {max_videos}"
            raise ValueError(msg)
        self._buffer_size = buffer_size
        self._max_videos = max_videos
        self._next_id = 1
        self._buffers: OrderedDict[str, deque[SummaryEvent]] = OrderedDict()
        self._subscribers: dict[str, set[asyncio.Queue[SummaryEvent]]] = defaultdict(
            set
        )

    def publish(
        self,
        video_key: str,
        event_type: EventType,
        payload: dict[str, Any] | None = None,
    ) -> SummaryEvent:
        event = SummaryEvent(
            id=self._next_id,
            video_key=video_key,
            event_type=event_type,
            payload=payload or {},
        )
        self._next_id += 1

        buffer = self._buffers.get(video_key)
        if buffer is None:
            buffer = self._buffers[video_key] = deque(maxlen=self._buffer_size)
        self._buffers.move_to_end(video_key)
        buffer.append(event)
        while len(self._buffers) > self._max_videos:
            self._buffers.popitem(last=False)

        for queue in list(self._subscribers.get(video_key, set())):
            queue.put_nowait(event)

        return event

    def subscribe(
        self,
        video_key: str,
        last_event_id: int | None = None,
    ) -> asyncio.Queue[SummaryEvent]:
        """Subscribe to a video's events, replaying buffered ones first."""
        queue: asyncio.Queue[SummaryEvent] = asyncio.Queue()

        for event in self.recent_events(video_key, last_event_id=last_event_id):
            queue.put_nowait(event)

        self._subscribers[video_key].add(queue)
        return queue

    def unsubscribe(self, video_key: str, queue: asyncio.Queue[SummaryEvent]) -> None:
        subscribers = self._subscribers.get(video_key)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[video_key]

    def forget(self, video_key: str) -> bool:
        """Drop a video's replay buffer. Live subscribers stay attached."""
        return self._buffers.pop(video_key, None) is not None

    def recent_events(
        self,
        video_key: str,
        last_event_id: int | None = None,
    ) -> list[SummaryEvent]:
        events = list(self._buffers.get(video_key, ()))
        if last_event_id is None:
            return events
        return [event for event in events if event.id > last_event_id]
