"""Per-run event fan-out for SSE streams.

Every event a run publishes is buffered, so a client that connects late (or
reconnects) first receives everything it missed and then the live tail. A
stream ends after the run's `done` event.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import structlog
from pydantic import BaseModel

from app.models.contracts import DoneEvent, HeartbeatEvent

log = structlog.get_logger("run_events")


def sse_format(event: BaseModel) -> str:
    return f"data: {event.model_dump_json(exclude_none=True)}\n\n"


@dataclass
class _Channel:
    buffer: list[BaseModel] = field(default_factory=list)
    subscribers: list[asyncio.Queue] = field(default_factory=list)
    closed: bool = False


class RunEventBroker:
    """In-memory fan-out of run events with replay."""

    def __init__(self) -> None:
        self._channels: dict[str, _Channel] = {}

    def open(self, run_id: str) -> None:
        """Start a fresh channel for a run (new run or retry). Drops the old buffer."""
        self._channels[run_id] = _Channel()

    def has_channel(self, run_id: str) -> bool:
        return run_id in self._channels

    def publish(self, event: BaseModel) -> None:
        run_id = getattr(event, "run_id")
        channel = self._channels.get(run_id)
        if channel is None:
            log.warning("event_for_unknown_run", run_id=run_id, event_type=getattr(event, "type", None))
            return
        channel.buffer.append(event)
        if isinstance(event, DoneEvent):
            channel.closed = True
        for queue in list(channel.subscribers):
            queue.put_nowait(event)

    def buffered(self, run_id: str) -> list[BaseModel]:
        channel = self._channels.get(run_id)
        return list(channel.buffer) if channel else []

    def _subscribe(self, run_id: str) -> tuple[list[BaseModel], asyncio.Queue | None]:
        channel = self._channels[run_id]
        replay = list(channel.buffer)
        if channel.closed:
            return replay, None
        queue: asyncio.Queue = asyncio.Queue()
        channel.subscribers.append(queue)
        return replay, queue

    def _unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        channel = self._channels.get(run_id)
        if channel is not None and queue in channel.subscribers:
            channel.subscribers.remove(queue)

    async def stream(self, run_id: str, *, heartbeat_s: float) -> AsyncIterator[BaseModel]:
        """Replay buffered events, then yield live ones until `done`.

        Emits a heartbeat whenever `heartbeat_s` passes without traffic.
        """
        if run_id not in self._channels:
            yield DoneEvent(run_id=run_id)
            return

        replay, queue = self._subscribe(run_id)
        try:
            for event in replay:
                yield event
            if queue is None:
                return
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=heartbeat_s)
                except TimeoutError:
                    yield HeartbeatEvent(run_id=run_id)
                    continue
                yield event
                if isinstance(event, DoneEvent):
                    return
        finally:
            if queue is not None:
                self._unsubscribe(run_id, queue)
