"""
Run Progress Feed.

The scheduler publishes RunEvents here; subscribers (the canvas, via the
WebSocket route) consume them as a finite async iterator that replays
what already happened and then follows the run until it is terminal.
"""

from typing import Any, AsyncIterator, Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import asyncio
import logging


logger = logging.getLogger(__name__)


class RunEventType(str, Enum):
    """Types of run events."""
    RUN_STARTED = "run_started"
    NODE_STARTED = "node_started"
    NODE_PROGRESS = "node_progress"
    NODE_RETRYING = "node_retrying"
    NODE_COMPLETED = "node_completed"
    NODE_ERRORED = "node_errored"
    NODE_SKIPPED = "node_skipped"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_TERMINAL = "run_terminal"


@dataclass
class RunEvent:
    """A single run event."""
    run_id: str
    type: RunEventType
    node_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    sequence: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "type": self.type.value,
            "node_id": self.node_id,
            "data": self.data,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
        }


class _RunChannel:
    def __init__(self):
        self.events: List[RunEvent] = []
        self.closed = False
        self.condition = asyncio.Condition()


class RunEventFeed:
    """
    Per-run event log with subscription.

    Usage:
        async for event in feed.subscribe(run_id):
            print(event.type, event.node_id)
    """

    def __init__(self):
        self._channels: Dict[str, _RunChannel] = {}

    def _channel(self, run_id: str) -> _RunChannel:
        channel = self._channels.get(run_id)
        if channel is None:
            channel = _RunChannel()
            self._channels[run_id] = channel
        return channel

    def open(self, run_id: str) -> None:
        """Prepare a channel so subscribers can attach before the first event."""
        self._channel(run_id)

    async def publish(
        self,
        run_id: str,
        event_type: RunEventType,
        node_id: Optional[str] = None,
        **data: Any,
    ) -> RunEvent:
        channel = self._channel(run_id)
        if channel.closed:
            raise RuntimeError(f"Event feed for run '{run_id}' is closed")
        event = RunEvent(
            run_id=run_id,
            type=event_type,
            node_id=node_id,
            data=data,
            sequence=len(channel.events),
        )
        async with channel.condition:
            channel.events.append(event)
            if event_type == RunEventType.RUN_TERMINAL:
                channel.closed = True
            channel.condition.notify_all()
        logger.debug(f"[{run_id}] {event_type.value} {node_id or ''}")
        return event

    def history(self, run_id: str) -> List[RunEvent]:
        channel = self._channels.get(run_id)
        return list(channel.events) if channel else []

    def is_closed(self, run_id: str) -> bool:
        channel = self._channels.get(run_id)
        return bool(channel and channel.closed)

    async def subscribe(self, run_id: str) -> AsyncIterator[RunEvent]:
        """Yield every event of the run, ending after the terminal event."""
        channel = self._channel(run_id)
        position = 0
        while True:
            async with channel.condition:
                await channel.condition.wait_for(
                    lambda: position < len(channel.events) or channel.closed
                )
                pending = channel.events[position:]
                closed = channel.closed
            for event in pending:
                yield event
            position += len(pending)
            if closed and position >= len(channel.events):
                return
