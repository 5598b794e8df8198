"""
Server-side event history.

Each ``(source, instance)`` pair keeps a bounded list of wire events. The log
assigns the server ids used for client de-duplication and the monotonically
increasing ``eventIndex`` carried by each ``agent:event`` envelope.
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from .events import AgentStatus, Envelope, EventSource, event_to_wire, now_ms

logger = logging.getLogger(__name__)


@dataclass
class _Stream:
    events: Deque[Dict[str, Any]]
    next_index: int = 0
    status: AgentStatus = AgentStatus.IDLE
    workspace_id: Optional[str] = None


@dataclass
class PendingEvents:
    events: List[Dict[str, Any]] = field(default_factory=list)
    total_events: int = 0
    status: AgentStatus = AgentStatus.IDLE


class EventLog:
    """Bounded per-instance event history."""

    def __init__(self, max_events: int = 5000):
        self.max_events = max_events
        self._streams: Dict[Tuple[EventSource, str], _Stream] = {}

    def _stream(self, source: EventSource, instance_id: str) -> _Stream:
        key = (EventSource(source), instance_id)
        stream = self._streams.get(key)
        if stream is None:
            stream = _Stream(events=deque(maxlen=self.max_events))
            self._streams[key] = stream
        return stream

    def append(
        self,
        source: EventSource,
        instance_id: str,
        event: Any,
        workspace_id: Optional[str] = None,
    ) -> Envelope:
        """Record an event and return the ``agent:event`` envelope for it."""
        stream = self._stream(source, instance_id)
        wire = event_to_wire(event)
        if not wire.get('id'):
            wire['id'] = uuid.uuid4().hex
        wire.setdefault('timestamp', now_ms())

        if wire.get('type') == 'status' and wire.get('status'):
            try:
                stream.status = AgentStatus(wire['status'])
            except ValueError:
                logger.debug(f'Ignoring unknown status {wire["status"]!r}')

        if workspace_id is not None:
            stream.workspace_id = workspace_id

        stream.events.append(wire)
        index = stream.next_index
        stream.next_index += 1

        return Envelope(
            type='agent:event',
            source=source,
            instance_id=instance_id,
            workspace_id=stream.workspace_id,
            event=wire,
            event_index=index,
            timestamp=wire['timestamp'],
        )

    def events_since(
        self,
        source: EventSource,
        instance_id: str,
        last_event_timestamp: Optional[int] = None,
    ) -> PendingEvents:
        """Events at or after ``last_event_timestamp`` (all when it is falsy)."""
        stream = self._streams.get((EventSource(source), instance_id))
        if stream is None:
            return PendingEvents()

        history = list(stream.events)
        if last_event_timestamp:
            events = [e for e in history if e.get('timestamp', 0) >= last_event_timestamp]
        else:
            events = history
        return PendingEvents(events=events, total_events=len(history), status=stream.status)

    def history(self, source: EventSource, instance_id: str) -> List[Dict[str, Any]]:
        stream = self._streams.get((EventSource(source), instance_id))
        return list(stream.events) if stream else []

    def status(self, instance_id: str) -> AgentStatus:
        stream = self._streams.get((EventSource.PRIMARY, instance_id))
        return stream.status if stream else AgentStatus.IDLE

    def set_status(self, instance_id: str, status: AgentStatus) -> None:
        self._stream(EventSource.PRIMARY, instance_id).status = status

    def instances(self) -> List[str]:
        return sorted({instance_id for _, instance_id in self._streams})

    def clear(self, instance_id: Optional[str] = None) -> None:
        if instance_id is None:
            self._streams.clear()
            return
        for key in [k for k in self._streams if k[1] == instance_id]:
            del self._streams[key]
