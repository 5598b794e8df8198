"""
Client-side per-instance state.

``InstanceStore`` is the sink the router writes into. Events for the active
instance are announced to subscribers as they arrive; events for other
instances accumulate in their background state until they are activated.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .events import AgentStatus, now_ms

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 200_000

RUNNING_STATUSES = (AgentStatus.RUNNING, AgentStatus.PAUSING, AgentStatus.PAUSED)


@dataclass
class TokenCounts:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


@dataclass
class ContextWindow:
    used: int = 0
    max: int = DEFAULT_CONTEXT_WINDOW

    @property
    def utilization(self) -> float:
        return self.used / self.max if self.max else 0.0


@dataclass
class SessionStats:
    started_at: int = 0
    event_count: int = 0
    token_usage: TokenCounts = field(default_factory=TokenCounts)


@dataclass
class InstanceState:
    instance_id: str
    status: AgentStatus = AgentStatus.STOPPED
    events: List[Dict[str, Any]] = field(default_factory=list)
    chat_events: List[Dict[str, Any]] = field(default_factory=list)
    token_usage: TokenCounts = field(default_factory=TokenCounts)
    context_window: ContextWindow = field(default_factory=ContextWindow)
    session_stats: SessionStats = field(default_factory=SessionStats)
    current_task_id: Optional[str] = None
    _seen_ids: Set[str] = field(default_factory=set, repr=False)
    _seen_chat_ids: Set[str] = field(default_factory=set, repr=False)

    def add_event(self, event: Dict[str, Any]) -> bool:
        """Append an event unless its server id was already seen."""
        event_id = event.get('id')
        if event_id is not None:
            if event_id in self._seen_ids:
                return False
            self._seen_ids.add(event_id)
        self.events.append(event)
        self.session_stats.event_count += 1
        return True

    def add_chat_event(self, event: Dict[str, Any]) -> bool:
        event_id = event.get('id')
        if event_id is not None:
            if event_id in self._seen_chat_ids:
                return False
            self._seen_chat_ids.add(event_id)
        self.chat_events.append(event)
        return True

    def reset_session_stats(self, started_at: int) -> None:
        self.session_stats = SessionStats(started_at=started_at)

    def clear_events(self) -> None:
        self.events.clear()
        self._seen_ids.clear()


StoreListener = Callable[[str, str, Dict[str, Any]], Any]


class InstanceStore:
    """All instances known to one client, plus connection-level flags."""

    def __init__(self, active_instance_id: Optional[str] = 'default'):
        self.instances: Dict[str, InstanceState] = {}
        self.active_instance_id = active_instance_id
        self.was_running_before_disconnect = False
        self.connection_errors: List[Dict[str, Any]] = []
        self._listeners: List[StoreListener] = []

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register ``listener(kind, instance_id, payload)``; returns an unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: str, instance_id: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(kind, instance_id, payload)
            except Exception as e:
                logger.error(f'Store listener failed: {e}')

    def get(self, instance_id: str) -> InstanceState:
        state = self.instances.get(instance_id)
        if state is None:
            state = InstanceState(instance_id=instance_id)
            self.instances[instance_id] = state
        return state

    def is_active(self, instance_id: str) -> bool:
        return instance_id == self.active_instance_id

    def set_active_instance(self, instance_id: str) -> None:
        self.active_instance_id = instance_id
        self.get(instance_id)
        self._notify('active', instance_id, {})

    @property
    def active(self) -> Optional[InstanceState]:
        if self.active_instance_id is None:
            return None
        return self.get(self.active_instance_id)

    # -- sinks ----------------------------------------------------------------

    def add_event(self, instance_id: str, event: Dict[str, Any]) -> bool:
        added = self.get(instance_id).add_event(event)
        if added and self.is_active(instance_id):
            self._notify('event', instance_id, event)
        return added

    def add_background_event(self, instance_id: str, event: Dict[str, Any]) -> bool:
        added = self.get(instance_id).add_event(event)
        if added:
            self._notify('background_event', instance_id, event)
        return added

    def add_chat_event(self, instance_id: str, event: Dict[str, Any]) -> bool:
        added = self.get(instance_id).add_chat_event(event)
        if added:
            self._notify('chat_event', instance_id, event)
        return added

    def set_events(self, instance_id: str, events: List[Dict[str, Any]]) -> None:
        state = self.get(instance_id)
        state.clear_events()
        for event in events:
            state.add_event(event)

    def set_status(self, instance_id: str, status: AgentStatus) -> None:
        state = self.get(instance_id)
        if state.status == status:
            return
        state.status = status
        self._notify('status', instance_id, {'status': status.value})

    def get_status(self, instance_id: str) -> AgentStatus:
        return self.get(instance_id).status

    # -- connection flags -----------------------------------------------------

    def mark_running_before_disconnect(self) -> None:
        active = self.active
        if active is not None and active.status in RUNNING_STATUSES:
            self.was_running_before_disconnect = True

    def clear_running_before_disconnect(self) -> None:
        self.was_running_before_disconnect = False

    def add_connection_error(self, message: str, permanent: bool = False) -> Dict[str, Any]:
        error = {
            'type': 'connection_error',
            'timestamp': now_ms(),
            'message': message,
            'permanent': permanent,
        }
        self.connection_errors.append(error)
        self._notify('connection_error', self.active_instance_id or '', error)
        return error

    def reset(self) -> None:
        self.instances.clear()
        self.was_running_before_disconnect = False
        self.connection_errors.clear()
