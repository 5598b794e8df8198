"""Local event cache contract and an in-memory implementation."""

import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class EventCache(Protocol):
    """Persistent per-session event store used by the synchronizer.

    ``save_event`` is an idempotent append keyed by the event's server id.
    ``update_session_task_id`` is best effort and reports success.
    """

    async def save_event(self, event: Dict[str, Any], session_id: str) -> None: ...

    async def update_session_task_id(self, session_id: str, task_id: str) -> bool: ...


class MemoryEventCache:
    """Dict-backed cache, used when no persistent store is configured."""

    def __init__(self):
        self.sessions: Dict[str, List[Dict[str, Any]]] = {}
        self.session_task_ids: Dict[str, str] = {}
        self._seen: Dict[str, set] = {}

    async def save_event(self, event: Dict[str, Any], session_id: str) -> None:
        events = self.sessions.setdefault(session_id, [])
        seen = self._seen.setdefault(session_id, set())
        event_id = event.get('id')
        if event_id is not None:
            if event_id in seen:
                return
            seen.add(event_id)
        events.append(dict(event))

    async def update_session_task_id(self, session_id: str, task_id: str) -> bool:
        if session_id not in self.sessions:
            logger.debug(f'No cached session {session_id} to link to task {task_id}')
            return False
        self.session_task_ids[session_id] = task_id
        return True

    def get_events(self, session_id: str) -> List[Dict[str, Any]]:
        return list(self.sessions.get(session_id, []))

    def get_task_id(self, session_id: str) -> Optional[str]:
        return self.session_task_ids.get(session_id)
