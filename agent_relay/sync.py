"""
Event synchronization and reconciliation.

Tracks the last event timestamp seen per ``(source, instance)``, detects
session boundaries inside the primary stream and repairs the local cache
when the server reports more events than the client holds.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .cache import EventCache
from .events import EventSource, now_ms
from .state import InstanceStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRACKED_INSTANCES = 256


@dataclass
class SessionInfo:
    id: str
    started_at: int


@dataclass
class _InstanceRecord:
    last_timestamps: Dict[EventSource, int] = field(default_factory=dict)
    session: Optional[SessionInfo] = None


def is_session_boundary(event: Dict[str, Any]) -> bool:
    """A session starts at a ``session_start`` event or a legacy ``system``/``init``."""
    event_type = event.get('type')
    if event_type == 'session_start':
        return True
    return event_type == 'system' and event.get('subtype') == 'init'


class EventSynchronizer:
    """Per-instance trackers, session map and reconciliation."""

    def __init__(
        self,
        store: InstanceStore,
        cache: Optional[EventCache] = None,
        max_tracked_instances: int = DEFAULT_MAX_TRACKED_INSTANCES,
    ):
        self.store = store
        self.cache = cache
        self.max_tracked_instances = max_tracked_instances
        self._records: 'OrderedDict[str, _InstanceRecord]' = OrderedDict()

    # ========================================================================
    # Record store
    # ========================================================================

    def _record(self, instance_id: str) -> _InstanceRecord:
        record = self._records.get(instance_id)
        if record is None:
            record = _InstanceRecord()
            self._records[instance_id] = record
            while len(self._records) > self.max_tracked_instances:
                evicted, _ = self._records.popitem(last=False)
                logger.debug(f'Evicted sync record for instance {evicted}')
        else:
            self._records.move_to_end(instance_id)
        return record

    def track_event(self, source: EventSource, instance_id: str, timestamp: Optional[int]) -> None:
        if not isinstance(timestamp, (int, float)):
            return
        record = self._record(instance_id)
        source = EventSource(source)
        if timestamp >= record.last_timestamps.get(source, 0):
            record.last_timestamps[source] = int(timestamp)

    def get_last_event_timestamp(self, source: EventSource, instance_id: str) -> Optional[int]:
        record = self._records.get(instance_id)
        if record is None:
            return None
        return record.last_timestamps.get(EventSource(source))

    def tracked_instances(self, source: EventSource) -> List[str]:
        source = EventSource(source)
        return [
            instance_id
            for instance_id, record in self._records.items()
            if source in record.last_timestamps
        ]

    def clear_event_timestamps(self) -> None:
        """Forget all trackers and sessions."""
        self._records.clear()

    def reset(self) -> None:
        self.clear_event_timestamps()

    # ========================================================================
    # Sessions
    # ========================================================================

    def is_session_boundary(self, event: Dict[str, Any]) -> bool:
        return is_session_boundary(event)

    def begin_session(self, instance_id: str, event: Dict[str, Any]) -> SessionInfo:
        timestamp = event.get('timestamp')
        if not isinstance(timestamp, (int, float)):
            timestamp = now_ms()
        session_id = event.get('sessionId') or f'{instance_id}-{int(timestamp)}'

        session = SessionInfo(id=session_id, started_at=int(timestamp))
        self._record(instance_id).session = session
        self.store.get(instance_id).reset_session_stats(int(timestamp))
        logger.info(f'New session {session_id} for instance {instance_id}')
        return session

    def get_current_session(self, instance_id: str) -> Optional[SessionInfo]:
        record = self._records.get(instance_id)
        return record.session if record else None

    def get_current_session_id(self, instance_id: str) -> Optional[str]:
        session = self.get_current_session(instance_id)
        return session.id if session else None

    def set_current_session_id(self, instance_id: str, session_id: str) -> SessionInfo:
        session = SessionInfo(id=session_id, started_at=now_ms())
        self._record(instance_id).session = session
        return session

    # ========================================================================
    # Reconciliation
    # ========================================================================

    async def reconcile(
        self,
        source: EventSource,
        instance_id: str,
        server_events: List[Dict[str, Any]],
        server_total: int,
        local_count: int,
    ) -> int:
        """Repair the local cache when it is behind the server.

        Returns the number of events written to the cache.
        """
        source = EventSource(source)
        if local_count == server_total:
            return 0

        if local_count > server_total:
            # Unresolved: more local than server events may mean server-side loss.
            logger.debug(
                f'Local {source.value} events for {instance_id} ahead of server '
                f'(local={local_count}, server={server_total}), no action taken'
            )
            return 0

        logger.warning(
            f'Event count mismatch for {source.value} instance {instance_id}: '
            f'local={local_count}, server={server_total} '
            f'({server_total - local_count} missing)'
        )

        session = self.get_current_session(instance_id)
        if session is None or self.cache is None:
            return 0

        written = 0
        for event in server_events:
            try:
                await self.cache.save_event(event, session.id)
                written += 1
            except Exception as e:
                logger.error(
                    f'Failed to persist event {event.get("id")} for session {session.id}: {e}'
                )
        logger.info(
            f'Reconciled {written} {source.value} events for {instance_id} into session {session.id}'
        )
        return written

    # ========================================================================
    # Live event bookkeeping
    # ========================================================================

    async def persist_event(self, instance_id: str, event: Dict[str, Any]) -> bool:
        session = self.get_current_session(instance_id)
        if session is None or self.cache is None:
            return False
        try:
            await self.cache.save_event(event, session.id)
            return True
        except Exception as e:
            logger.error(f'Failed to persist event for session {session.id}: {e}')
            return False

    async def link_task(self, instance_id: str, event: Dict[str, Any]) -> bool:
        """Attach the task id of a ``task_started`` event to the current session."""
        if event.get('type') != 'task_started':
            return False
        task_id = event.get('taskId')
        session = self.get_current_session(instance_id)
        if not task_id or session is None or self.cache is None:
            return False

        self.store.get(instance_id).current_task_id = task_id
        try:
            ok = await self.cache.update_session_task_id(session.id, task_id)
        except Exception as e:
            logger.error(f'Failed to link session {session.id} to task {task_id}: {e}')
            return False
        if not ok:
            logger.warning(f'Could not link session {session.id} to task {task_id}')
        return bool(ok)

    def record_token_usage(self, instance_id: str, event: Dict[str, Any]) -> bool:
        """Add token usage carried by ``event`` to the instance counters."""
        try:
            usage = _extract_usage(event)
            if usage is None:
                return False
            input_tokens, output_tokens = usage
            if input_tokens <= 0 and output_tokens <= 0:
                return False

            state = self.store.get(instance_id)
            state.token_usage.input += input_tokens
            state.token_usage.output += output_tokens
            state.session_stats.token_usage.input += input_tokens
            state.session_stats.token_usage.output += output_tokens
            state.context_window.used = state.token_usage.total
            return True
        except Exception as e:
            logger.debug(f'Ignoring unreadable usage payload: {e}')
            return False


def _extract_usage(event: Dict[str, Any]):
    event_type = event.get('type')
    if event_type == 'stream_event':
        stream_event = event.get('event')
        if not isinstance(stream_event, dict) or stream_event.get('type') != 'message_delta':
            return None
        usage = stream_event.get('usage')
        if not isinstance(usage, dict):
            return None
        input_tokens = (
            int(usage.get('input_tokens') or 0)
            + int(usage.get('cache_creation_input_tokens') or 0)
            + int(usage.get('cache_read_input_tokens') or 0)
        )
        return input_tokens, int(usage.get('output_tokens') or 0)

    if event_type == 'result':
        usage = event.get('usage')
        if not isinstance(usage, dict):
            return None
        input_tokens = usage.get('inputTokens') or usage.get('input_tokens') or 0
        output_tokens = usage.get('outputTokens') or usage.get('output_tokens') or 0
        return int(input_tokens), int(output_tokens)

    return None
