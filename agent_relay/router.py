"""
Multi-instance router.

Validates inbound frames and dispatches them to the instance they belong
to. Chat-source events only ever reach the active instance; primary-source
events reach the active sink or the background sink of their instance.
"""

import logging
from typing import Any, Dict, Optional

from .events import AgentStatus, Envelope, EventSource, now_ms, parse_envelope
from .state import InstanceStore
from .sync import EventSynchronizer

logger = logging.getLogger(__name__)


def _parse_status(value: Any) -> Optional[AgentStatus]:
    if isinstance(value, AgentStatus):
        return value
    try:
        return AgentStatus(value)
    except ValueError:
        return None


class InstanceRouter:
    """Applies server frames to the ``InstanceStore``."""

    def __init__(self, store: InstanceStore, synchronizer: EventSynchronizer):
        self.store = store
        self.synchronizer = synchronizer

    async def route(self, payload: Dict[str, Any]) -> bool:
        """Handle one decoded frame. Returns False when it was dropped."""
        if not isinstance(payload, dict):
            return False

        # Plain server notices travel outside the envelope schema.
        if payload.get('type') == 'user_message':
            self._handle_user_message(payload)
            return True
        if payload.get('type') == 'error':
            self._handle_server_error(payload)
            return True

        envelope = parse_envelope(payload)
        if envelope is None:
            return False

        if envelope.type == 'agent:event':
            await self._handle_agent_event(envelope)
        elif envelope.type == 'agent:pending_events':
            await self._handle_pending_events(envelope)
        elif envelope.type == 'connected':
            await self._handle_connected(envelope)
        elif envelope.type == 'pong':
            pass
        else:
            logger.debug(f'Router ignoring {envelope.type} frame')
        return True

    def _target_instance(self, envelope: Envelope) -> str:
        return envelope.instance_id or self.store.active_instance_id or 'default'

    # ========================================================================
    # Live events
    # ========================================================================

    async def _handle_agent_event(self, envelope: Envelope) -> None:
        instance_id = envelope.instance_id
        event = envelope.event
        source = envelope.source

        if source == EventSource.CHAT:
            if not self.store.is_active(instance_id):
                logger.debug(f'Dropping chat event for inactive instance {instance_id}')
                return
            self.synchronizer.track_event(source, instance_id, event.get('timestamp'))
            self.store.add_chat_event(instance_id, event)
            return

        self.synchronizer.track_event(source, instance_id, event.get('timestamp'))

        if self.synchronizer.is_session_boundary(event):
            self.synchronizer.begin_session(instance_id, event)

        if self.store.is_active(instance_id):
            added = self.store.add_event(instance_id, event)
        else:
            added = self.store.add_background_event(instance_id, event)
        if not added:
            return

        if event.get('type') == 'status':
            status = _parse_status(event.get('status'))
            if status is not None:
                self.store.set_status(instance_id, status)
        elif self.store.get_status(instance_id) == AgentStatus.STOPPED:
            # Events only arrive from a live agent
            self.store.set_status(instance_id, AgentStatus.RUNNING)

        self.synchronizer.record_token_usage(instance_id, event)
        await self.synchronizer.persist_event(instance_id, event)
        await self.synchronizer.link_task(instance_id, event)

    def _handle_user_message(self, payload: Dict[str, Any]) -> None:
        instance_id = payload.get('instanceId') or self.store.active_instance_id or 'default'
        self.store.add_event(
            instance_id,
            {
                'type': 'user_message',
                'timestamp': payload.get('timestamp') or now_ms(),
                'message': payload.get('message'),
            },
        )

    def _handle_server_error(self, payload: Dict[str, Any]) -> None:
        instance_id = self.store.active_instance_id or 'default'
        logger.warning(f'Server reported error: {payload.get("error")}')
        self.store.add_event(
            instance_id,
            {
                'type': 'server_error',
                'timestamp': payload.get('timestamp') or now_ms(),
                'error': payload.get('error'),
            },
        )

    # ========================================================================
    # Replay and reconciliation
    # ========================================================================

    def _local_count(self, source: EventSource, instance_id: str) -> int:
        state = self.store.get(instance_id)
        if source == EventSource.CHAT:
            return len(state.chat_events)
        return len(state.events)

    async def _handle_pending_events(self, envelope: Envelope) -> None:
        source = envelope.source or EventSource.PRIMARY
        instance_id = self._target_instance(envelope)
        events = envelope.events or []

        if source == EventSource.CHAT and not self.store.is_active(instance_id):
            return

        if envelope.status is not None and source == EventSource.PRIMARY:
            self.store.set_status(instance_id, envelope.status)

        local_count = self._local_count(source, instance_id)

        if events:
            logger.info(f'Processing {len(events)} pending events for instance {instance_id}')
        for event in events:
            self.synchronizer.track_event(source, instance_id, event.get('timestamp'))
            if source == EventSource.CHAT:
                self.store.add_chat_event(instance_id, event)
            elif self.store.is_active(instance_id):
                self.store.add_event(instance_id, event)
            else:
                self.store.add_background_event(instance_id, event)

        if envelope.total_events is not None:
            await self.synchronizer.reconcile(
                source, instance_id, events, envelope.total_events, local_count
            )

    async def _handle_connected(self, envelope: Envelope) -> None:
        instance_id = self._target_instance(envelope)
        events = envelope.events or []

        if envelope.status is not None:
            self.store.set_status(instance_id, envelope.status)

        local_count = self._local_count(EventSource.PRIMARY, instance_id)

        if events and local_count == 0:
            self.store.set_events(instance_id, events)
        else:
            # Merge so a following agent:pending_events sees the repaired count
            for event in events:
                if self.store.is_active(instance_id):
                    self.store.add_event(instance_id, event)
                else:
                    self.store.add_background_event(instance_id, event)
        for event in events:
            self.synchronizer.track_event(EventSource.PRIMARY, instance_id, event.get('timestamp'))

        server_total = envelope.total_events if envelope.total_events is not None else len(events)
        await self.synchronizer.reconcile(
            EventSource.PRIMARY, instance_id, events, server_total, local_count
        )
