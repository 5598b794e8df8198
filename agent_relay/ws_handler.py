"""
WebSocket hub delivering adapter events to clients.

Adapters are attached to instance ids. Their canonical events are recorded
in the ``EventLog`` and broadcast as ``agent:event`` envelopes. Clients that
reconnect send ``agent:reconnect`` and receive ``agent:pending_events`` with
everything at or after their last seen timestamp.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from fastapi import WebSocket, WebSocketDisconnect

from .agent_adapter import AgentAdapterError, AgentMessage, AgentStartOptions
from .adapter_registry import AdapterRegistry, get_registry
from .event_log import EventLog
from .events import AgentStatus, Envelope, EventSource, now_ms

logger = logging.getLogger(__name__)

DEFAULT_INSTANCE_ID = 'default'


@dataclass
class _Client:
    websocket: Any
    queue: 'asyncio.Queue[Optional[str]]' = field(default_factory=asyncio.Queue)
    writer: Optional[asyncio.Task] = None


@dataclass
class AttachedAdapter:
    adapter: Any
    adapter_id: str
    source: EventSource
    workspace_id: Optional[str] = None


class AgentHub:
    """Owns attached adapters, the event log and the connected clients."""

    def __init__(
        self,
        event_log: Optional[EventLog] = None,
        registry: Optional[AdapterRegistry] = None,
        workspace_id: Optional[str] = None,
    ):
        self.event_log = event_log or EventLog()
        self.registry = registry or get_registry()
        self.workspace_id = workspace_id
        self._adapters: Dict[Tuple[EventSource, str], AttachedAdapter] = {}
        self._clients: Dict[str, _Client] = {}

    # ========================================================================
    # Adapters
    # ========================================================================

    def attach(
        self,
        instance_id: str,
        adapter: Any,
        source: EventSource = EventSource.PRIMARY,
        workspace_id: Optional[str] = None,
        adapter_id: Optional[str] = None,
    ) -> None:
        """Route an adapter's events to ``instance_id`` on ``source``."""
        source = EventSource(source)
        key = (source, instance_id)
        if key in self._adapters:
            raise ValueError(f'Instance {instance_id} already has a {source.value} adapter')

        attached = AttachedAdapter(
            adapter=adapter,
            adapter_id=adapter_id or getattr(adapter, 'adapter_id', 'agent'),
            source=source,
            workspace_id=workspace_id or self.workspace_id,
        )
        self._adapters[key] = attached

        adapter.on_event(
            lambda event: self.publish(source, instance_id, event, attached.workspace_id)
        )
        adapter.on_error(
            lambda error: logger.warning(f'Instance {instance_id} adapter error: {error}')
        )
        logger.info(f'Attached {attached.adapter_id} adapter to {source.value}/{instance_id}')

    def detach(self, instance_id: str, source: EventSource = EventSource.PRIMARY) -> bool:
        return self._adapters.pop((EventSource(source), instance_id), None) is not None

    def get_adapter(
        self, instance_id: str, source: EventSource = EventSource.PRIMARY
    ) -> Optional[Any]:
        attached = self._adapters.get((EventSource(source), instance_id))
        return attached.adapter if attached else None

    def instances(self) -> Dict[str, Dict[str, Any]]:
        result = {}
        for (source, instance_id), attached in self._adapters.items():
            if source != EventSource.PRIMARY:
                continue
            result[instance_id] = {
                'instanceId': instance_id,
                'adapter': attached.adapter_id,
                'workspaceId': attached.workspace_id,
                'status': attached.adapter.status.value,
                'totalEvents': len(self.event_log.history(source, instance_id)),
            }
        return result

    async def start_instance(
        self,
        instance_id: str,
        adapter_id: str,
        options: Optional[AgentStartOptions] = None,
        workspace_id: Optional[str] = None,
    ) -> Any:
        """Create (if needed) and start the primary adapter for an instance."""
        adapter = self.get_adapter(instance_id)
        if adapter is None:
            adapter = self.registry.create(adapter_id)
            self.attach(instance_id, adapter, workspace_id=workspace_id, adapter_id=adapter_id)
        await adapter.start(options)
        return adapter

    async def stop_instance(self, instance_id: str, force: bool = False) -> bool:
        adapter = self.get_adapter(instance_id)
        if adapter is None:
            return False
        await adapter.stop(force=force)
        return True

    # ========================================================================
    # Delivery
    # ========================================================================

    def publish(
        self,
        source: EventSource,
        instance_id: str,
        event: Any,
        workspace_id: Optional[str] = None,
    ) -> Envelope:
        envelope = self.event_log.append(source, instance_id, event, workspace_id)
        self.broadcast(envelope.to_wire())
        return envelope

    def broadcast(self, payload: Dict[str, Any]) -> None:
        data = json.dumps(payload)
        for client in list(self._clients.values()):
            client.queue.put_nowait(data)

    def send_to(self, client_id: str, payload: Dict[str, Any]) -> None:
        client = self._clients.get(client_id)
        if client is not None:
            client.queue.put_nowait(json.dumps(payload))

    async def _writer(self, client_id: str, client: _Client) -> None:
        # One writer per client keeps per-connection ordering
        while True:
            data = await client.queue.get()
            if data is None:
                return
            try:
                await client.websocket.send_text(data)
            except Exception as e:
                logger.error(f'Failed to send to {client_id}: {e}')
                self._clients.pop(client_id, None)
                return

    # ========================================================================
    # Connections
    # ========================================================================

    async def connect(self, websocket: Any, instance_id: str = DEFAULT_INSTANCE_ID) -> str:
        await websocket.accept()
        client_id = f'ws_{uuid.uuid4().hex[:12]}'
        client = _Client(websocket=websocket)
        client.writer = asyncio.create_task(self._writer(client_id, client))
        self._clients[client_id] = client
        logger.info(f'WebSocket connected: {client_id}')

        pending = self.event_log.events_since(EventSource.PRIMARY, instance_id)
        adapter = self.get_adapter(instance_id)
        status = adapter.status if adapter is not None else pending.status
        self.send_to(
            client_id,
            {
                'type': 'connected',
                'instanceId': instance_id,
                'timestamp': now_ms(),
                'status': status.value,
                'events': pending.events,
                'totalEvents': pending.total_events,
            },
        )
        return client_id

    async def disconnect(self, client_id: str) -> None:
        client = self._clients.pop(client_id, None)
        if client is None:
            return
        client.queue.put_nowait(None)
        if client.writer is not None:
            try:
                await client.writer
            except Exception as e:
                logger.debug(f'Writer for {client_id} ended with error: {e}')
        logger.info(f'WebSocket disconnected: {client_id}')

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def handle_message(self, client_id: str, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug(f'Ignoring non-JSON frame from {client_id}')
            return
        if not isinstance(message, dict):
            return

        msg_type = message.get('type')
        if msg_type == 'ping':
            self.send_to(client_id, {'type': 'pong', 'timestamp': now_ms()})
        elif msg_type == 'agent:reconnect':
            self._handle_reconnect(client_id, message)
        elif msg_type == 'chat_message':
            self._handle_chat_message(client_id, message)
        elif msg_type == 'pong':
            pass
        else:
            logger.debug(f'Unknown message type from {client_id}: {msg_type}')

    def _handle_reconnect(self, client_id: str, message: Dict[str, Any]) -> None:
        try:
            source = EventSource(message.get('source') or EventSource.PRIMARY.value)
        except ValueError:
            self._send_error(client_id, f'Unknown source: {message.get("source")}')
            return
        instance_id = message.get('instanceId') or DEFAULT_INSTANCE_ID
        last_ts = message.get('lastEventTimestamp')
        if not isinstance(last_ts, (int, float)) or last_ts <= 0:
            last_ts = None

        pending = self.event_log.events_since(source, instance_id, last_ts)
        adapter = self.get_adapter(instance_id, source)
        status = adapter.status if adapter is not None else AgentStatus.STOPPED
        self.send_to(
            client_id,
            Envelope(
                type='agent:pending_events',
                source=source,
                instance_id=instance_id,
                events=pending.events,
                total_events=pending.total_events,
                status=status,
            ).to_wire(),
        )

    def _handle_chat_message(self, client_id: str, message: Dict[str, Any]) -> None:
        text = message.get('message')
        instance_id = message.get('instanceId') or DEFAULT_INSTANCE_ID
        if not text:
            self._send_error(client_id, 'Message is required')
            return

        source = EventSource.CHAT if message.get('source') == 'chat' else EventSource.PRIMARY
        adapter = self.get_adapter(instance_id, source)
        if adapter is None:
            self._send_error(client_id, f"Instance '{instance_id}' not found. Start it first.")
            return

        try:
            adapter.send(AgentMessage.user(text))
        except AgentAdapterError as e:
            self._send_error(client_id, str(e))
            return

        self.broadcast(
            {
                'type': 'user_message',
                'message': text,
                'instanceId': instance_id,
                'source': source.value,
                'timestamp': now_ms(),
            }
        )

    def _send_error(self, client_id: str, error: str) -> None:
        self.send_to(client_id, {'type': 'error', 'error': error, 'timestamp': now_ms()})

    async def serve(self, websocket: WebSocket, instance_id: str = DEFAULT_INSTANCE_ID) -> None:
        """Run one client connection until it closes."""
        client_id = await self.connect(websocket, instance_id)
        try:
            while True:
                data = await websocket.receive_text()
                await self.handle_message(client_id, data)
        except WebSocketDisconnect:
            logger.info(f'WebSocket disconnected: {client_id}')
        except Exception as e:
            logger.error(f'WebSocket error for {client_id}: {e}')
        finally:
            await self.disconnect(client_id)
