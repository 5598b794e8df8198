"""
Client connection manager.

Keeps one WebSocket to the relay server per manager, reconnects with capped
exponential backoff, asks the server for missed events after every
(re)connect and auto-resumes a run that was interrupted by the disconnect.
"""

import asyncio
import json
import logging
import random
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .cache import EventCache
from .config import ClientConfig, load_client_config
from .events import AgentStatus, EventSource, now_ms
from .retry import MAX_RECONNECT_ATTEMPTS, calculate_reconnect_delay
from .router import InstanceRouter
from .session_api import SessionStateApi
from .state import InstanceStore
from .sync import EventSynchronizer

logger = logging.getLogger(__name__)

WsConnect = Callable[[str], Awaitable[Any]]
Scheduler = Callable[[float, Callable[[], None]], Any]

RESUMABLE_STATUSES = (AgentStatus.RUNNING, AgentStatus.PAUSED)


class ConnectionStatus(str, Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'


class ConnectionManager:
    """One reconnecting relay connection plus the state it feeds."""

    def __init__(
        self,
        url: str,
        store: Optional[InstanceStore] = None,
        cache: Optional[EventCache] = None,
        synchronizer: Optional[EventSynchronizer] = None,
        router: Optional[InstanceRouter] = None,
        session_api: Optional[SessionStateApi] = None,
        ws_connect: Optional[WsConnect] = None,
        scheduler: Optional[Scheduler] = None,
        rand: Optional[Callable[[], float]] = None,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        heartbeat: Optional[float] = None,
    ):
        self.url = url
        self.store = store or InstanceStore()
        self.synchronizer = synchronizer or EventSynchronizer(self.store, cache)
        self.router = router or InstanceRouter(self.store, self.synchronizer)
        self.session_api = session_api
        self.max_reconnect_attempts = max_reconnect_attempts
        self.heartbeat = heartbeat

        self._ws_connect = ws_connect or self._default_ws_connect
        self._scheduler = scheduler
        self._rand = rand or random.random
        self._http: Optional[aiohttp.ClientSession] = None

        self.status = ConnectionStatus.DISCONNECTED
        self.reconnect_attempts = 0
        self._ws: Optional[Any] = None
        self._conn_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Optional[Any] = None
        self._intentional_close = False
        self._initialized = False
        self._has_connected = False
        self.auto_resume_task: Optional[asyncio.Task] = None

        self._status_listeners: List[Callable[[ConnectionStatus], Any]] = []
        self._failure_listeners: List[Callable[[Dict[str, Any]], Any]] = []

    # ========================================================================
    # Listeners
    # ========================================================================

    def on_status_change(self, callback: Callable[[ConnectionStatus], Any]) -> None:
        self._status_listeners.append(callback)

    def on_permanent_failure(self, callback: Callable[[Dict[str, Any]], Any]) -> None:
        self._failure_listeners.append(callback)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        for callback in list(self._status_listeners):
            try:
                callback(status)
            except Exception as e:
                logger.error(f'Connection status listener failed: {e}')

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def init(self) -> None:
        """Open the connection once for this context."""
        if self._initialized:
            return
        self._initialized = True
        self.connect()

    async def dispose(self) -> None:
        await self.disconnect()
        if self.session_api is not None:
            await self.session_api.close()
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None
        self._initialized = False

    def connect(self) -> None:
        if self.status in (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED):
            return
        self._cancel_reconnect()
        self._intentional_close = False
        self._set_status(ConnectionStatus.CONNECTING)
        self._conn_task = asyncio.get_running_loop().create_task(self._run())

    async def disconnect(self) -> None:
        """Close the connection on purpose; no reconnect follows."""
        self._intentional_close = True
        self._cancel_reconnect()

        ws = self._ws
        task = self._conn_task
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f'Error closing websocket: {e}')
        if task is not None and not task.done():
            if ws is None:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when cancelling
        self._conn_task = None
        self._ws = None
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def reconnect(self) -> None:
        """Manual retry: forget the backoff state and connect now."""
        self.reconnect_attempts = 0
        self._cancel_reconnect()
        self.connect()

    async def reset(self) -> None:
        """Drop the connection and every piece of client state."""
        await self.disconnect()
        self.reconnect_attempts = 0
        self._has_connected = False
        self.synchronizer.reset()
        self.store.reset()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # ========================================================================
    # Socket loop
    # ========================================================================

    async def _default_ws_connect(self, url: str):
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return await self._http.ws_connect(url, heartbeat=self.heartbeat)

    async def _run(self) -> None:
        try:
            ws = await self._ws_connect(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f'Connection to {self.url} failed: {e}')
            self._handle_close()
            return

        self._ws = ws
        await self._on_open()

        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._on_message(msg.data)
                elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSE):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f'Connection to {self.url} dropped: {e}')

        self._handle_close()

    async def _on_open(self) -> None:
        self._set_status(ConnectionStatus.CONNECTED)
        self.reconnect_attempts = 0
        logger.info(f'Connected to {self.url}')

        for source in EventSource:
            for instance_id in self.synchronizer.tracked_instances(source):
                await self.send(
                    {
                        'type': 'agent:reconnect',
                        'source': source.value,
                        'instanceId': instance_id,
                        'lastEventTimestamp': self.synchronizer.get_last_event_timestamp(
                            source, instance_id
                        ),
                    }
                )

        first_connection = not self._has_connected
        self._has_connected = True
        if self.store.was_running_before_disconnect or first_connection:
            self.auto_resume_task = asyncio.create_task(self._auto_resume())

    async def _auto_resume(self) -> None:
        try:
            if self.session_api is None:
                return
            state = await self.session_api.check_for_saved_session_state()
            if state is None or state.status not in RESUMABLE_STATUSES:
                return

            instance_id = self.store.active_instance_id or state.instance_id
            logger.info(f'Restoring interrupted run for {instance_id} (was {state.status.value})')
            result = await self.session_api.restore_session_state(instance_id)
            if not result.ok:
                logger.warning(f'Failed to restore session state: {result.error}')
        except Exception as e:
            logger.warning(f'Auto-resume failed: {e}')
        finally:
            self.store.clear_running_before_disconnect()

    async def _on_message(self, data: str) -> None:
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.debug('Ignoring non-JSON frame')
            return
        if not isinstance(payload, dict):
            return

        if payload.get('type') == 'ping':
            await self.send({'type': 'pong', 'timestamp': now_ms()})
            return

        try:
            await self.router.route(payload)
        except Exception as e:
            logger.error(f'Failed to handle {payload.get("type")} frame: {e}')

    async def send(self, payload: Dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None or ws.closed:
            return False
        try:
            await ws.send_str(json.dumps(payload))
            return True
        except Exception as e:
            logger.warning(f'Failed to send {payload.get("type")} frame: {e}')
            return False

    # ========================================================================
    # Reconnect
    # ========================================================================

    def _handle_close(self) -> None:
        self._ws = None
        self.store.mark_running_before_disconnect()
        self._set_status(ConnectionStatus.DISCONNECTED)

        if self._intentional_close:
            return

        if self.reconnect_attempts >= self.max_reconnect_attempts:
            message = (
                f'Failed to connect after {self.max_reconnect_attempts} attempts. '
                'Please refresh the page to try again.'
            )
            logger.error(message)
            error = self.store.add_connection_error(message, permanent=True)
            for callback in list(self._failure_listeners):
                try:
                    callback(error)
                except Exception as e:
                    logger.error(f'Permanent failure listener failed: {e}')
            return

        delay_ms = calculate_reconnect_delay(self.reconnect_attempts, self._rand)
        self.reconnect_attempts += 1
        logger.info(
            f'Reconnecting in {delay_ms}ms '
            f'(attempt {self.reconnect_attempts}/{self.max_reconnect_attempts})'
        )
        scheduler = self._scheduler or asyncio.get_running_loop().call_later
        self._reconnect_handle = scheduler(delay_ms / 1000, self._on_reconnect_timer)

    def _on_reconnect_timer(self) -> None:
        self._reconnect_handle = None
        self.connect()


# Default connection context
_manager: Optional[ConnectionManager] = None


def init_connection_manager(
    config: Optional[ClientConfig] = None,
    cache: Optional[EventCache] = None,
) -> ConnectionManager:
    """Create the default connection manager from client configuration."""
    global _manager
    config = config or load_client_config()
    store = InstanceStore()
    _manager = ConnectionManager(
        config.ws_url,
        store=store,
        synchronizer=EventSynchronizer(store, cache, config.max_tracked_instances),
        session_api=SessionStateApi(
            config.api_url,
            prefix=config.api_prefix,
            active_instance_id=lambda: store.active_instance_id or 'default',
        ),
        max_reconnect_attempts=config.max_reconnect_attempts,
        heartbeat=config.heartbeat,
    )
    return _manager


def get_connection_manager() -> Optional[ConnectionManager]:
    return _manager
