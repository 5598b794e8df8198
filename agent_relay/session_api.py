"""
Saved run-state REST client.

The server persists the state of a running agent so a client can resume it
after a restart. Every call here is best effort: failures are logged and
reported as ``None`` or ``RestoreResult(ok=False)``.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp

from .events import AgentStatus

logger = logging.getLogger(__name__)

# Saved states older than this are treated as absent.
MAX_STATE_AGE_MS = 60 * 60 * 1000


@dataclass
class SavedState:
    instance_id: str
    status: AgentStatus
    saved_at: int
    current_task_id: Optional[str] = None
    conversation_context: Optional[Dict[str, Any]] = None

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> 'SavedState':
        return cls(
            instance_id=data['instanceId'],
            status=AgentStatus(data['status']),
            saved_at=int(data['savedAt']),
            current_task_id=data.get('currentTaskId'),
            conversation_context=data.get('conversationContext'),
        )


@dataclass
class RestoreResult:
    ok: bool
    error: Optional[str] = None


class SessionStateApi:
    """Client for ``/api/<prefix>/{instanceId}/session-state`` endpoints."""

    def __init__(
        self,
        base_url: str,
        prefix: str = 'agents',
        active_instance_id: Optional[Any] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.prefix = prefix
        # Callable returning the active instance id when none is passed
        self._active_instance_id = active_instance_id or (lambda: 'default')
        self.session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30),
                headers={'Content-Type': 'application/json'},
            )
            self._owns_session = True
        return self.session

    async def close(self):
        if self._owns_session and self.session is not None and not self.session.closed:
            await self.session.close()

    def _url(self, instance_id: str, action: str) -> str:
        return f'{self.base_url}/api/{self.prefix}/{quote(instance_id, safe="")}/{action}'

    async def check_for_saved_session_state(
        self, instance_id: Optional[str] = None
    ) -> Optional[SavedState]:
        """Return the saved state for an instance, or None if absent or stale."""
        instance_id = instance_id or self._active_instance_id()
        try:
            session = await self._get_session()
            async with session.get(self._url(instance_id, 'session-state')) as resp:
                if resp.status == 404:
                    return None
                if resp.status != 200:
                    text = await resp.text()
                    logger.warning(f'Session state lookup returned {resp.status}: {text}')
                    return None
                data = await resp.json()

            if not data.get('ok') or not data.get('state'):
                return None
            state = SavedState.from_wire(data['state'])
            if int(time.time() * 1000) - state.saved_at > MAX_STATE_AGE_MS:
                logger.info(f'Ignoring stale saved state for {instance_id}')
                return None
            return state
        except Exception as e:
            logger.warning(f'Failed to check saved session state: {e}')
            return None

    async def restore_session_state(self, instance_id: str) -> RestoreResult:
        try:
            session = await self._get_session()
            async with session.post(self._url(instance_id, 'restore-state')) as resp:
                try:
                    data = await resp.json()
                except (aiohttp.ContentTypeError, ValueError):
                    data = {}
                if resp.status != 200 or not data.get('ok'):
                    error = data.get('error') or f'Server returned {resp.status}'
                    return RestoreResult(ok=False, error=error)
                return RestoreResult(ok=True)
        except Exception as e:
            logger.warning(f'Failed to restore session state: {e}')
            return RestoreResult(ok=False, error=str(e))

    async def delete_session_state(self, instance_id: str) -> bool:
        try:
            session = await self._get_session()
            async with session.delete(self._url(instance_id, 'session-state')) as resp:
                return resp.status in (200, 204, 404)
        except Exception as e:
            logger.warning(f'Failed to delete session state: {e}')
            return False
