"""
Agent adapter contract.

An adapter drives one external coding agent and re-emits its native stream
as canonical events. Concrete variants live in ``claude_adapter`` and
``codex_adapter``; hosts only depend on the ``AgentAdapter`` protocol and the
signal registration methods of ``AdapterSignalsMixin``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Literal,
    Optional,
    Protocol,
    Set,
    runtime_checkable,
)

from .events import AgentStatus, ErrorEvent, StatusEvent, now_ms

logger = logging.getLogger(__name__)


class AdapterVariant(str, Enum):
    """Vendor backends shipped with the package."""

    CLAUDE = 'claude'
    CODEX = 'codex'


# ============================================================================
# Errors
# ============================================================================


class AgentAdapterError(Exception):
    """Base class for adapter lifecycle errors."""


class AlreadyRunningError(AgentAdapterError):
    def __init__(self, adapter_id: str):
        super().__init__(f'{adapter_id} adapter is already running')
        self.adapter_id = adapter_id


class NotRunningError(AgentAdapterError):
    def __init__(self, adapter_id: str):
        super().__init__(f'{adapter_id} adapter is not running')
        self.adapter_id = adapter_id


class TurnInFlightError(AgentAdapterError):
    def __init__(self, adapter_id: str):
        super().__init__(
            f'{adapter_id} adapter is still processing the previous message'
        )
        self.adapter_id = adapter_id


# ============================================================================
# Descriptors and options
# ============================================================================


@dataclass
class AgentFeatures:
    streaming: bool = True
    tools: bool = True
    pause_resume: bool = False
    system_prompt: bool = True


@dataclass
class AgentInfo:
    id: str
    name: str
    description: str = ''
    version: Optional[str] = None
    features: AgentFeatures = field(default_factory=AgentFeatures)


@dataclass
class AgentStartOptions:
    """Options handed to ``start()``.

    ``extra`` carries vendor-specific settings through untouched.
    """

    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    max_iterations: Optional[int] = None
    allowed_tools: Optional[List[str]] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentMessage:
    """Input to ``send()``: a user prompt or a control command."""

    type: Literal['user_message', 'control']
    content: Optional[str] = None
    command: Optional[Literal['pause', 'resume', 'stop']] = None

    @classmethod
    def user(cls, content: str) -> 'AgentMessage':
        return cls(type='user_message', content=content)

    @classmethod
    def control(cls, command: str) -> 'AgentMessage':
        return cls(type='control', command=command)  # type: ignore[arg-type]


@dataclass
class AgentExit:
    code: Optional[int] = None
    signal: Optional[str] = None


EventCallback = Callable[[Any], Any]
StatusCallback = Callable[[AgentStatus], Any]
ErrorCallback = Callable[[Exception], Any]
ExitCallback = Callable[[AgentExit], Any]


@runtime_checkable
class AgentAdapter(Protocol):
    """Contract every vendor adapter satisfies."""

    @property
    def status(self) -> AgentStatus: ...

    @property
    def is_running(self) -> bool: ...

    def get_info(self) -> AgentInfo: ...

    async def is_available(self) -> bool: ...

    async def start(self, options: Optional[AgentStartOptions] = None) -> None: ...

    def send(self, message: AgentMessage) -> None: ...

    async def stop(self, force: bool = False) -> None: ...

    def on_event(self, callback: EventCallback) -> None: ...

    def on_status(self, callback: StatusCallback) -> None: ...

    def on_error(self, callback: ErrorCallback) -> None: ...

    def on_exit(self, callback: ExitCallback) -> None: ...


# ============================================================================
# Shared lifecycle machinery
# ============================================================================


class AdapterSignalsMixin:
    """Status tracking, signal fan-out and turn bookkeeping.

    Subclasses implement ``get_info()``, ``is_available()``, ``_run_turn()``
    and ``_on_start()``; everything about the status machine, the
    single-turn rule and graceful/forced stop lives here.
    """

    adapter_id: str = 'agent'

    def __init__(self) -> None:
        self._status = AgentStatus.IDLE
        self._options: Optional[AgentStartOptions] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._last_timestamp = 0
        self._event_listeners: List[EventCallback] = []
        self._status_listeners: List[StatusCallback] = []
        self._error_listeners: List[ErrorCallback] = []
        self._exit_listeners: List[ExitCallback] = []
        self._listener_tasks: Set[asyncio.Future] = set()

    # -- signal registration ------------------------------------------------

    def on_event(self, callback: EventCallback) -> None:
        self._event_listeners.append(callback)

    def on_status(self, callback: StatusCallback) -> None:
        self._status_listeners.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_listeners.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_listeners.append(callback)

    def _notify(self, listeners: List[Callable], payload: Any) -> None:
        for callback in list(listeners):
            try:
                result = callback(payload)
                if asyncio.iscoroutine(result):
                    task = asyncio.ensure_future(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._on_listener_done)
            except Exception as e:
                logger.error(f'{self.adapter_id} listener failed: {e}')

    def _on_listener_done(self, task: asyncio.Future) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f'{self.adapter_id} listener failed: {error}')

    # -- status ---------------------------------------------------------------

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status in (
            AgentStatus.RUNNING,
            AgentStatus.PAUSING,
            AgentStatus.PAUSED,
        )

    @property
    def turn_in_flight(self) -> bool:
        return self._turn_task is not None and not self._turn_task.done()

    def _timestamp(self) -> int:
        # Non-decreasing even if the wall clock steps backwards.
        ts = max(now_ms(), self._last_timestamp)
        self._last_timestamp = ts
        return ts

    def _set_status(self, status: AgentStatus) -> None:
        if status == self._status:
            return
        logger.debug(f'{self.adapter_id} status {self._status.value} -> {status.value}')
        self._status = status
        self._notify(self._status_listeners, status)
        self._emit(StatusEvent(timestamp=self._timestamp(), status=status))

    def _emit(self, event: Any) -> None:
        self._notify(self._event_listeners, event)

    def _emit_fatal(self, message: str, code: Optional[str] = None) -> None:
        """Report a vendor failure and end the run."""
        logger.error(f'{self.adapter_id} adapter error: {message}')
        self._emit(
            ErrorEvent(
                timestamp=self._timestamp(), message=message, code=code, fatal=True
            )
        )
        self._notify(self._error_listeners, RuntimeError(message))
        self._set_status(AgentStatus.STOPPED)
        self._options = None

    # -- lifecycle ------------------------------------------------------------

    def _on_start(self, options: AgentStartOptions) -> None:
        """Reset vendor accumulation state for a fresh run."""

    async def _run_turn(self, content: str) -> None:
        raise NotImplementedError

    async def start(self, options: Optional[AgentStartOptions] = None) -> None:
        if self.is_running or self._status == AgentStatus.STARTING:
            raise AlreadyRunningError(self.adapter_id)

        self._set_status(AgentStatus.STARTING)
        self._options = options or AgentStartOptions()
        self._on_start(self._options)
        self._set_status(AgentStatus.RUNNING)
        logger.info(f'{self.adapter_id} adapter started (cwd={self._options.cwd})')

    def send(self, message: AgentMessage) -> None:
        if not self.is_running:
            raise NotRunningError(self.adapter_id)

        if message.type == 'control':
            self._handle_control(message.command)
            return

        if self.turn_in_flight:
            raise TurnInFlightError(self.adapter_id)

        self._turn_task = asyncio.create_task(self._guarded_turn(message.content or ''))

    async def _guarded_turn(self, content: str) -> None:
        try:
            await self._run_turn(content)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._emit_fatal(str(e) or type(e).__name__)

    def _handle_control(self, command: Optional[str]) -> None:
        if command == 'stop':
            asyncio.ensure_future(self.stop())
        elif command == 'pause':
            if not self.get_info().features.pause_resume:
                logger.info(f'{self.adapter_id} adapter ignores pause')
                return
            self._set_status(AgentStatus.PAUSING)
            self._set_status(AgentStatus.PAUSED)
        elif command == 'resume':
            if not self.get_info().features.pause_resume:
                logger.info(f'{self.adapter_id} adapter ignores resume')
                return
            if self._status == AgentStatus.PAUSED:
                self._set_status(AgentStatus.RUNNING)
        else:
            logger.warning(f'{self.adapter_id} adapter got unknown control command: {command}')

    async def wait_for_turn(self) -> None:
        """Wait until the current turn (if any) has finished."""
        task = self._turn_task
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    async def stop(self, force: bool = False) -> None:
        if not self.is_running:
            return

        self._set_status(AgentStatus.STOPPING)

        task = self._turn_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass  # Expected when cancelling
            except Exception as e:
                logger.debug(f'{self.adapter_id} turn ended with error during stop: {e}')
        self._turn_task = None

        exit_info = AgentExit(code=1, signal='SIGKILL') if force else AgentExit(code=0)
        self._notify(self._exit_listeners, exit_info)
        self._options = None
        self._set_status(AgentStatus.STOPPED)
        logger.info(f'{self.adapter_id} adapter stopped (force={force})')

    def get_info(self) -> AgentInfo:
        raise NotImplementedError
