"""
Canonical agent events and the wire envelope that carries them.

Every adapter translates its vendor stream into the event models defined
here. Field names are snake_case in Python and camelCase on the wire
(``toolUseId``, ``isPartial``, ``instanceId``), the same aliasing scheme the
A2A wire models use.
"""

import logging
import time
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class AgentStatus(str, Enum):
    """Lifecycle states of an agent adapter."""

    IDLE = 'idle'
    STARTING = 'starting'
    RUNNING = 'running'
    PAUSING = 'pausing'
    PAUSED = 'paused'
    STOPPING = 'stopping'
    STOPPED = 'stopped'


class EventSource(str, Enum):
    """Logical stream an envelope belongs to."""

    PRIMARY = 'primary'
    CHAT = 'chat'


# ============================================================================
# Canonical events
# ============================================================================


class _BaseEvent(BaseModel):
    model_config = {'populate_by_name': True, 'extra': 'allow'}

    timestamp: int = Field(default_factory=now_ms)
    id: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        """Serialize using wire (camelCase) field names."""
        return self.model_dump(by_alias=True, exclude_none=True, mode='json')


class MessageEvent(_BaseEvent):
    type: Literal['message'] = 'message'
    content: str
    is_partial: bool = Field(False, alias='isPartial')


class ThinkingEvent(_BaseEvent):
    type: Literal['thinking'] = 'thinking'
    content: str
    is_partial: bool = Field(False, alias='isPartial')


class ToolUseEvent(_BaseEvent):
    type: Literal['tool_use'] = 'tool_use'
    tool_use_id: str = Field(..., alias='toolUseId')
    tool: str
    input: Dict[str, Any] = Field(default_factory=dict)


class ToolResultEvent(_BaseEvent):
    type: Literal['tool_result'] = 'tool_result'
    tool_use_id: str = Field(..., alias='toolUseId')
    output: Optional[str] = None
    error: Optional[str] = None
    is_error: bool = Field(False, alias='isError')


class TokenUsage(BaseModel):
    model_config = {'populate_by_name': True}

    input_tokens: int = Field(0, alias='inputTokens')
    output_tokens: int = Field(0, alias='outputTokens')
    total_tokens: int = Field(0, alias='totalTokens')


class ResultEvent(_BaseEvent):
    type: Literal['result'] = 'result'
    content: str = ''
    usage: Optional[TokenUsage] = None
    exit_code: Optional[int] = Field(None, alias='exitCode')


class ErrorEvent(_BaseEvent):
    type: Literal['error'] = 'error'
    message: str
    code: Optional[str] = None
    fatal: bool = False


class StatusEvent(_BaseEvent):
    type: Literal['status'] = 'status'
    status: AgentStatus


CanonicalEvent = Annotated[
    Union[
        MessageEvent,
        ThinkingEvent,
        ToolUseEvent,
        ToolResultEvent,
        ResultEvent,
        ErrorEvent,
        StatusEvent,
    ],
    Field(discriminator='type'),
]

_event_adapter: TypeAdapter = TypeAdapter(CanonicalEvent)

CANONICAL_EVENT_TYPES = frozenset(
    [
        'message',
        'thinking',
        'tool_use',
        'tool_result',
        'result',
        'error',
        'status',
    ]
)


def parse_event(data: Mapping[str, Any]):
    """Validate a wire mapping into the matching canonical event model.

    Raises pydantic.ValidationError for unknown types or missing fields.
    """
    return _event_adapter.validate_python(dict(data))


def event_type(event: Any) -> Optional[str]:
    """Return the ``type`` of a model or wire mapping, or None."""
    if isinstance(event, BaseModel):
        return getattr(event, 'type', None)
    if isinstance(event, Mapping):
        value = event.get('type')
        return value if isinstance(value, str) else None
    return None


def event_field(event: Any, name: str, default: Any = None) -> Any:
    """Read a field from a model or a wire mapping by its wire name."""
    if isinstance(event, Mapping):
        return event.get(name, default)
    if isinstance(event, BaseModel):
        for field_name, info in type(event).model_fields.items():
            if info.alias == name or field_name == name:
                return getattr(event, field_name, default)
        extra = event.model_extra or {}
        return extra.get(name, default)
    return default


def event_to_wire(event: Any) -> Dict[str, Any]:
    """Normalize a model or mapping into a plain wire dict."""
    if isinstance(event, _BaseEvent):
        return event.to_wire()
    if isinstance(event, BaseModel):
        return event.model_dump(by_alias=True, exclude_none=True, mode='json')
    return dict(event)


# ============================================================================
# Type guards
# ============================================================================


def is_message_event(event: Any) -> bool:
    return event_type(event) == 'message'


def is_thinking_event(event: Any) -> bool:
    return event_type(event) == 'thinking'


def is_tool_use_event(event: Any) -> bool:
    return event_type(event) == 'tool_use'


def is_tool_result_event(event: Any) -> bool:
    return event_type(event) == 'tool_result'


def is_result_event(event: Any) -> bool:
    return event_type(event) == 'result'


def is_error_event(event: Any) -> bool:
    return event_type(event) == 'error'


def is_status_event(event: Any) -> bool:
    return event_type(event) == 'status'


def is_canonical_event(event: Any) -> bool:
    return event_type(event) in CANONICAL_EVENT_TYPES


# ============================================================================
# Envelope
# ============================================================================


EnvelopeType = Literal[
    'agent:event',
    'agent:reconnect',
    'agent:pending_events',
    'connected',
    'ping',
    'pong',
]


class Envelope(BaseModel):
    """Transport wrapper around canonical events.

    Events inside ``event``/``events`` stay plain dicts: sessions and task
    lifecycle markers travel on the same stream as canonical events and are
    not part of the canonical union.
    """

    model_config = {'populate_by_name': True, 'extra': 'allow'}

    type: EnvelopeType
    source: Optional[EventSource] = None
    instance_id: Optional[str] = Field(None, alias='instanceId')
    workspace_id: Optional[str] = Field(None, alias='workspaceId')
    event: Optional[Dict[str, Any]] = None
    events: Optional[List[Dict[str, Any]]] = None
    timestamp: int = Field(default_factory=now_ms)
    event_index: Optional[int] = Field(None, alias='eventIndex')
    total_events: Optional[int] = Field(None, alias='totalEvents')
    status: Optional[AgentStatus] = None
    last_event_timestamp: Optional[int] = Field(None, alias='lastEventTimestamp')

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode='json')


def parse_envelope(data: Any) -> Optional[Envelope]:
    """Validate an inbound frame, returning None when it must be dropped."""
    if not isinstance(data, Mapping):
        return None
    try:
        envelope = Envelope.model_validate(dict(data))
    except ValidationError as e:
        logger.debug(f'Dropping malformed envelope: {e.error_count()} errors')
        return None

    if envelope.type == 'agent:event' and (
        envelope.source is None
        or not envelope.instance_id
        or envelope.event is None
    ):
        logger.debug('Dropping agent:event without source/instanceId/event')
        return None
    return envelope
