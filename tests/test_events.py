"""
Tests for canonical events, type guards and envelope parsing.
"""

import pytest
from pydantic import ValidationError

from agent_relay.events import (
    AgentStatus,
    Envelope,
    EventSource,
    MessageEvent,
    StatusEvent,
    ToolResultEvent,
    ToolUseEvent,
    is_error_event,
    is_message_event,
    is_result_event,
    is_status_event,
    is_thinking_event,
    is_tool_result_event,
    is_tool_use_event,
    parse_envelope,
    parse_event,
)


# ============================================================================
# Canonical events
# ============================================================================


class TestCanonicalEvents:

    def test_message_event_serializes_with_wire_names(self):
        event = MessageEvent(timestamp=1, content='Hel', is_partial=True)
        assert event.to_wire() == {
            'type': 'message',
            'timestamp': 1,
            'content': 'Hel',
            'isPartial': True,
        }

    def test_tool_result_omits_absent_output(self):
        event = ToolResultEvent(timestamp=1, tool_use_id='t1', error='boom', is_error=True)
        wire = event.to_wire()
        assert 'output' not in wire
        assert wire['error'] == 'boom'
        assert wire['toolUseId'] == 't1'

    def test_parse_event_selects_variant_by_type(self):
        event = parse_event(
            {'type': 'tool_use', 'timestamp': 5, 'toolUseId': 'abc', 'tool': 'Read', 'input': {}}
        )
        assert isinstance(event, ToolUseEvent)
        assert event.tool_use_id == 'abc'

    def test_parse_event_rejects_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_event({'type': 'bogus', 'timestamp': 1})

    def test_status_event_uses_status_enum(self):
        event = parse_event({'type': 'status', 'timestamp': 1, 'status': 'running'})
        assert isinstance(event, StatusEvent)
        assert event.status == AgentStatus.RUNNING


class TestTypeGuards:

    @pytest.mark.parametrize(
        'payload,guard',
        [
            ({'type': 'message', 'content': 'x'}, is_message_event),
            ({'type': 'thinking', 'content': 'x'}, is_thinking_event),
            ({'type': 'tool_use', 'toolUseId': 'a', 'tool': 'bash'}, is_tool_use_event),
            ({'type': 'tool_result', 'toolUseId': 'a'}, is_tool_result_event),
            ({'type': 'result', 'content': ''}, is_result_event),
            ({'type': 'error', 'message': 'x'}, is_error_event),
            ({'type': 'status', 'status': 'idle'}, is_status_event),
        ],
    )
    def test_guard_accepts_dicts(self, payload, guard):
        assert guard(payload) is True

    def test_guards_accept_models(self):
        assert is_message_event(MessageEvent(content='hi'))
        assert not is_tool_use_event(MessageEvent(content='hi'))

    def test_guards_never_raise_on_junk(self):
        assert is_message_event(None) is False
        assert is_status_event('status') is False
        assert is_error_event({'type': 3}) is False


# ============================================================================
# Envelope
# ============================================================================


class TestEnvelope:

    def test_agent_event_round_trip_keeps_camel_case(self):
        envelope = Envelope(
            type='agent:event',
            source=EventSource.PRIMARY,
            instance_id='inst-1',
            event={'type': 'message', 'content': 'hi', 'timestamp': 10},
            event_index=3,
            timestamp=10,
        )
        wire = envelope.to_wire()
        assert wire['instanceId'] == 'inst-1'
        assert wire['eventIndex'] == 3
        assert wire['source'] == 'primary'

    @pytest.mark.parametrize(
        'missing',
        ['source', 'instanceId', 'event'],
    )
    def test_agent_event_without_required_field_is_dropped(self, missing):
        payload = {
            'type': 'agent:event',
            'source': 'primary',
            'instanceId': 'a',
            'event': {'type': 'message', 'content': 'x'},
            'timestamp': 1,
        }
        del payload[missing]
        assert parse_envelope(payload) is None

    def test_unknown_envelope_type_is_dropped(self):
        assert parse_envelope({'type': 'nope'}) is None

    def test_non_mapping_is_dropped(self):
        assert parse_envelope(['agent:event']) is None

    def test_extra_fields_are_tolerated(self):
        envelope = parse_envelope({'type': 'pong', 'timestamp': 1, 'extra': True})
        assert envelope is not None
        assert envelope.type == 'pong'

    def test_reconnect_carries_last_event_timestamp(self):
        envelope = parse_envelope(
            {
                'type': 'agent:reconnect',
                'source': 'chat',
                'instanceId': 'a',
                'lastEventTimestamp': 99,
            }
        )
        assert envelope.last_event_timestamp == 99
        assert envelope.source == EventSource.CHAT
