"""
Tests for the Claude adapter.

The SDK ``query`` function is replaced by async generators yielding
stream-json dicts, so no network access or API key is needed.
"""

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from agent_relay.agent_adapter import (
    AgentExit,
    AgentMessage,
    AgentStartOptions,
    AlreadyRunningError,
    NotRunningError,
    TurnInFlightError,
)
from agent_relay.claude_adapter import ClaudeAdapter, build_cwd_context
from agent_relay.events import (
    AgentStatus,
    ErrorEvent,
    MessageEvent,
    ResultEvent,
    StatusEvent,
    ThinkingEvent,
    ToolResultEvent,
    ToolUseEvent,
)
from agent_relay.retry import RetryConfig


def make_query(*messages, calls=None):
    async def query_fn(prompt, options):
        if calls is not None:
            calls.append((prompt, options))
        for message in messages:
            yield message

    return query_fn


def make_blocking_query(release: asyncio.Event, calls: list):
    async def query_fn(prompt, options):
        calls.append(prompt)
        await release.wait()
        yield {'type': 'result', 'subtype': 'success', 'result': 'done'}

    return query_fn


def delta(text):
    return {
        'type': 'stream_event',
        'event': {'type': 'content_block_delta', 'delta': {'type': 'text_delta', 'text': text}},
    }


@pytest.fixture
def events():
    return []


@pytest.fixture
def adapter(events):
    adapter = ClaudeAdapter(api_key='test-key')
    adapter.on_event(events.append)
    return adapter


def of_type(events, cls):
    return [e for e in events if isinstance(e, cls)]


# ============================================================================
# Translation
# ============================================================================


class TestTranslation:

    def test_text_deltas_emit_partials_only(self, adapter, events):
        adapter.translate_event(
            {'type': 'content_block_delta', 'delta': {'type': 'text_delta', 'text': 'Hel'}}
        )
        adapter.translate_event(
            {'type': 'content_block_delta', 'delta': {'type': 'text_delta', 'text': 'lo!'}}
        )

        messages = of_type(events, MessageEvent)
        assert [m.content for m in messages] == ['Hel', 'lo!']
        assert all(m.is_partial for m in messages)
        assert ''.join(m.content for m in messages) == adapter.accumulated_text == 'Hello!'

    def test_complete_assistant_text_is_not_partial(self, adapter, events):
        adapter.translate_event(
            {'type': 'assistant', 'message': {'content': [{'type': 'text', 'text': 'Done.'}]}}
        )
        [message] = of_type(events, MessageEvent)
        assert message.content == 'Done.'
        assert message.is_partial is False

    def test_thinking_delta_becomes_partial_thinking(self, adapter, events):
        adapter.translate_event(
            {'type': 'content_block_delta', 'delta': {'type': 'thinking_delta', 'thinking': 'hmm'}}
        )
        [thinking] = of_type(events, ThinkingEvent)
        assert thinking.is_partial is True
        assert thinking.content == 'hmm'

    def test_tool_use_and_result_share_id(self, adapter, events):
        adapter.translate_event(
            {
                'type': 'assistant',
                'message': {
                    'content': [
                        {'type': 'tool_use', 'id': 'tu_1', 'name': 'Read', 'input': {'path': 'a.py'}}
                    ]
                },
            }
        )
        assert 'tu_1' in adapter.pending_tool_uses

        adapter.translate_event(
            {'type': 'tool_result', 'tool_use_id': 'tu_1', 'content': 'print(1)'}
        )

        [tool_use] = of_type(events, ToolUseEvent)
        [tool_result] = of_type(events, ToolResultEvent)
        assert tool_use.tool_use_id == tool_result.tool_use_id == 'tu_1'
        assert tool_use.input == {'path': 'a.py'}
        assert tool_result.output == 'print(1)'
        assert tool_result.error is None
        assert 'tu_1' not in adapter.pending_tool_uses

    def test_content_block_start_records_pending_tool_without_emitting(self, adapter, events):
        adapter.translate_event(
            {
                'type': 'content_block_start',
                'content_block': {'type': 'tool_use', 'id': 'tu_9', 'name': 'Bash'},
            }
        )
        assert adapter.pending_tool_uses['tu_9'] == {'tool': 'Bash', 'input': {}}
        assert of_type(events, ToolUseEvent) == []

    def test_tool_result_for_unknown_id_is_accepted(self, adapter, events):
        adapter.translate_event({'type': 'tool_result', 'tool_use_id': 'ghost', 'content': 'ok'})
        [tool_result] = of_type(events, ToolResultEvent)
        assert tool_result.tool_use_id == 'ghost'

    def test_failed_tool_result_carries_error_only(self, adapter, events):
        adapter.translate_event(
            {'type': 'tool_result', 'tool_use_id': 't', 'content': 'No such file', 'is_error': True}
        )
        [tool_result] = of_type(events, ToolResultEvent)
        assert tool_result.is_error is True
        assert tool_result.output is None
        assert tool_result.error == 'No such file'

    def test_failed_tool_result_without_content_uses_default_error(self, adapter, events):
        adapter.translate_event({'type': 'tool_result', 'tool_use_id': 't', 'is_error': True})
        [tool_result] = of_type(events, ToolResultEvent)
        assert tool_result.error == 'Unknown error'

    def test_tool_result_inside_user_message(self, adapter, events):
        adapter.translate_event(
            {
                'type': 'user',
                'message': {
                    'content': [
                        {
                            'type': 'tool_result',
                            'tool_use_id': 'tu_2',
                            'content': [{'type': 'text', 'text': 'line1'}],
                        }
                    ]
                },
            }
        )
        [tool_result] = of_type(events, ToolResultEvent)
        assert tool_result.output == 'line1'

    def test_result_usage_includes_cache_tokens(self, adapter, events):
        adapter.translate_event(
            {
                'type': 'result',
                'subtype': 'success',
                'result': 'All done',
                'usage': {
                    'input_tokens': 10,
                    'cache_read_input_tokens': 5,
                    'cache_creation_input_tokens': 2,
                    'output_tokens': 7,
                },
            }
        )
        [result] = of_type(events, ResultEvent)
        assert result.content == 'All done'
        assert result.usage.input_tokens == 17
        assert result.usage.output_tokens == 7
        assert result.usage.total_tokens == 24

    def test_result_falls_back_to_accumulated_text(self, adapter, events):
        adapter.translate_event(
            {'type': 'content_block_delta', 'delta': {'type': 'text_delta', 'text': 'partial'}}
        )
        adapter.translate_event({'type': 'result', 'subtype': 'success'})
        [result] = of_type(events, ResultEvent)
        assert result.content == 'partial'

    def test_result_without_content_is_skipped(self, adapter, events):
        adapter.translate_event({'type': 'result', 'subtype': 'success'})
        assert of_type(events, ResultEvent) == []
        assert of_type(events, ErrorEvent) == []

    def test_lifecycle_and_unknown_events_are_ignored(self, adapter, events):
        for kind in ('message_start', 'message_delta', 'message_stop', 'mystery'):
            adapter.translate_event({'type': kind})
        assert events == []

    @pytest.mark.parametrize(
        'native',
        [
            {'type': 'assistant', 'message': 'not a dict'},
            {'type': 'assistant', 'message': {'content': ['plain string block']}},
            {'type': 'assistant', 'message': {'content': 'text instead of blocks'}},
            {'type': 'assistant', 'message': {'content': [{'type': 'text', 'text': 42}]}},
            {'type': 'assistant', 'message': {'content': [{'type': 'tool_use', 'id': 7, 'name': ['x']}]}},
            {'type': 'user', 'message': ['x']},
            {'type': 'user', 'message': {'content': [None, 3]}},
            {'type': 'content_block_start', 'content_block': 'x'},
            {'type': 'content_block_delta', 'delta': 'x'},
            {'type': 'content_block_delta', 'delta': {'type': 'text_delta', 'text': {'nested': 1}}},
            {'type': 'result', 'subtype': 'success', 'usage': {'input_tokens': 'many'}},
        ],
    )
    def test_unrecognized_shapes_are_ignored(self, adapter, events, native):
        adapter.translate_event(native)
        assert of_type(events, MessageEvent) == []
        assert of_type(events, ToolUseEvent) == []
        assert of_type(events, ErrorEvent) == []
        assert adapter.pending_tool_uses == {}

    @pytest.mark.asyncio
    async def test_malformed_stream_does_not_end_the_run(self, events):
        adapter = ClaudeAdapter(
            api_key='k',
            query_fn=make_query(
                {'type': 'assistant', 'message': {'content': ['junk']}},
                {'type': 'stream_event', 'event': {'type': 'content_block_start', 'content_block': 'x'}},
                delta('ok'),
                {'type': 'result', 'subtype': 'success', 'result': 'ok'},
            ),
        )
        adapter.on_event(events.append)
        await adapter.start()
        adapter.send(AgentMessage.user('go'))
        await adapter.wait_for_turn()

        assert of_type(events, ErrorEvent) == []
        [result] = of_type(events, ResultEvent)
        assert result.content == 'ok'
        assert adapter.status == AgentStatus.RUNNING

    def test_error_event_is_fatal(self, adapter, events):
        errors = []
        adapter.on_error(errors.append)
        adapter.translate_event({'type': 'error', 'error': 'overloaded', 'code': 'E1'})

        [error] = of_type(events, ErrorEvent)
        assert error.fatal is True
        assert error.message == 'overloaded'
        assert error.code == 'E1'
        assert len(errors) == 1
        assert adapter.status == AgentStatus.STOPPED


# ============================================================================
# Lifecycle
# ============================================================================


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_failing_async_listener_is_logged(self, adapter, events, caplog):
        async def broken(status):
            raise RuntimeError('listener exploded')

        adapter.on_status(broken)
        with caplog.at_level(logging.ERROR, logger='agent_relay.agent_adapter'):
            await adapter.start()
            for _ in range(5):
                await asyncio.sleep(0)

        assert adapter.status == AgentStatus.RUNNING
        assert adapter._listener_tasks == set()
        messages = [r.getMessage() for r in caplog.records]
        assert 'claude listener failed: listener exploded' in messages
        assert of_type(events, StatusEvent)

    @pytest.mark.asyncio
    async def test_start_emits_status_signal_and_events(self, adapter, events):
        statuses = []
        adapter.on_status(statuses.append)
        await adapter.start(AgentStartOptions(cwd='/tmp/project'))

        assert statuses == [AgentStatus.STARTING, AgentStatus.RUNNING]
        assert [e.status for e in of_type(events, StatusEvent)] == statuses
        assert adapter.is_running

    @pytest.mark.asyncio
    async def test_start_twice_raises(self, adapter):
        await adapter.start()
        with pytest.raises(AlreadyRunningError):
            await adapter.start()

    @pytest.mark.asyncio
    async def test_send_without_run_raises(self, adapter):
        with pytest.raises(NotRunningError):
            adapter.send(AgentMessage.user('hi'))

    @pytest.mark.asyncio
    async def test_turn_runs_query_and_translates(self, events):
        calls = []
        adapter = ClaudeAdapter(
            api_key='k',
            query_fn=make_query(
                {'type': 'system', 'subtype': 'init', 'session_id': 'sess-1'},
                delta('Hel'),
                delta('lo!'),
                {'type': 'result', 'subtype': 'success', 'result': 'Hello!', 'session_id': 'sess-1'},
                calls=calls,
            ),
        )
        adapter.on_event(events.append)
        await adapter.start(AgentStartOptions(cwd='/repo', system_prompt='Be brief.', model='sonnet'))
        adapter.send(AgentMessage.user('greet'))
        await adapter.wait_for_turn()

        assert [m.content for m in of_type(events, MessageEvent)] == ['Hel', 'lo!']
        [result] = of_type(events, ResultEvent)
        assert result.content == 'Hello!'
        assert adapter.session_id == 'sess-1'

        prompt, options = calls[0]
        assert prompt == 'greet'
        assert options.include_partial_messages is True
        assert options.system_prompt.startswith(build_cwd_context('/repo'))
        assert options.system_prompt.endswith('Be brief.')
        assert options.env['ANTHROPIC_API_KEY'] == 'k'

    @pytest.mark.asyncio
    async def test_second_send_during_turn_raises_before_vendor_call(self):
        release = asyncio.Event()
        calls = []
        adapter = ClaudeAdapter(api_key='k', query_fn=make_blocking_query(release, calls))
        await adapter.start()

        adapter.send(AgentMessage.user('first'))
        await asyncio.sleep(0)
        with pytest.raises(TurnInFlightError):
            adapter.send(AgentMessage.user('second'))
        assert calls == ['first']

        release.set()
        await adapter.wait_for_turn()
        assert not adapter.turn_in_flight

    @pytest.mark.asyncio
    async def test_force_stop_cancels_turn(self, events):
        release = asyncio.Event()
        adapter = ClaudeAdapter(api_key='k', query_fn=make_blocking_query(release, []))
        adapter.on_event(events.append)
        exits = []
        adapter.on_exit(exits.append)
        await adapter.start()
        adapter.send(AgentMessage.user('long task'))
        await asyncio.sleep(0)

        await adapter.stop(force=True)

        assert exits == [AgentExit(code=1, signal='SIGKILL')]
        assert adapter.status == AgentStatus.STOPPED
        assert not adapter.turn_in_flight
        assert [e.status for e in of_type(events, StatusEvent)][-2:] == [
            AgentStatus.STOPPING,
            AgentStatus.STOPPED,
        ]
        assert of_type(events, ResultEvent) == []

    @pytest.mark.asyncio
    async def test_graceful_stop_exits_zero(self, adapter):
        exits = []
        adapter.on_exit(exits.append)
        await adapter.start()
        await adapter.stop()
        assert exits == [AgentExit(code=0)]

    @pytest.mark.asyncio
    async def test_stop_when_not_running_is_noop(self, adapter):
        exits = []
        adapter.on_exit(exits.append)
        await adapter.stop()
        assert exits == []
        assert adapter.status == AgentStatus.IDLE

    @pytest.mark.asyncio
    async def test_pause_is_ignored_without_feature(self, adapter):
        await adapter.start()
        adapter.send(AgentMessage.control('pause'))
        assert adapter.status == AgentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_failed_query_result_is_fatal(self, events):
        adapter = ClaudeAdapter(
            api_key='k',
            query_fn=make_query({'type': 'result', 'subtype': 'error_max_turns'}),
        )
        adapter.on_event(events.append)
        errors = []
        adapter.on_error(errors.append)
        await adapter.start()
        adapter.send(AgentMessage.user('go'))
        await adapter.wait_for_turn()

        [error] = of_type(events, ErrorEvent)
        assert error.message == 'Query failed: error_max_turns'
        assert error.fatal is True
        assert len(errors) == 1
        assert adapter.status == AgentStatus.STOPPED

    @pytest.mark.asyncio
    async def test_non_retryable_exception_is_fatal(self, events):
        async def query_fn(prompt, options):
            raise ValueError('bad request')
            yield  # pragma: no cover

        adapter = ClaudeAdapter(api_key='k', query_fn=query_fn)
        adapter.on_event(events.append)
        await adapter.start()
        adapter.send(AgentMessage.user('go'))
        await adapter.wait_for_turn()

        [error] = of_type(events, ErrorEvent)
        assert error.fatal is True
        assert error.message == 'bad request'
        assert adapter.status == AgentStatus.STOPPED


class TestRetry:

    @pytest.mark.asyncio
    async def test_retryable_error_retries_and_resumes_session(self, events):
        calls = []

        async def query_fn(prompt, options):
            calls.append((prompt, options))
            if len(calls) == 1:
                yield {'type': 'system', 'subtype': 'init', 'session_id': 'sess-9'}
                raise ConnectionError('Connection error: socket reset')
            yield {'type': 'result', 'subtype': 'success', 'result': 'recovered'}

        sleep = AsyncMock()
        adapter = ClaudeAdapter(
            api_key='k',
            query_fn=query_fn,
            retry_config=RetryConfig(max_retries=3),
            sleep=sleep,
        )
        adapter.on_event(events.append)
        await adapter.start()
        adapter.send(AgentMessage.user('work'))
        await adapter.wait_for_turn()

        codes = [e.code for e in of_type(events, ErrorEvent)]
        assert codes == ['RETRY', 'RESUMING']
        assert all(not e.fatal for e in of_type(events, ErrorEvent))
        sleep.assert_awaited_once_with(1.0)

        assert calls[1][0] == ''
        assert calls[1][1].resume == 'sess-9'
        [result] = of_type(events, ResultEvent)
        assert result.content == 'recovered'
        assert adapter.status == AgentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_retries_exhausted_is_fatal(self, events):
        async def query_fn(prompt, options):
            raise ConnectionError('ECONNREFUSED')
            yield  # pragma: no cover

        adapter = ClaudeAdapter(
            api_key='k',
            query_fn=query_fn,
            retry_config=RetryConfig(max_retries=2),
            sleep=AsyncMock(),
        )
        adapter.on_event(events.append)
        await adapter.start()
        adapter.send(AgentMessage.user('work'))
        await adapter.wait_for_turn()

        errors = of_type(events, ErrorEvent)
        assert [e.code for e in errors if not e.fatal] == ['RETRY', 'RETRY']
        assert errors[-1].fatal is True
        assert adapter.status == AgentStatus.STOPPED


class TestInfoAndAvailability:

    def test_info(self):
        info = ClaudeAdapter().get_info()
        assert info.id == 'claude'
        assert info.features.streaming is True
        assert info.features.pause_resume is False
        assert info.features.system_prompt is True

    @pytest.mark.asyncio
    async def test_available_with_env_key(self, monkeypatch):
        monkeypatch.setenv('ANTHROPIC_API_KEY', 'sk-test')
        assert await ClaudeAdapter().is_available() is True

    @pytest.mark.asyncio
    async def test_unavailable_without_key(self, monkeypatch):
        monkeypatch.delenv('ANTHROPIC_API_KEY', raising=False)
        assert await ClaudeAdapter().is_available() is False


class TestConversationContext:

    @pytest.mark.asyncio
    async def test_turn_is_recorded_in_context(self):
        adapter = ClaudeAdapter(
            api_key='k',
            query_fn=make_query(
                {'type': 'assistant', 'message': {'content': [{'type': 'text', 'text': 'Hi!'}]}},
                {
                    'type': 'result',
                    'subtype': 'success',
                    'result': 'Hi!',
                    'usage': {'input_tokens': 3, 'output_tokens': 2},
                },
            ),
        )
        await adapter.start()
        adapter.send(AgentMessage.user('hello'))
        await adapter.wait_for_turn()

        context = adapter.get_conversation_context()
        assert [m.role for m in context.messages] == ['user', 'assistant']
        assert context.messages[1].content == 'Hi!'
        assert context.last_prompt == 'hello'
        assert context.usage.total_tokens == 5

        restored = ClaudeAdapter()
        restored.restore_conversation_context(context)
        assert restored.get_conversation_context().last_prompt == 'hello'

        adapter.clear_conversation_context()
        assert adapter.get_conversation_context().messages == []
