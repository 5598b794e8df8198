"""
Tests for multi-instance routing of server frames.
"""

import logging
from unittest.mock import AsyncMock

import pytest

from agent_relay.events import AgentStatus, EventSource
from agent_relay.router import InstanceRouter
from agent_relay.state import InstanceStore
from agent_relay.sync import EventSynchronizer


def agent_event(instance_id, event, source='primary'):
    return {
        'type': 'agent:event',
        'source': source,
        'instanceId': instance_id,
        'event': event,
        'timestamp': event.get('timestamp', 1),
    }


@pytest.fixture
def store():
    return InstanceStore(active_instance_id='active')


@pytest.fixture
def cache():
    cache = AsyncMock()
    cache.update_session_task_id.return_value = True
    return cache


@pytest.fixture
def synchronizer(store, cache):
    return EventSynchronizer(store, cache)


@pytest.fixture
def router(store, synchronizer):
    return InstanceRouter(store, synchronizer)


@pytest.fixture
def notifications(store):
    seen = []
    store.subscribe(lambda kind, instance_id, payload: seen.append((kind, instance_id)))
    return seen


class TestLiveEvents:

    @pytest.mark.asyncio
    async def test_active_instance_uses_active_sink(self, router, store, notifications):
        await router.route(agent_event('active', {'id': 'e1', 'type': 'message', 'timestamp': 5}))

        assert [e['id'] for e in store.get('active').events] == ['e1']
        assert ('event', 'active') in notifications

    @pytest.mark.asyncio
    async def test_other_instance_uses_background_sink(self, router, store, notifications):
        await router.route(agent_event('other', {'id': 'e1', 'type': 'message', 'timestamp': 5}))

        assert [e['id'] for e in store.get('other').events] == ['e1']
        assert ('background_event', 'other') in notifications
        assert ('event', 'other') not in notifications

    @pytest.mark.asyncio
    async def test_chat_events_only_reach_active_instance(self, router, store):
        await router.route(agent_event('other', {'id': 'c1', 'type': 'message'}, source='chat'))
        await router.route(agent_event('active', {'id': 'c2', 'type': 'message'}, source='chat'))

        assert store.get('other').chat_events == []
        assert [e['id'] for e in store.get('active').chat_events] == ['c2']
        assert store.get('active').events == []

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_dropped(self, router, store, cache):
        frame = agent_event('active', {'id': 'dup', 'type': 'message', 'timestamp': 1})
        router.synchronizer.set_current_session_id('active', 'sess')
        await router.route(frame)
        await router.route(frame)

        assert len(store.get('active').events) == 1
        cache.save_event.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_status_event_updates_status(self, router, store):
        await router.route(
            agent_event('active', {'id': 's', 'type': 'status', 'status': 'paused', 'timestamp': 2})
        )
        assert store.get_status('active') == AgentStatus.PAUSED

    @pytest.mark.asyncio
    async def test_stopped_instance_heals_to_running(self, router, store):
        assert store.get_status('active') == AgentStatus.STOPPED
        await router.route(agent_event('active', {'id': 'm', 'type': 'message', 'timestamp': 2}))
        assert store.get_status('active') == AgentStatus.RUNNING

    @pytest.mark.asyncio
    async def test_session_boundary_starts_session(self, router, synchronizer):
        await router.route(
            agent_event(
                'active',
                {'id': 's0', 'type': 'session_start', 'sessionId': 'abc', 'timestamp': 10},
            )
        )
        assert synchronizer.get_current_session_id('active') == 'abc'

    @pytest.mark.asyncio
    async def test_task_started_links_session(self, router, cache):
        await router.route(
            agent_event('active', {'id': 's0', 'type': 'session_start', 'sessionId': 'abc', 'timestamp': 1})
        )
        await router.route(
            agent_event('active', {'id': 't', 'type': 'task_started', 'taskId': 'task-1', 'timestamp': 2})
        )
        cache.update_session_task_id.assert_awaited_once_with('abc', 'task-1')

    @pytest.mark.asyncio
    async def test_invalid_frames_are_dropped(self, router, store):
        assert await router.route({'type': 'agent:event', 'source': 'primary'}) is False
        assert await router.route({'type': 'mystery'}) is False
        assert await router.route('text') is False
        assert store.instances == {}

    @pytest.mark.asyncio
    async def test_server_error_recorded_on_active_instance(self, router, store):
        assert await router.route({'type': 'error', 'error': 'Message is required', 'timestamp': 3})
        [event] = store.get('active').events
        assert event['type'] == 'server_error'
        assert event['error'] == 'Message is required'

    @pytest.mark.asyncio
    async def test_user_message_echo(self, router, store):
        await router.route({'type': 'user_message', 'message': 'hello', 'instanceId': 'active'})
        assert store.get('active').events[0]['message'] == 'hello'


class TestReplay:

    @pytest.mark.asyncio
    async def test_pending_events_fill_gap_and_reconcile(self, router, store, synchronizer, cache):
        synchronizer.set_current_session_id('active', 'sess')
        store.add_event('active', {'id': 'e0', 'type': 'message', 'timestamp': 1})

        await router.route(
            {
                'type': 'agent:pending_events',
                'source': 'primary',
                'instanceId': 'active',
                'events': [
                    {'id': 'e0', 'type': 'message', 'timestamp': 1},
                    {'id': 'e1', 'type': 'message', 'timestamp': 2},
                    {'id': 'e2', 'type': 'message', 'timestamp': 3},
                ],
                'totalEvents': 3,
                'status': 'running',
            }
        )

        assert [e['id'] for e in store.get('active').events] == ['e0', 'e1', 'e2']
        assert store.get_status('active') == AgentStatus.RUNNING
        assert synchronizer.get_last_event_timestamp(EventSource.PRIMARY, 'active') == 3
        assert cache.save_event.await_count == 3

    @pytest.mark.asyncio
    async def test_pending_chat_events_for_inactive_instance_skipped(self, router, store):
        await router.route(
            {
                'type': 'agent:pending_events',
                'source': 'chat',
                'instanceId': 'other',
                'events': [{'id': 'c1', 'type': 'message'}],
                'totalEvents': 1,
            }
        )
        assert 'other' not in store.instances

    @pytest.mark.asyncio
    async def test_connected_seeds_empty_instance(self, router, store, cache):
        await router.route(
            {
                'type': 'connected',
                'instanceId': 'active',
                'timestamp': 9,
                'status': 'idle',
                'events': [
                    {'id': 'a', 'type': 'message', 'timestamp': 1},
                    {'id': 'b', 'type': 'message', 'timestamp': 2},
                ],
                'totalEvents': 2,
            }
        )

        assert [e['id'] for e in store.get('active').events] == ['a', 'b']
        assert store.get_status('active') == AgentStatus.IDLE
        # No session yet, so nothing is written back
        cache.save_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connected_merges_into_existing_events(self, router, store):
        store.add_event('active', {'id': 'local', 'type': 'message'})
        await router.route(
            {
                'type': 'connected',
                'instanceId': 'active',
                'timestamp': 9,
                'events': [
                    {'id': 'local', 'type': 'message', 'timestamp': 1},
                    {'id': 'remote', 'type': 'message', 'timestamp': 2},
                ],
            }
        )
        assert [e['id'] for e in store.get('active').events] == ['local', 'remote']

    @pytest.mark.asyncio
    async def test_reconnect_sequence_reconciles_once(self, router, store, synchronizer, cache, caplog):
        synchronizer.set_current_session_id('active', 'sess')
        server_events = [{'id': f'e{n}', 'type': 'message', 'timestamp': n + 1} for n in range(5)]
        for event in server_events[:2]:
            store.add_event('active', dict(event))

        with caplog.at_level(logging.WARNING, logger='agent_relay.sync'):
            await router.route(
                {
                    'type': 'connected',
                    'instanceId': 'active',
                    'timestamp': 9,
                    'events': server_events,
                    'totalEvents': 5,
                }
            )
            await router.route(
                {
                    'type': 'agent:pending_events',
                    'source': 'primary',
                    'instanceId': 'active',
                    'events': server_events,
                    'totalEvents': 5,
                }
            )

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert cache.save_event.await_count == 5
        assert [e['id'] for e in store.get('active').events] == [e['id'] for e in server_events]
