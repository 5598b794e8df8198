"""
Tests for the saved run-state REST client.
"""

import time
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from agent_relay.events import AgentStatus
from agent_relay.session_api import MAX_STATE_AGE_MS, SessionStateApi


def response(status, json_data=None, text=''):
    resp = MagicMock()
    resp.status = status
    if isinstance(json_data, Exception):
        resp.json = AsyncMock(side_effect=json_data)
    else:
        resp.json = AsyncMock(return_value=json_data)
    resp.text = AsyncMock(return_value=text)

    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ctx


def saved_state(age_ms=0, status='running'):
    return {
        'ok': True,
        'state': {
            'instanceId': 'inst/1',
            'status': status,
            'savedAt': int(time.time() * 1000) - age_ms,
            'currentTaskId': 'task-1',
        },
    }


@pytest.fixture
def session():
    session = MagicMock()
    session.closed = False
    return session


@pytest.fixture
def api(session):
    return SessionStateApi(
        'http://relay.test/',
        active_instance_id=lambda: 'inst/1',
        session=session,
    )


# ============================================================================
# check_for_saved_session_state
# ============================================================================


class TestCheckSavedState:

    @pytest.mark.asyncio
    async def test_fresh_state_is_returned(self, api, session):
        session.get.return_value = response(200, saved_state(age_ms=1000))

        state = await api.check_for_saved_session_state()

        assert state.instance_id == 'inst/1'
        assert state.status == AgentStatus.RUNNING
        assert state.current_task_id == 'task-1'
        session.get.assert_called_once_with('http://relay.test/api/agents/inst%2F1/session-state')

    @pytest.mark.asyncio
    async def test_stale_state_is_ignored(self, api, session):
        session.get.return_value = response(200, saved_state(age_ms=MAX_STATE_AGE_MS + 60_000))
        assert await api.check_for_saved_session_state() is None

    @pytest.mark.asyncio
    async def test_missing_state_is_none(self, api, session):
        session.get.return_value = response(404)
        assert await api.check_for_saved_session_state('other') is None
        session.get.assert_called_once_with('http://relay.test/api/agents/other/session-state')

    @pytest.mark.asyncio
    async def test_server_error_is_none(self, api, session):
        session.get.return_value = response(500, text='boom')
        assert await api.check_for_saved_session_state() is None

    @pytest.mark.asyncio
    async def test_not_ok_payload_is_none(self, api, session):
        session.get.return_value = response(200, {'ok': False})
        assert await api.check_for_saved_session_state() is None

    @pytest.mark.asyncio
    async def test_network_failure_is_none(self, api, session):
        session.get.side_effect = aiohttp.ClientConnectionError('refused')
        assert await api.check_for_saved_session_state() is None


# ============================================================================
# restore / delete
# ============================================================================


class TestRestoreAndDelete:

    @pytest.mark.asyncio
    async def test_restore_ok(self, api, session):
        session.post.return_value = response(200, {'ok': True})
        result = await api.restore_session_state('inst/1')
        assert result.ok is True
        assert result.error is None
        session.post.assert_called_once_with('http://relay.test/api/agents/inst%2F1/restore-state')

    @pytest.mark.asyncio
    async def test_restore_reports_server_error_message(self, api, session):
        session.post.return_value = response(409, {'ok': False, 'error': 'Agent already running'})
        result = await api.restore_session_state('inst/1')
        assert result.ok is False
        assert result.error == 'Agent already running'

    @pytest.mark.asyncio
    async def test_restore_without_json_body(self, api, session):
        session.post.return_value = response(502, ValueError('not json'))
        result = await api.restore_session_state('inst/1')
        assert result.ok is False
        assert result.error == 'Server returned 502'

    @pytest.mark.asyncio
    async def test_restore_network_failure(self, api, session):
        session.post.side_effect = aiohttp.ClientConnectionError('refused')
        result = await api.restore_session_state('inst/1')
        assert result.ok is False
        assert 'refused' in result.error

    @pytest.mark.asyncio
    @pytest.mark.parametrize('status,expected', [(200, True), (204, True), (404, True), (500, False)])
    async def test_delete(self, api, session, status, expected):
        session.delete.return_value = response(status)
        assert await api.delete_session_state('inst/1') is expected

    @pytest.mark.asyncio
    async def test_close_leaves_injected_session_open(self, api, session):
        session.close = AsyncMock()
        await api.close()
        session.close.assert_not_awaited()
