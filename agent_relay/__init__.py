"""
agent-relay: canonical event relay for long-running coding agents.

Adapters normalize vendor agent streams into canonical events; the relay
server delivers them over WebSocket and the client connection manager keeps
a reconnecting, self-reconciling local view of every agent instance.
"""

__version__ = '0.1.0'
__author__ = 'agent-relay Contributors'
__license__ = 'MIT'

from .events import (
    AgentStatus,
    Envelope,
    EventSource,
    parse_envelope,
    parse_event,
)
from .agent_adapter import (
    AgentAdapter,
    AgentAdapterError,
    AgentInfo,
    AgentMessage,
    AgentStartOptions,
    AlreadyRunningError,
    NotRunningError,
    TurnInFlightError,
)
from .adapter_registry import (
    AdapterRegistration,
    AdapterRegistry,
    create_adapter,
    get_registry,
)


# Lazy imports keep the client usable without the server stack
def get_connection_manager():
    """Get the default client connection manager, if initialized."""
    from .connection import get_connection_manager as _get

    return _get()


def create_app(*args, **kwargs):
    """Create the relay server FastAPI app."""
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    'AgentStatus',
    'Envelope',
    'EventSource',
    'parse_envelope',
    'parse_event',
    'AgentAdapter',
    'AgentAdapterError',
    'AgentInfo',
    'AgentMessage',
    'AgentStartOptions',
    'AlreadyRunningError',
    'NotRunningError',
    'TurnInFlightError',
    'AdapterRegistration',
    'AdapterRegistry',
    'create_adapter',
    'get_registry',
    'get_connection_manager',
    'create_app',
]
