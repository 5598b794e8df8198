"""
Configuration management for agent-relay.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from .retry import MAX_RECONNECT_ATTEMPTS

# Load environment variables from .env file
load_dotenv()


class ServerConfig(BaseModel):
    """Configuration for the relay server."""

    host: str = '0.0.0.0'
    port: int = 8787
    log_level: str = 'INFO'
    # Events kept per (source, instance) for reconnect replay
    history_limit: int = 5000
    default_adapter: str = 'claude'
    workspace_id: Optional[str] = None


class ClientConfig(BaseModel):
    """Configuration for a relay client connection."""

    ws_url: str = 'ws://localhost:8787/ws'
    api_url: str = 'http://localhost:8787'
    api_prefix: str = 'agents'
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    heartbeat: Optional[float] = None
    max_tracked_instances: int = 256


def load_server_config() -> ServerConfig:
    """Load server configuration from environment variables."""
    return ServerConfig(
        host=os.getenv('AGENT_RELAY_HOST', '0.0.0.0'),
        port=int(os.getenv('AGENT_RELAY_PORT', '8787')),
        log_level=os.getenv('AGENT_RELAY_LOG_LEVEL', 'INFO'),
        history_limit=int(os.getenv('AGENT_RELAY_HISTORY_LIMIT', '5000')),
        default_adapter=os.getenv('AGENT_RELAY_ADAPTER', 'claude'),
        workspace_id=os.getenv('AGENT_RELAY_WORKSPACE_ID') or None,
    )


def load_client_config() -> ClientConfig:
    """Load client configuration from environment variables."""
    heartbeat = os.getenv('AGENT_RELAY_HEARTBEAT')
    return ClientConfig(
        ws_url=os.getenv('AGENT_RELAY_URL', 'ws://localhost:8787/ws'),
        api_url=os.getenv('AGENT_RELAY_API_URL', 'http://localhost:8787'),
        api_prefix=os.getenv('AGENT_RELAY_API_PREFIX', 'agents'),
        max_reconnect_attempts=int(
            os.getenv('AGENT_RELAY_MAX_RECONNECT_ATTEMPTS', str(MAX_RECONNECT_ATTEMPTS))
        ),
        heartbeat=float(heartbeat) if heartbeat else None,
        max_tracked_instances=int(os.getenv('AGENT_RELAY_MAX_TRACKED_INSTANCES', '256')),
    )
