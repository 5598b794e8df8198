"""
Relay server: FastAPI app exposing the WebSocket hub and instance controls.
"""

import logging
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, HTTPException, WebSocket
from pydantic import BaseModel, Field

from .adapter_registry import AdapterRegistryError
from .agent_adapter import AgentAdapterError, AgentStartOptions
from .config import ServerConfig, load_server_config
from .event_log import EventLog
from .events import EventSource
from .ws_handler import DEFAULT_INSTANCE_ID, AgentHub

logger = logging.getLogger(__name__)


class StartInstanceRequest(BaseModel):
    model_config = {'populate_by_name': True}

    adapter: Optional[str] = None
    cwd: Optional[str] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = Field(None, alias='systemPrompt')
    max_iterations: Optional[int] = Field(None, alias='maxIterations')
    allowed_tools: Optional[List[str]] = Field(None, alias='allowedTools')
    env: Dict[str, str] = Field(default_factory=dict)
    workspace_id: Optional[str] = Field(None, alias='workspaceId')

    def to_options(self) -> AgentStartOptions:
        return AgentStartOptions(
            cwd=self.cwd,
            env=dict(self.env),
            system_prompt=self.system_prompt,
            model=self.model,
            max_iterations=self.max_iterations,
            allowed_tools=self.allowed_tools,
        )


class StopInstanceRequest(BaseModel):
    force: bool = False


def create_router(hub: AgentHub, config: ServerConfig) -> APIRouter:
    router = APIRouter(prefix='/api', tags=['agents'])

    @router.get('/adapters')
    async def list_adapters() -> List[Dict[str, Any]]:
        adapters = await hub.registry.get_available_adapters()
        return [
            {
                'id': a.id,
                'name': a.name,
                'description': a.description,
                'available': a.available,
            }
            for a in adapters
        ]

    @router.get('/agents')
    async def list_instances() -> Dict[str, Any]:
        return {'instances': list(hub.instances().values())}

    @router.post('/agents/{instance_id}/start')
    async def start_instance(instance_id: str, request: StartInstanceRequest) -> Dict[str, Any]:
        adapter_id = request.adapter or config.default_adapter
        try:
            adapter = await hub.start_instance(
                instance_id,
                adapter_id,
                request.to_options(),
                workspace_id=request.workspace_id,
            )
        except AdapterRegistryError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except AgentAdapterError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {'ok': True, 'instanceId': instance_id, 'status': adapter.status.value}

    @router.post('/agents/{instance_id}/stop')
    async def stop_instance(instance_id: str, request: StopInstanceRequest) -> Dict[str, Any]:
        if not await hub.stop_instance(instance_id, force=request.force):
            raise HTTPException(status_code=404, detail=f'Instance {instance_id} not found')
        return {'ok': True, 'instanceId': instance_id}

    @router.get('/agents/{instance_id}/events')
    async def get_events(instance_id: str, source: str = 'primary', since: int = 0) -> Dict[str, Any]:
        try:
            event_source = EventSource(source)
        except ValueError:
            raise HTTPException(status_code=400, detail=f'Unknown source: {source}')
        pending = hub.event_log.events_since(event_source, instance_id, since or None)
        return {
            'instanceId': instance_id,
            'events': pending.events,
            'totalEvents': pending.total_events,
            'status': pending.status.value,
        }

    return router


def create_app(
    config: Optional[ServerConfig] = None,
    hub: Optional[AgentHub] = None,
) -> FastAPI:
    config = config or load_server_config()
    hub = hub or AgentHub(
        event_log=EventLog(max_events=config.history_limit),
        workspace_id=config.workspace_id,
    )

    app = FastAPI(title='agent-relay', description='Canonical agent event relay')
    app.state.hub = hub
    app.include_router(create_router(hub, config))

    @app.get('/health')
    async def health() -> Dict[str, Any]:
        return {'status': 'ok', 'clients': hub.client_count}

    @app.websocket('/ws')
    async def websocket_endpoint(websocket: WebSocket, instanceId: str = DEFAULT_INSTANCE_ID):
        await hub.serve(websocket, instanceId)

    return app


def main():
    config = load_server_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    logger.info(f'Starting agent-relay on {config.host}:{config.port}')
    uvicorn.run(create_app(config), host=config.host, port=config.port)


if __name__ == '__main__':
    main()
