"""Adapter registry: string-keyed factories for agent adapters."""

import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .agent_adapter import AdapterSignalsMixin, AdapterVariant, AgentInfo

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., AdapterSignalsMixin]


class AdapterRegistryError(ValueError):
    """Raised when adapter registration or lookup fails."""


@dataclass
class AdapterRegistration:
    id: str
    name: str
    factory: AdapterFactory
    description: Optional[str] = None


@dataclass
class AdapterAvailability:
    id: str
    name: str
    available: bool
    description: Optional[str] = None
    info: Optional[AgentInfo] = None


class AdapterRegistry:
    """Registered adapter factories keyed by globally unique id."""

    def __init__(self):
        self._registrations: Dict[str, AdapterRegistration] = {}

    def register(self, registration: AdapterRegistration) -> None:
        if not registration.id:
            raise AdapterRegistryError('Adapter id cannot be empty.')
        if registration.id in self._registrations:
            raise AdapterRegistryError(
                f'Adapter with id "{registration.id}" is already registered'
            )
        self._registrations[registration.id] = registration
        logger.debug(f'Registered adapter {registration.id}')

    def register_entrypoint(
        self,
        adapter_id: str,
        entrypoint: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> None:
        """Register an adapter from a ``module:attribute`` import path."""
        module_name, separator, attr = entrypoint.partition(':')
        if not separator:
            raise AdapterRegistryError(
                f"Invalid adapter entrypoint '{entrypoint}'. Expected module:attribute."
            )
        module = importlib.import_module(module_name)
        target = getattr(module, attr)
        if not callable(target):
            raise AdapterRegistryError(f"Adapter entrypoint '{entrypoint}' is not callable.")
        self.register(
            AdapterRegistration(
                id=adapter_id,
                name=name or adapter_id,
                description=description,
                factory=target,
            )
        )

    def unregister(self, adapter_id: str) -> bool:
        return self._registrations.pop(adapter_id, None) is not None

    def list_ids(self) -> List[str]:
        return list(self._registrations.keys())

    def is_registered(self, adapter_id: str) -> bool:
        return adapter_id in self._registrations

    def get_registration(self, adapter_id: str) -> Optional[AdapterRegistration]:
        return self._registrations.get(adapter_id)

    def create(self, adapter_id: str, **options: Any) -> AdapterSignalsMixin:
        registration = self._registrations.get(adapter_id)
        if registration is None:
            available = ', '.join(self.list_ids()) or 'none'
            raise AdapterRegistryError(
                f'Unknown adapter "{adapter_id}". Available adapters: {available}'
            )
        return registration.factory(**options)

    async def is_available(self, adapter_id: str) -> bool:
        try:
            return await self.create(adapter_id).is_available()
        except Exception as e:
            logger.debug(f'Adapter {adapter_id} availability check failed: {e}')
            return False

    async def get_available_adapters(self) -> List[AdapterAvailability]:
        results = []
        for registration in self._registrations.values():
            try:
                adapter = registration.factory()
                available = await adapter.is_available()
                info = adapter.get_info()
            except Exception as e:
                logger.debug(f'Adapter {registration.id} unavailable: {e}')
                available = False
                info = None
            results.append(
                AdapterAvailability(
                    id=registration.id,
                    name=registration.name,
                    description=registration.description,
                    available=available,
                    info=info,
                )
            )
        return results

    async def get_first_available(
        self, preferred_order: Optional[List[str]] = None
    ) -> Optional[str]:
        order = preferred_order or self.list_ids()
        for adapter_id in order:
            if self.is_registered(adapter_id) and await self.is_available(adapter_id):
                return adapter_id
        return None

    def register_defaults(self) -> None:
        from .claude_adapter import ClaudeAdapter
        from .codex_adapter import CodexAdapter

        defaults = [
            AdapterRegistration(
                id=AdapterVariant.CLAUDE.value,
                name='Claude',
                description='Anthropic Claude via the Claude Agent SDK',
                factory=ClaudeAdapter,
            ),
            AdapterRegistration(
                id=AdapterVariant.CODEX.value,
                name='Codex',
                description='OpenAI Codex CLI',
                factory=CodexAdapter,
            ),
        ]
        for registration in defaults:
            if not self.is_registered(registration.id):
                self.register(registration)

    def clear(self) -> None:
        self._registrations.clear()


# Default registry instance
_registry: Optional[AdapterRegistry] = None


def get_registry() -> AdapterRegistry:
    """Get the default registry, populated with the built-in adapters."""
    global _registry
    if _registry is None:
        _registry = AdapterRegistry()
        _registry.register_defaults()
    return _registry


def create_adapter(adapter_id: str, **options: Any) -> AdapterSignalsMixin:
    return get_registry().create(adapter_id, **options)
