"""Service registry: the dispatch table of a provider."""
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.errors import ConfigError
from core.logging import logger

from .contract import Capability

UnaryFn = Callable[..., Awaitable[bytes]]
StreamingFn = Callable[..., Awaitable[None]]


class RegisteredService(BaseModel):
    """A registered service with its declared capability and entry points."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    capability: Capability
    unary: Optional[UnaryFn] = None
    streaming: Optional[StreamingFn] = None
    tags: List[str] = Field(default_factory=list)


class ServiceRegistry:
    """Table of service name -> (capability, unary fn, streaming fn).

    Providers dispatch on the declared capability only; a handler is never
    checked for the methods it happens to have.
    """

    def __init__(self):
        self._services: Dict[str, RegisteredService] = {}

    def register(self, handler: Any, name: Optional[str] = None, tags: Optional[List[str]] = None) -> RegisteredService:
        """
        Register a service handler.

        Args:
            handler: Object with a ``capability`` and the matching
                ``handle_unary`` / ``handle_streaming`` coroutine methods
            name: Service name (defaults to ``handler.service``)
            tags: Optional list of tags for categorization

        Returns:
            The registry entry
        """
        name = name or handler.service
        capability = Capability(handler.capability)
        entry = RegisteredService(
            name=name,
            capability=capability,
            unary=getattr(handler, "handle_unary", None) if capability.unary else None,
            streaming=getattr(handler, "handle_streaming", None) if capability.streaming else None,
            tags=tags or [],
        )
        if (capability.unary and entry.unary is None) or (capability.streaming and entry.streaming is None):
            raise ConfigError(f"service '{name}' declares {capability.value} without a handler")

        if name in self._services:
            logger.info(f"Replaced service '{name}' ({capability.value})")
        else:
            logger.info(f"Registered service '{name}' ({capability.value})")
        self._services[name] = entry
        return entry

    def get(self, name: str) -> Optional[RegisteredService]:
        return self._services.get(name)

    def get_by_tags(self, tags: List[str]) -> List[RegisteredService]:
        return [s for s in self._services.values() if any(tag in s.tags for tag in tags)]

    def list_services(self) -> List[str]:
        """List all registered service names."""
        return list(self._services.keys())

    def get_service_info(self, name: str) -> Optional[Dict[str, Any]]:
        """Get a summary of a registered service."""
        if name not in self._services:
            return None
        service = self._services[name]
        return {
            "name": service.name,
            "capability": service.capability.value,
            "unary": service.unary is not None,
            "streaming": service.streaming is not None,
            "tags": service.tags,
        }

    def __contains__(self, name: str) -> bool:
        return name in self._services

    def __len__(self) -> int:
        return len(self._services)
