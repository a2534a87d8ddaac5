from __future__ import annotations
"""Provider router: resolves a backend name to its Provider instance.

Providers are created lazily on first use.  A ``<backend>.yml`` file in
``PLUGIN_CONFIG_DIR`` replaces the provider's built-in configuration and the
``BACKEND_<NAME>_URL`` environment variable overrides its engine host.
"""

import os
from typing import Dict, List, Optional

from core.config import PluginConfig, find_plugin_config, get_settings
from core.logging import logger

from .providers import PROVIDERS, Provider, create_provider

__all__ = ["get_provider_for_request", "register_provider", "reset_router"]


class _Router:
    def __init__(self) -> None:
        self._providers: Dict[str, Provider] = {}

    def register(self, name: str, provider: Provider) -> None:
        self._providers[name] = provider

    def get(self, name: str) -> Optional[Provider]:
        return self._providers.get(name)

    def names(self) -> List[str]:
        return list(self._providers.keys())

    def clear(self) -> None:
        self._providers.clear()


_router = _Router()


def _resolve_config(name: str) -> PluginConfig:
    settings = get_settings()
    config = find_plugin_config(name, settings)
    if config is None:
        config = PROVIDERS[name].default_config(timeout=settings.REQUEST_TIMEOUT)
    base_url = os.environ.get(f"BACKEND_{name.upper()}_URL")
    if base_url:
        logger.info(f"[{name}] engine host overridden: {base_url}")
        config = config.model_copy(update={"engine_host": base_url})
    return config


def register_provider(name: str, provider: Provider) -> None:
    _router.register(name, provider)


def get_provider_for_request(name: str) -> Provider:
    """Retrieve the provider for *name*, building it on first use."""
    name = name.lower()
    provider = _router.get(name)
    if provider is None:
        if name not in PROVIDERS:
            raise KeyError(f"provider {name} not registered")
        provider = create_provider(name, config=_resolve_config(name))
        _router.register(name, provider)
        logger.info(f"Created provider '{name}' ({provider.config.engine_host})")
    return provider


def reset_router() -> None:
    """Forget every registered provider without closing it."""
    _router.clear()
