"""Adapters layer: dispatch contract, streaming bridge, signing and transport.

Call sites only need the names exported here; the sub-modules stay
importable for tests and for backends with special needs.
"""

from __future__ import annotations

from .context import CallContext
from .contract import (
    Capability,
    NormalizedRequest,
    NormalizedResponse,
    ResponsePolicy,
    StreamChunk,
)
from .providers import (
    BaiduProvider,
    DeepSeekProvider,
    OllamaProvider,
    Provider,
    TencentProvider,
    create_provider,
)
from .registry import ServiceRegistry
from .router import get_provider_for_request
from .signing import sign_request
from .streaming import ChunkChannel, RawStream, bridge_stream
from .transport import HTTPTransport, Transport

__all__ = [
    "CallContext",
    "Capability",
    "NormalizedRequest",
    "NormalizedResponse",
    "ResponsePolicy",
    "StreamChunk",
    "Provider",
    "OllamaProvider",
    "TencentProvider",
    "DeepSeekProvider",
    "BaiduProvider",
    "create_provider",
    "ServiceRegistry",
    "get_provider_for_request",
    "sign_request",
    "ChunkChannel",
    "RawStream",
    "bridge_stream",
    "HTTPTransport",
    "Transport",
]
