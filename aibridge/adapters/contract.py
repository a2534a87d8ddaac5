"""Dispatch contract shared by the orchestrator and every backend adapter."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Protocol

from pydantic import BaseModel, Field, ValidationError

from core.errors import DecodeError

if TYPE_CHECKING:
    from .context import CallContext
    from .streaming import ChunkChannel


SSE_CONTENT_TYPE = "text/event-stream"


class Capability(str, Enum):
    """Call modes a service declares support for."""
    UNARY = "unary"
    STREAMING = "streaming"
    BOTH = "both"

    @property
    def unary(self) -> bool:
        return self in (Capability.UNARY, Capability.BOTH)

    @property
    def streaming(self) -> bool:
        return self in (Capability.STREAMING, Capability.BOTH)


class ResponsePolicy(str, Enum):
    """How a unary backend response is handed back to the orchestrator."""
    PASSTHROUGH = "passthrough"
    EXTRACT = "extract"


# ---------------------------------------------------------------------------
# Wire envelopes
# ---------------------------------------------------------------------------


class ServiceRequest(BaseModel):
    """Inbound envelope: {"service": ..., "data": {...}}."""
    service: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


class ServiceResponse(BaseModel):
    """Outbound unary envelope: {"data": {...}, "error": "..."}."""
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    def to_bytes(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode("utf-8")


# ---------------------------------------------------------------------------
# Normalized values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NormalizedRequest:
    """Decoded inbound fields, tagged with the call mode that received them."""
    capability: Capability
    fields: Mapping[str, Any]
    service: str = ""

    @classmethod
    def from_bytes(cls, capability: Capability, request: bytes, service: str = "") -> "NormalizedRequest":
        """Decode an inbound payload.

        Accepts the {service, data} envelope or a bare field mapping.
        """
        try:
            raw = json.loads(request)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
            raise DecodeError(f"failed to unmarshal request: {e}") from e
        if not isinstance(raw, dict):
            raise DecodeError("failed to unmarshal request: expected a JSON object")

        if isinstance(raw.get("data"), dict):
            try:
                envelope = ServiceRequest.model_validate(raw)
            except ValidationError as e:
                raise DecodeError(f"failed to unmarshal request: {e}") from e
            fields = envelope.data
        else:
            fields = raw
        return cls(capability=capability, fields=MappingProxyType(dict(fields)), service=service)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)


@dataclass(frozen=True)
class NormalizedResponse:
    fields: Mapping[str, Any]
    error: Optional[str] = None

    def to_bytes(self) -> bytes:
        return ServiceResponse(data=dict(self.fields), error=self.error).to_bytes()


@dataclass(frozen=True)
class StreamChunk:
    """One event of a normalized stream.

    A chunk is terminal when it is final or carries an error; exactly one
    terminal chunk ends every stream.
    """
    data: Optional[bytes] = None
    metadata: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    error: Optional[BaseException] = None
    is_final: bool = False

    @classmethod
    def sse(cls, payload: bytes) -> "StreamChunk":
        framed = b"data: " + payload + b"\n\n"
        return cls(data=framed, metadata=MappingProxyType({"content-type": SSE_CONTENT_TYPE}))

    @classmethod
    def final(cls) -> "StreamChunk":
        return cls(is_final=True)

    @classmethod
    def failure(cls, error: BaseException) -> "StreamChunk":
        return cls(error=error)

    @property
    def is_terminal(self) -> bool:
        return self.is_final or self.error is not None

    def to_wire(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "metadata": dict(self.metadata),
            "error": str(self.error) if self.error is not None else None,
            "isFinal": self.is_final,
        }


# ---------------------------------------------------------------------------
# Handler interfaces
# ---------------------------------------------------------------------------


class UnaryHandler(Protocol):
    async def handle_unary(self, ctx: "CallContext", auth_info: str, request: bytes) -> bytes:
        """Return exactly one response payload or raise exactly one error."""


class StreamingHandler(Protocol):
    async def handle_streaming(
        self, ctx: "CallContext", auth_info: str, request: bytes, out: "ChunkChannel"
    ) -> None:
        """Write chunks to *out* until exactly one terminal chunk was written."""
