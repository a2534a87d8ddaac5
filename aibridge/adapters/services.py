"""Service handlers: normalized requests in, backend-native calls out.

Each handler owns one capability of one backend (chat, generate, embed, ...).
It maps the recognized request fields to the backend's names, calls the
transport and either hands the backend payload back untouched or extracts a
fixed subset of fields, depending on the declared response policy.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from core.errors import DecodeError, ServiceCallError
from core.logging import logger

from .context import CallContext
from .contract import Capability, NormalizedRequest, NormalizedResponse, ResponsePolicy, StreamChunk
from .streaming import ChunkChannel, bridge_stream
from .transport import Transport

POST = "POST"


@dataclass(frozen=True)
class FieldMapping:
    """Recognized request fields as (source name, backend name) pairs.

    A field is copied only when present in the request; absent fields are
    never defaulted.  ``None`` for the mapping means "forward every field".
    """
    fields: Tuple[Tuple[str, str], ...]

    @classmethod
    def of(cls, *names: str, **renames: str) -> "FieldMapping":
        pairs = tuple((name, name) for name in names) + tuple(renames.items())
        return cls(fields=pairs)

    def apply(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        native: Dict[str, Any] = {}
        for source, target in self.fields:
            if source in request:
                native[target] = request[source]
        return native


@dataclass(frozen=True)
class UsageKeys:
    """Names of the backend's token counters."""
    prompt: str = "prompt_eval_count"
    completion: str = "eval_count"


def _is_count(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def extract_usage(backend_resp: Mapping[str, Any], keys: UsageKeys = UsageKeys()) -> Optional[Dict[str, int]]:
    """Token usage, or None unless both counters are reported."""
    prompt = backend_resp.get(keys.prompt)
    completion = backend_resp.get(keys.completion)
    if not _is_count(prompt) or not _is_count(completion):
        return None
    return {
        "prompt_tokens": int(prompt),
        "completion_tokens": int(completion),
        "total_tokens": int(prompt + completion),
    }


def extract_response(backend_resp: Mapping[str, Any], keys: UsageKeys = UsageKeys()) -> NormalizedResponse:
    """Pick message, model and usage out of a chat response."""
    fields: Dict[str, Any] = {}
    if "message" in backend_resp:
        fields["message"] = backend_resp["message"]
    if "model" in backend_resp:
        fields["model"] = backend_resp["model"]
    usage = extract_usage(backend_resp, keys)
    if usage is not None:
        fields["usage"] = usage
    return NormalizedResponse(fields=fields)


class BackendService:
    """Unary handler for one service of one backend."""

    capability = Capability.UNARY
    # stream flag injected into the native request; None leaves it alone
    stream_field: Optional[str] = None

    def __init__(
        self,
        transport: Transport,
        service: str,
        mapping: Optional[FieldMapping] = None,
        policy: ResponsePolicy = ResponsePolicy.PASSTHROUGH,
        usage_keys: UsageKeys = UsageKeys(),
    ):
        self.transport = transport
        self.service = service
        self.mapping = mapping
        self.policy = policy
        self.usage_keys = usage_keys

    @property
    def backend(self) -> str:
        return self.transport.backend

    def build_request(self, request: NormalizedRequest, stream: bool) -> Dict[str, Any]:
        if self.mapping is None:
            native = dict(request.fields)
        else:
            native = self.mapping.apply(request.fields)
        if self.stream_field is not None:
            native[self.stream_field] = stream
        return native

    def build_response(self, backend_resp: Any) -> bytes:
        if self.policy is ResponsePolicy.EXTRACT and isinstance(backend_resp, dict):
            return extract_response(backend_resp, self.usage_keys).to_bytes()
        return json.dumps(backend_resp, ensure_ascii=False).encode("utf-8")

    def decode(self, request: bytes, capability: Capability = Capability.UNARY) -> NormalizedRequest:
        try:
            return NormalizedRequest.from_bytes(capability, request, service=self.service)
        except DecodeError as e:
            logger.error(f"[{self.backend}] {self.service}: {e}")
            raise

    async def handle_unary(self, ctx: CallContext, auth_info: str, request: bytes) -> bytes:
        normalized = self.decode(request, Capability.UNARY)
        native = self.build_request(normalized, stream=False)
        try:
            backend_resp = await self.transport.do(ctx, POST, self.service, auth_info, native)
        except Exception as e:
            if ctx.cancelled() and e is ctx.cause:
                raise
            raise ServiceCallError(self.backend, self.service, e) from e
        return self.build_response(backend_resp)


class StreamingBackendService(BackendService):
    """Handler that also supports streaming through the bridge."""

    capability = Capability.BOTH
    stream_field = "stream"

    async def handle_streaming(self, ctx: CallContext, auth_info: str, request: bytes, out: ChunkChannel) -> None:
        try:
            normalized = self.decode(request, Capability.STREAMING)
        except DecodeError as e:
            await out.send(StreamChunk.failure(e))
            return
        native = self.build_request(normalized, stream=True)
        raw = self.transport.stream_response(ctx, POST, self.service, auth_info, native)
        await bridge_stream(ctx, raw, out, self.backend, self.service)


# ---------------------------------------------------------------------------
# Concrete services
# ---------------------------------------------------------------------------


class ChatService(StreamingBackendService):
    """Chat completion; ``max_tokens`` is forwarded as ``num_predict`` by default."""

    DEFAULT_MAPPING = FieldMapping.of("model", "messages", "temperature", "top_p", max_tokens="num_predict")

    def __init__(self, transport: Transport, mapping: Optional[FieldMapping] = DEFAULT_MAPPING, **kwargs):
        super().__init__(transport, "chat", mapping=mapping, **kwargs)


class GenerateService(StreamingBackendService):
    DEFAULT_MAPPING = FieldMapping.of("model", "prompt", "temperature", "top_p")

    def __init__(self, transport: Transport, mapping: Optional[FieldMapping] = DEFAULT_MAPPING, **kwargs):
        super().__init__(transport, "generate", mapping=mapping, **kwargs)


class EmbedService(BackendService):
    """Embeddings; the normalized ``input`` is the backend ``prompt`` by default."""

    DEFAULT_MAPPING = FieldMapping.of("model", input="prompt")

    def __init__(self, transport: Transport, mapping: Optional[FieldMapping] = DEFAULT_MAPPING, **kwargs):
        super().__init__(transport, "embed", mapping=mapping, **kwargs)


class PassthroughService(BackendService):
    """Forwards the request fields unchanged and returns the backend JSON."""

    def __init__(self, transport: Transport, service: str, **kwargs):
        super().__init__(transport, service, mapping=None, **kwargs)
