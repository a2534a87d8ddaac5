"""Backend providers: one dispatch table per third-party AI backend.

A provider owns the transport to its backend and a :class:`ServiceRegistry`
mapping service names to handlers.  The orchestrator only ever talks to
``invoke_service`` and ``invoke_service_stream``.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional, Set, Type

from core.config import PluginConfig, ServiceConfig, get_settings
from core.errors import AdapterError, CallCancelledError, ServiceCallError, UnsupportedServiceError
from core.logging import logger
from core.monitoring import AdapterMetrics, get_metrics

from .context import CallContext
from .contract import ResponsePolicy, StreamChunk
from .registry import ServiceRegistry
from .services import (
    ChatService,
    EmbedService,
    FieldMapping,
    GenerateService,
    PassthroughService,
)
from .streaming import ChunkChannel
from .transport import HTTPTransport, Transport


class Provider(ABC):
    """Base class for backend providers."""

    name: str = ""

    def __init__(
        self,
        config: Optional[PluginConfig] = None,
        transport: Optional[Transport] = None,
        metrics: Optional[AdapterMetrics] = None,
        stream_buffer: Optional[int] = None,
    ):
        if config is None or stream_buffer is None:
            settings = get_settings()
            if config is None:
                config = self.default_config(timeout=settings.REQUEST_TIMEOUT)
            if stream_buffer is None:
                stream_buffer = settings.STREAM_BUFFER_SIZE
        self.config = config
        self.stream_buffer = stream_buffer
        self.transport = transport or HTTPTransport(self.name, config, stream_buffer=stream_buffer)
        self.metrics = metrics or get_metrics()
        self.registry = ServiceRegistry()
        self._streams: Set[asyncio.Task] = set()
        self.register_services()

    @classmethod
    @abstractmethod
    def default_config(cls, timeout: float = 30.0) -> PluginConfig:
        """Built-in configuration used when no plugin file is present."""
        pass

    @abstractmethod
    def register_services(self) -> None:
        """Fill the registry with this backend's service handlers."""
        pass

    async def aclose(self) -> None:
        for task in list(self._streams):
            task.cancel()
        if self._streams:
            await asyncio.gather(*self._streams, return_exceptions=True)
        if isinstance(self.transport, HTTPTransport):
            await self.transport.aclose()

    # ------------------------------------------------------------------
    # Unary
    # ------------------------------------------------------------------
    async def invoke_service(self, ctx: CallContext, service: str, auth_info: str, request: bytes) -> bytes:
        """Route a unary request to the handler registered for *service*."""
        logger.info(f"[{self.name}] InvokeService: {service}")
        entry = self.registry.get(service)
        if entry is None or entry.unary is None:
            logger.error(f"[{self.name}] Unsupported service: {service}")
            self.metrics.log_error(self.name, service, "unary")
            raise UnsupportedServiceError(service)

        self.metrics.log_call(self.name, service, "unary")
        with self.metrics.time_call(self.name, service):
            try:
                return await entry.unary(ctx, auth_info, request)
            except Exception as e:
                self.metrics.log_error(self.name, service, "unary")
                logger.error(f"[{self.name}] {service} failed: {e}")
                raise

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    async def invoke_service_stream(
        self, ctx: CallContext, service: str, auth_info: str, request: bytes
    ) -> ChunkChannel:
        """Start one task for the stream and return the channel it writes to.

        The channel always ends with exactly one terminal chunk.
        """
        logger.info(f"[{self.name}] InvokeServiceStream: {service}")
        out = ChunkChannel(maxsize=self.stream_buffer)
        task = asyncio.create_task(self._run_stream(ctx, service, auth_info, request, out))
        self._streams.add(task)
        task.add_done_callback(self._streams.discard)
        return out

    async def _run_stream(
        self, ctx: CallContext, service: str, auth_info: str, request: bytes, out: ChunkChannel
    ) -> None:
        try:
            await self._dispatch_stream(ctx, service, auth_info, request, out)
        except asyncio.CancelledError:
            # the reader must still see a terminal chunk when the task is stopped
            if out.abort(CallCancelledError("stream stopped")):
                logger.info(f"[{self.name}] {service} stream stopped")
                self.metrics.log_chunk(self.name, service, "error")
            raise

    async def _dispatch_stream(
        self, ctx: CallContext, service: str, auth_info: str, request: bytes, out: ChunkChannel
    ) -> None:
        entry = self.registry.get(service)
        if entry is None:
            await self._fail_stream(out, service, UnsupportedServiceError(service))
            return
        if entry.streaming is None:
            await self._fail_stream(out, service, UnsupportedServiceError(service, mode="streaming"))
            return

        self.metrics.log_call(self.name, service, "streaming")
        try:
            await entry.streaming(ctx, auth_info, request, out)
        except Exception as e:
            if out.closed:
                logger.error(f"[{self.name}] {service} handler failed after the terminal chunk: {e}")
                return
            await self._fail_stream(out, service, ServiceCallError(self.name, service, e, streaming=True))
            return

        if not out.closed:
            cause = AdapterError("stream ended without a terminal chunk")
            await self._fail_stream(out, service, ServiceCallError(self.name, service, cause, streaming=True))

    async def _fail_stream(self, out: ChunkChannel, service: str, error: AdapterError) -> None:
        logger.error(f"[{self.name}] {error}")
        self.metrics.log_error(self.name, service, "streaming")
        self.metrics.log_chunk(self.name, service, "error")
        await out.send(StreamChunk.failure(error))


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class OllamaProvider(Provider):
    """Local Ollama engine; raw request maps, ndjson streams, no auth."""

    name = "ollama"

    @classmethod
    def default_config(cls, timeout: float = 30.0) -> PluginConfig:
        return PluginConfig(
            engine_host="http://127.0.0.1:16677",
            timeout=timeout,
            services=[
                ServiceConfig(service_name="chat", endpoint="/api/chat", stream_format="ndjson"),
                ServiceConfig(service_name="generate", endpoint="/api/generate", stream_format="ndjson"),
                ServiceConfig(service_name="embed", endpoint="/api/embeddings"),
            ],
        )

    def register_services(self) -> None:
        self.registry.register(ChatService(self.transport))
        self.registry.register(GenerateService(self.transport))
        self.registry.register(EmbedService(self.transport))


class TencentProvider(Provider):
    """Tencent Hunyuan; every service is TC3-HMAC-SHA256 signed."""

    name = "tencent"

    @classmethod
    def default_config(cls, timeout: float = 30.0) -> PluginConfig:
        def hunyuan(service: str, action: str, **kwargs) -> ServiceConfig:
            return ServiceConfig(
                service_name=service,
                endpoint="/",
                auth_type="tc3",
                auth_fields=["secret_id", "secret_key"],
                extra_headers={"version": "2023-09-01", "action": action, "region": "ap-guangzhou"},
                **kwargs,
            )

        return PluginConfig(
            engine_host="https://hunyuan.tencentcloudapi.com",
            timeout=timeout,
            services=[
                hunyuan("chat", "ChatCompletions", stream_format="sse"),
                hunyuan("embed", "GetEmbedding"),
                hunyuan("text-to-image", "TextToImageLite"),
                ServiceConfig(
                    service_name="text-to-speech",
                    auth_type="tc3",
                    auth_fields=["secret_id", "secret_key"],
                    special_url="https://tts.tencentcloudapi.com",
                    extra_headers={"version": "2019-08-23", "action": "TextToVoice", "region": "ap-guangzhou"},
                ),
            ],
        )

    def register_services(self) -> None:
        self.registry.register(
            ChatService(self.transport, mapping=FieldMapping.of("model", "messages"), policy=ResponsePolicy.EXTRACT)
        )
        self.registry.register(EmbedService(self.transport, mapping=None))
        self.registry.register(PassthroughService(self.transport, "text-to-image"))
        self.registry.register(PassthroughService(self.transport, "text-to-speech"))


class DeepSeekProvider(Provider):
    """DeepSeek chat completions, bearer api key, SSE streams."""

    name = "deepseek"

    @classmethod
    def default_config(cls, timeout: float = 30.0) -> PluginConfig:
        return PluginConfig(
            engine_host="https://api.deepseek.com",
            timeout=timeout,
            services=[
                ServiceConfig(
                    service_name="chat",
                    endpoint="/chat/completions",
                    auth_type="apikey",
                    auth_fields=["api_key"],
                    stream_format="sse",
                    default_model="deepseek-chat",
                    support_models=["deepseek-chat", "deepseek-reasoner"],
                ),
            ],
        )

    def register_services(self) -> None:
        self.registry.register(ChatService(self.transport, mapping=None))


class BaiduProvider(Provider):
    """Baidu Qianfan, bearer api key."""

    name = "baidu"

    @classmethod
    def default_config(cls, timeout: float = 30.0) -> PluginConfig:
        def qianfan(service: str, endpoint: str, **kwargs) -> ServiceConfig:
            return ServiceConfig(
                service_name=service,
                endpoint=endpoint,
                auth_type="apikey",
                auth_fields=["api_key"],
                **kwargs,
            )

        return PluginConfig(
            engine_host="https://qianfan.baidubce.com",
            timeout=timeout,
            services=[
                qianfan("chat", "/v2/chat/completions", stream_format="sse"),
                qianfan("embed", "/v2/embeddings"),
                qianfan("text-to-speech", "/v2/tts"),
                qianfan("image-to-image", "/v2/images/edits"),
            ],
        )

    def register_services(self) -> None:
        self.registry.register(ChatService(self.transport, mapping=None))
        self.registry.register(EmbedService(self.transport, mapping=None))
        self.registry.register(PassthroughService(self.transport, "text-to-speech"))
        self.registry.register(PassthroughService(self.transport, "image-to-image"))


PROVIDERS: Dict[str, Type[Provider]] = {
    OllamaProvider.name: OllamaProvider,
    TencentProvider.name: TencentProvider,
    DeepSeekProvider.name: DeepSeekProvider,
    BaiduProvider.name: BaiduProvider,
}


def create_provider(provider_type: str, **kwargs) -> Provider:
    """
    Factory function to create a provider instance.

    Args:
        provider_type: Backend name (ollama, tencent, deepseek, baidu)
        **kwargs: Provider-specific arguments

    Returns:
        Provider instance
    """
    provider_class = PROVIDERS.get(provider_type.lower())
    if provider_class is None:
        raise ValueError(f"Unknown provider type: {provider_type}")
    return provider_class(**kwargs)
