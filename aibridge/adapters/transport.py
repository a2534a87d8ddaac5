"""HTTP transport shared by every backend adapter.

``HTTPTransport`` resolves a service name to its endpoint, attaches headers
and authentication, and exposes the two calls the service handlers use:
``do`` for a single JSON response and ``stream_response`` for a raw stream
of payload fragments.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import httpx

from core.config import PluginConfig, ServiceConfig
from core.errors import SigningError, TransportError, UnsupportedServiceError
from core.logging import logger

from .context import CallContext
from .signing import sign_request
from .streaming import RawStream

__all__ = ["HTTPTransport", "Transport"]

Body = Union[bytes, Mapping[str, Any], None]

# extra header keys consumed by the signer instead of being sent as-is
_SIGNING_PARAMS = {"version", "action", "region"}


class Transport(ABC):
    """Interface of the transport client consumed by service handlers."""

    backend: str = ""

    @abstractmethod
    async def do(self, ctx: CallContext, method: str, service: str, auth_info: str, body: Body) -> Dict[str, Any]:
        """Send one request and return the decoded JSON response."""
        pass

    @abstractmethod
    def stream_response(
        self, ctx: CallContext, method: str, service: str, auth_info: str, body: Body
    ) -> RawStream:
        """Start a producer task and return the stream it fills."""
        pass


class HTTPTransport(Transport):
    def __init__(
        self,
        backend: str,
        config: PluginConfig,
        client: Optional[httpx.AsyncClient] = None,
        stream_buffer: int = 10,
    ):
        self.backend = backend
        self.config = config
        self.stream_buffer = stream_buffer
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=config.timeout)
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------
    def _service_conf(self, service: str) -> ServiceConfig:
        service_config = self.config.get_service(service)
        if service_config is None:
            raise UnsupportedServiceError(service)
        return service_config

    def _url(self, service_config: ServiceConfig) -> str:
        if service_config.special_url:
            return service_config.special_url
        return self.config.engine_host.rstrip("/") + service_config.endpoint

    @staticmethod
    def _encode(body: Body) -> Optional[bytes]:
        if body is None:
            return None
        if isinstance(body, (bytes, bytearray)):
            return bytes(body)
        return json.dumps(body, ensure_ascii=False).encode("utf-8")

    def _headers(
        self, method: str, url: str, service_config: ServiceConfig, auth_info: str, payload: Optional[bytes]
    ) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if payload is not None:
            headers["Content-Type"] = "application/json"
        headers["Accept"] = "application/json"

        auth_type = (service_config.auth_type or "none").lower()
        for key, value in service_config.extra_headers.items():
            if auth_type == "tc3" and key.lower() in _SIGNING_PARAMS:
                continue
            headers[key] = value

        headers.update(self._auth_headers(method, url, service_config, auth_info, headers, payload))
        return headers

    def _auth_headers(
        self,
        method: str,
        url: str,
        service_config: ServiceConfig,
        auth_info: str,
        headers: Mapping[str, str],
        payload: Optional[bytes],
    ) -> Dict[str, str]:
        auth_type = (service_config.auth_type or "none").lower()
        if auth_type == "none":
            return {}
        if auth_type == "tc3":
            common = {
                k: v for k, v in service_config.extra_headers.items() if k.lower() in _SIGNING_PARAMS
            }
            return sign_request(auth_info, method, url, headers, payload or b"", common)

        try:
            credentials = json.loads(auth_info)
        except (json.JSONDecodeError, TypeError) as e:
            raise SigningError(f"failed to unmarshal request credentials: {e}") from e
        if not isinstance(credentials, dict):
            raise SigningError("failed to unmarshal request credentials: expected a JSON object")
        # apikey and unknown auth types both use a bearer token when one is present
        api_key = credentials.get("api_key")
        if isinstance(api_key, str) and api_key:
            return {"Authorization": f"Bearer {api_key}"}
        return {}

    def _prepare(
        self, method: str, service: str, auth_info: str, body: Body
    ) -> Tuple[ServiceConfig, str, Dict[str, str], Optional[bytes]]:
        service_config = self._service_conf(service)
        url = self._url(service_config)
        payload = self._encode(body)
        try:
            headers = self._headers(method, url, service_config, auth_info, payload)
        except SigningError as e:
            logger.error(f"[{self.backend}] Failed to set auth: {e}")
            raise
        return service_config, url, headers, payload

    # ------------------------------------------------------------------
    # Unary
    # ------------------------------------------------------------------
    async def do(self, ctx: CallContext, method: str, service: str, auth_info: str, body: Body) -> Dict[str, Any]:
        _, url, headers, payload = self._prepare(method, service, auth_info, body)
        logger.debug(f"[{self.backend}] HTTP request: {method} {url}")

        try:
            response = await ctx.guard(
                self._client.request(method, url, content=payload, headers=headers)
            )
        except httpx.HTTPError as e:
            logger.error(f"[{self.backend}] HTTP request failed: {e}")
            raise TransportError(f"request failed: {e}") from e

        logger.debug(f"[{self.backend}] HTTP response: {response.status_code}")
        if response.status_code != httpx.codes.OK:
            text = response.text
            logger.error(f"[{self.backend}] HTTP error {response.status_code}: {text}")
            raise TransportError(
                f"API returned status {response.status_code}: {text}",
                status=response.status_code,
                body=text,
            )

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"[{self.backend}] Failed to decode response: {e}")
            raise TransportError(f"failed to decode response: {e}") from e

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------
    def stream_response(
        self, ctx: CallContext, method: str, service: str, auth_info: str, body: Body
    ) -> RawStream:
        """Start a producer task and return its channels immediately.

        Failures, including signing failures before any request is sent, are
        reported on the error channel.
        """
        raw = RawStream(maxsize=self.stream_buffer)
        raw.attach(asyncio.create_task(self._produce(ctx, raw, method, service, auth_info, body)))
        return raw

    async def _produce(
        self, ctx: CallContext, raw: RawStream, method: str, service: str, auth_info: str, body: Body
    ) -> None:
        stopped = False
        try:
            service_config, url, headers, payload = self._prepare(method, service, auth_info, body)
            logger.debug(f"[{self.backend}] HTTP streaming request: {method} {url}")
            async with self._client.stream(method, url, content=payload, headers=headers) as response:
                logger.debug(f"[{self.backend}] Streaming response status: {response.status_code}")
                if response.status_code != httpx.codes.OK:
                    text = (await response.aread()).decode("utf-8", errors="replace")
                    raise TransportError(
                        f"API returned status {response.status_code}: {text}",
                        status=response.status_code,
                        body=text,
                    )
                await self._pump(ctx, raw, response, service_config.stream_format)
        except asyncio.CancelledError:
            stopped = True
            raise
        except httpx.HTTPError as e:
            logger.error(f"[{self.backend}] Streaming request failed: {e}")
            raw.errors.put_nowait(TransportError(f"request failed: {e}"))
        except Exception as e:
            logger.error(f"[{self.backend}] Streaming failed: {e}")
            raw.errors.put_nowait(e)
        finally:
            logger.debug(f"[{self.backend}] HTTP streaming completed")
            raw.errors.put_nowait(None)
            if stopped or ctx.cancelled():
                # nobody waits for the close marker once the stream was stopped
                try:
                    raw.data.put_nowait(None)
                except asyncio.QueueFull:
                    pass
            else:
                await raw.data.put(None)

    async def _pump(self, ctx: CallContext, raw: RawStream, response: httpx.Response, stream_format: str) -> None:
        if stream_format == "raw":
            async for chunk in response.aiter_bytes():
                if chunk and not await self._offer(ctx, raw, chunk):
                    return
            return

        async for line in response.aiter_lines():
            line = line.strip()
            if not line:
                continue
            if stream_format == "sse":
                if not line.startswith("data:"):
                    continue
                line = line[len("data:"):].strip()
                if line == "[DONE]":
                    return
            try:
                json.loads(line)
            except json.JSONDecodeError as e:
                raise TransportError(f"failed to decode stream fragment: {e}") from e
            if not await self._offer(ctx, raw, line.encode("utf-8")):
                return

    @staticmethod
    async def _offer(ctx: CallContext, raw: RawStream, fragment: bytes) -> bool:
        """Put *fragment* on the data channel; False once the context is cancelled."""
        if ctx.cancelled():
            return False
        try:
            await ctx.guard(raw.data.put(fragment))
        except Exception:
            if ctx.cancelled():
                return False
            raise
        return True
