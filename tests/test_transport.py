"""Tests for the HTTP transport, using httpx.MockTransport in place of a backend."""
import json

import httpx
import pytest

from aibridge.adapters.context import CallContext
from aibridge.adapters.signing import sign_request
from aibridge.adapters.transport import HTTPTransport, Transport
from core.config import PluginConfig, ServiceConfig
from core.errors import SigningError, TransportError, UnsupportedServiceError

TC3_AUTH = json.dumps({"secret_id": "AKIDz8krbsJ5yKBZQpn74WFkmLPx3EXAMPLE", "secret_key": "Gu5t9xGARNpq86cd98joQYCN3EXAMPLE"})
TC3_PARAMS = {"version": "2023-09-01", "action": "ChatCompletions", "region": "ap-guangzhou"}


def plugin(**service_kwargs) -> PluginConfig:
    service_kwargs.setdefault("endpoint", "/api/chat")
    return PluginConfig(
        engine_host="http://engine/",
        services=[ServiceConfig(service_name="chat", **service_kwargs)],
    )


class Backend:
    """Request recorder in front of a canned httpx response."""

    def __init__(self, response=None, error=None):
        self.response = response if response is not None else httpx.Response(200, json={"ok": True})
        self.error = error
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response

    def transport(self, config: PluginConfig) -> HTTPTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self))
        return HTTPTransport("test", config, client=client)


async def drain(raw):
    fragments = []
    while True:
        item = await raw.data.get()
        if item is None:
            break
        fragments.append(item)
    errors = []
    while not raw.errors.empty():
        err = raw.errors.get_nowait()
        if err is not None:
            errors.append(err)
    return fragments, errors


class TestDo:

    @pytest.mark.asyncio
    async def test_request_shape(self):
        backend = Backend(httpx.Response(200, json={"message": "hi"}))
        transport = backend.transport(plugin(extra_headers={"X-Trace": "1"}))

        result = await transport.do(CallContext(), "POST", "chat", "{}", {"model": "m"})

        assert result == {"message": "hi"}
        request = backend.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://engine/api/chat"
        assert json.loads(request.content) == {"model": "m"}
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["Accept"] == "application/json"
        assert request.headers["X-Trace"] == "1"
        assert "Authorization" not in request.headers

    @pytest.mark.asyncio
    async def test_special_url(self):
        backend = Backend()
        transport = backend.transport(plugin(special_url="https://tts.example.com/v1"))
        await transport.do(CallContext(), "POST", "chat", "{}", {})
        assert str(backend.requests[0].url) == "https://tts.example.com/v1"

    @pytest.mark.asyncio
    async def test_non_success_status(self):
        backend = Backend(httpx.Response(500, text="oops"))
        with pytest.raises(TransportError) as exc_info:
            await backend.transport(plugin()).do(CallContext(), "POST", "chat", "{}", {})
        assert exc_info.value.status == 500
        assert exc_info.value.body == "oops"
        assert str(exc_info.value) == "API returned status 500: oops"

    @pytest.mark.asyncio
    async def test_undecodable_response(self):
        backend = Backend(httpx.Response(200, content=b"not json"))
        with pytest.raises(TransportError, match="failed to decode response"):
            await backend.transport(plugin()).do(CallContext(), "POST", "chat", "{}", {})

    @pytest.mark.asyncio
    async def test_unreachable_backend(self):
        backend = Backend(error=httpx.ConnectError("connection refused"))
        with pytest.raises(TransportError, match="request failed"):
            await backend.transport(plugin()).do(CallContext(), "POST", "chat", "{}", {})

    @pytest.mark.asyncio
    async def test_unknown_service(self):
        backend = Backend()
        with pytest.raises(UnsupportedServiceError):
            await backend.transport(plugin()).do(CallContext(), "POST", "embed", "{}", {})
        assert backend.requests == []


class TestAuth:

    @pytest.mark.asyncio
    async def test_bearer_api_key(self):
        backend = Backend()
        transport = backend.transport(plugin(auth_type="apikey"))
        await transport.do(CallContext(), "POST", "chat", '{"api_key": "sk-1"}', {})
        assert backend.requests[0].headers["Authorization"] == "Bearer sk-1"

    @pytest.mark.asyncio
    async def test_unknown_auth_type_falls_back_to_bearer(self):
        backend = Backend()
        transport = backend.transport(plugin(auth_type="token"))
        await transport.do(CallContext(), "POST", "chat", '{"api_key": "sk-1"}', {})
        assert backend.requests[0].headers["Authorization"] == "Bearer sk-1"

    @pytest.mark.asyncio
    async def test_api_key_missing(self):
        backend = Backend()
        await backend.transport(plugin(auth_type="apikey")).do(CallContext(), "POST", "chat", "{}", {})
        assert "Authorization" not in backend.requests[0].headers

    @pytest.mark.asyncio
    async def test_bad_credentials_fail_before_the_request(self):
        backend = Backend()
        with pytest.raises(SigningError):
            await backend.transport(plugin(auth_type="apikey")).do(CallContext(), "POST", "chat", "not json", {})
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_tc3_headers(self):
        backend = Backend()
        config = plugin(
            auth_type="tc3",
            special_url="https://hunyuan.tencentcloudapi.com",
            extra_headers={**TC3_PARAMS, "X-Custom": "1"},
        )
        await backend.transport(config).do(CallContext(), "POST", "chat", TC3_AUTH, {"model": "m"})

        headers = backend.requests[0].headers
        assert headers["Authorization"].startswith(
            "TC3-HMAC-SHA256 Credential=AKIDz8krbsJ5yKBZQpn74WFkmLPx3EXAMPLE/"
        )
        assert "/hunyuan/tc3_request, SignedHeaders=content-type;host, " in headers["Authorization"]
        assert headers["X-TC-Action"] == "ChatCompletions"
        assert headers["X-TC-Version"] == "2023-09-01"
        assert headers["X-TC-Region"] == "ap-guangzhou"
        assert headers["X-Custom"] == "1"
        for raw_param in ("version", "action", "region"):
            assert raw_param not in headers

        expected = sign_request(
            TC3_AUTH,
            "POST",
            "https://hunyuan.tencentcloudapi.com",
            {"Content-Type": "application/json"},
            backend.requests[0].content,
            TC3_PARAMS,
            timestamp=int(headers["X-TC-Timestamp"]),
        )
        assert headers["Authorization"] == expected["Authorization"]

    @pytest.mark.asyncio
    async def test_tc3_bad_credentials_fail_before_the_request(self):
        backend = Backend()
        config = plugin(auth_type="tc3", special_url="https://hunyuan.tencentcloudapi.com", extra_headers=TC3_PARAMS)
        with pytest.raises(SigningError, match="miss auth info"):
            await backend.transport(config).do(CallContext(), "POST", "chat", '{"secret_id": "x"}', {})
        assert backend.requests == []


class TestStreamResponse:

    @pytest.mark.asyncio
    async def test_ndjson(self):
        backend = Backend(httpx.Response(200, content=b'{"n":1}\n\n{"n":2}\n'))
        raw = backend.transport(plugin(stream_format="ndjson")).stream_response(
            CallContext(), "POST", "chat", "{}", {"stream": True}
        )
        fragments, errors = await drain(raw)
        assert fragments == [b'{"n":1}', b'{"n":2}']
        assert errors == []

    @pytest.mark.asyncio
    async def test_sse_stops_at_done(self):
        body = (
            b'data: {"n":1}\n\n'
            b': keep-alive\n\n'
            b'data:{"n":2}\n\n'
            b'data: [DONE]\n\n'
            b'data: {"n":3}\n\n'
        )
        backend = Backend(httpx.Response(200, content=body))
        raw = backend.transport(plugin(stream_format="sse")).stream_response(CallContext(), "POST", "chat", "{}", {})
        fragments, errors = await drain(raw)
        assert fragments == [b'{"n":1}', b'{"n":2}']
        assert errors == []

    @pytest.mark.asyncio
    async def test_raw_bytes(self):
        backend = Backend(httpx.Response(200, content=b"\x00\x01binary"))
        raw = backend.transport(plugin(stream_format="raw")).stream_response(CallContext(), "POST", "chat", "{}", {})
        fragments, errors = await drain(raw)
        assert b"".join(fragments) == b"\x00\x01binary"
        assert errors == []

    @pytest.mark.asyncio
    async def test_status_error(self):
        backend = Backend(httpx.Response(401, text="denied"))
        raw = backend.transport(plugin()).stream_response(CallContext(), "POST", "chat", "{}", {})
        fragments, errors = await drain(raw)
        assert fragments == []
        assert len(errors) == 1
        assert errors[0].status == 401
        assert str(errors[0]) == "API returned status 401: denied"

    @pytest.mark.asyncio
    async def test_bad_fragment(self):
        backend = Backend(httpx.Response(200, content=b'{"n":1}\nnot json\n'))
        raw = backend.transport(plugin(stream_format="ndjson")).stream_response(
            CallContext(), "POST", "chat", "{}", {}
        )
        fragments, errors = await drain(raw)
        assert fragments == [b'{"n":1}']
        assert isinstance(errors[0], TransportError)
        assert "failed to decode stream fragment" in str(errors[0])

    @pytest.mark.asyncio
    async def test_signing_error_is_reported_without_a_request(self):
        backend = Backend()
        config = plugin(auth_type="tc3", special_url="https://hunyuan.tencentcloudapi.com", extra_headers=TC3_PARAMS)
        raw = backend.transport(config).stream_response(CallContext(), "POST", "chat", "not json", {})
        fragments, errors = await drain(raw)
        assert fragments == []
        assert isinstance(errors[0], SigningError)
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_cancelled_context_delivers_nothing(self):
        ctx = CallContext()
        ctx.cancel()
        backend = Backend(httpx.Response(200, content=b'{"n":1}\n'))
        raw = backend.transport(plugin(stream_format="ndjson")).stream_response(ctx, "POST", "chat", "{}", {})
        fragments, errors = await drain(raw)
        assert fragments == []
        assert errors == []


def test_transport_interface_is_abstract():
    with pytest.raises(TypeError):
        Transport()

    class UnaryOnly(Transport):
        async def do(self, ctx, method, service, auth_info, body):
            return {}

    with pytest.raises(TypeError):
        UnaryOnly()
