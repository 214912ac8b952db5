import asyncio
import json

import httpx
import pytest
from starlette.datastructures import Headers

from openai_relay.config import Settings
from openai_relay.proxy import (
    Deadline,
    DeadlineExceeded,
    OutboundRequest,
    ProxyRequest,
    UpstreamBody,
    UpstreamProxy,
    build_headers,
    build_outbound_request,
    filter_response_headers,
)
from openai_relay.target import resolve_target

from .conftest import sse_stream

URL = "https://upstream.test/v1/chat/completions"


def make_request(method="POST", body=b"", json_body=None, **headers):
    return ProxyRequest(
        method=method,
        path="/api/openai/v1/chat/completions",
        headers=Headers(headers),
        body=body,
        json_body=json_body,
    )


def outbound(deadline: float = 5.0, content: bytes | None = b"{}") -> OutboundRequest:
    return OutboundRequest(
        method="POST",
        url=URL,
        headers=build_headers("Bearer sk-test"),
        content=content,
        deadline=Deadline.after(deadline),
    )


def test_build_headers_sets_fixed_headers():
    headers = build_headers("Bearer sk-abc", org_id="org-42")
    assert headers["content-type"] == "application/json"
    assert headers["cache-control"] == "no-store"
    assert headers["authorization"] == "Bearer sk-abc"
    assert headers["openai-organization"] == "org-42"

    assert "openai-organization" not in build_headers("")


@pytest.mark.asyncio
async def test_write_body_is_reserialized():
    body = {"model": "gpt-3.5-turbo", "messages": [{"role": "user", "content": "héllo"}], "stream": True}
    request = make_request(
        body=json.dumps(body, indent=4).encode(),
        json_body=body,
        authorization="Bearer sk-abc",
        **{"openai-organization": "org-from-client", "x-extra": "1"},
    )
    settings = Settings(openai_org_id="org-configured", deadline_seconds=30)
    target = resolve_target(settings.base_url, settings.protocol, request.path)

    out = build_outbound_request(request, target, settings)

    assert out.method == "POST"
    assert out.url == "https://api.openai.com/v1/chat/completions"
    assert json.loads(out.content) == body
    assert out.headers["authorization"] == "Bearer sk-abc"
    assert out.headers["openai-organization"] == "org-configured"
    assert "x-extra" not in out.headers
    assert out.deadline.seconds == 30


@pytest.mark.asyncio
async def test_non_write_body_passes_through_raw():
    settings = Settings()
    request = make_request(method="DELETE", body=b"raw bytes")
    target = resolve_target(settings.base_url, settings.protocol, request.path)
    assert build_outbound_request(request, target, settings).content == b"raw bytes"

    request = make_request(method="GET")
    out = build_outbound_request(request, target, settings)
    assert out.content is None
    assert out.headers["authorization"] == ""


@pytest.mark.asyncio
async def test_unparsed_write_body_passes_through_raw():
    settings = Settings()
    request = make_request(body=b"not json", json_body=None)
    target = resolve_target(settings.base_url, settings.protocol, request.path)
    assert build_outbound_request(request, target, settings).content == b"not json"


def test_filter_response_headers():
    upstream = httpx.Headers({
        "content-type": "text/event-stream",
        "www-authenticate": 'Basic realm="api"',
        "content-encoding": "gzip",
        "content-length": "123",
        "openai-processing-ms": "42",
    })

    relayed = filter_response_headers(upstream)

    assert relayed == {
        "content-type": "text/event-stream",
        "openai-processing-ms": "42",
        "X-Accel-Buffering": "no",
    }


@pytest.mark.asyncio
async def test_forward_does_not_follow_redirects():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(307, headers={"location": "https://elsewhere.test/"})

    proxy = UpstreamProxy(transport=httpx.MockTransport(handler))
    response = await proxy.forward(outbound())
    try:
        assert response.status_code == 307
        assert response.headers["location"] == "https://elsewhere.test/"
        assert len(seen) == 1
    finally:
        await response.aclose()
        await proxy.close()


@pytest.mark.asyncio
async def test_forward_releases_deadline_on_success():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=sse_stream("ok"))

    proxy = UpstreamProxy(transport=httpx.MockTransport(handler))
    out = outbound(deadline=0.05)
    response = await proxy.forward(out)
    chunks = [chunk async for chunk in UpstreamBody(response, out.deadline)]

    # Outliving the deadline must not cancel us: nothing is left armed
    await asyncio.sleep(0.1)

    assert b"".join(chunks) == sse_stream("ok")
    assert response.is_closed
    await proxy.close()


@pytest.mark.asyncio
async def test_forward_aborts_at_deadline():
    aborted = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            aborted.set()
            raise
        return httpx.Response(200)

    proxy = UpstreamProxy(transport=httpx.MockTransport(handler))
    with pytest.raises(DeadlineExceeded):
        await proxy.forward(outbound(deadline=0.05))

    assert aborted.is_set()
    await asyncio.sleep(0.1)
    await proxy.close()


@pytest.mark.asyncio
async def test_forward_propagates_network_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    proxy = UpstreamProxy(transport=httpx.MockTransport(handler))
    with pytest.raises(httpx.ConnectError):
        await proxy.forward(outbound())
    await proxy.close()


@pytest.mark.asyncio
async def test_stream_that_never_ends_is_cut_at_deadline():
    async def never_ending():
        yield b'data: {"choices": [{"delta": {"content": "hi"}}]}\n\n'
        await asyncio.Event().wait()
        yield b""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=never_ending())

    proxy = UpstreamProxy(transport=httpx.MockTransport(handler))
    out = outbound(deadline=0.1)
    response = await proxy.forward(out)

    received = []
    with pytest.raises(DeadlineExceeded):
        async for chunk in UpstreamBody(response, out.deadline):
            received.append(chunk)

    assert received == [b'data: {"choices": [{"delta": {"content": "hi"}}]}\n\n']
    assert response.is_closed
    await proxy.close()


@pytest.mark.asyncio
async def test_body_closed_without_being_read():
    async def stream():
        yield sse_stream("never read")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream())

    proxy = UpstreamProxy(transport=httpx.MockTransport(handler))
    out = outbound()
    response = await proxy.forward(out)

    body = UpstreamBody(response, out.deadline)
    await body.aclose()

    assert response.is_closed
    assert [chunk async for chunk in body] == []
    await proxy.close()
