"""HTTP proxy logic for forwarding requests upstream.

Three pieces live here: capturing the inbound request, rewriting it into the
outbound one, and sending that under a deadline that covers the whole
exchange, body included.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import httpx
import logfire
from starlette.datastructures import Headers
from starlette.requests import Request

from .config import DEADLINE_SECONDS, Settings
from .target import UpstreamTarget

# Methods whose body we parse (and meter)
WRITE_METHODS = frozenset({"POST"})

# Dropped from upstream responses: the first would pop a browser credential
# prompt, the rest no longer apply once httpx has decoded the body
DROP_RESPONSE_HEADERS = frozenset({
    "www-authenticate",
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
})


class DeadlineExceeded(httpx.TimeoutException):
    """The upstream exchange ran past its deadline and was cancelled."""


@dataclass(frozen=True)
class Deadline:
    """A fixed point on the event loop clock after which we give up."""

    seconds: float
    expires_at: float

    @classmethod
    def after(cls, seconds: float = DEADLINE_SECONDS) -> "Deadline":
        loop = asyncio.get_running_loop()
        return cls(seconds=seconds, expires_at=loop.time() + seconds)

    def scope(self) -> asyncio.Timeout:
        """Bound one await by the deadline. The timer goes away with the scope."""
        return asyncio.timeout_at(self.expires_at)


@dataclass(frozen=True)
class ProxyRequest:
    """The inbound request, read once."""

    method: str
    path: str
    headers: Headers
    body: bytes
    json_body: Any = None

    @property
    def is_write(self) -> bool:
        return self.method in WRITE_METHODS

    @property
    def authorization(self) -> str:
        return self.headers.get("authorization", "")

    @classmethod
    async def capture(cls, request: Request) -> "ProxyRequest":
        path = request.url.path
        if request.url.query:
            path = f"{path}?{request.url.query}"

        body = await request.body()
        json_body = None
        if request.method in WRITE_METHODS:
            try:
                json_body = json.loads(body)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logfire.warning("Request body is not JSON: {error}", error=str(e))

        return cls(
            method=request.method,
            path=path,
            headers=request.headers,
            body=body,
            json_body=json_body,
        )


@dataclass(frozen=True)
class OutboundRequest:
    """What we send upstream. Header keys are case-insensitive."""

    method: str
    url: str
    headers: httpx.Headers
    content: bytes | None
    deadline: Deadline


def build_headers(authorization: str, org_id: str | None = None) -> httpx.Headers:
    """Outbound headers. Nothing else from the caller is passed on."""
    headers = httpx.Headers({
        "Content-Type": "application/json",
        "Cache-Control": "no-store",
        "Authorization": authorization,
    })
    if org_id:
        headers["OpenAI-Organization"] = org_id
    return headers


def build_outbound_request(
    request: ProxyRequest,
    target: UpstreamTarget,
    settings: Settings,
) -> OutboundRequest:
    """Rewrite the captured request for the upstream.

    Parsed JSON bodies are re-serialized; anything else goes out as it came.
    The deadline starts now.
    """
    if request.is_write and request.json_body is not None:
        content = json.dumps(request.json_body).encode()
    else:
        content = request.body or None

    return OutboundRequest(
        method=request.method,
        url=target.url,
        headers=build_headers(request.authorization, settings.openai_org_id),
        content=content,
        deadline=Deadline.after(settings.deadline_seconds),
    )


class UpstreamProxy:
    """Sends outbound requests over one pooled client."""

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        # Deadline handles the overall bound; httpx only guards connecting
        self.client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(None, connect=10.0),
            follow_redirects=False,
        )

    async def forward(self, outbound: OutboundRequest) -> httpx.Response:
        """Send the request and return as soon as headers are in.

        The body is left unread; stream it with ``UpstreamBody``. Redirects
        come back to the caller as-is.
        """
        request = self.client.build_request(
            method=outbound.method,
            url=outbound.url,
            headers=outbound.headers,
            content=outbound.content,
        )
        try:
            async with outbound.deadline.scope():
                return await self.client.send(request, stream=True, follow_redirects=False)
        except TimeoutError:
            logfire.error("Upstream deadline exceeded after {seconds}s", seconds=outbound.deadline.seconds)
            raise DeadlineExceeded(
                f"upstream did not answer within {outbound.deadline.seconds}s",
                request=request,
            ) from None
        except httpx.HTTPError as e:
            logfire.error("Upstream request failed: {error}", error=str(e))
            raise

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


def filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    """Upstream headers for the caller, with buffering turned off downstream."""
    relayed = {
        k: v for k, v in headers.items()
        if k.lower() not in DROP_RESPONSE_HEADERS
    }
    # nginx would otherwise hold the event stream back
    relayed["X-Accel-Buffering"] = "no"
    return relayed


class UpstreamBody:
    """Body chunks as they arrive, each read bounded by the deadline.

    Owns the upstream response: it is closed when the body runs out, when a
    read fails, and on ``aclose()``, whether or not anything was read.
    """

    def __init__(self, response: httpx.Response, deadline: Deadline):
        self.response = response
        self.deadline = deadline
        self._chunks = response.aiter_bytes()

    def __aiter__(self) -> "UpstreamBody":
        return self

    async def __anext__(self) -> bytes:
        if self.response.is_closed:
            raise StopAsyncIteration
        try:
            async with self.deadline.scope():
                return await anext(self._chunks)
        except StopAsyncIteration:
            await self.aclose()
            raise
        except TimeoutError:
            await self.aclose()
            logfire.error("Upstream stream cut off at the {seconds}s deadline", seconds=self.deadline.seconds)
            raise DeadlineExceeded(
                f"upstream stream ran past {self.deadline.seconds}s",
                request=self.response.request,
            ) from None
        except BaseException:
            await self.aclose()
            raise

    async def aclose(self) -> None:
        await self._chunks.aclose()
        await self.response.aclose()
