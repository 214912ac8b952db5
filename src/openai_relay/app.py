"""openai-relay - FastAPI application."""

import logging
from contextlib import asynccontextmanager

import httpx
import logfire
from fastapi import FastAPI, Request
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from .config import Settings
from .policy import check_model
from .proxy import (
    ProxyRequest,
    UpstreamBody,
    UpstreamProxy,
    build_outbound_request,
    filter_response_headers,
)
from .sink import AxiomSink, TelemetrySink
from .tap import StreamTap
from .target import PROXY_PREFIX, resolve_target
from .tasks import BackgroundWork
from .usage import UsageAccumulator, track_usage

# Streaming responses finish in a different context than they started in,
# which makes OTel complain about every detach. Harmless.
logging.getLogger("opentelemetry.context").setLevel(logging.CRITICAL)

logfire.configure(service_name="openai-relay", distributed_tracing=True, scrubbing=False)
logfire.instrument_httpx()

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def create_app(
    settings: Settings | None = None,
    *,
    sink: TelemetrySink | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Build the relay.

    Without an explicit ``sink``, one is made from the Axiom settings when
    they're present. ``transport`` replaces the upstream network, for tests.
    """
    settings = settings or Settings.from_env()
    owned_sink = None
    if sink is None and settings.telemetry_enabled:
        sink = owned_sink = AxiomSink(
            settings.axiom_token,
            settings.axiom_org_id,
            url=settings.axiom_url,
        )

    proxy = UpstreamProxy(transport=transport)
    work = BackgroundWork()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle."""
        logfire.info(
            "openai-relay forwarding to {base_url}",
            base_url=resolve_target(settings.base_url, settings.protocol, "").base_url,
            telemetry=sink is not None,
            disable_gpt4=settings.disable_gpt4,
        )
        yield
        logfire.info("openai-relay shutting down, {pending} usage task(s) pending", pending=len(work))
        try:
            await work.drain(timeout=settings.shutdown_seconds)
        except TimeoutError:
            cancelled = await work.cancel()
            logfire.warning(
                "Gave up on {cancelled} usage task(s) after {seconds}s",
                cancelled=cancelled,
                seconds=settings.shutdown_seconds,
            )
        finally:
            await proxy.close()
            if owned_sink is not None:
                await owned_sink.close()

    app = FastAPI(
        title="openai-relay",
        description="Transparent proxy for OpenAI-compatible chat APIs.",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.proxy = proxy
    app.state.sink = sink
    app.state.work = work

    logfire.instrument_fastapi(app)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "service": "openai-relay"}

    @app.api_route(PROXY_PREFIX + "{path:path}", methods=PROXY_METHODS)
    async def handle_request(request: Request, path: str):
        """Forward everything under the prefix upstream and stream it back."""
        captured = await ProxyRequest.capture(request)
        target = resolve_target(settings.base_url, settings.protocol, captured.path)

        logfire.info("[Proxy] {path}", path=target.path)
        logfire.info("[Base Url] {base_url}", base_url=target.base_url)
        if settings.openai_org_id:
            logfire.info("[Org ID] {org_id}", org_id=settings.openai_org_id)

        if captured.is_write:
            refused = check_model(captured.json_body, enabled=settings.disable_gpt4)
            if refused is not None:
                return refused

        outbound = build_outbound_request(captured, target, settings)
        upstream = await proxy.forward(outbound)

        headers = filter_response_headers(upstream.headers)
        body = UpstreamBody(upstream, outbound.deadline)

        if sink is not None and captured.is_write and isinstance(captured.json_body, dict):
            # The usage branch reads to the end and the body closes itself there
            caller_branch, usage_branch = StreamTap(body)
            accumulator = UsageAccumulator.for_request(captured.authorization, captured.json_body)
            work.spawn(
                track_usage(usage_branch, accumulator, sink, settings.axiom_dataset),
                name=f"usage:{target.path}",
            )
            return StreamingResponse(caller_branch, status_code=upstream.status_code, headers=headers)

        return StreamingResponse(
            body,
            status_code=upstream.status_code,
            headers=headers,
            background=BackgroundTask(body.aclose),
        )

    return app


app = create_app()
