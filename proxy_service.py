"""
Claude proxy service: Anthropic-protocol requests -> configurable providers.

Every POST is classified by its model (haiku / main). The mapping configured for
that class either passes the request through to the default upstream or routes
it to a provider with a rewritten model and credential. Responses are streamed
back unchanged, except for the event filter of providers that emit empty
content blocks. Each exchange can be written to the audit log.
"""

from __future__ import annotations

import argparse
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from audit import AuditSink, RequestSnapshot, ResponseSnapshot, parse_response_body, request_body_for_record
from config import AppConfig, load_config
from logger import setup_logging
from mapping import available_targets, resolve_request
from providers import is_supervised, needs_event_filter
from sse_handler import StreamRelay, relay_headers
from supervisor import Launcher, ProcessManager
from transform import build_envelope, merge_headers, parse_json_body
from upstream import RetrySupervisor, UpstreamClient, UpstreamError, build_timeout
from utils import dump_config, load_env_files

log = logging.getLogger("claude_proxy")

ALL_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


@dataclass
class ProxyContext:
    """Handles shared by all requests: config source, outbound client, supervised processes."""

    config_loader: Callable[[], AppConfig]
    http_client: httpx.AsyncClient
    processes: ProcessManager
    retry: RetrySupervisor

    @classmethod
    def create(
        cls,
        config: AppConfig,
        *,
        config_loader: Callable[[], AppConfig] = load_config,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        launcher: Optional[Launcher] = None,
    ) -> ProxyContext:
        client = httpx.AsyncClient(timeout=build_timeout(config.connect_timeout_s), transport=transport)
        processes = ProcessManager(launcher)
        retry = RetrySupervisor(UpstreamClient(client), processes, settle_s=config.retry_settle_s)
        return cls(config_loader=config_loader, http_client=client, processes=processes, retry=retry)

    async def aclose(self) -> None:
        await self.processes.stop_all()
        await self.http_client.aclose()


def _path_and_query(request: Request) -> str:
    """Inbound path and query exactly as received."""
    raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
    path = raw_path.split(b"?", 1)[0].decode("latin-1")
    query = (request.scope.get("query_string") or b"").decode("latin-1")
    return f"{path}?{query}" if query else path


async def proxy_request(request: Request, path: str) -> Response:
    """Forward one inbound request."""
    if request.method != "POST":
        return PlainTextResponse("Method Not Allowed", status_code=405, headers={"Allow": "POST"})

    ctx: ProxyContext = request.app.state.context
    config = ctx.config_loader()
    req_id = uuid.uuid4().hex[:12]
    path_and_query = _path_and_query(request)
    log.info("Incoming request req_id=%s %s %s", req_id, request.method, path_and_query)

    raw_body = await request.body()
    body = parse_json_body(raw_body)
    target, mapping_info = resolve_request(body, config)

    # Only the process this request talks to is brought up to date inline.
    if target is not None and is_supervised(target.provider):
        await ctx.processes.reconcile(config, kinds=(target.provider,))
    ctx.processes.reconcile_soon(config)

    envelope = build_envelope(
        raw_body,
        body,
        target,
        merge_headers(request.headers.items()),
        path_and_query,
        config.upstream_base_url,
    )
    log.info("Forwarding req_id=%s to %s", req_id, envelope.url)

    sink = AuditSink.from_config(config)
    snapshot = RequestSnapshot(
        url=path_and_query,
        method=request.method,
        headers=envelope.headers,
        body=request_body_for_record(envelope.json_body, envelope.body),
        mapping=mapping_info,
    )

    try:
        resp = await ctx.retry.send(envelope, config)
    except UpstreamError as e:
        log.error("Proxy error req_id=%s: %s", req_id, e)
        # Audit outcome is deliberately ignored.
        _ = sink.record(snapshot, None, str(e))
        return JSONResponse({"error": str(e)}, status_code=500, headers={"Connection": "close"})

    status = resp.status_code
    backend_headers = dict(resp.headers)

    def on_complete(data: bytes, error: Optional[str]) -> None:
        response = ResponseSnapshot(status=status, headers=backend_headers, body=parse_response_body(data))
        _ = sink.record(snapshot, response, error)

    relay = StreamRelay(
        resp,
        filter_events=needs_event_filter(envelope.provider),
        collect=sink.enabled,
        on_complete=on_complete if sink.enabled else None,
        req_id=req_id,
    )
    return StreamingResponse(relay.stream(), status_code=status, headers=relay_headers(resp.headers))


def create_app(context: Optional[ProxyContext] = None) -> FastAPI:
    """
    Build the proxy app.

    Without a context, one is created on startup from load_config() (and the
    supervised processes are started) and torn down on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "context", None) is None
        if owned:
            config = load_config()
            config.validate()
            if not log.handlers:
                setup_logging(config.log_path, config.log_level)
            app.state.context = ProxyContext.create(config)
            await app.state.context.processes.start_all(config)
            log.info("Proxy server listening on http://%s:%s", config.host, config.port)

        yield  # Application is running

        if owned:
            ctx: ProxyContext = app.state.context
            app.state.context = None
            await ctx.aclose()
            log.info("Proxy server stopped")

    app = FastAPI(
        title="claude-proxy-service",
        version="0.3.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.context = context
    app.add_api_route("/{path:path}", proxy_request, methods=ALL_METHODS)
    return app


app = create_app()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Model-mapping proxy for the Anthropic messages API")
    parser.add_argument(
        "--list-targets",
        action="store_true",
        help="print the mapping values selectable with the current configuration and exit",
    )
    args = parser.parse_args(argv)

    load_env_files()
    config = load_config()
    config.validate()

    if args.list_targets:
        for target in available_targets(config):
            print(target)
        return

    setup_logging(config.log_path, config.log_level)
    dump_config(config)

    import uvicorn

    uvicorn.run(create_app(), host=config.host, port=config.port, reload=False)


if __name__ == "__main__":
    main()
