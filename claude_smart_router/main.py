from __future__ import annotations

import json
import logging
import time
from typing import Any, AsyncIterator
from uuid import uuid4

import httpx
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import (
    JSONResponse,
    PlainTextResponse,
    Response,
    StreamingResponse,
)

from claude_smart_router.config import RouterTopology, load_topology
from claude_smart_router.gateway.health_policy import (
    HealthKey,
    HealthPolicy,
    HealthPolicyConfig,
)
from claude_smart_router.gateway.health_store import HealthTracker, build_health_store
from claude_smart_router.gateway.paths import RoutingHint, resolve_request_path
from claude_smart_router.gateway.router import (
    BufferedRequest,
    HttpxTransport,
    RequestRouter,
    RouteResult,
)
from claude_smart_router.gateway.streaming import (
    ClaudeToOpenAIStreamTranscoder,
    transcode_claude_stream,
)
from claude_smart_router.gateway.translation import (
    build_claude_request_headers,
    build_models_response,
    claude_to_openai_response,
    is_present_value,
    openai_error_body,
    openai_to_claude_request,
)
from claude_smart_router.settings import Settings, get_settings

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
}

ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

app = FastAPI(
    title="Claude Smart Router",
    description=(
        "Failover gateway for Claude Messages API backends with an "
        "OpenAI Chat Completions compatibility layer."
    ),
    version="0.1.0",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)

logger = logging.getLogger("uvicorn.error")


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    topology = load_topology(settings.topology_config_path)
    health_store = build_health_store(
        redis_url=settings.redis_url,
        key_prefix=settings.health_store_key_prefix,
        ttl_seconds=settings.health_store_ttl_seconds,
        logger=logger,
    )
    policy = HealthPolicy(
        HealthPolicyConfig(
            cooldown_seconds=max(0.0, settings.health_cooldown_seconds),
            failure_threshold=max(1, settings.health_failure_threshold),
        )
    )
    tracker = HealthTracker(store=health_store, policy=policy)
    transport = HttpxTransport(
        timeout_seconds=settings.backend_timeout_seconds,
        connect_timeout_seconds=settings.backend_connect_timeout_seconds,
        read_timeout_seconds=settings.backend_read_timeout_seconds,
        write_timeout_seconds=settings.backend_write_timeout_seconds,
        pool_timeout_seconds=settings.backend_pool_timeout_seconds,
    )
    app.state.settings = settings
    app.state.topology = topology
    app.state.health_policy = policy
    app.state.health_tracker = tracker
    app.state.request_router = RequestRouter(
        topology=topology,
        tracker=tracker,
        transport=transport,
    )
    logger.info(
        "startup complete endpoints=%d sources=%d health_store=%s",
        len(topology.endpoints),
        len(topology.sources),
        health_store.__class__.__name__,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    router: RequestRouter | None = getattr(app.state, "request_router", None)
    if router is not None:
        await router.transport.close()
        await router.tracker.store.close()
    logger.info("shutdown complete")


@app.get("/_router/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/_router/endpoints")
async def endpoint_health() -> dict[str, Any]:
    topology: RouterTopology = app.state.topology
    tracker: HealthTracker = app.state.health_tracker
    policy: HealthPolicy = app.state.health_policy
    records = await tracker.snapshot()

    endpoints: list[dict[str, Any]] = []
    for endpoint_index, endpoint in enumerate(topology.endpoints):
        sources: list[dict[str, Any]] = []
        for source_index, source in enumerate(topology.sources):
            key = HealthKey(endpoint_index, source_index)
            record = records.get(key)
            sources.append(
                {
                    "index": source_index,
                    "name": source.name,
                    "base_url": source.base_url,
                    "failures": record.failures if record else 0,
                    "last_failure_at": record.last_failure_at if record else 0.0,
                    "in_cooldown": record.in_cooldown if record else False,
                    "available": await tracker.is_available(key),
                }
            )
        endpoints.append(
            {
                "index": endpoint_index,
                "name": endpoint.name,
                "path_prefix": endpoint.path_prefix,
                "sources": sources,
            }
        )
    return {
        "generated_at": int(time.time()),
        "cooldown_seconds": policy.config.cooldown_seconds,
        "failure_threshold": policy.config.failure_threshold,
        "endpoints": endpoints,
    }


@app.api_route("/{full_path:path}", methods=ALL_METHODS)
async def route_request(request: Request, full_path: str) -> Response:
    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    try:
        return await _route_request(request, request_id)
    except Exception as exc:
        logger.exception(
            "unhandled_error request_id=%s path=%s error_type=%s",
            request_id,
            full_path,
            exc.__class__.__name__,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=openai_error_body(
                f"Internal server error: {exc}", "internal_error"
            ),
        )


async def _route_request(request: Request, request_id: str) -> Response:
    settings: Settings = app.state.settings
    topology: RouterTopology = app.state.topology
    hint = resolve_request_path(request.url.path, topology.endpoint_prefixes)

    if hint.is_catalog_request:
        return JSONResponse(content=build_models_response(topology.catalog_models))

    body = await request.body()
    headers: list[tuple[str, str]] = list(request.headers.items())
    original_model: str | None = None

    if hint.is_compat and request.method == "POST":
        try:
            payload = json.loads(body)
            if not isinstance(payload, dict):
                raise ValueError("Expected a JSON object request body.")
            claude_payload = openai_to_claude_request(
                payload,
                default_model=settings.default_model,
                default_max_tokens=settings.default_max_tokens,
            )
        except ValueError as exc:
            logger.info(
                "request_translation_failed request_id=%s error=%s", request_id, exc
            )
            return JSONResponse(
                status_code=status.HTTP_400_BAD_REQUEST,
                content=openai_error_body(
                    f"Invalid request body: {exc}", "invalid_request_error"
                ),
            )
        model = payload.get("model")
        if isinstance(model, str) and is_present_value(model):
            original_model = model
        body = json.dumps(claude_payload, ensure_ascii=False).encode("utf-8")
        headers = build_claude_request_headers(
            headers,
            anthropic_version=settings.anthropic_version,
            rewrite_client_signature=settings.client_signature_rewrite_enabled,
        ).multi_items()

    router: RequestRouter = app.state.request_router
    result = await router.forward(
        BufferedRequest.build(
            method=request.method,
            headers=headers,
            body=body,
            query=request.url.query,
        ),
        target_api_path=hint.target_api_path,
        preferred_endpoint=hint.preferred_endpoint,
        request_id=request_id,
    )
    if not result.success:
        return _exhausted_response(hint)
    return await _upstream_response(
        result=result,
        hint=hint,
        topology=topology,
        original_model=original_model,
        default_model=settings.default_model,
        request_id=request_id,
    )


def _exhausted_response(hint: RoutingHint) -> Response:
    if hint.is_compat:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=openai_error_body("All endpoints failed", "api_error"),
        )
    return PlainTextResponse(
        "All endpoints failed",
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
    )


def _filter_response_headers(headers: httpx.Headers) -> list[tuple[str, str]]:
    """Relayable upstream headers as pairs; repeated names like set-cookie survive."""
    return [
        (name.lower(), value)
        for name, value in headers.multi_items()
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS
    ]


def _routing_headers(
    result: RouteResult,
    hint: RoutingHint,
    topology: RouterTopology,
) -> dict[str, str]:
    endpoint_index = result.endpoint_index or 0
    source_index = result.source_index or 0
    headers = {
        "X-Used-Endpoint": topology.endpoints[endpoint_index].path_prefix,
        "X-Endpoint-Index": str(endpoint_index),
        "X-Used-Base-URL": topology.sources[source_index].base_url,
        "X-Base-URL-Index": str(source_index),
    }
    if hint.preferred_endpoint is not None:
        headers["X-Preferred-Endpoint"] = topology.endpoints[
            hint.preferred_endpoint
        ].path_prefix
    if hint.is_compat:
        headers["X-Format-Conversion"] = "OpenAI"
    return headers


def _with_headers(response: Response, headers: list[tuple[str, str]]) -> Response:
    for name, value in headers:
        response.headers.append(name, value)
    return response


async def _relay_body(
    upstream: httpx.Response,
    content: AsyncIterator[bytes],
) -> AsyncIterator[bytes]:
    try:
        async for chunk in content:
            yield chunk
    finally:
        await upstream.aclose()


async def _upstream_response(
    *,
    result: RouteResult,
    hint: RoutingHint,
    topology: RouterTopology,
    original_model: str | None,
    default_model: str,
    request_id: str,
) -> Response:
    upstream = result.response
    assert upstream is not None
    relayed = _filter_response_headers(upstream.headers)
    media_type = upstream.headers.get("content-type")
    response_headers = [
        (name, value) for name, value in relayed if name != "content-type"
    ]
    response_headers.extend(
        (name.lower(), value)
        for name, value in _routing_headers(result, hint, topology).items()
    )

    if hint.is_compat and upstream.status_code == 200:
        if media_type and "text/event-stream" in media_type:
            transcoder = ClaudeToOpenAIStreamTranscoder(
                original_model, default_model=default_model
            )
            return _with_headers(
                StreamingResponse(
                    content=_relay_body(
                        upstream,
                        transcode_claude_stream(upstream.aiter_bytes(), transcoder),
                    ),
                    status_code=upstream.status_code,
                    media_type=media_type,
                ),
                response_headers,
            )

        body = await upstream.aread()
        await upstream.aclose()
        try:
            translated = claude_to_openai_response(
                json.loads(body), original_model, default_model=default_model
            )
        except ValueError as exc:
            logger.warning(
                "response_translation_failed request_id=%s error=%s", request_id, exc
            )
            return _with_headers(
                Response(
                    content=body,
                    status_code=upstream.status_code,
                    media_type=media_type,
                ),
                response_headers,
            )
        return _with_headers(
            JSONResponse(status_code=upstream.status_code, content=translated),
            response_headers,
        )

    return _with_headers(
        StreamingResponse(
            content=_relay_body(upstream, upstream.aiter_bytes()),
            status_code=upstream.status_code,
            media_type=media_type,
        ),
        response_headers,
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "claude_smart_router.main:app",
        host=settings.router_host,
        port=settings.router_port,
        reload=False,
    )


if __name__ == "__main__":
    run()
