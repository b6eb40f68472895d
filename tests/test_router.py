from __future__ import annotations

import asyncio
from typing import Any

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError

from claude_smart_router.config import RouterTopology
from claude_smart_router.gateway.health_policy import (
    HealthKey,
    HealthPolicy,
    HealthPolicyConfig,
    HealthRecord,
)
from claude_smart_router.gateway.health_store import (
    HealthTracker,
    InMemoryHealthStore,
    KeyValueHealthStore,
)
from claude_smart_router.gateway.router import BufferedRequest, RequestRouter
from tests.client_test_utils import RecordingTransport


def _topology(endpoints: int = 3, sources: int = 2) -> RouterTopology:
    return RouterTopology.model_validate(
        {
            "endpoints": [
                {"name": f"tier{index}", "path_prefix": f"/tier{index}"}
                for index in range(endpoints)
            ],
            "sources": [
                {"name": f"src{index}", "base_url": f"http://src{index}.test"}
                for index in range(sources)
            ],
        }
    )


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _router(
    respond: Any,
    *,
    endpoints: int = 3,
    sources: int = 2,
    clock: _Clock | None = None,
    threshold: int = 3,
) -> tuple[RequestRouter, RecordingTransport, HealthTracker]:
    transport = RecordingTransport(respond)
    tracker = HealthTracker(
        store=InMemoryHealthStore(),
        policy=HealthPolicy(
            HealthPolicyConfig(cooldown_seconds=60.0, failure_threshold=threshold)
        ),
        clock=clock or _Clock(),
    )
    router = RequestRouter(
        topology=_topology(endpoints, sources),
        tracker=tracker,
        transport=transport,
    )
    return router, transport, tracker


def _request(body: bytes = b'{"x":1}') -> BufferedRequest:
    return BufferedRequest.build(
        method="post",
        headers=[
            ("Host", "router.local"),
            ("Content-Length", str(len(body))),
            ("x-api-key", "secret"),
        ],
        body=body,
        query="beta=true",
    )


def _ok(*_args: Any) -> httpx.Response:
    return httpx.Response(200, content=b"ok")


def _always_fail(*_args: Any) -> httpx.Response:
    return httpx.Response(502, content=b"bad gateway")


def _endpoint_of(url: str) -> str:
    return httpx.URL(url).path.split("/")[1]


def test_buffered_request_drops_hop_by_hop_headers() -> None:
    request = _request()
    assert request.method == "POST"
    assert request.headers == (("x-api-key", "secret"),)


def test_first_call_goes_to_endpoint_zero_without_preference() -> None:
    router, transport, _tracker = _router(_ok)

    result = asyncio.run(router.forward(_request(), target_api_path="/v1/messages"))

    assert result.success is True
    assert (result.endpoint_index, result.source_index) == (0, 0)
    assert [call["url"] for call in transport.calls] == [
        "http://src0.test/tier0/v1/messages?beta=true"
    ]
    assert transport.calls[0]["body"] == b'{"x":1}'
    assert transport.calls[0]["headers"] == {"x-api-key": "secret"}


def test_first_call_goes_to_preferred_endpoint() -> None:
    router, transport, _tracker = _router(_ok)

    result = asyncio.run(
        router.forward(_request(), target_api_path="/v1/messages", preferred_endpoint=2)
    )

    assert result.endpoint_index == 2
    assert _endpoint_of(transport.calls[0]["url"]) == "tier2"


def test_out_of_range_preference_starts_at_zero() -> None:
    router, transport, _tracker = _router(_ok)
    asyncio.run(
        router.forward(_request(), target_api_path="/", preferred_endpoint=17)
    )
    assert _endpoint_of(transport.calls[0]["url"]) == "tier0"


def test_total_failure_tries_every_pair_exactly_once() -> None:
    router, transport, _tracker = _router(_always_fail, endpoints=3, sources=2)

    result = asyncio.run(
        router.forward(_request(), target_api_path="/v1/messages", preferred_endpoint=1)
    )

    assert result.success is False
    assert len(transport.calls) == 3 * 2
    assert len(result.attempts) == 6
    endpoint_order: list[str] = []
    for call in transport.calls:
        endpoint = _endpoint_of(call["url"])
        if not endpoint_order or endpoint_order[-1] != endpoint:
            endpoint_order.append(endpoint)
    # Wrap-around order from the preferred tier, each tier visited once.
    assert endpoint_order == ["tier1", "tier2", "tier0"]


def test_sources_are_exhausted_before_escalating_tier() -> None:
    def respond(_method: str, url: str, *_args: Any) -> httpx.Response:
        if url.startswith("http://src1.test/tier0"):
            return httpx.Response(200, content=b"ok")
        return httpx.Response(500)

    router, transport, tracker = _router(respond)

    result = asyncio.run(router.forward(_request(), target_api_path="/v1/messages"))

    assert (result.endpoint_index, result.source_index) == (0, 1)
    assert len(transport.calls) == 2
    snapshot = asyncio.run(tracker.snapshot())
    assert snapshot[HealthKey(0, 0)].failures == 1
    assert HealthKey(0, 1) not in snapshot


def test_redirect_status_counts_as_success() -> None:
    router, _transport, _tracker = _router(lambda *_a: httpx.Response(304))
    result = asyncio.run(router.forward(_request(), target_api_path="/"))
    assert result.success is True


def test_transport_error_counts_as_failure() -> None:
    def respond(_method: str, url: str, *_args: Any) -> httpx.Response:
        if "src0" in url:
            msg = "connection refused"
            raise httpx.ConnectError(msg)
        return httpx.Response(200)

    router, _transport, tracker = _router(respond)

    result = asyncio.run(router.forward(_request(), target_api_path="/v1/messages"))

    assert (result.endpoint_index, result.source_index) == (0, 1)
    assert result.attempts[0].error is not None
    assert "ConnectError" in result.attempts[0].error
    snapshot = asyncio.run(tracker.snapshot())
    assert snapshot[HealthKey(0, 0)].failures == 1


def test_endpoint_in_cooldown_on_every_source_is_skipped() -> None:
    router, transport, tracker = _router(_ok)

    async def cool_down_tier0() -> None:
        for source_index in range(2):
            for _ in range(3):
                await tracker.record_failure(HealthKey(0, source_index))

    asyncio.run(cool_down_tier0())
    result = asyncio.run(router.forward(_request(), target_api_path="/v1/messages"))

    assert result.endpoint_index == 1
    assert _endpoint_of(transport.calls[0]["url"]) == "tier1"


def test_partially_available_endpoint_still_tries_every_source() -> None:
    router, transport, tracker = _router(_ok)

    async def cool_down_primary() -> None:
        for _ in range(3):
            await tracker.record_failure(HealthKey(0, 0))

    asyncio.run(cool_down_primary())
    result = asyncio.run(router.forward(_request(), target_api_path="/v1/messages"))

    # Source iteration is exhaustive; the cooled-down primary is still attempted first.
    assert (result.endpoint_index, result.source_index) == (0, 0)
    assert asyncio.run(tracker.snapshot())[HealthKey(0, 0)] == HealthRecord()
    assert len(transport.calls) == 1


def test_all_endpoints_cooled_down_forces_first_untried() -> None:
    clock = _Clock()
    router, transport, tracker = _router(_ok, endpoints=2, sources=1, clock=clock)

    async def cool_down_everything() -> None:
        for endpoint_index in range(2):
            for _ in range(3):
                await tracker.record_failure(HealthKey(endpoint_index, 0))

    asyncio.run(cool_down_everything())
    result = asyncio.run(
        router.forward(_request(), target_api_path="/v1/messages", preferred_endpoint=1)
    )

    assert result.success is True
    assert result.endpoint_index == 1
    assert len(transport.calls) == 1


def test_cooled_down_endpoint_is_probed_after_window() -> None:
    clock = _Clock()
    router, transport, tracker = _router(_ok, endpoints=2, sources=1, clock=clock)

    async def cool_down_tier0() -> None:
        for _ in range(3):
            await tracker.record_failure(HealthKey(0, 0))

    asyncio.run(cool_down_tier0())
    asyncio.run(router.forward(_request(), target_api_path="/"))
    assert _endpoint_of(transport.calls[-1]["url"]) == "tier1"

    clock.now += 60.0
    asyncio.run(router.forward(_request(), target_api_path="/"))
    assert _endpoint_of(transport.calls[-1]["url"]) == "tier0"
    assert asyncio.run(tracker.is_available(HealthKey(0, 0))) is True
    assert asyncio.run(tracker.snapshot())[HealthKey(0, 0)] == HealthRecord()


def test_failures_accumulate_across_requests_until_cooldown() -> None:
    router, transport, tracker = _router(_always_fail, endpoints=1, sources=1)

    for _ in range(3):
        asyncio.run(router.forward(_request(), target_api_path="/"))

    record = asyncio.run(tracker.snapshot())[HealthKey(0, 0)]
    assert record.failures == 3
    assert record.in_cooldown is True
    # Forced fallback keeps making progress even with the only endpoint cooled down.
    asyncio.run(router.forward(_request(), target_api_path="/"))
    assert len(transport.calls) == 4


def test_build_url_joins_source_prefix_and_query() -> None:
    router, _transport, _tracker = _router(_ok)
    assert router.build_url(1, 1, "/v1/messages") == "http://src1.test/tier1/v1/messages"
    assert router.build_url(0, 0, "/", "a=1") == "http://src0.test/tier0/?a=1"


class _DownKeyValueStore:
    async def get(self, key: str) -> str | None:
        msg = "Error 111 connecting to redis. Connection refused."
        raise RedisConnectionError(msg)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        msg = "Error 111 connecting to redis. Connection refused."
        raise RedisConnectionError(msg)

    async def keys_with_prefix(self, prefix: str) -> list[str]:
        return []

    async def close(self) -> None:
        return None


def test_routing_continues_when_shared_health_store_is_down() -> None:
    def respond(_method: str, url: str, *_args: Any) -> httpx.Response:
        if "src0" in url:
            return httpx.Response(502)
        return httpx.Response(200, content=b"ok")

    transport = RecordingTransport(respond)
    tracker = HealthTracker(
        store=KeyValueHealthStore(
            kv_store=_DownKeyValueStore(),
            key_prefix="health:",
            ttl_seconds=60,
        ),
        policy=HealthPolicy(HealthPolicyConfig()),
        clock=_Clock(),
    )
    router = RequestRouter(topology=_topology(), tracker=tracker, transport=transport)

    result = asyncio.run(router.forward(_request(), target_api_path="/v1/messages"))

    assert result.success is True
    assert (result.endpoint_index, result.source_index) == (0, 1)
    assert [call["url"] for call in transport.calls] == [
        "http://src0.test/tier0/v1/messages?beta=true",
        "http://src1.test/tier0/v1/messages?beta=true",
    ]
