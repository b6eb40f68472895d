from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Iterable, Protocol

import httpx

from claude_smart_router.config import RouterTopology
from claude_smart_router.gateway.health_policy import HealthKey
from claude_smart_router.gateway.health_store import HealthTracker

HOP_BY_HOP_REQUEST_HEADERS = {
    "connection",
    "content-length",
    "host",
    "keep-alive",
    "te",
    "transfer-encoding",
    "upgrade",
}

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True, frozen=True)
class BufferedRequest:
    """An inbound request materialized once so every attempt can replay it."""

    method: str
    headers: tuple[tuple[str, str], ...]
    body: bytes
    query: str = ""

    @classmethod
    def build(
        cls,
        *,
        method: str,
        headers: Iterable[tuple[str, str]],
        body: bytes,
        query: str = "",
    ) -> BufferedRequest:
        return cls(
            method=method.upper(),
            headers=tuple(
                (name, value)
                for name, value in headers
                if name.lower() not in HOP_BY_HOP_REQUEST_HEADERS
            ),
            body=bytes(body),
            query=query,
        )


@dataclass(slots=True)
class RouteAttempt:
    endpoint_index: int
    source_index: int
    url: str
    status_code: int | None = None
    error: str | None = None


@dataclass(slots=True)
class RouteResult:
    response: httpx.Response | None
    endpoint_index: int | None = None
    source_index: int | None = None
    attempts: list[RouteAttempt] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.response is not None


class BackendTransport(Protocol):
    async def perform(
        self,
        method: str,
        url: str,
        headers: Iterable[tuple[str, str]],
        body: bytes,
    ) -> httpx.Response: ...

    async def close(self) -> None: ...


class HttpxTransport:
    def __init__(
        self,
        timeout_seconds: float,
        connect_timeout_seconds: float | None = None,
        read_timeout_seconds: float | None = None,
        write_timeout_seconds: float | None = None,
        pool_timeout_seconds: float | None = None,
    ) -> None:
        connect_timeout = (
            max(0.1, float(connect_timeout_seconds))
            if connect_timeout_seconds is not None
            else max(0.1, min(5.0, timeout_seconds))
        )
        read_timeout = (
            max(0.1, float(read_timeout_seconds))
            if read_timeout_seconds is not None
            else max(0.1, float(timeout_seconds))
        )
        write_timeout = (
            max(0.1, float(write_timeout_seconds))
            if write_timeout_seconds is not None
            else max(0.1, float(timeout_seconds))
        )
        pool_timeout = (
            max(0.1, float(pool_timeout_seconds))
            if pool_timeout_seconds is not None
            else connect_timeout
        )
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=connect_timeout,
                read=read_timeout,
                write=write_timeout,
                pool=pool_timeout,
            ),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
            follow_redirects=True,
        )

    async def perform(
        self,
        method: str,
        url: str,
        headers: Iterable[tuple[str, str]],
        body: bytes,
    ) -> httpx.Response:
        request = self.client.build_request(
            method=method,
            url=url,
            headers=list(headers),
            content=body or None,
        )
        return await self.client.send(request, stream=True)

    async def close(self) -> None:
        await self.client.aclose()


class RequestRouter:
    """Failover across endpoint price tiers and their redundant sources.

    Endpoints are tried in priority order starting at the preferred one and
    wrapping around. Endpoints with at least one available source are preferred;
    when none is left, untried endpoints are used anyway so a request always makes
    progress. Every source of an endpoint is tried before moving to the next one,
    and the first response below 400 is returned.
    """

    def __init__(
        self,
        topology: RouterTopology,
        tracker: HealthTracker,
        transport: BackendTransport,
    ) -> None:
        self._topology = topology
        self._tracker = tracker
        self._transport = transport

    @property
    def topology(self) -> RouterTopology:
        return self._topology

    @property
    def tracker(self) -> HealthTracker:
        return self._tracker

    @property
    def transport(self) -> BackendTransport:
        return self._transport

    def build_url(
        self,
        endpoint_index: int,
        source_index: int,
        target_api_path: str,
        query: str = "",
    ) -> str:
        url = (
            self._topology.sources[source_index].base_url
            + self._topology.endpoints[endpoint_index].path_prefix
            + target_api_path
        )
        if query:
            url = f"{url}?{query}"
        return url

    async def forward(
        self,
        request: BufferedRequest,
        *,
        target_api_path: str,
        preferred_endpoint: int | None = None,
        request_id: str = "-",
    ) -> RouteResult:
        endpoint_count = len(self._topology.endpoints)
        start_index = 0
        if preferred_endpoint is not None and 0 <= preferred_endpoint < endpoint_count:
            start_index = preferred_endpoint

        tried: set[int] = set()
        attempts: list[RouteAttempt] = []
        request_started = time.perf_counter()
        for _ in range(endpoint_count):
            endpoint_index = await self._select_endpoint(start_index, tried)
            if endpoint_index is None:
                break
            tried.add(endpoint_index)

            for source_index in range(len(self._topology.sources)):
                upstream = await self._attempt(
                    request=request,
                    endpoint_index=endpoint_index,
                    source_index=source_index,
                    target_api_path=target_api_path,
                    request_id=request_id,
                    attempts=attempts,
                )
                if upstream is not None:
                    logger.info(
                        "route_success request_id=%s endpoint=%s source=%s status=%d "
                        "attempts=%d latency_ms=%.2f",
                        request_id,
                        self._topology.endpoints[endpoint_index].name,
                        self._topology.sources[source_index].name,
                        upstream.status_code,
                        len(attempts),
                        (time.perf_counter() - request_started) * 1000.0,
                    )
                    return RouteResult(
                        response=upstream,
                        endpoint_index=endpoint_index,
                        source_index=source_index,
                        attempts=attempts,
                    )

        logger.error(
            "route_exhausted request_id=%s attempts=%d endpoints_tried=%s",
            request_id,
            len(attempts),
            ",".join(str(index) for index in sorted(tried)),
        )
        return RouteResult(response=None, attempts=attempts)

    def _scan_order(self, start_index: int) -> list[int]:
        endpoint_count = len(self._topology.endpoints)
        return list(range(start_index, endpoint_count)) + list(range(0, start_index))

    async def _select_endpoint(self, start_index: int, tried: set[int]) -> int | None:
        candidates = [
            index for index in self._scan_order(start_index) if index not in tried
        ]
        for index in candidates:
            if await self._has_available_source(index):
                return index
        if candidates:
            logger.info(
                "route_forced_endpoint endpoint_index=%d reason=no_available_source",
                candidates[0],
            )
            return candidates[0]
        return None

    async def _has_available_source(self, endpoint_index: int) -> bool:
        for source_index in range(len(self._topology.sources)):
            if await self._tracker.is_available(HealthKey(endpoint_index, source_index)):
                return True
        return False

    async def _attempt(
        self,
        *,
        request: BufferedRequest,
        endpoint_index: int,
        source_index: int,
        target_api_path: str,
        request_id: str,
        attempts: list[RouteAttempt],
    ) -> httpx.Response | None:
        key = HealthKey(endpoint_index, source_index)
        url = self.build_url(endpoint_index, source_index, target_api_path, request.query)
        attempt = RouteAttempt(
            endpoint_index=endpoint_index,
            source_index=source_index,
            url=url,
        )
        attempts.append(attempt)
        logger.info(
            "route_attempt request_id=%s attempt=%d endpoint=%s source=%s url=%s",
            request_id,
            len(attempts),
            self._topology.endpoints[endpoint_index].name,
            self._topology.sources[source_index].name,
            url,
        )

        try:
            upstream = await self._transport.perform(
                request.method,
                url,
                request.headers,
                request.body,
            )
        except (httpx.HTTPError, OSError) as exc:
            attempt.error = f"{exc.__class__.__name__}: {exc}"
            record = await self._tracker.record_failure(key)
            logger.warning(
                "route_attempt_failed request_id=%s key=%s error_type=%s error=%s "
                "failures=%d in_cooldown=%s",
                request_id,
                key,
                exc.__class__.__name__,
                exc,
                record.failures,
                record.in_cooldown,
            )
            return None

        attempt.status_code = upstream.status_code
        if upstream.status_code < 400:
            await self._tracker.record_success(key)
            return upstream

        await upstream.aclose()
        record = await self._tracker.record_failure(key)
        logger.warning(
            "route_attempt_failed request_id=%s key=%s status=%d "
            "failures=%d in_cooldown=%s",
            request_id,
            key,
            upstream.status_code,
            record.failures,
            record.in_cooldown,
        )
        return None
