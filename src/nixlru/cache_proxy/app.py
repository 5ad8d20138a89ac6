"""Nix binary cache proxy serving narinfo and nar files from local disk."""

from __future__ import annotations

import asyncio
import os
import time
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import (
    configure_logging,
    configure_tracing,
    instrument_fastapi_app,
    instrument_upstream_client,
    proxy_log_context,
)
from ..common.settings import NixCacheSettings
from .fetcher import FetchCoordinator, FetchError
from .guard import ConcurrencyGuard, Ticker
from .stats import CacheStats
from .store import CacheStore, Category, iter_file


LOGGER = structlog.get_logger("nixlru.cache_proxy")
TRACER = trace.get_tracer("nixlru.cache_proxy")

# Existing clients depend on this exact body for every 404.
DIVERSION_BODY = """
<script>window.location.href = "https://www.youtube.com/watch?v=dQw4w9WgXcQ"</script>
"""
CACHE_INFO_BODY = "StoreDir: /nix/store\nWantMassQuery: 1\nPriority: 1\n"

NARINFO_MEDIA_TYPE = "text/x-nix-narinfo"
NAR_MEDIA_TYPE = "application/x-nix-nar"
CACHE_INFO_MEDIA_TYPE = "text/x-nix-cache-info"

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("nixlru_requests_total", "Total cache proxy requests"))
NOT_FOUND_COUNTER = GLOBAL_REGISTRY.register(Counter("nixlru_not_found_total", "Requests answered with the diversion page"))
SERVER_ERROR_COUNTER = GLOBAL_REGISTRY.register(Counter("nixlru_server_errors_total", "Requests answered with a 500"))
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("nixlru_bytes_served_total", "Bytes of cached files served"))
FREEZE_COUNTER = GLOBAL_REGISTRY.register(Counter("nixlru_freezes_total", "Operator freezes taken through /lock"))
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "nixlru_request_latency_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 30.0],
        description="Cache proxy request latency",
    )
)


class CacheService:
    """Everything a request handler needs, built once per application."""

    def __init__(
        self,
        settings: NixCacheSettings,
        *,
        upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.store = CacheStore(settings.state_dir)
        self.guard = ConcurrencyGuard(serialize=settings.serialize_fetches)
        self.stats = CacheStats(settings.stats_database_url) if settings.stats_database_url else None
        self.http = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.upstream_timeout_seconds),
            follow_redirects=True,
            transport=upstream_transport,
        )
        instrument_upstream_client(self.http)
        self.fetcher = FetchCoordinator(
            self.store,
            self.guard,
            settings.upstreams,
            self.http,
            fetch_timeout=settings.fetch_timeout_seconds,
            stats=self.stats,
        )
        self.ticker = Ticker(self.guard, settings.tick_interval_seconds) if settings.log_ticks else None
        self.logger = LOGGER.bind(state_dir=str(self.store.root))

    def prepare(self) -> None:
        self.store.prepare()

    async def start(self) -> None:
        if self.ticker is not None:
            self.ticker.start()

    async def close(self) -> None:
        if self.ticker is not None:
            await self.ticker.stop()
        await self.http.aclose()
        self.store.purge_scratch()
        if self.stats is not None:
            self.stats.close()

    async def hold_freeze(self, is_disconnected: Callable[[], Awaitable[bool]], poll_interval: float) -> float:
        """Keep the guard frozen until ``is_disconnected`` reports true."""

        start = time.perf_counter()
        async with self.guard.frozen():
            FREEZE_COUNTER.inc()
            self.logger.warning("freeze_acquired", waited_ms=round((time.perf_counter() - start) * 1000, 2))
            held_from = time.perf_counter()
            try:
                while not await is_disconnected():
                    await asyncio.sleep(poll_interval)
            finally:
                held = time.perf_counter() - held_from
                self.logger.warning("freeze_released", held_seconds=round(held, 3))
        return held

    def status(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "store": self.store.status(),
            "retention": "unbounded",
            "upstreams": list(self.fetcher.upstreams),
            "lock_route_enabled": self.settings.enable_lock_route,
            "log_ticks": self.settings.log_ticks,
            "guard": self.guard.snapshot(),
            "fetches_in_flight": self.fetcher.in_flight,
        }
        if self.stats is not None:
            payload["stats"] = {
                "total_entries": self.stats.total_entries(),
                "top_entries": self.stats.top_entries(),
            }
        return payload


class AccessLogMiddleware:
    """Logs one ``http_request`` event per request.

    Plain ASGI, so ``receive`` reaches the endpoint unwrapped and ``/lock``
    sees the client disconnect.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status_code = 500
        REQUEST_COUNTER.inc()

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        log_kwargs = {"method": scope["method"], "path": scope["path"]}
        try:
            await self.app(scope, receive, send_wrapper)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            LOGGER.exception("http_request_error", duration_ms=round(duration * 1000, 2), **log_kwargs)
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        log_kwargs.update(status=status_code, duration_ms=round(duration * 1000, 2))
        if status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)


def get_service(request: Request) -> CacheService:
    service = getattr(request.app.state, "cache_service", None)
    if service is None:
        raise RuntimeError("Cache service not initialised")
    return service


def diversion_response() -> HTMLResponse:
    NOT_FOUND_COUNTER.inc()
    return HTMLResponse(DIVERSION_BODY, status_code=status.HTTP_404_NOT_FOUND)


def _server_error(message: str) -> PlainTextResponse:
    SERVER_ERROR_COUNTER.inc()
    return PlainTextResponse(message + "\n", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


async def serve_entry(
    service: CacheService,
    request: Request,
    category: Category,
    key: str,
    media_type: str,
) -> Response:
    if not category.is_valid_key(key):
        return diversion_response()

    try:
        path = await service.fetcher.ensure(category, key)
    except FetchError as exc:
        service.logger.error(
            "fetch_failed",
            category=category.value,
            key=key,
            origin=exc.origin,
            error=str(exc),
        )
        return _server_error("upstream fetch failed")
    if path is None:
        return diversion_response()

    try:
        handle = service.store.open(path)
        size = os.fstat(handle.fileno()).st_size
    except OSError as exc:
        service.logger.error("cache_read_failed", category=category.value, key=key, path=str(path), error=str(exc))
        return _server_error("cache read failed")

    headers = {"Content-Length": str(size)}
    if request.method == "HEAD":
        handle.close()
        return Response(status_code=status.HTTP_200_OK, media_type=media_type, headers=headers)
    BYTES_SERVED_COUNTER.inc(size)
    return StreamingResponse(iter_file(handle), media_type=media_type, headers=headers)


def create_app(
    settings: Optional[NixCacheSettings] = None,
    *,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or NixCacheSettings()
    configure_logging(settings.log_level, **proxy_log_context(settings))
    configure_tracing(settings)
    service = CacheService(settings, upstream_transport=upstream_transport)
    service.prepare()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        try:
            yield
        finally:
            await service.close()

    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    instrument_fastapi_app(app)
    app.state.cache_service = service
    app.add_middleware(AccessLogMiddleware)

    @app.api_route("/nix-cache-info", methods=["GET", "HEAD"])
    async def cache_info() -> Response:
        return Response(CACHE_INFO_BODY, media_type=CACHE_INFO_MEDIA_TYPE)

    @app.get("/lock")
    async def hold_lock(request: Request, service: CacheService = Depends(get_service)) -> Response:
        if not service.settings.enable_lock_route:
            return diversion_response()
        with TRACER.start_as_current_span("cache_proxy.lock"):
            await service.hold_freeze(request.is_disconnected, service.settings.lock_poll_interval_seconds)
        return Response(status_code=status.HTTP_200_OK)

    @app.get("/status")
    async def status_probe(service: CacheService = Depends(get_service)) -> JSONResponse:
        return JSONResponse(jsonable_encoder(service.status()))

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint() -> PlainTextResponse:
        return PlainTextResponse(GLOBAL_REGISTRY.render())

    @app.get("/healthz", status_code=status.HTTP_200_OK)
    async def health_check(service: CacheService = Depends(get_service)) -> dict:
        """Health check for readiness/liveness probes."""
        store_status = service.store.status()
        health = {
            "status": "healthy" if store_status["writable"] else "unhealthy",
            "checks": {"store_writable": store_status["writable"], "guard": service.guard.snapshot()},
        }
        if health["status"] != "healthy":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=health)
        return health

    @app.api_route("/{narinfo_hash}.narinfo", methods=["GET", "HEAD"])
    async def get_narinfo(
        narinfo_hash: str,
        request: Request,
        service: CacheService = Depends(get_service),
    ) -> Response:
        return await serve_entry(service, request, Category.NARINFO, narinfo_hash, NARINFO_MEDIA_TYPE)

    @app.api_route("/nar/{nar_key}", methods=["GET", "HEAD"])
    async def get_nar(
        nar_key: str,
        request: Request,
        service: CacheService = Depends(get_service),
    ) -> Response:
        return await serve_entry(service, request, Category.NAR, nar_key, NAR_MEDIA_TYPE)

    @app.api_route("/{unknown_path:path}", methods=ALL_METHODS)
    async def unknown_route(unknown_path: str) -> Response:
        return diversion_response()

    return app
