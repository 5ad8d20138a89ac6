"""Fills the store from upstream binary caches on a miss."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Sequence

import httpx
import structlog
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge
from .guard import ConcurrencyGuard
from .store import CacheStore, Category

if TYPE_CHECKING:
    from .stats import CacheStats


LOGGER = structlog.get_logger("nixlru.cache_proxy.fetcher")
TRACER = trace.get_tracer("nixlru.cache_proxy.fetcher")

HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("nixlru_cache_hits_total", "Requests served straight from disk"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("nixlru_cache_misses_total", "Requests that needed an upstream fetch"))
COALESCED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("nixlru_fetch_coalesced_total", "Misses that joined a fetch already in flight")
)
UPSTREAM_ATTEMPT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("nixlru_upstream_attempts_total", "Requests sent to upstream caches")
)
UPSTREAM_ERROR_COUNTER = GLOBAL_REGISTRY.register(
    Counter("nixlru_upstream_errors_total", "Fetches aborted by a network, disk or deadline error")
)
UPSTREAM_MISS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("nixlru_upstream_miss_total", "Fetches where no upstream had the requested entry")
)
BYTES_FETCHED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("nixlru_bytes_fetched_total", "Bytes downloaded from upstream caches")
)
INFLIGHT_GAUGE = GLOBAL_REGISTRY.register(Gauge("nixlru_fetches_in_flight", "Distinct keys being fetched"))


class FetchError(RuntimeError):
    """An upstream fetch was aborted by a transport, disk or deadline failure."""

    def __init__(self, message: str, *, origin: Optional[str] = None, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.origin = origin
        self.url = url


@dataclass
class _InFlight:
    task: asyncio.Task
    waiters: int = 0


class FetchCoordinator:
    """Resolves ``(category, key)`` to a published file, fetching it if needed.

    Concurrent misses for the same key share one operation. An operation takes
    the guard, re-checks the disk, then walks the upstreams in order: a non-200
    answer moves on to the next upstream, while a transport or disk error ends
    the walk with :class:`FetchError`.
    """

    def __init__(
        self,
        store: CacheStore,
        guard: ConcurrencyGuard,
        upstreams: Sequence[str],
        http_client: httpx.AsyncClient,
        *,
        fetch_timeout: Optional[float] = None,
        stats: Optional["CacheStats"] = None,
    ) -> None:
        self.store = store
        self.guard = guard
        self.upstreams = [origin.rstrip("/") for origin in upstreams]
        self.http = http_client
        self.fetch_timeout = fetch_timeout
        self.stats = stats
        self._inflight: dict[tuple[Category, str], _InFlight] = {}

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    async def ensure(self, category: Category, key: str) -> Optional[Path]:
        target = self.store.locate(category, key)
        if target.is_file():
            HIT_COUNTER.inc()
            if self.stats is not None:
                self.stats.record_hit(category.value, key)
            return target

        MISS_COUNTER.inc()
        if self.stats is not None:
            self.stats.record_miss(category.value, key)
        with TRACER.start_as_current_span(
            "fetch.ensure",
            attributes={"nixlru.category": category.value, "nixlru.key": key},
        ) as span:
            entry = self._join(category, key)
            entry.waiters += 1
            try:
                path = await asyncio.shield(entry.task)
            finally:
                entry.waiters -= 1
                if entry.waiters == 0 and not entry.task.done():
                    # last interested caller went away; later callers must start afresh
                    entry.task.cancel()
                    self._discard((category, key), entry)
            span.set_attribute("nixlru.found", path is not None)
            return path

    def _join(self, category: Category, key: str) -> _InFlight:
        op_key = (category, key)
        entry = self._inflight.get(op_key)
        if entry is not None:
            COALESCED_COUNTER.inc()
            return entry
        task = asyncio.create_task(self._run(category, key))
        entry = _InFlight(task=task)
        self._inflight[op_key] = entry
        INFLIGHT_GAUGE.set(float(len(self._inflight)))

        def _forget(done: asyncio.Task) -> None:
            self._discard(op_key, entry)
            if not done.cancelled():
                # observed here so an abandoned failure is not reported as unretrieved
                done.exception()

        task.add_done_callback(_forget)
        return entry

    def _discard(self, op_key: tuple[Category, str], entry: _InFlight) -> None:
        if self._inflight.get(op_key) is entry:
            del self._inflight[op_key]
        INFLIGHT_GAUGE.set(float(len(self._inflight)))

    async def _run(self, category: Category, key: str) -> Optional[Path]:
        if self.fetch_timeout is None:
            return await self._fetch(category, key)
        try:
            return await asyncio.wait_for(self._fetch(category, key), timeout=self.fetch_timeout)
        except asyncio.TimeoutError as exc:
            UPSTREAM_ERROR_COUNTER.inc()
            LOGGER.error(
                "upstream_fetch_timeout",
                category=category.value,
                key=key,
                timeout_seconds=self.fetch_timeout,
            )
            raise FetchError(f"fetch of {key} exceeded {self.fetch_timeout}s") from exc

    async def _fetch(self, category: Category, key: str) -> Optional[Path]:
        async with self.guard.fetching():
            target = self.store.locate(category, key)
            if target.is_file():
                return target

            scratch = self.store.scratch_path()
            LOGGER.info(
                "upstream_fetch_started",
                category=category.value,
                key=key,
                scratch=str(scratch),
            )
            for origin in self.upstreams:
                url = f"{origin}/{category.upstream_path(key)}"
                try:
                    published = await self._attempt(url, scratch, category, key)
                except httpx.HTTPError as exc:
                    UPSTREAM_ERROR_COUNTER.inc()
                    LOGGER.error("upstream_fetch_failed", origin=origin, url=url, error=str(exc))
                    raise FetchError(f"upstream request to {url} failed: {exc}", origin=origin, url=url) from exc
                except OSError as exc:
                    UPSTREAM_ERROR_COUNTER.inc()
                    LOGGER.error("upstream_store_failed", origin=origin, url=url, error=str(exc))
                    raise FetchError(f"storing {url} failed: {exc}", origin=origin, url=url) from exc
                finally:
                    scratch.unlink(missing_ok=True)
                if published is not None:
                    return published

            UPSTREAM_MISS_COUNTER.inc()
            LOGGER.info("upstream_miss", category=category.value, key=key, upstreams=len(self.upstreams))
            return None

    async def _attempt(self, url: str, scratch: Path, category: Category, key: str) -> Optional[Path]:
        with TRACER.start_as_current_span("fetch.upstream_attempt", attributes={"nixlru.url": url}) as span:
            UPSTREAM_ATTEMPT_COUNTER.inc()
            async with self.http.stream("GET", url) as response:
                LOGGER.info("upstream_attempt", url=url, status=response.status_code)
                span.set_attribute("http.status_code", response.status_code)
                if response.status_code != 200:
                    return None
                size = await _write_body(response, scratch)
            path = await asyncio.to_thread(self.store.publish, scratch, category, key)
            BYTES_FETCHED_COUNTER.inc(size)
            span.set_attribute("nixlru.bytes", size)
            LOGGER.info("upstream_fetch_published", url=url, path=str(path), bytes=size)
            if self.stats is not None:
                self.stats.record_fetch(category.value, key, size)
            return path


async def _write_body(response: httpx.Response, scratch: Path) -> int:
    size = 0
    handle = await asyncio.to_thread(scratch.open, "wb")
    try:
        async for chunk in response.aiter_bytes():
            await asyncio.to_thread(handle.write, chunk)
            size += len(chunk)
    finally:
        await asyncio.to_thread(handle.close)
    return size
