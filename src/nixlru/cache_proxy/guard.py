"""Freeze gate shared by upstream fetches, the liveness ticker and ``/lock``."""

from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter, Gauge


LOGGER = structlog.get_logger("nixlru.cache_proxy.guard")

ACTIVE_FETCHES_GAUGE = GLOBAL_REGISTRY.register(
    Gauge("nixlru_guard_active_fetches", "Fetch operations currently holding the guard")
)
FROZEN_GAUGE = GLOBAL_REGISTRY.register(Gauge("nixlru_guard_frozen", "1 while the guard is frozen"))
TICK_COUNTER = GLOBAL_REGISTRY.register(Counter("nixlru_ticks_total", "Liveness ticks completed"))


class ConcurrencyGuard:
    """Many concurrent fetch holders, or a single exclusive freeze holder.

    A pending freeze blocks new fetch holders so an operator freeze cannot be
    starved by a steady stream of misses. With ``serialize=True`` fetch holders
    also exclude each other, giving one upstream fetch in flight at a time.
    """

    def __init__(self, *, serialize: bool = False) -> None:
        self._serialize = serialize
        self._cond = asyncio.Condition()
        self._active = 0
        self._frozen = False
        self._waiting_freezes = 0

    @property
    def serialize(self) -> bool:
        return self._serialize

    @property
    def frozen_now(self) -> bool:
        return self._frozen

    def _can_fetch(self) -> bool:
        if self._frozen or self._waiting_freezes:
            return False
        return not (self._serialize and self._active)

    def _can_freeze(self) -> bool:
        return not self._frozen and self._active == 0

    async def _notify(self) -> None:
        async with self._cond:
            self._cond.notify_all()

    @asynccontextmanager
    async def fetching(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(self._can_fetch)
            self._active += 1
            ACTIVE_FETCHES_GAUGE.set(float(self._active))
        try:
            yield
        finally:
            self._active -= 1
            ACTIVE_FETCHES_GAUGE.set(float(self._active))
            await asyncio.shield(self._notify())

    @asynccontextmanager
    async def frozen(self, *, priority: bool = True) -> AsyncIterator[None]:
        """Exclusive hold. With ``priority`` the pending freeze blocks new fetches."""

        async with self._cond:
            if priority:
                self._waiting_freezes += 1
            try:
                await self._cond.wait_for(self._can_freeze)
            finally:
                if priority:
                    self._waiting_freezes -= 1
                    self._cond.notify_all()
            self._frozen = True
            FROZEN_GAUGE.set(1.0)
        try:
            yield
        finally:
            self._frozen = False
            FROZEN_GAUGE.set(0.0)
            await asyncio.shield(self._notify())

    def snapshot(self) -> dict[str, object]:
        return {
            "frozen": self._frozen,
            "active_fetches": self._active,
            "waiting_freezes": self._waiting_freezes,
            "serialize": self._serialize,
        }


class Ticker:
    """Periodically takes the guard exclusively and logs how long that took.

    Ticks queue behind active fetches without holding back new ones, so a
    long download shows up as a growing ``waited_ms`` rather than a stall.
    """

    def __init__(self, guard: ConcurrencyGuard, interval: float = 1.0) -> None:
        self._guard = guard
        self._interval = max(0.0, interval)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> float:
        start = time.perf_counter()
        async with self._guard.frozen(priority=False):
            waited = time.perf_counter() - start
        TICK_COUNTER.inc()
        LOGGER.info("tick", waited_ms=round(waited * 1000, 2))
        return waited

    async def _run(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self._interval)

    def start(self) -> None:
        if self.running:
            return
        LOGGER.info("ticker_started", interval_seconds=self._interval)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
