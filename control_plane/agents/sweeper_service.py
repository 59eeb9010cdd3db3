from __future__ import annotations

import asyncio
import contextlib
import logging

from fastapi import FastAPI

from control_plane.agents.health import AgentHealth
from control_plane.core.config import Settings, settings
from control_plane.core.db import StoreClient
from control_plane.services.expiration_sweeper import ExpirationSweeper, SweepReport
from control_plane.services.permission_cache import EffectivePermissionCache

logger = logging.getLogger(__name__)


class SweeperAgent:
    """Runs the expiration sweep on a fixed interval, backing off while the store is failing."""

    def __init__(
        self,
        sweeper: ExpirationSweeper,
        *,
        interval_seconds: int = 300,
        max_retry_delay_seconds: int = 300,
    ) -> None:
        self.health = AgentHealth(name="expiration-sweeper", ready=True)
        self._sweeper = sweeper
        self._interval = max(1, interval_seconds)
        self._max_retry_delay = max(1, max_retry_delay_seconds)
        self._stop_event = asyncio.Event()
        self.last_report: SweepReport | None = None

    @classmethod
    def from_settings(
        cls,
        store: StoreClient,
        config: Settings,
        cache: EffectivePermissionCache | None = None,
    ) -> SweeperAgent:
        return cls(
            ExpirationSweeper(store, cache=cache, batch_size=config.sweep_batch_size),
            interval_seconds=config.sweep_interval_seconds,
            max_retry_delay_seconds=config.sweep_max_retry_delay_seconds,
        )

    async def stop(self) -> None:
        self._stop_event.set()

    async def run_once(self) -> SweepReport:
        self.health.mark_run()
        report = await self._sweeper.sweep()
        self.last_report = report
        self.health.increment("grants_removed", report.removed)
        self.health.increment("cache_entries_invalidated", report.invalidated)
        self.health.mark_success()
        return report

    async def run(self) -> None:
        retry_delay = 1
        while not self._stop_event.is_set():
            try:
                await self.run_once()
                delay = self._interval
                retry_delay = 1
            except Exception as exc:  # pragma: no cover - operational path
                self.health.mark_error(exc)
                logger.exception("Expiration sweep failed, retrying in %ss", retry_delay)
                delay = retry_delay
                retry_delay = min(retry_delay * 2, self._max_retry_delay)

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)


app = FastAPI(title="Control Plane Expiration Sweeper")


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(level=settings.log_level)
    store = StoreClient(settings)
    cache = EffectivePermissionCache.from_settings(settings) if settings.permission_cache_enabled else None
    agent = SweeperAgent.from_settings(store, settings, cache)
    app.state.store = store
    app.state.cache = cache
    app.state.agent = agent
    app.state.task = asyncio.create_task(agent.run())


@app.on_event("shutdown")
async def shutdown_event() -> None:
    agent: SweeperAgent = app.state.agent
    await agent.stop()
    task: asyncio.Task[None] = app.state.task
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task
    if app.state.cache is not None:
        await app.state.cache.aclose()
    await app.state.store.dispose()


@app.get("/health", tags=["system"])
async def health() -> dict[str, object]:
    return app.state.agent.health.payload()


@app.get("/ready", tags=["system"])
async def ready() -> dict[str, bool]:
    return {"ready": app.state.agent.health.ready and await app.state.store.ping()}
