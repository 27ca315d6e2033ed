"""Periodic tracking reconciliation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.common import ServiceSettings, lifespan_session

from .courier import DelhiveryGateway
from .repository import ShipmentRepository
from .services import ShipmentService

_LOGGER = logging.getLogger(__name__)


async def run_sync_once(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: DelhiveryGateway,
    settings: ServiceSettings,
) -> dict[str, Any]:
    """Run one bulk sync sweep in its own session."""

    async with lifespan_session(session_factory) as session:
        service = ShipmentService(ShipmentRepository(session), gateway, settings)
        return await service.bulk_sync_active_shipments()


class ShipmentSyncScheduler:
    """Runs :func:`run_sync_once` on a fixed interval until stopped."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: DelhiveryGateway,
        settings: ServiceSettings,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._settings = settings
        self._interval = settings.resolved_sync_interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="shipment-sync")
        _LOGGER.info("Shipment sync scheduled every %ss", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                summary = await run_sync_once(self._session_factory, self._gateway, self._settings)
                _LOGGER.info(
                    "Scheduled sync: %s synced, %s failed of %s",
                    summary["success"],
                    summary["failed"],
                    summary["total"],
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                _LOGGER.exception("Scheduled shipment sync failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                continue
