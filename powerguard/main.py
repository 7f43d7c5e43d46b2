from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .core.config import settings
from .core.log import configure_logging

from .api.routes import router as api_router
import powerguard.api.routes as routes_module

from .domain.errors import TransportError
from .domain.interfaces import CommandTransport
from .drivers.location_reported import ReportedLocationProvider
from .drivers.notifier_log import LoggingNotifier
from .drivers.transport_sim import SimulatedTransport
from .drivers.transport_sonoff import SonoffStripTransport
from .services.runner import BackgroundTaskRunner, build_runner
from .storage.sqlite_repo import SQLiteKeyValueStore


logger = logging.getLogger(__name__)


def build_transport() -> tuple[CommandTransport, list[tuple[str, str]]]:
    """Transport plus the (id, name) outlets it serves."""
    if settings.transport_mode.lower() == "sonoff":
        sonoff = SonoffStripTransport(
            ip=settings.sonoff_ip,
            port=settings.sonoff_port,
            device_id=settings.sonoff_device_id,
            channels=settings.sonoff_channels,
            timeout=settings.command_timeout_seconds,
        )
        return sonoff, [(oid, f"Outlet {int(oid) + 1}") for oid in sonoff.outlet_ids]

    # default to sim
    ids = [str(i) for i in range(1, settings.sim_outlet_count + 1)]
    return SimulatedTransport(ids), [(oid, f"Outlet {oid}") for oid in ids]


async def seed_outlets(runner: BackgroundTaskRunner, transport: CommandTransport, outlets: list[tuple[str, str]]) -> None:
    hardware: dict[str, bool] = {}
    if isinstance(transport, SonoffStripTransport):
        try:
            hardware = await transport.get_states()
        except TransportError as e:
            logger.warning("Could not read relay states, keeping persisted ones: %s", e)
    for oid, name in outlets:
        runner.outlets.upsert(oid, name=name, canonical_state=hardware.get(oid))


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Starting %s (transport=%s)", settings.app_name, settings.transport_mode)

    kv = SQLiteKeyValueStore(settings.sqlite_path)
    await kv.init()

    transport, outlets = build_transport()
    location = ReportedLocationProvider()
    notifier = LoggingNotifier()
    runner = build_runner(location, transport, kv, notifier)

    # Cold start: reload, then the loop's first tick resolves anything missed
    await runner.load()
    await seed_outlets(runner, transport, outlets)

    app.dependency_overrides[routes_module.get_runner] = lambda: runner
    app.dependency_overrides[routes_module.get_notifier] = lambda: notifier
    app.dependency_overrides[routes_module.get_location] = lambda: location

    await runner.start()
    try:
        yield
    finally:
        await runner.stop()
        await kv.close()
        logger.info("Shutdown complete")


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.include_router(api_router, prefix="/api")
