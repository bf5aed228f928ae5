"""
Background loops started by the application lifespan.

- realtime supervisor: heartbeat, token expiry and account status checks
- metrics sampler: pushes `dashboard:metrics` and `system:health`
"""

import asyncio
import logging

from admin_plane.core.errors import AdminError, ErrorKind
from .realtime import Topic


logger = logging.getLogger(__name__)


async def sweep_connections(services) -> int:
    """
    One supervision pass. Returns the number of connections closed.
    """
    multiplexer = services.multiplexer
    closed = 0
    for connection in multiplexer.stale(services.settings.REALTIME_HEARTBEAT):
        connection.disconnect("heartbeat timeout")
        closed += 1
    for connection in multiplexer.expired():
        connection.disconnect("token expired")
        closed += 1

    for sub in {c.principal.sub for c in multiplexer.connections() if not c.closed}:
        services.identity.invalidate(sub)
        principal = next(c.principal for c in multiplexer.connections() if c.principal.sub == sub)
        try:
            await asyncio.to_thread(services.identity.check_account, principal)
        except AdminError as exc:
            if exc.kind is ErrorKind.FORBIDDEN_STATUS:
                multiplexer.disconnect_principal(sub, "suspended")
                closed += 1
            else:
                logger.warning(f"Status check for {sub} failed: {exc.kind.value}")
    return closed


async def realtime_supervisor(services) -> None:
    interval = services.settings.REALTIME_SWEEP_INTERVAL
    while True:
        await asyncio.sleep(interval)
        try:
            closed = await sweep_connections(services)
            if closed:
                logger.info(f"Realtime supervisor closed {closed} connection(s)")
        except Exception:
            logger.exception("Realtime supervision pass failed")


async def sample_metrics(services) -> None:
    multiplexer = services.multiplexer
    if multiplexer.subscribers(Topic.METRICS):
        metrics = await asyncio.to_thread(services.analytics.platform_metrics)
        multiplexer.publish("dashboard:metrics", metrics)
    if multiplexer.subscribers(Topic.SYSTEM):
        health = await asyncio.to_thread(services.system.health)
        multiplexer.publish("system:health", health)
    # Lazily reloads the settings snapshot once it is stale
    await asyncio.to_thread(services.settings_cache.current)


async def metrics_sampler(services) -> None:
    interval = services.settings.METRICS_INTERVAL
    while True:
        await asyncio.sleep(interval)
        try:
            await sample_metrics(services)
        except Exception:
            logger.exception("Metrics sampling failed")
