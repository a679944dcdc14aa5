import asyncio
import logging
from typing import NoReturn

from aiohttp import web
import sentry_sdk

from monalias.app.config import (
    HealthGaugeAppKey,
    IdentityWatchdogAppKey,
    MetricsClientAppKey,
    RateLimiterAppKey,
    SettingsAppKey,
)

logger = logging.getLogger(__name__)


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Tick the health gauge every 30 seconds, reducing the health score by 1 each time.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.tick()
        await asyncio.sleep(30)


async def identity_watchdog_task(app: web.Application) -> NoReturn:
    """
    Run an identity check every `identity_interval` seconds.

    The watchdog absorbs failed cycles itself, so this task only ends when
    the application shuts down.
    """
    settings = app[SettingsAppKey]
    watchdog = app[IdentityWatchdogAppKey]
    await watchdog.run(settings.identity_interval)


async def rate_limit_sweep_task(app: web.Application) -> NoReturn:
    """
    Evict idle rate limit buckets.

    Runs independently of request handling; a bucket evicted while its
    source is still active is simply recreated on the next request.
    """
    logger.info("Starting rate limit sweep task")

    settings = app[SettingsAppKey]
    limiter = app[RateLimiterAppKey]
    metrics_client = app[MetricsClientAppKey]

    while True:
        await asyncio.sleep(settings.rate_limit_sweep_seconds)
        try:
            evicted = await limiter.sweep()
            if evicted > 0:
                logger.debug("evicted %d idle rate limit buckets", evicted)
            metrics_client.gauge("monalias.rate_limit.buckets", len(limiter))
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("rate limit sweep failed")
