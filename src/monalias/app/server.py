import asyncio
import contextlib
import logging
from time import monotonic
from typing import Optional

import aiohttp
from aiohttp import web
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from monalias.app.config import (
    DatabaseAppKey,
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    IdentityStatusAppKey,
    IdentityWatchdogAppKey,
    IdentityWatchdogTaskAppKey,
    MetricsClientAppKey,
    RateLimiterAppKey,
    RateLimitSweepTaskAppKey,
    ResolverAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    SignerAppKey,
    TickHealthTaskAppKey,
    WalletBridgeAppKey,
)
from monalias.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_identity_check,
    handle_internal_instance,
    handle_internal_lock,
    handle_internal_ready,
)
from monalias.app.handlers.public import (
    handle_healthz,
    handle_resolve,
    handle_well_known,
)
from monalias.app.metrics import MetricsClient, create_metrics_client
from monalias.app.rate_limit import RateLimiter, rate_limit_middleware
from monalias.app.tasks import (
    identity_watchdog_task,
    rate_limit_sweep_task,
    tick_health_task,
)
from monalias.identity.signer import Signer
from monalias.identity.status import IdentityStatusCell, InstanceIdentity
from monalias.identity.watchdog import IdentityWatchdog
from monalias.model.base import Base
from monalias.model.health import HealthGauge
from monalias.model.instance import ensure_instance_config
from monalias.resolve.alias import Resolver
from monalias.resolve.protocol import RESOLVE_PATH, WELL_KNOWN_PATH
from monalias.wallet.rpc import MoneroWalletRPC, WalletBridge

logger = logging.getLogger(__name__)

ADMIN_PREFIX = "/internal/api/"
PROBE_PREFIX = "/internal/"

BACKGROUND_TASKS = (
    (TickHealthTaskAppKey, tick_health_task),
    (IdentityWatchdogTaskAppKey, identity_watchdog_task),
    (RateLimitSweepTaskAppKey, rate_limit_sweep_task),
)


def client_trace_config(debug: bool) -> aiohttp.TraceConfig:
    """Outbound request tracing; only logs anything when `debug` is set."""
    trace_config = aiohttp.TraceConfig()
    if not debug:
        return trace_config

    async def on_request_start(session, context, params: aiohttp.TraceRequestStartParams):
        logger.debug("Outbound %s %s", params.method, params.url)

    async def on_request_end(session, context, params: aiohttp.TraceRequestEndParams):
        logger.debug(
            "Outbound %s %s -> %s", params.method, params.url, params.response.status
        )

    trace_config.on_request_start.append(on_request_start)
    trace_config.on_request_end.append(on_request_end)
    return trace_config


async def load_instance_identity(app: web.Application) -> None:
    """Create or refresh the instance record and publish it to the status cell."""
    settings = app[SettingsAppKey]
    signer = app[SignerAppKey]

    async with app[DatabaseSessionMakerAppKey]() as session:
        async with session.begin():
            instance_config = await ensure_instance_config(
                session,
                settings.domain,
                settings.public_base_url,
                signer.key_id,
                signer.public_key,
            )
    identity = InstanceIdentity.from_model(instance_config)
    app[IdentityStatusAppKey].swap(identity)
    logger.info(
        "Instance %s loaded with status %s", identity.domain, identity.status.value
    )


async def background_tasks(app):
    settings: Settings = app[SettingsAppKey]
    logger.info("Starting monalias for %s", settings.domain)

    engine = create_async_engine(settings.database_url)
    app[DatabaseAppKey] = engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    sessionmaker = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app[DatabaseSessionMakerAppKey] = sessionmaker

    await load_instance_identity(app)

    http_session = aiohttp.ClientSession(
        trace_configs=[client_trace_config(settings.debug)]
    )
    app[SessionAppKey] = http_session

    metrics_client = app[MetricsClientAppKey]
    await metrics_client.connect()

    # tests inject a fake bridge before startup
    if WalletBridgeAppKey not in app:
        app[WalletBridgeAppKey] = MoneroWalletRPC(
            http_session,
            settings.wallet_rpc_url,
            settings.wallet_rpc_user,
            settings.wallet_rpc_password,
            timeout=settings.wallet_rpc_timeout,
        )

    app[IdentityWatchdogAppKey] = IdentityWatchdog(
        sessionmaker,
        http_session,
        app[IdentityStatusAppKey],
        domain=settings.domain,
        public_base_url=settings.public_base_url,
        well_known_url=settings.well_known_url,
        timeout=settings.identity_timeout,
        metrics_client=metrics_client,
    )

    app[ResolverAppKey] = Resolver(
        sessionmaker,
        app[SignerAppKey],
        app[IdentityStatusAppKey],
        domain=settings.domain,
        catchall_address=settings.catchall_address,
        wallet_bridge=app[WalletBridgeAppKey],
        resolve_ttl=settings.resolve_ttl_seconds,
    )

    for key, task in BACKGROUND_TASKS:
        app[key] = asyncio.create_task(task(app))
    logger.info("Startup complete")

    yield

    logger.info("Stopping background tasks")
    for key, _ in BACKGROUND_TASKS:
        app[key].cancel()
    for key, _ in BACKGROUND_TASKS:
        with contextlib.suppress(asyncio.CancelledError):
            await app[key]

    await engine.dispose()
    await http_session.close()
    await metrics_client.close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    """Report unexpected handler errors and count them against readiness."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        await request.app[HealthGaugeAppKey].womp()
        raise


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    tags = {"path": request.path, "method": request.method}
    started = monotonic()
    status = 500

    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    except Exception as e:
        metrics_client.increment(
            "monalias.server.request.exception",
            tag_dict={**tags, "exception": type(e).__name__},
        )
        raise
    finally:
        metrics_client.timer("monalias.server.request.time", monotonic() - started, tags)
        metrics_client.increment(
            "monalias.server.request.count", tag_dict={**tags, "status": status}
        )


def listener_port(request: web.Request) -> Optional[int]:
    sockname = request.transport.get_extra_info("sockname") if request.transport else None
    if isinstance(sockname, tuple) and len(sockname) >= 2:
        return sockname[1]
    return None


@web.middleware
async def admin_listener_middleware(request: web.Request, handler):
    """
    Split admin and public routes across listeners when an admin port is set.

    Probes under /internal/ answer on both listeners.
    """
    admin_port = request.app[SettingsAppKey].admin_http_port
    if admin_port is None:
        return await handler(request)

    on_admin_listener = listener_port(request) == admin_port
    if request.path.startswith(ADMIN_PREFIX):
        if not on_admin_listener:
            raise web.HTTPNotFound()
    elif on_admin_listener and not request.path.startswith(PROBE_PREFIX):
        raise web.HTTPNotFound()
    return await handler(request)


def public_routes():
    return [
        web.post(RESOLVE_PATH, handle_resolve),
        web.get(WELL_KNOWN_PATH, handle_well_known),
        web.get("/healthz", handle_healthz),
    ]


def internal_routes():
    # unlock is a fresh identity check that only clears the lock when it passes
    return [
        web.get("/internal/alive", handle_internal_alive),
        web.get("/internal/ready", handle_internal_ready),
        web.get("/internal/api/instance", handle_internal_instance),
        web.post("/internal/api/instance/lock", handle_internal_lock),
        web.post("/internal/api/instance/unlock", handle_internal_identity_check),
        web.post("/internal/api/identity/check", handle_internal_identity_check),
    ]


async def start_web_server(
    settings: Optional[Settings] = None,
    wallet_bridge: Optional[WalletBridge] = None,
    metrics_client: Optional[MetricsClient] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> web.Application:
    """
    Build the Monalias application.

    Collaborators left as None are built from `settings`, which itself
    defaults to the MONALIAS_* environment. The signing key is loaded here so
    that a missing or malformed key fails before the server binds.
    """
    if settings is None:
        settings = Settings()  # type: ignore

    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    metrics_client = metrics_client or create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    rate_limiter = rate_limiter or RateLimiter(
        rate=settings.rate_ip_rps,
        burst=settings.rate_ip_burst,
        idle_seconds=settings.rate_limit_idle_seconds,
        retry_after=settings.rate_limit_retry_after,
    )

    app = web.Application(
        middlewares=[
            statsd_middleware,
            admin_listener_middleware,
            sentry_middleware,
            rate_limit_middleware(
                rate_limiter,
                {RESOLVE_PATH},
                trust_forwarded_for=settings.trust_forwarded_for,
                metrics_client=metrics_client,
            ),
        ]
    )

    app[SettingsAppKey] = settings
    app[SignerAppKey] = Signer(settings.load_signing_key(), settings.signing_key_id)
    app[HealthGaugeAppKey] = HealthGauge()
    app[MetricsClientAppKey] = metrics_client
    app[RateLimiterAppKey] = rate_limiter
    app[IdentityStatusAppKey] = IdentityStatusCell()
    if wallet_bridge is not None:
        app[WalletBridgeAppKey] = wallet_bridge

    app.add_routes(public_routes())
    app.add_routes(internal_routes())
    app.cleanup_ctx.append(background_tasks)

    return app
