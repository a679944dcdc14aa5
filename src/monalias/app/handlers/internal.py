import json
import logging
from datetime import datetime, timezone

from aiohttp import web
from sqlalchemy.exc import SQLAlchemyError
import sentry_sdk

from monalias.app.config import (
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    IdentityStatusAppKey,
    IdentityWatchdogAppKey,
)
from monalias.app.handlers.helpers import json_error, require_admin
from monalias.identity.status import InstanceIdentity
from monalias.model.instance import InstanceStatus, get_instance_config

logger = logging.getLogger(__name__)


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    healthy = await health_gauge.is_healthy()
    return web.json_response(
        {"ready": healthy, "error_score": await health_gauge.score()},
        status=200 if healthy else 503,
    )


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)


@require_admin
async def handle_internal_instance(request: web.Request):
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    try:
        async with database_session_maker() as database_session:
            instance_config = await get_instance_config(database_session)
    except SQLAlchemyError as e:
        sentry_sdk.capture_exception(e)
        logger.exception("handle_internal_instance: instance config unreadable")
        return json_error(500, "server_error")

    if instance_config is None:
        return json_error(404, "instance_not_initialised")
    return web.json_response(InstanceIdentity.from_model(instance_config).to_json())


@require_admin
async def handle_internal_lock(request: web.Request):
    """Lock the instance with an operator supplied reason."""
    try:
        body = await request.json()
    except ValueError:
        body = {}
    reason = body.get("reason") if isinstance(body, dict) else None
    if not isinstance(reason, str) or reason == "":
        return json_error(400, "bad_request", {"detail": "reason is required"})

    status_cell = request.app[IdentityStatusAppKey]
    try:
        identity = await status_cell.record(
            request.app[DatabaseSessionMakerAppKey],
            InstanceStatus.LOCKED,
            reason,
            datetime.now(timezone.utc),
        )
    except (SQLAlchemyError, LookupError) as e:
        sentry_sdk.capture_exception(e)
        logger.exception("handle_internal_lock: status update failed")
        return json_error(500, "server_error")

    logger.warning("instance locked by operator: %s", reason)
    return web.json_response(identity.to_json())


@require_admin
async def handle_internal_identity_check(request: web.Request):
    """
    Run one identity check now and return the resulting identity.

    Serves both "check now" and "unlock": unlocking is nothing more than a
    check whose verdict is accepted, so a persisting mismatch stays LOCKED.
    """
    watchdog = request.app[IdentityWatchdogAppKey]
    try:
        identity = await watchdog.check_once()
    except Exception as e:
        sentry_sdk.capture_exception(e)
        logger.exception("handle_internal_identity_check: check aborted")
        await request.app[HealthGaugeAppKey].womp()
        raise web.HTTPInternalServerError(
            body=json.dumps({"error": "server_error"}),
            content_type="application/json",
        )
    return web.json_response(identity.to_json())
