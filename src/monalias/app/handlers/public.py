"""
Public Handlers

The unauthenticated surface of the service:
- POST /_monalias/resolve - resolve an alias to a signed address (rate limited)
- GET /.well-known/monalias - the identity document wallets verify against
- GET /healthz - plain liveness check
"""

import json
import logging
from time import time

from aiohttp import web
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
import sentry_sdk

from monalias.app.config import (
    DatabaseSessionMakerAppKey,
    HealthGaugeAppKey,
    MetricsClientAppKey,
    ResolverAppKey,
)
from monalias.app.handlers.helpers import json_error
from monalias.identity.signer import SIGNING_ALGORITHM
from monalias.model.instance import get_instance_config
from monalias.resolve.protocol import (
    KEY_ID_HEADER,
    SIGNATURE_HEADER,
    WELL_KNOWN_VERSION,
    ResolveException,
    ResolveRequest,
    WellKnownDocument,
    WellKnownKey,
)

logger = logging.getLogger(__name__)


async def handle_resolve(request: web.Request):
    """
    Resolve an alias.

    Expects a JSON body `{"acct": ..., "network": ...}`. On success the body
    carries the address and the response headers carry the key id and the
    base64 signature over the canonical resolve string.
    """
    resolver = request.app[ResolverAppKey]
    metrics_client = request.app[MetricsClientAppKey]
    start_time = time()

    try:
        try:
            body = await request.json()
            resolve_request = ResolveRequest.model_validate(body)
        except (ValueError, ValidationError) as e:
            raise ResolveException.bad_request() from e

        signed = await resolver.resolve(resolve_request)
    except ResolveException as e:
        if e.code == "server_error":
            await request.app[HealthGaugeAppKey].womp()
        metrics_client.increment(
            "monalias.resolve.result", 1, tag_dict={"code": e.code}
        )
        return web.Response(
            status=e.status,
            body=json.dumps(e.to_json()),
            content_type="application/json",
        )
    finally:
        metrics_client.timer("monalias.resolve.time", time() - start_time)

    metrics_client.increment(
        "monalias.resolve.result",
        1,
        tag_dict={"code": "ok", "kind": signed.response.meta.resolved_kind.value},
    )
    return web.json_response(
        signed.response.to_json(),
        headers={
            KEY_ID_HEADER: signed.key_id,
            SIGNATURE_HEADER: signed.signature,
        },
    )


async def handle_well_known(request: web.Request):
    """Publish the stored identity and signing key of this instance."""
    database_session_maker = request.app[DatabaseSessionMakerAppKey]
    try:
        async with database_session_maker() as database_session:
            instance_config = await get_instance_config(database_session)
    except SQLAlchemyError as e:
        sentry_sdk.capture_exception(e)
        logger.exception("handle_well_known: instance config unreadable")
        await request.app[HealthGaugeAppKey].womp()
        return json_error(500, "server_error")

    if instance_config is None:
        return json_error(500, "server_error")

    document = WellKnownDocument(
        homeserver=instance_config.homeserver,
        version=WELL_KNOWN_VERSION,
        keys=[
            WellKnownKey(
                kid=instance_config.signing_key_id,
                alg=SIGNING_ALGORITHM,
                public_key=instance_config.signing_pubkey,
                use="sig",
            )
        ],
    )
    return web.json_response(document.model_dump())


async def handle_healthz(request: web.Request):
    return web.Response(status=200, text="ok", content_type="text/plain")
