"""Identity watchdog.

Periodically fetches this instance's own well-known document and reconciles it
with the identity the instance claims. The verdict gates resolution:

- the document cannot be fetched or parsed: DEGRADED, `well_known_unreachable`
- the homeserver or the signing key differs: LOCKED, `identity_mismatch`
- everything matches: OK, reason cleared

A manual check (administrative "check now" or "unlock") runs the same cycle
and accepts whatever status results, including staying locked.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, NoReturn, Optional, Tuple

import sentry_sdk
from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from monalias.app.metrics import MetricsClient, NoOpMetricsClient
from monalias.identity.status import IdentityStatusCell, InstanceIdentity
from monalias.model.instance import InstanceStatus, get_instance_config
from monalias.resolve.protocol import WELL_KNOWN_PATH, WellKnownDocument

logger = logging.getLogger(__name__)

REASON_WELL_KNOWN_UNREACHABLE = "well_known_unreachable"
REASON_IDENTITY_MISMATCH = "identity_mismatch"


def evaluate_identity(
    document: Optional[WellKnownDocument],
    public_base_url: str,
    signing_key_id: str,
    signing_pubkey: str,
) -> Tuple[InstanceStatus, Optional[str]]:
    """Decide the status for one fetched (or unfetchable) document."""
    if document is None:
        return InstanceStatus.DEGRADED, REASON_WELL_KNOWN_UNREACHABLE
    if document.homeserver != public_base_url:
        return InstanceStatus.LOCKED, REASON_IDENTITY_MISMATCH
    if not document.has_key(signing_key_id, signing_pubkey):
        return InstanceStatus.LOCKED, REASON_IDENTITY_MISMATCH
    return InstanceStatus.OK, None


class IdentityWatchdog:
    """
    Runs identity check cycles against the instance's published document.

    Only a failure to read or write the instance record aborts a cycle; that
    error propagates to the caller and nothing is written. Network and parse
    failures are a DEGRADED verdict, not an error.
    """

    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        http_session: ClientSession,
        status_cell: IdentityStatusCell,
        domain: str,
        public_base_url: str,
        well_known_url: Optional[str] = None,
        timeout: float = 10.0,
        metrics_client: Optional[MetricsClient] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.database_session_maker = database_session_maker
        self.http_session = http_session
        self.status_cell = status_cell
        self.domain = domain
        self.public_base_url = public_base_url
        self.well_known_url = well_known_url or f"https://{domain}{WELL_KNOWN_PATH}"
        self.timeout = ClientTimeout(total=timeout)
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.clock = clock

    async def fetch_well_known(self) -> Optional[WellKnownDocument]:
        """Fetch and parse the published document, None on any failure."""
        try:
            async with self.http_session.get(
                self.well_known_url, timeout=self.timeout
            ) as resp:
                if resp.status != 200:
                    logger.warning(
                        "well-known fetch %s returned %d", self.well_known_url, resp.status
                    )
                    return None
                body = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            logger.warning("well-known fetch %s timed out", self.well_known_url)
            return None
        except (ClientError, ValueError) as e:
            logger.warning("well-known fetch %s failed: %s", self.well_known_url, e)
            return None

        try:
            return WellKnownDocument.model_validate(body)
        except ValidationError:
            logger.warning("well-known document at %s is malformed", self.well_known_url)
            return None

    async def check_once(self) -> InstanceIdentity:
        """Run one cycle and return the identity as written."""
        async with self.database_session_maker() as database_session:
            instance_config = await get_instance_config(database_session)
        if instance_config is None:
            raise LookupError("instance config has not been initialised")

        document = await self.fetch_well_known()
        status, reason = evaluate_identity(
            document,
            self.public_base_url,
            instance_config.signing_key_id,
            instance_config.signing_pubkey,
        )

        previous = self.status_cell.current
        identity = await self.status_cell.record(
            self.database_session_maker, status, reason, self.clock()
        )

        if previous is None or previous.status != identity.status:
            logger.info(
                "instance status %s -> %s (%s)",
                previous.status.value if previous else "unknown",
                identity.status.value,
                identity.status_reason or "no reason",
            )
        self.metrics_client.increment(
            "monalias.identity.check", 1, tag_dict={"status": identity.status.value}
        )
        return identity

    async def run(self, interval: float) -> NoReturn:
        """Run a cycle every interval seconds until cancelled."""
        logger.info("Starting identity watchdog, interval %ss", interval)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_once()
            except Exception as e:
                sentry_sdk.capture_exception(e)
                logger.exception("identity check cycle skipped")
