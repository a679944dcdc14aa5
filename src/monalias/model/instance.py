"""Instance identity data model.

Provides the single-row SQLAlchemy model holding the identity this instance
claims publicly (domain, homeserver, signing key) together with the status
written by the identity watchdog.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Integer, String, select, update
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from monalias.model.base import Base, str128, str512

INSTANCE_CONFIG_ID = 1


class InstanceStatus(str, Enum):
    """Availability of the resolver as decided by the identity watchdog.

    OK serves traffic, DEGRADED serves traffic while the self-check cannot
    reach the published document, LOCKED refuses every resolution.
    """

    OK = "OK"
    DEGRADED = "DEGRADED"
    LOCKED = "LOCKED"


class InstanceConfig(Base):
    """Claimed public identity of this instance.

    There is exactly one row (id 1). The status columns are only ever written
    together through update_instance_status.
    """

    __tablename__ = "instance_config"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    domain: Mapped[str512]
    homeserver: Mapped[str512]
    signing_key_id: Mapped[str128]
    signing_pubkey: Mapped[str128]
    status: Mapped[InstanceStatus] = mapped_column(
        SQLEnum(InstanceStatus, native_enum=False, length=16), nullable=False
    )
    status_reason: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    last_identity_check_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


async def get_instance_config(
    database_session: AsyncSession,
) -> Optional[InstanceConfig]:
    """Read the instance identity row, or None before first startup."""
    stmt = select(InstanceConfig).where(InstanceConfig.id == INSTANCE_CONFIG_ID)
    return (await database_session.scalars(stmt)).first()


async def ensure_instance_config(
    database_session: AsyncSession,
    domain: str,
    homeserver: str,
    signing_key_id: str,
    signing_pubkey: str,
) -> InstanceConfig:
    """Create or refresh the instance identity row at startup.

    The configured identity always overwrites the stored one. A previously
    recorded status, reason and check time are kept; a new row starts OK.
    The caller owns the transaction.
    """
    instance_config = await get_instance_config(database_session)
    if instance_config is None:
        instance_config = InstanceConfig(
            id=INSTANCE_CONFIG_ID,
            status=InstanceStatus.OK,
            status_reason=None,
            last_identity_check_at=None,
        )
        database_session.add(instance_config)
    instance_config.domain = domain
    instance_config.homeserver = homeserver
    instance_config.signing_key_id = signing_key_id
    instance_config.signing_pubkey = signing_pubkey
    await database_session.flush()
    return instance_config


async def update_instance_status(
    database_session: AsyncSession,
    status: InstanceStatus,
    reason: Optional[str],
    checked_at: datetime,
) -> InstanceConfig:
    """Write status, reason and timestamp as one update and return the row.

    The caller owns the transaction.

    Raises:
        LookupError: If the instance row has not been created yet
    """
    stmt = (
        update(InstanceConfig)
        .where(InstanceConfig.id == INSTANCE_CONFIG_ID)
        .values(
            status=status,
            status_reason=reason,
            last_identity_check_at=checked_at,
        )
        .execution_options(synchronize_session=False)
    )
    result = await database_session.execute(stmt)
    if result.rowcount == 0:
        raise LookupError("instance config has not been initialised")

    return await database_session.scalar(
        select(InstanceConfig)
        .where(InstanceConfig.id == INSTANCE_CONFIG_ID)
        .execution_options(populate_existing=True)
    )
