import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from monalias.model.instance import (
    InstanceConfig,
    InstanceStatus,
    update_instance_status,
)


@dataclass(frozen=True)
class InstanceIdentity:
    """Immutable snapshot of the stored instance identity and its status."""

    domain: str
    homeserver: str
    signing_key_id: str
    signing_pubkey: str
    status: InstanceStatus
    status_reason: Optional[str] = None
    last_identity_check_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, instance_config: InstanceConfig) -> "InstanceIdentity":
        return cls(
            domain=instance_config.domain,
            homeserver=instance_config.homeserver,
            signing_key_id=instance_config.signing_key_id,
            signing_pubkey=instance_config.signing_pubkey,
            status=InstanceStatus(instance_config.status),
            status_reason=instance_config.status_reason,
            last_identity_check_at=instance_config.last_identity_check_at,
        )

    def to_json(self) -> Dict[str, Any]:
        body = asdict(self)
        body["status"] = self.status.value
        if self.last_identity_check_at is not None:
            body["last_identity_check_at"] = self.last_identity_check_at.isoformat()
        return body


def refuses_resolution(status: InstanceStatus) -> bool:
    if status is InstanceStatus.LOCKED:
        return True
    elif status is InstanceStatus.OK or status is InstanceStatus.DEGRADED:
        return False
    raise ValueError(f"unknown instance status {status!r}")


class IdentityStatusCell:
    """
    Single-writer, many-reader holder of the current InstanceIdentity.

    Readers take whatever snapshot is current without locking; a resolution
    that races a swap may see the previous status, which is acceptable.
    Status writers go through `record`, which holds `write_lock` across the
    store commit and the swap, so the snapshot is always the last committed
    status and never an older one swapped in late.
    """

    def __init__(self, identity: Optional[InstanceIdentity] = None) -> None:
        self._identity = identity
        self.write_lock = asyncio.Lock()

    @property
    def current(self) -> Optional[InstanceIdentity]:
        return self._identity

    def swap(self, identity: InstanceIdentity) -> None:
        self._identity = identity

    async def record(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        status: InstanceStatus,
        reason: Optional[str],
        checked_at: datetime,
    ) -> InstanceIdentity:
        """
        Commit a status to the store and publish it.

        Raises:
            LookupError: If the instance row has not been created yet
            SQLAlchemyError: If the store is unavailable; the cell is unchanged
        """
        async with self.write_lock:
            async with database_session_maker() as database_session:
                async with database_session.begin():
                    instance_config = await update_instance_status(
                        database_session, status, reason, checked_at
                    )
                identity = InstanceIdentity.from_model(instance_config)
            self.swap(identity)
        return identity
