"""Account and alias data models.

An account owns a handle (`local$domain`) and optionally names the wallet its
dynamic aliases derive subaddresses from. Each alias maps one externally
visible identifier (`full_acct`) to an address, either fixed or derived.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Sequence

from sqlalchemy import DateTime, Index, Integer, String, or_, select, update
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column
from ulid import ULID

from monalias.model.base import Base, guidpk, str512


class AliasMode(str, Enum):
    STATIC_ADDRESS = "STATIC_ADDRESS"
    DYNAMIC_SUBADDRESS = "DYNAMIC_SUBADDRESS"


class Account(Base):
    """Alias owner identified by a globally unique handle."""

    __tablename__ = "accounts"

    guid: Mapped[guidpk]
    handle: Mapped[str512]
    wallet_name: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (Index("idx_accounts_handle", "handle", unique=True),)


class Alias(Base):
    """Resolvable name belonging to exactly one account.

    Static aliases always carry static_address. Dynamic aliases carry a
    subaddress_index and, once resolved, the derived cached_address.
    """

    __tablename__ = "aliases"

    guid: Mapped[guidpk]
    account_guid: Mapped[str512]
    full_acct: Mapped[str512]
    alias_label: Mapped[str512]
    mode: Mapped[AliasMode] = mapped_column(
        SQLEnum(AliasMode, native_enum=False, length=32), nullable=False
    )
    static_address: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    subaddress_index: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cached_address: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    __table_args__ = (
        Index("idx_aliases_full_acct", "full_acct", unique=True),
        Index("idx_aliases_account_guid", "account_guid"),
    )


def build_full_acct(handle: str, label: str) -> str:
    """Build the externally visible identifier for an alias label.

    An empty or `default` label resolves as the bare handle, anything else is
    inserted after the local part: `local+label$domain`.
    """
    if label == "" or label == "default":
        return handle
    parts = handle.split("$")
    if len(parts) != 2:
        return handle
    local, domain = parts
    return f"{local}+{label}${domain}"


async def create_account(
    database_session: AsyncSession, handle: str, wallet_name: Optional[str] = None
) -> Account:
    account = Account(
        guid=str(ULID()),
        handle=handle,
        wallet_name=wallet_name,
        created_at=datetime.now(timezone.utc),
    )
    database_session.add(account)
    await database_session.flush()
    return account


async def get_account(database_session: AsyncSession, guid: str) -> Optional[Account]:
    stmt = select(Account).where(Account.guid == guid)
    return (await database_session.scalars(stmt)).first()


async def get_account_by_handle(
    database_session: AsyncSession, handle: str
) -> Optional[Account]:
    stmt = select(Account).where(Account.handle == handle)
    return (await database_session.scalars(stmt)).first()


async def list_accounts(database_session: AsyncSession) -> Sequence[Account]:
    stmt = select(Account).order_by(Account.created_at)
    return (await database_session.scalars(stmt)).all()


async def create_alias(
    database_session: AsyncSession,
    account: Account,
    label: str,
    mode: AliasMode,
    static_address: Optional[str] = None,
    subaddress_index: Optional[int] = None,
    cached_address: Optional[str] = None,
) -> Alias:
    """Create an alias under an account, deriving full_acct from its handle."""
    now = datetime.now(timezone.utc)
    alias = Alias(
        guid=str(ULID()),
        account_guid=account.guid,
        full_acct=build_full_acct(account.handle, label),
        alias_label=label,
        mode=mode,
        static_address=static_address,
        subaddress_index=subaddress_index,
        cached_address=cached_address,
        created_at=now,
        updated_at=now,
    )
    database_session.add(alias)
    await database_session.flush()
    return alias


async def get_alias_by_full_acct(
    database_session: AsyncSession, full_acct: str
) -> Optional[Alias]:
    """Exact, case-sensitive lookup of an alias by its full identifier."""
    stmt = select(Alias).where(Alias.full_acct == full_acct)
    return (await database_session.scalars(stmt)).first()


async def list_aliases_for_account(
    database_session: AsyncSession, account_guid: str
) -> List[Alias]:
    stmt = (
        select(Alias)
        .where(Alias.account_guid == account_guid)
        .order_by(Alias.created_at)
    )
    return list((await database_session.scalars(stmt)).all())


async def set_alias_static_address(
    database_session: AsyncSession, alias_guid: str, address: str
) -> None:
    await database_session.execute(
        update(Alias)
        .where(Alias.guid == alias_guid)
        .values(static_address=address, updated_at=datetime.now(timezone.utc))
    )


async def set_alias_subaddress_index(
    database_session: AsyncSession, alias_guid: str, subaddress_index: int
) -> None:
    """Point a dynamic alias at a new subaddress.

    The cached address is cleared so the next resolution derives the address
    for the new index. This is the only way a dynamic alias rotates.
    """
    await database_session.execute(
        update(Alias)
        .where(Alias.guid == alias_guid)
        .values(
            subaddress_index=subaddress_index,
            cached_address=None,
            updated_at=datetime.now(timezone.utc),
        )
    )


async def store_cached_address(
    database_session: AsyncSession,
    alias_guid: str,
    subaddress_index: int,
    address: str,
) -> str:
    """Record the first derived address of a dynamic alias.

    The write only applies while no address is cached and the index is still
    the one the address was derived from. When a concurrent resolution got
    there first its address is returned instead, so every caller ends up
    answering with the stored value.
    """
    result = await database_session.execute(
        update(Alias)
        .where(
            Alias.guid == alias_guid,
            Alias.subaddress_index == subaddress_index,
            or_(Alias.cached_address.is_(None), Alias.cached_address == ""),
        )
        .values(cached_address=address, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return address

    stored = await database_session.scalar(
        select(Alias.cached_address).where(Alias.guid == alias_guid)
    )
    return stored or address
