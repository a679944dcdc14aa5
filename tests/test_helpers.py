"""
Common testing utilities for Monalias tests.

Provides fake collaborators (wallet bridge, clocks) and small builders for
accounts and aliases so that individual tests stay focused on behaviour.
"""

import asyncio
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from monalias.model.accounts import Alias, AliasMode, create_account, create_alias
from monalias.wallet.rpc import WalletBridge, WalletRPCException

TEST_DOMAIN = "example.com"
TEST_HOMESERVER = "https://example.com"
TEST_KEY_ID = "test-2026-01"

STATIC_ADDRESS = "4" + "A" * 94
CATCHALL_ADDRESS = "4" + "C" * 94


def subaddress(n: int) -> str:
    """A distinct fake subaddress for each n."""
    return "8" + str(n).rjust(94, "B")


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWalletBridge(WalletBridge):
    """
    In-memory wallet bridge.

    Returns a different address on every get_address call so tests can tell
    whether a stored address was reused or a new one derived.
    """

    def __init__(self, enabled: bool = True, fail: bool = False, delay: float = 0.0):
        self._enabled = enabled
        self.fail = fail
        self.delay = delay
        self.opened: List[str] = []
        self.requested: List[int] = []

    @property
    def enabled(self) -> bool:
        return self._enabled

    async def open_wallet(self, name: str) -> None:
        if self.fail:
            raise WalletRPCException.transport("open_wallet refused")
        self.opened.append(name)

    async def get_address(self, index: int) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.requested.append(index)
        return subaddress(len(self.requested))


async def create_static_alias(
    session: AsyncSession,
    handle: str = "alice$example.com",
    label: str = "default",
    address: Optional[str] = STATIC_ADDRESS,
) -> Alias:
    account = await create_account(session, handle)
    alias = await create_alias(
        session, account, label, AliasMode.STATIC_ADDRESS, static_address=address
    )
    await session.commit()
    return alias


async def create_dynamic_alias(
    session: AsyncSession,
    handle: str = "bob$example.com",
    label: str = "donations",
    wallet_name: Optional[str] = "bob-wallet",
    subaddress_index: Optional[int] = 3,
    cached_address: Optional[str] = None,
) -> Alias:
    account = await create_account(session, handle, wallet_name=wallet_name)
    alias = await create_alias(
        session,
        account,
        label,
        AliasMode.DYNAMIC_SUBADDRESS,
        subaddress_index=subaddress_index,
        cached_address=cached_address,
    )
    await session.commit()
    return alias


async def corrupt_alias_mode(session: AsyncSession, full_acct: str, mode: str = "BOGUS") -> None:
    """Store a mode that AliasMode does not know, as a bad manual edit would."""
    await session.execute(
        text("UPDATE aliases SET mode = :mode WHERE full_acct = :full_acct"),
        {"mode": mode, "full_acct": full_acct},
    )
    await session.commit()
