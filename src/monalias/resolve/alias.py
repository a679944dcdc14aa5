"""Alias resolution.

Turns a validated resolve request into a signed answer. The checks run in a
fixed order and stop at the first failure:

1. acct and network are present and network is mainnet or stagenet
2. the domain suffix of acct is this instance's domain (a mismatch reads as
   alias_not_found so the endpoint is not an oracle for domain validity)
3. the instance is not LOCKED

Only then is the alias looked up, its address produced and the answer signed.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import sentry_sdk
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from monalias.identity.signer import Signer
from monalias.identity.status import IdentityStatusCell, refuses_resolution
from monalias.model.accounts import (
    Alias,
    AliasMode,
    get_account,
    get_alias_by_full_acct,
    store_cached_address,
)
from monalias.resolve.protocol import (
    ResolveException,
    ResolveMeta,
    ResolveRequest,
    ResolveResponse,
    ResolvedKind,
    SignedResolveResponse,
    acct_matches_domain,
    catch_all_display_name,
    display_name_from_acct,
    format_expires_at,
    parse_network,
)
from monalias.wallet.rpc import WalletBridge, WalletRPCException

logger = logging.getLogger(__name__)


class Resolver:
    """
    Resolves aliases of one domain and signs the answers.

    The wallet bridge is optional; without it dynamic aliases that have no
    cached address fail with server_error. Opening a wallet and reading an
    address are serialized because the wallet RPC has a single open wallet.
    """

    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        signer: Signer,
        status_cell: IdentityStatusCell,
        domain: str,
        catchall_address: Optional[str] = None,
        wallet_bridge: Optional[WalletBridge] = None,
        resolve_ttl: Optional[int] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.database_session_maker = database_session_maker
        self.signer = signer
        self.status_cell = status_cell
        self.domain = domain
        self.catchall_address = catchall_address or None
        self.wallet_bridge = wallet_bridge
        self.resolve_ttl = resolve_ttl
        self.clock = clock
        self._wallet_lock = asyncio.Lock()

    def validate(self, request: ResolveRequest) -> None:
        if request.acct == "" or request.network == "":
            raise ResolveException.bad_request()
        if parse_network(request.network) is None:
            raise ResolveException.invalid_network()
        if not acct_matches_domain(request.acct, self.domain):
            raise ResolveException.alias_not_found()

        identity = self.status_cell.current
        if identity is None:
            raise ResolveException.server_error("instance identity not loaded")
        if refuses_resolution(identity.status):
            raise ResolveException.instance_locked(identity.status_reason)

    async def resolve(self, request: ResolveRequest) -> SignedResolveResponse:
        """
        Resolve request end to end.

        Raises:
            ResolveException: For every failure, with the code and status of
                the error body to send
        """
        self.validate(request)

        try:
            async with self.database_session_maker() as database_session:
                try:
                    alias = await get_alias_by_full_acct(database_session, request.acct)
                except LookupError as e:
                    # a stored mode outside AliasMode fails while the row loads
                    raise self.unreadable_alias(request.acct, e) from e
                if alias is None:
                    response = self.catch_all_response(request)
                else:
                    address, label = await self.address_for_alias(
                        database_session, alias
                    )
                    response = ResolveResponse(
                        address=address,
                        network=request.network,
                        meta=ResolveMeta(
                            display_name=display_name_from_acct(request.acct),
                            alias=label,
                            resolved_kind=ResolvedKind.NORMAL,
                        ),
                    )
        except (SQLAlchemyError, WalletRPCException) as e:
            sentry_sdk.capture_exception(e)
            logger.error("resolve %s failed: %s", request.acct, e)
            raise ResolveException.server_error(str(e)) from e

        if self.resolve_ttl is not None:
            response.expires_at = format_expires_at(
                self.clock() + timedelta(seconds=self.resolve_ttl)
            )

        return self.sign(request, response)

    def catch_all_response(self, request: ResolveRequest) -> ResolveResponse:
        if self.catchall_address is None:
            raise ResolveException.alias_not_found()
        return ResolveResponse(
            address=self.catchall_address,
            network=request.network,
            meta=ResolveMeta(
                display_name=catch_all_display_name(self.domain),
                alias=None,
                resolved_kind=ResolvedKind.CATCH_ALL,
            ),
        )

    async def address_for_alias(
        self, database_session: AsyncSession, alias: Alias
    ) -> Tuple[str, str]:
        """Produce the address of a stored alias and its label."""
        if alias.mode == AliasMode.STATIC_ADDRESS:
            if not alias.static_address:
                raise self.integrity_error(alias, "static alias has no address")
            return alias.static_address, alias.alias_label
        elif alias.mode == AliasMode.DYNAMIC_SUBADDRESS:
            label = alias.alias_label
            if alias.cached_address:
                return alias.cached_address, label
            return await self.derive_address(database_session, alias), label

        raise self.integrity_error(alias, f"unknown alias mode {alias.mode!r}")

    async def derive_address(self, database_session: AsyncSession, alias: Alias) -> str:
        """Derive a dynamic alias's subaddress and store it for later resolutions."""
        if alias.subaddress_index is None:
            raise self.integrity_error(alias, "dynamic alias has no subaddress index")
        if self.wallet_bridge is None or not self.wallet_bridge.enabled:
            raise WalletRPCException.not_configured()

        account = await get_account(database_session, alias.account_guid)
        if account is None or not account.wallet_name:
            raise self.integrity_error(alias, "owning account has no wallet name")

        async with self._wallet_lock:
            await self.wallet_bridge.open_wallet(account.wallet_name)
            address = await self.wallet_bridge.get_address(alias.subaddress_index)

        stored = await store_cached_address(
            database_session, alias.guid, alias.subaddress_index, address
        )
        await database_session.commit()
        if stored != address:
            logger.info("alias %s was derived concurrently, using stored address", alias.full_acct)
        return stored

    def integrity_error(self, alias: Alias, detail: str) -> ResolveException:
        logger.error("integrity error on alias %s: %s", alias.full_acct, detail)
        sentry_sdk.capture_message(f"alias {alias.guid}: {detail}", level="error")
        return ResolveException.server_error(detail)

    def unreadable_alias(self, acct: str, error: LookupError) -> ResolveException:
        logger.error("integrity error on alias %s: %s", acct, error)
        sentry_sdk.capture_exception(error)
        return ResolveException.server_error("alias record is unreadable")

    def sign(
        self, request: ResolveRequest, response: ResolveResponse
    ) -> SignedResolveResponse:
        signature = self.signer.sign_resolve(
            request.acct, response.address, request.network, response.expires_at
        )
        return SignedResolveResponse(
            response=response, key_id=self.signer.key_id, signature=signature
        )
