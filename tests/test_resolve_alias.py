"""
Unit tests for alias resolution in monalias.resolve.alias

Tests cover the validation order, static and dynamic aliases, the catch-all
fallback, the lock gate, integrity failures and the signature attached to
every successful answer.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from monalias.identity.signer import verify_resolve_signature
from monalias.identity.status import IdentityStatusCell
from monalias.model.accounts import get_alias_by_full_acct, set_alias_subaddress_index
from monalias.model.instance import InstanceStatus
from monalias.resolve.alias import Resolver
from monalias.resolve.protocol import ResolveException, ResolveRequest, ResolvedKind
from tests.test_helpers import (
    CATCHALL_ADDRESS,
    STATIC_ADDRESS,
    TEST_DOMAIN,
    FakeWalletBridge,
    create_dynamic_alias,
    corrupt_alias_mode,
    create_static_alias,
    subaddress,
)


@pytest.fixture
def wallet_bridge():
    return FakeWalletBridge()


@pytest.fixture
def resolver(database_session_maker, signer, status_cell, wallet_bridge):
    return Resolver(
        database_session_maker,
        signer,
        status_cell,
        domain=TEST_DOMAIN,
        catchall_address=None,
        wallet_bridge=wallet_bridge,
    )


def lock(status_cell: IdentityStatusCell, reason="identity_mismatch"):
    status_cell.swap(
        replace(status_cell.current, status=InstanceStatus.LOCKED, status_reason=reason)
    )


async def expect_error(resolver: Resolver, request: ResolveRequest) -> ResolveException:
    with pytest.raises(ResolveException) as exc_info:
        await resolver.resolve(request)
    return exc_info.value


class TestValidation:
    """Test suite for request validation and its order."""

    @pytest.mark.parametrize(
        "acct,network",
        [("", "mainnet"), ("alice$example.com", ""), ("", "")],
    )
    async def test_missing_fields(self, resolver, acct, network):
        error = await expect_error(resolver, ResolveRequest(acct=acct, network=network))
        assert error.code == "bad_request"
        assert error.status == 400

    async def test_unknown_network(self, resolver):
        error = await expect_error(
            resolver, ResolveRequest(acct="alice$example.com", network="testnet")
        )
        assert error.code == "invalid_network"

    async def test_foreign_domain_reads_as_not_found(self, resolver, session: AsyncSession):
        await create_static_alias(session)
        error = await expect_error(
            resolver, ResolveRequest(acct="alice$other.com", network="mainnet")
        )
        assert error.code == "alias_not_found"
        assert error.status == 404

    async def test_missing_dollar_reads_as_not_found(self, resolver):
        error = await expect_error(
            resolver, ResolveRequest(acct="alice@example.com", network="mainnet")
        )
        assert error.code == "alias_not_found"

    async def test_input_errors_precede_lock(self, resolver, status_cell):
        lock(status_cell)
        error = await expect_error(resolver, ResolveRequest(acct="", network="mainnet"))
        assert error.code == "bad_request"

    async def test_domain_mismatch_precedes_lock(self, resolver, status_cell):
        lock(status_cell)
        error = await expect_error(
            resolver, ResolveRequest(acct="alice$other.com", network="mainnet")
        )
        assert error.code == "alias_not_found"

    async def test_locked_instance_refuses(self, resolver, status_cell, session: AsyncSession):
        await create_static_alias(session)
        lock(status_cell)

        error = await expect_error(
            resolver, ResolveRequest(acct="alice$example.com", network="mainnet")
        )

        assert error.code == "instance_locked"
        assert error.status == 503
        assert error.to_json() == {"error": "instance_locked", "reason": "identity_mismatch"}

    async def test_degraded_instance_serves(self, resolver, status_cell, session: AsyncSession):
        await create_static_alias(session)
        status_cell.swap(
            replace(
                status_cell.current,
                status=InstanceStatus.DEGRADED,
                status_reason="well_known_unreachable",
            )
        )

        signed = await resolver.resolve(
            ResolveRequest(acct="alice$example.com", network="mainnet")
        )
        assert signed.response.address == STATIC_ADDRESS

    async def test_unloaded_identity_is_server_error(
        self, database_session_maker, signer, session: AsyncSession
    ):
        await create_static_alias(session)
        resolver = Resolver(database_session_maker, signer, IdentityStatusCell(), TEST_DOMAIN)

        error = await expect_error(
            resolver, ResolveRequest(acct="alice$example.com", network="mainnet")
        )
        assert error.code == "server_error"


class TestStaticAliases:
    """Test suite for aliases with a fixed address."""

    async def test_resolves_and_signs(self, resolver, signer, session: AsyncSession):
        await create_static_alias(session)

        signed = await resolver.resolve(
            ResolveRequest(acct="alice$example.com", network="mainnet")
        )

        response = signed.response
        assert response.address == STATIC_ADDRESS
        assert response.network == "mainnet"
        assert response.expires_at is None
        assert response.meta.display_name == "alice"
        assert response.meta.alias == "default"
        assert response.meta.resolved_kind == ResolvedKind.NORMAL
        assert signed.key_id == signer.key_id
        assert verify_resolve_signature(
            signer.public_key,
            signed.signature,
            "alice$example.com",
            STATIC_ADDRESS,
            "mainnet",
            None,
            signer.key_id,
        )

    async def test_labelled_alias(self, resolver, session: AsyncSession):
        await create_static_alias(session, label="tips")

        signed = await resolver.resolve(
            ResolveRequest(acct="alice+tips$example.com", network="stagenet")
        )

        assert signed.response.meta.display_name == "alice"
        assert signed.response.meta.alias == "tips"
        assert signed.response.network == "stagenet"

    async def test_domain_case_is_ignored_but_acct_is_exact(self, resolver, session: AsyncSession):
        await create_static_alias(session)

        with pytest.raises(ResolveException) as exc_info:
            await resolver.resolve(
                ResolveRequest(acct="alice$EXAMPLE.com", network="mainnet")
            )

        # the domain passes, the stored full_acct is matched exactly
        assert exc_info.value.code == "alias_not_found"

    async def test_static_alias_without_address(self, resolver, session: AsyncSession):
        await create_static_alias(session, address=None)

        with patch("monalias.resolve.alias.sentry_sdk") as sentry:
            error = await expect_error(
                resolver, ResolveRequest(acct="alice$example.com", network="mainnet")
            )

        assert error.code == "server_error"
        sentry.capture_message.assert_called_once()

    async def test_unknown_mode_is_server_error(self, resolver, session: AsyncSession):
        await create_static_alias(session)
        await corrupt_alias_mode(session, "alice$example.com")

        with patch("monalias.resolve.alias.sentry_sdk") as sentry:
            error = await expect_error(
                resolver, ResolveRequest(acct="alice$example.com", network="mainnet")
            )

        assert error.code == "server_error"
        assert error.status == 500
        sentry.capture_exception.assert_called_once()

    async def test_expires_at_from_ttl(
        self, database_session_maker, signer, status_cell, session: AsyncSession
    ):
        await create_static_alias(session)
        resolver = Resolver(
            database_session_maker,
            signer,
            status_cell,
            TEST_DOMAIN,
            resolve_ttl=300,
            clock=lambda: datetime(2026, 1, 2, 15, 0, 0, tzinfo=timezone.utc),
        )

        signed = await resolver.resolve(
            ResolveRequest(acct="alice$example.com", network="mainnet")
        )

        assert signed.response.expires_at == "2026-01-02T15:05:00Z"
        assert verify_resolve_signature(
            signer.public_key,
            signed.signature,
            "alice$example.com",
            STATIC_ADDRESS,
            "mainnet",
            "2026-01-02T15:05:00Z",
            signer.key_id,
        )


class TestCatchAll:
    """Test suite for unknown aliases of the served domain."""

    async def test_without_catchall(self, resolver):
        error = await expect_error(
            resolver, ResolveRequest(acct="nobody$example.com", network="mainnet")
        )
        assert error.code == "alias_not_found"

    async def test_with_catchall(self, database_session_maker, signer, status_cell):
        resolver = Resolver(
            database_session_maker,
            signer,
            status_cell,
            TEST_DOMAIN,
            catchall_address=CATCHALL_ADDRESS,
        )

        signed = await resolver.resolve(
            ResolveRequest(acct="nobody$example.com", network="mainnet")
        )

        assert signed.response.address == CATCHALL_ADDRESS
        assert signed.response.meta.display_name == "example.com (catch-all)"
        assert signed.response.meta.alias is None
        assert signed.response.meta.resolved_kind == ResolvedKind.CATCH_ALL

    async def test_catchall_never_serves_foreign_domain(
        self, database_session_maker, signer, status_cell
    ):
        resolver = Resolver(
            database_session_maker,
            signer,
            status_cell,
            TEST_DOMAIN,
            catchall_address=CATCHALL_ADDRESS,
        )
        error = await expect_error(
            resolver, ResolveRequest(acct="nobody$other.com", network="mainnet")
        )
        assert error.code == "alias_not_found"


class TestDynamicAliases:
    """Test suite for aliases backed by a wallet subaddress."""

    async def test_derives_once_then_reuses(
        self, resolver, wallet_bridge, database_session_maker, session: AsyncSession
    ):
        await create_dynamic_alias(session, subaddress_index=3)
        request = ResolveRequest(acct="bob+donations$example.com", network="mainnet")

        first = await resolver.resolve(request)
        second = await resolver.resolve(request)

        assert first.response.address == subaddress(1)
        assert second.response.address == subaddress(1)
        assert wallet_bridge.opened == ["bob-wallet"]
        assert wallet_bridge.requested == [3]

        async with database_session_maker() as check_session:
            alias = await get_alias_by_full_acct(check_session, "bob+donations$example.com")
            assert alias.cached_address == subaddress(1)

    async def test_concurrent_first_resolutions_agree(
        self, database_session_maker, signer, status_cell, session: AsyncSession
    ):
        await create_dynamic_alias(session)
        resolver = Resolver(
            database_session_maker,
            signer,
            status_cell,
            TEST_DOMAIN,
            wallet_bridge=FakeWalletBridge(delay=0.01),
        )
        request = ResolveRequest(acct="bob+donations$example.com", network="mainnet")

        results = await asyncio.gather(*[resolver.resolve(request) for _ in range(5)])

        addresses = {signed.response.address for signed in results}
        assert len(addresses) == 1

    async def test_cached_address_skips_wallet(self, resolver, wallet_bridge, session: AsyncSession):
        await create_dynamic_alias(session, cached_address=subaddress(7))

        signed = await resolver.resolve(
            ResolveRequest(acct="bob+donations$example.com", network="mainnet")
        )

        assert signed.response.address == subaddress(7)
        assert wallet_bridge.requested == []

    async def test_rotation_derives_new_address(
        self, resolver, wallet_bridge, database_session_maker, session: AsyncSession
    ):
        alias = await create_dynamic_alias(session, subaddress_index=3)
        request = ResolveRequest(acct="bob+donations$example.com", network="mainnet")
        first = await resolver.resolve(request)

        async with database_session_maker() as admin_session:
            await set_alias_subaddress_index(admin_session, alias.guid, 4)
            await admin_session.commit()

        second = await resolver.resolve(request)

        assert first.response.address != second.response.address
        assert wallet_bridge.requested == [3, 4]

    async def test_without_bridge(self, database_session_maker, signer, status_cell, session: AsyncSession):
        await create_dynamic_alias(session)
        resolver = Resolver(database_session_maker, signer, status_cell, TEST_DOMAIN)

        error = await expect_error(
            resolver, ResolveRequest(acct="bob+donations$example.com", network="mainnet")
        )
        assert error.code == "server_error"

    async def test_disabled_bridge(self, database_session_maker, signer, status_cell, session: AsyncSession):
        await create_dynamic_alias(session)
        resolver = Resolver(
            database_session_maker,
            signer,
            status_cell,
            TEST_DOMAIN,
            wallet_bridge=FakeWalletBridge(enabled=False),
        )

        error = await expect_error(
            resolver, ResolveRequest(acct="bob+donations$example.com", network="mainnet")
        )
        assert error.code == "server_error"

    async def test_bridge_failure(self, database_session_maker, signer, status_cell, session: AsyncSession):
        await create_dynamic_alias(session)
        resolver = Resolver(
            database_session_maker,
            signer,
            status_cell,
            TEST_DOMAIN,
            wallet_bridge=FakeWalletBridge(fail=True),
        )

        error = await expect_error(
            resolver, ResolveRequest(acct="bob+donations$example.com", network="mainnet")
        )
        assert error.code == "server_error"
        assert error.to_json() == {"error": "server_error"}

    @pytest.mark.parametrize(
        "fields",
        [
            {"subaddress_index": None},
            {"wallet_name": None},
        ],
    )
    async def test_integrity_errors(self, resolver, wallet_bridge, session: AsyncSession, fields):
        await create_dynamic_alias(session, **fields)

        error = await expect_error(
            resolver, ResolveRequest(acct="bob+donations$example.com", network="mainnet")
        )

        assert error.code == "server_error"
        assert wallet_bridge.requested == []


class TestStoreFailures:
    async def test_database_error_is_server_error(self, resolver):
        with patch(
            "monalias.resolve.alias.get_alias_by_full_acct",
            side_effect=OperationalError("select", {}, Exception("database is locked")),
        ):
            error = await expect_error(
                resolver, ResolveRequest(acct="alice$example.com", network="mainnet")
            )
        assert error.code == "server_error"
