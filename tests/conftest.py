"""
Shared test configuration and fixtures for Monalias tests.

Provides a per-test SQLite database, session management, a signing key and
the instance identity row used across the model, resolver and watchdog tests.
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from monalias.identity.signer import Signer, encode_seed, generate_signing_key
from monalias.identity.status import IdentityStatusCell, InstanceIdentity
from monalias.model.base import Base
from monalias.model.instance import ensure_instance_config
from tests.test_helpers import TEST_DOMAIN, TEST_HOMESERVER, TEST_KEY_ID


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """Create a SQLite database file private to each test function."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'monalias_test.db'}",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def database_session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(database_session_maker):
    """Create async database session for testing."""
    async with database_session_maker() as session:
        yield session


@pytest.fixture
def signing_key():
    return generate_signing_key(TEST_KEY_ID)


@pytest.fixture
def signer(signing_key):
    return Signer(signing_key, TEST_KEY_ID)


@pytest.fixture
def signing_key_file(tmp_path, signing_key):
    """Write the signing key seed the way operators provide it."""
    path = tmp_path / "signing_key"
    path.write_text(encode_seed(signing_key))
    return str(path)


@pytest_asyncio.fixture
async def instance_identity(database_session_maker, signer):
    """Create the instance identity row and return its snapshot."""
    async with database_session_maker() as session:
        async with session.begin():
            instance_config = await ensure_instance_config(
                session, TEST_DOMAIN, TEST_HOMESERVER, signer.key_id, signer.public_key
            )
        return InstanceIdentity.from_model(instance_config)


@pytest.fixture
def status_cell(instance_identity):
    return IdentityStatusCell(instance_identity)
