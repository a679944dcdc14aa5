"""
Configuration Module for the Monalias service

Settings are loaded from `MONALIAS_*` environment variables (and a `.env` file
when present) through pydantic-settings. Shared resources are handed to
handlers and background tasks through typed aiohttp AppKeys.

Key configuration areas include:
- Instance identity (domain, public base URL, signing key)
- Database connection
- Rate limiting of the public resolve endpoint
- Wallet RPC used for dynamic aliases
- Identity watchdog schedule
- Monitoring and administrative access
"""

import asyncio
import os
from typing import Final, Optional

from aiohttp import ClientSession, web
from jwcrypto import jwk
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from monalias.app.metrics import MetricsClient
from monalias.app.rate_limit import RateLimiter
from monalias.identity.signer import Signer, load_signing_key
from monalias.identity.status import IdentityStatusCell
from monalias.identity.watchdog import IdentityWatchdog
from monalias.model.health import HealthGauge
from monalias.resolve.alias import Resolver
from monalias.wallet.rpc import WalletBridge

SIGNING_KEY_SECRET_PATH = "/run/secrets/monalias_signing_key"
WALLET_RPC_PASSWORD_SECRET_PATH = "/run/secrets/wallet_rpc_password"


class Settings(BaseSettings):
    """
    Application settings for the Monalias service.

    Every field maps to an environment variable with the MONALIAS_ prefix, for
    example `domain` is set with MONALIAS_DOMAIN.
    """

    model_config = SettingsConfigDict(
        env_prefix="MONALIAS_", env_file=".env", extra="ignore"
    )

    debug: bool = False
    """Enable debug logging and verbose client tracing."""

    domain: str
    """Domain served by this instance, the part after `$` in an alias."""

    public_base_url: str
    """Public base URL, must equal the `homeserver` of the published document."""

    http_host: str = "0.0.0.0"
    http_port: int = 8080

    database_url: str = "sqlite+aiosqlite:///./monalias.db"
    """SQLAlchemy async DSN. Set with MONALIAS_DATABASE_URL."""

    # Rate limiting
    rate_ip_rps: float = 1.0
    """Token refill per second for each request source."""

    rate_ip_burst: int = 10
    """Bucket size for each request source."""

    rate_limit_idle_seconds: int = 600
    rate_limit_sweep_seconds: int = 120
    rate_limit_retry_after: int = 30

    trust_forwarded_for: bool = False
    """Key rate limiting on the first X-Forwarded-For hop (behind a proxy)."""

    catchall_address: Optional[str] = None
    """Address returned for unknown aliases of this domain. Unset disables it."""

    # Wallet RPC
    wallet_rpc_url: Optional[str] = None
    wallet_rpc_user: Optional[str] = None
    wallet_rpc_password: Optional[str] = None
    wallet_rpc_timeout: float = 10.0

    # Signing
    signing_key_file: Optional[str] = None
    """Path to the Ed25519 key (base64 seed or JWK). Falls back to a docker secret."""

    signing_key_id: str = "main-2026-01"

    resolve_ttl_seconds: Optional[int] = None
    """When set, resolve answers carry expires_at = now + ttl."""

    # Identity watchdog
    identity_interval: float = 900.0
    identity_timeout: float = 10.0
    well_known_url: Optional[str] = None
    """Overrides https://{domain}/.well-known/monalias for the self-check."""

    # Administration
    admin_user: str = "admin"
    admin_password: Optional[str] = None
    """Admin routes refuse every request while this is unset."""

    admin_http_host: str = "127.0.0.1"
    admin_http_port: Optional[int] = None
    """
    Separate listener for the /internal/api/ routes. While unset they share
    the public listener and rely on basic auth alone; once set they only
    answer on this port and the public routes do not answer on it.
    """

    # Monitoring
    sentry_dsn: Optional[str] = None
    metrics_backend: str = "none"
    statsd_host: str = "telegraf"
    statsd_port: int = 8125

    @model_validator(mode="after")
    def apply_secret_files(self) -> "Settings":
        """Fill secrets from docker secret files when not set explicitly."""
        if self.signing_key_file is None and os.path.exists(SIGNING_KEY_SECRET_PATH):
            self.signing_key_file = SIGNING_KEY_SECRET_PATH
        if self.wallet_rpc_password is None and os.path.exists(
            WALLET_RPC_PASSWORD_SECRET_PATH
        ):
            with open(WALLET_RPC_PASSWORD_SECRET_PATH) as fd:
                self.wallet_rpc_password = fd.read().strip()
        if self.signing_key_file is None:
            raise ValueError(
                f"MONALIAS_SIGNING_KEY_FILE or {SIGNING_KEY_SECRET_PATH} is required"
            )
        return self

    def load_signing_key(self) -> jwk.JWK:
        assert self.signing_key_file is not None
        return load_signing_key(self.signing_key_file, self.signing_key_id)


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy async database engine"""

DatabaseSessionMakerAppKey: Final = web.AppKey(
    "database_session_maker", async_sessionmaker[AsyncSession]
)
"""AppKey for accessing the SQLAlchemy async session factory"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

SignerAppKey: Final = web.AppKey("signer", Signer)
"""AppKey for the resolve response signer"""

IdentityStatusAppKey: Final = web.AppKey("identity_status", IdentityStatusCell)
"""AppKey for the in-process snapshot of the instance status"""

IdentityWatchdogAppKey: Final = web.AppKey("identity_watchdog", IdentityWatchdog)
"""AppKey for the identity watchdog, shared by the timer and admin routes"""

ResolverAppKey: Final = web.AppKey("resolver", Resolver)
"""AppKey for the alias resolver"""

RateLimiterAppKey: Final = web.AppKey("rate_limiter", RateLimiter)
"""AppKey for the per-source rate limiter of the resolve endpoint"""

WalletBridgeAppKey: Final = web.AppKey("wallet_bridge", WalletBridge)
"""AppKey for the wallet RPC bridge"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""

IdentityWatchdogTaskAppKey: Final = web.AppKey(
    "identity_watchdog_task", asyncio.Task[None]
)
"""AppKey for the background task running identity checks"""

RateLimitSweepTaskAppKey: Final = web.AppKey("rate_limit_sweep_task", asyncio.Task[None])
"""AppKey for the background task evicting idle rate limit buckets"""

TickHealthTaskAppKey: Final = web.AppKey("tick_health_task", asyncio.Task[None])
"""AppKey for the background task that monitors service health"""
