import hmac
import json
import logging
from typing import Any, Dict, Optional

from aiohttp import BasicAuth, web

from monalias.app.config import SettingsAppKey

logger = logging.getLogger(__name__)


class AdminAuthenticationException(Exception):
    """
    Exception raised when an administrative request cannot be authenticated.
    """

    @staticmethod
    def not_configured() -> "AdminAuthenticationException":
        """No admin password is configured, every admin request is refused."""
        return AdminAuthenticationException(
            "error-admin-auth-4000 Admin access is not configured"
        )

    @staticmethod
    def credentials_missing() -> "AdminAuthenticationException":
        return AdminAuthenticationException(
            "error-admin-auth-4001 Basic credentials missing or malformed"
        )

    @staticmethod
    def credentials_invalid() -> "AdminAuthenticationException":
        return AdminAuthenticationException(
            "error-admin-auth-4002 Invalid credentials"
        )


def json_error(
    status: int, code: str, extra: Optional[Dict[str, Any]] = None
) -> web.Response:
    body: Dict[str, Any] = {"error": code}
    if extra:
        body.update(extra)
    return web.Response(
        status=status, body=json.dumps(body), content_type="application/json"
    )


def check_credentials(
    user: str, password: str, expected_user: str, expected_password: Optional[str]
) -> bool:
    """Constant time comparison of basic credentials."""
    if not expected_user or not expected_password:
        return False
    user_match = hmac.compare_digest(user.encode(), expected_user.encode())
    password_match = hmac.compare_digest(password.encode(), expected_password.encode())
    return user_match and password_match


def admin_auth_helper(request: web.Request) -> None:
    """
    Authenticate an administrative request with HTTP basic auth.

    Raises:
        AdminAuthenticationException: When the request must be refused
    """
    settings = request.app[SettingsAppKey]
    if not settings.admin_password:
        raise AdminAuthenticationException.not_configured()

    authorization: Optional[str] = request.headers.get("Authorization")
    if authorization is None:
        raise AdminAuthenticationException.credentials_missing()
    try:
        credentials = BasicAuth.decode(authorization)
    except ValueError as e:
        raise AdminAuthenticationException.credentials_missing() from e

    if not check_credentials(
        credentials.login,
        credentials.password,
        settings.admin_user,
        settings.admin_password,
    ):
        raise AdminAuthenticationException.credentials_invalid()


def require_admin(handler):
    """Wrap an admin handler so unauthenticated requests get a 401."""

    async def wrapped(request: web.Request) -> web.StreamResponse:
        try:
            admin_auth_helper(request)
        except AdminAuthenticationException as e:
            logger.warning("admin request to %s refused: %s", request.path, e)
            raise web.HTTPUnauthorized(
                body=json.dumps({"error": "unauthorized"}),
                content_type="application/json",
                headers={"WWW-Authenticate": 'Basic realm="Monalias"'},
            )
        return await handler(request)

    return wrapped
