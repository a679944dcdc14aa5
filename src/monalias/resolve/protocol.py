"""Wire types and validation for the resolve protocol.

Defines the request and response bodies of `/_monalias/resolve`, the
well-known identity document, the typed failures a resolution can end in, and
the small parsing helpers shared by the resolver and the HTTP layer.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

WELL_KNOWN_PATH = "/.well-known/monalias"
RESOLVE_PATH = "/_monalias/resolve"
WELL_KNOWN_VERSION = "0.1"

KEY_ID_HEADER = "X-Monalias-Key-Id"
SIGNATURE_HEADER = "X-Monalias-Sig"


class Network(str, Enum):
    mainnet = "mainnet"
    stagenet = "stagenet"


class ResolvedKind(str, Enum):
    NORMAL = "NORMAL"
    CATCH_ALL = "CATCH_ALL"


class ResolveRequest(BaseModel):
    """Body of a resolve request.

    Both fields default to empty so that a missing field is reported as
    bad_request by the resolver rather than as a schema error.
    """

    acct: str = ""
    network: str = ""


class ResolveMeta(BaseModel):
    display_name: Optional[str] = None
    alias: Optional[str] = None
    resolved_kind: ResolvedKind


class ResolveResponse(BaseModel):
    address: str
    network: str
    meta: ResolveMeta
    expires_at: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        """Serialize for the wire, leaving out expires_at when it is unset."""
        body = self.model_dump(mode="json")
        if self.expires_at is None:
            body.pop("expires_at")
        return body


class SignedResolveResponse(BaseModel):
    response: ResolveResponse
    key_id: str
    signature: str


class WellKnownKey(BaseModel):
    kid: str
    alg: str
    public_key: str
    use: str


class WellKnownDocument(BaseModel):
    """Identity document published at /.well-known/monalias."""

    homeserver: str
    version: str = ""
    keys: List[WellKnownKey] = []

    def has_key(self, kid: str, public_key: str) -> bool:
        return any(
            key.kid == kid and key.public_key == public_key for key in self.keys
        )


class ResolveException(Exception):
    """
    Typed failure of a resolution.

    Every instance carries the machine readable code and HTTP status of the
    error body. Use the static constructors, they are the complete taxonomy.
    """

    def __init__(
        self,
        code: str,
        status: int,
        reason: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(detail or code)
        self.code = code
        self.status = status
        self.reason = reason

    def to_json(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code}
        if self.reason is not None:
            body["reason"] = self.reason
        return body

    @staticmethod
    def bad_request() -> "ResolveException":
        return ResolveException("bad_request", 400)

    @staticmethod
    def invalid_network() -> "ResolveException":
        return ResolveException("invalid_network", 400)

    @staticmethod
    def alias_not_found() -> "ResolveException":
        return ResolveException("alias_not_found", 404)

    @staticmethod
    def instance_locked(reason: Optional[str] = None) -> "ResolveException":
        return ResolveException("instance_locked", 503, reason=reason)

    @staticmethod
    def server_error(detail: str = "") -> "ResolveException":
        """Opaque failure. detail is for logs only and never reaches the client."""
        return ResolveException("server_error", 500, detail=detail or "server_error")


def parse_network(value: str) -> Optional[Network]:
    try:
        return Network(value)
    except ValueError:
        return None


def acct_matches_domain(acct: str, domain: str) -> bool:
    """True when acct has exactly one `$` and its suffix is domain, ignoring case."""
    parts = acct.split("$")
    if len(parts) != 2:
        return False
    return parts[1].casefold() == domain.casefold()


def display_name_from_acct(acct: str) -> Optional[str]:
    """Local part of acct up to the first `+`, or None when it is empty."""
    local = acct.split("$")[0].split("+", 1)[0]
    if local == "":
        return None
    return local


def catch_all_display_name(domain: str) -> str:
    return f"{domain} (catch-all)"


def format_expires_at(value: datetime) -> str:
    """RFC 3339 in UTC with second precision, e.g. 2026-01-02T15:04:05Z."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
