"""Wallet RPC bridge used to derive subaddresses for dynamic aliases.

The bridge is a black box to the resolver: open a named wallet, then fetch the
address at a subaddress index. MoneroWalletRPC speaks JSON-RPC 2.0 to a
monero-wallet-rpc daemon over the shared aiohttp client session.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from aiohttp import BasicAuth, ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class WalletRPCException(Exception):
    """
    Exception raised when the wallet bridge cannot produce an answer.

    The resolver never shows these details to clients, they are logged for
    operators and mapped to an opaque server_error.
    """

    @staticmethod
    def not_configured() -> "WalletRPCException":
        return WalletRPCException("error-wallet-rpc-2000 Wallet RPC is not configured")

    @staticmethod
    def transport(msg: str = "") -> "WalletRPCException":
        return WalletRPCException(f"error-wallet-rpc-2001 Wallet RPC unreachable: {msg}")

    @staticmethod
    def rpc_error(code: int, message: str) -> "WalletRPCException":
        return WalletRPCException(
            f"error-wallet-rpc-2002 Wallet RPC error {code}: {message}"
        )

    @staticmethod
    def malformed(msg: str = "") -> "WalletRPCException":
        return WalletRPCException(
            f"error-wallet-rpc-2003 Malformed wallet RPC response: {msg}"
        )

    @staticmethod
    def address_not_found(index: int) -> "WalletRPCException":
        return WalletRPCException(
            f"error-wallet-rpc-2004 No address at subaddress index {index}"
        )


class WalletBridge(ABC):
    """Interface of the external wallet service."""

    @property
    @abstractmethod
    def enabled(self) -> bool:
        pass

    @abstractmethod
    async def open_wallet(self, name: str) -> None:
        pass

    @abstractmethod
    async def get_address(self, index: int) -> str:
        pass


class RPCError(BaseModel):
    code: int
    message: str


class RPCResponse(BaseModel):
    jsonrpc: str = "2.0"
    id: str = "0"
    result: Optional[Dict[str, Any]] = None
    error: Optional[RPCError] = None


class SubaddressEntry(BaseModel):
    address: str
    address_index: int


class GetAddressResult(BaseModel):
    addresses: List[SubaddressEntry] = []


class MoneroWalletRPC(WalletBridge):
    """
    JSON-RPC client for monero-wallet-rpc.

    Every call is bounded by the configured timeout. Transport failures,
    timeouts, RPC error objects and unexpected payloads all raise
    WalletRPCException, so callers only have one failure type to handle.
    """

    def __init__(
        self,
        http_session: ClientSession,
        url: Optional[str],
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.http_session = http_session
        self.url = url or ""
        self.auth = BasicAuth(user or "", password or "") if (user or password) else None
        self.timeout = ClientTimeout(total=timeout)

    @property
    def enabled(self) -> bool:
        return self.url != ""

    async def call(
        self, method: str, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if not self.enabled:
            raise WalletRPCException.not_configured()

        payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": "0", "method": method}
        if params is not None:
            payload["params"] = params

        try:
            async with self.http_session.post(
                self.url, json=payload, auth=self.auth, timeout=self.timeout
            ) as resp:
                body = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise WalletRPCException.transport(f"{method} timed out") from e
        except (ClientError, ValueError) as e:
            raise WalletRPCException.transport(f"{method}: {e}") from e

        try:
            parsed = RPCResponse.model_validate(body)
        except ValidationError as e:
            raise WalletRPCException.malformed(method) from e

        if parsed.error is not None:
            raise WalletRPCException.rpc_error(parsed.error.code, parsed.error.message)
        return parsed.result or {}

    async def open_wallet(self, name: str) -> None:
        logger.debug("opening wallet %s", name)
        await self.call("open_wallet", {"filename": name})

    async def get_address(self, index: int) -> str:
        result = await self.call(
            "get_address", {"account_index": 0, "address_index": [index]}
        )
        try:
            parsed = GetAddressResult.model_validate(result)
        except ValidationError as e:
            raise WalletRPCException.malformed("get_address") from e
        if len(parsed.addresses) == 0:
            raise WalletRPCException.address_not_found(index)
        return parsed.addresses[0].address

