"""Resolve response signing.

Builds the canonical string a verifier can reconstruct from a resolve request
and its response, and signs it with the instance's Ed25519 key. Keys are held
as jwcrypto JWKs (kty OKP, crv Ed25519); the raw signature comes from the
underlying pyca key object.
"""

import base64
import binascii
from typing import Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from jwcrypto import jwk
from jwcrypto.common import JWException, base64url_decode

RESOLVE_TAG = "MONALIAS_RESOLVE"
"""Literal first line of every canonical resolve string."""

SIGNING_ALGORITHM = "Ed25519"

SEED_SIZE = 32
PRIVATE_KEY_SIZE = 64


class SigningKeyException(Exception):
    """Raised when the signing key material cannot be loaded."""

    @staticmethod
    def unreadable(path: str) -> "SigningKeyException":
        return SigningKeyException(
            f"error-signing-key-3000 Signing key file {path} cannot be read"
        )

    @staticmethod
    def invalid_length(length: int) -> "SigningKeyException":
        return SigningKeyException(
            "error-signing-key-3001 Signing key must be a 32-byte seed or a "
            f"64-byte private key, got {length} bytes"
        )

    @staticmethod
    def unsupported_jwk() -> "SigningKeyException":
        return SigningKeyException(
            "error-signing-key-3002 Signing JWK must be a private OKP Ed25519 key"
        )


def canonical_resolve_string(
    acct: str,
    address: str,
    network: str,
    expires_at: Optional[str],
    key_id: str,
) -> str:
    """Build the newline-joined string that is signed for a resolve answer.

    acct and network come from the request, address and expires_at from the
    response. A missing expires_at is an empty line, never an omitted one.
    """
    return "\n".join(
        [RESOLVE_TAG, acct, address, network, expires_at or "", key_id]
    )


def private_key_from_bytes(raw: bytes) -> Ed25519PrivateKey:
    if len(raw) == SEED_SIZE:
        return Ed25519PrivateKey.from_private_bytes(raw)
    if len(raw) == PRIVATE_KEY_SIZE:
        # seed || public key
        return Ed25519PrivateKey.from_private_bytes(raw[:SEED_SIZE])
    raise SigningKeyException.invalid_length(len(raw))


def parse_signing_key(data: str, key_id: str) -> jwk.JWK:
    """Parse signing key material into a JWK carrying key_id as its kid.

    Accepts a JSON Web Key document, a base64 encoded seed or private key,
    or the raw bytes themselves.
    """
    trimmed = data.strip()
    if trimmed.startswith("{"):
        try:
            key = jwk.JWK.from_json(trimmed)
        except (JWException, ValueError) as e:
            raise SigningKeyException.unsupported_jwk() from e
        if key.get("kty") != "OKP" or key.get("crv") != SIGNING_ALGORITHM:
            raise SigningKeyException.unsupported_jwk()
        if not key.has_private:
            raise SigningKeyException.unsupported_jwk()
        return _with_kid(key, key_id)

    try:
        raw = base64.b64decode(trimmed, validate=True)
    except binascii.Error:
        raw = trimmed.encode()
    return _with_kid(jwk.JWK.from_pyca(private_key_from_bytes(raw)), key_id)


def _with_kid(key: jwk.JWK, key_id: str) -> jwk.JWK:
    exported = key.export_private(as_dict=True)
    exported["kid"] = key_id
    exported["alg"] = "EdDSA"
    exported["use"] = "sig"
    return jwk.JWK(**exported)


def load_signing_key(path: str, key_id: str) -> jwk.JWK:
    try:
        with open(path) as fd:
            data = fd.read()
    except OSError as e:
        raise SigningKeyException.unreadable(path) from e
    return parse_signing_key(data, key_id)


def generate_signing_key(key_id: str) -> jwk.JWK:
    return jwk.JWK.generate(kty="OKP", crv=SIGNING_ALGORITHM, kid=key_id, alg="EdDSA", use="sig")


def encode_public_key(key: jwk.JWK) -> str:
    """Standard base64 of the raw 32-byte public key, as published."""
    public = key.export_public(as_dict=True)
    return base64.b64encode(base64url_decode(public["x"])).decode()


def encode_seed(key: jwk.JWK) -> str:
    """Standard base64 of the 32-byte private seed, the key file format."""
    private_key: Ed25519PrivateKey = key.get_op_key("sign")
    raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(raw).decode()


class Signer:
    """
    Produces resolve signatures with one fixed key.

    The key id is part of every canonical string, so a verifier knows which
    published key to check against.
    """

    def __init__(self, key: jwk.JWK, key_id: str):
        self.key = key
        self.key_id = key_id
        self._private_key: Ed25519PrivateKey = key.get_op_key("sign")
        self.public_key = encode_public_key(key)

    def sign(self, message: str) -> str:
        """Sign the UTF-8 bytes of message and return standard base64."""
        signature = self._private_key.sign(message.encode("utf-8"))
        return base64.b64encode(signature).decode()

    def sign_resolve(
        self, acct: str, address: str, network: str, expires_at: Optional[str]
    ) -> str:
        return self.sign(
            canonical_resolve_string(acct, address, network, expires_at, self.key_id)
        )


def verify_resolve_signature(
    public_key: str,
    signature: str,
    acct: str,
    address: str,
    network: str,
    expires_at: Optional[str],
    key_id: str,
) -> bool:
    """Check a resolve signature the way a wallet would.

    public_key and signature are standard base64. Returns False for any
    malformed input instead of raising.
    """
    try:
        verifier = Ed25519PublicKey.from_public_bytes(base64.b64decode(public_key))
        raw_signature = base64.b64decode(signature)
    except (binascii.Error, ValueError):
        return False

    message = canonical_resolve_string(acct, address, network, expires_at, key_id)
    try:
        verifier.verify(raw_signature, message.encode("utf-8"))
    except InvalidSignature:
        return False
    return True
