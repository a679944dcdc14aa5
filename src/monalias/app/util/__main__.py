import argparse
import sys
from typing import Optional

from monalias.identity.signer import (
    encode_public_key,
    encode_seed,
    generate_signing_key,
    verify_resolve_signature,
)


def genKey(key_id: str) -> None:
    key = generate_signing_key(key_id)
    print(f"seed: {encode_seed(key)}")
    print(f"public_key: {encode_public_key(key)}")
    print(f"kid: {key_id}")


def verifySignature(
    public_key: str,
    signature: str,
    acct: str,
    address: str,
    network: str,
    key_id: str,
    expires_at: Optional[str],
) -> bool:
    valid = verify_resolve_signature(
        public_key, signature, acct, address, network, expires_at, key_id
    )
    print("valid" if valid else "invalid")
    return valid


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="monaliasutil", description="Monalias utilities"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    gen_key = subparsers.add_parser("gen-key", help="Generate an Ed25519 signing key")
    gen_key.add_argument(
        "--key-id", default="main-2026-01", help="The kid to publish the key under."
    )

    verify = subparsers.add_parser("verify", help="Verify a resolve signature")
    verify.add_argument("public_key", help="The base64 Ed25519 public key.")
    verify.add_argument("signature", help="The base64 signature header value.")
    verify.add_argument("acct", help="The acct that was resolved.")
    verify.add_argument("address", help="The address that was returned.")
    verify.add_argument("network", help="The network that was requested.")
    verify.add_argument("key_id", help="The key id header value.")
    verify.add_argument(
        "--expires-at", default=None, help="The expires_at value, when present."
    )

    args = vars(parser.parse_args())
    command = args.get("command", None)

    if command == "gen-key":
        genKey(args["key_id"])
    elif command == "verify":
        valid = verifySignature(
            args["public_key"],
            args["signature"],
            args["acct"],
            args["address"],
            args["network"],
            args["key_id"],
            args["expires_at"],
        )
        sys.exit(0 if valid else 1)


if __name__ == "__main__":
    main()
