"""
Monalias - signed alias resolution for Monero

This package implements a small public service that turns a human-readable alias
(`local$domain`, optionally `local+label$domain`) into a Monero address and signs the
answer so that a wallet can verify it without trusting the transport.

Key Components:
- app: Web application layer with request handlers, configuration and background tasks
- model: Database models for the instance identity, accounts and aliases
- resolve: The resolve protocol (request validation, lookup, canonical string)
- identity: Response signing and the identity watchdog
- wallet: Client for the wallet RPC used to derive subaddresses

Architecture Overview:
1. Resolution:
   - Requests are admitted by a per-source token bucket
   - The alias is looked up, an address is produced and the answer is signed

2. Identity:
   - The instance publishes its signing key in a well-known document
   - A watchdog periodically fetches that document and locks resolution when
     the published identity no longer matches the running instance
"""
