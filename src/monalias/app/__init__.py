"""
Monalias Application Layer

This package implements the web application layer for the Monalias service
using the aiohttp framework.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration, middleware and startup wiring
- config.py: Configuration management using Pydantic settings
- handlers/: Request handlers for the public and internal endpoints
- rate_limit.py: Per-source token buckets guarding the resolve endpoint
- tasks.py: Background tasks for the identity watchdog, bucket sweeping and health
- util/: Key generation and signature verification commands

The application uses several middleware layers:
- Statsd middleware for metrics collection
- Sentry middleware for error reporting
- Rate limit middleware for the resolve endpoint

It provides the following main endpoints:
- Alias resolution (/_monalias/resolve)
- Identity document (/.well-known/monalias)
- Internal API endpoints (/internal/*)
"""
