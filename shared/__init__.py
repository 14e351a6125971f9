"""
Shared utilities for the licensing service and the license client.

This package aggregates common building blocks consumed by both sides:

- config: Service and client configuration via pydantic-settings
- logging: Structured logging with request/event correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorators with exponential backoff
- signing: Canonical JSON and Ed25519 registry signatures
- atomic_io: Atomic JSON file replacement

Do not import from service_licensing or license_client into shared/.
"""
