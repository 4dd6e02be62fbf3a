"""
Shared utilities for the client sync layer.

This package aggregates common building blocks consumed by every component:

- config: Settings via pydantic-settings
- logging: Structured logging with session correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and classification
- retry: Read and write retry policies with backoff
- scheduling: Clock and timer protocol
- test_helpers: Manual scheduler, mock API and payload factories

Any cross-component logic should live here to avoid import cycles. Do not
import from client_sync into shared/.
"""
