"""
Shared utilities for the IAM service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry helpers for external calls
- circuit_breaker: Resilient external call protection
- resilience: Retry and circuit breaker composed into one policy
- clock: Injectable time source

Do not import from service_iam into shared/.
"""
