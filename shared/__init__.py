"""
Shared utilities for the ticket cache.

This package aggregates common building blocks:

- config: Settings via pydantic-settings
- logging: Structured logging with mutation correlation
- metrics: Prometheus metrics helpers
- errors: Error taxonomy and API error payloads
- retry: Retry with backoff for remote reads
- test_helpers: Factories and fakes for tests

Do not import from service_* packages into shared/, except from
test_helpers.
"""
