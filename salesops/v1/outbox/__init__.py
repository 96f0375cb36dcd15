"""
Transactional outbox for reliable side-effect delivery.

This package provides:
- A durable outbox table written in the same transaction as business data
- Lease-based claiming so many workers can poll without double execution
- Exponential backoff with jitter and dead-lettering after max attempts
- Registry-based pluggable handlers with validated payloads
- Admin endpoints for inspection and manual retry
"""
