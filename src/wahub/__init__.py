"""wa-hub - Multi-tenant chat session lifecycle orchestrator.

This package keeps many independent messaging sessions (one per tenant
instance) alive behind a headless-browser automation engine. It provides the
per-instance state machine, watchdogs, restart backoff, outbound queueing with
idempotency, sequential restore and webhook notification.
"""

__version__ = "0.1.0"
