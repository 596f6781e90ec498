# ABOUTME: Utilities package initialization for the GitOps reconciler
# ABOUTME: Shared HTTP clients, logging, retry, and safety helpers

"""
Reconciler Utilities Package

Shared utilities:
    - client.py: httpx clients for the source host and target runtime
    - logging.py: Structured logging with correlation IDs and audit trail
    - retry.py: tenacity backoff and timeout helpers
    - safety.py: Confirmation patterns and control-surface guards
"""
