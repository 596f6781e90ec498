# ABOUTME: GitOps reconciler package initialization
# ABOUTME: Exposes version information and describes the package layout

"""
GitOps Reconciler - continuous reconciliation of declared state into a runtime.

=============================================================================
WHAT DOES IT DO?
=============================================================================

For every registered application the controller keeps doing four things:

1. TRACK the application's branch/tag in the source repository
2. RENDER the manifests at the resolved revision (with overlays)
3. COMPARE them with what is actually running in the target runtime
4. SYNC the differences, then judge whether the result is healthy

Policies per application decide how much of that happens on its own:
automated sync on new revisions, self-heal on drift or Degraded health,
pruning of resources removed from the source, and rollback to the last
revision that worked.

=============================================================================
PACKAGE STRUCTURE OVERVIEW
=============================================================================

gitops_reconciler/
├── __init__.py          <- Package entry point
├── config.py            <- Settings (RECONCILER_*, MCP_* env vars)
├── errors.py            <- Exception hierarchy and HTTP status mapping
├── interfaces.py        <- Source and runtime protocols
├── models.py            <- Resource and application data model
├── registry.py          <- Application records, per-application locks
├── controller.py        <- One reconciliation loop per application
├── server.py            <- MCP control surface
├── reconcile/
│   ├── tracker.py       <- Ref -> revision
│   ├── renderer.py      <- Revision -> declarations
│   ├── observer.py      <- Live snapshots and watch
│   ├── diff.py          <- Desired vs live
│   ├── sync.py          <- Apply/delete with retry
│   └── health.py        <- Readiness -> application health
└── utils/
    ├── client.py        <- httpx source/runtime clients
    ├── logging.py       <- structlog setup, audit trail
    ├── retry.py         <- tenacity backoff helpers
    └── safety.py        <- Control-surface guards
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
