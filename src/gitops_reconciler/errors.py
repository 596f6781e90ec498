# ABOUTME: Exception hierarchy for the GitOps reconciler
# ABOUTME: Groups source, render, runtime, policy, and registry failures and maps HTTP statuses

"""Exception hierarchy and HTTP status mapping.

Every error raised by the reconciler derives from ``ReconcilerError`` and
carries optional structured ``details`` plus the original ``cause``.

Retry classification:
    - SourceUnavailable, RuntimeUnavailable: transient, retried with backoff
    - RefNotFound, FileNotFound, RenderError: need a source change, not retried
    - ResourceConflict, ResourceForbidden: retried per record up to the ceiling
    - PolicyViolation: reported, never resolved automatically
    - ConcurrencyConflict: resolved by coalescing, only ever logged
"""

from __future__ import annotations

from typing import Any


class ReconcilerError(Exception):
    """
    Base exception for the reconciler.

    Attributes:
        details: Optional structured information (e.g., HTTP status, resource key).
        cause: Optional original exception that triggered this error.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause


# -----------------------------------------------------------------------------
# Source of truth
# -----------------------------------------------------------------------------


class SourceError(ReconcilerError):
    """Raised when a ref, tree, or file cannot be resolved from the source repository."""


class SourceUnavailable(SourceError):
    """Raised when the source repository cannot be reached (network, 5xx, timeout)."""


class RefNotFound(SourceError):
    """Raised when a branch/tag/revision does not exist in the repository."""


class FileNotFound(SourceError):
    """Raised when a path does not exist at a revision."""


class RenderError(ReconcilerError):
    """Raised when manifests at a revision cannot be expanded into declarations."""


# -----------------------------------------------------------------------------
# Target runtime
# -----------------------------------------------------------------------------


class TargetRuntimeError(ReconcilerError):
    """Raised when observing, applying, or deleting against the target runtime fails."""


class RuntimeUnavailable(TargetRuntimeError):
    """Raised when the runtime cannot be reached (network, 5xx, timeout)."""


class ResourceConflict(TargetRuntimeError):
    """Raised when the runtime rejects an apply because of a concurrent change (HTTP 409)."""


class ResourceForbidden(TargetRuntimeError):
    """Raised when the runtime credential is not allowed to touch a resource (HTTP 403)."""


class ResourceNotFound(TargetRuntimeError):
    """Raised when a resource to delete no longer exists (HTTP 404)."""


# -----------------------------------------------------------------------------
# Policy, concurrency, registry
# -----------------------------------------------------------------------------


class PolicyViolation(ReconcilerError):
    """Raised or reported when an action is not authorized by the sync policy."""


class ConcurrencyConflict(ReconcilerError):
    """Raised internally when a sync request collides with one already in flight."""


class ApplicationNotFound(ReconcilerError):
    """Raised when an application name is not registered."""


class ApplicationExists(ReconcilerError):
    """Raised when registering a name that is already taken."""


def map_runtime_status(
    status_code: int,
    message: str,
    *,
    details: dict[str, Any] | None = None,
    cause: BaseException | None = None,
) -> TargetRuntimeError:
    """
    Map a target-runtime HTTP status to an exception.

    Policy:
        - 403 -> ResourceForbidden
        - 404 -> ResourceNotFound
        - 409/412 -> ResourceConflict
        - 429, 5xx, otherwise -> RuntimeUnavailable
    """
    info = {"status_code": status_code, **(details or {})}
    if status_code == 403:
        return ResourceForbidden(message, details=info, cause=cause)
    if status_code == 404:
        return ResourceNotFound(message, details=info, cause=cause)
    if status_code in (409, 412):
        return ResourceConflict(message, details=info, cause=cause)
    return RuntimeUnavailable(message, details=info, cause=cause)


def map_source_status(
    status_code: int,
    message: str,
    *,
    not_found: type[SourceError] = RefNotFound,
    details: dict[str, Any] | None = None,
    cause: BaseException | None = None,
) -> SourceError:
    """
    Map a source-host HTTP status to an exception.

    ``not_found`` selects which error a 404 means for the endpoint being called
    (a missing ref for tree lookups, a missing file for file reads).
    """
    info = {"status_code": status_code, **(details or {})}
    if status_code == 404:
        return not_found(message, details=info, cause=cause)
    return SourceUnavailable(message, details=info, cause=cause)
