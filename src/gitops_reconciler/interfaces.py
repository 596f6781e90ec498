# ABOUTME: Interfaces of the external collaborators the reconciler consumes
# ABOUTME: Source-of-truth repository and target runtime protocols plus watch events

"""Collaborator protocols.

The controller never talks to a concrete git host or cluster directly; it
talks to these protocols. ``utils.client`` provides httpx implementations,
and tests use in-memory ones.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gitops_reconciler.models import ResourceKey


class ChangeType(str, Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class ChangeEvent:
    """One change reported by a runtime watch stream."""

    type: ChangeType
    scope: str
    object: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class SourceRepository(Protocol):
    """Serves manifest trees at a revision."""

    async def get_tree(self, repo_url: str, ref: str) -> str:
        """Resolve a ref to an immutable revision id. Raises RefNotFound."""
        ...

    async def get_file(self, repo_url: str, revision_id: str, path: str) -> bytes:
        """Read a file at a revision. Raises FileNotFound."""
        ...


@runtime_checkable
class TargetRuntime(Protocol):
    """Accepts declarative manifests and reports their live status."""

    async def list_resources(self, scope: str, kind: str) -> list[dict[str, Any]]:
        """List live manifests of one kind in a scope. Raises RuntimeUnavailable."""
        ...

    async def apply(self, scope: str, manifest: dict[str, Any]) -> None:
        """Create or update a resource.

        Raises ResourceConflict, ResourceForbidden, or RuntimeUnavailable.
        """
        ...

    async def delete(self, scope: str, key: ResourceKey) -> None:
        """Delete a resource. Raises ResourceNotFound/ResourceForbidden."""
        ...

    def watch(self, scope: str) -> AsyncIterator[ChangeEvent] | None:
        """Stream change events, or return None when the runtime only supports polling."""
        ...
