# ABOUTME: Core data model for the GitOps reconciler
# ABOUTME: Resource identities, declarations, observations, diff records, and application records

"""
Data model shared by every reconciler component.

Two families of types live here:

1. RESOURCE TYPES (frozen dataclasses): ``ResourceKey``, ``ResourceDeclaration``,
   ``ResourceObservation``, ``DiffRecord``, ``Revision``. They are produced in
   bulk on every reconciliation cycle, never mutated, and never persisted.

2. REGISTRY TYPES (pydantic models): ``Application`` and everything it holds
   (``SourceRef``, ``TargetRef``, ``SyncPolicy``, ``ApplicationStatus``,
   ``SyncOperation``). They are validated on input from the control surface and
   serialized to JSON by the registry.

A resource's CONTENT FINGERPRINT is the sha256 of its normalized manifest:
``status`` and server-populated metadata are dropped, as are the labels and
annotations the controller itself stamps on resources, so a declaration and
the live object it produced fingerprint identically until someone changes one.
"""

from __future__ import annotations

import copy
import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

OWNERSHIP_LABEL = "gitops.reconciler/managed-by"
APPLICATION_ANNOTATION = "gitops.reconciler/application"
SYNC_WAVE_ANNOTATION = "gitops.reconciler/sync-wave"

CONTROLLER_METADATA_KEYS = frozenset({OWNERSHIP_LABEL, APPLICATION_ANNOTATION})

CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "CustomResourceDefinition",
        "ClusterRole",
        "ClusterRoleBinding",
        "PersistentVolume",
        "StorageClass",
        "PriorityClass",
    }
)

# Lower weights are applied first and deleted last.
KIND_WEIGHTS: dict[str, int] = {
    "Namespace": -100,
    "CustomResourceDefinition": -90,
    "PriorityClass": -80,
    "StorageClass": -80,
    "PersistentVolume": -70,
    "ServiceAccount": -50,
    "ClusterRole": -45,
    "ClusterRoleBinding": -40,
    "Role": -45,
    "RoleBinding": -40,
    "Secret": -30,
    "ConfigMap": -30,
    "PersistentVolumeClaim": -20,
    "Service": -10,
    "Deployment": 0,
    "StatefulSet": 0,
    "DaemonSet": 0,
    "ReplicaSet": 0,
    "Pod": 0,
    "Job": 10,
    "CronJob": 10,
    "HorizontalPodAutoscaler": 20,
    "Ingress": 30,
}
DEFAULT_KIND_WEIGHT = 0

_KEPT_METADATA = ("name", "namespace", "labels", "annotations")


# =============================================================================
# ENUMS
# =============================================================================


class HealthStatus(str, Enum):
    """Aggregate health of an application's managed resources."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    MISSING = "Missing"
    UNKNOWN = "Unknown"


class SyncPhase(str, Enum):
    """Sync state machine position of one application."""

    IDLE = "Idle"
    SYNCING = "Syncing"


class OperationOutcome(str, Enum):
    """Terminal result of a SyncOperation."""

    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    PARTIALLY_APPLIED = "PartiallyApplied"


class DiffOp(str, Enum):
    """Action the diff engine proposes for one resource key."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NOOP = "NoOp"


class RecordResult(str, Enum):
    """What happened to one DiffRecord during a sync."""

    APPLIED = "Applied"
    FAILED = "Failed"
    SKIPPED = "Skipped"


# =============================================================================
# NORMALIZATION AND FINGERPRINTS
# =============================================================================


def normalize_manifest(body: dict[str, Any]) -> dict[str, Any]:
    """Return the comparable part of a manifest.

    Drops ``status``, all metadata except name/namespace/labels/annotations,
    and the controller's own ownership markers.
    """
    normalized = {k: copy.deepcopy(v) for k, v in body.items() if k not in ("status", "metadata")}
    metadata = body.get("metadata") or {}
    kept: dict[str, Any] = {}
    for key in _KEPT_METADATA:
        value = metadata.get(key)
        if key in ("labels", "annotations"):
            value = {k: v for k, v in (value or {}).items() if k not in CONTROLLER_METADATA_KEYS}
        if value:
            kept[key] = copy.deepcopy(value)
    normalized["metadata"] = kept
    return normalized


def fingerprint(body: dict[str, Any]) -> str:
    """Compute the content fingerprint (sha256 of canonical JSON) of a manifest."""
    canonical = json.dumps(
        normalize_manifest(body),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def dependency_weight(body: dict[str, Any]) -> int:
    """Apply-order weight: the sync-wave annotation if set, else the kind default."""
    annotations = (body.get("metadata") or {}).get("annotations") or {}
    wave = annotations.get(SYNC_WAVE_ANNOTATION)
    if wave is not None:
        try:
            return int(wave)
        except (TypeError, ValueError):
            pass
    return KIND_WEIGHTS.get(body.get("kind", ""), DEFAULT_KIND_WEIGHT)


# =============================================================================
# RESOURCE TYPES
# =============================================================================


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of one managed object: kind + namespace + name."""

    kind: str
    namespace: str
    name: str

    @classmethod
    def from_manifest(cls, body: dict[str, Any], default_namespace: str = "") -> ResourceKey:
        """Build the key of a manifest; cluster-scoped kinds never get a namespace."""
        kind = body.get("kind") or ""
        metadata = body.get("metadata") or {}
        namespace = metadata.get("namespace") or default_namespace
        if kind in CLUSTER_SCOPED_KINDS:
            namespace = ""
        return cls(kind=kind, namespace=namespace, name=metadata.get("name") or "")

    @classmethod
    def parse(cls, value: str) -> ResourceKey:
        """Parse the ``Kind/namespace/name`` (or ``Kind/name``) string form."""
        parts = value.split("/")
        if len(parts) == 3:
            return cls(kind=parts[0], namespace=parts[1], name=parts[2])
        if len(parts) == 2:
            return cls(kind=parts[0], namespace="", name=parts[1])
        raise ValueError(f"Invalid resource key: {value!r}")

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class Revision:
    """An immutable point in the source repository, plus the tree path to render."""

    id: str
    path: str
    repo_url: str = ""
    ref: str = ""

    @property
    def short_id(self) -> str:
        return self.id[:8]


@dataclass(frozen=True)
class ResourceDeclaration:
    """One desired resource, as rendered from a revision."""

    key: ResourceKey
    body: dict[str, Any] = field(compare=False, hash=False)
    fingerprint: str
    weight: int = DEFAULT_KIND_WEIGHT

    @classmethod
    def from_manifest(
        cls, body: dict[str, Any], default_namespace: str = ""
    ) -> ResourceDeclaration:
        key = ResourceKey.from_manifest(body, default_namespace)
        manifest = copy.deepcopy(body)
        if key.namespace:
            manifest.setdefault("metadata", {})["namespace"] = key.namespace
        return cls(
            key=key,
            body=manifest,
            fingerprint=fingerprint(manifest),
            weight=dependency_weight(manifest),
        )

    def owned_manifest(self, controller_name: str, application: str) -> dict[str, Any]:
        """Manifest stamped with the ownership label and owning-application annotation."""
        manifest = copy.deepcopy(self.body)
        metadata = manifest.setdefault("metadata", {})
        metadata.setdefault("labels", {})[OWNERSHIP_LABEL] = controller_name
        metadata.setdefault("annotations", {})[APPLICATION_ANNOTATION] = application
        return manifest


@dataclass(frozen=True)
class ResourceObservation:
    """The live counterpart of a resource key as reported by the runtime.

    ``unknown`` observations stand in for resources whose kind could not be
    listed; they carry no content and must never drive a Create or Delete.
    """

    key: ResourceKey
    body: dict[str, Any] = field(compare=False, hash=False, default_factory=dict)
    fingerprint: str = ""
    status: dict[str, Any] = field(compare=False, hash=False, default_factory=dict)
    managed_by: str | None = None
    application: str | None = None
    unknown: bool = False

    @classmethod
    def from_manifest(cls, body: dict[str, Any]) -> ResourceObservation:
        metadata = body.get("metadata") or {}
        return cls(
            key=ResourceKey.from_manifest(body),
            body=body,
            fingerprint=fingerprint(body),
            status=body.get("status") or {},
            managed_by=(metadata.get("labels") or {}).get(OWNERSHIP_LABEL),
            application=(metadata.get("annotations") or {}).get(APPLICATION_ANNOTATION),
        )

    @classmethod
    def unknown_for(cls, key: ResourceKey) -> ResourceObservation:
        return cls(key=key, unknown=True)

    def owned_by(self, controller_name: str, application: str) -> bool:
        """True only if this controller created the resource for this application."""
        return self.managed_by == controller_name and self.application == application


@dataclass(frozen=True)
class FieldChange:
    """One changed field path of an Update, for reporting."""

    path: str
    desired: Any
    live: Any


@dataclass(frozen=True)
class DiffRecord:
    """The diff engine's verdict for one resource key."""

    key: ResourceKey
    op: DiffOp
    weight: int = DEFAULT_KIND_WEIGHT
    declaration: ResourceDeclaration | None = None
    observation: ResourceObservation | None = None
    changes: tuple[FieldChange, ...] = ()
    unknown: bool = False

    def describe(self) -> str:
        symbol = {DiffOp.CREATE: "+", DiffOp.UPDATE: "~", DiffOp.DELETE: "-", DiffOp.NOOP: "="}
        return f"{symbol[self.op]} {self.key}"


# =============================================================================
# REGISTRY TYPES
# =============================================================================


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SourceRef(BaseModel):
    """Where an application's desired state lives."""

    repo_url: str = Field(description="Source repository URL")
    ref: str = Field(default="HEAD", description="Branch, tag, or revision to track")
    path: str = Field(default=".", description="Manifest path within the tree")

    @field_validator("path")
    @classmethod
    def strip_slashes(cls, v: str) -> str:
        return v.strip("/") or "."


class TargetRef(BaseModel):
    """Where an application's resources are applied."""

    endpoint: str = Field(default="default", description="Runtime endpoint name")
    namespace: str = Field(default="default", description="Namespace/scope for the resources")


class SyncPolicy(BaseModel):
    """Typed sync policy for one application."""

    automated: bool = Field(default=False, description="Sync automatically on new revisions")
    prune: bool = Field(default=False, description="Delete owned resources absent from source")
    self_heal: bool = Field(default=False, description="Re-sync on drift without a new revision")
    auto_rollback: bool = Field(
        default=False,
        description="Roll back to the last good revision when self-heal is exhausted",
    )
    accept_partial: bool = Field(
        default=False,
        description="Advance last_synced_revision on PartiallyApplied operations",
    )


class RecordOutcome(BaseModel):
    """Result of applying one DiffRecord."""

    key: str
    op: DiffOp
    result: RecordResult
    attempts: int = 0
    error: str | None = None


class SyncOperation(BaseModel):
    """One attempted sync of an application to a revision; kept for audit."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    application: str
    revision: str
    trigger: str = "manual"
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
    outcome: OperationOutcome | None = None
    records: list[RecordOutcome] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    message: str = ""
    interrupted: bool = Field(
        default=False,
        description="Cancelled mid-apply; the revision is synced again on the next cycle",
    )

    @property
    def applied(self) -> list[RecordOutcome]:
        return [r for r in self.records if r.result is RecordResult.APPLIED]

    @property
    def failed(self) -> list[RecordOutcome]:
        return [r for r in self.records if r.result is RecordResult.FAILED]


class ApplicationStatus(BaseModel):
    """Last observed state of an application."""

    phase: SyncPhase = SyncPhase.IDLE
    health: HealthStatus = HealthStatus.UNKNOWN
    observed_revision: str | None = None
    last_synced_revision: str | None = None
    last_sync_time: datetime | None = None
    last_outcome: OperationOutcome | None = None
    last_error: str | None = None
    render_error: str | None = None
    last_applied: dict[str, str] = Field(
        default_factory=dict,
        description="Resource key -> fingerprint applied by the last sync",
    )
    self_heal_attempts: int = 0
    alert: str | None = None
    held_revision: str | None = None


class Application(BaseModel):
    """Registry record for one managed application."""

    name: str = Field(min_length=1, pattern=r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$")
    source: SourceRef
    target: TargetRef = Field(default_factory=TargetRef)
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy)
    poll_interval: float | None = Field(
        default=None,
        gt=0,
        description="Seconds between source polls; None uses the controller default",
    )
    created_at: datetime = Field(default_factory=_utcnow)
    status: ApplicationStatus = Field(default_factory=ApplicationStatus)
    history: list[SyncOperation] = Field(default_factory=list)

    def last_good_revision(self, exclude: str | None = None) -> str | None:
        """Most recent revision that synced Succeeded, optionally excluding one."""
        for operation in reversed(self.history):
            if operation.outcome is OperationOutcome.SUCCEEDED and operation.revision != exclude:
                return operation.revision
        return None
