# ABOUTME: Health evaluator classifying applications as Healthy, Progressing, Degraded, or Missing
# ABOUTME: Kind-specific readiness predicates with a post-sync grace window

"""Application health."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from gitops_reconciler.models import HealthStatus, OperationOutcome, ResourceKey

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Mapping

    from gitops_reconciler.config import ReconcileSettings
    from gitops_reconciler.models import Application, ResourceObservation

TERMINAL_REASONS = frozenset(
    {"CrashLoopBackOff", "ProgressDeadlineExceeded", "ImagePullBackOff", "ErrImagePull"}
)

_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.PROGRESSING: 1,
    HealthStatus.MISSING: 2,
    HealthStatus.DEGRADED: 3,
}


@dataclass(frozen=True)
class Readiness:
    """Verdict of one kind-specific predicate."""

    ready: bool
    terminal: bool = False
    message: str = ""


@dataclass(frozen=True)
class ResourceHealth:
    key: ResourceKey
    status: HealthStatus
    message: str = ""


@dataclass(frozen=True)
class HealthReport:
    status: HealthStatus
    resources: tuple[ResourceHealth, ...] = ()
    message: str = ""


def _conditions(status: dict[str, Any]) -> list[dict[str, Any]]:
    return [c for c in status.get("conditions") or [] if isinstance(c, dict)]


def _terminal_condition(status: dict[str, Any]) -> str | None:
    for condition in _conditions(status):
        if condition.get("reason") in TERMINAL_REASONS:
            return condition.get("message") or condition["reason"]
        if condition.get("type") == "ReplicaFailure" and condition.get("status") == "True":
            return condition.get("message") or "ReplicaFailure"
    return None


def _replicated(body: dict[str, Any], status: dict[str, Any]) -> Readiness:
    terminal = _terminal_condition(status)
    if terminal:
        return Readiness(ready=False, terminal=True, message=terminal)
    desired = (body.get("spec") or {}).get("replicas", 1)
    ready = status.get("readyReplicas") or status.get("availableReplicas") or 0
    if ready >= desired:
        return Readiness(ready=True)
    return Readiness(ready=False, message=f"{ready}/{desired} replicas ready")


def _daemon_set(body: dict[str, Any], status: dict[str, Any]) -> Readiness:
    desired = status.get("desiredNumberScheduled", 0)
    ready = status.get("numberReady", 0)
    if ready >= desired:
        return Readiness(ready=True)
    return Readiness(ready=False, message=f"{ready}/{desired} pods ready")


def _pod(body: dict[str, Any], status: dict[str, Any]) -> Readiness:
    phase = status.get("phase")
    if phase == "Failed":
        return Readiness(ready=False, terminal=True, message=status.get("message") or "Pod failed")
    for container in status.get("containerStatuses") or []:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in TERMINAL_REASONS:
            return Readiness(ready=False, terminal=True, message=waiting["reason"])
    if phase == "Succeeded":
        return Readiness(ready=True)
    if phase == "Running" and any(
        c.get("type") == "Ready" and c.get("status") == "True" for c in _conditions(status)
    ):
        return Readiness(ready=True)
    return Readiness(ready=False, message=f"Pod phase {phase or 'Pending'}")


def _job(body: dict[str, Any], status: dict[str, Any]) -> Readiness:
    for condition in _conditions(status):
        if condition.get("type") == "Failed" and condition.get("status") == "True":
            message = condition.get("message") or "Job failed"
            return Readiness(ready=False, terminal=True, message=message)
    completions = (body.get("spec") or {}).get("completions", 1)
    succeeded = status.get("succeeded", 0)
    if succeeded >= completions:
        return Readiness(ready=True)
    return Readiness(ready=False, message=f"{succeeded}/{completions} completions")


def _claim(body: dict[str, Any], status: dict[str, Any]) -> Readiness:
    phase = status.get("phase")
    if phase == "Bound":
        return Readiness(ready=True)
    if phase == "Lost":
        return Readiness(ready=False, terminal=True, message="Claim lost")
    return Readiness(ready=False, message=f"Claim phase {phase or 'Pending'}")


def _generic(body: dict[str, Any], status: dict[str, Any]) -> Readiness:
    if status.get("phase") == "Failed":
        return Readiness(ready=False, terminal=True, message="Resource failed")
    return Readiness(ready=True)


READINESS_PREDICATES: dict[str, Callable[[dict[str, Any], dict[str, Any]], Readiness]] = {
    "Deployment": _replicated,
    "StatefulSet": _replicated,
    "ReplicaSet": _replicated,
    "DaemonSet": _daemon_set,
    "Pod": _pod,
    "Job": _job,
    "PersistentVolumeClaim": _claim,
}


def check_readiness(observation: ResourceObservation) -> Readiness:
    predicate = READINESS_PREDICATES.get(observation.key.kind, _generic)
    return predicate(observation.body, observation.status)


class HealthEvaluator:
    """Aggregates per-resource readiness into one application health.

    Precedence when resources disagree: Degraded > Missing > Progressing > Healthy.
    """

    def __init__(
        self,
        settings: ReconcileSettings,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._settings = settings
        self._clock = clock

    def within_grace(self, app: Application) -> bool:
        last = app.status.last_sync_time
        if last is None:
            return False
        return (self._clock() - last).total_seconds() < self._settings.health_grace_period

    def evaluate(
        self,
        app: Application,
        observations: Mapping[ResourceKey, ResourceObservation],
        desired: Iterable[ResourceKey] | None = None,
        *,
        sync_in_flight: bool = False,
    ) -> HealthReport:
        """Classify the application's health from its live observations.

        ``desired`` defaults to the keys applied by the last sync.
        """
        if app.status.render_error:
            return HealthReport(HealthStatus.DEGRADED, message=app.status.render_error)

        keys = sorted(desired) if desired is not None else sorted(
            ResourceKey.parse(k) for k in app.status.last_applied
        )
        grace = self.within_grace(app)
        resources: list[ResourceHealth] = []

        for key in keys:
            observation = observations.get(key)
            if observation is None:
                status = HealthStatus.PROGRESSING if sync_in_flight else HealthStatus.MISSING
                resources.append(ResourceHealth(key, status, "No live resource"))
                continue
            if observation.unknown:
                resources.append(ResourceHealth(key, HealthStatus.PROGRESSING, "State unknown"))
                continue
            verdict = check_readiness(observation)
            if verdict.ready:
                resources.append(ResourceHealth(key, HealthStatus.HEALTHY))
            elif verdict.terminal:
                resources.append(ResourceHealth(key, HealthStatus.DEGRADED, verdict.message))
            elif grace or sync_in_flight:
                resources.append(ResourceHealth(key, HealthStatus.PROGRESSING, verdict.message))
            else:
                resources.append(
                    ResourceHealth(
                        key,
                        HealthStatus.DEGRADED,
                        f"{verdict.message} after {self._settings.health_grace_period:.0f}s",
                    )
                )

        status = max(
            (r.status for r in resources),
            key=lambda s: _SEVERITY[s],
            default=HealthStatus.HEALTHY,
        )
        message = next((r.message for r in resources if r.status is status and r.message), "")

        if not sync_in_flight and app.status.last_outcome in (
            OperationOutcome.FAILED,
            OperationOutcome.PARTIALLY_APPLIED,
        ):
            status = HealthStatus.DEGRADED
            message = app.status.last_error or f"Last sync {app.status.last_outcome.value}"

        return HealthReport(status=status, resources=tuple(resources), message=message)
