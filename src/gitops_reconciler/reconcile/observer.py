# ABOUTME: Live-state observer with per-application copy-on-write snapshots
# ABOUTME: Queries the runtime per kind, tolerates partial failure, detects drift, and follows watch streams

"""
Live-state observation.

=============================================================================
SNAPSHOTS
=============================================================================

Each application has one immutable ``LiveSnapshot``. A refresh builds a new
snapshot and swaps it into the dict in a single assignment, so a loop that
is still reading the previous snapshot never sees a half-written one and no
lock is shared across applications.

A snapshot is reused while it is younger than ``max_cache_age`` and has not
been invalidated by a watch event.

=============================================================================
PARTIAL FAILURE
=============================================================================

The runtime is queried once per (scope, kind). If one kind cannot be listed,
only the resources of that kind that the controller expected to find are
reported as ``unknown`` observations. The observation as a whole fails
(RuntimeUnavailable) only when every query failed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.errors import RuntimeUnavailable, TargetRuntimeError
from gitops_reconciler.models import ResourceKey, ResourceObservation
from gitops_reconciler.utils.retry import bounded_backoff, with_timeout

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterable, Mapping

    from gitops_reconciler.config import ReconcileSettings
    from gitops_reconciler.interfaces import ChangeEvent, TargetRuntime
    from gitops_reconciler.models import Application

logger = structlog.get_logger(__name__)

OBSERVE_ATTEMPTS = 3


@dataclass(frozen=True)
class LiveSnapshot:
    """Immutable view of one application's live resources at one moment."""

    application: str
    observations: Mapping[ResourceKey, ResourceObservation]
    taken_at: float
    unknown_kinds: frozenset[str] = frozenset()
    scopes: frozenset[str] = frozenset()
    kinds: frozenset[str] = frozenset()
    stale: bool = False

    def get(self, key: ResourceKey) -> ResourceObservation | None:
        return self.observations.get(key)

    def values(self) -> list[ResourceObservation]:
        return list(self.observations.values())

    @property
    def partial(self) -> bool:
        return bool(self.unknown_kinds)


@dataclass
class Subscription:
    """A cancellable watch on one scope. Call ``unsubscribe()`` to stop it."""

    scope: str
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()

    def unsubscribe(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()
        self.task = None


class LiveStateObserver:
    """Observes target-runtime state for registered applications."""

    def __init__(
        self,
        runtime: TargetRuntime,
        settings: ReconcileSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._runtime = runtime
        self._settings = settings
        self._clock = clock
        self._snapshots: dict[str, LiveSnapshot] = {}
        self._subscriptions: dict[str, Subscription] = {}

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def snapshot(self, name: str) -> LiveSnapshot | None:
        """Latest snapshot for an application without touching the runtime."""
        return self._snapshots.get(name)

    def is_fresh(self, snapshot: LiveSnapshot | None) -> bool:
        if snapshot is None or snapshot.stale:
            return False
        return self._clock() - snapshot.taken_at < self._settings.max_cache_age

    async def observe(
        self,
        app: Application,
        desired: Iterable[ResourceKey] = (),
        *,
        refresh: bool = False,
    ) -> LiveSnapshot:
        """Return a snapshot of the application's live resources.

        ``desired`` are the keys the controller expects (from the current
        render); together with the keys applied by the last sync they decide
        which kinds and scopes are queried.

        Raises:
            RuntimeUnavailable: every runtime query failed.
        """
        expected = set(desired) | {ResourceKey.parse(k) for k in app.status.last_applied}
        cached = self._snapshots.get(app.name)
        scopes = {app.target.namespace} | {k.namespace for k in expected if k.namespace}
        kinds = {k.kind for k in expected}
        if (
            not refresh
            and cached is not None
            and self.is_fresh(cached)
            and not cached.unknown_kinds
            and kinds <= cached.kinds
            and scopes <= cached.scopes
        ):
            return cached

        queries = sorted((scope, kind) for scope in scopes for kind in kinds)

        observations: dict[ResourceKey, ResourceObservation] = {}
        failed_kinds: set[str] = set()
        for scope, kind in queries:
            try:
                items = await self._list(scope, kind)
            except TargetRuntimeError as e:
                failed_kinds.add(kind)
                logger.warning(
                    "Could not observe resource kind",
                    application=app.name,
                    scope=scope,
                    kind=kind,
                    error=str(e),
                )
                continue
            for item in items:
                observation = ResourceObservation.from_manifest(item)
                observations[observation.key] = observation

        if queries and len(failed_kinds) == len(kinds):
            raise RuntimeUnavailable(
                f"Could not observe any resources for '{app.name}'",
                details={"kinds": sorted(failed_kinds)},
            )

        for key in expected:
            if key.kind in failed_kinds and key not in observations:
                observations[key] = ResourceObservation.unknown_for(key)

        snapshot = LiveSnapshot(
            application=app.name,
            observations=MappingProxyType(observations),
            taken_at=self._clock(),
            unknown_kinds=frozenset(failed_kinds),
            scopes=frozenset(scopes),
            kinds=frozenset(kinds),
        )
        self._snapshots[app.name] = snapshot
        return snapshot

    async def _list(self, scope: str, kind: str) -> list[dict]:
        items: list[dict] = []
        async for attempt in bounded_backoff(
            self._settings, RuntimeUnavailable, max_attempts=OBSERVE_ATTEMPTS
        ):
            with attempt:
                items = await with_timeout(
                    self._runtime.list_resources(scope, kind),
                    self._settings.request_timeout,
                    RuntimeUnavailable(f"Timed out listing {kind} in '{scope}'"),
                )
        return items

    def invalidate(self, name: str) -> None:
        """Mark an application's snapshot stale so the next observe refreshes it."""
        current = self._snapshots.get(name)
        if current is not None and not current.stale:
            self._snapshots[name] = replace(current, stale=True)

    def forget(self, name: str) -> None:
        self._snapshots.pop(name, None)

    @staticmethod
    def detect_drift(app: Application, snapshot: LiveSnapshot) -> list[ResourceKey]:
        """Keys whose live fingerprint diverges from the fingerprint last applied.

        A resource deleted out-of-band counts as drift; unknown observations
        do not, since nothing can be said about them.
        """
        drifted: list[ResourceKey] = []
        for key_str, applied_fingerprint in app.status.last_applied.items():
            key = ResourceKey.parse(key_str)
            observation = snapshot.get(key)
            if observation is not None and observation.unknown:
                continue
            if observation is None or observation.fingerprint != applied_fingerprint:
                drifted.append(key)
        return sorted(drifted)

    # -------------------------------------------------------------------------
    # Watch
    # -------------------------------------------------------------------------

    def subscribe(
        self,
        scope: str,
        on_change: Callable[[str, ChangeEvent], None],
    ) -> Subscription | None:
        """Follow the runtime's change stream for ``scope``.

        Each event invalidates the snapshots of applications observing that
        scope and calls ``on_change(application_name, event)``. Returns None
        when the runtime offers no watch; callers keep polling.
        """
        existing = self._subscriptions.get(scope)
        if existing is not None and existing.active:
            return existing

        stream = self._runtime.watch(scope)
        if stream is None:
            logger.info("Runtime has no watch support, polling only", scope=scope)
            return None

        subscription = Subscription(scope=scope)
        subscription.task = asyncio.create_task(
            self._pump(scope, stream, on_change),
            name=f"watch:{scope}",
        )
        self._subscriptions[scope] = subscription
        return subscription

    def unsubscribe_all(self) -> None:
        for subscription in self._subscriptions.values():
            subscription.unsubscribe()
        self._subscriptions.clear()

    async def _pump(
        self,
        scope: str,
        stream: AsyncIterator[ChangeEvent],
        on_change: Callable[[str, ChangeEvent], None],
    ) -> None:
        try:
            async for event in stream:
                try:
                    key = ResourceKey.from_manifest(event.object)
                except (AttributeError, TypeError, ValueError) as e:
                    logger.warning("Skipping malformed watch event", scope=scope, error=str(e))
                    continue
                for name, snapshot in list(self._snapshots.items()):
                    if scope in snapshot.scopes or key in snapshot.observations:
                        self.invalidate(name)
                        on_change(name, event)
        except TargetRuntimeError as e:
            logger.warning("Watch stream ended, falling back to polling", scope=scope, error=str(e))
