# ABOUTME: Controller running one reconciliation loop per registered application
# ABOUTME: Wires tracker, renderer, observer, sync engine, health evaluator, and registry together

"""
GitOps controller.

=============================================================================
ONE LOOP PER APPLICATION
=============================================================================

Every registered application gets its own asyncio task. A task runs one
reconciliation cycle, then sleeps until its poll interval elapses or
something wakes it (a source notification, a watch event, a policy
change). Applications never wait on each other; the only shared state is
the registry, whose records each have their own lock.

=============================================================================
ONE CYCLE
=============================================================================

    1. resolve the source ref to a revision
    2. automated policy + revision not yet synced  -> sync ("auto")
    3. observe live state; self-heal + drift       -> sync ("self-heal")
    4. evaluate health and store it
    5. Degraded + self-heal                        -> bounded re-syncs,
       then an alert, then (auto_rollback) a sync back to the last
       revision that succeeded, holding the bad one

Manual policy skips steps 2, 3 and 5: the application is observed and its
health reported, nothing more.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.errors import (
    ApplicationNotFound,
    PolicyViolation,
    ReconcilerError,
    RenderError,
    SourceError,
    TargetRuntimeError,
)
from gitops_reconciler.models import (
    Application,
    HealthStatus,
    OperationOutcome,
    RecordResult,
    ResourceKey,
    Revision,
    SyncOperation,
)
from gitops_reconciler.reconcile.diff import DiffResult, diff
from gitops_reconciler.reconcile.health import HealthEvaluator, HealthReport
from gitops_reconciler.reconcile.observer import LiveSnapshot, LiveStateObserver
from gitops_reconciler.reconcile.renderer import ManifestRenderer
from gitops_reconciler.reconcile.sync import SyncEngine
from gitops_reconciler.reconcile.tracker import RevisionTracker, normalize_repo_url
from gitops_reconciler.registry import ApplicationRegistry
from gitops_reconciler.utils.logging import new_correlation_id

if TYPE_CHECKING:
    from gitops_reconciler.config import ControllerSettings
    from gitops_reconciler.interfaces import ChangeEvent, SourceRepository, TargetRuntime
    from gitops_reconciler.models import ApplicationStatus
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


class Controller:
    """Owns the reconciliation loops and the operations the control surface exposes."""

    def __init__(
        self,
        settings: ControllerSettings,
        source: SourceRepository,
        runtime: TargetRuntime,
        registry: ApplicationRegistry | None = None,
        audit_logger: AuditLogger | None = None,
        health: HealthEvaluator | None = None,
    ) -> None:
        self.settings = settings
        reconcile = settings.reconcile
        self.registry = registry or ApplicationRegistry(
            settings.registry_path, history_limit=reconcile.history_limit
        )
        self.tracker = RevisionTracker(source, reconcile)
        self.renderer = ManifestRenderer(source, reconcile)
        self.observer = LiveStateObserver(runtime, reconcile)
        self.health = health or HealthEvaluator(reconcile)
        self.engine = SyncEngine(
            self.registry, self.renderer, self.observer, runtime, settings, audit_logger
        )
        self._loops: dict[str, asyncio.Task[None]] = {}
        self._wake: dict[str, asyncio.Event] = {}
        self._started = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start a loop for every application already in the registry."""
        self._started = True
        for app in self.registry.list_applications():
            self._start_loop(app)
        logger.info("Controller started", applications=len(self._loops))

    async def stop(self) -> None:
        """Stop every loop, terminate in-flight syncs, and close watch subscriptions."""
        self._started = False
        loops = list(self._loops.values())
        for task in loops:
            task.cancel()
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
        self._loops.clear()
        self._wake.clear()
        await self.engine.shutdown()
        self.observer.unsubscribe_all()
        logger.info("Controller stopped")

    def _start_loop(self, app: Application) -> None:
        if app.name in self._loops and not self._loops[app.name].done():
            return
        self._wake[app.name] = asyncio.Event()
        self._loops[app.name] = asyncio.create_task(self._loop(app.name), name=f"loop:{app.name}")
        self.observer.subscribe(app.target.namespace, self._on_change)

    async def _stop_loop(self, name: str) -> None:
        task = self._loops.pop(name, None)
        self._wake.pop(name, None)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _on_change(self, name: str, event: ChangeEvent) -> None:
        logger.debug("Live change observed", application=name, change=event.type.value)
        self.wake(name)

    def wake(self, name: str) -> None:
        event = self._wake.get(name)
        if event is not None:
            event.set()

    async def _loop(self, name: str) -> None:
        while True:
            wake = self._wake.get(name)
            if wake is not None:
                wake.clear()
            try:
                await self.reconcile(name)
            except ApplicationNotFound:
                return
            except ReconcilerError as e:
                logger.warning("Reconciliation cycle failed", application=name, error=e.message)
            except Exception:
                logger.exception("Reconciliation cycle crashed", application=name)

            try:
                app = self.registry.get(name)
            except ApplicationNotFound:
                return
            interval = app.poll_interval or self.settings.reconcile.poll_interval
            if wake is None:
                await asyncio.sleep(interval)
                continue
            try:
                async with asyncio.timeout(interval):
                    await wake.wait()
            except TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # Reconciliation cycle
    # -------------------------------------------------------------------------

    async def reconcile(self, name: str) -> ApplicationStatus:
        """Run one reconciliation cycle for ``name`` and return its status."""
        new_correlation_id()
        log = logger.bind(application=name)
        app = self.registry.get(name)
        policy = app.sync_policy

        revision = await self._resolve(app, log)
        app = self.registry.get(name)

        if revision is not None and policy.automated and self._needs_sync(app, revision):
            await self.engine.sync(name, revision, trigger="auto")
            app = self.registry.get(name)

        target = self._effective_revision(app, revision)
        snapshot, desired = await self._observe(app, target, log)
        if snapshot is None:
            return self.registry.get(name).status

        if policy.automated and policy.self_heal and not self.engine.in_flight(name):
            drifted = self.observer.detect_drift(app, snapshot)
            if drifted and target is not None:
                log.info("Drift detected, self-healing", resources=[str(k) for k in drifted])
                await self.engine.sync(name, target, trigger="self-heal")
                app = self.registry.get(name)
                snapshot, desired = await self._observe(app, target, log)
                if snapshot is None:
                    return self.registry.get(name).status

        report = await self._record_health(app, snapshot, desired)

        if (
            report.status is HealthStatus.DEGRADED
            and policy.automated
            and policy.self_heal
            and target is not None
            and not self.engine.in_flight(name)
        ):
            await self._handle_degraded(name, target, report, log)

        return self.registry.get(name).status

    async def _resolve(self, app: Application, log: Any) -> Revision | None:
        try:
            revision = await self.tracker.resolve(app)
        except SourceError as e:
            log.warning("Could not resolve source revision", error=e.message)

            def record_error(a: Application) -> None:
                a.status.last_error = e.message

            await self.registry.update(app.name, record_error)
            return None

        if revision.id != app.status.observed_revision:

            def observe_revision(a: Application) -> None:
                a.status.observed_revision = revision.id
                # A new revision starts a fresh round of self-heal attempts.
                a.status.self_heal_attempts = 0
                a.status.alert = None
                if a.status.held_revision and a.status.held_revision != revision.id:
                    a.status.held_revision = None

            await self.registry.update(app.name, observe_revision)
        return revision

    @staticmethod
    def _needs_sync(app: Application, revision: Revision) -> bool:
        status = app.status
        if revision.id in (status.last_synced_revision, status.held_revision):
            return False
        if not app.history or app.history[-1].revision != revision.id:
            return True
        # A failed revision is retried through self-heal attempts, not every cycle.
        return app.history[-1].interrupted

    @staticmethod
    def _effective_revision(app: Application, revision: Revision | None) -> Revision | None:
        """The revision the application should currently be converging to."""
        status = app.status
        if status.held_revision and status.last_synced_revision:
            return _pinned(app, status.last_synced_revision)
        if revision is not None:
            return revision
        if status.last_synced_revision:
            return _pinned(app, status.last_synced_revision)
        return None

    async def _observe(
        self,
        app: Application,
        target: Revision | None,
        log: Any,
    ) -> tuple[LiveSnapshot | None, list[ResourceKey] | None]:
        desired: list[ResourceKey] | None = None
        render_error: str | None = None
        if target is not None:
            try:
                declarations = await self.renderer.render(target, app.target.namespace)
                desired = [d.key for d in declarations]
            except RenderError as e:
                render_error = e.message
                log.warning("Render failed", error=e.message)
            except SourceError as e:
                log.warning("Could not read manifests", error=e.message)

        if render_error != app.status.render_error:

            def set_render_error(a: Application) -> None:
                a.status.render_error = render_error

            await self.registry.update(app.name, set_render_error)
            app.status.render_error = render_error

        try:
            snapshot = await self.observer.observe(app, desired or ())
        except TargetRuntimeError as e:
            log.warning("Could not observe live state", error=e.message)

            def set_unknown(a: Application) -> None:
                a.status.health = HealthStatus.UNKNOWN
                a.status.last_error = e.message

            await self.registry.update(app.name, set_unknown)
            return None, desired
        return snapshot, desired

    async def _record_health(
        self,
        app: Application,
        snapshot: LiveSnapshot,
        desired: list[ResourceKey] | None,
    ) -> HealthReport:
        report = self.health.evaluate(
            app,
            snapshot.observations,
            desired,
            sync_in_flight=self.engine.in_flight(app.name),
        )

        def set_health(a: Application) -> None:
            if a.status.health is not report.status:
                logger.info(
                    "Health changed",
                    application=a.name,
                    previous=a.status.health.value,
                    health=report.status.value,
                    reason=report.message or None,
                )
            a.status.health = report.status
            if report.status is HealthStatus.HEALTHY:
                a.status.self_heal_attempts = 0
                a.status.alert = None

        await self.registry.update(app.name, set_health)
        return report

    async def _handle_degraded(
        self,
        name: str,
        target: Revision,
        report: HealthReport,
        log: Any,
    ) -> None:
        app = self.registry.get(name)
        limit = self.settings.reconcile.max_self_heal_attempts

        if app.status.self_heal_attempts < limit:
            attempt = app.status.self_heal_attempts + 1

            def count_attempt(a: Application) -> None:
                a.status.self_heal_attempts = attempt

            await self.registry.update(name, count_attempt)
            log.info("Degraded, re-syncing", attempt=attempt, limit=limit, reason=report.message)
            await self.engine.sync(name, target, trigger="self-heal")
            app = self.registry.get(name)
            snapshot, desired = await self._observe(app, target, log)
            if snapshot is not None:
                await self._record_health(app, snapshot, desired)
            return

        if app.status.alert:
            return

        alert = f"Degraded after {limit} self-heal attempts: {report.message or 'no detail'}"
        rollback_to = None
        if app.sync_policy.auto_rollback:
            rollback_to = app.last_good_revision(exclude=target.id)

        def raise_alert(a: Application) -> None:
            a.status.alert = alert
            if rollback_to:
                a.status.held_revision = target.id

        await self.registry.update(name, raise_alert)
        log.error("Self-heal exhausted", alert=alert, rollback_to=rollback_to)

        if rollback_to:
            await self.engine.sync(name, _pinned(app, rollback_to), trigger="auto-rollback")

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def register(self, app: Application) -> Application:
        registered = await self.registry.register(app)
        if self._started:
            self._start_loop(registered)
        return registered

    async def deregister(self, name: str, prune: bool = False) -> list[str]:
        """Remove an application; with ``prune`` also delete the resources it owns.

        Returns the keys of deleted resources.
        """
        app = self.registry.get(name)
        await self._stop_loop(name)
        if self.engine.cancel(name):
            logger.info("Terminated in-flight sync for deregistration", application=name)
        await self.engine.forget(name)

        deleted: list[str] = []
        if prune:
            deleted = await self._prune_all(app)

        await self.registry.deregister(name)
        self.tracker.forget(name)
        self.observer.forget(name)
        return deleted

    async def _prune_all(self, app: Application) -> list[str]:
        async with self.registry.lock(app.name):
            app = self.registry.get(app.name)
            snapshot = await self.observer.observe(app, refresh=True)
            result = diff(
                (),
                snapshot.values(),
                controller_name=self.settings.controller_name,
                application=app.name,
            )
            deleted: list[str] = []
            for record in result.prune_candidates:
                outcome = await self.engine.apply_record(app, record)
                if outcome.result is RecordResult.APPLIED:
                    deleted.append(outcome.key)
                else:
                    logger.warning(
                        "Could not delete resource during deregistration",
                        application=app.name,
                        key=outcome.key,
                        error=outcome.error,
                    )
        return deleted

    def get(self, name: str) -> Application:
        return self.registry.get(name)

    def list_applications(self) -> list[Application]:
        return self.registry.list_applications()

    def history(self, name: str) -> list[SyncOperation]:
        return list(reversed(self.registry.get(name).history))

    async def sync_now(
        self,
        name: str,
        revision_id: str | None = None,
        prune: bool | None = None,
    ) -> SyncOperation:
        """Sync immediately, to ``revision_id`` or the freshly resolved ref."""
        app = self.registry.get(name)
        if revision_id:
            revision = _pinned(app, revision_id)
        else:
            revision = await self.tracker.resolve(app)
        return await self.engine.sync(name, revision, trigger="manual", prune=prune)

    async def rollback(self, name: str, revision_id: str) -> SyncOperation:
        """Sync back to a revision from history and turn off automated sync.

        Raises:
            PolicyViolation: the revision never synced successfully.
        """
        app = self.registry.get(name)
        known = {
            op.revision
            for op in app.history
            if op.outcome is OperationOutcome.SUCCEEDED
        }
        matches = [r for r in known if r == revision_id or r.startswith(revision_id)]
        if len(matches) != 1:
            raise PolicyViolation(
                f"Revision '{revision_id}' is not a unique successful revision of '{name}'",
                details={"known": sorted(known)},
            )

        def disable_automation(a: Application) -> None:
            a.sync_policy.automated = False

        await self.registry.update(name, disable_automation)
        logger.warning(
            "Rolling back, automated sync disabled", application=name, revision=matches[0]
        )
        return await self.engine.sync(name, _pinned(app, matches[0]), trigger="rollback")

    def terminate(self, name: str) -> bool:
        self.registry.get(name)
        return self.engine.cancel(name)

    async def set_policy(self, name: str, **changes: Any) -> Application:
        """Override sync policy fields (``automated``, ``prune``, ``self_heal``, ...)."""

        def apply_policy(a: Application) -> None:
            a.sync_policy = a.sync_policy.model_copy(update=changes)
            if changes.get("self_heal") or changes.get("automated"):
                a.status.self_heal_attempts = 0
                a.status.alert = None

        app = await self.registry.update(name, apply_policy)
        self.wake(name)
        return app

    async def promote(self, source_name: str, target_name: str) -> Application:
        """Pin ``target_name`` to the revision ``source_name`` last synced.

        Raises:
            PolicyViolation: the source never synced or the repositories differ.
        """
        source = self.registry.get(source_name)
        revision_id = source.status.last_synced_revision
        if not revision_id:
            raise PolicyViolation(f"'{source_name}' has no synced revision to promote")
        target = self.registry.get(target_name)
        if normalize_repo_url(source.source.repo_url) != normalize_repo_url(target.source.repo_url):
            raise PolicyViolation(
                f"Cannot promote across repositories: '{source_name}' and '{target_name}' differ"
            )

        def pin(a: Application) -> None:
            a.source.ref = revision_id

        app = await self.registry.update(target_name, pin)
        logger.info(
            "Promoted revision",
            source=source_name,
            target=target_name,
            revision=revision_id[:8],
        )
        self.wake(target_name)
        return app

    async def diff_preview(self, name: str) -> DiffResult:
        """Dry-run diff of the resolved revision against fresh live state."""
        app = self.registry.get(name)
        revision = await self.tracker.resolve(app)
        declarations = await self.renderer.render(revision, app.target.namespace)
        snapshot = await self.observer.observe(app, [d.key for d in declarations], refresh=True)
        return diff(
            declarations,
            snapshot.values(),
            controller_name=self.settings.controller_name,
            application=name,
        )

    def notify(self, repo_url: str, ref: str | None = None) -> list[str]:
        """Wake every application tracking ``repo_url``/``ref``; returns their names."""
        woken = []
        for app in self.registry.list_applications():
            if RevisionTracker.matches(app, repo_url, ref):
                self.wake(app.name)
                woken.append(app.name)
        logger.info("Source change notification", repo=repo_url, ref=ref, applications=woken)
        return woken


def _pinned(app: Application, revision_id: str) -> Revision:
    return Revision(
        id=revision_id,
        path=app.source.path,
        repo_url=app.source.repo_url,
        ref=app.source.ref,
    )
