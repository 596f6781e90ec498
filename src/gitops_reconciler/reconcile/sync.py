# ABOUTME: Sync engine applying diff records to the target runtime under a per-application lock
# ABOUTME: Coalesces concurrent requests, retries records with backoff, and records SyncOperations

"""
Sync engine.

=============================================================================
STATE MACHINE
=============================================================================

    Idle --sync()--> Syncing --+--> Succeeded --------+
                               +--> PartiallyApplied --+--> Idle
                               +--> Failed ------------+

One operation at a time per application: the operation runs while holding
the registry's lock for that application, and each application has a
single worker task that drains requests one by one.

=============================================================================
COALESCING
=============================================================================

    running: rev A      sync(A)  -> awaits the running operation
                        sync(B)  -> becomes the queued request
    queued:  rev B      sync(C)  -> queued request now targets C;
                                    callers of B and C share its result

=============================================================================
PER-RECORD RETRY
=============================================================================

Records are applied in diff order. Each record is retried with bounded
exponential backoff (``max_apply_attempts``); a record that runs out of
attempts is Failed and the remaining records still run. Deletes run only
when pruning is enabled, otherwise they are reported as policy warnings.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.errors import (
    ApplicationNotFound,
    ConcurrencyConflict,
    PolicyViolation,
    RenderError,
    ResourceConflict,
    ResourceForbidden,
    ResourceNotFound,
    RuntimeUnavailable,
    SourceError,
    TargetRuntimeError,
)
from gitops_reconciler.models import (
    DiffOp,
    OperationOutcome,
    RecordOutcome,
    RecordResult,
    ResourceKey,
    SyncOperation,
    SyncPhase,
)
from gitops_reconciler.reconcile.diff import DiffResult, diff
from gitops_reconciler.utils.retry import bounded_backoff, with_timeout

if TYPE_CHECKING:
    from gitops_reconciler.config import ControllerSettings
    from gitops_reconciler.interfaces import TargetRuntime
    from gitops_reconciler.models import Application, DiffRecord, Revision
    from gitops_reconciler.reconcile.observer import LiveStateObserver
    from gitops_reconciler.reconcile.renderer import ManifestRenderer
    from gitops_reconciler.registry import ApplicationRegistry
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

APPLY_RETRY_ON = (RuntimeUnavailable, ResourceConflict, ResourceForbidden)


@dataclass
class SyncRequest:
    """One pending or running sync of an application."""

    application: str
    revision: Revision
    trigger: str
    prune: bool | None = None
    future: asyncio.Future[SyncOperation] = field(
        default_factory=lambda: asyncio.get_running_loop().create_future(), repr=False
    )
    task: asyncio.Task[SyncOperation] | None = field(default=None, repr=False)
    operation: SyncOperation | None = field(default=None, repr=False)

    def same_target(self, revision: Revision, prune: bool | None) -> bool:
        return self.revision.id == revision.id and self.revision.path == revision.path and (
            prune is None or prune == self.prune
        )


@dataclass
class _Slot:
    running: SyncRequest | None = None
    queued: SyncRequest | None = None
    worker: asyncio.Task[None] | None = None


class SyncEngine:
    """Applies an application's desired state at a revision to the runtime."""

    def __init__(
        self,
        registry: ApplicationRegistry,
        renderer: ManifestRenderer,
        observer: LiveStateObserver,
        runtime: TargetRuntime,
        settings: ControllerSettings,
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._registry = registry
        self._renderer = renderer
        self._observer = observer
        self._runtime = runtime
        self._settings = settings
        self._audit = audit_logger
        self._slots: dict[str, _Slot] = {}

    # -------------------------------------------------------------------------
    # Requests
    # -------------------------------------------------------------------------

    async def sync(
        self,
        name: str,
        revision: Revision,
        trigger: str = "manual",
        prune: bool | None = None,
    ) -> SyncOperation:
        """Sync ``name`` to ``revision`` and return the finished operation.

        ``prune`` overrides the application's policy for this request only.
        """
        slot = self._slots.setdefault(name, _Slot())

        if slot.running is not None and slot.running.same_target(revision, prune):
            logger.debug("Joining in-flight sync", application=name, revision=revision.short_id)
            return await asyncio.shield(slot.running.future)

        if slot.queued is not None:
            if not slot.queued.same_target(revision, prune):
                conflict = ConcurrencyConflict(
                    f"Sync of '{name}' already queued at {slot.queued.revision.short_id}; "
                    f"now targeting {revision.short_id}"
                )
                logger.info("Coalesced sync request", application=name, reason=conflict.message)
                slot.queued.revision = revision
                slot.queued.trigger = trigger
                slot.queued.prune = prune
            return await asyncio.shield(slot.queued.future)

        request = SyncRequest(application=name, revision=revision, trigger=trigger, prune=prune)
        slot.queued = request
        if slot.worker is None or slot.worker.done():
            slot.worker = asyncio.create_task(self._drain(name, slot), name=f"sync:{name}")
        return await asyncio.shield(request.future)

    async def _drain(self, name: str, slot: _Slot) -> None:
        while slot.queued is not None:
            request, slot.queued = slot.queued, None
            slot.running = request
            request.task = asyncio.create_task(self._execute(request), name=f"sync-op:{name}")
            try:
                await asyncio.wait({request.task})
            finally:
                slot.running = None
            self._settle(request)

    def _settle(self, request: SyncRequest) -> None:
        task = request.task
        if request.future.done() or task is None:
            return
        if task.cancelled():
            operation = request.operation or SyncOperation(
                application=request.application,
                revision=request.revision.id,
                trigger=request.trigger,
                finished_at=datetime.now(UTC),
                outcome=OperationOutcome.FAILED,
                message="Terminated before any resource was applied",
            )
            request.future.set_result(operation)
        elif task.exception() is not None:
            request.future.set_exception(task.exception())
        else:
            request.future.set_result(task.result())

    def in_flight(self, name: str) -> bool:
        slot = self._slots.get(name)
        return slot is not None and slot.running is not None

    def cancel(self, name: str) -> bool:
        """Cancel the running operation of ``name``; True if there was one."""
        slot = self._slots.get(name)
        if slot is None or slot.running is None or slot.running.task is None:
            return False
        slot.running.task.cancel()
        logger.warning("Sync operation terminated", application=name)
        return True

    async def forget(self, name: str) -> None:
        """Drop the slot of a deregistered application once its worker is done.

        A queued request fails with ApplicationNotFound; a running one is cancelled.
        """
        slot = self._slots.get(name)
        if slot is None:
            return
        if slot.queued is not None:
            request, slot.queued = slot.queued, None
            if not request.future.done():
                request.future.set_exception(
                    ApplicationNotFound(f"Application '{name}' was deregistered")
                )
        self.cancel(name)
        if slot.worker is not None:
            await asyncio.gather(slot.worker, return_exceptions=True)
        if self._slots.get(name) is slot:
            del self._slots[name]

    async def shutdown(self) -> None:
        """Cancel every queued and running operation."""
        workers = []
        for slot in self._slots.values():
            slot.queued = None
            if slot.running is not None and slot.running.task is not None:
                slot.running.task.cancel()
            if slot.worker is not None:
                workers.append(slot.worker)
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._slots.clear()

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute(self, request: SyncRequest) -> SyncOperation:
        name = request.application
        async with self._registry.lock(name):
            app = self._registry.get(name)
            operation = SyncOperation(
                application=name,
                revision=request.revision.id,
                trigger=request.trigger,
            )
            request.operation = operation
            app.status.phase = SyncPhase.SYNCING
            self._registry.save(app)

            log = logger.bind(
                application=name,
                revision=request.revision.short_id,
                operation_id=operation.id,
                trigger=request.trigger,
            )
            log.info("Sync started")

            applied_state = dict(app.status.last_applied)
            try:
                await self._run(app, request, operation, applied_state, log)
            except asyncio.CancelledError:
                operation.outcome = OperationOutcome.PARTIALLY_APPLIED
                operation.interrupted = True
                operation.message = "Terminated while applying; the next cycle re-diffs live state"
                self._finish(app, operation, applied_state)
                log.warning("Sync cancelled", applied=len(operation.applied))
                raise
            except Exception as e:
                operation.outcome = OperationOutcome.FAILED
                operation.message = f"Sync failed: {type(e).__name__}: {e}"
                self._finish(app, operation, applied_state)
                log.exception("Sync failed unexpectedly")
                return operation

            self._finish(app, operation, applied_state)
            log.info(
                "Sync finished",
                outcome=operation.outcome.value if operation.outcome else None,
                applied=len(operation.applied),
                failed=len(operation.failed),
            )
            return operation

    async def _run(
        self,
        app: Application,
        request: SyncRequest,
        operation: SyncOperation,
        applied_state: dict[str, str],
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        try:
            desired = await self._renderer.render(request.revision, app.target.namespace)
        except RenderError as e:
            app.status.render_error = e.message
            operation.outcome = OperationOutcome.FAILED
            operation.message = f"Render failed: {e.message}"
            log.warning("Render failed", error=e.message)
            return
        except SourceError as e:
            operation.outcome = OperationOutcome.FAILED
            operation.message = f"Source unavailable: {e.message}"
            return
        app.status.render_error = None

        try:
            snapshot = await self._observer.observe(app, [d.key for d in desired], refresh=True)
        except TargetRuntimeError as e:
            operation.outcome = OperationOutcome.FAILED
            operation.message = f"Could not observe live state: {e.message}"
            return

        result: DiffResult = diff(
            desired,
            snapshot.values(),
            controller_name=self._settings.controller_name,
            application=app.name,
        )

        # Keys neither desired nor live any more are no longer tracked.
        desired_keys = {str(d.key) for d in desired}
        for key in list(applied_state):
            if key not in desired_keys and snapshot.get(ResourceKey.parse(key)) is None:
                del applied_state[key]

        prune = request.prune if request.prune is not None else app.sync_policy.prune
        for record in result.records:
            key = str(record.key)
            if record.op is DiffOp.NOOP:
                if not record.unknown and record.declaration is not None:
                    applied_state[key] = record.declaration.fingerprint
                continue

            if record.op is DiffOp.DELETE and not prune:
                violation = PolicyViolation(f"{key} is no longer declared; pruning is disabled")
                operation.warnings.append(violation.message)
                operation.records.append(
                    RecordOutcome(
                        key=key, op=record.op, result=RecordResult.SKIPPED, error=violation.message
                    )
                )
                if record.observation is not None:
                    applied_state[key] = record.observation.fingerprint
                continue

            outcome = await self.apply_record(app, record)
            operation.records.append(outcome)
            if outcome.result is RecordResult.APPLIED:
                if record.op is DiffOp.DELETE:
                    applied_state.pop(key, None)
                elif record.declaration is not None:
                    applied_state[key] = record.declaration.fingerprint
            else:
                log.warning("Record failed", key=key, op=record.op.value, error=outcome.error)

        if result.out_of_scope:
            log.debug("Out-of-scope live resources left alone", count=len(result.out_of_scope))

        if operation.failed:
            operation.outcome = (
                OperationOutcome.PARTIALLY_APPLIED if operation.applied else OperationOutcome.FAILED
            )
            attempted = len(operation.failed) + len(operation.applied)
            operation.message = f"{len(operation.failed)} of {attempted} resources failed"
        else:
            operation.outcome = OperationOutcome.SUCCEEDED
            operation.message = f"{len(operation.applied)} resources changed"

    async def apply_record(self, app: Application, record: DiffRecord) -> RecordOutcome:
        """Apply or delete one record with bounded retry; never raises runtime errors."""
        scope = app.target.namespace
        timeout = self._settings.reconcile.request_timeout
        attempts = 0
        try:
            async for attempt in bounded_backoff(self._settings.reconcile, APPLY_RETRY_ON):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if record.op is DiffOp.DELETE:
                        await with_timeout(
                            self._runtime.delete(scope, record.key),
                            timeout,
                            RuntimeUnavailable(f"Timed out deleting {record.key}"),
                        )
                    else:
                        manifest = record.declaration.owned_manifest(  # type: ignore[union-attr]
                            self._settings.controller_name, app.name
                        )
                        await with_timeout(
                            self._runtime.apply(scope, manifest),
                            timeout,
                            RuntimeUnavailable(f"Timed out applying {record.key}"),
                        )
        except ResourceNotFound:
            if record.op is not DiffOp.DELETE:
                return RecordOutcome(
                    key=str(record.key),
                    op=record.op,
                    result=RecordResult.FAILED,
                    attempts=attempts,
                    error="Resource not found",
                )
        except TargetRuntimeError as e:
            return RecordOutcome(
                key=str(record.key),
                op=record.op,
                result=RecordResult.FAILED,
                attempts=attempts,
                error=e.message,
            )
        return RecordOutcome(
            key=str(record.key), op=record.op, result=RecordResult.APPLIED, attempts=attempts
        )

    def _finish(
        self,
        app: Application,
        operation: SyncOperation,
        applied_state: dict[str, str],
    ) -> None:
        """Record the finished operation on the application and persist it."""
        now = datetime.now(UTC)
        operation.finished_at = now
        status = app.status
        status.phase = SyncPhase.IDLE
        status.last_applied = applied_state
        status.last_sync_time = now
        status.last_outcome = operation.outcome

        advance = operation.outcome is OperationOutcome.SUCCEEDED or (
            operation.outcome is OperationOutcome.PARTIALLY_APPLIED
            and app.sync_policy.accept_partial
            and not operation.interrupted
        )
        if advance:
            status.last_synced_revision = operation.revision
        status.last_error = (
            None if operation.outcome is OperationOutcome.SUCCEEDED else operation.message
        )

        app.history.append(operation)
        self._registry.save(app)
        self._observer.invalidate(app.name)
        if self._audit is not None:
            self._audit.log_sync_operation(operation)
