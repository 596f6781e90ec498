# ABOUTME: Unit tests for the sync engine
# ABOUTME: Tests apply ordering, per-record retry, partial failure, prune gating, coalescing, and termination

import asyncio
import json

import pytest

from fakes import REPO, InMemoryRuntime, InMemorySource, config_map, deployment, make_app, service
from gitops_reconciler.errors import ApplicationNotFound, ResourceForbidden
from gitops_reconciler.models import (
    APPLICATION_ANNOTATION,
    OWNERSHIP_LABEL,
    DiffOp,
    DiffRecord,
    OperationOutcome,
    RecordResult,
    ResourceKey,
    Revision,
    SyncPhase,
)
from gitops_reconciler.reconcile.observer import LiveStateObserver
from gitops_reconciler.reconcile.renderer import ManifestRenderer
from gitops_reconciler.reconcile.sync import SyncEngine
from gitops_reconciler.utils.logging import AuditLogger

DEPLOY = ResourceKey("Deployment", "default", "web")
SVC = ResourceKey("Service", "default", "web")
CM = ResourceKey("ConfigMap", "default", "web-config")


def make_engine(registry, source, runtime, settings, audit_logger=None) -> SyncEngine:
    reconcile = settings.reconcile
    return SyncEngine(
        registry,
        ManifestRenderer(source, reconcile),
        LiveStateObserver(runtime, reconcile),
        runtime,
        settings,
        audit_logger,
    )


def commit(source: InMemorySource, *manifests) -> Revision:
    revision_id = source.commit(REPO, "main", {"app.yaml": list(manifests)})
    return Revision(id=revision_id, path="app.yaml", repo_url=REPO, ref="main")


@pytest.fixture
def engine(registry, source, runtime, controller_settings) -> SyncEngine:
    return make_engine(registry, source, runtime, controller_settings)


@pytest.fixture
async def app(registry):
    return await registry.register(make_app())


@pytest.mark.unit
class TestSyncOutcome:
    """Tests for successful and failed syncs."""

    async def test_creates_resources_in_dependency_order(self, engine, source, runtime, app):
        """Test that a first sync creates every resource, dependencies first."""
        revision = commit(source, deployment(), service(), config_map())

        operation = await engine.sync("web", revision)

        assert operation.outcome is OperationOutcome.SUCCEEDED
        assert runtime.apply_calls == [CM, SVC, DEPLOY]
        assert [r.op for r in operation.records] == [DiffOp.CREATE] * 3

    async def test_created_resources_carry_ownership(self, engine, source, runtime, app):
        """Test that every applied manifest is stamped with the ownership markers."""
        await engine.sync("web", commit(source, service()))

        metadata = runtime.get(SVC)["metadata"]
        assert metadata["labels"][OWNERSHIP_LABEL] == "test-controller"
        assert metadata["annotations"][APPLICATION_ANNOTATION] == "web"

    async def test_success_updates_status(self, engine, source, registry, app):
        """Test that a successful sync records revision, applied fingerprints, and history."""
        revision = commit(source, deployment(), service())

        operation = await engine.sync("web", revision, trigger="auto")

        status = registry.get("web").status
        assert status.phase is SyncPhase.IDLE
        assert status.last_synced_revision == revision.id
        assert status.last_outcome is OperationOutcome.SUCCEEDED
        assert status.last_error is None
        assert set(status.last_applied) == {str(DEPLOY), str(SVC)}
        history = registry.get("web").history
        assert [(op.id, op.trigger) for op in history] == [(operation.id, "auto")]

    async def test_second_sync_is_noop(self, engine, source, runtime, app):
        """Test that syncing an already applied revision applies nothing."""
        revision = commit(source, deployment(), service())
        await engine.sync("web", revision)
        runtime.apply_calls.clear()

        operation = await engine.sync("web", revision)

        assert operation.outcome is OperationOutcome.SUCCEEDED
        assert operation.records == []
        assert runtime.apply_calls == []

    async def test_update_on_changed_revision(self, engine, source, runtime, app):
        """Test that a changed manifest is applied as an Update."""
        await engine.sync("web", commit(source, deployment(replicas=1)))

        operation = await engine.sync("web", commit(source, deployment(replicas=3)))

        assert [(r.key, r.op) for r in operation.records] == [(str(DEPLOY), DiffOp.UPDATE)]
        assert runtime.get(DEPLOY)["spec"]["replicas"] == 3

    async def test_render_error_fails_without_applying(
        self, engine, source, runtime, registry, app
    ):
        """Test that an unrenderable revision fails the operation before any apply."""
        revision_id = source.commit(REPO, "main", {"app.yaml": "kind: [broken"})
        revision = Revision(id=revision_id, path="app.yaml", repo_url=REPO, ref="main")

        operation = await engine.sync("web", revision)

        assert operation.outcome is OperationOutcome.FAILED
        assert operation.message.startswith("Render failed")
        assert runtime.apply_calls == []
        assert registry.get("web").status.render_error is not None
        assert registry.get("web").status.last_synced_revision is None

    async def test_non_mapping_metadata_is_render_error(self, engine, source, registry, app):
        """Test that a manifest with scalar metadata fails as a render error and returns to Idle."""
        files = {"app.yaml": "kind: Deployment\nmetadata: oops\n"}
        revision_id = source.commit(REPO, "main", files)
        revision = Revision(id=revision_id, path="app.yaml", repo_url=REPO, ref="main")

        operation = await engine.sync("web", revision)

        stored = registry.get("web")
        assert operation.outcome is OperationOutcome.FAILED
        assert operation.message.startswith("Render failed")
        assert "must be a mapping" in stored.status.render_error
        assert stored.status.phase is SyncPhase.IDLE
        assert [op.id for op in stored.history] == [operation.id]

    async def test_unexpected_error_recorded_as_failed(
        self, engine, source, runtime, registry, app
    ):
        """Test that an unexpected exception still finishes the operation as Failed."""
        runtime.failing_applies[SVC] = RuntimeError("boom")

        operation = await engine.sync("web", commit(source, service()))

        stored = registry.get("web")
        assert operation.outcome is OperationOutcome.FAILED
        assert "RuntimeError: boom" in operation.message
        assert stored.status.phase is SyncPhase.IDLE
        assert stored.status.last_outcome is OperationOutcome.FAILED
        assert stored.history[-1].id == operation.id
        assert not engine.in_flight("web")

    async def test_observe_failure_fails_operation(self, engine, source, runtime, app):
        """Test that an unobservable runtime fails the operation."""
        runtime.failing_kinds.add("Service")

        operation = await engine.sync("web", commit(source, service()))

        assert operation.outcome is OperationOutcome.FAILED
        assert "Could not observe live state" in operation.message


@pytest.mark.unit
class TestPerRecordRetry:
    """Tests for bounded per-record retry and partial application."""

    async def test_transient_failure_retried(self, engine, source, runtime, app):
        """Test that a transient apply failure is retried and then succeeds."""
        runtime.transient_failures[SVC] = 1

        operation = await engine.sync("web", commit(source, service()))

        assert operation.outcome is OperationOutcome.SUCCEEDED
        assert operation.records[0].attempts == 2

    async def test_one_failure_is_partially_applied(self, engine, source, runtime, registry, app):
        """Test that one persistently failing record leaves the others applied."""
        runtime.failing_applies[DEPLOY] = ResourceForbidden("forbidden: deployments")
        revision = commit(source, deployment(), service(), config_map())

        operation = await engine.sync("web", revision)

        assert operation.outcome is OperationOutcome.PARTIALLY_APPLIED
        assert {r.key for r in operation.applied} == {str(SVC), str(CM)}
        failed = operation.failed[0]
        assert failed.key == str(DEPLOY)
        assert failed.attempts == 2
        assert failed.error == "forbidden: deployments"
        assert operation.message == "1 of 3 resources failed"
        status = registry.get("web").status
        assert status.last_synced_revision is None
        assert status.last_error == "1 of 3 resources failed"
        assert str(DEPLOY) not in status.last_applied

    async def test_accept_partial_advances_revision(self, engine, source, runtime, registry):
        """Test that accept_partial treats a PartiallyApplied sync as synced."""
        await registry.register(make_app(accept_partial=True))
        runtime.failing_applies[DEPLOY] = ResourceForbidden("forbidden")
        revision = commit(source, deployment(), service())

        await engine.sync("web", revision)

        assert registry.get("web").status.last_synced_revision == revision.id

    async def test_all_failed_is_failed(self, engine, source, runtime, app):
        """Test that an operation where every record failed is Failed."""
        runtime.failing_applies[SVC] = ResourceForbidden("forbidden")

        operation = await engine.sync("web", commit(source, service()))

        assert operation.outcome is OperationOutcome.FAILED


@pytest.mark.unit
class TestPruneGating:
    """Tests for delete handling under the prune policy."""

    async def test_delete_skipped_without_prune(self, engine, source, runtime, registry, app):
        """Test that a removed resource is reported, not deleted, when prune is off."""
        await engine.sync("web", commit(source, deployment(), service()))

        operation = await engine.sync("web", commit(source, deployment()))

        assert runtime.get(SVC) is not None
        assert operation.outcome is OperationOutcome.SUCCEEDED
        skipped = operation.records[0]
        assert (skipped.key, skipped.op, skipped.result) == (
            str(SVC),
            DiffOp.DELETE,
            RecordResult.SKIPPED,
        )
        assert "pruning is disabled" in operation.warnings[0]
        assert str(SVC) in registry.get("web").status.last_applied

    async def test_prune_override_deletes(self, engine, source, runtime, registry, app):
        """Test that a per-request prune deletes owned leftovers."""
        await engine.sync("web", commit(source, deployment(), service()))

        operation = await engine.sync("web", commit(source, deployment()), prune=True)

        assert runtime.get(SVC) is None
        assert operation.applied[0].op is DiffOp.DELETE
        assert str(SVC) not in registry.get("web").status.last_applied

    async def test_prune_never_touches_unowned(self, engine, source, runtime, registry):
        """Test that pruning leaves resources the controller did not create."""
        await registry.register(make_app(prune=True))
        foreign = runtime.put(
            {**service("manual"), "metadata": {"name": "manual", "namespace": "default"}}
        )

        operation = await engine.sync("web", commit(source, service()))

        assert runtime.get(foreign) is not None
        assert runtime.delete_calls == []
        assert operation.outcome is OperationOutcome.SUCCEEDED


@pytest.mark.unit
class TestConcurrency:
    """Tests for coalescing and mutual exclusion."""

    async def test_requests_coalesce(self, engine, source, runtime, registry, app):
        """Test that a joining request shares the running operation and queued ones merge."""
        runtime.apply_delay = 0.02
        rev_a = commit(source, deployment(), service())
        rev_b = commit(source, deployment(replicas=2), service())
        rev_c = commit(source, deployment(replicas=3), service())

        first = asyncio.create_task(engine.sync("web", rev_a))
        await asyncio.sleep(0.01)
        assert engine.in_flight("web")
        joined = asyncio.create_task(engine.sync("web", rev_a))
        queued_b = asyncio.create_task(engine.sync("web", rev_b))
        await asyncio.sleep(0)
        queued_c = asyncio.create_task(engine.sync("web", rev_c))

        op_a, op_joined, op_b, op_c = await asyncio.gather(first, joined, queued_b, queued_c)

        assert op_joined.id == op_a.id
        assert op_b.id == op_c.id
        assert op_c.revision == rev_c.id
        assert len(registry.get("web").history) == 2
        assert runtime.max_in_flight == 1
        assert runtime.get(DEPLOY)["spec"]["replicas"] == 3

    async def test_applications_sync_independently(self, engine, source, runtime, registry, app):
        """Test that two applications can sync at the same time."""
        await registry.register(make_app("api", namespace="api"))
        runtime.apply_delay = 0.02
        revision = commit(source, service())

        await asyncio.gather(engine.sync("web", revision), engine.sync("api", revision))

        assert runtime.max_in_flight == 2

    async def test_cancel_records_partial_operation(self, engine, source, runtime, registry, app):
        """Test that a terminated operation is recorded and the application returns to Idle."""
        runtime.apply_delay = 0.05
        task = asyncio.create_task(engine.sync("web", commit(source, deployment(), service())))
        await asyncio.sleep(0.01)

        assert engine.cancel("web")
        operation = await task

        assert operation.outcome is OperationOutcome.PARTIALLY_APPLIED
        assert operation.interrupted
        assert operation.message.startswith("Terminated while applying")
        stored = registry.get("web")
        assert stored.status.phase is SyncPhase.IDLE
        assert stored.history[-1].id == operation.id
        assert not engine.in_flight("web")

    async def test_cancel_without_operation(self, engine, app):
        """Test that cancel reports False when nothing is in flight."""
        assert not engine.cancel("web")

    async def test_forget_drops_slot(self, engine, source, runtime, app):
        """Test that forgetting an application cancels its work and drops its slot."""
        runtime.apply_delay = 0.05
        rev_a = commit(source, deployment(), service())
        rev_b = commit(source, deployment(replicas=2), service())
        running = asyncio.create_task(engine.sync("web", rev_a))
        await asyncio.sleep(0.01)
        queued = asyncio.create_task(engine.sync("web", rev_b))
        await asyncio.sleep(0)

        await engine.forget("web")

        assert (await running).interrupted
        with pytest.raises(ApplicationNotFound, match="deregistered"):
            await queued
        assert "web" not in engine._slots


@pytest.mark.unit
class TestAudit:
    """Tests for audit records of finished operations."""

    async def test_operation_written_to_audit_log(
        self, registry, source, runtime, controller_settings, tmp_path, app
    ):
        """Test that every finished operation is appended to the audit log."""
        audit_path = tmp_path / "audit.log"
        engine = make_engine(
            registry, source, runtime, controller_settings, AuditLogger(audit_path)
        )

        await engine.sync("web", commit(source, service()), trigger="auto")

        entry = json.loads(audit_path.read_text().strip())
        assert entry["action"] == "sync_operation"
        assert entry["target"] == "web"
        assert entry["result"] == "Succeeded"
        assert entry["details"]["applied"] == 1
        assert entry["details"]["trigger"] == "auto"


@pytest.mark.unit
class TestApplyRecord:
    """Tests for SyncEngine.apply_record."""

    async def test_delete_of_missing_resource_counts_as_applied(
        self, engine, runtime: InMemoryRuntime, app
    ):
        """Test that deleting a resource that is already gone is not a failure."""
        record = DiffRecord(key=SVC, op=DiffOp.DELETE)

        outcome = await engine.apply_record(app, record)

        assert outcome.result is RecordResult.APPLIED
        assert runtime.delete_calls == [SVC]
