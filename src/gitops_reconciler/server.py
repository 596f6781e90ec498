# ABOUTME: FastMCP control surface and main entry point for the GitOps reconciler
# ABOUTME: Starts the controller in the server lifespan and exposes application tools and resources

"""GitOps Reconciler - MCP control surface."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from gitops_reconciler.config import ControllerSettings, load_settings
from gitops_reconciler.controller import Controller
from gitops_reconciler.errors import ReconcilerError
from gitops_reconciler.models import (
    Application,
    DiffOp,
    HealthStatus,
    SourceRef,
    SyncOperation,
    SyncPolicy,
    TargetRef,
)
from gitops_reconciler.utils.client import RuntimeClient, SourceClient
from gitops_reconciler.utils.logging import AuditLogger, configure_logging, set_correlation_id
from gitops_reconciler.utils.safety import ConfirmationRequired, SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ControllerSettings | None = None
_controller: Controller | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Load config, connect collaborators, run the controller, clean up on shutdown."""
    global _settings, _controller, _safety_guard, _audit_logger

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)
    logger.info("Starting GitOps reconciler", controller=_settings.controller_name)

    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)

    timeout = _settings.reconcile.request_timeout
    async with (
        SourceClient(_settings.source, timeout=timeout) as source,
        RuntimeClient(_settings.runtime, timeout=timeout) as runtime,
    ):
        logger.info(
            "Connected to collaborators",
            source=_settings.source.url,
            runtime=_settings.runtime.url,
        )
        _controller = Controller(_settings, source, runtime, audit_logger=_audit_logger)
        await _controller.start()
        try:
            yield {"settings": _settings, "controller": _controller}
        finally:
            await _controller.stop()
            _controller = None

    logger.info("GitOps reconciler stopped")


mcp = FastMCP("gitops-reconciler", lifespan=lifespan)


def get_settings() -> ControllerSettings:
    """Get controller settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_controller() -> Controller:
    """Get the running controller."""
    if not _controller:
        raise RuntimeError("Server not initialized")
    return _controller


def get_safety_guard() -> SafetyGuard:
    """Get safety guard for permission checking."""
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording operations."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _start_request(ctx: MCPContext) -> None:
    set_correlation_id(str(getattr(ctx, "request_id", "") or ""))


def _format_operation(op: SyncOperation) -> str:
    outcome = op.outcome.value if op.outcome else "Running"
    finished = op.finished_at.isoformat(timespec="seconds") if op.finished_at else "-"
    return (
        f"- [{op.id}] {outcome} revision={op.revision[:8]} trigger={op.trigger} "
        f"applied={len(op.applied)} failed={len(op.failed)} finished={finished}"
        + (f"\n    {op.message}" if op.message else "")
    )


def _format_result(op: SyncOperation) -> str:
    lines = [
        f"Sync {op.outcome.value if op.outcome else 'Running'} for '{op.application}'",
        f"Operation: {op.id}",
        f"Revision: {op.revision}",
        f"Trigger: {op.trigger}",
    ]
    if op.message:
        lines.append(f"Message: {op.message}")
    if op.records:
        lines.extend(["", "Resources:"])
        for record in op.records:
            suffix = f" ({record.error})" if record.error else ""
            lines.append(f"  {record.result.value:<8} {record.op.value:<6} {record.key}{suffix}")
    if op.warnings:
        lines.extend(["", "Warnings:"])
        lines.extend(f"  - {w}" for w in op.warnings)
    return "\n".join(lines)


# =============================================================================
# READ OPERATIONS (Always Available)
# =============================================================================


class ListApplicationsParams(BaseModel):
    """Parameters for list_applications tool."""

    health_status: HealthStatus | None = Field(
        default=None,
        description="Filter by health status (Healthy, Progressing, Degraded, Missing, Unknown)",
    )


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """
    List registered applications with their sync and health state.

    Use this to get an overview of every environment the controller
    manages or to find Degraded applications.
    """
    _start_request(ctx)

    blocked = get_safety_guard().check_read_operation("list_applications")
    if blocked:
        get_audit_logger().log_blocked("list_applications", "all", blocked.reason)
        return blocked.format_message()

    apps = get_controller().list_applications()
    if params.health_status:
        apps = [a for a in apps if a.status.health is params.health_status]

    get_audit_logger().log_read("list_applications", "all")

    if not apps:
        return "No applications found matching the specified filters."

    lines = [f"Found {len(apps)} application(s):", ""]
    for app in apps:
        status = app.status
        marker = "[OK]" if status.health is HealthStatus.HEALTHY else "[!]"
        synced = (status.last_synced_revision or "never")[:8]
        mode = "auto" if app.sync_policy.automated else "manual"
        lines.append(
            f"- {app.name} health={status.health.value} {marker} "
            f"synced={synced} policy={mode} "
            f"source={app.source.repo_url}@{app.source.ref}:{app.source.path} "
            f"target={app.target.namespace}"
        )
    return "\n".join(lines)


class ApplicationNameParams(BaseModel):
    """Parameters for tools that take only an application name."""

    name: str = Field(description="Application name")


@mcp.tool()
async def get_application_status(params: ApplicationNameParams, ctx: MCPContext) -> str:
    """
    Get sync and health status of one application.

    Shows source, target, policy, the revision last synced, health, the
    last error, and any self-heal alert.
    """
    _start_request(ctx)

    blocked = get_safety_guard().check_read_operation("get_application_status")
    if blocked:
        get_audit_logger().log_blocked("get_application_status", params.name, blocked.reason)
        return blocked.format_message()

    try:
        controller = get_controller()
        app = controller.get(params.name)
        get_audit_logger().log_read("get_application_status", params.name)
    except ReconcilerError as e:
        get_audit_logger().log_error("get_application_status", params.name, e.message)
        return f"Error: {e.message}"

    status = app.status
    policy = app.sync_policy
    lines = [
        f"Application: {app.name}",
        "",
        "Source:",
        f"  Repository: {app.source.repo_url}",
        f"  Ref: {app.source.ref}",
        f"  Path: {app.source.path}",
        "",
        "Target:",
        f"  Endpoint: {app.target.endpoint}",
        f"  Namespace: {app.target.namespace}",
        "",
        "Policy:",
        f"  Automated: {policy.automated}  Prune: {policy.prune}  Self-heal: {policy.self_heal}",
        f"  Auto-rollback: {policy.auto_rollback}  Accept partial: {policy.accept_partial}",
        "",
        "Status:",
        f"  Phase: {status.phase.value}"
        + (" (in flight)" if controller.engine.in_flight(app.name) else ""),
        f"  Health: {status.health.value}",
        f"  Observed revision: {status.observed_revision or '-'}",
        f"  Last synced revision: {status.last_synced_revision or '-'}",
        f"  Last sync: {status.last_sync_time.isoformat() if status.last_sync_time else '-'}",
        f"  Last outcome: {status.last_outcome.value if status.last_outcome else '-'}",
        f"  Managed resources: {len(status.last_applied)}",
    ]
    if status.last_error:
        lines.append(f"  Last error: {status.last_error}")
    if status.render_error:
        lines.append(f"  Render error: {status.render_error}")
    if status.self_heal_attempts:
        lines.append(f"  Self-heal attempts: {status.self_heal_attempts}")
    if status.held_revision:
        lines.append(f"  Held revision: {status.held_revision}")
    if status.alert:
        lines.extend(["", f"ALERT: {status.alert}"])
    return "\n".join(lines)


@mcp.tool()
async def get_application_diff(params: ApplicationNameParams, ctx: MCPContext) -> str:
    """
    Preview what a sync would change (dry run).

    Resolves the source ref, renders it, and compares it with fresh live
    state. Nothing is applied.
    """
    _start_request(ctx)

    blocked = get_safety_guard().check_read_operation("get_application_diff")
    if blocked:
        get_audit_logger().log_blocked("get_application_diff", params.name, blocked.reason)
        return blocked.format_message()

    try:
        result = await get_controller().diff_preview(params.name)
        get_audit_logger().log_read("get_application_diff", params.name)
    except ReconcilerError as e:
        get_audit_logger().log_error("get_application_diff", params.name, e.message)
        return f"Error: {e.message}"

    if result.in_sync:
        return f"Application '{params.name}' is in sync; no changes pending."

    summary = ", ".join(f"{k}={v}" for k, v in result.summary().items() if v)
    lines = [f"Diff for '{params.name}': {summary}", ""]
    for record in result.records:
        if record.op is DiffOp.NOOP and not record.unknown:
            continue
        line = f"  {record.describe()}"
        if record.unknown:
            line += " (state unknown)"
        lines.append(line)
        for change in record.changes[:10]:
            lines.append(f"      {change.path}: {change.live!r} -> {change.desired!r}")
    if result.out_of_scope:
        lines.extend(["", f"Out of scope (not owned, never pruned): {len(result.out_of_scope)}"])
    return "\n".join(lines)


class ListSyncHistoryParams(BaseModel):
    """Parameters for list_sync_history tool."""

    name: str = Field(description="Application name")
    limit: int = Field(default=10, ge=1, le=100, description="Maximum entries to return")


@mcp.tool()
async def list_sync_history(params: ListSyncHistoryParams, ctx: MCPContext) -> str:
    """
    List recent sync operations of an application, newest first.

    Use the revisions listed here with rollback_application.
    """
    _start_request(ctx)

    blocked = get_safety_guard().check_read_operation("list_sync_history")
    if blocked:
        get_audit_logger().log_blocked("list_sync_history", params.name, blocked.reason)
        return blocked.format_message()

    try:
        history = get_controller().history(params.name)[: params.limit]
        get_audit_logger().log_read("list_sync_history", params.name)
    except ReconcilerError as e:
        get_audit_logger().log_error("list_sync_history", params.name, e.message)
        return f"Error: {e.message}"

    if not history:
        return f"No sync history for '{params.name}'"

    lines = [f"Sync history for '{params.name}' ({len(history)} entries):", ""]
    lines.extend(_format_operation(op) for op in history)
    return "\n".join(lines)


class NotifySourceChangeParams(BaseModel):
    """Parameters for notify_source_change tool."""

    repo_url: str = Field(description="Repository that received a push")
    ref: str | None = Field(default=None, description="Branch or tag that moved (all if omitted)")


@mcp.tool()
async def notify_source_change(params: NotifySourceChangeParams, ctx: MCPContext) -> str:
    """
    Tell the controller a repository changed (webhook shortcut).

    Wakes every application tracking the repository so it resolves its ref
    now instead of at the next poll. Safe to repeat: an unchanged revision
    never causes a second sync.
    """
    _start_request(ctx)

    blocked = get_safety_guard().check_read_operation("notify_source_change")
    if blocked:
        get_audit_logger().log_blocked("notify_source_change", params.repo_url, blocked.reason)
        return blocked.format_message()

    woken = get_controller().notify(params.repo_url, params.ref)
    get_audit_logger().log_read("notify_source_change", params.repo_url)
    if not woken:
        return f"No applications track {params.repo_url}"
    return f"Woke {len(woken)} application(s): {', '.join(woken)}"


# =============================================================================
# WRITE OPERATIONS (Require MCP_READ_ONLY=false)
# =============================================================================


class RegisterApplicationParams(BaseModel):
    """Parameters for register_application tool."""

    name: str = Field(description="Unique application name (lowercase, digits, '-', '.')")
    repo_url: str = Field(description="Source repository URL")
    ref: str = Field(default="HEAD", description="Branch, tag, or revision to track")
    path: str = Field(default=".", description="Manifest file or overlay directory")
    namespace: str = Field(default="default", description="Target namespace")
    endpoint: str = Field(default="default", description="Target runtime endpoint name")
    automated: bool = Field(default=False, description="Sync new revisions automatically")
    prune: bool = Field(default=False, description="Delete owned resources removed from source")
    self_heal: bool = Field(default=False, description="Correct drift and Degraded health")
    auto_rollback: bool = Field(default=False, description="Roll back when self-heal is exhausted")
    accept_partial: bool = Field(
        default=False, description="Treat PartiallyApplied as synced for revision tracking"
    )
    poll_interval: float | None = Field(default=None, gt=0, description="Seconds between polls")


@mcp.tool()
async def register_application(params: RegisterApplicationParams, ctx: MCPContext) -> str:
    """
    Register a new application and start reconciling it.

    The application is tracked from the next cycle on. With
    automated=false nothing is applied until sync_application is called.
    """
    _start_request(ctx)

    blocked = get_safety_guard().check_write_operation("register_application")
    if blocked:
        get_audit_logger().log_blocked("register_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        app = Application(
            name=params.name,
            source=SourceRef(repo_url=params.repo_url, ref=params.ref, path=params.path),
            target=TargetRef(endpoint=params.endpoint, namespace=params.namespace),
            sync_policy=SyncPolicy(
                automated=params.automated,
                prune=params.prune,
                self_heal=params.self_heal,
                auto_rollback=params.auto_rollback,
                accept_partial=params.accept_partial,
            ),
            poll_interval=params.poll_interval,
        )
        await get_controller().register(app)
    except ValueError as e:
        get_audit_logger().log_error("register_application", params.name, str(e))
        return f"Error: invalid application: {e}"
    except ReconcilerError as e:
        get_audit_logger().log_error("register_application", params.name, e.message)
        return f"Error: {e.message}"

    get_audit_logger().log_write(
        "register_application",
        params.name,
        "registered",
        {"repo_url": params.repo_url, "ref": params.ref, "path": params.path},
    )
    return (
        f"Application '{params.name}' registered.\n"
        f"Source: {params.repo_url}@{params.ref}:{app.source.path}\n"
        f"Target: {params.namespace}\n"
        f"Automated: {params.automated}"
    )


class SyncApplicationParams(BaseModel):
    """Parameters for sync_application tool."""

    name: str = Field(description="Application name")
    revision: str | None = Field(
        default=None, description="Revision id to sync to (default: resolve the tracked ref)"
    )
    prune: bool | None = Field(
        default=None,
        description="Override the policy's prune setting for this sync (true is destructive)",
    )
    dry_run: bool = Field(
        default=True, description="Preview changes without applying (default: true)"
    )
    confirm: bool = Field(default=False, description="Must be true to sync with prune=true")
    confirm_name: str | None = Field(
        default=None, description="Type application name to confirm pruning"
    )


@mcp.tool()
async def sync_application(params: SyncApplicationParams, ctx: MCPContext) -> str:
    """
    Synchronize an application with its source.

    Defaults to dry-run mode, which shows the pending diff. Set
    dry_run=false to apply. prune=true deletes owned resources that are no
    longer declared and requires confirmation.
    """
    _start_request(ctx)

    if params.dry_run:
        return await get_application_diff(ApplicationNameParams(name=params.name), ctx)

    guard = get_safety_guard()
    if params.prune:
        blocked = guard.check_destructive_operation(
            "sync_with_prune",
            params.name,
            confirmed=params.confirm,
            confirm_name=params.confirm_name,
        )
    else:
        blocked = guard.check_write_operation("sync_application")
    if blocked:
        if isinstance(blocked, ConfirmationRequired):
            reason = "prune requires confirmation"
        else:
            reason = blocked.reason
        get_audit_logger().log_blocked("sync_application", params.name, reason)
        return blocked.format_message()

    try:
        await ctx.report_progress(0, 1, f"Syncing {params.name}")
        operation = await get_controller().sync_now(
            params.name, revision_id=params.revision, prune=params.prune
        )
        await ctx.report_progress(1, 1, "Sync finished")
    except ReconcilerError as e:
        get_audit_logger().log_error("sync_application", params.name, e.message)
        return f"Error: {e.message}"

    get_audit_logger().log_write(
        "sync_application",
        params.name,
        operation.outcome.value if operation.outcome else "unknown",
        {"operation_id": operation.id, "prune": params.prune},
    )
    return _format_result(operation)


class SetSyncPolicyParams(BaseModel):
    """Parameters for set_sync_policy tool. Omitted fields stay unchanged."""

    name: str = Field(description="Application name")
    automated: bool | None = Field(default=None, description="Sync new revisions automatically")
    prune: bool | None = Field(
        default=None, description="Delete owned resources removed from source"
    )
    self_heal: bool | None = Field(default=None, description="Correct drift and Degraded health")
    auto_rollback: bool | None = Field(
        default=None, description="Roll back when self-heal is exhausted"
    )
    accept_partial: bool | None = Field(
        default=None, description="Treat PartiallyApplied as synced"
    )


@mcp.tool()
async def set_sync_policy(params: SetSyncPolicyParams, ctx: MCPContext) -> str:
    """
    Override an application's sync policy.

    Turning automated off stops every automatic trigger; the application is
    still observed and its health reported.
    """
    _start_request(ctx)

    blocked = get_safety_guard().check_write_operation("set_sync_policy")
    if blocked:
        get_audit_logger().log_blocked("set_sync_policy", params.name, blocked.reason)
        return blocked.format_message()

    changes = params.model_dump(exclude={"name"}, exclude_none=True)
    if not changes:
        return "No policy fields given; nothing changed."

    try:
        app = await get_controller().set_policy(params.name, **changes)
    except ReconcilerError as e:
        get_audit_logger().log_error("set_sync_policy", params.name, e.message)
        return f"Error: {e.message}"

    get_audit_logger().log_write("set_sync_policy", params.name, "updated", changes)
    policy = app.sync_policy
    return (
        f"Sync policy for '{params.name}' updated.\n"
        f"Automated: {policy.automated}  Prune: {policy.prune}  Self-heal: {policy.self_heal}\n"
        f"Auto-rollback: {policy.auto_rollback}  Accept partial: {policy.accept_partial}"
    )


class RollbackApplicationParams(BaseModel):
    """Parameters for rollback_application tool."""

    name: str = Field(description="Application name")
    revision: str = Field(description="Revision (or unique prefix) from list_sync_history")


@mcp.tool()
async def rollback_application(params: RollbackApplicationParams, ctx: MCPContext) -> str:
    """
    Roll an application back to a revision that synced successfully.

    Automated sync is turned off so the controller does not immediately
    sync forward again; re-enable it with set_sync_policy.
    """
    _start_request(ctx)

    blocked = get_safety_guard().check_write_operation("rollback_application")
    if blocked:
        get_audit_logger().log_blocked("rollback_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        await ctx.report_progress(0, 1, f"Rolling back {params.name}")
        operation = await get_controller().rollback(params.name, params.revision)
        await ctx.report_progress(1, 1, "Rollback finished")
    except ReconcilerError as e:
        get_audit_logger().log_error("rollback_application", params.name, e.message)
        return f"Error: {e.message}"

    get_audit_logger().log_write(
        "rollback_application",
        params.name,
        operation.outcome.value if operation.outcome else "unknown",
        {"revision": operation.revision},
    )
    return _format_result(operation) + "\n\nAutomated sync disabled."


@mcp.tool()
async def terminate_sync(params: ApplicationNameParams, ctx: MCPContext) -> str:
    """
    Terminate an in-flight sync operation.

    Records applied so far stay applied; the operation is recorded as
    PartiallyApplied and the next cycle re-diffs live state.
    """
    _start_request(ctx)

    blocked = get_safety_guard().check_write_operation("terminate_sync")
    if blocked:
        get_audit_logger().log_blocked("terminate_sync", params.name, blocked.reason)
        return blocked.format_message()

    try:
        terminated = get_controller().terminate(params.name)
    except ReconcilerError as e:
        get_audit_logger().log_error("terminate_sync", params.name, e.message)
        return f"Error: {e.message}"

    if not terminated:
        return f"No sync in flight for '{params.name}'"
    get_audit_logger().log_write("terminate_sync", params.name, "terminated")
    return (
        f"Sync operation terminated for '{params.name}'\n\n"
        f"Use get_application_status to check current state."
    )


class PromoteApplicationParams(BaseModel):
    """Parameters for promote_application tool."""

    source: str = Field(description="Application whose last synced revision is promoted")
    target: str = Field(description="Application to pin to that revision")


@mcp.tool()
async def promote_application(params: PromoteApplicationParams, ctx: MCPContext) -> str:
    """
    Promote a revision from one environment to another.

    Pins the target application's ref to the revision the source
    application last synced (e.g. staging -> production).
    """
    _start_request(ctx)

    blocked = get_safety_guard().check_write_operation("promote_application")
    if blocked:
        get_audit_logger().log_blocked("promote_application", params.target, blocked.reason)
        return blocked.format_message()

    try:
        app = await get_controller().promote(params.source, params.target)
    except ReconcilerError as e:
        get_audit_logger().log_error("promote_application", params.target, e.message)
        return f"Error: {e.message}"

    get_audit_logger().log_write(
        "promote_application",
        params.target,
        "pinned",
        {"from": params.source, "ref": app.source.ref},
    )
    follow_up = (
        "Automated sync will apply it on the next cycle."
        if app.sync_policy.automated
        else f"Run sync_application(name='{params.target}', dry_run=false) to apply it."
    )
    return (
        f"'{params.target}' now tracks revision {app.source.ref} "
        f"from '{params.source}'.\n{follow_up}"
    )


# =============================================================================
# DESTRUCTIVE OPERATIONS (Require explicit confirmation)
# =============================================================================


class DeregisterApplicationParams(BaseModel):
    """Parameters for deregister_application tool."""

    name: str = Field(description="Application name to deregister")
    prune: bool = Field(
        default=False,
        description="Also delete every resource the application created (destructive)",
    )
    confirm: bool = Field(default=False, description="Must be true to prune")
    confirm_name: str | None = Field(
        default=None, description="Type application name to confirm pruning"
    )


@mcp.tool()
async def deregister_application(params: DeregisterApplicationParams, ctx: MCPContext) -> str:
    """
    Stop managing an application.

    Without prune its resources are left running, orphaned. With prune=true
    every resource it owns is deleted; that requires confirmation.
    """
    _start_request(ctx)

    guard = get_safety_guard()
    if params.prune:
        blocked = guard.check_destructive_operation(
            "deregister_with_prune",
            params.name,
            confirmed=params.confirm,
            confirm_name=params.confirm_name,
        )
    else:
        blocked = guard.check_write_operation("deregister_application")

    if blocked:
        if isinstance(blocked, ConfirmationRequired):
            try:
                app = get_controller().get(params.name)
                blocked.details = {
                    "namespace": app.target.namespace,
                    "managed resources": str(len(app.status.last_applied)),
                }
            except ReconcilerError:
                logger.debug("No record for confirmation details", application=params.name)
            get_audit_logger().log_blocked(
                "deregister_application", params.name, "confirmation required"
            )
        else:
            get_audit_logger().log_blocked("deregister_application", params.name, blocked.reason)
        return blocked.format_message()

    try:
        await ctx.report_progress(0, 1, f"Deregistering {params.name}")
        deleted = await get_controller().deregister(params.name, prune=params.prune)
    except ReconcilerError as e:
        get_audit_logger().log_error("deregister_application", params.name, e.message)
        return f"Error: {e.message}"

    get_audit_logger().log_write(
        "deregister_application",
        params.name,
        "deregistered",
        {"prune": params.prune, "deleted": len(deleted)},
    )
    lines = [f"Application '{params.name}' deregistered.", f"Prune: {params.prune}"]
    if deleted:
        lines.append(f"Deleted {len(deleted)} resource(s):")
        lines.extend(f"  - {key}" for key in deleted)
    return "\n".join(lines)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("reconciler://settings")
async def get_settings_resource() -> str:
    """Get the effective controller and security settings."""
    settings = get_settings()
    rec = settings.reconcile
    sec = settings.security

    return (
        "Controller Settings:\n"
        f"  Controller name: {settings.controller_name}\n"
        f"  Registry: {settings.registry_path or 'in-memory'}\n"
        f"  Source: {settings.source.url or '(not configured)'}\n"
        f"  Runtime: {settings.runtime.url or '(not configured)'}\n"
        f"  Poll interval: {rec.poll_interval}s\n"
        f"  Max cache age: {rec.max_cache_age}s\n"
        f"  Request timeout: {rec.request_timeout}s\n"
        f"  Max apply attempts: {rec.max_apply_attempts}\n"
        f"  Health grace period: {rec.health_grace_period}s\n"
        f"  Max self-heal attempts: {rec.max_self_heal_attempts}\n"
        f"  History limit: {rec.history_limit}\n"
        "\n"
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the GitOps reconciler MCP server."""
    configure_logging(level="INFO")
    logger.info("GitOps reconciler starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
