# ABOUTME: Structured logging with correlation IDs for the GitOps reconciler
# ABOUTME: Configures structlog and records audit entries for control actions and sync operations

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: every log line is an event name plus key/value pairs,
   rendered as colored console text in development or JSON in production.

2. CORRELATION IDs: one reconciliation cycle touches the source host, the
   renderer, the runtime (many times), and the registry. Every log line of
   the cycle carries the same correlation_id, so

       jq 'select(.correlation_id == "a1b2c3d4")'

   reconstructs the whole cycle even when dozens of application loops log
   concurrently.

3. AUDIT LOGGING: an append-only record of control-surface actions and of
   every finished SyncOperation.

=============================================================================
CONTEXT VARIABLES
=============================================================================

Each application loop is its own asyncio task, and asyncio copies the
current context into every task it creates. Setting the correlation id at
the top of a cycle therefore never leaks into another application's loop.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path

    from gitops_reconciler.models import SyncOperation


correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate a new one.

    Code running outside any cycle (startup, shutdown) still gets an id so
    its logs stay correlatable.

    Returns:
        8-character correlation ID string.
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set correlation ID for the current context.

    Called at the start of every reconciliation cycle and every control
    request. An empty string makes the next ``get_correlation_id`` generate one.
    """
    correlation_id.set(cid)


def new_correlation_id() -> str:
    """Start a fresh correlation scope and return its id."""
    cid = str(uuid.uuid4())[:8]
    correlation_id.set(cid)
    return cid


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Structlog processor adding the correlation ID to every event.

    The processor signature (logger, method_name, event_dict) is fixed by
    structlog; only event_dict is used here.
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    Pipeline: merge_contextvars -> add_log_level -> TimeStamper ->
    add_correlation_id -> JSON or console renderer.

    Args:
        level: DEBUG, INFO, WARNING, ERROR, or CRITICAL.
        json_output: JSON lines for log aggregators instead of console text.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class AuditLogger:
    """
    Audit logger for control actions and sync operations.

    Every entry records timestamp, correlation_id, action, target, result
    and optional details. With a path, entries are appended as JSON lines;
    without one they go through structlog.

    EXAMPLE ENTRIES:
    ----------------
    {"action": "sync_application", "target": "web-prod", "result": "blocked",
     "details": {"reason": "Server is running in read-only mode"}, ...}

    {"action": "sync_operation", "target": "web-prod",
     "result": "PartiallyApplied",
     "details": {"revision": "9f1c2e3a", "applied": 2, "failed": 1}, ...}
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log an auditable action."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }

        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_read(self, action: str, target: str) -> None:
        """Log a read operation."""
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Log a write operation ("success", "initiated", "queued", ...)."""
        self.log(action, target, result, details)

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Log an operation refused by the safety guard."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        """Log an operation that failed with an error."""
        self.log(action, target, "error", {"error": error})

    def log_sync_operation(self, operation: SyncOperation) -> None:
        """Log a finished SyncOperation with its per-record tallies."""
        details: dict[str, Any] = {
            "operation_id": operation.id,
            "revision": operation.revision,
            "trigger": operation.trigger,
            "applied": len(operation.applied),
            "failed": len(operation.failed),
        }
        if operation.warnings:
            details["warnings"] = operation.warnings
        if operation.message:
            details["message"] = operation.message
        outcome = operation.outcome.value if operation.outcome else "unknown"
        self.log("sync_operation", operation.application, outcome, details)
