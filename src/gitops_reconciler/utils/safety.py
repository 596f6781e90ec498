# ABOUTME: Safety utilities guarding the reconciler's control surface
# ABOUTME: Read-only mode, destructive-operation confirmation, and rate limiting

"""Guards for control-surface operations.

The reconciliation loops are governed by each application's SyncPolicy; the
checks here apply only to what a caller of the MCP tools may request.
"""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from gitops_reconciler.config import SecuritySettings

logger = structlog.get_logger(__name__)

IMPACTS = {
    "deregister_with_prune": "Every resource the application created will be DELETED",
    "sync_with_prune": "Owned resources no longer declared in the source will be DELETED",
}


@dataclass
class ConfirmationRequired:
    """Response asking the caller to confirm a destructive operation."""

    operation: str
    target: str
    impact: str
    confirmation_instructions: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Target: {self.target}",
            f"Impact: {self.impact}",
        ]

        if self.details:
            lines.append("")
            lines.append("Details:")
            for key, value in self.details.items():
                lines.append(f"  {key}: {value}")

        lines.extend(["", self.confirmation_instructions])
        return "\n".join(lines)


@dataclass
class OperationBlocked:
    """Response for an operation the security settings do not allow."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        if self.setting == "MCP_RATE_LIMIT_CALLS":
            hint = f"Wait for the rate limit window or raise {self.setting}"
        else:
            hint = f"To enable: Set {self.setting}=false in controller configuration"
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}\n"
            f"{hint}"
        )


class RateLimiter:
    """Sliding-window call counter per key."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """Record a call for ``key``; False if the window is already full."""
        now = time.monotonic()
        self._calls[key] = [t for t in self._calls[key] if now - t < self._window]

        if len(self._calls[key]) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(self._calls[key]))
            return False

        self._calls[key].append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class SafetyGuard:
    """Checks control-surface requests against the security settings."""

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        """Reads are always allowed unless rate limited."""
        if not self._rate_limiter.check(f"read:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="MCP_RATE_LIMIT_CALLS",
            )
        return None

    def check_write_operation(self, operation: str) -> OperationBlocked | None:
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Controller control surface is in read-only mode",
                setting="MCP_READ_ONLY",
            )

        if not self._rate_limiter.check(f"write:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="MCP_RATE_LIMIT_CALLS",
            )

        return None

    def check_destructive_operation(
        self,
        operation: str,
        target: str,
        confirmed: bool = False,
        confirm_name: str | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """
        Gate an operation that deletes runtime resources.

        Order: write check (read-only, rate limit), then the destructive
        switch, then an explicit confirmation whose name must equal ``target``.
        """
        write_check = self.check_write_operation(operation)
        if write_check:
            return write_check

        if self._settings.disable_destructive:
            return OperationBlocked(
                operation=operation,
                reason="Destructive operations are disabled",
                setting="MCP_DISABLE_DESTRUCTIVE",
            )

        if not confirmed or confirm_name != target:
            return ConfirmationRequired(
                operation=operation,
                target=target,
                impact=IMPACTS.get(operation, "This operation may delete runtime resources"),
                confirmation_instructions=(
                    f"To proceed, set confirm=true AND confirm_name='{target}'"
                ),
            )

        return None
