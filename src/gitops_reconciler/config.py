# ABOUTME: Configuration management for the GitOps reconciler
# ABOUTME: Handles environment variables, collaborator endpoints, controller tuning, and security modes

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Everything tunable about the controller lives here. The module:

1. READS environment variables (RECONCILER_*, MCP_*)
2. VALIDATES them (URLs normalized, durations positive, log level known)
3. PROVIDES typed access to the rest of the package

=============================================================================
ARCHITECTURE: FOUR CONFIGURATION CLASSES
=============================================================================

1. Endpoint: one external collaborator (source host or target runtime)
   - URL, bearer token, TLS verification

2. ReconcileSettings: knobs of the reconciliation loops
   - poll interval, cache staleness, timeouts, retry ceiling and backoff,
     health grace window, self-heal attempt limit, history length

3. SecuritySettings: control-surface guards (MCP_ prefix)
   - read-only mode, destructive-operation gate, audit log, rate limiting

4. ControllerSettings: top-level container (RECONCILER_ prefix)
   - controller name (the ownership label value), registry path, logging,
     endpoints, and the two nested groups above

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

    RECONCILER_CONTROLLER_NAME            -> ownership label value
    RECONCILER_REGISTRY_PATH              -> registry directory (unset = in-memory)
    RECONCILER_SOURCE__URL                -> source host URL
    RECONCILER_SOURCE__TOKEN              -> source host token
    RECONCILER_RUNTIME__URL               -> target runtime URL
    RECONCILER_RUNTIME__TOKEN             -> target runtime token
    RECONCILER_RECONCILE__POLL_INTERVAL   -> seconds between source polls
    RECONCILER_RECONCILE__MAX_APPLY_ATTEMPTS -> per-record retry ceiling
    RECONCILER_LOG_LEVEL / RECONCILER_JSON_LOGS

    MCP_READ_ONLY, MCP_DISABLE_DESTRUCTIVE, MCP_AUDIT_LOG,
    MCP_RATE_LIMIT_CALLS, MCP_RATE_LIMIT_WINDOW
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# COLLABORATOR ENDPOINTS
# =============================================================================


class Endpoint(BaseModel):
    """
    Connection details for one external collaborator.

    The same shape serves the source-of-truth host and the target runtime;
    credentials stay opaque (a bearer token) and are never logged because
    SecretStr renders as "**********".
    """

    model_config = {"extra": "ignore"}

    url: str = Field(default="", description="Base URL of the collaborator API")
    token: SecretStr = Field(default=SecretStr(""), description="Bearer token")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Default to https and drop trailing slashes so paths join cleanly."""
        if not v:
            return v
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")

    @property
    def configured(self) -> bool:
        return bool(self.url)


# =============================================================================
# RECONCILIATION TUNING
# =============================================================================


class ReconcileSettings(BaseModel):
    """
    Tuning for the per-application reconciliation loops.

    WHY BOUNDS EVERYWHERE?
    ----------------------
    A controller that retries forever turns one broken manifest into a
    retry storm against the runtime. Every loop here has a ceiling:
    apply attempts, self-heal attempts, history entries, cache age.
    """

    poll_interval: float = Field(default=180.0, gt=0, description="Seconds between source polls")
    max_cache_age: float = Field(
        default=30.0, ge=0, description="Max seconds a live-state snapshot may be reused"
    )
    request_timeout: float = Field(
        default=30.0, gt=0, description="Timeout for each source/runtime call"
    )
    max_apply_attempts: int = Field(default=5, ge=1, description="Retry ceiling per resource")
    retry_initial_backoff: float = Field(default=1.0, ge=0, description="First backoff delay")
    retry_max_backoff: float = Field(default=30.0, ge=0, description="Backoff delay cap")
    health_grace_period: float = Field(
        default=120.0, ge=0, description="Seconds a resource may stay not-ready after a sync"
    )
    max_self_heal_attempts: int = Field(
        default=3, ge=0, description="Automatic re-syncs on Degraded health before alerting"
    )
    history_limit: int = Field(default=10, ge=1, description="SyncOperations kept per app")
    render_cache_size: int = Field(default=64, ge=1, description="Rendered revisions cached")


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Guards for the control surface.

    These only restrict what a caller of the MCP tools may do; the
    reconciliation loops themselves are governed by each application's
    SyncPolicy.
    """

    model_config = SettingsConfigDict(env_prefix="MCP_")

    read_only: bool = Field(
        default=True,
        description="Block all write operations when true",
    )
    disable_destructive: bool = Field(
        default=True,
        description="Block pruning syncs and pruning de-registration when true",
    )
    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file",
    )
    rate_limit_calls: int = Field(
        default=100,
        description="Maximum control-surface calls per window",
    )
    rate_limit_window: int = Field(
        default=60,
        description="Rate limit window in seconds",
    )


# =============================================================================
# MAIN CONTROLLER SETTINGS
# =============================================================================


class ControllerSettings(BaseSettings):
    """
    Main controller configuration.

    USAGE:
    ------
        settings = load_settings()
        settings.reconcile.poll_interval   # 180.0
        settings.security.read_only        # True
    """

    model_config = SettingsConfigDict(
        env_prefix="RECONCILER_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    controller_name: str = Field(
        default="gitops-reconciler",
        min_length=1,
        description="Value of the ownership label stamped on created resources",
    )

    registry_path: Path | None = Field(
        default=None,
        description="Directory holding one JSON record per application; None keeps it in memory",
    )

    source: Endpoint = Field(default_factory=Endpoint)
    runtime: Endpoint = Field(default_factory=Endpoint)

    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings)

    server_name: str = Field(default="gitops-reconciler", description="MCP server name")

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )

    json_logs: bool = Field(default=False, description="Render logs as JSON lines")

    security: SecuritySettings = Field(default_factory=SecuritySettings)


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> ControllerSettings:
    """
    Load settings from environment with validation.

    If RECONCILER_ENV_FILE is set, variables are also read from that file.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ControllerSettings(
        _env_file=os.environ.get("RECONCILER_ENV_FILE"),
    )
