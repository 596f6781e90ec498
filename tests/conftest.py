# ABOUTME: Pytest fixtures and configuration for GitOps reconciler tests
# ABOUTME: Provides settings, safety guards, in-memory collaborators, and an unstarted controller

from __future__ import annotations

from typing import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import InMemoryRuntime, InMemorySource
from gitops_reconciler.config import ControllerSettings, ReconcileSettings, SecuritySettings
from gitops_reconciler.controller import Controller
from gitops_reconciler.registry import ApplicationRegistry
from gitops_reconciler.utils.safety import SafetyGuard

# Settings


@pytest.fixture
def reconcile_settings() -> ReconcileSettings:
    """Reconcile settings with no backoff delay and no snapshot reuse."""
    return ReconcileSettings(
        poll_interval=3600,
        max_cache_age=0,
        request_timeout=5,
        max_apply_attempts=2,
        retry_initial_backoff=0,
        retry_max_backoff=0,
        health_grace_period=60,
        max_self_heal_attempts=2,
        history_limit=10,
    )


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings for testing."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        audit_log=None,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        audit_log=None,
        rate_limit_calls=100,
        rate_limit_window=60,
    )


@pytest.fixture
def controller_settings(
    reconcile_settings: ReconcileSettings,
    mock_security_settings: SecuritySettings,
) -> ControllerSettings:
    """Create controller settings for testing."""
    return ControllerSettings(
        controller_name="test-controller",
        reconcile=reconcile_settings,
        security=mock_security_settings,
    )


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


# Collaborators


@pytest.fixture
def source() -> InMemorySource:
    return InMemorySource()


@pytest.fixture
def runtime() -> InMemoryRuntime:
    return InMemoryRuntime()


@pytest.fixture
def registry() -> ApplicationRegistry:
    return ApplicationRegistry()


@pytest.fixture
async def controller(
    controller_settings: ControllerSettings,
    source: InMemorySource,
    runtime: InMemoryRuntime,
    registry: ApplicationRegistry,
) -> AsyncIterator[Controller]:
    """Controller whose loops are not started; tests drive cycles with reconcile()."""
    ctl = Controller(controller_settings, source, runtime, registry=registry)
    yield ctl
    await ctl.stop()


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx
