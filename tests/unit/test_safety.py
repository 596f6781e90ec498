# ABOUTME: Unit tests for safety utilities
# ABOUTME: Tests read-only mode, destructive confirmation, rate limiting, and message formatting

from unittest.mock import patch

import pytest

from gitops_reconciler.config import SecuritySettings
from gitops_reconciler.utils.safety import (
    ConfirmationRequired,
    OperationBlocked,
    RateLimiter,
    SafetyGuard,
)


@pytest.mark.unit
class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_blocks_calls_exceeding_limit(self):
        """Test that calls past the window maximum are refused."""
        limiter = RateLimiter(max_calls=2, window_seconds=60)

        assert limiter.check("k")
        assert limiter.check("k")
        assert not limiter.check("k")

    def test_independent_keys(self):
        """Test that each key has its own window."""
        limiter = RateLimiter(max_calls=1, window_seconds=60)

        assert limiter.check("a")
        assert limiter.check("b")

    def test_window_expires(self):
        """Test that calls older than the window no longer count."""
        limiter = RateLimiter(max_calls=1, window_seconds=60)
        with patch("gitops_reconciler.utils.safety.time.monotonic", return_value=100.0):
            assert limiter.check("k")
        with patch("gitops_reconciler.utils.safety.time.monotonic", return_value=161.0):
            assert limiter.check("k")

    def test_reset(self):
        """Test that reset clears one key or all keys."""
        limiter = RateLimiter(max_calls=1, window_seconds=60)
        limiter.check("a")
        limiter.check("b")

        limiter.reset("a")
        assert limiter.check("a")
        assert not limiter.check("b")

        limiter.reset()
        assert limiter.check("b")


@pytest.mark.unit
class TestSafetyGuard:
    """Tests for SafetyGuard."""

    def test_read_allowed_in_read_only_mode(self, read_only_safety_guard: SafetyGuard):
        """Test that reads pass even when the control surface is read-only."""
        assert read_only_safety_guard.check_read_operation("list_applications") is None

    def test_read_rate_limited(self):
        """Test that reads are refused once the rate limit is hit."""
        guard = SafetyGuard(SecuritySettings(read_only=False, rate_limit_calls=1))
        guard.check_read_operation("list_applications")

        result = guard.check_read_operation("list_applications")

        assert isinstance(result, OperationBlocked)
        assert result.setting == "MCP_RATE_LIMIT_CALLS"

    def test_write_blocked_read_only(self, read_only_safety_guard: SafetyGuard):
        """Test that writes are refused in read-only mode."""
        result = read_only_safety_guard.check_write_operation("register_application")

        assert isinstance(result, OperationBlocked)
        assert result.setting == "MCP_READ_ONLY"

    def test_write_allowed(self, safety_guard: SafetyGuard):
        """Test that writes pass when read-only mode is off."""
        assert safety_guard.check_write_operation("register_application") is None

    def test_destructive_blocked_when_disabled(self):
        """Test that pruning operations are refused when destructive operations are off."""
        guard = SafetyGuard(SecuritySettings(read_only=False, disable_destructive=True))

        result = guard.check_destructive_operation("sync_with_prune", "web", confirmed=True)

        assert isinstance(result, OperationBlocked)
        assert result.setting == "MCP_DISABLE_DESTRUCTIVE"

    def test_destructive_requires_confirmation(self, safety_guard: SafetyGuard):
        """Test that an unconfirmed destructive operation asks for confirmation."""
        result = safety_guard.check_destructive_operation("deregister_with_prune", "web")

        assert isinstance(result, ConfirmationRequired)
        assert result.impact == "Every resource the application created will be DELETED"

    def test_destructive_requires_name_match(self, safety_guard: SafetyGuard):
        """Test that the confirmation name must equal the target."""
        result = safety_guard.check_destructive_operation(
            "sync_with_prune", "web", confirmed=True, confirm_name="api"
        )

        assert isinstance(result, ConfirmationRequired)

    def test_destructive_allowed_with_confirmation(self, safety_guard: SafetyGuard):
        """Test that a confirmed destructive operation passes."""
        result = safety_guard.check_destructive_operation(
            "sync_with_prune", "web", confirmed=True, confirm_name="web"
        )

        assert result is None


@pytest.mark.unit
class TestMessages:
    """Tests for response formatting."""

    def test_blocked_message_names_setting(self):
        """Test that a blocked message tells how to enable the operation."""
        blocked = OperationBlocked(
            operation="sync_application",
            reason="Controller control surface is in read-only mode",
            setting="MCP_READ_ONLY",
        )

        message = blocked.format_message()

        assert "OPERATION BLOCKED: sync_application" in message
        assert "Set MCP_READ_ONLY=false" in message

    def test_rate_limit_message(self):
        """Test that a rate-limit block suggests waiting instead of a setting flip."""
        blocked = OperationBlocked("x", "Rate limit exceeded", "MCP_RATE_LIMIT_CALLS")

        assert "Wait for the rate limit window" in blocked.format_message()

    def test_confirmation_message_with_details(self):
        """Test that confirmation messages list details and instructions."""
        confirmation = ConfirmationRequired(
            operation="deregister_with_prune",
            target="web",
            impact="Every resource the application created will be DELETED",
            confirmation_instructions="To proceed, set confirm=true AND confirm_name='web'",
            details={"managed resources": "3"},
        )

        message = confirmation.format_message()

        assert message.startswith("CONFIRMATION REQUIRED: deregister_with_prune")
        assert "  managed resources: 3" in message
        assert message.endswith("confirm_name='web'")
