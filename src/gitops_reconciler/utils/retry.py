# ABOUTME: Bounded exponential backoff helpers built on tenacity
# ABOUTME: Shared by the revision tracker, live-state observer, and sync engine

"""Retry policies.

The HTTP clients decorate their transport call with a fixed ``@retry``;
reconciliation steps need ceilings taken from settings, so they build an
``AsyncRetrying`` per call instead:

    async for attempt in bounded_backoff(settings, RuntimeUnavailable):
        with attempt:
            await runtime.apply(scope, manifest)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from gitops_reconciler.config import ReconcileSettings

T = TypeVar("T")


def bounded_backoff(
    settings: ReconcileSettings,
    retry_on: type[BaseException] | tuple[type[BaseException], ...],
    max_attempts: int | None = None,
) -> AsyncRetrying:
    """Exponential backoff limited to ``max_attempts`` (default: the apply ceiling).

    The last exception is re-raised unchanged once attempts run out.
    """
    return AsyncRetrying(
        retry=retry_if_exception_type(retry_on),
        stop=stop_after_attempt(max_attempts or settings.max_apply_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_initial_backoff,
            min=0,
            max=settings.retry_max_backoff,
        ),
        reraise=True,
    )


async def with_timeout(awaitable: Awaitable[T], timeout: float, on_timeout: Exception) -> T:
    """Await with a deadline, raising ``on_timeout`` instead of TimeoutError."""
    try:
        async with asyncio.timeout(timeout):
            return await awaitable
    except TimeoutError as e:
        raise on_timeout from e
