# ABOUTME: Application registry holding one record per managed application
# ABOUTME: In-memory or one JSON document per application on disk, with per-application locks

"""
Application registry.

=============================================================================
STORAGE
=============================================================================

With ``registry_path`` unset the registry lives in memory. Otherwise every
application is one JSON document ``<registry_path>/<name>.json``, written to
a temporary file in the same directory and moved into place with
``os.replace`` so a crash never leaves a half-written record. Records are
reloaded on start, keeping ``last_synced_revision`` and history.

=============================================================================
LOCKING
=============================================================================

Each application has one ``asyncio.Lock``. It guards both the sync engine's
operation and every mutation of the record:

    async with registry.lock(name):
        app = registry.get(name)
        app.status.health = HealthStatus.HEALTHY
        registry.save(app)

or, for a one-shot mutation, ``await registry.update(name, mutate)``.
``get()`` hands out deep copies, so readers never observe a record that a
writer is still changing.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.errors import ApplicationExists, ApplicationNotFound
from gitops_reconciler.models import Application, SyncPhase

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

logger = structlog.get_logger(__name__)


class ApplicationRegistry:
    """Registry of applications keyed by name."""

    def __init__(self, path: Path | None = None, history_limit: int = 10) -> None:
        self._path = path
        self._history_limit = history_limit
        self._apps: dict[str, Application] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        if path is not None:
            path.mkdir(parents=True, exist_ok=True)
            self._load(path)

    def _load(self, path: Path) -> None:
        for file in sorted(path.glob("*.json")):
            app = Application.model_validate_json(file.read_text(encoding="utf-8"))
            # An operation interrupted by a restart is not in flight any more.
            app.status.phase = SyncPhase.IDLE
            self._apps[app.name] = app
        if self._apps:
            logger.info("Loaded application registry", path=str(path), count=len(self._apps))

    def lock(self, name: str) -> asyncio.Lock:
        """The exclusive lock for one application's sync and record mutations."""
        return self._locks.setdefault(name, asyncio.Lock())

    def names(self) -> list[str]:
        return sorted(self._apps)

    def exists(self, name: str) -> bool:
        return name in self._apps

    def get(self, name: str) -> Application:
        """Deep copy of one record.

        Raises:
            ApplicationNotFound: no application with this name.
        """
        app = self._apps.get(name)
        if app is None:
            raise ApplicationNotFound(f"Application '{name}' is not registered")
        return app.model_copy(deep=True)

    def list_applications(self) -> list[Application]:
        return [self._apps[name].model_copy(deep=True) for name in self.names()]

    def save(self, app: Application) -> None:
        """Store a record; the caller must hold ``lock(app.name)``."""
        if len(app.history) > self._history_limit:
            app.history = app.history[-self._history_limit :]
        if self._path is not None:
            self._write(self._path, app)
        self._apps[app.name] = app.model_copy(deep=True)

    @staticmethod
    def _write(path: Path, app: Application) -> None:
        target = path / f"{app.name}.json"
        fd, tmp = tempfile.mkstemp(dir=path, prefix=f".{app.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(app.model_dump_json(indent=2))
            os.replace(tmp, target)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    async def register(self, app: Application) -> Application:
        """
        Add a new application.

        Raises:
            ApplicationExists: the name is already taken.
        """
        async with self.lock(app.name):
            if app.name in self._apps:
                raise ApplicationExists(f"Application '{app.name}' is already registered")
            self.save(app)
        logger.info("Registered application", application=app.name, repo=app.source.repo_url)
        return app.model_copy(deep=True)

    async def deregister(self, name: str) -> Application:
        """Remove an application record and return its last state."""
        async with self.lock(name):
            app = self.get(name)
            del self._apps[name]
            if self._path is not None:
                (self._path / f"{name}.json").unlink(missing_ok=True)
        logger.info("Deregistered application", application=name)
        return app

    async def update(self, name: str, mutate: Callable[[Application], None]) -> Application:
        """Apply ``mutate`` to a record under its lock and persist the result."""
        async with self.lock(name):
            app = self.get(name)
            mutate(app)
            self.save(app)
            return app
