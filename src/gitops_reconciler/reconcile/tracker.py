# ABOUTME: Revision tracker resolving each application's source ref to an immutable revision
# ABOUTME: Caches the last known revision per application and matches webhook notifications

"""Revision tracking."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.errors import SourceUnavailable
from gitops_reconciler.models import Revision
from gitops_reconciler.utils.retry import bounded_backoff, with_timeout

if TYPE_CHECKING:
    from gitops_reconciler.config import ReconcileSettings
    from gitops_reconciler.interfaces import SourceRepository
    from gitops_reconciler.models import Application

logger = structlog.get_logger(__name__)

SOURCE_RESOLVE_ATTEMPTS = 3


def normalize_repo_url(url: str) -> str:
    """Compare-friendly repository URL: no scheme, no ``.git`` suffix, no trailing slash."""
    url = url.strip().lower()
    for prefix in ("https://", "http://", "ssh://", "git@"):
        if url.startswith(prefix):
            url = url[len(prefix) :]
    url = url.replace(":", "/").rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url


def normalize_ref(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix) :]
    return ref


class RevisionTracker:
    """
    Resolves ``SourceRef`` -> ``Revision`` for registered applications.

    The only state kept is the last resolved revision per application, which
    lets callers detect a change with a plain comparison. Transient source
    failures are retried with bounded backoff; a missing ref is not.
    """

    def __init__(self, source: SourceRepository, settings: ReconcileSettings) -> None:
        self._source = source
        self._settings = settings
        self._last_known: dict[str, Revision] = {}

    async def resolve(self, app: Application) -> Revision:
        """Resolve the application's ref now.

        Raises:
            SourceUnavailable: host unreachable after retries.
            RefNotFound: the ref does not exist.
        """
        source = app.source
        revision_id = ""
        async for attempt in bounded_backoff(
            self._settings, SourceUnavailable, max_attempts=SOURCE_RESOLVE_ATTEMPTS
        ):
            with attempt:
                revision_id = await with_timeout(
                    self._source.get_tree(source.repo_url, source.ref),
                    self._settings.request_timeout,
                    SourceUnavailable(
                        f"Timed out resolving '{source.ref}'",
                        details={"repo": source.repo_url},
                    ),
                )

        revision = Revision(
            id=revision_id,
            path=source.path,
            repo_url=source.repo_url,
            ref=source.ref,
        )
        previous = self._last_known.get(app.name)
        self._last_known[app.name] = revision
        if previous != revision:
            logger.info(
                "Resolved new revision",
                application=app.name,
                ref=source.ref,
                revision=revision.short_id,
                previous=previous.short_id if previous else None,
            )
        return revision

    def last_known(self, name: str) -> Revision | None:
        return self._last_known.get(name)

    def forget(self, name: str) -> None:
        self._last_known.pop(name, None)

    @staticmethod
    def matches(app: Application, repo_url: str, ref: str | None = None) -> bool:
        """True if a push to ``repo_url``/``ref`` concerns this application."""
        if normalize_repo_url(app.source.repo_url) != normalize_repo_url(repo_url):
            return False
        if ref is None or app.source.ref == "HEAD":
            return True
        return normalize_ref(app.source.ref) == normalize_ref(ref)
