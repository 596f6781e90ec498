# ABOUTME: HTTP clients for the source host and target runtime with retry logic and error mapping
# ABOUTME: Async httpx implementations of the SourceRepository and TargetRuntime protocols

"""
HTTP clients for the reconciler's external collaborators.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The controller consumes two services through protocols
(``gitops_reconciler.interfaces``). This module implements both over HTTP:

1. SourceClient  - resolves refs and reads manifest files at a revision
2. RuntimeClient - lists, applies, deletes, and watches live resources

Both handle:

- AUTHENTICATION: bearer token from a SecretStr
- RETRY: transport errors and timeouts retried with exponential backoff
- ERROR MAPPING: HTTP status codes become the reconciler's exception types
- SECRET MASKING: error bodies are scrubbed before they reach logs/status

=============================================================================
REST LAYOUT
=============================================================================

Source host:
    GET /repos/{repo}/refs/{ref}                     -> {"revision": "<id>"}
    GET /repos/{repo}/revisions/{id}/files/{path}    -> raw file bytes

Target runtime:
    GET    /resources?scope=S&kind=K                 -> {"items": [...]}
    PUT    /resources/{kind}/{namespace}/{name}      <- manifest JSON
    DELETE /resources/{kind}/{namespace}/{name}
    GET    /watch?scope=S                            -> NDJSON change events

Cluster-scoped resources use the namespace segment "_cluster".

=============================================================================
CONTEXT MANAGERS
=============================================================================

    async with RuntimeClient(endpoint) as runtime:
        items = await runtime.list_resources("default", "Deployment")

The connection pool is created in __aenter__ and closed in __aexit__, even
when the body raises.
"""

from __future__ import annotations

import json
import re
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.errors import (
    FileNotFound,
    RefNotFound,
    RuntimeUnavailable,
    SourceUnavailable,
    map_runtime_status,
    map_source_status,
)
from gitops_reconciler.interfaces import ChangeEvent, ChangeType

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gitops_reconciler.config import Endpoint
    from gitops_reconciler.models import ResourceKey

logger = structlog.get_logger(__name__)

CLUSTER_SCOPE_SEGMENT = "_cluster"

SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), r"\1***MASKED***"),
]


def mask_secrets(text: str) -> str:
    """Scrub token/password/secret values out of free text."""
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def _error_message(response: httpx.Response) -> str:
    """Best-effort error message from a JSON or plain-text error body."""
    message = f"HTTP {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        text = response.text[:200]
        return mask_secrets(f"{message}: {text}") if text else message
    if isinstance(body, dict):
        message = body.get("message") or body.get("error") or message
    return mask_secrets(str(message))


class _HttpCollaborator:
    """Shared lifecycle and retrying request logic for both clients."""

    api_prefix = ""

    def __init__(self, endpoint: Endpoint, timeout: float = 30.0) -> None:
        self._endpoint = endpoint
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> _HttpCollaborator:
        headers = {"Content-Type": "application/json"}
        token = self._endpoint.token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=f"{self._endpoint.url}{self.api_prefix}",
            headers=headers,
            timeout=self._timeout,
            verify=not self._endpoint.insecure,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")
        return self._client

    @retry(
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one request, retrying transport failures. Status codes are not checked here."""
        log = logger.bind(method=method, path=path)
        log.debug("Sending collaborator request")
        return await self.client.request(method, path, params=params, json=json_data)


# =============================================================================
# SOURCE CLIENT
# =============================================================================


class SourceClient(_HttpCollaborator):
    """
    Source-of-truth repository client.

    Implements ``SourceRepository``. The repository URL is passed through as
    a single path segment (URL-encoded), so one client can serve every
    repository the host knows about.
    """

    api_prefix = "/api/v1"

    async def __aenter__(self) -> SourceClient:
        await super().__aenter__()
        return self

    async def _get(
        self, path: str, not_found: type[RefNotFound] | type[FileNotFound]
    ) -> httpx.Response:
        try:
            response = await self._send("GET", path)
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"Source host unreachable: {e}", cause=e) from e

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning("Source host error", status=response.status_code, path=path)
            raise map_source_status(
                response.status_code,
                message,
                not_found=not_found,
                details={"path": path},
            )
        return response

    async def get_tree(self, repo_url: str, ref: str) -> str:
        """Resolve ``ref`` to a revision id."""
        repo = quote(repo_url, safe="")
        response = await self._get(f"/repos/{repo}/refs/{quote(ref, safe='')}", RefNotFound)
        revision = (response.json() or {}).get("revision")
        if not revision:
            raise RefNotFound(f"Ref '{ref}' resolved to no revision", details={"repo": repo_url})
        return str(revision)

    async def get_file(self, repo_url: str, revision_id: str, path: str) -> bytes:
        """Read one file at a revision."""
        repo = quote(repo_url, safe="")
        response = await self._get(
            f"/repos/{repo}/revisions/{quote(revision_id, safe='')}/files/{quote(path)}",
            FileNotFound,
        )
        return response.content


# =============================================================================
# RUNTIME CLIENT
# =============================================================================


class RuntimeClient(_HttpCollaborator):
    """
    Target runtime client.

    Implements ``TargetRuntime``. Status mapping: 403 -> ResourceForbidden,
    404 -> ResourceNotFound, 409/412 -> ResourceConflict, anything else ->
    RuntimeUnavailable.
    """

    api_prefix = "/api/v1"

    async def __aenter__(self) -> RuntimeClient:
        await super().__aenter__()
        return self

    async def _call(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._send(method, path, params=params, json_data=json_data)
        except httpx.HTTPError as e:
            raise RuntimeUnavailable(f"Runtime unreachable: {e}", cause=e) from e

        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning("Runtime error", method=method, status=response.status_code, path=path)
            raise map_runtime_status(response.status_code, message, details={"path": path})

        if not response.content:
            return {}
        data = response.json()
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _resource_path(kind: str, namespace: str, name: str) -> str:
        segment = namespace or CLUSTER_SCOPE_SEGMENT
        return f"/resources/{quote(kind, safe='')}/{quote(segment, safe='')}/{quote(name, safe='')}"

    async def list_resources(self, scope: str, kind: str) -> list[dict[str, Any]]:
        data = await self._call("GET", "/resources", params={"scope": scope, "kind": kind})
        return list(data.get("items") or [])

    async def apply(self, scope: str, manifest: dict[str, Any]) -> None:
        metadata = manifest.get("metadata") or {}
        path = self._resource_path(
            manifest.get("kind", ""), metadata.get("namespace", ""), metadata.get("name", "")
        )
        await self._call("PUT", path, params={"scope": scope}, json_data=manifest)

    async def delete(self, scope: str, key: ResourceKey) -> None:
        path = self._resource_path(key.kind, key.namespace, key.name)
        await self._call("DELETE", path, params={"scope": scope})

    def watch(self, scope: str) -> AsyncIterator[ChangeEvent]:
        return self._watch(scope)

    async def _watch(self, scope: str) -> AsyncIterator[ChangeEvent]:
        """Stream NDJSON change events until the server closes the stream."""
        try:
            async with self.client.stream(
                "GET", "/watch", params={"scope": scope}, timeout=None
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise map_runtime_status(response.status_code, _error_message(response))
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        payload = json.loads(line)
                        event = ChangeEvent(
                            type=ChangeType(payload.get("type", "MODIFIED")),
                            scope=scope,
                            object=payload.get("object") or {},
                        )
                    except (ValueError, AttributeError):
                        logger.warning("Ignoring malformed watch event", scope=scope)
                        continue
                    yield event
        except httpx.HTTPError as e:
            raise RuntimeUnavailable(f"Watch stream failed: {e}", cause=e) from e
