# ABOUTME: Manifest renderer expanding overlays at a revision into ordered resource declarations
# ABOUTME: Pure function of revision and path, cached per revision, raising RenderError on bad input

"""
Manifest rendering.

A revision's ``path`` is either a single manifest file (``*.yaml``/``*.yml``,
possibly multi-document) or a directory holding ``kustomization.yaml``:

    resources:            # files or directories (overlay bases), in order
      - ../base
      - service.yaml
    namespace: prod       # override for namespaced resources
    namePrefix: prod-
    commonLabels: {team: web}
    commonAnnotations: {owner: web}
    patches:              # partial resources deep-merged by kind/name
      - replicas-patch.yaml
      - kind: Deployment
        metadata: {name: web}
        spec: {replicas: 3}

Rendering reads only through ``SourceRepository.get_file`` at an immutable
revision, so the same (revision, path, default namespace) always yields the
same declarations and results are cached.
"""

from __future__ import annotations

import copy
import posixpath
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

import structlog
import yaml

from gitops_reconciler.errors import FileNotFound, RenderError, SourceUnavailable
from gitops_reconciler.models import CLUSTER_SCOPED_KINDS, ResourceDeclaration
from gitops_reconciler.utils.retry import bounded_backoff, with_timeout

if TYPE_CHECKING:
    from gitops_reconciler.config import ReconcileSettings
    from gitops_reconciler.interfaces import SourceRepository
    from gitops_reconciler.models import Revision

logger = structlog.get_logger(__name__)

KUSTOMIZATION_FILE = "kustomization.yaml"
MANIFEST_SUFFIXES = (".yaml", ".yml")
MAX_OVERLAY_DEPTH = 16

_CacheKey = tuple[str, str, str, str]


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    """Merge ``patch`` into a copy of ``base``; mappings merge, everything else replaces.

    A ``None`` value in the patch removes the key.
    """
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ManifestRenderer:
    """Expands a revision's manifest tree into ``ResourceDeclaration`` objects."""

    def __init__(self, source: SourceRepository, settings: ReconcileSettings) -> None:
        self._source = source
        self._settings = settings
        self._cache: OrderedDict[_CacheKey, tuple[ResourceDeclaration, ...]] = OrderedDict()

    async def render(
        self,
        revision: Revision,
        default_namespace: str = "",
    ) -> tuple[ResourceDeclaration, ...]:
        """Render ``revision.path`` into declarations ordered by weight, then key.

        Raises:
            RenderError: malformed YAML, missing base/file, or duplicate keys.
            SourceUnavailable: the source host could not be reached.
        """
        cache_key = (revision.repo_url, revision.id, revision.path, default_namespace)
        cached = self._cache.get(cache_key)
        if cached is not None:
            self._cache.move_to_end(cache_key)
            return cached

        documents = await self._render_path(revision, revision.path, depth=0)
        declarations = self._declare(documents, default_namespace)

        self._cache[cache_key] = declarations
        while len(self._cache) > self._settings.render_cache_size:
            self._cache.popitem(last=False)

        logger.debug(
            "Rendered revision",
            revision=revision.short_id,
            path=revision.path,
            resources=len(declarations),
        )
        return declarations

    @staticmethod
    def _declare(
        documents: list[dict[str, Any]],
        default_namespace: str,
    ) -> tuple[ResourceDeclaration, ...]:
        declarations: dict[Any, ResourceDeclaration] = {}
        for doc in documents:
            if not doc.get("kind") or not _metadata(doc, "desired state").get("name"):
                raise RenderError(f"Resource missing kind or metadata.name: {doc!r:.120}")
            declaration = ResourceDeclaration.from_manifest(doc, default_namespace)
            if declaration.key in declarations:
                raise RenderError(
                    f"Duplicate resource {declaration.key} in desired state",
                    details={"key": str(declaration.key)},
                )
            declarations[declaration.key] = declaration
        return tuple(sorted(declarations.values(), key=lambda d: (d.weight, d.key)))

    async def _read(self, revision: Revision, path: str) -> bytes:
        content = b""
        async for attempt in bounded_backoff(self._settings, SourceUnavailable, max_attempts=3):
            with attempt:
                content = await with_timeout(
                    self._source.get_file(revision.repo_url, revision.id, path),
                    self._settings.request_timeout,
                    SourceUnavailable(f"Timed out reading '{path}'"),
                )
        return content

    async def _render_path(self, revision: Revision, path: str, depth: int) -> list[dict[str, Any]]:
        if depth > MAX_OVERLAY_DEPTH:
            raise RenderError(f"Overlay nesting deeper than {MAX_OVERLAY_DEPTH} at '{path}'")

        if path.endswith(MANIFEST_SUFFIXES):
            try:
                content = await self._read(revision, path)
            except FileNotFound as e:
                raise RenderError(f"Manifest '{path}' not found", cause=e) from e
            return _parse_documents(content, path)

        directory = "" if path in ("", ".") else path
        kustomization_path = posixpath.join(directory, KUSTOMIZATION_FILE)
        try:
            content = await self._read(revision, kustomization_path)
        except FileNotFound as e:
            raise RenderError(
                f"Missing overlay base: no {KUSTOMIZATION_FILE} in '{path}'", cause=e
            ) from e

        kustomization = _parse_single(content, kustomization_path)
        documents: list[dict[str, Any]] = []
        for entry in kustomization.get("resources") or []:
            child = posixpath.normpath(posixpath.join(directory, str(entry)))
            documents.extend(await self._render_path(revision, child, depth + 1))

        for patch in kustomization.get("patches") or []:
            if isinstance(patch, str):
                patch_path = posixpath.normpath(posixpath.join(directory, patch))
                try:
                    raw = await self._read(revision, patch_path)
                    patch_docs = _parse_documents(raw, patch_path)
                except FileNotFound as e:
                    raise RenderError(f"Patch '{patch_path}' not found", cause=e) from e
            elif isinstance(patch, dict):
                patch_docs = [patch]
            else:
                raise RenderError(f"Invalid patch entry in {kustomization_path}: {patch!r}")
            for patch_doc in patch_docs:
                documents = _apply_patch(documents, patch_doc, kustomization_path)

        return [_transform(doc, kustomization, kustomization_path) for doc in documents]


def _parse_documents(content: bytes, path: str) -> list[dict[str, Any]]:
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as e:
        raise RenderError(f"Malformed YAML in '{path}': {e}", cause=e) from e
    result = []
    for doc in docs:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise RenderError(f"Expected a mapping in '{path}', got {type(doc).__name__}")
        result.append(doc)
    return result


def _parse_single(content: bytes, path: str) -> dict[str, Any]:
    docs = _parse_documents(content, path)
    if len(docs) != 1:
        raise RenderError(f"Expected exactly one document in '{path}'")
    return docs[0]


def _apply_patch(
    documents: list[dict[str, Any]],
    patch: dict[str, Any],
    origin: str,
) -> list[dict[str, Any]]:
    kind = patch.get("kind")
    name = _metadata(patch, origin).get("name")
    for index, doc in enumerate(documents):
        if doc.get("kind") == kind and _metadata(doc, origin).get("name") == name:
            patched = list(documents)
            patched[index] = deep_merge(doc, patch)
            return patched
    raise RenderError(f"Patch target {kind}/{name} from {origin} matches no resource")


def _metadata(doc: dict[str, Any], origin: str) -> dict[str, Any]:
    """The document's metadata mapping; empty when absent."""
    metadata = doc.get("metadata")
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise RenderError(
            f"metadata of {doc.get('kind') or 'resource'} in {origin} must be a mapping, "
            f"got {type(metadata).__name__}"
        )
    return metadata


def _transform(doc: dict[str, Any], kustomization: dict[str, Any], origin: str) -> dict[str, Any]:
    doc = copy.deepcopy(doc)
    metadata = doc["metadata"] = _metadata(doc, origin)
    if kustomization.get("namePrefix"):
        metadata["name"] = f"{kustomization['namePrefix']}{metadata.get('name', '')}"
    if kustomization.get("namespace") and doc.get("kind") not in CLUSTER_SCOPED_KINDS:
        metadata["namespace"] = kustomization["namespace"]
    if kustomization.get("commonLabels"):
        metadata["labels"] = {**(metadata.get("labels") or {}), **kustomization["commonLabels"]}
    if kustomization.get("commonAnnotations"):
        metadata["annotations"] = {
            **(metadata.get("annotations") or {}),
            **kustomization["commonAnnotations"],
        }
    return doc
