# ABOUTME: Diff engine comparing desired declarations with live observations
# ABOUTME: Emits ordered Create/Update/Delete/NoOp records and never deletes unowned resources

"""Desired-vs-live diffing.

Ownership is the safety line: a live resource missing from the desired set
becomes a Delete candidate only when it carries this controller's ownership
label *and* names this application. Everything else found in the runtime is
reported out-of-scope and left alone.

Ordering of the returned records:
    1. Creates and Updates, ascending dependency weight (namespaces first)
    2. Deletes, descending weight (dependents before their dependencies)
    3. NoOps
Ties break on the resource key, so the order is fully deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from gitops_reconciler.models import (
    DiffOp,
    DiffRecord,
    FieldChange,
    dependency_weight,
    normalize_manifest,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gitops_reconciler.models import ResourceDeclaration, ResourceKey, ResourceObservation

_MISSING = object()


@dataclass(frozen=True)
class DiffResult:
    """All records for one application plus the live resources left out of scope."""

    records: tuple[DiffRecord, ...] = ()
    out_of_scope: tuple[ResourceKey, ...] = field(default=())

    @property
    def changes(self) -> list[DiffRecord]:
        """Records that require an action (everything but NoOp)."""
        return [r for r in self.records if r.op is not DiffOp.NOOP]

    @property
    def prune_candidates(self) -> list[DiffRecord]:
        return [r for r in self.records if r.op is DiffOp.DELETE]

    @property
    def unknown(self) -> list[DiffRecord]:
        return [r for r in self.records if r.unknown]

    @property
    def in_sync(self) -> bool:
        return not self.changes and not self.unknown

    def summary(self) -> dict[str, int]:
        counts: dict[str, int] = {op.value: 0 for op in DiffOp}
        for record in self.records:
            counts[record.op.value] += 1
        counts["OutOfScope"] = len(self.out_of_scope)
        return counts


def field_changes(desired: dict[str, Any], live: dict[str, Any]) -> tuple[FieldChange, ...]:
    """Dotted paths whose values differ between two normalized manifests.

    Lists are compared as whole values.
    """
    changes: list[FieldChange] = []
    _walk(normalize_manifest(desired), normalize_manifest(live), "", changes)
    return tuple(changes)


def _walk(desired: Any, live: Any, prefix: str, out: list[FieldChange]) -> None:
    if isinstance(desired, dict) and isinstance(live, dict):
        for key in sorted(set(desired) | set(live), key=str):
            path = f"{prefix}.{key}" if prefix else str(key)
            _walk(desired.get(key, _MISSING), live.get(key, _MISSING), path, out)
        return
    if desired != live:
        out.append(
            FieldChange(
                path=prefix,
                desired=None if desired is _MISSING else desired,
                live=None if live is _MISSING else live,
            )
        )


def diff(
    desired: Iterable[ResourceDeclaration],
    live: Iterable[ResourceObservation],
    *,
    controller_name: str,
    application: str,
) -> DiffResult:
    """Compute the ordered diff between desired and live state for one application."""
    desired_by_key = {d.key: d for d in desired}
    live_by_key = {o.key: o for o in live}

    upserts: list[DiffRecord] = []
    deletes: list[DiffRecord] = []
    noops: list[DiffRecord] = []
    out_of_scope: list[ResourceKey] = []

    for key, declaration in desired_by_key.items():
        observation = live_by_key.get(key)
        if observation is not None and observation.unknown:
            noops.append(
                DiffRecord(
                    key=key,
                    op=DiffOp.NOOP,
                    weight=declaration.weight,
                    declaration=declaration,
                    observation=observation,
                    unknown=True,
                )
            )
        elif observation is None:
            upserts.append(
                DiffRecord(
                    key=key,
                    op=DiffOp.CREATE,
                    weight=declaration.weight,
                    declaration=declaration,
                )
            )
        elif observation.fingerprint != declaration.fingerprint:
            upserts.append(
                DiffRecord(
                    key=key,
                    op=DiffOp.UPDATE,
                    weight=declaration.weight,
                    declaration=declaration,
                    observation=observation,
                    changes=field_changes(declaration.body, observation.body),
                )
            )
        else:
            noops.append(
                DiffRecord(
                    key=key,
                    op=DiffOp.NOOP,
                    weight=declaration.weight,
                    declaration=declaration,
                    observation=observation,
                )
            )

    for key, observation in live_by_key.items():
        if key in desired_by_key or observation.unknown:
            continue
        if not observation.owned_by(controller_name, application):
            out_of_scope.append(key)
            continue
        deletes.append(
            DiffRecord(
                key=key,
                op=DiffOp.DELETE,
                weight=dependency_weight(observation.body),
                observation=observation,
            )
        )

    upserts.sort(key=lambda r: (r.weight, r.key))
    deletes.sort(key=lambda r: (-r.weight, r.key))
    noops.sort(key=lambda r: (r.weight, r.key))

    return DiffResult(
        records=tuple(upserts + deletes + noops),
        out_of_scope=tuple(sorted(out_of_scope)),
    )
