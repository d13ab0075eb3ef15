"""Drift detection between desired specs and observed records.

The Drift Detector is the sole authority the Reconciler consults to
decide between update and no-op.

DESIGN:
- Computed fields never diff (server-assigned values are not drift)
- Optional+Computed fields diff only when the spec sets them
- Optional fields left unset compare against their schema default
- Record-only keys the schema does not know are ignored
- set fields compare order-insensitively, list fields order-sensitively
- Maps with nested schemas recurse and report dotted paths
- Declared normalizations run on both sides before comparing
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .models import FieldMode, FieldSchema, FieldType, ResourceRecord, ResourceSchema, ResourceSpec
from .normalization import normalize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FieldChange:
    """Old (observed) and new (desired) value of one field path."""

    old: Any
    new: Any


@dataclass(frozen=True)
class Diff:
    """Field path -> change. Empty means no-op."""

    changes: Mapping[str, FieldChange] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    @property
    def paths(self) -> list[str]:
        return sorted(self.changes)

    def touches(self, paths: Iterable[str]) -> bool:
        """Check whether any change is at, above or below one of ``paths``."""
        for wanted in paths:
            for changed in self.changes:
                if (
                    changed == wanted
                    or changed.startswith(f"{wanted}.")
                    or wanted.startswith(f"{changed}.")
                ):
                    return True
        return False

    def to_dict(self) -> dict[str, dict[str, Any]]:
        """Plain representation for logging."""
        return {path: {"old": c.old, "new": c.new} for path, c in self.changes.items()}


def _canonical(value: Any) -> str:
    """Stable string form used for equality and set membership."""
    return json.dumps(value, sort_keys=True, default=str)


class DriftDetector:
    """Structural comparison of records against specs."""

    def __init__(self, schema: ResourceSchema | None = None) -> None:
        """Initialize detector.

        Args:
            schema: Field declarations. Without one every spec attribute is
                compared as a plain value and record-only keys are ignored.
        """
        self._schema = schema

    @property
    def schema(self) -> ResourceSchema | None:
        return self._schema

    def compare(self, record: ResourceRecord, spec: ResourceSpec) -> Diff:
        """Compare an observed record against a desired spec.

        Args:
            record: Last observed state.
            spec: Desired configuration.

        Returns:
            Diff of every comparable field that differs.
        """
        changes: dict[str, FieldChange] = {}
        fields = self._schema.fields if self._schema else {}
        desired = spec.attributes
        observed = record.attributes

        for name in sorted(set(desired) | set(fields)):
            schema = fields.get(name)
            if schema is None:
                self._compare(name, observed.get(name), desired[name], None, changes)
                continue
            if schema.computed_only:
                continue
            if name not in desired:
                if schema.mode == FieldMode.OPTIONAL_COMPUTED:
                    continue
                wanted = schema.default
            else:
                wanted = desired[name]
            self._compare(name, observed.get(name), wanted, schema, changes)

        diff = Diff(changes=changes)
        if diff:
            logger.debug(
                "Drift detected",
                extra={"resource_id": record.resource_id, "paths": diff.paths},
            )
        return diff

    def compare_records(self, before: ResourceRecord, after: ResourceRecord) -> Diff:
        """Compare two observations of the same resource.

        Used to report out-of-band drift between the stored record and a
        fresh read. Computed fields are excluded as in ``compare``.
        """
        changes: dict[str, FieldChange] = {}
        fields = self._schema.fields if self._schema else {}

        for name in sorted(set(before.attributes) | set(after.attributes)):
            schema = fields.get(name)
            if schema is not None and schema.computed_only:
                continue
            self._compare(
                name,
                before.attributes.get(name),
                after.attributes.get(name),
                schema,
                changes,
            )
        return Diff(changes=changes)

    def _compare(
        self,
        path: str,
        old: Any,
        new: Any,
        schema: FieldSchema | None,
        changes: dict[str, FieldChange],
    ) -> None:
        if schema is None:
            if _canonical(old) != _canonical(new):
                changes[path] = FieldChange(old=old, new=new)
            return

        old_n = normalize(old, schema.normalize)
        new_n = normalize(new, schema.normalize)

        match schema.type:
            case FieldType.MAP if schema.elem is not None:
                self._compare_nested_map(path, old_n, new_n, schema.elem, changes)
            case FieldType.MAP if schema.subset:
                self._compare_subset_map(path, old_n, new_n, changes)
            case FieldType.SET:
                if not self._sets_equal(old_n, new_n, schema.elem):
                    changes[path] = FieldChange(old=old, new=new)
            case FieldType.LIST:
                if _canonical(self._project_list(old_n, schema.elem)) != _canonical(
                    self._project_list(new_n, schema.elem)
                ):
                    changes[path] = FieldChange(old=old, new=new)
            case _:
                if _canonical(old_n) != _canonical(new_n):
                    changes[path] = FieldChange(old=old, new=new)

    def _compare_nested_map(
        self,
        path: str,
        old: Any,
        new: Any,
        elem: dict[str, FieldSchema],
        changes: dict[str, FieldChange],
    ) -> None:
        if not isinstance(old, Mapping) or not isinstance(new, Mapping):
            if _canonical(old) != _canonical(new):
                changes[path] = FieldChange(old=old, new=new)
            return

        for name, sub in elem.items():
            if sub.computed_only:
                continue
            if name not in new:
                if sub.mode == FieldMode.OPTIONAL_COMPUTED:
                    continue
                wanted = sub.default
            else:
                wanted = new[name]
            self._compare(f"{path}.{name}", old.get(name), wanted, sub, changes)

        for name in new:
            if name not in elem:
                self._compare(f"{path}.{name}", old.get(name), new[name], None, changes)

    def _compare_subset_map(
        self,
        path: str,
        old: Any,
        new: Any,
        changes: dict[str, FieldChange],
    ) -> None:
        if new is None:
            return
        if not isinstance(new, Mapping) or not isinstance(old, Mapping):
            if _canonical(old) != _canonical(new):
                changes[path] = FieldChange(old=old, new=new)
            return
        for key, wanted in new.items():
            current = old.get(key)
            if isinstance(wanted, Mapping) and isinstance(current, Mapping):
                self._compare_subset_map(f"{path}.{key}", current, wanted, changes)
            elif _canonical(current) != _canonical(wanted):
                changes[f"{path}.{key}"] = FieldChange(old=current, new=wanted)

    def _project(self, value: Any, elem: dict[str, FieldSchema] | None) -> Any:
        """Strip computed and unset optional-computed keys from one element."""
        if elem is None or not isinstance(value, Mapping):
            return value
        projected: dict[str, Any] = {}
        for name, sub in elem.items():
            if sub.computed_only or sub.mode == FieldMode.OPTIONAL_COMPUTED:
                continue
            item = value.get(name, sub.default)
            item = normalize(item, sub.normalize)
            if sub.type == FieldType.SET and isinstance(item, list | tuple | set | frozenset):
                item = sorted((self._project(v, sub.elem) for v in item), key=_canonical)
            elif sub.type == FieldType.LIST:
                item = self._project_list(item, sub.elem)
            elif sub.elem is not None:
                item = self._project(item, sub.elem)
            projected[name] = item
        return projected

    def _project_list(self, value: Any, elem: dict[str, FieldSchema] | None) -> Any:
        if not isinstance(value, list | tuple):
            return value
        return [self._project(v, elem) for v in value]

    def _sets_equal(
        self, old: Any, new: Any, elem: dict[str, FieldSchema] | None
    ) -> bool:
        if not isinstance(old, list | tuple | set | frozenset) or not isinstance(
            new, list | tuple | set | frozenset
        ):
            return _canonical(old) == _canonical(new)
        old_keys = Counter(_canonical(self._project(v, elem)) for v in old)
        new_keys = Counter(_canonical(self._project(v, elem)) for v in new)
        return old_keys == new_keys
