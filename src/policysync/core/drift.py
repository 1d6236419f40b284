"""
Drift detection and desired-state decisions.

- `detect` compares a freshly observed value with the previously stored one,
  field by field. The report is informational; nothing is corrected here.
- `decide` is the caller-side comparison of desired vs observed that turns
  into CREATE / UPDATE / NOOP.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple

from .descriptors import ResourceDescriptor

Op = Literal["NOOP", "CREATE", "UPDATE", "DELETE"]


@dataclass(frozen=True)
class FieldChange:
    field: str
    stored: Any
    observed: Any


@dataclass(frozen=True)
class DriftReport:
    """Outcome of comparing stored state with a fresh Read."""
    kind: str
    identity: str
    changes: Tuple[FieldChange, ...] = ()
    removed: bool = False

    @property
    def drifted(self) -> bool:
        return self.removed or bool(self.changes)

    def summary(self) -> str:
        if self.removed:
            return f"{self.kind}[{self.identity}] removed out-of-band"
        if not self.changes:
            return f"{self.kind}[{self.identity}] in sync"
        return f"{self.kind}[{self.identity}] drifted: {', '.join(c.field for c in self.changes)}"


@dataclass(frozen=True)
class Decision:
    """Diff outcome for a single desired item."""
    op: Op
    reason: str


def make_comparable(
    obj: Optional[Dict[str, Any]],
    *,
    list_as_sets: Iterable[str] = (),
    ignore_fields: Iterable[str] = (),
) -> Dict[str, Any]:
    """
    Normalize a dict for comparison:
      - configured list fields become sorted lists (set-like compare)
      - ignored fields are dropped
      - empty values (None, "", [], {}) are dropped, so an omitted optional
        field equals an empty one
    """
    obj = copy.deepcopy(obj or {})
    sets = set(list_as_sets)
    ignored = set(ignore_fields)
    out: Dict[str, Any] = {}
    for k, v in obj.items():
        if k in ignored or v is None or v == "" or v == [] or v == {}:
            continue
        if isinstance(v, list) and k in sets:
            try:
                v = sorted(v)
            except TypeError:
                v = sorted(v, key=repr)
        out[k] = v
    return out


def _comparable(descriptor: ResourceDescriptor, obj: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return make_comparable(obj, list_as_sets=descriptor.list_as_sets, ignore_fields=descriptor.ignore_fields)


def detect(
    descriptor: ResourceDescriptor,
    identity: str,
    stored: Optional[Dict[str, Any]],
    observed: Optional[Dict[str, Any]],
) -> DriftReport:
    """
    Compare the last stored value with a freshly observed one.

    `observed=None` means the Read came back not-found. With no stored
    baseline there is nothing to drift from and the report is empty.
    """
    if observed is None:
        return DriftReport(kind=descriptor.kind, identity=identity, removed=stored is not None)
    if stored is None:
        return DriftReport(kind=descriptor.kind, identity=identity)

    before = _comparable(descriptor, stored)
    after = _comparable(descriptor, observed)
    changes: List[FieldChange] = []
    for key in sorted(set(before) | set(after)):
        if before.get(key) != after.get(key):
            changes.append(FieldChange(field=key, stored=before.get(key), observed=after.get(key)))
    return DriftReport(kind=descriptor.kind, identity=identity, changes=tuple(changes))


def decide(
    descriptor: ResourceDescriptor,
    desired: Dict[str, Any],
    observed: Optional[Dict[str, Any]],
    *,
    exists: bool,
) -> Decision:
    """
    Compute a Decision from desired vs observed.

    Only declared fields are compared, so server-assigned keys (ids,
    timestamps) never force an update.
    """
    if not exists:
        return Decision(op="CREATE", reason="Not found")
    if observed is None:
        return Decision(op="UPDATE", reason="No observed state")

    want = _comparable(descriptor, desired)
    have = _comparable(descriptor, observed)
    for k in sorted(set(want) | set(k for k in have if k in descriptor.field_names)):
        if k == descriptor.identity_field:
            continue
        if want.get(k) != have.get(k):
            return Decision(op="UPDATE", reason=f"Field differs: {k}")
    return Decision(op="NOOP", reason="Identical subset")
