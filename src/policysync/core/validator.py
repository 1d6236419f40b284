"""
Variant validation and payload normalization.

Lifecycle of a desired payload before it reaches the wire:
  reject unknown fields -> exactly-one exclusive group -> decode documents
  -> clear inactive groups -> apply companions of the active group
  -> required fields

Everything here is local; a failure raises a ValidationError subclass and no
request is ever built.
"""

from __future__ import annotations

import copy
import json
from typing import Any, Dict, List, Optional, Tuple

from .descriptors import ExclusiveGroup, ResourceDescriptor
from .errors import DocumentError, ExactlyOneViolation, ValidationError

Payload = Dict[str, Any]


def is_populated(value: Any) -> bool:
    """A value counts as set unless it is None, blank text or an empty container."""
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def populated_groups(descriptor: ResourceDescriptor, payload: Payload) -> Tuple[ExclusiveGroup, ...]:
    return tuple(
        g for g in descriptor.exclusive_groups
        if any(is_populated(payload.get(f)) for f in g.fields)
    )


def validate(descriptor: ResourceDescriptor, payload: Payload) -> Optional[ExclusiveGroup]:
    """
    Check the exclusive groups of `payload`; return the active group.

    Returns None for descriptors without exclusive groups. Raises
    ExactlyOneViolation naming every populated group when zero or several
    groups are populated.
    """
    if not descriptor.exclusive_groups:
        return None
    active = populated_groups(descriptor, payload)
    if len(active) != 1:
        raise ExactlyOneViolation(
            kind=descriptor.kind,
            populated=tuple(g.name for g in active),
            groups=tuple(g.name for g in descriptor.exclusive_groups),
        )
    return active[0]


def _decode_document(descriptor: ResourceDescriptor, name: str, value: Any) -> Any:
    if not is_populated(value):
        return value
    if isinstance(value, dict):
        return copy.deepcopy(value)
    if isinstance(value, str):
        try:
            doc = json.loads(value)
        except json.JSONDecodeError as exc:
            raise DocumentError(kind=descriptor.kind, field_name=name, message=str(exc)) from exc
        if not isinstance(doc, dict):
            raise DocumentError(
                kind=descriptor.kind,
                field_name=name,
                message=f"expected a JSON object, got {type(doc).__name__}",
            )
        return doc
    raise DocumentError(kind=descriptor.kind, field_name=name, message=f"unsupported type {type(value).__name__}")


def normalize(descriptor: ResourceDescriptor, payload: Payload) -> Payload:
    """
    Return the wire-ready copy of a desired payload.

    The input is never mutated. Fields of inactive exclusive groups are
    dropped, so switching groups on Update clears the previous variant.
    """
    allowed = set(descriptor.field_names) | {descriptor.identity_field}
    unknown = sorted(k for k in payload if k not in allowed)
    if unknown:
        raise ValidationError(f"{descriptor.kind}: unknown field(s): {', '.join(unknown)}")

    active = validate(descriptor, payload)

    out: Payload = {}
    for key, value in payload.items():
        spec = descriptor.field_spec(key)
        if spec is not None and spec.type == "document":
            out[key] = _decode_document(descriptor, key, value)
        else:
            out[key] = copy.deepcopy(value)

    if active is not None:
        for g in descriptor.exclusive_groups:
            if g is active:
                continue
            for fname in g.fields:
                out.pop(fname, None)
        for cname, cvalue in active.companions.items():
            out[cname] = copy.deepcopy(cvalue)

    missing: List[str] = [
        f.name for f in descriptor.fields
        if f.required and not is_populated(out.get(f.name))
    ]
    if missing:
        raise ValidationError(f"{descriptor.kind}: missing required field(s): {', '.join(missing)}")
    return out
