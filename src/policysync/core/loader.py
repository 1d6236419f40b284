"""
Descriptor loader: YAML descriptor files with `extends` inheritance.

A descriptor file looks like:

    kind: group
    resource: groups
    addressing: named_collection
    identity_field: name
    fields:
      name: {type: string, required: true}
      members: list
    update:
      envelope: payload          # or: wrapped + payload_key
    delete_with_body: true
    exclusive_groups:
      - name: attr
        fields: [attr]
      - name: app
        fields: [app]
        companions: {target: ["*"]}
    default:                     # default_or_named only
      name: default
      fields: {rules: defaultSourcePosture}
    diff:
      list_as_sets: [members]
      ignore_fields: []

The built-in catalog is expressed in the same shape and goes through the
same `descriptor_from_mapping`, so every kind is validated identically.
"""

from __future__ import annotations

import copy
import os
from typing import Any, Dict, List, Optional

import yaml

from .descriptors import ENVELOPE_PAYLOAD, ExclusiveGroup, FieldSpec, ResourceDescriptor
from .errors import DescriptorError

_TOP_LEVEL_KEYS = {
    "kind", "extends", "description", "resource", "addressing", "identity_field",
    "singleton_label", "fields", "update", "delete_with_body", "exclusive_groups",
    "default", "diff", "abstract",
}


def _deep_merge(base: Dict[str, Any], ext: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge: dicts merge recursively; lists/scalars override."""
    result = copy.deepcopy(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(result.get(k), dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = copy.deepcopy(v)
    return result


def _field_specs(kind: str, raw: Any) -> tuple:
    if not isinstance(raw, dict) or not raw:
        raise DescriptorError(f"{kind}: 'fields' must be a non-empty mapping")
    specs: List[FieldSpec] = []
    for name, spec in raw.items():
        if isinstance(spec, str):
            specs.append(FieldSpec(name=str(name), type=spec))
        elif isinstance(spec, dict):
            unknown = set(spec) - {"type", "required"}
            if unknown:
                raise DescriptorError(f"{kind}: field '{name}' has unknown key(s): {', '.join(sorted(unknown))}")
            specs.append(FieldSpec(name=str(name), type=spec.get("type", "string"), required=bool(spec.get("required", False))))
        else:
            raise DescriptorError(f"{kind}: field '{name}' must be a type name or a map")
    return tuple(specs)


def _groups(kind: str, raw: Any) -> tuple:
    if raw in (None, []):
        return ()
    if not isinstance(raw, list):
        raise DescriptorError(f"{kind}: 'exclusive_groups' must be a list")
    out: List[ExclusiveGroup] = []
    for g in raw:
        if not isinstance(g, dict) or not g.get("name") or not g.get("fields"):
            raise DescriptorError(f"{kind}: each exclusive group needs 'name' and 'fields'")
        companions = g.get("companions") or {}
        if not isinstance(companions, dict):
            raise DescriptorError(f"{kind}: companions of group '{g['name']}' must be a mapping")
        out.append(ExclusiveGroup(name=str(g["name"]), fields=tuple(g["fields"]), companions=dict(companions)))
    return tuple(out)


def descriptor_from_mapping(name: str, cfg: Dict[str, Any]) -> ResourceDescriptor:
    """Validate a (merged) descriptor mapping and build the typed descriptor."""
    unknown = set(cfg) - _TOP_LEVEL_KEYS
    if unknown:
        raise DescriptorError(f"Descriptor '{name}' has unknown key(s): {', '.join(sorted(unknown))}")
    for section in ("resource", "addressing", "fields"):
        if section not in cfg:
            raise DescriptorError(f"Descriptor '{name}' missing required section: {section}")

    kind = str(cfg.get("kind") or name)
    update = cfg.get("update") or {}
    default = cfg.get("default") or {}
    diff = cfg.get("diff") or {}

    return ResourceDescriptor(
        kind=kind,
        resource=str(cfg["resource"]),
        addressing=str(cfg["addressing"]),
        fields=_field_specs(kind, cfg["fields"]),
        identity_field=str(cfg.get("identity_field", "name")),
        singleton_label=str(cfg.get("singleton_label", "")),
        update_envelope=str(update.get("envelope", ENVELOPE_PAYLOAD)),
        payload_key=str(update.get("payload_key", "")),
        delete_with_body=bool(cfg.get("delete_with_body", True)),
        exclusive_groups=_groups(kind, cfg.get("exclusive_groups")),
        default_name=str(default.get("name", "default")),
        default_fields=dict(default.get("fields") or {}),
        list_as_sets=tuple(diff.get("list_as_sets") or ()),
        ignore_fields=tuple(diff.get("ignore_fields") or ()),
        description=str(cfg.get("description", "")),
    )


class DescriptorLoader:
    """
    Load descriptors from disk, supporting `extends: "<parent>"` inheritance.

    Search order: the provided `search_paths`, checked in order for `<name>.yml`.
    Names not found on disk fall back to the built-in catalog.
    """

    def __init__(self, search_paths: Optional[List[str]] = None, *, builtins: bool = True) -> None:
        self.search_paths = list(search_paths or [])
        self.builtins = builtins

    def _find_path(self, name: str) -> Optional[str]:
        for base in self.search_paths:
            for ext in (".yml", ".yaml"):
                candidate = os.path.join(base, f"{name}{ext}")
                if os.path.exists(candidate):
                    return candidate
        return None

    def _read_yaml(self, path: str) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise DescriptorError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise DescriptorError(f"Top-level YAML must be a mapping: {path}")
        return data

    def _raw(self, name: str) -> Dict[str, Any]:
        path = self._find_path(name)
        if path:
            return self._read_yaml(path)
        if self.builtins:
            from .catalog import BUILTIN_DESCRIPTORS

            if name in BUILTIN_DESCRIPTORS:
                return copy.deepcopy(BUILTIN_DESCRIPTORS[name])
        raise DescriptorError(f"Descriptor '{name}' not found in {self.search_paths or ['<builtin>']}")

    def _load_recursive(self, name: str, stack: Optional[List[str]] = None) -> Dict[str, Any]:
        stack = stack or []
        if name in stack:
            raise DescriptorError(f"Inheritance cycle detected: {' -> '.join(stack + [name])}")
        data = self._raw(name)
        # `kind` and `abstract` are never inherited
        own_kind = data.get("kind", name)
        abstract = bool(data.get("abstract", False))
        parent = data.pop("extends", None)
        if parent:
            data = _deep_merge(self._load_recursive(str(parent), stack + [name]), data)
        data["kind"] = own_kind
        data["abstract"] = abstract
        return data

    def load(self, name: str) -> ResourceDescriptor:
        """Load and validate a descriptor by name (without extension)."""
        data = self._load_recursive(name)
        if data.pop("abstract", False):
            raise DescriptorError(f"Descriptor '{name}' is abstract and can only be extended")
        return descriptor_from_mapping(name, data)

    def available(self) -> List[str]:
        """Concrete descriptor names visible to this loader, sorted."""
        names = set()
        if self.builtins:
            from .catalog import BUILTIN_DESCRIPTORS

            names.update(BUILTIN_DESCRIPTORS)
        for base in self.search_paths:
            if not os.path.isdir(base):
                continue
            for entry in os.listdir(base):
                stem, ext = os.path.splitext(entry)
                if ext in (".yml", ".yaml") and not self._read_yaml(os.path.join(base, entry)).get("abstract"):
                    names.add(stem)
        return sorted(names)
