"""
Built-in descriptors for the entity kinds of the policy service.

Each entry has the same shape as a YAML descriptor file (see `loader`).
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, Dict, List

from .descriptors import ResourceDescriptor
from .loader import descriptor_from_mapping

BUILTIN_DESCRIPTORS: Dict[str, Dict[str, Any]] = {
    "acl": {
        "description": "Access rule; the server mints a stable id.",
        "resource": "acls",
        "addressing": "id_collection",
        "identity_field": "id",
        "fields": {
            "action": {"type": "string", "required": True},
            "src": {"type": "list", "required": True},
            "proto": "string",
            "dst": {"type": "list", "required": True},
        },
        "update": {"envelope": "wrapped", "payload_key": "entry"},
        "diff": {"list_as_sets": ["src", "dst"]},
    },
    "group": {
        "description": "Named group of members.",
        "resource": "groups",
        "addressing": "named_collection",
        "fields": {
            "name": {"type": "string", "required": True},
            "members": {"type": "list", "required": True},
        },
        "diff": {"list_as_sets": ["members"]},
    },
    "host": {
        "description": "Named host alias for an address or prefix.",
        "resource": "hosts",
        "addressing": "named_collection",
        "fields": {
            "name": {"type": "string", "required": True},
            "ip": {"type": "string", "required": True},
        },
    },
    "tag_owner": {
        "description": "Owners allowed to apply a tag.",
        "resource": "tagowners",
        "addressing": "named_collection",
        "fields": {
            "name": {"type": "string", "required": True},
            "owners": {"type": "list", "required": True},
        },
        "diff": {"list_as_sets": ["owners"]},
    },
    "nodeattr": {
        "description": "Node attribute grant: plain attributes or a structured app document.",
        "resource": "nodeattrs",
        "addressing": "id_collection",
        "identity_field": "id",
        "fields": {
            "target": {"type": "list", "required": True},
            "attr": "list",
            "app": "document",
        },
        "update": {"envelope": "wrapped", "payload_key": "grant"},
        "exclusive_groups": [
            {"name": "attr", "fields": ["attr"]},
            {"name": "app", "fields": ["app"], "companions": {"target": ["*"]}},
        ],
        "diff": {"list_as_sets": ["target", "attr"]},
    },
    "posture": {
        "description": "Posture rules; the 'default' posture is the defaultSourcePosture list.",
        "resource": "postures",
        "addressing": "default_or_named",
        "fields": {
            "name": {"type": "string", "required": True},
            "rules": {"type": "list", "required": True},
        },
        "default": {"name": "default", "fields": {"rules": "defaultSourcePosture"}},
    },
    "ssh": {
        "description": "SSH rule; the server mints a stable id.",
        "resource": "ssh",
        "addressing": "id_collection",
        "identity_field": "id",
        "fields": {
            "action": {"type": "string", "required": True},
            "src": {"type": "list", "required": True},
            "dst": {"type": "list", "required": True},
            "users": {"type": "list", "required": True},
            "checkPeriod": "string",
            "acceptEnv": "list",
        },
        "update": {"envelope": "wrapped", "payload_key": "rule"},
        "diff": {"list_as_sets": ["src", "dst", "users", "acceptEnv"]},
    },
    "settings": {
        "description": "Global network settings.",
        "resource": "settings",
        "addressing": "singleton",
        "singleton_label": "settings",
        "fields": {
            "disableIPv4": {"type": "bool", "required": True},
            "oneCGNATRoute": {"type": "string", "required": True},
            "randomizeClientPort": {"type": "bool", "required": True},
        },
    },
    "auto_approvers": {
        "description": "Auto-approval of advertised routes and exit nodes.",
        "resource": "autoapprovers",
        "addressing": "singleton",
        "singleton_label": "autoapprovers",
        "fields": {
            "routes": "map",
            "exitNode": "list",
        },
        "diff": {"list_as_sets": ["exitNode"]},
    },
    "derpmap": {
        "description": "Relay map: custom regions, optionally replacing the defaults.",
        "resource": "derpmap",
        "addressing": "singleton",
        "singleton_label": "derpmap",
        "fields": {
            "OmitDefaultRegions": "bool",
            "Regions": {"type": "list", "required": True},
        },
    },
}


@lru_cache(maxsize=None)
def get_descriptor(kind: str) -> ResourceDescriptor:
    """Built-in descriptor for `kind` (DescriptorError for unknown kinds via the loader)."""
    from .errors import DescriptorError

    if kind not in BUILTIN_DESCRIPTORS:
        raise DescriptorError(f"Unknown kind '{kind}' (known: {', '.join(sorted(BUILTIN_DESCRIPTORS))})")
    return descriptor_from_mapping(kind, dict(BUILTIN_DESCRIPTORS[kind], kind=kind))


def builtin_kinds() -> List[str]:
    return sorted(BUILTIN_DESCRIPTORS)
