"""
Resource descriptors and addressing resolution.

A descriptor is a static value describing one entity kind of the policy
service: where it lives, how its identity maps onto paths, which fields it
carries and which of them are mutually exclusive. Everything here is pure:
no I/O, same inputs give the same paths and bodies.

Addressing modes:
  - singleton         one instance at a fixed path, identity is a constant label
  - named_collection  identity is the user-supplied name
  - id_collection     identity is minted by the server on create
  - default_or_named  the literal name "default" is routed to <resource>/default
                      with a bare field body; any other name is named_collection
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Mapping, Optional, Tuple
from urllib.parse import quote

from .errors import DescriptorError

Addressing = Literal["singleton", "named_collection", "id_collection", "default_or_named"]

SINGLETON = "singleton"
NAMED_COLLECTION = "named_collection"
ID_COLLECTION = "id_collection"
DEFAULT_OR_NAMED = "default_or_named"
ADDRESSING_MODES = (SINGLETON, NAMED_COLLECTION, ID_COLLECTION, DEFAULT_OR_NAMED)

# update_envelope
ENVELOPE_PAYLOAD = "payload"   # payload alone, identity implied by path or body field
ENVELOPE_WRAPPED = "wrapped"   # {"id": <identity>, <payload_key>: payload}

FIELD_TYPES = ("string", "list", "map", "bool", "int", "document", "object")

Payload = Dict[str, Any]


@dataclass(frozen=True)
class FieldSpec:
    """One payload field. `document` fields hold a JSON object (or its text)."""
    name: str
    type: str = "string"
    required: bool = False


@dataclass(frozen=True)
class ExclusiveGroup:
    """A named set of fields; exactly one group may be populated per instance."""
    name: str
    fields: Tuple[str, ...]
    companions: Mapping[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class Paths:
    """Concrete paths for one identity; None where the identity is still unknown."""
    create: str
    read: Optional[str]
    update: Optional[str]
    delete: Optional[str]


@dataclass(frozen=True)
class Request:
    method: str
    path: str
    body: Optional[Payload] = None


@dataclass(frozen=True)
class ResourceDescriptor:
    """Typed, validated description of one entity kind."""

    kind: str
    resource: str
    addressing: str
    fields: Tuple[FieldSpec, ...]
    identity_field: str = "name"
    singleton_label: str = ""
    update_envelope: str = ENVELOPE_PAYLOAD
    payload_key: str = ""
    delete_with_body: bool = True
    exclusive_groups: Tuple[ExclusiveGroup, ...] = ()
    default_name: str = "default"
    default_fields: Mapping[str, str] = field(default_factory=dict, hash=False)
    list_as_sets: Tuple[str, ...] = ()
    ignore_fields: Tuple[str, ...] = ()
    description: str = ""

    def __post_init__(self) -> None:
        if not self.kind:
            raise DescriptorError("descriptor kind is required")
        if self.addressing not in ADDRESSING_MODES:
            raise DescriptorError(
                f"{self.kind}: unknown addressing '{self.addressing}' (expected one of {', '.join(ADDRESSING_MODES)})"
            )
        if not self.resource.strip("/"):
            raise DescriptorError(f"{self.kind}: resource path is required")
        if self.update_envelope not in (ENVELOPE_PAYLOAD, ENVELOPE_WRAPPED):
            raise DescriptorError(f"{self.kind}: unknown update envelope '{self.update_envelope}'")
        if self.update_envelope == ENVELOPE_WRAPPED and not self.payload_key:
            raise DescriptorError(f"{self.kind}: a wrapped update envelope needs payload_key")
        if self.addressing == SINGLETON and not self.singleton_label:
            raise DescriptorError(f"{self.kind}: singleton kinds need singleton_label")
        if self.addressing == DEFAULT_OR_NAMED and not self.default_fields:
            raise DescriptorError(f"{self.kind}: default_or_named kinds need default_fields")

        names = [f.name for f in self.fields]
        if len(set(names)) != len(names):
            raise DescriptorError(f"{self.kind}: duplicate field names")
        for f in self.fields:
            if f.type not in FIELD_TYPES:
                raise DescriptorError(f"{self.kind}: field '{f.name}' has unknown type '{f.type}'")
        known = set(names)
        if self.addressing in (NAMED_COLLECTION, DEFAULT_OR_NAMED) and self.identity_field not in known:
            raise DescriptorError(f"{self.kind}: identity field '{self.identity_field}' is not a declared field")
        seen: Dict[str, str] = {}
        for g in self.exclusive_groups:
            for fname in g.fields:
                if fname not in known:
                    raise DescriptorError(f"{self.kind}: group '{g.name}' references unknown field '{fname}'")
                if fname in seen:
                    raise DescriptorError(
                        f"{self.kind}: field '{fname}' belongs to both '{seen[fname]}' and '{g.name}'"
                    )
                seen[fname] = g.name
            for cname in g.companions:
                if cname not in known:
                    raise DescriptorError(f"{self.kind}: group '{g.name}' forces unknown field '{cname}'")
        for local in self.default_fields:
            if local not in known:
                raise DescriptorError(f"{self.kind}: default field '{local}' is not a declared field")

    # ----- Introspection -----
    @property
    def root(self) -> str:
        return "/" + self.resource.strip("/")

    @property
    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def field_spec(self, name: str) -> Optional[FieldSpec]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def is_name_keyed(self) -> bool:
        return self.addressing in (NAMED_COLLECTION, DEFAULT_OR_NAMED)

    def is_default(self, identity: Optional[str]) -> bool:
        return self.addressing == DEFAULT_OR_NAMED and identity == self.default_name

    # ----- Resolution -----
    def resolve(self, identity: Optional[str] = None) -> Paths:
        return resolve(self, identity)

    def create_request(self, payload: Payload) -> Request:
        """Request for Create; `payload` is already normalized."""
        if self.addressing == SINGLETON:
            return Request("POST", self.root, dict(payload))
        if self.addressing == ID_COLLECTION:
            body = {k: v for k, v in payload.items() if k != self.identity_field}
            return Request("POST", self.root, body)
        name = payload.get(self.identity_field)
        if not name:
            raise DescriptorError(f"{self.kind}: create needs '{self.identity_field}'")
        if self.is_default(name):
            return Request("PUT", self._default_path, self.default_body(payload))
        return Request("POST", self.root, dict(payload))

    def read_request(self, identity: str) -> Request:
        return Request("GET", self._require(resolve(self, identity).read, identity))

    def update_request(self, identity: str, payload: Payload) -> Request:
        path = self._require(resolve(self, identity).update, identity)
        if self.is_default(identity):
            return Request("PUT", path, self.default_body(payload))
        if self.update_envelope == ENVELOPE_WRAPPED:
            inner = {k: v for k, v in payload.items() if k != self.identity_field}
            return Request("PUT", path, {self.identity_field: identity, self.payload_key: inner})
        body = dict(payload)
        if self.is_name_keyed:
            body[self.identity_field] = identity
        return Request("PUT", path, body)

    def delete_request(self, identity: str) -> Request:
        path = self._require(resolve(self, identity).delete, identity)
        if self.addressing == SINGLETON or self.is_default(identity) or not self.delete_with_body:
            return Request("DELETE", path)
        return Request("DELETE", path, {self.identity_field: identity})

    # ----- Payload shapes -----
    def default_body(self, payload: Payload) -> Payload:
        """Bare field body of the default instance, e.g. {"defaultSourcePosture": [...]}."""
        return {wire: copy.deepcopy(payload.get(local)) for local, wire in self.default_fields.items()}

    def observed_from_response(self, identity: Optional[str], data: Any) -> Optional[Payload]:
        """Turn a decoded 2xx body into an observed value (None for an empty body)."""
        if data is None:
            return None
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
        if self.is_default(identity):
            observed: Payload = {self.identity_field: self.default_name}
            for local, wire in self.default_fields.items():
                observed[local] = data.get(wire)
            return observed
        return data

    def identity_after_create(self, payload: Payload, observed: Optional[Payload]) -> str:
        """Identity of a freshly created instance; empty string when unknown."""
        if self.addressing == SINGLETON:
            return self.singleton_label
        if self.addressing == ID_COLLECTION:
            value = (observed or {}).get(self.identity_field)
            return str(value) if value not in (None, "") else ""
        return str(payload.get(self.identity_field) or "")

    # ----- Internal -----
    @property
    def _default_path(self) -> str:
        return f"{self.root}/{quote(self.default_name, safe='')}"

    def _require(self, path: Optional[str], identity: Optional[str]) -> str:
        if path is None:
            raise DescriptorError(f"{self.kind}: identity is required (got {identity!r})")
        return path


def resolve(descriptor: ResourceDescriptor, identity: Optional[str] = None) -> Paths:
    """
    Resolve the four concrete paths for `identity`.

    Pure and deterministic. Collection paths that need an identity are None
    while the identity is absent (ID kinds before their first Create).
    """
    root = descriptor.root
    mode = descriptor.addressing

    if mode == SINGLETON:
        return Paths(create=root, read=root, update=root, delete=root)

    if descriptor.is_default(identity):
        path = descriptor._default_path
        return Paths(create=path, read=path, update=path, delete=path)

    if not identity:
        return Paths(create=root, read=None, update=None, delete=None)

    item = f"{root}/{quote(str(identity), safe='')}"
    if mode == ID_COLLECTION and descriptor.update_envelope == ENVELOPE_PAYLOAD:
        # identity implied by the path
        return Paths(create=root, read=item, update=item, delete=root if descriptor.delete_with_body else item)
    if not descriptor.delete_with_body:
        return Paths(create=root, read=item, update=root, delete=item)
    return Paths(create=root, read=item, update=root, delete=root)
