"""
Error taxonomy for policysync.

- ValidationError: local, raised before any network call, never retried.
- RemoteFailure: the service answered with a status >= 300 other than 404.
- TransportError: no usable response (connection, DNS, timeout, decode).

Not-found is deliberately absent: Read/Update/Delete turn a 404 into the
ABSENT state instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


class PolicySyncError(Exception):
    """Base class for every error raised by policysync."""


class ConfigError(PolicySyncError):
    """Raised when runtime configuration cannot be resolved."""


class DescriptorError(PolicySyncError):
    """Raised when a resource descriptor (or descriptor profile) is invalid."""


class ValidationError(PolicySyncError):
    """Raised when a desired payload is rejected locally."""


@dataclass
class ExactlyOneViolation(ValidationError):
    """Zero, or more than one, exclusive field group is populated."""
    kind: str
    populated: Tuple[str, ...] = ()
    groups: Tuple[str, ...] = ()

    def __str__(self) -> str:
        if not self.populated:
            return (
                f"{self.kind}: exactly one of {', '.join(self.groups)} must be set, none is"
            )
        return (
            f"{self.kind}: exactly one of {', '.join(self.groups)} must be set, "
            f"got {', '.join(self.populated)}"
        )


@dataclass
class DocumentError(ValidationError):
    """A structured-document field does not hold a valid JSON object."""
    kind: str
    field_name: str
    message: str = ""

    def __str__(self) -> str:
        return f"{self.kind}: invalid document in '{self.field_name}': {self.message}"


@dataclass
class IdentityConflict(ValidationError):
    """The desired name differs from the identity assigned at create time."""
    kind: str
    identity: str
    desired: str

    def __str__(self) -> str:
        return (
            f"{self.kind}: cannot rename '{self.identity}' to '{self.desired}' "
            "(identity is immutable once created)"
        )


@dataclass
class RemoteFailure(PolicySyncError):
    """The service answered with a failure status; body kept verbatim."""
    status: int
    url: str
    body: str = ""
    method: str = ""

    def __str__(self) -> str:
        base = f"RemoteFailure(status={self.status}, {self.method} {self.url})"
        if self.body:
            base += f": {self.body}"
        return base


@dataclass
class TransportError(PolicySyncError):
    """No usable response was produced for the request."""
    url: str
    message: str = ""
    method: str = ""

    def __str__(self) -> str:
        return f"TransportError({self.method} {self.url}): {self.message}"


class ResponseDecodeError(TransportError):
    """A 2xx response body could not be decoded as a JSON object."""


class Cancelled(TransportError):
    """The caller cancelled the operation; no state update was applied."""
