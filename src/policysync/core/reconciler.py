"""
Reconciler: drives one resource instance through Create / Read / Update / Delete.

States:
  ABSENT -> CREATING -> PRESENT -> READING | UPDATING -> PRESENT
                                -> DELETING -> ABSENT

Rules:
  - Validation runs before any request is built (fail fast, no partial mutation).
  - `observed` is only ever replaced wholesale by a full remote response.
  - A 404 on Read / Update / Delete means the entity is gone: the instance
    becomes ABSENT and the result carries `drop=True`. It is not an error.
  - Any other failure raises; the instance is restored to the state it had
    before the call.
  - Exactly one network attempt per call; no retries.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .descriptors import Request, ResourceDescriptor
from .drift import DriftReport, detect
from .errors import Cancelled, IdentityConflict, RemoteFailure, ResponseDecodeError, TransportError
from .transport import Failed, NotFound, Ok, Outcome, Transport, TransportFailure, _redact, _short_json
from .validator import normalize

ABSENT = "ABSENT"
CREATING = "CREATING"
PRESENT = "PRESENT"
READING = "READING"
UPDATING = "UPDATING"
DELETING = "DELETING"

Payload = Dict[str, Any]


@dataclass
class ResourceInstance:
    """Caller-owned state of one entity; the reconciler never keeps a copy."""
    kind: str
    identity: str = ""
    desired: Payload = field(default_factory=dict)
    observed: Optional[Payload] = None
    state: str = ABSENT

    @property
    def present(self) -> bool:
        return self.state == PRESENT


@dataclass(frozen=True)
class Result:
    """What one operation did; `drop` asks the caller to forget the instance."""
    op: str
    state: str
    identity: str
    observed: Optional[Payload] = None
    drop: bool = False
    drift: Optional[DriftReport] = None
    status: int = 0


class Reconciler:
    """One parameterized CRUD engine; a descriptor selects the entity kind."""

    def __init__(
        self,
        descriptor: ResourceDescriptor,
        transport: Transport,
        base_url: str,
        *,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.descriptor = descriptor
        self.transport = transport
        self.base_url = base_url.rstrip("/")
        self.log = logger or logging.getLogger("psync.reconciler")

    # ------------- Operations -------------

    def create(self, instance: ResourceInstance, *, cancel: Optional[threading.Event] = None) -> Result:
        d = self.descriptor
        payload = normalize(d, instance.desired)
        request = d.create_request(payload)

        prev = instance.state
        instance.state = CREATING
        try:
            outcome = self._send("CREATE", request, cancel)
            if isinstance(outcome, Ok):
                hint = payload.get(d.identity_field) if d.is_name_keyed else None
                observed = self._decode(request, outcome, hint)
                identity = d.identity_after_create(payload, observed)
                if not identity:
                    raise ResponseDecodeError(
                        url=self._url(request.path),
                        method=request.method,
                        message=f"response carries no '{d.identity_field}'",
                    )
            else:
                # not-found has no meaning for Create
                self._raise(request, outcome)
        except BaseException:
            instance.state = prev
            raise

        instance.identity = identity
        instance.observed = observed
        instance.state = PRESENT
        self.log.info("%s[%s] created", d.kind, identity)
        return Result(op="CREATE", state=PRESENT, identity=identity, observed=copy.deepcopy(observed), status=outcome.status)

    def read(self, instance: ResourceInstance, *, cancel: Optional[threading.Event] = None) -> Result:
        d = self.descriptor
        if not instance.identity:
            return self._gone(instance, "READ", reason="no identity")
        request = d.read_request(instance.identity)

        prev = instance.state
        instance.state = READING
        try:
            outcome = self._send("READ", request, cancel)
            if isinstance(outcome, NotFound):
                drift = detect(d, instance.identity, instance.observed, None)
                return self._gone(instance, "READ", reason="not found", drift=drift)
            if not isinstance(outcome, Ok):
                self._raise(request, outcome)
            observed = self._decode(request, outcome, instance.identity)
        except BaseException:
            if instance.state == READING:
                instance.state = prev
            raise

        drift = detect(d, instance.identity, instance.observed, observed)
        if drift.drifted:
            self.log.info("%s", drift.summary())
        instance.observed = observed
        instance.state = PRESENT
        return Result(
            op="READ",
            state=PRESENT,
            identity=instance.identity,
            observed=copy.deepcopy(observed),
            drift=drift,
            status=outcome.status,
        )

    def update(
        self,
        instance: ResourceInstance,
        desired: Optional[Payload] = None,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> Result:
        d = self.descriptor
        instance_desired = instance.desired if desired is None else desired
        if not instance.identity:
            return self._gone(instance, "UPDATE", reason="no identity")

        candidate = dict(instance_desired)
        if d.is_name_keyed:
            name = candidate.get(d.identity_field)
            if name not in (None, "") and str(name) != instance.identity:
                raise IdentityConflict(kind=d.kind, identity=instance.identity, desired=str(name))
            candidate[d.identity_field] = instance.identity
        payload = normalize(d, candidate)
        request = d.update_request(instance.identity, payload)

        prev = instance.state
        instance.state = UPDATING
        try:
            outcome = self._send("UPDATE", request, cancel)
            if isinstance(outcome, NotFound):
                return self._gone(instance, "UPDATE", reason="vanished before update")
            if not isinstance(outcome, Ok):
                self._raise(request, outcome)
            observed = self._decode(request, outcome, instance.identity)
        except BaseException:
            if instance.state == UPDATING:
                instance.state = prev
            raise

        instance.desired = copy.deepcopy(instance_desired)
        instance.observed = observed
        instance.state = PRESENT
        self.log.info("%s[%s] updated", d.kind, instance.identity)
        return Result(
            op="UPDATE",
            state=PRESENT,
            identity=instance.identity,
            observed=copy.deepcopy(observed),
            status=outcome.status,
        )

    def delete(self, instance: ResourceInstance, *, cancel: Optional[threading.Event] = None) -> Result:
        d = self.descriptor
        if not instance.identity:
            return self._gone(instance, "DELETE", reason="no identity")
        request = d.delete_request(instance.identity)

        prev = instance.state
        instance.state = DELETING
        try:
            outcome = self._send("DELETE", request, cancel)
            if isinstance(outcome, (Ok, NotFound)):
                return self._gone(instance, "DELETE", reason="deleted" if isinstance(outcome, Ok) else "already gone")
            self._raise(request, outcome)
        except BaseException:
            if instance.state == DELETING:
                instance.state = prev
            raise
        raise AssertionError("unreachable")  # pragma: no cover

    def lookup(self, identity: str, *, cancel: Optional[threading.Event] = None) -> Optional[Payload]:
        """Read-only fetch by identity without stored state; None when not found."""
        request = self.descriptor.read_request(identity)
        outcome = self._send("LOOKUP", request, cancel)
        if isinstance(outcome, NotFound):
            return None
        if not isinstance(outcome, Ok):
            self._raise(request, outcome)
        return self._decode(request, outcome, identity)

    # ------------- Internal -------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(self, op: str, request: Request, cancel: Optional[threading.Event]) -> Outcome:
        corr = uuid.uuid4().hex[:8]
        url = self._url(request.path)
        self.log.debug("%s[%s] %s %s kind=%s", op, corr, request.method, url, self.descriptor.kind)
        if request.body is not None:
            self.log.debug("%s[%s] payload=%s", op, corr, _short_json(_redact(request.body)))
        outcome = self.transport.send(request.method, url, request.body, cancel=cancel)
        self.log.debug("%s[%s] outcome=%s", op, corr, type(outcome).__name__)
        return outcome

    def _decode(self, request: Request, outcome: Ok, identity: Optional[str]) -> Optional[Payload]:
        try:
            data = outcome.json()
            return self.descriptor.observed_from_response(identity, data)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ResponseDecodeError(
                url=self._url(request.path),
                method=request.method,
                message=f"cannot decode response: {exc}",
            ) from exc

    def _raise(self, request: Request, outcome: Outcome) -> None:
        url = self._url(request.path)
        if isinstance(outcome, TransportFailure):
            if outcome.cancelled:
                raise Cancelled(url=url, method=request.method, message=outcome.message)
            raise TransportError(url=url, method=request.method, message=outcome.message)
        if isinstance(outcome, Failed):
            raise RemoteFailure(status=outcome.status, url=url, body=outcome.message, method=request.method)
        if isinstance(outcome, NotFound):
            raise RemoteFailure(status=404, url=url, body="not found", method=request.method)
        raise TransportError(url=url, method=request.method, message=f"unexpected outcome {outcome!r}")

    def _gone(
        self,
        instance: ResourceInstance,
        op: str,
        *,
        reason: str,
        drift: Optional[DriftReport] = None,
    ) -> Result:
        identity = instance.identity
        instance.observed = None
        instance.state = ABSENT
        self.log.info("%s[%s] absent (%s), drop from stored state", self.descriptor.kind, identity, reason)
        return Result(op=op, state=ABSENT, identity=identity, drop=True, drift=drift)
