from __future__ import annotations

import copy
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml

from .descriptors import ResourceDescriptor
from .drift import DriftReport, decide
from .errors import Cancelled, PolicySyncError, ValidationError
from .loader import DescriptorLoader
from .logging_setup import bind
from .reconciler import Reconciler, ResourceInstance, Result
from .state_store import StateRecord, StateStore
from .transport import Transport
from .validator import normalize

Payload = Dict[str, Any]

# Plan operations; REPLACE is delete + create for a renamed name-keyed instance
CREATE = "CREATE"
UPDATE = "UPDATE"
NOOP = "NOOP"
DELETE = "DELETE"
REPLACE = "REPLACE"
INVALID = "INVALID"


@dataclass(frozen=True)
class Declaration:
    """One declared instance: `<kind>.<name>` plus its desired payload."""
    kind: str
    name: str
    spec: Payload = field(default_factory=dict, hash=False)

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"


@dataclass(frozen=True)
class PlanItem:
    address: str
    kind: str
    op: str
    reason: str = ""
    desired: Optional[Payload] = field(default=None, hash=False, compare=False)
    error: Optional[PolicySyncError] = field(default=None, hash=False, compare=False)


@dataclass(frozen=True)
class ItemResult:
    address: str
    op: str
    status: str
    reason: str = ""
    error: str = ""
    exc: Optional[BaseException] = field(default=None, hash=False, compare=False)
    drift: Optional[DriftReport] = field(default=None, hash=False, compare=False)


def load_declarations(path: str) -> List[Declaration]:
    """
    Read a declaration file:

        resources:
          - kind: group
            name: admins
            spec: {members: ["alice@example.com"]}
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ValidationError(f"Invalid YAML in {path}: {exc}") from exc
    items = data.get("resources") if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise ValidationError(f"{path}: expected a top-level 'resources' list")

    out: List[Declaration] = []
    seen = set()
    for i, raw in enumerate(items):
        if not isinstance(raw, dict) or not raw.get("kind") or not raw.get("name"):
            raise ValidationError(f"{path}: resources[{i}] needs 'kind' and 'name'")
        spec = raw.get("spec") or {}
        if not isinstance(spec, dict):
            raise ValidationError(f"{path}: resources[{i}].spec must be a mapping")
        decl = Declaration(kind=str(raw["kind"]), name=str(raw["name"]), spec=spec)
        if decl.address in seen:
            raise ValidationError(f"{path}: duplicate declaration '{decl.address}'")
        seen.add(decl.address)
        out.append(decl)
    return out


def summarize(results: Iterable[ItemResult]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for r in results:
        counts[r.status] = counts.get(r.status, 0) + 1
    return counts


class Driver:
    """
    Caller side of the reconciler: plans declared vs stored state, runs each
    instance through the reconciler on a thread pool and persists the result.

    Per-instance failures are collected into ItemResult rows (status ERROR);
    other instances keep going. Nothing is retried.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        transport: Optional[Transport] = None,
        base_url: str = "",
        loader: Optional[DescriptorLoader] = None,
        concurrency: int = 4,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.store = store
        self.transport = transport
        self.base_url = base_url
        self.loader = loader or DescriptorLoader()
        self.concurrency = max(1, int(concurrency))
        self.log = logger or logging.LoggerAdapter(logging.getLogger("psync.driver"), {})
        self._descriptors: Dict[str, ResourceDescriptor] = {}
        self._lock = threading.Lock()

    # ------------- Helpers -------------

    def descriptor(self, kind: str) -> ResourceDescriptor:
        with self._lock:
            if kind not in self._descriptors:
                self._descriptors[kind] = self.loader.load(kind)
            return self._descriptors[kind]

    def desired_payload(self, decl: Declaration) -> Payload:
        """The declared spec; name-keyed kinds take their name from the declaration."""
        d = self.descriptor(decl.kind)
        desired = copy.deepcopy(decl.spec)
        if d.is_name_keyed:
            desired.setdefault(d.identity_field, decl.name)
        return desired

    def _reconciler(self, kind: str, identity: str = "") -> Reconciler:
        if self.transport is None:
            raise PolicySyncError("no transport configured (dry run?)")
        log = bind(self.log, kind=kind, identity=identity or "-")
        return Reconciler(self.descriptor(kind), self.transport, self.base_url, logger=log)

    def _run(self, jobs: List[Callable[[], ItemResult]]) -> List[ItemResult]:
        """Run independent jobs in parallel; results keep the input order."""
        if not jobs:
            return []
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(jobs)), thread_name_prefix="psync") as pool:
            futures = [pool.submit(fn) for fn in jobs]
            return [f.result() for f in futures]

    @staticmethod
    def _failed(address: str, op: str, exc: PolicySyncError) -> ItemResult:
        status = "CANCELLED" if isinstance(exc, Cancelled) else "ERROR"
        return ItemResult(address, op, status, error=str(exc), exc=exc)

    # ------------- Plan -------------

    def plan(self, declarations: Iterable[Declaration]) -> List[PlanItem]:
        records = self.store.records()
        items: List[PlanItem] = []
        declared = set()

        for decl in declarations:
            declared.add(decl.address)
            try:
                d = self.descriptor(decl.kind)
                desired = self.desired_payload(decl)
                wanted = normalize(d, desired)
            except PolicySyncError as exc:
                items.append(PlanItem(decl.address, decl.kind, INVALID, reason=str(exc), error=exc))
                continue

            record = records.get(decl.address)
            if record is None:
                items.append(PlanItem(decl.address, decl.kind, CREATE, "Not in state", desired))
                continue
            if d.is_name_keyed and str(wanted.get(d.identity_field)) != record.identity:
                reason = f"Identity changed: {record.identity} -> {wanted.get(d.identity_field)}"
                items.append(PlanItem(decl.address, decl.kind, REPLACE, reason, desired))
                continue
            decision = decide(d, wanted, record.observed, exists=True)
            items.append(PlanItem(decl.address, decl.kind, decision.op, decision.reason, desired))

        for address in sorted(set(records) - declared):
            items.append(PlanItem(address, records[address].kind, DELETE, "Not declared"))
        return items

    # ------------- Apply -------------

    def apply(self, declarations: Iterable[Declaration], *, cancel: Optional[threading.Event] = None) -> List[ItemResult]:
        plan = self.plan(declarations)
        jobs = []
        results: Dict[str, ItemResult] = {}
        for item in plan:
            if item.op == INVALID:
                results[item.address] = ItemResult(item.address, item.op, "ERROR", error=item.reason, exc=item.error)
            elif item.op == NOOP:
                results[item.address] = ItemResult(item.address, item.op, "UNCHANGED", reason=item.reason)
            else:
                jobs.append(self._job(item, cancel))
        for r in self._run(jobs):
            results[r.address] = r
        ordered = [results[i.address] for i in plan]
        self.log.info("apply summary: %s", summarize(ordered))
        return ordered

    def _job(self, item: PlanItem, cancel: Optional[threading.Event]) -> Callable[[], ItemResult]:
        def run() -> ItemResult:
            try:
                if item.op == CREATE:
                    return self._create(item, cancel)
                if item.op == UPDATE:
                    return self._update(item, cancel)
                if item.op == DELETE:
                    return self._delete(item.address, cancel)
                if item.op == REPLACE:
                    self._delete(item.address, cancel)
                    return self._create(item, cancel, status="REPLACED")
                raise PolicySyncError(f"unknown plan op {item.op}")
            except PolicySyncError as exc:
                self.log.error("%s %s failed: %s", item.op, item.address, exc)
                return self._failed(item.address, item.op, exc)
        return run

    def _create(self, item: PlanItem, cancel: Optional[threading.Event], status: str = "CREATED") -> ItemResult:
        rec = self._reconciler(item.kind)
        instance = ResourceInstance(kind=item.kind, desired=copy.deepcopy(item.desired or {}))
        result = rec.create(instance, cancel=cancel)
        if result.observed is None:
            # empty create response: fetch the authoritative value once
            result = rec.read(instance, cancel=cancel)
        if result.drop:
            return ItemResult(item.address, item.op, "GONE", reason="created but not readable")
        self.store.put(item.address, StateRecord.from_instance(instance))
        return ItemResult(item.address, item.op, status, reason=f"identity={instance.identity}")

    def _update(self, item: PlanItem, cancel: Optional[threading.Event]) -> ItemResult:
        record = self.store.get(item.address)
        if record is None:
            return self._create(item, cancel)
        rec = self._reconciler(item.kind, record.identity)
        instance = record.to_instance()
        result = rec.update(instance, copy.deepcopy(item.desired or {}), cancel=cancel)
        return self._settle(item.address, item.op, instance, result, "UPDATED")

    def _delete(self, address: str, cancel: Optional[threading.Event]) -> ItemResult:
        record = self.store.get(address)
        if record is None:
            return ItemResult(address, DELETE, "GONE", reason="not in state")
        rec = self._reconciler(record.kind, record.identity)
        instance = record.to_instance()
        rec.delete(instance, cancel=cancel)
        self.store.drop(address)
        return ItemResult(address, DELETE, "DELETED")

    def _settle(self, address: str, op: str, instance: ResourceInstance, result: Result, status: str) -> ItemResult:
        if result.drop:
            self.store.drop(address)
            return ItemResult(address, op, "GONE", reason="removed out-of-band", drift=result.drift)
        self.store.put(address, StateRecord.from_instance(instance))
        return ItemResult(address, op, status, drift=result.drift)

    # ------------- Refresh / destroy -------------

    def refresh(self, *, cancel: Optional[threading.Event] = None) -> List[ItemResult]:
        """Read every stored instance; report drift, drop what vanished."""
        records = self.store.records()

        def job(address: str, record: StateRecord) -> Callable[[], ItemResult]:
            def run() -> ItemResult:
                try:
                    rec = self._reconciler(record.kind, record.identity)
                    instance = record.to_instance()
                    result = rec.read(instance, cancel=cancel)
                except PolicySyncError as exc:
                    self.log.error("READ %s failed: %s", address, exc)
                    return self._failed(address, "READ", exc)
                status = "DRIFTED" if result.drift is not None and result.drift.drifted else "IN_SYNC"
                out = self._settle(address, "READ", instance, result, status)
                if out.drift is not None and out.drift.drifted:
                    self.log.warning("%s", out.drift.summary())
                return out
            return run

        results = self._run([job(a, r) for a, r in sorted(records.items())])
        self.log.info("refresh summary: %s", summarize(results))
        return results

    def destroy(self, *, cancel: Optional[threading.Event] = None) -> List[ItemResult]:
        records = self.store.records()

        def job(address: str) -> Callable[[], ItemResult]:
            def run() -> ItemResult:
                try:
                    return self._delete(address, cancel)
                except PolicySyncError as exc:
                    self.log.error("DELETE %s failed: %s", address, exc)
                    return self._failed(address, DELETE, exc)
            return run

        results = self._run([job(a) for a in sorted(records)])
        self.log.info("destroy summary: %s", summarize(results))
        return results
