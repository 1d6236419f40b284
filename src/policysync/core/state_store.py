"""
Local stored state: one JSON file mapping addresses (`<kind>.<name>`) to the
last known identity, desired payload and observed value of each instance.

Writes go to a temporary file in the same directory and are moved into place
with os.replace, so a crash never leaves a half-written state file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from .errors import ConfigError
from .reconciler import PRESENT, ResourceInstance

log = logging.getLogger("psync.state")

STATE_VERSION = 1


@dataclass
class StateRecord:
    kind: str
    identity: str
    desired: Dict[str, Any] = field(default_factory=dict)
    observed: Optional[Dict[str, Any]] = None

    def to_instance(self) -> ResourceInstance:
        return ResourceInstance(
            kind=self.kind,
            identity=self.identity,
            desired=dict(self.desired),
            observed=self.observed,
            state=PRESENT,
        )

    @classmethod
    def from_instance(cls, instance: ResourceInstance) -> "StateRecord":
        return cls(
            kind=instance.kind,
            identity=instance.identity,
            desired=dict(instance.desired),
            observed=instance.observed,
        )


class StateStore:
    """JSON-file backed stored state; all methods are thread-safe."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._records: Dict[str, StateRecord] = {}
        self._loaded = False

    # ------------- Load / save -------------

    def load(self) -> Dict[str, StateRecord]:
        with self._lock:
            self._records = self._read()
            self._loaded = True
            return dict(self._records)

    def _read(self) -> Dict[str, StateRecord]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read state file {self.path}: {exc}") from exc
        if not isinstance(data, dict) or data.get("version") != STATE_VERSION:
            raise ConfigError(f"Unsupported state file format: {self.path}")
        out: Dict[str, StateRecord] = {}
        for address, raw in (data.get("resources") or {}).items():
            try:
                out[address] = StateRecord(**raw)
            except TypeError as exc:
                raise ConfigError(f"Corrupt state entry '{address}' in {self.path}: {exc}") from exc
        return out

    def _write(self) -> None:
        payload = {
            "version": STATE_VERSION,
            "resources": {a: asdict(r) for a, r in sorted(self._records.items())},
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".psync-state-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
                f.write("\n")
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        log.debug("state saved: %s (%d resources)", self.path, len(self._records))

    # ------------- Records -------------

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._records = self._read()
            self._loaded = True

    def records(self) -> Dict[str, StateRecord]:
        with self._lock:
            self._ensure_loaded()
            return dict(self._records)

    def get(self, address: str) -> Optional[StateRecord]:
        return self.records().get(address)

    def put(self, address: str, record: StateRecord) -> None:
        with self._lock:
            self._ensure_loaded()
            self._records[address] = record
            self._write()

    def drop(self, address: str) -> None:
        with self._lock:
            self._ensure_loaded()
            if self._records.pop(address, None) is not None:
                self._write()
