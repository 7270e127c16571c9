"""State storage for the reconciliation engine.

The state store is the sole record of what currently exists. Each
instance has at most one StateRecord. Writes to one key never block
reads of another; every key has a single writer at a time.

FileStateStore persists to {state_dir}/{description}/state.json.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol, runtime_checkable

from common import content_hash
from reconcile.lifecycle import LifecyclePolicy
from reconcile.model import InstanceAddress

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


@dataclass
class StateRecord:
    """Last-applied snapshot of one instance.

    Attributes:
        address: Instance address
        resource_id: Backend-assigned identifier
        attributes: Resolved attributes as last applied
        outputs: Backend-reported output attributes
        dependencies: Instance addresses this instance depended on when applied
        lifecycle: Lifecycle policy at last apply (kept for orphan protection)
    """
    address: InstanceAddress
    resource_id: str
    attributes: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    lifecycle: LifecyclePolicy = field(default_factory=LifecyclePolicy)

    @property
    def kind(self) -> str:
        return self.address.kind

    def dependency_addresses(self) -> list[InstanceAddress]:
        return [InstanceAddress.parse(d) for d in self.dependencies]

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': str(self.address),
            'resource_id': self.resource_id,
            'attributes': copy.deepcopy(self.attributes),
            'outputs': copy.deepcopy(self.outputs),
        }
        if self.dependencies:
            d['dependencies'] = sorted(self.dependencies)
        lifecycle = self.lifecycle.to_dict()
        if lifecycle:
            d['lifecycle'] = lifecycle
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'StateRecord':
        address = InstanceAddress.parse(data['address'])
        return cls(
            address=address,
            resource_id=str(data['resource_id']),
            attributes=data.get('attributes', {}),
            outputs=data.get('outputs', {}),
            dependencies=list(data.get('dependencies', [])),
            lifecycle=LifecyclePolicy.from_dict(data.get('lifecycle'), str(address)),
        )


@runtime_checkable
class StateStore(Protocol):
    """Persistence capability for StateRecords."""

    def get(self, address: InstanceAddress) -> Optional[StateRecord]:
        """Return the record for address, or None."""

    def put(self, address: InstanceAddress, record: StateRecord) -> None:
        """Create or replace the record for address."""

    def delete(self, address: InstanceAddress) -> None:
        """Remove the record for address (no-op if absent)."""

    def list_all(self) -> list[StateRecord]:
        """Return every record."""

    def fingerprint(self) -> str:
        """Content hash of all records."""


class MemoryStateStore:
    """In-memory StateStore with per-key locking."""

    def __init__(self, records: Optional[list[StateRecord]] = None):
        self._records: dict[InstanceAddress, StateRecord] = {}
        self._registry_lock = threading.Lock()
        self._key_locks: dict[InstanceAddress, threading.Lock] = {}
        for record in records or []:
            self._records[record.address] = record

    def _lock_for(self, address: InstanceAddress) -> threading.Lock:
        with self._registry_lock:
            lock = self._key_locks.get(address)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[address] = lock
            return lock

    def get(self, address: InstanceAddress) -> Optional[StateRecord]:
        with self._registry_lock:
            record = self._records.get(address)
        return copy.deepcopy(record) if record is not None else None

    def put(self, address: InstanceAddress, record: StateRecord) -> None:
        if record.address != address:
            raise ValueError(f"Record address {record.address} does not match key {address}")
        with self._lock_for(address):
            stored = copy.deepcopy(record)
            with self._registry_lock:
                self._records[address] = stored
            self._changed()
        logger.debug(f"State put: {address} (id={record.resource_id})")

    def delete(self, address: InstanceAddress) -> None:
        with self._lock_for(address):
            with self._registry_lock:
                removed = self._records.pop(address, None)
            if removed is not None:
                self._changed()
        logger.debug(f"State delete: {address}")

    def list_all(self) -> list[StateRecord]:
        with self._registry_lock:
            snapshot = list(self._records.values())
        return [copy.deepcopy(r) for r in sorted(snapshot, key=lambda r: r.address.sort_key)]

    def fingerprint(self) -> str:
        return content_hash([r.to_dict() for r in self.list_all()])

    def __iter__(self) -> Iterator[StateRecord]:
        return iter(self.list_all())

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._records)

    def _changed(self) -> None:
        """Hook called after every mutation (persisting stores override)."""


class FileStateStore(MemoryStateStore):
    """StateStore persisted as JSON, rewritten atomically after each mutation.

    State is persisted to {state_dir}/{name}/state.json.
    """

    def __init__(self, name: str, state_dir: Path, path: Optional[Path] = None):
        super().__init__()
        self.name = name
        self.path = path or Path(state_dir) / name / 'state.json'
        self.serial = 0
        self._write_lock = threading.Lock()
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, encoding='utf-8') as f:
            data = json.load(f)
        version = data.get('version', STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise ValueError(f"Unsupported state format version {version} in {self.path}")
        self.serial = data.get('serial', 0)
        for record_data in data.get('records', []):
            record = StateRecord.from_dict(record_data)
            self._records[record.address] = record
        logger.debug(f"Loaded {len(self._records)} state record(s) from {self.path}")

    def _changed(self) -> None:
        with self._write_lock:
            self.serial += 1
            data = {
                'version': STATE_FORMAT_VERSION,
                'name': self.name,
                'serial': self.serial,
                'updated_at': time.time(),
                'records': [r.to_dict() for r in self.list_all()],
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix='.state-', suffix='.json')
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        logger.debug(f"Saved state serial {self.serial} to {self.path}")
