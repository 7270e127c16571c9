"""In-process simulated control plane.

Objects live in a dict keyed by (kind, id). Used for local dry runs,
the test suite, and as the 'memory' backend type in config. With a
path, objects are saved to a JSON file after every mutation so that
separate CLI runs see the same simulated world.
"""

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from reconcile.errors import ResourceNotFound

logger = logging.getLogger(__name__)

# Fault hook: (operation, kind, resource_id or None, attrs) -> None, may raise
FaultHook = Callable[[str, str, Optional[str], dict], None]


class InMemoryBackend:
    """Dict-backed CloudBackend.

    Outputs echo the applied attributes plus 'id' and any computed
    values produced by the optional outputs callable.
    """

    def __init__(
        self,
        outputs: Optional[Callable[[str, str, dict], dict]] = None,
        fault: Optional[FaultHook] = None,
        path: Optional[Path] = None,
    ):
        self.objects: dict[tuple[str, str], dict] = {}
        self.calls: list[tuple[str, str, Optional[str]]] = []
        self.path = Path(path) if path else None
        self._outputs = outputs
        self._fault = fault
        self._next_id = 1
        self._lock = threading.Lock()
        if self.path is not None and self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, encoding='utf-8') as f:
            data = json.load(f)
        for entry in data.get('objects', []):
            self.objects[(entry['kind'], entry['id'])] = entry['attributes']
        self._next_id = data.get('next_id', len(self.objects) + 1)
        logger.debug(f"[memory] loaded {len(self.objects)} object(s) from {self.path}")

    def _save(self) -> None:
        """Persist objects (caller holds the lock)."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            'next_id': self._next_id,
            'objects': [{'kind': k, 'id': i, 'attributes': a}
                        for (k, i), a in sorted(self.objects.items())],
        }
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)

    def _record(self, op: str, kind: str, resource_id: Optional[str], attrs: dict) -> None:
        with self._lock:
            self.calls.append((op, kind, resource_id))
        if self._fault is not None:
            self._fault(op, kind, resource_id, attrs)

    def _build_outputs(self, kind: str, resource_id: str, attrs: dict) -> dict:
        out = copy.deepcopy(attrs)
        out['id'] = resource_id
        if self._outputs is not None:
            out.update(self._outputs(kind, resource_id, attrs))
        return out

    def create(self, kind: str, attrs: dict) -> tuple[str, dict]:
        self._record('create', kind, None, attrs)
        with self._lock:
            resource_id = f'{kind}-{self._next_id}'
            self._next_id += 1
            self.objects[(kind, resource_id)] = copy.deepcopy(attrs)
            self._save()
        logger.debug(f"[memory] created {kind} {resource_id}")
        return resource_id, self._build_outputs(kind, resource_id, attrs)

    def read(self, kind: str, resource_id: str) -> dict:
        self._record('read', kind, resource_id, {})
        with self._lock:
            obj = self.objects.get((kind, resource_id))
        if obj is None:
            raise ResourceNotFound(f"{kind} {resource_id} not found")
        return copy.deepcopy(obj)

    def update(self, kind: str, resource_id: str, changes: dict, attrs: dict) -> dict:
        self._record('update', kind, resource_id, attrs)
        with self._lock:
            if (kind, resource_id) not in self.objects:
                raise ResourceNotFound(f"{kind} {resource_id} not found")
            self.objects[(kind, resource_id)] = copy.deepcopy(attrs)
            self._save()
        logger.debug(f"[memory] updated {kind} {resource_id}: {sorted(changes)}")
        return self._build_outputs(kind, resource_id, attrs)

    def destroy(self, kind: str, resource_id: str) -> None:
        self._record('destroy', kind, resource_id, {})
        with self._lock:
            self.objects.pop((kind, resource_id), None)
            self._save()
        logger.debug(f"[memory] destroyed {kind} {resource_id}")

    def count(self, kind: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for k, _ in self.objects if kind is None or k == kind)
