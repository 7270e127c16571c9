"""Refresh and drift detection.

Reads every tracked object back from its backend and compares the
observed attributes with the recorded ones. refresh_state writes the
observations into the StateStore so the next plan diffs against reality.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Optional

from backends import BackendRegistry
from reconcile.diff import compare_attributes
from reconcile.errors import ResourceNotFound
from reconcile.executor import RetryPolicy
from reconcile.operations import AttributeChange
from reconcile.state import StateRecord, StateStore

logger = logging.getLogger(__name__)


@dataclass
class Drift:
    """Divergence between one StateRecord and the backend.

    status is 'missing' when the backend no longer has the object,
    otherwise 'drifted' with the changed attribute paths.
    """
    address: str
    status: str
    changes: list[AttributeChange] = field(default_factory=list)
    observed: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        d = {'address': self.address, 'status': self.status}
        if self.changes:
            d['changes'] = [c.to_dict() for c in self.changes]
        return d


def _read(registry: BackendRegistry, record: StateRecord, retry: RetryPolicy,
          interrupt: Optional[threading.Event]) -> dict:
    backend = registry.get(record.kind).backend
    observed, _ = retry.call(record.address, lambda: backend.read(record.kind, record.resource_id),
                             interrupt, missing_fails=False)
    return observed


def _compare(registry: BackendRegistry, record: StateRecord, observed: dict) -> list[AttributeChange]:
    managed = {k: observed[k] for k in record.attributes if k in observed}
    # old = recorded, new = observed
    return compare_attributes(managed, record.attributes, record.lifecycle,
                              registry.schema(record.kind))


def detect_drift(
    store: StateStore,
    registry: BackendRegistry,
    retry: Optional[RetryPolicy] = None,
    interrupt: Optional[threading.Event] = None,
) -> list[Drift]:
    """Report drifted and missing objects without writing state.

    Setting interrupt cuts short any retry backoff.

    Raises:
        OperationFailed: If a backend read fails permanently, retries run
            out or the backoff is interrupted
    """
    retry = retry or RetryPolicy()
    drifts: list[Drift] = []
    for record in store.list_all():
        try:
            observed = _read(registry, record, retry, interrupt)
        except ResourceNotFound:
            drifts.append(Drift(address=str(record.address), status='missing'))
            continue
        changes = _compare(registry, record, observed)
        if changes:
            drifts.append(Drift(address=str(record.address), status='drifted',
                                changes=changes, observed=observed))
    logger.info(f"Drift check: {len(drifts)} of {len(store.list_all())} record(s) diverged")
    return drifts


def refresh_state(
    store: StateStore,
    registry: BackendRegistry,
    retry: Optional[RetryPolicy] = None,
    interrupt: Optional[threading.Event] = None,
) -> list[Drift]:
    """Bring recorded attributes in line with the backend.

    Missing objects lose their record (the next plan recreates them).
    Drifted managed attributes take the observed values; recorded
    outputs also present in the observation are updated.

    Returns:
        The drift that was written
    """
    drifts = detect_drift(store, registry, retry, interrupt)
    records = {str(r.address): r for r in store.list_all()}
    for drift in drifts:
        record = records[drift.address]
        if drift.status == 'missing':
            logger.warning(f"{record.address}: {record.resource_id} no longer exists; dropping record")
            store.delete(record.address)
            continue

        attributes = dict(record.attributes)
        for key in attributes:
            if key in drift.observed:
                attributes[key] = drift.observed[key]
        outputs = {k: drift.observed.get(k, v) for k, v in record.outputs.items()}
        logger.warning(f"{record.address}: drift in {', '.join(c.path for c in drift.changes)}")
        store.put(record.address, replace(record, attributes=attributes, outputs=outputs))
    return drifts
