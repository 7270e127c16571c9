"""Plan executor.

Runs a Plan batch by batch. Steps within a batch run concurrently on a
bounded worker pool; batch i+1 starts only after every step of batch i
is terminal. Each successful backend call is recorded in the StateStore
immediately, so a failed or cancelled run leaves state consistent with
what actually happened. Nothing is rolled back.
"""

import copy
import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from backends import BackendRegistry
from common import StepResult, elapsed
from reconcile.diff import merge_ignored
from reconcile.errors import (
    EngineError,
    OperationFailed,
    PermanentBackendError,
    ResourceNotFound,
    StalePlan,
    TransientBackendError,
)
from reconcile.model import InstanceAddress
from reconcile.operations import Action, Operation
from reconcile.plan import Plan
from reconcile.references import evaluate, parse_expression, read_path
from reconcile.scheduler import PHASE_CREATE, PHASE_DESTROY, PHASE_UPDATE, PlannedStep
from reconcile.state import StateRecord, StateStore

logger = logging.getLogger(__name__)

ON_ERROR_MODES = ('stop', 'continue')


@dataclass
class RetryPolicy:
    """Bounded exponential backoff with jitter for transient failures."""
    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.2

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        backoff = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return backoff + random.uniform(0, backoff * self.jitter)

    def call(
        self,
        address: Any,
        fn: Callable[[], Any],
        interrupt: Optional[threading.Event] = None,
        missing_fails: bool = True,
    ) -> tuple[Any, int]:
        """Invoke a backend call, retrying transient failures with backoff.

        Backoff waits end early when interrupt is set. With missing_fails
        off, ResourceNotFound propagates unchanged for the caller to
        interpret.

        Returns:
            Tuple of (call result, attempts made)

        Raises:
            OperationFailed: On a permanent failure, exhausted retries, an
                interrupted wait or (with missing_fails) a missing object
            ResourceNotFound: If the object is missing and missing_fails is off
        """
        interrupt = interrupt or threading.Event()
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(), attempt
            except TransientBackendError as e:
                if attempt >= self.max_attempts:
                    raise OperationFailed(str(address), f"retries exhausted: {e}", attempt)
                wait = self.delay(attempt)
                logger.warning(f"{address}: {e}; retrying in {wait:.1f}s "
                               f"(attempt {attempt}/{self.max_attempts})")
                if interrupt.wait(wait):
                    raise OperationFailed(str(address), f"cancelled during retry backoff: {e}", attempt)
            except PermanentBackendError as e:
                raise OperationFailed(str(address), str(e), attempt)
            except ResourceNotFound as e:
                if missing_fails:
                    raise OperationFailed(str(address), str(e), attempt)
                raise

    def to_dict(self) -> dict:
        return {
            'max_attempts': self.max_attempts,
            'base_delay': self.base_delay,
            'max_delay': self.max_delay,
            'jitter': self.jitter,
        }


@dataclass
class StepOutcome:
    """Terminal result of one step.

    Attributes:
        key: Step key
        address: Address the step wrote (deposed address for old objects)
        action: Action of the owning operation
        phase: create, update or destroy
        status: success, failed or skipped
        attempts: Backend calls made
        error: Failure or skip reason
        duration: Seconds spent
        resource_id: Backend id touched
    """
    key: str
    address: str
    action: str
    phase: str
    status: str
    attempts: int = 0
    error: Optional[str] = None
    duration: float = 0.0
    resource_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'address': self.address,
            'action': self.action,
            'phase': self.phase,
            'status': self.status,
            'attempts': self.attempts,
            'duration': round(self.duration, 3),
        }
        if self.error is not None:
            d['error'] = self.error
        if self.resource_id is not None:
            d['resource_id'] = self.resource_id
        return d


@dataclass
class BatchResult:
    """Outcomes of one batch."""
    index: int
    outcomes: list[StepOutcome] = field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def succeeded(self) -> bool:
        return all(o.succeeded for o in self.outcomes)

    def to_dict(self) -> dict:
        return {
            'index': self.index,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'steps': [o.to_dict() for o in sorted(self.outcomes, key=lambda o: o.key)],
        }


@dataclass
class ApplyResult:
    """Auditable record of one plan execution.

    status is success, partial (some steps succeeded, some did not),
    failed (nothing succeeded) or cancelled.
    """
    description: str
    status: str = 'success'
    batches: list[BatchResult] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    cancelled: bool = False

    @property
    def outcomes(self) -> list[StepOutcome]:
        return [o for batch in self.batches for o in batch.outcomes]

    @property
    def success(self) -> bool:
        return self.status == 'success'

    @property
    def duration(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    def finish(self) -> None:
        self.finished_at = time.time()
        outcomes = self.outcomes
        succeeded = [o for o in outcomes if o.succeeded]
        incomplete = [o for o in outcomes if not o.succeeded]
        if not incomplete:
            self.status = 'success'
        elif self.cancelled:
            self.status = 'cancelled'
        elif succeeded:
            self.status = 'partial'
        else:
            self.status = 'failed'

    def summary(self) -> dict[str, list[str]]:
        """Machine-parseable view of which instances changed state and which did not."""
        changed: list[str] = []
        failed: list[str] = []
        skipped: list[str] = []
        for o in sorted(self.outcomes, key=lambda o: o.key):
            bucket = {'success': changed, 'failed': failed, 'skipped': skipped}[o.status]
            if o.address not in bucket:
                bucket.append(o.address)
        return {
            'changed': changed,
            'unchanged': sorted(self.unchanged),
            'failed': failed,
            'skipped': skipped,
        }

    def to_dict(self) -> dict:
        return {
            'description': self.description,
            'status': self.status,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'duration': round(self.duration, 3),
            'summary': self.summary(),
            'batches': [b.to_dict() for b in self.batches],
        }


class Executor:
    """Drives plan steps against bound backends and records results in state.

    Attributes:
        store: StateStore updated as steps succeed
        registry: Backend bindings
        concurrency: Max concurrent steps within a batch
        retry: Backoff policy for transient failures
        on_error: 'stop' skips all later batches after a failure;
            'continue' skips only steps that require a failed step
    """

    def __init__(
        self,
        store: StateStore,
        registry: BackendRegistry,
        concurrency: int = 10,
        retry: Optional[RetryPolicy] = None,
        on_error: str = 'stop',
    ):
        if on_error not in ON_ERROR_MODES:
            raise ValueError(f"on_error must be one of {', '.join(ON_ERROR_MODES)}")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.store = store
        self.registry = registry
        self.concurrency = concurrency
        self.retry = retry or RetryPolicy()
        self.on_error = on_error
        self._cancel = threading.Event()
        self._force = threading.Event()
        self._lock = threading.Lock()
        self._futures: list[Future] = []

    def cancel(self, force: bool = False) -> None:
        """Stop the run.

        Graceful cancellation lets the in-flight batch finish. Forced
        cancellation also drops steps not yet started, interrupts backoff
        waits and asks backends to abort in-flight calls.
        """
        self._cancel.set()
        logger.warning(f"Cancellation requested ({'force' if force else 'graceful'})")
        if not force:
            return
        self._force.set()
        with self._lock:
            futures = list(self._futures)
        for future in futures:
            future.cancel()
        for backend in self.registry.backends():
            cancel = getattr(backend, 'cancel', None)
            if callable(cancel):
                cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def apply(self, plan: Plan) -> ApplyResult:
        """Execute every batch of the plan.

        Raises:
            StalePlan: If state changed since the plan was computed
        """
        actual = self.store.fingerprint()
        if actual != plan.state_fingerprint:
            raise StalePlan(plan.state_fingerprint, actual)

        result = ApplyResult(description=plan.description, started_at=time.time())
        result.unchanged = sorted(str(a) for a, op in plan.operations.items() if op.is_noop)
        blocked: set[str] = set()
        halted: Optional[str] = None

        for index, batch in enumerate(plan.batches):
            batch_result = BatchResult(index=index, started_at=time.time())
            result.batches.append(batch_result)

            if halted is None and self._cancel.is_set():
                halted = 'cancelled before start'
            if halted is not None:
                batch_result.outcomes = [self._skipped(plan, s, halted) for s in batch]
                batch_result.finished_at = time.time()
                continue

            runnable: list[PlannedStep] = []
            for step in batch:
                waiting_on = sorted(set(step.requires) & blocked)
                if waiting_on:
                    batch_result.outcomes.append(
                        self._skipped(plan, step, f"requires {', '.join(waiting_on)}"))
                    blocked.add(step.key)
                else:
                    runnable.append(step)

            logger.info(f"Batch {index}: running {len(runnable)} step(s)")
            batch_result.outcomes.extend(self._run_batch(plan, runnable))
            batch_result.finished_at = time.time()

            failed = [o for o in batch_result.outcomes if not o.succeeded]
            blocked.update(o.key for o in failed)
            if failed and self.on_error == 'stop':
                halted = f"skipped after failure of {failed[0].key}"
                logger.error(f"Batch {index}: {len(failed)} step(s) did not succeed; stopping")

        self._sync_unchanged(plan)
        result.cancelled = self._cancel.is_set()
        result.finish()
        logger.info(f"Apply '{plan.description}' finished: {result.status} "
                    f"in {elapsed(result.started_at, result.finished_at)}s")
        return result

    def preview(self, plan: Plan) -> None:
        """Print the batches without executing anything."""
        print("")
        print("=" * 65)
        print(f"  DRY-RUN APPLY: {plan.description}")
        print(f"  Concurrency: {self.concurrency}  on_error: {self.on_error}")
        print("=" * 65)
        print("")
        if plan.is_empty:
            print("  No changes. State matches the description.")
        for line in plan.render():
            print(f"  {line}")
        print("")

    def _skipped(self, plan: Plan, step: PlannedStep, reason: str) -> StepOutcome:
        return StepOutcome(
            key=step.key,
            address=str(step.address),
            action=plan.operations[step.owner].action.value,
            phase=step.phase,
            status='skipped',
            error=reason,
        )

    def _run_batch(self, plan: Plan, steps: list[PlannedStep]) -> list[StepOutcome]:
        if not steps:
            return []
        outcomes: list[StepOutcome] = []
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(steps))) as pool:
            future_map = {pool.submit(self._run_step, plan, step): step for step in steps}
            with self._lock:
                self._futures = list(future_map)
            for future in as_completed(future_map):
                step = future_map[future]
                if future.cancelled():
                    outcomes.append(self._skipped(plan, step, 'cancelled before start'))
                    continue
                try:
                    outcomes.append(future.result())
                except Exception as exc:  # worker bug, not a backend failure
                    logger.error(f"{step.key}: unexpected error: {exc}")
                    outcomes.append(StepOutcome(
                        key=step.key,
                        address=str(step.address),
                        action=plan.operations[step.owner].action.value,
                        phase=step.phase,
                        status='failed',
                        error=f"unexpected error: {exc}",
                    ))
        with self._lock:
            self._futures = []
        return outcomes

    def _run_step(self, plan: Plan, step: PlannedStep) -> StepOutcome:
        op = plan.operations[step.owner]
        start = time.time()
        outcome = StepOutcome(
            key=step.key,
            address=str(step.address),
            action=op.action.value,
            phase=step.phase,
            status='failed',
        )
        logger.info(f"[{step.phase}] {step.address} ({op.action.value})")
        try:
            if step.phase == PHASE_DESTROY:
                result = self._destroy(op, step.address)
            elif step.phase == PHASE_CREATE:
                result = self._create(op, self._deposed_target(plan, op))
            elif step.phase == PHASE_UPDATE:
                result = self._update(op)
            else:
                raise PermanentBackendError(f"unknown phase '{step.phase}'")
        except OperationFailed as e:
            outcome.attempts = e.attempts
            outcome.error = e.cause
            outcome.duration = time.time() - start
            logger.error(f"[{step.phase}] {step.address} failed: {e}")
            return outcome
        except EngineError as e:
            outcome.error = str(e)
            outcome.duration = time.time() - start
            logger.error(f"[{step.phase}] {step.address} failed: {e}")
            return outcome

        outcome.status = 'success'
        outcome.attempts = result.attempts
        outcome.duration = result.duration
        outcome.resource_id = result.state_updates.get('resource_id')
        logger.info(f"[{step.phase}] {step.address}: {result.message}")
        return outcome

    def _call(self, address: InstanceAddress, fn: Callable[[], Any]) -> tuple[Any, int]:
        """Invoke a backend call under the retry policy; force cancellation interrupts backoff.

        Raises:
            OperationFailed: On a permanent failure, a missing object or exhausted retries
        """
        return self.retry.call(address, fn, self._force)

    def _resolve(self, op: Operation) -> dict:
        """Evaluate reference expressions against the current state.

        Raises:
            PermanentBackendError: If a referenced value is not recorded
        """
        def resolve(expression: str) -> Any:
            ref = parse_expression(expression, op.address, '')
            values = []
            for target_text in op.references.get(expression, []):
                target = InstanceAddress.parse(target_text)
                record = self.store.get(target)
                if record is None:
                    raise PermanentBackendError(
                        f"reference ${{{expression}}}: {target} has no state record", address=str(op.address))
                try:
                    values.append(read_path(record.resource_id, record.attributes, record.outputs,
                                            ref.output_path))
                except KeyError:
                    raise PermanentBackendError(
                        f"reference ${{{expression}}}: {target} has no attribute "
                        f"'{'.'.join(ref.output_path)}'", address=str(op.address))
            if not values:
                raise PermanentBackendError(
                    f"reference ${{{expression}}} was not resolved at plan time", address=str(op.address))
            return values if ref.is_splat else values[0]

        return evaluate(copy.deepcopy(op.desired or {}), resolve)

    @staticmethod
    def _deposed_target(plan: Plan, op: Operation) -> Optional[InstanceAddress]:
        """Address the destroy half of a create_before_destroy replace will destroy."""
        if op.action != Action.REPLACE or not op.create_before_destroy:
            return None
        for step in plan.steps:
            if step.phase == PHASE_DESTROY and step.owner == op.address:
                return step.address
        return op.address.as_deposed()

    def _create(self, op: Operation, deposed: Optional[InstanceAddress] = None) -> StepResult:
        start = time.time()
        attrs = self._resolve(op)
        backend = self.registry.get(op.kind).backend
        (resource_id, outputs), attempts = self._call(op.address, lambda: backend.create(op.kind, attrs))

        if deposed is not None:
            old = self.store.get(op.address)
            if old is not None:
                self.store.put(deposed, replace(old, address=deposed))

        self.store.put(op.address, StateRecord(
            address=op.address,
            resource_id=resource_id,
            attributes=attrs,
            outputs=outputs or {},
            dependencies=list(op.dependencies),
            lifecycle=op.policy,
        ))
        return StepResult(
            success=True,
            message=f"created {resource_id}",
            duration=time.time() - start,
            attempts=attempts,
            state_updates={'resource_id': resource_id},
        )

    def _update(self, op: Operation) -> StepResult:
        start = time.time()
        record = self.store.get(op.address)
        if record is None:
            raise PermanentBackendError(f"{op.address} has no state record to update",
                                        address=str(op.address))
        attrs = merge_ignored(self._resolve(op), record.attributes, op.policy)
        changes = {k: v for k, v in attrs.items() if record.attributes.get(k) != v or k not in record.attributes}
        for key in record.attributes:
            if key not in attrs:
                changes[key] = None

        backend = self.registry.get(op.kind).backend
        outputs, attempts = self._call(
            op.address, lambda: backend.update(op.kind, record.resource_id, changes, attrs))

        merged_outputs = dict(record.outputs)
        merged_outputs.update(outputs or {})
        self.store.put(op.address, replace(
            record,
            attributes=attrs,
            outputs=merged_outputs,
            dependencies=list(op.dependencies),
            lifecycle=op.policy,
        ))
        return StepResult(
            success=True,
            message=f"updated {record.resource_id} ({', '.join(sorted(changes)) or 'metadata'})",
            duration=time.time() - start,
            attempts=attempts,
            state_updates={'resource_id': record.resource_id},
        )

    def _destroy(self, op: Operation, target: InstanceAddress) -> StepResult:
        start = time.time()
        record = self.store.get(target)
        if record is None:
            return StepResult(success=True, message="already absent from state",
                              duration=time.time() - start)

        backend = self.registry.get(record.kind).backend

        def _destroy_call() -> None:
            try:
                backend.destroy(record.kind, record.resource_id)
            except ResourceNotFound:
                logger.info(f"{target}: {record.resource_id} already gone")

        _, attempts = self._call(target, _destroy_call)
        self.store.delete(target)
        return StepResult(
            success=True,
            message=f"destroyed {record.resource_id}",
            duration=time.time() - start,
            attempts=attempts,
            state_updates={'resource_id': record.resource_id},
        )

    def _sync_unchanged(self, plan: Plan) -> None:
        """Refresh recorded dependencies and lifecycle of unchanged instances."""
        for addr, op in plan.operations.items():
            if not op.is_noop:
                continue
            record = self.store.get(addr)
            if record is None:
                continue
            if record.dependencies != op.dependencies or record.lifecycle != op.policy:
                self.store.put(addr, replace(record, dependencies=list(op.dependencies),
                                             lifecycle=op.policy))
