"""Plan executor for declaration-based reconciliation.

Runs PlanOperations against provider adapters on a bounded worker pool.
An operation is dispatched only after every operation it requires has
committed its state; independent operations run concurrently.

Failure handling:
- Transient provider errors are retried with exponential backoff up to
  max_attempts, then escalated to permanent.
- A permanent error fails the resource and blocks every operation that
  (transitively) requires it. Independent branches keep going unless
  on_error is 'stop', which halts new dispatch.
- Cancellation stops new dispatch; in-flight operations finish and commit.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from providers.base import ProviderRegistry
from reconciler.diff import (
    Action,
    AttributeChange,
    PlanOperation,
    Plan,
    diff_attributes,
    resolve_attributes,
)
from reconciler.errors import (
    PermanentProviderError,
    ProviderError,
    TransientProviderError,
    UnresolvedReferenceError,
)
from reconciler.state import StateRecord, StateStore

logger = logging.getLogger(__name__)

# Outcome statuses
APPLIED = 'applied'
UNCHANGED = 'unchanged'
FAILED = 'failed'
BLOCKED = 'blocked'
CANCELLED = 'cancelled'


@dataclass
class OperationOutcome:
    """Result of one PlanOperation.

    Attributes:
        resource_id: Resource the operation targeted
        action: Planned action
        status: applied, unchanged, failed, blocked or cancelled
        attempts: Provider calls made (including retries)
        message: Error or skip reason
        duration: Seconds spent including retries
    """
    resource_id: str
    action: Action
    status: str
    attempts: int = 0
    message: str = ''
    duration: float = 0.0

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource': self.resource_id,
            'action': self.action.value,
            'status': self.status,
        }
        if self.attempts:
            d['attempts'] = self.attempts
        if self.message:
            d['message'] = self.message
        if self.duration:
            d['duration'] = round(self.duration, 2)
        return d


@dataclass
class ExecutionReport:
    """Outcomes of executing a Plan, keyed by resource id."""
    outcomes: dict[str, OperationOutcome] = field(default_factory=dict)
    cancelled: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def add(self, outcome: OperationOutcome) -> None:
        self.outcomes[outcome.resource_id] = outcome

    @property
    def failures(self) -> list[OperationOutcome]:
        return [o for o in self.outcomes.values() if o.status == FAILED]

    @property
    def success(self) -> bool:
        return all(o.status in (APPLIED, UNCHANGED) for o in self.outcomes.values())

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def summary(self) -> dict[str, int]:
        """Counts of committed create/update/delete operations plus noop, failed, skipped."""
        counts = {'create': 0, 'update': 0, 'delete': 0, 'noop': 0,
                  'failed': 0, 'blocked': 0, 'cancelled': 0}
        for o in self.outcomes.values():
            if o.status == APPLIED:
                counts[o.action.value] += 1
            elif o.status == UNCHANGED:
                counts['noop'] += 1
            else:
                counts[o.status] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'cancelled': self.cancelled,
            'summary': self.summary(),
            'operations': [o.to_dict() for o in self.outcomes.values()],
        }


@dataclass
class _Prepared:
    """An operation with references resolved against committed state."""
    op: PlanOperation
    attributes: dict[str, Any] = field(default_factory=dict)
    changes: dict[str, AttributeChange] = field(default_factory=dict)


@dataclass
class PlanExecutor:
    """Executes a Plan against provider adapters.

    Attributes:
        providers: Registry routing resource types to adapters
        store: State store receiving a commit after each successful operation
        parallelism: Maximum concurrent provider operations
        max_attempts: Provider calls per operation before giving up on transient errors
        backoff_base: First retry delay in seconds
        backoff_max: Upper bound on a single retry delay
        on_error: 'continue' (contain failures to their branch) or 'stop'
        cancel_event: Set externally to stop dispatching new operations
        sleep: Delay function (overridable for tests)
    """
    providers: ProviderRegistry
    store: StateStore
    parallelism: int = 4
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    on_error: str = 'continue'
    cancel_event: threading.Event = field(default_factory=threading.Event)
    sleep: Callable[[float], None] = time.sleep

    def execute(self, plan: Plan) -> ExecutionReport:
        """Run every operation of the plan in dependency order.

        Returns:
            ExecutionReport with one outcome per planned operation
        """
        report = ExecutionReport(started_at=time.time())
        waiting: list[PlanOperation] = []
        for op in plan.operations:
            if op.action is Action.NOOP:
                report.add(OperationOutcome(op.resource_id, op.action, UNCHANGED))
            else:
                waiting.append(op)

        done: set[str] = set()
        broken: set[str] = set()
        running: dict[Future, tuple[PlanOperation, float]] = {}
        halted = False

        with ThreadPoolExecutor(max_workers=self.parallelism,
                                thread_name_prefix='reconcile') as pool:
            while waiting or running:
                if self.cancel_event.is_set() and not halted:
                    logger.warning("Cancellation requested; waiting for in-flight operations")
                    report.cancelled = True
                    halted = True

                if not halted:
                    halted = self._dispatch(pool, waiting, running, done, broken, report)

                if not running:
                    if waiting and not halted:
                        # Nothing in flight can satisfy these any more
                        for op in waiting:
                            report.add(OperationOutcome(
                                op.resource_id, op.action, BLOCKED,
                                message=f"unsatisfiable requirements: "
                                        f"{', '.join(sorted(op.requires - done))}",
                            ))
                        waiting.clear()
                    break

                finished, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in finished:
                    op, started = running.pop(future)
                    outcome = self._finish(op, future, started)
                    report.add(outcome)
                    if outcome.status == APPLIED:
                        done.add(op.resource_id)
                    else:
                        broken.add(op.resource_id)
                        if self.on_error == 'stop' and not halted:
                            logger.error("Halting dispatch after failure (on_error=stop)")
                            halted = True

            for op in waiting:
                report.add(OperationOutcome(
                    op.resource_id, op.action, CANCELLED,
                    message='not started: apply halted',
                ))

        report.completed_at = time.time()
        return report

    def _dispatch(
        self,
        pool: ThreadPoolExecutor,
        waiting: list[PlanOperation],
        running: dict[Future, tuple[PlanOperation, float]],
        done: set[str],
        broken: set[str],
        report: ExecutionReport,
    ) -> bool:
        """Submit ready operations up to parallelism and skip those behind a failure.

        Operations stay queued here rather than in the pool so a halt
        leaves them undispatched. Repeats until no more progress is
        possible, since skipping or resolving one operation can settle
        others.

        Returns:
            True if dispatch must halt (on_error=stop after a failure)
        """
        progress = True
        while progress:
            progress = False
            for op in list(waiting):
                blockers = op.requires & broken
                if blockers:
                    waiting.remove(op)
                    broken.add(op.resource_id)
                    progress = True
                    report.add(OperationOutcome(
                        op.resource_id, op.action, BLOCKED,
                        message=f"blocked by failure of {', '.join(sorted(blockers))}",
                    ))
                    logger.warning(f"[{op.action.value}] {op.resource_id} skipped: "
                                   f"depends on failed {', '.join(sorted(blockers))}")
                    continue
                if not op.requires <= done or len(running) >= self.parallelism:
                    continue

                waiting.remove(op)
                progress = True
                try:
                    prepared = self._prepare(op)
                except UnresolvedReferenceError as e:
                    broken.add(op.resource_id)
                    report.add(OperationOutcome(op.resource_id, op.action, FAILED, message=str(e)))
                    logger.error(f"[{op.action.value}] {op.resource_id} failed: {e}")
                    if self.on_error == 'stop':
                        return True
                    continue

                if op.action is Action.UPDATE and not prepared.changes:
                    done.add(op.resource_id)
                    report.add(OperationOutcome(op.resource_id, op.action, UNCHANGED))
                    logger.info(f"[update] {op.resource_id} unchanged after resolving values")
                    continue

                logger.info(f"[{op.action.value}] {op.resource_id} dispatched")
                running[pool.submit(self._run, prepared)] = (op, time.time())
        return False

    def _prepare(self, op: PlanOperation) -> _Prepared:
        """Resolve deferred values against state committed so far."""
        if op.action is Action.DELETE:
            return _Prepared(op=op)

        records = self.store.load()
        attributes = resolve_attributes(op.spec, records)
        if op.action is Action.CREATE:
            return _Prepared(op=op, attributes=attributes)

        record = records.get(op.resource_id) or op.record
        return _Prepared(op=op, attributes=attributes,
                         changes=diff_attributes(attributes, record.attributes))

    def _finish(self, op: PlanOperation, future: Future, started: float) -> OperationOutcome:
        """Collect a worker result and commit state for successful operations."""
        duration = time.time() - started
        try:
            record, attempts = future.result()
        except ProviderError as e:
            e.resource_id = e.resource_id or op.resource_id
            logger.error(f"[{op.action.value}] {op.resource_id} failed: {e.message}")
            return OperationOutcome(op.resource_id, op.action, FAILED,
                                    attempts=getattr(e, 'attempts', 0),
                                    message=e.message, duration=duration)
        except Exception as e:
            logger.exception(f"[{op.action.value}] {op.resource_id} raised unexpectedly")
            return OperationOutcome(op.resource_id, op.action, FAILED,
                                    message=f"{type(e).__name__}: {e}", duration=duration)

        self.store.commit(op.resource_id, record)
        logger.info(f"[{op.action.value}] {op.resource_id} complete "
                    f"({attempts} attempt{'s' if attempts != 1 else ''}, {duration:.1f}s)")
        return OperationOutcome(op.resource_id, op.action, APPLIED,
                                attempts=attempts, duration=duration)

    def _run(self, prepared: _Prepared) -> tuple[Optional[StateRecord], int]:
        """Worker body: call the provider with retry. Returns (new record, attempts)."""
        op = prepared.op
        provider = self.providers.for_type(op.resource_type)

        def _log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            logger.warning(
                f"[{op.action.value}] {op.resource_id} transient error "
                f"(attempt {retry_state.attempt_number}/{self.max_attempts}), "
                f"retrying in {retry_state.next_action.sleep:.1f}s: {error.message}"
            )

        retrying = Retrying(
            retry=retry_if_exception_type(TransientProviderError),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            stop=stop_after_attempt(self.max_attempts),
            sleep=self.sleep,
            before_sleep=_log_retry,
        )
        attempts = 0
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    record = self._invoke(provider, prepared)
        except RetryError as e:
            last = e.last_attempt.exception()
            error = PermanentProviderError(
                f"gave up after {attempts} attempts: {last.message}", op.resource_id)
            error.attempts = attempts
            raise error from last
        except ProviderError as e:
            e.attempts = attempts
            raise
        return record, attempts

    def _invoke(self, provider, prepared: _Prepared) -> Optional[StateRecord]:
        op = prepared.op

        if op.action is Action.DELETE:
            provider.delete(op.record.external_id, record=op.record)
            return None

        spec = op.spec.with_attributes(prepared.attributes)
        if op.action is Action.CREATE:
            external_id, outputs = provider.create(spec)
        else:
            external_id = op.record.external_id
            reply = provider.update(external_id, prepared.changes, spec=spec)
            # A reply may be partial; earlier outputs hold unless the attribute changed
            outputs = {key: value for key, value in op.record.outputs.items()
                       if key not in prepared.changes}
            outputs.update(reply or {})

        return StateRecord(
            resource_id=op.resource_id,
            type=spec.type,
            external_id=external_id,
            attributes=prepared.attributes,
            outputs=dict(outputs or {}),
            dependencies=sorted(spec.dependencies),
            applied_at=time.time(),
        )
