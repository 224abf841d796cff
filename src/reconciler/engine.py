"""Reconcile cycle: build graph, lock state, diff, execute, unlock.

Load-time errors (invalid declarations, cycles, unresolved references) are
raised before the state lock is taken, so they never touch a provider.
LockContention is raised before any provider call.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from config import ReconcilerConfig
from declarations import Declarations
from providers.base import ProviderRegistry, build_registry
from reconciler.diff import Plan, compute_plan
from reconciler.executor import ExecutionReport, PlanExecutor
from reconciler.graph import DependencyGraph
from reconciler.state import StateStore

logger = logging.getLogger(__name__)

# Apply statuses
SUCCESS = 'success'
PARTIAL_FAILURE = 'partial_failure'
CANCELLED = 'cancelled'
ABORTED = 'aborted'


@dataclass
class ApplyResult:
    """Outcome of an apply or destroy cycle.

    Attributes:
        status: success, partial_failure, cancelled, or aborted (plan not approved)
        plan: The plan that was (or would have been) executed
        report: Execution report (None when aborted before execution)
    """
    status: str
    plan: Plan
    report: Optional[ExecutionReport] = None
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == SUCCESS

    def summary(self) -> dict[str, int]:
        if self.report is None:
            return {'create': 0, 'update': 0, 'delete': 0,
                    'noop': self.plan.summary()['noop']}
        return self.report.summary()

    def failure_messages(self) -> list[str]:
        """One line per failed resource: '<resource>: <provider message>'."""
        if self.report is None:
            return []
        return [f"{o.resource_id}: {o.message}" for o in self.report.failures]

    def to_dict(self) -> dict:
        d = {
            'status': self.status,
            'success': self.success,
            'duration_seconds': round(self.duration, 2),
            'summary': self.summary(),
        }
        if self.report is not None:
            d['operations'] = [o.to_dict() for o in self.report.outcomes.values()]
        return d


@dataclass
class Reconciler:
    """Drives plan/apply/destroy cycles against one state store.

    Attributes:
        store: State store (holds the lock for each cycle)
        providers: Provider routing
        config: Executor settings
        cancel_event: Shared with the executor; set to stop dispatch
    """
    store: StateStore
    providers: ProviderRegistry
    config: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_config(cls, config: ReconcilerConfig) -> 'Reconciler':
        return cls(
            store=StateStore(config.state_path),
            providers=build_registry(config),
            config=config,
        )

    def _executor(self) -> PlanExecutor:
        return PlanExecutor(
            providers=self.providers,
            store=self.store,
            parallelism=self.config.parallelism,
            max_attempts=self.config.max_attempts,
            backoff_base=self.config.backoff_base,
            backoff_max=self.config.backoff_max,
            on_error=self.config.on_error,
            cancel_event=self.cancel_event,
            sleep=self.sleep,
        )

    def plan(self, declarations: Declarations) -> Plan:
        """Compute the plan for declarations against current state.

        Raises:
            ConfigError, CycleError, UnresolvedReferenceError: Invalid declarations
            LockContention: If another cycle holds the state lock
        """
        graph = DependencyGraph(declarations.resources)
        with self.store.locked('plan'):
            return compute_plan(graph, self.store.load())

    def apply(
        self,
        declarations: Declarations,
        approve: Optional[Callable[[Plan], bool]] = None,
    ) -> ApplyResult:
        """Reconcile infrastructure to match declarations.

        Args:
            declarations: Desired resources
            approve: Called with the plan before execution; returning False aborts

        Raises:
            ConfigError, CycleError, UnresolvedReferenceError: Invalid declarations
            LockContention: If another cycle holds the state lock
        """
        graph = DependencyGraph(declarations.resources)
        return self._run_cycle('apply', graph, approve)

    def destroy(self, approve: Optional[Callable[[Plan], bool]] = None) -> ApplyResult:
        """Delete every resource recorded in state, dependents first.

        Raises:
            LockContention: If another cycle holds the state lock
        """
        return self._run_cycle('destroy', DependencyGraph([]), approve)

    def _run_cycle(
        self,
        operation: str,
        graph: DependencyGraph,
        approve: Optional[Callable[[Plan], bool]],
    ) -> ApplyResult:
        start = time.time()
        with self.store.locked(operation):
            plan = compute_plan(graph, self.store.load())

            if not plan.has_changes:
                logger.info("No changes; infrastructure matches the declarations")
                report = self._executor().execute(plan)
                return ApplyResult(SUCCESS, plan, report, duration=time.time() - start)

            if approve is not None and not approve(plan):
                logger.info(f"{operation.capitalize()} aborted before execution")
                return ApplyResult(ABORTED, plan, duration=time.time() - start)

            logger.info(f"Executing {len(plan.changes)} operation(s): {plan.summary()}")
            report = self._executor().execute(plan)

        if report.success:
            status = SUCCESS
        elif report.cancelled and not report.failures:
            status = CANCELLED
        else:
            status = PARTIAL_FAILURE

        result = ApplyResult(status, plan, report, duration=time.time() - start)
        for line in result.failure_messages():
            logger.error(f"Failed: {line}")
        return result
