"""Stack executor for plan-based provisioning.

Walks a Plan and runs each action through its resource handler:

- actions start once every action they depend on has succeeded; ready
  actions run concurrently on a worker pool, launched in lexical order
- every outcome is committed to the state store before dependents are
  released
- transient target errors are retried with exponential backoff; an
  IN_PROGRESS result is polled through Describe until terminal or until
  the per-resource timeout expires
- a failure halts the failed action's branch (its weakly connected
  component); independent branches keep going
- the cleanup phase (deletes) runs only after a fully successful apply
  phase; outputs are stored at the same point

On failure the rollback policy decides whether completed work in the
affected branches is compensated (see stack_opr.rollback).
"""

import heapq
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import (
    FatalTargetError,
    OperationCancelled,
    PlanConflictError,
    ResourceNotFoundError,
    StackError,
    TransientTargetError,
    backoff_delay,
)
from config import EngineSettings
from providers import (
    CREATE,
    DELETE,
    DESCRIBE,
    FAILED,
    UPDATE,
    ProgressEvent,
    ProviderRegistry,
    ResourceRequest,
)
from providers.base import method_for
from stack_opr import planner
from stack_opr.graph import ResourceGraph
from stack_opr.planner import APPLY_PHASE, CLEANUP_PHASE, Plan, PlannedAction
from stack_opr.rollback import RollbackCoordinator, RollbackReport
from stack_opr.state import (
    PENDING,
    SUCCEEDED,
    ExecutionRecord,
    ResourceState,
    StateStore,
)
from stack_opr.values import Resolver

logger = logging.getLogger(__name__)

# Final statuses
APPLIED = 'applied'
ROLLED_BACK = 'rolled_back'
PARTIALLY_APPLIED = 'partially_applied'
CANCELLED = 'cancelled'
DRY_RUN = 'dry_run'

_CAPABILITY = {
    planner.CREATE: CREATE,
    planner.UPDATE: UPDATE,
    planner.DELETE: DELETE,
}


@dataclass
class OperationResult:
    """Terminal outcome of one handler operation."""
    physical_id: Optional[str]
    attributes: dict = field(default_factory=dict)
    properties: Optional[dict] = None
    attempts: int = 1


class OperationInvoker:
    """Runs one handler operation to a terminal state.

    Args:
        registry: Provider registry
        settings: Engine settings (attempts, backoff, polling)
        stack_name: Used in client request tokens
        cancel_event: Set to abandon waits and retries
    """

    def __init__(self, registry: ProviderRegistry, settings: EngineSettings, stack_name: str,
                 cancel_event: Optional[threading.Event] = None):
        self.registry = registry
        self.settings = settings
        self.stack_name = stack_name
        self.cancel_event = cancel_event or threading.Event()

    def invoke(
        self,
        action: str,
        resource_type: str,
        logical_id: str,
        properties: Optional[dict] = None,
        physical_id: Optional[str] = None,
        previous_properties: Optional[dict] = None,
        timeout: Optional[float] = None,
        record: Optional[ExecutionRecord] = None,
        token_suffix: str = '',
    ) -> OperationResult:
        """Invoke create/update/delete and wait for a terminal state.

        Raises:
            FatalTargetError: Non-retryable failure, retries exhausted,
                missing capability or timeout
            OperationCancelled: The run was cancelled
        """
        capability = _CAPABILITY[action]
        handler = self.registry.find(resource_type)
        if handler is None:
            raise FatalTargetError(f"no provider handles type {resource_type}", logical_id, action)
        if not handler.supports(capability):
            raise FatalTargetError(
                f"handler for {resource_type} does not support {capability}", logical_id, action
            )

        token = f'{self.stack_name}-{logical_id}-{action}'
        if token_suffix:
            token = f'{token}-{token_suffix}'
        request = ResourceRequest(
            resource_type=resource_type,
            logical_id=logical_id,
            stack_name=self.stack_name,
            properties=dict(properties or {}),
            physical_id=physical_id,
            previous_properties=previous_properties,
            request_token=token,
        )
        timeout = timeout or self.settings.resource_timeout
        deadline = time.monotonic() + timeout
        operation = getattr(handler, method_for(capability))

        attempt = 0
        while True:
            attempt += 1
            if record is not None:
                record.attempts = attempt
            if self.cancel_event.is_set():
                raise OperationCancelled("cancelled before start", logical_id, action)
            try:
                event = operation(request)
                event = self._wait(handler, request, event, deadline, timeout, action, record)
                if event.status == FAILED:
                    if event.retryable:
                        raise TransientTargetError(event.message, logical_id, action)
                    raise FatalTargetError(event.message or 'target reported failure',
                                           logical_id, action)
                return OperationResult(
                    physical_id=event.physical_id or request.physical_id,
                    attributes=dict(event.attributes or {}),
                    properties=event.properties,
                    attempts=attempt,
                )
            except ResourceNotFoundError:
                if action == planner.DELETE:
                    logger.info(f"[{action}] {logical_id}: {physical_id} already gone")
                    return OperationResult(physical_id=physical_id, attempts=attempt)
                raise
            except TransientTargetError as e:
                if attempt >= self.settings.max_attempts:
                    raise FatalTargetError(
                        f"{e.message} (gave up after {attempt} attempts)", logical_id, action
                    ) from e
                delay = e.retry_after
                if delay is None:
                    delay = backoff_delay(attempt, self.settings.backoff_base,
                                          self.settings.backoff_max)
                logger.warning(
                    f"[{action}] {logical_id}: {e.message}; retry {attempt}/"
                    f"{self.settings.max_attempts - 1} in {delay:.1f}s"
                )
                if self.cancel_event.wait(delay):
                    raise OperationCancelled("cancelled while waiting to retry",
                                             logical_id, action) from e

    def _wait(self, handler, request: ResourceRequest, event: ProgressEvent, deadline: float,
              timeout: float, action: str,
              record: Optional[ExecutionRecord] = None) -> ProgressEvent:
        """Poll Describe while the target reports IN_PROGRESS.

        A create abandoned on timeout or cancel may already exist at the
        target; its physical id is kept on the record as abandoned_id.
        """
        while not event.is_terminal:
            if event.physical_id:
                request.physical_id = event.physical_id
            if not handler.supports(DESCRIBE):
                raise FatalTargetError(
                    "target reported IN_PROGRESS but the handler cannot describe",
                    request.logical_id, action,
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._abandon(handler, request, action, record)
                raise FatalTargetError(
                    f"timed out after {timeout:g}s waiting for a terminal state",
                    request.logical_id, action,
                )
            delay = event.callback_delay
            if delay is None:
                delay = self.settings.poll_interval
            if self.cancel_event.wait(min(delay, remaining)):
                self._abandon(handler, request, action, record)
                raise OperationCancelled("cancelled while in progress", request.logical_id, action)
            logger.debug(f"[{action}] {request.logical_id}: polling {request.physical_id}")
            event = handler.describe(request)
        return event

    @staticmethod
    def _abandon(handler, request: ResourceRequest, action: str,
                 record: Optional[ExecutionRecord]) -> None:
        handler.cancel(request)
        if action == planner.CREATE and request.physical_id and record is not None:
            record.abandoned_id = request.physical_id


@dataclass
class ApplyResult:
    """Outcome of an apply or destroy run.

    Attributes:
        success: True if every action succeeded
        status: applied, rolled_back, partially_applied, cancelled or dry_run
        records: Execution records in plan order
        outputs: Resolved outputs (empty unless all creates/updates succeeded)
        rollback: Rollback report (None if no rollback ran)
        errors: Failures outside individual actions (outputs, rollback policy)
    """
    success: bool
    status: str
    records: list[ExecutionRecord] = field(default_factory=list)
    outputs: dict = field(default_factory=dict)
    rollback: Optional[RollbackReport] = None
    errors: list[str] = field(default_factory=list)

    def failed_records(self) -> list[ExecutionRecord]:
        return [r for r in self.records if r.error and r.status != SUCCEEDED]

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'success': self.success,
            'status': self.status,
            'records': [r.to_dict() for r in self.records],
            'outputs': self.outputs,
        }
        if self.rollback is not None:
            d['rollback'] = self.rollback.to_dict()
        if self.errors:
            d['errors'] = list(self.errors)
        return d


@dataclass
class StackExecutor:
    """Executes a Plan against the provisioning target.

    Attributes:
        plan: Plan to execute
        registry: Provider registry
        store: State store (the only shared mutable resource)
        settings: Engine settings
        graph: Resource graph (None for destroy-only runs)
        parameters: Resolved parameter values
        pseudo: Pseudo parameter values
        dry_run: Preview the plan and execute nothing
        confirm_rollback: Asked before rolling back under the prompt policy
    """
    plan: Plan
    registry: ProviderRegistry
    store: StateStore
    settings: EngineSettings
    graph: Optional[ResourceGraph] = None
    parameters: dict = field(default_factory=dict)
    pseudo: dict = field(default_factory=dict)
    dry_run: bool = False
    confirm_rollback: Optional[Callable[[list[ExecutionRecord]], bool]] = None
    _cancel: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def cancel(self) -> None:
        """Abort: no new actions start, running ones are cancelled best-effort."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested; waiting for running actions to stop")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def apply(self) -> ApplyResult:
        """Execute the plan.

        Raises:
            PlanConflictError: If state changed since the plan was computed
        """
        records = {
            a.key: ExecutionRecord(
                resource_id=a.resource_id, action=a.action, phase=a.phase,
                resource_type=a.resource_type, replace=a.replace,
                physical_id=a.prior.physical_id if a.prior else None,
            )
            for a in self.plan.actions
        }
        if self.dry_run:
            self._preview()
            return ApplyResult(success=True, status=DRY_RUN, records=list(records.values()))

        if self.store.serial != self.plan.base_serial:
            raise PlanConflictError(
                f"state for stack {self.plan.stack_name} changed since the plan was computed "
                f"(serial {self.store.serial}, plan based on {self.plan.base_serial}); re-run plan"
            )

        invoker = OperationInvoker(self.registry, self.settings, self.plan.stack_name, self._cancel)
        result = ApplyResult(success=False, status=APPLIED)
        kind = 'destroy' if self.plan.destroy else 'apply'
        logger.info(f"Starting {kind} of stack {self.plan.stack_name}: {self.plan.summary()}")

        failed_components = self._run_phase(APPLY_PHASE, records, invoker)
        apply_ok = not failed_components and not self.cancelled

        if apply_ok:
            if not self.plan.destroy and self.graph is not None:
                result.outputs = self._resolve_outputs(result.errors)
                if not result.errors and result.outputs != self.store.outputs():
                    self.store.set_outputs(result.outputs)
            cleanup_failed = self._run_phase(CLEANUP_PHASE, records, invoker)
            if self.plan.destroy and not cleanup_failed and not self.cancelled:
                self.store.set_outputs({})
        else:
            self._skip_phase(CLEANUP_PHASE, records, 'apply phase did not complete')
            result.rollback = self._maybe_rollback(records, failed_components, result.errors)

        result.records = [records[a.key] for a in self.plan.actions]
        result.success = all(r.status == SUCCEEDED for r in result.records) and not result.errors
        result.status = self._final_status(result)
        if not result.success:
            result.outputs = {}
        logger.info(f"Finished {kind} of stack {self.plan.stack_name}: {result.status}")
        return result

    def _final_status(self, result: ApplyResult) -> str:
        if result.success:
            return APPLIED
        fully_rolled_back = result.rollback is not None and result.rollback.fully_rolled_back
        if self.cancelled and not fully_rolled_back:
            return CANCELLED
        changed = any(r.status == SUCCEEDED or r.abandoned_id for r in result.records)
        if not changed and (result.rollback is None or fully_rolled_back):
            return ROLLED_BACK
        return PARTIALLY_APPLIED

    # Phase scheduling

    def _run_phase(self, phase: str, records: dict[str, ExecutionRecord],
                   invoker: OperationInvoker) -> set[int]:
        """Run one phase; returns the ids of components with a failure."""
        actions = {a.resource_id: a for a in self.plan.phase_actions(phase)}
        if not actions:
            return set()
        component = _components(actions)
        remaining = {rid: set(a.depends_on) & set(actions) for rid, a in actions.items()}
        dependents: dict[str, set[str]] = {rid: set() for rid in actions}
        for rid, deps in remaining.items():
            for dep in deps:
                dependents[dep].add(rid)

        ready = [rid for rid, deps in remaining.items() if not deps]
        heapq.heapify(ready)
        failed: set[int] = set()
        running: dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.settings.max_workers,
                                thread_name_prefix=f'{phase}-worker') as pool:
            while ready or running:
                while ready and len(running) < self.settings.max_workers and not self.cancelled:
                    rid = heapq.heappop(ready)
                    if component[rid] in failed:
                        continue
                    record = records[actions[rid].key]
                    record.start()
                    running[pool.submit(self._execute, actions[rid], record, invoker)] = rid
                if not running:
                    break
                try:
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.cancel()
                    continue
                for future in done:
                    rid = running.pop(future)
                    if future.result():
                        for dependent in sorted(dependents[rid]):
                            remaining[dependent].discard(rid)
                            if not remaining[dependent] and component[dependent] not in failed:
                                heapq.heappush(ready, dependent)
                    else:
                        failed.add(component[rid])

        for rid, action in actions.items():
            record = records[action.key]
            if record.status != PENDING:
                continue
            if self.cancelled:
                record.skip('not started: run cancelled')
            else:
                record.skip('not started: a failure halted this branch')
            self.store.log(record)
        return failed

    def _skip_phase(self, phase: str, records: dict[str, ExecutionRecord], reason: str) -> None:
        for action in self.plan.phase_actions(phase):
            record = records[action.key]
            if record.status == PENDING:
                record.skip(f'not started: {reason}')
                self.store.log(record)

    # Action execution (worker threads)

    def _execute(self, action: PlannedAction, record: ExecutionRecord,
                 invoker: OperationInvoker) -> bool:
        """Run one action and commit its outcome. Never raises."""
        rid = action.resource_id
        label = action.label if action.phase == APPLY_PHASE else action.action
        logger.info(f"[{label}] {rid} ({action.resource_type})")
        try:
            if action.action == planner.DELETE:
                self._delete(action, record, invoker)
            else:
                self._create_or_update(action, record, invoker)
        except OperationCancelled as e:
            record.cancel(e.message)
            logger.warning(f"[{label}] {rid}: {e.message}")
            self._record_failure(action, record)
            return False
        except StackError as e:
            record.fail(e.message)
            logger.error(f"[{label}] {rid} failed: {e.message}")
            self._record_failure(action, record)
            return False
        except Exception as e:  # handler bug; record it as this action's failure
            logger.exception(f"[{label}] {rid}: unexpected error")
            record.fail(f"{type(e).__name__}: {e}")
            self._record_failure(action, record)
            return False
        logger.info(f"[{label}] {rid} done ({record.physical_id})")
        return True

    def _record_failure(self, action: PlannedAction, record: ExecutionRecord) -> None:
        """Log a failed action, first deleting any resource it left in progress.

        If that delete fails, a new resource is committed to state so a
        later apply or destroy can reach it. A replacement keeps its prior
        record and the leftover id stays on the logged record.
        """
        physical_id = record.abandoned_id
        if physical_id is None:
            self.store.log(record)
            return

        rid = action.resource_id
        cleanup = OperationInvoker(self.registry, self.settings, self.plan.stack_name)
        try:
            cleanup.invoke(
                planner.DELETE, action.resource_type, rid, physical_id=physical_id,
                token_suffix=f'abandoned-{self.plan.base_serial}',
            )
        except StackError as e:
            logger.error(f"[cleanup] {rid}: could not delete in-progress {physical_id}: {e.message}")
        else:
            logger.info(f"[cleanup] {rid}: deleted in-progress {physical_id}")
            record.abandoned_id = None
            self.store.log(record)
            return

        if action.prior is None:
            state = ResourceState(
                resource_id=rid,
                resource_type=action.resource_type,
                physical_id=physical_id,
                depends_on=sorted(action.depends_on),
            )
            self.store.commit(record, state)
        else:
            logger.error(f"[cleanup] {rid}: {physical_id} is not tracked in state; delete it by hand")
            self.store.log(record)

    def _create_or_update(self, action: PlannedAction, record: ExecutionRecord,
                          invoker: OperationInvoker) -> None:
        if self.graph is None:
            raise StackError("cannot create or update without a template", action.resource_id,
                             action.action)
        node = self.graph.get_node(action.resource_id)
        resolver = Resolver(self.parameters, self.pseudo, lookup=self.store.get)
        properties = resolver.resolve(node.properties)
        prior = action.prior

        if action.action == planner.CREATE or action.replace:
            result = invoker.invoke(
                planner.CREATE, node.type, node.id, properties=properties,
                timeout=node.timeout, record=record,
                token_suffix=str(self.plan.base_serial),
            )
        else:
            result = invoker.invoke(
                planner.UPDATE, node.type, node.id, properties=properties,
                physical_id=prior.physical_id if prior else None,
                previous_properties=prior.properties if prior else None,
                timeout=node.timeout, record=record,
                token_suffix=str(self.plan.base_serial),
            )
            if not result.physical_id and prior is not None:
                result.physical_id = prior.physical_id

        state = ResourceState(
            resource_id=node.id,
            resource_type=node.type,
            physical_id=result.physical_id,
            desired=action.desired or {},
            properties=properties,
            attributes=result.attributes,
            depends_on=sorted(node.depends_on),
            deletion_policy=node.deletion_policy,
        )
        record.complete(result.physical_id)
        self.store.commit(record, state)

    def _delete(self, action: PlannedAction, record: ExecutionRecord,
                invoker: OperationInvoker) -> None:
        prior = action.prior
        if prior is None:
            raise StackError("no recorded state to delete", action.resource_id, action.action)
        if action.retain:
            logger.info(f"[retain] {action.resource_id}: leaving {prior.physical_id} in place")
        else:
            invoker.invoke(
                planner.DELETE, prior.resource_type, action.resource_id,
                properties=prior.properties, physical_id=prior.physical_id, record=record,
                token_suffix=str(self.plan.base_serial),
            )
        record.complete(prior.physical_id)
        if action.replace:
            # The new resource owns the record now
            self.store.log(record)
        else:
            self.store.commit(record, remove=True)

    # Outputs and rollback

    def _resolve_outputs(self, errors: list[str]) -> dict[str, Any]:
        resolver = Resolver(self.parameters, self.pseudo, lookup=self.store.get)
        outputs = {}
        for name, value in self.graph.outputs.items():
            try:
                outputs[name] = resolver.resolve(value)
            except StackError as e:
                errors.append(f"Output {name}: {e}")
                logger.error(f"Output {name} could not be resolved: {e}")
        return outputs

    def _maybe_rollback(self, records: dict[str, ExecutionRecord], failed_components: set[int],
                        errors: list[str]) -> Optional[RollbackReport]:
        apply_actions = self.plan.phase_actions(APPLY_PHASE)
        if self.cancelled:
            scope = apply_actions
        else:
            component = _components({a.resource_id: a for a in apply_actions})
            scope = [a for a in apply_actions if component[a.resource_id] in failed_components]
        completed = [(a, records[a.key]) for a in scope if records[a.key].status == SUCCEEDED]
        if not completed:
            return None

        policy = self.settings.rollback
        if self.cancelled and policy == 'auto':
            policy = 'prompt'
        ids = ', '.join(a.resource_id for a, _ in completed)
        if policy == 'never':
            logger.warning(f"Rollback policy is 'never'; leaving completed actions in place: {ids}")
            return None
        if policy == 'prompt':
            if self.confirm_rollback is None:
                logger.warning(f"Rollback needs confirmation; leaving completed actions in place: {ids}")
                errors.append('rollback skipped: confirmation required')
                return None
            if not self.confirm_rollback([r for _, r in completed]):
                logger.warning(f"Rollback declined; leaving completed actions in place: {ids}")
                return None

        # Compensations run even after a cancel
        invoker = OperationInvoker(self.registry, self.settings, self.plan.stack_name)
        coordinator = RollbackCoordinator(invoker, self.store,
                                          token_suffix=f'rollback-{self.plan.base_serial}')
        return coordinator.rollback(completed)

    def _preview(self) -> None:
        """Preview the plan without executing."""
        title = 'DESTROY' if self.plan.destroy else 'APPLY'
        print("")
        print("=" * 65)
        print(f"  DRY-RUN {title}: {self.plan.stack_name}")
        print(f"  Changes: {_format_summary(self.plan.summary())}")
        print("=" * 65)
        if self.plan.is_empty:
            print("  No changes.")
        for phase in (APPLY_PHASE, CLEANUP_PHASE):
            waves = self.plan.waves(phase)
            if not waves:
                continue
            print(f"  Phase: {phase}")
            for index, wave in enumerate(waves, 1):
                print(f"    Wave {index}:")
                for rid in wave:
                    print(f"      {self.plan.get(phase, rid).describe()}")
        print("")


def _components(actions: dict[str, PlannedAction]) -> dict[str, int]:
    """Weakly connected component index per resource id (union-find)."""
    parent = {rid: rid for rid in actions}

    def _find(rid: str) -> str:
        while parent[rid] != rid:
            parent[rid] = parent[parent[rid]]
            rid = parent[rid]
        return rid

    for rid, action in actions.items():
        for dep in action.depends_on:
            if dep in parent:
                parent[_find(rid)] = _find(dep)

    roots: dict[str, int] = {}
    result = {}
    for rid in sorted(actions):
        root = _find(rid)
        result[rid] = roots.setdefault(root, len(roots))
    return result


def _format_summary(summary: dict[str, int]) -> str:
    parts = [f"{count} to {name}" for name, count in summary.items() if count]
    return ', '.join(parts) or 'none'
