"""Planner: diff a resource graph against recorded state.

Produces a Plan of create/update/delete actions in two phases:

- apply: creates and updates (including replacements, which create the
  new physical resource), dependencies first
- cleanup: deletes of resources removed from the template and of the
  physical resources superseded by replacements, dependents first

Ordering is topological with lexical tie-break, so the same inputs
always produce the same plan.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from common import PlanConflictError, ResourceNotFoundError, TargetError, ValidationError
from providers import DESCRIBE, ProviderRegistry, ResourceRequest
from stack_opr.graph import ResourceGraph, topological_sort
from stack_opr.state import ResourceState
from stack_opr.values import Resolver

logger = logging.getLogger(__name__)

# Actions
CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'

# Phases
APPLY_PHASE = 'apply'
CLEANUP_PHASE = 'cleanup'
PHASES = (APPLY_PHASE, CLEANUP_PHASE)

# Drift statuses
IN_SYNC = 'in_sync'
MODIFIED = 'modified'
DELETED = 'deleted'
UNKNOWN = 'unknown'


@dataclass(frozen=True)
class PlannedAction:
    """One planned operation.

    Attributes:
        resource_id: Logical id
        action: create, update or delete
        resource_type: Type the operation is dispatched on
        phase: apply or cleanup
        depends_on: Resource ids in the same phase that must complete first
        replace: Update by replacement (apply) or delete of the superseded
            physical resource (cleanup)
        retain: Delete from state only, leave the resource in place
        reason: Why the action is planned
        desired: Canonical desired form to record on success
        prior: Recorded state before the action (None for fresh creates)
    """
    resource_id: str
    action: str
    resource_type: str
    phase: str = APPLY_PHASE
    depends_on: frozenset = frozenset()
    replace: bool = False
    retain: bool = False
    reason: str = ''
    desired: Optional[dict] = field(default=None, compare=False, hash=False)
    prior: Optional[ResourceState] = field(default=None, compare=False, hash=False)

    @property
    def key(self) -> str:
        return f'{self.phase}:{self.resource_id}'

    @property
    def label(self) -> str:
        if self.action == UPDATE and self.replace:
            return 'replace'
        if self.action == DELETE and self.retain:
            return 'retain'
        return self.action

    def describe(self) -> str:
        """One-line summary for plan output."""
        symbol = {
            'create': '+', 'update': '~', 'replace': '-/+', 'delete': '-', 'retain': '=',
        }[self.label]
        text = f"{symbol} {self.label:<8} {self.resource_id} ({self.resource_type})"
        if self.phase == CLEANUP_PHASE and self.replace and self.prior is not None:
            text += f" [superseded {self.prior.physical_id}]"
        if self.reason:
            text += f": {self.reason}"
        return text

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource_id': self.resource_id,
            'action': self.action,
            'resource_type': self.resource_type,
            'phase': self.phase,
            'depends_on': sorted(self.depends_on),
        }
        if self.replace:
            d['replace'] = True
        if self.retain:
            d['retain'] = True
        if self.reason:
            d['reason'] = self.reason
        if self.prior is not None and self.prior.physical_id:
            d['physical_id'] = self.prior.physical_id
        return d


@dataclass
class DriftEntry:
    """Observed difference between recorded and real-world state."""
    resource_id: str
    resource_type: str
    status: str
    physical_id: Optional[str] = None
    differences: dict = field(default_factory=dict)
    message: str = ''

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource_id': self.resource_id,
            'resource_type': self.resource_type,
            'status': self.status,
            'physical_id': self.physical_id,
        }
        if self.differences:
            d['differences'] = {
                k: {'expected': v[0], 'actual': v[1]} for k, v in self.differences.items()
            }
        if self.message:
            d['message'] = self.message
        return d


@dataclass
class Plan:
    """Ordered actions for one stack.

    Attributes:
        stack_name: Stack identifier
        actions: Actions in execution order (apply phase first)
        base_serial: State serial the plan was computed against
        drift: Drift observed during refresh (if any)
        destroy: True for a destroy plan
    """
    stack_name: str
    actions: list[PlannedAction] = field(default_factory=list)
    base_serial: int = 0
    drift: list[DriftEntry] = field(default_factory=list)
    destroy: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def phase_actions(self, phase: str) -> list[PlannedAction]:
        return [a for a in self.actions if a.phase == phase]

    def get(self, phase: str, resource_id: str) -> PlannedAction:
        for action in self.actions:
            if action.phase == phase and action.resource_id == resource_id:
                return action
        raise KeyError(f'{phase}:{resource_id}')

    def summary(self) -> dict[str, int]:
        counts = {'create': 0, 'update': 0, 'replace': 0, 'delete': 0, 'retain': 0}
        for action in self.actions:
            if action.phase == CLEANUP_PHASE and action.replace:
                continue  # counted with its replacement
            counts[action.label] += 1
        return counts

    def waves(self, phase: str) -> list[list[str]]:
        """Groups of resource ids that can run concurrently within a phase."""
        level: dict[str, int] = {}
        for action in self.phase_actions(phase):
            level[action.resource_id] = max(
                (level[d] + 1 for d in action.depends_on if d in level), default=0
            )
        waves: list[list[str]] = [[] for _ in range(max(level.values(), default=-1) + 1)]
        for rid in sorted(level):
            waves[level[rid]].append(rid)
        return waves

    def to_dict(self) -> dict:
        return {
            'stack_name': self.stack_name,
            'destroy': self.destroy,
            'base_serial': self.base_serial,
            'summary': self.summary(),
            'actions': [a.to_dict() for a in self.actions],
            'drift': [d.to_dict() for d in self.drift if d.status != IN_SYNC],
        }


class Planner:
    """Computes plans for a graph.

    Args:
        graph: Resource graph built from the template
        parameters: Resolved parameter values
        pseudo: Pseudo parameter values
        registry: Provider registry (for replacement rules)
        replacement_safe: Allow replacing resources that others depend on
    """

    def __init__(self, graph: ResourceGraph, parameters: dict[str, Any], pseudo: dict[str, Any],
                 registry: ProviderRegistry, replacement_safe: bool = False):
        self.graph = graph
        self.parameters = parameters
        self.pseudo = pseudo
        self.registry = registry
        self.replacement_safe = replacement_safe
        self._resolver = Resolver(parameters, pseudo, partial=True)

    def desired_state(self, resource_id: str) -> dict:
        """Canonical desired form: parameters resolved, resource references symbolic."""
        node = self.graph.get_node(resource_id)
        return {
            'Properties': self._resolver.resolve(node.properties),
            'Metadata': self._resolver.resolve(node.metadata),
        }

    def _handler(self, resource_type: str, resource_id: str):
        handler = self.registry.find(resource_type)
        if handler is None:
            raise ValidationError(
                f"No provider handles resource type '{resource_type}'", resource_id=resource_id
            )
        return handler

    def plan(self, snapshot: dict[str, ResourceState], base_serial: int = 0,
             drift: Optional[list[DriftEntry]] = None, stack_name: str = '') -> Plan:
        """Diff the graph against a state snapshot.

        Raises:
            PlanConflictError: If a replacement would affect dependents and
                replacement-safe mode is off
            ValidationError: If a resource type has no handler
        """
        drift_by_id = {d.resource_id: d for d in drift or []}
        decisions: dict[str, tuple[str, bool, str]] = {}
        desired_by_id: dict[str, dict] = {}

        for rid in self.graph.topological_order():
            node = self.graph.get_node(rid)
            handler = self._handler(node.type, rid)
            desired = self.desired_state(rid)
            desired_by_id[rid] = desired
            prior = snapshot.get(rid)
            observed = drift_by_id.get(rid)

            if prior is None:
                decisions[rid] = (CREATE, False, 'new resource')
                continue
            if observed is not None and observed.status == DELETED:
                decisions[rid] = (CREATE, False, 'deleted outside the engine')
                continue

            decision: Optional[tuple[str, bool, str]] = None
            if prior.resource_type != node.type:
                decision = (UPDATE, True, f'type changed from {prior.resource_type}')
            elif prior.desired != desired:
                before = prior.desired.get('Properties') or {}
                after = desired['Properties']
                immutable = handler.requires_replacement(before, after)
                if immutable:
                    decision = (UPDATE, True, f"immutable change: {', '.join(immutable)}")
                else:
                    changed = sorted(
                        k for k in set(before) | set(after) if before.get(k) != after.get(k)
                    )
                    decision = (UPDATE, False, f"changed: {', '.join(changed) or 'Metadata'}")
            elif observed is not None and observed.status == MODIFIED:
                decision = (UPDATE, False, f"drifted: {', '.join(sorted(observed.differences))}")

            # A replaced or recreated dependency gets a new physical id
            replaced_deps = sorted(
                d for d in node.depends_on
                if d in decisions and (decisions[d][1] or (decisions[d][0] == CREATE and d in snapshot))
            )
            if replaced_deps and not (decision and decision[1]):
                if self._reference_forces_replacement(node, handler, desired, replaced_deps):
                    decision = (UPDATE, True, f"references replaced {', '.join(replaced_deps)}")
                elif decision is None:
                    decision = (UPDATE, False, f"references replaced {', '.join(replaced_deps)}")

            if decision is None:
                continue
            if decision[1] and not self.replacement_safe:
                dependents = sorted(self.graph.dependents(rid))
                if dependents:
                    raise PlanConflictError(
                        f"replacement required ({decision[2]}) but {', '.join(dependents)} "
                        f"depend on it; re-run with replacement-safe mode to allow",
                        resource_id=rid, action='replace',
                    )
            decisions[rid] = decision

        actions: list[PlannedAction] = []
        for rid in self.graph.topological_order():
            if rid not in decisions:
                continue
            action, replace, reason = decisions[rid]
            node = self.graph.get_node(rid)
            actions.append(PlannedAction(
                resource_id=rid,
                action=action,
                resource_type=node.type,
                phase=APPLY_PHASE,
                depends_on=frozenset(d for d in node.depends_on if d in decisions),
                replace=replace,
                reason=reason,
                desired=desired_by_id[rid],
                prior=snapshot.get(rid),
            ))

        removed = {rid: s for rid, s in snapshot.items() if rid not in self.graph}
        superseded = {
            rid: snapshot[rid] for rid, (_, replace, _) in decisions.items()
            if replace and rid in snapshot and not (
                rid in drift_by_id and drift_by_id[rid].status == DELETED
            )
        }
        actions.extend(_cleanup_actions(removed, superseded))

        plan = Plan(stack_name=stack_name, actions=actions, base_serial=base_serial,
                    drift=list(drift or []))
        logger.debug(f"Planned {len(actions)} action(s): {plan.summary()}")
        return plan

    def _reference_forces_replacement(self, node, handler, desired: dict,
                                      replaced: list[str]) -> bool:
        """True if a reference to a replaced resource sits in an immutable property."""
        after = desired['Properties']
        before = dict(after)
        for target in replaced:
            for ref in node.references_to(target):
                if ref.property is not None:
                    before[ref.property] = {'Replaced': target}
        if before == after:
            return False
        return bool(handler.requires_replacement(before, after))


def plan_destroy(snapshot: dict[str, ResourceState], base_serial: int = 0,
                 stack_name: str = '') -> Plan:
    """Destroy plan that needs no template."""
    actions = _cleanup_actions(snapshot, {}, reason='stack destroy')
    return Plan(stack_name=stack_name, actions=actions, base_serial=base_serial, destroy=True)


def _cleanup_actions(removed: dict[str, ResourceState], superseded: dict[str, ResourceState],
                     reason: str = 'removed from template') -> list[PlannedAction]:
    """Delete actions in reverse recorded-dependency order.

    A delete waits for the deletes of every resource that depended on it.
    """
    targets = {**removed, **superseded}
    waits: dict[str, set[str]] = {rid: set() for rid in targets}
    for rid, state in targets.items():
        for dep in state.depends_on:
            if dep in targets and dep != rid:
                waits[dep].add(rid)

    actions = []
    for rid in topological_sort(targets, waits):
        state = targets[rid]
        replace = rid in superseded
        actions.append(PlannedAction(
            resource_id=rid,
            action=DELETE,
            resource_type=state.resource_type,
            phase=CLEANUP_PHASE,
            depends_on=frozenset(waits[rid]),
            replace=replace,
            retain=not replace and state.deletion_policy == 'Retain',
            reason='superseded by replacement' if replace else reason,
            prior=state,
        ))
    return actions


def detect_drift(snapshot: dict[str, ResourceState], registry: ProviderRegistry,
                 stack_name: str = '') -> list[DriftEntry]:
    """Describe recorded resources and compare with recorded properties.

    Resources whose handler lacks Describe are reported as unknown.
    """
    entries = []
    for rid in sorted(snapshot):
        state = snapshot[rid]
        entry = DriftEntry(rid, state.resource_type, IN_SYNC, physical_id=state.physical_id)
        handler = registry.find(state.resource_type)
        if handler is None or not handler.supports(DESCRIBE):
            entry.status = UNKNOWN
            entry.message = 'handler cannot describe this type'
            entries.append(entry)
            continue
        request = ResourceRequest(
            resource_type=state.resource_type,
            logical_id=rid,
            stack_name=stack_name,
            properties=dict(state.properties),
            physical_id=state.physical_id,
        )
        try:
            event = handler.describe(request)
        except ResourceNotFoundError:
            entry.status = DELETED
            entries.append(entry)
            logger.info(f"[{rid}] Drift: {state.physical_id} no longer exists")
            continue
        except TargetError as e:
            entry.status = UNKNOWN
            entry.message = str(e)
            entries.append(entry)
            logger.warning(f"[{rid}] Drift check failed: {e}")
            continue

        if event.properties is not None:
            for key in sorted(set(state.properties) | set(event.properties)):
                expected = state.properties.get(key)
                actual = event.properties.get(key)
                if expected != actual:
                    entry.differences[key] = (expected, actual)
        if entry.differences:
            entry.status = MODIFIED
            logger.info(f"[{rid}] Drift: {', '.join(entry.differences)} modified")
        entries.append(entry)
    return entries
