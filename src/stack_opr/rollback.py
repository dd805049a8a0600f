"""Rollback coordinator.

Compensates completed apply-phase actions, newest dependency level first:

    create              -> delete the new resource (restore any prior record)
    update (in place)   -> update back to the recorded prior properties
    update (replace)    -> delete the new resource, restore the prior record

Rollback is best-effort. A failed compensation is recorded and the
resources it depends on are skipped (they are still in use), but
compensation of unrelated resources continues.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from common import RollbackError, StackError
from stack_opr import planner
from stack_opr.planner import PlannedAction
from stack_opr.state import ExecutionRecord, StateStore

logger = logging.getLogger(__name__)

# Entry statuses
COMPENSATED = 'rolled_back'
FAILED = 'failed'
SKIPPED = 'skipped'


@dataclass
class RollbackEntry:
    """Outcome of compensating one action."""
    resource_id: str
    action: str
    compensation: str
    status: str
    physical_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource_id': self.resource_id,
            'action': self.action,
            'compensation': self.compensation,
            'status': self.status,
        }
        if self.physical_id:
            d['physical_id'] = self.physical_id
        if self.error:
            d['error'] = self.error
        return d


@dataclass
class RollbackReport:
    """Result of a rollback pass."""
    entries: list[RollbackEntry] = field(default_factory=list)

    @property
    def fully_rolled_back(self) -> bool:
        return all(e.status == COMPENSATED for e in self.entries)

    @property
    def failed(self) -> list[RollbackEntry]:
        return [e for e in self.entries if e.status == FAILED]

    @property
    def skipped(self) -> list[RollbackEntry]:
        return [e for e in self.entries if e.status == SKIPPED]

    def to_dict(self) -> dict:
        return {
            'fully_rolled_back': self.fully_rolled_back,
            'entries': [e.to_dict() for e in self.entries],
        }


def _compensation(action: PlannedAction) -> str:
    if action.action == planner.CREATE:
        return 'delete'
    if action.replace:
        return 'delete-replacement'
    return 'revert'


class RollbackCoordinator:
    """Reverses completed actions.

    Args:
        invoker: OperationInvoker used for compensating operations
        store: State store to restore records in
        token_suffix: Request token suffix for compensations
            (the executor passes rollback-<base serial>)
    """

    def __init__(self, invoker, store: StateStore, token_suffix: str = 'rollback'):
        self.invoker = invoker
        self.store = store
        self.token_suffix = token_suffix

    def rollback(self, completed: list[tuple[PlannedAction, ExecutionRecord]]) -> RollbackReport:
        """Compensate completed actions in reverse plan order.

        Args:
            completed: (action, record) pairs in plan (dependency) order

        Returns:
            RollbackReport; never raises for compensation failures
        """
        report = RollbackReport()
        blocked: set[str] = set()
        logger.info(f"Rolling back {len(completed)} completed action(s)...")

        for action, record in reversed(completed):
            rid = action.resource_id
            entry = RollbackEntry(rid, action.action, _compensation(action), COMPENSATED,
                                  physical_id=record.physical_id)
            if rid in blocked:
                entry.status = SKIPPED
                entry.error = 'a dependent could not be rolled back'
                logger.warning(f"[rollback] {rid}: skipped, still in use by a dependent")
                blocked.update(action.depends_on)
                report.entries.append(entry)
                continue
            try:
                self._compensate(action, record)
            except StackError as e:
                error = RollbackError(e.message, rid, entry.compensation)
                entry.status = FAILED
                entry.error = e.message
                record.mark_rollback_failed(str(error))
                self.store.log(record)
                blocked.update(action.depends_on)
                logger.error(f"[rollback] {error}")
            else:
                logger.info(f"[rollback] {rid}: {entry.compensation} done")
            report.entries.append(entry)

        if report.fully_rolled_back:
            logger.info("Rollback complete")
        else:
            logger.warning(
                f"Rollback incomplete: {len(report.failed)} failed, {len(report.skipped)} skipped"
            )
        return report

    def _compensate(self, action: PlannedAction, record: ExecutionRecord) -> None:
        rid = action.resource_id
        current = self.store.get(rid)
        if current is None:
            raise RollbackError("no recorded state for the completed action", rid)
        prior = action.prior

        if action.action == planner.CREATE or action.replace:
            self.invoker.invoke(
                planner.DELETE, current.resource_type, rid,
                properties=current.properties, physical_id=current.physical_id,
                token_suffix=self.token_suffix,
            )
            record.mark_rolled_back()
            if prior is not None:
                self.store.commit(record, prior)
            else:
                self.store.commit(record, remove=True)
            return

        if prior is None:
            raise RollbackError("no prior state to revert to", rid)
        result = self.invoker.invoke(
            planner.UPDATE, current.resource_type, rid,
            properties=prior.properties, physical_id=current.physical_id,
            previous_properties=current.properties, token_suffix=self.token_suffix,
        )
        prior.attributes = result.attributes or prior.attributes
        record.mark_rolled_back()
        self.store.commit(record, prior)
