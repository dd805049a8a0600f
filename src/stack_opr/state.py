"""Stack state store.

Persists the last-known real-world state of every resource so later runs
can diff against it, detect drift and find physical ids for destroy.

Layout under <state_dir>/<stack>/:
    log.jsonl      append-only log, one JSON entry per line
    snapshot.json  materialized latest view (format_version, serial)

Every write appends to the log (fsync'd) and then rewrites the snapshot
atomically (write .tmp, rename). On load, log entries with a serial newer
than the snapshot are replayed, so a crash between the two writes loses
nothing.
"""

import copy
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from common import StateError

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

# Record statuses
PENDING = 'pending'
RUNNING = 'running'
SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'
CANCELLED = 'cancelled'
ROLLED_BACK = 'rolled_back'
ROLLBACK_FAILED = 'rollback_failed'


@dataclass
class ResourceState:
    """Recorded state of one provisioned resource.

    Attributes:
        resource_id: Logical id
        resource_type: Resource type tag
        physical_id: Identifier assigned by the target
        desired: Canonical desired form at apply time (Properties/Metadata,
            resource references symbolic); the planner diffs against this
        properties: Fully resolved properties last sent to the target
        attributes: Attributes reported by the target (for GetAtt)
        depends_on: Dependency ids at apply time (for delete ordering)
        deletion_policy: Delete or Retain
        updated_at: Timestamp of the last change
    """
    resource_id: str
    resource_type: str
    physical_id: Optional[str] = None
    desired: dict = field(default_factory=dict)
    properties: dict = field(default_factory=dict)
    attributes: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    deletion_policy: str = 'Delete'
    updated_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            'resource_id': self.resource_id,
            'resource_type': self.resource_type,
            'physical_id': self.physical_id,
            'desired': self.desired,
            'properties': self.properties,
            'attributes': self.attributes,
            'depends_on': list(self.depends_on),
            'deletion_policy': self.deletion_policy,
            'updated_at': self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceState':
        return cls(
            resource_id=data['resource_id'],
            resource_type=data['resource_type'],
            physical_id=data.get('physical_id'),
            desired=data.get('desired') or {},
            properties=data.get('properties') or {},
            attributes=data.get('attributes') or {},
            depends_on=list(data.get('depends_on') or []),
            deletion_policy=data.get('deletion_policy', 'Delete'),
            updated_at=data.get('updated_at'),
        )


@dataclass
class ExecutionRecord:
    """Per-action execution outcome.

    Attributes:
        resource_id: Logical id
        action: create, update or delete
        phase: apply or cleanup
        status: pending, running, succeeded, failed, skipped, cancelled,
            rolled_back, rollback_failed
        resource_type: Resource type tag
        physical_id: Identifier assigned by the target
        attempts: Number of operation attempts
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution completed
        error: Failure cause
        replace: True for a replacement
        abandoned_id: Physical id of a create left in progress by a timeout
            or cancel; cleared once the engine deletes it
    """
    resource_id: str
    action: str
    phase: str = 'apply'
    status: str = PENDING
    resource_type: str = ''
    physical_id: Optional[str] = None
    attempts: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None
    replace: bool = False
    abandoned_id: Optional[str] = None

    @property
    def key(self) -> str:
        return f'{self.phase}:{self.resource_id}'

    def start(self) -> None:
        self.status = RUNNING
        self.started_at = time.time()

    def complete(self, physical_id: Optional[str] = None) -> None:
        self.status = SUCCEEDED
        self.completed_at = time.time()
        if physical_id is not None:
            self.physical_id = physical_id

    def fail(self, error: str) -> None:
        self.status = FAILED
        self.completed_at = time.time()
        self.error = error

    def skip(self, reason: Optional[str] = None) -> None:
        self.status = SKIPPED
        self.completed_at = time.time()
        if reason:
            self.error = reason

    def cancel(self, reason: str = 'Cancelled') -> None:
        self.status = CANCELLED
        self.completed_at = time.time()
        self.error = reason

    def mark_rolled_back(self) -> None:
        self.status = ROLLED_BACK

    def mark_rollback_failed(self, error: str) -> None:
        self.status = ROLLBACK_FAILED
        self.error = error

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource_id': self.resource_id,
            'action': self.action,
            'phase': self.phase,
            'status': self.status,
            'attempts': self.attempts,
        }
        if self.resource_type:
            d['resource_type'] = self.resource_type
        if self.physical_id is not None:
            d['physical_id'] = self.physical_id
        if self.started_at is not None:
            d['started_at'] = self.started_at
        if self.completed_at is not None:
            d['completed_at'] = self.completed_at
        if self.error is not None:
            d['error'] = self.error
        if self.abandoned_id is not None:
            d['abandoned_id'] = self.abandoned_id
        if self.replace:
            d['replace'] = True
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ExecutionRecord':
        return cls(
            resource_id=data['resource_id'],
            action=data['action'],
            phase=data.get('phase', 'apply'),
            status=data.get('status', PENDING),
            resource_type=data.get('resource_type', ''),
            physical_id=data.get('physical_id'),
            attempts=data.get('attempts', 0),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
            error=data.get('error'),
            replace=data.get('replace', False),
            abandoned_id=data.get('abandoned_id'),
        )


class StateStore:
    """Append-only log plus materialized snapshot for one stack.

    All writes are serialized by one store-wide lock. Reads return copies
    and never block on a write in progress for longer than the in-memory
    update.
    """

    def __init__(self, stack_name: str, state_dir: Path):
        """Open (and load) the state for a stack.

        Args:
            stack_name: Stack identifier
            state_dir: Root directory; state lives in state_dir/stack_name

        Raises:
            StateError: If the snapshot is unreadable or of an unknown format
        """
        self.stack_name = stack_name
        self.path = Path(state_dir) / stack_name
        self.log_path = self.path / 'log.jsonl'
        self.snapshot_path = self.path / 'snapshot.json'
        self._resources: dict[str, ResourceState] = {}
        self._outputs: dict[str, Any] = {}
        self._serial = 0
        self._guard = threading.Lock()
        self._io_lock = threading.Lock()
        self.load()

    # Loading

    def load(self) -> None:
        """Load the snapshot and replay newer log entries."""
        self._resources = {}
        self._outputs = {}
        self._serial = 0

        if self.snapshot_path.exists():
            try:
                data = json.loads(self.snapshot_path.read_text(encoding='utf-8'))
            except (OSError, json.JSONDecodeError) as e:
                raise StateError(f"Unreadable state snapshot {self.snapshot_path}: {e}") from e
            version = data.get('format_version')
            if version != FORMAT_VERSION:
                raise StateError(
                    f"Unsupported state format_version {version} in {self.snapshot_path} "
                    f"(expected {FORMAT_VERSION})"
                )
            self._serial = int(data.get('serial', 0))
            self._resources = {
                rid: ResourceState.from_dict(entry)
                for rid, entry in (data.get('resources') or {}).items()
            }
            self._outputs = dict(data.get('outputs') or {})

        replayed = 0
        for entry in self._read_log():
            if entry.get('serial', 0) <= self._serial:
                continue
            self._apply_entry(entry)
            replayed += 1
        if replayed:
            logger.info(f"Replayed {replayed} log entr{'y' if replayed == 1 else 'ies'} for stack {self.stack_name}")
            with self._io_lock:
                self._write_snapshot()

    def _read_log(self) -> list[dict]:
        if not self.log_path.exists():
            return []
        entries = []
        with open(self.log_path, encoding='utf-8') as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    # A torn final line from an interrupted write
                    logger.warning(f"Skipping unreadable entry at {self.log_path}:{lineno}")
        return entries

    def _apply_entry(self, entry: dict) -> None:
        self._serial = max(self._serial, int(entry.get('serial', 0)))
        if 'outputs' in entry:
            self._outputs = dict(entry['outputs'] or {})
            return
        record = entry.get('record') or {}
        rid = record.get('resource_id')
        if entry.get('remove') and rid:
            self._resources.pop(rid, None)
        elif entry.get('state'):
            state = ResourceState.from_dict(entry['state'])
            self._resources[state.resource_id] = state

    # Reads

    @property
    def serial(self) -> int:
        with self._guard:
            return self._serial

    @property
    def exists(self) -> bool:
        return self.snapshot_path.exists() or self.log_path.exists()

    def get(self, resource_id: str) -> Optional[ResourceState]:
        with self._guard:
            state = self._resources.get(resource_id)
            return copy.deepcopy(state) if state else None

    def snapshot(self) -> dict[str, ResourceState]:
        """Copy of the latest per-resource state."""
        with self._guard:
            return copy.deepcopy(self._resources)

    def outputs(self) -> dict[str, Any]:
        with self._guard:
            return dict(self._outputs)

    def history(self) -> list[dict]:
        """All log entries, oldest first."""
        with self._io_lock:
            return self._read_log()

    # Writes

    def commit(self, record: ExecutionRecord, state: Optional[ResourceState] = None,
               remove: bool = False) -> int:
        """Durably record an action outcome and its resulting resource state.

        Args:
            record: Execution record to log
            state: New resource state (None keeps the current one)
            remove: Drop the resource from the snapshot

        Returns:
            Serial of the written entry
        """
        if state is not None:
            state.updated_at = time.time()
        entry: dict[str, Any] = {'record': record.to_dict()}
        if state is not None:
            entry['state'] = state.to_dict()
        if remove:
            entry['remove'] = True
        return self._write(entry)

    def log(self, record: ExecutionRecord) -> int:
        """Record an outcome that does not change resource state."""
        return self._write({'record': record.to_dict()})

    def set_outputs(self, outputs: dict[str, Any]) -> int:
        return self._write({'outputs': dict(outputs)})

    def _write(self, entry: dict) -> int:
        with self._io_lock:
            with self._guard:
                serial = self._serial + 1
                entry = {'serial': serial, 'timestamp': time.time(), **entry}
            self._append_log(entry)
            with self._guard:
                self._apply_entry(entry)
            self._write_snapshot()
            return serial

    def _append_log(self, entry: dict) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, 'a', encoding='utf-8') as f:
            f.write(json.dumps(entry, sort_keys=True) + '\n')
            f.flush()
            os.fsync(f.fileno())

    def _write_snapshot(self) -> None:
        """Write snapshot.json atomically (write .tmp, rename)."""
        self.path.mkdir(parents=True, exist_ok=True)
        with self._guard:
            data = {
                'format_version': FORMAT_VERSION,
                'stack_name': self.stack_name,
                'serial': self._serial,
                'updated_at': time.time(),
                'resources': {rid: s.to_dict() for rid, s in sorted(self._resources.items())},
                'outputs': dict(self._outputs),
            }
        tmp_file = self.snapshot_path.with_suffix('.json.tmp')
        try:
            with open(tmp_file, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_file, self.snapshot_path)
        except OSError as e:
            if tmp_file.exists():
                tmp_file.unlink()
            raise StateError(f"Failed to write state snapshot {self.snapshot_path}: {e}") from e
        logger.debug(f"Saved state snapshot serial={data['serial']} to {self.snapshot_path}")
