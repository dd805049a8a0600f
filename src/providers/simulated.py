"""In-process simulated cloud.

Stands in for a real provisioning target: assigns physical ids, keeps
resource properties and attributes, and can persist itself to a JSON
file so separate CLI runs see the same "real world". Out-of-band
changes (modify/remove) make drift observable; faults can be injected
per logical id.

Fault spec (provider_options.simulated.fail):
    {LogicalId: 'fatal'}             fail every create/update fatally
    {LogicalId: 'transient:2'}       throttle the first 2 calls, then succeed
    {LogicalId: 'delete:fatal'}      limit the fault to one operation
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Optional

from common import FatalTargetError, ResourceNotFoundError, TransientTargetError
from providers.base import (
    ProgressEvent,
    ResourceHandler,
    ResourceRequest,
)

logger = logging.getLogger(__name__)

OPERATIONS = ('create', 'update', 'delete')


class SimulatedCloud:
    """Thread-safe in-memory resource table with optional JSON persistence.

    Args:
        state_file: Persist the table here (None = memory only)
        provision_polls: Describe polls an asynchronous resource spends pending
        faults: Fault spec by logical id
        account_id: Account used in generated ARNs
    """

    def __init__(
        self,
        state_file: Optional[Path] = None,
        provision_polls: int = 1,
        faults: Optional[dict[str, str]] = None,
        account_id: str = '123456789012',
    ):
        self.state_file = Path(state_file) if state_file else None
        self.provision_polls = max(0, provision_polls)
        self.account_id = account_id
        self._faults = {k: _parse_fault(k, v) for k, v in (faults or {}).items()}
        self._lock = threading.Lock()
        self._resources: dict[str, dict] = {}
        self._tokens: dict[str, str] = {}
        self._counter = 0
        self.calls: list[tuple[str, str]] = []
        self._load()

    # Persistence

    def _load(self) -> None:
        if self.state_file is None or not self.state_file.exists():
            return
        try:
            data = json.loads(self.state_file.read_text(encoding='utf-8'))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable simulated cloud state {self.state_file}: {e}")
            return
        self._resources = data.get('resources', {})
        self._tokens = data.get('tokens', {})
        self._counter = int(data.get('counter', 0))

    def _save(self) -> None:
        if self.state_file is None:
            return
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        tmp_file = self.state_file.with_suffix('.json.tmp')
        payload = {'counter': self._counter, 'resources': self._resources, 'tokens': self._tokens}
        tmp_file.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding='utf-8')
        os.replace(tmp_file, self.state_file)

    # Fault injection

    def _check_fault(self, logical_id: str, operation: str) -> None:
        fault = self._faults.get(logical_id)
        if fault is None:
            return
        if fault['operation'] is None and operation == 'delete':
            return
        if fault['operation'] and fault['operation'] != operation:
            return
        if fault['kind'] == 'fatal':
            raise FatalTargetError(f"Injected failure for {logical_id}", logical_id, operation)
        if fault['remaining'] > 0:
            fault['remaining'] -= 1
            raise TransientTargetError(
                f"Throttled (injected, {fault['remaining']} left)", logical_id, operation
            )

    # Operations

    def next_index(self) -> int:
        self._counter += 1
        return self._counter

    def create(self, request: ResourceRequest, physical_id_for, attributes_for,
               pending: bool = False) -> dict:
        """Create a resource (idempotent per request token)."""
        with self._lock:
            self.calls.append(('create', request.logical_id))
            if request.request_token and request.request_token in self._tokens:
                existing = self._resources.get(self._tokens[request.request_token])
                if existing is not None:
                    logger.debug(f"[{request.logical_id}] replaying create for token {request.request_token}")
                    return dict(existing)
            self._check_fault(request.logical_id, 'create')
            index = self.next_index()
            physical_id = physical_id_for(request, index)
            record = {
                'physical_id': physical_id,
                'type': request.resource_type,
                'logical_id': request.logical_id,
                'properties': dict(request.properties),
                'attributes': attributes_for(request, physical_id, index),
                'index': index,
                'pending_polls': self.provision_polls if pending else 0,
            }
            self._resources[physical_id] = record
            if request.request_token:
                self._tokens[request.request_token] = physical_id
            self._save()
            return dict(record)

    def update(self, request: ResourceRequest, attributes_for) -> dict:
        with self._lock:
            self.calls.append(('update', request.logical_id))
            record = self._require(request)
            self._check_fault(request.logical_id, 'update')
            record['properties'] = dict(request.properties)
            record['attributes'] = attributes_for(request, record['physical_id'], record['index'])
            self._save()
            return dict(record)

    def delete(self, request: ResourceRequest) -> None:
        with self._lock:
            self.calls.append(('delete', request.logical_id))
            self._require(request)
            self._check_fault(request.logical_id, 'delete')
            del self._resources[request.physical_id]
            self._save()

    def poll(self, request: ResourceRequest) -> dict:
        """Describe a resource, advancing its provisioning by one poll."""
        with self._lock:
            record = self._require(request)
            if record.get('pending_polls', 0) > 0:
                record['pending_polls'] -= 1
                self._save()
            return dict(record)

    def _require(self, request: ResourceRequest) -> dict:
        record = self._resources.get(request.physical_id or '')
        if record is None:
            raise ResourceNotFoundError(
                f"Resource {request.physical_id} does not exist", request.logical_id
            )
        return record

    # Out-of-band changes (drift)

    def get(self, physical_id: str) -> Optional[dict]:
        with self._lock:
            record = self._resources.get(physical_id)
            return dict(record) if record else None

    def modify(self, physical_id: str, **properties: Any) -> None:
        with self._lock:
            self._resources[physical_id]['properties'].update(properties)
            self._save()

    def remove(self, physical_id: str) -> None:
        with self._lock:
            self._resources.pop(physical_id, None)
            self._save()

    def physical_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._resources)


def _parse_fault(logical_id: str, spec: str) -> dict:
    operation = None
    parts = str(spec).split(':')
    if parts[0] in OPERATIONS:
        operation = parts.pop(0)
    kind = parts[0] if parts else ''
    if kind == 'fatal' and len(parts) == 1:
        return {'operation': operation, 'kind': 'fatal', 'remaining': 0}
    if kind == 'transient':
        count = int(parts[1]) if len(parts) > 1 else 1
        return {'operation': operation, 'kind': 'transient', 'remaining': count}
    raise ValueError(f"Invalid fault spec for {logical_id}: {spec!r}")


class SimulatedHandler(ResourceHandler):
    """Synchronous handler backed by a SimulatedCloud.

    Subclasses set the id prefix, immutable properties and attribute set.
    """
    id_prefix = 'res-'
    asynchronous = False

    def __init__(self, cloud: SimulatedCloud):
        self.cloud = cloud

    def physical_id(self, request: ResourceRequest, index: int) -> str:
        return f'{self.id_prefix}{index:017x}'

    def attributes(self, request: ResourceRequest, physical_id: str, index: int) -> dict:
        attributes = {'Id': physical_id}
        for key, value in request.properties.items():
            if isinstance(value, (str, int, float, bool)):
                attributes[key] = value
        return attributes

    def _event(self, record: dict) -> ProgressEvent:
        if record.get('pending_polls', 0) > 0:
            return ProgressEvent.in_progress(physical_id=record['physical_id'])
        return ProgressEvent.success(
            physical_id=record['physical_id'],
            attributes=record['attributes'],
            properties=record['properties'],
        )

    def create(self, request: ResourceRequest) -> ProgressEvent:
        record = self.cloud.create(
            request, self.physical_id, self.attributes, pending=self.asynchronous
        )
        logger.debug(f"[{request.logical_id}] simulated create -> {record['physical_id']}")
        return self._event(record)

    def update(self, request: ResourceRequest) -> ProgressEvent:
        return self._event(self.cloud.update(request, self.attributes))

    def delete(self, request: ResourceRequest) -> ProgressEvent:
        self.cloud.delete(request)
        return ProgressEvent.success(physical_id=request.physical_id)

    def describe(self, request: ResourceRequest) -> ProgressEvent:
        return self._event(self.cloud.poll(request))


class SecurityGroupHandler(SimulatedHandler):
    id_prefix = 'sg-'
    replace_on = ('GroupDescription', 'GroupName', 'VpcId')

    def attributes(self, request, physical_id, index):
        return {'GroupId': physical_id, 'VpcId': request.properties.get('VpcId', '')}


class InstanceHandler(SimulatedHandler):
    """EC2-like instance; provisioning completes after a few Describe polls."""
    id_prefix = 'i-'
    asynchronous = True
    replace_on = ('AvailabilityZone', 'ImageId', 'KeyName', 'SubnetId')

    def attributes(self, request, physical_id, index):
        octet = index % 254 + 1
        zone = request.properties.get('AvailabilityZone', 'us-east-1a')
        return {
            'AvailabilityZone': zone,
            'PrivateDnsName': f'ip-10-0-0-{octet}.ec2.internal',
            'PrivateIp': f'10.0.0.{octet}',
            'PublicDnsName': f'ec2-198-51-100-{octet}.compute-1.amazonaws.com',
            'PublicIp': f'198.51.100.{octet}',
        }


class RoleHandler(SimulatedHandler):
    id_prefix = 'role-'
    replace_on = ('RoleName', 'Path')

    def attributes(self, request, physical_id, index):
        return {
            'Arn': f'arn:aws:iam::{self.cloud.account_id}:role/{physical_id}',
            'RoleId': f'AROA{index:016X}',
        }


class InstanceProfileHandler(SimulatedHandler):
    id_prefix = 'ip-'
    replace_on = ('InstanceProfileName', 'Path')

    def attributes(self, request, physical_id, index):
        return {'Arn': f'arn:aws:iam::{self.cloud.account_id}:instance-profile/{physical_id}'}


def register_simulated(registry, cloud: SimulatedCloud) -> None:
    """Register the simulated handlers, with a generic fallback for other types."""
    registry.register('AWS::EC2::SecurityGroup', SecurityGroupHandler(cloud))
    registry.register('AWS::EC2::Instance', InstanceHandler(cloud))
    registry.register('AWS::IAM::Role', RoleHandler(cloud))
    registry.register('AWS::IAM::InstanceProfile', InstanceProfileHandler(cloud))
    registry.register('*', SimulatedHandler(cloud))
