"""Resource handler protocol.

A handler implements any subset of the capability set
{Create, Update, Delete, Describe} for one or more resource types.
Operations return ProgressEvents; an IN_PROGRESS event makes the
executor poll Describe until the target reports a terminal state.

Handlers signal target errors by raising TransientTargetError (retried
with backoff) or FatalTargetError (fails the action).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)

# Capabilities
CREATE = 'Create'
UPDATE = 'Update'
DELETE = 'Delete'
DESCRIBE = 'Describe'
CAPABILITIES = (CREATE, UPDATE, DELETE, DESCRIBE)

# Progress statuses
IN_PROGRESS = 'IN_PROGRESS'
SUCCESS = 'SUCCESS'
FAILED = 'FAILED'

_CAPABILITY_METHODS = {
    CREATE: 'create',
    UPDATE: 'update',
    DELETE: 'delete',
    DESCRIBE: 'describe',
}


@dataclass
class ProgressEvent:
    """Result of a handler operation.

    Attributes:
        status: IN_PROGRESS, SUCCESS or FAILED
        physical_id: Identifier assigned by the target
        attributes: Readable attributes (for GetAtt)
        properties: Observed properties (Describe only; None if not reported)
        message: Human-readable detail (error cause on FAILED)
        retryable: FAILED only; True if the failure may succeed on retry
        callback_delay: Suggested seconds before the next poll
    """
    status: str
    physical_id: Optional[str] = None
    attributes: dict = field(default_factory=dict)
    properties: Optional[dict] = None
    message: str = ''
    retryable: bool = False
    callback_delay: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (SUCCESS, FAILED)

    @classmethod
    def success(cls, physical_id: Optional[str] = None, attributes: Optional[dict] = None,
                properties: Optional[dict] = None) -> 'ProgressEvent':
        return cls(status=SUCCESS, physical_id=physical_id,
                   attributes=dict(attributes or {}), properties=properties)

    @classmethod
    def in_progress(cls, physical_id: Optional[str] = None,
                    callback_delay: Optional[float] = None) -> 'ProgressEvent':
        return cls(status=IN_PROGRESS, physical_id=physical_id, callback_delay=callback_delay)

    @classmethod
    def failed(cls, message: str, retryable: bool = False,
               physical_id: Optional[str] = None) -> 'ProgressEvent':
        return cls(status=FAILED, message=message, retryable=retryable, physical_id=physical_id)


@dataclass
class ResourceRequest:
    """Input to a handler operation.

    Attributes:
        resource_type: Resource type tag
        logical_id: Resource id in the template
        stack_name: Owning stack
        properties: Fully resolved desired properties
        physical_id: Existing physical id (update/delete/describe)
        previous_properties: Last applied properties (update)
        request_token: Client request token, stable across retries
    """
    resource_type: str
    logical_id: str
    stack_name: str = ''
    properties: dict = field(default_factory=dict)
    physical_id: Optional[str] = None
    previous_properties: Optional[dict] = None
    request_token: Optional[str] = None


class ResourceHandler:
    """Base class for resource handlers.

    Subclasses override the operations they support; capabilities are
    derived from which methods are overridden.

    Attributes:
        replace_on: Properties whose change requires replacement
    """
    replace_on: tuple = ()

    def capabilities(self) -> set[str]:
        supported = set()
        for capability, method in _CAPABILITY_METHODS.items():
            if getattr(type(self), method) is not getattr(ResourceHandler, method):
                supported.add(capability)
        return supported

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities()

    def requires_replacement(self, previous: dict, desired: dict) -> list[str]:
        """Names of changed properties that cannot be updated in place."""
        if not self.supports(UPDATE):
            return sorted(k for k in set(previous) | set(desired) if previous.get(k) != desired.get(k))
        return sorted(
            name for name in self.replace_on
            if previous.get(name) != desired.get(name)
        )

    def create(self, request: ResourceRequest) -> ProgressEvent:
        raise NotImplementedError

    def update(self, request: ResourceRequest) -> ProgressEvent:
        raise NotImplementedError

    def delete(self, request: ResourceRequest) -> ProgressEvent:
        raise NotImplementedError

    def describe(self, request: ResourceRequest) -> ProgressEvent:
        raise NotImplementedError

    def cancel(self, request: ResourceRequest) -> None:
        """Best-effort cancellation of an in-flight operation."""
        logger.debug(f"[{request.logical_id}] {type(self).__name__} has no cancel support")

    def __repr__(self) -> str:
        return f"{type(self).__name__}({', '.join(sorted(self.capabilities()))})"


def method_for(capability: str) -> str:
    """Handler method name for a capability."""
    return _CAPABILITY_METHODS[capability]


def describe_attributes(value: Any) -> dict:
    """Normalise an attributes payload to a dict."""
    return dict(value) if isinstance(value, dict) else {}
