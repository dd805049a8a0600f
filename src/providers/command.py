"""Shell command provider.

Command::Shell resources carry their lifecycle as shell commands:

    Resources:
      Bucket:
        Type: Command::Shell
        Properties:
          Create: ./mkbucket.sh "$STACK_PROP_NAME"
          Delete: ./rmbucket.sh "$STACK_PHYSICAL_ID"
          Name: !Ref BucketName

Every other property is exported as STACK_PROP_<NAME> (non-scalars as
JSON). Stdout of Create/Update may be a JSON object
{"PhysicalId": ..., "Attributes": {...}}; otherwise its stripped text
is the physical id. Exit code 75 (EX_TEMPFAIL) is transient.
"""

import json
import logging
import os
import re

from common import FatalTargetError, TransientTargetError, run_command
from providers.base import ProgressEvent, ResourceHandler, ResourceRequest

logger = logging.getLogger(__name__)

EXIT_TEMPFAIL = 75

COMMAND_KEYS = ('Create', 'Update', 'Delete')


class ShellCommandHandler(ResourceHandler):
    """Runs per-operation shell commands from a resource's properties."""
    RESOURCE_TYPE = 'Command::Shell'

    def __init__(self, timeout: int = 600, shell: str = '/bin/sh'):
        self.timeout = timeout
        self.shell = shell

    def requires_replacement(self, previous: dict, desired: dict) -> list[str]:
        # Without an Update command every change is a replacement
        if desired.get('Update'):
            return []
        return sorted(k for k in set(previous) | set(desired) if previous.get(k) != desired.get(k))

    def _env(self, request: ResourceRequest) -> dict:
        env = dict(os.environ)
        for key, value in request.properties.items():
            if key in COMMAND_KEYS:
                continue
            name = 'STACK_PROP_' + re.sub(r'[^A-Za-z0-9]', '_', key).upper()
            env[name] = value if isinstance(value, str) else json.dumps(value, sort_keys=True)
        env['STACK_LOGICAL_ID'] = request.logical_id
        env['STACK_NAME'] = request.stack_name
        if request.physical_id:
            env['STACK_PHYSICAL_ID'] = request.physical_id
        if request.request_token:
            env['STACK_REQUEST_TOKEN'] = request.request_token
        return env

    def _run(self, operation: str, request: ResourceRequest) -> str:
        command = request.properties.get(operation)
        if not command:
            raise FatalTargetError(
                f"No {operation} command defined", request.logical_id, operation.lower()
            )
        logger.info(f"[{request.logical_id}] {operation}: {command}")
        rc, out, err = run_command(
            [self.shell, '-c', command], timeout=self.timeout, env=self._env(request)
        )
        if rc == EXIT_TEMPFAIL:
            raise TransientTargetError(
                f"Command exited {rc}: {err.strip() or out.strip()}",
                request.logical_id, operation.lower(),
            )
        if rc != 0:
            raise FatalTargetError(
                f"Command exited {rc}: {err.strip() or out.strip()}",
                request.logical_id, operation.lower(),
            )
        return out

    def _result(self, request: ResourceRequest, out: str) -> ProgressEvent:
        text = out.strip()
        physical_id = request.physical_id
        attributes: dict = {}
        if text.startswith('{'):
            try:
                payload = json.loads(text)
            except json.JSONDecodeError:
                payload = None
            if isinstance(payload, dict):
                physical_id = payload.get('PhysicalId') or physical_id
                attributes = dict(payload.get('Attributes') or {})
                text = ''
        if text:
            physical_id = text.splitlines()[-1].strip()
        if not physical_id:
            physical_id = f'{request.stack_name}-{request.logical_id}'
        return ProgressEvent.success(physical_id=physical_id, attributes=attributes)

    def create(self, request: ResourceRequest) -> ProgressEvent:
        return self._result(request, self._run('Create', request))

    def update(self, request: ResourceRequest) -> ProgressEvent:
        return self._result(request, self._run('Update', request))

    def delete(self, request: ResourceRequest) -> ProgressEvent:
        if not request.properties.get('Delete'):
            logger.info(f"[{request.logical_id}] No Delete command, nothing to remove")
            return ProgressEvent.success(physical_id=request.physical_id)
        self._run('Delete', request)
        return ProgressEvent.success(physical_id=request.physical_id)
