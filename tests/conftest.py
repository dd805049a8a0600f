"""Shared pytest fixtures for stack-driver tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import FatalTargetError, ResourceNotFoundError, TransientTargetError
from config import ENV_OVERRIDES, EngineSettings
from providers import ProviderRegistry
from providers.base import ProgressEvent, ResourceHandler

TEMPLATES_DIR = Path(__file__).parent.parent / 'templates'


class RecordingHandler(ResourceHandler):
    """In-memory target that records every call.

    Attributes:
        calls: (operation, logical_id) in call order
        tokens: (operation, logical_id) -> request tokens in call order
        resources: physical_id -> properties
        fail: (operation, logical_id) -> 'fatal' or a count of transient failures
        pending_polls: logical_id -> Describe polls spent IN_PROGRESS after create
        hooks: logical_id -> callable(request) run inside every operation
    """
    replace_on = ('Immutable',)

    def __init__(self):
        self.lock = threading.Lock()
        self.calls: list[tuple[str, str]] = []
        self.tokens: dict[tuple[str, str], list[str]] = {}
        self.resources: dict[str, dict] = {}
        self.fail: dict = {}
        self.pending_polls: dict[str, int] = {}
        self.hooks: dict = {}
        self._polls: dict[str, int] = {}
        self._counter = 0

    def _enter(self, operation, request):
        with self.lock:
            self.calls.append((operation, request.logical_id))
            self.tokens.setdefault((operation, request.logical_id), []).append(request.request_token)
            fault = self.fail.get((operation, request.logical_id))
            if fault == 'fatal':
                raise FatalTargetError('injected failure', request.logical_id, operation)
            if isinstance(fault, int) and fault > 0:
                self.fail[(operation, request.logical_id)] = fault - 1
                raise TransientTargetError('throttled', request.logical_id, operation)
        hook = self.hooks.get(request.logical_id)
        if hook is not None:
            hook(request)

    def _event(self, physical_id):
        if self._polls.get(physical_id, 0) > 0:
            return ProgressEvent.in_progress(physical_id=physical_id)
        return ProgressEvent.success(
            physical_id=physical_id,
            attributes={'Arn': f'arn:test:{physical_id}', 'Name': physical_id},
            properties=dict(self.resources[physical_id]),
        )

    def create(self, request):
        self._enter('create', request)
        with self.lock:
            self._counter += 1
            physical_id = f'{request.logical_id.lower()}-{self._counter}'
            self.resources[physical_id] = dict(request.properties)
            self._polls[physical_id] = self.pending_polls.get(request.logical_id, 0)
            return self._event(physical_id)

    def update(self, request):
        self._enter('update', request)
        with self.lock:
            if request.physical_id not in self.resources:
                raise ResourceNotFoundError('gone', request.logical_id, 'update')
            self.resources[request.physical_id] = dict(request.properties)
            return self._event(request.physical_id)

    def delete(self, request):
        self._enter('delete', request)
        with self.lock:
            if request.physical_id not in self.resources:
                raise ResourceNotFoundError('gone', request.logical_id, 'delete')
            del self.resources[request.physical_id]
        return ProgressEvent.success(physical_id=request.physical_id)

    def describe(self, request):
        with self.lock:
            self.calls.append(('describe', request.logical_id))
            if request.physical_id not in self.resources:
                raise ResourceNotFoundError('gone', request.logical_id, 'describe')
            if self._polls.get(request.physical_id, 0) > 0:
                self._polls[request.physical_id] -= 1
            return self._event(request.physical_id)

    def operations(self, operation):
        """Logical ids passed to one operation, in call order."""
        return [rid for op, rid in self.calls if op == operation]


@pytest.fixture
def fast_settings(tmp_path):
    """Engine settings with no backoff or poll delays."""
    return EngineSettings(
        max_workers=4,
        max_attempts=3,
        backoff_base=0.0,
        backoff_max=0.0,
        poll_interval=0.0,
        resource_timeout=5.0,
        state_dir=tmp_path / 'states',
    )


@pytest.fixture
def handler():
    """Recording handler for Test::* resource types."""
    return RecordingHandler()


@pytest.fixture
def registry(handler):
    """Registry routing Test::* types to the recording handler."""
    registry = ProviderRegistry()
    registry.register('Test::*', handler)
    return registry


@pytest.fixture
def web_template_path():
    """Path to the sample web-server template."""
    return TEMPLATES_DIR / 'web-server.yaml'


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Keep settings discovery away from the developer's environment."""
    for var in ('STACK_DRIVER_CONFIG', *ENV_OVERRIDES.values()):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv('STACK_DRIVER_HOME', str(tmp_path))
    monkeypatch.chdir(tmp_path)
    return tmp_path
