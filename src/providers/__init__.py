"""Resource providers: handlers that talk to a provisioning target."""

import fnmatch
import logging
from typing import Optional

from config import ConfigError, EngineSettings
from providers.base import (
    CAPABILITIES,
    CREATE,
    DELETE,
    DESCRIBE,
    FAILED,
    IN_PROGRESS,
    SUCCESS,
    UPDATE,
    ProgressEvent,
    ResourceHandler,
    ResourceRequest,
)
from providers.command import ShellCommandHandler
from providers.rest import RestApiHandler
from providers.simulated import SimulatedCloud, register_simulated

logger = logging.getLogger(__name__)

PROVIDERS = ('simulated', 'command', 'rest')


class ProviderRegistry:
    """Maps resource type tags to handlers.

    Patterns may use shell wildcards (AWS::EC2::*, *). Exact matches win,
    then patterns in registration order.
    """

    def __init__(self):
        self._exact: dict[str, ResourceHandler] = {}
        self._patterns: list[tuple[str, ResourceHandler]] = []

    def register(self, pattern: str, handler: ResourceHandler) -> None:
        if any(ch in pattern for ch in '*?['):
            self._patterns.append((pattern, handler))
        else:
            self._exact[pattern] = handler
        logger.debug(f"Registered {handler!r} for {pattern}")

    def find(self, resource_type: str) -> Optional[ResourceHandler]:
        if resource_type in self._exact:
            return self._exact[resource_type]
        for pattern, handler in self._patterns:
            if fnmatch.fnmatchcase(resource_type, pattern):
                return handler
        return None

    def get(self, resource_type: str) -> ResourceHandler:
        """Get the handler for a resource type.

        Raises:
            KeyError: If no handler matches
        """
        handler = self.find(resource_type)
        if handler is None:
            raise KeyError(resource_type)
        return handler

    def supports(self, resource_type: str) -> bool:
        return self.find(resource_type) is not None

    def types(self) -> list[str]:
        return sorted(self._exact) + [p for p, _ in self._patterns]


def load_registry(settings: EngineSettings, stack_name: Optional[str] = None) -> ProviderRegistry:
    """Build a registry from the configured providers.

    Providers register in the configured order, so exact types from an
    earlier provider win over later ones.

    Raises:
        ConfigError: If a provider name is unknown or misconfigured
    """
    registry = ProviderRegistry()
    for name in settings.providers:
        options = settings.options_for(name)
        if name == 'simulated':
            state_file = options.get('state_file')
            if state_file is None and stack_name and options.get('persist', True):
                state_file = settings.state_root() / stack_name / 'simulated-cloud.json'
            try:
                cloud = SimulatedCloud(
                    state_file=state_file,
                    provision_polls=int(options.get('provision_polls', 1)),
                    faults=options.get('fail') or {},
                    account_id=settings.account_id,
                )
            except ValueError as e:
                raise ConfigError(f"Provider 'simulated': {e}") from e
            register_simulated(registry, cloud)
        elif name == 'command':
            registry.register(
                ShellCommandHandler.RESOURCE_TYPE,
                ShellCommandHandler(timeout=int(options.get('timeout', 600))),
            )
        elif name == 'rest':
            endpoint = options.get('endpoint')
            if not endpoint:
                raise ConfigError("Provider 'rest' requires provider_options.rest.endpoint")
            handler = RestApiHandler(
                endpoint=endpoint,
                token=options.get('token'),
                verify=options.get('verify', True),
                timeout=float(options.get('timeout', 30)),
            )
            for pattern in options.get('types') or ['*']:
                registry.register(pattern, handler)
        else:
            raise ConfigError(
                f"Unknown provider '{name}'. Expected one of: {', '.join(PROVIDERS)}"
            )
    return registry


__all__ = [
    'CAPABILITIES',
    'CREATE',
    'DELETE',
    'DESCRIBE',
    'FAILED',
    'IN_PROGRESS',
    'SUCCESS',
    'UPDATE',
    'PROVIDERS',
    'ProgressEvent',
    'ProviderRegistry',
    'ResourceHandler',
    'ResourceRequest',
    'RestApiHandler',
    'ShellCommandHandler',
    'SimulatedCloud',
    'load_registry',
]
