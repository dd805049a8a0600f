"""Engine configuration management.

Settings are loaded from a YAML file and layered:
- built-in defaults (EngineSettings field defaults)
- settings file: --config, else $STACK_DRIVER_CONFIG, else
  stack-driver.yaml in the base directory (when present)
- STACK_DRIVER_* environment variables
- CLI flags (applied by the caller)

Parameter values for a template come from --param K=V flags and an
optional YAML/JSON --params-file.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

ROLLBACK_POLICIES = ('auto', 'prompt', 'never')

SETTINGS_FILE = 'stack-driver.yaml'

# Environment overrides: field name -> variable name
ENV_OVERRIDES = {
    'max_workers': 'STACK_DRIVER_MAX_WORKERS',
    'max_attempts': 'STACK_DRIVER_MAX_ATTEMPTS',
    'backoff_base': 'STACK_DRIVER_BACKOFF_BASE',
    'backoff_max': 'STACK_DRIVER_BACKOFF_MAX',
    'poll_interval': 'STACK_DRIVER_POLL_INTERVAL',
    'resource_timeout': 'STACK_DRIVER_RESOURCE_TIMEOUT',
    'rollback': 'STACK_DRIVER_ROLLBACK',
    'replacement_safe': 'STACK_DRIVER_REPLACEMENT_SAFE',
    'refresh': 'STACK_DRIVER_REFRESH',
    'region': 'STACK_DRIVER_REGION',
    'account_id': 'STACK_DRIVER_ACCOUNT_ID',
    'providers': 'STACK_DRIVER_PROVIDERS',
    'state_dir': 'STACK_DRIVER_STATE_DIR',
}


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class EngineSettings:
    """Execution settings for plan/apply/destroy.

    Attributes:
        max_workers: Size of the worker pool for independent actions
        max_attempts: Attempts per action before a transient error becomes fatal
        backoff_base: First retry delay in seconds (doubles per attempt)
        backoff_max: Upper bound for a single retry delay
        poll_interval: Seconds between Describe polls while in progress
        resource_timeout: Default wait for a terminal state, per resource
        rollback: Rollback policy on failure (auto, prompt, never)
        replacement_safe: Allow replacing resources that others depend on
        refresh: Describe recorded resources before planning (drift refresh)
        region: Value of the AWS::Region pseudo parameter
        account_id: Value of the AWS::AccountId pseudo parameter
        providers: Provider names, registered in order
        provider_options: Per-provider option mappings
        state_dir: Root directory for per-stack state
    """
    max_workers: int = 4
    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    poll_interval: float = 2.0
    resource_timeout: float = 900.0
    rollback: str = 'auto'
    replacement_safe: bool = False
    refresh: bool = False
    region: str = 'us-east-1'
    account_id: str = '123456789012'
    providers: list = field(default_factory=lambda: ['simulated'])
    provider_options: dict = field(default_factory=dict)
    state_dir: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.providers, str):
            self.providers = [p.strip() for p in self.providers.split(',') if p.strip()]
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a setting is out of range
        """
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {self.max_workers}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be >= 1, got {self.max_attempts}")
        for name in ('backoff_base', 'backoff_max', 'poll_interval'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must be >= 0, got {getattr(self, name)}")
        if self.resource_timeout <= 0:
            raise ConfigError(f"resource_timeout must be > 0, got {self.resource_timeout}")
        if self.rollback not in ROLLBACK_POLICIES:
            raise ConfigError(
                f"Unknown rollback policy '{self.rollback}'. "
                f"Expected one of: {', '.join(ROLLBACK_POLICIES)}"
            )
        if not self.providers:
            raise ConfigError("At least one provider must be configured")
        if not isinstance(self.provider_options, dict):
            raise ConfigError("provider_options must be a mapping")

    def state_root(self) -> Path:
        """Directory holding per-stack state."""
        return self.state_dir or get_state_dir()

    def options_for(self, provider: str) -> dict:
        """Options mapping for one provider (empty if unset)."""
        return dict(self.provider_options.get(provider) or {})

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'EngineSettings':
        """Create settings from a mapping, rejecting unknown keys."""
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError("Settings must be a mapping")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown setting(s): {', '.join(unknown)}")
        try:
            return cls(**{k: _coerce(k, v) for k, v in data.items()})
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid settings: {e}") from e


_FIELD_TYPES = {f.name: f.type for f in fields(EngineSettings)}


def _coerce(name: str, value: Any) -> Any:
    """Coerce a raw settings value (from YAML or env) to the field's type."""
    kind = _FIELD_TYPES.get(name)
    if value is None or kind is None:
        return value
    if kind is int or kind == 'int':
        return int(value)
    if kind is float or kind == 'float':
        return float(value)
    if kind is bool or kind == 'bool':
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true', 'yes', 'on')
        return bool(value)
    return value


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def get_base_dir() -> Path:
    """Get the working base directory ($STACK_DRIVER_HOME or cwd)."""
    if env_path := os.environ.get('STACK_DRIVER_HOME'):
        return Path(env_path)
    return Path.cwd()


def get_state_dir() -> Path:
    """Default root for per-stack state."""
    return get_base_dir() / '.states'


def find_settings_file(path: Optional[str] = None) -> Optional[Path]:
    """Locate the settings file.

    Resolution order:
    1. Explicit path (must exist)
    2. $STACK_DRIVER_CONFIG (must exist)
    3. stack-driver.yaml in the base directory (optional)
    """
    if path:
        explicit = Path(path)
        if not explicit.exists():
            raise ConfigError(f"Settings file not found: {explicit}")
        return explicit

    if env_path := os.environ.get('STACK_DRIVER_CONFIG'):
        env_file = Path(env_path)
        if not env_file.exists():
            raise ConfigError(f"STACK_DRIVER_CONFIG={env_path} does not exist")
        return env_file

    default = get_base_dir() / SETTINGS_FILE
    if default.exists():
        return default
    return None


def load_settings(path: Optional[str] = None) -> EngineSettings:
    """Load engine settings from file and environment.

    Raises:
        ConfigError: If the file or any value is invalid
    """
    data: dict = {}
    settings_file = find_settings_file(path)
    if settings_file is not None:
        data = _parse_yaml(settings_file)
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {settings_file} must be a YAML mapping")

    for name, var in ENV_OVERRIDES.items():
        if (value := os.environ.get(var)) is not None:
            data[name] = value

    return EngineSettings.from_dict(data)


def parse_param_args(values: Optional[list[str]]) -> dict[str, str]:
    """Parse repeated K=V parameter flags.

    Raises:
        ConfigError: If an entry has no '='
    """
    params: dict[str, str] = {}
    for item in values or []:
        if '=' not in item:
            raise ConfigError(f"Invalid parameter '{item}': expected Key=Value")
        key, value = item.split('=', 1)
        key = key.strip()
        if not key:
            raise ConfigError(f"Invalid parameter '{item}': empty key")
        params[key] = value
    return params


def load_params_file(path: str) -> dict[str, Any]:
    """Load parameter values from a YAML/JSON mapping file.

    Accepts either a plain mapping or a list of
    {ParameterKey, ParameterValue} entries.
    """
    params_path = Path(path)
    if not params_path.exists():
        raise ConfigError(f"Parameters file not found: {params_path}")
    data = _parse_yaml(params_path)
    if isinstance(data, list):
        try:
            return {item['ParameterKey']: item['ParameterValue'] for item in data}
        except (KeyError, TypeError) as e:
            raise ConfigError(
                f"Parameters file {params_path}: list entries need ParameterKey/ParameterValue"
            ) from e
    if not isinstance(data, dict):
        raise ConfigError(f"Parameters file {params_path} must be a mapping")
    return dict(data)
