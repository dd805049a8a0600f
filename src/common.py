"""Common utilities and error types for the provisioning engine."""

import logging
import re
import subprocess
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)


class StackError(Exception):
    """Base class for engine errors.

    Carries the resource id and attempted action (when known) so every
    user-visible failure can name what failed and how.
    """

    def __init__(self, message: str, resource_id: Optional[str] = None,
                 action: Optional[str] = None):
        self.message = message
        self.resource_id = resource_id
        self.action = action
        super().__init__(self._format())

    def _format(self) -> str:
        if self.resource_id and self.action:
            return f"{self.resource_id}: {self.action} failed: {self.message}"
        if self.resource_id:
            return f"{self.resource_id}: {self.message}"
        return self.message


class ValidationError(StackError):
    """Document is unusable; raised before any side effect."""


class TemplateError(ValidationError):
    """Bad document shape."""


class UnresolvedReferenceError(ValidationError):
    """A reference names something that does not exist (or does not exist yet)."""


class CycleError(ValidationError):
    """The dependency graph is not acyclic."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


class PlanConflictError(StackError):
    """The plan cannot be executed safely as computed."""


class TargetError(StackError):
    """Error reported by the provisioning target."""
    retryable = False


class TransientTargetError(TargetError):
    """Target error that may succeed on retry (throttling, 5xx, timeouts)."""
    retryable = True

    def __init__(self, message: str, resource_id: Optional[str] = None,
                 action: Optional[str] = None, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, resource_id=resource_id, action=action)


class FatalTargetError(TargetError):
    """Target error that will not succeed on retry."""


class ResourceNotFoundError(FatalTargetError):
    """The target does not know the physical resource."""


class OperationCancelled(StackError):
    """The operation was abandoned because the run was cancelled."""


class RollbackError(StackError):
    """A compensating operation failed."""


class StateError(StackError):
    """Persisted state is unreadable or from an unsupported format."""


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return -1, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff delay before retry number `attempt` (1-based)."""
    if attempt < 1:
        return 0.0
    return min(base * (2 ** (attempt - 1)), cap)


_DURATION_RE = re.compile(
    r'^P(?:(?P<days>\d+)D)?'
    r'(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$'
)


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse an ISO-8601 duration (PT15M, PT1H30M) or plain seconds.

    Raises:
        ValueError: If the value is not a recognisable duration
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if re.fullmatch(r'\d+(\.\d+)?', text):
        return float(text)
    match = _DURATION_RE.match(text.upper())
    if not match or text.upper() in ('P', 'PT'):
        raise ValueError(f"Invalid duration: {value!r}")
    parts = {k: float(v) if v else 0.0 for k, v in match.groupdict().items()}
    return (parts['days'] * 86400 + parts['hours'] * 3600
            + parts['minutes'] * 60 + parts['seconds'])
