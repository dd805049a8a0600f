"""Pre-flight validation checks for stacks.

These checks run before planning and catch problems early with
actionable messages: parameter values against their declared
constraints, resource types against the configured providers, the
template's dependency graph, and reachability of HTTP provider endpoints.

Check functions return a list of error messages (empty if valid);
resolve_parameters raises ValidationError instead.
"""

import logging
import re
from typing import Any, Optional

import requests
import urllib3

from common import StackError, ValidationError
from config import EngineSettings
from stack_opr.graph import build_graph
from template import ParameterDefinition, Template

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Parameter Validation
# -----------------------------------------------------------------------------

def _check_parameter(param: ParameterDefinition, value: Any) -> list[str]:
    """Check one (coerced) value against a parameter's constraints."""
    errors = []
    hint = f"\n  {param.constraint_description}" if param.constraint_description else ''
    values = value if isinstance(value, list) else [value]

    if param.allowed_values is not None:
        allowed = [str(v) for v in param.allowed_values]
        bad = [v for v in values if str(v) not in allowed]
        if bad:
            errors.append(
                f"Parameter '{param.name}': {', '.join(map(str, bad))} not in allowed values "
                f"({', '.join(allowed)}){hint}"
            )

    if param.allowed_pattern is not None:
        for item in values:
            if not re.fullmatch(param.allowed_pattern, str(item)):
                errors.append(
                    f"Parameter '{param.name}': '{item}' does not match pattern "
                    f"{param.allowed_pattern}{hint}"
                )

    if not param.is_number and not param.is_list:
        length = len(str(value))
        if param.min_length is not None and length < int(param.min_length):
            errors.append(
                f"Parameter '{param.name}': length {length} is below MinLength {param.min_length}{hint}"
            )
        if param.max_length is not None and length > int(param.max_length):
            errors.append(
                f"Parameter '{param.name}': length {length} exceeds MaxLength {param.max_length}{hint}"
            )

    if param.is_number:
        if param.min_value is not None and value < float(param.min_value):
            errors.append(
                f"Parameter '{param.name}': {value} is below MinValue {param.min_value}{hint}"
            )
        if param.max_value is not None and value > float(param.max_value):
            errors.append(
                f"Parameter '{param.name}': {value} exceeds MaxValue {param.max_value}{hint}"
            )
    return errors


def validate_parameter_values(template: Template, supplied: dict[str, Any]) -> list[str]:
    """Validate supplied parameter values against the template.

    Args:
        template: Loaded template
        supplied: Values from --param / --params-file

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    unknown = sorted(set(supplied) - set(template.parameters))
    if unknown:
        errors.append(
            f"Unknown parameter(s): {', '.join(unknown)}\n"
            f"  Template declares: {', '.join(sorted(template.parameters)) or 'none'}"
        )

    for name, param in template.parameters.items():
        if name in supplied:
            raw = supplied[name]
        elif param.default is not None:
            raw = param.default
        else:
            errors.append(
                f"Parameter '{name}' has no value and no Default\n"
                f"  Pass it with --param {name}=VALUE"
            )
            continue
        try:
            value = param.coerce(raw)
        except (TypeError, ValueError):
            errors.append(f"Parameter '{name}': '{raw}' is not a valid {param.type}")
            continue
        errors.extend(_check_parameter(param, value))

    return errors


def resolve_parameters(template: Template, supplied: dict[str, Any]) -> dict[str, Any]:
    """Apply defaults, coerce types and validate constraints.

    Returns:
        Parameter values by name

    Raises:
        ValidationError: If any value is missing, unknown or invalid
    """
    errors = validate_parameter_values(template, supplied)
    if errors:
        raise ValidationError('\n'.join(errors))
    values = {}
    for name, param in template.parameters.items():
        values[name] = param.coerce(supplied.get(name, param.default))
    return values


def mask_parameters(template: Template, values: dict[str, Any]) -> dict[str, Any]:
    """Copy of parameter values with NoEcho values masked."""
    return {
        name: '****' if name in template.parameters and template.parameters[name].no_echo else value
        for name, value in values.items()
    }


# -----------------------------------------------------------------------------
# Resource Type Validation
# -----------------------------------------------------------------------------

def validate_resource_types(template: Template, registry) -> list[str]:
    """Check every resource type has a handler.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []
    for rid, resource in template.resources.items():
        if not registry.supports(resource.type):
            errors.append(
                f"Resource '{rid}': no provider handles type {resource.type}\n"
                f"  Configured providers handle: {', '.join(registry.types()) or 'nothing'}"
            )
    return errors


def validate_template(template: Template, registry, supplied: dict[str, Any]) -> list[str]:
    """Run all template checks: parameters, resource types, graph.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = validate_parameter_values(template, supplied)
    errors.extend(validate_resource_types(template, registry))
    try:
        build_graph(template)
    except StackError as e:
        errors.append(str(e))
    return errors


# -----------------------------------------------------------------------------
# Provider Endpoint Validation
# -----------------------------------------------------------------------------

def validate_provider_endpoints(settings: EngineSettings, timeout: float = 10.0) -> list[str]:
    """Check that HTTP provider endpoints answer.

    Any HTTP response counts as reachable; only connection-level
    failures are reported.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []
    if 'rest' not in settings.providers:
        return errors

    options = settings.options_for('rest')
    endpoint: Optional[str] = options.get('endpoint')
    if not endpoint:
        errors.append(
            "Provider 'rest' has no endpoint\n"
            "  Set provider_options.rest.endpoint in stack-driver.yaml"
        )
        return errors

    verify = options.get('verify', True)
    if not verify:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
    headers = {}
    if options.get('token'):
        headers['Authorization'] = f"Bearer {options['token']}"

    url = f"{endpoint.rstrip('/')}/resources"
    try:
        response = requests.get(url, headers=headers, timeout=timeout, verify=verify)
        logger.debug(f"Endpoint check {url}: HTTP {response.status_code}")
        if response.status_code in (401, 403):
            errors.append(
                f"Provider endpoint {endpoint} rejected credentials (HTTP {response.status_code})\n"
                f"  Check provider_options.rest.token"
            )
    except requests.exceptions.SSLError as e:
        errors.append(
            f"TLS verification failed for {endpoint}: {e}\n"
            f"  Set provider_options.rest.verify: false for self-signed certificates"
        )
    except requests.exceptions.RequestException as e:
        errors.append(f"Provider endpoint {endpoint} is not reachable: {e}")
    return errors
