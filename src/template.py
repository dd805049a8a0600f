"""Template loading and validation for stack provisioning.

Templates are CloudFormation-shaped documents (YAML or JSON) with three
sections the engine understands:

- Parameters: typed inputs with optional defaults and constraints
- Resources: logical resources with a Type, Properties, DependsOn,
  Metadata, DeletionPolicy and CreationPolicy
- Outputs: named values resolved once the stack is applied

Short-form intrinsic tags (!Ref, !GetAtt, !Sub, !Join, !Base64, !Select)
are expanded by the loader into their long mapping form, so the rest of
the engine only ever sees {'Ref': ...} / {'Fn::...': ...} mappings.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from common import TemplateError, parse_duration
from stack_opr.values import PSEUDO_PARAMETERS

logger = logging.getLogger(__name__)

# Template sections the engine implements
SUPPORTED_SECTIONS = {
    'AWSTemplateFormatVersion', 'Description', 'Metadata',
    'Parameters', 'Resources', 'Outputs',
}

# Sections that are recognised but not implemented
UNSUPPORTED_SECTIONS = {'Conditions', 'Mappings', 'Transform', 'Rules'}

RESOURCE_KEYS = {
    'Type', 'Properties', 'DependsOn', 'Metadata', 'DeletionPolicy',
    'UpdateReplacePolicy', 'CreationPolicy', 'UpdatePolicy', 'Condition',
}

DELETION_POLICIES = ('Delete', 'Retain')

PARAMETER_TYPES = {
    'String', 'Number', 'CommaDelimitedList', 'List<Number>',
}

_LOGICAL_ID_RE = re.compile(r'^[A-Za-z0-9]+$')


class TemplateYamlLoader(yaml.SafeLoader):
    """SafeLoader that understands intrinsic function tags.

    The timestamp resolver is removed so values such as an unquoted
    policy Version (2012-10-17) stay strings.
    """


TemplateYamlLoader.yaml_implicit_resolvers = {
    key: [(tag, regexp) for tag, regexp in resolvers if tag != 'tag:yaml.org,2002:timestamp']
    for key, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def _construct_intrinsic(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> dict:
    """Expand !Name short form into its {'Fn::Name': value} mapping."""
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix == 'Ref':
        return {'Ref': value}
    if tag_suffix == 'GetAtt' and isinstance(value, str):
        target, _, attribute = value.partition('.')
        return {'Fn::GetAtt': [target, attribute]}
    return {f'Fn::{tag_suffix}': value}


TemplateYamlLoader.add_multi_constructor('!', _construct_intrinsic)


@dataclass
class ParameterDefinition:
    """A template parameter.

    Attributes:
        name: Logical parameter name
        type: Parameter type (String, Number, CommaDelimitedList, List<Number>,
            or a provider-specific type treated as String)
        default: Default value (None if required)
        allowed_values: Optional set of allowed values
        allowed_pattern: Optional regex the whole value must match
        min_length/max_length: String length bounds
        min_value/max_value: Number bounds
        no_echo: Mask the value in plan output and reports
        description: Free text
        constraint_description: Shown when a constraint fails
    """
    name: str
    type: str = 'String'
    default: Any = None
    allowed_values: Optional[list] = None
    allowed_pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    no_echo: bool = False
    description: str = ''
    constraint_description: str = ''

    @property
    def is_list(self) -> bool:
        return self.type == 'CommaDelimitedList' or self.type.startswith('List<')

    @property
    def is_number(self) -> bool:
        return self.type == 'Number'

    def coerce(self, value: Any) -> Any:
        """Convert a raw parameter value (often a CLI string) to its typed form.

        Raises:
            ValueError: If the value cannot be converted
        """
        if self.is_list:
            items = value if isinstance(value, list) else str(value).split(',')
            items = [str(item).strip() for item in items]
            if self.type == 'List<Number>':
                for item in items:
                    float(item)
            return items
        if self.is_number:
            if isinstance(value, bool):
                raise ValueError(f"{value!r} is not a number")
            number = float(value)
            return int(number) if number.is_integer() else number
        return value if isinstance(value, str) else str(value)

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'ParameterDefinition':
        """Create ParameterDefinition from a Parameters entry."""
        if not isinstance(data, dict):
            raise TemplateError(f"Parameter '{name}' must be a mapping")
        if 'Type' not in data:
            raise TemplateError(f"Parameter '{name}' missing required field: Type")
        allowed = data.get('AllowedValues')
        if allowed is not None and not isinstance(allowed, list):
            raise TemplateError(f"Parameter '{name}': AllowedValues must be a list")
        pattern = data.get('AllowedPattern')
        if pattern is not None:
            try:
                re.compile(pattern)
            except re.error as e:
                raise TemplateError(f"Parameter '{name}': invalid AllowedPattern: {e}") from e
        return cls(
            name=name,
            type=str(data['Type']),
            default=data.get('Default'),
            allowed_values=allowed,
            allowed_pattern=pattern,
            min_length=data.get('MinLength'),
            max_length=data.get('MaxLength'),
            min_value=data.get('MinValue'),
            max_value=data.get('MaxValue'),
            no_echo=bool(data.get('NoEcho', False)),
            description=data.get('Description', ''),
            constraint_description=data.get('ConstraintDescription', ''),
        )


@dataclass
class ResourceDefinition:
    """A raw template resource, before graph building.

    Attributes:
        logical_id: Resource id (unique within the template)
        type: Resource type tag (e.g. AWS::EC2::Instance)
        properties: Raw property mapping
        depends_on: Explicit DependsOn ids
        metadata: Raw metadata mapping
        deletion_policy: Delete or Retain
        timeout: Wait bound in seconds from CreationPolicy.ResourceSignal.Timeout
    """
    logical_id: str
    type: str
    properties: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    deletion_policy: str = 'Delete'
    timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, logical_id: str, data: dict) -> 'ResourceDefinition':
        """Create ResourceDefinition from a Resources entry.

        Raises:
            TemplateError: If the entry is malformed
        """
        if not isinstance(data, dict):
            raise TemplateError(f"Resource '{logical_id}' must be a mapping")
        if 'Type' not in data or not isinstance(data['Type'], str) or not data['Type']:
            raise TemplateError(f"Resource '{logical_id}' missing required field: Type")
        unknown = sorted(set(data) - RESOURCE_KEYS)
        if unknown:
            raise TemplateError(
                f"Resource '{logical_id}' has unknown attribute(s): {', '.join(unknown)}"
            )
        if 'Condition' in data:
            raise TemplateError(
                f"Resource '{logical_id}': Condition is not supported (no Conditions section)"
            )

        properties = data.get('Properties') or {}
        if not isinstance(properties, dict):
            raise TemplateError(f"Resource '{logical_id}': Properties must be a mapping")
        metadata = data.get('Metadata') or {}
        if not isinstance(metadata, dict):
            raise TemplateError(f"Resource '{logical_id}': Metadata must be a mapping")

        depends_on = data.get('DependsOn') or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise TemplateError(
                f"Resource '{logical_id}': DependsOn must be a string or list of strings"
            )

        policy = data.get('DeletionPolicy', 'Delete')
        if policy not in DELETION_POLICIES:
            raise TemplateError(
                f"Resource '{logical_id}': DeletionPolicy must be one of "
                f"{', '.join(DELETION_POLICIES)}, got '{policy}'"
            )

        return cls(
            logical_id=logical_id,
            type=data['Type'],
            properties=properties,
            depends_on=list(depends_on),
            metadata=metadata,
            deletion_policy=policy,
            timeout=_creation_timeout(logical_id, data.get('CreationPolicy')),
        )


def _creation_timeout(logical_id: str, policy: Any) -> Optional[float]:
    """Read CreationPolicy.ResourceSignal.Timeout as seconds."""
    if not policy:
        return None
    if not isinstance(policy, dict):
        raise TemplateError(f"Resource '{logical_id}': CreationPolicy must be a mapping")
    signal = policy.get('ResourceSignal') or {}
    if 'Timeout' not in signal:
        return None
    try:
        seconds = parse_duration(signal['Timeout'])
    except ValueError as e:
        raise TemplateError(f"Resource '{logical_id}': {e}") from e
    if seconds <= 0:
        raise TemplateError(f"Resource '{logical_id}': CreationPolicy timeout must be positive")
    return seconds


@dataclass
class OutputDefinition:
    """A template output (value is raw until resolved)."""
    name: str
    value: Any
    description: str = ''
    export: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'OutputDefinition':
        if not isinstance(data, dict) or 'Value' not in data:
            raise TemplateError(f"Output '{name}' missing required field: Value")
        export = data.get('Export')
        export_name = export.get('Name') if isinstance(export, dict) else None
        return cls(
            name=name,
            value=data['Value'],
            description=data.get('Description', ''),
            export=export_name if isinstance(export_name, str) else None,
        )


@dataclass
class Template:
    """A loaded stack template.

    Attributes:
        resources: Resource definitions in document order
        parameters: Parameter definitions by name
        outputs: Output definitions in document order
        description: Template description
        format_version: AWSTemplateFormatVersion (informational)
        source_path: Path the template was loaded from
    """
    resources: dict[str, ResourceDefinition]
    parameters: dict[str, ParameterDefinition] = field(default_factory=dict)
    outputs: dict[str, OutputDefinition] = field(default_factory=dict)
    description: str = ''
    format_version: Optional[str] = None
    source_path: Optional[Path] = None

    @property
    def default_stack_name(self) -> str:
        """Stack name when none is given: the template file stem."""
        if self.source_path is not None:
            return self.source_path.stem
        return 'stack'

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Template':
        """Create Template from a loaded document.

        Args:
            data: Document mapping (intrinsic tags already expanded)
            source_path: Optional source path for error messages

        Returns:
            Validated Template instance

        Raises:
            TemplateError: If the document is malformed
        """
        if not isinstance(data, dict):
            raise TemplateError("Template must be a mapping")

        unsupported = sorted(set(data) & UNSUPPORTED_SECTIONS)
        if unsupported:
            raise TemplateError(f"Unsupported template section(s): {', '.join(unsupported)}")
        unknown = sorted(set(data) - SUPPORTED_SECTIONS - UNSUPPORTED_SECTIONS)
        if unknown:
            raise TemplateError(f"Unknown template section(s): {', '.join(unknown)}")

        raw_resources = data.get('Resources')
        if not raw_resources:
            raise TemplateError("Template missing required section: Resources")
        if not isinstance(raw_resources, dict):
            raise TemplateError("Resources must be a mapping")

        raw_parameters = data.get('Parameters') or {}
        if not isinstance(raw_parameters, dict):
            raise TemplateError("Parameters must be a mapping")
        raw_outputs = data.get('Outputs') or {}
        if not isinstance(raw_outputs, dict):
            raise TemplateError("Outputs must be a mapping")

        for section, names in (('Parameter', raw_parameters), ('Resource', raw_resources),
                               ('Output', raw_outputs)):
            for name in names:
                if not isinstance(name, str) or not _LOGICAL_ID_RE.match(name):
                    raise TemplateError(
                        f"{section} name '{name}' must be alphanumeric (A-Za-z0-9)"
                    )

        clashes = sorted(set(raw_parameters) & set(raw_resources))
        if clashes:
            raise TemplateError(
                f"Name(s) used for both a parameter and a resource: {', '.join(clashes)}"
            )
        reserved = sorted(n for n in raw_parameters if n in PSEUDO_PARAMETERS)
        if reserved:
            raise TemplateError(f"Parameter name(s) are reserved: {', '.join(reserved)}")

        parameters = {
            name: ParameterDefinition.from_dict(name, spec)
            for name, spec in raw_parameters.items()
        }
        resources = {
            rid: ResourceDefinition.from_dict(rid, spec)
            for rid, spec in raw_resources.items()
        }
        outputs = {
            name: OutputDefinition.from_dict(name, spec)
            for name, spec in raw_outputs.items()
        }

        version = data.get('AWSTemplateFormatVersion')
        return cls(
            resources=resources,
            parameters=parameters,
            outputs=outputs,
            description=data.get('Description', '') or '',
            format_version=str(version) if version is not None else None,
            source_path=source_path,
        )


def parse_document(text: str, source: str = '<string>', as_json: bool = False) -> dict:
    """Parse template text into a document mapping.

    Raises:
        TemplateError: If the text is not valid YAML/JSON
    """
    try:
        if as_json:
            data = json.loads(text)
        else:
            data = yaml.load(text, Loader=TemplateYamlLoader)  # noqa: S506 - SafeLoader subclass
    except json.JSONDecodeError as e:
        raise TemplateError(f"Invalid JSON in {source}: {e}") from e
    except yaml.YAMLError as e:
        raise TemplateError(f"Invalid YAML in {source}: {e}") from e
    if not isinstance(data, dict):
        raise TemplateError(f"Template {source} must be a mapping")
    return data


def load_template(path: Path) -> Template:
    """Load a template from a YAML or JSON file.

    Args:
        path: Path to template file (.json is parsed as JSON, anything else as YAML)

    Returns:
        Template instance

    Raises:
        TemplateError: If file not found or invalid
    """
    path = Path(path)
    if not path.exists():
        raise TemplateError(f"Template file not found: {path}")
    text = path.read_text(encoding='utf-8')
    data = parse_document(text, source=str(path), as_json=path.suffix.lower() == '.json')
    template = Template.from_dict(data, source_path=path)
    logger.debug(
        f"Loaded template {path}: {len(template.resources)} resource(s), "
        f"{len(template.parameters)} parameter(s), {len(template.outputs)} output(s)"
    )
    return template
