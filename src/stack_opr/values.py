"""Tagged property values and reference resolution.

Raw document values (scalars, lists, mappings and intrinsic-function
mappings such as {'Ref': 'X'} or {'Fn::GetAtt': ['X', 'Arn']}) are parsed
into an immutable tree of tagged values. Resolution is an explicit step
with two modes:

- partial: parameters and pseudo parameters are substituted, references
  to resources stay symbolic. Used for the canonical desired form that the
  planner diffs against recorded state.
- full: every reference is substituted from created resources. Used for
  the properties passed to a resource handler.
"""

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Union

from common import TemplateError, UnresolvedReferenceError, ValidationError

logger = logging.getLogger(__name__)

NO_VALUE = 'AWS::NoValue'

PSEUDO_PARAMETERS = (
    'AWS::AccountId',
    'AWS::NoValue',
    'AWS::Partition',
    'AWS::Region',
    'AWS::StackId',
    'AWS::StackName',
    'AWS::URLSuffix',
)

SUPPORTED_FUNCTIONS = ('Ref', 'Fn::GetAtt', 'Fn::Sub', 'Fn::Join', 'Fn::Base64', 'Fn::Select')

_SUB_VAR_RE = re.compile(r'\$\{([^}]*)\}')


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class ListValue:
    items: tuple


@dataclass(frozen=True)
class MapValue:
    entries: tuple  # tuple[tuple[str, Value], ...], document order

    def keys(self) -> list[str]:
        return [k for k, _ in self.entries]

    def get(self, key: str) -> Optional['Value']:
        for k, v in self.entries:
            if k == key:
                return v
        return None


@dataclass(frozen=True)
class Ref:
    target: str


@dataclass(frozen=True)
class GetAtt:
    target: str
    attribute: str


@dataclass(frozen=True)
class Sub:
    """Fn::Sub; parts are literal strings or values to substitute."""
    parts: tuple


@dataclass(frozen=True)
class Join:
    delimiter: str
    items: 'Value'


@dataclass(frozen=True)
class Base64:
    value: 'Value'


@dataclass(frozen=True)
class Select:
    index: 'Value'
    items: 'Value'


Value = Union[Literal, ListValue, MapValue, Ref, GetAtt, Sub, Join, Base64, Select]

EMPTY_MAP = MapValue(entries=())


def parse_value(raw: Any, path: str = '') -> Value:
    """Parse a raw document value into a tagged value tree.

    Args:
        raw: Value from the loaded document
        path: Location used in error messages (e.g. Resources.Host.Properties.ImageId)

    Raises:
        TemplateError: On malformed intrinsic functions
    """
    if isinstance(raw, dict):
        if len(raw) == 1:
            key = next(iter(raw))
            if key == 'Ref' or key.startswith('Fn::'):
                return _parse_function(key, raw[key], path)
        return MapValue(entries=tuple(
            (str(k), parse_value(v, f'{path}.{k}' if path else str(k)))
            for k, v in raw.items()
        ))
    if isinstance(raw, list):
        return ListValue(items=tuple(
            parse_value(item, f'{path}[{i}]') for i, item in enumerate(raw)
        ))
    if raw is None or isinstance(raw, (str, int, float, bool)):
        return Literal(raw)
    raise TemplateError(f"Unsupported value type {type(raw).__name__} at {path}")


def _parse_function(name: str, arg: Any, path: str) -> Value:
    """Parse one intrinsic function mapping."""
    where = f"{name} at {path}" if path else name
    if name == 'Ref':
        if not isinstance(arg, str) or not arg:
            raise TemplateError(f"{where} expects a name")
        return Ref(arg)

    if name == 'Fn::GetAtt':
        if isinstance(arg, str):
            arg = arg.split('.', 1)
        if (not isinstance(arg, list) or len(arg) != 2
                or not all(isinstance(a, str) and a for a in arg)):
            raise TemplateError(f"{where} expects [LogicalId, Attribute] or 'LogicalId.Attribute'")
        return GetAtt(arg[0], arg[1])

    if name == 'Fn::Sub':
        variables: dict[str, Value] = {}
        if isinstance(arg, list):
            if len(arg) != 2 or not isinstance(arg[0], str) or not isinstance(arg[1], dict):
                raise TemplateError(f"{where} expects a string or [string, {{Var: value}}]")
            variables = {k: parse_value(v, f'{path}.{k}') for k, v in arg[1].items()}
            arg = arg[0]
        if not isinstance(arg, str):
            raise TemplateError(f"{where} expects a string")
        return Sub(parts=_parse_sub(arg, variables))

    if name == 'Fn::Join':
        if not isinstance(arg, list) or len(arg) != 2 or not isinstance(arg[0], str):
            raise TemplateError(f"{where} expects [delimiter, [values]]")
        return Join(arg[0], parse_value(arg[1], f'{path}[1]'))

    if name == 'Fn::Base64':
        return Base64(parse_value(arg, path))

    if name == 'Fn::Select':
        if not isinstance(arg, list) or len(arg) != 2:
            raise TemplateError(f"{where} expects [index, [values]]")
        return Select(parse_value(arg[0], f'{path}[0]'), parse_value(arg[1], f'{path}[1]'))

    raise TemplateError(
        f"Unsupported intrinsic function {where}. "
        f"Supported: {', '.join(SUPPORTED_FUNCTIONS)}"
    )


def _parse_sub(template: str, variables: dict[str, Value]) -> tuple:
    """Split a Sub template into literal strings and substitution values."""
    parts: list = []
    pos = 0
    for match in _SUB_VAR_RE.finditer(template):
        if match.start() > pos:
            parts.append(template[pos:match.start()])
        name = match.group(1).strip()
        if name.startswith('!'):
            # ${!Literal} renders as ${Literal}
            parts.append('${' + name[1:] + '}')
        elif name in variables:
            parts.append(variables[name])
        elif '.' in name and not name.startswith('AWS::'):
            target, attribute = name.split('.', 1)
            parts.append(GetAtt(target, attribute))
        elif name:
            parts.append(Ref(name))
        else:
            raise TemplateError(f"Empty substitution in Fn::Sub template: {template!r}")
        pos = match.end()
    if pos < len(template):
        parts.append(template[pos:])
    return tuple(_merge_literals(parts))


def _merge_literals(parts: list) -> list:
    merged: list = []
    for part in parts:
        if isinstance(part, str) and merged and isinstance(merged[-1], str):
            merged[-1] += part
        else:
            merged.append(part)
    return merged


def iter_references(value: Value, path: str = '') -> Iterator[tuple[str, Optional[str], str]]:
    """Yield (target, attribute, path) for every Ref/GetAtt inside a value."""
    if isinstance(value, Ref):
        yield value.target, None, path
    elif isinstance(value, GetAtt):
        yield value.target, value.attribute, path
    elif isinstance(value, ListValue):
        for i, item in enumerate(value.items):
            yield from iter_references(item, f'{path}[{i}]')
    elif isinstance(value, MapValue):
        for key, item in value.entries:
            yield from iter_references(item, f'{path}.{key}' if path else key)
    elif isinstance(value, Sub):
        for part in value.parts:
            if not isinstance(part, str):
                yield from iter_references(part, path)
    elif isinstance(value, Join):
        yield from iter_references(value.items, path)
    elif isinstance(value, Base64):
        yield from iter_references(value.value, path)
    elif isinstance(value, Select):
        yield from iter_references(value.index, path)
        yield from iter_references(value.items, path)


@dataclass(frozen=True)
class _Pending:
    """Symbolic stand-in for a value that depends on an uncreated resource."""
    expr: Any


class _NoValue:
    def __repr__(self) -> str:
        return 'NoValue'


_NO_VALUE = _NoValue()


class Resolver:
    """Resolves tagged values against parameters, pseudo parameters and resources.

    Args:
        parameters: Resolved parameter values by name
        pseudo: Pseudo parameter values (AWS::Region, ...)
        lookup: Returns the recorded state of a created resource (an object
            with physical_id and attributes) or None
        partial: Keep resource references symbolic instead of failing
    """

    def __init__(
        self,
        parameters: dict[str, Any],
        pseudo: dict[str, Any],
        lookup: Optional[Callable[[str], Any]] = None,
        partial: bool = False,
    ):
        self.parameters = parameters
        self.pseudo = pseudo
        self.lookup = lookup or (lambda _name: None)
        self.partial = partial

    def resolve(self, value: Value) -> Any:
        """Resolve a value to plain data (dict/list/scalars).

        Raises:
            UnresolvedReferenceError: Full mode and a referenced resource
                is not created, or an attribute is missing
            ValidationError: Malformed function arguments at resolution time
        """
        return _to_plain(self._resolve(value))

    def _resolve(self, value: Value) -> Any:
        if isinstance(value, Literal):
            return value.value
        if isinstance(value, ListValue):
            items = [self._resolve(item) for item in value.items]
            return [item for item in items if item is not _NO_VALUE]
        if isinstance(value, MapValue):
            result = {}
            for key, item in value.entries:
                resolved = self._resolve(item)
                if resolved is not _NO_VALUE:
                    result[key] = resolved
            return result
        if isinstance(value, Ref):
            return self._ref(value.target)
        if isinstance(value, GetAtt):
            return self._getatt(value.target, value.attribute)
        if isinstance(value, Sub):
            return self._sub(value)
        if isinstance(value, Join):
            return self._join(value)
        if isinstance(value, Base64):
            inner = self._resolve(value.value)
            if _has_pending(inner):
                return _Pending({'Fn::Base64': _to_plain(inner)})
            return base64.b64encode(_to_text(inner).encode('utf-8')).decode('ascii')
        if isinstance(value, Select):
            return self._select(value)
        raise ValidationError(f"Cannot resolve value of type {type(value).__name__}")

    def _ref(self, target: str) -> Any:
        if target == NO_VALUE:
            return _NO_VALUE
        if target in self.parameters:
            return self.parameters[target]
        if target in self.pseudo:
            return self.pseudo[target]
        state = self.lookup(target)
        if state is not None:
            return state.physical_id
        if self.partial:
            return _Pending({'Ref': target})
        raise UnresolvedReferenceError(
            f"Ref to '{target}' cannot be resolved: resource has not been created",
            resource_id=target,
        )

    def _getatt(self, target: str, attribute: str) -> Any:
        state = self.lookup(target)
        if state is None:
            if self.partial:
                return _Pending({'Fn::GetAtt': [target, attribute]})
            raise UnresolvedReferenceError(
                f"GetAtt {target}.{attribute} cannot be resolved: resource has not been created",
                resource_id=target,
            )
        attributes = state.attributes or {}
        if attribute not in attributes:
            if self.partial:
                return _Pending({'Fn::GetAtt': [target, attribute]})
            raise UnresolvedReferenceError(
                f"Resource '{target}' has no attribute '{attribute}'. "
                f"Available: {', '.join(sorted(attributes)) or 'none'}",
                resource_id=target,
            )
        return attributes[attribute]

    def _sub(self, value: Sub) -> Any:
        pieces = []
        pending = False
        for part in value.parts:
            if isinstance(part, str):
                pieces.append(part)
                continue
            resolved = self._resolve(part)
            if isinstance(resolved, _Pending):
                pending = True
                pieces.append(_placeholder(resolved))
            elif _has_pending(resolved):
                raise ValidationError("Fn::Sub substitution must resolve to a scalar")
            else:
                pieces.append(_to_text(resolved))
        text = ''.join(pieces)
        return _Pending({'Fn::Sub': text}) if pending else text

    def _join(self, value: Join) -> Any:
        items = self._resolve(value.items)
        if isinstance(items, _Pending) or _has_pending(items):
            return _Pending({'Fn::Join': [value.delimiter, _to_plain(items)]})
        if not isinstance(items, list):
            raise ValidationError("Fn::Join expects a list of values")
        return value.delimiter.join(_to_text(item) for item in items)

    def _select(self, value: Select) -> Any:
        index = self._resolve(value.index)
        items = self._resolve(value.items)
        if _has_pending(index) or _has_pending(items):
            return _Pending({'Fn::Select': [_to_plain(index), _to_plain(items)]})
        if isinstance(items, str):
            items = [item.strip() for item in items.split(',')]
        try:
            position = int(index)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Fn::Select index must be an integer, got {index!r}") from e
        if not isinstance(items, list) or not 0 <= position < len(items):
            raise ValidationError(f"Fn::Select index {position} out of range")
        return items[position]


def _placeholder(pending: _Pending) -> str:
    """Render a pending reference inside a Sub string."""
    expr = pending.expr
    if 'Ref' in expr:
        return '${' + expr['Ref'] + '}'
    if 'Fn::GetAtt' in expr:
        return '${' + '.'.join(expr['Fn::GetAtt']) + '}'
    return '${' + repr(expr) + '}'


def _has_pending(value: Any) -> bool:
    if isinstance(value, _Pending):
        return True
    if isinstance(value, list):
        return any(_has_pending(v) for v in value)
    if isinstance(value, dict):
        return any(_has_pending(v) for v in value.values())
    return False


def _to_plain(value: Any) -> Any:
    if isinstance(value, _Pending):
        return value.expr
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if value is _NO_VALUE:
        return None
    return value


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return ''
    if isinstance(value, (list, dict)):
        raise ValidationError(f"Expected a scalar for string substitution, got {type(value).__name__}")
    return str(value)


def pseudo_parameters(stack_name: str, region: str, account_id: str) -> dict[str, str]:
    """Pseudo parameter values for a stack."""
    partition = 'aws-cn' if region.startswith('cn-') else 'aws'
    suffix = 'amazonaws.com.cn' if partition == 'aws-cn' else 'amazonaws.com'
    return {
        'AWS::AccountId': account_id,
        'AWS::Partition': partition,
        'AWS::Region': region,
        'AWS::StackId': f'arn:{partition}:cloudformation:{region}:{account_id}:stack/{stack_name}',
        'AWS::StackName': stack_name,
        'AWS::URLSuffix': suffix,
    }
