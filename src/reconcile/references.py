"""Attribute expression parsing and value resolution.

Expressions are parsed into Reference objects up front (build time);
addresses are resolved by the graph builder, and values are read from
state only when an operation is planned or executed.

Supported expressions:
    ${kind.name.attr}          un-indexed target
    ${kind.name[2].attr.sub}   one indexed instance
    ${kind.name[*].attr}       list over all instances
    ${count.index}             substituted at expansion time
"""

import logging
import re
from typing import Any, Callable, Iterator

from reconcile.errors import DescriptionError
from reconcile.model import UNKNOWN, InstanceAddress, Reference, ResourceAddress

logger = logging.getLogger(__name__)

EXPRESSION_RE = re.compile(r'\$\{([^}]*)\}')
COUNT_INDEX = 'count.index'
INDEX_SELECT_KEY = '$index'

_TARGET_RE = re.compile(
    r'^(?P<kind>[A-Za-z_][\w-]*)\.(?P<name>[A-Za-z_][\w-]*)'
    r'(?:\[(?P<sel>\d+|\*)\])?'
    r'\.(?P<path>[A-Za-z_][\w-]*(?:\.[A-Za-z_][\w-]*)*)$'
)


def iter_strings(value: Any, path: str = '') -> Iterator[tuple[str, str]]:
    """Yield (attribute_path, string) for every string inside value."""
    if isinstance(value, str):
        yield path, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from iter_strings(item, f'{path}.{key}' if path else str(key))
    elif isinstance(value, list):
        for i, item in enumerate(value):
            yield from iter_strings(item, f'{path}[{i}]')


def substitute_index(value: Any, index: int | None, address: str) -> Any:
    """Replace ${count.index} and {'$index': [...]} selectors with index-derived values.

    Raises:
        DescriptionError: If index expressions appear in a declaration without count
    """
    if isinstance(value, str):
        if '${' + COUNT_INDEX + '}' not in value:
            return value
        if index is None:
            raise DescriptionError(
                f"{address}: ${{{COUNT_INDEX}}} used in a declaration without count",
                address=address,
            )
        if value == '${' + COUNT_INDEX + '}':
            return index
        return value.replace('${' + COUNT_INDEX + '}', str(index))

    if isinstance(value, dict):
        if set(value) == {INDEX_SELECT_KEY}:
            choices = value[INDEX_SELECT_KEY]
            if index is None:
                raise DescriptionError(
                    f"{address}: '{INDEX_SELECT_KEY}' used in a declaration without count",
                    address=address,
                )
            if not isinstance(choices, list) or not choices:
                raise DescriptionError(
                    f"{address}: '{INDEX_SELECT_KEY}' requires a non-empty list",
                    address=address,
                )
            return substitute_index(choices[index % len(choices)], index, address)
        return {k: substitute_index(v, index, address) for k, v in value.items()}

    if isinstance(value, list):
        return [substitute_index(v, index, address) for v in value]

    return value


def parse_expression(expression: str, source: InstanceAddress, attribute_path: str) -> Reference:
    """Parse the inner text of one ${...} expression.

    Raises:
        DescriptionError: If the expression is not a supported reference
    """
    match = _TARGET_RE.match(expression.strip())
    if not match:
        raise DescriptionError(
            f"{source}.{attribute_path}: unsupported expression '${{{expression}}}'",
            address=str(source),
        )
    sel = match.group('sel')
    selector: int | str | None = None
    if sel == '*':
        selector = '*'
    elif sel is not None:
        selector = int(sel)
    return Reference(
        source=source,
        attribute_path=attribute_path,
        expression=expression.strip(),
        target=ResourceAddress(match.group('kind'), match.group('name')),
        selector=selector,
        output_path=tuple(match.group('path').split('.')),
    )


def parse_references(source: InstanceAddress, attributes: dict) -> list[Reference]:
    """Extract every reference from an instance's (index-substituted) attributes."""
    refs: list[Reference] = []
    for path, text in iter_strings(attributes):
        for expression in EXPRESSION_RE.findall(text):
            refs.append(parse_expression(expression, source, path))
    logger.debug(f"{source}: parsed {len(refs)} reference(s)")
    return refs


def evaluate(value: Any, resolve: Callable[[str], Any]) -> Any:
    """Substitute reference expressions in value.

    A string consisting of exactly one expression evaluates to the raw
    referenced value; otherwise referenced values are interpolated as text.
    Any UNKNOWN part makes the enclosing string UNKNOWN.

    Args:
        value: Attribute value (possibly nested)
        resolve: Callable mapping expression text to its value
    """
    if isinstance(value, str):
        exprs = EXPRESSION_RE.findall(value)
        if not exprs:
            return value
        whole = EXPRESSION_RE.fullmatch(value)
        if whole:
            return resolve(whole.group(1).strip())

        def _interpolate(match: re.Match) -> str:
            resolved = resolve(match.group(1).strip())
            if contains_unknown(resolved):
                raise _UnknownPart()
            return str(resolved)

        try:
            return EXPRESSION_RE.sub(_interpolate, value)
        except _UnknownPart:
            return UNKNOWN

    if isinstance(value, dict):
        return {k: evaluate(v, resolve) for k, v in value.items()}
    if isinstance(value, list):
        return [evaluate(v, resolve) for v in value]
    return value


class _UnknownPart(Exception):
    """Raised internally when an interpolated part is not yet known."""


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def read_path(resource_id: str, attributes: dict, outputs: dict, path: tuple[str, ...]) -> Any:
    """Read an attribute path from a recorded instance.

    Outputs take precedence over applied attributes; 'id' falls back to
    the backend-assigned identifier.

    Raises:
        KeyError: If the path does not exist
    """
    head, rest = path[0], path[1:]
    if head in outputs:
        value = outputs[head]
    elif head in attributes:
        value = attributes[head]
    elif head == 'id':
        value = resource_id
    else:
        raise KeyError('.'.join(path))

    for segment in rest:
        if isinstance(value, dict) and segment in value:
            value = value[segment]
        else:
            raise KeyError('.'.join(path))
    return value
