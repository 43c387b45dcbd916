"""
Provisioner - Reference Expressions

Parses and evaluates the ${...} expressions embedded in attribute values.

Supported expression roots:
- var.<name>[...]                 variable lookup
- count.index                     index inside a count family
- each.key / each.value[...]      key/value inside a for_each family
- <type>.<name>[<idx>].<attr>...  resource reference (idx: 0, "key" or *)

A string that is exactly one expression evaluates to the raw value
(lists and mappings included); expressions embedded in longer strings
are interpolated as text.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, List, Optional, Tuple, Union
import json
import re

from provisioner.errors import InvalidExpressionError
from provisioner.models import format_address

# Placeholder for values that only exist once the provider has answered
UNKNOWN = "(known after apply)"

_INTERPOLATION_RE = re.compile(r"\$\{([^}]*)\}")

_TOKEN_RE = re.compile(
    r"""
      (?P<dot>\.)?(?P<name>[A-Za-z_][A-Za-z0-9_-]*)
    | \[\s*(?P<index>\d+|"(?:[^"\\]|\\.)*"|\*|count\.index|each\.key)\s*\]
    """,
    re.VERBOSE,
)

ROOT_KEYWORDS = ("var", "count", "each")


class Symbol(str, Enum):
    """Symbolic index values."""
    SPLAT = "*"
    COUNT_INDEX = "count.index"
    EACH_KEY = "each.key"


@dataclass(frozen=True)
class Attr:
    name: str


@dataclass(frozen=True)
class Index:
    value: Union[int, str, Symbol]


Segment = Union[Attr, Index]


@dataclass(frozen=True)
class Deferred:
    """Expression kept verbatim for a later evaluation phase."""
    text: str


@dataclass(frozen=True)
class Reference:
    """Reference from an attribute to another resource's value."""
    resource_type: str
    name: str
    index: Union[int, str, Symbol, None]
    path: Tuple[Segment, ...]

    @property
    def family(self) -> str:
        return format_address(self.resource_type, self.name)

    @property
    def is_splat(self) -> bool:
        return self.index is Symbol.SPLAT

    @property
    def address(self) -> str:
        """Address of the referenced instance (not defined for splats)."""
        if self.is_splat:
            raise InvalidExpressionError(f"Splat reference has no single address: {self}")
        return format_address(self.resource_type, self.name, self.index)

    def __str__(self) -> str:
        head: List[Segment] = [Attr(self.resource_type), Attr(self.name)]
        if self.index is not None:
            head.append(Index(self.index))
        return format_segments(head + list(self.path))


# =============================================================================
# PARSING
# =============================================================================

def parse_expression(text: str) -> List[Segment]:
    """
    Parse the body of a ${...} expression into segments.

    Raises:
        InvalidExpressionError: If the expression is malformed
    """
    source = text.strip()
    if not source:
        raise InvalidExpressionError("Empty expression '${}'")

    segments: List[Segment] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise InvalidExpressionError(f"Malformed expression: '{source}'")

        name = match.group("name")
        if name is not None:
            has_dot = match.group("dot") is not None
            if has_dot != bool(segments):
                raise InvalidExpressionError(f"Malformed expression: '{source}'")
            segments.append(Attr(name))
        else:
            if not segments:
                raise InvalidExpressionError(f"Malformed expression: '{source}'")
            segments.append(Index(_parse_index(match.group("index"))))
        pos = match.end()

    return segments


def _parse_index(raw: str) -> Union[int, str, Symbol]:
    if raw.isdigit():
        return int(raw)
    if raw.startswith('"'):
        return json.loads(raw)
    return Symbol(raw)


def format_segments(segments: List[Segment]) -> str:
    """Serialize segments back to expression text."""
    parts: List[str] = []
    for segment in segments:
        if isinstance(segment, Attr):
            parts.append(f".{segment.name}" if parts else segment.name)
        elif isinstance(segment.value, Symbol):
            parts.append(f"[{segment.value.value}]")
        elif isinstance(segment.value, int):
            parts.append(f"[{segment.value}]")
        else:
            parts.append(f"[{json.dumps(segment.value)}]")
    return "".join(parts)


def parse_reference(segments: List[Segment]) -> Reference:
    """
    Interpret segments as a resource reference.

    Raises:
        InvalidExpressionError: If the segments do not form a reference
    """
    text = format_segments(segments)
    if len(segments) < 3 or not isinstance(segments[0], Attr) or not isinstance(segments[1], Attr):
        raise InvalidExpressionError(
            f"Reference must have the form type.name.attribute: '{text}'"
        )
    if segments[0].name in ROOT_KEYWORDS:
        raise InvalidExpressionError(f"Not a resource reference: '{text}'")

    index = None
    rest = segments[2:]
    if isinstance(rest[0], Index):
        index = rest[0].value
        rest = rest[1:]
    if not rest:
        raise InvalidExpressionError(f"Reference is missing an attribute: '{text}'")

    return Reference(
        resource_type=segments[0].name,
        name=segments[1].name,
        index=index,
        path=tuple(rest),
    )


# =============================================================================
# TRAVERSAL
# =============================================================================

def iter_expressions(value: Any) -> Iterator[str]:
    """Yield every expression body found in a nested value."""
    if isinstance(value, str):
        for match in _INTERPOLATION_RE.finditer(value):
            yield match.group(1)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_expressions(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_expressions(item)


def extract_references(value: Any) -> List[Reference]:
    """Collect the resource references of a nested value, in order of appearance."""
    references: List[Reference] = []
    for text in iter_expressions(value):
        segments = parse_expression(text)
        if isinstance(segments[0], Attr) and segments[0].name in ROOT_KEYWORDS:
            continue
        references.append(parse_reference(segments))
    return references


def transform(value: Any, evaluate: Callable[[List[Segment]], Any]) -> Any:
    """
    Rebuild a nested value, replacing each expression by evaluate(segments).

    evaluate may return a Deferred to keep an expression for a later
    phase, or UNKNOWN when the value is not available yet. An interpolated
    string containing an UNKNOWN part becomes UNKNOWN as a whole.
    """
    if isinstance(value, dict):
        return {k: transform(v, evaluate) for k, v in value.items()}
    if isinstance(value, list):
        return [transform(v, evaluate) for v in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    whole = _INTERPOLATION_RE.fullmatch(value)
    if whole:
        result = evaluate(parse_expression(whole.group(1)))
        if isinstance(result, Deferred):
            return "${" + result.text + "}"
        return result

    unknown = False

    def substitute(match: re.Match) -> str:
        nonlocal unknown
        result = evaluate(parse_expression(match.group(1)))
        if isinstance(result, Deferred):
            return "${" + result.text + "}"
        if contains_unknown(result):
            unknown = True
            return ""
        return _stringify(result)

    rendered = _INTERPOLATION_RE.sub(substitute, value)
    return UNKNOWN if unknown else rendered


def lookup_path(value: Any, path: Tuple[Segment, ...], context: str) -> Any:
    """
    Walk attribute and index segments into a nested value.

    Raises:
        InvalidExpressionError: If a segment does not exist
    """
    current = value
    for segment in path:
        if current == UNKNOWN:
            return UNKNOWN
        if isinstance(segment, Attr):
            if not isinstance(current, dict) or segment.name not in current:
                raise InvalidExpressionError(
                    f"Unsupported attribute '{segment.name}' in '{context}'"
                )
            current = current[segment.name]
        elif isinstance(segment.value, Symbol):
            raise InvalidExpressionError(
                f"Unresolved symbolic index [{segment.value.value}] in '{context}'"
            )
        elif isinstance(current, list) and isinstance(segment.value, int):
            if segment.value >= len(current):
                raise InvalidExpressionError(
                    f"Index {segment.value} out of range in '{context}'"
                )
            current = current[segment.value]
        elif isinstance(current, dict) and str(segment.value) in current:
            current = current[str(segment.value)]
        else:
            raise InvalidExpressionError(
                f"Invalid index [{segment.value}] in '{context}'"
            )
    return current


def contains_unknown(value: Any) -> bool:
    if isinstance(value, str):
        return value == UNKNOWN
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True)


def render(value: Any, resolve: Callable[[Reference], Any]) -> Any:
    """
    Render a nested value, resolving every resource reference with resolve().

    The result is in JSON form (string mapping keys, lists, scalars) so it
    compares equal to the same value reloaded from the State Store.
    """

    def evaluate(segments: List[Segment]) -> Any:
        return resolve(parse_reference(segments))

    return json.loads(json.dumps(transform(value, evaluate), default=str))
